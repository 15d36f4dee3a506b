"""
Historical mailbox backfill, driven one step at a time.

Each call to HistoricalImportOrchestrator.advance() performs exactly one unit of
work for an EmailImport (start, count, or one page of one folder) and persists
everything needed to continue: status, current folder, the Graph nextLink and
the running totals. The Celery task in mail.tasks keeps calling it until it
returns False, so a crash loses at most the page in flight.
"""
import logging
from datetime import timezone as utc_tz
from typing import Optional

from django.db import IntegrityError, transaction
from django.utils import timezone

from accounts.models import MicrosoftCredential
from accounts.services import CredentialManager
from mail.models import WATCHED_FOLDERS, EmailImport
from mail.services import MessageImportService
from mail.sync_status import acquire_import_lock, release_import_lock

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")


class ImportRequestError(ValueError):
    """A start/cancel request that cannot be honoured (shown to the user as-is)."""


class ImportStepLocked(Exception):
    """Another worker holds the step lock for this import; try again later."""


class HistoricalImportOrchestrator:
    BATCH_SIZE = 50
    FOLDERS = WATCHED_FOLDERS
    ORDER_BY = "receivedDateTime desc"

    def __init__(
        self,
        email_import: EmailImport,
        credentials: Optional[CredentialManager] = None,
        importer: Optional[MessageImportService] = None,
    ):
        self.email_import = email_import
        self.user = email_import.user
        self._credentials = credentials
        self._importer = importer

    @property
    def credentials(self) -> CredentialManager:
        if self._credentials is None:
            self._credentials = CredentialManager.for_user(self.user)
        return self._credentials

    @property
    def importer(self) -> MessageImportService:
        if self._importer is None:
            self._importer = MessageImportService(self.user, credentials=self.credentials)
        return self._importer

    def advance(self) -> bool:
        """
        Run one step. Returns True when another step should be scheduled.

        Raises ImportStepLocked when another worker is mid-step, so the caller
        can reschedule instead of letting the chain end.
        """
        run = self.email_import
        run.refresh_from_db()
        if run.is_terminal:
            logger.info("[HistoricalImport] Import %s is %s, nothing to do", run.pk, run.status)
            return False

        if not acquire_import_lock(run.pk):
            logger.info("[HistoricalImport] Import %s step already running", run.pk)
            raise ImportStepLocked(f"Import {run.pk} step lock is held")
        try:
            if run.status == EmailImport.Status.PENDING:
                return self._start_counting()
            if run.status == EmailImport.Status.COUNTING:
                return self._count_emails()
            return self._import_page()
        finally:
            release_import_lock(run.pk)

    def fail(self, error) -> None:
        """Move the run to failed with a short message, unless it already finished."""
        with transaction.atomic():
            locked = EmailImport.objects.select_for_update().get(pk=self.email_import.pk)
            if locked.is_terminal:
                self.email_import = locked
                return
            locked.mark_failed(error)
        self.email_import = locked
        logger.error("[HistoricalImport] Import %s failed: %s", locked.pk, locked.error_message)

    # Steps

    def _start_counting(self) -> bool:
        moved = self._transition(EmailImport.Status.COUNTING, started_at=timezone.now())
        if moved:
            logger.info("[HistoricalImport] Starting count for import %s", self.email_import.pk)
        return moved

    def _count_emails(self) -> bool:
        date_filter = self._date_filter()
        total = 0
        for folder in self.FOLDERS:
            count = self.credentials.call(
                lambda client, folder=folder: client.count_folder_messages(folder, filter=date_filter)
            )
            logger.info("[HistoricalImport] %s: %s emails", folder, count)
            total += count

        moved = self._transition(
            EmailImport.Status.IMPORTING,
            total_emails=total,
            current_folder=self.FOLDERS[0],
            next_link=None,
        )
        if moved:
            logger.info("[HistoricalImport] Counted %s emails, starting import", total)
        return moved

    def _import_page(self) -> bool:
        run = self.email_import
        folder = run.current_folder or self.FOLDERS[0]
        cursor = run.next_link or None

        page = self._fetch_page(folder, cursor)
        counts = {"imported": 0, "skipped": 0, "failed": 0}
        for item in page.get("value") or []:
            counts[self._import_one(item.get("id"))] += 1

        return self._record_page(folder, cursor, counts, page.get("@odata.nextLink"))

    # Helpers

    def _date_filter(self) -> str:
        cutoff = self.email_import.cutoff_date.astimezone(utc_tz.utc)
        return f"receivedDateTime ge {cutoff.strftime('%Y-%m-%dT%H:%M:%SZ')}"

    def _fetch_page(self, folder: str, cursor: Optional[str]) -> dict:
        if cursor:
            return self.credentials.call(lambda client: client.get_next_page(cursor))
        date_filter = self._date_filter()
        return self.credentials.call(
            lambda client: client.folder_messages(
                folder,
                filter=date_filter,
                top=self.BATCH_SIZE,
                orderby=self.ORDER_BY,
                select=["id"],
            )
        )

    def _import_one(self, graph_id: Optional[str]) -> str:
        if not graph_id:
            return "skipped"
        try:
            _, created = self.importer.import_by_id(graph_id)
        except Exception as e:
            logger.error("[HistoricalImport] Error importing %s: %s", graph_id, e)
            return "failed"
        return "imported" if created else "skipped"

    def _record_page(self, folder: str, cursor: Optional[str], counts: dict, next_link: Optional[str]) -> bool:
        with transaction.atomic():
            locked = EmailImport.objects.select_for_update().get(pk=self.email_import.pk)
            if locked.current_folder != folder or (locked.next_link or None) != cursor:
                # A duplicate step already recorded this page; the cursor is authoritative
                logger.warning(
                    "[HistoricalImport] Import %s page for %s already recorded, dropping delta",
                    locked.pk,
                    folder,
                )
                self.email_import = locked
                return not locked.is_terminal

            progress = {
                "imported_emails": locked.imported_emails + counts["imported"],
                "skipped_emails": locked.skipped_emails + counts["skipped"],
                "failed_emails": locked.failed_emails + counts["failed"],
            }
            if next_link:
                progress["next_link"] = next_link
            else:
                following = self._next_folder(folder)
                progress["current_folder"] = following or folder
                progress["next_link"] = None

            finished = not next_link and self._next_folder(folder) is None
            if finished and not locked.is_terminal:
                locked.transition_to(
                    EmailImport.Status.COMPLETED,
                    completed_at=timezone.now(),
                    # Enrichment runs asynchronously off the email_imported signal
                    enriched_emails=progress["imported_emails"],
                    **progress,
                )
            else:
                for name, value in progress.items():
                    setattr(locked, name, value)
                locked.save(update_fields=[*progress.keys(), "updated_at"])

        self.email_import = locked
        sync_audit.info(
            "historical import page recorded",
            extra={
                "import_id": locked.pk,
                "folder": folder,
                "imported": counts["imported"],
                "skipped": counts["skipped"],
                "failed": counts["failed"],
                "folder_complete": not next_link,
                "status": locked.status,
            },
        )
        if locked.status == EmailImport.Status.COMPLETED:
            logger.info(
                "[HistoricalImport] Import %s completed. total=%s imported=%s skipped=%s failed=%s",
                locked.pk,
                locked.total_emails,
                locked.imported_emails,
                locked.skipped_emails,
                locked.failed_emails,
            )
        elif not next_link and not locked.is_terminal:
            logger.info("[HistoricalImport] Moving to folder: %s", locked.current_folder)
        return not locked.is_terminal

    def _next_folder(self, folder: str) -> Optional[str]:
        index = list(self.FOLDERS).index(folder)
        if index + 1 < len(self.FOLDERS):
            return self.FOLDERS[index + 1]
        return None

    def _transition(self, status, **fields) -> bool:
        """Apply a status change under a row lock; False if the run was cancelled meanwhile."""
        with transaction.atomic():
            locked = EmailImport.objects.select_for_update().get(pk=self.email_import.pk)
            if locked.is_terminal:
                self.email_import = locked
                return False
            locked.transition_to(status, **fields)
        self.email_import = locked
        return True


def start_historical_import(user, time_range: str) -> EmailImport:
    """Create a new run for `user` and queue its first step."""
    if time_range not in EmailImport.TimeRange.values:
        raise ImportRequestError(f"Invalid time range: {time_range}")
    if not MicrosoftCredential.objects.filter(user=user).exists():
        raise ImportRequestError("Microsoft account is not connected")
    if EmailImport.objects.filter(user=user).active().exists():
        raise ImportRequestError("An import is already running")

    try:
        with transaction.atomic():
            email_import = EmailImport.objects.create(user=user, time_range=time_range)
    except IntegrityError as e:
        raise ImportRequestError("An import is already running") from e

    from mail.tasks import run_historical_import_step, setup_microsoft_subscriptions

    # Live mail arriving during the backfill comes in through the webhook
    transaction.on_commit(lambda: setup_microsoft_subscriptions.delay(user.pk))
    transaction.on_commit(lambda: run_historical_import_step.delay(email_import.pk))
    logger.info(
        "[HistoricalImport] Queued import %s for user %s (%s)", email_import.pk, user.pk, time_range
    )
    return email_import


def cancel_historical_import(email_import: EmailImport) -> EmailImport:
    """Flip the run to cancelled; the next step sees it and stops before any provider I/O."""
    with transaction.atomic():
        locked = EmailImport.objects.select_for_update().get(pk=email_import.pk)
        if not locked.can_cancel():
            raise ImportRequestError(f"Import {locked.pk} is {locked.status} and cannot be cancelled")
        locked.cancel()
    logger.info("[HistoricalImport] Import %s cancelled", locked.pk)
    return locked
