"""
Start, cancel or inspect a historical mailbox import from the shell.

start queues the run exactly like POST /api/imports/; a Celery worker drives
the steps. resume re-queues the next step of an active import whose task chain
was lost, for example after a worker crash.
"""
from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError
from django.db.models import Q

from mail.historical_import import (
    ImportRequestError,
    cancel_historical_import,
    start_historical_import,
)
from mail.models import EmailImport
from mail.tasks import run_historical_import_step


class Command(BaseCommand):
    help = "Manage historical email imports: start, cancel, resume or show status for a user."

    def add_arguments(self, parser):
        parser.add_argument("action", choices=["start", "cancel", "resume", "status"])
        parser.add_argument(
            "--user",
            required=True,
            help="Username or email of the user whose mailbox to import",
        )
        parser.add_argument(
            "--time-range",
            choices=EmailImport.TimeRange.values,
            default=EmailImport.TimeRange.THREE_MONTHS,
            help="How far back to import (start only)",
        )

    def handle(self, *args, **options):
        user = self._get_user(options["user"])
        action = options["action"]
        if action == "start":
            self._start(user, options["time_range"])
        elif action == "cancel":
            self._cancel(user)
        elif action == "resume":
            self._resume(user)
        else:
            self._status(user)

    def _get_user(self, identifier):
        User = get_user_model()
        user = User.objects.filter(Q(username=identifier) | Q(email__iexact=identifier)).first()
        if user is None:
            raise CommandError(f"User {identifier!r} not found.")
        return user

    def _start(self, user, time_range):
        try:
            email_import = start_historical_import(user, time_range)
        except ImportRequestError as e:
            raise CommandError(str(e))
        self.stdout.write(
            self.style.SUCCESS(f"Queued import {email_import.pk} ({time_range}) for {user}.")
        )

    def _cancel(self, user):
        email_import = EmailImport.objects.filter(user=user).active().first()
        if email_import is None:
            self.stdout.write(self.style.WARNING("No active import to cancel."))
            return
        try:
            cancel_historical_import(email_import)
        except ImportRequestError as e:
            raise CommandError(str(e))
        self.stdout.write(self.style.SUCCESS(f"Cancelled import {email_import.pk}."))

    def _resume(self, user):
        email_import = EmailImport.objects.filter(user=user).active().first()
        if email_import is None:
            self.stdout.write(self.style.WARNING("No active import to resume."))
            return
        run_historical_import_step.delay(email_import.pk)
        self.stdout.write(self.style.SUCCESS(f"Queued next step for import {email_import.pk}."))

    def _status(self, user):
        imports = list(EmailImport.objects.filter(user=user).recent())
        if not imports:
            self.stdout.write("No imports yet.")
            return
        for email_import in imports:
            self._write_progress(email_import)

    def _write_progress(self, email_import):
        line = (
            f"Import {email_import.pk} [{email_import.status}] {email_import.time_range}: "
            f"{email_import.processed_emails}/{email_import.total_emails} "
            f"({email_import.progress_percentage}%) imported={email_import.imported_emails} "
            f"skipped={email_import.skipped_emails} failed={email_import.failed_emails}"
        )
        if email_import.status == EmailImport.Status.FAILED:
            self.stdout.write(self.style.ERROR(f"{line} error={email_import.error_message}"))
        elif email_import.status == EmailImport.Status.COMPLETED:
            self.stdout.write(self.style.SUCCESS(line))
        else:
            self.stdout.write(line)
