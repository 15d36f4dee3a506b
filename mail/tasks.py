import logging

from celery import shared_task
from django.contrib.auth import get_user_model

from accounts.models import MicrosoftCredential
from mail.graph_client import GraphApiError, TokenExpiredError
from mail.historical_import import HistoricalImportOrchestrator, ImportStepLocked
from mail.models import EmailImport, MicrosoftSubscription
from mail.services import MessageImportService, SubscriptionError, SubscriptionService

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")

User = get_user_model()

# Generic API errors: exponential backoff, bounded attempts
API_MAX_RETRIES = 5
API_BACKOFF_BASE_SECONDS = 2
API_BACKOFF_MAX_SECONDS = 600
# A 401 that survived CredentialManager's own refresh+retry
TOKEN_RETRY_COUNTDOWN = 30
TOKEN_MAX_RETRIES = 3
SUBSCRIPTION_RETRY_COUNTDOWN = 60
SUBSCRIPTION_MAX_RETRIES = 3
# Another worker holds the step lock; its TTL expires well within this window
LOCK_RETRY_COUNTDOWN = 60
LOCK_MAX_RETRIES = 20


def _backoff(retries: int) -> int:
    return min(API_BACKOFF_MAX_SECONDS, API_BACKOFF_BASE_SECONDS ** (retries + 1))


def _connected_user(user_id: int):
    """Return the user if they still exist and have a credential, else None."""
    user = User.objects.filter(pk=user_id).first()
    if user is None:
        return None
    if not MicrosoftCredential.objects.filter(user=user).exists():
        return None
    return user


@shared_task(
    bind=True,
    autoretry_for=(GraphApiError,),
    retry_backoff=API_BACKOFF_BASE_SECONDS,
    retry_backoff_max=API_BACKOFF_MAX_SECONDS,
    retry_jitter=True,
    max_retries=API_MAX_RETRIES,
)
def fetch_microsoft_email(self, user_id: int, graph_id: str):
    """Fetch one message announced by a webhook notification and store it."""
    user = _connected_user(user_id)
    if user is None:
        logger.warning("fetch_microsoft_email: user_id=%s gone or disconnected, discarding", user_id)
        return {"skipped": "User not connected"}

    try:
        email_msg, created = MessageImportService(user).import_by_id(graph_id)
    except TokenExpiredError as exc:
        raise self.retry(exc=exc, countdown=TOKEN_RETRY_COUNTDOWN, max_retries=TOKEN_MAX_RETRIES)

    sync_audit.info(
        "fetch_microsoft_email done",
        extra={"user_id": user_id, "email_id": email_msg.pk, "was_created": created},
    )
    return {"email_id": email_msg.pk, "created": created}


@shared_task(
    bind=True,
    autoretry_for=(GraphApiError, SubscriptionError),
    default_retry_delay=SUBSCRIPTION_RETRY_COUNTDOWN,
    max_retries=SUBSCRIPTION_MAX_RETRIES,
)
def setup_microsoft_subscriptions(self, user_id: int):
    """Create (or replace) the inbox and sent-items subscriptions for a user."""
    user = _connected_user(user_id)
    if user is None:
        logger.warning("setup_microsoft_subscriptions: user_id=%s not connected", user_id)
        return {"skipped": "User not connected"}

    results = SubscriptionService(user).create_subscriptions()
    logger.info(
        "Created Microsoft subscriptions for user %s: %s",
        user_id,
        ", ".join(f"{folder}={sub.subscription_id}" for folder, sub in results.items()),
    )
    return {folder: sub.pk for folder, sub in results.items()}


@shared_task
def renew_microsoft_subscriptions():
    """Renew every subscription inside the expiry buffer; one failure never stops the sweep."""
    renewed = 0
    failed = 0
    skipped = 0
    expiring = MicrosoftSubscription.objects.expiring_soon().select_related("user")
    for subscription in expiring.iterator():
        if not MicrosoftCredential.objects.filter(user_id=subscription.user_id).exists():
            skipped += 1
            continue
        try:
            SubscriptionService(subscription.user).renew(subscription)
            renewed += 1
        except Exception as e:
            failed += 1
            logger.error("Failed to renew subscription %s: %s", subscription.pk, e)

    logger.info(
        "renew_microsoft_subscriptions renewed=%s failed=%s skipped=%s", renewed, failed, skipped
    )
    return {"renewed": renewed, "failed": failed, "skipped": skipped}


@shared_task(
    bind=True,
    max_retries=API_MAX_RETRIES,
    acks_late=True,
    reject_on_worker_lost=True,
)
def run_historical_import_step(self, import_id: int):
    """Advance one EmailImport by a single step and chain the next one."""
    email_import = EmailImport.objects.select_related("user").filter(pk=import_id).first()
    if email_import is None:
        logger.warning("run_historical_import_step: import_id=%s not found", import_id)
        return {"skipped": "Import not found"}
    if email_import.is_terminal:
        return {"status": email_import.status}

    orchestrator = HistoricalImportOrchestrator(email_import)
    try:
        has_more = orchestrator.advance()
    except ImportStepLocked as exc:
        if self.request.retries < LOCK_MAX_RETRIES:
            raise self.retry(exc=exc, countdown=LOCK_RETRY_COUNTDOWN, max_retries=LOCK_MAX_RETRIES)
        logger.warning(
            "[HistoricalImport] Import %s step lock still held after %s retries, giving up",
            import_id,
            LOCK_MAX_RETRIES,
        )
        return {"skipped": "Step lock held"}
    except MicrosoftCredential.DoesNotExist:
        orchestrator.fail("Microsoft account is not connected")
        return {"status": orchestrator.email_import.status}
    except (GraphApiError, TokenExpiredError) as exc:
        if self.request.retries < self.max_retries:
            countdown = (
                TOKEN_RETRY_COUNTDOWN if isinstance(exc, TokenExpiredError)
                else _backoff(self.request.retries)
            )
            logger.warning(
                "[HistoricalImport] Import %s step failed (attempt %s/%s), retrying in %ss: %s",
                import_id,
                self.request.retries + 1,
                self.max_retries,
                countdown,
                exc,
            )
            raise self.retry(exc=exc, countdown=countdown)
        orchestrator.fail(exc)
        return {"status": orchestrator.email_import.status}
    except Exception as exc:
        logger.exception("[HistoricalImport] Import %s step crashed", import_id)
        orchestrator.fail(exc)
        return {"status": orchestrator.email_import.status}

    if has_more:
        run_historical_import_step.delay(import_id)
    return {"status": orchestrator.email_import.status}
