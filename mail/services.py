import base64
import binascii
import logging
import secrets
from datetime import datetime, timedelta, timezone as utc_tz
from typing import Dict, List, Optional, Tuple

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.utils.html import strip_tags

from accounts.models import MicrosoftCredential
from accounts.services import CredentialManager
from mail.graph_client import GraphApiError
from mail.models import (
    WATCHED_FOLDERS,
    Contact,
    EmailAttachment,
    EmailMessage,
    MicrosoftSubscription,
)
from mail.signals import email_imported

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")

MESSAGE_FIELDS = [
    "id",
    "internetMessageId",
    "conversationId",
    "subject",
    "sentDateTime",
    "receivedDateTime",
    "from",
    "toRecipients",
    "ccRecipients",
    "body",
    "hasAttachments",
]

FILE_ATTACHMENT = "#microsoft.graph.fileAttachment"
UNKNOWN_ADDRESS = "unknown@unknown"


def _truncate(value: Optional[str], max_length: int) -> str:
    """Truncate string to max_length for DB varchar fields."""
    if not value:
        return ""
    s = str(value)
    return s[:max_length] if len(s) > max_length else s


def parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    """Graph timestamps carry 7 fractional digits and a trailing Z."""
    if not value:
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        return None
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, utc_tz.utc)
    return parsed


def _parse_address(recipient: Optional[dict]) -> Dict[str, Optional[str]]:
    email_addr = (recipient or {}).get("emailAddress") or {}
    address = (email_addr.get("address") or "").strip().lower()
    return {"email": address or UNKNOWN_ADDRESS, "name": email_addr.get("name")}


def _parse_addresses(recipients: Optional[List[dict]]) -> List[Dict[str, Optional[str]]]:
    return [_parse_address(r) for r in recipients or []]


def _plain_body(body: Optional[dict]) -> str:
    if not body:
        return ""
    content = body.get("content") or ""
    if (body.get("contentType") or "").lower() == "text":
        return content
    return strip_tags(content).strip()


class MessageImportService:
    """
    Turns one Graph message id into a stored EmailMessage (plus attachments).

    Both the webhook path and the historical import go through import_by_id, so
    dedup and field mapping are identical everywhere.
    """

    def __init__(self, user, credentials: Optional[CredentialManager] = None):
        self.user = user
        self._credentials = credentials

    @property
    def credentials(self) -> CredentialManager:
        if self._credentials is None:
            self._credentials = CredentialManager.for_user(self.user)
        return self._credentials

    def import_by_id(self, graph_id: str) -> Tuple[EmailMessage, bool]:
        """Return (email, created). created is False when the message was already stored."""
        existing = EmailMessage.objects.filter(user=self.user, graph_id=graph_id).first()
        if existing is not None:
            logger.debug("Skipped (duplicate) graph_id=%s user=%s", graph_id, self.user.pk)
            return existing, False

        message = self.credentials.call(
            lambda client: client.message(graph_id, select=MESSAGE_FIELDS)
        )
        fields = self._map_message(message)

        try:
            with transaction.atomic():
                email_msg = EmailMessage.objects.create(
                    user=self.user, graph_id=graph_id, **fields
                )
        except IntegrityError:
            # The webhook and a historical run raced on the same message
            logger.info("Concurrent import won for graph_id=%s user=%s", graph_id, self.user.pk)
            return EmailMessage.objects.get(user=self.user, graph_id=graph_id), False

        if message.get("hasAttachments"):
            self._import_attachments(email_msg)

        user = self.user
        transaction.on_commit(
            lambda: email_imported.send(sender=EmailMessage, email_message=email_msg, user=user)
        )
        logger.info(
            "Imported email id=%s graph_id=%s subject=%s",
            email_msg.pk,
            graph_id,
            (email_msg.subject or "")[:50],
        )
        return email_msg, True

    def _map_message(self, message: dict) -> dict:
        sender = _parse_address(message.get("from"))
        contact = None
        if sender["email"] != UNKNOWN_ADDRESS:
            contact = Contact.objects.filter(user=self.user, email__iexact=sender["email"]).first()

        body = message.get("body") or {}
        sent_at = parse_graph_datetime(
            message.get("sentDateTime") or message.get("receivedDateTime")
        )
        return {
            "conversation_id": _truncate(message.get("conversationId"), 512),
            "internet_message_id": _truncate(
                (message.get("internetMessageId") or "").replace("<", "").replace(">", ""), 512
            ),
            "subject": _truncate(message.get("subject"), 512),
            "from_address": _truncate(sender["email"], 255),
            "from_name": _truncate(sender["name"], 255),
            "to_addresses": _parse_addresses(message.get("toRecipients")),
            "cc_addresses": _parse_addresses(message.get("ccRecipients")),
            "sent_at": sent_at or timezone.now(),
            "body_html": body.get("content") or "",
            "body_plain": _plain_body(body),
            "contact": contact,
        }

    def _import_attachments(self, email_msg: EmailMessage) -> int:
        """Store file attachments; item and reference attachments are skipped."""
        try:
            response = self.credentials.call(
                lambda client: client.attachments(email_msg.graph_id)
            )
        except GraphApiError as e:
            logger.warning(
                "Failed to import attachments for email id=%s graph_id=%s: %s",
                email_msg.pk,
                email_msg.graph_id,
                e,
            )
            return 0

        stored = 0
        for att in response.get("value") or []:
            odata_type = att.get("@odata.type", "")
            if odata_type != FILE_ATTACHMENT:
                logger.debug("Skipping %s attachment: %s", odata_type or "unknown", att.get("name"))
                continue
            try:
                content = base64.b64decode(att.get("contentBytes") or "")
            except (binascii.Error, ValueError) as e:
                logger.warning("Failed to decode attachment %s: %s", att.get("name"), e)
                continue
            EmailAttachment.objects.create(
                email_message=email_msg,
                provider_attachment_id=_truncate(att.get("id"), 512),
                filename=_truncate(att.get("name") or "attachment", 255),
                content_type=_truncate(att.get("contentType") or "application/octet-stream", 128),
                size_bytes=att.get("size") or len(content),
                is_inline=bool(att.get("isInline", False)),
                content_id=_truncate((att.get("contentId") or "").strip("<>"), 255),
                content=content,
            )
            stored += 1
        return stored


class SubscriptionError(Exception):
    """Subscription setup/renewal failed for a reason other than a Graph API error."""


class SubscriptionService:
    """Creates, renews and deletes Graph webhook subscriptions and mirrors them locally."""

    WEBHOOK_PATH = "/webhooks/microsoft/"
    MAX_EXPIRATION_MINUTES = 4230  # ~3 days, Graph's limit for mail resources
    CHANGE_TYPE = "created"

    def __init__(self, user, credentials: Optional[CredentialManager] = None):
        self.user = user
        self._credentials = credentials

    @property
    def credentials(self) -> CredentialManager:
        if self._credentials is None:
            try:
                self._credentials = CredentialManager.for_user(self.user)
            except MicrosoftCredential.DoesNotExist as e:
                raise SubscriptionError(f"No Microsoft credential for user {self.user.pk}") from e
        return self._credentials

    def webhook_url(self) -> str:
        base_url = getattr(settings, "APP_URL", "")
        if not base_url:
            raise SubscriptionError("APP_URL not configured")
        return f"{base_url.rstrip('/')}{self.WEBHOOK_PATH}"

    def _new_expiration(self) -> datetime:
        return timezone.now() + timedelta(minutes=self.MAX_EXPIRATION_MINUTES)

    def create_subscriptions(self) -> Dict[str, MicrosoftSubscription]:
        return {folder: self.create_for_folder(folder) for folder in WATCHED_FOLDERS}

    def create_for_folder(self, folder: str) -> MicrosoftSubscription:
        """Replace whatever subscription the user has for `folder` with a fresh one."""
        notification_url = self.webhook_url()
        for existing in MicrosoftSubscription.objects.filter(user=self.user, folder=folder):
            self.delete(existing)

        resource = f"me/mailFolders/{folder}/messages"
        client_state = secrets.token_urlsafe(32)
        expiration = self._new_expiration()

        response = self.credentials.call(
            lambda client: client.create_subscription(
                change_type=self.CHANGE_TYPE,
                notification_url=notification_url,
                resource=resource,
                expiration_date_time=expiration,
                client_state=client_state,
            )
        )

        try:
            subscription = MicrosoftSubscription.objects.create(
                user=self.user,
                subscription_id=response["id"],
                resource=resource,
                folder=folder,
                expires_at=parse_graph_datetime(response.get("expirationDateTime")) or expiration,
                client_state=client_state,
            )
        except IntegrityError as e:
            # Someone else created one for this folder in the meantime; don't leave ours dangling
            self._delete_remote(response["id"])
            raise SubscriptionError(
                f"Subscription for {folder} was created concurrently for user {self.user.pk}"
            ) from e

        logger.info(
            "Created subscription for %s: %s (expires %s)",
            folder,
            subscription.subscription_id,
            subscription.expires_at.isoformat(),
        )
        return subscription

    def renew(self, subscription: MicrosoftSubscription) -> MicrosoftSubscription:
        """Extend the subscription; one Graph no longer knows about is recreated."""
        new_expiration = self._new_expiration()
        try:
            response = self.credentials.call(
                lambda client: client.renew_subscription(
                    subscription.subscription_id, new_expiration
                )
            )
        except GraphApiError as e:
            if not e.is_not_found:
                raise
            logger.warning(
                "Subscription %s no longer exists at Microsoft, recreating for %s",
                subscription.subscription_id,
                subscription.folder,
            )
            subscription.delete()
            return self.create_for_folder(subscription.folder)
        # Graph may clamp the expiry; its value is the one that counts
        expires_at = parse_graph_datetime(response.get("expirationDateTime"))
        if expires_at is None:
            raise SubscriptionError(
                f"Renewal of {subscription.subscription_id} returned no expirationDateTime"
            )
        subscription.expires_at = expires_at
        subscription.save(update_fields=["expires_at", "updated_at"])
        logger.info("Renewed subscription %s until %s", subscription.pk, expires_at.isoformat())
        return subscription

    def delete(self, subscription: MicrosoftSubscription) -> None:
        """Delete remotely if possible; the local row is always removed."""
        self._delete_remote(subscription.subscription_id)
        subscription.delete()
        logger.info("Deleted subscription %s", subscription.subscription_id)

    def delete_all(self) -> int:
        deleted = 0
        for subscription in MicrosoftSubscription.objects.filter(user=self.user):
            self.delete(subscription)
            deleted += 1
        return deleted

    def _delete_remote(self, subscription_id: str) -> None:
        try:
            self.credentials.call(lambda client: client.delete_subscription(subscription_id))
        except GraphApiError as e:
            if e.is_not_found:
                logger.info("Subscription %s already gone at Microsoft", subscription_id)
            else:
                logger.warning(
                    "Could not delete subscription %s at Microsoft, removing locally: %s",
                    subscription_id,
                    e,
                )
        except SubscriptionError as e:
            logger.warning("Could not delete subscription %s remotely: %s", subscription_id, e)
