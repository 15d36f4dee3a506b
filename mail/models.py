from datetime import timedelta

from django.conf import settings
from django.db import models
from django.utils import timezone


class Folder(models.TextChoices):
    INBOX = "inbox", "Inbox"
    SENT_ITEMS = "sentitems", "Sent items"


# Processing order for historical imports and subscription setup
WATCHED_FOLDERS = [Folder.INBOX, Folder.SENT_ITEMS]


class Contact(models.Model):
    """Known correspondent; imported mail is linked to it by sender address."""

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="contacts"
    )
    email = models.EmailField(max_length=255)
    name = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = (("user", "email"),)
        ordering = ["email"]

    def __str__(self):
        return self.name or self.email


class EmailMessage(models.Model):
    class SourceType(models.TextChoices):
        GRAPH = "graph", "Microsoft Graph"

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="email_messages"
    )
    graph_id = models.CharField(max_length=512)
    conversation_id = models.CharField(max_length=512, blank=True, default="")
    internet_message_id = models.CharField(max_length=512, blank=True, default="")
    subject = models.CharField(max_length=512, blank=True, default="")
    from_address = models.CharField(max_length=255, blank=True, default="")
    from_name = models.CharField(max_length=255, blank=True, default="")
    to_addresses = models.JSONField(default=list, blank=True)
    cc_addresses = models.JSONField(default=list, blank=True)
    sent_at = models.DateTimeField(blank=True, null=True)
    body_html = models.TextField(blank=True, default="")
    body_plain = models.TextField(blank=True, default="")
    contact = models.ForeignKey(
        Contact,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name="email_messages",
    )
    source_type = models.CharField(
        max_length=16, choices=SourceType.choices, default=SourceType.GRAPH
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        unique_together = (("user", "graph_id"),)
        indexes = [
            models.Index(fields=["user", "sent_at"], name="mail_msg_user_sent_idx"),
            models.Index(fields=["user", "from_address"], name="mail_msg_user_from_idx"),
        ]
        ordering = ["-sent_at", "-created_at"]

    def __str__(self):
        return self.subject or self.graph_id


class EmailAttachment(models.Model):
    email_message = models.ForeignKey(
        EmailMessage, on_delete=models.CASCADE, related_name="attachments"
    )
    provider_attachment_id = models.CharField(max_length=512, blank=True, default="")
    filename = models.CharField(max_length=255, blank=True, default="")
    content_type = models.CharField(max_length=128, blank=True, default="")
    size_bytes = models.PositiveIntegerField(default=0)
    is_inline = models.BooleanField(default=False)
    content_id = models.CharField(max_length=255, blank=True, default="")
    content = models.BinaryField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["filename", "pk"]

    def __str__(self):
        return self.filename or f"Attachment {self.pk}"


class SubscriptionQuerySet(models.QuerySet):
    def expiring_soon(self):
        return self.filter(expires_at__lt=timezone.now() + MicrosoftSubscription.EXPIRATION_BUFFER)

    def expired(self):
        return self.filter(expires_at__lt=timezone.now())

    def active(self):
        return self.filter(expires_at__gt=timezone.now())


class MicrosoftSubscription(models.Model):
    """Local mirror of a Graph change-notification subscription (one per watched folder)."""

    EXPIRATION_BUFFER = timedelta(minutes=30)

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="microsoft_subscriptions",
    )
    subscription_id = models.CharField(max_length=255, unique=True)
    resource = models.CharField(max_length=512)
    folder = models.CharField(max_length=32, choices=Folder.choices)
    expires_at = models.DateTimeField()
    client_state = models.CharField(max_length=128)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = SubscriptionQuerySet.as_manager()

    class Meta:
        unique_together = (("user", "folder"),)
        indexes = [models.Index(fields=["expires_at"], name="mail_sub_expires_idx")]

    def __str__(self):
        return f"{self.folder} subscription {self.subscription_id}"

    def expiring_soon(self) -> bool:
        return self.expires_at < timezone.now() + self.EXPIRATION_BUFFER

    def expired(self) -> bool:
        return self.expires_at < timezone.now()


class InvalidTransition(Exception):
    """Raised when an EmailImport status change is not allowed by the state machine."""


class EmailImportQuerySet(models.QuerySet):
    def active(self):
        return self.filter(status__in=EmailImport.ACTIVE_STATUSES)

    def recent(self):
        return self.order_by("-created_at")[:5]


class EmailImport(models.Model):
    """
    One historical backfill run. Status is a closed state machine:
    pending -> counting -> importing -> completed, with failed/cancelled
    reachable from any non-terminal state and nothing leaving a terminal one.
    """

    class TimeRange(models.TextChoices):
        THREE_MONTHS = "3_months", "Last 3 months"
        ONE_YEAR = "1_year", "Last year"
        THREE_YEARS = "3_years", "Last 3 years"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COUNTING = "counting", "Counting"
        IMPORTING = "importing", "Importing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"

    TIME_RANGE_DAYS = {
        TimeRange.THREE_MONTHS: 90,
        TimeRange.ONE_YEAR: 365,
        TimeRange.THREE_YEARS: 3 * 365,
    }

    ACTIVE_STATUSES = [Status.PENDING, Status.COUNTING, Status.IMPORTING]
    TERMINAL_STATUSES = [Status.COMPLETED, Status.FAILED, Status.CANCELLED]

    ALLOWED_TRANSITIONS = {
        Status.PENDING: {Status.COUNTING, Status.FAILED, Status.CANCELLED},
        Status.COUNTING: {Status.IMPORTING, Status.FAILED, Status.CANCELLED},
        Status.IMPORTING: {Status.COMPLETED, Status.FAILED, Status.CANCELLED},
        Status.COMPLETED: set(),
        Status.FAILED: set(),
        Status.CANCELLED: set(),
    }

    ERROR_MESSAGE_MAX_LENGTH = 500

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="email_imports"
    )
    time_range = models.CharField(max_length=16, choices=TimeRange.choices)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    total_emails = models.PositiveIntegerField(default=0)
    imported_emails = models.PositiveIntegerField(default=0)
    skipped_emails = models.PositiveIntegerField(default=0)
    failed_emails = models.PositiveIntegerField(default=0)
    enriched_emails = models.PositiveIntegerField(default=0)
    current_folder = models.CharField(max_length=32, choices=Folder.choices, blank=True, default="")
    next_link = models.TextField(blank=True, null=True)
    error_message = models.TextField(blank=True, default="")
    started_at = models.DateTimeField(blank=True, null=True)
    completed_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = EmailImportQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["user", "status"], name="mail_import_user_status_idx")]
        constraints = [
            models.UniqueConstraint(
                fields=["user"],
                condition=models.Q(status__in=["pending", "counting", "importing"]),
                name="mail_one_active_import_per_user",
            )
        ]

    def __str__(self):
        return f"EmailImport {self.pk} ({self.time_range}, {self.status})"

    @property
    def is_active(self) -> bool:
        return self.status in self.ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def can_cancel(self) -> bool:
        return self.is_active

    @property
    def processed_emails(self) -> int:
        return self.imported_emails + self.skipped_emails + self.failed_emails

    @property
    def progress_percentage(self) -> int:
        if not self.total_emails:
            return 0
        return min(100, round(self.processed_emails * 100 / self.total_emails))

    @property
    def cutoff_date(self):
        days = self.TIME_RANGE_DAYS[self.time_range]
        start = self.started_at or timezone.now()
        return (start - timedelta(days=days)).replace(hour=0, minute=0, second=0, microsecond=0)

    def can_transition_to(self, status) -> bool:
        return status in self.ALLOWED_TRANSITIONS.get(self.status, set())

    def transition_to(self, status, **fields):
        """Move to `status` (and set `fields`) in one save; rejects non-adjacent moves."""
        if not self.can_transition_to(status):
            raise InvalidTransition(f"EmailImport {self.pk}: cannot go from {self.status} to {status}")
        self.status = status
        for name, value in fields.items():
            setattr(self, name, value)
        self.save(update_fields=["status", "updated_at", *fields.keys()])

    def mark_failed(self, error):
        message = str(error) or error.__class__.__name__
        if len(message) > self.ERROR_MESSAGE_MAX_LENGTH:
            message = message[: self.ERROR_MESSAGE_MAX_LENGTH - 3] + "..."
        self.transition_to(
            self.Status.FAILED, error_message=message, completed_at=timezone.now()
        )

    def cancel(self):
        self.transition_to(self.Status.CANCELLED, completed_at=timezone.now())
