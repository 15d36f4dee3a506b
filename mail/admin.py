from django.contrib import admin

from .models import Contact, EmailAttachment, EmailImport, EmailMessage, MicrosoftSubscription


@admin.register(Contact)
class ContactAdmin(admin.ModelAdmin):
    list_display = ("email", "name", "user")
    search_fields = ("email", "name")


@admin.register(EmailMessage)
class EmailMessageAdmin(admin.ModelAdmin):
    list_display = ("subject", "from_address", "user", "sent_at")
    search_fields = ("subject", "from_address", "graph_id")
    list_filter = ("source_type",)


@admin.register(EmailAttachment)
class EmailAttachmentAdmin(admin.ModelAdmin):
    list_display = ("filename", "email_message", "content_type", "size_bytes")
    search_fields = ("filename",)
    exclude = ("content",)


@admin.register(MicrosoftSubscription)
class MicrosoftSubscriptionAdmin(admin.ModelAdmin):
    list_display = ("subscription_id", "user", "folder", "expires_at")
    search_fields = ("subscription_id",)
    list_filter = ("folder",)
    exclude = ("client_state",)


@admin.register(EmailImport)
class EmailImportAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "user",
        "time_range",
        "status",
        "total_emails",
        "imported_emails",
        "skipped_emails",
        "failed_emails",
        "created_at",
    )
    list_filter = ("status", "time_range")
    readonly_fields = ("next_link", "error_message", "started_at", "completed_at")
