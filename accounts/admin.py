from django.contrib import admin

from .models import MicrosoftCredential


@admin.register(MicrosoftCredential)
class MicrosoftCredentialAdmin(admin.ModelAdmin):
    list_display = ("email", "user", "expires_at", "updated_at")
    search_fields = ("email", "microsoft_user_id")
    ordering = ("email",)
    # Tokens never leave the database through the admin
    exclude = ("access_token", "refresh_token")
    readonly_fields = ("microsoft_user_id", "expires_at", "scope", "created_at", "updated_at")
