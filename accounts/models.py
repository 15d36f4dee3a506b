from datetime import timedelta

from django.conf import settings
from django.db import models
from django.utils import timezone

from accounts.fields import EncryptedTextField


class MicrosoftCredential(models.Model):
    """OAuth tokens for one user's linked Microsoft mailbox"""

    TOKEN_REFRESH_BUFFER = timedelta(minutes=5)

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="microsoft_credential",
    )
    microsoft_user_id = models.CharField(max_length=255, unique=True)
    email = models.EmailField(max_length=255)
    access_token = EncryptedTextField()
    refresh_token = EncryptedTextField()
    expires_at = models.DateTimeField()
    scope = models.TextField(
        blank=True,
        help_text="Space-separated list of OAuth scopes granted with this token",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["expires_at"], name="accounts_cred_expires_idx")]

    def __str__(self):
        return f"Microsoft credential for {self.email}"

    def token_expired(self) -> bool:
        return self.expires_at <= timezone.now()

    def token_expiring_soon(self) -> bool:
        return self.expires_at <= timezone.now() + self.TOKEN_REFRESH_BUFFER

    def get_scopes_list(self):
        """Get scopes as a list"""
        return [s for s in (self.scope or "").split() if s]
