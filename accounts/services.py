import logging
import secrets
from datetime import timedelta
from typing import Callable, Optional, Tuple, TypeVar

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from msal import ConfidentialClientApplication

from accounts.models import MicrosoftCredential
from mail.graph_client import GraphApiError, GraphClient, TokenExpiredError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenRefreshError(GraphApiError):
    """The refresh-token exchange failed (revoked grant, network error, ...)."""


class MicrosoftOAuthService:
    """OAuth flows against the Microsoft identity platform (v2 endpoint)"""

    # Note: 'openid', 'profile' and 'offline_access' are reserved scopes that MSAL
    # adds on its own (offline_access is what gets us a refresh token).
    # They must not be passed explicitly.
    SCOPES = [
        "User.Read",
        "Mail.Read",
    ]

    @staticmethod
    def get_msal_app() -> ConfidentialClientApplication:
        """Create MSAL ConfidentialClientApplication for the configured tenant"""
        tenant = settings.MICROSOFT_OAUTH_TENANT_ID
        authority = f"https://login.microsoftonline.com/{tenant}"
        return ConfidentialClientApplication(
            client_id=settings.MICROSOFT_OAUTH_CLIENT_ID,
            client_credential=settings.MICROSOFT_OAUTH_CLIENT_SECRET,
            authority=authority,
        )

    @staticmethod
    def get_authorization_url(redirect_uri: str, force_reauth: bool = False) -> Tuple[str, str]:
        """Get authorization URL and the CSRF state that must come back on the callback"""
        app = MicrosoftOAuthService.get_msal_app()
        state = secrets.token_urlsafe(32)
        auth_url = app.get_authorization_request_url(
            scopes=MicrosoftOAuthService.SCOPES,
            redirect_uri=redirect_uri,
            state=state,
            prompt="consent" if force_reauth else "select_account",
        )
        return auth_url, state

    @staticmethod
    def exchange_code_for_token(code: str, redirect_uri: str) -> dict:
        """Exchange authorization code for access and refresh tokens"""
        app = MicrosoftOAuthService.get_msal_app()
        result = app.acquire_token_by_authorization_code(
            code=code,
            scopes=MicrosoftOAuthService.SCOPES,
            redirect_uri=redirect_uri,
        )
        if "error" in result:
            raise ValueError(
                f"Token exchange failed: {result.get('error_description', result.get('error'))}"
            )
        return MicrosoftOAuthService._token_data(result)

    @staticmethod
    def refresh(refresh_token: str, scopes: Optional[list] = None) -> dict:
        """Run the refresh-token grant. Raises TokenRefreshError on any failure."""
        app = MicrosoftOAuthService.get_msal_app()
        # Reserved scopes come back in the granted list but MSAL refuses them as input
        requested = [
            s for s in (scopes or MicrosoftOAuthService.SCOPES)
            if s.lower() not in ("openid", "profile", "offline_access")
        ] or MicrosoftOAuthService.SCOPES
        try:
            result = app.acquire_token_by_refresh_token(
                refresh_token=refresh_token,
                scopes=requested,
            )
        except Exception as e:
            raise TokenRefreshError(f"Token refresh failed: {e}") from e

        if "error" in result:
            raise TokenRefreshError(
                f"Token refresh failed: {result.get('error_description', result.get('error'))}"
            )
        return MicrosoftOAuthService._token_data(result, fallback_refresh_token=refresh_token)

    @staticmethod
    def _token_data(result: dict, fallback_refresh_token: str = "") -> dict:
        expires_in = int(result.get("expires_in") or 3600)
        return {
            "access_token": result["access_token"],
            # Always save the refresh token in case it was rotated
            "refresh_token": result.get("refresh_token") or fallback_refresh_token,
            "expires_at": timezone.now() + timedelta(seconds=expires_in),
            "scope": result.get("scope") or "",
        }

    @staticmethod
    def save_credential(user, profile: dict, token_data: dict) -> MicrosoftCredential:
        """Create or replace the user's credential after a successful code exchange"""
        credential, _ = MicrosoftCredential.objects.update_or_create(
            user=user,
            defaults={
                "microsoft_user_id": profile["id"],
                "email": profile.get("mail") or profile.get("userPrincipalName") or "",
                "access_token": token_data["access_token"],
                "refresh_token": token_data["refresh_token"],
                "expires_at": token_data["expires_at"],
                "scope": token_data.get("scope", ""),
            },
        )
        return credential


class CredentialManager:
    """
    Owns token freshness for one MicrosoftCredential.

    Every Graph call in the app goes through ensure_fresh()/call(), so there is
    no other way to obtain a usable access token.
    """

    def __init__(self, credential: MicrosoftCredential, oauth=MicrosoftOAuthService):
        self.credential = credential
        self.oauth = oauth

    @classmethod
    def for_user(cls, user) -> "CredentialManager":
        """Raises MicrosoftCredential.DoesNotExist when the user is not connected."""
        return cls(MicrosoftCredential.objects.get(user=user))

    def ensure_fresh(self, force: bool = False) -> MicrosoftCredential:
        """Refresh the access token if it expires within the buffer (or when forced)."""
        if not force and not self.credential.token_expiring_soon():
            return self.credential

        with transaction.atomic():
            # Another worker may have refreshed while we waited for the row lock
            locked = MicrosoftCredential.objects.select_for_update().get(pk=self.credential.pk)
            if not force and not locked.token_expiring_soon():
                self.credential = locked
                return locked

            token_data = self.oauth.refresh(locked.refresh_token, locked.get_scopes_list())
            locked.access_token = token_data["access_token"]
            locked.refresh_token = token_data["refresh_token"]
            locked.expires_at = token_data["expires_at"]
            if token_data.get("scope"):
                locked.scope = token_data["scope"]
            locked.save(
                update_fields=["access_token", "refresh_token", "expires_at", "scope", "updated_at"]
            )

        logger.info(
            "Refreshed Microsoft access token for user %s (expires %s)",
            locked.user_id,
            locked.expires_at.isoformat(),
        )
        self.credential = locked
        return locked

    def client(self, force_refresh: bool = False) -> GraphClient:
        credential = self.ensure_fresh(force=force_refresh)
        return GraphClient(credential.access_token)

    def call(self, operation: Callable[[GraphClient], T]) -> T:
        """
        Run operation(client). A 401 triggers one forced refresh and one retry;
        a second 401 is reported as a generic GraphApiError.
        """
        try:
            return operation(self.client())
        except TokenExpiredError:
            logger.info(
                "Graph rejected token for user %s, refreshing and retrying once",
                self.credential.user_id,
            )
        try:
            return operation(self.client(force_refresh=True))
        except TokenExpiredError as e:
            raise GraphApiError(
                "Access token rejected again after refresh", status_code=401
            ) from e
