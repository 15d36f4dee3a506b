"""
Tests for Microsoft credential storage and the token lifecycle
(encryption at rest, proactive refresh, refresh-and-retry on 401).
No network: MSAL and Graph are mocked.
"""
from datetime import timedelta
from unittest import mock

from django.contrib.auth import get_user_model
from django.db import connection
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from accounts.fields import decrypt_value
from accounts.models import MicrosoftCredential
from accounts.services import CredentialManager, MicrosoftOAuthService, TokenRefreshError
from mail.graph_client import GraphApiError, TokenExpiredError


def make_credential(user, expires_in=timedelta(hours=1), **kwargs):
    defaults = {
        "microsoft_user_id": f"ms-{user.pk}",
        "email": f"{user.username}@example.com",
        "access_token": "access-old",
        "refresh_token": "refresh-old",
        "expires_at": timezone.now() + expires_in,
        "scope": "User.Read Mail.Read offline_access",
    }
    defaults.update(kwargs)
    return MicrosoftCredential.objects.create(user=user, **defaults)


def refreshed_token_data(**overrides):
    data = {
        "access_token": "access-new",
        "refresh_token": "refresh-new",
        "expires_at": timezone.now() + timedelta(hours=1),
        "scope": "User.Read Mail.Read",
    }
    data.update(overrides)
    return data


class EncryptedTokenFieldTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="alice", password="pw")

    def test_tokens_are_encrypted_in_database(self):
        credential = make_credential(self.user, access_token="plain-access-token")
        with connection.cursor() as cursor:
            cursor.execute(
                "SELECT access_token FROM accounts_microsoftcredential WHERE id = %s",
                [credential.pk],
            )
            raw = cursor.fetchone()[0]
        self.assertNotEqual(raw, "plain-access-token")
        self.assertNotIn("plain-access-token", raw)
        self.assertEqual(decrypt_value(raw), "plain-access-token")

    def test_tokens_round_trip_through_the_model(self):
        credential = make_credential(self.user, refresh_token="plain-refresh-token")
        loaded = MicrosoftCredential.objects.get(pk=credential.pk)
        self.assertEqual(loaded.access_token, "access-old")
        self.assertEqual(loaded.refresh_token, "plain-refresh-token")

    def test_scopes_list(self):
        credential = make_credential(self.user, scope="User.Read  Mail.Read")
        self.assertEqual(credential.get_scopes_list(), ["User.Read", "Mail.Read"])


class CredentialManagerRefreshTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="bob", password="pw")
        self.oauth = mock.Mock()
        self.oauth.refresh.return_value = refreshed_token_data()

    def test_refreshes_when_expiring_within_buffer(self):
        credential = make_credential(self.user, expires_in=timedelta(minutes=4))
        manager = CredentialManager(credential, oauth=self.oauth)

        fresh = manager.ensure_fresh()

        self.oauth.refresh.assert_called_once_with(
            "refresh-old", ["User.Read", "Mail.Read", "offline_access"]
        )
        self.assertEqual(fresh.access_token, "access-new")
        stored = MicrosoftCredential.objects.get(pk=credential.pk)
        self.assertEqual(stored.access_token, "access-new")
        self.assertEqual(stored.refresh_token, "refresh-new")
        self.assertFalse(stored.token_expiring_soon())

    def test_does_not_refresh_outside_buffer(self):
        credential = make_credential(self.user, expires_in=timedelta(minutes=10))
        manager = CredentialManager(credential, oauth=self.oauth)

        fresh = manager.ensure_fresh()

        self.oauth.refresh.assert_not_called()
        self.assertEqual(fresh.access_token, "access-old")

    def test_refreshes_expired_token(self):
        credential = make_credential(self.user, expires_in=timedelta(minutes=-5))
        self.assertTrue(credential.token_expired())
        CredentialManager(credential, oauth=self.oauth).ensure_fresh()
        self.oauth.refresh.assert_called_once()

    def test_refresh_failure_propagates_and_keeps_stored_tokens(self):
        credential = make_credential(self.user, expires_in=timedelta(minutes=1))
        self.oauth.refresh.side_effect = TokenRefreshError("invalid_grant")
        manager = CredentialManager(credential, oauth=self.oauth)

        with self.assertRaises(TokenRefreshError):
            manager.ensure_fresh()

        stored = MicrosoftCredential.objects.get(pk=credential.pk)
        self.assertEqual(stored.access_token, "access-old")
        self.assertEqual(stored.refresh_token, "refresh-old")

    def test_refresh_failure_is_a_graph_api_error(self):
        self.assertTrue(issubclass(TokenRefreshError, GraphApiError))


class CredentialManagerCallTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="carol", password="pw")
        self.credential = make_credential(self.user)
        self.oauth = mock.Mock()
        self.oauth.refresh.return_value = refreshed_token_data()
        self.manager = CredentialManager(self.credential, oauth=self.oauth)

    def test_call_returns_operation_result(self):
        operation = mock.Mock(return_value={"id": "me"})
        self.assertEqual(self.manager.call(operation), {"id": "me"})
        self.oauth.refresh.assert_not_called()

    def test_401_refreshes_once_and_retries(self):
        tokens = []

        def operation(client):
            tokens.append(client._access_token)
            if len(tokens) == 1:
                raise TokenExpiredError("expired", status_code=401)
            return "ok"

        self.assertEqual(self.manager.call(operation), "ok")
        self.assertEqual(tokens, ["access-old", "access-new"])
        self.oauth.refresh.assert_called_once()

    def test_second_401_becomes_generic_api_error(self):
        operation = mock.Mock(side_effect=TokenExpiredError("expired", status_code=401))

        with self.assertRaises(GraphApiError) as ctx:
            self.manager.call(operation)

        self.assertNotIsInstance(ctx.exception, TokenExpiredError)
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(operation.call_count, 2)
        self.oauth.refresh.assert_called_once()

    def test_for_user_without_credential(self):
        other = get_user_model().objects.create_user(username="dave", password="pw")
        with self.assertRaises(MicrosoftCredential.DoesNotExist):
            CredentialManager.for_user(other)


class MicrosoftOAuthServiceTests(TestCase):
    def setUp(self):
        self.msal_app = mock.Mock()
        patcher = mock.patch.object(
            MicrosoftOAuthService, "get_msal_app", return_value=self.msal_app
        )
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_refresh_keeps_old_refresh_token_when_not_rotated(self):
        self.msal_app.acquire_token_by_refresh_token.return_value = {
            "access_token": "access-new",
            "expires_in": 3600,
            "scope": "User.Read Mail.Read",
        }

        data = MicrosoftOAuthService.refresh("refresh-old", ["User.Read", "offline_access", "openid"])

        self.msal_app.acquire_token_by_refresh_token.assert_called_once_with(
            refresh_token="refresh-old", scopes=["User.Read"]
        )
        self.assertEqual(data["access_token"], "access-new")
        self.assertEqual(data["refresh_token"], "refresh-old")
        self.assertGreater(data["expires_at"], timezone.now() + timedelta(minutes=55))

    def test_refresh_error_response_raises(self):
        self.msal_app.acquire_token_by_refresh_token.return_value = {
            "error": "invalid_grant",
            "error_description": "AADSTS70000: token revoked",
        }
        with self.assertRaises(TokenRefreshError) as ctx:
            MicrosoftOAuthService.refresh("refresh-old")
        self.assertIn("token revoked", str(ctx.exception))

    def test_refresh_transport_error_raises(self):
        self.msal_app.acquire_token_by_refresh_token.side_effect = ConnectionError("boom")
        with self.assertRaises(TokenRefreshError):
            MicrosoftOAuthService.refresh("refresh-old")

    def test_exchange_code_error_raises_value_error(self):
        self.msal_app.acquire_token_by_authorization_code.return_value = {"error": "invalid_grant"}
        with self.assertRaises(ValueError):
            MicrosoftOAuthService.exchange_code_for_token("code", "https://app/cb")

    def test_save_credential_replaces_existing(self):
        user = get_user_model().objects.create_user(username="erin", password="pw")
        make_credential(user)
        credential = MicrosoftOAuthService.save_credential(
            user,
            {"id": "ms-erin", "userPrincipalName": "erin@contoso.com"},
            refreshed_token_data(),
        )
        self.assertEqual(MicrosoftCredential.objects.filter(user=user).count(), 1)
        self.assertEqual(credential.email, "erin@contoso.com")
        self.assertEqual(credential.access_token, "access-new")


class MicrosoftOAuthViewTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="frank", password="pw")
        self.client.force_login(self.user)

    def test_callback_rejects_state_mismatch(self):
        session = self.client.session
        session["microsoft_oauth_state"] = "expected"
        session.save()

        with mock.patch.object(MicrosoftOAuthService, "exchange_code_for_token") as exchange:
            response = self.client.get(
                reverse("microsoft_oauth_callback"), {"code": "abc", "state": "forged"}
            )

        self.assertEqual(response.status_code, 302)
        exchange.assert_not_called()
        self.assertFalse(MicrosoftCredential.objects.filter(user=self.user).exists())

    @mock.patch("mail.tasks.setup_microsoft_subscriptions.delay")
    @mock.patch("accounts.views.GraphClient")
    @mock.patch.object(MicrosoftOAuthService, "exchange_code_for_token")
    def test_callback_stores_credential_and_sets_up_subscriptions(
        self, exchange, graph_client, setup_delay
    ):
        session = self.client.session
        session["microsoft_oauth_state"] = "state-1"
        session.save()
        exchange.return_value = refreshed_token_data()
        graph_client.return_value.me.return_value = {"id": "ms-frank", "mail": "frank@contoso.com"}

        response = self.client.get(
            reverse("microsoft_oauth_callback"), {"code": "abc", "state": "state-1"}
        )

        self.assertEqual(response.status_code, 302)
        credential = MicrosoftCredential.objects.get(user=self.user)
        self.assertEqual(credential.email, "frank@contoso.com")
        self.assertEqual(credential.refresh_token, "refresh-new")
        setup_delay.assert_called_once_with(self.user.pk)

    @mock.patch("accounts.views.SubscriptionService")
    def test_disconnect_removes_subscriptions_and_credential(self, service_cls):
        make_credential(self.user)
        service_cls.return_value.delete_all.return_value = 2

        response = self.client.post(reverse("microsoft_disconnect"))

        self.assertEqual(response.status_code, 302)
        service_cls.return_value.delete_all.assert_called_once_with()
        self.assertFalse(MicrosoftCredential.objects.filter(user=self.user).exists())
