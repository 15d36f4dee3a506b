"""
Tests for the mail sync engine: Graph client error mapping, message import,
webhook subscriptions and ingress, the historical import state machine and
the Celery tasks around them. Graph is always mocked; Celery is never needed.
"""
import json
from datetime import datetime, timedelta, timezone as utc_tz
from io import StringIO
from unittest import mock

import requests
from celery.exceptions import Retry
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import IntegrityError, transaction
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from accounts.models import MicrosoftCredential
from accounts.services import CredentialManager
from mail.graph_client import GraphApiError, GraphClient, TokenExpiredError
from mail.historical_import import (
    HistoricalImportOrchestrator,
    ImportRequestError,
    ImportStepLocked,
    cancel_historical_import,
    start_historical_import,
)
from mail.models import (
    Contact,
    EmailAttachment,
    EmailImport,
    EmailMessage,
    InvalidTransition,
    MicrosoftSubscription,
)
from mail.services import (
    MessageImportService,
    SubscriptionError,
    SubscriptionService,
    parse_graph_datetime,
)
from mail.signals import email_imported
from mail.sync_status import acquire_import_lock, release_import_lock
from mail.tasks import (
    LOCK_MAX_RETRIES,
    LOCK_RETRY_COUNTDOWN,
    fetch_microsoft_email,
    renew_microsoft_subscriptions,
    run_historical_import_step,
)

User = get_user_model()

GRAPH_MESSAGE = {
    "id": "AAMk-1",
    "internetMessageId": "<abc@contoso.com>",
    "conversationId": "conv-1",
    "subject": "Quarterly numbers",
    "sentDateTime": "2026-10-01T09:30:00Z",
    "receivedDateTime": "2026-10-01T09:31:00Z",
    "from": {"emailAddress": {"address": "Jane.Doe@Contoso.com", "name": "Jane Doe"}},
    "toRecipients": [{"emailAddress": {"address": "me@example.com", "name": "Me"}}],
    "ccRecipients": [{"emailAddress": {"address": "", "name": "Nobody"}}],
    "body": {"contentType": "html", "content": "<p>Hello <b>there</b></p>"},
    "hasAttachments": False,
}


class FakeCredentials:
    """Stands in for CredentialManager: runs operations against a mock client."""

    def __init__(self, client):
        self.client = client

    def call(self, operation):
        return operation(self.client)


def make_user(username):
    return User.objects.create_user(username=username, email=f"{username}@example.com", password="pw")


def connect(user):
    return MicrosoftCredential.objects.create(
        user=user,
        microsoft_user_id=f"ms-{user.pk}",
        email=user.email,
        access_token="access",
        refresh_token="refresh",
        expires_at=timezone.now() + timedelta(hours=1),
        scope="User.Read Mail.Read",
    )


def fake_response(status_code=200, payload=None, text="", headers=None):
    response = mock.Mock()
    response.status_code = status_code
    response.headers = headers or {}
    if payload is None:
        response.content = text.encode()
        response.json.side_effect = ValueError("No JSON")
    else:
        response.content = json.dumps(payload).encode()
        response.json.return_value = payload
    response.text = text or response.content.decode()
    return response


@mock.patch("mail.graph_client.requests.request")
class GraphClientTests(TestCase):
    def setUp(self):
        self.client_ = GraphClient("token-123")
        patcher = mock.patch("mail.graph_client.time.sleep")
        self.sleep = patcher.start()
        self.addCleanup(patcher.stop)

    def test_success_returns_json_with_timeout_and_bearer(self, request):
        request.return_value = fake_response(200, {"id": "me-1"})

        self.assertEqual(self.client_.me(), {"id": "me-1"})

        args, kwargs = request.call_args
        self.assertEqual(args, ("GET", "https://graph.microsoft.com/v1.0/me"))
        self.assertEqual(kwargs["timeout"], 30)
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer token-123")

    def test_empty_success_body(self, request):
        request.return_value = fake_response(204, text="")
        self.assertTrue(self.client_.delete_subscription("sub-1"))
        self.assertEqual(request.call_args[0][0], "DELETE")

    def test_401_raises_token_expired(self, request):
        request.return_value = fake_response(401, {"error": {"code": "InvalidAuthenticationToken"}})
        with self.assertRaises(TokenExpiredError):
            self.client_.message("AAMk-1")

    def test_404_is_not_found(self, request):
        request.return_value = fake_response(404, {"error": {"code": "ResourceNotFound"}})
        with self.assertRaises(GraphApiError) as ctx:
            self.client_.message("AAMk-1")
        self.assertTrue(ctx.exception.is_not_found)
        self.assertNotIsInstance(ctx.exception, TokenExpiredError)

    def test_server_error_carries_status(self, request):
        request.return_value = fake_response(503, text="Service Unavailable")
        with self.assertRaises(GraphApiError) as ctx:
            self.client_.list_subscriptions()
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertFalse(ctx.exception.is_not_found)
        self.assertEqual(request.call_count, 3)
        self.assertEqual([c[0][0] for c in self.sleep.call_args_list], [2, 3])

    def test_throttled_request_honours_retry_after(self, request):
        request.side_effect = [
            fake_response(429, text="Too Many Requests", headers={"Retry-After": "7"}),
            fake_response(200, {"id": "me-1"}),
        ]

        self.assertEqual(self.client_.me(), {"id": "me-1"})

        self.assertEqual(request.call_count, 2)
        self.sleep.assert_called_once_with(7)

    def test_retry_after_is_capped(self, request):
        request.side_effect = [
            fake_response(429, headers={"Retry-After": "3600"}),
            fake_response(200, {"id": "me-1"}),
        ]
        self.client_.me()
        self.sleep.assert_called_once_with(60)

    def test_transient_server_error_recovers(self, request):
        request.side_effect = [fake_response(502, text="Bad Gateway"), fake_response(200, {"value": []})]
        self.assertEqual(self.client_.list_subscriptions(), {"value": []})
        self.sleep.assert_called_once_with(2)

    def test_client_errors_are_not_retried(self, request):
        for status_code, error in ((404, GraphApiError), (401, TokenExpiredError), (400, GraphApiError)):
            request.reset_mock()
            request.return_value = fake_response(status_code, {"error": {"code": "x"}})
            with self.assertRaises(error):
                self.client_.message("AAMk-1")
            self.assertEqual(request.call_count, 1)
        self.sleep.assert_not_called()

    def test_transport_error_becomes_api_error(self, request):
        request.side_effect = requests.Timeout("read timed out")
        with self.assertRaises(GraphApiError) as ctx:
            self.client_.me()
        self.assertIsNone(ctx.exception.status_code)
        self.assertEqual(request.call_count, 3)

    def test_transport_error_then_success(self, request):
        request.side_effect = [requests.ConnectionError("reset"), fake_response(200, {"id": "me-1"})]
        self.assertEqual(self.client_.me(), {"id": "me-1"})
        self.sleep.assert_called_once_with(2)

    def test_count_uses_advanced_query(self, request):
        request.return_value = fake_response(200, {"@odata.count": 42, "value": [{"id": "x"}]})

        count = self.client_.count_folder_messages("inbox", filter="receivedDateTime ge 2026-01-01T00:00:00Z")

        self.assertEqual(count, 42)
        kwargs = request.call_args[1]
        self.assertEqual(kwargs["params"]["$count"], "true")
        self.assertEqual(kwargs["params"]["$filter"], "receivedDateTime ge 2026-01-01T00:00:00Z")
        self.assertEqual(kwargs["headers"]["ConsistencyLevel"], "eventual")

    def test_next_page_follows_link_verbatim(self, request):
        link = "https://graph.microsoft.com/v1.0/me/mailFolders/inbox/messages?$skiptoken=abc"
        request.return_value = fake_response(200, {"value": []})

        self.client_.get_next_page(link)

        self.assertEqual(request.call_args[0][1], link)
        self.assertIsNone(request.call_args[1]["params"])

    def test_single_attachment_path(self, request):
        request.return_value = fake_response(200, {"id": "att-1"})
        self.assertEqual(self.client_.attachment("AAMk-1", "att-1"), {"id": "att-1"})
        self.assertEqual(
            request.call_args[0][1],
            "https://graph.microsoft.com/v1.0/me/messages/AAMk-1/attachments/att-1",
        )

    def test_create_subscription_body(self, request):
        request.return_value = fake_response(201, {"id": "sub-1"})
        expiration = datetime(2026, 10, 20, 12, 0, tzinfo=utc_tz.utc)

        self.client_.create_subscription(
            change_type="created",
            notification_url="https://app.example.com/webhooks/microsoft/",
            resource="me/mailFolders/inbox/messages",
            expiration_date_time=expiration,
            client_state="secret",
        )

        body = request.call_args[1]["json"]
        self.assertEqual(body["changeType"], "created")
        self.assertEqual(body["resource"], "me/mailFolders/inbox/messages")
        self.assertEqual(body["clientState"], "secret")
        self.assertEqual(body["expirationDateTime"], "2026-10-20T12:00:00+00:00")


class ParseGraphDatetimeTests(TestCase):
    def test_seven_digit_fraction_with_z(self):
        parsed = parse_graph_datetime("2026-10-21T10:00:00.1234567Z")
        self.assertEqual(parsed, datetime(2026, 10, 21, 10, 0, 0, 123456, tzinfo=utc_tz.utc))

    def test_blank_and_garbage(self):
        self.assertIsNone(parse_graph_datetime(None))
        self.assertIsNone(parse_graph_datetime("not a date"))


class MessageImportServiceTests(TestCase):
    def setUp(self):
        self.user = make_user("alice")
        self.graph = mock.Mock()
        self.graph.message.return_value = dict(GRAPH_MESSAGE)
        self.service = MessageImportService(self.user, credentials=FakeCredentials(self.graph))

    def test_imports_and_maps_fields(self):
        contact = Contact.objects.create(user=self.user, email="jane.doe@contoso.com", name="Jane")

        email_msg, created = self.service.import_by_id("AAMk-1")

        self.assertTrue(created)
        self.assertEqual(email_msg.graph_id, "AAMk-1")
        self.assertEqual(email_msg.subject, "Quarterly numbers")
        self.assertEqual(email_msg.from_address, "jane.doe@contoso.com")
        self.assertEqual(email_msg.from_name, "Jane Doe")
        self.assertEqual(email_msg.internet_message_id, "abc@contoso.com")
        self.assertEqual(email_msg.conversation_id, "conv-1")
        self.assertEqual(email_msg.to_addresses, [{"email": "me@example.com", "name": "Me"}])
        self.assertEqual(email_msg.cc_addresses, [{"email": "unknown@unknown", "name": "Nobody"}])
        self.assertEqual(email_msg.sent_at, datetime(2026, 10, 1, 9, 30, tzinfo=utc_tz.utc))
        self.assertEqual(email_msg.body_html, "<p>Hello <b>there</b></p>")
        self.assertEqual(email_msg.body_plain, "Hello there")
        self.assertEqual(email_msg.contact, contact)
        self.assertEqual(email_msg.source_type, EmailMessage.SourceType.GRAPH)

    def test_second_import_is_a_no_op(self):
        first, created = self.service.import_by_id("AAMk-1")
        again, created_again = self.service.import_by_id("AAMk-1")

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.pk, again.pk)
        self.assertEqual(self.graph.message.call_count, 1)
        self.assertEqual(EmailMessage.objects.filter(user=self.user).count(), 1)

    def test_same_graph_id_is_independent_per_user(self):
        other = make_user("bob")
        self.service.import_by_id("AAMk-1")
        _, created = MessageImportService(other, credentials=FakeCredentials(self.graph)).import_by_id("AAMk-1")
        self.assertTrue(created)
        self.assertEqual(EmailMessage.objects.filter(graph_id="AAMk-1").count(), 2)

    def test_concurrent_insert_returns_existing_row(self):
        def racing_fetch(graph_id, select=None):
            # The other path stores the row while this one is talking to Graph
            EmailMessage.objects.create(user=self.user, graph_id=graph_id, subject="winner")
            return dict(GRAPH_MESSAGE)

        self.graph.message.side_effect = racing_fetch

        email_msg, created = self.service.import_by_id("AAMk-1")

        self.assertFalse(created)
        self.assertEqual(email_msg.subject, "winner")
        self.assertEqual(EmailMessage.objects.filter(user=self.user, graph_id="AAMk-1").count(), 1)

    def test_sent_at_falls_back_to_received(self):
        message = dict(GRAPH_MESSAGE, sentDateTime=None)
        self.graph.message.return_value = message
        email_msg, _ = self.service.import_by_id("AAMk-1")
        self.assertEqual(email_msg.sent_at, datetime(2026, 10, 1, 9, 31, tzinfo=utc_tz.utc))

    def test_file_attachments_are_stored(self):
        self.graph.message.return_value = dict(GRAPH_MESSAGE, hasAttachments=True)
        self.graph.attachments.return_value = {
            "value": [
                {
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "id": "att-1",
                    "name": "report.pdf",
                    "contentType": "application/pdf",
                    "size": 5,
                    "isInline": False,
                    "contentBytes": "aGVsbG8=",
                },
                {
                    "@odata.type": "#microsoft.graph.itemAttachment",
                    "id": "att-2",
                    "name": "Forwarded message",
                },
            ]
        }

        email_msg, _ = self.service.import_by_id("AAMk-1")

        attachments = list(email_msg.attachments.all())
        self.assertEqual(len(attachments), 1)
        self.assertEqual(attachments[0].filename, "report.pdf")
        self.assertEqual(attachments[0].provider_attachment_id, "att-1")
        self.assertEqual(bytes(attachments[0].content), b"hello")

    def test_attachment_failure_does_not_fail_import(self):
        self.graph.message.return_value = dict(GRAPH_MESSAGE, hasAttachments=True)
        self.graph.attachments.side_effect = GraphApiError("boom", status_code=500)

        with self.assertLogs("mail.services", level="WARNING") as logs:
            email_msg, created = self.service.import_by_id("AAMk-1")

        self.assertTrue(created)
        self.assertFalse(EmailAttachment.objects.filter(email_message=email_msg).exists())
        self.assertIn(f"email id={email_msg.pk} graph_id=AAMk-1", "\n".join(logs.output))

    def test_signal_sent_after_commit_for_new_messages_only(self):
        receiver = mock.Mock()
        email_imported.connect(receiver, weak=False)
        self.addCleanup(email_imported.disconnect, receiver)

        with self.captureOnCommitCallbacks(execute=True):
            email_msg, _ = self.service.import_by_id("AAMk-1")
        with self.captureOnCommitCallbacks(execute=True):
            self.service.import_by_id("AAMk-1")

        receiver.assert_called_once()
        kwargs = receiver.call_args[1]
        self.assertEqual(kwargs["email_message"], email_msg)
        self.assertEqual(kwargs["user"], self.user)

    def test_fetch_error_propagates(self):
        self.graph.message.side_effect = GraphApiError("nope", status_code=404)
        with self.assertRaises(GraphApiError):
            self.service.import_by_id("AAMk-1")
        self.assertFalse(EmailMessage.objects.exists())


@override_settings(APP_URL="https://mail.example.com")
class SubscriptionServiceTests(TestCase):
    def setUp(self):
        self.user = make_user("carol")
        self.graph = mock.Mock()
        self.graph.create_subscription.side_effect = lambda **kw: {
            "id": f"sub-{kw['resource'].split('/')[2]}",
            "expirationDateTime": "2026-10-21T10:00:00.0000000Z",
        }
        self.service = SubscriptionService(self.user, credentials=FakeCredentials(self.graph))

    def _subscription(self, folder="inbox", subscription_id="old-sub", expires_in=timedelta(days=2)):
        return MicrosoftSubscription.objects.create(
            user=self.user,
            subscription_id=subscription_id,
            resource=f"me/mailFolders/{folder}/messages",
            folder=folder,
            expires_at=timezone.now() + expires_in,
            client_state="state",
        )

    def test_creates_one_subscription_per_folder(self):
        results = self.service.create_subscriptions()

        self.assertEqual(set(results), {"inbox", "sentitems"})
        subs = MicrosoftSubscription.objects.filter(user=self.user).order_by("folder")
        self.assertEqual([s.subscription_id for s in subs], ["sub-inbox", "sub-sentitems"])
        for sub in subs:
            self.assertEqual(sub.expires_at, datetime(2026, 10, 21, 10, 0, tzinfo=utc_tz.utc))
            self.assertGreaterEqual(len(sub.client_state), 32)
        kwargs = self.graph.create_subscription.call_args[1]
        self.assertEqual(kwargs["notification_url"], "https://mail.example.com/webhooks/microsoft/")
        self.assertEqual(kwargs["change_type"], "created")

    def test_client_states_are_unique(self):
        self.service.create_subscriptions()
        states = set(MicrosoftSubscription.objects.values_list("client_state", flat=True))
        self.assertEqual(len(states), 2)

    def test_recreating_replaces_existing_folder_subscription(self):
        self._subscription("inbox", "old-sub")

        self.service.create_for_folder("inbox")

        self.graph.delete_subscription.assert_called_once_with("old-sub")
        subs = MicrosoftSubscription.objects.filter(user=self.user, folder="inbox")
        self.assertEqual([s.subscription_id for s in subs], ["sub-inbox"])

    def test_delete_removes_local_row_when_remote_is_gone(self):
        sub = self._subscription()
        self.graph.delete_subscription.side_effect = GraphApiError("gone", status_code=404)

        self.service.delete(sub)

        self.assertFalse(MicrosoftSubscription.objects.filter(pk=sub.pk).exists())

    def test_delete_removes_local_row_on_other_errors(self):
        sub = self._subscription()
        self.graph.delete_subscription.side_effect = GraphApiError("down", status_code=503)
        self.service.delete(sub)
        self.assertFalse(MicrosoftSubscription.objects.filter(pk=sub.pk).exists())

    def test_renew_stores_provider_expiry(self):
        sub = self._subscription(expires_in=timedelta(minutes=10))
        self.graph.renew_subscription.return_value = {
            "id": "old-sub",
            "expirationDateTime": "2026-10-20T08:15:00Z",
        }

        self.service.renew(sub)

        requested = self.graph.renew_subscription.call_args[0][1]
        self.assertGreater(requested, timezone.now() + timedelta(days=2))
        sub.refresh_from_db()
        self.assertEqual(sub.expires_at, datetime(2026, 10, 20, 8, 15, tzinfo=utc_tz.utc))

    def test_renew_without_expiry_in_response_fails(self):
        sub = self._subscription()
        self.graph.renew_subscription.return_value = {"id": "old-sub"}
        with self.assertRaises(SubscriptionError):
            self.service.renew(sub)

    def test_renew_recreates_subscription_gone_at_microsoft(self):
        sub = self._subscription("inbox", "old-sub", timedelta(minutes=10))
        self.graph.renew_subscription.side_effect = GraphApiError("gone", status_code=404)

        renewed = self.service.renew(sub)

        self.assertEqual(renewed.subscription_id, "sub-inbox")
        self.assertEqual(renewed.folder, "inbox")
        self.assertFalse(MicrosoftSubscription.objects.filter(subscription_id="old-sub").exists())
        self.graph.create_subscription.assert_called_once()
        self.assertEqual(
            self.graph.create_subscription.call_args[1]["resource"], "me/mailFolders/inbox/messages"
        )

    def test_renew_other_errors_keep_the_subscription(self):
        sub = self._subscription()
        self.graph.renew_subscription.side_effect = GraphApiError("down", status_code=503)
        with self.assertRaises(GraphApiError):
            self.service.renew(sub)
        self.assertTrue(MicrosoftSubscription.objects.filter(pk=sub.pk).exists())
        self.graph.create_subscription.assert_not_called()

    @override_settings(APP_URL="")
    def test_missing_app_url_fails_before_touching_graph(self):
        self._subscription()
        with self.assertRaises(SubscriptionError):
            self.service.create_for_folder("inbox")
        self.graph.create_subscription.assert_not_called()
        self.graph.delete_subscription.assert_not_called()
        self.assertTrue(MicrosoftSubscription.objects.filter(subscription_id="old-sub").exists())

    def test_user_without_credential(self):
        service = SubscriptionService(make_user("nocred"))
        with self.assertRaises(SubscriptionError):
            service.create_for_folder("inbox")

    def test_expiry_querysets(self):
        soon = self._subscription("inbox", "soon", timedelta(minutes=10))
        gone = self._subscription("sentitems", "gone", timedelta(minutes=-1))
        self.assertEqual(set(MicrosoftSubscription.objects.expiring_soon()), {soon, gone})
        self.assertEqual(list(MicrosoftSubscription.objects.expired()), [gone])
        self.assertEqual(list(MicrosoftSubscription.objects.active()), [soon])
        self.assertTrue(soon.expiring_soon())
        self.assertFalse(soon.expired())

    def test_delete_all(self):
        self._subscription("inbox", "a")
        self._subscription("sentitems", "b")
        self.assertEqual(self.service.delete_all(), 2)
        self.assertFalse(MicrosoftSubscription.objects.filter(user=self.user).exists())


@mock.patch("mail.views.fetch_microsoft_email.delay")
class MicrosoftWebhookTests(TestCase):
    def setUp(self):
        self.user = make_user("dave")
        self.subscription = MicrosoftSubscription.objects.create(
            user=self.user,
            subscription_id="sub-1",
            resource="me/mailFolders/inbox/messages",
            folder="inbox",
            expires_at=timezone.now() + timedelta(days=2),
            client_state="correct-state",
        )
        self.url = reverse("microsoft_webhook")

    def _post(self, payload):
        body = payload if isinstance(payload, str) else json.dumps(payload)
        return self.client.post(self.url, data=body, content_type="application/json")

    def _notification(self, **overrides):
        notification = {
            "subscriptionId": "sub-1",
            "clientState": "correct-state",
            "changeType": "created",
            "resource": "Users/ms-1/Messages/AAMk-1",
            "resourceData": {"id": "AAMk-1"},
        }
        notification.update(overrides)
        return notification

    def test_validation_token_is_echoed(self, delay):
        response = self.client.post(f"{self.url}?validationToken=abc%20123", content_type="text/plain")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/plain")
        self.assertEqual(response.content, b"abc 123")
        delay.assert_not_called()

    def test_validation_token_in_form_body(self, delay):
        response = self.client.post(self.url, {"validationToken": "xyz"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, b"xyz")

    def test_valid_notification_enqueues_fetch(self, delay):
        response = self._post({"value": [self._notification()]})

        self.assertEqual(response.status_code, 202)
        delay.assert_called_once_with(self.user.pk, "AAMk-1")

    def test_client_state_mismatch_is_dropped(self, delay):
        response = self._post({"value": [self._notification(clientState="forged")]})
        self.assertEqual(response.status_code, 202)
        delay.assert_not_called()

    def test_unknown_subscription_is_dropped(self, delay):
        response = self._post({"value": [self._notification(subscriptionId="other")]})
        self.assertEqual(response.status_code, 202)
        delay.assert_not_called()

    def test_missing_resource_id_is_dropped(self, delay):
        response = self._post({"value": [self._notification(resourceData={})]})
        self.assertEqual(response.status_code, 202)
        delay.assert_not_called()

    def test_each_entry_processed_independently(self, delay):
        response = self._post(
            {
                "value": [
                    self._notification(clientState="forged"),
                    self._notification(resourceData={"id": "AAMk-2"}),
                ]
            }
        )
        self.assertEqual(response.status_code, 202)
        delay.assert_called_once_with(self.user.pk, "AAMk-2")

    def test_malformed_body_still_accepted(self, delay):
        response = self._post("{not json")
        self.assertEqual(response.status_code, 202)
        delay.assert_not_called()

    def test_enqueue_failure_still_accepted(self, delay):
        delay.side_effect = ConnectionError("broker down")
        response = self._post({"value": [self._notification()]})
        self.assertEqual(response.status_code, 202)

    def test_get_not_allowed(self, delay):
        self.assertEqual(self.client.get(self.url).status_code, 405)


class EmailImportModelTests(TestCase):
    def setUp(self):
        self.user = make_user("erin")

    def test_terminal_states_cannot_be_left(self):
        email_import = EmailImport.objects.create(user=self.user, time_range="3_months")
        email_import.cancel()
        with self.assertRaises(InvalidTransition):
            email_import.transition_to(EmailImport.Status.COUNTING)

    def test_skipping_states_is_rejected(self):
        email_import = EmailImport.objects.create(user=self.user, time_range="3_months")
        with self.assertRaises(InvalidTransition):
            email_import.transition_to(EmailImport.Status.COMPLETED)

    def test_one_active_import_per_user(self):
        EmailImport.objects.create(user=self.user, time_range="3_months")
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                EmailImport.objects.create(user=self.user, time_range="1_year")

    def test_finished_imports_do_not_block_new_ones(self):
        first = EmailImport.objects.create(user=self.user, time_range="3_months")
        first.mark_failed("boom")
        EmailImport.objects.create(user=self.user, time_range="1_year")
        self.assertEqual(EmailImport.objects.filter(user=self.user).count(), 2)

    def test_error_message_is_truncated(self):
        email_import = EmailImport.objects.create(user=self.user, time_range="3_months")
        email_import.mark_failed("x" * 600)
        self.assertEqual(len(email_import.error_message), 500)
        self.assertTrue(email_import.error_message.endswith("..."))

    def test_cutoff_date_is_midnight(self):
        email_import = EmailImport(
            user=self.user,
            time_range="3_months",
            started_at=datetime(2026, 10, 18, 15, 45, tzinfo=utc_tz.utc),
        )
        self.assertEqual(email_import.cutoff_date, datetime(2026, 7, 20, tzinfo=utc_tz.utc))

    def test_progress_percentage(self):
        email_import = EmailImport(
            user=self.user, time_range="1_year", total_emails=8, imported_emails=3, skipped_emails=1
        )
        self.assertEqual(email_import.processed_emails, 4)
        self.assertEqual(email_import.progress_percentage, 50)
        self.assertEqual(EmailImport(user=self.user, time_range="1_year").progress_percentage, 0)


class HistoricalImportOrchestratorTests(TestCase):
    NEXT_LINK = "https://graph.microsoft.com/v1.0/me/mailFolders/inbox/messages?$skiptoken=p2"

    def setUp(self):
        self.user = make_user("frank")
        self.graph = mock.Mock()
        self.graph.count_folder_messages.side_effect = lambda folder, filter=None: {
            "inbox": 3,
            "sentitems": 1,
        }[folder]
        self.pages = {
            "inbox": {"value": [{"id": "a"}, {"id": "b"}], "@odata.nextLink": self.NEXT_LINK},
            "sentitems": {"value": [{"id": "d"}]},
        }
        self.graph.folder_messages.side_effect = lambda folder, **kw: self.pages[folder]
        self.graph.get_next_page.return_value = {"value": [{"id": "c"}]}
        self.importer = mock.Mock()
        self.importer.import_by_id.side_effect = lambda graph_id: (mock.Mock(), graph_id != "c")
        self.email_import = EmailImport.objects.create(user=self.user, time_range="3_months")

    def _orchestrator(self, email_import=None):
        return HistoricalImportOrchestrator(
            email_import or self.email_import,
            credentials=FakeCredentials(self.graph),
            importer=self.importer,
        )

    def _import_in(self, status, **fields):
        EmailImport.objects.filter(pk=self.email_import.pk).update(
            status=status, started_at=timezone.now(), **fields
        )
        self.email_import.refresh_from_db()

    def test_full_run(self):
        orchestrator = self._orchestrator()
        statuses = []
        while orchestrator.advance():
            statuses.append(orchestrator.email_import.status)
        run = orchestrator.email_import
        statuses.append(run.status)

        self.assertEqual(
            statuses,
            ["counting", "importing", "importing", "importing", "completed"],
        )
        self.assertEqual(run.total_emails, 4)
        self.assertEqual(run.imported_emails, 3)
        self.assertEqual(run.skipped_emails, 1)
        self.assertEqual(run.failed_emails, 0)
        self.assertEqual(run.enriched_emails, 3)
        self.assertEqual(run.progress_percentage, 100)
        self.assertIsNotNone(run.started_at)
        self.assertIsNotNone(run.completed_at)
        self.assertIsNone(run.next_link)
        self.graph.get_next_page.assert_called_once_with(self.NEXT_LINK)
        self.assertEqual(
            [c[0][0] for c in self.graph.folder_messages.call_args_list], ["inbox", "sentitems"]
        )

    def test_date_filter_and_page_shape(self):
        self._import_in(EmailImport.Status.IMPORTING, current_folder="inbox")

        self._orchestrator().advance()

        folder, = self.graph.folder_messages.call_args[0]
        kwargs = self.graph.folder_messages.call_args[1]
        self.assertEqual(folder, "inbox")
        self.assertEqual(kwargs["top"], 50)
        self.assertEqual(kwargs["orderby"], "receivedDateTime desc")
        self.assertEqual(kwargs["select"], ["id"])
        cutoff = self.email_import.cutoff_date.strftime("%Y-%m-%dT%H:%M:%SZ")
        self.assertEqual(kwargs["filter"], f"receivedDateTime ge {cutoff}")
        self.assertTrue(cutoff.endswith("T00:00:00Z"))

    def test_resumes_from_saved_cursor(self):
        self._import_in(EmailImport.Status.IMPORTING, current_folder="inbox", next_link=self.NEXT_LINK)

        self.assertTrue(self._orchestrator().advance())

        self.graph.folder_messages.assert_not_called()
        self.graph.get_next_page.assert_called_once_with(self.NEXT_LINK)
        self.email_import.refresh_from_db()
        self.assertEqual(self.email_import.current_folder, "sentitems")
        self.assertIsNone(self.email_import.next_link)

    def test_cancelled_run_does_no_provider_io(self):
        self._import_in(EmailImport.Status.IMPORTING, current_folder="inbox")
        cancel_historical_import(self.email_import)

        self.assertFalse(self._orchestrator().advance())

        self.graph.folder_messages.assert_not_called()
        self.graph.get_next_page.assert_not_called()
        self.importer.import_by_id.assert_not_called()

    def test_cancel_during_page_keeps_status_and_counts(self):
        self._import_in(EmailImport.Status.IMPORTING, current_folder="inbox")

        def import_then_cancel(graph_id):
            if graph_id == "a":
                cancel_historical_import(self.email_import)
            return mock.Mock(), True

        self.importer.import_by_id.side_effect = import_then_cancel

        self.assertFalse(self._orchestrator().advance())

        self.email_import.refresh_from_db()
        self.assertEqual(self.email_import.status, EmailImport.Status.CANCELLED)
        self.assertEqual(self.email_import.imported_emails, 2)

    def test_page_fetch_failure_then_fail(self):
        self._import_in(EmailImport.Status.IMPORTING, current_folder="inbox")
        self.graph.folder_messages.side_effect = GraphApiError("Graph API error: 500", status_code=500)
        orchestrator = self._orchestrator()

        with self.assertRaises(GraphApiError):
            orchestrator.advance()
        orchestrator.fail(GraphApiError("Graph API error: 500", status_code=500))

        self.email_import.refresh_from_db()
        self.assertEqual(self.email_import.status, EmailImport.Status.FAILED)
        self.assertIn("500", self.email_import.error_message)
        self.assertEqual(self.email_import.imported_emails, 0)
        # The step lock is released even when a step raises
        self.assertTrue(acquire_import_lock(self.email_import.pk))
        release_import_lock(self.email_import.pk)

    def test_individual_message_failure_counts_and_continues(self):
        self._import_in(EmailImport.Status.IMPORTING, current_folder="inbox")

        def flaky(graph_id):
            if graph_id == "b":
                raise GraphApiError("Graph API error: 404", status_code=404)
            return mock.Mock(), True

        self.importer.import_by_id.side_effect = flaky

        self.assertTrue(self._orchestrator().advance())

        self.email_import.refresh_from_db()
        self.assertEqual(self.email_import.status, EmailImport.Status.IMPORTING)
        self.assertEqual(self.email_import.imported_emails, 1)
        self.assertEqual(self.email_import.failed_emails, 1)
        self.assertEqual(self.email_import.next_link, self.NEXT_LINK)

    def test_fail_does_not_override_terminal_state(self):
        self.email_import.cancel()
        orchestrator = self._orchestrator()
        orchestrator.fail("late error")
        self.email_import.refresh_from_db()
        self.assertEqual(self.email_import.status, EmailImport.Status.CANCELLED)
        self.assertEqual(self.email_import.error_message, "")

    def test_held_lock_raises_without_touching_graph(self):
        self._import_in(EmailImport.Status.IMPORTING, current_folder="inbox")
        self.assertTrue(acquire_import_lock(self.email_import.pk))
        self.addCleanup(release_import_lock, self.email_import.pk)

        with self.assertRaises(ImportStepLocked):
            self._orchestrator().advance()

        self.graph.folder_messages.assert_not_called()

    def test_duplicate_page_delta_is_dropped(self):
        self._import_in(EmailImport.Status.IMPORTING, current_folder="inbox")
        self._orchestrator().advance()
        stale = self._orchestrator()

        # Same page recorded again from the cursor the first step started at
        stale._record_page("inbox", None, {"imported": 2, "skipped": 0, "failed": 0}, self.NEXT_LINK)

        self.email_import.refresh_from_db()
        self.assertEqual(self.email_import.imported_emails, 2)
        self.assertEqual(self.email_import.next_link, self.NEXT_LINK)

    def test_counters_never_decrease(self):
        orchestrator = self._orchestrator()
        seen = []
        while orchestrator.advance():
            run = orchestrator.email_import
            seen.append((run.imported_emails, run.skipped_emails, run.failed_emails))
        for earlier, later in zip(seen, seen[1:]):
            for before, after in zip(earlier, later):
                self.assertLessEqual(before, after)


@mock.patch("mail.tasks.setup_microsoft_subscriptions.delay")
@mock.patch("mail.tasks.run_historical_import_step.delay")
class StartHistoricalImportTests(TestCase):
    def setUp(self):
        self.user = make_user("gina")

    def test_start_queues_first_step_and_subscriptions(self, step_delay, setup_delay):
        connect(self.user)
        with self.captureOnCommitCallbacks(execute=True):
            email_import = start_historical_import(self.user, "1_year")

        self.assertEqual(email_import.status, EmailImport.Status.PENDING)
        step_delay.assert_called_once_with(email_import.pk)
        setup_delay.assert_called_once_with(self.user.pk)

    def test_rejects_unknown_range(self, step_delay, setup_delay):
        connect(self.user)
        with self.assertRaises(ImportRequestError):
            start_historical_import(self.user, "10_years")
        self.assertFalse(EmailImport.objects.exists())

    def test_rejects_unconnected_user(self, step_delay, setup_delay):
        with self.assertRaises(ImportRequestError):
            start_historical_import(self.user, "1_year")

    def test_rejects_second_active_import(self, step_delay, setup_delay):
        connect(self.user)
        start_historical_import(self.user, "1_year")
        with self.assertRaises(ImportRequestError):
            start_historical_import(self.user, "3_months")
        self.assertEqual(EmailImport.objects.filter(user=self.user).count(), 1)

    def test_cancel_terminal_import_is_rejected(self, step_delay, setup_delay):
        email_import = EmailImport.objects.create(user=self.user, time_range="1_year")
        email_import.mark_failed("boom")
        with self.assertRaises(ImportRequestError):
            cancel_historical_import(email_import)


class RunHistoricalImportStepTaskTests(TestCase):
    def setUp(self):
        self.user = make_user("hank")
        self.email_import = EmailImport.objects.create(
            user=self.user,
            time_range="3_months",
            status=EmailImport.Status.COUNTING,
            started_at=timezone.now(),
        )

    def test_missing_credential_fails_the_run(self):
        result = run_historical_import_step(self.email_import.pk)

        self.email_import.refresh_from_db()
        self.assertEqual(result, {"status": "failed"})
        self.assertEqual(self.email_import.status, EmailImport.Status.FAILED)
        self.assertIn("not connected", self.email_import.error_message)

    @mock.patch.object(HistoricalImportOrchestrator, "advance", side_effect=RuntimeError("kaboom"))
    def test_unexpected_error_fails_the_run(self, advance):
        connect(self.user)
        run_historical_import_step(self.email_import.pk)
        self.email_import.refresh_from_db()
        self.assertEqual(self.email_import.status, EmailImport.Status.FAILED)
        self.assertEqual(self.email_import.error_message, "kaboom")

    @mock.patch.object(
        HistoricalImportOrchestrator,
        "advance",
        side_effect=GraphApiError("Graph API error: 503", status_code=503),
    )
    def test_api_errors_fail_the_run_after_retries(self, advance):
        connect(self.user)

        run_historical_import_step.apply(args=[self.email_import.pk])

        self.email_import.refresh_from_db()
        self.assertEqual(self.email_import.status, EmailImport.Status.FAILED)
        self.assertEqual(advance.call_count, run_historical_import_step.max_retries + 1)

    @mock.patch("mail.tasks.run_historical_import_step.delay")
    @mock.patch.object(HistoricalImportOrchestrator, "advance", return_value=True)
    def test_chains_next_step(self, advance, step_delay):
        connect(self.user)
        run_historical_import_step(self.email_import.pk)
        step_delay.assert_called_once_with(self.email_import.pk)

    def test_terminal_import_is_left_alone(self):
        self.email_import.cancel()
        self.assertEqual(run_historical_import_step(self.email_import.pk), {"status": "cancelled"})

    def test_missing_import(self):
        self.assertIn("skipped", run_historical_import_step(999999))

    @mock.patch.object(
        HistoricalImportOrchestrator, "advance", side_effect=ImportStepLocked("held")
    )
    def test_held_lock_reschedules_the_step(self, advance):
        connect(self.user)

        with mock.patch.object(run_historical_import_step, "retry", side_effect=Retry()) as retry:
            with self.assertRaises(Retry):
                run_historical_import_step(self.email_import.pk)

        retry.assert_called_once_with(
            exc=advance.side_effect, countdown=LOCK_RETRY_COUNTDOWN, max_retries=LOCK_MAX_RETRIES
        )
        self.email_import.refresh_from_db()
        self.assertEqual(self.email_import.status, EmailImport.Status.COUNTING)

    @mock.patch.object(
        HistoricalImportOrchestrator, "advance", side_effect=[ImportStepLocked("held"), False]
    )
    def test_step_runs_once_the_lock_is_released(self, advance):
        connect(self.user)

        run_historical_import_step.apply(args=[self.email_import.pk])

        self.assertEqual(advance.call_count, 2)
        self.email_import.refresh_from_db()
        self.assertEqual(self.email_import.status, EmailImport.Status.COUNTING)

    @mock.patch.object(
        HistoricalImportOrchestrator, "advance", side_effect=ImportStepLocked("held")
    )
    def test_gives_up_on_a_lock_held_too_long_without_failing_the_run(self, advance):
        connect(self.user)

        result = run_historical_import_step.apply(
            args=[self.email_import.pk], retries=LOCK_MAX_RETRIES
        ).get()

        self.assertEqual(result, {"skipped": "Step lock held"})
        self.email_import.refresh_from_db()
        self.assertEqual(self.email_import.status, EmailImport.Status.COUNTING)

    def test_step_task_is_acked_late(self):
        self.assertTrue(run_historical_import_step.acks_late)
        self.assertTrue(run_historical_import_step.reject_on_worker_lost)


class FetchMicrosoftEmailTaskTests(TestCase):
    def setUp(self):
        self.user = make_user("ivy")

    def test_disconnected_user_is_skipped(self):
        self.assertIn("skipped", fetch_microsoft_email(self.user.pk, "AAMk-1"))

    @mock.patch.object(MessageImportService, "import_by_id")
    def test_imports_message(self, import_by_id):
        connect(self.user)
        import_by_id.return_value = (mock.Mock(pk=7), True)
        self.assertEqual(
            fetch_microsoft_email(self.user.pk, "AAMk-1"), {"email_id": 7, "created": True}
        )
        import_by_id.assert_called_once_with("AAMk-1")


class RenewMicrosoftSubscriptionsTaskTests(TestCase):
    def setUp(self):
        self.user = make_user("jack")
        connect(self.user)

    def _subscription(self, user, subscription_id, folder, expires_in):
        return MicrosoftSubscription.objects.create(
            user=user,
            subscription_id=subscription_id,
            resource=f"me/mailFolders/{folder}/messages",
            folder=folder,
            expires_at=timezone.now() + expires_in,
            client_state="state",
        )

    def test_one_failure_does_not_stop_the_sweep(self):
        self._subscription(self.user, "sub-bad", "inbox", timedelta(minutes=10))
        good = self._subscription(self.user, "sub-good", "sentitems", timedelta(minutes=-5))
        other = make_user("kate")
        connect(other)
        self._subscription(other, "sub-far", "inbox", timedelta(days=2))
        disconnected = make_user("liam")
        self._subscription(disconnected, "sub-orphan", "inbox", timedelta(minutes=1))
        renewed = []

        def renew(service, subscription):
            if subscription.subscription_id == "sub-bad":
                raise GraphApiError("Graph API error: 500", status_code=500)
            renewed.append(subscription.subscription_id)
            return subscription

        with mock.patch.object(SubscriptionService, "renew", autospec=True, side_effect=renew):
            result = renew_microsoft_subscriptions()

        self.assertEqual(result, {"renewed": 1, "failed": 1, "skipped": 1})
        self.assertEqual(renewed, [good.subscription_id])

    @override_settings(APP_URL="https://mail.example.com")
    def test_subscription_gone_at_microsoft_is_recreated(self):
        self._subscription(self.user, "sub-gone", "inbox", timedelta(minutes=10))
        graph = mock.Mock()
        graph.renew_subscription.side_effect = GraphApiError("gone", status_code=404)
        graph.create_subscription.return_value = {
            "id": "sub-fresh",
            "expirationDateTime": "2026-10-21T10:00:00Z",
        }

        with mock.patch.object(
            CredentialManager, "call", autospec=True, side_effect=lambda manager, op: op(graph)
        ):
            result = renew_microsoft_subscriptions()

        self.assertEqual(result, {"renewed": 1, "failed": 0, "skipped": 0})
        subs = MicrosoftSubscription.objects.filter(user=self.user)
        self.assertEqual([s.subscription_id for s in subs], ["sub-fresh"])
        self.assertEqual(subs[0].folder, "inbox")
        self.assertEqual(
            graph.create_subscription.call_args[1]["notification_url"],
            "https://mail.example.com/webhooks/microsoft/",
        )


@mock.patch("mail.tasks.setup_microsoft_subscriptions.delay")
@mock.patch("mail.tasks.run_historical_import_step.delay")
class EmailImportApiTests(TestCase):
    def setUp(self):
        self.user = make_user("mona")
        connect(self.user)
        self.api = APIClient()
        self.api.force_authenticate(self.user)

    def test_start_import(self, step_delay, setup_delay):
        with self.captureOnCommitCallbacks(execute=True):
            response = self.api.post("/api/imports/", {"time_range": "1_year"}, format="json")

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["status"], "pending")
        self.assertEqual(response.data["time_range"], "1_year")
        step_delay.assert_called_once_with(response.data["id"])

    def test_start_with_invalid_range(self, step_delay, setup_delay):
        response = self.api.post("/api/imports/", {"time_range": "forever"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertFalse(EmailImport.objects.exists())

    def test_start_while_active_is_rejected(self, step_delay, setup_delay):
        EmailImport.objects.create(user=self.user, time_range="3_months")
        response = self.api.post("/api/imports/", {"time_range": "1_year"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("already running", response.data["detail"])

    def test_cancel(self, step_delay, setup_delay):
        email_import = EmailImport.objects.create(user=self.user, time_range="3_months")

        response = self.api.post(f"/api/imports/{email_import.pk}/cancel/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["status"], "cancelled")
        email_import.refresh_from_db()
        self.assertEqual(email_import.status, EmailImport.Status.CANCELLED)
        self.assertIsNotNone(email_import.completed_at)

    def test_cancel_finished_import(self, step_delay, setup_delay):
        email_import = EmailImport.objects.create(user=self.user, time_range="3_months")
        email_import.cancel()
        response = self.api.post(f"/api/imports/{email_import.pk}/cancel/")
        self.assertEqual(response.status_code, 400)

    def test_cannot_touch_other_users_import(self, step_delay, setup_delay):
        other = make_user("ned")
        email_import = EmailImport.objects.create(user=other, time_range="3_months")
        response = self.api.post(f"/api/imports/{email_import.pk}/cancel/")
        self.assertEqual(response.status_code, 404)

    def test_status_is_never_cached(self, step_delay, setup_delay):
        done = EmailImport.objects.create(user=self.user, time_range="3_months")
        done.mark_failed("boom")
        active = EmailImport.objects.create(
            user=self.user,
            time_range="1_year",
            status=EmailImport.Status.IMPORTING,
            total_emails=10,
            imported_emails=4,
        )

        response = self.api.get("/api/imports/status/")

        self.assertEqual(response.status_code, 200)
        self.assertIn("no-store", response["Cache-Control"])
        self.assertIn("no-cache", response["Cache-Control"])
        self.assertEqual(response["Pragma"], "no-cache")
        self.assertEqual(response.data["active"]["id"], active.pk)
        self.assertEqual(response.data["active"]["progress_percentage"], 40)
        self.assertEqual(
            {item["id"] for item in response.data["recent"]}, {active.pk, done.pk}
        )

    def test_requires_authentication(self, step_delay, setup_delay):
        response = APIClient().get("/api/imports/status/")
        self.assertIn(response.status_code, (401, 403))


@mock.patch("mail.tasks.run_historical_import_step.delay")
class HistoricalImportCommandTests(TestCase):
    def setUp(self):
        self.user = make_user("olga")

    def _run(self, *args):
        out = StringIO()
        call_command("historical_import", *args, "--user", "olga", stdout=out)
        return out.getvalue()

    def test_resume_requeues_active_import(self, step_delay):
        email_import = EmailImport.objects.create(
            user=self.user, time_range="3_months", status=EmailImport.Status.IMPORTING
        )

        output = self._run("resume")

        step_delay.assert_called_once_with(email_import.pk)
        self.assertIn(f"import {email_import.pk}", output)

    def test_resume_without_active_import(self, step_delay):
        EmailImport.objects.create(user=self.user, time_range="3_months").cancel()

        output = self._run("resume")

        step_delay.assert_not_called()
        self.assertIn("No active import", output)


class ProjectChecksTests(TestCase):
    def test_system_checks_pass(self):
        call_command("check", stdout=StringIO())
