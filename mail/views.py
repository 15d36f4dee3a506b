import json
import logging

from django.http import HttpResponse
from django.utils.cache import add_never_cache_headers
from django.utils.crypto import constant_time_compare
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from .historical_import import (
    ImportRequestError,
    cancel_historical_import,
    start_historical_import,
)
from .models import EmailImport, MicrosoftSubscription
from .serializers import EmailImportSerializer, StartImportSerializer
from .tasks import fetch_microsoft_email

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


@csrf_exempt
@require_POST
def microsoft_webhook(request):
    """
    Graph change-notification endpoint.

    Validation handshake: echo validationToken as text/plain.
    Notifications: enqueue a fetch per valid entry and always answer 202, since
    Graph disables subscriptions whose endpoint keeps failing.
    """
    is_form = request.content_type in FORM_CONTENT_TYPES
    validation_token = request.GET.get("validationToken")
    if validation_token is None and is_form:
        validation_token = request.POST.get("validationToken")
    if validation_token:
        return HttpResponse(validation_token, content_type="text/plain", status=200)

    payload = {} if is_form else _parse_payload(request)
    notifications = payload.get("value") if isinstance(payload, dict) else None
    for notification in notifications or []:
        try:
            _process_notification(notification)
        except Exception:
            logger.exception("Webhook: failed to process notification")

    return HttpResponse(status=202)


def _parse_payload(request):
    try:
        return json.loads(request.body or b"{}")
    except (TypeError, ValueError):
        logger.warning("Webhook: unparseable notification body")
        return {}


def _process_notification(notification) -> bool:
    if not isinstance(notification, dict):
        return False
    subscription_id = notification.get("subscriptionId")
    client_state = notification.get("clientState")

    subscription = (
        MicrosoftSubscription.objects.filter(subscription_id=subscription_id)
        .only("user_id", "client_state")
        .first()
        if subscription_id
        else None
    )
    if subscription is None:
        logger.warning("Webhook: Unknown subscription %s", subscription_id)
        return False

    if not constant_time_compare(subscription.client_state or "", str(client_state or "")):
        logger.warning("Webhook: Invalid client_state for subscription %s", subscription_id)
        return False

    message_id = (notification.get("resourceData") or {}).get("id")
    if not message_id:
        logger.warning("Webhook: notification for %s has no resource id", subscription_id)
        return False

    logger.info("Webhook: Enqueuing fetch for message %s", message_id)
    fetch_microsoft_email.delay(subscription.user_id, message_id)
    return True


class EmailImportViewSet(
    mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet
):
    """Start, cancel and poll historical imports for the current user."""

    serializer_class = EmailImportSerializer

    def get_queryset(self):
        return EmailImport.objects.filter(user=self.request.user)

    def create(self, request):
        serializer = StartImportSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            email_import = start_historical_import(
                request.user, serializer.validated_data["time_range"]
            )
        except ImportRequestError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return Response(
            EmailImportSerializer(email_import).data, status=status.HTTP_201_CREATED
        )

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        try:
            email_import = cancel_historical_import(self.get_object())
        except ImportRequestError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return Response(EmailImportSerializer(email_import).data)

    @action(detail=False, methods=["get"], url_path="status")
    def import_status(self, request):
        """Polling endpoint; never cached so progress is always current."""
        queryset = self.get_queryset()
        active = queryset.active().first()
        recent = queryset.exclude(status=EmailImport.Status.PENDING).recent()
        response = Response(
            {
                "active": EmailImportSerializer(active).data if active else None,
                "recent": EmailImportSerializer(recent, many=True).data,
            }
        )
        add_never_cache_headers(response)
        response["Cache-Control"] = "no-cache, no-store, must-revalidate"
        response["Pragma"] = "no-cache"
        response["Expires"] = "0"
        return response
