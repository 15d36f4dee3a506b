import logging

from django.conf import settings
from django.contrib import messages
from django.contrib.auth.decorators import login_required
from django.shortcuts import redirect
from django.urls import reverse
from django.utils.crypto import constant_time_compare
from django.views.decorators.http import require_POST

from mail.graph_client import GraphClient, GraphClientError
from mail.services import SubscriptionService

from .models import MicrosoftCredential
from .services import MicrosoftOAuthService

logger = logging.getLogger(__name__)


@login_required
def microsoft_connect(request):
    """Initiate Microsoft OAuth connection"""
    redirect_uri = request.build_absolute_uri(reverse("microsoft_oauth_callback"))
    try:
        auth_url, state = MicrosoftOAuthService.get_authorization_url(redirect_uri)
    except Exception as e:
        logger.error("Error initiating Microsoft OAuth: %s", e)
        messages.error(request, "Could not start the Microsoft sign-in. Please try again.")
        return redirect(settings.LOGIN_REDIRECT_URL)
    # Store state in session for verification
    request.session["microsoft_oauth_state"] = state
    return redirect(auth_url)


@login_required
def microsoft_oauth_callback(request):
    """Handle Microsoft OAuth callback: store the credential and set up subscriptions"""
    error = request.GET.get("error")
    if error:
        logger.error("Microsoft OAuth error: %s", request.GET.get("error_description", error))
        messages.error(request, "Microsoft authorization failed.")
        return redirect(settings.LOGIN_REDIRECT_URL)

    expected_state = request.session.pop("microsoft_oauth_state", None)
    state = request.GET.get("state", "")
    if not expected_state or not constant_time_compare(expected_state, state):
        messages.error(request, "Invalid OAuth state. Please try connecting again.")
        return redirect(settings.LOGIN_REDIRECT_URL)

    code = request.GET.get("code")
    if not code:
        messages.error(request, "No authorization code received.")
        return redirect(settings.LOGIN_REDIRECT_URL)

    redirect_uri = request.build_absolute_uri(reverse("microsoft_oauth_callback"))
    try:
        token_data = MicrosoftOAuthService.exchange_code_for_token(code, redirect_uri)
        profile = GraphClient(token_data["access_token"]).me()
        credential = MicrosoftOAuthService.save_credential(request.user, profile, token_data)
    except (ValueError, KeyError, GraphClientError) as e:
        logger.error("Microsoft OAuth error: %s", e)
        messages.error(request, "Microsoft authorization failed.")
        return redirect(settings.LOGIN_REDIRECT_URL)

    from mail.tasks import setup_microsoft_subscriptions

    setup_microsoft_subscriptions.delay(request.user.pk)
    logger.info("Connected Microsoft account %s for user %s", credential.email, request.user.pk)
    messages.success(request, f"Connected Microsoft account {credential.email}.")
    return redirect(settings.LOGIN_REDIRECT_URL)


@login_required
@require_POST
def microsoft_disconnect(request):
    """Tear down webhook subscriptions, then forget the credential"""
    credential = MicrosoftCredential.objects.filter(user=request.user).first()
    if credential is None:
        messages.info(request, "No Microsoft account is connected.")
        return redirect(settings.LOGIN_REDIRECT_URL)

    deleted = SubscriptionService(request.user).delete_all()
    credential.delete()
    logger.info(
        "Disconnected Microsoft account for user %s (%s subscriptions removed)",
        request.user.pk,
        deleted,
    )
    messages.success(request, "Microsoft account disconnected.")
    return redirect(settings.LOGIN_REDIRECT_URL)
