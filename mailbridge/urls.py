from django.contrib import admin
from django.urls import include, path
from rest_framework import routers

from accounts.views import (
    microsoft_connect,
    microsoft_disconnect,
    microsoft_oauth_callback,
)
from mail.views import EmailImportViewSet, microsoft_webhook

router = routers.DefaultRouter()
router.register("imports", EmailImportViewSet, basename="emailimport")

urlpatterns = [
    # Microsoft account linking
    path("auth/microsoft/connect/", microsoft_connect, name="microsoft_connect"),
    path("auth/microsoft/callback/", microsoft_oauth_callback, name="microsoft_oauth_callback"),
    path("auth/microsoft/disconnect/", microsoft_disconnect, name="microsoft_disconnect"),
    # Graph change notifications
    path("webhooks/microsoft/", microsoft_webhook, name="microsoft_webhook"),
    # Admin & API
    path("admin/", admin.site.urls),
    path("api/", include(router.urls)),
    path("api-auth/", include("rest_framework.urls")),
]
