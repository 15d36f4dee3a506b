import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "mailbridge.settings")

app = Celery("mailbridge")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()

# Subscriptions live ~3 days; renew anything inside the 30 minute buffer.
app.conf.beat_schedule = {
    "renew-microsoft-subscriptions": {
        "task": "mail.tasks.renew_microsoft_subscriptions",
        "schedule": crontab(minute="*/15"),
    },
}
