"""
Renew Microsoft Graph subscriptions that expire soon, without waiting for beat.
Runs the same sweep as the renew-microsoft-subscriptions periodic task.
"""
from django.core.management.base import BaseCommand

from mail.tasks import renew_microsoft_subscriptions


class Command(BaseCommand):
    help = "Renew Microsoft Graph webhook subscriptions that are close to expiring."

    def handle(self, *args, **options):
        result = renew_microsoft_subscriptions()
        style = self.style.SUCCESS if not result["failed"] else self.style.WARNING
        self.stdout.write(
            style(
                f"Renewed {result['renewed']}, failed {result['failed']}, "
                f"skipped {result['skipped']} subscription(s)."
            )
        )
