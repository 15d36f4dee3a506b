import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Contact",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("email", models.EmailField(max_length=255)),
                ("name", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="contacts", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["email"],
                "unique_together": {("user", "email")},
            },
        ),
        migrations.CreateModel(
            name="EmailMessage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("graph_id", models.CharField(max_length=512)),
                ("conversation_id", models.CharField(blank=True, default="", max_length=512)),
                ("internet_message_id", models.CharField(blank=True, default="", max_length=512)),
                ("subject", models.CharField(blank=True, default="", max_length=512)),
                ("from_address", models.CharField(blank=True, default="", max_length=255)),
                ("from_name", models.CharField(blank=True, default="", max_length=255)),
                ("to_addresses", models.JSONField(blank=True, default=list)),
                ("cc_addresses", models.JSONField(blank=True, default=list)),
                ("sent_at", models.DateTimeField(blank=True, null=True)),
                ("body_html", models.TextField(blank=True, default="")),
                ("body_plain", models.TextField(blank=True, default="")),
                ("source_type", models.CharField(choices=[("graph", "Microsoft Graph")], default="graph", max_length=16)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("contact", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="email_messages", to="mail.contact")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="email_messages", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-sent_at", "-created_at"],
                "indexes": [
                    models.Index(fields=["user", "sent_at"], name="mail_msg_user_sent_idx"),
                    models.Index(fields=["user", "from_address"], name="mail_msg_user_from_idx"),
                ],
                "unique_together": {("user", "graph_id")},
            },
        ),
        migrations.CreateModel(
            name="EmailAttachment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider_attachment_id", models.CharField(blank=True, default="", max_length=512)),
                ("filename", models.CharField(blank=True, default="", max_length=255)),
                ("content_type", models.CharField(blank=True, default="", max_length=128)),
                ("size_bytes", models.PositiveIntegerField(default=0)),
                ("is_inline", models.BooleanField(default=False)),
                ("content_id", models.CharField(blank=True, default="", max_length=255)),
                ("content", models.BinaryField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("email_message", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="attachments", to="mail.emailmessage")),
            ],
            options={
                "ordering": ["filename", "pk"],
            },
        ),
        migrations.CreateModel(
            name="MicrosoftSubscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("subscription_id", models.CharField(max_length=255, unique=True)),
                ("resource", models.CharField(max_length=512)),
                ("folder", models.CharField(choices=[("inbox", "Inbox"), ("sentitems", "Sent items")], max_length=32)),
                ("expires_at", models.DateTimeField()),
                ("client_state", models.CharField(max_length=128)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="microsoft_subscriptions", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "indexes": [models.Index(fields=["expires_at"], name="mail_sub_expires_idx")],
                "unique_together": {("user", "folder")},
            },
        ),
        migrations.CreateModel(
            name="EmailImport",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("time_range", models.CharField(choices=[("3_months", "Last 3 months"), ("1_year", "Last year"), ("3_years", "Last 3 years")], max_length=16)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("counting", "Counting"), ("importing", "Importing"), ("completed", "Completed"), ("failed", "Failed"), ("cancelled", "Cancelled")], default="pending", max_length=16)),
                ("total_emails", models.PositiveIntegerField(default=0)),
                ("imported_emails", models.PositiveIntegerField(default=0)),
                ("skipped_emails", models.PositiveIntegerField(default=0)),
                ("failed_emails", models.PositiveIntegerField(default=0)),
                ("enriched_emails", models.PositiveIntegerField(default=0)),
                ("current_folder", models.CharField(blank=True, choices=[("inbox", "Inbox"), ("sentitems", "Sent items")], default="", max_length=32)),
                ("next_link", models.TextField(blank=True, null=True)),
                ("error_message", models.TextField(blank=True, default="")),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="email_imports", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["user", "status"], name="mail_import_user_status_idx")],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status__in", ["pending", "counting", "importing"])),
                        fields=("user",),
                        name="mail_one_active_import_per_user",
                    )
                ],
            },
        ),
    ]
