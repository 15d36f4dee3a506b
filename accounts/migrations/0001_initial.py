import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

import accounts.fields


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="MicrosoftCredential",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("microsoft_user_id", models.CharField(max_length=255, unique=True)),
                ("email", models.EmailField(max_length=255)),
                ("access_token", accounts.fields.EncryptedTextField()),
                ("refresh_token", accounts.fields.EncryptedTextField()),
                ("expires_at", models.DateTimeField()),
                ("scope", models.TextField(blank=True, help_text="Space-separated list of OAuth scopes granted with this token")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("user", models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name="microsoft_credential", to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "indexes": [models.Index(fields=["expires_at"], name="accounts_cred_expires_idx")],
            },
        ),
    ]
