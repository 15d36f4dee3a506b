from rest_framework import serializers

from .models import EmailImport


class EmailImportSerializer(serializers.ModelSerializer):
    processed_emails = serializers.IntegerField(read_only=True)
    progress_percentage = serializers.IntegerField(read_only=True)
    is_active = serializers.BooleanField(read_only=True)

    class Meta:
        model = EmailImport
        fields = [
            "id",
            "time_range",
            "status",
            "total_emails",
            "imported_emails",
            "skipped_emails",
            "failed_emails",
            "enriched_emails",
            "processed_emails",
            "progress_percentage",
            "is_active",
            "current_folder",
            "error_message",
            "started_at",
            "completed_at",
            "created_at",
        ]
        read_only_fields = fields


class StartImportSerializer(serializers.Serializer):
    time_range = serializers.ChoiceField(choices=EmailImport.TimeRange.choices)
