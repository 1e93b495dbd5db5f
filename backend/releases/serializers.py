from rest_framework import serializers
from contracts.models import PLATFORMS


class AppVersionSerializer(serializers.Serializer):
    """
    Serializer for AppVersion registry records.
    Field names match the documents stored in the registry.
    """
    id = serializers.CharField(read_only=True)
    version = serializers.CharField(read_only=True)
    version_code = serializers.IntegerField(read_only=True)
    download_url = serializers.CharField(read_only=True)
    release_notes = serializers.CharField(read_only=True)
    file_size = serializers.IntegerField(read_only=True)
    checksum = serializers.CharField(read_only=True)
    created_at = serializers.CharField(read_only=True)
    updated_at = serializers.CharField(read_only=True)
    storage_path = serializers.CharField(read_only=True)
    platform = serializers.CharField(read_only=True)


class UpdateCheckSerializer(serializers.Serializer):
    """Request body for POST check-update."""
    current_version = serializers.CharField(max_length=64)
    current_code = serializers.IntegerField(min_value=1)
    platform = serializers.ChoiceField(
        choices=sorted(PLATFORMS),
        error_messages={'invalid_choice': 'Invalid platform'},
    )


class UpdateCheckResultSerializer(serializers.Serializer):
    """
    Response body for POST check-update.

    latest_version and change_log are omitted when no build is published
    for the platform.
    """
    update_available = serializers.BooleanField()
    is_mandatory = serializers.BooleanField()
    latest_version = AppVersionSerializer()
    change_log = serializers.CharField()

    def to_representation(self, instance):
        data = super().to_representation(instance)
        if instance.latest_version is None:
            return {'update_available': data['update_available']}
        return data
