import logging

from django.conf import settings
from django.http import StreamingHttpResponse
from rest_framework import status, viewsets
from rest_framework.decorators import api_view
from rest_framework.response import Response

from .serializers import AppVersionSerializer, UpdateCheckResultSerializer, UpdateCheckSerializer
from .services import DistributionService, PublishService, ServiceBackends, VersionResolver
from .services.exceptions import (
    ReleaseError,
    ReleaseNotFoundError,
    ReleaseValidationError,
    UploadTimeoutError,
    VersionConflictError,
)

logger = logging.getLogger(__name__)


ERROR_STATUS = [
    (ReleaseValidationError, status.HTTP_400_BAD_REQUEST),
    (VersionConflictError, status.HTTP_409_CONFLICT),
    (ReleaseNotFoundError, status.HTTP_404_NOT_FOUND),
    (UploadTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
]


def error_response(exc: ReleaseError) -> Response:
    """Single JSON error body for a service failure."""
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for exc_class, exc_status in ERROR_STATUS:
        if isinstance(exc, exc_class):
            code = exc_status
            break
    body = {'error': exc.message}
    body.update(exc.details)
    return Response(body, status=code)


def get_resolver():
    return VersionResolver(ServiceBackends.get_registry())


def get_publisher():
    return PublishService(
        ServiceBackends.get_registry(),
        ServiceBackends.get_blob_store(),
        upload_timeout=getattr(settings, 'OTA_UPLOAD_TIMEOUT', 600),
        make_public=getattr(settings, 'OTA_MAKE_PUBLIC', True),
    )


def get_distributor():
    return DistributionService(
        ServiceBackends.get_registry(),
        ServiceBackends.get_blob_store(),
        chunk_size=getattr(settings, 'OTA_STREAM_CHUNK_SIZE', 65536),
    )


@api_view(['POST'])
def check_update(request):
    """
    Tell a client whether a newer build exists for its platform.

    Body:
        current_version (str), current_code (int >= 1), platform ('android' | 'ios')

    Returns:
        {
            "update_available": true,
            "is_mandatory": false,
            "latest_version": {...},
            "change_log": "release notes of the latest build"
        }
    Only update_available is returned when nothing is published for the platform.
    """
    serializer = UpdateCheckSerializer(data=request.data)
    if not serializer.is_valid():
        message = 'Invalid platform' if 'platform' in serializer.errors else 'Invalid request'
        return Response(
            {'error': message, 'details': serializer.errors},
            status=status.HTTP_400_BAD_REQUEST
        )

    try:
        result = get_resolver().resolve(
            serializer.validated_data['platform'],
            serializer.validated_data['current_code'],
        )
    except ReleaseError as e:
        return error_response(e)

    return Response(UpdateCheckResultSerializer(result).data)


@api_view(['POST'])
def upload(request):
    """
    Publish a new build.

    Multipart form: file, version, version_code, platform (default android),
    release_notes.
    """
    file_obj = request.FILES.get('file')
    try:
        record = get_publisher().publish(
            platform=request.data.get('platform'),
            version=request.data.get('version'),
            version_code=request.data.get('version_code'),
            release_notes=request.data.get('release_notes'),
            file_obj=file_obj,
            filename=file_obj.name if file_obj else None,
        )
    except ReleaseError as e:
        return error_response(e)

    return Response(
        {
            'message': 'Version uploaded successfully',
            'version': AppVersionSerializer(record).data,
            'download_url': record.download_url,
        },
        status=status.HTTP_201_CREATED
    )


@api_view(['GET'])
def download(request, version):
    """
    Stream the binary of `version` for ?platform= (android by default).

    Headers are committed before streaming starts; a storage failure in the
    middle of the body only truncates it.
    """
    try:
        binary = get_distributor().download(version, request.GET.get('platform'))
    except ReleaseError as e:
        return error_response(e)

    response = StreamingHttpResponse(binary.chunks, content_type=binary.content_type)
    response['Content-Description'] = 'File Transfer'
    response['Content-Disposition'] = f'attachment; filename={binary.filename}'
    response['Content-Length'] = str(binary.content_length)
    return response


class AppVersionViewSet(viewsets.ViewSet):
    """
    Published builds.

    Provides:
    - list: all builds, newest first; ?platform= restricts to one platform
    - destroy: delete a build's binary and registry record
    """

    def list(self, request):
        try:
            records = get_distributor().list_versions(request.GET.get('platform') or None)
        except ReleaseError as e:
            return error_response(e)
        return Response(AppVersionSerializer(records, many=True).data)

    def destroy(self, request, pk=None):
        try:
            get_distributor().delete(pk)
        except ReleaseError as e:
            return error_response(e)
        return Response({'message': 'Version deleted successfully'})


@api_view(['GET'])
def health(request):
    return Response({'status': 'ok'})
