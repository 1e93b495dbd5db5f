"""
Request logging middleware for the OTA API.
"""
import time
import logging

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware:
    """
    Middleware to log API request outcomes.

    Captures:
    - HTTP method and endpoint
    - Response status code
    - Request duration in milliseconds
    - Client IP address
    - Error message (if failed)

    Excludes /health so liveness probes do not flood the log. Uploads are
    expected to be slow and never trigger the slow-request warning.
    """

    EXCLUDED_PATHS = ['/health']
    SLOW_EXEMPT_SUFFIXES = ['/upload']
    SLOW_REQUEST_MS = 2000

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        if not self.should_log(request.path):
            return self.get_response(request)

        start_time = time.monotonic()
        response = self.get_response(request)
        duration_ms = int((time.monotonic() - start_time) * 1000)

        message = (
            f"{request.method} {request.path} -> {response.status_code} "
            f"({duration_ms}ms) from {self._get_client_ip(request)}"
        )
        if response.status_code >= 400:
            error = self._extract_error_message(response)
            logger.warning(f"{message}: {error}" if error else message)
        else:
            logger.info(message)

        if duration_ms > self.SLOW_REQUEST_MS and not any(
            request.path.endswith(s) for s in self.SLOW_EXEMPT_SUFFIXES
        ):
            logger.warning(
                f"Very slow request detected: {request.method} {request.path} "
                f"took {duration_ms}ms"
            )

        return response

    def should_log(self, path):
        return not any(path.startswith(p) for p in self.EXCLUDED_PATHS)

    def _extract_error_message(self, response):
        """Error text from a DRF error body, if there is one."""
        data = getattr(response, 'data', None)
        if isinstance(data, dict):
            for key in ('error', 'detail', 'message'):
                if key in data:
                    return str(data[key])
        return None

    def _get_client_ip(self, request):
        """
        Get client IP address from request.

        Handles proxy headers (X-Forwarded-For) appropriately.
        """
        x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
        if x_forwarded_for:
            return x_forwarded_for.split(',')[0].strip()
        return request.META.get('REMOTE_ADDR') or None
