"""
Security middleware for request size limiting.
"""
import logging

from django.conf import settings
from django.http import JsonResponse

logger = logging.getLogger(__name__)


class RequestSizeLimitMiddleware:
    """
    Rejects write requests whose declared body is larger than
    settings.MAX_REQUEST_SIZE_MB (10MB by default) with 413.
    """

    def __init__(self, get_response):
        self.get_response = get_response
        self.max_size = int(getattr(settings, "MAX_REQUEST_SIZE_MB", 10)) * 1024 * 1024

    def __call__(self, request):
        if request.method in ["POST", "PUT", "PATCH", "DELETE"]:
            content_length = request.META.get("CONTENT_LENGTH")

            if content_length:
                try:
                    content_length = int(content_length)
                except (ValueError, TypeError):
                    # Invalid content-length header, let it pass
                    content_length = 0

                if content_length > self.max_size:
                    logger.warning(
                        "Request size limit exceeded: %s bytes from IP %s",
                        content_length,
                        request.META.get("REMOTE_ADDR"),
                    )
                    return JsonResponse({
                        "error": "Request too large",
                        "max_size_mb": self.max_size / (1024 * 1024),
                        "your_size_mb": round(content_length / (1024 * 1024), 2),
                    }, status=413)

        return self.get_response(request)
