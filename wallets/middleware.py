import logging
import time

logger = logging.getLogger(__name__)

LOGGED_BODY_METHODS = ("POST", "PUT", "PATCH")
MAX_LOGGED_BODY = 2048


def _request_body(request):
    if request.method not in LOGGED_BODY_METHODS:
        return ""
    if "application/json" not in request.META.get("CONTENT_TYPE", ""):
        return "<non-JSON body not logged>"
    try:
        return request.body[:MAX_LOGGED_BODY].decode("utf-8")
    except UnicodeDecodeError:
        return "<Could not decode body>"


def _caller(request):
    # Set by DRF once the view has authenticated the request
    user = getattr(request, "user", None)
    return getattr(user, "user_id", None) or "anonymous"


class ApiLoggingMiddleware:
    """
    Logs one line per API request and one per response.

    The Authorization header is never logged; bodies are logged for JSON
    writes only and truncated.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        if not request.path.startswith("/api/"):
            return self.get_response(request)

        started = time.monotonic()
        logger.info(
            "API Request: %s %s Body: %s",
            request.method,
            request.get_full_path(),
            _request_body(request),
        )

        response = self.get_response(request)

        logger.info(
            "API Response: %s %s Status: %d User: %s Duration: %.1fms",
            request.method,
            request.get_full_path(),
            response.status_code,
            _caller(request),
            (time.monotonic() - started) * 1000,
        )
        return response
