"""Request-level middleware for the storefront API.

``RequestIdMiddleware`` gives every request a correlation id. A client may
send its own in ``X-Request-ID``; otherwise a UUID4 is generated. The id is
stored on ``request.request_id`` and in ``REQUEST_ID_CTX`` so loggers and the
stock-service client can read it without the request object, and it is
echoed back in the ``X-Request-ID`` response header.

``ApiSizeLimitMiddleware`` rejects oversized bodies on ``/api/`` routes with
413 before any view parses them.
"""

import contextvars
import logging
import os
import re
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger("gateway")

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))

# Client ids end up in logs and downstream headers
_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


class RequestIdMiddleware(MiddlewareMixin):
    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER)
        if not rid or not _SAFE_ID.match(rid):
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        response[self.RESPONSE_HEADER] = getattr(request, "request_id", REQUEST_ID_CTX.get())
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            REQUEST_ID_CTX.reset(token)
            request._request_id_token = None
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
            logger.warning("request body too large", extra={"path": request.path, "bytes": int(clen)})
            return JsonResponse(
                {"detail": "PAYLOAD_TOO_LARGE", "message": "Request body is too large.", "step": "gateway"},
                status=413,
            )
        return None
