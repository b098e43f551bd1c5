from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from contextvars import ContextVar

import logging
import time
import uuid

# Request ID of the HTTP request currently being served
request_id_context: ContextVar[str] = ContextVar("request_id", default="N/A")

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Tags every request (and every log line it produces) with a short request id."""

    @classmethod
    def request_id_context(cls):
        return request_id_context

    async def dispatch(self, request: Request, call_next):
        # Reuse the caller's id so a page view can be traced across services
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())[:8]
        token = request_id_context.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.info("%s %s -> %d (%.1f ms)", request.method, request.url.path,
                        response.status_code, (time.perf_counter() - started) * 1000)
            return response

        except Exception:
            logger.exception("Unhandled error during %s %s", request.method, request.url.path)
            raise

        finally:
            request_id_context.reset(token)
