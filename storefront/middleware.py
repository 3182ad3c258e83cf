"""
Request logging middleware and process-wide logging setup.

Each request carries an X-Request-ID (taken from the caller or generated) that
is echoed on the response and attached to the request and response log lines.
"""
import hashlib
import logging
import time
import uuid
from typing import Callable, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from storefront.config import Config

REQUEST_ID_HEADER = "X-Request-ID"

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def hash_identifier(identifier: str) -> str:
    """Hash identifier for logging (no PII)"""
    return hashlib.sha256(identifier.encode()).hexdigest()[:8]


def _request_context(request: Request, request_id: str) -> Dict[str, Optional[str]]:
    user_id = request.headers.get("X-User-ID")
    return {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "role": request.headers.get("X-User-Role"),
        "hashed_user_id": hash_identifier(user_id) if user_id else None,
    }


class MetricsMiddleware(BaseHTTPMiddleware):
    """Logs each request with its outcome and latency"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.monotonic()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        context = _request_context(request, request_id)

        logger.info(f"Request: {request.method} {request.url.path}", extra=context)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Error: {request.method} {request.url.path}",
                extra={**context, "error": str(e), "error_type": type(e).__name__},
                exc_info=True
            )
            raise

        latency_ms = (time.monotonic() - started) * 1000
        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            f"Response: {request.method} {request.url.path} {response.status_code}",
            extra={**context, "status_code": response.status_code, "latency_ms": round(latency_ms, 2)}
        )

        response.headers["X-Response-Time-Ms"] = f"{latency_ms:.2f}"
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
