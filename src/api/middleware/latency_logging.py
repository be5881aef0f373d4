"""Request latency logging middleware."""

import logging
import time
from typing import Callable

from fastapi import Request, Response

logger = logging.getLogger(__name__)

# Thresholds for log levels (in milliseconds)
SLOW_REQUEST_THRESHOLD_MS = 1000
# Image uploads legitimately take longer; only flag them past this
SLOW_UPLOAD_THRESHOLD_MS = 10000

HEALTH_PATHS = ("/health", "/health/ready")


async def latency_logging_middleware(request: Request, call_next: Callable) -> Response:
    """Log method, path, status and latency for every request.

    Streaming responses are timed until headers are sent, not until the
    stream finishes.
    """
    start_time = time.perf_counter()
    path = request.url.path
    response = None

    try:
        response = await call_next(request)
        return response
    finally:
        latency_ms = (time.perf_counter() - start_time) * 1000
        status_code = response.status_code if response else 500
        log_msg = f"{request.method} {path} - {status_code} - {latency_ms:.2f}ms"

        threshold = SLOW_UPLOAD_THRESHOLD_MS if request.method in ("POST", "PUT") else SLOW_REQUEST_THRESHOLD_MS

        if path in HEALTH_PATHS:
            logger.debug(log_msg)
        elif status_code >= 500:
            logger.error(log_msg)
        elif latency_ms > threshold:
            logger.warning(f"SLOW REQUEST: {log_msg}")
        elif status_code >= 400:
            logger.warning(log_msg)
        else:
            logger.info(log_msg)
