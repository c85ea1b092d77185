"""
Correlation ID Middleware
Every HTTP request and every provider WebSocket message runs under a
traceable correlation ID. The ID is injected into log records and stamped on
audit rows, so one deposit or response can be followed end to end.
"""

import uuid
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

correlation_id_var: ContextVar[str] = ContextVar('correlation_id', default='no-corr-id')


def get_correlation_id() -> str:
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


@contextmanager
def correlation_scope(corr_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation ID (given or fresh) for the duration of the block"""
    token = correlation_id_var.set(corr_id or generate_correlation_id())
    try:
        yield correlation_id_var.get()
    finally:
        correlation_id_var.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Adds record.correlation_id for the log format"""

    def filter(self, record):
        record.correlation_id = get_correlation_id()
        return True


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reads X-Correlation-ID (or mints one) and echoes it on the response"""

    HEADER_NAME = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next) -> Response:
        with correlation_scope(request.headers.get(self.HEADER_NAME)) as corr_id:
            response = await call_next(request)
            response.headers[self.HEADER_NAME] = corr_id
            return response
