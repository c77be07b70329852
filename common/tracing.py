"""
Correlation-id tracing shared by the settlement services.

A trace id arrives on X-Trace-ID (or is minted at the edge), lives in a
ContextVar for the duration of the request, and is copied into every outbox
event so the notification consumer logs under the same id as the webhook
that caused it. Spans are emitted as one `TRACE: {...}` log line each.
"""
import uuid
import time
import json
from typing import Optional
from contextvars import ContextVar
from fastapi import Request
import logging

logger = logging.getLogger(__name__)

trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)
span_id_var: ContextVar[Optional[str]] = ContextVar('span_id', default=None)

def get_current_trace_id() -> Optional[str]:
    return trace_id_var.get()

def get_current_span_id() -> Optional[str]:
    return span_id_var.get()

class TraceSpan:
    """One timed operation. Nested spans inherit the enclosing trace id."""

    def __init__(self, name: str, service: str, trace_id: str = None, parent_span_id: str = None):
        self.name = name
        self.service = service
        self.span_id = uuid.uuid4().hex[:8]
        self.trace_id = trace_id or get_current_trace_id() or uuid.uuid4().hex[:16]
        self.parent_span_id = parent_span_id or get_current_span_id()
        self.tags = {}
        self.status = "ok"
        self._started = time.monotonic()
        self._tokens = (trace_id_var.set(self.trace_id), span_id_var.set(self.span_id))

    def add_tag(self, key: str, value):
        self.tags[key] = value
        return self

    def set_error(self, error: Exception):
        self.status = "error"
        self.tags["error.type"] = type(error).__name__
        self.tags["error.message"] = str(error)
        return self

    def finish(self):
        trace_token, span_token = self._tokens
        record = {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "service": self.service,
            "operation": self.name,
            "duration_ms": round((time.monotonic() - self._started) * 1000, 2),
            "status": self.status,
            "tags": self.tags,
        }
        logger.info(f"TRACE: {json.dumps(record, default=str)}")
        span_id_var.reset(span_token)
        trace_id_var.reset(trace_token)
        return self

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.set_error(exc_val)
        self.finish()

class Tracer:

    def __init__(self, service_name: str):
        self.service_name = service_name

    def start_span(self, name: str, trace_id: str = None, parent_span_id: str = None) -> TraceSpan:
        return TraceSpan(name, self.service_name, trace_id, parent_span_id)

    def start_span_from_request(self, request: Request, operation_name: str) -> TraceSpan:
        span = self.start_span(
            operation_name,
            request.headers.get("X-Trace-ID"),
            request.headers.get("X-Span-ID"),
        )
        return span.add_tag("http.method", request.method).add_tag("http.path", request.url.path)

webhook_tracer = Tracer("webhook-service")
ledger_tracer = Tracer("ledger-service")
notification_tracer = Tracer("notification-service")

async def tracing_middleware(request: Request, call_next, tracer: Tracer):
    """Wrap each request in a span and echo its ids back to the caller"""
    with tracer.start_span_from_request(request, f"{request.method} {request.url.path}") as span:
        request.state.trace_id = span.trace_id
        response = await call_next(request)
        span.add_tag("http.status_code", response.status_code)
        if response.status_code >= 500:
            span.status = "error"
        response.headers["X-Trace-ID"] = span.trace_id
        response.headers["X-Span-ID"] = span.span_id
        return response
