import json
import logging
import os
import re
import time
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from prometheus_fastapi_instrumentator import Instrumentator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
trace_id_var: ContextVar[str] = ContextVar("trace_id", default="")
quote_id_var: ContextVar[str] = ContextVar("quote_id", default="")
signature_id_var: ContextVar[str] = ContextVar("signature_id", default="")

DEFAULT_SERVICE_NAME = "quote-lifecycle"

_LOG_CONTEXT: dict[str, ContextVar[str]] = {
    "correlation_id": correlation_id_var,
    "request_id": request_id_var,
    "trace_id": trace_id_var,
    "quote_id": quote_id_var,
    "signature_id": signature_id_var,
}
_SUBJECT_PATH = re.compile(r"^/(?P<collection>quotes|signatures)/(?P<subject_id>(?:qt|sig)_\w+)")
_SUBJECT_KEYS = {"quotes": "quote_id", "signatures": "signature_id"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; request and quote context comes from context variables."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "service": os.getenv("SERVICE_NAME", DEFAULT_SERVICE_NAME),
            "environment": os.getenv("ENVIRONMENT", "local"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, var in _LOG_CONTEXT.items():
            payload[key] = var.get() or None
        if isinstance(getattr(record, "extra_fields", None), dict):
            payload.update(record.extra_fields)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps({k: v for k, v in payload.items() if v is not None}, default=str)


def configure_json_logging() -> None:
    root_logger = logging.getLogger()
    if root_logger.hasHandlers():
        root_logger.handlers.clear()
    root_logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)


def trace_id_from_traceparent(traceparent: str) -> str:
    parts = traceparent.split("-") if traceparent else []
    if len(parts) >= 4 and len(parts[1]) == 32:
        return parts[1]
    return uuid4().hex


def subject_ids_from_path(path: str) -> dict[str, str]:
    match = _SUBJECT_PATH.match(path)
    if match is None:
        return {}
    return {_SUBJECT_KEYS[match.group("collection")]: match.group("subject_id")}


def _bind_request_context(request: Request) -> dict[str, str]:
    context = {
        "correlation_id": request.headers.get("X-Correlation-Id") or f"corr_{uuid4().hex[:12]}",
        "request_id": request.headers.get("X-Request-Id") or f"req_{uuid4().hex[:12]}",
        "trace_id": trace_id_from_traceparent(request.headers.get("traceparent", "")),
    }
    context.update(subject_ids_from_path(request.url.path))
    return context


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def setup_observability(app: FastAPI) -> None:
    configure_json_logging()
    instrumentator = Instrumentator(should_group_status_codes=False, excluded_handlers=["/metrics"])
    instrumentator.instrument(app).expose(app)

    @app.middleware("http")
    async def _request_observability_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        logger = logging.getLogger("http.access")
        started = time.perf_counter()
        context = _bind_request_context(request)
        tokens: list[tuple[ContextVar[str], Token[str]]] = [
            (_LOG_CONTEXT[key], _LOG_CONTEXT[key].set(value)) for key, value in context.items()
        ]
        status_code = 500
        try:
            response: Response = await call_next(request)
            status_code = response.status_code
        finally:
            logger.info(
                "request.completed",
                extra={
                    "extra_fields": {
                        "http_method": request.method,
                        "endpoint": _route_template(request),
                        "status_code": status_code,
                        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
                        **subject_ids_from_path(request.url.path),
                    }
                },
            )
            for var, token in reversed(tokens):
                var.reset(token)

        response.headers.setdefault("X-Correlation-Id", context["correlation_id"])
        response.headers["X-Request-Id"] = context["request_id"]
        response.headers["X-Trace-Id"] = context["trace_id"]
        response.headers["traceparent"] = f"00-{context['trace_id']}-0000000000000001-01"
        return response
