import json
import logging
import re

from fastapi.testclient import TestClient

from src.api.main import app
from src.api.observability import (
    JsonFormatter,
    correlation_id_var,
    quote_id_var,
    subject_ids_from_path,
    trace_id_from_traceparent,
)


def test_health_endpoint():
    with TestClient(app) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_observability_headers_preserve_inbound_correlation_and_trace_id():
    with TestClient(app) as client:
        response = client.get(
            "/health",
            headers={
                "X-Correlation-Id": "corr-inbound-123",
                "X-Request-Id": "req-inbound-123",
                "traceparent": "00-1234567890abcdef1234567890abcdef-0000000000000001-01",
            },
        )

    assert response.status_code == 200
    assert response.headers["X-Correlation-Id"] == "corr-inbound-123"
    assert response.headers["X-Request-Id"] == "req-inbound-123"
    assert response.headers["X-Trace-Id"] == "1234567890abcdef1234567890abcdef"
    assert (
        response.headers["traceparent"] == "00-1234567890abcdef1234567890abcdef-0000000000000001-01"
    )


def test_observability_headers_generate_ids_when_missing():
    with TestClient(app) as client:
        response = client.get("/health")

    assert re.fullmatch(r"corr_[0-9a-f]{12}", response.headers["X-Correlation-Id"])
    assert re.fullmatch(r"req_[0-9a-f]{12}", response.headers["X-Request-Id"])
    assert re.fullmatch(r"[0-9a-f]{32}", response.headers["X-Trace-Id"])


def test_trace_id_from_malformed_traceparent_is_generated():
    assert re.fullmatch(r"[0-9a-f]{32}", trace_id_from_traceparent("garbage"))
    assert trace_id_from_traceparent("00-" + "a" * 32 + "-01-01") == "a" * 32


def test_metrics_endpoint_is_exposed():
    with TestClient(app) as client:
        client.get("/health")
        response = client.get("/metrics")
    assert response.status_code == 200
    assert "http_request" in response.text


def test_json_formatter_includes_context_and_extra_fields():
    record = logging.LogRecord(
        name="src.core.quotes.service",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="quote.transitioned",
        args=(),
        exc_info=None,
    )
    record.extra_fields = {"quote_id": "qt_1", "to_status": "SIGNED"}
    token = correlation_id_var.set("corr-log-1")
    try:
        payload = json.loads(JsonFormatter().format(record))
    finally:
        correlation_id_var.reset(token)

    assert payload["message"] == "quote.transitioned"
    assert payload["level"] == "INFO"
    assert payload["service"] == "quote-lifecycle"
    assert payload["correlation_id"] == "corr-log-1"
    assert payload["quote_id"] == "qt_1"
    assert payload["to_status"] == "SIGNED"
    assert "request_id" not in payload


def test_subject_ids_from_path():
    assert subject_ids_from_path("/quotes/qt_0123456789ab/signatures") == {
        "quote_id": "qt_0123456789ab"
    }
    assert subject_ids_from_path("/signatures/sig_0123456789ab/verify-name") == {
        "signature_id": "sig_0123456789ab"
    }
    assert subject_ids_from_path("/quotes/supportability/config") == {}
    assert subject_ids_from_path("/health") == {}


def test_access_log_carries_quote_context(caplog):
    caplog.set_level(logging.INFO, logger="http.access")
    with TestClient(app) as client:
        response = client.get("/quotes/qt_000000000000")

    assert response.status_code == 404
    completed = [
        record
        for record in caplog.records
        if record.name == "http.access" and record.getMessage() == "request.completed"
    ]
    assert completed
    payload = json.loads(JsonFormatter().format(completed[-1]))
    assert payload["status_code"] == 404
    assert payload["endpoint"] in {"/quotes/{quote_id}", "/quotes/qt_000000000000"}
    assert payload["quote_id"] == "qt_000000000000"
    assert "latency_ms" in payload
    assert quote_id_var.get() == ""


def test_json_formatter_includes_bound_quote_id():
    record = logging.LogRecord(
        name="src.core.quotes.signatures",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Signature %s invalidated",
        args=("sig_1",),
        exc_info=None,
    )
    token = quote_id_var.set("qt_bound")
    try:
        payload = json.loads(JsonFormatter().format(record))
    finally:
        quote_id_var.reset(token)

    assert payload["quote_id"] == "qt_bound"
    assert payload["message"] == "Signature sig_1 invalidated"
    assert "signature_id" not in payload
