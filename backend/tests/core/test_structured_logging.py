"""Tests for structured logging and request correlation."""

import json
import logging
import sys

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.logging import (
    MAX_RAW_BODY_CHARS,
    REDACTED,
    StructuredFormatter,
    correlation_id_var,
    correlation_scope,
    get_correlation_id,
    redact,
)
from app.core.middleware import (
    CORRELATION_ID_HEADER,
    CorrelationIdMiddleware,
    resolve_correlation_id,
)


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("app.test", logging.INFO, __file__, 10, "hello %s", ("world",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRedaction:
    def test_secret_fields_are_masked(self):
        cleaned = redact({"sign": "abc", "Client_Secret": "cs", "order_id": "o1"})

        assert cleaned == {"sign": REDACTED, "Client_Secret": REDACTED, "order_id": "o1"}

    def test_nested_fields_are_masked(self):
        assert redact({"payload": {"private_key": "pem"}}) == {"payload": {"private_key": REDACTED}}

    def test_raw_body_is_truncated(self):
        cleaned = redact({"raw_body": "x" * (MAX_RAW_BODY_CHARS + 10)})

        assert cleaned["raw_body"].endswith("...[truncated]")
        assert len(cleaned["raw_body"]) < MAX_RAW_BODY_CHARS + 20


class TestStructuredFormatter:
    def test_json_record(self):
        record = make_record(correlation_id="cid-1", order_id="o1", sign="secret")

        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "hello world"
        assert data["correlation_id"] == "cid-1"
        assert data["service"] == "payments"
        assert data["extra"] == {"order_id": "o1", "sign": REDACTED}

    def test_exception_is_attached(self):
        try:
            raise ValueError("bad body")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(StructuredFormatter().format(record))

        assert data["exception"]["type"] == "ValueError"
        assert data["exception"]["message"] == "bad body"
        assert data["exception"]["stack_trace"]


class TestCorrelation:
    def test_scope_restores_outer_id(self):
        token = correlation_id_var.set("outer")
        try:
            with correlation_scope("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"
        finally:
            correlation_id_var.reset(token)

    @pytest.mark.parametrize("value", [None, "", "has space", "x" * 200, "line\nbreak"])
    def test_malformed_header_gets_fresh_id(self, value):
        assert resolve_correlation_id(value) != value

    def test_well_formed_header_is_kept(self):
        assert resolve_correlation_id("req-123.abc") == "req-123.abc"

    def test_middleware_echoes_id(self):
        app = FastAPI()
        app.add_middleware(CorrelationIdMiddleware)

        @app.get("/ping")
        async def ping():
            return {"cid": get_correlation_id()}

        response = TestClient(app).get("/ping", headers={CORRELATION_ID_HEADER: "req-42"})

        assert response.headers[CORRELATION_ID_HEADER] == "req-42"
        assert response.json() == {"cid": "req-42"}
