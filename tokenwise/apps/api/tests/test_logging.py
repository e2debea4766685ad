"""Structured JSON logging and log sanitization."""

import json
import logging
import sys
from unittest.mock import patch

import pytest

from tokenwise_api.context import ledger_op_var, request_id_var, user_id_var
from tokenwise_api.utils import JSONFormatter, sanitize_exc, sanitize_obj, sanitize_str
from tokenwise_api.utils.sanitize import MAX_STR_LOG, REDACTED


def _record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("tokenwise_api.test", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def ledger_context():
    tokens = [
        request_id_var.set("req-log-1"),
        user_id_var.set("user_log_1"),
        ledger_op_var.set("deduct"),
    ]
    yield
    for var, token in zip((request_id_var, user_id_var, ledger_op_var), tokens):
        var.reset(token)


class TestJSONFormatter:
    def test_standard_and_context_fields(self, ledger_context):
        data = json.loads(JSONFormatter().format(_record("ledger.deduct.completed", amount=5)))

        assert data["level"] == "INFO"
        assert data["message"] == "ledger.deduct.completed"
        assert data["request_id"] == "req-log-1"
        assert data["user_id"] == "user_log_1"
        assert data["ledger_op"] == "deduct"
        assert data["amount"] == 5
        assert "timestamp" in data

    def test_context_fields_omitted_outside_request(self):
        data = json.loads(JSONFormatter().format(_record("sweeper.loop.started")))

        assert "request_id" not in data
        assert "user_id" not in data

    def test_sensitive_extras_redacted(self):
        line = JSONFormatter().format(
            _record("auth.login.attempt", payload={"email": "a@b.co", "password": "hunter22", "plan": "pro"})
        )
        data = json.loads(line)

        assert data["payload"] == {"email": REDACTED, "password": REDACTED, "plan": "pro"}
        assert "hunter22" not in line

    def test_exception_rendered_as_text(self):
        try:
            raise ValueError("pool locked")
        except ValueError:
            record = _record("ledger.expire.pool_failed")
            record.exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: pool locked" in data["exc_info"]


class TestSanitize:
    def test_bearer_and_jwt_redacted(self):
        text = sanitize_str("Authorization: Bearer abc.def token eyJhbGci.eyJzdWIi.c2ln")

        assert "abc.def" not in text
        assert "eyJhbGci" not in text

    def test_dsn_password_redacted(self):
        assert "s3cret" not in sanitize_str("postgresql://tw:s3cret@db:5432/tokenwise")

    def test_long_string_truncated_with_digest(self):
        assert sanitize_str("x" * (MAX_STR_LOG + 1)).startswith(f"[TRUNCATED len={MAX_STR_LOG + 1}")

    def test_depth_limited(self):
        nested: dict = {}
        cursor = nested
        for _ in range(10):
            cursor["next"] = {}
            cursor = cursor["next"]

        flat = json.dumps(sanitize_obj(nested))

        assert "[DEPTH_LIMIT]" in flat

    def test_exc_info_without_exception(self):
        assert sanitize_exc((None, None, None)) == ""


class TestRequestCompletionLog:
    def test_logged_once_per_request(self, test_client, caplog):
        caplog.set_level(logging.INFO, logger="tokenwise_api.main")

        test_client.get("/v1/tokens/balance-check", headers={"X-Request-ID": "req-done-1"})

        records = [r for r in caplog.records if r.getMessage() == "http.request.completed"]
        assert len(records) == 1
        assert records[0].method == "GET"
        assert records[0].path == "/v1/tokens/balance-check"
        assert records[0].status_code == 200
        assert records[0].duration_ms >= 0

    def test_error_status_recorded(self, test_client, caplog):
        caplog.set_level(logging.INFO, logger="tokenwise_api.main")

        test_client.post("/v1/tokens/deduct", json={"action": "fine_tune"})

        record = next(r for r in caplog.records if r.getMessage() == "http.request.completed")
        assert record.status_code == 402

    def test_authenticated_user_on_completion_line(self, anonymous_client, caplog):
        caplog.set_level(logging.INFO, logger="tokenwise_api.main")

        with patch("tokenwise_api.auth.session_auth.get_supabase_client") as get_client:
            user = get_client.return_value.auth.get_user.return_value.user
            user.id = "user_from_jwt"
            user.email = "jwt@example.com"
            anonymous_client.get("/v1/tokens/balance", headers={"Authorization": "Bearer good"})

        record = next(r for r in caplog.records if r.getMessage() == "http.request.completed")
        assert record.user_id == "user_from_jwt"
        assert json.loads(JSONFormatter().format(record))["user_id"] == "user_from_jwt"

    def test_anonymous_completion_line_has_no_user(self, anonymous_client, caplog):
        caplog.set_level(logging.INFO, logger="tokenwise_api.main")

        anonymous_client.get("/v1/tokens/balance-check")

        record = next(r for r in caplog.records if r.getMessage() == "http.request.completed")
        assert not hasattr(record, "user_id")
