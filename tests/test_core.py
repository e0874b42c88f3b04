"""Tests for config, logging, metrics and Sentry helpers."""

import json
import logging
from pathlib import Path

from app.core.config import Settings
from app.core.logging import ContextFormatter, JSONFormatter
from app.core.metrics import _normalize_path
from app.core.sentry import drop_expected_errors, init_sentry
from app.gateway.errors import QuotaExceeded, RemoteClientError, RemoteServerError, ValidationError
from app.gateway.storage import extension_for, mime_type_for, normalize_mime_type


def _record(msg="Cache hit", **extra) -> logging.LogRecord:
    record = logging.LogRecord("app.gateway.gateway", logging.INFO, __file__, 1, msg, None, None)
    for name, value in extra.items():
        setattr(record, name, value)
    return record


class TestSettings:
    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.images_per_minute == 20
        assert s.requests_per_day == 200
        assert s.max_concurrency == 2
        assert s.request_timeout_seconds == 45.0
        assert s.app_port == 8787

    def test_blocked_terms_list(self):
        s = Settings(_env_file=None, blocked_terms=" Gore,, violence ,")
        assert s.blocked_terms_list == ["gore", "violence"]


class TestLogging:
    def test_json_formatter_includes_context(self):
        line = JSONFormatter().format(_record(kind="image", stage="cached", cache_key="abc123"))
        data = json.loads(line)
        assert data["message"] == "Cache hit"
        assert data["kind"] == "image"
        assert data["stage"] == "cached"
        assert data["cache_key"] == "abc123"
        assert "attempt" not in data

    def test_json_formatter_skips_empty_context(self):
        data = json.loads(JSONFormatter().format(_record(cache_key="")))
        assert "cache_key" not in data

    def test_text_formatter_appends_context(self):
        line = ContextFormatter("%(message)s").format(_record("Retrying", attempt=2))
        assert line == "Retrying [attempt=2]"

    def test_text_formatter_without_context(self):
        assert ContextFormatter("%(message)s").format(_record("Plain")) == "Plain"


class TestSentry:
    def test_disabled_without_dsn(self):
        assert init_sentry() is False

    def test_drops_client_side_errors(self):
        event = {"message": "x"}
        for exc in (ValidationError("bad"), QuotaExceeded("full"), RemoteClientError("blocked")):
            assert drop_expected_errors(event, {"exc_info": (type(exc), exc, None)}) is None

    def test_keeps_remote_outages_and_bugs(self):
        event = {"message": "x"}
        exc = RemoteServerError("down")
        assert drop_expected_errors(event, {"exc_info": (type(exc), exc, None)}) is event
        bug = KeyError("oops")
        assert drop_expected_errors(event, {"exc_info": (type(bug), bug, None)}) is event
        assert drop_expected_errors(event, {}) is event


class TestMetrics:
    def test_generated_paths_collapsed(self):
        assert _normalize_path("/generated/cache/abc.png") == "/generated/{file}"
        assert _normalize_path("/api/v1/images") == "/api/v1/images"


class TestMimeTypes:
    def test_extension_for(self):
        assert extension_for("image/png") == ".png"
        assert extension_for("image/jpeg; charset=binary") == ".jpg"
        assert extension_for("text/plain") == ".txt"
        assert extension_for("application/x-unknown-thing") == ".bin"
        assert extension_for("image/jpg") == ".jpg"

    def test_normalize_mime_type(self):
        assert normalize_mime_type("image/jpg") == "image/jpeg"
        assert normalize_mime_type("Image/X-PNG") == "image/png"
        assert normalize_mime_type("text/plain; charset=utf-8") == "text/plain"
        assert normalize_mime_type("image/webp") == "image/webp"

    def test_mime_type_for(self):
        assert mime_type_for(Path("a.PNG")) == "image/png"
        assert mime_type_for(Path("a.jpeg")) == "image/jpeg"
        assert mime_type_for(Path("a.txt")) == "text/plain"
