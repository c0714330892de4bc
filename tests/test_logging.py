"""
Tests for structured logging and error formatting.
"""

from __future__ import annotations

import logging
from pathlib import Path

import orjson

from wfcache.exceptions import CacheError, ServiceError
from wfcache.logging import (
    ContextLogger,
    ContextRichHandler,
    JSONLinesFormatter,
    configure_logging,
    current_context,
    get_logger,
    log_context,
    redact_url,
)

THIRD_PARTY = ("httpx", "httpcore", "botocore", "boto3", "s3transfer", "azure")


class RecordingHandler(logging.Handler):
    """Keeps emitted records in memory."""

    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


class TestRedactUrl:
    """Tests for URL redaction."""

    def test_strips_signature(self) -> None:
        """Test query strings carrying SAS tokens are removed."""
        url = "https://acct.blob.core.windows.net/c/a.tzst?sv=2020&sig=secret"
        assert redact_url(url) == "https://acct.blob.core.windows.net/c/a.tzst"

    def test_plain_url_unchanged(self) -> None:
        """Test URLs without query or fragment pass through."""
        assert redact_url("https://example.com/a") == "https://example.com/a"


class TestLogContext:
    """Tests for scoped logging context."""

    def test_context_set_and_restored(self) -> None:
        """Test context variables are scoped to the block."""
        with log_context(operation="lookup", cache_key="k", backend="rest"):
            assert current_context() == {"operation": "lookup", "cache_key": "k", "backend": "rest"}
            with log_context(operation="download"):
                assert current_context()["operation"] == "download"
                assert current_context()["cache_key"] == "k"
            assert current_context()["operation"] == "lookup"

        assert current_context() == {}


class TestJSONLinesFormatter:
    """Tests for JSON Lines output."""

    def test_includes_context_and_extra(self) -> None:
        """Test records carry the active context and structured extras."""
        record = logging.LogRecord("wfcache.test", logging.INFO, __file__, 1, "hello", None, None)
        record.extra = {"operation": "upload", "cache_key": "build-42", "cache_id": 7}

        output = orjson.loads(JSONLinesFormatter().format(record))

        assert output["message"] == "hello"
        assert output["level"] == "INFO"
        assert output["operation"] == "upload"
        assert output["cache_key"] == "build-42"
        assert output["extra"] == {"cache_id": 7}
        assert "backend" not in output

    def test_foreign_record_uses_live_context(self) -> None:
        """Test records logged without ContextLogger still pick up the context."""
        record = logging.LogRecord("wfcache.test", logging.INFO, __file__, 1, "plain", None, None)

        with log_context(backend="blob_store"):
            output = orjson.loads(JSONLinesFormatter().format(record))

        assert output["backend"] == "blob_store"
        assert "extra" not in output


class TestContextLogger:
    """Tests for the context-aware logger."""

    def test_get_logger_prefixes_name(self) -> None:
        """Test loggers live under the package namespace."""
        logger = get_logger("tests.sample")
        assert isinstance(logger, ContextLogger)
        assert logger.name == "wfcache.tests.sample"

    def test_kwargs_become_extras(self) -> None:
        """Test keyword arguments and context end up on the record."""
        handler = RecordingHandler()
        package_logger = configure_logging("DEBUG")
        package_logger.addHandler(handler)
        try:
            with log_context(backend="object_store"):
                get_logger("tests.extras").debug("Listing bucket", page=2)
        finally:
            package_logger.removeHandler(handler)

        assert handler.records[0].extra == {"backend": "object_store", "page": 2}  # type: ignore[attr-defined]

    def test_disabled_level_skips_record(self) -> None:
        """Test nothing is emitted below the configured level."""
        handler = RecordingHandler()
        package_logger = configure_logging("WARNING")
        package_logger.addHandler(handler)
        try:
            logger = get_logger("tests.levels")
            logger.debug("hidden")
            logger.warning("shown")
        finally:
            package_logger.removeHandler(handler)

        assert [r.getMessage() for r in handler.records] == ["shown"]
        assert not logger.is_debug()


class TestConfigureLogging:
    """Tests for opt-in handler setup."""

    def test_import_leaves_logging_alone(self) -> None:
        """Test getting a logger adds no handlers and keeps propagation."""
        get_logger("tests.quiet")
        package_logger = logging.getLogger("wfcache")

        assert package_logger.propagate is True
        assert not any(isinstance(h, ContextRichHandler) for h in package_logger.handlers)

    def test_third_party_levels_untouched(self, temp_dir: Path) -> None:
        """Test configuring the package logger leaves other libraries' levels as set."""
        before = {name: logging.getLogger(name).level for name in THIRD_PARTY}

        configure_logging("DEBUG", log_file=temp_dir / "cache.jsonl", console=True)

        assert {name: logging.getLogger(name).level for name in THIRD_PARTY} == before
        assert logging.getLogger("wfcache").propagate is True

    def test_file_output(self, temp_dir: Path) -> None:
        """Test log calls reach the JSON file with kwargs as extras."""
        log_file = temp_dir / "logs" / "cache.jsonl"
        configure_logging("DEBUG", log_file=log_file)
        logger = get_logger("tests.file")

        assert logger.is_debug()
        with log_context(backend="object_store"):
            logger.debug("Listing bucket", page=2)

        entry = orjson.loads(log_file.read_text().splitlines()[-1])
        assert entry["message"] == "Listing bucket"
        assert entry["backend"] == "object_store"
        assert entry["extra"]["page"] == 2

    def test_repeated_calls_do_not_duplicate(self, temp_dir: Path) -> None:
        """Test the same file and console are attached once."""
        log_file = temp_dir / "cache.jsonl"

        configure_logging("INFO", log_file=log_file, console=True)
        package_logger = configure_logging("INFO", log_file=log_file, console=True)

        file_handlers = [h for h in package_logger.handlers if isinstance(h, logging.FileHandler)]
        consoles = [h for h in package_logger.handlers if isinstance(h, ContextRichHandler)]
        assert len(file_handlers) == 1
        assert len(consoles) == 1

    def test_unset_level_keeps_current(self) -> None:
        """Test a None level does not reset the package logger."""
        logging.getLogger("wfcache").setLevel(logging.ERROR)

        configure_logging(None)

        assert logging.getLogger("wfcache").level == logging.ERROR


class TestCacheErrors:
    """Tests for error formatting."""

    def test_str_includes_context(self) -> None:
        """Test context is rendered after the message."""
        error = CacheError("failed", context={"attempts": 2})
        assert str(error) == "failed (attempts=2)"

    def test_service_error_status_in_context(self) -> None:
        """Test the status code is exposed as attribute and context."""
        error = ServiceError("bad gateway", status_code=502)

        assert error.status_code == 502
        assert error.context["status_code"] == 502
