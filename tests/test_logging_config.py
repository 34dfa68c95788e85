"""
Tests for structured logging
"""

import io
import json
import logging

from ledger_engine.logging_config import (
    JSONFormatter, configure_from, get_logger, log_action, setup_logging
)
from ledger_engine.config import LedgerConfig
from ledger_engine.currency import Currency
from ledger_engine.identity import EntityRef
from ledger_engine.journals import JournalManager
from ledger_engine.storage import InMemoryStorage


class TestJSONLogging:
    """Test JSON log output"""

    def setup_method(self):
        self.logger = setup_logging("DEBUG")
        self.stream = io.StringIO()
        self.logger.handlers[0].setStream(self.stream)

    def teardown_method(self):
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)
            handler.close()
        self.logger.propagate = True

    def _entries(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines()]

    def test_log_action_fields(self):
        log_action(
            get_logger("ledger_engine.test"), "info", "Something happened",
            action="post", resource="journal:1", correlation_id="grp-1",
            extra={"amount": 100}
        )

        entry = self._entries()[0]
        assert entry["level"] == "INFO"
        assert entry["logger"] == "ledger_engine.test"
        assert entry["message"] == "Something happened"
        assert entry["action"] == "post"
        assert entry["resource"] == "journal:1"
        assert entry["correlation_id"] == "grp-1"
        assert entry["extra"] == {"amount": 100}
        assert "timestamp" in entry

    def test_empty_fields_are_dropped(self):
        log_action(get_logger("ledger_engine.test"), "warning", "bare")

        entry = self._entries()[0]
        assert entry["level"] == "WARNING"
        assert "action" not in entry
        assert "correlation_id" not in entry

    def test_exceptions_are_included(self):
        logger = get_logger("ledger_engine.test")
        try:
            raise ValueError("boom")
        except ValueError:
            logger.exception("failed")

        entry = self._entries()[0]
        assert "ValueError: boom" in entry["exception"]

    def test_posting_is_logged(self):
        journals = JournalManager(InMemoryStorage())
        journal = journals.init_journal(EntityRef("user", "1"), Currency.USD)
        posting = journals.credit(journal, 1050, transaction_group="grp-9")

        entries = [e for e in self._entries() if e.get("action") == "post"]
        assert len(entries) == 1
        assert entries[0]["message"] == "Posted credit USD 10.50"
        assert entries[0]["correlation_id"] == "grp-9"
        assert entries[0]["extra"]["posting_id"] == posting.id
        assert entries[0]["extra"]["balance"] == 1050


class TestLoggingSetup:
    """Test handler configuration"""

    def teardown_method(self):
        logger = logging.getLogger("ledger_engine")
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True

    def test_setup_replaces_handlers(self):
        setup_logging("INFO")
        logger = setup_logging("WARNING")

        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not logger.propagate
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_text_format(self):
        logger = setup_logging("INFO", log_format="text")
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_configure_from_file(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        logger = configure_from(LedgerConfig(log_level="INFO", log_file=str(log_file)))

        get_logger("ledger_engine.test").info("to file")
        logger.handlers[0].flush()

        entry = json.loads(log_file.read_text().splitlines()[0])
        assert entry["message"] == "to file"
