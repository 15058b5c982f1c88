"""
Tests for agent logging setup.
"""

import logging

import pytest

from threadline.agents.utils import LOG_FORMAT, AgentLogFilter, init_agent_logging


@pytest.fixture
def restore_root_logger():
    """Put the root logger's handlers and level back after the test."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield root
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(name="threadline.test", **extra):
    record = logging.LogRecord(name, logging.INFO, __file__, 1, "hello", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestAgentLogFilter:
    """Tests for AgentLogFilter."""

    def test_missing_agent_id_defaults_to_system(self):
        record = make_record()

        assert AgentLogFilter().filter(record) is True
        assert record.agent_id == "System"

    def test_agent_id_is_kept(self):
        record = make_record(agent_id="researcher")

        AgentLogFilter().filter(record)

        assert record.agent_id == "researcher"

    def test_root_logger_is_renamed(self):
        record = make_record(name="root")

        AgentLogFilter().filter(record)

        assert record.name == "DefaultLogger"

    def test_record_formats_with_log_format(self):
        record = make_record(agent_id="a1")
        AgentLogFilter().filter(record)

        formatted = logging.Formatter(LOG_FORMAT).format(record)

        assert "INFO - [threadline.test] [a1] hello" in formatted


class TestInitAgentLogging:
    """Tests for init_agent_logging."""

    def test_installs_handler_with_filter(self, restore_root_logger):
        handler = init_agent_logging(level=logging.WARNING)

        assert handler in restore_root_logger.handlers
        assert any(isinstance(f, AgentLogFilter) for f in handler.filters)
        assert restore_root_logger.level == logging.WARNING

    def test_clears_existing_handlers(self, restore_root_logger):
        stale = logging.NullHandler()
        restore_root_logger.addHandler(stale)

        handler = init_agent_logging()

        assert stale not in restore_root_logger.handlers
        assert restore_root_logger.handlers == [handler]

    def test_keeps_existing_handlers_when_asked(self, restore_root_logger):
        existing = logging.NullHandler()
        restore_root_logger.addHandler(existing)

        init_agent_logging(clear_existing_handlers=False)

        assert existing in restore_root_logger.handlers

    def test_logger_levels(self, restore_root_logger):
        init_agent_logging(logger_levels={"threadline.messages.prune": logging.DEBUG})

        assert logging.getLogger("threadline.messages.prune").level == logging.DEBUG
        logging.getLogger("threadline.messages.prune").setLevel(logging.NOTSET)
