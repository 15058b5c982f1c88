"""
Logging helpers for agent runs.

Modules log through ``logging.getLogger(__name__)`` and pass the agent's id
via ``extra={"agent_id": ...}``; the filter below fills it in for records
that carry none so one format string works for every logger.
"""

import logging
from typing import Dict, Optional

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] [%(agent_id)s] %(message)s"


class AgentLogFilter(logging.Filter):
    """
    Ensures every record has an ``agent_id`` and a readable logger name.

    Records without an agent id (library loggers, module-level logs) are
    attributed to "System"; the root logger is shown as "DefaultLogger".
    """

    def filter(self, record: logging.LogRecord) -> bool:
        agent_id = getattr(record, "agent_id", None)
        record.agent_id = "System" if agent_id is None else str(agent_id)

        if not record.name or record.name == "root":
            record.name = "DefaultLogger"
        return True


def init_agent_logging(
    level: int = logging.INFO,
    clear_existing_handlers: bool = True,
    logger_levels: Optional[Dict[str, int]] = None,
) -> logging.Handler:
    """
    Install a console handler on the root logger using ``LOG_FORMAT``.

    Args:
        level: Level for the root logger
        clear_existing_handlers: Remove and close handlers already on the root
            logger, so repeated setup (notebooks, tests) does not duplicate output
        logger_levels: Per-logger overrides, e.g. ``{"threadline.messages.prune": logging.DEBUG}``

    Returns:
        The installed handler
    """
    root_logger = logging.getLogger()

    if clear_existing_handlers:
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
            handler.close()

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    stream_handler.addFilter(AgentLogFilter())
    root_logger.addHandler(stream_handler)
    root_logger.setLevel(level)

    for name, logger_level in (logger_levels or {}).items():
        logging.getLogger(name).setLevel(logger_level)

    logging.getLogger(__name__).debug(
        f"Agent logging initialized at {logging.getLevelName(level)}"
    )
    return stream_handler
