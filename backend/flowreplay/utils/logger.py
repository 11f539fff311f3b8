"""Logging setup for the replay engine.

Every run binds its run id and flow id into context variables; the step runner
and the subflow runner add the node and subflow currently executing.  The JSON
formatter copies whichever of these are set onto each record, so log lines from
concurrent runs can be told apart.
"""

from __future__ import annotations

import contextvars
import logging
import sys

from pythonjsonlogger import jsonlogger

ctx_run_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("run_id", default=None)
ctx_flow_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("flow_id", default=None)
ctx_node_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("node_id", default=None)
ctx_subflow_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("subflow_id", default=None)

_CORRELATION_FIELDS = (
    ("run_id", ctx_run_id),
    ("flow_id", ctx_flow_id),
    ("node_id", ctx_node_id),
    ("subflow_id", ctx_subflow_id),
)

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps the active run/flow/node/subflow ids."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        for key, var in _CORRELATION_FIELDS:
            value = var.get()
            if value:
                log_record[key] = value


def setup_logger(log_format: str | None = None, log_level: str | None = None) -> logging.Logger:
    """Configure the root logger; arguments default to the engine settings."""
    from flowreplay.config import settings

    log_format = (log_format or settings.LOG_FORMAT).lower()
    log_level = (log_level or settings.LOG_LEVEL).upper()

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(
            CorrelationJsonFormatter(
                _JSON_FORMAT,
                rename_fields={"levelname": "level", "asctime": "timestamp"},
            )
        )
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    # SQL echo is controlled by settings.DEBUG, not the root level
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    return root_logger
