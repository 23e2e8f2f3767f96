"""Logging setup with execution correlation ids carried in contextvars."""

import contextlib
import contextvars
import logging
import sys

from pythonjsonlogger import jsonlogger

# Context variables for correlation
ctx_execution_id = contextvars.ContextVar("execution_id", default=None)
ctx_node_id = contextvars.ContextVar("node_id", default=None)
ctx_graph_id = contextvars.ContextVar("graph_id", default=None)

_CORRELATION_VARS = (
    ("execution_id", ctx_execution_id),
    ("graph_id", ctx_graph_id),
    ("node_id", ctx_node_id),
)


def correlation_fields() -> dict[str, str]:
    """Correlation ids set in the current context, in a stable order."""
    fields = {}
    for name, var in _CORRELATION_VARS:
        value = var.get()
        if value:
            fields[name] = value
    return fields


@contextlib.contextmanager
def execution_context(execution_id: str, node_id: str | None = None):
    """Bind *execution_id* / *node_id* for log records emitted inside the block."""
    exec_token = ctx_execution_id.set(execution_id)
    node_token = ctx_node_id.set(node_id)
    graph_token = ctx_graph_id.set(None)
    try:
        yield
    finally:
        ctx_graph_id.reset(graph_token)
        ctx_node_id.reset(node_token)
        ctx_execution_id.reset(exec_token)


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.update(correlation_fields())


class CorrelationFilter(logging.Filter):
    """Exposes the correlation ids as ``%(correlation)s`` for the text format."""

    def filter(self, record):
        fields = correlation_fields()
        record.correlation = " ".join(f"{k}={v}" for k, v in fields.items()) or "-"
        return True


def setup_logger(log_format: str = "text", log_level: str = "INFO"):
    """Configure the root logger."""
    root_logger = logging.getLogger()

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationFilter())

    if log_format.lower() == "json":
        formatter = CorrelationJsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "timestamp"},
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(correlation)s] %(message)s"
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # SQL echo is controlled by PROCFLOW_DB_ECHO, not the root level
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return root_logger
