"""Structured logging for workflow runs.

Every line is one JSON object. The run a record belongs to (`session_id`,
`workflow_id`, `node`, `step_id`) is lifted to top-level keys so log lines can
be filtered per run; any other `extra=` values land under `extra`.

The engine binds the run context with `run_context(...)` for the duration of a
run and of each node, so executors and handlers logging inside that scope
carry it without passing it explicitly. The binding lives in a context
variable: it follows asyncio tasks and `asyncio.to_thread` calls, and a nested
run rebinds its own session for its duration.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

RUN_CONTEXT_FIELDS: tuple[str, ...] = ("session_id", "workflow_id", "node", "step_id")

# Whatever a bare LogRecord carries is not user context.
_STANDARD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}

_bound: ContextVar[dict[str, str]] = ContextVar("atomic_workflow_run_context", default={})


@contextmanager
def run_context(**fields: str | None) -> Iterator[None]:
    """Bind run fields onto every record logged inside the block."""
    token = _bound.set({**_bound.get(), **{k: v for k, v in fields.items() if v is not None}})
    try:
        yield
    finally:
        _bound.reset(token)


def current_run_context() -> dict[str, str]:
    return dict(_bound.get())


class RunContextFilter(logging.Filter):
    """Copies the bound run context onto records; explicit `extra=` wins."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _bound.get().items():
            if key not in record.__dict__:
                setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        for key in RUN_CONTEXT_FIELDS:
            if key in fields:
                payload[key] = fields.pop(key)
        if fields:
            payload["extra"] = fields

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str) -> None:
    """Send JSON lines to stderr, keeping stdout free for command output."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RunContextFilter())

    root.addHandler(handler)
    root.setLevel(level.upper())

    # The OpenAI SDK and its HTTP stack are chatty at DEBUG.
    logging.getLogger("openai").setLevel(max(root.level, logging.INFO))
    logging.getLogger("httpx").setLevel(max(root.level, logging.WARNING))
