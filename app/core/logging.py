"""Key=value structured logging for the plan pipeline engine.

Stage code logs with ``extra={"run_id": ..., "stage": ...}``; the formatter
renders those fields after the message so one run can be followed with grep.
"""

import logging
import sys

from app.core.config import get_settings

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}

_BASE_FIELDS = ("timestamp", "level", "module", "function", "message")


class StructuredFormatter(logging.Formatter):
    """Render a record as space-separated key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        fields = dict(
            zip(
                _BASE_FIELDS,
                (
                    self.formatTime(record, self.datefmt),
                    record.levelname,
                    record.module,
                    record.funcName,
                    record.getMessage(),
                ),
            )
        )

        # run_id leads the context fields
        if hasattr(record, "run_id"):
            fields["run_id"] = record.run_id
        fields.update(getattr(record, "extra_data", None) or {})

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in fields or key == "extra_data":
                continue
            fields[key] = value

        line = " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _level_for_environment() -> int:
    try:
        env = get_settings().PLAN_ENGINE_ENV
    except Exception:  # settings unavailable, e.g. invalid environment
        return logging.INFO
    return logging.DEBUG if env == "dev" else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Return the logger for ``name``, attaching the stdout handler on first use.

    The level is DEBUG when ``PLAN_ENGINE_ENV`` is ``dev`` and INFO otherwise.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)
    logger.setLevel(_level_for_environment())
    return logger
