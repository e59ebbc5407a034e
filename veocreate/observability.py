"""Logging for VEO construction runs.

All modules log through the standard ``logging`` hierarchy under the
``veocreate`` logger. ``VEOLogger`` adds structured control-file context
(line number, command, VEO name) to each record so that every report can be
traced back to the offending control-file line.

Two output styles are available through ``configure_logging``:

- text (default): ``LEVEL: message``
- JSON lines (``json_output=True``): one ``LogEvent`` object per record
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROOT_LOGGER = "veocreate"

TEXT_FORMAT = "%(levelname)s: %(message)s"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    line: Optional[int] = None
    command: str = ""
    veo: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                line=getattr(record, "line", None),
                command=getattr(record, "command", ""),
                veo=getattr(record, "veo", ""),
                context=getattr(record, "context", {}),
            )
            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))
            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class VEOLogger:
    """Logger carrying control-file context."""

    def __init__(self, name: str = "interpreter"):
        self.name = name
        self._logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def _log(
        self,
        level: int,
        message: str,
        line: Optional[int] = None,
        command: str = "",
        veo: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {"line": line, "command": command, "veo": veo, "context": context}
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, exc_info: bool = False, **context: Any) -> None:
        self._log(logging.ERROR, message, exc_info=exc_info, **context)

    def critical(self, message: str, exc_info: bool = False, **context: Any) -> None:
        self._log(logging.CRITICAL, message, exc_info=exc_info, **context)


def configure_logging(
    level: int = logging.WARNING,
    *,
    json_output: bool = False,
    stream: Any = None,
) -> logging.Logger:
    """Install a single handler on the ``veocreate`` logger.

    Calling this again replaces the handler installed by a previous call.
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    for h in list(root.handlers):
        if getattr(h, "_veocreate", False):
            root.removeHandler(h)

    if json_output:
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    handler._veocreate = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    return root
