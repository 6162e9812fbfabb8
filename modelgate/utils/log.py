"""Logging for modelgate.

One process-wide ``modelgate`` logger: stderr at ``MODELGATE_LOG_LEVEL``
(WARNING by default) and, when enabled, a debug file under the state
directory. Every credential the gateway handles is registered with a
redaction filter so it never reaches a sink.
"""

import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RECORD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}

REDACTED = "***"


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """``<UTC timestamp> [LEVEL] message | {"provider_id": ...}``"""

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _extra_fields(record)
        if not context:
            return line
        return f"{line} | {json.dumps(context, sort_keys=True, default=str)}"


class SecretRedactingFilter(logging.Filter):
    """Replace registered secrets in messages and string extras with ``***``."""

    def __init__(self) -> None:
        super().__init__()
        self._secrets: set[str] = set()
        self._lock = threading.Lock()

    def register(self, secret: str) -> None:
        if secret:
            with self._lock:
                self._secrets.add(secret)

    def forget(self, secret: str) -> None:
        with self._lock:
            self._secrets.discard(secret)

    def redact(self, text: str) -> str:
        with self._lock:
            # Longest first so a secret containing another is replaced whole.
            secrets = sorted(self._secrets, key=len, reverse=True)
        for secret in secrets:
            text = text.replace(secret, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if self._secrets:
            record.msg = self.redact(record.getMessage())
            record.args = None
            for key, value in _extra_fields(record).items():
                if isinstance(value, str):
                    setattr(record, key, self.redact(value))
        return True


class GatewayLogger:
    """Wraps the ``modelgate`` logger and owns its redaction filter.

    Level methods (``debug``, ``info``, ``warning``, ...) are forwarded to the
    underlying :class:`logging.Logger`.
    """

    def __init__(self, name: str = "modelgate") -> None:
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        redactor = next((f for f in self.logger.filters if isinstance(f, SecretRedactingFilter)), None)
        if redactor is None:
            redactor = SecretRedactingFilter()
            self.logger.addFilter(redactor)
        self.redactor = redactor

        if not self.logger.handlers:
            console = logging.StreamHandler(sys.stderr)
            console.setLevel(_console_level())
            console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
            self.logger.addHandler(console)

        self._file_handler: Optional[logging.FileHandler] = None

    def __getattr__(self, name: str) -> Any:
        return getattr(self.logger, name)

    def attach_file(self, log_file: Path) -> Path:
        """Send debug output to ``log_file``, replacing any earlier file."""
        if self._file_handler is not None:
            if Path(self._file_handler.baseFilename) == log_file.resolve():
                return log_file
            self.logger.removeHandler(self._file_handler)
            self._file_handler.close()

        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(StructuredFormatter("%(asctime)s [%(levelname)s] %(message)s"))
        self.logger.addHandler(handler)
        self._file_handler = handler
        return log_file

    def register_secret(self, secret: str) -> None:
        """Make sure ``secret`` never reaches a log sink."""
        self.redactor.register(secret)

    def forget_secret(self, secret: str) -> None:
        self.redactor.forget(secret)


def _console_level() -> int:
    name = os.getenv("MODELGATE_LOG_LEVEL", "WARNING").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.WARNING


_logger: Optional[GatewayLogger] = None


def get_logger() -> GatewayLogger:
    global _logger
    if _logger is None:
        _logger = GatewayLogger()
    return _logger


def enable_file_logging(state_dir: Path) -> Path:
    """Write debug logs to ``<state_dir>/logs/modelgate_YYYYMMDD.log``."""
    logger = get_logger()
    log_file = logger.attach_file(state_dir / "logs" / f"modelgate_{datetime.now():%Y%m%d}.log")
    logger.debug("[logging] File logging enabled", extra={"log_file": str(log_file)})
    return log_file


def redact_secrets(text: str) -> str:
    """Replace every registered credential value in ``text``."""
    return get_logger().redactor.redact(text)


def mask_secret(secret: str, visible_chars: int = 4) -> str:
    """Mask a credential for display: ``sk-abcdefghijk`` -> ``sk-*******hijk``."""
    if not secret:
        return ""
    if len(secret) <= visible_chars * 2:
        return "*" * len(secret)
    head, tail = secret[:3], secret[-visible_chars:]
    return head + "*" * max(len(secret) - len(head) - len(tail), 4) + tail
