"""Logging configuration for the script runner.

Sets up a dual-handler logging pipeline for the host process:

1. **Console** -- :class:`SafeStreamHandler` that gracefully handles
   Unicode on Windows by falling back to ``cp1252`` replacement
   encoding.
2. **File** -- :class:`CompressedRotatingFileHandler` writing to
   ``logs/script_runner.log`` with automatic gzip rotation (10 MiB per
   file, 5 backups).

Child runner processes call :func:`setup_logging` with ``log_file=None``
and ``stream=sys.stderr``: their stdout is reserved for the event
protocol.

Every handler carries a :class:`SecretRedactingFilter` so that wallet
private keys never reach a log sink.

Usage::

    from core.logging_setup import setup_logging
    setup_logging("DEBUG")
"""

import gzip
import logging
import os
import re
import shutil
import sys
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional, Set, TextIO

from core.config import LOGS_DIR

# 32-byte hex keys, with or without the 0x prefix
_HEX_KEY_PATTERN = re.compile(r"\b(?:0x)?[0-9a-fA-F]{64}\b")
REDACTED = "***REDACTED***"


class CompressedRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that gzip-compresses rotated log files."""

    def rotation_filename(self, default_name: str) -> str:
        """Append ``.gz`` to the rotated file name."""
        return f"{default_name}.gz"

    def rotate(self, source: str, dest: str) -> None:
        """Compress *source* into *dest* and remove *source*."""
        with open(source, 'rb') as f_in:
            with gzip.open(dest, 'wb') as f_out:
                shutil.copyfileobj(f_in, f_out)
        os.remove(source)


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that safely handles Unicode on Windows.

    On Windows, console output defaults to a narrow code page that
    cannot represent emoji and many Unicode characters.  This handler
    catches :exc:`UnicodeEncodeError` and falls back to ``cp1252``
    with replacement characters so that logging never crashes the
    application.
    """

    def emit(self, record: logging.LogRecord) -> None:
        """Emit a log record, handling encoding errors gracefully."""
        try:
            msg = self.format(record)
            stream = self.stream
            if sys.platform == "win32":
                try:
                    stream.write(msg + self.terminator)
                except UnicodeEncodeError:
                    safe_msg = msg.encode(
                        'cp1252', errors='replace',
                    ).decode('cp1252')
                    stream.write(safe_msg + self.terminator)
            else:
                stream.write(msg + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


class SecretRedactingFilter(logging.Filter):
    """Mask private keys in log records.

    Known secrets (registered with :meth:`add_secrets`) are replaced
    verbatim; anything shaped like a 64-hex-digit key is masked as well.
    The record is rewritten in place and always let through.
    """

    def __init__(self, secrets: Optional[Iterable[str]] = None) -> None:
        super().__init__()
        self._secrets: Set[str] = set()
        self.add_secrets(secrets or [])

    def add_secrets(self, secrets: Iterable[str]) -> None:
        """Register additional literal secrets to mask."""
        for secret in secrets:
            if secret and len(secret) >= 8:
                self._secrets.add(secret)

    def redact(self, text: str) -> str:
        """Return *text* with every known secret and hex key masked."""
        for secret in self._secrets:
            if secret in text:
                text = text.replace(secret, REDACTED)
        return _HEX_KEY_PATTERN.sub(REDACTED, text)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


_redaction_filter = SecretRedactingFilter()


def get_redaction_filter() -> SecretRedactingFilter:
    """Return the process-wide redaction filter installed on all handlers."""
    return _redaction_filter


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = str(LOGS_DIR / "script_runner.log"),
    stream: Optional[TextIO] = None,
) -> None:
    """Configure the root logger with console and (optional) file handlers.

    On Windows the console stream is switched to UTF-8 with replacement
    before its handler is created.

    Args:
        log_level: Logging level name (e.g. ``"DEBUG"``, ``"INFO"``).
        log_file: Rotating log file path, or ``None`` for console only.
        stream: Console stream (defaults to ``sys.stdout``).
    """
    console = stream or sys.stdout
    # Must happen BEFORE creating StreamHandler
    if sys.platform == "win32" and hasattr(console, "reconfigure"):
        console.reconfigure(encoding="utf-8", errors="replace")

    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers = []
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(CompressedRotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8',
        ))

    handlers.append(SafeStreamHandler(console))
    for handler in handlers:
        handler.addFilter(_redaction_filter)

    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(name)s - %(message)s',
        handlers=handlers,
        force=True,
    )
