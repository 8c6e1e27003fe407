"""Logging for the token server.

Records always go to stderr as plain text. With a Supabase client, they
are also turned into structured rows (tag, issuer, request context) and
inserted into the log table in batches.

Request context is attached at the call site:

    logger.info("[TOKEN] Code redeemed", extra={"client_id": cid, "sub": sub})
"""

import atexit
import json
import logging
import re
import sys
import threading
from datetime import datetime, timezone
from logging.handlers import BufferingHandler
from typing import Optional

import httpx
from postgrest.exceptions import APIError

from config import Settings

SERVICE_NAME = "dpop-token-server"
CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
CONTEXT_FIELDS = ("grant_type", "client_id", "sub", "jkt")

_TAG = re.compile(r"\[([A-Z_]+)\]\s*(.*)", re.DOTALL)

logger = logging.getLogger(__name__)


def split_tag(message: str) -> tuple[Optional[str], str]:
    """'[TOKEN] Code redeemed' -> ('TOKEN', 'Code redeemed')."""
    match = _TAG.match(message)
    if match:
        return match.group(1), match.group(2)
    return None, message


class LogRowFormatter(logging.Formatter):
    """Formats records as rows of the Supabase log table."""

    def __init__(self, issuer: Optional[str] = None):
        super().__init__()
        self.issuer = issuer

    def to_row(self, record: logging.LogRecord) -> dict:
        tag, message = split_tag(record.getMessage())
        context = {
            field: getattr(record, field)
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        }
        if record.exc_info:
            context["exception"] = self.formatException(record.exc_info)
        return {
            "service": SERVICE_NAME,
            "issuer": self.issuer,
            "logged_at": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "tag": tag,
            "message": message,
            "context": context,
        }

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self.to_row(record), default=str)


class SupabaseLogHandler(BufferingHandler):
    """Buffers log rows and inserts them into a Supabase table.

    A batch is sent once `capacity` rows are waiting, every
    `flush_interval` seconds from a daemon thread, and on close.
    """

    def __init__(
        self,
        supabase_client,
        issuer: Optional[str] = None,
        table: str = "logs",
        capacity: int = 20,
        flush_interval: float = 10.0,
    ):
        super().__init__(capacity)
        self.supabase = supabase_client
        self.table = table
        self.flush_interval = flush_interval
        self.setFormatter(LogRowFormatter(issuer))

        self._stopped = threading.Event()
        self._worker = threading.Thread(
            target=self._flush_periodically, name="supabase-log-flush", daemon=True
        )
        self._worker.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        # Rows are built here so the message reflects the args at call time
        try:
            self.buffer.append(self.formatter.to_row(record))
        except Exception:
            self.handleError(record)
            return
        if self.shouldFlush(record):
            self.flush()

    def flush(self) -> None:
        with self.lock:
            rows, self.buffer = self.buffer, []
        if not rows:
            return
        try:
            self.supabase.table(self.table).insert(rows).execute()
        except (APIError, httpx.HTTPError) as e:
            # stderr only, logging here would re-enter this handler
            print(f"[WARNING] Dropped {len(rows)} log rows: {e}", file=sys.stderr)

    def _flush_periodically(self) -> None:
        while not self._stopped.wait(self.flush_interval):
            self.flush()

    def close(self) -> None:
        self._stopped.set()
        super().close()


_log_handler: Optional[SupabaseLogHandler] = None


def setup_logging(settings: Settings, supabase_client=None) -> logging.Logger:
    """Configure the root logger from settings.

    Args:
        settings: Supplies the level, the issuer recorded on each row and
            the Supabase log table.
        supabase_client: Enables the Supabase sink when given.

    Returns:
        The root logger.
    """
    global _log_handler

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)
    root_logger.handlers.clear()
    if _log_handler is not None:
        _log_handler.close()
        _log_handler = None

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root_logger.addHandler(console)

    if supabase_client is not None:
        _log_handler = SupabaseLogHandler(
            supabase_client, issuer=settings.base_url, table=settings.log_table
        )
        _log_handler.setLevel(logging.INFO)
        root_logger.addHandler(_log_handler)

    # Supabase talks through httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if _log_handler is not None:
        logger.info(f"[STARTUP] Logging to Supabase table {settings.log_table}")
    else:
        logger.info("[STARTUP] Supabase logging disabled (no client)")
    return root_logger


def flush_logs() -> None:
    """Send any buffered log rows now."""
    if _log_handler is not None:
        _log_handler.flush()
