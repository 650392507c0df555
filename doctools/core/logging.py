import logging
import logging.handlers
import sys
import traceback
from pathlib import Path
from types import TracebackType

from doctools.config import Settings

LOG_LINE_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "doctools.log"
TRACEBACK_TAIL_FRAMES = 4

# Held at WARNING.
QUIET_LOGGERS = ("httpx", "httpcore", "openai", "asyncpg", "sqlalchemy.engine")
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")

_log_file_path: Path | None = None


class ConsoleFormatter(logging.Formatter):
  """Console formatter that keeps only the head and tail of a traceback; the file handler keeps it whole."""

  # ruff: noqa: N802
  def formatException(self, ei: tuple[type[BaseException] | None, BaseException | None, TracebackType | None]) -> str:
    lines = traceback.format_exception(*ei)
    if len(lines) <= TRACEBACK_TAIL_FRAMES + 2:
      return "".join(lines)
    return "".join([lines[0], "    ...\n", *lines[-TRACEBACK_TAIL_FRAMES:]])


def _file_handler(settings: Settings) -> tuple[logging.Handler, Path]:
  log_dir = Path(settings.log_dir).resolve()
  try:
    log_dir.mkdir(parents=True, exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Cannot create log directory {log_dir}: {exc}") from exc

  log_path = log_dir / LOG_FILE_NAME
  handler = logging.handlers.RotatingFileHandler(log_path, encoding="utf-8", maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count)
  handler.setFormatter(logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  return handler, log_path


def configure_logging(settings: Settings) -> Path:
  """Route root, server, and library loggers to stdout plus a rotating file."""
  console = logging.StreamHandler(sys.stdout)
  console.setFormatter(ConsoleFormatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  file_handler, log_path = _file_handler(settings)

  level = logging.DEBUG if settings.debug else logging.INFO
  logging.basicConfig(level=level, handlers=[console, file_handler], force=True)
  for name in SERVER_LOGGERS:
    server_logger = logging.getLogger(name)
    server_logger.handlers = [console, file_handler]
    server_logger.propagate = False
  for name in QUIET_LOGGERS:
    logging.getLogger(name).setLevel(logging.WARNING)
  return log_path


def initialize_logging(settings: Settings) -> Path:
  """Configure logging once per process; later calls return the existing path."""
  global _log_file_path
  if _log_file_path is None:
    _log_file_path = configure_logging(settings)
    logging.getLogger("doctools.core.logging").info("Logging initialized level=%s file=%s", "DEBUG" if settings.debug else "INFO", _log_file_path)
  return _log_file_path
