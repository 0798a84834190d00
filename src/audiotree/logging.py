from __future__ import annotations
import os
import sys
import time
import uuid
from contextlib import contextmanager
from typing import Optional, Any, Dict, Iterator
from loguru import logger

EXIT_FATAL = 4

_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | {message}"


def setup_console(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_FORMAT, enqueue=True, backtrace=False, diagnose=False)

def setup_file(path: str, level: str = "DEBUG") -> None:
    """Add a plain text sink. "-" means stdout."""
    sink: Any = sys.stdout if path == "-" else path
    logger.add(sink, level=level.upper(), format=_FORMAT, enqueue=True, backtrace=False, diagnose=False)

def setup_json(path: str, level: str = "DEBUG") -> None:
    logger.add(path, level=level.upper(), serialize=True, enqueue=True)

def configure(
    *,
    log_level: str = "INFO",
    verbose: bool = False,
    log_file: Optional[str] = None,
    log_json: Optional[str] = None,
) -> None:
    # -v only raises the console level; file sinks always receive DEBUG.
    setup_console("DEBUG" if verbose else log_level)
    if log_file:
        setup_file(log_file)
    if log_json:
        setup_json(log_json)

def bind_run(run_id: Optional[str] = None) -> str:
    rid = run_id or str(uuid.uuid4())
    # Use configure to apply extra fields to all loggers.
    logger.configure(extra={"run_id": rid})
    return rid

def get_logger(**context: Any):
    if context:
        return logger.bind(**context)
    return logger

def log_event(action: str, **fields: Any) -> None:
    # Strip None, truncate large lists/strings
    clean: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    msg = clean.pop("msg", action)
    level = clean.pop("level", "INFO").upper()
    logger.bind(action=action, **clean).log(level, msg)


def fatal(message: str, exit_code: int = EXIT_FATAL) -> None:
    """Log message, flush every sink and terminate the process.

    Uses os._exit so that a call from a worker thread ends the whole process
    rather than just the thread.
    """
    logger.opt(depth=1).critical(message)
    logger.complete()
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(exit_code)


@contextmanager
def timed(label: str, log=None) -> Iterator[None]:
    log = log or logger
    start = time.monotonic()
    log.info(f"Started {label} at {time.strftime('%Y-%m-%d %H:%M:%S')}")
    try:
        yield
    finally:
        elapsed = time.monotonic() - start
        log.info(f"Finished {label} at {time.strftime('%Y-%m-%d %H:%M:%S')} ({elapsed:.3f}s elapsed)")


def truncate(text: str, max_len: int = 4096, max_lines: int = 20) -> str:
    """Truncate a string to a max length and/or max number of lines."""
    if not text:
        return ""
    # Limit lines first
    lines = text.strip().splitlines()
    if len(lines) > max_lines:
        text = "\n".join(["... (truncated)"] + lines[-max_lines:])

    # Then limit length
    if len(text) > max_len:
        text = "... (truncated)\n" + text[-max_len:]
    return text
