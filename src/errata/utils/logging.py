"""Logging setup for the engine and its CLI.

Every record carries the story and agent run it was emitted under, so a
single log file can be followed per run. The runner binds both through
:func:`bind_run`; records emitted outside a run show ``-``.
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

__all__ = ["setup_logging", "bind_run", "RunContextFilter"]

_DEFAULT_LOG_DIR = Path.home() / ".errata" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(story_id)s/%(run_id)s | %(message)s"

_RUN_CONTEXT: contextvars.ContextVar[tuple[str, str] | None] = contextvars.ContextVar(
    "errata_run_context", default=None
)


class RunContextFilter(logging.Filter):
    """Stamp ``story_id`` and ``run_id`` onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        bound = _RUN_CONTEXT.get()
        story_id, run_id = bound if bound is not None else ("-", "-")
        if not hasattr(record, "story_id"):
            record.story_id = story_id
        if not hasattr(record, "run_id"):
            record.run_id = run_id
        return True


@contextmanager
def bind_run(story_id: str, run_id: str) -> Iterator[None]:
    """Attribute log records emitted inside the block to ``run_id``.

    Tasks started inside the block inherit the binding, since asyncio copies
    the current context when a task is created.
    """

    token = _RUN_CONTEXT.set((story_id, run_id))
    try:
        yield
    finally:
        _RUN_CONTEXT.reset(token)


def setup_logging(
    level: int = logging.INFO,
    *,
    data_dir: Path | str | None = None,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
) -> Path:
    """Install a rotating ``errata.log`` handler plus an optional stderr handler.

    Args:
        level: Root level for both handlers.
        data_dir: Engine data directory. Logs go to ``<data_dir>/logs`` unless
            ``log_dir`` or ``ERRATA_LOG_DIR`` says otherwise.
        log_dir: Explicit log directory.
        console: Also log to stderr. Stdout is reserved for CLI output.
        max_bytes: Rotation threshold.
        backup_count: Number of rotated files to keep.

    Returns:
        The path of the active log file.
    """

    target_dir = _resolve_log_dir(log_dir, data_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "errata.log"

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    context_filter = RunContextFilter()

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_dependencies(level)

    return log_path


def _resolve_log_dir(log_dir: Path | str | None, data_dir: Path | str | None) -> Path:
    if log_dir:
        return Path(log_dir).expanduser()
    env_override = os.environ.get("ERRATA_LOG_DIR")
    if env_override:
        return Path(env_override).expanduser()
    if data_dir:
        return Path(data_dir).expanduser() / "logs"
    return _DEFAULT_LOG_DIR


def _quiet_dependencies(root_level: int) -> None:
    quiet_level = max(root_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
