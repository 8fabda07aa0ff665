"""Tests for run-scoped logging."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from errata.utils.logging import RunContextFilter, bind_run, setup_logging


def _stamp() -> tuple[str, str]:
    record = logging.LogRecord("errata.test", logging.INFO, __file__, 1, "msg", None, None)
    RunContextFilter().filter(record)
    return record.story_id, record.run_id


class TestRunContext:
    def test_unbound_records_show_placeholder(self) -> None:
        assert _stamp() == ("-", "-")

    def test_binding_is_scoped(self) -> None:
        with bind_run("story-1", "ar-1"):
            assert _stamp() == ("story-1", "ar-1")
            with bind_run("story-1", "ar-2"):
                assert _stamp() == ("story-1", "ar-2")
            assert _stamp() == ("story-1", "ar-1")
        assert _stamp() == ("-", "-")

    @pytest.mark.asyncio
    async def test_tasks_inherit_binding(self) -> None:
        with bind_run("story-1", "ar-task"):
            inner = asyncio.create_task(self._stamp_later())

        assert await inner == ("story-1", "ar-task")

    @staticmethod
    async def _stamp_later() -> tuple[str, str]:
        await asyncio.sleep(0)
        return _stamp()

    def test_explicit_extras_win(self) -> None:
        record = logging.LogRecord("errata.test", logging.INFO, __file__, 1, "msg", None, None)
        record.run_id = "from-adapter"
        with bind_run("story-1", "ar-bound"):
            RunContextFilter().filter(record)

        assert record.run_id == "from-adapter"
        assert record.story_id == "story-1"


def test_log_file_lives_under_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ERRATA_LOG_DIR", raising=False)
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        path = setup_logging(logging.INFO, data_dir=tmp_path, console=False)
        logging.getLogger("errata.test").info("hello")
        for handler in root.handlers:
            handler.flush()

        assert path == tmp_path / "logs" / "errata.log"
        assert "-/- | hello" in path.read_text(encoding="utf-8")
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        logging.captureWarnings(False)
