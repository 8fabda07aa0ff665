"""Tests for the errata command line."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from errata import cli
from errata.ai.tokens import TokenCounterRegistry
from errata.ai.usage import TokenUsage
from errata.agents.runner import invoke_agent
from errata.services.container import Services
from tests.conftest import STORY_ID


class _WordCounter:
    def count(self, text: str) -> int:
        return len(text.split())


@pytest.fixture(autouse=True)
def _quiet_cli(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)
    monkeypatch.setattr(TokenCounterRegistry, "get", lambda self, model_name=None: _WordCounter())


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, str, str]:
    code = cli.main(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


class TestCli:
    """Subcommands against a data directory prepared by the fixtures."""

    @pytest.mark.asyncio
    async def test_runs_lists_recorded_runs(
        self, tmp_path: Path, services: Services, capsys: pytest.CaptureFixture[str]
    ) -> None:
        # the default fake reply is not a JSON array
        with pytest.raises(ValueError):
            await invoke_agent(services, STORY_ID, "directions.suggest", {})
        capsys.readouterr()

        code, out, _ = _run(capsys, "--data-dir", str(tmp_path), "runs", "--story", STORY_ID)

        assert code == 0
        records = json.loads(out)
        assert records[0]["agent_name"] == "directions.suggest"
        assert records[0]["status"] == "error"

    def test_usage_reads_project_totals(
        self, tmp_path: Path, services: Services, capsys: pytest.CaptureFixture[str]
    ) -> None:
        services.usage.report_usage(STORY_ID, "generation.write", TokenUsage(5, 2), "test-model")

        code, out, _ = _run(capsys, "--data-dir", str(tmp_path), "usage", "--story", STORY_ID)

        payload = json.loads(out)
        assert code == 0
        assert payload["project"]["input_tokens"] == 5
        assert payload["session"]["calls"] == 0

    def test_blocks_preview(self, tmp_path: Path, services: Services, capsys: pytest.CaptureFixture[str]) -> None:
        code, out, _ = _run(capsys, "--data-dir", str(tmp_path), "blocks", "generation.write", "--story", STORY_ID)

        payload = json.loads(out)
        assert code == 0
        ids = [block["id"] for block in payload["blocks"]]
        assert ids[:2] == ["instructions", "system-fragments"]
        assert "author-input" in ids
        assert payload["total_tokens"] == sum(block["tokens"] for block in payload["blocks"])
        assert [message["role"] for message in payload["messages"]] == ["system", "user"]

    def test_blocks_unknown_agent(
        self, tmp_path: Path, services: Services, capsys: pytest.CaptureFixture[str]
    ) -> None:
        code, _, err = _run(capsys, "--data-dir", str(tmp_path), "blocks", "nope.agent", "--story", STORY_ID)

        assert code == 1
        assert "No block definition for agent: nope.agent" in err

    def test_run_rejects_bad_json(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code, _, err = _run(
            capsys, "--data-dir", str(tmp_path), "run", "generation.write", "--story", STORY_ID, "--input", "{nope"
        )

        assert code == 2
        assert "Invalid --input JSON" in err
