"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from errata.agents.bootstrap import ensure_core_agents_registered
from errata.blocks.helpers import SYSTEM_PROMPT_TAG
from errata.blocks.instructions import INSTRUCTION_REGISTRY
from errata.services.container import Services, create_services
from errata.services.settings import ProviderConfig, Settings, SettingsStore
from errata.storage.stories import FileStoryStore
from errata.storage.types import Fragment, StoryMeta
from tests.helpers import FakeModelClient

STORY_ID = "story-1"


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("ERRATA_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def store(tmp_path: Path) -> FileStoryStore:
    return FileStoryStore(tmp_path)


@pytest.fixture
def story(store: FileStoryStore) -> StoryMeta:
    """A small story: two prose passages, a sticky character and guideline."""
    meta = store.save_story(
        StoryMeta(
            id=STORY_ID,
            name="The Lighthouse",
            description="A keeper waits out a storm.",
            summary="Mara found a letter in the lamp room.",
        )
    )
    fragments = [
        Fragment(id="pr-one", type="prose", name="Opening", content="The storm rolled in at dusk.", order=1),
        Fragment(id="pr-two", type="prose", name="Letter", content="Mara unfolded the letter.", order=2),
        Fragment(
            id="ch-mara",
            type="character",
            name="Mara",
            description="The lighthouse keeper",
            content="Stubborn, kind, afraid of the sea.",
            sticky=True,
        ),
        Fragment(id="ch-tom", type="character", name="Tom", description="A fisherman", content="Loud."),
        Fragment(
            id="gl-tone",
            type="guideline",
            name="Tone",
            description="Quiet dread",
            content="Keep sentences short.",
            sticky=True,
        ),
        Fragment(id="kn-bay", type="knowledge", name="The Bay", description="Rocky inlet", content="Sharp rocks."),
        Fragment(
            id="gl-system",
            type="guideline",
            name="House Style",
            description="Passed to every system prompt",
            content="Never use the word 'suddenly'.",
            tags=[SYSTEM_PROMPT_TAG],
        ),
    ]
    for fragment in fragments:
        store.save_fragment(STORY_ID, fragment)
    return meta


@pytest.fixture
def fake_client() -> FakeModelClient:
    return FakeModelClient()


@pytest.fixture
def services(tmp_path: Path, store: FileStoryStore, story: StoryMeta, fake_client: FakeModelClient) -> Services:
    SettingsStore.for_data_dir(tmp_path).save(
        Settings(
            providers=[
                ProviderConfig(
                    id="prov-test",
                    name="Test Provider",
                    base_url="http://localhost:9999/v1",
                    api_key="sk-test",
                    default_model="test-model",
                )
            ],
            default_provider_id="prov-test",
        )
    )
    return create_services(tmp_path, client_factory=lambda _provider, _settings: fake_client, store=store)


@pytest.fixture
def core_agents() -> None:
    ensure_core_agents_registered()


@pytest.fixture
def instruction_overrides():
    yield INSTRUCTION_REGISTRY
    INSTRUCTION_REGISTRY.clear_model_overrides()
