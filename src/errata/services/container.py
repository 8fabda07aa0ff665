"""Service container handed to every agent invocation.

The container groups the stores and registries that agents reach through
``context.services``: story storage, settings, block configs, run traces,
usage totals, model resolution and the active-agent registry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from ..agents.active import ActiveAgentRegistry
from ..agents.traces import TraceStore
from ..agents.types import AgentCallOptions
from ..ai.providers import ClientFactory, ModelResolver, ProviderClientCache
from ..ai.tokens import TokenCounterRegistry
from ..ai.usage import UsageTracker
from ..blocks.storage import BlockConfigStore
from ..storage.stories import FileStoryStore
from .settings import Settings, SettingsStore

__all__ = ["Services", "create_services"]


@dataclass(slots=True)
class Services:
    """Container holding the engine's collaborators.

    Attributes:
        data_dir: Root of all persisted state.
        store: Story and fragment storage.
        settings_store: Loads provider and runner settings.
        block_store: Per-story, per-agent block configuration.
        traces: Persisted root-run records.
        usage: Token usage totals.
        models: Resolves a model role to a ready client.
        active_agents: Agents currently streaming.
        tokens: Tokenizers for prompt previews.
        settings_overrides: Runtime overrides applied on every settings load.
    """

    data_dir: Path
    store: FileStoryStore
    settings_store: SettingsStore
    block_store: BlockConfigStore
    traces: TraceStore
    usage: UsageTracker
    models: ModelResolver
    active_agents: ActiveAgentRegistry
    tokens: TokenCounterRegistry
    settings_overrides: dict[str, Any] = field(default_factory=dict)

    def load_settings(self) -> Settings:
        return self.settings_store.load(overrides=self.settings_overrides or None)

    @property
    def agent_defaults(self) -> AgentCallOptions:
        defaults = self.load_settings().agent_defaults
        return AgentCallOptions(
            max_depth=defaults.max_depth,
            max_calls=defaults.max_calls,
            timeout_ms=defaults.timeout_ms,
        )

    def summary(self) -> dict[str, Any]:
        return {
            "data_dir": str(self.data_dir),
            "settings": str(self.settings_store.path),
            "active_agents": len(self.active_agents),
            "cached_clients": len(self.models.cache),
        }


def create_services(
    data_dir: Path | str,
    *,
    client_factory: ClientFactory | None = None,
    settings_overrides: Mapping[str, Any] | None = None,
    store: FileStoryStore | None = None,
    traces: TraceStore | None = None,
    usage: UsageTracker | None = None,
) -> Services:
    """Build a :class:`Services` container rooted at ``data_dir``.

    Args:
        data_dir: Directory holding stories and ``settings.json``.
        client_factory: Builds model clients per provider; tests pass fakes.
        settings_overrides: Values layered over the stored settings.
        store: Story storage; defaults to a :class:`FileStoryStore`.
        traces: Trace store; defaults to one persisting under ``data_dir``.
        usage: Usage tracker; defaults to one persisting under ``data_dir``.

    Returns:
        The wired container.
    """
    root = Path(data_dir)
    story_store = store or FileStoryStore(root)
    settings_store = SettingsStore.for_data_dir(root)
    overrides = dict(settings_overrides or {})

    def load_settings() -> Settings:
        return settings_store.load(overrides=overrides or None)

    return Services(
        data_dir=root,
        store=story_store,
        settings_store=settings_store,
        block_store=BlockConfigStore(story_store),
        traces=traces or TraceStore(root),
        usage=usage or UsageTracker(root),
        models=ModelResolver(
            story_store,
            load_settings,
            cache=ProviderClientCache(client_factory),
        ),
        active_agents=ActiveAgentRegistry(),
        tokens=TokenCounterRegistry.global_instance(),
        settings_overrides=overrides,
    )
