"""Provider client caching and per-role model resolution."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Mapping, Protocol, Sequence, runtime_checkable

from ..errors import ProviderNotConfiguredError
from ..services.settings import ProviderConfig, Settings, redact_secret
from ..storage.stories import StoryStore
from .client import AIClient, AIStreamEvent, ClientSettings
from .roles import resolve_inherited_temperature, resolve_model_target

__all__ = [
    "ModelClient",
    "ResolvedModel",
    "ClientFactory",
    "ProviderClientCache",
    "ModelResolver",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class ModelClient(Protocol):
    """Protocol for clients that can stream chat completions.

    :class:`~errata.ai.client.AIClient` conforms to this protocol; tests
    substitute scripted fakes.
    """

    def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        tools: Sequence[Mapping[str, Any]] | None = None,
        tool_choice: str | Mapping[str, Any] | None = None,
        temperature: float | None = None,
        max_completion_tokens: int | None = None,
        **kwargs: Any,
    ) -> AsyncIterator[AIStreamEvent]:
        ...


ClientFactory = Callable[[ProviderConfig, Settings], ModelClient]


@dataclass(slots=True, frozen=True)
class ResolvedModel:
    """A ready-to-use client plus the identifiers it was resolved from."""

    client: ModelClient
    model_id: str
    provider_id: str | None
    role: str
    temperature: float | None = None
    provider_name: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Client cache
# -----------------------------------------------------------------------------


def _default_client_factory(provider: ProviderConfig, settings: Settings) -> ModelClient:
    return AIClient(
        ClientSettings(
            base_url=provider.base_url,
            api_key=provider.api_key,
            model=provider.default_model,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            default_headers=provider.custom_headers or None,
            debug_logging=settings.debug_logging,
        )
    )


class ProviderClientCache:
    """One client per distinct provider endpoint and credentials."""

    def __init__(self, factory: ClientFactory | None = None) -> None:
        self._factory = factory or _default_client_factory
        self._clients: dict[str, ModelClient] = {}

    @staticmethod
    def cache_key(provider: ProviderConfig) -> str:
        headers = json.dumps(provider.custom_headers, sort_keys=True) if provider.custom_headers else ""
        return f"{provider.id}:{provider.base_url}:{provider.api_key}:{headers}"

    def get(self, provider: ProviderConfig, settings: Settings) -> ModelClient:
        key = self.cache_key(provider)
        client = self._clients.get(key)
        if client is None:
            LOGGER.debug(
                "Creating client for provider %s (%s, key=%s)",
                provider.id,
                provider.base_url,
                redact_secret(provider.api_key) or "none",
            )
            client = self._factory(provider, settings)
            self._clients[key] = client
        return client

    def __len__(self) -> int:
        return len(self._clients)

    async def aclose(self) -> None:
        for client in self._clients.values():
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()
        self._clients.clear()


# -----------------------------------------------------------------------------
# Resolver
# -----------------------------------------------------------------------------


class ModelResolver:
    """Resolve a role for a story into a :class:`ResolvedModel`.

    Resolution walks the role's fallback chain through the story's
    ``model_overrides`` and falls back to the global default provider. The
    chosen provider must exist and be enabled.
    """

    def __init__(
        self,
        store: StoryStore,
        settings_loader: Callable[[], Settings],
        *,
        cache: ProviderClientCache | None = None,
    ) -> None:
        self._store = store
        self._settings_loader = settings_loader
        self._cache = cache or ProviderClientCache()

    @property
    def cache(self) -> ProviderClientCache:
        return self._cache

    def resolve(self, story_id: str | None, role: str) -> ResolvedModel:
        settings = self._settings_loader()
        overrides = {}
        if story_id:
            story = self._store.get_story(story_id)
            if story is not None:
                overrides = story.settings.model_overrides

        target = resolve_model_target(role, overrides, settings.default_provider_id)
        provider = settings.get_provider(target.provider_id)
        if provider is None or not provider.enabled:
            LOGGER.warning(
                "No enabled provider for role %s (candidate=%s)", role, target.provider_id
            )
            raise ProviderNotConfiguredError(role)

        model_id = target.model_id or provider.default_model
        temperature = resolve_inherited_temperature(role, overrides, provider.temperature)
        LOGGER.debug(
            "Resolved role %s -> provider=%s model=%s (via %s)",
            role,
            provider.id,
            model_id,
            target.source_role or "default provider",
        )
        return ResolvedModel(
            client=self._cache.get(provider, settings),
            model_id=model_id,
            provider_id=provider.id,
            role=role,
            temperature=temperature,
            provider_name=provider.name,
            headers=dict(provider.custom_headers),
        )
