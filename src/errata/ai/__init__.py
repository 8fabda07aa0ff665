"""Model access: client, role resolution, provider caching and usage."""

from .client import AIClient, AIStreamEvent, ClientSettings
from .providers import ModelClient, ModelResolver, ProviderClientCache, ResolvedModel
from .roles import ROLE_REGISTRY, ModelRoleDefinition, ModelRoleRegistry, get_fallback_chain, resolve_provider
from .usage import TokenUsage, UsageTracker, normalize_usage

__all__ = [
    "AIClient",
    "AIStreamEvent",
    "ClientSettings",
    "ModelClient",
    "ModelResolver",
    "ModelRoleDefinition",
    "ModelRoleRegistry",
    "ProviderClientCache",
    "ROLE_REGISTRY",
    "ResolvedModel",
    "TokenUsage",
    "UsageTracker",
    "get_fallback_chain",
    "normalize_usage",
    "resolve_provider",
]
