"""Configuration and the service container.

Only settings are re-exported here; import :mod:`errata.services.container`
directly for :class:`Services`, since it depends on the model layer, which in
turn reads settings.
"""

from .settings import AgentDefaults, ProviderConfig, SecretVault, Settings, SettingsStore, redact_secret

__all__ = [
    "AgentDefaults",
    "ProviderConfig",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "redact_secret",
]
