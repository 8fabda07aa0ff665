"""Global settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..storage.types import utcnow_iso
from ..utils.file_io import write_text

__all__ = [
    "AgentDefaults",
    "ProviderConfig",
    "Settings",
    "SettingsStore",
    "SecretVault",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_FILENAME = "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "ERRATA_DEFAULT_PROVIDER": "default_provider_id",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "ERRATA_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "ERRATA_REQUEST_TIMEOUT": "request_timeout",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "ERRATA_MAX_RETRIES": "max_retries",
}
_AGENT_ENV_OVERRIDES: Mapping[str, str] = {
    "ERRATA_AGENT_MAX_DEPTH": "max_depth",
    "ERRATA_AGENT_MAX_CALLS": "max_calls",
    "ERRATA_AGENT_TIMEOUT_MS": "timeout_ms",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"
_FERNET_PREFIX = "fernet"


@dataclass(slots=True)
class AgentDefaults:
    """Runner limits applied when a root call passes no explicit options."""

    max_depth: int = 3
    max_calls: int = 20
    timeout_ms: int = 300_000


@dataclass(slots=True)
class ProviderConfig:
    """An OpenAI-compatible endpoint the user has configured."""

    id: str
    name: str
    base_url: str
    api_key: str = ""
    default_model: str = "gpt-4o-mini"
    preset: str = "custom"
    enabled: bool = True
    custom_headers: dict[str, str] = field(default_factory=dict)
    temperature: float | None = None
    created_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    providers: list[ProviderConfig] = field(default_factory=list)
    default_provider_id: str | None = None
    agent_defaults: AgentDefaults = field(default_factory=AgentDefaults)
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    debug_logging: bool = False

    def get_provider(self, provider_id: str | None) -> ProviderConfig | None:
        if not provider_id:
            return None
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None


class SecretVault:
    """Encrypts provider API keys with a Fernet key stored beside the settings file."""

    def __init__(self, key_path: Path) -> None:
        self._key_path = key_path
        self._fernet: Fernet | None = None

    @property
    def strategy(self) -> str:
        return _FERNET_PREFIX

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{_FERNET_PREFIX}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if prefix != _FERNET_PREFIX or not payload:
            LOGGER.warning("Unknown secret token prefix %s; returning ciphertext.", prefix)
            return token
        try:
            return self._get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path, *, vault: SecretVault | None = None) -> None:
        self._path = path
        self._vault = vault or SecretVault(path.with_suffix(".key"))

    @classmethod
    def for_data_dir(cls, data_dir: Path | str) -> SettingsStore:
        return cls(Path(data_dir) / _SETTINGS_FILENAME)

    @property
    def path(self) -> Path:
        """Return the resolved path backing this store."""

        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying runtime and environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            data["providers"] = [
                provider
                for provider in (self._load_provider(item) for item in payload.get("providers") or ())
                if provider is not None
            ]
            defaults_payload = data.get("agent_defaults")
            if isinstance(defaults_payload, Mapping):
                try:
                    data["agent_defaults"] = AgentDefaults(**defaults_payload)
                except TypeError:
                    data["agent_defaults"] = AgentDefaults()
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
        LOGGER.debug(
            "Settings loaded from %s: %d provider(s), default=%s",
            self._path,
            len(settings.providers),
            settings.default_provider_id,
        )

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = self._serialize(settings)
        write_text(self._path, json.dumps(payload, indent=2, sort_keys=True))
        LOGGER.debug("Settings saved to %s: %d provider(s)", self._path, len(settings.providers))
        return self._path

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        providers: list[dict[str, Any]] = []
        for provider in data.get("providers", []):
            api_key = provider.pop("api_key", "") or ""
            ciphertext = self._vault.encrypt(api_key)
            if ciphertext:
                provider[_API_KEY_FIELD] = ciphertext
            providers.append(provider)
        data["providers"] = providers
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _load_provider(self, payload: Any) -> ProviderConfig | None:
        if not isinstance(payload, Mapping):
            return None
        data = dict(payload)
        ciphertext = data.pop(_API_KEY_FIELD, None)
        plaintext = data.pop("api_key", None)
        allowed = {item.name for item in fields(ProviderConfig)}
        data = {key: value for key, value in data.items() if key in allowed}
        try:
            provider = ProviderConfig(**data)
        except TypeError as exc:
            LOGGER.warning("Skipping malformed provider entry: %s", exc)
            return None
        if ciphertext:
            try:
                provider.api_key = self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key for provider %s: %s", provider.id, exc)
        elif isinstance(plaintext, str):
            provider.api_key = plaintext
        return provider

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str,
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        defaults_override = filtered.get("agent_defaults")
        if isinstance(defaults_override, Mapping):
            filtered["agent_defaults"] = replace(settings.agent_defaults, **defaults_override)
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            parsed = _read_int_env(env_name)
            if parsed is not None:
                overrides[field_name] = parsed
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        agent_overrides: Dict[str, int] = {}
        for env_name, field_name in _AGENT_ENV_OVERRIDES.items():
            parsed = _read_int_env(env_name)
            if parsed is not None:
                agent_overrides[field_name] = parsed
        if agent_overrides:
            overrides["agent_defaults"] = agent_overrides
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _read_int_env(env_name: str) -> int | None:
    value = os.environ.get(env_name)
    if value is None:
        return None
    try:
        return int(value, 10)
    except ValueError:
        LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        return None


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - {"providers"}
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
