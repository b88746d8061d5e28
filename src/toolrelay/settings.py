"""Engine settings dataclass and loading helpers."""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

__all__ = [
    "EngineSettings",
    "SettingsError",
    "load_settings",
    "DEFAULT_SETTINGS_PATH",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".toolrelay"
DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.yaml"
_SETTINGS_PATH_ENV = "TOOLRELAY_SETTINGS"
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "TOOLRELAY_AUTO_APPROVE": "auto_approve",
    "TOOLRELAY_LOG_ARGUMENTS": "log_arguments",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "TOOLRELAY_DEFAULT_TIMEOUT": "default_timeout",
    "TOOLRELAY_RETRY_BASE_DELAY": "retry_base_delay",
    "TOOLRELAY_RETRY_MAX_DELAY": "retry_max_delay",
    "TOOLRELAY_WEB_CACHE_TTL": "web_cache_ttl",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "TOOLRELAY_MAX_RETRIES": "max_retries",
    "TOOLRELAY_MAX_PARALLELISM": "max_parallelism",
    "TOOLRELAY_MAX_BLOCK_CHARS": "max_block_chars",
    "TOOLRELAY_WEB_CACHE_SIZE": "web_cache_size",
    "TOOLRELAY_WEB_MAX_BYTES": "web_max_bytes",
}
_TRUE_VALUES = {"1", "true", "yes", "on"}
# Hard ceiling from the retry policy: transient failures are retried at most twice.
_RETRY_CAP = 2


class SettingsError(ValueError):
    """Raised when a settings file cannot be parsed."""


@dataclass(slots=True, frozen=True)
class EngineSettings:
    """Runtime knobs for the tool-call engine.

    Attributes:
        default_timeout: Per-call timeout in seconds when neither the handler
            nor the tool schema declares one.
        max_retries: Retries for transient execution failures (capped at 2).
        retry_base_delay: First backoff delay in seconds; doubles per retry.
        retry_max_delay: Upper bound for a single backoff delay.
        max_parallelism: Concurrency bound used when calls run in parallel.
        auto_approve: Approve every call without consulting a callback.
        max_block_chars: Largest tool block the scanner buffers before
            discarding it.
        log_arguments: Whether call parameters are written to debug logs.
        web_cache_ttl: Seconds a fetched page stays in the web fetch cache.
        web_cache_size: Maximum number of cached pages.
        web_max_bytes: Response bodies beyond this size are truncated.
    """

    default_timeout: float = 30.0
    max_retries: int = 2
    retry_base_delay: float = 0.5
    retry_max_delay: float = 4.0
    max_parallelism: int = 4
    auto_approve: bool = False
    max_block_chars: int = 262_144
    log_arguments: bool = False
    web_cache_ttl: float = 300.0
    web_cache_size: int = 100
    web_max_bytes: int = 2_000_000

    def __post_init__(self) -> None:
        if self.max_retries > _RETRY_CAP:
            LOGGER.warning("max_retries=%s exceeds cap; using %s", self.max_retries, _RETRY_CAP)
            object.__setattr__(self, "max_retries", _RETRY_CAP)
        if self.max_retries < 0:
            object.__setattr__(self, "max_retries", 0)
        if self.max_parallelism < 1:
            object.__setattr__(self, "max_parallelism", 1)

    def with_overrides(self, **overrides: Any) -> "EngineSettings":
        """Return a copy with ``overrides`` applied."""
        return replace(self, **overrides)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_settings(
    path: Path | str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> EngineSettings:
    """Load settings from an optional YAML/JSON file and the environment.

    Resolution order: dataclass defaults, then the file (explicit ``path``,
    else ``$TOOLRELAY_SETTINGS``, else ``~/.toolrelay/settings.yaml`` when it
    exists), then ``TOOLRELAY_*`` environment overrides.
    """

    env = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    target = _resolve_path(path, env)
    if target is not None:
        values.update(_read_file(target))

    values.update(_env_overrides(env))
    known = {f.name for f in fields(EngineSettings)}
    unknown = sorted(set(values) - known)
    if unknown:
        LOGGER.warning("Ignoring unknown settings keys: %s", ", ".join(unknown))
    return EngineSettings(**{k: v for k, v in values.items() if k in known})


def _resolve_path(path: Path | str | None, env: Mapping[str, str]) -> Path | None:
    if path is not None:
        return Path(path).expanduser()
    override = env.get(_SETTINGS_PATH_ENV)
    if override:
        return Path(override).expanduser()
    if DEFAULT_SETTINGS_PATH.exists():
        return DEFAULT_SETTINGS_PATH
    return None


def _read_file(path: Path) -> dict[str, Any]:
    yaml = YAML(typ="safe")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.load(handle)
    except FileNotFoundError:
        raise SettingsError(f"Settings file not found: {path}") from None
    except YAMLError as exc:
        raise SettingsError(f"Settings file {path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise SettingsError(f"Settings file {path} must contain a mapping at the top level")
    # Settings may be nested under an "engine" key alongside other sections.
    section = data.get("engine", data)
    if not isinstance(section, Mapping):
        raise SettingsError(f"'engine' section in {path} must be a mapping")
    return dict(section)


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_key, attr in _BOOL_ENV_OVERRIDES.items():
        raw = env.get(env_key)
        if raw is not None:
            overrides[attr] = raw.strip().lower() in _TRUE_VALUES
    for env_key, attr in _FLOAT_ENV_OVERRIDES.items():
        raw = env.get(env_key)
        if raw is None:
            continue
        try:
            overrides[attr] = float(raw)
        except ValueError:
            LOGGER.warning("Ignoring invalid float for %s: %r", env_key, raw)
    for env_key, attr in _INT_ENV_OVERRIDES.items():
        raw = env.get(env_key)
        if raw is None:
            continue
        try:
            overrides[attr] = int(raw)
        except ValueError:
            LOGGER.warning("Ignoring invalid integer for %s: %r", env_key, raw)
    return overrides
