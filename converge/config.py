"""
Settings loaded from converge.yaml (optional) and overridden by CLI flags.
"""
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

import yaml

from converge.errors import ConfigError

DEFAULT_CONFIG_FILE = "converge.yaml"


@dataclass
class StateSettings:
    path: str = ".converge/state.json"
    lock_timeout: float = 0.0


@dataclass
class ApplySettings:
    parallelism: int = 4
    max_attempts: int = 5
    backoff_multiplier: float = 0.5
    backoff_max: float = 10.0


def _default_providers() -> Dict[str, Dict[str, Any]]:
    return {"default": {"plugin": "sandbox", "root": ".converge/sandbox"}}


@dataclass
class Settings:
    state: StateSettings = field(default_factory=StateSettings)
    apply: ApplySettings = field(default_factory=ApplySettings)
    providers: Dict[str, Dict[str, Any]] = field(default_factory=_default_providers)
    source: Optional[str] = None


def _section(cls, raw: Any, name: str):
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    known = {f.name: f for f in fields(cls)}
    unknown = set(raw) - set(known)
    if unknown:
        raise ConfigError(f"unknown setting(s) in '{name}': {', '.join(sorted(unknown))}")
    values = {}
    for key, value in raw.items():
        default = getattr(cls(), key)
        try:
            values[key] = type(default)(value)
        except (TypeError, ValueError):
            raise ConfigError(f"'{name}.{key}' must be a {type(default).__name__}, got {value!r}")
    return cls(**values)


def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load settings from `path`, or from ./converge.yaml when it exists.
    A missing default file yields the built-in defaults.
    """
    if path is None:
        if not os.path.exists(DEFAULT_CONFIG_FILE):
            return Settings()
        path = DEFAULT_CONFIG_FILE

    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot read settings from {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: settings must be a mapping")

    unknown = set(raw) - {"state", "apply", "providers"}
    if unknown:
        raise ConfigError(f"{path}: unknown section(s): {', '.join(sorted(unknown))}")

    providers = raw.get("providers") or _default_providers()
    if not isinstance(providers, dict) or not all(isinstance(v, dict) for v in providers.values()):
        raise ConfigError(f"{path}: 'providers' must map names to plugin settings")

    settings = Settings(
        state=_section(StateSettings, raw.get("state"), "state"),
        apply=_section(ApplySettings, raw.get("apply"), "apply"),
        providers=providers,
        source=path,
    )
    if settings.apply.parallelism < 1:
        raise ConfigError("'apply.parallelism' must be at least 1")
    if settings.apply.max_attempts < 1:
        raise ConfigError("'apply.max_attempts' must be at least 1")
    return settings
