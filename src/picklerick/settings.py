"""User settings for pickle.

Settings live in ``~/.pickle/settings.toml`` (or ``$PICKLE_SETTINGS_PATH``)::

    max_iterations = 20

    [model]
    provider = "codex"
    model = "gpt-5-codex"

Environment overrides take precedence over the file:
  PICKLE_PROVIDER        agent CLI to drive (codex, gemini, opencode)
  PICKLE_MODEL           model passed to the agent CLI
  PICKLE_MAX_ITERATIONS  default iteration budget for new sessions
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from picklerick.paths import SETTINGS_PATH

log = logging.getLogger(__name__)

VALID_PROVIDERS = ("codex", "gemini", "opencode")
DEFAULT_PROVIDER = "gemini"
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_MAX_TIME_MINUTES = 60
DEFAULT_WORKER_TIMEOUT_SECONDS = 1200
DEFAULT_COMPLETION_PROMISE = "I AM DONE"


@dataclass
class Settings:
    provider: str | None = None
    model: str | None = None
    max_iterations: int | None = None


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def _read_settings_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s, using defaults", path, exc_info=True)
        return {}


def _coerce_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _settings_from_dict(data: dict[str, Any]) -> Settings:
    model_section = data.get("model")
    if not isinstance(model_section, dict):
        model_section = {}
    provider = model_section.get("provider")
    model = model_section.get("model")
    return Settings(
        provider=provider.strip().lower() if isinstance(provider, str) else None,
        model=model if isinstance(model, str) else None,
        max_iterations=_coerce_int(data.get("max_iterations")),
    )


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from disk, then apply environment overrides.

    Never raises: a missing or broken file yields default settings.
    """
    settings = _settings_from_dict(_read_settings_file(path or SETTINGS_PATH))

    env_provider = os.environ.get("PICKLE_PROVIDER")
    if env_provider:
        settings.provider = env_provider.strip().lower()
    env_model = os.environ.get("PICKLE_MODEL")
    if env_model:
        settings.model = env_model
    env_iterations = _coerce_int(os.environ.get("PICKLE_MAX_ITERATIONS"))
    if env_iterations is not None:
        settings.max_iterations = env_iterations
    return settings


def get_configured_provider(settings: Settings | None = None) -> str:
    settings = settings or load_settings()
    provider = settings.provider
    if provider in VALID_PROVIDERS:
        return provider
    if provider:
        log.warning("Unknown provider '%s', falling back to %s", provider, DEFAULT_PROVIDER)
    return DEFAULT_PROVIDER


def get_configured_model(settings: Settings | None = None) -> str | None:
    settings = settings or load_settings()
    if settings.model and settings.model.strip():
        return settings.model.strip()
    return None


def validate_settings(path: Path | None = None) -> ValidationResult:
    """Check the settings file and report problems without modifying it."""
    path = path or SETTINGS_PATH
    result = ValidationResult()
    if not path.exists():
        result.warnings.append(f"No settings file at {path} - defaults will be used")
        return result

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        result.errors.append(f"Invalid TOML syntax: {e}")
        return result
    except OSError as e:
        result.errors.append(f"Cannot read settings file: {e}")
        return result

    model_section = data.get("model", {})
    if not isinstance(model_section, dict):
        result.errors.append("[model] must be a table")
        model_section = {}

    provider = model_section.get("provider")
    if provider is None:
        result.warnings.append(f"No provider configured - will use default ({DEFAULT_PROVIDER})")
    elif not isinstance(provider, str) or provider.strip().lower() not in VALID_PROVIDERS:
        result.errors.append(
            f'Invalid provider "{provider}". Must be one of: {", ".join(VALID_PROVIDERS)}'
        )

    model = model_section.get("model")
    if model is not None:
        if not isinstance(model, str):
            result.errors.append("Model must be a string")
        elif not model.strip():
            result.warnings.append("Model name is empty - provider default will be used")

    if "max_iterations" in data:
        iterations = _coerce_int(data["max_iterations"])
        if iterations is None or iterations <= 0:
            result.errors.append("max_iterations must be a positive integer")

    return result
