"""
Settings for the engine, its layers and the CLI.

Values come from environment variables, with a ``.env`` file underneath:
the first ``.env`` found walking up from the working directory, else
``~/.cgmb/.env``. Real environment variables always win over the file.

Example:
    ```python
    settings = load_settings()
    registry = LayerRegistry.from_settings(settings)
    ```
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import dotenv_values, find_dotenv

from pycgmb.models import ExecutionMode, LayerType, RetryPolicy

logger = logging.getLogger(__name__)

ENV_PREFIX = "CGMB_"
USER_DOTENV = Path("~/.cgmb/.env")
DEFAULT_RUN_LOG = "sqlite:///~/.cgmb/runs.db"
API_KEY_VARS = ("CGMB_AISTUDIO_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY", "AI_STUDIO_API_KEY")


class ConfigError(ValueError):
    """A setting has a value that cannot be parsed."""


@dataclass(frozen=True)
class Settings:
    """
    Resolved configuration.

    Attributes:
        claude_path: Command for the reasoning CLI
        gemini_path: Command for the search CLI
        aistudio_api_key: Key for the multimodal API (layer disabled without it)
        aistudio_model: Default multimodal model
        timeouts: Per-layer base step timeout in seconds (unset = built-in default)
        concurrency: Per-layer ceiling on concurrent calls within a run
        retries: Extra attempts for steps that do not set their own
        retry_policy: Backoff shape
        default_mode: Mode used when a run does not name one
        log_level: Root log level name
        run_log_url: Where finished runs are recorded
        paid_tier: Use paid tier quota limits
    """

    claude_path: str = "claude"
    gemini_path: str = "gemini"
    aistudio_api_key: str | None = None
    aistudio_model: str = "gemini-2.5-flash"
    timeouts: Mapping[LayerType, float] = field(default_factory=dict)
    concurrency: Mapping[LayerType, int] = field(
        default_factory=lambda: {layer: 2 for layer in LayerType}
    )
    retries: int = 2
    retry_policy: RetryPolicy = RetryPolicy.STANDARD
    default_mode: ExecutionMode = ExecutionMode.ADAPTIVE
    log_level: str = "INFO"
    run_log_url: str = DEFAULT_RUN_LOG
    paid_tier: bool = False

    def timeout_for(self, layer: LayerType) -> float | None:
        return self.timeouts.get(layer)

    def concurrency_for(self, layer: LayerType) -> int:
        return self.concurrency.get(layer, 2)


def find_env_file() -> Path | None:
    found = find_dotenv(usecwd=True)
    if found:
        return Path(found)
    user_file = USER_DOTENV.expanduser()
    return user_file if user_file.is_file() else None


def load_settings(
    env: Mapping[str, str] | None = None,
    *,
    dotenv_path: str | Path | None = None,
) -> Settings:
    """
    Build Settings from the environment and an optional ``.env`` file.

    Args:
        env: Variables to read instead of ``os.environ``
        dotenv_path: Explicit ``.env`` file; discovered when omitted and
            ``env`` is not given

    Raises:
        ConfigError: A variable holds an unparsable value
    """
    if dotenv_path is None and env is None:
        dotenv_path = find_env_file()

    values: dict[str, str] = {}
    if dotenv_path is not None:
        logger.debug(f"Loading settings from {dotenv_path}")
        values.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})
    values.update(os.environ if env is None else env)

    def get(name: str) -> str | None:
        value = values.get(ENV_PREFIX + name)
        return value.strip() if value and value.strip() else None

    api_key = next((values[var] for var in API_KEY_VARS if values.get(var)), None)

    timeouts: dict[LayerType, float] = {}
    concurrency: dict[LayerType, int] = {}
    for layer in LayerType:
        key = layer.value.upper()
        timeout = _parse(get(f"{key}_TIMEOUT"), float, f"{key}_TIMEOUT")
        if timeout is not None:
            if timeout <= 0:
                raise ConfigError(f"{ENV_PREFIX}{key}_TIMEOUT must be positive, got {timeout}")
            timeouts[layer] = timeout
        limit = _parse(get(f"{key}_CONCURRENCY"), int, f"{key}_CONCURRENCY")
        if limit is not None and limit < 1:
            raise ConfigError(f"{ENV_PREFIX}{key}_CONCURRENCY must be >= 1, got {limit}")
        concurrency[layer] = limit or 2

    retries = _parse(get("RETRIES"), int, "RETRIES")
    if retries is not None and retries < 0:
        raise ConfigError(f"{ENV_PREFIX}RETRIES must be >= 0, got {retries}")
    standard = RetryPolicy.STANDARD
    try:
        retry_policy = RetryPolicy(
            max_attempts=_default(retries, 2) + 1,
            initial_delay_ms=_default(
                _parse(get("RETRY_DELAY_MS"), int, "RETRY_DELAY_MS"), standard.initial_delay_ms
            ),
            max_delay_ms=_default(
                _parse(get("RETRY_MAX_DELAY_MS"), int, "RETRY_MAX_DELAY_MS"), standard.max_delay_ms
            ),
            backoff_multiplier=_default(
                _parse(get("RETRY_BACKOFF"), float, "RETRY_BACKOFF"), standard.backoff_multiplier
            ),
            jitter_ms=_default(
                _parse(get("RETRY_JITTER_MS"), int, "RETRY_JITTER_MS"), standard.jitter_ms
            ),
        )
        default_mode = ExecutionMode.parse(get("MODE") or ExecutionMode.ADAPTIVE)
    except ValueError as e:
        raise ConfigError(str(e)) from e

    return Settings(
        claude_path=get("CLAUDE_PATH") or "claude",
        gemini_path=get("GEMINI_PATH") or "gemini",
        aistudio_api_key=api_key,
        aistudio_model=get("AISTUDIO_MODEL") or "gemini-2.5-flash",
        timeouts=timeouts,
        concurrency=concurrency,
        retries=_default(retries, 2),
        retry_policy=retry_policy,
        default_mode=default_mode,
        log_level=(get("LOG_LEVEL") or "INFO").upper(),
        run_log_url=get("RUN_LOG") or DEFAULT_RUN_LOG,
        paid_tier=_parse_bool(get("PAID_TIER")),
    )


def _parse(raw: str | None, kind: type, name: str):
    if raw is None:
        return None
    try:
        return kind(raw)
    except ValueError:
        raise ConfigError(f"{ENV_PREFIX}{name}: expected {kind.__name__}, got {raw!r}") from None


def _default(value, fallback):
    return fallback if value is None else value


def _parse_bool(raw: str | None) -> bool:
    return raw is not None and raw.lower() in ("1", "true", "yes", "on")


__all__ = ["ConfigError", "Settings", "find_env_file", "load_settings"]
