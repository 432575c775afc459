"""Environment-driven configuration for the call bridge.

All settings are read once at startup into an immutable BridgeConfig.
Malformed values fail fast with ConfigurationError; missing secrets do not,
since the health endpoint reports them and the step that needs a secret
raises when it runs.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from call_bridge.utils.errors import ConfigurationError

TOKEN_MODES = ("cached", "per_request")
DOWNLOAD_MODES = ("two_step", "direct")

DEFAULT_TRANSCRIPTION_URL = "https://api.openai.com/v1/audio/transcriptions"
MAX_AUDIO_BYTES = 25 * 1024 * 1024

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"{name} must be an integer, got '{raw}'", setting=name
        ) from exc


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"{name} must be a number, got '{raw}'", setting=name
        ) from exc


def _get_choice(
    env: Mapping[str, str], name: str, default: str, choices: tuple[str, ...]
) -> str:
    value = (env.get(name) or default).strip().lower()
    if value not in choices:
        raise ConfigurationError(
            f"{name} must be one of {', '.join(choices)}, got '{value}'",
            setting=name,
        )
    return value


@dataclass(frozen=True)
class BridgeConfig:
    """Immutable runtime configuration."""

    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    forward_webhook_url: str = ""

    pbx_base_url: str = ""
    pbx_api_token: str = ""
    pbx_client_id: str = ""
    pbx_client_secret: str = ""
    token_refresh_enabled: bool = False
    token_mode: str = "cached"
    token_refresh_interval: float = 25 * 60
    token_retry_base_delay: float = 1.0
    token_retry_max_delay: float = 30.0
    token_max_failures: int = 3
    recording_download_mode: str = "two_step"

    openai_api_key: str = ""
    transcription_url: str = DEFAULT_TRANSCRIPTION_URL
    transcription_model: str = "whisper-1"
    transcription_language: str = "ar"

    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    token_timeout: float = 15.0
    resolve_timeout: float = 30.0
    download_timeout: float = 120.0
    transcription_timeout: float = 120.0
    forward_timeout: float = 30.0

    min_audio_bytes: int = 1000
    max_audio_bytes: int = MAX_AUDIO_BYTES

    process_in_background: bool = False

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> BridgeConfig:
        """Build a config from environment variables.

        Args:
            env: Mapping to read from (defaults to ``os.environ``).

        Raises:
            ConfigurationError: If a numeric or enumerated value is malformed.
        """
        env = os.environ if env is None else env
        return cls(
            host=env.get("HOST", "0.0.0.0"),
            port=_get_int(env, "PORT", 3000),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            forward_webhook_url=env.get("N8N_WEBHOOK_URL", "").strip(),
            pbx_base_url=env.get("YEASTAR_BASE_URL", "").strip().rstrip("/"),
            pbx_api_token=env.get("YEASTAR_API_TOKEN", "").strip(),
            pbx_client_id=env.get("YEASTAR_CLIENT_ID", "").strip(),
            pbx_client_secret=env.get("YEASTAR_CLIENT_SECRET", "").strip(),
            token_refresh_enabled=_get_bool(env, "TOKEN_REFRESH_ENABLED", False),
            token_mode=_get_choice(env, "TOKEN_MODE", "cached", TOKEN_MODES),
            token_refresh_interval=_get_float(env, "TOKEN_REFRESH_INTERVAL", 25 * 60),
            token_retry_base_delay=_get_float(env, "TOKEN_RETRY_BASE_DELAY", 1.0),
            token_retry_max_delay=_get_float(env, "TOKEN_RETRY_MAX_DELAY", 30.0),
            token_max_failures=_get_int(env, "TOKEN_MAX_FAILURES", 3),
            recording_download_mode=_get_choice(
                env, "RECORDING_DOWNLOAD_MODE", "two_step", DOWNLOAD_MODES
            ),
            openai_api_key=env.get("OPENAI_API_KEY", "").strip(),
            transcription_url=env.get("TRANSCRIPTION_URL", DEFAULT_TRANSCRIPTION_URL),
            transcription_model=env.get("TRANSCRIPTION_MODEL", "whisper-1"),
            transcription_language=env.get("TRANSCRIPTION_LANGUAGE", "ar"),
            max_attempts=_get_int(env, "MAX_ATTEMPTS", 3),
            retry_base_delay=_get_float(env, "RETRY_BASE_DELAY", 1.0),
            retry_max_delay=_get_float(env, "RETRY_MAX_DELAY", 10.0),
            token_timeout=_get_float(env, "TOKEN_TIMEOUT", 15.0),
            resolve_timeout=_get_float(env, "RESOLVE_TIMEOUT", 30.0),
            download_timeout=_get_float(env, "DOWNLOAD_TIMEOUT", 120.0),
            transcription_timeout=_get_float(env, "TRANSCRIPTION_TIMEOUT", 120.0),
            forward_timeout=_get_float(env, "FORWARD_TIMEOUT", 30.0),
            min_audio_bytes=_get_int(env, "MIN_AUDIO_BYTES", 1000),
            max_audio_bytes=_get_int(env, "MAX_AUDIO_BYTES", MAX_AUDIO_BYTES),
            process_in_background=_get_bool(env, "PROCESS_IN_BACKGROUND", False),
        )

    @property
    def pbx_configured(self) -> bool:
        """True when a static token or client credentials are present."""
        return bool(self.pbx_api_token or (self.pbx_client_id and self.pbx_client_secret))

    @property
    def transcription_configured(self) -> bool:
        return bool(self.openai_api_key)

    @property
    def forwarding_configured(self) -> bool:
        return bool(self.forward_webhook_url)
