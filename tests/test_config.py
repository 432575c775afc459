"""Tests for call_bridge.config.BridgeConfig."""

from dataclasses import FrozenInstanceError

import pytest

from call_bridge.config import DEFAULT_TRANSCRIPTION_URL, BridgeConfig
from call_bridge.utils.errors import ConfigurationError


class TestFromEnv:
    """Tests for BridgeConfig.from_env()."""

    def test_defaults_with_empty_environment(self):
        config = BridgeConfig.from_env({})

        assert config.port == 3000
        assert config.token_mode == "cached"
        assert config.token_refresh_enabled is False
        assert config.token_refresh_interval == 1500
        assert config.token_max_failures == 3
        assert config.recording_download_mode == "two_step"
        assert config.transcription_url == DEFAULT_TRANSCRIPTION_URL
        assert config.transcription_model == "whisper-1"
        assert config.transcription_language == "ar"
        assert config.max_attempts == 3
        assert config.min_audio_bytes == 1000
        assert config.max_audio_bytes == 25 * 1024 * 1024
        assert config.process_in_background is False

    def test_reads_service_settings(self):
        config = BridgeConfig.from_env(
            {
                "PORT": "8080",
                "LOG_LEVEL": "debug",
                "N8N_WEBHOOK_URL": " https://n8n.example.com/webhook/x ",
                "YEASTAR_BASE_URL": "https://pbx.example.com/",
                "YEASTAR_CLIENT_ID": "id",
                "YEASTAR_CLIENT_SECRET": "secret",
                "OPENAI_API_KEY": "sk-test",
                "TOKEN_REFRESH_ENABLED": "true",
                "TOKEN_MODE": "PER_REQUEST",
                "RECORDING_DOWNLOAD_MODE": "direct",
                "TRANSCRIPTION_LANGUAGE": "en",
                "MAX_ATTEMPTS": "5",
                "RETRY_MAX_DELAY": "2.5",
                "PROCESS_IN_BACKGROUND": "1",
            }
        )

        assert config.port == 8080
        assert config.log_level == "DEBUG"
        assert config.forward_webhook_url == "https://n8n.example.com/webhook/x"
        assert config.pbx_base_url == "https://pbx.example.com"
        assert config.token_refresh_enabled is True
        assert config.token_mode == "per_request"
        assert config.recording_download_mode == "direct"
        assert config.transcription_language == "en"
        assert config.max_attempts == 5
        assert config.retry_max_delay == 2.5
        assert config.process_in_background is True

    @pytest.mark.parametrize("raw", ["false", "0", "no", "off"])
    def test_false_values(self, raw):
        assert BridgeConfig.from_env({"TOKEN_REFRESH_ENABLED": raw}).token_refresh_enabled is False

    def test_malformed_integer_raises(self):
        with pytest.raises(ConfigurationError, match="PORT must be an integer") as exc_info:
            BridgeConfig.from_env({"PORT": "eighty"})
        assert exc_info.value.setting == "PORT"

    def test_malformed_number_raises(self):
        with pytest.raises(ConfigurationError, match="DOWNLOAD_TIMEOUT must be a number"):
            BridgeConfig.from_env({"DOWNLOAD_TIMEOUT": "soon"})

    def test_unknown_choice_raises(self):
        with pytest.raises(ConfigurationError, match="TOKEN_MODE must be one of"):
            BridgeConfig.from_env({"TOKEN_MODE": "sometimes"})

    def test_config_is_immutable(self):
        config = BridgeConfig.from_env({})
        with pytest.raises(FrozenInstanceError):
            config.port = 1  # type: ignore[misc]


class TestConfiguredFlags:
    """Tests for the readiness properties reported by the health endpoint."""

    def test_nothing_configured(self):
        config = BridgeConfig()
        assert config.pbx_configured is False
        assert config.transcription_configured is False
        assert config.forwarding_configured is False

    def test_static_token_counts_as_pbx_configured(self):
        assert BridgeConfig(pbx_api_token="tok").pbx_configured is True

    def test_client_credentials_need_both_parts(self):
        assert BridgeConfig(pbx_client_id="id").pbx_configured is False
        assert BridgeConfig(pbx_client_id="id", pbx_client_secret="s").pbx_configured is True

    def test_secrets_enable_flags(self):
        config = BridgeConfig(openai_api_key="sk", forward_webhook_url="https://n8n/x")
        assert config.transcription_configured is True
        assert config.forwarding_configured is True
