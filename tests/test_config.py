"""
Tests for configuration loading and validation.
"""

import os
from unittest.mock import patch

import pytest

from src.voicebridge.config import Config, ConfigError, get_config


class TestGetConfig:

    def test_loads_from_environment(self):
        config = get_config()

        assert config.public_host == "test.ngrok.io"
        assert config.port == 7860
        assert config.deepgram_api_key == "test_deepgram_key"
        assert config.llm_provider == "openai"
        assert config.llm_model == "gpt-4o"
        assert config.llm_api_key == "test_openai_key"

    def test_defaults(self):
        config = get_config()

        assert config.greeting == "Hey, what's up?"
        assert config.deepgram_tts_model == "aura-2-odysseus-en"
        assert config.deepgram_endpointing_ms == 200
        assert config.deepgram_utterance_end_ms == 1000
        assert config.tts_connect_attempts == 3
        assert config.tts_ready_timeout_seconds == 5.0

    def test_ws_url(self):
        assert get_config().ws_url == "wss://test.ngrok.io/connection"

    def test_groq_provider(self):
        with patch.dict(os.environ, {"LLM_PROVIDER": "Groq", "GROQ_API_KEY": "gk"}):
            get_config.cache_clear()
            config = get_config()

        assert config.llm_provider == "groq"
        assert config.llm_model == "llama-3.3-70b-versatile"
        assert config.llm_api_key == "gk"

    def test_bad_integer_falls_back_to_default(self):
        with patch.dict(os.environ, {"PORT": "not-a-port"}):
            get_config.cache_clear()
            assert get_config().port == 3000


class TestValidate:

    def test_valid(self):
        get_config().validate()

    def test_missing_keys_listed(self):
        config = Config(public_host="", deepgram_api_key="", openai_api_key="")

        with pytest.raises(ConfigError) as exc_info:
            config.validate()

        message = str(exc_info.value)
        assert "PUBLIC_HOST" in message
        assert "DEEPGRAM_API_KEY" in message
        assert "OPENAI_API_KEY" in message

    def test_groq_requires_groq_key(self):
        config = Config(public_host="h", deepgram_api_key="d", llm_provider="groq")

        with pytest.raises(ConfigError, match="GROQ_API_KEY"):
            config.validate()

    def test_unknown_provider(self):
        config = Config(public_host="h", deepgram_api_key="d", llm_provider="acme")

        with pytest.raises(ConfigError, match="Invalid LLM_PROVIDER"):
            config.validate()

    def test_connect_attempts_must_be_positive(self):
        config = Config(
            public_host="h", deepgram_api_key="d", openai_api_key="o", tts_connect_attempts=0
        )

        with pytest.raises(ConfigError, match="TTS_CONNECT_ATTEMPTS"):
            config.validate()
