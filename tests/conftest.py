"""
Pytest configuration and fixtures.
"""

import base64
import json
import os
from unittest.mock import patch

import pytest

from tests.helpers import FakeSTT, FakeTTS


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "LLM_PROVIDER": "openai",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o",
        "GREETING": "Hey, what's up?",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voicebridge.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def config():
    from src.voicebridge.config import get_config
    return get_config()


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (a non-silent tone byte pattern)."""
    return bytes([0x10, 0x20, 0x30, 0x40]) * 40  # 20ms at 8kHz


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "sequenceNumber": "1",
        "streamSid": "MZ123456",
        "start": {
            "streamSid": "MZ123456",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        }
    })


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": "1",
            "timestamp": "12345",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
        "stop": {"callSid": "CA789012", "accountSid": "AC345678"},
    })


@pytest.fixture
def fake_tts():
    return FakeTTS()


@pytest.fixture
def fake_stt():
    return FakeSTT()
