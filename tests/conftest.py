"""
Pytest configuration and fixtures.
"""

import pytest
import os
from unittest.mock import patch


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "3000",
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_REALTIME_MODEL": "gpt-4o-realtime-preview",
        "SUMMARY_WEBHOOK_URL": "https://hooks.example.com/summary",
        "SYSTEM_PROMPT": "You are a test receptionist.",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.relay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


@pytest.fixture
def sample_ulaw_payload():
    """Base64 mu-law audio (20ms of silence)."""
    import base64
    return base64.b64encode(b"\xff" * 160).decode()


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    import json
    return json.dumps({
        "event": "start",
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
def twilio_media_message(sample_ulaw_payload):
    """Sample Twilio media message."""
    import json

    return json.dumps({
        "event": "media",
        "streamSid": "MZ123456",
        "media": {
            "track": "inbound",
            "chunk": "1",
            "timestamp": "12345",
            "payload": sample_ulaw_payload,
        }
    })


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    import json
    return json.dumps({
        "event": "stop",
        "streamSid": "MZ123456",
    })
