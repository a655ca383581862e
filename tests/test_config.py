import os
from unittest.mock import patch

import pytest

from src.relay.config import (
    DEFAULT_CLOSING_INSTRUCTIONS,
    DEFAULT_GREETING_INSTRUCTIONS,
    DEFAULT_SYSTEM_PROMPT,
    ConfigError,
    get_config,
    init_config,
)


def test_config_validate_requires_openai_key():
    env = {"PUBLIC_HOST": "test.ngrok.io"}

    with patch.dict(os.environ, env, clear=True):
        get_config.cache_clear()
        config = get_config()
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            config.validate()


def test_config_defaults():
    with patch.dict(os.environ, {"OPENAI_API_KEY": "k"}, clear=True):
        get_config.cache_clear()
        config = get_config()

        assert config.port == 3000
        assert config.log_level == "INFO"
        assert config.public_host == ""
        assert config.openai_realtime_model == "gpt-4o-realtime-preview"
        assert config.realtime_endpoint == "wss://api.openai.com/v1/realtime?model=gpt-4o-realtime-preview"
        assert config.system_prompt == DEFAULT_SYSTEM_PROMPT
        assert config.greeting_instructions == DEFAULT_GREETING_INSTRUCTIONS
        assert config.closing_instructions == DEFAULT_CLOSING_INSTRUCTIONS
        assert config.summary_webhook_url == ""
        assert config.ai_connect_timeout_seconds == 10.0
        config.validate()


def test_config_reads_environment():
    config = get_config()

    assert config.public_host == "test.ngrok.io"
    assert config.log_level == "DEBUG"
    assert config.openai_api_key == "test_openai_key"
    assert config.system_prompt == "You are a test receptionist."
    assert config.summary_webhook_url == "https://hooks.example.com/summary"


def test_config_accepts_legacy_webhook_variable():
    env = {"OPENAI_API_KEY": "k", "N8N_SUMMARY_WEBHOOK": "https://n8n.example.com/webhook/summary"}

    with patch.dict(os.environ, env, clear=True):
        get_config.cache_clear()
        assert get_config().summary_webhook_url == "https://n8n.example.com/webhook/summary"


def test_config_invalid_numbers_fall_back_to_defaults():
    env = {"OPENAI_API_KEY": "k", "PORT": "not-a-port", "AI_CONNECT_TIMEOUT_SECONDS": "soon"}

    with patch.dict(os.environ, env, clear=True):
        get_config.cache_clear()
        config = get_config()
        assert config.port == 3000
        assert config.ai_connect_timeout_seconds == 10.0


def test_config_rejects_non_websocket_realtime_url():
    env = {"OPENAI_API_KEY": "k", "OPENAI_REALTIME_URL": "https://api.openai.com/v1/realtime"}

    with patch.dict(os.environ, env, clear=True):
        get_config.cache_clear()
        with pytest.raises(ConfigError, match="OPENAI_REALTIME_URL"):
            get_config().validate()


def test_init_config_validates():
    config = init_config()
    assert config.openai_api_key == "test_openai_key"


def test_media_ws_url_prefers_public_host():
    config = get_config()
    assert config.media_ws_url(host="internal:3000", secure=False) == "wss://test.ngrok.io/twilio-media"


def test_media_ws_url_falls_back_to_request_host():
    with patch.dict(os.environ, {"OPENAI_API_KEY": "k"}, clear=True):
        get_config.cache_clear()
        config = get_config()
        assert config.media_ws_url(host="localhost:3000", secure=False) == "ws://localhost:3000/twilio-media"
        assert config.media_ws_url(host="relay.example.com", secure=True) == "wss://relay.example.com/twilio-media"
