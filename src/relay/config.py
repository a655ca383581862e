"""
Configuration management for the voice relay.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly receptionist answering the phone. Speak clearly and keep replies short. "
    "Collect the caller's name, company, reason for calling, urgency (1-5), "
    "a callback number and a preferred time window for the callback."
)
DEFAULT_GREETING_INSTRUCTIONS = "Greet the caller briefly and ask how you can help."
DEFAULT_CLOSING_INSTRUCTIONS = "The call is ending. Say a brief goodbye."


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    port: int = 3000
    log_level: str = "INFO"

    # OpenAI Realtime (AI channel)
    openai_api_key: str = ""
    openai_realtime_model: str = "gpt-4o-realtime-preview"
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    openai_realtime_voice: str = "alloy"
    # Empty disables caller-side transcription in the realtime session
    openai_realtime_transcription_model: str = ""
    ai_connect_timeout_seconds: float = 10.0

    # Behaviour
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    system_prompt_file: str = ""
    greeting_instructions: str = DEFAULT_GREETING_INSTRUCTIONS
    closing_instructions: str = DEFAULT_CLOSING_INSTRUCTIONS

    # Summary webhook
    summary_webhook_url: str = ""
    notify_timeout_seconds: float = 10.0

    # Sessions created by the call webhook but never claimed by a media socket
    pending_session_ttl_seconds: float = 300.0

    @property
    def realtime_endpoint(self) -> str:
        """Full Realtime WebSocket URL including the model query."""
        return f"{self.openai_realtime_url}?model={self.openai_realtime_model}"

    def media_ws_url(self, host: str = "", secure: bool = True) -> str:
        """WebSocket URL Twilio should stream call media to."""
        host = self.public_host or host
        scheme = "wss" if (self.public_host or secure) else "ws"
        return f"{scheme}://{host}/twilio-media"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_realtime_model:
            missing.append("OPENAI_REALTIME_MODEL")
        if not self.openai_realtime_url:
            missing.append("OPENAI_REALTIME_URL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if not self.openai_realtime_url.startswith(("ws://", "wss://")):
            raise ConfigError(
                f"Invalid OPENAI_REALTIME_URL '{self.openai_realtime_url}'. Expected a ws:// or wss:// URL."
            )
        if self.ai_connect_timeout_seconds <= 0:
            raise ConfigError("AI_CONNECT_TIMEOUT_SECONDS must be positive.")

        if not self.summary_webhook_url:
            logger.warning("SUMMARY_WEBHOOK_URL not set; call summaries will not be delivered")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host or None,
            port=self.port,
            log_level=self.log_level,
            openai_realtime_model=self.openai_realtime_model,
            openai_realtime_url=self.openai_realtime_url,
            openai_realtime_voice=self.openai_realtime_voice,
            transcription_model=self.openai_realtime_transcription_model or None,
            ai_connect_timeout_seconds=self.ai_connect_timeout_seconds,
            system_prompt_file=self.system_prompt_file or None,
            summary_webhook_set=bool(self.summary_webhook_url),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", "").strip(),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # OpenAI Realtime
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview"),
        openai_realtime_url=os.getenv("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime").rstrip("/"),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "alloy"),
        openai_realtime_transcription_model=os.getenv("OPENAI_REALTIME_TRANSCRIPTION_MODEL", "").strip(),
        ai_connect_timeout_seconds=_get_float("AI_CONNECT_TIMEOUT_SECONDS", 10.0),

        # Behaviour
        system_prompt=os.getenv("SYSTEM_PROMPT", "").strip() or DEFAULT_SYSTEM_PROMPT,
        system_prompt_file=os.getenv("SYSTEM_PROMPT_FILE", "").strip(),
        greeting_instructions=os.getenv("GREETING_INSTRUCTIONS", "").strip() or DEFAULT_GREETING_INSTRUCTIONS,
        closing_instructions=os.getenv("CLOSING_INSTRUCTIONS", "").strip() or DEFAULT_CLOSING_INSTRUCTIONS,

        # Summary webhook (N8N_SUMMARY_WEBHOOK kept for older deployments)
        summary_webhook_url=(
            os.getenv("SUMMARY_WEBHOOK_URL", "").strip()
            or os.getenv("N8N_SUMMARY_WEBHOOK", "").strip()
        ),
        notify_timeout_seconds=_get_float("NOTIFY_TIMEOUT_SECONDS", 10.0),
        pending_session_ttl_seconds=_get_float("PENDING_SESSION_TTL_SECONDS", 300.0),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
