"""
Configuration management for the voice bridge.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup. Components receive the object at construction
instead of reading the environment themselves.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Use short, clear sentences that sound good when "
    "spoken aloud. Always respond in prose. Never use these: bullets, asterisks, "
    "boldface, italics, sections, headings, or similar."
)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 3000
    log_level: str = "INFO"

    # Deepgram (STT + TTS share one key)
    deepgram_api_key: str = ""
    deepgram_stt_model: str = "nova-2"
    deepgram_endpointing_ms: int = 200
    deepgram_utterance_end_ms: int = 1000
    deepgram_tts_model: str = "aura-2-odysseus-en"

    # TTS channel
    tts_connect_attempts: int = 3
    tts_ready_timeout_seconds: float = 5.0

    # LLM Provider (OpenAI/Groq)
    # - Groq is reached through its OpenAI-compatible endpoint.
    llm_provider: str = "openai"  # "openai" | "groq"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"

    # Agent settings
    greeting: str = "Hey, what's up?"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    @property
    def ws_url(self) -> str:
        """Get the media-stream WebSocket URL handed to Twilio."""
        return f"wss://{self.public_host}/connection"

    @property
    def llm_model(self) -> str:
        return self.groq_model if self.llm_provider == "groq" else self.openai_model

    @property
    def llm_api_key(self) -> str:
        return self.groq_api_key if self.llm_provider == "groq" else self.openai_api_key

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        provider = (self.llm_provider or "openai").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'openai' or 'groq'."
            )

        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if self.tts_connect_attempts < 1:
            raise ConfigError("TTS_CONNECT_ATTEMPTS must be at least 1.")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_stt_model=self.deepgram_stt_model,
            deepgram_endpointing_ms=self.deepgram_endpointing_ms,
            deepgram_utterance_end_ms=self.deepgram_utterance_end_ms,
            deepgram_tts_model=self.deepgram_tts_model,
            tts_connect_attempts=self.tts_connect_attempts,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            deepgram_key_set=bool(self.deepgram_api_key),
            openai_key_set=bool(self.openai_api_key),
            groq_key_set=bool(self.groq_api_key),
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
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_stt_model=os.getenv("DEEPGRAM_STT_MODEL", "nova-2"),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 200),
        deepgram_utterance_end_ms=_get_int("DEEPGRAM_UTTERANCE_END_MS", 1000),
        deepgram_tts_model=os.getenv("DEEPGRAM_TTS_MODEL", "aura-2-odysseus-en"),

        # TTS channel
        tts_connect_attempts=_get_int("TTS_CONNECT_ATTEMPTS", 3),
        tts_ready_timeout_seconds=_get_float("TTS_READY_TIMEOUT_SECONDS", 5.0),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "openai").strip().lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),

        # Agent settings
        greeting=os.getenv("GREETING", "Hey, what's up?"),
        system_prompt=os.getenv("SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
