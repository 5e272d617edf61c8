"""
Configuration management for the Paule relay.

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


DEFAULT_WELCOME = (
    "Labas, čia Paule! Girdžiu jus gerai. "
    "Dėl ko skambinate: pardavimai, klientų aptarnavimas ar registracija?"
)

DEFAULT_SYSTEM_PROMPT = """Tu esi Paule iš Paule.ai.
Kalbi lietuviškai, šiltai, natūraliai, trumpais sakiniais.
Nesi robotas. Nekartoji tų pačių frazių.
Atsakinėji pagal tai, ką žmogus pasakė, ir užduodi 1 klausimą į priekį.
Tikslas: aptarnauti / parduoti / užbookinti laiką.
Jei vartotojas nori registracijos, paprašyk jo vardo, telefono ir pageidaujamo laiko."""


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    port: int = 8080
    log_level: str = "INFO"

    # Language used for TTS/STT hints and as the session default
    language: str = "lt-LT"

    # Generation backend (OpenAI Responses API)
    openai_api_key: str = ""
    openai_model: str = "gpt-5-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    generation_timeout_seconds: float = 25.0

    # Chunking for speech synthesis
    segment_soft_limit: int = 80
    segment_hard_limit: int = 190

    # ConversationRelay
    send_language_on_setup: bool = True
    tts_provider: str = "google"  # "google" | "eleven"
    welcome_greeting: str = DEFAULT_WELCOME
    system_prompt: str = ""
    system_prompt_file: str = ""

    # ElevenLabs (only used if TTS_PROVIDER=eleven)
    eleven_voice_id: str = ""
    eleven_model_id: str = "turbo_v2_5"
    eleven_speed: str = "1.0"
    eleven_stability: str = "0.45"
    eleven_similarity: str = "0.92"

    @property
    def uses_elevenlabs(self) -> bool:
        return self.tts_provider == "eleven"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_model:
            missing.append("OPENAI_MODEL")

        if self.tts_provider not in ("google", "eleven"):
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'google' or 'eleven'."
            )

        if self.generation_timeout_seconds <= 0:
            raise ConfigError("GENERATION_TIMEOUT_SECONDS must be positive.")

        if not 0 < self.segment_soft_limit <= self.segment_hard_limit:
            raise ConfigError(
                "SEGMENT_SOFT_LIMIT must be positive and not larger than SEGMENT_HARD_LIMIT."
            )

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
            language=self.language,
            openai_model=self.openai_model,
            openai_base_url=self.openai_base_url,
            generation_timeout_seconds=self.generation_timeout_seconds,
            segment_soft_limit=self.segment_soft_limit,
            segment_hard_limit=self.segment_hard_limit,
            send_language_on_setup=self.send_language_on_setup,
            tts_provider=self.tts_provider,
            eleven_voice_set=bool(self.eleven_voice_id),
            system_prompt_file=self.system_prompt_file or None,
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


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
    # RELAY_LANGUAGE wins; LANG is honoured for existing deployments, but only
    # when it looks like a BCP-47 tag rather than a POSIX locale (en_US.UTF-8).
    language = os.getenv("RELAY_LANGUAGE", "").strip()
    if not language:
        legacy = os.getenv("LANG", "").strip()
        language = legacy if legacy and "." not in legacy and "_" not in legacy else "lt-LT"

    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        language=language,

        # Generation backend
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-5-mini"),
        openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
        generation_timeout_seconds=_get_float("GENERATION_TIMEOUT_SECONDS", 25.0),

        # Chunking
        segment_soft_limit=_get_int("SEGMENT_SOFT_LIMIT", 80),
        segment_hard_limit=_get_int("SEGMENT_HARD_LIMIT", 190),

        # ConversationRelay
        send_language_on_setup=_get_bool("SEND_LANGUAGE_ON_SETUP", True),
        tts_provider=os.getenv("TTS_PROVIDER", "google").strip().lower(),
        welcome_greeting=os.getenv("WELCOME", DEFAULT_WELCOME),
        system_prompt=os.getenv("SYSTEM_PROMPT", ""),
        system_prompt_file=os.getenv("SYSTEM_PROMPT_FILE", ""),

        # ElevenLabs
        eleven_voice_id=os.getenv("ELEVEN_VOICE_ID", ""),
        eleven_model_id=os.getenv("ELEVEN_MODEL_ID", "turbo_v2_5"),
        eleven_speed=os.getenv("ELEVEN_SPEED", "1.0"),
        eleven_stability=os.getenv("ELEVEN_STABILITY", "0.45"),
        eleven_similarity=os.getenv("ELEVEN_SIMILARITY", "0.92"),
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
