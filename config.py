"""
Runtime configuration for the voice origin gateway.

Everything is read from the environment once, at startup, into an immutable
Settings instance that the app factory hands to the normalizer and gateway.
"""

import os
from dataclasses import dataclass, field

AUDIO_KEYS = (
    "audio",
    "audioBase64",
    "audioData",
    "Audio Base64 Format",
    "file",
    "data",
    "base64",
)
LANGUAGE_KEYS = ("language", "Language")
DEFAULT_LANGUAGE = "English"


def _env(*names: str, default: str | None = None) -> str | None:
    for name in names:
        value = os.environ.get(name)
        if value is not None and value.strip():
            return value.strip()
    return default


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    api_key: str = "sk_test_123456789"
    model_api_key: str = ""
    model_base_url: str = "https://openrouter.ai/api/v1"
    model_name: str = "google/gemini-3-flash-preview"
    min_audio_length: int = 100
    max_retries: int = 2
    retry_base_delay: float = 1.0
    request_timeout: float = 60.0
    reasoning_max_tokens: int | None = None
    verbose_errors: bool = False
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    audio_keys: tuple[str, ...] = field(default=AUDIO_KEYS)
    language_keys: tuple[str, ...] = field(default=LANGUAGE_KEYS)
    default_language: str = DEFAULT_LANGUAGE

    @classmethod
    def from_env(cls) -> "Settings":
        reasoning = _env("REASONING_MAX_TOKENS")
        origins = _env("CORS_ORIGINS", default="*")
        return cls(
            api_key=_env("VOICE_DETECTION_API_KEY", "CLIENT_KEY", default=cls.api_key),
            model_api_key=_env("OPENROUTER_API_KEY", "API_KEY", default=""),
            model_base_url=_env("MODEL_BASE_URL", default=cls.model_base_url),
            model_name=_env("MODEL_NAME", default=cls.model_name),
            min_audio_length=int(_env("MIN_AUDIO_LENGTH", default="100")),
            max_retries=int(_env("MAX_RETRIES", default="2")),
            retry_base_delay=float(_env("RETRY_BASE_DELAY", default="1.0")),
            request_timeout=float(_env("REQUEST_TIMEOUT", default="60")),
            reasoning_max_tokens=int(reasoning) if reasoning else None,
            verbose_errors=_env_bool("VERBOSE_ERRORS"),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            log_level=_env("LOG_LEVEL", default="INFO").upper(),
            host=_env("HOST", default="0.0.0.0"),
            port=int(_env("PORT", default="8000")),
        )
