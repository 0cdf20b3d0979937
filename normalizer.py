"""
Request normalization: pull a base64 audio payload and a language out of a
loosely structured body.

Clients have sent audio under many field names over time, sometimes as a
data URI and sometimes as the raw request body. Everything here is pure; the
inbound body is never modified.
"""

from collections.abc import Mapping
from typing import Any

from config import Settings
from errors import MissingAudioError
from models import ClassificationRequest

_FORMAT_ALIASES = {
    "mpeg": "mp3",
    "mpeg3": "mp3",
    "x-mp3": "mp3",
    "x-wav": "wav",
    "wave": "wav",
    "vnd.wave": "wav",
    "x-m4a": "m4a",
    "mp4": "m4a",
    "x-flac": "flac",
}
DEFAULT_AUDIO_FORMAT = "mp3"


def strip_data_uri(value: str) -> str:
    """Drop a leading ``<meta>,`` scheme: everything up to and including the first comma."""
    if "," in value:
        return value.split(",", 1)[1]
    return value


def normalize_audio_format(name: str) -> str:
    """Map a media subtype or file extension to the format name sent to the model."""
    name = name.strip().lower().lstrip(".")
    return _FORMAT_ALIASES.get(name, name) or DEFAULT_AUDIO_FORMAT


def audio_format_from_data_uri(value: str) -> str:
    """``data:audio/wav;base64,...`` -> ``wav``. Falls back to mp3."""
    if "," not in value:
        return DEFAULT_AUDIO_FORMAT
    meta = value.split(",", 1)[0].strip().lower()
    if not meta.startswith("data:"):
        return DEFAULT_AUDIO_FORMAT
    media_type = meta[len("data:"):].split(";", 1)[0]
    if not media_type.startswith("audio/"):
        return DEFAULT_AUDIO_FORMAT
    return normalize_audio_format(media_type[len("audio/"):])


def _clean(value: str) -> str:
    return strip_data_uri(value.strip()).strip()


def _find_audio(body: Any, settings: Settings) -> tuple[str, str]:
    min_length = settings.min_audio_length
    if isinstance(body, str):
        payload = _clean(body)
        if len(payload) >= min_length:
            return payload, audio_format_from_data_uri(body.strip())
        raise MissingAudioError(f"raw body payload shorter than {min_length} characters")
    if not isinstance(body, Mapping):
        raise MissingAudioError("request body is neither a JSON object nor text")
    for key in settings.audio_keys:
        value = body.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        payload = _clean(value)
        if len(payload) >= min_length:
            return payload, audio_format_from_data_uri(value.strip())
    raise MissingAudioError(f"no audio field with at least {min_length} characters")


def extract_audio(body: Any, settings: Settings) -> str:
    """
    Return the cleaned base64 payload from ``body``.

    Candidate keys are probed in ``settings.audio_keys`` order and the first
    one whose cleaned value meets the minimum length wins. A raw string body
    is the payload itself.
    """
    payload, _ = _find_audio(body, settings)
    return payload


def extract_language(body: Any, settings: Settings) -> str:
    if isinstance(body, Mapping):
        for key in settings.language_keys:
            value = body.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return settings.default_language


def normalize_request(body: Any, settings: Settings) -> ClassificationRequest:
    payload, audio_format = _find_audio(body, settings)
    return ClassificationRequest(
        audio_payload=payload,
        language=extract_language(body, settings),
        audio_format=audio_format,
    )
