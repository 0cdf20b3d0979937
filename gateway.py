"""
Classification gateway: one structured-output call to the external model,
retried with exponential backoff on transient failures, then coerced into a
fully populated ClassificationResult.
"""

import asyncio
import json
import logging
import math
import re
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import openai
from openai import AsyncOpenAI

from config import Settings
from errors import (
    FatalEngineError,
    MalformedResponseError,
    SafetyBlockedError,
    TransientEngineError,
)
from models import ClassificationRequest, ClassificationResult

logger = logging.getLogger(__name__)

DEFAULT_CLASSIFICATION = "HUMAN"
DEFAULT_CONFIDENCE = 0.95
DEFAULT_EXPLANATION = "No explanation was provided by the classification model."

RETRIABLE_STATUS_CODES = frozenset({429, 502, 503, 504})
SAFETY_FINISH_REASONS = frozenset({"content_filter", "safety"})

RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "status": {"type": "string"},
        "classification": {"type": "string", "enum": ["HUMAN", "AI_GENERATED"]},
        "confidenceScore": {"type": "number", "minimum": 0, "maximum": 1},
        "explanation": {"type": "string"},
        "language": {"type": "string"},
        "artifactsFound": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["classification", "confidenceScore", "explanation"],
}

_CLASSIFICATION_KEYS = ("classification", "label", "verdict")
_CONFIDENCE_KEYS = ("confidenceScore", "confidence_score", "confidence")
_EXPLANATION_KEYS = ("explanation", "reasoning", "reason")
_LANGUAGE_KEYS = ("language", "languageDetected", "detectedLanguage")
_ARTIFACT_KEYS = ("artifactsFound", "artifacts")

_AI_LABELS = frozenset({"AI_GENERATED", "AI", "AIGENERATED", "SYNTHETIC"})
_GENERIC_LANGUAGES = frozenset({"", "unknown", "auto", "none", "n/a", "na", "undetermined"})
_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def build_prompt(language: str) -> str:
    return (
        f"You are an audio forensics expert. Listen to this {language} voice recording "
        "and decide whether it is a real HUMAN voice or AI_GENERATED (text-to-speech or "
        "voice cloning).\n"
        "Listen for metallic or phasey artifacts, over-smoothed consonants, unnaturally "
        "uniform breathing and rhythm, and missing micro-variation in pitch.\n"
        "Reply with a single JSON object and nothing else, with these fields:\n"
        '- "classification": "HUMAN" or "AI_GENERATED"\n'
        '- "confidenceScore": number between 0.0 and 1.0\n'
        '- "explanation": one or two sentences citing what you heard\n'
        f'- "language": the language spoken (expected: {language})\n'
        '- "artifactsFound": list of short names of synthetic artifacts heard, empty if none'
    )


def is_retriable(exc: BaseException) -> bool:
    """Transient overload: rate limits, service busy, dropped connections and timeouts."""
    if isinstance(exc, (openai.RateLimitError, openai.APIConnectionError)):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code in RETRIABLE_STATUS_CODES
    return False


def is_moderation_refusal(exc: BaseException) -> bool:
    # OpenRouter answers 403 when a moderated model's input was flagged.
    return isinstance(exc, openai.PermissionDeniedError)


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
    return base_delay * 2 ** (attempt - 1)


def parse_model_reply(text: str | None) -> dict[str, Any]:
    """
    Extract a JSON object from the model's raw text.

    Markdown fences are removed first. If the remainder still is not a JSON
    object, the span from the first ``{`` to the last ``}`` is tried.
    """
    cleaned = _FENCE_RE.sub("", text or "").strip()
    candidates = [cleaned]
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        candidates.append(cleaned[start:end + 1])
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise MalformedResponseError(f"no JSON object in model reply: {cleaned[:200]!r}")


def _pick(data: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def coerce_classification(value: Any) -> str:
    if isinstance(value, str):
        label = value.strip().upper().replace("-", "_").replace(" ", "_")
        if label in _AI_LABELS:
            return "AI_GENERATED"
        if label == "HUMAN":
            return "HUMAN"
    logger.warning("Unrecognized classification %r, defaulting to %s", value, DEFAULT_CLASSIFICATION)
    return DEFAULT_CLASSIFICATION


def coerce_confidence(value: Any) -> float:
    if isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        score = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if not math.isfinite(score) or not 0.0 <= score <= 1.0:
        return DEFAULT_CONFIDENCE
    return score


def choose_language(requested: str, reported: Any) -> str:
    """Keep the requested language unless the model names a more specific variant of it."""
    if not isinstance(reported, str):
        return requested
    reported = reported.strip()
    if reported.lower() in _GENERIC_LANGUAGES:
        return requested
    if requested.lower() in reported.lower() and len(reported) > len(requested):
        return reported
    return requested


def _coerce_artifacts(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    artifacts = [str(item).strip() for item in value if isinstance(item, (str, int, float))]
    return [a for a in artifacts if a] or None


def coerce_result(data: Mapping[str, Any], requested_language: str) -> ClassificationResult:
    explanation = _pick(data, _EXPLANATION_KEYS)
    if not isinstance(explanation, str) or not explanation.strip():
        explanation = DEFAULT_EXPLANATION
    return ClassificationResult(
        status="success",
        language=choose_language(requested_language, _pick(data, _LANGUAGE_KEYS)),
        classification=coerce_classification(_pick(data, _CLASSIFICATION_KEYS)),
        confidenceScore=coerce_confidence(_pick(data, _CONFIDENCE_KEYS)),
        explanation=explanation.strip(),
        artifactsFound=_coerce_artifacts(_pick(data, _ARTIFACT_KEYS)),
    )


class ClassificationGateway:
    def __init__(
        self,
        client: AsyncOpenAI | None,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self.settings = settings
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClassificationGateway":
        """Gateway whose client is built on first use, so a missing credential fails the request, not startup."""
        if not settings.model_api_key:
            logger.warning("No model API key configured (OPENROUTER_API_KEY); classification requests will fail")
        return cls(None, settings)

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.settings.model_api_key:
                raise FatalEngineError("model API key is not configured")
            # The client's own retries are off; the loop in classify() owns the policy.
            self._client = AsyncOpenAI(
                base_url=self.settings.model_base_url,
                api_key=self.settings.model_api_key,
                max_retries=0,
                timeout=self.settings.request_timeout,
            )
        return self._client

    def _completion_kwargs(self, request: ClassificationRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.settings.model_name,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "input_audio",
                            "input_audio": {
                                "data": request.audio_payload,
                                "format": request.audio_format,
                            },
                        },
                        {"type": "text", "text": build_prompt(request.language)},
                    ],
                }
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "voice_classification", "schema": RESPONSE_SCHEMA},
            },
            "stream": False,
            "temperature": 0,
        }
        if self.settings.reasoning_max_tokens:
            kwargs["extra_body"] = {"reasoning": {"max_tokens": self.settings.reasoning_max_tokens}}
        return kwargs

    async def _invoke(self, request: ClassificationRequest) -> str:
        response = await self.client.chat.completions.create(**self._completion_kwargs(request))
        if not response.choices:
            raise MalformedResponseError("model reply contained no choices")
        choice = response.choices[0]
        finish_reason = (choice.finish_reason or "").lower()
        refusal = getattr(choice.message, "refusal", None)
        if finish_reason in SAFETY_FINISH_REASONS or refusal:
            raise SafetyBlockedError(refusal or f"finish_reason={finish_reason}")
        text = (choice.message.content or "").strip()
        if not text:
            raise MalformedResponseError(f"empty model reply (finish_reason={finish_reason})")
        return text

    async def _invoke_with_retry(self, request: ClassificationRequest) -> str:
        attempts = self.settings.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._invoke(request)
            except openai.OpenAIError as exc:
                if is_moderation_refusal(exc):
                    logger.error("Model provider refused flagged input: %s", exc)
                    raise SafetyBlockedError(str(exc)) from exc
                if not is_retriable(exc):
                    logger.error("Model call failed (not retried): %s", exc)
                    raise FatalEngineError(str(exc)) from exc
                if attempt == attempts:
                    logger.error("Model call failed after %d attempts: %s", attempts, exc)
                    raise TransientEngineError(str(exc)) from exc
                delay = backoff_delay(attempt, self.settings.retry_base_delay)
                logger.warning(
                    "Transient model error on attempt %d/%d (%s), retrying in %.1fs",
                    attempt, attempts, type(exc).__name__, delay,
                )
                await self._sleep(delay)
        raise TransientEngineError("no attempts were made")

    async def classify(self, request: ClassificationRequest) -> ClassificationResult:
        text = await self._invoke_with_retry(request)
        try:
            data = parse_model_reply(text)
        except MalformedResponseError:
            logger.error("Unparseable model reply: %.200s", text)
            raise
        result = coerce_result(data, request.language)
        logger.info(
            "Classified %d chars of %s audio as %s (%.2f)",
            len(request.audio_payload), request.audio_format,
            result.classification, result.confidenceScore,
        )
        return result
