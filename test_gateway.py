"""
test_gateway.py

Tests for the model call wrapper: retry policy, reply parsing and field coercion.
The OpenAI client is replaced with AsyncMock so nothing leaves the process.
"""

import json
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai

from config import Settings
from errors import (
    FatalEngineError,
    MalformedResponseError,
    SafetyBlockedError,
    TransientEngineError,
)
from gateway import (
    DEFAULT_CONFIDENCE,
    DEFAULT_EXPLANATION,
    ClassificationGateway,
    backoff_delay,
    choose_language,
    coerce_result,
    is_retriable,
    parse_model_reply,
)
from models import ClassificationRequest

_REQUEST = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")


def status_error(cls, status_code):
    response = httpx.Response(status_code, request=_REQUEST)
    return cls(f"Error code: {status_code}", response=response, body=None)


def completion(content, finish_reason="stop", refusal=None):
    message = SimpleNamespace(content=content, refusal=refusal)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=finish_reason)])


def make_gateway(side_effect, **settings):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=side_effect)
    sleep = AsyncMock()
    gateway = ClassificationGateway(client, Settings(**settings), sleep=sleep)
    return gateway, client.chat.completions.create, sleep


REPLY = {"classification": "AI_GENERATED", "confidenceScore": 0.87, "explanation": "vocoder jitter detected"}


class TestParseModelReply(unittest.TestCase):

    def test_plain_json(self):
        self.assertEqual(parse_model_reply(json.dumps(REPLY)), REPLY)

    def test_fenced_json_matches_unfenced(self):
        raw = json.dumps(REPLY, indent=2)
        fenced = f"```json\n{raw}\n```"
        self.assertEqual(parse_model_reply(fenced), json.loads(raw))
        self.assertEqual(parse_model_reply(f"```\n{raw}\n```"), json.loads(raw))

    def test_json_inside_prose(self):
        text = "Here is my analysis: " + json.dumps(REPLY) + " Hope this helps."
        self.assertEqual(parse_model_reply(text), REPLY)

    def test_unparseable(self):
        for text in ("not json at all", "{broken", "", None, "[1, 2, 3]"):
            with self.subTest(text=text):
                with self.assertRaises(MalformedResponseError):
                    parse_model_reply(text)


class TestCoercion(unittest.TestCase):

    def test_missing_fields_get_defaults(self):
        result = coerce_result({"classification": "HUMAN"}, "English")
        self.assertEqual(result.status, "success")
        self.assertEqual(result.classification, "HUMAN")
        self.assertEqual(result.confidenceScore, DEFAULT_CONFIDENCE)
        self.assertEqual(result.explanation, DEFAULT_EXPLANATION)
        self.assertEqual(result.language, "English")
        self.assertIsNone(result.artifactsFound)

    def test_empty_reply_fully_populated(self):
        result = coerce_result({}, "Tamil")
        for field in ("status", "language", "classification", "confidenceScore", "explanation"):
            self.assertIsNotNone(getattr(result, field))
        self.assertEqual(result.classification, "HUMAN")

    def test_classification_normalized(self):
        cases = {
            "AI_GENERATED": "AI_GENERATED",
            "ai-generated": "AI_GENERATED",
            "AI": "AI_GENERATED",
            "human": "HUMAN",
            "maybe": "HUMAN",
            None: "HUMAN",
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(coerce_result({"classification": raw}, "English").classification, expected)

    def test_confidence_coercion(self):
        cases = [(0.42, 0.42), ("0.3", 0.3), (1, 1.0), (1.5, DEFAULT_CONFIDENCE),
                 (-0.1, DEFAULT_CONFIDENCE), ("high", DEFAULT_CONFIDENCE),
                 (float("nan"), DEFAULT_CONFIDENCE), (True, DEFAULT_CONFIDENCE)]
        for raw, expected in cases:
            with self.subTest(raw=raw):
                self.assertEqual(coerce_result({"confidenceScore": raw}, "English").confidenceScore, expected)

    def test_alternate_field_names(self):
        data = {
            "classification": "AI_GENERATED",
            "confidence": 0.7,
            "reasoning": "flat prosody",
            "languageDetected": "Indian English",
            "artifacts": ["robotic timbre", "", 3],
        }
        result = coerce_result(data, "English")
        self.assertEqual(result.confidenceScore, 0.7)
        self.assertEqual(result.explanation, "flat prosody")
        self.assertEqual(result.language, "Indian English")
        self.assertEqual(result.artifactsFound, ["robotic timbre", "3"])

    def test_choose_language(self):
        self.assertEqual(choose_language("Spanish", None), "Spanish")
        self.assertEqual(choose_language("Spanish", "unknown"), "Spanish")
        self.assertEqual(choose_language("Spanish", "English"), "Spanish")
        self.assertEqual(choose_language("Spanish", "spanish"), "Spanish")
        self.assertEqual(choose_language("Spanish", "Mexican Spanish"), "Mexican Spanish")


class TestRetryPolicy(unittest.TestCase):

    def test_retriable_classification(self):
        self.assertTrue(is_retriable(status_error(openai.RateLimitError, 429)))
        self.assertTrue(is_retriable(status_error(openai.InternalServerError, 503)))
        self.assertTrue(is_retriable(openai.APIConnectionError(request=_REQUEST)))
        self.assertTrue(is_retriable(openai.APITimeoutError(request=_REQUEST)))
        self.assertFalse(is_retriable(status_error(openai.InternalServerError, 500)))
        self.assertFalse(is_retriable(status_error(openai.AuthenticationError, 401)))
        self.assertFalse(is_retriable(status_error(openai.BadRequestError, 400)))
        self.assertFalse(is_retriable(ValueError("503 Service Unavailable")))

    def test_backoff_is_exponential(self):
        self.assertEqual([backoff_delay(n, 1.0) for n in (1, 2, 3)], [1.0, 2.0, 4.0])
        self.assertEqual(backoff_delay(2, 0.5), 1.0)


class TestClassificationGateway(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.request = ClassificationRequest(audio_payload="QUJD" * 45, language="Spanish")

    async def test_success(self):
        gateway, create, sleep = make_gateway([completion(json.dumps(REPLY))])
        result = await gateway.classify(self.request)
        self.assertEqual(result.classification, "AI_GENERATED")
        self.assertEqual(result.confidenceScore, 0.87)
        self.assertEqual(result.explanation, "vocoder jitter detected")
        self.assertEqual(result.language, "Spanish")
        create.assert_awaited_once()
        sleep.assert_not_awaited()

    async def test_call_shape(self):
        gateway, create, _ = make_gateway([completion(json.dumps(REPLY))], reasoning_max_tokens=256)
        await gateway.classify(self.request)
        kwargs = create.call_args.kwargs
        self.assertEqual(kwargs["model"], "google/gemini-3-flash-preview")
        audio_part, text_part = kwargs["messages"][0]["content"]
        self.assertEqual(audio_part["input_audio"], {"data": self.request.audio_payload, "format": "mp3"})
        self.assertIn("Spanish", text_part["text"])
        schema = kwargs["response_format"]["json_schema"]["schema"]
        self.assertEqual(schema["required"], ["classification", "confidenceScore", "explanation"])
        self.assertEqual(kwargs["extra_body"], {"reasoning": {"max_tokens": 256}})

    async def test_recovers_after_two_rate_limits(self):
        gateway, create, sleep = make_gateway([
            status_error(openai.RateLimitError, 429),
            status_error(openai.RateLimitError, 429),
            completion(json.dumps(REPLY)),
        ])
        result = await gateway.classify(self.request)
        self.assertEqual(result.classification, "AI_GENERATED")
        self.assertEqual(create.await_count, 3)
        self.assertEqual([c.args[0] for c in sleep.await_args_list], [1.0, 2.0])

    async def test_retry_cap(self):
        for max_retries in (0, 2, 4):
            with self.subTest(max_retries=max_retries):
                errors = [status_error(openai.InternalServerError, 503)] * (max_retries + 1)
                gateway, create, sleep = make_gateway(errors, max_retries=max_retries)
                with self.assertRaises(TransientEngineError):
                    await gateway.classify(self.request)
                self.assertEqual(create.await_count, max_retries + 1)
                self.assertEqual(sleep.await_count, max_retries)

    async def test_fatal_error_not_retried(self):
        gateway, create, sleep = make_gateway([status_error(openai.AuthenticationError, 401)])
        with self.assertRaises(FatalEngineError):
            await gateway.classify(self.request)
        create.assert_awaited_once()
        sleep.assert_not_awaited()

    async def test_safety_block_not_retried(self):
        for response in (completion(None, finish_reason="content_filter"),
                         completion(None, refusal="I can't help with that.")):
            with self.subTest(response=response):
                gateway, create, sleep = make_gateway([response])
                with self.assertRaises(SafetyBlockedError):
                    await gateway.classify(self.request)
                create.assert_awaited_once()
                sleep.assert_not_awaited()

    async def test_malformed_reply_not_retried(self):
        gateway, create, _ = make_gateway([completion("The voice sounds human to me.")])
        with self.assertRaises(MalformedResponseError):
            await gateway.classify(self.request)
        create.assert_awaited_once()

    async def test_empty_reply_is_malformed(self):
        gateway, _, _ = make_gateway([completion("")])
        with self.assertRaises(MalformedResponseError):
            await gateway.classify(self.request)

    async def test_client_built_without_own_retries(self):
        gateway = ClassificationGateway.from_settings(Settings(model_api_key="test"))
        self.assertEqual(gateway.client.max_retries, 0)
        self.assertIs(gateway.client, gateway.client)

    async def test_missing_credential_fails_request_not_construction(self):
        gateway = ClassificationGateway.from_settings(Settings(model_api_key=""))
        with self.assertRaises(FatalEngineError):
            await gateway.classify(self.request)

    async def test_moderation_refusal_is_safety_block(self):
        body = {"error": {"code": 403, "message": "Your chosen model requires moderation and your input was flagged",
                          "metadata": {"reasons": ["violence"], "flagged_input": "..."}}}
        response = httpx.Response(403, request=_REQUEST)
        refusal = openai.PermissionDeniedError("Error code: 403", response=response, body=body)
        gateway, create, sleep = make_gateway([refusal])
        with self.assertRaises(SafetyBlockedError):
            await gateway.classify(self.request)
        create.assert_awaited_once()
        sleep.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
