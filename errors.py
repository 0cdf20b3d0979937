"""Failure taxonomy shared by the normalizer, the gateway and the HTTP layer."""


class ClassificationError(Exception):
    """Base class. Each subclass knows the HTTP status and public message it maps to."""

    status_code = 500
    public_message = "Internal error while classifying audio"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.public_message)
        self.detail = detail


class AuthError(ClassificationError):
    status_code = 401
    public_message = "Invalid API key or unauthorized request"


class MissingAudioError(ClassificationError):
    status_code = 400
    public_message = "No audio data provided or audio payload too short"


class TransientEngineError(ClassificationError):
    status_code = 503
    public_message = "Classification model is temporarily unavailable, try again later"


class SafetyBlockedError(ClassificationError):
    status_code = 422
    public_message = "Classification model declined to process this audio"


class MalformedResponseError(ClassificationError):
    status_code = 500
    public_message = "Classification model returned an unreadable response"


class FatalEngineError(ClassificationError):
    status_code = 500
    public_message = "Classification model request failed"
