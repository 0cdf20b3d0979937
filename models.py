from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Classification = Literal["HUMAN", "AI_GENERATED"]


class ClassificationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    audio_payload: str = Field(..., description="Base64 audio with any data-URI prefix removed")
    language: str = Field("English", description="Language spoken in the audio")
    audio_format: str = Field("mp3", description="Container hint forwarded to the model")


class ClassificationResult(BaseModel):
    status: Literal["success", "error"] = "success"
    language: str
    classification: Classification
    confidenceScore: float = Field(..., ge=0.0, le=1.0)
    explanation: str
    # Deprecated: only emitted when the model reports artifacts.
    artifactsFound: list[str] | None = None


class ErrorResponse(BaseModel):
    status: Literal["error"] = "error"
    message: str
