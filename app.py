"""
Voice Detection: HTTP API + local file analysis.

Usage:
  API server:  python app.py   OR  uvicorn app:app --host 0.0.0.0 --port 8000
  Local file:  python app.py path/to/audio.mp3 [Language]
"""

import asyncio
import base64
import json
import logging
import os
import secrets
import sys
from typing import Any

from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings
from errors import AuthError, ClassificationError, FatalEngineError
from gateway import ClassificationGateway
from models import ClassificationRequest, ErrorResponse
from normalizer import normalize_audio_format, normalize_request

logger = logging.getLogger(__name__)


# =============================================================================
# Request helpers
# =============================================================================
def check_api_key(x_api_key: str | None, settings: Settings) -> None:
    if not x_api_key:
        raise AuthError("missing x-api-key header")
    if not secrets.compare_digest(x_api_key.strip().encode(), settings.api_key.strip().encode()):
        raise AuthError("x-api-key mismatch")


async def read_body(request: Request) -> Any:
    """JSON when the body parses as JSON, otherwise the raw text."""
    raw = await request.body()
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def error_response(exc: ClassificationError, verbose: bool) -> JSONResponse:
    message = exc.public_message
    if verbose and exc.detail:
        message = f"{message}: {exc.detail}"
    return JSONResponse(status_code=exc.status_code, content=ErrorResponse(message=message).model_dump())


# =============================================================================
# FastAPI app
# =============================================================================
def create_app(settings: Settings | None = None, gateway: ClassificationGateway | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    gateway = gateway or ClassificationGateway.from_settings(settings)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(
        title="Voice Detection API",
        description="Classify voice as AI_GENERATED or HUMAN from base64 audio.",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.gateway = gateway

    @app.exception_handler(ClassificationError)
    async def classification_error(request: Request, exc: ClassificationError) -> JSONResponse:
        logger.info("%s %s -> %d %s", request.method, request.url.path, exc.status_code, type(exc).__name__)
        return error_response(exc, settings.verbose_errors)

    @app.post("/detect")
    @app.post("/api/voice-detection")
    async def voice_detection(
        request: Request,
        x_api_key: str | None = Header(None, alias="x-api-key"),
    ):
        check_api_key(x_api_key, settings)
        try:
            body = await read_body(request)
            classification_request = normalize_request(body, settings)
            result = await gateway.classify(classification_request)
        except ClassificationError:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure while classifying audio")
            raise FatalEngineError(str(exc)) from exc
        return result.model_dump(exclude_none=True)

    @app.get("/")
    @app.head("/")
    def root():
        return {"service": "Voice Detection API", "status": "healthy", "docs": "/docs"}

    return app


app = create_app()


# =============================================================================
# Local file analysis
# =============================================================================
def encode_audio(file_path: str) -> str:
    with open(file_path, "rb") as f:
        return base64.b64encode(f.read()).decode("utf-8")


def analyze_audio_file(file_path: str, language: str = "English") -> int:
    if not file_path or not os.path.isfile(file_path):
        print("File not found or no path given.")
        return 1
    filename = os.path.basename(file_path)
    file_extension = normalize_audio_format(filename.rsplit(".", 1)[-1]) if "." in filename else "mp3"
    print(f"\nProcessing {filename}...")
    settings = Settings.from_env()
    request = ClassificationRequest(
        audio_payload=encode_audio(file_path),
        language=language,
        audio_format=file_extension,
    )
    gateway = ClassificationGateway.from_settings(settings)
    try:
        result = asyncio.run(gateway.classify(request))
    except ClassificationError as exc:
        print(f"{exc.public_message}: {exc.detail or ''}")
        return 1
    print(json.dumps(result.model_dump(exclude_none=True), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    if len(sys.argv) >= 2:
        sys.exit(analyze_audio_file(sys.argv[1], *sys.argv[2:3]))
    else:
        import uvicorn
        settings = app.state.settings
        print(f"Starting API server at http://{settings.host}:{settings.port} (use python app.py path/to/audio.mp3 for local file analysis)")
        uvicorn.run(app, host=settings.host, port=settings.port)
