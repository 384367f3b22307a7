"""
Image generation client.

The generation call is opaque to admission control: it returns a typed
GenerationResult and the route commits usage only when ``success`` is true.
Timeouts and upstream errors become unsuccessful results; cancellation
propagates untouched so the caller never reaches its commit branch.
"""

import base64
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from src.config import Config
from src.services.prometheus_metrics import generation_requests, track_generation
from src.services.usage_ledger import ModelType

logger = logging.getLogger(__name__)

COMPOSITE_PROMPT = (
    "Create a new photorealistic composite from the two provided images. "
    "Place the person from the second image into the scene of the first image, "
    "replacing the main subject. Keep the person's face identical to the second image, "
    "and match the lighting, grain and colour grading of the first image."
)

_REFERENCE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+\.(jpe?g|png|webp)$")
_MIME_BY_SUFFIX = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".png": "image/png", ".webp": "image/webp"}


@dataclass(frozen=True)
class ImageInput:
    data: bytes
    mime_type: str


@dataclass(frozen=True)
class GenerationResult:
    success: bool
    model_type: ModelType
    image_bytes: bytes | None = None
    mime_type: str | None = None
    error: str | None = None

    def data_url(self) -> str:
        encoded = base64.b64encode(self.image_bytes or b"").decode("ascii")
        return f"data:{self.mime_type or 'image/png'};base64,{encoded}"


class ImageGenerator(Protocol):
    async def generate(
        self, photo: ImageInput, reference: ImageInput, model_type: ModelType
    ) -> GenerationResult: ...


def load_reference_photo(name: str, base_dir: Path | None = None) -> ImageInput | None:
    """
    Load a reference photo by file name.

    Only plain file names with an image extension are accepted, and the
    resolved path must stay inside the reference directory.
    """
    if not _REFERENCE_NAME_PATTERN.match(name or ""):
        return None
    base_dir = (base_dir or Config.REFERENCE_PHOTOS_DIR).resolve()
    path = (base_dir / name).resolve()
    if path.parent != base_dir or not path.is_file():
        return None
    return ImageInput(path.read_bytes(), _MIME_BY_SUFFIX[path.suffix.lower()])


class GeminiImageGenerator:
    """ImageGenerator backed by the Gemini generateContent REST API"""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        models: dict[ModelType, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else Config.GEMINI_API_KEY
        self.base_url = (base_url or Config.GEMINI_BASE_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds or Config.GENERATION_TIMEOUT_SECONDS
        self.models = models or {
            ModelType.QUICK: Config.GEMINI_QUICK_MODEL,
            ModelType.PREMIUM: Config.GEMINI_PREMIUM_MODEL,
        }
        self._transport = transport

    @staticmethod
    def _inline(image: ImageInput) -> dict:
        encoded = base64.b64encode(image.data).decode("ascii")
        return {"inline_data": {"mime_type": image.mime_type, "data": encoded}}

    def _payload(self, photo: ImageInput, reference: ImageInput) -> dict:
        return {
            "contents": [
                {
                    "parts": [
                        {"text": COMPOSITE_PROMPT},
                        self._inline(reference),
                        self._inline(photo),
                    ]
                }
            ],
            "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
        }

    @staticmethod
    def _extract_image(body: dict) -> tuple[bytes, str] | None:
        for candidate in body.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") or part.get("inline_data")
                if inline and inline.get("data"):
                    mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
                    return base64.b64decode(inline["data"]), mime
        return None

    async def generate(
        self, photo: ImageInput, reference: ImageInput, model_type: ModelType
    ) -> GenerationResult:
        model_type = ModelType(model_type)
        if not self.api_key:
            return GenerationResult(False, model_type, error="Image generation is not configured")

        url = f"{self.base_url}/models/{self.models[model_type]}:generateContent"
        with track_generation(model_type.value):
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout_seconds, transport=self._transport
                ) as client:
                    response = await client.post(
                        url,
                        headers={"x-goog-api-key": self.api_key},
                        json=self._payload(photo, reference),
                    )
                response.raise_for_status()
                extracted = self._extract_image(response.json())
            except httpx.TimeoutException:
                logger.error(f"Gemini {model_type.value} generation timed out")
                generation_requests.labels(model_type=model_type.value, status="timeout").inc()
                return GenerationResult(False, model_type, error="Generation timed out")
            except httpx.HTTPStatusError as e:
                logger.error(
                    f"Gemini returned {e.response.status_code}: {e.response.text[:200]}"
                )
                generation_requests.labels(model_type=model_type.value, status="error").inc()
                return GenerationResult(False, model_type, error="Image generation failed")
            except (httpx.HTTPError, ValueError) as e:
                logger.error(f"Gemini request failed: {e}")
                generation_requests.labels(model_type=model_type.value, status="error").inc()
                return GenerationResult(False, model_type, error="Image generation failed")

        if extracted is None:
            logger.warning(f"Gemini {model_type.value} response contained no image")
            generation_requests.labels(model_type=model_type.value, status="empty").inc()
            return GenerationResult(False, model_type, error="No image was generated")

        image_bytes, mime = extracted
        generation_requests.labels(model_type=model_type.value, status="success").inc()
        return GenerationResult(True, model_type, image_bytes=image_bytes, mime_type=mime)
