"""
Gemini client for room validation and virtual staging generation.

Source images are fetched from signed URLs with httpx and sent inline.
Retry and circuit breaking around ``generate`` are applied by the caller
(services.job_processor), so one call here is exactly one attempt.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from google import genai
from google.genai import types

from config import settings
from services.errors import ImageFormatError, StagingError, classify_exception
from services.retry import DEFAULT_POLICY, retry
from services.style_presets import build_staging_prompt

logger = logging.getLogger(__name__)

MAX_SOURCE_IMAGE_BYTES = 20 * 1024 * 1024
USER_AGENT = "RoomsThatSell/1.0"

VALIDATION_PROMPT = """Analyze this room image for virtual staging suitability. Check for:

1. Is this an interior room photo?
2. Is the room mostly empty or sparsely furnished?
3. Are the walls, floors, and structural elements clearly visible?
4. Is the image quality sufficient (not blurry, well-lit)?
5. Is the room a suitable size for staging (not a closet or tiny space)?

Respond with a JSON object containing:
- isValid: boolean
- issues: array of strings describing any problems
- confidence: number between 0-1 indicating suitability
- roomType: detected room type (living room, bedroom, kitchen, etc.)

Example response:
{
  "isValid": true,
  "issues": [],
  "confidence": 0.9,
  "roomType": "living room"
}"""


@dataclass
class ValidationResult:
    is_valid: bool
    issues: list[str] = field(default_factory=list)
    confidence: float = 0.0
    room_type: Optional[str] = None


@dataclass
class GenerationOptions:
    style_preset: str
    room_type: str
    custom_prompt: Optional[str] = None
    seed: Optional[int] = None


@dataclass
class GenerationResult:
    """Either inline image bytes or a hosted URL."""

    processing_time: float
    image_bytes: Optional[bytes] = None
    mime_type: Optional[str] = None
    url: Optional[str] = None
    confidence: Optional[float] = None
    model: Optional[str] = None


def strip_json_fences(text: str) -> str:
    clean = text.strip()
    if clean.startswith("```"):
        clean = clean.split("\n", 1)[1] if "\n" in clean else ""
        if clean.rstrip().endswith("```"):
            clean = clean.rstrip()[:-3]
    return clean.strip()


def parse_validation(text: str) -> ValidationResult:
    """Parse the validation model's JSON answer. Unparseable answers count as invalid."""
    try:
        parsed = json.loads(strip_json_fences(text))
    except json.JSONDecodeError:
        logger.warning("[Gemini] Failed to parse validation response: %s", text[:200])
        return ValidationResult(is_valid=False, issues=["Failed to analyze image"])
    if not isinstance(parsed, dict):
        return ValidationResult(is_valid=False, issues=["Failed to analyze image"])
    return ValidationResult(
        is_valid=bool(parsed.get("isValid", False)),
        issues=[str(issue) for issue in parsed.get("issues") or []],
        confidence=float(parsed.get("confidence") or 0.0),
        room_type=parsed.get("roomType"),
    )


class GeminiStagingClient:
    """Thin async wrapper over google-genai for the two staging calls."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        staging_model: Optional[str] = None,
        validation_model: Optional[str] = None,
        generation_timeout: Optional[float] = None,
        fetch_timeout: Optional[float] = None,
    ) -> None:
        api_key = api_key or settings.GEMINI_API_KEY
        if not api_key:
            raise ValueError("GEMINI_API_KEY is required")
        self._client = genai.Client(api_key=api_key)
        self.staging_model = staging_model or settings.GEMINI_STAGING_MODEL
        self.validation_model = validation_model or settings.GEMINI_VALIDATION_MODEL
        self.generation_timeout = generation_timeout or settings.AI_GENERATION_TIMEOUT_SECONDS
        self.fetch_timeout = fetch_timeout or settings.IMAGE_FETCH_TIMEOUT_SECONDS

    async def fetch_image(self, image_url: str) -> tuple[bytes, str]:
        """Download source bytes (retried on network errors). Returns (bytes, mime_type)."""

        async def _fetch() -> tuple[bytes, str]:
            try:
                async with httpx.AsyncClient(timeout=self.fetch_timeout, follow_redirects=True) as client:
                    response = await client.get(image_url, headers={"User-Agent": USER_AGENT})
                    response.raise_for_status()
            except Exception as exc:
                raise classify_exception(exc) from exc
            if len(response.content) > MAX_SOURCE_IMAGE_BYTES:
                raise ImageFormatError("Image too large (max 20MB)")
            mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip()
            return response.content, mime_type or "image/jpeg"

        return await retry(_fetch, DEFAULT_POLICY)

    async def generate_content(self, model: str, contents: list[Any], config: Any = None) -> Any:
        try:
            return await asyncio.wait_for(
                self._client.aio.models.generate_content(model=model, contents=contents, config=config),
                timeout=self.generation_timeout,
            )
        except Exception as exc:
            raise classify_exception(exc) from exc

    async def validate(self, image_url: str) -> ValidationResult:
        """Ask the text model whether the photo is an empty, stageable interior."""
        image_bytes, mime_type = await self.fetch_image(image_url)
        response = await self.generate_content(
            self.validation_model,
            [VALIDATION_PROMPT, types.Part.from_bytes(data=image_bytes, mime_type=mime_type)],
        )
        return parse_validation(response.text or "")

    async def generate(self, image_url: str, options: GenerationOptions) -> GenerationResult:
        """One staging attempt. Raises StagingError when the model returns no image."""
        started = time.monotonic()
        image_bytes, mime_type = await self.fetch_image(image_url)
        prompt = build_staging_prompt(options.style_preset, options.room_type, options.custom_prompt)
        config = types.GenerateContentConfig(seed=options.seed) if options.seed is not None else None

        response = await self.generate_content(
            self.staging_model,
            [prompt, types.Part.from_bytes(data=image_bytes, mime_type=mime_type)],
            config,
        )

        for candidate in response.candidates or []:
            parts = candidate.content.parts if candidate.content else None
            for part in parts or []:
                if part.inline_data and part.inline_data.data:
                    return GenerationResult(
                        processing_time=time.monotonic() - started,
                        image_bytes=part.inline_data.data,
                        mime_type=part.inline_data.mime_type or "image/png",
                        confidence=0.9,
                        model=self.staging_model,
                    )
        raise StagingError("No image was generated by the AI model")
