"""
MLS compliance check for staged images.

Compares the original and staged photo with the validation model and records
a score on the image. Runs detached from job processing; a failed check never
affects the job.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from google.genai import types

from config import settings
from services.errors import NotFound
from services.gemini import GeminiStagingClient, strip_json_fences
from services.object_storage import R2Storage
from services.staging_store import StagingStore, utcnow

logger = logging.getLogger(__name__)

COMPLIANT_SCORE = 80

COMPLIANCE_PROMPT = """Compare these two images for MLS compliance in virtual staging. The first image is the original empty room, and the second is the virtually staged version.

CRITICAL MLS REQUIREMENTS TO CHECK:
1. Structural elements MUST be preserved (walls, windows, doors, floors, ceilings)
2. Room layout and dimensions MUST remain unchanged
3. Architectural features MUST not be altered or hidden
4. Only furniture and decor should be added, nothing structural removed or modified
5. Lighting and perspective should be consistent

ANALYZE FOR VIOLATIONS:
- Are any walls, windows, or doors altered?
- Has the room layout or size been changed?
- Are any structural elements hidden or removed?
- Has the flooring type or pattern been changed?
- Are ceiling features preserved?

Respond with a JSON object:
{
  "isCompliant": boolean,
  "violations": ["list of serious MLS violations"],
  "warnings": ["list of minor concerns"],
  "confidence": number (0-1)
}"""


@dataclass
class ComplianceResult:
    violations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    confidence: float = 0.0

    @property
    def score(self) -> int:
        return max(0, 100 - 25 * len(self.violations) - 10 * len(self.warnings))

    @property
    def is_compliant(self) -> bool:
        return not self.violations and self.score >= COMPLIANT_SCORE

    def to_record(self) -> dict[str, Any]:
        return {
            "is_compliant": self.is_compliant,
            "score": self.score,
            "violations": list(self.violations),
            "warnings": list(self.warnings),
            "confidence": self.confidence,
            "last_checked": utcnow().isoformat(),
        }


def parse_compliance(text: str) -> ComplianceResult:
    try:
        parsed = json.loads(strip_json_fences(text))
    except json.JSONDecodeError:
        logger.warning("[Compliance] Failed to parse response: %s", text[:200])
        return ComplianceResult(violations=["Failed to validate structural preservation"])
    if not isinstance(parsed, dict):
        return ComplianceResult(violations=["Failed to validate structural preservation"])
    return ComplianceResult(
        violations=[str(v) for v in parsed.get("violations") or []],
        warnings=[str(w) for w in parsed.get("warnings") or []],
        confidence=float(parsed.get("confidence") or 0.0),
    )


async def check_structural_preservation(
    gemini: GeminiStagingClient, original_url: str, staged_url: str
) -> ComplianceResult:
    original_bytes, original_mime = await gemini.fetch_image(original_url)
    staged_bytes, staged_mime = await gemini.fetch_image(staged_url)
    response = await gemini.generate_content(
        gemini.validation_model,
        [
            COMPLIANCE_PROMPT,
            types.Part.from_bytes(data=original_bytes, mime_type=original_mime),
            types.Part.from_bytes(data=staged_bytes, mime_type=staged_mime),
        ],
    )
    return parse_compliance(response.text or "")


async def validate_image_compliance(
    store: StagingStore,
    gemini: GeminiStagingClient,
    storage: R2Storage,
    image_id: str,
) -> dict[str, Any]:
    """Run the check for one staged image and persist the outcome on the image."""
    image = await store.get_image(image_id)
    if image is None:
        raise NotFound(f"Image {image_id} not found")
    if not image.staged_key:
        logger.info("[Compliance] Image %s has no staged object, skipping", image_id)
        return {}

    original_url = await storage.signed_url(settings.R2_BUCKET_ORIGINALS, image.original_key)
    staged_url = await storage.signed_url(settings.R2_BUCKET_STAGED, image.staged_key)
    try:
        result = await check_structural_preservation(gemini, original_url, staged_url)
    except Exception as exc:
        logger.error("[Compliance] Check failed for image %s: %s", image_id, exc)
        result = ComplianceResult(violations=["Validation failed due to technical error"])

    record = result.to_record()
    await store.update_image_compliance(image_id, record)
    logger.info(
        "[Compliance] Image %s score=%d compliant=%s",
        image_id, record["score"], record["is_compliant"],
    )
    return record
