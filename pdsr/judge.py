"""
Consistency Judge
Re-validates a restored candidate region by region against the Semantic Atlas.

Only the critical regions are checked. Each region is cropped from both
images, scored for structural similarity, and read back by the transform
to verify the ground-truth content survived restoration.
"""

import asyncio
import re
from typing import Iterable, Optional

from rich.console import Console

from config import (
    SIMILARITY_THRESHOLD,
    MAX_CRITICAL_REGIONS,
    MAX_REGION_AREA_RATIO,
    TRANSFORM_RETRIES,
    RETRY_INITIAL_DELAY,
)
from .imaging import compute_similarity, crop_decoded, load_image
from .json_extract import extract_json
from .models import (
    AtlasRegion,
    RegionId,
    RegionStatus,
    SemanticAtlas,
    SemanticType,
    ValidationReport,
    ValidationResult,
)
from .resilience import execute
from .transform import ContentTransform, ImageInput, TransformRequest


console = Console()


# Lower rank is checked first; BACKGROUND_STAIN is never judged
TYPE_PRIORITY = {
    SemanticType.TEXT_INK: 0,
    SemanticType.SIGNATURE_INK: 0,
    SemanticType.STAMP_PIGMENT: 1,
    SemanticType.PHOTO_HALFTONE: 2,
}

VALIDATION_ERROR_CONFIDENCE = 0.1


REGION_PROMPT = """You are a visual quality assurance critic for document restoration.

The FIRST image is a crop of the ORIGINAL damaged document.
The SECOND image is the same crop of the RESTORED candidate.

Region type: {semantic_type}

## Checks
1. Read the SECOND image. Transcribe its text EXACTLY as rendered, character for character.
   Do not correct spelling. If no text is visible, return an empty string.
2. Is the FIRST (original) image legible at all? Genuinely unreadable sources are not the restorer's fault.
3. Does the SECOND image contain synthetic artifacts: checkerboard patterns, color bleeding,
   invented strokes or glyphs, plastic-looking oversmoothed texture?

## Output Format
Return ONLY a JSON object:

{{
  "candidateText": "<exact transcription of the second image>",
  "originalLegible": true,
  "artifactsDetected": false,
  "confidence": 0.9,
  "critique": "<one sentence>"
}}
"""


REGION_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "candidateText": {"type": "STRING"},
        "originalLegible": {"type": "BOOLEAN"},
        "artifactsDetected": {"type": "BOOLEAN"},
        "confidence": {"type": "NUMBER"},
        "critique": {"type": "STRING"},
    },
}


def normalize_text(text: str) -> str:
    """Collapse whitespace; everything else must match verbatim."""
    return re.sub(r"\s+", " ", text or "").strip()


def verdict_flag(value, default: bool) -> bool:
    """Read a verdict boolean, tolerating "true"/"false" strings."""
    if value is None:
        return default
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0"):
            return False
        return default
    return bool(value)


def text_reproduced(expected: str, candidate_text: str) -> bool:
    """True if `expected` appears verbatim (modulo whitespace) in the candidate transcription."""
    expected = normalize_text(expected)
    if not expected:
        return True
    return expected in normalize_text(candidate_text)


def select_critical_regions(
    atlas: SemanticAtlas,
    max_regions: int = MAX_CRITICAL_REGIONS,
    max_area_ratio: float = MAX_REGION_AREA_RATIO,
) -> list[AtlasRegion]:
    """
    Pick the regions worth re-validating.

    Ink text and signatures rank first, then stamps, then halftone photos.
    Within a rank higher confidence wins, then Atlas order. Regions covering
    more than `max_area_ratio` of the page are skipped.
    """
    ranked = [
        (TYPE_PRIORITY[region.semantic_type], -region.confidence, index, region)
        for index, region in enumerate(atlas.regions)
        if region.semantic_type in TYPE_PRIORITY and region.area_ratio <= max_area_ratio
    ]
    ranked.sort(key=lambda item: item[:3])
    return [item[3] for item in ranked[:max_regions]]


class ConsistencyJudge:
    """Judges a restored candidate against the original, region by region."""

    def __init__(
        self,
        transform: ContentTransform,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        max_regions: int = MAX_CRITICAL_REGIONS,
        max_area_ratio: float = MAX_REGION_AREA_RATIO,
        retries: int = TRANSFORM_RETRIES,
        initial_delay: float = RETRY_INITIAL_DELAY,
    ):
        self.transform = transform
        self.similarity_threshold = similarity_threshold
        self.max_regions = max_regions
        self.max_area_ratio = max_area_ratio
        self.retries = retries
        self.initial_delay = initial_delay

    def critical_regions(self, atlas: SemanticAtlas) -> list[AtlasRegion]:
        return select_critical_regions(atlas, self.max_regions, self.max_area_ratio)

    async def judge(
        self,
        original: bytes,
        candidate: bytes,
        atlas: SemanticAtlas,
        region_ids: Optional[Iterable[RegionId]] = None,
    ) -> ValidationReport:
        """
        Judge a candidate against the original.

        Args:
            original: Original image bytes
            candidate: Restored candidate bytes
            atlas: The run's Semantic Atlas
            region_ids: Restrict judging to these regions (re-judging after
                refinement); defaults to the critical subset

        Returns:
            ValidationReport with one result per judged region

        Raises:
            Exception: if either image cannot be decoded; per-region
                failures never raise
        """
        if region_ids is None:
            regions = self.critical_regions(atlas)
        else:
            wanted = set(region_ids)
            regions = [r for r in atlas.regions if r.id in wanted]

        if not regions:
            return ValidationReport(results=[], global_critique="No critical regions to validate.")

        original_image = load_image(original)
        candidate_image = load_image(candidate)

        results = await asyncio.gather(*(
            self._check_region_safe(region, original_image, candidate_image)
            for region in regions
        ))

        failed = sum(1 for r in results if not r.passed)
        critique = f"{len(results) - failed}/{len(results)} critical regions passed."
        if failed:
            critique += " Failing: " + ", ".join(r.region_id for r in results if not r.passed) + "."
        return ValidationReport(results=list(results), global_critique=critique)

    async def _check_region_safe(self, region: AtlasRegion, original_image, candidate_image) -> ValidationResult:
        try:
            return await self._check_region(region, original_image, candidate_image)
        except Exception as e:
            console.print(f"    [yellow]⚠ Validation of region {region.id} failed: {e}[/]")
            return ValidationResult(
                region_id=region.id,
                status=RegionStatus.PASS,
                reason=f"validation error: {e}",
                confidence=VALIDATION_ERROR_CONFIDENCE,
            )

    async def _check_region(self, region: AtlasRegion, original_image, candidate_image) -> ValidationResult:
        original_crop = crop_decoded(original_image, region.bbox)
        candidate_crop = crop_decoded(candidate_image, region.bbox)
        similarity = compute_similarity(original_crop, candidate_crop)

        request = TransformRequest(
            text=REGION_PROMPT.format(semantic_type=region.semantic_type.value),
            images=[ImageInput(original_crop), ImageInput(candidate_crop)],
            schema=REGION_SCHEMA,
            quality_hints={"model": "logic", "temperature": 0.0},
            stage="judging",
        )
        response = await execute(
            lambda: self.transform.invoke(request),
            retries=self.retries,
            initial_delay=self.initial_delay,
            label=f"judging {region.id}",
            stage="judging",
        )
        verdict = extract_json(response.text)
        if not isinstance(verdict, dict):
            raise ValueError("Region verdict is not a JSON object")

        return self.classify(region, verdict, similarity)

    def classify(self, region: AtlasRegion, verdict: dict, similarity: float) -> ValidationResult:
        """Apply the FAIL rules to one region's verdict and similarity score."""
        candidate_text = str(verdict.get("candidateText") or "")
        original_legible = verdict_flag(verdict.get("originalLegible"), True)
        artifacts = verdict_flag(verdict.get("artifactsDetected"), False)
        try:
            confidence = max(0.0, min(1.0, float(verdict.get("confidence", 0.9))))
        except (TypeError, ValueError):
            confidence = 0.5

        reasons = []
        if not text_reproduced(region.expected_text, candidate_text):
            reasons.append(
                f'illegible text / OCR mismatch: expected "{normalize_text(region.expected_text)}", '
                f'read "{normalize_text(candidate_text)}"'
            )
        if similarity < self.similarity_threshold and original_legible:
            reasons.append(
                f"oversmoothing or structural drift: similarity {similarity:.2f} "
                f"below {self.similarity_threshold:.2f}"
            )
        if artifacts:
            critique = str(verdict.get("critique") or "").strip()
            reasons.append(f"synthetic artifact detected{': ' + critique if critique else ''}")

        if reasons:
            return ValidationResult(
                region_id=region.id,
                status=RegionStatus.FAIL,
                reason="; ".join(reasons),
                confidence=confidence,
                similarity=similarity,
            )
        return ValidationResult(
            region_id=region.id,
            status=RegionStatus.PASS,
            reason=str(verdict.get("critique") or "Content and structure preserved."),
            confidence=confidence,
            similarity=similarity,
        )
