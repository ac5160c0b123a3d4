"""
Data Model
Semantic Atlas, validation report and user configuration types.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import NewType, Optional

from .json_extract import extract_json


# Join key between Atlas regions, validation results and refinement requests
RegionId = NewType("RegionId", str)

BBox = tuple[float, float, float, float]  # (ymin, xmin, ymax, xmax) in 0-1000 space

BBOX_SCALE = 1000.0


class NoiseProfile(str, Enum):
    CLEAN = "CLEAN"
    GAUSSIAN = "GAUSSIAN"
    SALT_PEPPER = "SALT_PEPPER"
    PAPER_GRAIN = "PAPER_GRAIN"
    JPEG_ARTIFACTS = "JPEG_ARTIFACTS"


class BlurKernel(str, Enum):
    NONE = "NONE"
    MOTION = "MOTION"
    DEFOCUS = "DEFOCUS"
    LENS_SOFTNESS = "LENS_SOFTNESS"


class LightingCondition(str, Enum):
    FLAT = "FLAT"
    UNEVEN = "UNEVEN"
    GLARE = "GLARE"
    LOW_LIGHT = "LOW_LIGHT"


class SemanticType(str, Enum):
    TEXT_INK = "TEXT_INK"
    STAMP_PIGMENT = "STAMP_PIGMENT"
    SIGNATURE_INK = "SIGNATURE_INK"
    PHOTO_HALFTONE = "PHOTO_HALFTONE"
    BACKGROUND_STAIN = "BACKGROUND_STAIN"


class RestorationStrategy(str, Enum):
    SHARPEN_EDGES = "SHARPEN_EDGES"
    PRESERVE_COLOR = "PRESERVE_COLOR"
    DENOISE_ONLY = "DENOISE_ONLY"
    DESCREEN = "DESCREEN"


class RegionStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


def _enum_or_default(enum_cls, value, default):
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        return default


def _clamp(value, low: float, high: float) -> float:
    return max(low, min(high, float(value)))


def normalize_bbox(raw) -> Optional[BBox]:
    """
    Clamp a raw [ymin, xmin, ymax, xmax] into 0-1000 space.

    Returns None when the box is malformed or degenerate after clamping.
    """
    if not isinstance(raw, (list, tuple)) or len(raw) != 4:
        return None
    try:
        ymin, xmin, ymax, xmax = (_clamp(v, 0.0, BBOX_SCALE) for v in raw)
    except (TypeError, ValueError):
        return None
    if ymin >= ymax or xmin >= xmax:
        return None
    return (ymin, xmin, ymax, xmax)


@dataclass(frozen=True)
class GlobalPhysics:
    """Physical properties of the whole image."""
    paper_white_point: str = "#FFFFFF"
    noise_profile: NoiseProfile = NoiseProfile.CLEAN
    blur_kernel: BlurKernel = BlurKernel.NONE
    lighting_condition: LightingCondition = LightingCondition.FLAT

    @classmethod
    def from_dict(cls, data: dict) -> "GlobalPhysics":
        return cls(
            paper_white_point=str(data.get("paperWhitePoint") or "#FFFFFF"),
            noise_profile=_enum_or_default(NoiseProfile, data.get("noiseProfile"), NoiseProfile.CLEAN),
            blur_kernel=_enum_or_default(BlurKernel, data.get("blurKernel"), BlurKernel.NONE),
            lighting_condition=_enum_or_default(
                LightingCondition, data.get("lightingCondition"), LightingCondition.FLAT
            ),
        )

    def to_dict(self) -> dict:
        return {
            "paperWhitePoint": self.paper_white_point,
            "noiseProfile": self.noise_profile.value,
            "blurKernel": self.blur_kernel.value,
            "lightingCondition": self.lighting_condition.value,
        }


@dataclass(frozen=True)
class AtlasRegion:
    """One semantically meaningful sub-area of the image."""
    id: RegionId
    bbox: BBox
    content: str
    semantic_type: SemanticType
    restoration_strategy: RestorationStrategy = RestorationStrategy.SHARPEN_EDGES
    confidence: float = 1.0
    text_prior: Optional[str] = None

    def __post_init__(self):
        bbox = normalize_bbox(self.bbox)
        if bbox is None or bbox != tuple(float(v) for v in self.bbox):
            raise ValueError(f"Region {self.id}: invalid bbox {self.bbox}")
        object.__setattr__(self, "bbox", bbox)

    @property
    def expected_text(self) -> str:
        """Text the restored region must reproduce."""
        return self.text_prior or self.content

    @property
    def area_ratio(self) -> float:
        ymin, xmin, ymax, xmax = self.bbox
        return ((ymax - ymin) * (xmax - xmin)) / (BBOX_SCALE * BBOX_SCALE)

    @classmethod
    def from_dict(cls, data: dict) -> Optional["AtlasRegion"]:
        """Parse a region, returning None if it has no id or a degenerate bbox."""
        region_id = str(data.get("id") or "").strip()
        bbox = normalize_bbox(data.get("bbox"))
        if not region_id or bbox is None:
            return None
        try:
            confidence = _clamp(data.get("confidence", 1.0), 0.0, 1.0)
        except (TypeError, ValueError):
            confidence = 0.0
        return cls(
            id=RegionId(region_id),
            bbox=bbox,
            content=str(data.get("content") or ""),
            semantic_type=_enum_or_default(SemanticType, data.get("semanticType"), SemanticType.TEXT_INK),
            restoration_strategy=_enum_or_default(
                RestorationStrategy, data.get("restorationStrategy"), RestorationStrategy.SHARPEN_EDGES
            ),
            confidence=confidence,
            text_prior=data.get("textPrior") or None,
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "bbox": list(self.bbox),
            "content": self.content,
            "semanticType": self.semantic_type.value,
            "restorationStrategy": self.restoration_strategy.value,
            "confidence": self.confidence,
        }
        if self.text_prior:
            data["textPrior"] = self.text_prior
        return data


@dataclass(frozen=True)
class SemanticAtlas:
    """Region-indexed description of an image. Read-only once built."""
    global_physics: GlobalPhysics
    regions: tuple[AtlasRegion, ...] = ()
    degradation_score: float = 0.0

    @classmethod
    def empty(cls) -> "SemanticAtlas":
        """Neutral atlas used when perception is unavailable."""
        return cls(global_physics=GlobalPhysics(), regions=(), degradation_score=0.0)

    @property
    def is_empty(self) -> bool:
        return not self.regions

    def region(self, region_id: RegionId) -> Optional[AtlasRegion]:
        for region in self.regions:
            if region.id == region_id:
                return region
        return None

    def regions_of(self, *semantic_types: SemanticType) -> list[AtlasRegion]:
        return [r for r in self.regions if r.semantic_type in semantic_types]

    @classmethod
    def from_dict(cls, data: dict) -> "SemanticAtlas":
        """
        Build an atlas from the transform's JSON payload.

        Raises:
            ValueError: if `globalPhysics` is missing
        """
        if not isinstance(data, dict) or not isinstance(data.get("globalPhysics"), dict):
            raise ValueError("Invalid Atlas structure: missing globalPhysics")

        regions = []
        seen = set()
        for raw in data.get("regions") or []:
            if not isinstance(raw, dict):
                continue
            region = AtlasRegion.from_dict(raw)
            if region is None or region.id in seen:
                continue
            seen.add(region.id)
            regions.append(region)

        try:
            score = _clamp(data.get("degradationScore", 0), 0.0, 100.0)
        except (TypeError, ValueError):
            score = 0.0

        return cls(
            global_physics=GlobalPhysics.from_dict(data["globalPhysics"]),
            regions=tuple(regions),
            degradation_score=score,
        )

    def to_dict(self) -> dict:
        return {
            "globalPhysics": self.global_physics.to_dict(),
            "degradationScore": self.degradation_score,
            "regions": [r.to_dict() for r in self.regions],
        }


@dataclass
class ValidationResult:
    """Judging outcome for one region."""
    region_id: RegionId
    status: RegionStatus
    reason: str
    confidence: float
    similarity: Optional[float] = None

    @property
    def passed(self) -> bool:
        return self.status == RegionStatus.PASS

    def to_dict(self) -> dict:
        return {
            "regionId": self.region_id,
            "status": self.status.value,
            "reason": self.reason,
            "confidence": self.confidence,
            "similarity": self.similarity,
        }


@dataclass
class ValidationReport:
    """Aggregated judging pass over the critical regions."""
    results: list[ValidationResult] = field(default_factory=list)
    global_critique: str = ""

    @property
    def is_consistent(self) -> bool:
        return all(r.passed for r in self.results)

    def failed_results(self) -> list[ValidationResult]:
        return [r for r in self.results if not r.passed]

    def result_for(self, region_id: RegionId) -> Optional[ValidationResult]:
        for result in self.results:
            if result.region_id == region_id:
                return result
        return None

    def merged_with(self, newer: "ValidationReport") -> "ValidationReport":
        """Replace results for regions re-judged in `newer`, keeping the order of this report."""
        updated = {r.region_id: r for r in newer.results}
        results = [updated.pop(r.region_id, r) for r in self.results]
        results.extend(updated.values())
        return ValidationReport(results=results, global_critique=newer.global_critique or self.global_critique)

    def to_dict(self) -> dict:
        return {
            "isConsistent": self.is_consistent,
            "globalCritique": self.global_critique,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class LogicCorrection:
    """A printed value the audit found to be wrong, e.g. a mis-summed total."""
    original: str
    corrected: str
    note: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> Optional["LogicCorrection"]:
        original = str(data.get("original") or "").strip()
        corrected = str(data.get("corrected") or "").strip()
        if not original or not corrected or original == corrected:
            return None
        return cls(original=original, corrected=corrected, note=str(data.get("note") or "").strip())

    def to_dict(self) -> dict:
        return {"original": self.original, "corrected": self.corrected, "note": self.note}


@dataclass(frozen=True)
class DocumentAudit:
    """
    Forensic read of the document: extracted data, arithmetic corrections
    and background watermark words. Read-only once built.
    """
    verified_data: dict = field(default_factory=dict)
    verification_log: tuple[str, ...] = ()
    corrections: tuple[LogicCorrection, ...] = ()
    watermarks: tuple[str, ...] = ()

    @classmethod
    def empty(cls) -> "DocumentAudit":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not (self.verified_data or self.corrections or self.watermarks)

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentAudit":
        """
        Build an audit from the transform's JSON payload.

        `verifiedData` may arrive as a JSON string; strings that hold no JSON
        object are kept under "raw".

        Raises:
            ValueError: if `data` is not a JSON object
        """
        if not isinstance(data, dict):
            raise ValueError("Invalid audit structure: expected an object")

        verified = data.get("verifiedData") or {}
        if isinstance(verified, str):
            try:
                parsed = extract_json(verified)
            except ValueError:
                parsed = None
            verified = parsed if isinstance(parsed, dict) else {"raw": verified}
        elif not isinstance(verified, dict):
            verified = {"raw": verified}

        corrections = []
        for raw in data.get("mathCorrections") or []:
            if isinstance(raw, dict) and (correction := LogicCorrection.from_dict(raw)):
                corrections.append(correction)

        watermarks = []
        for word in data.get("watermarks") or []:
            word = str(word).strip()
            if word and word not in watermarks:
                watermarks.append(word)

        return cls(
            verified_data=verified,
            verification_log=tuple(str(line) for line in data.get("verificationLog") or []),
            corrections=tuple(corrections),
            watermarks=tuple(watermarks),
        )

    def to_dict(self) -> dict:
        return {
            "verifiedData": self.verified_data,
            "verificationLog": list(self.verification_log),
            "mathCorrections": [c.to_dict() for c in self.corrections],
            "watermarks": list(self.watermarks),
        }

    def corrected_text(self, text: str) -> str:
        for correction in self.corrections:
            text = text.replace(correction.original, correction.corrected)
        return text

    def apply_to(self, atlas: SemanticAtlas) -> tuple[SemanticAtlas, list[RegionId]]:
        """
        Carry the corrections into the atlas as text priors, so restoration,
        judging and refinement all expect the corrected text.

        Returns:
            (atlas, ids of the regions whose expected text changed)
        """
        if not self.corrections:
            return atlas, []
        regions, changed = [], []
        for region in atlas.regions:
            corrected = self.corrected_text(region.expected_text)
            if corrected != region.expected_text:
                region = replace(region, text_prior=corrected)
                changed.append(region.id)
            regions.append(region)
        if not changed:
            return atlas, []
        return replace(atlas, regions=tuple(regions)), changed


class StageStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    NO_OP = "NO_OP"


@dataclass
class StageOutcome:
    """Result envelope for stages that degrade instead of raising."""
    status: StageStatus
    data: object
    message: str

    @property
    def degraded(self) -> bool:
        return "fallback" in self.message.lower()


# =============================================================================
# User configuration
# =============================================================================

class Resolution(str, Enum):
    HD_1K = "1K"
    QHD_2K = "2K"
    UHD_4K = "4K"


class AspectRatio(str, Enum):
    ORIGINAL = "ORIGINAL"
    SQUARE = "1:1"
    PORTRAIT_3_4 = "3:4"
    LANDSCAPE_4_3 = "4:3"
    PORTRAIT_9_16 = "9:16"
    LANDSCAPE_16_9 = "16:9"
    WIDE_21_9 = "21:9"


class ColorStyle(str, Enum):
    TRUE_TONE = "TRUE_TONE"
    HIGH_CONTRAST = "HIGH_CONTRAST"
    VIBRANT_HDR = "VIBRANT_HDR"
    BLACK_WHITE = "BLACK_WHITE"
    VINTAGE_WARM = "VINTAGE_WARM"
    COOL_TONE = "COOL_TONE"


@dataclass
class PDSRConfig:
    """Atlas-guided feature toggles for the restoration pass."""
    enable_text_priors: bool = True
    enable_texture_transfer: bool = True
    enable_semantic_repair: bool = True
    enable_audit: bool = False


@dataclass
class PhysicsConfig:
    """Physics pre-processing toggles applied before perception."""
    enable_dewarping: bool = False
    enable_intrinsic: bool = False


@dataclass
class RestorationConfig:
    """User configuration for a restoration run."""
    resolution: Resolution = Resolution.UHD_4K
    aspect_ratio: AspectRatio = AspectRatio.ORIGINAL
    color_style: ColorStyle = ColorStyle.TRUE_TONE
    custom_prompt: str = ""
    pdsr: PDSRConfig = field(default_factory=PDSRConfig)
    physics: PhysicsConfig = field(default_factory=PhysicsConfig)
