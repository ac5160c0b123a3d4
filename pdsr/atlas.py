"""
Atlas Builder
Perception stage: reads the image physics and content before any pixel is touched.
"""

from rich.console import Console

from config import PERCEPTION_MAX_DIMENSION, TRANSFORM_RETRIES, RETRY_INITIAL_DELAY
from .imaging import downscale
from .json_extract import extract_json
from .models import SemanticAtlas, StageOutcome, StageStatus
from .resilience import execute
from .transform import ContentTransform, ImageInput, TransformRequest


console = Console()


ATLAS_PROMPT = """You are a degradation assessment network for document restoration.

## Task
Construct a Semantic Atlas of this image. Read the physics and the content
before any restoration happens.

### 1. Physics Analysis (the substrate)
- Sample the paper margins and report the substrate white point as a hex color.
- Classify the noise: CLEAN, GAUSSIAN, SALT_PEPPER, PAPER_GRAIN or JPEG_ARTIFACTS.
- Estimate the blur kernel: NONE, MOTION, DEFOCUS or LENS_SOFTNESS.
- Classify the lighting: FLAT, UNEVEN, GLARE or LOW_LIGHT.

### 2. Semantic Segmentation
- Text regions: READ the text. The exact string goes in "content" (TEXT_INK).
- Stamps: STAMP_PIGMENT. Handwritten signatures: SIGNATURE_INK.
- Printed photos with visible dot screens: PHOTO_HALFTONE.
- Stains, folds, tears: BACKGROUND_STAIN.

For every region give:
- "id": a short unique identifier ("r1", "r2", ...)
- "bbox": [ymin, xmin, ymax, xmax] normalized to 0-1000
- "restorationStrategy": SHARPEN_EDGES, PRESERVE_COLOR, DENOISE_ONLY or DESCREEN
- "confidence": 0.0-1.0

"degradationScore" is the overall severity from 0 (pristine) to 100 (ruined).

## Output Format
Return ONLY a JSON object:

{
  "globalPhysics": {"paperWhitePoint": "#F4EFE1", "noiseProfile": "PAPER_GRAIN", "blurKernel": "DEFOCUS", "lightingCondition": "UNEVEN"},
  "degradationScore": 42,
  "regions": [
    {"id": "r1", "bbox": [40, 60, 110, 940], "content": "INVOICE #42", "semanticType": "TEXT_INK", "restorationStrategy": "SHARPEN_EDGES", "confidence": 0.9}
  ]
}
"""


ATLAS_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "globalPhysics": {
            "type": "OBJECT",
            "properties": {
                "paperWhitePoint": {"type": "STRING"},
                "noiseProfile": {"type": "STRING", "enum": ["CLEAN", "GAUSSIAN", "SALT_PEPPER", "PAPER_GRAIN", "JPEG_ARTIFACTS"]},
                "blurKernel": {"type": "STRING", "enum": ["NONE", "MOTION", "DEFOCUS", "LENS_SOFTNESS"]},
                "lightingCondition": {"type": "STRING", "enum": ["FLAT", "UNEVEN", "GLARE", "LOW_LIGHT"]},
            },
        },
        "degradationScore": {"type": "NUMBER"},
        "regions": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "id": {"type": "STRING"},
                    "bbox": {"type": "ARRAY", "items": {"type": "NUMBER"}},
                    "content": {"type": "STRING"},
                    "semanticType": {"type": "STRING", "enum": ["TEXT_INK", "STAMP_PIGMENT", "SIGNATURE_INK", "PHOTO_HALFTONE", "BACKGROUND_STAIN"]},
                    "textPrior": {"type": "STRING"},
                    "restorationStrategy": {"type": "STRING", "enum": ["SHARPEN_EDGES", "PRESERVE_COLOR", "DENOISE_ONLY", "DESCREEN"]},
                    "confidence": {"type": "NUMBER"},
                },
            },
        },
    },
}


class AtlasBuilder:
    """
    Builds the SemanticAtlas for an image.

    Perception is advisory: on any failure the builder returns the neutral
    empty atlas so the pipeline can still restore without semantic guidance.
    """

    def __init__(
        self,
        transform: ContentTransform,
        max_dimension: int = PERCEPTION_MAX_DIMENSION,
        retries: int = TRANSFORM_RETRIES,
        initial_delay: float = RETRY_INITIAL_DELAY,
    ):
        self.transform = transform
        self.max_dimension = max_dimension
        self.retries = retries
        self.initial_delay = initial_delay

    async def build_atlas(self, image: bytes, mime_type: str = "image/png") -> StageOutcome:
        """
        Run perception on an image.

        Args:
            image: Raw image bytes
            mime_type: MIME type of `image`

        Returns:
            StageOutcome with status SUCCESS and a SemanticAtlas in `data`,
            always; the message says "(fallback)" when the atlas is the
            empty default.
        """
        try:
            optimized = downscale(image, self.max_dimension)
            if optimized is not image:
                mime_type = "image/png"

            request = TransformRequest(
                text=ATLAS_PROMPT,
                images=[ImageInput(optimized, mime_type)],
                schema=ATLAS_SCHEMA,
                quality_hints={"model": "logic", "temperature": 0.0},
                stage="perception",
            )
            response = await execute(
                lambda: self.transform.invoke(request),
                retries=self.retries,
                initial_delay=self.initial_delay,
                label="perception",
            )
            atlas = SemanticAtlas.from_dict(extract_json(response.text))

        except Exception as e:
            console.print(f"    [yellow]⚠ Perception failed, using empty atlas: {e}[/]")
            return StageOutcome(
                status=StageStatus.SUCCESS,
                data=SemanticAtlas.empty(),
                message="Semantic Atlas built (fallback).",
            )

        return StageOutcome(
            status=StageStatus.SUCCESS,
            data=atlas,
            message=f"Semantic Atlas built: {len(atlas.regions)} regions, degradation {atlas.degradation_score:.0f}/100.",
        )
