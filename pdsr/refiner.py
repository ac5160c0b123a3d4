"""
Surgical Refiner
Re-synthesizes a single failing region patch with a diagnosis-specific strategy.
"""

import re
from enum import Enum

from rich.console import Console

from config import TRANSFORM_RETRIES, RETRY_INITIAL_DELAY
from .imaging import closest_aspect_ratio, image_size, is_decodable
from .models import SemanticType
from .resilience import execute
from .transform import ContentTransform, ImageInput, TransformRequest


console = Console()


class Diagnosis(str, Enum):
    FORCE_TYPOGRAPHY = "force-typography"
    GRAIN_INJECTION = "grain-injection"
    ARTIFACT_REMOVAL = "artifact-removal"
    GENERAL_ENHANCEMENT = "general-enhancement"


# Checked in order; the first category with a matching keyword wins.
# Keywords are regex fragments anchored at a word start.
DIAGNOSIS_KEYWORDS = [
    (Diagnosis.FORCE_TYPOGRAPHY, ("illegible", "ocr", "mismatch", "misspell", r"text\b")),
    (Diagnosis.GRAIN_INJECTION, ("oversmooth", "plastic", "smooth", "grain", "texture")),
    (Diagnosis.ARTIFACT_REMOVAL, ("hallucinat", "artifact", "checkerboard", "bleed")),
]


def diagnose(reason: str) -> Diagnosis:
    """Classify a judge's failure reason by keyword."""
    lowered = (reason or "").lower()
    for diagnosis, keywords in DIAGNOSIS_KEYWORDS:
        if any(re.search(rf"\b{keyword}", lowered) for keyword in keywords):
            return diagnosis
    return Diagnosis.GENERAL_ENHANCEMENT


def correction_directive(diagnosis: Diagnosis, content: str, semantic_type: SemanticType) -> str:
    if diagnosis == Diagnosis.FORCE_TYPOGRAPHY:
        return (
            f'Re-render the text so it reads EXACTLY "{content}". '
            "Use crisp, well-formed glyphs in the same typeface, weight and ink color as the surrounding document."
        )
    if diagnosis == Diagnosis.GRAIN_INJECTION:
        return (
            "The patch looks oversmoothed. Re-introduce natural paper grain and ink texture "
            "matching the surrounding material. Keep the content unchanged."
        )
    if diagnosis == Diagnosis.ARTIFACT_REMOVAL:
        return (
            "Remove synthetic artifacts (checkerboard patterns, color bleeding, invented strokes). "
            f'Nothing may be added that is not in the source. Ground truth: "{content}".'
        )
    return (
        f"Improve clarity and fidelity of this {semantic_type.value.lower().replace('_', ' ')} patch "
        f'without changing its content ("{content}").'
    )


REFINE_PROMPT = """ROLE: Surgical image correction agent.
TASK: Fix a specific failure in this image patch.

CONTEXT:
This is a crop from a larger document. Region type: {semantic_type}.
Semantic content: "{content}"

FAILURE DIAGNOSIS:
"{reason}"

CORRECTION ({diagnosis}):
{directive}

CONSTRAINTS:
- Preserve the patch's aspect ratio exactly; it is composited back into the page.
- Do not change lighting or color at the borders; edges must blend seamlessly.

OUTPUT: The corrected image patch.
"""


class SurgicalRefiner:
    """
    Re-synthesizes one region patch.

    Never blocks the pipeline: on any failure the original patch is returned.
    """

    def __init__(
        self,
        transform: ContentTransform,
        retries: int = TRANSFORM_RETRIES,
        initial_delay: float = RETRY_INITIAL_DELAY,
    ):
        self.transform = transform
        self.retries = retries
        self.initial_delay = initial_delay

    def build_prompt(self, reason: str, content: str, semantic_type: SemanticType) -> tuple[Diagnosis, str]:
        diagnosis = diagnose(reason)
        prompt = REFINE_PROMPT.format(
            semantic_type=semantic_type.value,
            content=content,
            reason=reason,
            diagnosis=diagnosis.value,
            directive=correction_directive(diagnosis, content, semantic_type),
        )
        return diagnosis, prompt

    async def refine(
        self,
        patch: bytes,
        reason: str,
        content: str,
        semantic_type: SemanticType,
    ) -> bytes:
        """
        Correct a failing patch.

        Args:
            patch: PNG crop of the candidate region
            reason: Judge's failure reason
            content: Ground-truth content of the region
            semantic_type: Region type

        Returns:
            The corrected patch, or `patch` unchanged on failure
        """
        diagnosis, prompt = self.build_prompt(reason, content, semantic_type)
        try:
            width, height = image_size(patch)
            request = TransformRequest(
                text=prompt,
                images=[ImageInput(patch)],
                quality_hints={
                    "model": "vision",
                    "image_size": "1K",
                    "aspect_ratio": closest_aspect_ratio(width, height),
                },
                stage="refinement",
            )
            response = await execute(
                lambda: self.transform.invoke(request),
                retries=self.retries,
                initial_delay=self.initial_delay,
                label="refinement",
            )
        except Exception as e:
            console.print(f"    [yellow]⚠ Refinement ({diagnosis.value}) failed, keeping patch: {e}[/]")
            return patch

        if response.first_image is None:
            console.print(f"    [yellow]⚠ Refinement ({diagnosis.value}) returned no image, keeping patch[/]")
            return patch
        if not is_decodable(response.first_image):
            console.print(f"    [yellow]⚠ Refinement ({diagnosis.value}) returned an undecodable image, keeping patch[/]")
            return patch
        return response.first_image
