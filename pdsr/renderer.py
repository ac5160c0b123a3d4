"""
Restoration Renderer
Atlas-guided restoration: turns the Semantic Atlas into restoration
directives and asks the transform for one candidate image.
"""

import json
from typing import Optional

from config import TRANSFORM_RETRIES, RETRY_INITIAL_DELAY
from .imaging import closest_aspect_ratio
from .models import (
    AspectRatio,
    ColorStyle,
    DocumentAudit,
    RestorationConfig,
    RestorationStrategy,
    SemanticAtlas,
    SemanticType,
)
from .resilience import execute
from .transform import ContentTransform, ErrorKind, ImageInput, TransformError, TransformRequest


MAX_TEXT_PRIORS = 15

COLOR_INSTRUCTIONS = {
    ColorStyle.TRUE_TONE: "STRICT FIDELITY: Maintain exact source hues, no color shifting.",
    ColorStyle.HIGH_CONTRAST: "DOCUMENT MODE: Pure white background, pure black text. High contrast.",
    ColorStyle.VIBRANT_HDR: "VIBRANT ART: Enhanced saturation, deep blacks, bright highlights.",
    ColorStyle.BLACK_WHITE: "MONOCHROME: Grayscale only. No color noise.",
    ColorStyle.VINTAGE_WARM: "VINTAGE: Warm sepia tones, cream paper texture.",
    ColorStyle.COOL_TONE: "MODERN: Cool white balance, sterile and clean look.",
}


def text_prior_directive(atlas: SemanticAtlas, config: RestorationConfig) -> Optional[str]:
    text_regions = atlas.regions_of(SemanticType.TEXT_INK)
    if not config.pdsr.enable_text_priors or not text_regions:
        return None
    lines = "\n".join(
        f'- "{r.expected_text}" (Strategy: {r.restoration_strategy.value})'
        for r in text_regions[:MAX_TEXT_PRIORS]
    )
    more = "\n... and all other detected text." if len(text_regions) > MAX_TEXT_PRIORS else ""
    return (
        "*** TEXT-PRIOR GUIDANCE ***\n"
        "Render these strings exactly, with vector-sharp edges:\n"
        f"{lines}{more}"
    )


def color_anchor_directive(atlas: SemanticAtlas) -> Optional[str]:
    pigment_regions = atlas.regions_of(SemanticType.STAMP_PIGMENT, SemanticType.SIGNATURE_INK)
    if not pigment_regions:
        return None
    return (
        "*** ADAPTIVE COLOR ANCHORING ***\n"
        f"{len(pigment_regions)} stamp/signature region(s) detected. PRESERVE their intrinsic pigment.\n"
        "Do not binarize or grayscale these areas. Keep the authentic ink flow."
    )


def semantic_repair_directive(atlas: SemanticAtlas, config: RestorationConfig) -> Optional[str]:
    stain_regions = atlas.regions_of(SemanticType.BACKGROUND_STAIN)
    if not config.pdsr.enable_semantic_repair or not stain_regions:
        return None
    return (
        "*** SEMANTIC REPAIR ***\n"
        f"Detected {len(stain_regions)} region(s) of damage or stains.\n"
        "Inpaint these regions using the surrounding paper texture."
    )


def texture_transfer_directive(atlas: SemanticAtlas, config: RestorationConfig) -> Optional[str]:
    if not config.pdsr.enable_texture_transfer or not atlas.regions_of(SemanticType.BACKGROUND_STAIN):
        return None
    physics = atlas.global_physics
    return (
        "*** TEXTURE TRANSFER ***\n"
        f"- Substrate Color: {physics.paper_white_point}\n"
        f"- Noise Profile: {physics.noise_profile.value}\n"
        "Synthesize high-frequency detail that matches this paper grain. "
        "Reject synthetic plastic smoothing."
    )


def descreen_directive(atlas: SemanticAtlas) -> Optional[str]:
    needs_descreen = atlas.regions_of(SemanticType.PHOTO_HALFTONE) or any(
        r.restoration_strategy == RestorationStrategy.DESCREEN for r in atlas.regions
    )
    if not needs_descreen:
        return None
    return (
        "*** DESCREENING ***\n"
        "Blend periodic halftone dots into smooth color fields and eliminate moire "
        "BEFORE any edge sharpening."
    )


MAX_VERIFIED_DATA_CHARS = 4000


def verified_data_directive(audit: Optional[DocumentAudit]) -> Optional[str]:
    if audit is None or not audit.verified_data:
        return None
    summary = json.dumps(audit.verified_data, ensure_ascii=False)[:MAX_VERIFIED_DATA_CHARS]
    return (
        "*** VERIFIED DATA ***\n"
        "The document's content, as audited. Every figure you render must agree with it:\n"
        f"{summary}"
    )


def logic_correction_directive(audit: Optional[DocumentAudit]) -> Optional[str]:
    if audit is None or not audit.corrections:
        return None
    lines = "\n".join(
        f'- CHANGE VISUAL TEXT "{c.original}" TO "{c.corrected}"' + (f" (Reason: {c.note})" if c.note else "")
        for c in audit.corrections
    )
    return f"*** LOGIC CORRECTIONS ***\n{lines}"


def watermark_directive(audit: Optional[DocumentAudit]) -> Optional[str]:
    if audit is None or not audit.watermarks:
        return None
    return (
        "*** WATERMARK SUPPRESSION ***\n"
        f"Detected background text: [{', '.join(audit.watermarks)}]\n"
        "Fade these words into the paper texture. Do not sharpen or re-render them."
    )


def build_directives(
    atlas: SemanticAtlas,
    config: RestorationConfig,
    audit: Optional[DocumentAudit] = None,
) -> list[str]:
    """Directive blocks whose Atlas (or audit) prerequisites are present, in a fixed order."""
    candidates = [
        text_prior_directive(atlas, config),
        color_anchor_directive(atlas),
        semantic_repair_directive(atlas, config),
        texture_transfer_directive(atlas, config),
        descreen_directive(atlas),
        verified_data_directive(audit),
        logic_correction_directive(audit),
        watermark_directive(audit),
    ]
    return [block for block in candidates if block]


def build_prompt(atlas: SemanticAtlas, config: RestorationConfig, audit: Optional[DocumentAudit] = None) -> str:
    physics = atlas.global_physics
    directives = build_directives(atlas, config, audit)
    protocols = "\n\n".join(directives) if directives else "Standard restoration; no region-specific guidance."

    blur_line = (
        f"1. **Deep Clarity**: Remove the detected {physics.blur_kernel.value} blur."
        if physics.blur_kernel.value != "NONE"
        else "1. **Deep Clarity**: Keep edges crisp; do not invent blur corrections."
    )

    return f"""ROLE: Perception-driven restoration engine.
TASK: Restore this image to high fidelity ({config.resolution.value}) using the provided Semantic Atlas.

INPUT CONTEXT:
- Degradation Score: {atlas.degradation_score:.0f}/100
- Blur Kernel: {physics.blur_kernel.value}
- Lighting: {physics.lighting_condition.value}

RESTORATION PROTOCOLS:
{protocols}

VISUAL OUTPUT STANDARDS:
{blur_line}
2. **Material Truth**: The output must look like the original physical document, not a digital recreation.
3. **Color Style**: {COLOR_INSTRUCTIONS[config.color_style]}

USER INSTRUCTION: {config.custom_prompt or 'Restore clarity and original detail.'}
"""


def resolve_aspect_ratio(config: RestorationConfig, width: int, height: int) -> str:
    if config.aspect_ratio == AspectRatio.ORIGINAL:
        return closest_aspect_ratio(width, height)
    return config.aspect_ratio.value


class RestorationRenderer:
    """
    Produces one restored candidate for an image.

    The candidate is load-bearing for the pipeline, so failures propagate
    as TransformError instead of falling back.
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

    async def render(
        self,
        image: bytes,
        atlas: SemanticAtlas,
        config: RestorationConfig,
        width: int,
        height: int,
        mime_type: str = "image/png",
        audit: Optional[DocumentAudit] = None,
    ) -> bytes:
        """
        Render the restored candidate, guided by the atlas and, when one was
        run, the document audit.

        Raises:
            TransformError: on any unrecoverable transform failure, or FATAL
                when the transform answered without an image
        """
        request = TransformRequest(
            text=build_prompt(atlas, config, audit),
            images=[ImageInput(image, mime_type)],
            quality_hints={
                "model": "vision",
                "image_size": config.resolution.value,
                "aspect_ratio": resolve_aspect_ratio(config, width, height),
            },
            stage="restoration",
        )
        response = await execute(
            lambda: self.transform.invoke(request),
            retries=self.retries,
            initial_delay=self.initial_delay,
            label="restoration",
        )
        if response.first_image is None:
            raise TransformError(ErrorKind.FATAL, "No image data received from restoration transform")
        return response.first_image
