"""
Physics Pre-processing
Optional geometric dewarping and lighting normalization before perception.

Each operation first asks the transform to compute the correction with code
execution, falls back to a neural rendering request, and finally returns the
input unchanged. Pre-processing never blocks the pipeline.
"""

from rich.console import Console

from config import PERCEPTION_MAX_DIMENSION, TRANSFORM_RETRIES, RETRY_INITIAL_DELAY
from .imaging import downscale, is_decodable
from .models import PhysicsConfig, StageOutcome, StageStatus
from .resilience import execute
from .transform import ContentTransform, ImageInput, TransformError, ErrorKind, TransformRequest


console = Console()


DEWARP_PROMPT = """You are a computer vision engineer.
Write and execute Python (OpenCV) code that performs a 4-point perspective transform on the provided image.

Restrictions:
- Do not use matplotlib. Do not produce plots or side-by-side comparisons.
- Only warp if the largest detected contour covers more than 40% of the image area.
  Otherwise save the input unchanged, so small elements such as stamps are never cropped.

Algorithm:
1. Grayscale -> GaussianBlur(5x5) -> Canny edges.
2. Find contours, sort by area (descending), take the largest.
3. If it approximates to 4 points, order them and warp perspective.
4. Save the result as 'result.png'.
"""

DEWARP_NEURAL_PROMPT = "Fix perspective. Flatten this document to a top-down view. Keep resolution high."

LIGHTING_PROMPT = """You are a physics engine.
Write and execute Python (OpenCV) code that removes shadows by intrinsic decomposition.

Restrictions:
- Do not use matplotlib. Only the final corrected image is output.

Algorithm:
1. Estimate illumination L with a morphological closing (about 50x50 kernel) followed by a median blur.
2. Recover reflectance R = I / L using float32 division.
3. Clip and normalize R to 0-255.
4. Save R as 'result.png'.
"""

LIGHTING_NEURAL_PROMPT = "Remove shadows. Output only the flat text and paper color (albedo). High fidelity."


class PhysicsProcessor:
    """Runs dewarping and lighting normalization through the transform."""

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

    async def _request_image(self, request: TransformRequest) -> bytes:
        response = await execute(
            lambda: self.transform.invoke(request),
            retries=self.retries,
            initial_delay=self.initial_delay,
            label=request.stage,
        )
        if not is_decodable(response.first_image):
            raise TransformError(ErrorKind.FATAL, "No decodable image returned")
        return response.first_image

    async def _calculated_then_neural(
        self,
        image: bytes,
        mime_type: str,
        calculated_prompt: str,
        neural_prompt: str,
        stage: str,
    ) -> StageOutcome:
        try:
            optimized = downscale(image, self.max_dimension)
            response = await execute(
                lambda: self.transform.invoke(TransformRequest(
                    text=calculated_prompt,
                    images=[ImageInput(optimized, "image/png" if optimized is not image else mime_type)],
                    tools=["code_execution"],
                    quality_hints={"model": "logic"},
                    stage=stage,
                )),
                retries=self.retries,
                initial_delay=self.initial_delay,
                label=stage,
            )
            if response.first_image is not None:
                if not is_decodable(response.first_image):
                    raise TransformError(ErrorKind.FATAL, "Code execution returned an undecodable image")
                return StageOutcome(StageStatus.SUCCESS, response.first_image, f"{stage}: calculated")
            return StageOutcome(StageStatus.NO_OP, image, f"{stage}: no changes needed")
        except Exception as e:
            console.print(f"    [yellow]⚠ {stage} code execution failed, trying neural fallback: {e}[/]")

        try:
            corrected = await self._request_image(TransformRequest(
                text=neural_prompt,
                images=[ImageInput(image, mime_type)],
                quality_hints={"model": "vision", "image_size": "2K"},
                stage=stage,
            ))
            return StageOutcome(StageStatus.SUCCESS, corrected, f"{stage}: neural fallback")
        except Exception as e:
            console.print(f"    [yellow]⚠ {stage} failed, keeping input image: {e}[/]")
            return StageOutcome(StageStatus.ERROR, image, f"{stage}: failed, input kept")

    async def dewarp(self, image: bytes, mime_type: str = "image/png") -> StageOutcome:
        """Perspective-correct a photographed page. `data` is always an image."""
        return await self._calculated_then_neural(image, mime_type, DEWARP_PROMPT, DEWARP_NEURAL_PROMPT, "dewarping")

    async def normalize_lighting(self, image: bytes, mime_type: str = "image/png") -> StageOutcome:
        """Remove shading via intrinsic decomposition. `data` is always an image."""
        return await self._calculated_then_neural(image, mime_type, LIGHTING_PROMPT, LIGHTING_NEURAL_PROMPT, "lighting")

    async def apply(self, image: bytes, mime_type: str, config: PhysicsConfig) -> tuple[bytes, str, list[str]]:
        """
        Apply the enabled corrections in order (dewarp, then lighting).

        Returns:
            (image, mime_type, messages) where mime_type is updated once a
            correction replaced the image
        """
        messages = []
        if config.enable_dewarping:
            outcome = await self.dewarp(image, mime_type)
            if outcome.data is not image:
                image, mime_type = outcome.data, "image/png"
            messages.append(outcome.message)
        if config.enable_intrinsic:
            outcome = await self.normalize_lighting(image, mime_type)
            if outcome.data is not image:
                image, mime_type = outcome.data, "image/png"
            messages.append(outcome.message)
        return image, mime_type, messages
