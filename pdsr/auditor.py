"""
Document Auditor
Forensic read of the document before restoration: extracts the data it
carries, re-checks its arithmetic with code execution and lists watermark
words, so the renderer can fix wrong figures and fade background text.
"""

from rich.console import Console

from config import PERCEPTION_MAX_DIMENSION, TRANSFORM_RETRIES, RETRY_INITIAL_DELAY
from .imaging import downscale
from .json_extract import extract_json
from .models import DocumentAudit, SemanticAtlas, SemanticType, StageOutcome, StageStatus
from .resilience import execute
from .transform import ContentTransform, ImageInput, TransformRequest


console = Console()

# Region types that carry readable content worth auditing
AUDITABLE_TYPES = (SemanticType.TEXT_INK, SemanticType.SIGNATURE_INK, SemanticType.STAMP_PIGMENT)

MAX_CONTEXT_LINES = 40


AUDIT_PROMPT = """ROLE: Forensic document auditor.

{context}

## Task
1. **Data Extraction**: Extract the document's data (parties, dates, line items, totals) as a JSON object.
2. **Mathematical Verification**: Use code execution to re-add line items and re-check totals, taxes and dates.
   Only report a correction when the computation proves the printed value wrong.
3. **Watermark Detection**: List distinct words that are background watermarks rather than content
   (for example "COPY", "DRAFT", "CONFIDENTIAL").

## Output Format
Return ONLY a JSON object:

{{
  "verifiedData": {{"invoiceNumber": "42", "total": "1,250.00"}},
  "verificationLog": ["Line items sum to 1,250.00"],
  "mathCorrections": [{{"original": "TOTAL 1,205.00", "corrected": "TOTAL 1,250.00", "note": "line items sum to 1,250.00"}}],
  "watermarks": ["COPY"]
}}
"""


def audit_context(atlas: SemanticAtlas) -> str:
    """Text already read by perception, given to the auditor as a starting point."""
    lines = [
        f'- {region.id} ({region.semantic_type.value}): "{region.expected_text}"'
        for region in atlas.regions_of(*AUDITABLE_TYPES)
        if region.expected_text
    ]
    if not lines:
        return "CONTEXT: No text was pre-read; read the document yourself."
    return "CONTEXT: Perception already read these regions:\n" + "\n".join(lines[:MAX_CONTEXT_LINES])


class DocumentAuditor:
    """
    Audits a document's content before restoration.

    Advisory like perception: any failure yields the empty audit, and images
    the atlas shows to hold no readable content are skipped.
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

    async def audit(self, image: bytes, mime_type: str, atlas: SemanticAtlas) -> StageOutcome:
        """
        Audit the document.

        Returns:
            StageOutcome whose `data` is always a DocumentAudit: NO_OP when
            the atlas holds only non-text regions, ERROR (message says
            "fallback") when the transform failed
        """
        if not atlas.is_empty and not atlas.regions_of(*AUDITABLE_TYPES):
            return StageOutcome(StageStatus.NO_OP, DocumentAudit.empty(), "Audit skipped (no readable content).")

        try:
            optimized = downscale(image, self.max_dimension)
            if optimized is not image:
                mime_type = "image/png"

            request = TransformRequest(
                text=AUDIT_PROMPT.format(context=audit_context(atlas)),
                images=[ImageInput(optimized, mime_type)],
                tools=["code_execution"],
                quality_hints={"model": "logic", "temperature": 0.0},
                stage="audit",
            )
            response = await execute(
                lambda: self.transform.invoke(request),
                retries=self.retries,
                initial_delay=self.initial_delay,
                label="audit",
            )
            audit = DocumentAudit.from_dict(extract_json(response.text))

        except Exception as e:
            console.print(f"    [yellow]⚠ Audit failed, restoring without it: {e}[/]")
            return StageOutcome(StageStatus.ERROR, DocumentAudit.empty(), "Document audit unavailable (fallback).")

        return StageOutcome(
            status=StageStatus.SUCCESS,
            data=audit,
            message=(
                f"Document audited: {len(audit.corrections)} correction(s), "
                f"{len(audit.watermarks)} watermark word(s)."
            ),
        )
