"""Shared test fixtures."""

import io
import json

import pytest
from PIL import Image, ImageDraw

from pdsr.atlas import AtlasBuilder
from pdsr.auditor import DocumentAuditor
from pdsr.judge import ConsistencyJudge
from pdsr.models import SemanticAtlas
from pdsr.orchestrator import PipelineOrchestrator
from pdsr.physics import PhysicsProcessor
from pdsr.refiner import SurgicalRefiner
from pdsr.renderer import RestorationRenderer
from pdsr.transform import ContentTransform, ErrorKind, TransformError, TransformResponse


class FakeTransform(ContentTransform):
    """
    Scripted ContentTransform.

    `script` maps a request stage to a response, an exception, a callable
    taking the request, or a list of those consumed in order (the last
    entry repeats). Unscripted stages raise UNAVAILABLE.
    """

    def __init__(self, script=None):
        self.script = dict(script or {})
        self.requests = []

    async def invoke(self, request):
        self.requests.append(request)
        entry = self.script.get(request.stage)
        if entry is None:
            raise TransformError(ErrorKind.UNAVAILABLE, f"no script for {request.stage}")

        if isinstance(entry, list):
            entry = entry.pop(0) if len(entry) > 1 else entry[0]
        if callable(entry):
            entry = entry(request)
        if isinstance(entry, Exception):
            raise entry
        return entry

    def calls(self, stage):
        return [r for r in self.requests if r.stage == stage]


def make_png(width=400, height=300, bars=True, color="white") -> bytes:
    """Page-like test image: white paper with dark text bars."""
    image = Image.new("RGB", (width, height), color)
    if bars:
        draw = ImageDraw.Draw(image)
        for index, y in enumerate(range(height // 10, height - height // 10, max(height // 8, 4))):
            draw.rectangle(
                [width // 10, y, width - width // (4 + index % 3), y + max(height // 30, 1)],
                fill="black",
            )
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def text_response(payload) -> TransformResponse:
    return TransformResponse(text=payload if isinstance(payload, str) else json.dumps(payload))


def image_response(data: bytes) -> TransformResponse:
    return TransformResponse(images=[data])


def verdict(candidate_text, legible=True, artifacts=False, confidence=0.9, critique="Looks faithful.") -> TransformResponse:
    return text_response({
        "candidateText": candidate_text,
        "originalLegible": legible,
        "artifactsDetected": artifacts,
        "confidence": confidence,
        "critique": critique,
    })


INVOICE_ATLAS = {
    "globalPhysics": {
        "paperWhitePoint": "#F4EFE1",
        "noiseProfile": "PAPER_GRAIN",
        "blurKernel": "DEFOCUS",
        "lightingCondition": "UNEVEN",
    },
    "degradationScore": 42,
    "regions": [
        {
            "id": "r1",
            "bbox": [40, 60, 160, 940],
            "content": "INVOICE #42",
            "semanticType": "TEXT_INK",
            "restorationStrategy": "SHARPEN_EDGES",
            "confidence": 0.9,
        },
        {
            "id": "r2",
            "bbox": [700, 600, 900, 900],
            "content": "PAID",
            "semanticType": "STAMP_PIGMENT",
            "restorationStrategy": "PRESERVE_COLOR",
            "confidence": 0.8,
        },
        {
            "id": "r3",
            "bbox": [300, 100, 600, 500],
            "content": "coffee stain",
            "semanticType": "BACKGROUND_STAIN",
            "restorationStrategy": "DENOISE_ONLY",
            "confidence": 0.7,
        },
    ],
}


INVOICE_AUDIT = {
    "verifiedData": "{\"invoiceNumber\": \"42\", \"total\": \"1,250.00\"}",
    "verificationLog": ["Line items sum to 1,250.00"],
    "mathCorrections": [
        {"original": "TOTAL 1,205.00", "corrected": "TOTAL 1,250.00", "note": "line items sum to 1,250.00"},
    ],
    "watermarks": ["COPY"],
}


def build_orchestrator(transform, max_refinement_passes=2, **kwargs) -> PipelineOrchestrator:
    """Orchestrator whose components never sleep between retries."""
    return PipelineOrchestrator(
        atlas_builder=AtlasBuilder(transform, initial_delay=0),
        renderer=RestorationRenderer(transform, initial_delay=0),
        judge=ConsistencyJudge(transform, initial_delay=0),
        refiner=SurgicalRefiner(transform, initial_delay=0),
        physics=PhysicsProcessor(transform, initial_delay=0),
        auditor=DocumentAuditor(transform, initial_delay=0),
        max_refinement_passes=max_refinement_passes,
        verbose=False,
        **kwargs,
    )


@pytest.fixture
def page_png() -> bytes:
    return make_png()


@pytest.fixture
def invoice_atlas_dict() -> dict:
    return json.loads(json.dumps(INVOICE_ATLAS))


@pytest.fixture
def invoice_atlas() -> SemanticAtlas:
    return SemanticAtlas.from_dict(INVOICE_ATLAS)
