"""
PDSR: Perception-Driven Semantic Restoration

A perceive-then-restore pipeline for degraded document images:
- Perception: Semantic Atlas of image physics and regions
- Audit (optional): verified figures and watermark words
- Restoration: atlas-guided rendering of one candidate
- Judging: per-region consistency check against the Atlas
- Refinement: surgical re-synthesis of failing regions only
"""

from .transform import (
    ContentTransform,
    GeminiTransform,
    TransformRequest,
    TransformResponse,
    TransformError,
    ErrorKind,
)
from .models import (
    SemanticAtlas,
    AtlasRegion,
    GlobalPhysics,
    ValidationReport,
    ValidationResult,
    RestorationConfig,
    DocumentAudit,
)
from .atlas import AtlasBuilder
from .auditor import DocumentAuditor
from .renderer import RestorationRenderer
from .judge import ConsistencyJudge
from .refiner import SurgicalRefiner, Diagnosis
from .physics import PhysicsProcessor
from .orchestrator import PipelineOrchestrator, PipelineResult, PipelineState

__all__ = [
    "ContentTransform",
    "GeminiTransform",
    "TransformRequest",
    "TransformResponse",
    "TransformError",
    "ErrorKind",
    "SemanticAtlas",
    "AtlasRegion",
    "GlobalPhysics",
    "ValidationReport",
    "ValidationResult",
    "RestorationConfig",
    "DocumentAudit",
    "AtlasBuilder",
    "DocumentAuditor",
    "RestorationRenderer",
    "ConsistencyJudge",
    "SurgicalRefiner",
    "Diagnosis",
    "PhysicsProcessor",
    "PipelineOrchestrator",
    "PipelineResult",
    "PipelineState",
]
