"""
Pipeline Orchestrator
Coordinates perception, restoration, judging and surgical refinement.

State machine:
    INIT -> PERCEIVING -> RESTORING -> JUDGING -> (REFINING -> JUDGING)* -> COMPLETE
FAILED is reachable from RESTORING only. CANCELLED is reachable at any
stage boundary.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from rich.console import Console

from config import MAX_REFINEMENT_PASSES
from .atlas import AtlasBuilder
from .auditor import DocumentAuditor
from .imaging import composite_patch, crop_image, image_size
from .judge import ConsistencyJudge
from .models import (
    AtlasRegion,
    DocumentAudit,
    RegionId,
    RestorationConfig,
    SemanticAtlas,
    ValidationReport,
    ValidationResult,
)
from .physics import PhysicsProcessor
from .refiner import SurgicalRefiner
from .renderer import RestorationRenderer
from .transform import ContentTransform


console = Console()


class PipelineState(str, Enum):
    INIT = "INIT"
    PERCEIVING = "PERCEIVING"
    RESTORING = "RESTORING"
    JUDGING = "JUDGING"
    REFINING = "REFINING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class PipelineRun:
    """Mutable state of one run. Owned by the orchestrator only."""
    image: bytes
    mime_type: str
    config: RestorationConfig
    width: int
    height: int
    atlas: Optional[SemanticAtlas] = None
    candidate: Optional[bytes] = None
    audit: Optional[DocumentAudit] = None
    report: Optional[ValidationReport] = None
    refinement_attempts: dict[RegionId, int] = field(default_factory=dict)
    state: PipelineState = PipelineState.INIT
    log: list[str] = field(default_factory=list)
    caveats: list[str] = field(default_factory=list)


@dataclass
class PipelineResult:
    """Final artifact of a run."""
    status: PipelineState
    result: Optional[bytes]
    log: list[str]
    report: Optional[ValidationReport] = None
    atlas: Optional[SemanticAtlas] = None
    caveats: list[str] = field(default_factory=list)
    error: Optional[Exception] = None
    refinement_attempts: dict[RegionId, int] = field(default_factory=dict)
    audit: Optional[DocumentAudit] = None

    @property
    def succeeded(self) -> bool:
        return self.status == PipelineState.COMPLETE

    @property
    def cancelled(self) -> bool:
        return self.status == PipelineState.CANCELLED


class PipelineOrchestrator:
    """
    Runs the restoration pipeline for one image at a time.

    Components are injected so any ContentTransform backend (or test fake)
    can drive them; missing components are built on `transform`.
    """

    def __init__(
        self,
        transform: Optional[ContentTransform] = None,
        atlas_builder: Optional[AtlasBuilder] = None,
        renderer: Optional[RestorationRenderer] = None,
        judge: Optional[ConsistencyJudge] = None,
        refiner: Optional[SurgicalRefiner] = None,
        physics: Optional[PhysicsProcessor] = None,
        auditor: Optional[DocumentAuditor] = None,
        max_refinement_passes: int = MAX_REFINEMENT_PASSES,
        on_log: Optional[Callable[[str], None]] = None,
        verbose: bool = True,
    ):
        components = (atlas_builder, renderer, judge, refiner, physics, auditor)
        if transform is None and any(c is None for c in components):
            from .transform import GeminiTransform
            transform = GeminiTransform()

        self.atlas_builder = atlas_builder or AtlasBuilder(transform)
        self.renderer = renderer or RestorationRenderer(transform)
        self.judge = judge or ConsistencyJudge(transform)
        self.refiner = refiner or SurgicalRefiner(transform)
        self.physics = physics or PhysicsProcessor(transform)
        self.auditor = auditor or DocumentAuditor(transform)
        self.max_refinement_passes = max_refinement_passes
        self.on_log = on_log
        self.verbose = verbose
        self._cancel_requested = False

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self):
        """Request cancellation; takes effect at the next stage boundary."""
        self._cancel_requested = True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _log(self, run: PipelineRun, message: str, style: str = "dim"):
        run.log.append(message)
        if self.verbose:
            console.print(f"  [{style}]{message}[/]")
        if self.on_log is not None:
            self.on_log(message)

    def _enter(self, run: PipelineRun, state: PipelineState, message: str):
        run.state = state
        self._log(run, f"[{state.value}] {message}", "cyan")

    def _finish(self, run: PipelineRun, state: PipelineState, error: Optional[Exception] = None) -> PipelineResult:
        run.state = state
        if state == PipelineState.COMPLETE:
            self._log(run, f"[{state.value}] Restoration delivered.", "bold green")
        elif state == PipelineState.CANCELLED:
            self._log(run, f"[{state.value}] Run cancelled.", "yellow")
        else:
            self._log(run, f"[{state.value}] {error}", "bold red")

        return PipelineResult(
            status=state,
            result=run.candidate if state == PipelineState.COMPLETE else None,
            log=list(run.log),
            report=run.report,
            atlas=run.atlas,
            caveats=list(run.caveats),
            error=error,
            refinement_attempts=dict(run.refinement_attempts),
            audit=run.audit,
        )

    def _check_cancelled(self, run: PipelineRun) -> Optional[PipelineResult]:
        if self._cancel_requested:
            return self._finish(run, PipelineState.CANCELLED)
        return None

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        image: bytes,
        config: Optional[RestorationConfig] = None,
        mime_type: str = "image/png",
        atlas: Optional[SemanticAtlas] = None,
    ) -> PipelineResult:
        """
        Restore an image.

        Args:
            image: Raw input image bytes
            config: Restoration configuration (defaults apply when None)
            mime_type: MIME type of `image`
            atlas: Previously built atlas for this image, reused instead of
                running perception again

        Returns:
            PipelineResult whose status is COMPLETE, FAILED or CANCELLED

        Raises:
            PIL.UnidentifiedImageError: if `image` is not a decodable image
        """
        self._cancel_requested = False
        width, height = image_size(image)
        run = PipelineRun(
            image=image,
            mime_type=mime_type,
            config=config or RestorationConfig(),
            width=width,
            height=height,
        )
        self._log(run, f"[{PipelineState.INIT.value}] Input {width}x{height}px ({mime_type}).")

        if cancelled := self._check_cancelled(run):
            return cancelled
        await self._perceive(run, atlas)

        if cancelled := self._check_cancelled(run):
            return cancelled
        self._enter(run, PipelineState.RESTORING, "Rendering atlas-guided restoration...")
        try:
            run.candidate = await self.renderer.render(
                run.image, run.atlas, run.config, run.width, run.height, run.mime_type, audit=run.audit
            )
        except Exception as e:
            return self._finish(run, PipelineState.FAILED, error=e)
        self._log(run, "Restoration candidate received.")

        if cancelled := self._check_cancelled(run):
            return cancelled
        self._enter(run, PipelineState.JUDGING, "Validating critical regions...")
        report = await self._judge(run)
        if report is None:
            return self._finish(run, PipelineState.COMPLETE)
        run.report = report

        while True:
            if run.report.is_consistent:
                break

            refinable, exhausted = self._split_by_budget(run.report.failed_results(), run)
            if not refinable:
                self._accept_with_caveats(run, exhausted)
                break

            if cancelled := self._check_cancelled(run):
                return cancelled
            await self._refine(run, refinable)

            if cancelled := self._check_cancelled(run):
                return cancelled
            refined_ids = [r.region_id for r in refinable]
            self._enter(run, PipelineState.JUDGING, f"Re-validating {len(refined_ids)} refined region(s)...")
            report = await self._judge(run, refined_ids)
            if report is None:
                self._accept_with_caveats(run, run.report.failed_results())
                break
            run.report = run.report.merged_with(report)

        return self._finish(run, PipelineState.COMPLETE)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _perceive(self, run: PipelineRun, cached_atlas: Optional[SemanticAtlas]):
        self._enter(run, PipelineState.PERCEIVING, "Building Semantic Atlas...")

        physics_config = run.config.physics
        if physics_config.enable_dewarping or physics_config.enable_intrinsic:
            run.image, run.mime_type, messages = await self.physics.apply(run.image, run.mime_type, physics_config)
            for message in messages:
                self._log(run, message)
            run.width, run.height = image_size(run.image)

        if cached_atlas is not None:
            run.atlas = cached_atlas
            self._log(run, f"Reusing cached Semantic Atlas ({len(cached_atlas.regions)} regions).")
        else:
            outcome = await self.atlas_builder.build_atlas(run.image, run.mime_type)
            run.atlas = outcome.data
            self._log(run, outcome.message, "yellow" if outcome.degraded else "dim")

        if run.config.pdsr.enable_audit:
            await self._audit(run)

    async def _audit(self, run: PipelineRun):
        outcome = await self.auditor.audit(run.image, run.mime_type, run.atlas)
        run.audit = outcome.data
        self._log(run, outcome.message, "yellow" if outcome.degraded else "dim")

        run.atlas, corrected = run.audit.apply_to(run.atlas)
        if corrected:
            self._log(run, f"Audit corrections carried into region(s) {', '.join(corrected)}.")

    async def _judge(
        self,
        run: PipelineRun,
        region_ids: Optional[list[RegionId]] = None,
    ) -> Optional[ValidationReport]:
        """Judge the current candidate; returns None when judging itself failed."""
        try:
            report = await self.judge.judge(run.image, run.candidate, run.atlas, region_ids)
        except Exception as e:
            caveat = f"Consistency judging unavailable ({e}); candidate accepted provisionally."
            run.caveats.append(caveat)
            self._log(run, caveat, "yellow")
            if run.report is None:
                run.report = ValidationReport(results=[], global_critique="QA service unavailable")
            return None

        self._log(run, report.global_critique)
        return report

    def _split_by_budget(
        self,
        failed: list[ValidationResult],
        run: PipelineRun,
    ) -> tuple[list[ValidationResult], list[ValidationResult]]:
        refinable, exhausted = [], []
        for result in failed:
            if run.refinement_attempts.get(result.region_id, 0) < self.max_refinement_passes:
                refinable.append(result)
            else:
                exhausted.append(result)
        return refinable, exhausted

    def _accept_with_caveats(self, run: PipelineRun, exhausted: list[ValidationResult]):
        for result in exhausted:
            caveat = (
                f"Region {result.region_id} still failing after "
                f"{run.refinement_attempts.get(result.region_id, 0)} refinement pass(es): {result.reason}"
            )
            run.caveats.append(caveat)
            self._log(run, caveat, "yellow")

    async def _refine(self, run: PipelineRun, failing: list[ValidationResult]):
        pass_number = max(run.refinement_attempts.get(r.region_id, 0) for r in failing) + 1
        self._enter(
            run,
            PipelineState.REFINING,
            f"Refinement pass {pass_number}/{self.max_refinement_passes}: {len(failing)} region(s)...",
        )

        regions = [run.atlas.region(r.region_id) for r in failing]
        for result in failing:
            run.refinement_attempts[result.region_id] = run.refinement_attempts.get(result.region_id, 0) + 1

        candidate = run.candidate
        patches = await asyncio.gather(*(
            self._refine_region(candidate, region, result.reason)
            for region, result in zip(regions, failing)
        ))

        # Composite after the join, in atlas order
        order = {region.id: index for index, region in enumerate(run.atlas.regions)}
        for region, (original_patch, patch) in sorted(zip(regions, patches), key=lambda item: order[item[0].id]):
            if patch is original_patch:
                self._log(run, f"Region {region.id}: refinement kept original patch.", "yellow")
                continue
            run.candidate = composite_patch(run.candidate, patch, region.bbox)
            self._log(run, f"Region {region.id}: corrected patch composited.")

    async def _refine_region(self, candidate: bytes, region: AtlasRegion, reason: str) -> tuple[bytes, bytes]:
        patch = crop_image(candidate, region.bbox)
        refined = await self.refiner.refine(patch, reason, region.expected_text, region.semantic_type)
        return patch, refined
