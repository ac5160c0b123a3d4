"""
End-to-end tests of the pipeline state machine with a scripted transform.
"""

import asyncio

import pytest

from pdsr.imaging import encode_png, load_image
from pdsr.models import PDSRConfig, PhysicsConfig, RegionId, RestorationConfig, SemanticAtlas
from pdsr.orchestrator import PipelineState
from pdsr.transform import ErrorKind, TransformError

from conftest import (
    INVOICE_ATLAS,
    INVOICE_AUDIT,
    FakeTransform,
    build_orchestrator,
    image_response,
    make_png,
    text_response,
    verdict,
)


def faithful_reader(request):
    if "STAMP_PIGMENT" in request.text:
        return verdict("PAID")
    return verdict("INVOICE #42")


def garbled_text_reader(request):
    """Stamps read fine, the invoice title never does."""
    if "STAMP_PIGMENT" in request.text:
        return verdict("PAID")
    return verdict("INV0lCE #4?")


def echo_patch(request):
    """Refinement that returns a re-encoded copy of the patch it was given."""
    return image_response(encode_png(load_image(request.images[0].data)))


def states_in(log):
    return [line.split("]")[0].lstrip("[") for line in log if line.startswith("[")]


def run(orchestrator, image, **kwargs):
    return asyncio.run(orchestrator.run(image, RestorationConfig(), **kwargs))


class TestHappyPath:

    def test_consistent_candidate_completes_without_refinement(self, page_png):
        transform = FakeTransform({
            "perception": text_response(INVOICE_ATLAS),
            "restoration": image_response(page_png),
            "judging": faithful_reader,
        })
        logged = []
        orchestrator = build_orchestrator(transform, on_log=logged.append)

        result = run(orchestrator, page_png)

        assert result.status == PipelineState.COMPLETE
        assert result.succeeded
        assert result.result == page_png
        assert result.report.is_consistent
        assert result.caveats == []
        assert result.refinement_attempts == {}
        assert transform.calls("refinement") == []
        assert states_in(result.log) == ["INIT", "PERCEIVING", "RESTORING", "JUDGING", "COMPLETE"]
        assert logged == result.log

    def test_cached_atlas_skips_perception(self, page_png, invoice_atlas):
        transform = FakeTransform({
            "restoration": image_response(page_png),
            "judging": faithful_reader,
        })
        result = run(build_orchestrator(transform), page_png, atlas=invoice_atlas)

        assert result.succeeded
        assert result.atlas is invoice_atlas
        assert transform.calls("perception") == []


class TestFailOpenAndFatal:

    def test_perception_unavailable_still_restores(self, page_png):
        transform = FakeTransform({
            "perception": TransformError(ErrorKind.UNAVAILABLE, "503 overloaded"),
            "restoration": image_response(page_png),
        })
        result = run(build_orchestrator(transform), page_png)

        assert result.status == PipelineState.COMPLETE
        assert result.atlas == SemanticAtlas.empty()
        assert "RESTORING" in states_in(result.log)
        assert any("(fallback)" in line for line in result.log)
        assert len(transform.calls("restoration")) == 1
        assert transform.calls("judging") == []

    def test_restoration_failure_carries_original_error(self, page_png):
        error = TransformError(ErrorKind.INVALID_AUTH, "API key not valid")
        transform = FakeTransform({
            "perception": text_response(INVOICE_ATLAS),
            "restoration": error,
        })
        result = run(build_orchestrator(transform), page_png)

        assert result.status == PipelineState.FAILED
        assert result.error is error
        assert result.error.kind == ErrorKind.INVALID_AUTH
        assert result.result is None
        assert transform.calls("judging") == []
        assert states_in(result.log)[-1] == "FAILED"

    def test_judging_outage_accepts_candidate_provisionally(self, page_png):
        transform = FakeTransform({
            "perception": text_response(INVOICE_ATLAS),
            "restoration": image_response(b"not decodable"),
        })
        result = run(build_orchestrator(transform), page_png)

        assert result.status == PipelineState.COMPLETE
        assert result.result == b"not decodable"
        assert any("provisionally" in caveat for caveat in result.caveats)


class TestCancellation:

    def test_cancel_during_restoration_stops_before_judging(self, page_png):
        orchestrator = None

        def restore_then_cancel(request):
            orchestrator.cancel()
            return image_response(page_png)

        transform = FakeTransform({
            "perception": text_response(INVOICE_ATLAS),
            "restoration": restore_then_cancel,
            "judging": faithful_reader,
        })
        orchestrator = build_orchestrator(transform)

        result = run(orchestrator, page_png)

        assert result.status == PipelineState.CANCELLED
        assert result.cancelled
        assert result.result is None
        assert transform.calls("judging") == []
        assert states_in(result.log)[-1] == "CANCELLED"

    def test_cancel_flag_resets_for_next_run(self, page_png):
        transform = FakeTransform({
            "restoration": image_response(page_png),
        })
        orchestrator = build_orchestrator(transform)
        orchestrator.cancel()

        result = run(orchestrator, page_png, atlas=SemanticAtlas.empty())
        assert result.status == PipelineState.COMPLETE


class TestRefinementLoop:

    def test_invoice_title_refinement_failure_completes_with_caveat(self, page_png):
        transform = FakeTransform({
            "perception": text_response(INVOICE_ATLAS),
            "restoration": image_response(page_png),
            "judging": garbled_text_reader,
            "refinement": TransformError(ErrorKind.FATAL, "refusal"),
        })
        result = run(build_orchestrator(transform, max_refinement_passes=2), page_png)

        assert result.status == PipelineState.COMPLETE
        assert result.result == page_png
        assert result.refinement_attempts == {RegionId("r1"): 2}
        assert len(transform.calls("refinement")) == 2
        assert "force-typography" in transform.calls("refinement")[0].text
        assert len(result.caveats) == 1
        assert "r1" in result.caveats[0]
        assert not result.report.result_for(RegionId("r1")).passed
        assert result.report.result_for(RegionId("r2")).passed

    def test_only_refined_regions_are_rejudged(self, page_png):
        transform = FakeTransform({
            "perception": text_response(INVOICE_ATLAS),
            "restoration": image_response(page_png),
            "judging": garbled_text_reader,
            "refinement": TransformError(ErrorKind.FATAL, "refusal"),
        })
        run(build_orchestrator(transform, max_refinement_passes=2), page_png)

        judged = transform.calls("judging")
        # Two regions initially, then r1 alone after each of the two passes
        assert len(judged) == 4
        assert all("TEXT_INK" in request.text for request in judged[2:])

    @pytest.mark.parametrize("max_passes", [0, 1, 3])
    def test_counters_never_exceed_max(self, page_png, max_passes):
        transform = FakeTransform({
            "perception": text_response(INVOICE_ATLAS),
            "restoration": image_response(page_png),
            "judging": verdict("unreadable"),
            "refinement": echo_patch,
        })
        result = run(build_orchestrator(transform, max_refinement_passes=max_passes), page_png)

        assert result.status == PipelineState.COMPLETE
        assert all(count <= max_passes for count in result.refinement_attempts.values())
        assert len(transform.calls("refinement")) == 2 * max_passes
        assert len(result.caveats) == 2

    def test_successful_refinement_is_composited_and_rejudged(self, page_png):
        text_calls = []

        def improves_after_refinement(request):
            if "STAMP_PIGMENT" in request.text:
                return verdict("PAID")
            text_calls.append(request)
            return verdict("INVOICE #42" if len(text_calls) > 1 else "lNV0ICE")

        transform = FakeTransform({
            "perception": text_response(INVOICE_ATLAS),
            "restoration": image_response(page_png),
            "judging": improves_after_refinement,
            "refinement": echo_patch,
        })
        result = run(build_orchestrator(transform), page_png)

        assert result.status == PipelineState.COMPLETE
        assert result.caveats == []
        assert result.report.is_consistent
        assert result.refinement_attempts == {RegionId("r1"): 1}
        assert load_image(result.result).tobytes() == load_image(page_png).tobytes()
        assert any("r1: corrected patch composited" in line for line in result.log)
        assert states_in(result.log) == [
            "INIT", "PERCEIVING", "RESTORING", "JUDGING", "REFINING", "JUDGING", "COMPLETE",
        ]

    def test_undecodable_refined_patch_keeps_original(self, page_png):
        transform = FakeTransform({
            "perception": text_response(INVOICE_ATLAS),
            "restoration": image_response(page_png),
            "judging": garbled_text_reader,
            "refinement": image_response(b"\x89PNG truncated"),
        })
        result = run(build_orchestrator(transform, max_refinement_passes=1), page_png)

        assert result.status == PipelineState.COMPLETE
        assert result.result == page_png
        assert result.refinement_attempts == {RegionId("r1"): 1}
        assert any("r1: refinement kept original patch" in line for line in result.log)
        assert len(result.caveats) == 1

    def test_rejudge_outage_records_caveats_for_failing_regions(self, page_png):
        transform = FakeTransform({
            "perception": text_response(INVOICE_ATLAS),
            "restoration": image_response(page_png),
            "judging": garbled_text_reader,
            "refinement": echo_patch,
        })
        orchestrator = build_orchestrator(transform)
        judge_calls = []
        real_judge = orchestrator.judge.judge

        async def judge_once(*args):
            judge_calls.append(args)
            if len(judge_calls) > 1:
                raise RuntimeError("judge offline")
            return await real_judge(*args)

        orchestrator.judge.judge = judge_once
        result = run(orchestrator, page_png)

        assert result.status == PipelineState.COMPLETE
        assert len(result.caveats) == 2
        assert "provisionally" in result.caveats[0]
        assert result.caveats[1].startswith("Region r1 still failing after 1 refinement pass(es)")


class TestPhysics:

    def test_dewarped_image_becomes_the_original(self, page_png):
        flattened = make_png(400, 300, bars=False)
        transform = FakeTransform({
            "dewarping": image_response(flattened),
            "restoration": image_response(flattened),
        })
        config = RestorationConfig(physics=PhysicsConfig(enable_dewarping=True))

        result = asyncio.run(build_orchestrator(transform).run(page_png, config, atlas=SemanticAtlas.empty()))

        assert result.succeeded
        assert transform.calls("restoration")[0].images[0].data == flattened
        assert transform.calls("dewarping")[0].tools == ["code_execution"]
        assert any("dewarping: calculated" in line for line in result.log)

    def test_undecodable_dewarp_keeps_input(self, page_png):
        transform = FakeTransform({
            "dewarping": image_response(b"garbage"),
            "restoration": image_response(page_png),
        })
        config = RestorationConfig(physics=PhysicsConfig(enable_dewarping=True))

        result = asyncio.run(build_orchestrator(transform).run(page_png, config, atlas=SemanticAtlas.empty()))

        assert result.succeeded
        assert transform.calls("restoration")[0].images[0].data == page_png
        assert len(transform.calls("dewarping")) == 2
        assert any("dewarping: failed, input kept" in line for line in result.log)


class TestAudit:

    TOTALS_ATLAS = {
        "globalPhysics": {},
        "regions": [
            {"id": "total", "bbox": [800, 500, 860, 950], "content": "TOTAL 1,205.00", "semanticType": "TEXT_INK"},
        ],
    }

    def test_corrected_total_is_rendered_and_judged(self, page_png):
        transform = FakeTransform({
            "perception": text_response(self.TOTALS_ATLAS),
            "audit": text_response(INVOICE_AUDIT),
            "restoration": image_response(page_png),
            "judging": verdict("TOTAL 1,250.00"),
        })
        config = RestorationConfig(pdsr=PDSRConfig(enable_audit=True))

        result = asyncio.run(build_orchestrator(transform).run(page_png, config))

        assert result.succeeded
        assert result.caveats == []
        assert result.audit.watermarks == ("COPY",)
        assert result.atlas.region(RegionId("total")).expected_text == "TOTAL 1,250.00"
        restoration_prompt = transform.calls("restoration")[0].text
        assert "LOGIC CORRECTIONS" in restoration_prompt
        assert "WATERMARK SUPPRESSION" in restoration_prompt
        assert any("carried into region(s) total" in line for line in result.log)
        assert states_in(result.log) == ["INIT", "PERCEIVING", "RESTORING", "JUDGING", "COMPLETE"]

    def test_audit_outage_still_restores(self, page_png):
        transform = FakeTransform({
            "audit": TransformError(ErrorKind.UNAVAILABLE, "503"),
            "restoration": image_response(page_png),
        })
        config = RestorationConfig(pdsr=PDSRConfig(enable_audit=True))

        result = asyncio.run(build_orchestrator(transform).run(page_png, config, atlas=SemanticAtlas.empty()))

        assert result.succeeded
        assert result.audit.is_empty
        assert "VERIFIED DATA" not in transform.calls("restoration")[0].text

    def test_audit_disabled_by_default(self, page_png):
        transform = FakeTransform({"restoration": image_response(page_png)})
        result = run(build_orchestrator(transform), page_png, atlas=SemanticAtlas.empty())

        assert result.succeeded
        assert result.audit is None
        assert transform.calls("audit") == []
