"""
Tests for the Semantic Atlas and validation report types.
"""

import pytest

from pdsr.models import (
    AtlasRegion,
    GlobalPhysics,
    NoiseProfile,
    RegionId,
    RegionStatus,
    SemanticAtlas,
    SemanticType,
    ValidationReport,
    ValidationResult,
    normalize_bbox,
)


class TestNormalizeBbox:

    def test_clamps_into_range(self):
        assert normalize_bbox([-20, 10, 1200, 990]) == (0.0, 10.0, 1000.0, 990.0)

    @pytest.mark.parametrize("raw", [
        None,
        [1, 2, 3],
        [10, 10, 10, 20],        # zero height
        [50, 50, 40, 60],        # inverted
        [1200, 0, 1500, 100],    # collapses after clamping
        ["a", 0, 10, 10],
    ])
    def test_rejects_degenerate_boxes(self, raw):
        assert normalize_bbox(raw) is None


class TestAtlasRegion:

    def test_rejects_invalid_bbox(self):
        with pytest.raises(ValueError):
            AtlasRegion(id=RegionId("r1"), bbox=(10, 10, 5, 20), content="x", semantic_type=SemanticType.TEXT_INK)

    def test_bbox_stored_as_float_tuple(self):
        region = AtlasRegion(id=RegionId("r1"), bbox=[0, 0, 500, 500], content="x", semantic_type=SemanticType.TEXT_INK)
        assert region.bbox == (0.0, 0.0, 500.0, 500.0)
        assert region.area_ratio == pytest.approx(0.25)

    def test_expected_text_prefers_text_prior(self):
        region = AtlasRegion.from_dict({
            "id": "r1", "bbox": [0, 0, 10, 10], "content": "INV0ICE", "textPrior": "INVOICE",
        })
        assert region.expected_text == "INVOICE"

    def test_from_dict_without_id_is_dropped(self):
        assert AtlasRegion.from_dict({"bbox": [0, 0, 10, 10], "content": "x"}) is None


class TestSemanticAtlas:

    def test_parse(self, invoice_atlas_dict):
        atlas = SemanticAtlas.from_dict(invoice_atlas_dict)
        assert [r.id for r in atlas.regions] == ["r1", "r2", "r3"]
        assert atlas.global_physics.noise_profile == NoiseProfile.PAPER_GRAIN
        assert atlas.degradation_score == 42
        assert atlas.region(RegionId("r2")).content == "PAID"
        assert atlas.region(RegionId("missing")) is None

    def test_missing_global_physics_raises(self):
        with pytest.raises(ValueError):
            SemanticAtlas.from_dict({"regions": []})

    def test_duplicate_ids_keep_first(self, invoice_atlas_dict):
        duplicate = dict(invoice_atlas_dict["regions"][1], id="r1")
        invoice_atlas_dict["regions"].append(duplicate)
        atlas = SemanticAtlas.from_dict(invoice_atlas_dict)
        assert [r.id for r in atlas.regions] == ["r1", "r2", "r3"]
        assert atlas.region(RegionId("r1")).content == "INVOICE #42"

    def test_bad_regions_and_values_are_tolerated(self):
        atlas = SemanticAtlas.from_dict({
            "globalPhysics": {"noiseProfile": "COSMIC_RAYS"},
            "degradationScore": 250,
            "regions": [
                "not a region",
                {"id": "bad", "bbox": [5, 5, 5, 5]},
                {"id": "ok", "bbox": [0, 0, 100, 100], "semanticType": "stamp_pigment"},
            ],
        })
        assert atlas.global_physics == GlobalPhysics()
        assert atlas.degradation_score == 100.0
        assert [r.id for r in atlas.regions] == ["ok"]
        assert atlas.regions[0].semantic_type == SemanticType.STAMP_PIGMENT

    def test_empty_atlas(self):
        atlas = SemanticAtlas.empty()
        assert atlas.is_empty
        assert atlas.global_physics.paper_white_point == "#FFFFFF"
        assert atlas.degradation_score == 0.0

    def test_to_dict_parses_back(self, invoice_atlas):
        assert SemanticAtlas.from_dict(invoice_atlas.to_dict()) == invoice_atlas


class TestValidationReport:

    def _result(self, region_id, status, reason=""):
        return ValidationResult(region_id=RegionId(region_id), status=status, reason=reason, confidence=0.9)

    def test_consistency(self):
        assert ValidationReport().is_consistent
        report = ValidationReport(results=[
            self._result("r1", RegionStatus.PASS),
            self._result("r2", RegionStatus.FAIL, "illegible text"),
        ])
        assert not report.is_consistent
        assert [r.region_id for r in report.failed_results()] == ["r2"]

    def test_merge_replaces_rejudged_results_in_place(self):
        report = ValidationReport(results=[
            self._result("r1", RegionStatus.FAIL),
            self._result("r2", RegionStatus.PASS),
        ], global_critique="1/2 passed")
        newer = ValidationReport(results=[self._result("r1", RegionStatus.PASS)], global_critique="1/1 passed")

        merged = report.merged_with(newer)
        assert [r.region_id for r in merged.results] == ["r1", "r2"]
        assert merged.is_consistent
        assert merged.global_critique == "1/1 passed"
        assert not report.is_consistent
