"""
Tests for the perception stage.
"""

import asyncio

from pdsr.atlas import AtlasBuilder
from pdsr.imaging import image_size
from pdsr.models import SemanticAtlas, StageStatus
from pdsr.transform import ErrorKind, TransformError

from conftest import FakeTransform, INVOICE_ATLAS, make_png, text_response


def build(transform, image, **kwargs):
    builder = AtlasBuilder(transform, initial_delay=0, **kwargs)
    return asyncio.run(builder.build_atlas(image))


class TestBuildAtlas:

    def test_parses_atlas(self, page_png):
        transform = FakeTransform({"perception": text_response(INVOICE_ATLAS)})
        outcome = build(transform, page_png)

        assert outcome.status == StageStatus.SUCCESS
        assert not outcome.degraded
        assert [r.id for r in outcome.data.regions] == ["r1", "r2", "r3"]
        assert "3 regions" in outcome.message

    def test_fenced_reply_with_prose(self, page_png):
        reply = "Sure! Here is the atlas:\n```json\n" + text_response(INVOICE_ATLAS).text + "\n```"
        transform = FakeTransform({"perception": text_response(reply)})
        assert len(build(transform, page_png).data.regions) == 3

    def test_permanently_unavailable_gives_empty_atlas(self, page_png):
        transform = FakeTransform({"perception": TransformError(ErrorKind.UNAVAILABLE, "503")})
        outcome = build(transform, page_png, retries=2)

        assert outcome.status == StageStatus.SUCCESS
        assert outcome.degraded
        assert outcome.data == SemanticAtlas.empty()
        assert len(transform.calls("perception")) == 3

    def test_fatal_error_is_not_retried(self, page_png):
        transform = FakeTransform({"perception": TransformError(ErrorKind.INVALID_AUTH)})
        outcome = build(transform, page_png)
        assert outcome.data.is_empty
        assert len(transform.calls("perception")) == 1

    def test_malformed_reply_gives_empty_atlas(self, page_png):
        transform = FakeTransform({"perception": text_response("I could not analyze this image.")})
        assert build(transform, page_png).data.is_empty

    def test_missing_global_physics_gives_empty_atlas(self, page_png):
        transform = FakeTransform({"perception": text_response({"regions": INVOICE_ATLAS["regions"]})})
        assert build(transform, page_png).data.is_empty

    def test_recovers_after_transient_failure(self, page_png):
        transform = FakeTransform({"perception": [
            TransformError(ErrorKind.RATE_LIMITED),
            text_response(INVOICE_ATLAS),
        ]})
        outcome = build(transform, page_png)
        assert len(outcome.data.regions) == 3
        assert len(transform.calls("perception")) == 2

    def test_large_images_are_downscaled(self):
        transform = FakeTransform({"perception": text_response(INVOICE_ATLAS)})
        build(transform, make_png(3000, 1500), max_dimension=512)

        sent = transform.calls("perception")[0].images[0]
        assert sent.mime_type == "image/png"
        assert max(image_size(sent.data)) == 512

    def test_undecodable_image_gives_empty_atlas(self):
        transform = FakeTransform({"perception": text_response(INVOICE_ATLAS)})
        assert build(transform, b"not an image").data.is_empty
