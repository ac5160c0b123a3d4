"""
Tests for the command-line entry points that run without the transform.
"""

import json

import pytest
import typer
from typer.testing import CliRunner

import main

from conftest import INVOICE_ATLAS, make_png


runner = CliRunner()


@pytest.fixture
def valid_config(monkeypatch):
    monkeypatch.setattr(main, "validate_config", lambda: {"valid": True, "issues": [], "config": {}})


class TestCachedAtlas:

    def test_saved_atlas_is_loaded(self, tmp_path):
        path = tmp_path / "atlas.json"
        path.write_text(json.dumps(INVOICE_ATLAS), encoding="utf-8")

        atlas = main._load_cached_atlas(path)
        assert [r.id for r in atlas.regions] == ["r1", "r2", "r3"]

    @pytest.mark.parametrize("content", ["{not json", '{"regions": []}', "[]"])
    def test_malformed_atlas_exits_cleanly(self, tmp_path, content):
        path = tmp_path / "atlas.json"
        path.write_text(content, encoding="utf-8")

        with pytest.raises(typer.Exit) as exc_info:
            main._load_cached_atlas(path)
        assert exc_info.value.exit_code == 1

    def test_restore_rejects_malformed_atlas_before_any_call(self, tmp_path, valid_config):
        image = tmp_path / "page.png"
        image.write_bytes(make_png())
        atlas = tmp_path / "atlas.json"
        atlas.write_text("{not json", encoding="utf-8")

        result = runner.invoke(main.app, ["restore", str(image), "--atlas", str(atlas)])

        assert result.exit_code == 1
        assert "Cannot use cached atlas" in result.output
        assert "Traceback" not in result.output


def test_version():
    result = runner.invoke(main.app, ["version"])
    assert result.exit_code == 0
    assert "PDSR" in result.output
