"""Argument parsing and settings resolution for the command line."""

import json

import pytest

pytest.importorskip("PySide6")

from lustre_shop.__main__ import build_parser
from lustre_shop.app import FitRequest, build_settings
from lustre_shop.core.pipeline import BASIS_PRESETS, DEFAULT_PRESET


class TestParser:

    def test_defaults(self, tmp_path):
        args = build_parser().parse_args([str(tmp_path)])
        assert args.capture_dir == tmp_path
        assert args.output is None
        assert args.settings is None
        assert args.preset is None
        assert not args.reconstruct_all

    def test_options(self, tmp_path):
        args = build_parser().parse_args([
            str(tmp_path), "-o", str(tmp_path / "out"), "--preset", "Preview (4 lobes)",
            "--reconstruct-all", "-v",
        ])
        assert args.output == tmp_path / "out"
        assert args.preset == "Preview (4 lobes)"
        assert args.reconstruct_all
        assert args.verbose

    def test_unknown_preset_rejected(self, tmp_path):
        with pytest.raises(SystemExit):
            build_parser().parse_args([str(tmp_path), "--preset", "Huge"])


class TestBuildSettings:

    def test_default_uses_default_preset(self, tmp_path):
        settings = build_settings(FitRequest(tmp_path))
        assert settings.basis == BASIS_PRESETS[DEFAULT_PRESET]
        assert not settings.reconstruction.reconstruct_all

    def test_preset_overrides_settings_file(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"texture_size": [64, 32], "basis": {"basis_count": 3}}),
                        encoding="utf-8")

        settings = build_settings(FitRequest(tmp_path, settings_path=path, preset="Preview (4 lobes)"))
        assert settings.texture_size == (64, 32)
        assert settings.basis == BASIS_PRESETS["Preview (4 lobes)"]

    def test_settings_file_without_preset(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"basis": {"basis_count": 3}}), encoding="utf-8")
        assert build_settings(FitRequest(tmp_path, settings_path=path)).basis.basis_count == 3

    def test_unknown_preset(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown preset"):
            build_settings(FitRequest(tmp_path, preset="Huge"))

    def test_reconstruct_all(self, tmp_path):
        settings = build_settings(FitRequest(tmp_path, reconstruct_all=True))
        assert settings.reconstruction.reconstruct_all
