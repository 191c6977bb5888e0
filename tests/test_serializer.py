"""Fit artifacts on disk."""

import math

import numpy as np
import pytest

from lustre_shop.core.errors import TextureIOError
from lustre_shop.core.model import BasisSet, FitContext, ShadingModel
from lustre_shop.core.residual import ErrorReport
from lustre_shop.core.serializer import (
    SpecularFitSerializer,
    format_basis_functions,
    load_fit,
    load_report,
    map_scale,
    parse_basis_functions,
    parse_map_scales,
    save_fit,
    weight_filenames,
)
from lustre_shop.core.settings import ExportSettings

from synthetic import plane_geometry, random_fit, render_observations, small_settings


class TestWeightFilenames:

    def test_combined(self):
        assert weight_filenames(5, True) == ["weights0003.png", "weights0407.png"]
        assert weight_filenames(4, True) == ["weights0003.png"]

    def test_single(self):
        assert weight_filenames(3, False) == ["weights00.png", "weights01.png", "weights02.png"]


class TestBasisFunctionsCsv:

    def test_round_trip_is_exact(self, rng):
        basis = BasisSet(rng.random((3, 3)), rng.random((3, 11, 3)))
        parsed = parse_basis_functions(format_basis_functions(basis))
        np.testing.assert_array_equal(parsed.specular, basis.specular)
        np.testing.assert_array_equal(parsed.diffuse_albedo, basis.diffuse_albedo)

    def test_layout(self):
        basis = BasisSet(np.array([[0.1, 0.2, 0.3]]), np.zeros((1, 3, 3)))
        lines = format_basis_functions(basis).splitlines()
        assert [line.split(",")[0] for line in lines] == ["Red#0", "Green#0", "Blue#0", "Diffuse#0"]
        assert lines[0] == "Red#0, 0.0, 0.0, 0.0"

    def test_any_order(self):
        text = "Diffuse#0, 1.0, 2.0, 3.0\nBlue#0, 3.0\nRed#0, 1.0\nGreen#0, 2.0\n"
        basis = parse_basis_functions(text)
        np.testing.assert_array_equal(basis.specular[0, 0], [1.0, 2.0, 3.0])

    def test_unknown_tag(self):
        with pytest.raises(ValueError):
            parse_basis_functions("Alpha#0, 1.0\n")

    def test_gap_in_indices(self):
        with pytest.raises(ValueError):
            parse_basis_functions("Red#0, 1\nGreen#0, 1\nBlue#0, 1\nRed#2, 1\nGreen#2, 1\nBlue#2, 1\n")

    def test_scale_lines(self):
        basis = BasisSet(np.array([[0.1, 0.2, 0.3]]), np.zeros((1, 3, 3)))
        text = format_basis_functions(basis, {"weights": 1.0, "diffuse": 2.5})
        assert text.splitlines()[-1] == "Scale#diffuse, 2.5"
        assert "Scale#weights" not in text
        assert parse_map_scales(text) == {"diffuse": 2.5}
        assert parse_basis_functions(text).basis_count == 1

    @pytest.mark.parametrize("value", ["0.0", "-2.0", "nan", "inf"])
    def test_invalid_scale(self, value):
        with pytest.raises(ValueError):
            parse_map_scales(f"Scale#diffuse, {value}\n")

    def test_map_scale(self):
        assert map_scale(np.array([0.2, 0.9])) == 1.0
        assert map_scale(np.array([0.2, np.nan, 3.5])) == 3.5
        assert map_scale(np.zeros(0)) == 1.0


class TestSaveAndLoad:

    def test_artifacts(self, plane, rng, tmp_path):
        written = save_fit(random_fit(plane, rng), tmp_path, report=ErrorReport())
        names = sorted(p.name for p in written)
        assert names == sorted([
            "weights0003.png", "weights0407.png", "weightMask.png", "diffuse.png",
            "specular.png", "roughness.png", "normal.png", "basisFunctions.csv", "rmse.txt",
        ])

    def test_round_trip_within_quantization(self, plane, rng, tmp_path):
        fit = random_fit(plane, rng, constant=True)
        save_fit(fit, tmp_path)
        loaded = load_fit(tmp_path, plane, smith_masking_shadowing=False)

        np.testing.assert_array_equal(loaded.basis.specular, fit.basis.specular)
        np.testing.assert_allclose(loaded.material.weights, fit.material.weights, atol=0.5 / 255 + 1e-6)
        np.testing.assert_array_equal(loaded.material.weight_mask, fit.material.weight_mask)
        np.testing.assert_allclose(loaded.material.roughness, fit.material.roughness, atol=0.5 / 255 + 1e-6)
        np.testing.assert_allclose(loaded.material.diffuse, fit.material.diffuse, atol=0.005)
        np.testing.assert_allclose(loaded.material.specular_reflectivity,
                                   fit.material.specular_reflectivity, atol=0.005)
        np.testing.assert_allclose(loaded.material.constant, fit.material.constant, atol=0.005)
        np.testing.assert_allclose(loaded.material.normals, fit.material.normals, atol=0.01)

    def test_maps_above_one_round_trip(self, plane, rng, tmp_path):
        fit = random_fit(plane, rng, constant=True)
        material = fit.material
        material.weights[...] *= 3.0
        material.diffuse[...] *= 2.5
        material.diffuse[0] = (2.5, 1.5, 0.25)
        material.constant[...] += 1.0
        save_fit(fit, tmp_path)

        scales = parse_map_scales((tmp_path / "basisFunctions.csv").read_text(encoding="utf-8"))
        assert scales["diffuse"] == pytest.approx(2.5)
        assert scales["weights"] == pytest.approx(material.weights.max())
        assert scales["constant"] == pytest.approx(material.constant.max())
        assert "specular" not in scales

        loaded = load_fit(tmp_path, plane)
        np.testing.assert_allclose(loaded.material.weights, material.weights,
                                   atol=scales["weights"] * 0.5 / 255 + 1e-5)
        np.testing.assert_allclose(loaded.material.diffuse, material.diffuse, atol=0.005 * 2.5)
        np.testing.assert_allclose(loaded.material.constant, material.constant,
                                   atol=0.005 * scales["constant"])
        assert loaded.material.diffuse.max() > 2.4

    def test_maps_in_range_are_unscaled(self, plane, rng, tmp_path):
        save_fit(random_fit(plane, rng, constant=True), tmp_path)
        text = (tmp_path / "basisFunctions.csv").read_text(encoding="utf-8")
        assert "Scale#" not in text
        assert parse_map_scales(text) == {}

    def test_round_trip_rmse(self, plane, view_set, rng, tmp_path):
        fit = random_fit(plane, rng, basis_count=2)
        observations = render_observations(plane, view_set, fit.material, model=ShadingModel.GGX)
        context = FitContext(plane, view_set, observations, small_settings())
        save_fit(fit, tmp_path)
        loaded = load_fit(tmp_path, plane, smith_masking_shadowing=False)

        before, _ = context.residuals(ShadingModel.GGX, fit.basis, fit.material)
        after, _ = context.residuals(ShadingModel.GGX, loaded.basis, loaded.material)
        assert after.rmse == pytest.approx(before.rmse, abs=0.01)

    def test_separate_weight_images(self, plane, rng, tmp_path):
        fit = random_fit(plane, rng, basis_count=3)
        written = save_fit(fit, tmp_path, ExportSettings(combine_weights=False))
        assert {"weights00.png", "weights01.png", "weights02.png"} <= {p.name for p in written}

        loaded = load_fit(tmp_path, plane)
        np.testing.assert_allclose(loaded.material.weights, fit.material.weights, atol=0.5 / 255 + 1e-6)

    def test_failed_artifact_is_recorded(self, plane, rng, tmp_path):
        (tmp_path / "diffuse.png").mkdir()
        fit = random_fit(plane, rng)
        written = SpecularFitSerializer(fit, tmp_path).save_all()

        assert "diffuse.png" not in {p.name for p in written}
        assert "normal.png" in {p.name for p in written}
        assert len(fit.diagnostics.io_failures) == 1

    def test_missing_weights(self, plane, rng, tmp_path):
        save_fit(random_fit(plane, rng), tmp_path)
        for path in tmp_path.glob("weights*.png"):
            path.unlink()
        with pytest.raises(TextureIOError):
            load_fit(tmp_path, plane)

    def test_wrong_texture_size(self, plane, rng, tmp_path):
        save_fit(random_fit(plane, rng), tmp_path)
        with pytest.raises(TextureIOError):
            load_fit(tmp_path, plane_geometry(8, 8))


class TestReport:

    def test_report_with_diagnostics_and_nan(self, plane, rng, tmp_path):
        fit = random_fit(plane, rng)
        fit.diagnostics.divergent_texels = 3
        report = ErrorReport()
        report.add("GGX fit (linear)", 0.25)
        report.add("Fitted reconstruction (linear)", math.nan)

        SpecularFitSerializer(fit, tmp_path).save_report(report, fit.diagnostics)
        entries = dict(load_report(tmp_path))

        assert entries["GGX fit (linear)"] == 0.25
        assert math.isnan(entries["Fitted reconstruction (linear)"])
        assert entries["Texels that failed normal refinement"] == 3.0

    def test_missing_report(self, tmp_path):
        with pytest.raises(TextureIOError):
            load_report(tmp_path)
