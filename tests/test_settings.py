"""Settings validation and JSON loading."""

import json
from dataclasses import replace

import pytest

from lustre_shop.core.settings import (
    NormalOptimizationSettings,
    SpecularBasisSettings,
    SpecularFitSettings,
    load_settings,
    settings_from_dict,
)


class TestSpecularBasisSettings:

    def test_defaults(self):
        basis = SpecularBasisSettings()
        assert basis.basis_count == 8
        assert basis.basis_resolution == 90
        assert basis.smith_masking_shadowing

    def test_from_fractions(self):
        basis = SpecularBasisSettings.from_fractions(basis_count=4, basis_resolution=90,
                                                     specular_min_width_frac=0.2,
                                                     specular_max_width_frac=1.0,
                                                     basis_complexity_frac=1.0)
        assert basis.specular_min_width == 18
        assert basis.specular_max_width == 90
        assert basis.basis_complexity == 73

    def test_from_fractions_keeps_at_least_one_function(self):
        basis = SpecularBasisSettings.from_fractions(basis_complexity_frac=0.0)
        assert basis.basis_complexity == 1

    @pytest.mark.parametrize("kwargs", [
        {"basis_count": 0},
        {"basis_resolution": 0},
        {"specular_min_width": 91},
        {"specular_max_width": -1},
        {"basis_complexity": 0},
        {"metallicity": 1.5},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            SpecularBasisSettings(**kwargs)


class TestNormalOptimizationSettings:

    @pytest.mark.parametrize("kwargs", [
        {"min_normal_damping": -1.0},
        {"min_normal_damping": float("inf")},
        {"normal_smoothing_iterations": -1},
        {"unsuccessful_lm_iterations_allowed": -1},
        {"max_lm_iterations": 0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            NormalOptimizationSettings(**kwargs)


class TestSpecularFitSettings:

    def test_frozen(self):
        settings = SpecularFitSettings()
        with pytest.raises(AttributeError):
            settings.max_iterations = 3

    def test_replace_revalidates(self):
        with pytest.raises(ValueError):
            replace(SpecularFitSettings(), block_size=0)

    def test_texture_size(self):
        assert SpecularFitSettings(texture_width=64, texture_height=32).texture_size == (64, 32)

    @pytest.mark.parametrize("kwargs", [
        {"texture_width": 0},
        {"convergence_tolerance": -1.0},
        {"max_iterations": 0},
        {"error_gamma": 0.0},
        {"max_workers": 0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            SpecularFitSettings(**kwargs)


class TestSettingsFromDict:

    def test_nested_sections(self):
        settings = settings_from_dict({
            "texture_size": [256, 128],
            "max_iterations": 4,
            "basis": {"basis_count": 3, "basis_resolution": 30, "specular_min_width_frac": 0.1},
            "normal": {"enabled": False},
            "reconstruction": {"reconstruct_all": True},
            "export": {"save_gltf": False},
        })
        assert settings.texture_size == (256, 128)
        assert settings.max_iterations == 4
        assert settings.basis.basis_count == 3
        assert settings.basis.specular_min_width == 3
        assert not settings.normal.enabled
        assert settings.reconstruction.reconstruct_all
        assert not settings.export.save_gltf
        assert settings.export.combine_weights

    def test_empty_gives_defaults(self):
        assert settings_from_dict({}) == SpecularFitSettings()

    @pytest.mark.parametrize("data", [
        {"max_iteration": 4},
        {"basis": {"count": 2}},
        {"normal": {"damping": 1.0}},
        {"export": {"gltf": True}},
    ])
    def test_unknown_keys(self, data):
        with pytest.raises(ValueError, match="Unknown"):
            settings_from_dict(data)

    def test_mixing_fractions_and_bins(self):
        with pytest.raises(ValueError, match="mix"):
            settings_from_dict({"basis": {"specular_min_width_frac": 0.2, "specular_min_width": 5}})


class TestLoadSettings:

    def test_load(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"convergence_tolerance": 1e-3, "basis": {"basis_count": 2}}))
        settings = load_settings(path)
        assert settings.convergence_tolerance == 1e-3
        assert settings.basis.basis_count == 2

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            load_settings(path)
