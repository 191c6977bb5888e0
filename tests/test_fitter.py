"""SpecularFitEngine stages run end to end over a synthetic capture."""

import numpy as np
import pytest

from lustre_shop.core.errors import FitError
from lustre_shop.core.fitter import SpecularFitEngine
from lustre_shop.core.model import MaterialEstimate, ShadingModel
from lustre_shop.core.pipeline import FitStage
from lustre_shop.core.progress import CallbackMonitor
from lustre_shop.core.serializer import RMSE_FILENAME, load_fit, load_report
from lustre_shop.core.settings import ExportSettings, ReconstructionSettings, SpecularBasisSettings
from lustre_shop.core.workspace import create_workspace

from synthetic import (
    co_located_view_set,
    plane_geometry,
    recording_monitor,
    render_capture,
    render_observations,
    small_settings,
)


def lambertian_capture(diffuse=0.5):
    geometry = plane_geometry(1, 1)
    view_set = co_located_view_set(angles_x=(0.0, 15.0, 30.0), angles_y=())
    material = MaterialEstimate.initial(geometry.texel_count, 1)
    material.diffuse[:] = diffuse
    observations = render_observations(geometry, view_set, material, model=ShadingModel.FINAL_DIFFUSE)
    return render_capture(geometry, view_set, observations)


def lambertian_settings(**overrides):
    return small_settings(
        texture_size=(1, 1),
        basis=SpecularBasisSettings(basis_count=1, basis_resolution=20, specular_min_width=1,
                                    specular_max_width=20, basis_complexity=1,
                                    smith_masking_shadowing=False),
        export=ExportSettings(save_gltf=False),
        **overrides,
    )


def run_all(engine, workspace, messages=None):
    on_progress = messages.append if messages is not None else (lambda message: None)
    for stage in (engine.load_capture, engine.sample_observations, engine.decompose,
                  engine.estimate_diffuse, engine.reconstruct, engine.export):
        stage(workspace, on_progress)


@pytest.fixture
def workspace(tmp_path):
    return create_workspace(tmp_path / "capture", root=tmp_path / "run")


class TestSpecularFitEngine:

    @pytest.mark.slow
    def test_lambertian_capture(self, workspace):
        engine = SpecularFitEngine(lambertian_settings(), capture=lambertian_capture())
        messages = []
        run_all(engine, workspace, messages)

        assert workspace.settings.exists()
        assert (workspace.artifacts / RMSE_FILENAME).exists()
        assert any(m.startswith("Wrote ") for m in messages)

        report = dict(load_report(workspace.artifacts))
        assert report["Basis fit (linear)"] < 1e-4
        assert report["Final diffuse fit (linear)"] < 1e-4
        np.testing.assert_allclose(engine.fit.basis.specular, 0.0, atol=1e-4)

        fit = load_fit(workspace.artifacts, engine.fit.geometry)
        observed = fit.material.weight_mask
        assert observed.any()
        np.testing.assert_allclose(fit.material.diffuse[observed], 0.5, atol=1e-2)

    @pytest.mark.slow
    def test_reconstruct_all_writes_images(self, workspace):
        settings = lambertian_settings(max_iterations=2,
                                       reconstruction=ReconstructionSettings(reconstruct_all=True))
        engine = SpecularFitEngine(settings, capture=lambertian_capture())
        run_all(engine, workspace)

        assert engine.reconstruction.images_written
        assert all(path.exists() for path in engine.reconstruction.images_written)

    def test_stage_before_its_inputs(self, workspace):
        engine = SpecularFitEngine(lambertian_settings())
        with pytest.raises(FitError) as excinfo:
            engine.decompose(workspace, lambda message: None)
        assert excinfo.value.stage == FitStage.DECOMPOSITION

    def test_monitor_is_passed_to_the_context(self, workspace):
        fractions = []
        monitor = CallbackMonitor(on_progress=fractions.append)
        engine = SpecularFitEngine(lambertian_settings(max_iterations=1), monitor=monitor,
                                   capture=lambertian_capture())
        engine.load_capture(workspace, lambda message: None)
        engine.sample_observations(workspace, lambda message: None)
        engine.decompose(workspace, lambda message: None)

        assert engine.context.monitor is monitor
        assert fractions

    @pytest.mark.slow
    def test_numerical_stages_signal_the_monitor(self, workspace):
        monitor, calls = recording_monitor()
        engine = SpecularFitEngine(lambertian_settings(max_iterations=2), monitor=monitor,
                                   capture=lambertian_capture())
        run_all(engine, workspace)

        assert calls["stage"] == [FitStage.DECOMPOSITION, FitStage.FINAL_DIFFUSE, FitStage.RECONSTRUCTION]
        assert calls["complete"] == 3
