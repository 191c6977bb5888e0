"""
Specular fit engine: one method per pipeline stage.

SpecularFitEngine carries the state of one run from stage to stage: the
loaded capture, the sampled observations, the decomposition result, the
finished fit and its RMSE report. Each stage method has the signature

    stage(workspace: WorkspacePaths, on_progress: Callable[[str], None])

so the worker can drive any stage the same way. on_progress receives
human-readable status messages; fractional progress and cancellation go
through the engine's ProgressMonitor, which the worker replaces with one
wired to its signals.

Contract:
    - Returning normally means the stage succeeded.
    - Raising FitError means the stage failed with a known issue; the
      subclass says which (InsufficientDataError, DimensionMismatchError,
      TextureIOError, FitCancelled).
    - Image and artifact writes that fail during reconstruction and export
      are logged and counted in the fit diagnostics, not raised.
"""

import logging
from typing import Callable

from lustre_shop.core.capture import Capture, TexelObservations, load_capture, sample_observations
from lustre_shop.core.decomposition import BasisDecomposition, DecompositionResult
from lustre_shop.core.errors import FitError, TextureIOError
from lustre_shop.core.final_diffuse import estimate_final_diffuse
from lustre_shop.core.gltf_export import export_gltf
from lustre_shop.core.model import FitContext, SpecularFit
from lustre_shop.core.pipeline import FitStage
from lustre_shop.core.progress import ProgressMonitor
from lustre_shop.core.reconstruction import FinalReconstruction, ReconstructionResult, ReconstructionViews
from lustre_shop.core.serializer import SpecularFitSerializer
from lustre_shop.core.settings import SpecularFitSettings
from lustre_shop.core.workspace import WorkspacePaths, write_settings

logger = logging.getLogger(__name__)


class SpecularFitEngine:
    """
    Runs the specular fit stages in order over one capture.

    Args:
        settings:             run configuration.
        monitor:              progress/cancellation observer for the
                              numerical stages.
        capture:              an already-loaded capture; when given, the
                              load stage only records the settings.
        reconstruction_views: views to reconstruct instead of the capture's
                              own (e.g. a held-out validation set).
    """

    def __init__(self, settings: SpecularFitSettings | None = None,
                 monitor: ProgressMonitor | None = None,
                 capture: Capture | None = None,
                 reconstruction_views: ReconstructionViews | None = None):
        self.settings = settings if settings is not None else SpecularFitSettings()
        self.monitor = monitor if monitor is not None else ProgressMonitor()
        self.capture = capture
        self.reconstruction_views = reconstruction_views
        self.observations: TexelObservations | None = None
        self.context: FitContext | None = None
        self.decomposition: DecompositionResult | None = None
        self.fit: SpecularFit | None = None
        self.reconstruction: ReconstructionResult | None = None

    def _require(self, value, stage: str, what: str):
        if value is None:
            raise FitError(f"{what} is not available; run the earlier stages first.", stage)
        return value

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def load_capture(self, workspace: WorkspacePaths, on_progress: Callable[[str], None]) -> None:
        """Read the capture directory and bake the mesh into texel space."""
        write_settings(workspace, self.settings)

        if self.capture is not None:
            on_progress("Using preloaded capture.")
            return

        on_progress(f"Reading {workspace.capture}...")
        self.capture = load_capture(workspace.capture, self.settings.texture_size)
        on_progress(
            f"Loaded {len(self.capture.view_set)} views, "
            f"{self.capture.geometry.texel_count} covered texels."
        )

    def sample_observations(self, workspace: WorkspacePaths, on_progress: Callable[[str], None]) -> None:
        """Re-project every texel into every view and read its radiance."""
        capture = self._require(self.capture, FitStage.SAMPLE_OBSERVATIONS, "Capture")

        on_progress("Projecting texels into views...")
        self.observations = sample_observations(capture)
        self.context = FitContext(
            geometry=capture.geometry,
            view_set=capture.view_set,
            observations=self.observations,
            settings=self.settings,
            monitor=self.monitor,
        )

        observed = int(self.observations.observed_texels().sum())
        on_progress(f"{observed} of {capture.geometry.texel_count} texels observed in at least one view.")
        logger.info("Observed %d of %d texels", observed, capture.geometry.texel_count)

    def decompose(self, workspace: WorkspacePaths, on_progress: Callable[[str], None]) -> None:
        """Alternate basis, weight, normal and roughness updates until converged."""
        context = self._require(self.context, FitStage.DECOMPOSITION, "Observations")
        basis_settings = self.settings.basis

        on_progress(
            f"Fitting {basis_settings.basis_count} basis functions at "
            f"resolution {basis_settings.basis_resolution}..."
        )
        result = BasisDecomposition(context).run()
        self.decomposition = result

        status = "converged" if result.converged else "stopped at the iteration cap"
        on_progress(f"Decomposition {status} after {result.iterations} iterations, "
                    f"RMSE {result.error_history[-1]:.6g}.")

    def estimate_diffuse(self, workspace: WorkspacePaths, on_progress: Callable[[str], None]) -> None:
        """Replace the basis diffuse with a per-texel fit and build the final SpecularFit."""
        context = self._require(self.context, FitStage.FINAL_DIFFUSE, "Observations")
        result = self._require(self.decomposition, FitStage.FINAL_DIFFUSE, "Decomposition")

        on_progress("Estimating final diffuse albedo...")
        material = result.material
        material.diffuse, material.constant = estimate_final_diffuse(context, result.basis, material)

        self.fit = SpecularFit(
            basis=result.basis,
            material=material,
            geometry=context.geometry,
            smith_masking_shadowing=self.settings.basis.smith_masking_shadowing,
            error_history=list(result.error_history),
            diagnostics=result.diagnostics,
        )

    def reconstruct(self, workspace: WorkspacePaths, on_progress: Callable[[str], None]) -> None:
        """Compute the RMSE report and, with reconstruct_all, write the re-rendered views."""
        context = self._require(self.context, FitStage.RECONSTRUCTION, "Observations")
        fit = self._require(self.fit, FitStage.RECONSTRUCTION, "Fit")
        capture = self.capture

        views = self.reconstruction_views
        if views is None:
            views = ReconstructionViews(capture.view_set, capture.photographs, capture.masks)

        if self.settings.reconstruction.reconstruct_all:
            on_progress(f"Reconstructing all {len(views.view_set)} views...")
        else:
            on_progress("Reconstructing the primary view...")

        self.reconstruction = FinalReconstruction(context, fit, views=views).run(
            output_dir=workspace.reconstruction,
            reference_normal_map=capture.reference_normal_map,
        )

    def export(self, workspace: WorkspacePaths, on_progress: Callable[[str], None]) -> None:
        """Write the fit artifacts, the optional glTF binary and the RMSE report."""
        fit = self._require(self.fit, FitStage.EXPORT, "Fit")
        export_settings = self.settings.export

        serializer = SpecularFitSerializer(fit, workspace.artifacts, export_settings)
        written = serializer.save_all(fit.diagnostics, on_progress)

        if export_settings.save_gltf:
            if self.capture is None or self.capture.mesh is None:
                on_progress("No mesh available, skipping glTF export.")
            else:
                on_progress("Writing glTF binary...")
                try:
                    written.append(export_gltf(self.capture.mesh, workspace.artifacts,
                                               fit.basis.basis_count, export_settings.combine_weights))
                except TextureIOError as e:
                    logger.error("glTF export failed: %s", e)
                    fit.diagnostics.record_io_failure(e)

        if self.reconstruction is not None:
            try:
                written.append(serializer.save_report(self.reconstruction.report, fit.diagnostics))
            except TextureIOError as e:
                logger.error("Failed to write RMSE report: %s", e)
                fit.diagnostics.record_io_failure(e)

        for line in fit.diagnostics.summary_lines():
            logger.info(line)
        on_progress(f"Wrote {len(written)} files to {workspace.artifacts}.")
