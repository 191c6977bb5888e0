"""
Final reconstruction and error reporting.

Three families of numbers end up in the RMSE report:

    Texture-space fit metrics
        The same objective the decomposition minimizes, evaluated over every
        (view, texel) observation for three shading models: the basis model,
        the basis specular with the final per-texel diffuse, and the
        continuous GGX lobe with the final diffuse.

    Image-space reconstruction
        The fitted model rendered into calibration views by the splat
        renderer and compared with the photographs, once for the basis model
        and once for the GGX fit. With reconstruct_all off only the primary
        view is compared; with it on every view of the reconstruction view
        set is, each rendered and ground-truth image is written to disk, and
        the aggregate comes from the pooled sums.

    Normal diagnostic
        When a reference normal map is available, the fitted tangent-space
        normals are compared to it as unit vectors (and as angles).

Every RMSE appears twice, linear and gamma-encoded, from independent passes.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from PIL import Image

from lustre_shop.core.brdf import ShadingFrame
from lustre_shop.core.errors import FitDiagnostics, TextureIOError
from lustre_shop.core.model import FitContext, ShadingModel, SpecularFit, predict_radiance
from lustre_shop.core.pipeline import FitStage
from lustre_shop.core.renderer import TexelSplatRenderer
from lustre_shop.core.residual import ErrorReport, ResidualAccumulator, encode_gamma

logger = logging.getLogger(__name__)


# Output subdirectories for reconstruct_all images.
BASIS_IMAGE_DIR = "basis"
FITTED_IMAGE_DIR = "fitted"
GROUND_TRUTH_IMAGE_DIR = "ground_truth"

TEXTURE_PASSES = (
    ("Basis fit", ShadingModel.BASIS),
    ("Final diffuse fit", ShadingModel.FINAL_DIFFUSE),
    ("GGX fit", ShadingModel.GGX),
)

IMAGE_PASSES = (
    ("Basis reconstruction", ShadingModel.BASIS, BASIS_IMAGE_DIR),
    ("Fitted reconstruction", ShadingModel.GGX, FITTED_IMAGE_DIR),
)


@dataclass(eq=False)
class ReconstructionViews:
    """
    Views and photographs to reconstruct. Defaults to the fitting capture;
    a separate validation set can be passed instead.
    """
    view_set: object
    photographs: list[np.ndarray]
    masks: list[np.ndarray | None] | None = None


@dataclass(eq=False)
class ReconstructionResult:
    report: ErrorReport
    view_rmse: dict[str, dict[int, float]] = field(default_factory=dict)
    images_written: list[Path] = field(default_factory=list)


def save_display_image(image: np.ndarray, path: Path, gamma: float) -> None:
    """Write a linear RGB image gamma-encoded as 8-bit PNG."""
    encoded = np.clip(encode_gamma(image, gamma), 0.0, 1.0)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.fromarray(np.round(encoded * 255.0).astype(np.uint8), "RGB").save(path)
    except OSError as e:
        raise TextureIOError(path, str(e), "reconstruction") from e


class FinalReconstruction:
    """Computes the RMSE report for a finished fit."""

    def __init__(self, context: FitContext, fit: SpecularFit,
                 views: ReconstructionViews | None = None,
                 renderer_factory=TexelSplatRenderer,
                 diagnostics: FitDiagnostics | None = None):
        self.context = context
        self.fit = fit
        self.views = views
        self.renderer_factory = renderer_factory
        self.diagnostics = diagnostics if diagnostics is not None else fit.diagnostics
        self.gamma = context.settings.error_gamma
        # Units of work (texture passes, then view × image pass) for progress.
        self._units_total = len(TEXTURE_PASSES)
        self._units_done = 0

    # ------------------------------------------------------------------
    # Texture space
    # ------------------------------------------------------------------

    def texture_space_metrics(self, report: ErrorReport) -> None:
        if self.fit.error_history:
            report.add("Last iteration RMSE", self.fit.error_history[-1])

        world_normals = self.fit.world_normals()
        for label, model in TEXTURE_PASSES:
            self.context.monitor.check_cancelled(FitStage.RECONSTRUCTION)
            linear, encoded = self.context.residuals(
                model, self.fit.basis, self.fit.material, gamma=self.gamma,
                world_normals=world_normals,
            )
            report.add_pass(label, linear, encoded)
            self._advance()

    # ------------------------------------------------------------------
    # Image space
    # ------------------------------------------------------------------

    def texel_radiance(self, model: str, view_set, view_index: int,
                       progress: tuple[float, float] | None = None):
        """
        (N, 3) radiance of every texel as seen from one view, and an (N,)
        weight that is 1 where the geometric surface faces the camera.
        """
        geometry = self.fit.geometry
        smith = self.fit.smith_masking_shadowing
        world_normals = self.fit.world_normals()

        def shade_block(index):
            frame = ShadingFrame.from_view_set(view_set, geometry.positions[index], views=[view_index])
            radiance = predict_radiance(model, frame, world_normals[index], self.fit.basis,
                                        self.fit.material, index, smith)[0]
            facing = frame.cosines(geometry.normals[index]).n_dot_v[0] > 0.0
            return radiance, facing.astype(np.float32)

        results = self.context.map_blocks(shade_block, FitStage.RECONSTRUCTION, progress=progress)
        return (np.concatenate([r for r, _ in results]),
                np.concatenate([w for _, w in results]))

    def image_space(self, report: ErrorReport, output_dir: Path | None,
                    reconstruct_all: bool) -> ReconstructionResult:
        views = self.views
        view_set = views.view_set
        renderer = self.renderer_factory(self.fit.geometry, view_set)
        indices = range(len(view_set)) if reconstruct_all else [view_set.primary_view_index]

        result = ReconstructionResult(report)
        passes = {label: (ResidualAccumulator(), ResidualAccumulator(gamma=self.gamma))
                  for label, _, _ in IMAGE_PASSES}

        for k in indices:
            self.context.monitor.check_cancelled(FitStage.RECONSTRUCTION)
            photograph = views.photographs[k]
            mask = views.masks[k] if views.masks is not None else None

            for label, model, subdir in IMAGE_PASSES:
                rendered = renderer.render(k, *self.texel_radiance(model, view_set, k, self._span()))
                self._advance()
                weight = rendered.weight if mask is None else rendered.weight * mask
                linear, encoded = passes[label]
                linear.accumulate_view(k, rendered.color, photograph, weight)
                encoded.accumulate_view(k, rendered.color, photograph, weight)

                if reconstruct_all and output_dir is not None:
                    self._write(result, rendered.color, Path(output_dir) / subdir / f"{k:04d}.png")

            if reconstruct_all and output_dir is not None:
                self._write(result, photograph,
                            Path(output_dir) / GROUND_TRUTH_IMAGE_DIR / f"{k:04d}.png")

        for label, _, _ in IMAGE_PASSES:
            linear, encoded = passes[label]
            if reconstruct_all:
                result.view_rmse[label] = linear.view_rmse()
                for k, rmse in linear.view_rmse().items():
                    logger.info("%s view %04d: RMSE %.6g", label, k, rmse)
                    report.add(f"{label} view {k:04d} (linear)", rmse)
                for k, rmse in encoded.view_rmse().items():
                    report.add(f"{label} view {k:04d} (gamma-corrected)", rmse)
            # Aggregate from pooled sums, never from the per-view values.
            report.add_pass(label, linear, encoded)

        return result

    def _span(self) -> tuple[float, float]:
        total = max(self._units_total, 1)
        return self._units_done / total, (self._units_done + 1) / total

    def _advance(self) -> None:
        self._units_done += 1
        self.context.monitor.on_progress(self._units_done / max(self._units_total, 1))

    def _write(self, result: ReconstructionResult, image: np.ndarray, path: Path) -> None:
        try:
            save_display_image(image, path, self.gamma)
            result.images_written.append(path)
        except TextureIOError as e:
            logger.error("Failed to write %s: %s", path, e)
            self.diagnostics.record_io_failure(e)

    # ------------------------------------------------------------------
    # Normal diagnostic
    # ------------------------------------------------------------------

    def normal_diagnostic(self, report: ErrorReport, reference_map: np.ndarray) -> None:
        geometry = self.fit.geometry
        if reference_map.shape[:2] != (geometry.height, geometry.width):
            logger.warning("Reference normal map is %s, texture is %s; skipping normal diagnostic",
                           reference_map.shape[:2], (geometry.height, geometry.width))
            return

        reference = geometry.from_raster(reference_map).astype(np.float64)
        reference /= np.maximum(np.linalg.norm(reference, axis=1, keepdims=True), 1e-12)
        fitted = self.fit.material.normals
        fitted = fitted / np.maximum(np.linalg.norm(fitted, axis=1, keepdims=True), 1e-12)

        squared = np.sum((fitted - reference) ** 2, axis=1)
        rmse = float(np.sqrt(np.mean(squared))) if squared.size else float("nan")
        angles = np.degrees(np.arccos(np.clip(np.sum(fitted * reference, axis=1), -1.0, 1.0)))
        mean_angle = float(np.mean(angles)) if angles.size else float("nan")

        report.add("Normal map RMSE", rmse)
        report.add("Normal map mean angular error (degrees)", mean_angle)

    # ------------------------------------------------------------------

    def run(self, output_dir: Path | None = None,
            reference_normal_map: np.ndarray | None = None) -> ReconstructionResult:
        """Build the full report. Image writes that fail are recorded, not raised."""
        monitor = self.context.monitor
        monitor.on_stage(FitStage.RECONSTRUCTION)
        reconstruct_all = self.context.settings.reconstruction.reconstruct_all

        self._units_done = 0
        self._units_total = len(TEXTURE_PASSES)
        if self.views is not None:
            view_count = len(self.views.view_set) if reconstruct_all else 1
            self._units_total += view_count * len(IMAGE_PASSES)

        report = ErrorReport()
        self.texture_space_metrics(report)

        if self.views is not None:
            result = self.image_space(report, output_dir, reconstruct_all)
        else:
            result = ReconstructionResult(report)

        if reference_normal_map is not None:
            self.normal_diagnostic(report, reference_normal_map)

        for label, value in report.entries:
            logger.info("%s: %s", label, value)
        monitor.on_complete()
        return result
