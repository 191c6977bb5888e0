"""
The fitted model and the shared machinery to evaluate it.

    BasisSet            global basis: a diffuse albedo and a specular table
                        per basis function.
    MaterialEstimate    every per-texel map: basis weights, weight mask,
                        tangent-space normals, roughness, specular
                        reflectivity, final diffuse, optional constant.
    SpecularFit         the complete result of a fit, as produced by the
                        fitter and as read back from disk by the serializer.
    FitContext          a capture prepared for fitting: texel geometry,
                        views, observations and settings, plus the thread
                        pool that fans texel blocks out.

predict_radiance() is the single place that turns a model into radiance;
decomposition, normal refinement, error reporting and image reconstruction
all go through it, so every stage optimizes and reports the same objective.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import numpy as np

from lustre_shop.core.brdf import (
    ShadingFrame,
    geometry_ratio,
    ggx_distribution,
    half_angle_index,
    interpolate_tables,
)
from lustre_shop.core.capture import TexelGeometry, TexelObservations, ViewSet
from lustre_shop.core.errors import DimensionMismatchError, FitCancelled, FitDiagnostics
from lustre_shop.core.progress import ProgressMonitor
from lustre_shop.core.residual import ResidualAccumulator
from lustre_shop.core.settings import SpecularFitSettings

logger = logging.getLogger(__name__)


class ShadingModel:
    """Which parts of the fit are used to predict radiance."""
    # Basis diffuse + basis specular tables. What the decomposition fits.
    BASIS = "basis"
    # Final per-texel diffuse (+ constant) + basis specular tables.
    FINAL_DIFFUSE = "final_diffuse"
    # Final diffuse (+ constant) + continuous GGX lobe from roughness and F0.
    GGX = "ggx"


# ---------------------------------------------------------------------------
# Model data
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class BasisSet:
    """
    diffuse_albedo: (B, 3) linear albedo per basis function.
    specular:       (B, resolution + 1, 3) tables over half-angle bins.
    """
    diffuse_albedo: np.ndarray
    specular: np.ndarray

    def __post_init__(self):
        self.diffuse_albedo = np.asarray(self.diffuse_albedo, dtype=np.float64)
        self.specular = np.asarray(self.specular, dtype=np.float64)
        if self.specular.ndim != 3 or self.specular.shape[2] != 3:
            raise DimensionMismatchError(
                f"Specular tables must be (basis, bins, 3), got {self.specular.shape}", "basis"
            )
        if self.diffuse_albedo.shape != (self.specular.shape[0], 3):
            raise DimensionMismatchError(
                f"Basis diffuse {self.diffuse_albedo.shape} does not match "
                f"{self.specular.shape[0]} basis functions", "basis"
            )

    @classmethod
    def zeros(cls, basis_count: int, resolution: int) -> "BasisSet":
        return cls(np.zeros((basis_count, 3)), np.zeros((basis_count, resolution + 1, 3)))

    @property
    def basis_count(self) -> int:
        return self.specular.shape[0]

    @property
    def resolution(self) -> int:
        return self.specular.shape[1] - 1

    def copy(self) -> "BasisSet":
        return BasisSet(self.diffuse_albedo.copy(), self.specular.copy())


@dataclass(eq=False)
class MaterialEstimate:
    """
    Per-texel maps, compact over the covered texels of a TexelGeometry.

    weights:               (N, B) non-negative basis weights.
    weight_mask:           (N,) texels with at least one valid observation.
    normals:               (N, 3) tangent-space unit normals.
    roughness:             (N,) GGX α.
    specular_reflectivity: (N, 3) F0.
    diffuse:               (N, 3) final diffuse albedo.
    constant:              (N, 3) additive radiance, or None.
    """
    weights: np.ndarray
    weight_mask: np.ndarray
    normals: np.ndarray
    roughness: np.ndarray
    specular_reflectivity: np.ndarray
    diffuse: np.ndarray
    constant: np.ndarray | None = None

    @classmethod
    def initial(cls, texel_count: int, basis_count: int,
                include_constant: bool = False) -> "MaterialEstimate":
        """Uniform weights, flat normals, broad roughness, no specular."""
        normals = np.zeros((texel_count, 3))
        normals[:, 2] = 1.0
        return cls(
            weights=np.full((texel_count, basis_count), 1.0 / basis_count, dtype=np.float32),
            weight_mask=np.zeros(texel_count, dtype=bool),
            normals=normals,
            roughness=np.ones(texel_count),
            specular_reflectivity=np.zeros((texel_count, 3)),
            diffuse=np.zeros((texel_count, 3)),
            constant=np.zeros((texel_count, 3)) if include_constant else None,
        )

    @property
    def texel_count(self) -> int:
        return self.weights.shape[0]

    @property
    def basis_count(self) -> int:
        return self.weights.shape[1]

    def check_dimensions(self, texel_count: int, stage: str) -> None:
        """Raise DimensionMismatchError if any map disagrees with texel_count."""
        maps = {
            "weight": self.weights,
            "weight mask": self.weight_mask,
            "normal": self.normals,
            "roughness": self.roughness,
            "specular": self.specular_reflectivity,
            "diffuse": self.diffuse,
        }
        if self.constant is not None:
            maps["constant"] = self.constant
        for name, array in maps.items():
            if array.shape[0] != texel_count:
                raise DimensionMismatchError(
                    f"{name.capitalize()} map has {array.shape[0]} texels, expected {texel_count}",
                    stage,
                )

    def basis_diffuse(self, basis: BasisSet, index=slice(None)) -> np.ndarray:
        """(n, 3) Σ_b w_b · albedo_b."""
        return self.weights[index].astype(np.float64) @ basis.diffuse_albedo

    def copy(self) -> "MaterialEstimate":
        return MaterialEstimate(
            weights=self.weights.copy(),
            weight_mask=self.weight_mask.copy(),
            normals=self.normals.copy(),
            roughness=self.roughness.copy(),
            specular_reflectivity=self.specular_reflectivity.copy(),
            diffuse=self.diffuse.copy(),
            constant=None if self.constant is None else self.constant.copy(),
        )


@dataclass(eq=False)
class SpecularFit:
    """A complete fit: everything needed to render or export it."""
    basis: BasisSet
    material: MaterialEstimate
    geometry: TexelGeometry
    smith_masking_shadowing: bool = True
    error_history: list[float] = field(default_factory=list)
    diagnostics: FitDiagnostics = field(default_factory=FitDiagnostics)

    def __post_init__(self):
        self.material.check_dimensions(self.geometry.texel_count, "fit")
        if self.material.basis_count != self.basis.basis_count:
            raise DimensionMismatchError(
                f"Weight map has {self.material.basis_count} channels for "
                f"{self.basis.basis_count} basis functions", "fit"
            )

    def world_normals(self, index=slice(None)) -> np.ndarray:
        return self.geometry.tangent_to_world(self.material.normals[index], index)


# ---------------------------------------------------------------------------
# Radiance prediction
# ---------------------------------------------------------------------------

def texel_tables(weights: np.ndarray, basis: BasisSet) -> np.ndarray:
    """(n, M + 1, 3) per-texel specular tables Σ_b w_b · spec_b."""
    return np.einsum("nb,bmc->nmc", weights.astype(np.float64), basis.specular)


def predict_radiance(model: str, frame: ShadingFrame, world_normals: np.ndarray,
                     basis: BasisSet, material: MaterialEstimate, index,
                     smith: bool) -> np.ndarray:
    """
    Predict (V, n, 3) radiance for a block of texels.

    Args:
        model:         a ShadingModel constant.
        frame:         ShadingFrame for the block.
        world_normals: (n, 3) world-space normals to shade with.
        basis:         current basis set.
        material:      current per-texel maps (full size; index selects the block).
        index:         slice or index array selecting the block.
        smith:         use Smith masking with the material roughness.
    """
    cosines = frame.cosines(world_normals)
    incident = frame.incident(cosines)
    roughness = material.roughness[index]
    g = geometry_ratio(cosines, roughness if smith else None)[:, :, np.newaxis]

    if model == ShadingModel.GGX:
        lobe = ggx_distribution(cosines.n_dot_h, roughness[np.newaxis, :])
        specular = material.specular_reflectivity[index][np.newaxis, :, :] * lobe[:, :, np.newaxis]
    else:
        tables = texel_tables(material.weights[index], basis)
        specular = interpolate_tables(tables, half_angle_index(cosines.n_dot_h, basis.resolution))

    if model == ShadingModel.BASIS:
        diffuse = material.basis_diffuse(basis, index)
    else:
        diffuse = material.diffuse[index]

    radiance = incident * (diffuse[np.newaxis, :, :] / np.pi + g * specular)
    if model != ShadingModel.BASIS and material.constant is not None:
        radiance = radiance + material.constant[index][np.newaxis, :, :]
    return radiance


# ---------------------------------------------------------------------------
# Fit context
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class FitContext:
    """
    A capture prepared for fitting.

    Blocks of texels are the unit of parallel work: map_blocks() runs a
    function on every block in a thread pool and returns the results in
    block order. Each call only reads shared state and returns its own
    results, so blocks never write to the same memory.
    """
    geometry: TexelGeometry
    view_set: ViewSet
    observations: TexelObservations
    settings: SpecularFitSettings = field(default_factory=SpecularFitSettings)
    monitor: ProgressMonitor = field(default_factory=ProgressMonitor)

    def __post_init__(self):
        if self.observations.texel_count != self.geometry.texel_count:
            raise DimensionMismatchError(
                f"Observations cover {self.observations.texel_count} texels, geometry has "
                f"{self.geometry.texel_count}", "observations"
            )
        if self.observations.view_count != len(self.view_set):
            raise DimensionMismatchError(
                f"Observations cover {self.observations.view_count} views, view set has "
                f"{len(self.view_set)}", "observations"
            )

    @property
    def texel_count(self) -> int:
        return self.geometry.texel_count

    def blocks(self) -> list[slice]:
        return self.geometry.blocks(self.settings.block_size)

    def frame(self, index) -> ShadingFrame:
        return ShadingFrame.from_view_set(self.view_set, self.geometry.positions[index])

    def map_blocks(self, function, stage: str | None = None,
                   progress: tuple[float, float] | None = None) -> list:
        """
        Run function(block) for every block, in parallel, results in block order.

        Cancellation is checked as each block completes; once requested,
        blocks that have not started are cancelled and FitCancelled is raised.
        progress, a (start, end) span of the stage fraction, is filled in
        block by block through monitor.on_progress().
        """
        blocks = self.blocks()
        results = [None] * len(blocks)
        done = 0
        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as executor:
            future_to_index = {executor.submit(function, block): i for i, block in enumerate(blocks)}
            try:
                for future in as_completed(future_to_index):
                    results[future_to_index[future]] = future.result()
                    done += 1
                    # Reported from this thread only, in completion order.
                    if progress is not None:
                        start, end = progress
                        self.monitor.on_progress(start + (end - start) * done / len(blocks))
                    self.monitor.check_cancelled(stage)
            except FitCancelled:
                for future in future_to_index:
                    future.cancel()
                raise
        return results

    def residuals(self, model: str, basis: BasisSet, material: MaterialEstimate,
                  gamma: float | None = None, world_normals: np.ndarray | None = None):
        """
        Texture-space residuals of a model against every observation.

        Returns (linear, encoded) ResidualAccumulators; encoded is None when
        gamma is None. Each (view, texel) observation is one "pixel" weighted
        by its validity.
        """
        smith = self.settings.basis.smith_masking_shadowing

        def block_residuals(index):
            normals = (self.geometry.tangent_to_world(material.normals[index], index)
                       if world_normals is None else world_normals[index])
            prediction = predict_radiance(model, self.frame(index), normals,
                                          basis, material, index, smith)
            observed = self.observations.radiance[:, index]
            weight = self.observations.weight[:, index]
            linear = ResidualAccumulator()
            encoded = ResidualAccumulator(gamma=gamma) if gamma is not None else None
            for k in range(prediction.shape[0]):
                linear.accumulate_view(k, prediction[k], observed[k], weight[k])
                if encoded is not None:
                    encoded.accumulate_view(k, prediction[k], observed[k], weight[k])
            return linear, encoded

        linear_total = ResidualAccumulator()
        encoded_total = ResidualAccumulator(gamma=gamma) if gamma is not None else None
        for linear, encoded in self.map_blocks(block_residuals, "error"):
            linear_total.merge(linear)
            if encoded_total is not None:
                encoded_total.merge(encoded)
        return linear_total, encoded_total
