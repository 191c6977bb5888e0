"""
Basis decomposition: alternating non-negative fit of basis and weights.

Every valid observation of texel p in view k is explained as

    L = E/d² · max(n·l, 0) · Σ_b w[p,b] · ( albedo_b / π + G · spec_b(m) )

with spec_b a table over half-angle bins (see brdf.py). The decomposition
alternates two linear non-negative least-squares problems over this model:

    basis update   weights fixed → solve for every basis table and albedo
    weight update  basis fixed   → solve each texel's weight vector

Basis tables are never free per bin. Each is written as

    spec_b(m) = metallicity · base_b + Σ_j c[b,j] · S_j(m),   c ≥ 0

over a SmoothstepBasisLibrary S_j, and albedo_b = (1 − metallicity) · base_b.
Non-negativity and monotone fall-off come from c ≥ 0; the library's min and
max widths bound how narrow or wide a lobe may be; its function count caps
the degrees of freedom per lobe.

Both problems are solved on normal equations accumulated in float64; a
weight update solves one small NNLS per texel, a basis update one NNLS per
colour channel over (basis_count × (1 + functions)) unknowns.

Each outer iteration runs:
    basis update → weight update → normal refinement (if enabled)
    → roughness fit → error

and stops when the relative improvement of the texture-space RMSE drops to
the convergence tolerance, or at max_iterations. Weights start from a
K-means clustering of each texel's average observed reflectance colour.
"""

import logging
from dataclasses import dataclass, field

import numpy as np
from scipy.cluster.vq import kmeans2

from lustre_shop.core.brdf import geometry_ratio, half_angle_index, interpolate_basis
from lustre_shop.core.errors import FitDiagnostics, InsufficientDataError
from lustre_shop.core.model import BasisSet, FitContext, MaterialEstimate, ShadingModel
from lustre_shop.core.nnls import augment_sum_constraint, solve_premultiplied
from lustre_shop.core.normal_refinement import NormalRefinement
from lustre_shop.core.pipeline import FitStage
from lustre_shop.core.roughness import fit_roughness
from lustre_shop.core.smoothstep_basis import SmoothstepBasisLibrary
from lustre_shop.core.texel_space import dilate_texture

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class DecompositionResult:
    basis: BasisSet
    material: MaterialEstimate
    error_history: list[float] = field(default_factory=list)
    converged: bool = False
    diagnostics: FitDiagnostics = field(default_factory=FitDiagnostics)

    @property
    def iterations(self) -> int:
        return len(self.error_history) - 1


class BasisDecomposition:
    """
    Runs the alternating fit over a FitContext.

    The individual steps are public so they can be driven and tested on
    their own; run() strings them together with convergence and progress.
    """

    def __init__(self, context: FitContext):
        self.context = context
        self.settings = context.settings
        basis_settings = self.settings.basis
        self.library = SmoothstepBasisLibrary(
            basis_settings.basis_resolution,
            basis_settings.specular_min_width,
            basis_settings.specular_max_width,
            basis_settings.basis_complexity,
        )
        self.normal_refinement = NormalRefinement(context)

    @property
    def basis_count(self) -> int:
        return self.settings.basis.basis_count

    # ------------------------------------------------------------------
    # Shared per-block geometry
    # ------------------------------------------------------------------

    def _block_shading(self, material: MaterialEstimate, index):
        """(incident (V, n, 3), G (V, n), m (V, n)) for the block's current normals."""
        frame = self.context.frame(index)
        normals = self.context.geometry.tangent_to_world(material.normals[index], index)
        cosines = frame.cosines(normals)
        smith = self.settings.basis.smith_masking_shadowing
        g = geometry_ratio(cosines, material.roughness[index] if smith else None)
        m = half_angle_index(cosines.n_dot_h, self.settings.basis.basis_resolution)
        return frame.incident(cosines), g, m

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def initialize(self) -> MaterialEstimate:
        """
        Initial weights from K-means over average reflectance colours.

        Observed texels get one-hot weights for their cluster; unobserved
        texels keep uniform 1/B weights.

        Raises:
            InsufficientDataError: no texel has a valid observation.
        """
        observations = self.context.observations
        observed = observations.observed_texels()
        if not observed.any():
            raise InsufficientDataError(
                "No texel has a valid observation in any view", "initialize"
            )

        material = MaterialEstimate.initial(
            self.context.texel_count, self.basis_count, self.settings.include_constant_term
        )
        material.normals = self.context.geometry.world_to_tangent(self.context.geometry.normals)
        material.weight_mask = observed

        def average_reflectance(index):
            incident, _, _ = self._block_shading(material, index)
            v = observations.weight[:, index].astype(np.float64)[:, :, np.newaxis]
            radiance = np.where(v > 0.0, observations.radiance[:, index], 0.0)
            numerator = np.sum(v * radiance, axis=0)
            denominator = np.sum(v * incident, axis=0)
            return np.where(denominator > 0.0, numerator / np.maximum(denominator, 1e-300), 0.0)

        colors = np.concatenate(self.context.map_blocks(average_reflectance, "initialize"))
        labels = self._cluster(colors[observed])

        weights = material.weights
        observed_index = np.flatnonzero(observed)
        weights[observed_index] = 0.0
        weights[observed_index, labels] = 1.0

        logger.info("Initialized %d observed texels into %d clusters",
                    observed_index.size, len(np.unique(labels)))
        return material

    def _cluster(self, colors: np.ndarray) -> np.ndarray:
        count = self.basis_count
        if count == 1:
            return np.zeros(len(colors), dtype=np.int64)

        # Too few distinct colours for k-means++ seeding: give each its own cluster.
        unique, inverse = np.unique(colors, axis=0, return_inverse=True)
        if len(unique) <= count:
            return inverse.reshape(-1)

        _, labels = kmeans2(colors, count, minit="++", seed=self.settings.random_seed)
        return labels

    # ------------------------------------------------------------------
    # Basis update
    # ------------------------------------------------------------------

    def _unknowns_per_basis(self) -> int:
        return 1 + self.library.function_count

    def update_basis(self, material: MaterialEstimate) -> BasisSet:
        """Solve every basis table and albedo with the weights fixed."""
        observations = self.context.observations
        metallicity = self.settings.basis.metallicity
        stride = self._unknowns_per_basis()
        unknowns = self.basis_count * stride

        def accumulate(index):
            incident, g, m = self._block_shading(material, index)
            weights = material.weights[index].astype(np.float64)
            ata = np.zeros((3, unknowns, unknowns))
            atb = np.zeros((3, unknowns))

            # One view at a time; only its valid samples enter the sums.
            for k in range(incident.shape[0]):
                v = observations.weight[k, index].astype(np.float64)
                valid = v > 0.0
                if not valid.any():
                    continue

                # Per-sample features: the base colour term, then the library
                # functions at the sample's half-angle bin.
                gk = g[k, valid][:, np.newaxis]
                features = np.concatenate([
                    (1.0 - metallicity) / np.pi + metallicity * gk,
                    gk * self.library.interpolate(m[k, valid]),
                ], axis=1)                                            # (s, 1 + J)
                # Each basis gets its own copy of the features, scaled by the
                # texel's weight for that basis.
                rows = (weights[valid][:, :, np.newaxis]
                        * features[:, np.newaxis, :]).reshape(len(features), unknowns)

                a = incident[k, valid]                                # (s, 3)
                radiance = observations.radiance[k, index][valid].astype(np.float64)
                # Channels are independent problems sharing the same rows.
                for c in range(3):
                    scale = v[valid] * a[:, c]
                    ata[c] += rows.T @ (rows * (scale * a[:, c])[:, np.newaxis])
                    atb[c] += rows.T @ (scale * radiance[:, c])
            return ata, atb

        # Blocks sum into one system per channel.
        ata = np.zeros((3, unknowns, unknowns))
        atb = np.zeros((3, unknowns))
        for block_ata, block_atb in self.context.map_blocks(accumulate, "basis_update"):
            ata += block_ata
            atb += block_atb

        # Unpack each basis's slice: base colour first, then coefficients.
        base = np.zeros((self.basis_count, 3))
        coefficients = np.zeros((self.basis_count, self.library.function_count, 3))
        for c in range(3):
            solution = solve_premultiplied(ata[c], atb[c]).reshape(self.basis_count, stride)
            base[:, c] = solution[:, 0]
            coefficients[:, :, c] = solution[:, 1:]

        # Expand coefficients back into per-bin tables.
        specular = (metallicity * base[:, np.newaxis, :]
                    + np.einsum("bjc,jm->bmc", coefficients, self.library.table))
        return BasisSet((1.0 - metallicity) * base, np.maximum(specular, 0.0))

    # ------------------------------------------------------------------
    # Weight update
    # ------------------------------------------------------------------

    def update_weights(self, basis: BasisSet, material: MaterialEstimate):
        """
        Solve each observed texel's weight vector with the basis fixed.

        Returns:
            (weights (N, B) float32, degenerate texel count). Texels without
            observations keep their previous weights.
        """
        observations = self.context.observations
        constrain = self.settings.constrain_weight_sum
        count = self.basis_count

        def solve_block(index):
            incident, g, m = self._block_shading(material, index)
            n = incident.shape[1]
            gram = np.zeros((n, count, count))
            rhs = np.zeros((n, count))
            total_weight = np.zeros(n)

            # Per-texel BxB normal equations, summed over views.
            for k in range(incident.shape[0]):
                v = observations.weight[k, index].astype(np.float64)
                if not np.any(v > 0.0):
                    continue
                radiance = np.where((v > 0.0)[:, np.newaxis],
                                    observations.radiance[k, index].astype(np.float64), 0.0)
                # Radiance each basis would give at unit weight.
                per_basis = (basis.diffuse_albedo[np.newaxis, :, :] / np.pi
                             + g[k][:, np.newaxis, np.newaxis] * interpolate_basis(basis.specular, m[k]))
                design = incident[k][:, np.newaxis, :] * per_basis          # (n, B, 3)
                gram += np.einsum("n,nbc,ndc->nbd", v, design, design)
                rhs += np.einsum("n,nbc,nc->nb", v, design, radiance)
                total_weight += v

            weights = material.weights[index].copy()
            degenerate = 0
            # Unobserved texels keep their previous weights.
            for p in np.flatnonzero(total_weight > 0.0):
                if constrain:
                    ata, atb = augment_sum_constraint(gram[p], rhs[p])
                    solution = solve_premultiplied(ata, atb, equality_count=1)[:count]
                else:
                    solution = solve_premultiplied(gram[p], rhs[p])
                solution = np.maximum(solution, 0.0)
                if not np.any(solution > 0.0):
                    degenerate += 1
                weights[p] = solution
            return weights, degenerate

        results = self.context.map_blocks(solve_block, "weight_update")
        weights = np.concatenate([w for w, _ in results]).astype(np.float32)
        return weights, sum(d for _, d in results)

    # ------------------------------------------------------------------
    # Hole filling
    # ------------------------------------------------------------------

    def fill_holes(self, material: MaterialEstimate) -> np.ndarray:
        """Copy weights into unobserved texels from the nearest observed texel."""
        geometry = self.context.geometry
        if material.weight_mask.all():
            return material.weights
        raster = geometry.to_raster(material.weights)
        filled = geometry.to_raster(material.weight_mask, fill=False)
        return geometry.from_raster(dilate_texture(raster, filled, iterations=None))

    # ------------------------------------------------------------------
    # Error
    # ------------------------------------------------------------------

    def error(self, basis: BasisSet, material: MaterialEstimate) -> float:
        linear, _ = self.context.residuals(ShadingModel.BASIS, basis, material)
        return linear.rmse

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self, material: MaterialEstimate | None = None) -> DecompositionResult:
        """
        Alternate until convergence.

        Args:
            material: starting state; initialize() is used when omitted.

        Raises:
            InsufficientDataError: no texel has a valid observation.
            FitCancelled: the monitor requested cancellation.
        """
        monitor = self.context.monitor
        monitor.on_stage(FitStage.DECOMPOSITION)
        if material is None:
            material = self.initialize()
        else:
            material = material.copy()
            material.weight_mask = self.context.observations.observed_texels()
            if not material.weight_mask.any():
                raise InsufficientDataError(
                    "No texel has a valid observation in any view", "decomposition"
                )
        material.check_dimensions(self.context.texel_count, "decomposition")

        diagnostics = FitDiagnostics()
        basis = BasisSet.zeros(self.basis_count, self.settings.basis.basis_resolution)
        history = [self.error(basis, material)]
        converged = False
        max_iterations = self.settings.max_iterations
        tolerance = self.settings.convergence_tolerance
        logger.info("Initial error: %.6g", history[0])

        for iteration in range(1, max_iterations + 1):
            monitor.check_cancelled(FitStage.DECOMPOSITION)

            # Basis first, against the previous iteration's weights.
            basis = self.update_basis(material)
            weights, degenerate = self.update_weights(basis, material)
            material.weights = weights
            diagnostics.degenerate_weight_texels = degenerate

            if self.settings.normal.enabled:
                # LM fills this iteration's share of the stage fraction.
                window = ((iteration - 1) / max_iterations, iteration / max_iterations)
                refined = self.normal_refinement.refine(basis, material, progress=window)
                material.normals = refined.normals
                diagnostics.divergent_texels = refined.divergent_texels

            # Roughness and F0 follow from the new basis and weights.
            material.roughness, material.specular_reflectivity = fit_roughness(basis, material.weights)

            current = self.error(basis, material)
            previous = history[-1]
            history.append(current)

            message = f"Iteration {iteration}: RMSE {current:.6g}"
            logger.info(message)
            monitor.on_message(message)
            monitor.on_progress(iteration / max_iterations)

            # Relative improvement at or below the tolerance ends the loop.
            if previous - current <= tolerance * previous:
                converged = True
                break

        if diagnostics.degenerate_weight_texels:
            logger.warning("%d texels have degenerate (all-zero) weights",
                           diagnostics.degenerate_weight_texels)

        # Final maps: holes filled, roughness refit over the filled weights.
        material.weights = self.fill_holes(material).astype(np.float32)
        material.roughness, material.specular_reflectivity = fit_roughness(basis, material.weights)
        material.diffuse = material.basis_diffuse(basis)

        monitor.on_complete()
        return DecompositionResult(basis, material, history, converged, diagnostics)
