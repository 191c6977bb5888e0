"""
Per-texel Levenberg–Marquardt normal refinement.

Each observed texel refines its shading normal against every view that sees
it, with the basis, weights, diffuse and roughness held fixed. The normal is
parameterized by two offsets (δu, δv) in the plane perpendicular to the
current normal,

    n(δ) = normalize(n₀ + δu · u + δv · v),

and re-centred (n₀ ← n(δ)) after every accepted step, so the parameters
always start at zero and the parameterization never degenerates.

Residuals are sqrt(weight) · (predicted − observed) for every view and
colour channel. The Jacobian is taken by forward differences. Each step
solves the damped 2×2 system (JᵀJ + λI) Δ = −Jᵀr in closed form, for a whole
block of texels at once.

Damping schedule per texel:
    start     λ = max(1, min_normal_damping)
    success   cost drops by more than the tolerance:
              accept, λ = max(λ / 10, min_normal_damping), reset counter
    failure   reject, λ = 10 λ, counter += 1
    stop      counter > unsuccessful_lm_iterations_allowed,
              or max_lm_iterations steps taken

With levenberg_marquardt disabled, one damped Gauss–Newton step is taken
and accepted unconditionally.

After every texel has finished, normal_smoothing_iterations passes of a 3×3
average over observed texels (renormalized) suppress per-texel noise.
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.ndimage import uniform_filter

from lustre_shop.core.brdf import ShadingFrame, tangent_plane_basis
from lustre_shop.core.errors import DimensionMismatchError
from lustre_shop.core.model import BasisSet, FitContext, MaterialEstimate, ShadingModel, predict_radiance
from lustre_shop.core.settings import NormalOptimizationSettings

logger = logging.getLogger(__name__)


# Forward-difference step in tangent-plane units (≈ radians).
JACOBIAN_STEP = 1e-4

# Relative decrease a step must achieve to count as a success.
ACCEPTANCE_TOLERANCE = 1e-12

# Determinant below which the damped system is treated as singular (Δ = 0).
SINGULAR_DETERMINANT = 1e-300


@dataclass(eq=False)
class NormalRefinementResult:
    """
    normals:        (N, 3) refined tangent-space normals.
    iterations:     (N,) LM iterations taken per texel.
    accepted_steps: (N,) accepted steps per texel.
    min_damping:    (N,) smallest λ each texel used.
    divergent_texels: observed texels that never accepted a step.
    """
    normals: np.ndarray
    iterations: np.ndarray
    accepted_steps: np.ndarray
    min_damping: np.ndarray
    divergent_texels: int = 0


def _subframe(frame: ShadingFrame, subset: np.ndarray) -> ShadingFrame:
    return ShadingFrame(
        light_dir=frame.light_dir[:, subset],
        view_dir=frame.view_dir[:, subset],
        half_dir=frame.half_dir[:, subset],
        irradiance=frame.irradiance[:, subset],
    )


def _perturb(normals: np.ndarray, u: np.ndarray, v: np.ndarray, delta: np.ndarray) -> np.ndarray:
    moved = normals + delta[:, 0:1] * u + delta[:, 1:2] * v
    return moved / np.maximum(np.linalg.norm(moved, axis=1, keepdims=True), 1e-12)


class _BlockProblem:
    """The least-squares problem of one block of texels."""

    def __init__(self, context: FitContext, basis: BasisSet, material: MaterialEstimate, block: slice):
        self.context = context
        self.basis = basis
        self.material = material
        self.offset = block.start
        self.frame = context.frame(block)
        self.observed = context.observations.radiance[:, block].astype(np.float64)
        self.sqrt_weight = np.sqrt(context.observations.weight[:, block].astype(np.float64))
        # Masked samples may hold anything; they are multiplied by 0 below.
        self.observed = np.where(self.sqrt_weight[:, :, np.newaxis] > 0.0, self.observed, 0.0)
        self.smith = context.settings.basis.smith_masking_shadowing

    def residuals(self, normals: np.ndarray, subset: np.ndarray):
        """
        Residual vectors and costs for some texels of the block.

        Returns:
            (r (k, V·3), cost (k,)).
        """
        prediction = predict_radiance(
            ShadingModel.BASIS, _subframe(self.frame, subset), normals,
            self.basis, self.material, self.offset + subset, self.smith,
        )
        r = self.sqrt_weight[:, subset, np.newaxis] * (prediction - self.observed[:, subset])
        r = np.transpose(r, (1, 0, 2)).reshape(len(subset), -1)
        return r, np.sum(r * r, axis=1)

    def jacobian(self, normals: np.ndarray, r: np.ndarray, subset: np.ndarray):
        u, v = tangent_plane_basis(normals)
        columns = []
        for axis in range(2):
            delta = np.zeros((len(subset), 2))
            delta[:, axis] = JACOBIAN_STEP
            r_step, _ = self.residuals(_perturb(normals, u, v, delta), subset)
            columns.append((r_step - r) / JACOBIAN_STEP)
        return np.stack(columns, axis=-1), u, v


def solve_damped_step(jtj: np.ndarray, jtr: np.ndarray, damping: np.ndarray) -> np.ndarray:
    """
    Closed-form solution of (JᵀJ + λI) Δ = −Jᵀr for a batch of 2×2 systems.

    Args:
        jtj:     (k, 2, 2).
        jtr:     (k, 2).
        damping: (k,) λ.

    Returns:
        (k, 2) steps; zero where the damped matrix is singular.
    """
    a = jtj[:, 0, 0] + damping
    b = jtj[:, 0, 1]
    c = jtj[:, 1, 0]
    d = jtj[:, 1, 1] + damping
    det = a * d - b * c
    safe = np.abs(det) > SINGULAR_DETERMINANT
    inv_det = np.where(safe, 1.0 / np.where(safe, det, 1.0), 0.0)
    g0, g1 = -jtr[:, 0], -jtr[:, 1]
    return np.stack([(d * g0 - b * g1) * inv_det, (a * g1 - c * g0) * inv_det], axis=-1)


class NormalRefinement:
    """Refines the material's normal map against the observations."""

    def __init__(self, context: FitContext, settings: NormalOptimizationSettings | None = None):
        self.context = context
        self.settings = settings if settings is not None else context.settings.normal

    # ------------------------------------------------------------------
    # LM
    # ------------------------------------------------------------------

    def _refine_block(self, basis: BasisSet, material: MaterialEstimate, block: slice):
        settings = self.settings
        problem = _BlockProblem(self.context, basis, material, block)
        count = block.stop - block.start

        normals = self.context.geometry.tangent_to_world(material.normals[block], block)
        iterations = np.zeros(count, dtype=np.int32)
        accepted = np.zeros(count, dtype=np.int32)
        unsuccessful = np.zeros(count, dtype=np.int32)
        # Every texel starts at λ = 1 unless the floor is higher.
        damping = np.full(count, max(1.0, settings.min_normal_damping))
        min_damping = damping.copy()

        # Texels no view sees are never iterated.
        active = problem.sqrt_weight.sum(axis=0) > 0.0
        observed = active.copy()
        all_texels = np.arange(count)
        r, cost = problem.residuals(normals, all_texels)

        # Plain Gauss–Newton: one step at the floor damping, always kept.
        if not settings.levenberg_marquardt:
            subset = np.flatnonzero(active)
            if subset.size:
                jac, u, v = problem.jacobian(normals[subset], r[subset], subset)
                jtj = np.einsum("kri,krj->kij", jac, jac)
                jtr = np.einsum("kri,kr->ki", jac, r[subset])
                step_damping = np.full(subset.size, settings.min_normal_damping)
                delta = solve_damped_step(jtj, jtr, step_damping)
                normals[subset] = _perturb(normals[subset], u, v, delta)
                iterations[subset] = 1
                accepted[subset] = 1
                min_damping[subset] = step_damping
            return normals, iterations, accepted, min_damping, observed

        while active.any():
            subset = np.flatnonzero(active)
            # Only texels still iterating are re-linearized.
            jac, u, v = problem.jacobian(normals[subset], r[subset], subset)
            jtj = np.einsum("kri,krj->kij", jac, jac)
            jtr = np.einsum("kri,kr->ki", jac, r[subset])
            delta = solve_damped_step(jtj, jtr, damping[subset])

            candidate = _perturb(normals[subset], u, v, delta)
            r_new, cost_new = problem.residuals(candidate, subset)
            iterations[subset] += 1

            # A step counts only if it lowers the cost by a relative margin.
            old_cost = cost[subset]
            success = cost_new < old_cost - ACCEPTANCE_TOLERANCE * old_cost

            # Accepted: move the normal, relax λ tenfold down to the floor.
            won = subset[success]
            normals[won] = candidate[success]
            r[won] = r_new[success]
            cost[won] = cost_new[success]
            damping[won] = np.maximum(damping[won] / 10.0, settings.min_normal_damping)
            unsuccessful[won] = 0
            accepted[won] += 1

            # Rejected: keep the normal, stiffen λ tenfold.
            lost = subset[~success]
            damping[lost] *= 10.0
            unsuccessful[lost] += 1

            min_damping[subset] = np.minimum(min_damping[subset], damping[subset])
            # A texel stops after too many consecutive rejections or at the
            # iteration cap.
            active[subset] = ((unsuccessful[subset] <= settings.unsuccessful_lm_iterations_allowed)
                              & (iterations[subset] < settings.max_lm_iterations))

        return normals, iterations, accepted, min_damping, observed

    def refine(self, basis: BasisSet, material: MaterialEstimate,
               progress: tuple[float, float] = (0.0, 1.0)) -> NormalRefinementResult:
        """
        Run LM on every observed texel, then smoothing. Does not modify material.

        progress is the (start, end) span of the monitor fraction the LM
        blocks report into as they finish.

        Raises:
            DimensionMismatchError: the normal map and weight map disagree in size.
        """
        if material.normals.shape[0] != material.weights.shape[0]:
            raise DimensionMismatchError(
                f"Normal map has {material.normals.shape[0]} texels, weight map has "
                f"{material.weights.shape[0]}", "normal_refinement"
            )
        material.check_dimensions(self.context.texel_count, "normal_refinement")

        if not self.settings.enabled:
            n = material.texel_count
            return NormalRefinementResult(
                normals=material.normals.copy(),
                iterations=np.zeros(n, dtype=np.int32),
                accepted_steps=np.zeros(n, dtype=np.int32),
                min_damping=np.full(n, np.inf),
            )

        results = self.context.map_blocks(
            lambda block: self._refine_block(basis, material, block), "normal_refinement",
            progress=progress,
        )

        world = np.concatenate([r[0] for r in results])
        iterations = np.concatenate([r[1] for r in results])
        accepted = np.concatenate([r[2] for r in results])
        min_damping = np.concatenate([r[3] for r in results])
        observed = np.concatenate([r[4] for r in results])

        normals = self.context.geometry.world_to_tangent(world)
        # Unobserved texels were never touched; keep their exact input.
        normals[~observed] = material.normals[~observed]

        divergent = int(np.count_nonzero(observed & (accepted == 0)))
        if divergent:
            logger.debug("%d texels did not improve their normal", divergent)

        # Barrier: smoothing reads neighbours, so it runs only after every
        # block has finished its LM loop.
        normals = self.smooth(normals, observed)

        return NormalRefinementResult(
            normals=normals,
            iterations=iterations,
            accepted_steps=accepted,
            min_damping=min_damping,
            divergent_texels=divergent,
        )

    # ------------------------------------------------------------------
    # Smoothing
    # ------------------------------------------------------------------

    def smooth(self, normals: np.ndarray, observed: np.ndarray) -> np.ndarray:
        """3×3 average of observed tangent-space normals, renormalized, repeated."""
        passes = self.settings.normal_smoothing_iterations
        if passes == 0:
            return normals

        geometry = self.context.geometry
        raster = geometry.to_raster(normals)
        mask = geometry.to_raster(observed, fill=False).astype(np.float64)

        for _ in range(passes):
            total = uniform_filter(raster * mask[:, :, np.newaxis], size=(3, 3, 1), mode="constant")
            count = uniform_filter(mask, size=3, mode="constant")[:, :, np.newaxis]
            averaged = np.where(count > 0.0, total / np.maximum(count, 1e-12), raster)
            averaged /= np.maximum(np.linalg.norm(averaged, axis=-1, keepdims=True), 1e-12)
            raster = np.where(mask[:, :, np.newaxis] > 0.0, averaged, raster)

        return geometry.from_raster(raster)
