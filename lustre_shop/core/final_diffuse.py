"""
Final diffuse albedo and constant-term estimation.

The basis diffuse Σ w_b · albedo_b can only express colours the basis set
contains. Once the specular part has converged it is held fixed, and every
texel gets its own diffuse albedo d (and, optionally, an additive constant
radiance c) from

    L ≈ φ · d + s + c,     φ = E/d² · max(n·l, 0) / π,
                           s = E/d² · max(n·l, 0) · G · spec(m)

a two-unknown non-negative least squares per texel and channel, solved in
closed form from the weighted moments Σv, Σvφ, Σvφ², Σvy, Σvφy with
y = L − s.
"""

import logging

import numpy as np

from lustre_shop.core.brdf import geometry_ratio, half_angle_index, interpolate_tables
from lustre_shop.core.model import BasisSet, FitContext, MaterialEstimate, texel_tables
from lustre_shop.core.pipeline import FitStage

logger = logging.getLogger(__name__)


def _moments(context: FitContext, basis: BasisSet, material: MaterialEstimate, index):
    frame = context.frame(index)
    normals = context.geometry.tangent_to_world(material.normals[index], index)
    cosines = frame.cosines(normals)
    incident = frame.incident(cosines)
    smith = context.settings.basis.smith_masking_shadowing
    g = geometry_ratio(cosines, material.roughness[index] if smith else None)

    tables = texel_tables(material.weights[index], basis)
    specular = incident * g[:, :, np.newaxis] * interpolate_tables(
        tables, half_angle_index(cosines.n_dot_h, basis.resolution))

    v = context.observations.weight[:, index].astype(np.float64)[:, :, np.newaxis]
    phi = incident / np.pi
    y = context.observations.radiance[:, index].astype(np.float64) - specular
    # Masked samples may hold anything; zero them before they meet v.
    y = np.where(v > 0.0, y, 0.0)

    return {
        "v": np.sum(v, axis=0)[:, 0],
        "phi": np.sum(v * phi, axis=0),
        "phi_phi": np.sum(v * phi * phi, axis=0),
        "y": np.sum(v * y, axis=0),
        "phi_y": np.sum(v * phi * y, axis=0),
    }


def _solve_diffuse_only(m):
    with np.errstate(divide="ignore", invalid="ignore"):
        d = np.where(m["phi_phi"] > 0.0, m["phi_y"] / m["phi_phi"], 0.0)
    return np.maximum(d, 0.0)


def _solve_with_constant(m):
    """
    Non-negative (d, c) per texel and channel.

    The unconstrained 2×2 solution is used where it is non-negative;
    otherwise the best of the boundary candidates (d only, c only, zero)
    by the quadratic cost wins.
    """
    s_v = m["v"][:, np.newaxis]
    s_phi, s_pp, s_y, s_py = m["phi"], m["phi_phi"], m["y"], m["phi_y"]

    def cost(d, c):
        return d * d * s_pp + c * c * s_v + 2.0 * d * c * s_phi - 2.0 * d * s_py - 2.0 * c * s_y

    det = s_pp * s_v - s_phi * s_phi
    with np.errstate(divide="ignore", invalid="ignore"):
        safe = np.abs(det) > 1e-12 * np.maximum(s_pp * s_v, 1e-300)
        d_full = np.where(safe, (s_py * s_v - s_phi * s_y) / det, -1.0)
        c_full = np.where(safe, (s_pp * s_y - s_phi * s_py) / det, -1.0)
        d_only = np.where(s_pp > 0.0, np.maximum(s_py / s_pp, 0.0), 0.0)
        c_only = np.where(s_v > 0.0, np.maximum(s_y / s_v, 0.0), 0.0)

    zeros = np.zeros_like(s_pp)
    candidates = [
        (d_only, zeros),
        (zeros, c_only),
        (zeros, zeros),
    ]
    best_d, best_c = candidates[0]
    best_cost = cost(best_d, best_c)
    for d, c in candidates[1:]:
        candidate_cost = cost(d, c)
        better = candidate_cost < best_cost
        best_d = np.where(better, d, best_d)
        best_c = np.where(better, c, best_c)
        best_cost = np.where(better, candidate_cost, best_cost)

    feasible = (d_full >= 0.0) & (c_full >= 0.0)
    best_d = np.where(feasible, d_full, best_d)
    best_c = np.where(feasible, c_full, best_c)
    return best_d, best_c


def estimate_final_diffuse(context: FitContext, basis: BasisSet, material: MaterialEstimate):
    """
    Per-texel diffuse albedo (and constant, if the settings ask for it).

    Returns:
        (diffuse (N, 3), constant (N, 3) or None). Texels with no valid
        observation fall back to the basis diffuse and a zero constant.
    """
    include_constant = context.settings.include_constant_term
    context.monitor.on_stage(FitStage.FINAL_DIFFUSE)

    def solve_block(index):
        m = _moments(context, basis, material, index)
        fallback = material.basis_diffuse(basis, index)
        observed = (m["v"] > 0.0)[:, np.newaxis]
        if include_constant:
            d, c = _solve_with_constant(m)
            return np.where(observed, d, fallback), np.where(observed, c, 0.0)
        return np.where(observed, _solve_diffuse_only(m), fallback), None

    results = context.map_blocks(solve_block, FitStage.FINAL_DIFFUSE, progress=(0.0, 1.0))
    diffuse = np.concatenate([d for d, _ in results]) if results else np.zeros((0, 3))
    constant = None
    if include_constant:
        constant = np.concatenate([c for _, c in results]) if results else np.zeros((0, 3))

    logger.info("Estimated final diffuse for %d texels%s", diffuse.shape[0],
                " with constant term" if include_constant else "")
    context.monitor.on_complete()
    return diffuse, constant
