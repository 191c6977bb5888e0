"""
Shading model shared by every stage of the fit.

All stages predict the radiance of a texel seen in a view the same way:

    radiance = E / d² · max(n·l, 0) · ( diffuse / π + G · spec(n·h) ) [+ constant]

where E is the light intensity, d the light distance, G the Smith
masking-shadowing ratio G₂ / (4 n·l n·v) (a flat 1/4 when masking is
disabled), and spec either a basis table indexed by the half-angle or a GGX
lobe. The pieces that depend only on texel position (light and view
directions, falloff) are computed once per block of texels as a
ShadingFrame; the pieces that depend on the normal are recomputed cheaply
from it, which is what normal refinement needs.

Basis tables are indexed by

    m = resolution · sqrt(1 − n·h)

so bin m holds half-angle cosine 1 − (m / resolution)²; bins are densest
near the specular peak where lobes change fastest.
"""

from dataclasses import dataclass

import numpy as np

from lustre_shop.core.smoothstep_basis import interpolation_weights


# Floor on n·l and n·v inside the Smith term; grazing samples have tiny
# cosines and would otherwise blow the ratio up.
MIN_COSINE = 1e-4

# Geometry ratio when Smith masking-shadowing is disabled: G = 1.
UNMASKED_GEOMETRY_RATIO = 0.25


def _normalize(vectors: np.ndarray) -> np.ndarray:
    return vectors / np.maximum(np.linalg.norm(vectors, axis=-1, keepdims=True), 1e-12)


@dataclass(eq=False)
class ShadingCosines:
    """n·l, n·v and n·h for every (view, texel) pair of a block, each (V, n)."""
    n_dot_l: np.ndarray
    n_dot_v: np.ndarray
    n_dot_h: np.ndarray


@dataclass(eq=False)
class ShadingFrame:
    """
    Normal-independent shading inputs for a block of texels.

    light_dir, view_dir, half_dir: (V, n, 3) unit vectors from the texel.
    irradiance:                    (V, n, 3) E / d² per channel.
    """
    light_dir: np.ndarray
    view_dir: np.ndarray
    half_dir: np.ndarray
    irradiance: np.ndarray

    @classmethod
    def from_view_set(cls, view_set, positions: np.ndarray, views=None) -> "ShadingFrame":
        """Frame for the given texel positions; views selects a subset (default all)."""
        positions = np.asarray(positions, dtype=np.float64)
        views = range(len(view_set)) if views is None else views
        light_positions = np.stack([view_set.light_position(k) for k in views])
        camera_positions = np.stack([view_set.camera_position(k) for k in views])
        intensities = np.stack([view_set.light_intensity(k) for k in views])

        to_light = light_positions[:, np.newaxis, :] - positions[np.newaxis, :, :]
        to_camera = camera_positions[:, np.newaxis, :] - positions[np.newaxis, :, :]
        distance_sq = np.maximum(np.sum(to_light * to_light, axis=-1), 1e-12)

        light_dir = _normalize(to_light)
        view_dir = _normalize(to_camera)
        return cls(
            light_dir=light_dir,
            view_dir=view_dir,
            half_dir=_normalize(light_dir + view_dir),
            irradiance=intensities[:, np.newaxis, :] / distance_sq[:, :, np.newaxis],
        )

    @property
    def view_count(self) -> int:
        return self.light_dir.shape[0]

    def cosines(self, normals: np.ndarray) -> ShadingCosines:
        """Cosines for (n, 3) world-space unit normals."""
        normals = np.asarray(normals, dtype=np.float64)[np.newaxis, :, :]
        return ShadingCosines(
            n_dot_l=np.sum(self.light_dir * normals, axis=-1),
            n_dot_v=np.sum(self.view_dir * normals, axis=-1),
            n_dot_h=np.sum(self.half_dir * normals, axis=-1),
        )

    def incident(self, cosines: ShadingCosines) -> np.ndarray:
        """(V, n, 3) E / d² · max(n·l, 0)."""
        return self.irradiance * np.maximum(cosines.n_dot_l, 0.0)[:, :, np.newaxis]


def half_angle_index(n_dot_h: np.ndarray, resolution: int) -> np.ndarray:
    """Fractional basis-table position for half-angle cosines."""
    return resolution * np.sqrt(np.clip(1.0 - n_dot_h, 0.0, 1.0))


def half_angle_cosine(resolution: int) -> np.ndarray:
    """Half-angle cosine at each of the resolution + 1 table bins."""
    m = np.arange(resolution + 1, dtype=np.float64)
    return 1.0 - (m / resolution) ** 2


def interpolate_tables(tables: np.ndarray, m_exact: np.ndarray) -> np.ndarray:
    """
    Evaluate per-texel tables at per-sample positions.

    Args:
        tables:  (n, M + 1, C) one table per texel.
        m_exact: (V, n) fractional bin positions.

    Returns:
        (V, n, C) linearly interpolated values.
    """
    resolution = tables.shape[1] - 1
    floor, t = interpolation_weights(m_exact, resolution)
    texel = np.arange(tables.shape[0])[np.newaxis, :]
    lower = tables[texel, floor]
    upper = tables[texel, floor + 1]
    t = t[:, :, np.newaxis]
    return lower * (1.0 - t) + upper * t


def interpolate_basis(specular: np.ndarray, m_exact: np.ndarray) -> np.ndarray:
    """
    Evaluate every basis table at per-texel positions.

    Args:
        specular: (B, M + 1, C) basis tables.
        m_exact:  (n,) fractional bin positions.

    Returns:
        (n, B, C).
    """
    resolution = specular.shape[1] - 1
    floor, t = interpolation_weights(m_exact, resolution)
    lower = specular[:, floor]                      # (B, n, C)
    upper = specular[:, floor + 1]
    value = lower * (1.0 - t[np.newaxis, :, np.newaxis]) + upper * t[np.newaxis, :, np.newaxis]
    return np.transpose(value, (1, 0, 2))


def ggx_distribution(n_dot_h: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """GGX / Trowbridge-Reitz normal distribution D(h)."""
    alpha_sq = np.asarray(alpha, dtype=np.float64) ** 2
    cos_sq = np.clip(n_dot_h, 0.0, 1.0) ** 2
    denom = cos_sq * (alpha_sq - 1.0) + 1.0
    return alpha_sq / (np.pi * denom * denom)


def geometry_ratio(cosines: ShadingCosines, roughness: np.ndarray | None) -> np.ndarray:
    """
    G₂ / (4 n·l n·v) per sample, (V, n).

    With roughness None (masking disabled) the ratio is a flat 1/4.
    Otherwise uses the height-correlated Smith form

        G₂ / (4 n·l n·v) = 0.5 / (n·l · sqrt(n·v²(1 − α²) + α²)
                                  + n·v · sqrt(n·l²(1 − α²) + α²))

    with α the per-texel roughness broadcast over views.
    """
    if roughness is None:
        return np.full(cosines.n_dot_l.shape, UNMASKED_GEOMETRY_RATIO)

    alpha_sq = (np.asarray(roughness, dtype=np.float64) ** 2)[np.newaxis, :]
    nl = np.maximum(cosines.n_dot_l, MIN_COSINE)
    nv = np.maximum(cosines.n_dot_v, MIN_COSINE)
    lambda_v = nl * np.sqrt(nv * nv * (1.0 - alpha_sq) + alpha_sq)
    lambda_l = nv * np.sqrt(nl * nl * (1.0 - alpha_sq) + alpha_sq)
    return 0.5 / (lambda_v + lambda_l)


def tangent_plane_basis(normals: np.ndarray):
    """
    Two unit vectors spanning the plane perpendicular to each normal.

    Args:
        normals: (n, 3) unit normals.

    Returns:
        (u, v): each (n, 3); (u, v, normal) is right-handed.
    """
    normals = np.asarray(normals, dtype=np.float64)
    reference = np.where(
        (np.abs(normals[:, 2]) < 0.9)[:, np.newaxis],
        np.array([[0.0, 0.0, 1.0]]),
        np.array([[1.0, 0.0, 0.0]]),
    )
    u = _normalize(np.cross(reference, normals))
    v = np.cross(normals, u)
    return u, v
