"""
Continuous GGX fit from the basis tables.

A normalized GGX lobe D satisfies ∫ D(h) (n·h) dω = 1, so a specular lobe
of the form F0 · D has

    F0   = 2π ∫₀¹ spec(u) u du      (u = half-angle cosine)
    peak = spec(u = 1) = F0 / (π α²)

Both moments are linear in the tables, so they are computed once per basis
function and mixed per texel with the basis weights. Roughness then
follows from α² = F0 / (π · peak), evaluated on luminance so all three
channels share one α.
"""

import numpy as np
from scipy.integrate import trapezoid

from lustre_shop.core.brdf import half_angle_cosine
from lustre_shop.core.model import BasisSet

MIN_ROUGHNESS = 0.01
MAX_ROUGHNESS = 1.0

# Rec. 709 luminance.
LUMINANCE = np.array([0.2126, 0.7152, 0.0722])


def basis_moments(basis: BasisSet):
    """
    Per-basis specular reflectivity and peak value.

    Returns:
        (f0, peak): each (B, 3).
    """
    u = half_angle_cosine(basis.resolution)
    # u runs from 1 down to 0 along the bins; negate to integrate upward.
    f0 = -2.0 * np.pi * trapezoid(basis.specular * u[np.newaxis, :, np.newaxis], x=u, axis=1)
    peak = basis.specular[:, 0, :]
    return f0, peak


def fit_roughness(basis: BasisSet, weights: np.ndarray):
    """
    Per-texel GGX roughness and F0 from the weighted basis.

    Args:
        basis:   current basis set.
        weights: (N, B) basis weights.

    Returns:
        (roughness (N,), specular_reflectivity (N, 3)). Texels with no
        specular peak get roughness 1 and zero reflectivity.
    """
    f0_basis, peak_basis = basis_moments(basis)
    w = np.asarray(weights, dtype=np.float64)
    f0 = np.maximum(w @ f0_basis, 0.0)
    peak = w @ peak_basis

    f0_lum = f0 @ LUMINANCE
    peak_lum = peak @ LUMINANCE
    has_lobe = peak_lum > 0.0

    alpha_sq = np.where(has_lobe, f0_lum / (np.pi * np.where(has_lobe, peak_lum, 1.0)), 1.0)
    roughness = np.clip(np.sqrt(np.maximum(alpha_sq, 0.0)), MIN_ROUGHNESS, MAX_ROUGHNESS)
    roughness = np.where(has_lobe, roughness, MAX_ROUGHNESS)
    f0 = np.where(has_lobe[:, np.newaxis], f0, 0.0)
    return roughness, f0
