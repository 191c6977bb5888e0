"""
Texture-space geometry for the specular fit.

Every map the fit produces (weights, diffuse, normal, roughness) lives on one
width × height texture raster. This module turns a UV-mapped mesh into the
per-texel surface samples the fit works on:

    1. For each texel, find the UV triangle that covers it and interpolate
       the triangle's world positions, vertex normals and vertex tangents at
       the texel centre (barycentric UV rasterization).
    2. Re-orthonormalize the interpolated frame per texel: normal first,
       tangent Gram-Schmidt'd against it, bitangent from the handedness sign.
    3. Return a TexelGeometry holding compact per-texel arrays plus the
       coverage mask.

Texture dilation:
    Exported maps are dilated by DILATION_PIXELS past the edge of each UV
    island so mipmapping does not bleed background into island borders. The
    same nearest-texel copy, with no distance limit, fills weight-map holes
    left by texels that no view observed.

Public API:
    load_mesh(path) → trimesh.Trimesh
    compute_vertex_tangents(mesh) → (N, 4) array or None
    rasterize_triangles(uvs, faces, vertex_data, width, height) → (H, W, C)
    dilate_texture(img, filled_mask, iterations) → array
    bake_texel_geometry(mesh, width, height) → TexelGeometry
"""

import logging
from pathlib import Path

import numpy as np
import trimesh
from scipy.ndimage import distance_transform_edt

from lustre_shop.core.capture import TexelGeometry
from lustre_shop.core.errors import TextureIOError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Barycentric inside test slack: texels exactly on a shared edge are claimed
# by at least one of the two triangles, so UV seams have no hairline gaps.
BARY_EPSILON = -1e-5

# Dilation radius in pixels for exported maps.
DILATION_PIXELS = 4


# ---------------------------------------------------------------------------
# Mesh loading
# ---------------------------------------------------------------------------

def load_mesh(path: Path, **kwargs) -> trimesh.Trimesh:
    """
    Load a UV-mapped mesh via trimesh and always return a single Trimesh.

    trimesh.load() returns a Scene for files with several material groups;
    a one-geometry Scene is unwrapped and a multi-geometry Scene is
    concatenated. Vertices are not merged (process=False) so UV seams survive.

    Raises:
        TextureIOError: the file cannot be read or carries no UV coordinates.
    """
    kwargs.setdefault("process", False)
    try:
        result = trimesh.load(path, **kwargs)
    except (OSError, ValueError) as e:
        raise TextureIOError(path, f"could not load mesh: {e}", "capture") from e

    if isinstance(result, trimesh.Scene):
        geometries = list(result.geometry.values())
        if not geometries:
            raise TextureIOError(path, "mesh file contains no geometry", "capture")
        result = geometries[0] if len(geometries) == 1 else trimesh.util.concatenate(geometries)

    uv = getattr(result.visual, "uv", None)
    if uv is None or len(uv) != len(result.vertices):
        raise TextureIOError(path, "mesh has no per-vertex UV coordinates", "capture")

    logger.info("Loaded mesh %s: %d vertices, %d faces", path, len(result.vertices), len(result.faces))
    return result


# ---------------------------------------------------------------------------
# Vertex tangents
# ---------------------------------------------------------------------------

def compute_vertex_tangents(mesh: trimesh.Trimesh) -> np.ndarray | None:
    """
    Per-vertex tangents from UV partial derivatives.

    For each triangle:

        r = 1 / (dU1*dV2 - dU2*dV1)
        T = (dV2 * edge1 - dV1 * edge2) * r
        B = (dU1 * edge2 - dU2 * edge1) * r

    T and B are summed over adjacent faces, T is Gram-Schmidt'd against the
    vertex normal, and w = sign((N × T) · B) records handedness.

    Returns:
        (N, 4) float32 (Tx, Ty, Tz, w), or None when the mesh has no
        usable UVs.
    """
    uv = getattr(mesh.visual, "uv", None)
    if uv is None:
        return None

    uvs = np.asarray(uv, dtype=np.float64)
    vertices = np.asarray(mesh.vertices, dtype=np.float64)
    faces = np.asarray(mesh.faces, dtype=np.int64)
    if len(uvs) != len(vertices) or len(faces) == 0:
        return None

    normals = np.asarray(mesh.vertex_normals, dtype=np.float64)
    n_verts = len(vertices)

    edge1 = vertices[faces[:, 1]] - vertices[faces[:, 0]]
    edge2 = vertices[faces[:, 2]] - vertices[faces[:, 0]]
    duv1 = uvs[faces[:, 1]] - uvs[faces[:, 0]]
    duv2 = uvs[faces[:, 2]] - uvs[faces[:, 0]]

    denom = duv1[:, 0] * duv2[:, 1] - duv2[:, 0] * duv1[:, 1]
    valid = np.abs(denom) > 1e-12
    r = np.where(valid, 1.0 / np.where(valid, denom, 1.0), 0.0)[:, np.newaxis]

    face_tangent = (duv2[:, 1:2] * edge1 - duv1[:, 1:2] * edge2) * r
    face_bitangent = (duv1[:, 0:1] * edge2 - duv2[:, 0:1] * edge1) * r

    tan1 = np.zeros((n_verts, 3))
    tan2 = np.zeros((n_verts, 3))
    for corner in range(3):
        np.add.at(tan1, faces[:, corner], face_tangent)
        np.add.at(tan2, faces[:, corner], face_bitangent)

    tangents = tan1 - normals * np.sum(normals * tan1, axis=1, keepdims=True)
    tangents = _normalize_or_fallback(tangents, normals)

    handedness = np.sign(np.sum(np.cross(normals, tangents) * tan2, axis=1))
    handedness = np.where(handedness == 0, 1.0, handedness)

    return np.concatenate([tangents, handedness[:, np.newaxis]], axis=1).astype(np.float32)


def _normalize_or_fallback(tangents: np.ndarray, normals: np.ndarray) -> np.ndarray:
    """
    Normalize tangents; where a tangent vanished, substitute any unit vector
    perpendicular to the normal (X axis, or Y when the normal is close to X).
    """
    norms = np.linalg.norm(tangents, axis=1, keepdims=True)
    degenerate = norms[:, 0] <= 1e-8
    tangents = tangents / np.where(norms > 1e-8, norms, 1.0)

    if degenerate.any():
        fallback = np.where(
            (np.abs(normals[:, 0]) >= 0.9)[:, np.newaxis],
            np.array([[0.0, 1.0, 0.0]]),
            np.array([[1.0, 0.0, 0.0]]),
        )
        fallback = fallback - normals * np.sum(normals * fallback, axis=1, keepdims=True)
        fallback /= np.maximum(np.linalg.norm(fallback, axis=1, keepdims=True), 1e-12)
        tangents[degenerate] = fallback[degenerate]
    return tangents


# ---------------------------------------------------------------------------
# UV-space triangle rasterization
# ---------------------------------------------------------------------------

def rasterize_triangles(uvs, faces, vertex_data, width, height):
    """
    Rasterize UV-mapped triangles into a width × height raster.

    Texel (row, col) samples UV ((col + 0.5) / width, 1 − (row + 0.5) / height):
    V is flipped because UV has its origin bottom-left and image rows run
    top-down.

    Args:
        uvs:         (N, 2) UV coordinates in [0, 1]².
        faces:       (F, 3) triangle vertex indices.
        vertex_data: (N, C) per-vertex data to interpolate.
        width:       raster width in texels.
        height:      raster height in texels.

    Returns:
        (height, width, C) float64 array; texels outside every triangle are 0.
    """
    uvs = np.asarray(uvs, dtype=np.float64)
    vertex_data = np.asarray(vertex_data, dtype=np.float64)
    img = np.zeros((height, width, vertex_data.shape[1]), dtype=np.float64)

    # Pixel-space positions such that texel centres sit on integers.
    px = uvs[:, 0] * width - 0.5
    py = (1.0 - uvs[:, 1]) * height - 0.5

    for face in np.asarray(faces, dtype=np.int64):
        i0, i1, i2 = int(face[0]), int(face[1]), int(face[2])
        x0, y0 = px[i0], py[i0]
        x1, y1 = px[i1], py[i1]
        x2, y2 = px[i2], py[i2]

        xmin = max(0, int(np.floor(min(x0, x1, x2))))
        xmax = min(width - 1, int(np.ceil(max(x0, x1, x2))))
        ymin = max(0, int(np.floor(min(y0, y1, y2))))
        ymax = min(height - 1, int(np.ceil(max(y0, y1, y2))))
        if xmin > xmax or ymin > ymax:
            continue

        denom = (y1 - y2) * (x0 - x2) + (x2 - x1) * (y0 - y2)
        if abs(denom) < 1e-12:
            continue

        xx, yy = np.meshgrid(np.arange(xmin, xmax + 1, dtype=np.float64),
                             np.arange(ymin, ymax + 1, dtype=np.float64))
        w0 = ((y1 - y2) * (xx - x2) + (x2 - x1) * (yy - y2)) / denom
        w1 = ((y2 - y0) * (xx - x2) + (x0 - x2) * (yy - y2)) / denom
        w2 = 1.0 - w0 - w1

        inside = (w0 >= BARY_EPSILON) & (w1 >= BARY_EPSILON) & (w2 >= BARY_EPSILON)
        if not inside.any():
            continue

        iy, ix = np.where(inside)
        interpolated = (w0[iy, ix, np.newaxis] * vertex_data[i0]
                        + w1[iy, ix, np.newaxis] * vertex_data[i1]
                        + w2[iy, ix, np.newaxis] * vertex_data[i2])
        img[ymin + iy, xmin + ix] = interpolated

    return img


# ---------------------------------------------------------------------------
# Texture dilation
# ---------------------------------------------------------------------------

def dilate_texture(img_data, filled_mask, iterations=DILATION_PIXELS):
    """
    Copy each unfilled texel from its nearest filled texel.

    Args:
        img_data:    (H, W, C) or (H, W) array.
        filled_mask: (H, W) bool, True where img_data holds real values.
        iterations:  maximum distance in texels to fill; None fills every
                     unfilled texel.

    Returns:
        A dilated copy of img_data. With no filled texel at all the copy is
        returned unchanged.
    """
    result = np.array(img_data, copy=True)
    filled_mask = np.asarray(filled_mask, dtype=bool)
    if not filled_mask.any() or filled_mask.all():
        return result

    dist, nearest_indices = distance_transform_edt(~filled_mask, return_indices=True)

    dilation_mask = dist > 0
    if iterations is not None:
        dilation_mask &= dist <= iterations

    if dilation_mask.any():
        nearest_r = nearest_indices[0][dilation_mask]
        nearest_c = nearest_indices[1][dilation_mask]
        result[dilation_mask] = img_data[nearest_r, nearest_c]
    return result


# ---------------------------------------------------------------------------
# Texel geometry baking
# ---------------------------------------------------------------------------

def bake_texel_geometry(mesh: trimesh.Trimesh, width: int, height: int) -> TexelGeometry:
    """
    Sample the mesh surface at every texel covered by its UV layout.

    One rasterization pass carries position (3), vertex normal (3), vertex
    tangent with handedness (4) and a constant coverage channel (1); coverage
    interpolates to 1 inside every triangle, which gives the mask.
    """
    uvs = np.asarray(mesh.visual.uv, dtype=np.float64)
    faces = np.asarray(mesh.faces, dtype=np.int64)
    positions = np.asarray(mesh.vertices, dtype=np.float64)
    normals = np.asarray(mesh.vertex_normals, dtype=np.float64)

    tangents = compute_vertex_tangents(mesh)
    if tangents is None:
        raise TextureIOError(getattr(mesh, "metadata", {}).get("file_path", "<mesh>"),
                             "cannot build tangent frames without UV coordinates", "geometry")

    vertex_data = np.concatenate([
        positions, normals, tangents.astype(np.float64), np.ones((len(positions), 1)),
    ], axis=1)
    raster = rasterize_triangles(uvs, faces, vertex_data, width, height)

    mask = raster[:, :, 10] > 0.5
    texels = raster[mask]

    texel_normals = texels[:, 3:6]
    texel_normals /= np.maximum(np.linalg.norm(texel_normals, axis=1, keepdims=True), 1e-12)

    texel_tangents = texels[:, 6:9]
    texel_tangents = texel_tangents - texel_normals * np.sum(
        texel_normals * texel_tangents, axis=1, keepdims=True)
    texel_tangents = _normalize_or_fallback(texel_tangents, texel_normals)

    handedness = np.where(texels[:, 9] < 0.0, -1.0, 1.0)[:, np.newaxis]
    texel_bitangents = handedness * np.cross(texel_normals, texel_tangents)

    logger.debug("Rasterized %d faces into %d of %d texels",
                 len(faces), int(mask.sum()), width * height)

    return TexelGeometry(
        width=width,
        height=height,
        mask=mask,
        positions=texels[:, 0:3],
        normals=texel_normals,
        tangents=texel_tangents,
        bitangents=texel_bitangents,
    )
