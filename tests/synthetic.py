"""Builders for small synthetic captures shared across the test suite."""

import math

import numpy as np
import trimesh

from lustre_shop.core.brdf import ShadingFrame
from lustre_shop.core.capture import (
    Capture,
    LightSource,
    Projection,
    TexelGeometry,
    TexelObservations,
    View,
    ViewSet,
)
from lustre_shop.core.model import BasisSet, MaterialEstimate, ShadingModel, SpecularFit, predict_radiance
from lustre_shop.core.progress import CallbackMonitor
from lustre_shop.core.renderer import TexelSplatRenderer
from lustre_shop.core.settings import (
    NormalOptimizationSettings,
    SpecularBasisSettings,
    SpecularFitSettings,
)


def look_at(eye, target=(0.0, 0.0, 0.0), up=(0.0, 1.0, 0.0)) -> np.ndarray:
    """OpenGL world-to-camera matrix for a camera at eye looking at target."""
    eye = np.asarray(eye, dtype=np.float64)
    forward = np.asarray(target, dtype=np.float64) - eye
    forward /= np.linalg.norm(forward)
    right = np.cross(forward, np.asarray(up, dtype=np.float64))
    if np.linalg.norm(right) < 1e-9:
        right = np.cross(forward, np.array([1.0, 0.0, 0.0]))
    right /= np.linalg.norm(right)
    true_up = np.cross(right, forward)

    rotation = np.stack([right, true_up, -forward])
    pose = np.eye(4)
    pose[:3, :3] = rotation
    pose[:3, 3] = -rotation @ eye
    return pose


def orbit_views(angles_deg, distance=3.0, axis="x", image_size=(64, 64),
                fov_deg=40.0, light_index=0):
    """Views on an arc around the origin, tilted about the y axis ("x") or x axis ("y")."""
    views = []
    width, height = image_size
    for i, angle in enumerate(angles_deg):
        t = math.radians(angle)
        if axis == "x":
            eye = (distance * math.sin(t), 0.0, distance * math.cos(t))
        else:
            eye = (0.0, distance * math.sin(t), distance * math.cos(t))
        views.append(View(
            camera_pose=look_at(eye),
            projection=Projection(math.radians(fov_deg), width / height),
            light_index=light_index,
            image_size=image_size,
            name=f"{axis}{angle:+.0f}",
        ))
    return views


def co_located_view_set(angles_x=(0.0, 15.0, 30.0, 45.0), angles_y=(20.0, -35.0),
                        distance=3.0, image_size=(64, 64)) -> ViewSet:
    """Views with a flash at the camera; intensity cancels the 1/d² falloff at the origin."""
    views = orbit_views(angles_x, distance, "x", image_size) + orbit_views(angles_y, distance, "y", image_size)
    intensity = distance * distance
    return ViewSet(tuple(views), (LightSource((0.0, 0.0, 0.0), (intensity,) * 3),))


def plane_geometry(width=4, height=4, size=1.0, z=0.0) -> TexelGeometry:
    """A square z-facing plane centred on the origin, every texel covered."""
    rows, cols = np.mgrid[0:height, 0:width]
    u = (cols + 0.5) / width
    v = 1.0 - (rows + 0.5) / height
    positions = np.stack([(u - 0.5) * size, (v - 0.5) * size, np.full(u.shape, z)], axis=-1).reshape(-1, 3)
    count = width * height
    return TexelGeometry(
        width=width,
        height=height,
        mask=np.ones((height, width), dtype=bool),
        positions=positions,
        normals=np.tile([0.0, 0.0, 1.0], (count, 1)),
        tangents=np.tile([1.0, 0.0, 0.0], (count, 1)),
        bitangents=np.tile([0.0, 1.0, 0.0], (count, 1)),
    )


def two_material_truth(geometry: TexelGeometry) -> MaterialEstimate:
    """Left half glossy red, right half rough blue; flat normals."""
    n = geometry.texel_count
    material = MaterialEstimate.initial(n, 1)
    left = (np.arange(n) % geometry.width) < geometry.width // 2
    material.diffuse = np.where(left[:, None], [0.6, 0.3, 0.2], [0.2, 0.4, 0.5])
    material.roughness = np.where(left, 0.3, 0.6)
    material.specular_reflectivity = np.where(left[:, None], [0.2, 0.2, 0.2], [0.05, 0.05, 0.05])
    return material


def render_observations(geometry: TexelGeometry, view_set: ViewSet, material: MaterialEstimate,
                        model=ShadingModel.GGX, basis: BasisSet | None = None,
                        smith=False) -> TexelObservations:
    """Exact model radiance for every (view, texel), valid where the texel faces camera and light."""
    frame = ShadingFrame.from_view_set(view_set, geometry.positions)
    if basis is None:
        basis = BasisSet.zeros(material.basis_count, 8)
    normals = geometry.tangent_to_world(material.normals)
    radiance = predict_radiance(model, frame, normals, basis, material, slice(None), smith)
    cosines = frame.cosines(geometry.normals)
    weight = ((cosines.n_dot_l > 0.0) & (cosines.n_dot_v > 0.0)).astype(np.float32)
    return TexelObservations(radiance, weight)


def render_capture(geometry: TexelGeometry, view_set: ViewSet,
                   observations: TexelObservations) -> Capture:
    """A Capture whose photographs are the observations splatted into each view."""
    renderer = TexelSplatRenderer(geometry, view_set)
    photographs = [renderer.render(k, observations.radiance[k]).color.astype(np.float32)
                   for k in range(len(view_set))]
    return Capture(view_set=view_set, geometry=geometry, photographs=photographs)


def small_settings(texture_size=(4, 4), basis_count=2, normal=False, smith=False,
                   **overrides) -> SpecularFitSettings:
    """Settings sized for a few-texel capture: low resolution, few functions, small blocks."""
    width, height = texture_size
    values = dict(
        texture_width=width,
        texture_height=height,
        max_iterations=6,
        block_size=7,
        max_workers=2,
        basis=SpecularBasisSettings(
            basis_count=basis_count,
            basis_resolution=20,
            specular_min_width=2,
            specular_max_width=20,
            basis_complexity=5,
            smith_masking_shadowing=smith,
        ),
        normal=NormalOptimizationSettings(enabled=normal),
    )
    values.update(overrides)
    return SpecularFitSettings(**values)


def stacked_geometry(front_z=0.5, camera_distance=3.0, xs=(-0.3, -0.1, 0.1, 0.3), y=0.05):
    """
    Two rows of texels on the same camera rays: row 0 at front_z, row 1 at
    z = 0 directly behind it as seen from a camera on the +z axis.
    """
    scale = camera_distance / (camera_distance - front_z)
    front = [(x, y, front_z) for x in xs]
    back = [(x * scale, y * scale, 0.0) for x in xs]
    count = 2 * len(xs)
    return TexelGeometry(
        width=len(xs),
        height=2,
        mask=np.ones((2, len(xs)), dtype=bool),
        positions=np.array(front + back),
        normals=np.tile([0.0, 0.0, 1.0], (count, 1)),
        tangents=np.tile([1.0, 0.0, 0.0], (count, 1)),
        bitangents=np.tile([0.0, 1.0, 0.0], (count, 1)),
    )


def single_view_set(distance=3.0, image_size=(64, 64)) -> ViewSet:
    """One head-on view along +z with a co-located flash."""
    views = orbit_views((0.0,), distance, "x", image_size)
    return ViewSet(tuple(views), (LightSource((0.0, 0.0, 0.0), (distance * distance,) * 3),))


def uv_plane_mesh(size=1.0, flip_v=False):
    """A two-triangle unit square in the z = 0 plane with UVs spanning [0, 1]²."""
    vertices = np.array([[-0.5, -0.5, 0.0], [0.5, -0.5, 0.0], [0.5, 0.5, 0.0], [-0.5, 0.5, 0.0]]) * size
    faces = np.array([[0, 1, 2], [0, 2, 3]])
    uv = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]])
    if flip_v:
        uv[:, 1] = 1.0 - uv[:, 1]
    return trimesh.Trimesh(vertices=vertices, faces=faces,
                           visual=trimesh.visual.TextureVisuals(uv=uv), process=False)


def random_fit(geometry: TexelGeometry, rng, basis_count=5, constant=False) -> SpecularFit:
    """A fit with random but valid maps and monotone basis tables."""
    n = geometry.texel_count
    weights = rng.random((n, basis_count))
    weights /= weights.sum(axis=1, keepdims=True)
    normals = np.column_stack([rng.uniform(-0.3, 0.3, (n, 2)), np.ones(n)])
    normals /= np.linalg.norm(normals, axis=1, keepdims=True)

    material = MaterialEstimate(
        weights=weights.astype(np.float32),
        weight_mask=rng.random(n) > 0.2,
        normals=normals,
        roughness=rng.uniform(0.1, 1.0, n),
        specular_reflectivity=rng.uniform(0.0, 0.3, (n, 3)),
        diffuse=rng.uniform(0.0, 1.0, (n, 3)),
        constant=rng.uniform(0.0, 0.2, (n, 3)) if constant else None,
    )
    specular = np.cumsum(rng.random((basis_count, 21, 3)), axis=1)[:, ::-1].copy()
    basis = BasisSet(rng.random((basis_count, 3)), specular)
    return SpecularFit(basis, material, geometry, smith_masking_shadowing=False)


def recording_monitor(**kwargs):
    """A CallbackMonitor that records every stage, fraction and completion it receives."""
    calls = {"stage": [], "progress": [], "complete": 0}

    def complete():
        calls["complete"] += 1

    monitor = CallbackMonitor(on_stage=calls["stage"].append, on_progress=calls["progress"].append,
                              on_complete=complete, **kwargs)
    return monitor, calls
