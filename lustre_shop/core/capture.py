"""
Capture data model: calibrated views, lights, texel geometry, photographs.

A capture is everything the fit consumes:

    ViewSet            ordered camera poses (4×4 world-to-camera, OpenGL
                       convention: the camera looks down −Z), perspective
                       projections, and the light used for each view.
    TexelGeometry      the surface, sampled once per covered texel of the
                       output texture: world position and a tangent frame
                       (tangent, bitangent, geometric normal).
    photographs        one linear-radiance RGB image per view.

sample_observations() turns these into TexelObservations: for every view and
every covered texel, the radiance seen at the texel's re-projected pixel and
a validity weight. A sample is valid only if the texel lands inside the
image, in front of the camera, faces both the camera and the light, wins the
depth test against the rest of the surface, is not under the view's alpha
mask, and is not saturated. Everything downstream (decomposition, normal
refinement, error calculation) reads observations only through that
weight, so occluded and out-of-frame samples drop out in one place.

load_capture() reads a capture directory (capture.json + images + mesh);
see its docstring for the layout.
"""

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image

from lustre_shop.core.errors import DimensionMismatchError, TextureIOError
from lustre_shop.core.renderer import TexelSplatRenderer
from lustre_shop.core.residual import decode_srgb

logger = logging.getLogger(__name__)


# Relative depth slack for the occlusion test: a texel counts as visible if it
# is no more than this fraction farther away than the nearest surface texel
# splatted into the same pixel.
DEFAULT_DEPTH_TOLERANCE = 0.01


# ---------------------------------------------------------------------------
# Views and lights
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Projection:
    """Symmetric perspective projection. vertical_fov is in radians."""
    vertical_fov: float
    aspect: float
    near: float = 0.01
    far: float = 1000.0

    def __post_init__(self):
        if not 0.0 < self.vertical_fov < math.pi:
            raise ValueError("Vertical field of view must be between 0 and pi radians.")
        if self.aspect <= 0.0:
            raise ValueError("Aspect ratio must be greater than zero.")
        if not 0.0 < self.near < self.far:
            raise ValueError("Near and far planes must satisfy 0 < near < far.")

    @property
    def focal_scale(self) -> float:
        return 1.0 / math.tan(self.vertical_fov / 2.0)


@dataclass(frozen=True)
class LightSource:
    """
    Point light. position is in the camera space of the view that uses it,
    so a flash mounted on the camera sits at the origin. intensity is RGB.
    """
    position: tuple[float, float, float] = (0.0, 0.0, 0.0)
    intensity: tuple[float, float, float] = (1.0, 1.0, 1.0)


@dataclass(frozen=True, eq=False)
class View:
    """One calibrated photograph."""
    camera_pose: np.ndarray          # (4, 4) world-to-camera
    projection: Projection
    light_index: int
    image_size: tuple[int, int]      # (width, height)
    name: str = ""

    def __post_init__(self):
        pose = np.asarray(self.camera_pose, dtype=np.float64)
        if pose.shape != (4, 4):
            raise ValueError(f"Camera pose must be 4x4, got {pose.shape}")
        object.__setattr__(self, "camera_pose", pose)

    @property
    def camera_to_world(self) -> np.ndarray:
        return np.linalg.inv(self.camera_pose)

    @property
    def camera_position(self) -> np.ndarray:
        return self.camera_to_world[:3, 3]

    def to_world(self, camera_point) -> np.ndarray:
        point = np.append(np.asarray(camera_point, dtype=np.float64), 1.0)
        return (self.camera_to_world @ point)[:3]

    def project(self, world_points: np.ndarray):
        """
        Project world-space points into this view's image.

        Args:
            world_points: (N, 3) float array.

        Returns:
            (rows, cols, depth, in_frame): integer pixel indices (clipped to
            the image so they are always safe to index with), positive
            distance along the viewing axis, and a bool mask of points that
            actually land inside the image between the near and far planes.
        """
        width, height = self.image_size
        points = np.asarray(world_points, dtype=np.float64)
        camera = points @ self.camera_pose[:3, :3].T + self.camera_pose[:3, 3]

        # Camera looks down −Z; depth is the distance in front of it.
        depth = -camera[:, 2]
        safe_depth = np.where(depth > 0.0, depth, 1.0)

        f = self.projection.focal_scale
        ndc_x = f / self.projection.aspect * camera[:, 0] / safe_depth
        ndc_y = f * camera[:, 1] / safe_depth

        # NDC → pixel coordinates; image row 0 is the top of the frame.
        px = (ndc_x + 1.0) * 0.5 * width
        py = (1.0 - ndc_y) * 0.5 * height

        in_frame = (
            (depth > self.projection.near) & (depth < self.projection.far)
            & (px >= 0.0) & (px < width) & (py >= 0.0) & (py < height)
        )

        cols = np.clip(np.floor(px), 0, width - 1).astype(np.int64)
        rows = np.clip(np.floor(py), 0, height - 1).astype(np.int64)
        return rows, cols, depth, in_frame


@dataclass(frozen=True, eq=False)
class ViewSet:
    """Ordered, immutable collection of views plus the lights they use."""
    views: tuple[View, ...]
    lights: tuple[LightSource, ...]
    primary_view_index: int = 0

    def __post_init__(self):
        object.__setattr__(self, "views", tuple(self.views))
        object.__setattr__(self, "lights", tuple(self.lights))
        if not self.views:
            raise ValueError("A view set needs at least one view.")
        if not 0 <= self.primary_view_index < len(self.views):
            raise ValueError(f"Primary view index {self.primary_view_index} is out of range.")
        for i, view in enumerate(self.views):
            if not 0 <= view.light_index < len(self.lights):
                raise ValueError(f"View {i} references missing light {view.light_index}.")

    def __len__(self):
        return len(self.views)

    def __getitem__(self, index: int) -> View:
        return self.views[index]

    def camera_position(self, view_index: int) -> np.ndarray:
        return self.views[view_index].camera_position

    def light_position(self, view_index: int) -> np.ndarray:
        view = self.views[view_index]
        return view.to_world(self.lights[view.light_index].position)

    def light_intensity(self, view_index: int) -> np.ndarray:
        view = self.views[view_index]
        return np.asarray(self.lights[view.light_index].intensity, dtype=np.float64)


# ---------------------------------------------------------------------------
# Texel geometry
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class TexelGeometry:
    """
    The surface sampled at each covered texel of a width × height texture.

    Per-texel arrays are compact: they hold one row per covered texel, in
    row-major raster order of `mask`. to_raster()/from_raster() convert
    between the compact form and full (height, width, ...) images.
    """
    width: int
    height: int
    mask: np.ndarray         # (H, W) bool, texels covered by the surface
    positions: np.ndarray    # (N, 3) world positions
    normals: np.ndarray      # (N, 3) geometric normals
    tangents: np.ndarray     # (N, 3)
    bitangents: np.ndarray   # (N, 3)

    def __post_init__(self):
        mask = np.asarray(self.mask, dtype=bool)
        if mask.shape != (self.height, self.width):
            raise DimensionMismatchError(
                f"Coverage mask is {mask.shape}, expected {(self.height, self.width)}",
                "geometry",
            )
        object.__setattr__(self, "mask", mask)
        count = int(mask.sum())
        for name in ("positions", "normals", "tangents", "bitangents"):
            array = np.asarray(getattr(self, name), dtype=np.float64)
            if array.shape != (count, 3):
                raise DimensionMismatchError(
                    f"Texel {name} has shape {array.shape}, expected {(count, 3)}",
                    "geometry",
                )
            object.__setattr__(self, name, array)

    @property
    def texel_count(self) -> int:
        return self.positions.shape[0]

    @property
    def tbn(self) -> np.ndarray:
        """(N, 3, 3) matrices whose columns are tangent, bitangent, normal."""
        return np.stack([self.tangents, self.bitangents, self.normals], axis=-1)

    def tangent_to_world(self, tangent_normals: np.ndarray, index=slice(None)) -> np.ndarray:
        """Rotate tangent-space normals into world space and renormalize."""
        tangent_normals = np.asarray(tangent_normals, dtype=np.float64)
        world = (self.tangents[index] * tangent_normals[..., 0:1]
                 + self.bitangents[index] * tangent_normals[..., 1:2]
                 + self.normals[index] * tangent_normals[..., 2:3])
        return world / np.maximum(np.linalg.norm(world, axis=-1, keepdims=True), 1e-12)

    def world_to_tangent(self, world_normals: np.ndarray, index=slice(None)) -> np.ndarray:
        world_normals = np.asarray(world_normals, dtype=np.float64)
        ts = np.stack([
            np.sum(world_normals * self.tangents[index], axis=-1),
            np.sum(world_normals * self.bitangents[index], axis=-1),
            np.sum(world_normals * self.normals[index], axis=-1),
        ], axis=-1)
        return ts / np.maximum(np.linalg.norm(ts, axis=-1, keepdims=True), 1e-12)

    def to_raster(self, values: np.ndarray, fill=0.0) -> np.ndarray:
        """Scatter compact (N, ...) values into a (H, W, ...) raster."""
        values = np.asarray(values)
        if values.shape[0] != self.texel_count:
            raise DimensionMismatchError(
                f"Got {values.shape[0]} texel values for {self.texel_count} texels",
                "geometry",
            )
        raster = np.empty((self.height, self.width) + values.shape[1:], dtype=values.dtype)
        raster[...] = fill
        raster[self.mask] = values
        return raster

    def from_raster(self, raster: np.ndarray) -> np.ndarray:
        """Gather a (H, W, ...) raster into compact (N, ...) values."""
        raster = np.asarray(raster)
        if raster.shape[:2] != (self.height, self.width):
            raise DimensionMismatchError(
                f"Raster is {raster.shape[:2]}, expected {(self.height, self.width)}",
                "geometry",
            )
        return raster[self.mask]

    def blocks(self, block_size: int) -> list[slice]:
        """Split the texel range into contiguous work items."""
        return [slice(start, min(start + block_size, self.texel_count))
                for start in range(0, self.texel_count, block_size)]


# ---------------------------------------------------------------------------
# Capture and observations
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class Capture:
    """
    A calibrated capture ready to fit.

    photographs are linear RGB float arrays, one per view, sized to the view's
    image_size. masks (optional) hold a per-pixel weight in [0, 1]; 0 masks
    the pixel out. saturation_level (optional) drops samples where any
    channel reaches it; 8-bit photographs clip at 1.0.
    """
    view_set: ViewSet
    geometry: TexelGeometry
    photographs: list[np.ndarray]
    masks: list[np.ndarray | None] | None = None
    reference_normal_map: np.ndarray | None = None   # (H, W, 3) tangent space
    saturation_level: float | None = None
    mesh: object | None = None                      # trimesh.Trimesh, for glTF export

    def __post_init__(self):
        if len(self.photographs) != len(self.view_set):
            raise DimensionMismatchError(
                f"{len(self.photographs)} photographs for {len(self.view_set)} views",
                "capture",
            )
        for i, (view, photo) in enumerate(zip(self.view_set.views, self.photographs)):
            width, height = view.image_size
            if photo.shape[:2] != (height, width):
                raise DimensionMismatchError(
                    f"Photograph {i} is {photo.shape[:2]}, view expects {(height, width)}",
                    "capture",
                )
        if self.masks is not None and len(self.masks) != len(self.view_set):
            raise DimensionMismatchError(
                f"{len(self.masks)} masks for {len(self.view_set)} views", "capture"
            )


@dataclass(eq=False)
class TexelObservations:
    """
    Radiance samples for every (view, covered texel) pair.

    radiance: (V, N, 3) float32 linear radiance.
    weight:   (V, N) float32 validity weight; 0 means "not observed".
    """
    radiance: np.ndarray
    weight: np.ndarray

    def __post_init__(self):
        self.radiance = np.asarray(self.radiance, dtype=np.float32)
        self.weight = np.asarray(self.weight, dtype=np.float32)
        if self.radiance.ndim != 3 or self.radiance.shape[2] != 3:
            raise DimensionMismatchError(
                f"Observed radiance must be (views, texels, 3), got {self.radiance.shape}",
                "observations",
            )
        if self.weight.shape != self.radiance.shape[:2]:
            raise DimensionMismatchError(
                f"Observation weights {self.weight.shape} do not match radiance "
                f"{self.radiance.shape[:2]}",
                "observations",
            )
        # A NaN weight would survive the > 0 tests as "invalid" anyway, but a
        # NaN radiance behind a positive weight would poison every sum.
        bad = (self.weight > 0.0) & ~np.all(np.isfinite(self.radiance), axis=-1)
        if bad.any():
            self.weight = np.where(bad, 0.0, self.weight).astype(np.float32)

    @property
    def view_count(self) -> int:
        return self.radiance.shape[0]

    @property
    def texel_count(self) -> int:
        return self.radiance.shape[1]

    def observed_texels(self) -> np.ndarray:
        """(N,) bool: texels with at least one valid observation."""
        return np.any(self.weight > 0.0, axis=0)


def sample_observations(capture: Capture,
                        depth_tolerance: float = DEFAULT_DEPTH_TOLERANCE) -> TexelObservations:
    """
    Re-project every covered texel into every view and read its radiance.

    Occlusion uses a depth map built by splatting all texels of the surface
    into the view; a texel is visible when it is within depth_tolerance
    (relative) of the nearest surface point in its pixel.
    """
    geometry = capture.geometry
    view_set = capture.view_set
    renderer = TexelSplatRenderer(geometry, view_set)
    n = geometry.texel_count
    radiance = np.zeros((len(view_set), n, 3), dtype=np.float32)
    weight = np.zeros((len(view_set), n), dtype=np.float32)

    for k in range(len(view_set)):
        rows, cols, depth, in_frame = renderer.project(k)

        to_camera = view_set.camera_position(k) - geometry.positions
        to_light = view_set.light_position(k) - geometry.positions
        facing = (
            (np.sum(to_camera * geometry.normals, axis=-1) > 0.0)
            & (np.sum(to_light * geometry.normals, axis=-1) > 0.0)
        )

        # Depth map over every in-frame texel, front- or back-facing: the back
        # of an object still hides whatever is behind it.
        depth_map = renderer.depth_map(k)
        unoccluded = depth <= depth_map[rows, cols] * (1.0 + depth_tolerance)

        valid = in_frame & facing & unoccluded
        samples = capture.photographs[k][rows, cols].astype(np.float32)
        sample_weight = valid.astype(np.float32)

        if capture.masks is not None and capture.masks[k] is not None:
            sample_weight *= np.clip(capture.masks[k][rows, cols], 0.0, 1.0).astype(np.float32)

        if capture.saturation_level is not None:
            saturated = np.any(samples >= capture.saturation_level, axis=-1)
            sample_weight[saturated] = 0.0

        radiance[k] = np.where(sample_weight[:, None] > 0.0, samples, 0.0)
        weight[k] = sample_weight

        logger.debug("View %d: %d of %d texels observed", k, int(np.count_nonzero(sample_weight)), n)

    return TexelObservations(radiance, weight)


# ---------------------------------------------------------------------------
# Capture directory loading
# ---------------------------------------------------------------------------

CAPTURE_FILENAME = "capture.json"


def _load_photograph(path: Path) -> tuple[np.ndarray, bool]:
    """
    Load a photograph as linear RGB float32.

    .npy files are taken as linear radiance already. Anything else goes
    through Pillow and is decoded from sRGB. The second return value says
    whether the image was quantized (and so clips at 1.0).
    """
    try:
        if path.suffix.lower() == ".npy":
            array = np.load(path).astype(np.float32)
            if array.ndim != 3 or array.shape[2] < 3:
                raise TextureIOError(path, f"expected an (H, W, 3) array, got {array.shape}", "capture")
            return array[:, :, :3], False

        with Image.open(path) as img:
            encoded = np.asarray(img.convert("RGB"), dtype=np.float32) / 255.0
        return decode_srgb(encoded).astype(np.float32), True
    except OSError as e:
        raise TextureIOError(path, str(e), "capture") from e


def _load_mask(path: Path) -> np.ndarray:
    try:
        with Image.open(path) as img:
            return np.asarray(img.convert("L"), dtype=np.float32) / 255.0
    except OSError as e:
        raise TextureIOError(path, str(e), "capture") from e


def load_normal_map(path: Path) -> np.ndarray:
    """Load a tangent-space normal map PNG as unit vectors, (H, W, 3)."""
    try:
        with Image.open(path) as img:
            encoded = np.asarray(img.convert("RGB"), dtype=np.float64) / 255.0
    except OSError as e:
        raise TextureIOError(path, str(e), "capture") from e
    normals = encoded * 2.0 - 1.0
    return normals / np.maximum(np.linalg.norm(normals, axis=-1, keepdims=True), 1e-12)


def _parse_view(entry: dict, image_size: tuple[int, int], index: int) -> View:
    width, height = image_size
    projection = Projection(
        vertical_fov=math.radians(float(entry["vertical_fov"])),
        aspect=float(entry.get("aspect", width / height)),
        near=float(entry.get("near", 0.01)),
        far=float(entry.get("far", 1000.0)),
    )
    return View(
        camera_pose=np.asarray(entry["camera_pose"], dtype=np.float64),
        projection=projection,
        light_index=int(entry.get("light_index", 0)),
        image_size=image_size,
        name=entry.get("name", entry.get("image", f"view{index:04d}")),
    )


def load_view_set(data: dict) -> ViewSet:
    """Build a ViewSet from the parsed capture.json dictionary (sizes filled in by load_capture)."""
    lights = tuple(
        LightSource(
            position=tuple(float(x) for x in light.get("position", (0.0, 0.0, 0.0))),
            intensity=tuple(float(x) for x in light.get("intensity", (1.0, 1.0, 1.0))),
        )
        for light in data.get("lights", [{}])
    )
    views = tuple(
        _parse_view(entry, tuple(entry["image_size"]), i)
        for i, entry in enumerate(data["views"])
    )
    return ViewSet(views, lights, int(data.get("primary_view", 0)))


def load_capture(directory: Path, texture_size: tuple[int, int] | None = None) -> Capture:
    """
    Load a capture directory.

    Layout:
        capture.json     {"texture_size": [w, h], "mesh": "model.obj",
                          "primary_view": 0,
                          "lights": [{"position": [x, y, z], "intensity": [r, g, b]}],
                          "views": [{"image": "0000.png", "camera_pose": 4x4 list,
                                     "vertical_fov": degrees, "near": n, "far": f,
                                     "light_index": i, "mask": "0000_mask.png"}],
                          "reference_normal_map": "normal_gt.png"}
        images, masks and the mesh, relative to the directory.

    texture_size overrides the size in capture.json. Photographs in 8-bit
    formats are decoded from sRGB and treated as saturating at 1.0.
    """
    # Imported here so loading the capture model doesn't require trimesh.
    from lustre_shop.core.texel_space import bake_texel_geometry, load_mesh

    directory = Path(directory)
    try:
        with open(directory / CAPTURE_FILENAME, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise TextureIOError(directory / CAPTURE_FILENAME, str(e), "capture") from e

    photographs = []
    masks = []
    quantized = False
    for entry in data["views"]:
        photo, is_quantized = _load_photograph(directory / entry["image"])
        quantized = quantized or is_quantized
        photographs.append(photo)
        entry["image_size"] = (photo.shape[1], photo.shape[0])
        masks.append(_load_mask(directory / entry["mask"]) if "mask" in entry else None)

    view_set = load_view_set(data)

    if texture_size is None:
        texture_size = tuple(data.get("texture_size", (1024, 1024)))
    width, height = texture_size

    mesh = load_mesh(directory / data["mesh"])
    geometry = bake_texel_geometry(mesh, width, height)
    logger.info("Baked %d covered texels at %dx%d", geometry.texel_count, width, height)

    reference = None
    if "reference_normal_map" in data:
        reference = load_normal_map(directory / data["reference_normal_map"])

    return Capture(
        view_set=view_set,
        geometry=geometry,
        photographs=photographs,
        masks=masks if any(m is not None for m in masks) else None,
        reference_normal_map=reference,
        saturation_level=1.0 if quantized else None,
        mesh=mesh,
    )
