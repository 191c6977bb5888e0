"""
Fit artifacts on disk.

Layout written into the output directory:

    weights%02d%02d.png   RGBA, four basis weights per image, named by the
                          first and last basis slot of the group
                          (weights0003.png, weights0407.png, ...)
    weights%02d.png       one greyscale image per basis (combine_weights off)
    weightMask.png        255 where the texel had a valid observation
    diffuse.png           final diffuse albedo, sRGB
    specular.png          specular reflectivity F0, sRGB
    roughness.png         GGX α, linear
    normal.png            tangent-space normal, (n + 1) / 2
    constant.png          additive constant term, sRGB (when fitted)
    basisFunctions.csv    "Red#b, v0, ..., vM" / "Green#b, ..." / "Blue#b, ..."
                          for every basis, then "Diffuse#b, r, g, b" lines,
                          then "Scale#map, s" for every scaled map
    rmse.txt              "label, value" per metric, NaN for empty metrics

Colour maps are dilated past UV island borders for mipmapping; the weight
images and weight mask are written as-is so they read back exactly.

An 8-bit image holds [0, 1]. Weights (without the sum-to-one constraint),
diffuse, specular and constant maps can exceed 1; such a map is divided by
its maximum before encoding, and the divisor is recorded as a Scale line
so load_fit() can multiply it back. Maps that fit are written unscaled and
get no Scale line.

load_fit() reverses the process; the result differs from the in-memory fit
only by 8-bit quantization.
"""

import logging
import math
import re
from pathlib import Path

import numpy as np
from PIL import Image

from lustre_shop.core.capture import TexelGeometry
from lustre_shop.core.errors import FitDiagnostics, TextureIOError
from lustre_shop.core.model import BasisSet, MaterialEstimate, SpecularFit
from lustre_shop.core.residual import ErrorReport, decode_srgb, encode_srgb, parse_report_lines
from lustre_shop.core.roughness import MIN_ROUGHNESS
from lustre_shop.core.settings import ExportSettings
from lustre_shop.core.texel_space import dilate_texture

logger = logging.getLogger(__name__)


WEIGHTS_PER_IMAGE = 4
BASIS_FUNCTIONS_FILENAME = "basisFunctions.csv"
WEIGHT_MASK_FILENAME = "weightMask.png"
DIFFUSE_FILENAME = "diffuse.png"
SPECULAR_FILENAME = "specular.png"
ROUGHNESS_FILENAME = "roughness.png"
NORMAL_FILENAME = "normal.png"
CONSTANT_FILENAME = "constant.png"
RMSE_FILENAME = "rmse.txt"

_CHANNEL_TAGS = ("Red", "Green", "Blue")
_SCALE_TAG = "Scale"

# Maps whose values may exceed the 8-bit range, by Scale line name.
WEIGHTS_MAP = "weights"
DIFFUSE_MAP = "diffuse"
SPECULAR_MAP = "specular"
CONSTANT_MAP = "constant"

_COMBINED_WEIGHTS_PATTERN = re.compile(r"^weights(\d{2})(\d{2})\.png$")
_SINGLE_WEIGHTS_PATTERN = re.compile(r"^weights(\d{2})\.png$")


def combined_weight_filename(group: int) -> str:
    first = group * WEIGHTS_PER_IMAGE
    return f"weights{first:02d}{first + WEIGHTS_PER_IMAGE - 1:02d}.png"


def weight_filename(basis_index: int) -> str:
    return f"weights{basis_index:02d}.png"


def weight_filenames(basis_count: int, combined: bool) -> list[str]:
    if combined:
        return [combined_weight_filename(g)
                for g in range(math.ceil(basis_count / WEIGHTS_PER_IMAGE))]
    return [weight_filename(b) for b in range(basis_count)]


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------

def _to_uint8(values: np.ndarray) -> np.ndarray:
    return np.round(np.clip(values, 0.0, 1.0) * 255.0).astype(np.uint8)


def map_scale(values: np.ndarray) -> float:
    """Divisor that brings a map into [0, 1]; 1 when it already fits."""
    values = np.asarray(values, dtype=np.float64)
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        return 1.0
    return max(1.0, float(finite.max()))


def _save_image(array: np.ndarray, path: Path, mode: str) -> Path:
    try:
        Image.fromarray(_to_uint8(array), mode).save(path)
    except OSError as e:
        raise TextureIOError(path, str(e), "export") from e
    return path


def _load_image(path: Path, mode: str) -> np.ndarray:
    try:
        with Image.open(path) as img:
            return np.asarray(img.convert(mode), dtype=np.float64) / 255.0
    except OSError as e:
        raise TextureIOError(path, str(e), "load") from e


# ---------------------------------------------------------------------------
# Basis functions CSV
# ---------------------------------------------------------------------------

def format_basis_functions(basis: BasisSet, scales: dict[str, float] | None = None) -> str:
    lines = []
    for b in range(basis.basis_count):
        for c, tag in enumerate(_CHANNEL_TAGS):
            values = ", ".join(repr(float(v)) for v in basis.specular[b, :, c])
            lines.append(f"{tag}#{b}, {values}")
    for b in range(basis.basis_count):
        r, g, bl = (float(v) for v in basis.diffuse_albedo[b])
        lines.append(f"Diffuse#{b}, {r!r}, {g!r}, {bl!r}")
    for name, scale in (scales or {}).items():
        if scale != 1.0:
            lines.append(f"{_SCALE_TAG}#{name}, {float(scale)!r}")
    return "\n".join(lines) + "\n"


def parse_basis_functions(text: str) -> BasisSet:
    """Parse basisFunctions.csv text. Tags may come in any order; Scale lines are skipped."""
    tables: dict[int, dict[int, np.ndarray]] = {}
    diffuse: dict[int, np.ndarray] = {}

    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        tag, _, rest = line.partition(",")
        name, _, index_text = tag.strip().partition("#")
        if name == _SCALE_TAG:
            continue
        values = np.array([float(v) for v in rest.split(",")], dtype=np.float64)
        index = int(index_text)
        if name == "Diffuse":
            diffuse[index] = values
        elif name in _CHANNEL_TAGS:
            tables.setdefault(index, {})[_CHANNEL_TAGS.index(name)] = values
        else:
            raise ValueError(f"Unknown basis function tag: {tag!r}")

    basis_count = len(tables)
    if sorted(tables) != list(range(basis_count)):
        raise ValueError("Basis function indices are not contiguous")

    specular = np.stack([
        np.stack([tables[b][c] for c in range(3)], axis=-1) for b in range(basis_count)
    ])
    albedo = np.stack([diffuse.get(b, np.zeros(3)) for b in range(basis_count)])
    return BasisSet(albedo, specular)


def parse_map_scales(text: str) -> dict[str, float]:
    """Scale lines of basisFunctions.csv; maps without one have scale 1."""
    scales = {}
    for line in text.splitlines():
        tag, _, rest = line.strip().partition(",")
        name, _, map_name = tag.strip().partition("#")
        if name != _SCALE_TAG:
            continue
        scale = float(rest)
        if not math.isfinite(scale) or scale <= 0.0:
            raise ValueError(f"Invalid scale for {map_name} map: {rest.strip()!r}")
        scales[map_name] = scale
    return scales


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

class SpecularFitSerializer:
    """
    Writes one fit into one directory.

    Every artifact is written by its own method, which raises TextureIOError
    on failure; save_all() writes them all, recording failures in the
    diagnostics instead of stopping at the first one.
    """

    def __init__(self, fit: SpecularFit, directory: Path,
                 settings: ExportSettings | None = None):
        self.fit = fit
        self.directory = Path(directory)
        self.settings = settings if settings is not None else ExportSettings()
        self.scales = self._map_scales()

    def _map_scales(self) -> dict[str, float]:
        material = self.fit.material
        maps = {
            WEIGHTS_MAP: material.weights,
            DIFFUSE_MAP: material.diffuse,
            SPECULAR_MAP: material.specular_reflectivity,
        }
        if material.constant is not None:
            maps[CONSTANT_MAP] = material.constant
        scales = {name: map_scale(values) for name, values in maps.items()}
        for name, scale in scales.items():
            if scale > 1.0:
                logger.info("Scaling %s map by 1/%g to fit 8 bits", name, scale)
        return scales

    @property
    def geometry(self) -> TexelGeometry:
        return self.fit.geometry

    def _color_raster(self, values: np.ndarray, fill=0.0) -> np.ndarray:
        raster = self.geometry.to_raster(values, fill=fill)
        return dilate_texture(raster, self.geometry.mask)

    def save_weights(self) -> list[Path]:
        weights = self.geometry.to_raster(self.fit.material.weights.astype(np.float64))
        weights /= self.scales[WEIGHTS_MAP]
        basis_count = weights.shape[2]
        paths = []
        if self.settings.combine_weights:
            for group, name in enumerate(weight_filenames(basis_count, True)):
                first = group * WEIGHTS_PER_IMAGE
                rgba = np.zeros(weights.shape[:2] + (WEIGHTS_PER_IMAGE,))
                chunk = weights[:, :, first:first + WEIGHTS_PER_IMAGE]
                rgba[:, :, :chunk.shape[2]] = chunk
                paths.append(_save_image(rgba, self.directory / name, "RGBA"))
        else:
            for b, name in enumerate(weight_filenames(basis_count, False)):
                paths.append(_save_image(weights[:, :, b], self.directory / name, "L"))
        return paths

    def save_weight_mask(self) -> Path:
        mask = self.geometry.to_raster(self.fit.material.weight_mask.astype(np.float64))
        return _save_image(mask, self.directory / WEIGHT_MASK_FILENAME, "L")

    def save_diffuse(self) -> Path:
        raster = self._color_raster(self.fit.material.diffuse)
        return _save_image(encode_srgb(raster / self.scales[DIFFUSE_MAP]),
                           self.directory / DIFFUSE_FILENAME, "RGB")

    def save_specular(self) -> Path:
        raster = self._color_raster(self.fit.material.specular_reflectivity)
        return _save_image(encode_srgb(raster / self.scales[SPECULAR_MAP]),
                           self.directory / SPECULAR_FILENAME, "RGB")

    def save_roughness(self) -> Path:
        raster = self._color_raster(self.fit.material.roughness, fill=1.0)
        return _save_image(raster, self.directory / ROUGHNESS_FILENAME, "L")

    def save_normal(self) -> Path:
        raster = self.geometry.to_raster(self.fit.material.normals, fill=0.0)
        raster = dilate_texture(raster, self.geometry.mask)
        # Texels beyond the dilation radius get the flat normal.
        raster[np.linalg.norm(raster, axis=-1) == 0.0] = (0.0, 0.0, 1.0)
        return _save_image((raster + 1.0) / 2.0, self.directory / NORMAL_FILENAME, "RGB")

    def save_constant(self) -> Path | None:
        if self.fit.material.constant is None:
            return None
        raster = self._color_raster(self.fit.material.constant)
        return _save_image(encode_srgb(raster / self.scales[CONSTANT_MAP]),
                           self.directory / CONSTANT_FILENAME, "RGB")

    def save_basis_functions(self) -> Path:
        path = self.directory / BASIS_FUNCTIONS_FILENAME
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(format_basis_functions(self.fit.basis, self.scales))
        except OSError as e:
            raise TextureIOError(path, str(e), "export") from e
        return path

    def save_report(self, report: ErrorReport,
                    diagnostics: FitDiagnostics | None = None) -> Path:
        path = self.directory / RMSE_FILENAME
        lines = report.format_lines()
        if diagnostics is not None:
            lines.extend(diagnostics.summary_lines())
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
        except OSError as e:
            raise TextureIOError(path, str(e), "export") from e
        return path

    def save_all(self, diagnostics: FitDiagnostics | None = None, on_progress=None) -> list[Path]:
        """Write every texture and basis artifact. Failures are logged and recorded."""
        diagnostics = diagnostics if diagnostics is not None else self.fit.diagnostics
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise TextureIOError(self.directory, str(e), "export") from e

        written = []
        steps = (
            ("weight maps", self.save_weights),
            ("weight mask", self.save_weight_mask),
            ("diffuse map", self.save_diffuse),
            ("specular map", self.save_specular),
            ("roughness map", self.save_roughness),
            ("normal map", self.save_normal),
            ("constant map", self.save_constant),
            ("basis functions", self.save_basis_functions),
        )
        for description, step in steps:
            if on_progress:
                on_progress(f"Writing {description}...")
            try:
                result = step()
            except TextureIOError as e:
                logger.error("Failed to write %s: %s", description, e)
                diagnostics.record_io_failure(e)
                continue
            if result is None:
                continue
            written.extend(result if isinstance(result, list) else [result])
        return written


def save_fit(fit: SpecularFit, directory: Path, settings: ExportSettings | None = None,
             report: ErrorReport | None = None) -> list[Path]:
    """Write all fit artifacts (and the report, if given) into directory."""
    serializer = SpecularFitSerializer(fit, directory, settings)
    written = serializer.save_all()
    if report is not None:
        try:
            written.append(serializer.save_report(report, fit.diagnostics))
        except TextureIOError as e:
            logger.error("Failed to write RMSE report: %s", e)
            fit.diagnostics.record_io_failure(e)
    return written


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def _load_weights(directory: Path, geometry: TexelGeometry, basis_count: int) -> np.ndarray:
    names = {p.name for p in directory.iterdir()}
    combined = [n for n in names if _COMBINED_WEIGHTS_PATTERN.match(n)]
    single = [n for n in names if _SINGLE_WEIGHTS_PATTERN.match(n)]

    weights = np.zeros((geometry.height, geometry.width, basis_count))
    if combined:
        for group, name in enumerate(weight_filenames(basis_count, True)):
            first = group * WEIGHTS_PER_IMAGE
            rgba = _load_image(directory / name, "RGBA")
            count = min(WEIGHTS_PER_IMAGE, basis_count - first)
            weights[:, :, first:first + count] = rgba[:, :, :count]
    elif single:
        for b, name in enumerate(weight_filenames(basis_count, False)):
            weights[:, :, b] = _load_image(directory / name, "L")
    else:
        raise TextureIOError(directory, "no weight images found", "load")
    return geometry.from_raster(weights).astype(np.float32)


def load_report(directory: Path) -> list[tuple[str, float]]:
    path = Path(directory) / RMSE_FILENAME
    try:
        with open(path, "r", encoding="utf-8") as f:
            return parse_report_lines(f)
    except OSError as e:
        raise TextureIOError(path, str(e), "load") from e


def load_fit(directory: Path, geometry: TexelGeometry,
             smith_masking_shadowing: bool = True) -> SpecularFit:
    """
    Read a fit written by save_fit() back into memory.

    The geometry is not stored with the artifacts; pass the TexelGeometry
    the fit was made on (e.g. re-baked from the same mesh and texture size).
    """
    directory = Path(directory)
    path = directory / BASIS_FUNCTIONS_FILENAME
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except OSError as e:
        raise TextureIOError(path, str(e), "load") from e
    basis = parse_basis_functions(text)
    scales = parse_map_scales(text)

    def texels(name: str, mode: str) -> np.ndarray:
        image = _load_image(directory / name, mode)
        if image.shape[:2] != (geometry.height, geometry.width):
            raise TextureIOError(directory / name,
                                 f"image is {image.shape[:2]}, expected "
                                 f"{(geometry.height, geometry.width)}", "load")
        return geometry.from_raster(image)

    normals = texels(NORMAL_FILENAME, "RGB") * 2.0 - 1.0
    normals /= np.maximum(np.linalg.norm(normals, axis=1, keepdims=True), 1e-12)

    # Maps written divided by their Scale line are multiplied back here.
    weights = _load_weights(directory, geometry, basis.basis_count)
    weights *= np.float32(scales.get(WEIGHTS_MAP, 1.0))
    diffuse = decode_srgb(texels(DIFFUSE_FILENAME, "RGB")) * scales.get(DIFFUSE_MAP, 1.0)
    specular = decode_srgb(texels(SPECULAR_FILENAME, "RGB")) * scales.get(SPECULAR_MAP, 1.0)

    constant = None
    if (directory / CONSTANT_FILENAME).exists():
        constant = decode_srgb(texels(CONSTANT_FILENAME, "RGB")) * scales.get(CONSTANT_MAP, 1.0)

    material = MaterialEstimate(
        weights=weights,
        weight_mask=texels(WEIGHT_MASK_FILENAME, "L") > 0.5,
        normals=normals,
        roughness=np.maximum(texels(ROUGHNESS_FILENAME, "L"), MIN_ROUGHNESS),
        specular_reflectivity=specular,
        diffuse=diffuse,
        constant=constant,
    )
    logger.info("Loaded fit with %d basis functions from %s", basis.basis_count, directory)
    return SpecularFit(basis, material, geometry, smith_masking_shadowing)
