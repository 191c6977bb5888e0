"""
glTF binary packaging of a fit.

The fitted maps are attached to the capture mesh as a glTF 2.0 PBR material
and written as a single self-contained .glb:

    baseColorTexture          diffuse.png
    normalTexture             normal.png (with embedded vertex tangents)
    metallicRoughnessTexture  roughness in G, metallic 0 in B

A standard viewer shows the GGX approximation of the fit. The basis
representation itself does not fit a standard material, so each material
carries an extras block naming the side-car artifacts next to the .glb:

    "extras": {"lustre_shop": {
        "basisFunctionsUri": "basisFunctions.csv",
        "specularWeights": {"stride": 4, "textures": ["weights0003.png", ...]},
        "weightMaskUri": "weightMask.png",
        "specularUri": "specular.png"}}

trimesh writes the geometry and textures; a small in-place patch of the
GLB JSON chunk afterwards renames the tangent attribute and adds the extras.
"""

import json
import logging
import struct
from pathlib import Path

import numpy as np
import trimesh
from PIL import Image
from trimesh.visual.material import PBRMaterial
from trimesh.visual.texture import TextureVisuals

from lustre_shop.core.errors import TextureIOError
from lustre_shop.core.serializer import (
    BASIS_FUNCTIONS_FILENAME,
    DIFFUSE_FILENAME,
    NORMAL_FILENAME,
    ROUGHNESS_FILENAME,
    SPECULAR_FILENAME,
    WEIGHT_MASK_FILENAME,
    WEIGHTS_PER_IMAGE,
    weight_filenames,
)
from lustre_shop.core.texel_space import compute_vertex_tangents

logger = logging.getLogger(__name__)


GLTF_FILENAME = "model.glb"
EXTRAS_KEY = "lustre_shop"


def fit_extras(basis_count: int, combine_weights: bool) -> dict:
    """The extras block describing the basis side-car artifacts."""
    return {
        "basisFunctionsUri": BASIS_FUNCTIONS_FILENAME,
        "specularWeights": {
            "stride": WEIGHTS_PER_IMAGE if combine_weights else 1,
            "textures": weight_filenames(basis_count, combine_weights),
        },
        "weightMaskUri": WEIGHT_MASK_FILENAME,
        "specularUri": SPECULAR_FILENAME,
    }


def _patch_glb_json(glb_path: Path, extras: dict) -> None:
    """
    Rewrite the JSON chunk of a GLB in place.

    Renames trimesh's '_TANGENT' custom attribute to the standard 'TANGENT'
    and merges `extras` into every material under EXTRAS_KEY.

    GLB layout (glTF 2.0 §5.1): 12-byte header (magic, version, total
    length), JSON chunk (length, "JSON", data padded with spaces to 4
    bytes), then the BIN chunk, which is copied through untouched.
    """
    with open(glb_path, "rb") as f:
        data = f.read()

    if len(data) < 20 or data[:4] != b"glTF":
        raise TextureIOError(glb_path, "not a GLB file", "export")
    if struct.unpack_from("<I", data, 4)[0] != 2:
        raise TextureIOError(glb_path, "unsupported glTF version", "export")

    json_chunk_length = struct.unpack_from("<I", data, 12)[0]
    if data[16:20] != b"JSON":
        raise TextureIOError(glb_path, "first GLB chunk is not JSON", "export")

    json_raw = data[20:20 + json_chunk_length]
    gltf = json.loads(json_raw.rstrip(b" ").rstrip(b"\x00").decode("utf-8"))

    for mesh in gltf.get("meshes", []):
        for prim in mesh.get("primitives", []):
            attrs = prim.get("attributes", {})
            if "_TANGENT" in attrs:
                attrs["TANGENT"] = attrs.pop("_TANGENT")

    for material in gltf.get("materials", []):
        material.setdefault("extras", {})[EXTRAS_KEY] = extras

    new_json = json.dumps(gltf, separators=(",", ":")).encode("utf-8")
    new_json += b" " * ((-len(new_json)) % 4)
    bin_chunk = data[20 + json_chunk_length:]
    total = 12 + 8 + len(new_json) + len(bin_chunk)

    with open(glb_path, "wb") as f:
        f.write(b"glTF")
        f.write(struct.pack("<I", 2))
        f.write(struct.pack("<I", total))
        f.write(struct.pack("<I", len(new_json)))
        f.write(b"JSON")
        f.write(new_json)
        f.write(bin_chunk)


def read_glb_json(glb_path: Path) -> dict:
    """Return the parsed JSON chunk of a GLB file."""
    with open(glb_path, "rb") as f:
        data = f.read()
    length = struct.unpack_from("<I", data, 12)[0]
    return json.loads(data[20:20 + length].rstrip(b" ").rstrip(b"\x00").decode("utf-8"))


def export_gltf(mesh: trimesh.Trimesh, artifact_dir: Path, basis_count: int,
                combine_weights: bool = True, dest_path: Path | None = None) -> Path:
    """
    Package the mesh with the fit's textures as a GLB.

    Args:
        mesh:            UV-mapped capture mesh (not modified).
        artifact_dir:    directory holding the serialized fit.
        basis_count:     number of basis functions (for the extras block).
        combine_weights: whether weights were written four per image.
        dest_path:       output path; defaults to artifact_dir / model.glb.

    Raises:
        TextureIOError: a texture is missing or the GLB cannot be written.
    """
    artifact_dir = Path(artifact_dir)
    dest_path = Path(dest_path) if dest_path is not None else artifact_dir / GLTF_FILENAME

    try:
        with Image.open(artifact_dir / DIFFUSE_FILENAME) as img:
            base_color = img.convert("RGB")
        with Image.open(artifact_dir / NORMAL_FILENAME) as img:
            normal = img.convert("RGB")
        with Image.open(artifact_dir / ROUGHNESS_FILENAME) as img:
            roughness = img.convert("L")
    except OSError as e:
        raise TextureIOError(getattr(e, "filename", artifact_dir), str(e), "export") from e

    # metallicRoughnessTexture: G = roughness, B = metallic.
    size = roughness.size
    metallic_roughness = Image.merge("RGB", (Image.new("L", size, 0), roughness, Image.new("L", size, 0)))

    material = PBRMaterial(
        baseColorTexture=base_color,
        normalTexture=normal,
        metallicRoughnessTexture=metallic_roughness,
        metallicFactor=1.0,
        roughnessFactor=1.0,
    )

    packaged = mesh.copy()
    packaged.visual = TextureVisuals(uv=np.asarray(mesh.visual.uv), material=material)
    tangents = compute_vertex_tangents(packaged)
    if tangents is not None:
        packaged.vertex_attributes["TANGENT"] = tangents

    try:
        packaged.export(str(dest_path))
        _patch_glb_json(dest_path, fit_extras(basis_count, combine_weights))
    except OSError as e:
        raise TextureIOError(dest_path, str(e), "export") from e

    logger.info("Wrote glTF binary %s", dest_path)
    return dest_path
