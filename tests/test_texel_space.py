"""UV rasterization, tangent frames, dilation and texel baking."""

import numpy as np
import pytest
import trimesh

from lustre_shop.core.errors import TextureIOError
from lustre_shop.core.texel_space import (
    bake_texel_geometry,
    compute_vertex_tangents,
    dilate_texture,
    load_mesh,
    rasterize_triangles,
)

from synthetic import uv_plane_mesh as uv_plane


class TestRasterizeTriangles:

    def test_full_coverage(self):
        mesh = uv_plane()
        raster = rasterize_triangles(mesh.visual.uv, mesh.faces, np.ones((4, 1)), 8, 8)
        np.testing.assert_allclose(raster[..., 0], 1.0)

    def test_texel_centres_and_v_flip(self):
        mesh = uv_plane()
        raster = rasterize_triangles(mesh.visual.uv, mesh.faces, mesh.visual.uv, 4, 4)
        np.testing.assert_allclose(raster[0, 0], [0.125, 0.875])
        np.testing.assert_allclose(raster[3, 2], [0.625, 0.125])

    def test_partial_coverage(self):
        uvs = np.array([[0.0, 0.0], [0.5, 0.0], [0.0, 0.5]])
        raster = rasterize_triangles(uvs, np.array([[0, 1, 2]]), np.ones((3, 1)), 4, 4)
        coverage = raster[..., 0] > 0.5
        assert coverage[3, 0]
        assert not coverage[0, 3]


class TestVertexTangents:

    def test_plane(self):
        tangents = compute_vertex_tangents(uv_plane())
        np.testing.assert_allclose(tangents[:, :3], np.tile([1.0, 0.0, 0.0], (4, 1)), atol=1e-6)
        np.testing.assert_array_equal(tangents[:, 3], 1.0)

    def test_mirrored_uv_flips_handedness(self):
        tangents = compute_vertex_tangents(uv_plane(flip_v=True))
        np.testing.assert_array_equal(tangents[:, 3], -1.0)

    def test_no_uv(self):
        mesh = trimesh.Trimesh(vertices=uv_plane().vertices, faces=uv_plane().faces, process=False)
        assert compute_vertex_tangents(mesh) is None


class TestDilateTexture:

    def test_fills_within_radius(self):
        img = np.zeros((1, 10))
        filled = np.zeros((1, 10), dtype=bool)
        img[0, 0] = 7.0
        filled[0, 0] = True

        result = dilate_texture(img, filled, iterations=3)

        np.testing.assert_array_equal(result[0, :4], 7.0)
        np.testing.assert_array_equal(result[0, 4:], 0.0)

    def test_unlimited(self):
        img = np.zeros((5, 5, 3))
        filled = np.zeros((5, 5), dtype=bool)
        img[2, 2] = [1.0, 2.0, 3.0]
        filled[2, 2] = True

        result = dilate_texture(img, filled, iterations=None)

        np.testing.assert_array_equal(result, np.broadcast_to([1.0, 2.0, 3.0], (5, 5, 3)))

    def test_nothing_filled_is_unchanged(self):
        img = np.arange(4.0).reshape(2, 2)
        result = dilate_texture(img, np.zeros((2, 2), dtype=bool))
        np.testing.assert_array_equal(result, img)
        assert result is not img


class TestBakeTexelGeometry:

    def test_plane(self):
        geometry = bake_texel_geometry(uv_plane(), 4, 4)

        assert geometry.mask.all()
        assert geometry.texel_count == 16
        np.testing.assert_allclose(geometry.positions[0], [-0.375, 0.375, 0.0])
        np.testing.assert_allclose(geometry.normals, np.tile([0.0, 0.0, 1.0], (16, 1)), atol=1e-9)
        np.testing.assert_allclose(geometry.tangents, np.tile([1.0, 0.0, 0.0], (16, 1)), atol=1e-6)
        np.testing.assert_allclose(geometry.bitangents, np.tile([0.0, 1.0, 0.0], (16, 1)), atol=1e-6)

    def test_rotated_plane_frames(self):
        rotation = trimesh.transformations.rotation_matrix(0.7, [1.0, 1.0, 0.0])
        mesh = uv_plane()
        mesh.apply_transform(rotation)
        geometry = bake_texel_geometry(mesh, 8, 8)

        tbn = geometry.tbn
        identity = np.einsum("nji,njk->nik", tbn, tbn)
        np.testing.assert_allclose(identity, np.broadcast_to(np.eye(3), identity.shape), atol=1e-6)
        np.testing.assert_allclose(geometry.normals[0], rotation[:3, :3] @ [0.0, 0.0, 1.0], atol=1e-6)
        np.testing.assert_allclose(geometry.tangents[0], rotation[:3, :3] @ [1.0, 0.0, 0.0], atol=1e-6)


class TestLoadMesh:

    def test_missing_file(self, tmp_path):
        with pytest.raises(TextureIOError):
            load_mesh(tmp_path / "missing.obj")

    def test_no_uv(self, tmp_path):
        path = tmp_path / "plane.obj"
        path.write_text("v 0 0 0\nv 1 0 0\nv 0 1 0\nf 1 2 3\n")
        with pytest.raises(TextureIOError):
            load_mesh(path)
