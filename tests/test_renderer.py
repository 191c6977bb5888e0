"""Texel splat rendering."""

import numpy as np
import pytest

from lustre_shop.core.renderer import TexelSplatRenderer

from synthetic import single_view_set, stacked_geometry


@pytest.fixture
def renderer():
    return TexelSplatRenderer(stacked_geometry(), single_view_set())


class TestTexelSplatRenderer:

    def test_nearest_texel_wins(self, renderer):
        radiance = np.zeros((8, 3), dtype=np.float32)
        radiance[:4] = 1.0
        radiance[4:] = 0.5

        rendered = renderer.render(0, radiance)
        covered = rendered.weight > 0.0

        assert covered.sum() == 4
        np.testing.assert_array_equal(rendered.color[covered], 1.0)
        np.testing.assert_allclose(rendered.depth[covered], 2.5)

    def test_zero_weight_texel_still_occludes(self, renderer):
        radiance = np.ones((8, 3), dtype=np.float32)
        weight = np.array([0, 0, 0, 0, 1, 1, 1, 1], dtype=np.float32)

        rendered = renderer.render(0, radiance, weight)

        assert not rendered.weight.any()
        assert np.isfinite(rendered.depth).sum() == 4

    def test_empty_pixels(self, renderer):
        rendered = renderer.render(0, np.ones((8, 3)))
        empty = ~np.isfinite(rendered.depth)
        assert empty.sum() == 64 * 64 - 4
        np.testing.assert_array_equal(rendered.weight[empty], 0.0)
        np.testing.assert_array_equal(rendered.color[empty], 0.0)

    def test_depth_map_matches_render(self, renderer):
        rendered = renderer.render(0, np.ones((8, 3)))
        np.testing.assert_array_equal(renderer.depth_map(0), rendered.depth)

    def test_wrong_shape(self, renderer):
        with pytest.raises(ValueError):
            renderer.render(0, np.ones((7, 3)))
