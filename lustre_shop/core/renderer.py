"""
Texel splat renderer.

Reconstruction needs "render this model from this view". Instead of a GPU
rasterizer, shaded texels are splatted straight into the view's image: each
covered texel projects to one pixel, and where several texels land in the
same pixel the nearest one wins (a z-buffer). The result carries a
validity channel: pixels no valid texel reached have weight 0 and never
enter an error computation.

The renderer is handed to FinalReconstruction as a capability; anything with
the same render(view_index, texel_radiance, texel_weight) signature can take
its place.
"""

from dataclasses import dataclass

import numpy as np


@dataclass(eq=False)
class RenderedView:
    """color: (H, W, 3) float32. weight: (H, W) float32. depth: (H, W), inf where empty."""
    color: np.ndarray
    weight: np.ndarray
    depth: np.ndarray


class TexelSplatRenderer:
    """
    Splats per-texel values of a TexelGeometry into the views of a ViewSet.

    Projections are computed once per view and cached; the geometry and view
    set are never modified.
    """

    def __init__(self, geometry, view_set):
        self.geometry = geometry
        self.view_set = view_set
        self._projections = {}

    def project(self, view_index: int):
        """(rows, cols, depth, in_frame) for every texel in the given view."""
        if view_index not in self._projections:
            view = self.view_set[view_index]
            self._projections[view_index] = view.project(self.geometry.positions)
        return self._projections[view_index]

    def depth_map(self, view_index: int) -> np.ndarray:
        """(H, W) nearest texel depth per pixel, inf where no texel lands."""
        rows, cols, depth, in_frame = self.project(view_index)
        width, height = self.view_set[view_index].image_size
        depth_map = np.full((height, width), np.inf)
        np.minimum.at(depth_map, (rows[in_frame], cols[in_frame]), depth[in_frame])
        return depth_map

    def render(self, view_index: int, texel_radiance: np.ndarray,
               texel_weight: np.ndarray | None = None) -> RenderedView:
        """
        Splat (N, 3) texel radiance into the view.

        texel_weight (N,) marks texels whose radiance is meaningful; a texel
        with weight 0 still occludes whatever is behind it, but the pixel it
        wins gets weight 0.
        """
        texel_radiance = np.asarray(texel_radiance, dtype=np.float32)
        if texel_radiance.shape != (self.geometry.texel_count, 3):
            raise ValueError(
                f"Texel radiance must be ({self.geometry.texel_count}, 3), got {texel_radiance.shape}"
            )
        if texel_weight is None:
            texel_weight = np.ones(self.geometry.texel_count, dtype=np.float32)

        rows, cols, depth, in_frame = self.project(view_index)
        width, height = self.view_set[view_index].image_size

        color = np.zeros((height, width, 3), dtype=np.float32)
        weight = np.zeros((height, width), dtype=np.float32)
        depth_buffer = np.full((height, width), np.inf)

        # Z-buffer without a loop: texels that land in frame, keyed by their
        # flat pixel index.
        index = np.flatnonzero(in_frame)
        pixel = rows[index] * width + cols[index]
        # lexsort keys run last-to-first, so this orders by pixel and then by
        # depth within a pixel; the nearest texel leads each pixel run.
        order = np.lexsort((depth[index], pixel))
        # unique reports the first position of each pixel in sorted order,
        # which is the nearest texel.
        _, first = np.unique(pixel[order], return_index=True)
        index = index[order[first]]
        # Write the surviving texel of each pixel.
        r, c = rows[index], cols[index]

        color[r, c] = texel_radiance[index]
        weight[r, c] = np.asarray(texel_weight, dtype=np.float32)[index]
        depth_buffer[r, c] = depth[index]
        return RenderedView(color, weight, depth_buffer)
