"""
Smoothstep function library used to parameterize specular basis tables.

A basis lobe is never solved for bin by bin. Instead it is written as a
non-negative combination of library functions S_j(m), each of which is 1 at
the specular peak (m = 0), falls to 0 through a cubic smoothstep, and stays
0 afterwards:

    spec(m) = constant + Σ_j c_j · S_j(m),   c_j ≥ 0

Because every S_j is non-negative and non-increasing, any such combination
is automatically non-negative and monotonically non-increasing in m: the
lobe can only fall off away from the peak. The library's three knobs map
directly onto the lobe constraints:

    min_width         the narrowest function drops to 0 after min_width
                      bins, so no lobe can fall off faster than that.
    max_width         each function's ramp is at most max_width bins long;
                      max_width == min_width gives hard steps.
    function_count    how many functions (end points) are available, i.e.
                      the degrees of freedom per lobe and channel.

End points are spread evenly between min_width and the resolution. A
function whose end point is closer to the peak than max_width starts its
ramp right at m = 0 with a correspondingly narrower width.
"""

import numpy as np


def cubic_smoothstep(x):
    """Classic 3x² − 2x³ smoothstep on [0, 1]."""
    x = np.clip(x, 0.0, 1.0)
    return x * x * (3.0 - 2.0 * x)


class SmoothstepBasisLibrary:
    """
    Table of smoothstep functions over the bins 0..resolution (inclusive).

    Args:
        resolution:     number of bins in a basis table, excluding the final
                        constant bin.
        min_width:      clamped to at least 1.
        max_width:      clamped to at least min_width.
        function_count: number of functions in the library.
    """

    def __init__(self, resolution: int, min_width: int, max_width: int,
                 function_count: int, smoothstep=cubic_smoothstep):
        if resolution < 1:
            raise ValueError("Resolution must be greater than zero.")
        if function_count < 1:
            raise ValueError("Function count must be greater than zero.")

        self.resolution = resolution
        self.min_width = min(max(1, min_width), resolution)
        self.max_width = max(self.min_width, max_width)
        self.function_count = function_count
        self._smoothstep = smoothstep
        self._table = self._build_table()

    def end_offsets(self) -> np.ndarray:
        """
        Offset r_j of each function's end point; function j reaches 0 at
        m = r_j + min_width. Offsets are spread evenly over
        [0, resolution − min_width]. A single function takes the widest slot.
        """
        span = self.resolution - self.min_width
        if self.function_count == 1:
            return np.array([float(span)])
        return np.arange(self.function_count, dtype=np.float64) * span / (self.function_count - 1)

    def _build_table(self) -> np.ndarray:
        offsets = self.end_offsets()[:, np.newaxis]             # (J, 1)
        m = np.arange(self.resolution + 1, dtype=np.float64)     # (M,)

        end = offsets + self.min_width                            # value reaches 0 here
        width = np.minimum(self.max_width, end)                   # ramp length
        domain = end - m                                          # distance before the end

        # domain <= 0: past the end → 0. domain >= width: before the ramp → 1.
        # In between: smoothstep of the fraction of the ramp still to go.
        ramp = self._smoothstep(domain / width)
        table = np.where(domain <= 0.0, 0.0, np.where(domain >= width, 1.0, ramp))
        return table

    @property
    def table(self) -> np.ndarray:
        """(function_count, resolution + 1) float64 table. Read-only view."""
        view = self._table.view()
        view.flags.writeable = False
        return view

    def evaluate(self, function_index: int, value: int) -> float:
        return float(self._table[function_index, value])

    def interpolate(self, m_exact: np.ndarray) -> np.ndarray:
        """
        Linearly interpolate every function at fractional bin positions.

        Args:
            m_exact: (N,) fractional bin positions, clamped to [0, resolution].

        Returns:
            (N, function_count) float64 values.
        """
        floor, t = interpolation_weights(m_exact, self.resolution)
        lower = self._table[:, floor]                               # (J, N)
        upper = self._table[:, floor + 1]
        return (lower * (1.0 - t) + upper * t).T


def interpolation_weights(m_exact: np.ndarray, resolution: int):
    """
    Split fractional bin positions into (lower bin, fraction toward upper).

    The lower bin is clamped to resolution − 1 so the upper neighbour always
    exists; m == resolution lands exactly on the final bin.
    """
    m = np.clip(np.asarray(m_exact, dtype=np.float64), 0.0, float(resolution))
    floor = np.minimum(np.floor(m).astype(np.int64), resolution - 1)
    return floor, m - floor
