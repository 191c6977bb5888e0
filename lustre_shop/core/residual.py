"""
Weighted residual accumulation and RMSE.

Every error number the fit reports comes through here. An error pass hands
over, per view, a predicted image, the matching ground truth and a validity
weight per pixel (texel samples work the same way, just as a flat list of
"pixels"). The accumulator keeps two running sums:

    sum_squared_error = Σ weight · error²      over pixels with weight > 0
    sum_weight        = Σ weight               over the same pixels

and only takes the square root at the very end. Keeping the sums, not the
per-view RMSE, is what makes pooling lossless: two partial results from
disjoint pixel sets merge by plain addition, and the pooled RMSE equals the
RMSE of the union. Averaging per-view RMSE values instead would bias the
total toward views with few valid pixels.

Masked pixels (weight ≤ 0, or a NaN weight) are dropped before any
arithmetic, so a garbage prediction behind the mask (NaN, Inf, anything)
cannot leak into the total.

The display-domain ("gamma") pass re-encodes both images and recomputes the
error from the encoded values; it is not derived from the linear error,
because gamma encoding is nonlinear.
"""

import math
from dataclasses import dataclass, field

import numpy as np


# Gamma used for the display-domain error.
DEFAULT_ERROR_GAMMA = 2.2


def encode_gamma(linear: np.ndarray, gamma: float = DEFAULT_ERROR_GAMMA) -> np.ndarray:
    """Encode linear values with a pure power-law gamma. Negatives clamp to 0."""
    return np.power(np.maximum(linear, 0.0), 1.0 / gamma)


def decode_gamma(encoded: np.ndarray, gamma: float = DEFAULT_ERROR_GAMMA) -> np.ndarray:
    return np.power(np.maximum(encoded, 0.0), gamma)


def encode_srgb(linear: np.ndarray) -> np.ndarray:
    """Encode linear values with the piecewise sRGB transfer function."""
    linear = np.maximum(linear, 0.0)
    return np.where(
        linear <= 0.0031308,
        12.92 * linear,
        1.055 * np.power(linear, 1.0 / 2.4) - 0.055,
    )


def decode_srgb(encoded: np.ndarray) -> np.ndarray:
    encoded = np.maximum(encoded, 0.0)
    return np.where(
        encoded <= 0.04045,
        encoded / 12.92,
        np.power((encoded + 0.055) / 1.055, 2.4),
    )


def finalize(sum_squared_error: float, sum_weight: float) -> float:
    """
    Turn pooled sums into an RMSE.

    Returns NaN when nothing contributed (sum_weight == 0). NaN is the
    sentinel the report prints; it is never silently treated as zero error.
    """
    if not sum_weight > 0.0:
        return math.nan
    return math.sqrt(sum_squared_error / sum_weight)


@dataclass(frozen=True)
class ResidualSums:
    """Pooled (Σ weight·error², Σ weight) for some set of pixels."""
    sum_squared_error: float = 0.0
    sum_weight: float = 0.0

    def __add__(self, other: "ResidualSums") -> "ResidualSums":
        return ResidualSums(
            self.sum_squared_error + other.sum_squared_error,
            self.sum_weight + other.sum_weight,
        )

    @property
    def rmse(self) -> float:
        return finalize(self.sum_squared_error, self.sum_weight)

    @classmethod
    def from_pixels(cls, prediction: np.ndarray, ground_truth: np.ndarray,
                    weight: np.ndarray) -> "ResidualSums":
        """
        Accumulate one batch of pixels.

        Args:
            prediction:   (..., C) predicted values.
            ground_truth: (..., C) observed values, same shape.
            weight:       (...) validity weight per pixel.

        The per-pixel error² is the mean over channels of the squared
        difference. Inputs are not modified.
        """
        prediction = np.asarray(prediction)
        ground_truth = np.asarray(ground_truth)
        weight = np.asarray(weight)

        if prediction.shape != ground_truth.shape:
            raise ValueError(
                f"Prediction shape {prediction.shape} does not match "
                f"ground truth shape {ground_truth.shape}"
            )
        if weight.shape != prediction.shape[:-1]:
            raise ValueError(
                f"Weight shape {weight.shape} does not match pixel shape "
                f"{prediction.shape[:-1]}"
            )

        # Boolean selection first: masked pixels never enter the arithmetic.
        valid = weight > 0.0
        if not valid.any():
            return cls()

        w = weight[valid].astype(np.float64)
        diff = prediction[valid].astype(np.float64) - ground_truth[valid].astype(np.float64)
        squared_error = np.mean(diff * diff, axis=-1)

        return cls(float(np.sum(w * squared_error)), float(np.sum(w)))


@dataclass
class ResidualAccumulator:
    """
    Collects ResidualSums per view for one error pass.

    gamma=None runs the linear pass; a number runs the display-domain pass
    with that gamma. Two accumulators over the same images with different
    gamma give the two independent passes.
    """
    gamma: float | None = None
    per_view: dict[int, ResidualSums] = field(default_factory=dict)

    def accumulate_view(self, view_index: int, prediction: np.ndarray,
                        ground_truth: np.ndarray, weight: np.ndarray) -> ResidualSums:
        """
        Add one view's pixels to the pass and return that view's sums.

        Calling it again for the same view adds to that view's sums, so a
        view can be processed in several blocks.
        """
        if self.gamma is not None:
            prediction = encode_gamma(prediction, self.gamma)
            ground_truth = encode_gamma(ground_truth, self.gamma)

        sums = ResidualSums.from_pixels(prediction, ground_truth, weight)
        self.per_view[view_index] = self.per_view.get(view_index, ResidualSums()) + sums
        return sums

    def merge(self, other: "ResidualAccumulator") -> None:
        """Fold another accumulator's per-view sums into this one."""
        for view_index, sums in other.per_view.items():
            self.per_view[view_index] = self.per_view.get(view_index, ResidualSums()) + sums

    @property
    def total(self) -> ResidualSums:
        total = ResidualSums()
        for sums in self.per_view.values():
            total = total + sums
        return total

    @property
    def rmse(self) -> float:
        return self.total.rmse

    def view_rmse(self) -> dict[int, float]:
        return {view: sums.rmse for view, sums in sorted(self.per_view.items())}


@dataclass
class ErrorReport:
    """
    Ordered list of (label, value) metrics for the RMSE report.

    Values may be NaN; format_lines() prints them as "NaN" so the report can
    still be written when some metric had no valid pixels.
    """
    entries: list[tuple[str, float]] = field(default_factory=list)

    def add(self, label: str, value: float) -> None:
        if "," in label:
            raise ValueError(f"Report labels must not contain commas: {label!r}")
        self.entries.append((label, float(value)))

    def add_pass(self, label: str, linear: ResidualAccumulator,
                 encoded: ResidualAccumulator) -> None:
        """Add one metric as a linear line and a gamma-corrected line."""
        self.add(f"{label} (linear)", linear.rmse)
        self.add(f"{label} (gamma-corrected)", encoded.rmse)

    def get(self, label: str) -> float:
        for entry_label, value in self.entries:
            if entry_label == label:
                return value
        raise KeyError(label)

    def format_lines(self) -> list[str]:
        lines = []
        for label, value in self.entries:
            text = "NaN" if math.isnan(value) else repr(value)
            lines.append(f"{label}, {text}")
        return lines


def parse_report_lines(lines) -> list[tuple[str, float]]:
    """Parse "label, value" lines back into (label, float) pairs."""
    entries = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        label, _, value = line.rpartition(", ")
        entries.append((label, float(value)))
    return entries
