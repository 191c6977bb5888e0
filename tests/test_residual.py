"""Residual accumulation, pooling and masking."""

import math

import numpy as np
import pytest

from lustre_shop.core.residual import (
    ErrorReport,
    ResidualAccumulator,
    ResidualSums,
    decode_gamma,
    decode_srgb,
    encode_gamma,
    encode_srgb,
    finalize,
    parse_report_lines,
)


def direct_rmse(prediction, ground_truth, weight):
    valid = weight > 0
    diff = prediction[valid] - ground_truth[valid]
    return math.sqrt(np.sum(weight[valid] * np.mean(diff * diff, axis=-1)) / np.sum(weight[valid]))


class TestFinalize:

    def test_zero_weight_is_nan(self):
        assert math.isnan(finalize(0.0, 0.0))
        assert math.isnan(finalize(5.0, 0.0))

    def test_value(self):
        assert finalize(8.0, 2.0) == pytest.approx(2.0)

    def test_empty_sums_rmse_is_nan(self):
        assert math.isnan(ResidualSums().rmse)


class TestPooling:

    def test_pool_equals_union(self, rng):
        prediction = rng.random((50, 3))
        truth = rng.random((50, 3))
        weight = rng.random(50)
        weight[::7] = 0.0

        for split in (1, 17, 33, 49):
            a = ResidualSums.from_pixels(prediction[:split], truth[:split], weight[:split])
            b = ResidualSums.from_pixels(prediction[split:], truth[split:], weight[split:])
            assert (a + b).rmse == pytest.approx(direct_rmse(prediction, truth, weight), rel=1e-12)

    def test_random_partition(self, rng):
        prediction = rng.random((8, 8, 3))
        truth = rng.random((8, 8, 3))
        weight = rng.random((8, 8))
        part = rng.random((8, 8)) < 0.5

        a = ResidualSums.from_pixels(prediction, truth, np.where(part, weight, 0.0))
        b = ResidualSums.from_pixels(prediction, truth, np.where(part, 0.0, weight))
        union = ResidualSums.from_pixels(prediction, truth, weight)
        assert (a + b).rmse == pytest.approx(union.rmse, rel=1e-12)

    def test_accumulator_merges_per_view(self, rng):
        images = [(rng.random((4, 4, 3)), rng.random((4, 4, 3)), rng.random((4, 4))) for _ in range(3)]

        whole = ResidualAccumulator()
        for k, (p, t, w) in enumerate(images):
            whole.accumulate_view(k, p, t, w)

        left, right = ResidualAccumulator(), ResidualAccumulator()
        for k, (p, t, w) in enumerate(images):
            left.accumulate_view(k, p[:2], t[:2], w[:2])
            right.accumulate_view(k, p[2:], t[2:], w[2:])
        left.merge(right)

        assert left.rmse == pytest.approx(whole.rmse, rel=1e-12)
        for k, rmse in whole.view_rmse().items():
            assert left.view_rmse()[k] == pytest.approx(rmse, rel=1e-12)


class TestMasking:

    @pytest.mark.parametrize("garbage", [np.nan, np.inf, -np.inf, 1e30])
    def test_masked_pixel_does_not_change_total(self, rng, garbage):
        prediction = rng.random((10, 3))
        truth = rng.random((10, 3))
        weight = np.ones(10)
        reference = ResidualSums.from_pixels(prediction, truth, weight)

        weight_masked = weight.copy()
        weight_masked[4] = 0.0
        poisoned = prediction.copy()
        poisoned[4] = garbage
        expected = ResidualSums.from_pixels(prediction, truth, weight_masked)
        result = ResidualSums.from_pixels(poisoned, truth, weight_masked)

        assert math.isfinite(result.rmse)
        assert result == expected
        assert result.sum_weight == reference.sum_weight - 1.0

    def test_nan_weight_is_masked(self):
        prediction = np.ones((2, 3))
        truth = np.zeros((2, 3))
        result = ResidualSums.from_pixels(prediction, truth, np.array([1.0, np.nan]))
        assert result.sum_weight == 1.0
        assert result.rmse == pytest.approx(1.0)

    def test_inputs_not_mutated(self, rng):
        prediction = rng.random((5, 3))
        truth = rng.random((5, 3))
        weight = rng.random(5)
        before = (prediction.copy(), truth.copy(), weight.copy())
        accumulator = ResidualAccumulator(gamma=2.2)
        accumulator.accumulate_view(0, prediction, truth, weight)
        for original, array in zip(before, (prediction, truth, weight)):
            np.testing.assert_array_equal(original, array)

    def test_all_masked_view_is_nan(self):
        accumulator = ResidualAccumulator()
        accumulator.accumulate_view(0, np.ones((2, 2, 3)), np.zeros((2, 2, 3)), np.zeros((2, 2)))
        assert math.isnan(accumulator.view_rmse()[0])
        assert math.isnan(accumulator.rmse)

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            ResidualSums.from_pixels(np.zeros((2, 3)), np.zeros((3, 3)), np.ones(2))
        with pytest.raises(ValueError):
            ResidualSums.from_pixels(np.zeros((2, 3)), np.zeros((2, 3)), np.ones(3))


class TestGamma:

    def test_gamma_pass_is_recomputed_from_encoded_values(self):
        prediction = np.array([[0.25, 0.25, 0.25]])
        truth = np.array([[0.5, 0.5, 0.5]])
        weight = np.ones(1)

        linear = ResidualAccumulator()
        encoded = ResidualAccumulator(gamma=2.2)
        linear.accumulate_view(0, prediction, truth, weight)
        encoded.accumulate_view(0, prediction, truth, weight)

        assert linear.rmse == pytest.approx(0.25)
        assert encoded.rmse == pytest.approx(0.5 ** (1 / 2.2) - 0.25 ** (1 / 2.2))
        assert encoded.rmse != pytest.approx(encode_gamma(np.array(linear.rmse)))

    def test_round_trips(self):
        values = np.linspace(0.0, 1.0, 11)
        np.testing.assert_allclose(decode_gamma(encode_gamma(values)), values, atol=1e-12)
        np.testing.assert_allclose(decode_srgb(encode_srgb(values)), values, atol=1e-12)

    def test_srgb_linear_segment(self):
        assert float(encode_srgb(np.array(0.001))) == pytest.approx(0.01292)


class TestErrorReport:

    def test_lines_and_nan(self):
        report = ErrorReport()
        report.add("Basis fit (linear)", 0.125)
        report.add("Empty", math.nan)
        lines = report.format_lines()
        assert lines == ["Basis fit (linear), 0.125", "Empty, NaN"]

        parsed = parse_report_lines(lines)
        assert parsed[0] == ("Basis fit (linear)", 0.125)
        assert math.isnan(parsed[1][1])

    def test_add_pass_labels(self):
        linear, encoded = ResidualAccumulator(), ResidualAccumulator(gamma=2.2)
        report = ErrorReport()
        report.add_pass("GGX fit", linear, encoded)
        assert [label for label, _ in report.entries] == ["GGX fit (linear)", "GGX fit (gamma-corrected)"]
        assert math.isnan(report.get("GGX fit (linear)"))

    def test_comma_in_label_rejected(self):
        with pytest.raises(ValueError):
            ErrorReport().add("a, b", 1.0)

    def test_missing_label(self):
        with pytest.raises(KeyError):
            ErrorReport().get("nope")
