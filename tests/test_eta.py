from __future__ import annotations

from datetime import timedelta

import pytest

from timerbench_common import ConfigError, SweepParameters
from timerbench_sweep import estimate, eta_minutes, point_count, sweep_points


def _params(start, end, inc, samples=10):
    return SweepParameters(start_value=start, end_value=end,
                           increment_value=inc, sample_value=samples)


def test_estimate_assumes_two_ms_per_sample():
    duration = estimate(_params(0, 10, 1, 100))
    assert duration == timedelta(milliseconds=2000)
    assert eta_minutes(duration) == round((10 / 1) * 100 * 2 / 60000, 2)


def test_estimate_uses_unrounded_iteration_count():
    # 10 / 3 iterations, not 3 or 4
    duration = estimate(_params(0, 10, 3, 300))
    assert duration.total_seconds() == pytest.approx(10 / 3 * 300 * 2 / 1000)


def test_estimate_long_sweep_minutes():
    assert eta_minutes(estimate(_params(0.5, 0.6, 0.002, 50000))) == 83.33


@pytest.mark.parametrize("inc", [0, -0.1])
def test_estimate_rejects_non_positive_increment(inc):
    with pytest.raises(ConfigError):
        estimate(_params(0, 1, inc))


@pytest.mark.parametrize("start,end,inc,expected", [
    (0, 10, 1, 11),
    (0, 10.5, 1, 11),
    (1, 1, 0.5, 1),
    (0.5, 0.6, 0.0001, 1001),
    (0, 1, 0.1, 11),
])
def test_point_count(start, end, inc, expected):
    assert point_count(_params(start, end, inc)) == expected


def test_sweep_points_do_not_drift():
    points = sweep_points(_params(0, 1, 0.1))
    assert points[-1] == 1.0
    assert points == [round(i / 10, 4) for i in range(11)]
    assert all(p <= 1.0 for p in points)


def test_sweep_points_stay_within_end():
    points = sweep_points(_params(0.5, 0.5105, 0.002))
    assert points == [0.5, 0.502, 0.504, 0.506, 0.508, 0.51]


def test_estimate_too_long_is_a_config_error():
    with pytest.raises(ConfigError, match="too long"):
        estimate(_params(0, 1_000_000, 0.0001, 10**12))
