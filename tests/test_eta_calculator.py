import pytest

from tools.eta_calculator import (
    calculate_eta_seconds,
    effective_speed_kmph,
    haversine_meters,
    smooth_speed,
)


def test_haversine_known_distances():
    assert haversine_meters(40.7128, -74.0060, 40.7128, -74.0060) == 0
    # one hundredth of a degree of latitude
    assert haversine_meters(40.0, -74.0, 40.01, -74.0) == pytest.approx(1112, rel=0.01)
    # New York to London, roughly 5570 km
    assert haversine_meters(40.7128, -74.0060, 51.5074, -0.1278) == pytest.approx(5_570_000, rel=0.01)


def test_smooth_speed():
    assert smooth_speed(None, 40.0, 0.3) == 40.0
    assert smooth_speed(40.0, 0.0, 0.3) == pytest.approx(28.0)
    assert smooth_speed(40.0, 40.0, 0.3) == pytest.approx(40.0)


@pytest.mark.parametrize("smoothed,expected", [(None, 32.0), (0.0, 32.0), (7.9, 32.0), (8.0, 8.0), (45.0, 45.0)])
def test_effective_speed_falls_back_when_crawling(smoothed, expected):
    assert effective_speed_kmph(smoothed, 8.0, 32.0) == expected


def test_eta_seconds():
    assert calculate_eta_seconds(1000, 36) == pytest.approx(100)
    # zero speed is clamped rather than dividing by zero
    assert calculate_eta_seconds(10, 0) == pytest.approx(100)
