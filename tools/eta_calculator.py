# tools/eta_calculator.py
import math
from typing import Optional

EARTH_RADIUS_M = 6371000.0


def haversine_meters(lat1, lon1, lat2, lon2):
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi/2.0)**2 + math.cos(phi1)*math.cos(phi2)*(math.sin(dlambda/2.0)**2)
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def smooth_speed(previous: Optional[float], sample: float, factor: float) -> float:
    """Exponential moving average; the first sample seeds the average."""
    if previous is None:
        return sample
    return factor * sample + (1.0 - factor) * previous


def effective_speed_kmph(smoothed_kmph: Optional[float], min_moving_kmph: float, default_kmph: float) -> float:
    """A crawling or stopped bus would give an unbounded ETA, so assume the default cruising speed."""
    if smoothed_kmph is None or smoothed_kmph < min_moving_kmph:
        return default_kmph
    return smoothed_kmph


def calculate_eta_seconds(distance_m: float, speed_kmph: float) -> float:
    speed_m_s = max(speed_kmph * 1000.0 / 3600.0, 0.1)
    return distance_m / speed_m_s
