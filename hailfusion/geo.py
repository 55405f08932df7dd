"""Distance and grid helpers shared by reconciliation, calibration and territory code."""

import math
from typing import Tuple

from geopy.distance import great_circle

from .models import Report

KM_PER_DEGREE_LAT = 111.32


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    return great_circle((lat1, lon1), (lat2, lon2)).meters


def report_distance_m(a: Report, b: Report) -> float:
    return distance_m(a.latitude, a.longitude, b.latitude, b.longitude)


def seconds_apart(a: Report, b: Report) -> float:
    return abs((a.timestamp - b.timestamp).total_seconds())


def grid_cell(lat: float, lon: float, size_deg: float) -> Tuple[int, int]:
    """Integer grid indices of the cell containing the point."""
    return (math.floor(lat / size_deg), math.floor(lon / size_deg))


def cell_id(lat: float, lon: float, size_deg: float) -> str:
    lat_idx, lon_idx = grid_cell(lat, lon, size_deg)
    return f"{lat_idx},{lon_idx}"


def cell_bounds(cell: str, size_deg: float) -> Tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lon, max_lon) of a cell id."""
    lat_idx, lon_idx = (int(part) for part in cell.split(','))
    return (lat_idx * size_deg, (lat_idx + 1) * size_deg,
            lon_idx * size_deg, (lon_idx + 1) * size_deg)
