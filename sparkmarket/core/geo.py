"""
Spatial indexing: h3 grid cells at truth resolution, base-32 geohashes with
neighbor lookup for prefix range search, distances and location perturbation.
"""

import math
import random
from typing import Dict, Iterable, List, Tuple

import h3

from .config import CLAIM_GEOHASH_PRECISION, TRUTH_RESOLUTION
from .errors import InvalidInput

# Grid distance reported when h3 cannot relate two cells
FAR = 999

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE_LAT = 111320.0
EARTH_CIRCUMFERENCE_M = 40075000.0

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"

# Neighbor and border tables indexed by direction, then hash length parity
_NEIGHBORS = {
    "top": {"even": "p0r21436x8zb9dcf5h7kjnmqesgutwvy", "odd": "bc01fg45238967deuvhjyznpkmstqrwx"},
    "bottom": {"even": "14365h7k9dcfesgujnmqp0r2twvyx8zb", "odd": "238967debc01fg45kmstqrwxuvhjyznp"},
    "right": {"even": "bc01fg45238967deuvhjyznpkmstqrwx", "odd": "p0r21436x8zb9dcf5h7kjnmqesgutwvy"},
    "left": {"even": "238967debc01fg45kmstqrwxuvhjyznp", "odd": "14365h7k9dcfesgujnmqp0r2twvyx8zb"},
}
_BORDERS = {
    "top": {"even": "prxz", "odd": "bcfguvyz"},
    "bottom": {"even": "028b", "odd": "0145hjnp"},
    "right": {"even": "bcfguvyz", "odd": "prxz"},
    "left": {"even": "0145hjnp", "odd": "028b"},
}


def validate_coordinates(lat, lon) -> Tuple[float, float]:
    """Reject anything that is not a finite point on the globe."""
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError):
        raise InvalidInput("Coordinates must be numbers")
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidInput("Coordinates must be finite")
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise InvalidInput(f"Coordinates out of range: ({lat}, {lon})")
    return lat, lon


# --- h3 grid --------------------------------------------------------------------

def cell_for(lat: float, lon: float, resolution: int = TRUTH_RESOLUTION) -> str:
    lat, lon = validate_coordinates(lat, lon)
    return h3.latlng_to_cell(lat, lon, resolution)


def is_valid_cell(cell: str) -> bool:
    try:
        return isinstance(cell, str) and h3.is_valid_cell(cell)
    except (TypeError, ValueError):
        return False


def validate_cells(cells: Iterable[str], resolution: int = TRUTH_RESOLUTION) -> List[str]:
    """Deduplicate cell ids, keeping order, and require each to be a valid cell at resolution."""
    result = []
    for cell in cells:
        if not is_valid_cell(cell):
            raise InvalidInput(f"Invalid grid cell: {cell}")
        if h3.get_resolution(cell) != resolution:
            raise InvalidInput(f"Grid cell {cell} is not at resolution {resolution}")
        if cell not in result:
            result.append(cell)
    return result


def cell_centroid(cell: str) -> Tuple[float, float]:
    if not is_valid_cell(cell):
        raise InvalidInput(f"Invalid grid cell: {cell}")
    return h3.cell_to_latlng(cell)


def cell_neighbors(cell: str) -> List[str]:
    """The 1-ring around cell, excluding cell itself."""
    if not is_valid_cell(cell):
        raise InvalidInput(f"Invalid grid cell: {cell}")
    return [c for c in h3.grid_disk(cell, 1) if c != cell]


def grid_distance(a: str, b: str) -> int:
    """Hex-grid distance, or FAR when the cells are too far apart to resolve."""
    if a == b:
        return 0
    try:
        return h3.grid_distance(a, b)
    except Exception:
        return FAR


def min_grid_distance(cell: str, covered: Iterable[str]) -> int:
    """Distance from cell to the nearest of the covered cells."""
    best = FAR
    for target in covered:
        best = min(best, grid_distance(cell, target))
        if best == 0:
            break
    return best


# --- Geohash --------------------------------------------------------------------

def encode_geohash(lat: float, lon: float, precision: int = CLAIM_GEOHASH_PRECISION) -> str:
    lat, lon = validate_coordinates(lat, lon)
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    chars = []
    idx = 0
    bit = 0
    even_bit = True

    while len(chars) < precision:
        rng, value = (lon_range, lon) if even_bit else (lat_range, lat)
        mid = (rng[0] + rng[1]) / 2
        if value >= mid:
            idx = idx * 2 + 1
            rng[0] = mid
        else:
            idx = idx * 2
            rng[1] = mid
        even_bit = not even_bit

        bit += 1
        if bit == 5:
            chars.append(BASE32[idx])
            bit = 0
            idx = 0

    return "".join(chars)


def decode_geohash(geohash: str) -> Tuple[float, float]:
    """Centre point of a geohash cell."""
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    even_bit = True

    for char in geohash:
        cd = BASE32.find(char)
        if cd < 0:
            raise InvalidInput(f"Invalid geohash: {geohash}")
        for shift in range(4, -1, -1):
            rng = lon_range if even_bit else lat_range
            mid = (rng[0] + rng[1]) / 2
            if cd & (1 << shift):
                rng[0] = mid
            else:
                rng[1] = mid
            even_bit = not even_bit

    return (lat_range[0] + lat_range[1]) / 2, (lon_range[0] + lon_range[1]) / 2


def _adjacent(geohash: str, direction: str) -> str:
    last = geohash[-1]
    parity = "odd" if len(geohash) % 2 else "even"
    base = geohash[:-1]

    if last in _BORDERS[direction][parity]:
        if not base:
            # Edge of the world
            return geohash
        base = _adjacent(base, direction)

    return base + BASE32[_NEIGHBORS[direction][parity].index(last)]


def geohash_neighbors(geohash: str) -> Dict[str, str]:
    """The 8 cardinal and diagonal neighbors of a geohash."""
    top = _adjacent(geohash, "top")
    bottom = _adjacent(geohash, "bottom")
    return {
        "top": top,
        "bottom": bottom,
        "right": _adjacent(geohash, "right"),
        "left": _adjacent(geohash, "left"),
        "topleft": _adjacent(top, "left"),
        "topright": _adjacent(top, "right"),
        "bottomleft": _adjacent(bottom, "left"),
        "bottomright": _adjacent(bottom, "right"),
    }


def search_prefixes(lat: float, lon: float, precision: int) -> List[str]:
    """Geohash at precision plus its neighbors, deduplicated (they collapse at the poles)."""
    center = encode_geohash(lat, lon, precision)
    prefixes = [center]
    for neighbor in geohash_neighbors(center).values():
        if neighbor not in prefixes:
            prefixes.append(neighbor)
    return prefixes


# --- Distance and perturbation ----------------------------------------------------

def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def perturb_location(lat: float, lon: float, radius_m: float, rng: random.Random = None) -> Tuple[float, float]:
    """
    Move a point to a uniformly random spot within radius_m of it.

    The offset radius is R * sqrt(u) so points are uniform over the disk area.
    The result never equals the input point and stays on the globe: latitude
    is clamped at the poles and longitude wraps across the antimeridian.
    """
    rng = rng if rng is not None else random.Random()
    meters_per_degree_lon = EARTH_CIRCUMFERENCE_M * math.cos(math.radians(lat)) / 360
    while True:
        # u in (0, 1] so the offset is never exactly zero
        r = radius_m * math.sqrt(1.0 - rng.random())
        theta = rng.random() * 2 * math.pi
        dy = r * math.sin(theta) / METERS_PER_DEGREE_LAT
        dx = r * math.cos(theta) / meters_per_degree_lon if meters_per_degree_lon > 0 else 0.0
        new_lat = max(-90.0, min(90.0, lat + dy))
        new_lon = lon + dx
        if not -180.0 <= new_lon <= 180.0:
            new_lon = (new_lon + 180.0) % 360.0 - 180.0
        if (new_lat, new_lon) != (lat, lon):
            return new_lat, new_lon
