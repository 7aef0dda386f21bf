import math

EARTH_RADIUS_KM = 6371.0088
KM_PER_DEGREE = 111.32
MAX_CELLS_PER_QUERY = 4096


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lng2 - lng1)
    h = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


def _cell_degrees(cell_size_km: float) -> float:
    return cell_size_km / KM_PER_DEGREE


def _columns(step: float) -> int:
    return max(1, int(math.ceil(360.0 / step)))


def cell_of(lat: float, lng: float, cell_size_km: float) -> tuple[int, int]:
    """Grid cell of a coordinate. Cells are square in degrees."""
    step = _cell_degrees(cell_size_km)
    row = int(math.floor((lat + 90.0) / step))
    col = int(math.floor((lng + 180.0) / step)) % _columns(step)
    return row, col


def cells_within(lat: float, lng: float, radius_km: float, cell_size_km: float) -> set[tuple[int, int]] | None:
    """Cells that may hold a point within ``radius_km``.

    Returns ``None`` when the bounding box touches a pole or spans more cells
    than is worth enumerating; callers then skip the geo restriction and rely
    on the exact distance check.
    """
    step = _cell_degrees(cell_size_km)
    dlat = radius_km / KM_PER_DEGREE
    lat_lo, lat_hi = lat - dlat, lat + dlat
    if lat_lo <= -89.0 or lat_hi >= 89.0:
        return None
    cos_edge = min(math.cos(math.radians(lat_lo)), math.cos(math.radians(lat_hi)))
    dlng = radius_km / (KM_PER_DEGREE * cos_edge)
    if dlng >= 180.0:
        return None

    row_lo = int(math.floor((lat_lo + 90.0) / step))
    row_hi = int(math.floor((lat_hi + 90.0) / step))
    col_lo = int(math.floor((lng - dlng + 180.0) / step))
    col_hi = int(math.floor((lng + dlng + 180.0) / step))
    if (row_hi - row_lo + 1) * (col_hi - col_lo + 1) > MAX_CELLS_PER_QUERY:
        return None

    ncols = _columns(step)
    return {(row, col % ncols) for row in range(row_lo, row_hi + 1) for col in range(col_lo, col_hi + 1)}
