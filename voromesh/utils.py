"""
Utility functions for mesh generation: vectorised geometry kernels and
process resource reporting.
"""

import logging
from typing import Dict, Sequence, Tuple

import numpy as np
import psutil

logger = logging.getLogger(__name__)

def closest_points_on_triangles(p, a, b, c):
    """
    Closest point to p on each triangle (a, b, c).

    Args:
        p: Query point(s), shape (3,) or (M, 3)
        a, b, c: Triangle corners, shape (M, 3)

    Returns:
        Array (M, 3) of closest points
    """
    p = np.broadcast_to(np.asarray(p, dtype=float), a.shape)
    ab = b - a
    ac = c - a
    ap = p - a

    d1 = np.einsum('ij,ij->i', ab, ap)
    d2 = np.einsum('ij,ij->i', ac, ap)

    bp = p - b
    d3 = np.einsum('ij,ij->i', ab, bp)
    d4 = np.einsum('ij,ij->i', ac, bp)

    cp = p - c
    d5 = np.einsum('ij,ij->i', ab, cp)
    d6 = np.einsum('ij,ij->i', ac, cp)

    va = d3 * d6 - d5 * d4
    vb = d5 * d2 - d1 * d6
    vc = d1 * d4 - d3 * d2

    # Interior projection is the default; vertex/edge regions override it
    denom = va + vb + vc
    denom = np.where(np.abs(denom) > 0, denom, 1.0)
    v = vb / denom
    w = vc / denom
    result = a + ab * v[:, None] + ac * w[:, None]

    done = np.zeros(len(a), dtype=bool)

    def assign(mask, value):
        nonlocal done
        mask = mask & ~done
        result[mask] = value[mask]
        done |= mask

    # Vertex regions
    assign((d1 <= 0) & (d2 <= 0), a)
    assign((d3 >= 0) & (d4 <= d3), b)
    assign((d6 >= 0) & (d5 <= d6), c)

    # Edge regions
    with np.errstate(divide='ignore', invalid='ignore'):
        t_ab = np.nan_to_num(d1 / (d1 - d3))
        t_ac = np.nan_to_num(d2 / (d2 - d6))
        t_bc = np.nan_to_num((d4 - d3) / ((d4 - d3) + (d5 - d6)))
    assign((vc <= 0) & (d1 >= 0) & (d3 <= 0), a + ab * t_ab[:, None])
    assign((vb <= 0) & (d2 >= 0) & (d6 <= 0), a + ac * t_ac[:, None])
    assign((va <= 0) & ((d4 - d3) >= 0) & ((d5 - d6) >= 0), b + (c - b) * t_bc[:, None])

    return result

def closest_points_on_segments(p, a, b):
    """
    Closest point to p on each segment (a, b).

    Returns:
        Tuple of (points (M, 3), parameter t (M,))
    """
    p = np.broadcast_to(np.asarray(p, dtype=float), a.shape)
    ab = b - a
    length_sqr = np.einsum('ij,ij->i', ab, ab)
    safe = np.where(length_sqr > 0, length_sqr, 1.0)
    t = np.clip(np.einsum('ij,ij->i', p - a, ab) / safe, 0.0, 1.0)
    return a + ab * t[:, None], t

def count_ray_crossings(origins, direction, a, b, c, eps=1e-12):
    """
    Count crossings of rays (origins + s*direction, s > 0) with triangles.
    Moller-Trumbore, vectorised over the triangles for each origin.

    Returns:
        Integer array with one crossing count per origin
    """
    origins = np.atleast_2d(np.asarray(origins, dtype=float))
    direction = np.asarray(direction, dtype=float)
    e1 = b - a
    e2 = c - a
    h = np.cross(direction, e2)
    det = np.einsum('ij,ij->i', e1, h)
    valid = np.abs(det) > eps
    inv_det = np.where(valid, 1.0 / np.where(valid, det, 1.0), 0.0)

    counts = np.zeros(len(origins), dtype=int)
    for i, origin in enumerate(origins):
        s = origin - a
        u = np.einsum('ij,ij->i', s, h) * inv_det
        q = np.cross(s, e1)
        v = (q @ direction) * inv_det
        t = np.einsum('ij,ij->i', e2, q) * inv_det
        hits = valid & (u >= 0) & (v >= 0) & (u + v <= 1) & (t > eps)
        counts[i] = int(np.count_nonzero(hits))

    return counts

def face_centre_and_area(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Centre and area vector of a polygon, OpenFOAM style: triangle fan around
    the point average, centre weighted by triangle area.

    Args:
        points: Polygon vertices in order, shape (n, 3)

    Returns:
        Tuple of (centre (3,), area vector (3,))
    """
    n = len(points)
    if n == 3:
        area = 0.5 * np.cross(points[1] - points[0], points[2] - points[0])
        return points.mean(axis=0), area

    average = points.mean(axis=0)
    nxt = np.roll(points, -1, axis=0)
    tri_areas = 0.5 * np.cross(points - average, nxt - average)
    area = tri_areas.sum(axis=0)

    area_mag = np.linalg.norm(area)
    if area_mag < 1e-300:
        return average, area

    normal = area / area_mag
    weights = tri_areas @ normal
    tri_centres = (points + nxt + average) / 3.0
    total = weights.sum()
    if abs(total) < 1e-300:
        return average, area
    centre = (weights[:, None] * tri_centres).sum(axis=0) / total
    return centre, area

def bounding_box(points: np.ndarray) -> Dict[str, list]:
    """Bounding box of a point cloud as a JSON-friendly dict"""
    min_bounds = np.min(points, axis=0)
    max_bounds = np.max(points, axis=0)
    dimensions = max_bounds - min_bounds
    return {
        "min": min_bounds.tolist(),
        "max": max_bounds.tolist(),
        "dimensions": dimensions.tolist(),
        "max_dimension": float(np.max(dimensions))
    }

def unique_rows(points: np.ndarray, tolerance: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Merge coincident points.

    Returns:
        Tuple of (unique points, inverse index mapping input rows to unique rows)
    """
    if tolerance <= 0:
        unique, inverse = np.unique(points, axis=0, return_inverse=True)
        return unique, inverse.reshape(-1)

    keys = np.round(points / tolerance).astype(np.int64)
    _, first, inverse = np.unique(keys, axis=0, return_index=True, return_inverse=True)
    return points[first], inverse.reshape(-1)

def edge_key(a: int, b: int) -> Tuple[int, int]:
    return (a, b) if a < b else (b, a)

def polygon_edges(face: Sequence[int]):
    """Directed edges of a polygon in vertex order"""
    n = len(face)
    return [(face[i], face[(i + 1) % n]) for i in range(n)]

def process_memory_mb() -> float:
    """Resident memory of the current process in MB"""
    return psutil.Process().memory_info().rss / (1024 ** 2)

def system_resources() -> Dict[str, float]:
    """Available memory and CPU count, for run logs"""
    return {
        "available_memory_gb": psutil.virtual_memory().available / (1024 ** 3),
        "cpu_count": psutil.cpu_count() or 1
    }
