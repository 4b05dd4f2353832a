"""Geometric functions for mesh depth optimization.

This module implements the geometry kernel of the optimizer: point in
triangle tests, barycentric coordinates, triangle bounding boxes, bearing
vectors and the inverse depth arithmetic used to reconstruct vertices.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence, Tuple

import numpy as np

from depthmesh.config import MeshOptimizationError

logger = logging.getLogger(__name__)

# Largest deviation from unit norm tolerated for a bearing vector
BEARING_NORM_TOL = 1e-4
# Triangles with a smaller absolute signed area are degenerate
DEGENERATE_AREA_TOL = 1e-12
# Barycentric weights below -tol mean the query lies outside the triangle
BARYCENTRIC_OUTSIDE_TOL = 1e-9


class CheiralityError(MeshOptimizationError):
    """Point behind the camera cannot be projected."""


class GeometryError(MeshOptimizationError):
    """Numerically invalid geometric quantity."""


BoundingBox = Tuple[int, int, int, int]


def sign(p1: Sequence[float], p2: Sequence[float], p3: Sequence[float]) -> float:
    """Signed edge function of p1 with respect to the line p3 -> p2."""
    return (p1[0] - p3[0]) * (p2[1] - p3[1]) - (p2[0] - p3[0]) * (p1[1] - p3[1])


def point_in_triangle(
    pt: Sequence[float],
    v1: Sequence[float],
    v2: Sequence[float],
    v3: Sequence[float]
) -> bool:
    """Check whether a 2D point lies inside a triangle.

    Points on an edge or on a vertex count as inside.

    Args:
        pt: Query point [x, y]
        v1: First triangle vertex [x, y]
        v2: Second triangle vertex [x, y]
        v3: Third triangle vertex [x, y]

    Returns:
        True if the point is inside or on the boundary of the triangle
    """
    d1 = sign(pt, v1, v2)
    d2 = sign(pt, v2, v3)
    d3 = sign(pt, v3, v1)

    has_neg = (d1 < 0) or (d2 < 0) or (d3 < 0)
    has_pos = (d1 > 0) or (d2 > 0) or (d3 > 0)

    return not (has_neg and has_pos)


def _coincides(p: Sequence[float], v: Sequence[float]) -> bool:
    eps = np.finfo(np.float64).eps
    scale = max(1.0, abs(v[0]), abs(v[1]))
    return abs(p[0] - v[0]) <= eps * scale and abs(p[1] - v[1]) <= eps * scale


def barycentric_coordinates(
    v0: Sequence[float],
    v1: Sequence[float],
    v2: Sequence[float],
    p: Sequence[float]
) -> Optional[Tuple[float, float, float]]:
    """Compute the barycentric coordinates of a point in a triangle.

    Uses the ratio of signed sub-triangle areas to the triangle area.

    Args:
        v0: First triangle vertex [x, y]
        v1: Second triangle vertex [x, y]
        v2: Third triangle vertex [x, y]
        p: Query point [x, y]

    Returns:
        Tuple (b0, b1, b2) summing to one, or None if the triangle is
        degenerate, the point coincides with a vertex or lies outside
    """
    area = (v1[1] - v2[1]) * (v0[0] - v2[0]) + (v2[0] - v1[0]) * (v0[1] - v2[1])
    if not math.isfinite(area) or abs(area) <= DEGENERATE_AREA_TOL:
        return None

    if _coincides(p, v0) or _coincides(p, v1) or _coincides(p, v2):
        return None

    b0 = ((v1[1] - v2[1]) * (p[0] - v2[0]) + (v2[0] - v1[0]) * (p[1] - v2[1])) / area
    b1 = ((v2[1] - v0[1]) * (p[0] - v2[0]) + (v0[0] - v2[0]) * (p[1] - v2[1])) / area
    b2 = 1.0 - b0 - b1

    if min(b0, b1, b2) < -BARYCENTRIC_OUTSIDE_TOL:
        return None

    return float(b0), float(b1), float(b2)


def triangle_bounding_box(
    v1: Sequence[float],
    v2: Sequence[float],
    v3: Sequence[float],
    width: int,
    height: int
) -> Optional[BoundingBox]:
    """Compute the integer pixel bounding box of a triangle clipped to the image.

    Args:
        v1: First triangle vertex [x, y]
        v2: Second triangle vertex [x, y]
        v3: Third triangle vertex [x, y]
        width: Image width in pixels
        height: Image height in pixels

    Returns:
        Tuple (x0, x1, y0, y1) of inclusive pixel bounds, or None if the
        triangle does not overlap the image
    """
    xs = (v1[0], v2[0], v3[0])
    ys = (v1[1], v2[1], v3[1])
    if not all(math.isfinite(c) for c in xs + ys):
        return None

    # x is the column (width) and y the row (height)
    x0 = max(0, int(math.floor(min(xs))))
    x1 = min(width - 1, int(math.floor(max(xs))))
    y0 = max(0, int(math.floor(min(ys))))
    y1 = min(height - 1, int(math.floor(max(ys))))

    if x0 > x1 or y0 > y1:
        return None

    return x0, x1, y0, y1


def bearing_vector_from_pixel(camera, pixel: Sequence[float]) -> np.ndarray:
    """Compute the unit bearing vector of a pixel in the body frame.

    Back-projects the pixel at unit depth with the camera and normalizes
    the resulting point.

    Args:
        camera: Camera providing back_project_depth(pixel, depth)
        pixel: Pixel coordinates [x, y]

    Returns:
        3D unit vector in the body frame
    """
    lmk = np.asarray(camera.back_project_depth(pixel, 1.0), dtype=np.float64)
    norm = np.linalg.norm(lmk)
    if not np.isfinite(norm) or norm <= 0:
        raise GeometryError(f"Cannot compute bearing vector for pixel {tuple(pixel)}")

    bearing = lmk / norm
    if abs(bearing @ bearing - 1.0) > BEARING_NORM_TOL:
        raise GeometryError(
            f"Bearing vector for pixel {tuple(pixel)} is not unit length: "
            f"{np.linalg.norm(bearing):.6f}"
        )
    return bearing


def bearing_vector_from_landmark(
    extrinsics: np.ndarray,
    lmk: Sequence[float]
) -> Tuple[np.ndarray, float]:
    """Compute the bearing vector and inverse depth of a landmark.

    Args:
        extrinsics: 4x4 pose of the camera in the landmark's frame
        lmk: 3D landmark

    Returns:
        Tuple of (unit bearing vector in the camera frame, inverse depth)
    """
    T_inv = np.linalg.inv(extrinsics)
    ray = T_inv[:3, :3] @ np.asarray(lmk, dtype=np.float64) + T_inv[:3, 3]
    norm = np.linalg.norm(ray)
    if norm <= 0:
        raise GeometryError("Landmark coincides with the camera center")

    inverse_depth = 1.0 / norm
    return inverse_depth * ray, inverse_depth


def pixel_from_landmark(
    lmk: Sequence[float],
    extrinsics: np.ndarray,
    K: np.ndarray
) -> np.ndarray:
    """Project a 3D landmark to pixel coordinates of a pinhole camera.

    Args:
        lmk: 3D landmark
        extrinsics: 4x4 pose of the camera in the landmark's frame
        K: 3x3 camera intrinsic matrix

    Returns:
        (Sub-)pixel coordinates [x, y]
    """
    T_inv = np.linalg.inv(extrinsics)
    p_cam = T_inv[:3, :3] @ np.asarray(lmk, dtype=np.float64) + T_inv[:3, 3]
    pixel = K @ p_cam
    if pixel[2] <= 0:
        raise CheiralityError(f"Landmark {tuple(lmk)} is behind the camera")
    return pixel[:2] / pixel[2]


def is_valid_point(lmk: Sequence[float], min_z: float, max_z: float) -> bool:
    """Check that a point cloud sample is finite and inside the depth gate."""
    x, y, z = lmk[0], lmk[1], lmk[2]
    if not (math.isfinite(x) and math.isfinite(y) and math.isfinite(z)):
        return False
    return z > 0 and min_z <= z <= max_z


def valid_points_mask(point_cloud: np.ndarray, min_z: float, max_z: float) -> np.ndarray:
    """Vectorized is_valid_point over the last axis of a point cloud.

    Args:
        point_cloud: ...x3 array of 3D points
        min_z: Smallest accepted depth
        max_z: Largest accepted depth

    Returns:
        Boolean array with the leading shape of the point cloud
    """
    finite = np.all(np.isfinite(point_cloud), axis=-1)
    with np.errstate(invalid="ignore"):
        z = point_cloud[..., 2]
        in_gate = (z > 0) & (z >= min_z) & (z <= max_z)
    return finite & in_gate


def depth_from_inverse_depth(inv_depth: float) -> float:
    """Convert inverse depth to depth, returning inf when it vanishes."""
    if inv_depth == 0:
        return math.inf
    return 1.0 / inv_depth


def depth_variance_from_inverse_depth(variance_of_inv_depth: float, inv_depth: float) -> float:
    """Propagate the variance of an inverse depth to its depth."""
    if inv_depth == 0:
        return math.inf
    return variance_of_inv_depth / inv_depth ** 2
