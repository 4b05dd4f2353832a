"""Rasterization of a 2D mesh over a noisy point cloud.

This module binds the samples of an ordered point cloud to the triangles
of a 2D mesh, either by rasterizing each triangle over its bounding box or
by projecting every valid sample through the camera.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List

import numpy as np
from tqdm import tqdm

from depthmesh.config import PreconditionError
from depthmesh.geometry import point_in_triangle, triangle_bounding_box, valid_points_mask
from depthmesh.mesh import Mesh2D

logger = logging.getLogger(__name__)

# Tolerance in pixels between a projected sample and the pixel storing it
PROJECTION_TOL = 1e-3


@dataclass
class TriangleCorrespondences:
    """Samples of the point cloud bound to each triangle of a 2D mesh.

    Attributes:
        datapoints_xyz: Per triangle, an Nx3 array of samples in the camera
            rectified frame
        datapoints_pixels: Per triangle, an Nx2 array of the (u, v) pixels
            the samples come from
        number_of_valid_datapoints: Total number of bound samples
    """

    datapoints_xyz: List[np.ndarray] = field(default_factory=list)
    datapoints_pixels: List[np.ndarray] = field(default_factory=list)
    number_of_valid_datapoints: int = 0

    def __len__(self) -> int:
        return len(self.datapoints_xyz)

    def number_of_datapoints(self, tri_idx: int) -> int:
        return len(self.datapoints_xyz[tri_idx])


def check_point_cloud(noisy_point_cloud: np.ndarray) -> None:
    """Check that a point cloud is an HxWx3 array.

    Raises:
        PreconditionError: If the point cloud has the wrong shape
    """
    if noisy_point_cloud.ndim != 3 or noisy_point_cloud.shape[2] != 3:
        raise PreconditionError(
            f"Expected HxWx3 point cloud, got shape {noisy_point_cloud.shape}"
        )


def _empty_correspondences(n_polys: int) -> TriangleCorrespondences:
    return TriangleCorrespondences(
        datapoints_xyz=[np.zeros((0, 3)) for _ in range(n_polys)],
        datapoints_pixels=[np.zeros((0, 2)) for _ in range(n_polys)],
    )


def collect_triangle_datapoints(
    noisy_point_cloud: np.ndarray,
    mesh_2d: Mesh2D,
    min_z: float,
    max_z: float,
    verbose: bool = False
) -> TriangleCorrespondences:
    """Bind point cloud samples to triangles by rasterizing each triangle.

    Every integer pixel inside the bounding box of a triangle is tested with
    the triangle's edge functions. Pixels on an edge are inside, and a pixel
    on an edge shared by two triangles is bound to whichever triangle
    enumerates it first.

    Args:
        noisy_point_cloud: HxWx3 point cloud in the left rectified camera frame
        mesh_2d: 2D mesh over the image
        min_z: Smallest accepted sample depth
        max_z: Largest accepted sample depth
        verbose: Show a progress bar

    Returns:
        Per-triangle samples and pixels, in row-major (v, u) order
    """
    check_point_cloud(noisy_point_cloud)
    n_polys = mesh_2d.number_of_polygons
    if n_polys == 0:
        raise PreconditionError("Cannot collect datapoints for an empty 2D mesh")

    start_time = time.perf_counter()
    img_height, img_width = noisy_point_cloud.shape[:2]
    valid = valid_points_mask(noisy_point_cloud, min_z, max_z)

    corresp = _empty_correspondences(n_polys)
    claimed = np.zeros((img_height, img_width), dtype=bool)

    range_obj = tqdm(range(n_polys), desc="Rasterizing triangles") if verbose else range(n_polys)
    for k in range_obj:
        polygon = mesh_2d.get_polygon(k)
        vtx1 = polygon[0].position
        vtx2 = polygon[1].position
        vtx3 = polygon[2].position

        # 1. Bounding box of the triangle clipped to the image
        bbox = triangle_bounding_box(vtx1, vtx2, vtx3, img_width, img_height)
        if bbox is None:
            logger.warning(
                f"Triangle {k} out of screen: vertices {vtx1}, {vtx2}, {vtx3}, "
                f"image size {img_width}x{img_height}"
            )
            continue
        x0, x1, y0, y1 = bbox

        # 2. Cached edge differences
        x12 = vtx1[0] - vtx2[0]
        y12 = vtx1[1] - vtx2[1]
        x23 = vtx2[0] - vtx3[0]
        y23 = vtx2[1] - vtx3[1]
        x31 = vtx3[0] - vtx1[0]
        y31 = vtx3[1] - vtx1[1]

        # 3. Edge functions over the whole box, rows are v and columns u
        v, u = np.mgrid[y0:y1 + 1, x0:x1 + 1].astype(np.float64)
        d1 = (u - vtx2[0]) * y12 - x12 * (v - vtx2[1])
        d2 = (u - vtx3[0]) * y23 - x23 * (v - vtx3[1])
        d3 = (u - vtx1[0]) * y31 - x31 * (v - vtx1[1])

        has_neg = (d1 < 0) | (d2 < 0) | (d3 < 0)
        has_pos = (d1 > 0) | (d2 > 0) | (d3 > 0)
        inside = ~(has_neg & has_pos)

        accepted = inside & valid[y0:y1 + 1, x0:x1 + 1] & ~claimed[y0:y1 + 1, x0:x1 + 1]
        rows, cols = np.nonzero(accepted)
        if len(rows) == 0:
            continue

        pixels_v = rows + y0
        pixels_u = cols + x0
        claimed[pixels_v, pixels_u] = True
        corresp.datapoints_xyz[k] = noisy_point_cloud[pixels_v, pixels_u].astype(np.float64)
        corresp.datapoints_pixels[k] = np.column_stack((pixels_u, pixels_v)).astype(np.float64)
        corresp.number_of_valid_datapoints += len(rows)

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Collected {corresp.number_of_valid_datapoints} datapoints over {n_polys} triangles "
        f"(elapsed time: {elapsed_time:.3f}s)"
    )
    return corresp


def collect_triangle_datapoints_by_projection(
    noisy_point_cloud: np.ndarray,
    mesh_2d: Mesh2D,
    stereo_camera,
    min_z: float,
    max_z: float,
    verbose: bool = False
) -> TriangleCorrespondences:
    """Bind point cloud samples to triangles by projecting each sample.

    Each valid sample is moved to the body frame, projected with the stereo
    camera and bound to the first triangle containing its pixel. Every sample
    is bound to at most one triangle. Cost grows with pixels times triangles.

    Args:
        noisy_point_cloud: HxWx3 point cloud in the left rectified camera frame
        mesh_2d: 2D mesh over the image
        stereo_camera: Camera providing body_pose_left_cam_rect and project()
        min_z: Smallest accepted sample depth
        max_z: Largest accepted sample depth
        verbose: Show a progress bar

    Returns:
        Per-triangle samples and pixels, in row-major (v, u) order
    """
    check_point_cloud(noisy_point_cloud)
    n_polys = mesh_2d.number_of_polygons
    if n_polys == 0:
        raise PreconditionError("Cannot collect datapoints for an empty 2D mesh")

    start_time = time.perf_counter()
    valid = valid_points_mask(noisy_point_cloud, min_z, max_z)
    body_pose_left_cam_rect = stereo_camera.body_pose_left_cam_rect
    triangles = [[vtx.position for vtx in mesh_2d.get_polygon(k)] for k in range(n_polys)]

    xyz_lists = [[] for _ in range(n_polys)]
    pixel_lists = [[] for _ in range(n_polys)]
    n_valid = 0

    rows, cols = np.nonzero(valid)
    samples = zip(rows, cols)
    if verbose:
        samples = tqdm(samples, total=len(rows), desc="Projecting datapoints")
    for v, u in samples:
        lmk = noisy_point_cloud[v, u].astype(np.float64)

        # The stereo camera projects landmarks expressed in the body frame
        lmk_body = body_pose_left_cam_rect[:3, :3] @ lmk + body_pose_left_cam_rect[:3, 3]
        left_pixel, _ = stereo_camera.project(lmk_body)
        if abs(left_pixel[0] - u) > PROJECTION_TOL or abs(left_pixel[1] - v) > PROJECTION_TOL:
            raise PreconditionError(
                f"Sample at pixel ({u}, {v}) projects to ({left_pixel[0]:.4f}, "
                f"{left_pixel[1]:.4f}); point cloud and camera are inconsistent"
            )

        for k, (vtx1, vtx2, vtx3) in enumerate(triangles):
            if point_in_triangle(left_pixel, vtx1, vtx2, vtx3):
                xyz_lists[k].append(lmk)
                pixel_lists[k].append(left_pixel)
                n_valid += 1
                break

    corresp = _empty_correspondences(n_polys)
    for k in range(n_polys):
        if xyz_lists[k]:
            corresp.datapoints_xyz[k] = np.array(xyz_lists[k])
            corresp.datapoints_pixels[k] = np.array(pixel_lists[k])
    corresp.number_of_valid_datapoints = n_valid

    elapsed_time = time.perf_counter() - start_time
    logger.info(
        f"Collected {n_valid} datapoints by projection over {n_polys} triangles "
        f"(elapsed time: {elapsed_time:.3f}s)"
    )
    return corresp
