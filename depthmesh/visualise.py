"""Visualization utilities for mesh depth optimization.

This module provides the optional visualizer handed to the mesh optimizer,
which gathers Open3D geometry (point clouds, camera, bearing rays, depth
confidence intervals and meshes), plus OpenCV and matplotlib helpers to
draw 2D meshes on images and plot depth uncertainty.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence, Tuple

import cv2
import matplotlib.pyplot as plt
import numpy as np
import open3d as o3d

from depthmesh.mesh import Mesh2D, Mesh3D

logger = logging.getLogger(__name__)

RED = (1.0, 0.0, 0.0)
YELLOW = (1.0, 1.0, 0.0)
AZURE = (0.0, 0.5, 1.0)


def create_camera_frustum(
    pose: np.ndarray,
    K: np.ndarray,
    image_size: Tuple[int, int],
    depth: float = 0.5,
    color: Tuple[float, float, float] = (0.8, 0.2, 0.8)
) -> o3d.geometry.LineSet:
    """Create a camera frustum for visualization.

    Args:
        pose: 4x4 pose of the camera in the body frame
        K: 3x3 camera intrinsic matrix
        image_size: Image (width, height) in pixels
        depth: Distance of the frustum base from the camera center
        color: RGB color for the frustum

    Returns:
        Open3D LineSet representing the camera frustum
    """
    width, height = image_size
    corners_px = np.array([
        [0, 0, 1],
        [width, 0, 1],
        [width, height, 1],
        [0, height, 1]
    ], dtype=np.float64)

    # Rays through the image corners, scaled to the frustum depth
    corners_cam = (np.linalg.inv(K) @ corners_px.T).T * depth
    points_cam = np.vstack((np.zeros(3), corners_cam))
    points_body = points_cam @ pose[:3, :3].T + pose[:3, 3]

    lines = [
        [0, 1], [0, 2], [0, 3], [0, 4],
        [1, 2], [2, 3], [3, 4], [4, 1]
    ]

    line_set = o3d.geometry.LineSet()
    line_set.points = o3d.utility.Vector3dVector(points_body)
    line_set.lines = o3d.utility.Vector2iVector(lines)
    line_set.colors = o3d.utility.Vector3dVector([color for _ in lines])
    return line_set


def array_to_pcd(
    points: np.ndarray,
    colors: Optional[np.ndarray] = None
) -> o3d.geometry.PointCloud:
    """Convert numpy arrays to Open3D point cloud.

    Args:
        points: Nx3 array of point coordinates
        colors: Nx3 array of RGB colors (optional)

    Returns:
        Open3D PointCloud object
    """
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(points)

    if colors is not None:
        if colors.size and np.max(colors) > 1.0:
            colors = colors / 255.0
        pcd.colors = o3d.utility.Vector3dVector(colors)

    return pcd


def draw_pixel_on_img(
    pixel: Sequence[float],
    img: np.ndarray,
    color: Tuple[int, int, int] = (0, 0, 255),
    pixel_size: int = 1
) -> None:
    """Draw a filled circle on a pixel of a BGR image, in place."""
    center = (int(round(pixel[0])), int(round(pixel[1])))
    cv2.circle(img, center, pixel_size, color, -1)


def draw_2d_mesh_on_img(
    mesh_2d: Mesh2D,
    img: np.ndarray,
    color: Tuple[int, int, int] = (0, 0, 255),
    thickness: int = 1,
    line_type: int = cv2.LINE_8
) -> np.ndarray:
    """Draw the edges of a 2D mesh on an image, in place.

    Args:
        mesh_2d: 2D triangular mesh over the image
        img: Image to draw on
        color: Line color (BGR)
        thickness: Line thickness in pixels
        line_type: OpenCV line type

    Returns:
        The image that was drawn on
    """
    if mesh_2d.number_of_polygons == 0:
        raise ValueError("Cannot draw an empty 2D mesh")

    for k in range(mesh_2d.number_of_polygons):
        polygon = mesh_2d.get_polygon(k)
        pts = [(int(round(v.position[0])), int(round(v.position[1]))) for v in polygon]
        cv2.line(img, pts[0], pts[1], color, thickness, line_type)
        cv2.line(img, pts[1], pts[2], color, thickness, line_type)
        cv2.line(img, pts[2], pts[0], color, thickness, line_type)
    return img


def save_depth_uncertainty_plot(
    depths: Dict[int, float],
    std_deviations: Dict[int, float],
    output_path: str
) -> None:
    """Plot the depth of each landmark with its standard deviation.

    Args:
        depths: Depth of each landmark
        std_deviations: Depth standard deviation of each landmark
        output_path: Path to save the figure
    """
    lmk_ids = sorted(set(depths) & set(std_deviations))
    values = np.array([depths[k] for k in lmk_ids])
    errors = np.array([std_deviations[k] for k in lmk_ids])

    fig, ax = plt.subplots(figsize=(10, 5))
    ax.errorbar(range(len(lmk_ids)), values, yerr=errors, fmt='o', markersize=3, capsize=2)
    ax.set_xticks(range(len(lmk_ids)))
    ax.set_xticklabels([str(k) for k in lmk_ids], rotation=90, fontsize=6)
    ax.set_xlabel("Landmark id")
    ax.set_ylabel("Depth")
    ax.set_title("Optimized vertex depths (1 sigma)")
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)

    logger.info(f"Depth uncertainty plot saved to {output_path}")


def _cylinder_between(
    p1: np.ndarray,
    p2: np.ndarray,
    radius: float,
    resolution: int
) -> Optional[o3d.geometry.TriangleMesh]:
    axis = np.asarray(p2, dtype=np.float64) - np.asarray(p1, dtype=np.float64)
    height = np.linalg.norm(axis)
    if not np.isfinite(height) or height < 1e-9:
        return None

    cylinder = o3d.geometry.TriangleMesh.create_cylinder(
        radius=radius, height=height, resolution=resolution
    )

    # Open3D cylinders are centered on the origin along z
    direction = axis / height
    z = np.array([0.0, 0.0, 1.0])
    rot_axis = np.cross(z, direction)
    sin_angle = np.linalg.norm(rot_axis)
    angle = np.arctan2(sin_angle, z @ direction)
    if sin_angle > 1e-12:
        R = o3d.geometry.get_rotation_matrix_from_axis_angle(rot_axis / sin_angle * angle)
        cylinder.rotate(R, center=np.zeros(3))
    elif z @ direction < 0:
        cylinder.rotate(np.diag([1.0, -1.0, -1.0]), center=np.zeros(3))

    cylinder.translate((np.asarray(p1) + np.asarray(p2)) / 2.0)
    return cylinder


class MeshVisualizer:
    """Collects named Open3D geometry produced around a mesh optimization."""

    def __init__(self, image_size: Tuple[int, int] = (752, 480)):
        self.image_size = image_size
        self.widgets: Dict[str, o3d.geometry.Geometry] = {}

    def __len__(self) -> int:
        return len(self.widgets)

    def __contains__(self, widget_id: str) -> bool:
        return widget_id in self.widgets

    def clear(self) -> None:
        self.widgets.clear()

    def draw_point_cloud(
        self,
        widget_id: str,
        point_cloud: np.ndarray,
        pose: np.ndarray,
        color: Tuple[float, float, float] = RED
    ) -> None:
        """Add the finite samples of an HxWx3 point cloud, moved by pose."""
        points = point_cloud.reshape(-1, 3).astype(np.float64)
        points = points[np.all(np.isfinite(points), axis=1)]
        points = points @ pose[:3, :3].T + pose[:3, 3]

        colors = np.tile(np.asarray(color, dtype=np.float64), (len(points), 1))
        self.widgets[widget_id] = array_to_pcd(points, colors)

    def draw_scene(self, pose: np.ndarray, K: np.ndarray) -> None:
        """Add the body coordinate frame, the camera frame and its frustum."""
        self.widgets["World Coordinates"] = o3d.geometry.TriangleMesh.create_coordinate_frame(size=0.5)

        cam_frame = o3d.geometry.TriangleMesh.create_coordinate_frame(size=0.2)
        cam_frame.transform(pose)
        self.widgets["Cam Coordinates"] = cam_frame

        self.widgets["Cam Frustum"] = create_camera_frustum(pose, K, self.image_size)

    def draw_arrow(
        self,
        start: Sequence[float],
        end: Sequence[float],
        widget_id: str,
        color: Tuple[float, float, float] = RED
    ) -> None:
        line_set = o3d.geometry.LineSet()
        line_set.points = o3d.utility.Vector3dVector(np.array([start, end], dtype=np.float64))
        line_set.lines = o3d.utility.Vector2iVector([[0, 1]])
        line_set.colors = o3d.utility.Vector3dVector([color])
        self.widgets["Arrow " + widget_id] = line_set

    def draw_cylinder(
        self,
        widget_id: str,
        axis_point1: Sequence[float],
        axis_point2: Sequence[float],
        radius: float = 0.01,
        resolution: int = 30,
        color: Tuple[float, float, float] = AZURE
    ) -> None:
        """Add a cylinder between two points; skipped if degenerate or infinite."""
        cylinder = _cylinder_between(axis_point1, axis_point2, radius, resolution)
        if cylinder is None:
            logger.debug(f"Skipping degenerate cylinder {widget_id}")
            return
        cylinder.paint_uniform_color(color)
        self.widgets[widget_id] = cylinder

    def draw_3d_mesh(
        self,
        widget_id: str,
        mesh_3d: Mesh3D,
        display_as_wireframe: bool = False
    ) -> None:
        """Add a 3D mesh, as a surface or as a wireframe."""
        o3d_mesh = mesh_3d.to_open3d()
        if mesh_3d.number_of_unique_vertices > 0 and not o3d_mesh.has_vertex_colors():
            o3d_mesh.paint_uniform_color(YELLOW)
        o3d_mesh.compute_vertex_normals()

        if display_as_wireframe:
            self.widgets[widget_id] = o3d.geometry.LineSet.create_from_triangle_mesh(o3d_mesh)
        else:
            self.widgets[widget_id] = o3d_mesh
        logger.debug(f"Mesh widget {widget_id} ({mesh_3d.number_of_polygons} polygons)")

    def show(self, window_name: str = "Mesh Optimization") -> None:
        """Open a blocking Open3D window with all widgets."""
        if not self.widgets:
            logger.warning("Nothing to display")
            return
        o3d.visualization.draw_geometries(list(self.widgets.values()), window_name=window_name)
