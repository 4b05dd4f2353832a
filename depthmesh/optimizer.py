"""Mesh depth optimization.

This module implements the mesh optimizer: it binds a noisy point cloud
to the triangles of a 2D mesh, builds and solves the linear inverse depth
problem, and reconstructs a colored 3D mesh along the vertex bearing rays.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from depthmesh.config import (
    ConfigurationError,
    MeshColorType,
    MeshOptimizationParams,
    MeshOptimizerType,
    PreconditionError,
)
from depthmesh.evaluate import Timer
from depthmesh.factors import FactorAssembly, assemble_factor_graph
from depthmesh.geometry import depth_from_inverse_depth, depth_variance_from_inverse_depth
from depthmesh.mesh import LandmarkId, Mesh2D, Mesh3D, Vertex3D
from depthmesh.rasterize import check_point_cloud, collect_triangle_datapoints
from depthmesh.solver import LinearSolution, solve_linear_system

logger = logging.getLogger(__name__)

# RGBA palette cycled through by mesh_count for flat colored meshes
FLAT_COLOR_PALETTE = (
    (255, 0, 0, 255),      # red
    (251, 206, 177, 255),  # apricot
    (128, 0, 128, 255),    # purple
    (165, 42, 42, 255),    # brown
    (255, 192, 203, 255),  # pink
)
DEFAULT_COLOR = (0, 0, 0, 255)
# Depth standard deviation mapped to full red
SCALE_STD_DEVIATION = 0.1


@dataclass
class MeshOptimizationInput:
    """Noisy HxWx3 point cloud in the left rectified frame and a 2D mesh."""

    noisy_point_cloud: np.ndarray
    mesh_2d: Mesh2D


@dataclass
class MeshOptimizationOutput:
    """Reconstructed body-frame mesh with per-landmark estimates.

    Attributes:
        optimized_mesh_3d: 3D mesh with RGBA vertex colors
        inverse_depths: Solved inverse depth of each reconstructed landmark
        depth_std_deviations: Standard deviation of the depth of each
            reconstructed landmark
    """

    optimized_mesh_3d: Mesh3D = field(default_factory=Mesh3D)
    inverse_depths: Dict[LandmarkId, float] = field(default_factory=dict)
    depth_std_deviations: Dict[LandmarkId, float] = field(default_factory=dict)


@dataclass
class DepthInterval:
    """One standard deviation interval of a vertex depth along its ray."""

    lmk_id: LandmarkId
    lower: np.ndarray
    upper: np.ndarray


def _clamp_channel(value: float) -> int:
    if not math.isfinite(value):
        return 255 if value > 0 else 0
    return int(min(255, max(0, round(value))))


class MeshOptimizer:
    """Optimizes the vertex depths of a 2D mesh given a noisy point cloud.

    A single instance must not be entered concurrently; independent
    instances can run in parallel.
    """

    def __init__(
        self,
        params: MeshOptimizationParams,
        stereo_camera,
        visualizer=None
    ):
        """Initialize the optimizer.

        Args:
            params: Optimization parameters
            stereo_camera: Camera providing back_project_depth(),
                body_pose_left_cam_rect and K
            visualizer: Optional MeshVisualizer receiving debug geometry
        """
        if stereo_camera is None:
            raise ConfigurationError("Mesh optimization needs a stereo camera")
        self.params = params
        self.solver_type = MeshOptimizerType.parse(params.solver_type)
        self.mesh_color_type = MeshColorType.parse(params.mesh_color_type)
        self.stereo_camera = stereo_camera
        self.visualizer = visualizer
        self.mesh_count = 0
        self.stage_timings: Dict[str, float] = {}

    def spin_once(self, input_data: MeshOptimizationInput) -> MeshOptimizationOutput:
        return self.optimize(input_data)

    def optimize(self, input_data: MeshOptimizationInput) -> MeshOptimizationOutput:
        """Run collect, assemble, solve and reconstruct on one input."""
        return self.solve_optimal_mesh(input_data.noisy_point_cloud, input_data.mesh_2d)

    def solve_optimal_mesh(
        self,
        noisy_point_cloud: np.ndarray,
        mesh_2d: Mesh2D
    ) -> MeshOptimizationOutput:
        """Compute the 3D mesh best explaining the point cloud.

        Args:
            noisy_point_cloud: HxWx3 point cloud in the left rectified frame
            mesh_2d: 2D triangular mesh over the image

        Returns:
            Optimized 3D mesh in the body frame

        Raises:
            PreconditionError: For an empty mesh, a malformed point cloud or
                too few valid samples
        """
        if mesh_2d.number_of_polygons == 0 or mesh_2d.number_of_unique_vertices == 0:
            raise PreconditionError("Cannot optimize an empty 2D mesh")
        check_point_cloud(noisy_point_cloud)

        if self.visualizer is not None:
            self.visualizer.draw_point_cloud(
                "Noisy Point Cloud",
                noisy_point_cloud,
                self.stereo_camera.body_pose_left_cam_rect,
            )
            self.visualizer.draw_scene(self.stereo_camera.body_pose_left_cam_rect, self.stereo_camera.K)

        timer = Timer("Mesh optimization", logger)
        timer.start()

        # Step 1: Collect all datapoints that fall within each triangle
        logger.info("Collecting triangle data points.")
        corresp = collect_triangle_datapoints(
            noisy_point_cloud,
            mesh_2d,
            self.params.min_z,
            self.params.max_z,
            verbose=self.params.verbose,
        )
        timer.lap("collect")
        if corresp.number_of_valid_datapoints < self.params.min_valid_datapoints:
            raise PreconditionError(
                f"Only {corresp.number_of_valid_datapoints} valid datapoints, need at least "
                f"{self.params.min_valid_datapoints}"
            )

        # Step 2: One factor per datapoint, plus springs
        logger.info("Building optimization problem.")
        assembly = assemble_factor_graph(mesh_2d, corresp, self.stereo_camera, self.params)
        timer.lap("assemble")

        # Step 3: Solve for the inverse depths
        logger.info("Solving optimization problem.")
        solution = solve_linear_system(assembly.graph)
        timer.lap("solve")

        # Step 4: Reconstruct the mesh along the bearing vectors
        output, intervals = self.reconstruct_mesh(mesh_2d, assembly, solution)
        timer.lap("reconstruct")
        self.stage_timings = timer.timings

        if self.visualizer is not None:
            self._visualize_reconstruction(output.optimized_mesh_3d, assembly, intervals)

        logger.info(
            f"Reconstructed mesh {self.mesh_count}: "
            f"{output.optimized_mesh_3d.number_of_polygons}/{mesh_2d.number_of_polygons} polygons "
            f"(elapsed time: {timer.stop():.3f}s)"
        )
        self.mesh_count += 1
        return output

    def reconstruct_mesh(
        self,
        mesh_2d: Mesh2D,
        assembly: FactorAssembly,
        solution: LinearSolution
    ) -> Tuple[MeshOptimizationOutput, List[DepthInterval]]:
        """Place the vertices of every solved polygon along their rays.

        Polygons with a vertex missing from the solution, or whose inverse
        depth or depth is not finite, are left out.

        Args:
            mesh_2d: 2D mesh the problem was built from
            assembly: Factor assembly holding bearing vectors and supports
            solution: Solved inverse depths and information diagonal

        Returns:
            Tuple of (output with the 3D mesh, depth confidence intervals)
        """
        output = MeshOptimizationOutput()
        intervals: List[DepthInterval] = []
        max_vertex_support = assembly.max_vertex_support

        for k in range(mesh_2d.number_of_polygons):
            poly_3d = []
            poly_intervals = []
            add_poly = True
            for vtx_2d in mesh_2d.get_polygon(k):
                lmk_id = vtx_2d.lmk_id
                vtx_id = mesh_2d.get_vtx_id_for_lmk_id(lmk_id)
                if not solution.exists(vtx_id):
                    logger.error(f"vtx_id: {vtx_id} is not in optimization.")
                    add_poly = False
                    break

                inv_depth = solution.at(vtx_id)
                if not math.isfinite(inv_depth):
                    logger.error(f"vtx_id: {vtx_id} goes to +/-inf.")
                    add_poly = False
                    break

                depth = depth_from_inverse_depth(inv_depth)
                if not math.isfinite(depth):
                    logger.error(f"vtx_id: {vtx_id} has a non-finite depth ({depth}).")
                    add_poly = False
                    break

                # Depth variance from the information diagonal
                inv_variance_of_inv_depth = solution.hessian_diagonal.get(vtx_id, 0.0)
                variance_of_inv_depth = (
                    1.0 / inv_variance_of_inv_depth if inv_variance_of_inv_depth > 0 else math.inf
                )
                variance_of_depth = depth_variance_from_inverse_depth(variance_of_inv_depth, inv_depth)
                std_deviation = math.sqrt(variance_of_depth)

                bearing = assembly.bearing_vectors[vtx_id]
                lmk = depth * bearing
                poly_intervals.append(DepthInterval(
                    lmk_id,
                    (depth - std_deviation) * bearing,
                    (depth + std_deviation) * bearing,
                ))

                vtx_color = self.vertex_color(
                    std_deviation,
                    assembly.vertex_supports.get(vtx_id, 0),
                    max_vertex_support,
                )
                poly_3d.append(Vertex3D(lmk_id, lmk, vtx_color))
                output.inverse_depths[lmk_id] = inv_depth
                output.depth_std_deviations[lmk_id] = std_deviation

            if add_poly:
                output.optimized_mesh_3d.add_polygon(poly_3d)
                intervals.extend(poly_intervals)
            else:
                logger.warning(f"Non-reconstructed poly: {k}")

        # Drop estimates of landmarks whose polygons were all elided
        mesh_3d = output.optimized_mesh_3d
        output.inverse_depths = {
            k: v for k, v in output.inverse_depths.items() if mesh_3d.contains_lmk_id(k)
        }
        output.depth_std_deviations = {
            k: v for k, v in output.depth_std_deviations.items() if mesh_3d.contains_lmk_id(k)
        }
        return output, intervals

    def vertex_color(
        self,
        std_deviation: float,
        vertex_support: int,
        max_vertex_support: int
    ) -> Tuple[int, int, int, int]:
        """RGBA color of a vertex according to the mesh color type."""
        if self.mesh_color_type is MeshColorType.VERTEX_FLAT_COLOR:
            return FLAT_COLOR_PALETTE[self.mesh_count % len(FLAT_COLOR_PALETTE)]
        elif self.mesh_color_type is MeshColorType.VERTEX_RGB:
            # Image texture is bound outside the optimizer
            return DEFAULT_COLOR
        elif self.mesh_color_type is MeshColorType.VERTEX_DEPTH_VARIANCE:
            red = _clamp_channel(std_deviation / SCALE_STD_DEVIATION * 255.0)
            return (red, 0, 0, 255)
        elif self.mesh_color_type is MeshColorType.VERTEX_SUPPORT:
            if max_vertex_support <= 0:
                return (0, 0, 0, 255)
            blue = _clamp_channel(vertex_support / max_vertex_support * 255.0)
            return (0, 0, blue, 255)
        raise ConfigurationError(f"Unrecognized mesh color type: {self.mesh_color_type}")

    def _visualize_reconstruction(
        self,
        mesh_3d: Mesh3D,
        assembly: FactorAssembly,
        intervals: List[DepthInterval]
    ) -> None:
        origin = self.stereo_camera.body_pose_left_cam_rect[:3, 3]
        for vtx_id, bearing in assembly.bearing_vectors.items():
            self.visualizer.draw_arrow(origin, origin + bearing, f"r{vtx_id}")
        for interval in intervals:
            self.visualizer.draw_cylinder(
                f"Variance for Lmk: {interval.lmk_id}",
                interval.upper,
                interval.lower,
            )
        logger.info("Drawing optimized reconstructed mesh...")
        self.visualizer.draw_3d_mesh(
            f"Reconstructed Mesh {self.mesh_count}",
            mesh_3d,
            display_as_wireframe=False,
        )
