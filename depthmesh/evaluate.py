"""Evaluation metrics for mesh depth optimization.

This module implements accuracy metrics for optimized meshes, comparing
solved inverse depths and reconstructed vertices against ground truth,
together with timing utilities.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Mapping, Optional, Union

import numpy as np
from scipy import spatial

logger = logging.getLogger(__name__)


def inverse_depth_errors(
    estimated: Mapping[int, float],
    ground_truth: Mapping[int, float]
) -> Dict[str, float]:
    """Compare estimated inverse depths with ground truth per landmark.

    Args:
        estimated: Inverse depth of each reconstructed landmark
        ground_truth: True inverse depth of each landmark

    Returns:
        Dictionary with the number of compared landmarks, RMSE and max error
    """
    common = sorted(set(estimated) & set(ground_truth))
    if not common:
        logger.warning("No common landmarks for inverse depth error calculation")
        return {"n_landmarks": 0, "rmse": float("inf"), "max_abs_error": float("inf")}

    errors = np.array([estimated[k] - ground_truth[k] for k in common])
    return {
        "n_landmarks": len(common),
        "rmse": float(np.sqrt(np.mean(errors ** 2))),
        "max_abs_error": float(np.max(np.abs(errors))),
    }


def chamfer_distance(pcd_est: np.ndarray, pcd_gt: np.ndarray) -> float:
    """Calculate the Chamfer distance between two point sets.

    Args:
        pcd_est: Estimated points, Nx3 array
        pcd_gt: Ground truth points, Mx3 array

    Returns:
        Sum of the mean nearest-neighbour distances in both directions
    """
    if pcd_est.shape[0] == 0 or pcd_gt.shape[0] == 0:
        logger.warning("Empty point set provided for Chamfer distance calculation")
        return float("inf")

    tree_est = spatial.KDTree(pcd_est)
    tree_gt = spatial.KDTree(pcd_gt)

    distances_est_to_gt, _ = tree_gt.query(pcd_est, k=1)
    distances_gt_to_est, _ = tree_est.query(pcd_gt, k=1)

    return float(np.mean(distances_est_to_gt) + np.mean(distances_gt_to_est))


class Timer:
    """Utility class for timing operations with context manager support."""

    def __init__(self, name: str = "Timer", logger: Optional[logging.Logger] = None):
        """Initialize timer.

        Args:
            name: Timer name for logging
            logger: Logger to use (if None, uses module logger)
        """
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = None
        self._timings = {}

    def start(self) -> None:
        self.start_time = time.perf_counter()
        self._timings = {}

    def stop(self) -> float:
        """Stop the timer and return elapsed time in seconds."""
        if self.start_time is None:
            self.logger.warning(f"{self.name}: Timer stopped without being started")
            return 0.0

        elapsed = time.perf_counter() - self.start_time
        self.logger.debug(f"{self.name}: {elapsed:.4f}s")
        return elapsed

    def __enter__(self) -> "Timer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

    def lap(self, name: str) -> float:
        """Record the time since the previous lap under a name.

        Returns:
            Lap time in seconds
        """
        current_time = time.perf_counter()
        if self.start_time is None:
            self.start_time = current_time

        last_time = self._timings.get("__last", self.start_time)
        lap_time = current_time - last_time

        self._timings["__last"] = current_time
        self._timings[name] = lap_time

        self.logger.debug(f"{self.name} - {name}: {lap_time:.4f}s")
        return lap_time

    @property
    def timings(self) -> Dict[str, float]:
        return {k: v for k, v in self._timings.items() if k != "__last"}

    @property
    def elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        return time.perf_counter() - self.start_time


class OptimizationMetrics:
    """Collects metrics of one mesh optimization."""

    def __init__(self):
        self.metrics = {
            "n_polygons_in": 0,
            "n_polygons_out": 0,
            "inverse_depth_rmse": None,
            "inverse_depth_max_error": None,
            "runtime_s": 0.0,
            "stage_timings": {},
        }

    def update(self, metric_name: str, value: Union[int, float, Dict]) -> None:
        self.metrics[metric_name] = value

    def update_stage_timings(self, timings: Mapping[str, float]) -> None:
        self.metrics["stage_timings"].update(timings)

    def compute_mesh_metrics(
        self,
        n_polygons_in: int,
        output,
        ground_truth_inverse_depths: Optional[Mapping[int, float]] = None,
        ground_truth_points: Optional[np.ndarray] = None
    ) -> None:
        """Compute metrics of an optimizer output.

        Args:
            n_polygons_in: Number of polygons of the 2D mesh
            output: MeshOptimizationOutput to evaluate
            ground_truth_inverse_depths: Optional true inverse depth per landmark
            ground_truth_points: Optional Nx3 true surface samples in the body frame
        """
        mesh_3d = output.optimized_mesh_3d
        self.metrics["n_polygons_in"] = n_polygons_in
        self.metrics["n_polygons_out"] = mesh_3d.number_of_polygons

        if ground_truth_inverse_depths is not None:
            errors = inverse_depth_errors(output.inverse_depths, ground_truth_inverse_depths)
            self.metrics["inverse_depth_rmse"] = errors["rmse"]
            self.metrics["inverse_depth_max_error"] = errors["max_abs_error"]

        if ground_truth_points is not None:
            self.metrics["chamfer_distance"] = chamfer_distance(
                mesh_3d.get_vertices_mesh(), ground_truth_points
            )

    def to_dict(self) -> Dict:
        return self.metrics.copy()

    def summary(self) -> str:
        """Generate a human-readable summary of metrics."""
        lines = [
            "Mesh Optimization Metrics:",
            f"  Polygons: {self.metrics['n_polygons_out']}/{self.metrics['n_polygons_in']} reconstructed",
        ]

        if self.metrics["inverse_depth_rmse"] is not None:
            lines.append(f"  Inverse depth RMSE: {self.metrics['inverse_depth_rmse']:.3e}")
            lines.append(f"  Inverse depth max error: {self.metrics['inverse_depth_max_error']:.3e}")

        if "chamfer_distance" in self.metrics:
            lines.append(f"  Chamfer distance: {self.metrics['chamfer_distance']:.4f}")

        lines.append(f"  Total runtime: {self.metrics['runtime_s']:.3f}s")

        if self.metrics["stage_timings"]:
            lines.append("  Stage timings:")
            for stage, time_s in self.metrics["stage_timings"].items():
                lines.append(f"    {stage}: {time_s:.3f}s")

        return "\n".join(lines)
