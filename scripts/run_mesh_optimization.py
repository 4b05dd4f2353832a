#!/usr/bin/env python3
"""
Mesh Depth Optimization

This script runs the mesh optimizer on a stereo point cloud and a 2D
Delaunay mesh, either loaded from .npy files or generated from a synthetic
planar scene, and saves the reconstructed 3D mesh with its metrics.
"""

from __future__ import annotations

import argparse
import datetime
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from depthmesh import evaluate, visualise
from depthmesh.camera import StereoCamera
from depthmesh.config import MeshOptimizationParams, load_config
from depthmesh.mesh import Mesh2D, save_mesh
from depthmesh.optimizer import MeshOptimizationInput, MeshOptimizer


# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    handlers=[
        logging.StreamHandler(),
    ],
)
logger = logging.getLogger("mesh_optimization")


def make_synthetic_scene(
    stereo_camera: StereoCamera,
    config: Dict
) -> Tuple[np.ndarray, np.ndarray, Dict[int, float]]:
    """Render a planar scene as a disparity-based point cloud.

    Args:
        stereo_camera: Stereo camera observing the plane
        config: The ``synthetic`` configuration section

    Returns:
        Tuple of (HxWx3 point cloud, Nx2 keypoints, true inverse depth per keypoint)
    """
    rng = np.random.default_rng(config.get("seed", 42))
    width, height = stereo_camera.params.image_size
    normal = np.asarray(config.get("plane_normal", [0.0, 0.0, 1.0]), dtype=np.float64)
    normal /= np.linalg.norm(normal)
    distance = float(config.get("plane_distance", 2.0))

    # Depth of the plane n.X = d along every pixel ray
    u, v = np.meshgrid(np.arange(width), np.arange(height))
    K_inv = np.linalg.inv(stereo_camera.K)
    rays = np.stack((u, v, np.ones_like(u)), axis=-1).astype(np.float64) @ K_inv.T
    z = distance / (rays @ normal)

    disparity = stereo_camera.params.fx * stereo_camera.baseline / z
    noise = float(config.get("disparity_noise", 0.0))
    if noise > 0:
        disparity = disparity + rng.normal(0.0, noise, disparity.shape)
    point_cloud = stereo_camera.back_project_disparity_to_3d(disparity)

    # Keypoints strictly inside the image, plus its corners
    n_keypoints = int(config.get("n_keypoints", 60))
    margin = 2.0
    keypoints = np.column_stack((
        rng.uniform(margin, width - 1 - margin, n_keypoints),
        rng.uniform(margin, height - 1 - margin, n_keypoints),
    ))
    corners = np.array([
        [margin, margin],
        [width - 1 - margin, margin],
        [width - 1 - margin, height - 1 - margin],
        [margin, height - 1 - margin],
    ])
    keypoints = np.vstack((corners, keypoints))

    kp_rays = np.column_stack((keypoints, np.ones(len(keypoints)))) @ K_inv.T
    kp_points = kp_rays * (distance / (kp_rays @ normal))[:, None]
    gt_inverse_depths = {i: 1.0 / float(np.linalg.norm(p)) for i, p in enumerate(kp_points)}

    logger.info(
        f"Synthetic plane at {distance} m: {n_keypoints + 4} keypoints, "
        f"image size {width}x{height}"
    )
    return point_cloud, keypoints, gt_inverse_depths


def load_inputs(point_cloud_path: str, keypoints_path: str) -> Tuple[np.ndarray, np.ndarray]:
    """Load an HxWx3 point cloud and Nx2 keypoints from .npy files."""
    logger.info(f"Reading point cloud from {point_cloud_path}")
    point_cloud = np.load(point_cloud_path)
    logger.info(f"Reading keypoints from {keypoints_path}")
    keypoints = np.load(keypoints_path)
    return point_cloud, keypoints


def save_results(
    output_dir: str,
    output,
    mesh_2d: Mesh2D,
    image_size: Tuple[int, int],
    metrics: Dict
) -> None:
    """Save the optimized mesh, per-landmark estimates and metrics.

    Args:
        output_dir: Output directory
        output: MeshOptimizationOutput of the optimizer
        mesh_2d: Input 2D mesh
        image_size: Image (width, height)
        metrics: Metrics dictionary
    """
    os.makedirs(output_dir, exist_ok=True)

    if output.optimized_mesh_3d.number_of_polygons > 0:
        save_mesh(output.optimized_mesh_3d, os.path.join(output_dir, "mesh.ply"))
    else:
        logger.warning("Optimized mesh is empty, not saving it")

    estimates = {
        str(lmk_id): {
            "inverse_depth": output.inverse_depths[lmk_id],
            "depth_std_deviation": output.depth_std_deviations[lmk_id],
        }
        for lmk_id in output.inverse_depths
    }
    with open(os.path.join(output_dir, "landmarks.json"), "w") as f:
        json.dump(estimates, f, indent=2)

    width, height = image_size
    canvas = np.zeros((height, width, 3), dtype=np.uint8)
    visualise.draw_2d_mesh_on_img(mesh_2d, canvas, color=(0, 255, 0))
    cv2.imwrite(os.path.join(output_dir, "mesh_2d.png"), canvas)

    if output.inverse_depths:
        depths = {k: 1.0 / y for k, y in output.inverse_depths.items()}
        visualise.save_depth_uncertainty_plot(
            depths, output.depth_std_deviations, os.path.join(output_dir, "depth_uncertainty.png")
        )

    with open(os.path.join(output_dir, "report.json"), "w") as f:
        json.dump(metrics, f, indent=2)

    logger.info(f"Results saved to {output_dir}")


def run_mesh_optimization(
    output_dir: str,
    point_cloud_path: Optional[str] = None,
    keypoints_path: Optional[str] = None,
    display: bool = False,
    config_path: Optional[str] = None
) -> Dict:
    """Run the mesh optimization on one frame.

    Args:
        output_dir: Path to output directory
        point_cloud_path: Optional .npy HxWx3 point cloud in the left rectified frame
        keypoints_path: Optional .npy Nx2 keypoints to triangulate
        display: Open an interactive window with the reconstruction
        config_path: Path to configuration file

    Returns:
        Dictionary of metrics
    """
    config = load_config(config_path)
    params = MeshOptimizationParams.from_dict(config.get("mesh_optimization"))
    stereo_camera = StereoCamera.from_dict(config["camera"])

    metrics = evaluate.OptimizationMetrics()
    run_timer = evaluate.Timer("Mesh optimization run", logger)
    run_timer.start()

    gt_inverse_depths = None
    if point_cloud_path is not None and keypoints_path is not None:
        point_cloud, keypoints = load_inputs(point_cloud_path, keypoints_path)
    else:
        point_cloud, keypoints, gt_inverse_depths = make_synthetic_scene(
            stereo_camera, config.get("synthetic", {})
        )

    mesh_2d = Mesh2D.from_delaunay(keypoints)
    visualizer = visualise.MeshVisualizer(stereo_camera.params.image_size) if display else None
    optimizer = MeshOptimizer(params, stereo_camera, visualizer=visualizer)

    output = optimizer.optimize(MeshOptimizationInput(point_cloud, mesh_2d))

    metrics.compute_mesh_metrics(
        mesh_2d.number_of_polygons,
        output,
        ground_truth_inverse_depths=gt_inverse_depths,
    )
    metrics.update_stage_timings(optimizer.stage_timings)
    metrics.update("runtime_s", run_timer.elapsed)

    metrics_dict = metrics.to_dict()
    metrics_dict["datetime"] = datetime.datetime.now().isoformat()
    metrics_dict["params"] = params.to_dict()
    save_results(output_dir, output, mesh_2d, stereo_camera.params.image_size, metrics_dict)

    # Print metrics summary
    logger.info("\n" + metrics.summary())

    if visualizer is not None:
        visualizer.show()

    return metrics_dict


def main():
    """Main function to parse arguments and run the optimization."""
    parser = argparse.ArgumentParser(description="Mesh Depth Optimization")
    parser.add_argument(
        "--point-cloud", "-p", dest="point_cloud_path", default=None,
        help="Path to an HxWx3 .npy point cloud (synthetic scene if omitted)"
    )
    parser.add_argument(
        "--keypoints", "-k", dest="keypoints_path", default=None,
        help="Path to an Nx2 .npy array of keypoints"
    )
    parser.add_argument(
        "--output", "-o", dest="output_dir", default="results/mesh_optimization",
        help="Path to output directory"
    )
    parser.add_argument(
        "--display", "-d", dest="display", action="store_true",
        help="Display the reconstruction"
    )
    parser.add_argument(
        "--config", "-c", dest="config_path", default=None,
        help="Path to configuration file"
    )

    args = parser.parse_args()

    if (args.point_cloud_path is None) != (args.keypoints_path is None):
        parser.error("--point-cloud and --keypoints must be given together")

    try:
        run_mesh_optimization(
            args.output_dir,
            args.point_cloud_path,
            args.keypoints_path,
            args.display,
            args.config_path
        )
    except Exception as e:
        logger.exception(f"Error running mesh optimization: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
