"""Tests for solver module."""

import math
import sys
import time
import tracemalloc
import unittest
from pathlib import Path

import numpy as np

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from depthmesh.camera import CameraParams, StereoCamera
from depthmesh.config import MeshOptimizationParams
from depthmesh.factors import GaussianFactor, GaussianFactorGraph, assemble_factor_graph
from depthmesh.mesh import Mesh2D
from depthmesh.rasterize import collect_triangle_datapoints
from depthmesh.solver import solve_linear_system


class TestSolver(unittest.TestCase):
    """Test QR elimination of linear factor graphs."""

    def test_exact_system(self):
        """Test a square, consistent system."""
        graph = GaussianFactorGraph([
            GaussianFactor(keys=(3,), jacobians=(2.0,), rhs=1.0, sigma=0.1),
            GaussianFactor(keys=(3, 7), jacobians=(1.0, 1.0), rhs=1.5, sigma=0.1),
        ])
        solution = solve_linear_system(graph)

        self.assertEqual(solution.rank, 2)
        self.assertEqual(len(solution), 2)
        self.assertAlmostEqual(solution.at(3), 0.5, delta=1e-12)
        self.assertAlmostEqual(solution.at(7), 1.0, delta=1e-12)
        self.assertAlmostEqual(solution.error, 0.0, delta=1e-20)
        self.assertFalse(solution.exists(0))

    def test_least_squares(self):
        """Test an overdetermined system against numpy least squares."""
        rng = np.random.default_rng(3)
        A = rng.normal(size=(20, 4))
        b = rng.normal(size=20)

        graph = GaussianFactorGraph()
        for row, rhs in zip(A, b):
            graph.add(GaussianFactor(keys=(0, 1, 2, 3), jacobians=tuple(row), rhs=float(rhs), sigma=1.0))
        solution = solve_linear_system(graph)

        expected, _, _, _ = np.linalg.lstsq(A, b, rcond=None)
        np.testing.assert_allclose([solution.at(k) for k in range(4)], expected, atol=1e-10)

        residual = A @ expected - b
        self.assertAlmostEqual(solution.error, 0.5 * residual @ residual, delta=1e-9)

    def test_noise_weighting(self):
        """Test that smaller sigmas weigh more."""
        graph = GaussianFactorGraph([
            GaussianFactor(keys=(0,), jacobians=(1.0,), rhs=1.0, sigma=1.0),
            GaussianFactor(keys=(0,), jacobians=(1.0,), rhs=2.0, sigma=0.5),
        ])
        solution = solve_linear_system(graph)

        # Weighted mean with weights 1 and 4
        self.assertAlmostEqual(solution.at(0), 1.8, delta=1e-12)
        self.assertAlmostEqual(solution.hessian_diagonal[0], 5.0, delta=1e-12)

    def test_rank_deficient_system(self):
        """Test that keys in the null space are marked as undetermined."""
        graph = GaussianFactorGraph([
            GaussianFactor(keys=(0,), jacobians=(1.0,), rhs=1.0, sigma=1.0),
            GaussianFactor(keys=(1, 2), jacobians=(1.0, 1.0), rhs=2.0, sigma=1.0),
        ])
        with self.assertLogs("depthmesh.solver", level="WARNING"):
            solution = solve_linear_system(graph)

        self.assertEqual(solution.rank, 2)
        self.assertAlmostEqual(solution.at(0), 1.0, delta=1e-12)
        self.assertTrue(math.isnan(solution.at(1)))
        self.assertTrue(math.isnan(solution.at(2)))

    def test_full_frame_mesh(self):
        """Test a Delaunay mesh over a dense cloud solves fast in bounded memory."""
        width, height = 320, 300
        stereo = StereoCamera(
            CameraParams(fx=300.0, fy=300.0, cx=160.0, cy=150.0, image_size=(width, height)),
            baseline=0.1,
        )

        # Every sample lies at range 2.5 along its ray
        v, u = np.mgrid[0:height, 0:width].astype(np.float64)
        rays = np.stack(((u - 160.0) / 300.0, (v - 150.0) / 300.0, np.ones_like(u)), axis=-1)
        cloud = 2.5 * rays / np.linalg.norm(rays, axis=-1, keepdims=True)

        # Jittered 16x15 grid of keypoints, border keypoints kept on the border
        rng = np.random.default_rng(11)
        grid_u, grid_v = np.meshgrid(np.linspace(0, width - 1, 16), np.linspace(0, height - 1, 15))
        keypoints = np.column_stack((grid_u.ravel(), grid_v.ravel()))
        interior = (
            (keypoints[:, 0] > 0) & (keypoints[:, 0] < width - 1)
            & (keypoints[:, 1] > 0) & (keypoints[:, 1] < height - 1)
        )
        keypoints[interior] += rng.uniform(-4.0, 4.0, size=(np.count_nonzero(interior), 2))
        keypoints = np.round(keypoints)
        mesh_2d = Mesh2D.from_delaunay(keypoints)
        self.assertGreater(mesh_2d.number_of_unique_vertices, 200)

        params = MeshOptimizationParams()
        corresp = collect_triangle_datapoints(cloud, mesh_2d, params.min_z, params.max_z)
        self.assertEqual(corresp.number_of_valid_datapoints, width * height)
        assembly = assemble_factor_graph(mesh_2d, corresp, stereo, params)
        self.assertGreater(assembly.n_data_factors, 80000)

        tracemalloc.start()
        start_time = time.perf_counter()
        try:
            solution = solve_linear_system(assembly.graph)
            _, peak = tracemalloc.get_traced_memory()
        finally:
            tracemalloc.stop()
        elapsed_time = time.perf_counter() - start_time

        # A dense copy of the system alone would take over 150 MB
        self.assertLess(peak, 100 * 1024 * 1024)
        self.assertLess(elapsed_time, 30.0)

        values = np.array(list(solution.values.values()))
        self.assertEqual(len(values), mesh_2d.number_of_unique_vertices)
        np.testing.assert_allclose(values, 0.4, atol=1e-6)

    def test_empty_graph(self):
        """Test that an empty graph yields an empty solution."""
        solution = solve_linear_system(GaussianFactorGraph())
        self.assertEqual(len(solution), 0)
        self.assertEqual(solution.hessian_diagonal, {})


if __name__ == "__main__":
    unittest.main()
