"""Tests for factors module.

This module tests the linear factor graph and its assembly from triangle
datapoints: data factors, support counters and spring factors.
"""

import sys
import unittest
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from depthmesh.camera import CameraParams, StereoCamera
from depthmesh.config import MeshOptimizationParams
from depthmesh.factors import (
    GaussianFactor,
    GaussianFactorGraph,
    add_spring_factors,
    assemble_factor_graph,
)
from depthmesh.mesh import Mesh2D
from depthmesh.rasterize import TriangleCorrespondences, collect_triangle_datapoints


def sample_cloud(width, height, stereo, pixels, depth):
    """NaN point cloud holding samples at the given pixels and range."""
    cloud = np.full((height, width, 3), np.nan)
    for u, v in pixels:
        cloud[v, u] = stereo.back_project_depth((u, v), depth)
    return cloud


class TestFactorGraph(unittest.TestCase):
    """Test the linear Gaussian factor graph."""

    def setUp(self):
        self.graph = GaussianFactorGraph()
        self.graph.add(GaussianFactor(keys=(2,), jacobians=(1.0,), rhs=1.0, sigma=0.5))
        self.graph += GaussianFactor(keys=(0, 2), jacobians=(1.0, -1.0), rhs=0.0, sigma=1.0)

    def test_ordering(self):
        """Test key sorting and first appearance ordering."""
        self.assertEqual(len(self.graph), 2)
        self.assertEqual(self.graph.keys(), [0, 2])
        self.assertEqual(self.graph.ordering(), {2: 0, 0: 1})

    def test_whitened_system(self):
        """Test that rows are divided by the noise sigma."""
        A, b = self.graph.whitened_system()
        np.testing.assert_allclose(A.toarray(), [[2.0, 0.0], [-1.0, 1.0]])
        np.testing.assert_allclose(b, [2.0, 0.0])

    def test_hessian_diagonal(self):
        """Test the information diagonal."""
        diagonal = self.graph.hessian_diagonal()
        self.assertAlmostEqual(diagonal[2], 5.0)
        self.assertAlmostEqual(diagonal[0], 1.0)

    def test_invalid_factors(self):
        """Test factor validation."""
        with pytest.raises(ValueError):
            GaussianFactor(keys=(1, 1), jacobians=(1.0, -1.0), rhs=0.0, sigma=1.0)
        with pytest.raises(ValueError):
            GaussianFactor(keys=(1,), jacobians=(1.0,), rhs=0.0, sigma=0.0)
        with pytest.raises(ValueError):
            GaussianFactor(keys=(1, 2), jacobians=(1.0,), rhs=0.0, sigma=1.0)


class TestFactorAssembly(unittest.TestCase):
    """Test assembly of the factor graph from triangle datapoints."""

    def setUp(self):
        """Two triangles sharing an edge, seen by a camera with fx = fy = 1."""
        self.width, self.height = 11, 11
        self.stereo = StereoCamera(
            CameraParams(fx=1.0, fy=1.0, cx=0.0, cy=0.0, image_size=(self.width, self.height)),
            baseline=0.1,
        )
        self.mesh_2d = Mesh2D()
        self.mesh_2d.add_polygon([(1, (0, 0)), (2, (10, 0)), (3, (0, 10))])
        self.mesh_2d.add_polygon([(2, (10, 0)), (4, (10, 10)), (3, (0, 10))])

        self.params = MeshOptimizationParams(min_z=0.05, max_z=10.0)

    def collect(self, pixels, depth=2.0):
        cloud = sample_cloud(self.width, self.height, self.stereo, pixels, depth)
        return collect_triangle_datapoints(cloud, self.mesh_2d, self.params.min_z, self.params.max_z)

    def test_data_factors(self):
        """Test one factor per sample with barycentric Jacobians."""
        corresp = self.collect([(1, 1), (5, 1), (1, 5)])
        assembly = assemble_factor_graph(self.mesh_2d, corresp, self.stereo, self.params)

        self.assertEqual(assembly.n_data_factors, 3)
        self.assertEqual(assembly.n_spring_factors, 0)
        self.assertEqual(assembly.skipped_triangles, [1])

        # Row-major order: (1, 1), (5, 1), (1, 5)
        factor = assembly.graph[0]
        self.assertEqual(factor.keys, (0, 1, 2))
        np.testing.assert_allclose(factor.jacobians, [0.8, 0.1, 0.1], atol=1e-12)
        self.assertAlmostEqual(factor.rhs, 0.5)
        self.assertAlmostEqual(factor.sigma, self.params.depth_meas_noise_sigma)

        # Bearings exist for every vertex of the mesh
        self.assertEqual(sorted(assembly.bearing_vectors), [0, 1, 2, 3])
        np.testing.assert_allclose(assembly.bearing_vectors[0], [0, 0, 1])

    def test_support_counters(self):
        """Test that support counters equal the number of data factors per vertex."""
        pixels = [(1, 1), (2, 1), (1, 2), (3, 2), (9, 9), (8, 9), (9, 8), (7, 9)]
        corresp = self.collect(pixels)
        params = MeshOptimizationParams(min_z=0.05, max_z=10.0, use_spring_energies=True)
        assembly = assemble_factor_graph(self.mesh_2d, corresp, self.stereo, params)

        expected = {}
        for factor in assembly.graph:
            if len(factor.keys) == 3:
                for key in factor.keys:
                    expected[key] = expected.get(key, 0) + 1

        self.assertEqual(dict(assembly.vertex_supports), expected)
        self.assertEqual(assembly.vertex_supports[0], 4)
        self.assertEqual(assembly.vertex_supports[1], 8)
        self.assertEqual(assembly.vertex_supports[3], 4)
        self.assertEqual(assembly.max_vertex_support, 8)

    def test_under_constrained_triangle(self):
        """Test that triangles with fewer than three samples are skipped."""
        corresp = self.collect([(1, 1), (2, 1)])
        with self.assertLogs("depthmesh.factors", level="ERROR"):
            assembly = assemble_factor_graph(self.mesh_2d, corresp, self.stereo, self.params)

        self.assertEqual(len(assembly.graph), 0)
        self.assertEqual(assembly.skipped_triangles, [0, 1])
        self.assertEqual(assembly.max_vertex_support, 0)

    def test_barycentric_failure_drops_sample(self):
        """Test that a sample on a vertex pixel is dropped without counting."""
        corresp = self.collect([(0, 0), (1, 1), (5, 1), (1, 5)])
        self.assertEqual(corresp.number_of_datapoints(0), 4)

        with self.assertLogs("depthmesh.factors", level="ERROR"):
            assembly = assemble_factor_graph(self.mesh_2d, corresp, self.stereo, self.params)

        self.assertEqual(assembly.n_data_factors, 3)
        self.assertEqual(assembly.vertex_supports[0], 3)
        self.assertEqual(assembly.vertex_supports[1], 3)
        self.assertEqual(assembly.vertex_supports[2], 3)

    def test_spring_factors(self):
        """Test one spring per undirected mesh edge."""
        graph = GaussianFactorGraph()
        adjacency = self.mesh_2d.get_adjacency_matrix()
        n_springs = add_spring_factors(graph, adjacency, 0.5, spring_constant=2.0, spring_rest_length=0.1)

        self.assertEqual(n_springs, 5)
        self.assertEqual(len(graph), 5)

        edges = set()
        for factor in graph:
            i, j = factor.keys
            self.assertGreater(i, j)
            self.assertTrue(adjacency[i, j])
            self.assertEqual(factor.jacobians, (2.0, -2.0))
            self.assertAlmostEqual(factor.rhs, 0.1)
            self.assertAlmostEqual(factor.sigma, 0.5)
            edges.add((i, j))
        self.assertEqual(len(edges), 5)

    def test_springs_in_assembly(self):
        """Test that springs are added after the data factors when enabled."""
        corresp = self.collect([(1, 1), (5, 1), (1, 5)])
        params = MeshOptimizationParams(
            min_z=0.05, max_z=10.0, use_spring_energies=True, spring_noise_sigma=1e-3
        )
        assembly = assemble_factor_graph(self.mesh_2d, corresp, self.stereo, params)

        self.assertEqual(assembly.n_data_factors, 3)
        self.assertEqual(assembly.n_spring_factors, 5)
        self.assertEqual(len(assembly.graph), 8)
        self.assertEqual(assembly.graph[7].sigma, 1e-3)

    def test_mismatched_correspondences(self):
        """Test that samples and pixels must pair up."""
        corresp = TriangleCorrespondences(
            datapoints_xyz=[np.ones((3, 3)), np.zeros((0, 3))],
            datapoints_pixels=[np.ones((2, 2)), np.zeros((0, 2))],
            number_of_valid_datapoints=3,
        )
        with pytest.raises(ValueError):
            assemble_factor_graph(self.mesh_2d, corresp, self.stereo, self.params)


if __name__ == "__main__":
    unittest.main()
