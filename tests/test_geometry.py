"""Tests for geometry module.

This module tests the geometry kernel of the mesh optimizer: inside tests,
barycentric coordinates, bounding boxes, bearing vectors and validity.
"""

import math
import sys
import unittest
from pathlib import Path

import numpy as np
import pytest

# Add parent directory to path
sys.path.append(str(Path(__file__).resolve().parent.parent))

from depthmesh import geometry
from depthmesh.camera import CameraParams, StereoCamera


def rotation_z(angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s, 0], [s, c, 0], [0, 0, 1]])


class TestGeometry(unittest.TestCase):
    """Test geometric functions."""

    def setUp(self):
        """Set up a right triangle and a calibrated camera."""
        self.v0 = np.array([0.0, 0.0])
        self.v1 = np.array([10.0, 0.0])
        self.v2 = np.array([0.0, 10.0])

        self.camera = StereoCamera(
            CameraParams(fx=400.0, fy=400.0, cx=320.0, cy=240.0, image_size=(640, 480)),
            baseline=0.1,
        )

    def test_point_in_triangle(self):
        """Test the inside test, including edges and vertices."""
        self.assertTrue(geometry.point_in_triangle((1, 1), self.v0, self.v1, self.v2))
        self.assertFalse(geometry.point_in_triangle((6, 6), self.v0, self.v1, self.v2))
        self.assertFalse(geometry.point_in_triangle((-1, 2), self.v0, self.v1, self.v2))

        # Zeros of the edge functions count as inside
        self.assertTrue(geometry.point_in_triangle((5, 5), self.v0, self.v1, self.v2))
        self.assertTrue(geometry.point_in_triangle((5, 0), self.v0, self.v1, self.v2))
        self.assertTrue(geometry.point_in_triangle((0, 0), self.v0, self.v1, self.v2))

        # Winding does not matter
        self.assertTrue(geometry.point_in_triangle((1, 1), self.v0, self.v2, self.v1))

    def test_barycentric_coordinates(self):
        """Test barycentric weights of interior points."""
        b0, b1, b2 = geometry.barycentric_coordinates(self.v0, self.v1, self.v2, (1, 1))
        self.assertAlmostEqual(b0, 0.8, delta=1e-12)
        self.assertAlmostEqual(b1, 0.1, delta=1e-12)
        self.assertAlmostEqual(b2, 0.1, delta=1e-12)

        b0, b1, b2 = geometry.barycentric_coordinates(self.v0, self.v1, self.v2, (5, 1))
        self.assertAlmostEqual(b0, 0.4, delta=1e-12)
        self.assertAlmostEqual(b1, 0.5, delta=1e-12)
        self.assertAlmostEqual(b2, 0.1, delta=1e-12)

    def test_barycentric_partition_of_unity(self):
        """Test that weights of interior points sum to one and lie in [0, 1]."""
        rng = np.random.default_rng(0)
        for _ in range(100):
            v0, v1, v2 = rng.uniform(-50, 50, (3, 2))
            area = (v1[0] - v0[0]) * (v2[1] - v0[1]) - (v2[0] - v0[0]) * (v1[1] - v0[1])
            if abs(area) < 1.0:
                continue

            weights = rng.dirichlet(np.ones(3))
            p = weights[0] * v0 + weights[1] * v1 + weights[2] * v2
            bary = geometry.barycentric_coordinates(v0, v1, v2, p)

            self.assertIsNotNone(bary)
            self.assertAlmostEqual(sum(bary), 1.0, delta=1e-6)
            for b in bary:
                self.assertGreaterEqual(b, -1e-6)
                self.assertLessEqual(b, 1.0 + 1e-6)
            np.testing.assert_allclose(bary, weights, atol=1e-6)

    def test_barycentric_failures(self):
        """Test the sentinel on degenerate triangles, vertices and outside points."""
        # Degenerate (collinear) triangle
        self.assertIsNone(geometry.barycentric_coordinates((0, 0), (1, 1), (2, 2), (1, 1)))

        # Query on a vertex
        self.assertIsNone(geometry.barycentric_coordinates(self.v0, self.v1, self.v2, self.v0))
        self.assertIsNone(geometry.barycentric_coordinates(self.v0, self.v1, self.v2, (10, 0)))

        # Query outside
        self.assertIsNone(geometry.barycentric_coordinates(self.v0, self.v1, self.v2, (8, 8)))

    def test_triangle_bounding_box(self):
        """Test bounding boxes clipped to the image."""
        bbox = geometry.triangle_bounding_box((1.5, 2.2), (8.9, 3.0), (4.0, 7.7), 20, 20)
        self.assertEqual(bbox, (1, 8, 2, 7))

        # Clipped on both sides
        bbox = geometry.triangle_bounding_box((-5, -5), (30, 0), (0, 30), 20, 10)
        self.assertEqual(bbox, (0, 19, 0, 9))

        # Entirely outside
        self.assertIsNone(geometry.triangle_bounding_box((25, 1), (30, 1), (27, 5), 20, 20))
        self.assertIsNone(geometry.triangle_bounding_box((-9, -9), (-1, -9), (-5, -1), 20, 20))

    def test_bearing_vector_from_pixel(self):
        """Test bearing vectors are unit rays through the pixel."""
        bearing = geometry.bearing_vector_from_pixel(self.camera, (320, 240))
        np.testing.assert_allclose(bearing, [0, 0, 1], atol=1e-12)

        bearing = geometry.bearing_vector_from_pixel(self.camera, (720, 240))
        np.testing.assert_allclose(bearing, np.array([1, 0, 1]) / math.sqrt(2), atol=1e-12)
        self.assertAlmostEqual(np.linalg.norm(bearing), 1.0, delta=1e-12)

    def test_depth_round_trip(self):
        """Test back-projection at depth d lands at d times the bearing."""
        rng = np.random.default_rng(1)
        for body_pose_rotation in (np.eye(3), rotation_z(0.3)):
            body_pose = np.eye(4)
            body_pose[:3, :3] = body_pose_rotation
            camera = StereoCamera(
                CameraParams(fx=400.0, fy=400.0, cx=320.0, cy=240.0, body_pose_cam=body_pose),
                baseline=0.1,
            )
            for _ in range(50):
                pixel = rng.uniform([0, 0], [640, 480])
                depth = rng.uniform(0.1, 20.0)
                lmk = camera.back_project_depth(pixel, depth)
                bearing = geometry.bearing_vector_from_pixel(camera, pixel)
                self.assertLess(np.linalg.norm(lmk - depth * bearing), 1e-4)

    def test_bearing_vector_from_landmark(self):
        """Test bearing vector and inverse depth of a landmark."""
        bearing, inv_depth = geometry.bearing_vector_from_landmark(np.eye(4), [0, 3, 4])
        self.assertAlmostEqual(inv_depth, 0.2, delta=1e-12)
        np.testing.assert_allclose(bearing, [0, 0.6, 0.8], atol=1e-12)

    def test_pixel_from_landmark(self):
        """Test pinhole projection and the cheirality check."""
        pixel = geometry.pixel_from_landmark([1, 0, 2], np.eye(4), self.camera.K)
        np.testing.assert_allclose(pixel, [520, 240], atol=1e-9)

        with pytest.raises(geometry.CheiralityError):
            geometry.pixel_from_landmark([0, 0, -2], np.eye(4), self.camera.K)

    def test_point_validity(self):
        """Test the finiteness and depth gate of point cloud samples."""
        self.assertTrue(geometry.is_valid_point([0, 0, 1], 0.3, 5.0))
        self.assertTrue(geometry.is_valid_point([0, 0, 0.3], 0.3, 5.0))
        self.assertFalse(geometry.is_valid_point([0, 0, 0.2], 0.3, 5.0))
        self.assertFalse(geometry.is_valid_point([0, 0, 6.0], 0.3, 5.0))
        self.assertFalse(geometry.is_valid_point([np.nan, 0, 1], 0.3, 5.0))
        self.assertFalse(geometry.is_valid_point([0, 0, np.inf], 0.3, 5.0))

        cloud = np.array([[[0, 0, 1], [0, 0, 0.2]], [[np.nan, 0, 1], [0, 0, 5.0]]])
        mask = geometry.valid_points_mask(cloud, 0.3, 5.0)
        np.testing.assert_array_equal(mask, [[True, False], [False, True]])

    def test_inverse_depth_conversions(self):
        """Test depth and depth variance from inverse depth."""
        self.assertAlmostEqual(geometry.depth_from_inverse_depth(0.5), 2.0)
        self.assertTrue(math.isinf(geometry.depth_from_inverse_depth(0.0)))

        # var(d) = var(y) / y^2
        self.assertAlmostEqual(geometry.depth_variance_from_inverse_depth(0.01, 0.5), 0.04)
        self.assertTrue(math.isinf(geometry.depth_variance_from_inverse_depth(0.01, 0.0)))


if __name__ == "__main__":
    unittest.main()
