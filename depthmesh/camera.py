"""Camera models used by the mesh optimizer.

This module implements the calibrated pinhole camera and the rectified
stereo camera the optimizer relies on to back-project mesh vertices into
bearing rays and to project body-frame landmarks into the image.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import cv2
import numpy as np

from depthmesh.config import ConfigurationError
from depthmesh.geometry import CheiralityError

logger = logging.getLogger(__name__)

# Iterative undistortion stops after 100 steps or below 1e-12 change
UNDISTORT_CRITERIA = (cv2.TERM_CRITERIA_COUNT | cv2.TERM_CRITERIA_EPS, 100, 1e-12)


@dataclass
class CameraParams:
    """Intrinsic and extrinsic calibration of a pinhole camera.

    Attributes:
        fx: Focal length along x in pixels
        fy: Focal length along y in pixels
        cx: Principal point x coordinate
        cy: Principal point y coordinate
        image_size: Image (width, height) in pixels
        body_pose_cam: 4x4 pose of the camera in the body frame
        distortion: Optional OpenCV distortion coefficients
    """

    fx: float
    fy: float
    cx: float
    cy: float
    image_size: Tuple[int, int] = (752, 480)
    body_pose_cam: np.ndarray = field(default_factory=lambda: np.eye(4))
    distortion: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.body_pose_cam = np.asarray(self.body_pose_cam, dtype=np.float64).reshape(4, 4)
        if self.fx <= 0 or self.fy <= 0:
            raise ConfigurationError(f"Focal lengths must be positive, got fx={self.fx}, fy={self.fy}")
        if self.distortion is not None:
            self.distortion = np.asarray(self.distortion, dtype=np.float64)

    @property
    def K(self) -> np.ndarray:
        """3x3 intrinsic matrix."""
        return np.array([
            [self.fx, 0, self.cx],
            [0, self.fy, self.cy],
            [0, 0, 1]
        ], dtype=np.float64)

    @classmethod
    def from_dict(cls, config: Dict) -> "CameraParams":
        """Build camera parameters from the ``camera`` configuration section.

        Expected keys are ``intrinsics`` ([fx, fy, cx, cy]), ``resolution``
        ([width, height]), and optionally ``T_BS`` (row-major 4x4 body pose)
        and ``distortion_coefficients``.
        """
        try:
            fx, fy, cx, cy = config["intrinsics"]
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"Camera intrinsics must be [fx, fy, cx, cy]: {e}") from e

        width, height = config.get("resolution", (752, 480))
        body_pose = np.asarray(config.get("T_BS", np.eye(4)), dtype=np.float64).reshape(4, 4)
        distortion = config.get("distortion_coefficients")

        return cls(
            fx=float(fx),
            fy=float(fy),
            cx=float(cx),
            cy=float(cy),
            image_size=(int(width), int(height)),
            body_pose_cam=body_pose,
            distortion=distortion,
        )


def _transform_from(pose: np.ndarray, point: np.ndarray) -> np.ndarray:
    return pose[:3, :3] @ point + pose[:3, 3]


def _transform_to(pose: np.ndarray, point: np.ndarray) -> np.ndarray:
    return pose[:3, :3].T @ (point - pose[:3, 3])


class Camera:
    """Monocular pinhole camera."""

    def __init__(self, params: CameraParams):
        self.params = params

    @property
    def K(self) -> np.ndarray:
        return self.params.K

    @property
    def body_pose_cam(self) -> np.ndarray:
        return self.params.body_pose_cam

    def project(self, lmks: np.ndarray) -> np.ndarray:
        """Project body-frame landmarks into the image.

        Args:
            lmks: Nx3 array (or a single 3-vector) of landmarks in the body frame

        Returns:
            Nx2 array of pixel coordinates
        """
        lmks = np.atleast_2d(np.asarray(lmks, dtype=np.float64))
        pose = self.params.body_pose_cam

        # Express landmarks in the camera frame
        lmks_cam = (lmks - pose[:3, 3]) @ pose[:3, :3]

        behind = lmks_cam[:, 2] <= 0
        if np.any(behind):
            raise CheiralityError(
                f"{np.count_nonzero(behind)} landmark(s) behind the camera, "
                f"first: {tuple(lmks[np.argmax(behind)])}"
            )

        pixels, _ = cv2.projectPoints(
            lmks_cam.reshape(-1, 1, 3),
            np.zeros(3),
            np.zeros(3),
            self.K,
            self.params.distortion,
        )
        return pixels.reshape(-1, 2)

    def back_project_depth(self, pixel: Sequence[float], depth: float) -> np.ndarray:
        """Back-project a pixel at a given depth into the body frame.

        The depth is the distance from the camera center along the pixel ray.
        Distorted pixels are undistorted first, so that project() maps the
        point back onto the pixel.

        Args:
            pixel: Pixel coordinates [x, y]
            depth: Distance along the ray

        Returns:
            3D point in the body frame
        """
        if self.params.distortion is not None and np.any(self.params.distortion):
            normalized = cv2.undistortPointsIter(
                np.asarray(pixel, dtype=np.float64).reshape(1, 1, 2),
                self.K,
                self.params.distortion,
                None,
                None,
                UNDISTORT_CRITERIA,
            )
            x, y = normalized.reshape(2)
        else:
            x = (pixel[0] - self.params.cx) / self.params.fx
            y = (pixel[1] - self.params.cy) / self.params.fy
        ray = np.array([x, y, 1.0])
        lmk_cam = depth * ray / np.linalg.norm(ray)
        return _transform_from(self.params.body_pose_cam, lmk_cam)


class StereoCamera:
    """Rectified stereo camera.

    The left rectified camera defines the camera frame of the point clouds
    handed to the optimizer; the right camera is displaced by the baseline
    along the x axis of the left rectified frame.
    """

    def __init__(self, left_cam_rect_params: CameraParams, baseline: float):
        if baseline <= 0:
            raise ConfigurationError(f"Stereo baseline must be positive, got {baseline}")
        distortion = left_cam_rect_params.distortion
        if distortion is not None and np.any(distortion):
            raise ConfigurationError("Rectified stereo camera must not carry distortion coefficients")
        self.left_camera = Camera(left_cam_rect_params)
        self.baseline = float(baseline)

    @classmethod
    def from_dict(cls, config: Dict) -> "StereoCamera":
        """Build a stereo camera from the ``camera`` configuration section."""
        if "baseline" not in config:
            raise ConfigurationError("Camera configuration needs a stereo baseline")
        return cls(CameraParams.from_dict(config), float(config["baseline"]))

    @property
    def params(self) -> CameraParams:
        return self.left_camera.params

    @property
    def K(self) -> np.ndarray:
        return self.left_camera.K

    @property
    def body_pose_left_cam_rect(self) -> np.ndarray:
        """4x4 pose of the left rectified camera in the body frame."""
        return self.left_camera.body_pose_cam

    @property
    def Q(self) -> np.ndarray:
        """4x4 disparity-to-depth reprojection matrix."""
        p = self.params
        return np.array([
            [1, 0, 0, -p.cx],
            [0, 1, 0, -p.cy],
            [0, 0, 0, p.fx],
            [0, 0, 1.0 / self.baseline, 0]
        ], dtype=np.float64)

    def back_project_depth(self, pixel: Sequence[float], depth: float) -> np.ndarray:
        """Back-project a left pixel at a depth along its ray into the body frame."""
        return self.left_camera.back_project_depth(pixel, depth)

    def project(self, lmk: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
        """Project a body-frame landmark into both rectified images.

        Args:
            lmk: 3D landmark in the body frame

        Returns:
            Tuple of (left_pixel, right_pixel)
        """
        lmk_cam = _transform_to(self.body_pose_left_cam_rect, np.asarray(lmk, dtype=np.float64))
        if lmk_cam[2] <= 0:
            raise CheiralityError(f"Landmark {tuple(lmk)} is behind the camera")

        p = self.params
        inv_z = 1.0 / lmk_cam[2]
        left = np.array([p.fx * lmk_cam[0] * inv_z + p.cx, p.fy * lmk_cam[1] * inv_z + p.cy])
        right = np.array([left[0] - p.fx * self.baseline * inv_z, left[1]])
        return left, right

    def back_project_disparity_to_3d(self, disparity: np.ndarray) -> np.ndarray:
        """Convert a left disparity image into a point cloud.

        Args:
            disparity: HxW disparity image in pixels

        Returns:
            HxWx3 point cloud in the left rectified camera frame, NaN where
            the disparity is not positive
        """
        disparity = np.asarray(disparity, dtype=np.float32)
        point_cloud = cv2.reprojectImageTo3D(disparity, self.Q)

        invalid = ~(disparity > 0)
        point_cloud[invalid] = np.nan

        logger.debug(
            f"Back-projected disparity: {np.count_nonzero(~invalid)}/{disparity.size} valid pixels"
        )
        return point_cloud
