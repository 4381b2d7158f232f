"""
Perspective-n-Point (PnP) pose estimation.
"""

from __future__ import annotations

import logging
from typing import Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def estimate_camera_pose_pnp(
    K: np.ndarray,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    flags: int = cv2.SOLVEPNP_EPNP,
    reprojection_error: float = 10.0,
    confidence: float = 0.99,
    iterations: int = 100,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Estimate camera pose from 3D-2D correspondences using PnP RANSAC.

    Args:
        K: Intrinsic camera matrix (3x3).
        points_3d: 3D points in world coordinates (N, 3).
        points_2d: Corresponding 2D points in image coordinates (N, 2).
        flags: OpenCV PnP solver used inside RANSAC (e.g. SOLVEPNP_EPNP).
        reprojection_error: Inlier threshold in pixels.
        confidence: RANSAC confidence level.
        iterations: RANSAC iteration cap.

    Returns:
        Tuple of (R, t, inlier_mask) where:
        - R: Rotation matrix (3x3) from world to camera coordinates.
        - t: Translation vector (3, 1) from world to camera coordinates.
        - inlier_mask: Boolean array (N,) indicating inlier correspondences.
          All False when the solver failed.
    """
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    points_2d = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
    failed = (np.eye(3), np.zeros((3, 1)), np.zeros(len(points_3d), dtype=bool))

    if len(points_3d) < 4:
        # PnP requires at least 4 points
        return failed

    try:
        success, rvec, tvec, inliers = cv2.solvePnPRansac(
            points_3d.reshape(-1, 1, 3),
            points_2d.reshape(-1, 1, 2),
            K,
            None,  # dist_coeffs
            iterationsCount=iterations,
            reprojectionError=reprojection_error,
            confidence=confidence,
            flags=flags,
        )
    except cv2.error as exc:
        logger.debug("solvePnPRansac (flags=%d) failed: %s", flags, exc)
        return failed

    if not success or inliers is None or len(inliers) == 0:
        return failed

    # Convert rotation vector to rotation matrix
    R, _ = cv2.Rodrigues(rvec)
    t = tvec.reshape(3, 1)

    # Create full inlier mask
    inlier_mask = np.zeros(len(points_3d), dtype=bool)
    inlier_mask[inliers.ravel()] = True

    C = -R.T @ t
    logger.debug(
        "PnP (flags=%d): center %s, %d/%d inliers",
        flags,
        np.round(C.ravel(), 4),
        int(inlier_mask.sum()),
        len(points_3d),
    )

    return R, t, inlier_mask


def estimate_camera_pose_with_fallback(
    K: np.ndarray,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    min_inliers: int,
    reprojection_error: float = 10.0,
    confidence: float = 0.99,
    iterations: int = 100,
    fallback_iterations: int = 200,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Run EPnP RANSAC and, if it yields fewer than `min_inliers`, retry with AP3P.

    Returns the (R, t, inlier_mask) of the last attempt. Callers decide
    acceptance from the inlier count.
    """
    R, t, inlier_mask = estimate_camera_pose_pnp(
        K,
        points_3d,
        points_2d,
        flags=cv2.SOLVEPNP_EPNP,
        reprojection_error=reprojection_error,
        confidence=confidence,
        iterations=iterations,
    )
    if int(inlier_mask.sum()) >= min_inliers:
        return R, t, inlier_mask

    logger.debug(
        "EPnP gave %d inliers (< %d); retrying with AP3P",
        int(inlier_mask.sum()),
        min_inliers,
    )
    return estimate_camera_pose_pnp(
        K,
        points_3d,
        points_2d,
        flags=cv2.SOLVEPNP_AP3P,
        reprojection_error=reprojection_error,
        confidence=confidence,
        iterations=fallback_iterations,
    )


__all__ = ["estimate_camera_pose_pnp", "estimate_camera_pose_with_fallback"]
