"""
Projection, reprojection error and two-view triangulation of 3D points.
"""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np


def projection_matrix(K: np.ndarray, R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Return the 3x4 projection matrix P = K [R | t]."""
    return K @ np.hstack([R, np.asarray(t, dtype=np.float64).reshape(3, 1)])


def camera_center(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Camera center in world coordinates, C = -R^T t, as a (3,) array."""
    return (-R.T @ np.asarray(t, dtype=np.float64).reshape(3, 1)).ravel()


def point_depths(R: np.ndarray, t: np.ndarray, points_3d: np.ndarray) -> np.ndarray:
    """Depth (camera-frame Z) of each point (N, 3) -> (N,)."""
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    return (R @ points_3d.T + np.asarray(t, dtype=np.float64).reshape(3, 1))[2]


def project_points(
    K: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
    points_3d: np.ndarray,
) -> np.ndarray:
    """
    Project 3D points into image coordinates.

    Args:
        K: Intrinsic camera matrix (3x3).
        R: Rotation matrix (3x3) from world to camera coordinates.
        t: Translation vector (3, 1) or (3,).
        points_3d: Points in world coordinates (N, 3).

    Returns:
        Pixel coordinates (N, 2): K [R | t] X divided by its homogeneous depth.
    """
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    homogeneous = projection_matrix(K, R, t) @ np.hstack(
        [points_3d, np.ones((points_3d.shape[0], 1))]
    ).T
    return (homogeneous[:2] / homogeneous[2]).T


def reprojection_errors(
    K: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
) -> np.ndarray:
    """Euclidean pixel distance between observed points (N, 2) and projections (N,)."""
    projected = project_points(K, R, t, points_3d)
    observed = np.asarray(points_2d, dtype=np.float64).reshape(-1, 2)
    return np.linalg.norm(observed - projected, axis=1)


def triangulation_angle_deg(
    center1: np.ndarray,
    center2: np.ndarray,
    point_3d: np.ndarray,
) -> float:
    """
    Angle (degrees) subtended at a 3D point by two camera centers.

    Near-parallel rays (small angles) give unstable depth estimates.
    """
    ray1 = np.asarray(point_3d, dtype=np.float64) - np.asarray(center1, dtype=np.float64)
    ray2 = np.asarray(point_3d, dtype=np.float64) - np.asarray(center2, dtype=np.float64)
    norm1 = np.linalg.norm(ray1)
    norm2 = np.linalg.norm(ray2)
    if norm1 == 0.0 or norm2 == 0.0:
        return 0.0
    cos_angle = np.clip(np.dot(ray1, ray2) / (norm1 * norm2), -1.0, 1.0)
    return float(np.degrees(np.arccos(cos_angle)))


def triangulate_matched_key_pts_to_3D_pts(
    K: np.ndarray,
    R1: np.ndarray,
    t1: np.ndarray,
    R2: np.ndarray,
    t2: np.ndarray,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Triangulate 3D points from matched 2D correspondences in two views.

    Args:
        K: Intrinsic camera matrix (3x3).
        R1: Rotation matrix for first camera (3x3).
        t1: Translation vector for first camera (3, 1) or (3,).
        R2: Rotation matrix for second camera (3x3).
        t2: Translation vector for second camera (3, 1) or (3,).
        pts1: Points in first image (N, 2).
        pts2: Points in second image (N, 2).

    Returns:
        Tuple of (points_3d, errors1, errors2) where:
        - points_3d: Triangulated 3D points (N, 3) in world coordinates.
        - errors1: Per-point reprojection error (N,) in the first view.
        - errors2: Per-point reprojection error (N,) in the second view.
    """
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
    if len(pts1) == 0:
        return np.zeros((0, 3)), np.zeros((0,)), np.zeros((0,))

    P1 = projection_matrix(K, R1, t1)
    P2 = projection_matrix(K, R2, t2)

    points_4d = cv2.triangulatePoints(P1, P2, pts1.T.copy(), pts2.T.copy())

    # Points at infinity come back with w == 0; leave them non-finite so the
    # callers' gates reject them.
    with np.errstate(divide="ignore", invalid="ignore"):
        points_3d = (points_4d[:3] / points_4d[3]).T

    with np.errstate(divide="ignore", invalid="ignore"):
        errors1 = reprojection_errors(K, R1, t1, points_3d, pts1)
        errors2 = reprojection_errors(K, R2, t2, points_3d, pts2)

    return points_3d, errors1, errors2


__all__ = [
    "projection_matrix",
    "camera_center",
    "point_depths",
    "project_points",
    "reprojection_errors",
    "triangulation_angle_deg",
    "triangulate_matched_key_pts_to_3D_pts",
]
