"""
Essential matrix estimation and relative camera pose extraction.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)


def estimate_essential_matrix(
    K: np.ndarray,
    pts1: np.ndarray,
    pts2: np.ndarray,
    threshold: float = 1.0,
    confidence: float = 0.999,
    max_iterations: int = 1000,
) -> Tuple[Optional[np.ndarray], np.ndarray]:
    """
    Estimate the essential matrix with RANSAC.

    Args:
        K: Intrinsic camera matrix (3x3), shared by both views.
        pts1: Points in first image (N, 2).
        pts2: Points in second image (N, 2).
        threshold: Maximum distance (pixels) from an epipolar line for an inlier.
        confidence: RANSAC confidence level.
        max_iterations: RANSAC iteration cap.

    Returns:
        Tuple of (E, inlier_mask) where:
        - E: Essential matrix (3x3), or None if no model was found.
        - inlier_mask: Boolean array (N,) of RANSAC inliers.
    """
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
    no_model = np.zeros(len(pts1), dtype=bool)

    if len(pts1) < 5:
        # The five-point solver needs at least five correspondences.
        return None, no_model

    try:
        E, mask = cv2.findEssentialMat(
            pts1,
            pts2,
            K,
            method=cv2.RANSAC,
            prob=confidence,
            threshold=threshold,
            maxIters=max_iterations,
        )
    except cv2.error as exc:
        logger.debug("findEssentialMat failed: %s", exc)
        return None, no_model

    if E is None or mask is None:
        return None, no_model

    # Several candidate solutions may come back stacked as (3k, 3); RANSAC
    # already ranked them, keep the first.
    E = E[:3, :3]

    return E, mask.ravel().astype(bool)


def extract_RT_essential_matrix(
    E: np.ndarray,
    K: np.ndarray,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Extract camera rotation and translation from essential matrix.

    Args:
        E: Essential matrix (3x3).
        K: Intrinsic camera matrix (3x3).
        pts1: Points in first image (N, 2).
        pts2: Points in second image (N, 2).

    Returns:
        Tuple of (R, t, mask) where:
        - R: Rotation matrix (3x3) from first to second camera.
        - t: Unit translation vector (3, 1) from first to second camera.
        - mask: Boolean mask (N,) of points in front of both cameras.
    """
    if len(pts1) == 0 or len(pts2) == 0:
        return np.eye(3), np.zeros((3, 1)), np.zeros((0,), dtype=bool)

    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)

    _, R, t, mask = cv2.recoverPose(E, pts1, pts2, K)

    # OpenCV returns mask as uint8 (0 or 255). Convert to boolean mask of shape (N,).
    return R, t.reshape(3, 1), mask.ravel().astype(bool)


__all__ = ["estimate_essential_matrix", "extract_RT_essential_matrix"]
