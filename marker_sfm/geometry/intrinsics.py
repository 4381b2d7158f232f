"""
Approximate pinhole intrinsics from image size.

No calibration target is available for hand-annotated photos, so the focal
length is a fixed multiple of the larger image side and the principal point
sits at the image center. Lens distortion is not modelled.
"""

from __future__ import annotations

import numpy as np

DEFAULT_FOCAL_SCALE = 1.2


def estimate_intrinsics(
    width: int,
    height: int,
    scale: float = DEFAULT_FOCAL_SCALE,
) -> np.ndarray:
    """
    Build an intrinsic matrix for an uncalibrated image.

    Args:
        width: Image width in pixels.
        height: Image height in pixels.
        scale: Focal length as a multiple of max(width, height).

    Returns:
        K (3x3, float64) with f = scale * max(width, height) and the principal
        point at (width / 2, height / 2).
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image size must be positive, got {width}x{height}")
    if not scale > 0:
        raise ValueError(f"Focal scale must be positive, got {scale}")

    f = scale * max(width, height)
    return np.array(
        [
            [f, 0.0, width / 2.0],
            [0.0, f, height / 2.0],
            [0.0, 0.0, 1.0],
        ],
        dtype=np.float64,
    )


__all__ = ["DEFAULT_FOCAL_SCALE", "estimate_intrinsics"]
