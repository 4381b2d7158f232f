"""Configuration for the incremental SfM engine."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional


@dataclass
class SfMConfig:
    """Thresholds and solver caps for one reconstruction run.

    Defaults are tuned for hand-annotated images where a few dozen named
    points are shared across a handful of views.
    """

    # Pair selection / registration
    min_common_points: int = 5
    """Minimum shared names to accept the seed pair."""

    min_points_for_resection: int = 4
    """Minimum 3D-2D correspondences before PnP is attempted."""

    min_inliers_for_camera: int = 6
    """Minimum PnP inliers to accept a new camera."""

    max_resection_retries: int = 1
    """How many more times a failed image is tried after the cloud has grown."""

    # Triangulation
    max_reprojection_error: float = 6.0
    """Pixel threshold above which a triangulated/observed point is rejected."""

    min_triangulation_angle_deg: float = 3.0
    """Minimum ray angle (degrees) accepted when triangulating a new point."""

    # Intrinsics
    focal_scale: float = 1.2
    """Focal length as a multiple of the larger image side."""

    # Essential matrix RANSAC
    essential_threshold: float = 1.0
    essential_confidence: float = 0.999
    essential_max_iterations: int = 1000
    min_essential_inliers: int = 6

    # PnP RANSAC
    pnp_reprojection_threshold: float = 10.0
    pnp_confidence: float = 0.99
    pnp_iterations: int = 100
    pnp_fallback_iterations: int = 200

    # Bundle adjustment
    enable_incremental_ba: bool = True
    """Run bundle adjustment after every camera addition, not only at the end."""

    max_evaluations: int = 200
    max_iterations: int = 200
    final_max_evaluations: int = 5000
    final_max_iterations: int = 5000

    fix_first_camera: bool = True
    """Hold the first registered camera at its pose (gauge freedom)."""

    ba_finite_difference_eps: float = 1e-6
    ba_early_stop_window: int = 5
    ba_min_relative_improvement: float = 1e-9

    random_seed: Optional[int] = None
    """Seed for OpenCV's RANSAC sampling; None leaves it unseeded."""

    def __post_init__(self) -> None:
        positive_ints = (
            "min_common_points",
            "min_points_for_resection",
            "min_inliers_for_camera",
            "essential_max_iterations",
            "min_essential_inliers",
            "pnp_iterations",
            "pnp_fallback_iterations",
            "max_evaluations",
            "max_iterations",
            "final_max_evaluations",
            "final_max_iterations",
            "ba_early_stop_window",
        )
        for name in positive_ints:
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")

        if self.max_resection_retries < 0:
            raise ValueError("max_resection_retries must be >= 0")
        if self.min_points_for_resection < 4:
            raise ValueError("PnP needs at least 4 correspondences (min_points_for_resection >= 4)")

        positive_floats = (
            "max_reprojection_error",
            "focal_scale",
            "essential_threshold",
            "pnp_reprojection_threshold",
            "ba_finite_difference_eps",
        )
        for name in positive_floats:
            if not getattr(self, name) > 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")

        if not 0.0 <= self.min_triangulation_angle_deg < 90.0:
            raise ValueError("min_triangulation_angle_deg must be in [0, 90)")
        for name in ("essential_confidence", "pnp_confidence"):
            if not 0.0 < getattr(self, name) < 1.0:
                raise ValueError(f"{name} must be in (0, 1)")
        if self.ba_min_relative_improvement < 0:
            raise ValueError("ba_min_relative_improvement must be >= 0")

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "SfMConfig":
        """Build a config from a mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown configuration option(s): {', '.join(unknown)}")
        return cls(**dict(values))


__all__ = ["SfMConfig"]
