"""
Rigid post-transform applied to the final point cloud.

The engine only applies X' = Rg X + Tg. Deciding Rg and Tg (for example
"put this point at the origin") is left to whoever drives the engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


def _identity() -> np.ndarray:
    return np.eye(3)


def _zero() -> np.ndarray:
    return np.zeros(3)


@dataclass
class GlobalTransform:
    """Rotation (3x3) and translation (3,), identity and zero by default."""

    rotation: np.ndarray = field(default_factory=_identity)
    translation: np.ndarray = field(default_factory=_zero)

    def __post_init__(self) -> None:
        self.set_rotation(self.rotation)
        self.set_translation(self.translation)

    def set_rotation(self, R: np.ndarray, atol: float = 1e-6) -> None:
        R = np.array(R, dtype=np.float64)
        if R.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got shape {R.shape}")
        if not np.allclose(R @ R.T, np.eye(3), atol=atol) or not np.isclose(
            np.linalg.det(R), 1.0, atol=atol
        ):
            raise ValueError("Rotation must be orthonormal with determinant +1")
        self.rotation = R

    def set_translation(self, t: np.ndarray) -> None:
        t = np.array(t, dtype=np.float64).reshape(-1)
        if t.shape != (3,):
            raise ValueError(f"Translation must have 3 components, got {t.shape[0]}")
        self.translation = t

    @property
    def is_identity(self) -> bool:
        return bool(np.allclose(self.rotation, np.eye(3)) and np.allclose(self.translation, 0.0))

    def apply(self, points_3d: np.ndarray) -> np.ndarray:
        """Transform points (N, 3) -> (N, 3)."""
        points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
        return points_3d @ self.rotation.T + self.translation

    def then(self, other: "GlobalTransform") -> "GlobalTransform":
        """The transform equal to applying `self` first and `other` second."""
        return GlobalTransform(
            rotation=other.rotation @ self.rotation,
            translation=other.rotation @ self.translation + other.translation,
        )


__all__ = ["GlobalTransform"]
