"""
Errors and warnings raised by the reconstruction engine.

Fatal errors (no usable seed pair) abort the whole run. Per-image pose
failures are caught by the driving loop and the image is skipped.
"""

from __future__ import annotations


class SfMError(Exception):
    """Base class for reconstruction failures."""


class InsufficientCorrespondencesError(SfMError):
    """Not enough shared point names to seed the reconstruction."""


class PoseRecoveryError(SfMError):
    """Essential-matrix or PnP estimation produced too few inliers."""


class InsufficientPnPCorrespondencesError(PoseRecoveryError):
    """Too few 3D-2D correspondences to attempt resectioning an image."""


class SolverNonConvergenceWarning(UserWarning):
    """Bundle adjustment stopped at its iteration or evaluation cap."""


__all__ = [
    "SfMError",
    "InsufficientCorrespondencesError",
    "PoseRecoveryError",
    "InsufficientPnPCorrespondencesError",
    "SolverNonConvergenceWarning",
]
