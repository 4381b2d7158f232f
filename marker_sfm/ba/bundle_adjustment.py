"""
Bundle adjustment for refining camera poses and 3D point positions.

The parameter vector is laid out as

    [cam_0 (rvec 3, t 3), ..., cam_{n-1}, point_0 (xyz 3), ..., point_{m-1}]

with cameras in registration order and points in creation order. The problem
is solved with scipy's trust-region reflective least squares over the free
parameters, using a finite-difference Jacobian with a block-sparse pattern.
Only steps lowering the total squared reprojection error are accepted.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import csr_matrix, lil_matrix

from marker_sfm.sfm_inc.data_structures import Reconstruction
from marker_sfm.sfm_inc.errors import SolverNonConvergenceWarning

logger = logging.getLogger(__name__)

CAMERA_PARAMS = 6
POINT_PARAMS = 3

STOP_CONVERGED = "converged"
STOP_EARLY = "early_stop"
STOP_MAX_ITERATIONS = "max_iterations"
STOP_MAX_EVALUATIONS = "max_evaluations"


@dataclass
class ObservationArrays:
    """Observations flattened into index arrays for vectorised residuals."""

    camera_idx: np.ndarray
    point_idx: np.ndarray
    uv: np.ndarray


@dataclass
class BundleAdjustmentResult:
    """Summary of one bundle adjustment run (costs are sums of squared pixels)."""

    initial_cost: float
    final_cost: float
    iterations: int
    evaluations: int
    converged: bool
    stop_reason: str
    num_cameras: int
    num_points: int
    num_observations: int


def pack_parameters(reconstruction: Reconstruction) -> Tuple[np.ndarray, Dict]:
    """
    Pack all camera extrinsics and 3D point positions into a 1D parameter vector.

    Args:
        reconstruction: Reconstruction containing cameras and 3D points.

    Returns:
        Tuple of (params, meta) where:
        - params: 1D array of all parameters.
        - meta: Dictionary with index information for unpacking:
            - meta["camera_index"][image_id] -> camera block index
            - meta["point_index"][name] -> point block index
            - meta["point_params_start"]: Starting index for point parameters
    """
    cameras = reconstruction.cameras
    points = reconstruction.points

    params = np.zeros(CAMERA_PARAMS * len(cameras) + POINT_PARAMS * len(points))
    for i, cam in enumerate(cameras):
        rvec, _ = cv2.Rodrigues(cam.R)
        start = CAMERA_PARAMS * i
        params[start:start + 3] = rvec.ravel()
        params[start + 3:start + 6] = cam.t.ravel()

    point_params_start = CAMERA_PARAMS * len(cameras)
    for j, pt in enumerate(points):
        start = point_params_start + POINT_PARAMS * j
        params[start:start + 3] = pt.xyz

    meta = {
        "camera_index": {cam.image_id: i for i, cam in enumerate(cameras)},
        "point_index": {pt.name: j for j, pt in enumerate(points)},
        "point_params_start": point_params_start,
    }
    return params, meta


def unpack_parameters(
    params: np.ndarray,
    reconstruction: Reconstruction,
    meta: Dict,
) -> None:
    """
    Write optimized parameters back into the Reconstruction.

    Args:
        params: 1D array of optimized parameters.
        reconstruction: Reconstruction to update in-place.
        meta: Dictionary with index information from pack_parameters.
    """
    for image_id, i in meta["camera_index"].items():
        start = CAMERA_PARAMS * i
        R, _ = cv2.Rodrigues(params[start:start + 3].reshape(3, 1))
        reconstruction.update_camera(image_id, R, params[start + 3:start + 6])

    point_params_start = meta["point_params_start"]
    for name, j in meta["point_index"].items():
        start = point_params_start + POINT_PARAMS * j
        reconstruction.update_point(name, params[start:start + 3])


def collect_observations(reconstruction: Reconstruction, meta: Dict) -> ObservationArrays:
    camera_idx, point_idx, uv = [], [], []
    for name, image_id, corr in reconstruction.observations():
        camera_idx.append(meta["camera_index"][image_id])
        point_idx.append(meta["point_index"][name])
        uv.append((corr.x, corr.y))
    return ObservationArrays(
        camera_idx=np.array(camera_idx, dtype=int),
        point_idx=np.array(point_idx, dtype=int),
        uv=np.array(uv, dtype=np.float64).reshape(-1, 2),
    )


def reprojection_residuals(
    params: np.ndarray,
    n_cameras: int,
    observations: ObservationArrays,
    K: np.ndarray,
) -> np.ndarray:
    """
    Compute reprojection residuals for all observations.

    Args:
        params: 1D parameter vector (camera poses + 3D points).
        n_cameras: Number of camera blocks at the front of `params`.
        observations: Flattened observation indices and measured pixels.
        K: Intrinsic camera matrix (3x3).

    Returns:
        1D array of residuals (2 per observation: [u - u_obs, v - v_obs]).
    """
    camera_params = params[:CAMERA_PARAMS * n_cameras].reshape(n_cameras, CAMERA_PARAMS)
    points = params[CAMERA_PARAMS * n_cameras:].reshape(-1, POINT_PARAMS)

    rotations = np.stack([cv2.Rodrigues(rvec.reshape(3, 1))[0] for rvec in camera_params[:, :3]])

    R = rotations[observations.camera_idx]
    t = camera_params[observations.camera_idx, 3:]
    X = points[observations.point_idx]

    X_cam = np.einsum("nij,nj->ni", R, X) + t
    projected = X_cam @ K.T
    uv = projected[:, :2] / projected[:, 2:3]

    return (uv - observations.uv).ravel()


def bundle_adjustment_sparsity(
    observations: ObservationArrays,
    n_cameras: int,
    n_points: int,
    free_idx: Optional[np.ndarray] = None,
) -> csr_matrix:
    """
    Jacobian sparsity pattern: each residual pair depends on one camera and one point.

    Args:
        observations: Flattened observation indices.
        n_cameras: Number of camera blocks.
        n_points: Number of point blocks.
        free_idx: Parameter columns to keep (default: all).

    Returns:
        Boolean sparse matrix of shape (2 * n_observations, n_free_parameters).
    """
    n_obs = len(observations.uv)
    n_params = CAMERA_PARAMS * n_cameras + POINT_PARAMS * n_points
    A = lil_matrix((2 * n_obs, n_params), dtype=bool)

    rows = np.arange(n_obs)
    point_params_start = CAMERA_PARAMS * n_cameras
    for k in range(CAMERA_PARAMS):
        cols = CAMERA_PARAMS * observations.camera_idx + k
        A[2 * rows, cols] = True
        A[2 * rows + 1, cols] = True
    for k in range(POINT_PARAMS):
        cols = point_params_start + POINT_PARAMS * observations.point_idx + k
        A[2 * rows, cols] = True
        A[2 * rows + 1, cols] = True

    A = A.tocsc()
    if free_idx is not None:
        A = A[:, free_idx]
    return A.tocsr()


def total_squared_error(reconstruction: Reconstruction) -> float:
    """Sum of squared reprojection residuals over all observations."""
    if reconstruction.num_observations == 0:
        return 0.0
    params, meta = pack_parameters(reconstruction)
    residuals = reprojection_residuals(
        params,
        len(reconstruction.cameras),
        collect_observations(reconstruction, meta),
        reconstruction.K,
    )
    return float(residuals @ residuals)


class _IterationMonitor:
    """least_squares callback enforcing the iteration cap and the early-stop window."""

    def __init__(self, fun, max_iterations: int, early_stop_window: int, min_relative_improvement: float):
        self.fun = fun
        self.max_iterations = max_iterations
        self.early_stop_window = early_stop_window
        self.min_relative_improvement = min_relative_improvement
        self.iterations = 0
        self.history: List[float] = []
        self.stop_reason: Optional[str] = None

    def __call__(self, intermediate_result) -> None:
        self.iterations += 1
        r = self.fun(intermediate_result.x)
        cost = float(r @ r)
        self.history.append(cost)
        logger.debug("BA iteration %d: cost %.6e", self.iterations, cost)

        if len(self.history) > self.early_stop_window:
            reference = self.history[-self.early_stop_window - 1]
            if reference > 0 and (reference - cost) / reference < self.min_relative_improvement:
                self.stop_reason = STOP_EARLY
                raise StopIteration
        if self.iterations >= self.max_iterations:
            self.stop_reason = STOP_MAX_ITERATIONS
            raise StopIteration


def run_bundle_adjustment(
    reconstruction: Reconstruction,
    max_evaluations: int = 200,
    max_iterations: int = 200,
    fix_first_camera: bool = True,
    eps: float = 1e-6,
    early_stop_window: int = 5,
    min_relative_improvement: float = 1e-9,
) -> BundleAdjustmentResult:
    """
    Jointly refine camera poses and 3D points to minimise reprojection error.

    Args:
        reconstruction: Reconstruction to optimize; updated in-place.
        max_evaluations: Cap on residual evaluations (Jacobian columns excluded).
        max_iterations: Cap on solver iterations.
        fix_first_camera: Keep the first registered camera at its pose.
        eps: Relative finite-difference step for the Jacobian.
        early_stop_window: Iterations over which relative improvement is measured.
        min_relative_improvement: Stop when improvement over the window is below this.

    Returns:
        BundleAdjustmentResult. Hitting a cap keeps the best parameters found
        and issues a SolverNonConvergenceWarning.
    """
    params, meta = pack_parameters(reconstruction)
    n_cams = len(meta["camera_index"])
    n_pts = len(meta["point_index"])
    observations = collect_observations(reconstruction, meta)
    n_obs = len(observations.uv)

    if n_cams == 0 or n_pts == 0 or n_obs == 0:
        return BundleAdjustmentResult(0.0, 0.0, 0, 0, True, STOP_CONVERGED, n_cams, n_pts, n_obs)

    free_mask = np.ones(params.size, dtype=bool)
    if fix_first_camera:
        free_mask[:CAMERA_PARAMS] = False
    free_idx = np.flatnonzero(free_mask)

    logger.info(
        "Starting bundle adjustment with %d cameras, %d points, %d observations, "
        "%d free parameters (max_evaluations=%d, max_iterations=%d)",
        n_cams,
        n_pts,
        n_obs,
        free_idx.size,
        max_evaluations,
        max_iterations,
    )

    K = reconstruction.K

    def residuals(x_free: np.ndarray) -> np.ndarray:
        x = params.copy()
        x[free_idx] = x_free
        return reprojection_residuals(x, n_cams, observations, K)

    r0 = residuals(params[free_idx])
    initial_cost = float(r0 @ r0)

    monitor = _IterationMonitor(residuals, max_iterations, early_stop_window, min_relative_improvement)
    result = least_squares(
        residuals,
        params[free_idx],
        jac="2-point",
        diff_step=eps,
        jac_sparsity=bundle_adjustment_sparsity(observations, n_cams, n_pts, free_idx),
        method="trf",
        max_nfev=max_evaluations,
        callback=monitor,
    )

    if monitor.stop_reason is not None:
        stop_reason = monitor.stop_reason
    elif result.status == 0:
        stop_reason = STOP_MAX_EVALUATIONS
    else:
        stop_reason = STOP_CONVERGED
    converged = stop_reason not in (STOP_MAX_ITERATIONS, STOP_MAX_EVALUATIONS)

    # scipy reports 0.5 * sum of squares
    final_cost = 2.0 * float(result.cost)
    x_final = params.copy()
    x_final[free_idx] = result.x
    unpack_parameters(x_final, reconstruction, meta)

    logger.info(
        "Bundle adjustment done (%s): cost %.4e -> %.4e, %d iterations, %d evaluations",
        stop_reason,
        initial_cost,
        final_cost,
        monitor.iterations,
        result.nfev,
    )
    if not converged:
        message = (
            f"Bundle adjustment did not converge ({stop_reason} after "
            f"{monitor.iterations} iterations, {result.nfev} evaluations); "
            "keeping best parameters found"
        )
        logger.warning(message)
        warnings.warn(message, SolverNonConvergenceWarning, stacklevel=2)

    return BundleAdjustmentResult(
        initial_cost=initial_cost,
        final_cost=final_cost,
        iterations=monitor.iterations,
        evaluations=int(result.nfev),
        converged=converged,
        stop_reason=stop_reason,
        num_cameras=n_cams,
        num_points=n_pts,
        num_observations=n_obs,
    )


__all__ = [
    "BundleAdjustmentResult",
    "pack_parameters",
    "unpack_parameters",
    "reprojection_residuals",
    "bundle_adjustment_sparsity",
    "total_squared_error",
    "run_bundle_adjustment",
]
