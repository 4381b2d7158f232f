"""
Incremental Structure-from-Motion pipeline.

Control flow:
    select seed pair -> two-view initialization ->
    { resection -> triangulate new points -> bundle adjustment } per image ->
    global triangulation sweep -> final bundle adjustment -> global transform
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from marker_sfm.ba.bundle_adjustment import BundleAdjustmentResult, run_bundle_adjustment
from marker_sfm.geometry.essential import estimate_essential_matrix, extract_RT_essential_matrix
from marker_sfm.geometry.intrinsics import estimate_intrinsics
from marker_sfm.geometry.pnp import estimate_camera_pose_with_fallback
from marker_sfm.geometry.triangulation import point_depths, triangulate_matched_key_pts_to_3D_pts
from marker_sfm.sfm_inc.config import SfMConfig
from marker_sfm.sfm_inc.data_structures import (
    AnnotatedImage,
    Camera,
    Reconstruction,
    TrackTable,
)
from marker_sfm.sfm_inc.errors import (
    InsufficientCorrespondencesError,
    InsufficientPnPCorrespondencesError,
    PoseRecoveryError,
)
from marker_sfm.sfm_inc.multiview import triangulate_new_points, triangulate_remaining_tracks
from marker_sfm.sfm_inc.pair_selection import (
    ImagePair,
    best_candidate,
    score_candidate_images,
    select_initial_pair,
)
from marker_sfm.sfm_inc.transform import GlobalTransform

logger = logging.getLogger(__name__)


@dataclass
class ReconstructionResult:
    """Outcome of a full run: the reconstruction plus what happened to each image."""

    reconstruction: Reconstruction
    initial_pair: ImagePair
    registered_images: List[str]
    skipped_images: List[str]
    global_transform: GlobalTransform = field(default_factory=GlobalTransform)
    ba_results: List[BundleAdjustmentResult] = field(default_factory=list)

    def point_array(self) -> np.ndarray:
        """Reconstructed points (N, 3) with the global transform applied."""
        points = self.reconstruction.points
        if not points:
            return np.zeros((0, 3))
        return self.global_transform.apply(np.stack([pt.xyz for pt in points]))

    def points(self) -> List[Tuple[str, float, float, float]]:
        """(name, x, y, z) for every reconstructed point, global transform applied."""
        names = self.reconstruction.point_names
        return [
            (name, float(x), float(y), float(z))
            for name, (x, y, z) in zip(names, self.point_array())
        ]


def _seed_rng(config: SfMConfig) -> None:
    if config.random_seed is not None:
        cv2.setRNGSeed(config.random_seed)


def initialize_from_pair(
    tracks: TrackTable,
    pair: ImagePair,
    K: np.ndarray,
    config: SfMConfig,
) -> Reconstruction:
    """
    Build the initial reconstruction from the seed image pair.

    Args:
        tracks: Track index over all images.
        pair: Seed pair chosen by select_initial_pair.
        K: Intrinsic camera matrix (3x3), shared by all images.
        config: Thresholds.

    Returns:
        Reconstruction with the first camera at the identity pose, the second
        at the recovered relative pose, and every triangulated point whose
        reprojection error is below `max_reprojection_error` in both views.

    Raises:
        InsufficientCorrespondencesError: fewer than `min_common_points` shared names.
        PoseRecoveryError: too few essential-matrix inliers, or no point survives.
    """
    image1, image2 = pair.image1, pair.image2
    names = tracks.common_names(image1, image2)
    if len(names) < config.min_common_points:
        raise InsufficientCorrespondencesError(
            f"Insufficient common points for initial reconstruction between "
            f"{image1} and {image2}: {len(names)} < {config.min_common_points}"
        )

    obs1 = [tracks.observation(name, image1) for name in names]
    obs2 = [tracks.observation(name, image2) for name in names]
    pts1 = np.array([obs.uv for obs in obs1])
    pts2 = np.array([obs.uv for obs in obs2])

    _seed_rng(config)
    E, inlier_mask = estimate_essential_matrix(
        K,
        pts1,
        pts2,
        threshold=config.essential_threshold,
        confidence=config.essential_confidence,
        max_iterations=config.essential_max_iterations,
    )
    num_inliers = int(inlier_mask.sum())
    logger.info("Essential matrix RANSAC: %d/%d inliers", num_inliers, len(names))
    if E is None or num_inliers < config.min_essential_inliers:
        raise PoseRecoveryError(
            f"Could not recover relative pose between {image1} and {image2}: "
            f"{num_inliers} essential-matrix inliers < {config.min_essential_inliers}"
        )

    inlier_names = [name for name, keep in zip(names, inlier_mask) if keep]
    pts1_inliers = pts1[inlier_mask]
    pts2_inliers = pts2[inlier_mask]

    R, t, _ = extract_RT_essential_matrix(E, K, pts1_inliers, pts2_inliers)

    reconstruction = Reconstruction(K)
    cam1 = reconstruction.add_camera(image1, np.eye(3), np.zeros((3, 1)))
    cam2 = reconstruction.add_camera(image2, R, t)

    points_3d, errors1, errors2 = triangulate_matched_key_pts_to_3D_pts(
        K, cam1.R, cam1.t, cam2.R, cam2.t, pts1_inliers, pts2_inliers
    )

    with np.errstate(invalid="ignore"):
        mask_z = (point_depths(cam1.R, cam1.t, points_3d) > 0) & (
            point_depths(cam2.R, cam2.t, points_3d) > 0
        )
        mask_err = (errors1 < config.max_reprojection_error) & (
            errors2 < config.max_reprojection_error
        )
    valid_mask = mask_z & mask_err & np.all(np.isfinite(points_3d), axis=1)

    for name, xyz, keep in zip(inlier_names, points_3d, valid_mask):
        if not keep:
            continue
        reconstruction.add_point(
            name,
            xyz,
            {
                image1: tracks.observation(name, image1),
                image2: tracks.observation(name, image2),
            },
        )

    logger.info(
        "Initial reconstruction: %d points (%d passing depth, %d passing error < %.1f px)",
        len(reconstruction.points),
        int(mask_z.sum()),
        int(mask_err.sum()),
        config.max_reprojection_error,
    )

    if not reconstruction.points:
        raise PoseRecoveryError(
            f"No point of the seed pair {image1}/{image2} triangulated within "
            f"{config.max_reprojection_error} px"
        )

    return reconstruction


def register_image(
    reconstruction: Reconstruction,
    image: AnnotatedImage,
    config: SfMConfig,
) -> Camera:
    """
    Register one more camera by resectioning against the current cloud.

    Observations are recorded for PnP inliers only. On failure the
    reconstruction is left untouched.

    Raises:
        InsufficientPnPCorrespondencesError: fewer than `min_points_for_resection`
            names of this image are in the cloud.
        PoseRecoveryError: both PnP solvers gave fewer than
            `min_inliers_for_camera` inliers.
    """
    names = [name for name in image.points if reconstruction.has_point(name)]
    logger.info("Trying PnP for %s: %d correspondences", image.image_id, len(names))
    if len(names) < config.min_points_for_resection:
        raise InsufficientPnPCorrespondencesError(
            f"{image.image_id}: {len(names)} 3D-2D correspondences < "
            f"{config.min_points_for_resection}"
        )

    points_3d = np.array([reconstruction.point(name).xyz for name in names])
    points_2d = np.array([image.points[name].uv for name in names])

    _seed_rng(config)
    R, t, inlier_mask = estimate_camera_pose_with_fallback(
        reconstruction.K,
        points_3d,
        points_2d,
        min_inliers=config.min_inliers_for_camera,
        reprojection_error=config.pnp_reprojection_threshold,
        confidence=config.pnp_confidence,
        iterations=config.pnp_iterations,
        fallback_iterations=config.pnp_fallback_iterations,
    )
    num_inliers = int(inlier_mask.sum())
    if num_inliers < config.min_inliers_for_camera:
        raise PoseRecoveryError(
            f"{image.image_id}: {num_inliers} PnP inliers < {config.min_inliers_for_camera}"
        )

    camera = reconstruction.add_camera(image.image_id, R, t)
    for name, keep in zip(names, inlier_mask):
        if keep:
            reconstruction.add_observation(name, image.image_id, image.points[name])

    logger.info(
        "Registered %s with %d/%d PnP inliers", image.image_id, num_inliers, len(names)
    )
    return camera


def _bundle_adjust(
    reconstruction: Reconstruction,
    config: SfMConfig,
    max_evaluations: int,
    max_iterations: int,
) -> BundleAdjustmentResult:
    return run_bundle_adjustment(
        reconstruction,
        max_evaluations=max_evaluations,
        max_iterations=max_iterations,
        fix_first_camera=config.fix_first_camera,
        eps=config.ba_finite_difference_eps,
        early_stop_window=config.ba_early_stop_window,
        min_relative_improvement=config.ba_min_relative_improvement,
    )


def run_incremental_sfm(
    images: Sequence[AnnotatedImage],
    config: Optional[SfMConfig] = None,
    global_transform: Optional[GlobalTransform] = None,
) -> ReconstructionResult:
    """
    Run incremental SfM over a set of annotated images.

    Args:
        images: Images with their named 2D points; order fixes tie-breaking.
        config: Thresholds and solver caps (defaults to SfMConfig()).
        global_transform: Rigid transform applied to the output cloud.

    Returns:
        ReconstructionResult. Images that could not be registered are listed
        in `skipped_images`; they never abort the run.

    Raises:
        InsufficientCorrespondencesError, PoseRecoveryError: no usable seed pair.
    """
    config = config or SfMConfig()
    tracks = TrackTable(images)

    pair = select_initial_pair(tracks, config.min_common_points)

    # Intrinsics are approximated once, from the first seed image.
    seed_image = tracks.image(pair.image1)
    K = estimate_intrinsics(seed_image.width, seed_image.height, config.focal_scale)
    logger.info("Estimated intrinsics from %s:\n%s", seed_image.image_id, K)

    reconstruction = initialize_from_pair(tracks, pair, K, config)
    ba_results: List[BundleAdjustmentResult] = []

    seed_ids = (pair.image1, pair.image2)
    remaining = [image_id for image_id in tracks.image_ids if image_id not in seed_ids]
    # image id -> (failed attempts, cloud size at last failure)
    failures: Dict[str, Tuple[int, int]] = {}

    while remaining:
        eligible = [
            image_id
            for image_id in remaining
            if _is_eligible(image_id, failures, reconstruction, config)
        ]
        scores = score_candidate_images(tracks, reconstruction, eligible)
        best = best_candidate(scores, config.min_points_for_resection)
        if best is None:
            logger.info("No more images with sufficient matches to the reconstruction")
            break

        logger.info("Adding image %s with %d matches", best.image_id, best.num_matches)
        try:
            register_image(reconstruction, tracks.image(best.image_id), config)
        except PoseRecoveryError as exc:
            attempts = failures.get(best.image_id, (0, 0))[0] + 1
            failures[best.image_id] = (attempts, len(reconstruction.points))
            logger.warning("Failed to register image %s: %s", best.image_id, exc)
            continue

        remaining.remove(best.image_id)
        triangulate_new_points(reconstruction, tracks, best.image_id, config)
        if config.enable_incremental_ba:
            ba_results.append(
                _bundle_adjust(reconstruction, config, config.max_evaluations, config.max_iterations)
            )

    triangulate_remaining_tracks(reconstruction, tracks, config)
    ba_results.append(
        _bundle_adjust(reconstruction, config, config.final_max_evaluations, config.final_max_iterations)
    )

    skipped = list(remaining)
    if skipped:
        logger.warning("Skipped %d image(s): %s", len(skipped), ", ".join(skipped))
    logger.info(
        "Reconstructed %d cameras and %d points",
        len(reconstruction.cameras),
        len(reconstruction.points),
    )

    return ReconstructionResult(
        reconstruction=reconstruction,
        initial_pair=pair,
        registered_images=reconstruction.camera_ids,
        skipped_images=skipped,
        global_transform=global_transform or GlobalTransform(),
        ba_results=ba_results,
    )


def _is_eligible(
    image_id: str,
    failures: Dict[str, Tuple[int, int]],
    reconstruction: Reconstruction,
    config: SfMConfig,
) -> bool:
    """A failed image is retried only after the cloud has grown, up to the retry cap."""
    if image_id not in failures:
        return True
    attempts, cloud_size = failures[image_id]
    return attempts <= config.max_resection_retries and len(reconstruction.points) > cloud_size


__all__ = [
    "ReconstructionResult",
    "initialize_from_pair",
    "register_image",
    "run_incremental_sfm",
]
