"""
Multi-view triangulation of new 3D points once cameras are registered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import combinations
from typing import List, Optional, Sequence, Tuple

import numpy as np

from marker_sfm.geometry.triangulation import (
    point_depths,
    reprojection_errors,
    triangulate_matched_key_pts_to_3D_pts,
    triangulation_angle_deg,
)
from marker_sfm.sfm_inc.config import SfMConfig
from marker_sfm.sfm_inc.data_structures import (
    Camera,
    CorrespondencePoint,
    Reconstruction,
    TrackTable,
)

logger = logging.getLogger(__name__)

View = Tuple[str, CorrespondencePoint]


@dataclass(frozen=True)
class TriangulationCandidate:
    """A two-view triangulation that passed the angle, depth and error gates."""

    xyz: np.ndarray
    error_a: float
    error_b: float
    angle_deg: float

    @property
    def mean_error(self) -> float:
        return (self.error_a + self.error_b) / 2.0


def triangulate_candidate(
    K: np.ndarray,
    camera_a: Camera,
    obs_a: CorrespondencePoint,
    camera_b: Camera,
    obs_b: CorrespondencePoint,
    config: SfMConfig,
) -> Optional[TriangulationCandidate]:
    """
    Triangulate one named point from two registered views.

    Returns None (the candidate is discarded) when the point is not finite,
    lies behind either camera, the ray angle is below
    `min_triangulation_angle_deg`, or the mean reprojection error exceeds
    `max_reprojection_error`.
    """
    points_3d, errors_a, errors_b = triangulate_matched_key_pts_to_3D_pts(
        K,
        camera_a.R,
        camera_a.t,
        camera_b.R,
        camera_b.t,
        obs_a.uv.reshape(1, 2),
        obs_b.uv.reshape(1, 2),
    )
    xyz = points_3d[0]
    if not np.all(np.isfinite(xyz)):
        logger.debug("Rejecting %s: triangulated point at infinity", obs_a.name)
        return None

    if point_depths(camera_a.R, camera_a.t, xyz)[0] <= 0 or point_depths(camera_b.R, camera_b.t, xyz)[0] <= 0:
        logger.debug("Rejecting %s: behind camera %s or %s", obs_a.name, obs_a.image_id, obs_b.image_id)
        return None

    angle = triangulation_angle_deg(camera_a.center, camera_b.center, xyz)
    if angle < config.min_triangulation_angle_deg:
        logger.debug(
            "Rejecting %s from %s/%s: ray angle %.2f deg < %.2f",
            obs_a.name,
            obs_a.image_id,
            obs_b.image_id,
            angle,
            config.min_triangulation_angle_deg,
        )
        return None

    candidate = TriangulationCandidate(xyz, float(errors_a[0]), float(errors_b[0]), angle)
    if not candidate.mean_error <= config.max_reprojection_error:
        logger.debug(
            "Rejecting %s from %s/%s: mean reprojection error %.2f px",
            obs_a.name,
            obs_a.image_id,
            obs_b.image_id,
            candidate.mean_error,
        )
        return None

    return candidate


def _attach_extra_views(
    reconstruction: Reconstruction,
    name: str,
    views: Sequence[View],
    max_error: float,
) -> int:
    """Record observations in further views whose reprojection error is acceptable."""
    point = reconstruction.point(name)
    attached = 0
    for image_id, corr in views:
        if reconstruction.has_observation(name, image_id):
            continue
        camera = reconstruction.camera(image_id)
        error = reprojection_errors(reconstruction.K, camera.R, camera.t, point.xyz, corr.uv)[0]
        if point_depths(camera.R, camera.t, point.xyz)[0] > 0 and error < max_error:
            reconstruction.add_observation(name, image_id, corr)
            attached += 1
    return attached


def _registered_views(
    reconstruction: Reconstruction,
    tracks: TrackTable,
    name: str,
    exclude: Optional[str] = None,
) -> List[View]:
    """Registered cameras observing `name`, in registration order."""
    views = []
    for image_id in reconstruction.camera_ids:
        if image_id == exclude:
            continue
        corr = tracks.observation(name, image_id)
        if corr is not None:
            views.append((image_id, corr))
    return views


def triangulate_new_points(
    reconstruction: Reconstruction,
    tracks: TrackTable,
    image_id: str,
    config: SfMConfig,
) -> List[str]:
    """
    Triangulate names seen by a newly registered camera but absent from the cloud.

    Each such name is triangulated against every other registered view that
    sees it; the candidate with the lowest mean reprojection error is kept,
    recorded with its two defining observations, and then attached to the
    remaining views whose reprojection error is below the threshold.

    Returns:
        Names of the points added.
    """
    new_camera = reconstruction.camera(image_id)
    added = []

    for name, new_obs in tracks.image(image_id).points.items():
        if reconstruction.has_point(name):
            continue

        other_views = _registered_views(reconstruction, tracks, name, exclude=image_id)
        if not other_views:
            continue

        best: Optional[TriangulationCandidate] = None
        best_view: Optional[View] = None
        for other_id, other_obs in other_views:
            candidate = triangulate_candidate(
                reconstruction.K,
                reconstruction.camera(other_id),
                other_obs,
                new_camera,
                new_obs,
                config,
            )
            if candidate is not None and (best is None or candidate.mean_error < best.mean_error):
                best = candidate
                best_view = (other_id, other_obs)

        if best is None:
            continue

        reconstruction.add_point(name, best.xyz, {best_view[0]: best_view[1], image_id: new_obs})
        _attach_extra_views(
            reconstruction,
            name,
            [view for view in other_views if view[0] != best_view[0]],
            config.max_reprojection_error,
        )
        added.append(name)

    logger.info("Triangulated %d new points from %s", len(added), image_id)
    return added


def triangulate_remaining_tracks(
    reconstruction: Reconstruction,
    tracks: TrackTable,
    config: SfMConfig,
) -> List[str]:
    """
    Global sweep over names still missing from the cloud.

    Every name seen by at least two registered cameras is triangulated from
    every camera pair; the best candidate under the same angle/error gates is
    kept, and all views with acceptable reprojection error are attached.

    Returns:
        Names of the points added.
    """
    added = []

    for name in tracks.names:
        if reconstruction.has_point(name):
            continue

        views = _registered_views(reconstruction, tracks, name)
        if len(views) < 2:
            continue

        best: Optional[TriangulationCandidate] = None
        best_pair: Optional[Tuple[View, View]] = None
        for view_a, view_b in combinations(views, 2):
            candidate = triangulate_candidate(
                reconstruction.K,
                reconstruction.camera(view_a[0]),
                view_a[1],
                reconstruction.camera(view_b[0]),
                view_b[1],
                config,
            )
            if candidate is not None and (best is None or candidate.mean_error < best.mean_error):
                best = candidate
                best_pair = (view_a, view_b)

        if best is None:
            continue

        view_a, view_b = best_pair
        reconstruction.add_point(name, best.xyz, {view_a[0]: view_a[1], view_b[0]: view_b[1]})
        _attach_extra_views(
            reconstruction,
            name,
            [view for view in views if view[0] not in (view_a[0], view_b[0])],
            config.max_reprojection_error,
        )
        added.append(name)

    logger.info("Global sweep triangulated %d remaining points", len(added))
    return added


__all__ = [
    "TriangulationCandidate",
    "triangulate_candidate",
    "triangulate_new_points",
    "triangulate_remaining_tracks",
]
