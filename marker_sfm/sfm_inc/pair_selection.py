"""
Seed-pair selection and next-image scoring.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from itertools import combinations
from typing import Iterable, List, Optional

from marker_sfm.sfm_inc.data_structures import Reconstruction, TrackTable
from marker_sfm.sfm_inc.errors import InsufficientCorrespondencesError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImagePair:
    image1: str
    image2: str
    common_count: int


@dataclass(frozen=True)
class ImageScore:
    image_id: str
    num_matches: int


def count_common_points(tracks: TrackTable) -> Counter:
    """
    Number of shared names for every image pair, keyed by (i, j) in input order.

    Walks each track once instead of intersecting name sets per pair.
    """
    order = {image_id: idx for idx, image_id in enumerate(tracks.image_ids)}
    counts: Counter = Counter()
    for name in tracks.names:
        views = sorted(tracks.views(name), key=order.__getitem__)
        for pair in combinations(views, 2):
            counts[pair] += 1
    return counts


def select_initial_pair(tracks: TrackTable, min_common_points: int) -> ImagePair:
    """
    Pick the image pair sharing the most point names.

    Pairs are enumerated as (i, j), i < j, in input order; the first pair
    reaching the maximum wins ties.

    Raises:
        InsufficientCorrespondencesError: fewer than two images, or no pair
            shares at least `min_common_points` names.
    """
    image_ids = tracks.image_ids
    if len(image_ids) < 2:
        raise InsufficientCorrespondencesError(
            f"At least 2 images are required for reconstruction, got {len(image_ids)}"
        )

    counts = count_common_points(tracks)
    best: Optional[ImagePair] = None
    for image1, image2 in combinations(image_ids, 2):
        count = counts.get((image1, image2), 0)
        if best is None or count > best.common_count:
            best = ImagePair(image1, image2, count)

    if best is None or best.common_count < min_common_points:
        found = 0 if best is None else best.common_count
        raise InsufficientCorrespondencesError(
            f"Not enough shared points between any two images: best pair has {found}, "
            f"need at least {min_common_points}"
        )

    logger.info(
        "Best pair: %s <-> %s with %d correspondences",
        best.image1,
        best.image2,
        best.common_count,
    )
    return best


def score_candidate_images(
    tracks: TrackTable,
    reconstruction: Reconstruction,
    candidates: Iterable[str],
) -> List[ImageScore]:
    """
    Rank unregistered images by how many of their names are already in the cloud.

    Sorted by descending match count; ties keep the candidates' order.
    """
    scores = []
    for image_id in candidates:
        names = tracks.image(image_id).points
        num_matches = sum(1 for name in names if reconstruction.has_point(name))
        scores.append(ImageScore(image_id, num_matches))
    # sorted() is stable, so equal counts stay in candidate order.
    return sorted(scores, key=lambda score: -score.num_matches)


def best_candidate(scores: List[ImageScore], min_matches: int) -> Optional[ImageScore]:
    """First score with at least `min_matches`, or None."""
    for score in scores:
        if score.num_matches >= min_matches:
            return score
    return None


__all__ = [
    "ImagePair",
    "ImageScore",
    "count_common_points",
    "select_initial_pair",
    "score_candidate_images",
    "best_candidate",
]
