import pytest

from marker_sfm.sfm_inc.data_structures import AnnotatedImage, TrackTable
from marker_sfm.sfm_inc.errors import InsufficientCorrespondencesError
from marker_sfm.sfm_inc.pair_selection import (
    ImageScore,
    best_candidate,
    count_common_points,
    score_candidate_images,
    select_initial_pair,
)


def _image(image_id, names):
    return AnnotatedImage.from_points(image_id, 640, 480, [(n, 10.0 * i, 5.0 * i) for i, n in enumerate(names)])


def test_select_initial_pair_is_deterministic(cube_tracks):
    first = select_initial_pair(cube_tracks, 5)
    for _ in range(5):
        again = select_initial_pair(cube_tracks, 5)
        assert again == first
    assert (first.image1, first.image2, first.common_count) == ("img0", "img1", 28)


def test_ties_go_to_first_pair_in_input_order():
    names = [f"p{i}" for i in range(6)]
    tracks = TrackTable([_image("a", names), _image("b", names), _image("c", names)])

    pair = select_initial_pair(tracks, 5)

    assert (pair.image1, pair.image2) == ("a", "b")
    assert pair.common_count == 6


def test_count_common_points_uses_input_order():
    tracks = TrackTable([_image("b", ["x", "y"]), _image("a", ["y", "x", "z"])])
    counts = count_common_points(tracks)
    assert counts == {("b", "a"): 2}


def test_too_few_shared_points_raises():
    tracks = TrackTable([_image("a", ["p1", "p2", "p3", "p4", "q"]), _image("b", ["p1", "p2", "p3", "p4", "r"])])
    with pytest.raises(InsufficientCorrespondencesError):
        select_initial_pair(tracks, 5)


def test_single_image_raises():
    tracks = TrackTable([_image("a", ["p1", "p2", "p3", "p4", "p5"])])
    with pytest.raises(InsufficientCorrespondencesError):
        select_initial_pair(tracks, 5)


def test_score_candidate_images_orders_by_matches(cube_tracks, seed_reconstruction):
    scores = score_candidate_images(cube_tracks, seed_reconstruction, ["img3", "img2"])
    assert [s.image_id for s in scores] == ["img3", "img2"]
    assert [s.num_matches for s in scores] == [23, 23]


def test_best_candidate_respects_minimum():
    scores = [ImageScore("a", 3), ImageScore("b", 2)]
    assert best_candidate(scores, 4) is None
    assert best_candidate(scores, 3) == ImageScore("a", 3)
