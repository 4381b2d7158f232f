import dataclasses

import numpy as np
import pytest

from marker_sfm.sfm_inc.data_structures import (
    AnnotatedImage,
    CorrespondencePoint,
    Reconstruction,
    TrackTable,
)

from synthetic import K


def _images():
    return [
        AnnotatedImage.from_points("a", 640, 480, [("p", 1, 2), ("q", 3, 4)]),
        AnnotatedImage.from_points("b", 640, 480, [("q", 5, 6), ("p", 7, 8), ("r", 9, 10)]),
    ]


def _two_camera_reconstruction():
    recon = Reconstruction(K)
    recon.add_camera("a", np.eye(3), np.zeros(3))
    recon.add_camera("b", np.eye(3), np.array([-1.0, 0.0, 0.0]))
    return recon


def test_duplicate_point_name_in_image_raises():
    with pytest.raises(ValueError):
        AnnotatedImage.from_points("a", 640, 480, [("p", 1, 2), ("p", 3, 4)])


def test_track_table_queries():
    tracks = TrackTable(_images())

    assert tracks.image_ids == ["a", "b"]
    assert tracks.names == ["p", "q", "r"]
    assert list(tracks.views("q")) == ["a", "b"]
    assert tracks.observation("r", "a") is None
    assert tracks.observation("p", "b") == CorrespondencePoint("p", "b", 7.0, 8.0)
    assert tracks.common_names("b", "a") == ["q", "p"]


def test_track_table_rejects_duplicate_image_ids():
    images = _images()
    with pytest.raises(ValueError):
        TrackTable(images + [images[0]])


def test_point_requires_two_registered_observations():
    recon = _two_camera_reconstruction()
    tracks = TrackTable(_images())

    with pytest.raises(ValueError):
        recon.add_point("p", [0, 0, 5], {"a": tracks.observation("p", "a")})

    recon.add_point("p", [0, 0, 5], {"a": tracks.observation("p", "a"), "b": tracks.observation("p", "b")})
    assert recon.has_point("p")
    assert recon.num_observations == 2

    with pytest.raises(ValueError):
        recon.add_point("p", [0, 0, 5], {"a": tracks.observation("p", "a"), "b": tracks.observation("p", "b")})


def test_observation_must_reference_camera_and_point():
    recon = Reconstruction(K)
    recon.add_camera("a", np.eye(3), np.zeros(3))
    corr_a = CorrespondencePoint("p", "a", 1.0, 2.0)
    corr_c = CorrespondencePoint("p", "c", 1.0, 2.0)

    with pytest.raises(KeyError):
        recon.add_point("p", [0, 0, 5], {"a": corr_a, "c": corr_c})
    assert not recon.has_point("p")

    with pytest.raises(KeyError):
        recon.add_observation("p", "a", corr_a)


def test_observation_must_match_its_key():
    recon = _two_camera_reconstruction()
    corr = CorrespondencePoint("other", "a", 1.0, 2.0)
    with pytest.raises(ValueError):
        recon.add_point("p", [0, 0, 5], {"a": corr, "b": CorrespondencePoint("p", "b", 1.0, 2.0)})


def test_points_must_be_finite():
    recon = _two_camera_reconstruction()
    obs = {"a": CorrespondencePoint("p", "a", 0, 0), "b": CorrespondencePoint("p", "b", 0, 0)}
    with pytest.raises(ValueError):
        recon.add_point("p", [np.inf, 0, 1], obs)


def test_intrinsics_are_read_only():
    recon = Reconstruction(K)
    with pytest.raises(ValueError):
        recon.K[0, 0] = 1.0
    with pytest.raises(AttributeError):
        recon.K = np.eye(3)


def test_cameras_and_points_change_only_through_updates():
    recon = _two_camera_reconstruction()
    obs = {"a": CorrespondencePoint("p", "a", 0, 0), "b": CorrespondencePoint("p", "b", 0, 0)}
    recon.add_point("p", [0.0, 0.0, 4.0], obs)

    with pytest.raises(dataclasses.FrozenInstanceError):
        recon.camera("a").R = np.zeros((3, 3))
    with pytest.raises(dataclasses.FrozenInstanceError):
        recon.point("p").xyz = np.zeros(3)
    with pytest.raises(ValueError):
        recon.camera("b").t[0, 0] = 5.0
    with pytest.raises(ValueError):
        recon.point("p").xyz[0] = 1.0

    before = recon.point("p")
    recon.update_point("p", [1.0, 2.0, 3.0])
    recon.update_camera("b", np.eye(3), [0.0, 0.0, 1.0])

    assert recon.point("p").xyz.tolist() == [1.0, 2.0, 3.0]
    assert before.xyz.tolist() == [0.0, 0.0, 4.0]
    assert recon.camera("b").t.ravel().tolist() == [0.0, 0.0, 1.0]
    assert recon.camera_ids == ["a", "b"]


def test_update_of_unknown_entry_raises():
    recon = _two_camera_reconstruction()
    with pytest.raises(KeyError):
        recon.update_camera("missing", np.eye(3), np.zeros(3))
    with pytest.raises(KeyError):
        recon.update_point("missing", np.zeros(3))


def test_duplicate_camera_raises():
    recon = _two_camera_reconstruction()
    with pytest.raises(ValueError):
        recon.add_camera("a", np.eye(3), np.zeros(3))
    assert recon.camera_ids == ["a", "b"]


def test_reprojection_error_of_exact_observation():
    recon = _two_camera_reconstruction()
    xyz = np.array([0.5, -0.25, 4.0])
    u, v = 320 + 768 * 0.5 / 4.0, 240 + 768 * -0.25 / 4.0
    obs = {
        "a": CorrespondencePoint("p", "a", u, v),
        "b": CorrespondencePoint("p", "b", 320 + 768 * -0.5 / 4.0, v),
    }
    recon.add_point("p", xyz, obs)

    assert recon.reprojection_error("p", "a") == pytest.approx(0.0, abs=1e-9)
    assert recon.reprojection_error("p", "b") == pytest.approx(0.0, abs=1e-9)
    assert recon.camera("b").center == pytest.approx([1.0, 0.0, 0.0])
