import numpy as np
import pytest

from marker_sfm.sfm_inc import incremental_sfm
from marker_sfm.sfm_inc.config import SfMConfig
from marker_sfm.sfm_inc.errors import InsufficientCorrespondencesError, PoseRecoveryError
from marker_sfm.sfm_inc.incremental_sfm import run_incremental_sfm
from marker_sfm.sfm_inc.transform import GlobalTransform

from synthetic import LATE_13, LATE_23, cube_corner_scene, make_image, orbit_pose, rotation_angle_deg


def _all_reprojection_errors(recon):
    return np.array([recon.reprojection_error(name, image_id) for name, image_id, _ in recon.observations()])


def test_cube_corner_reconstruction(config):
    scene = cube_corner_scene()

    result = run_incremental_sfm(scene.images, config)

    recon = result.reconstruction
    assert (result.initial_pair.image1, result.initial_pair.image2) == ("img0", "img1")
    assert result.registered_images == ["img0", "img1", "img2", "img3"]
    assert result.skipped_images == []
    assert set(recon.point_names) == set(scene.points)
    assert np.all(_all_reprojection_errors(recon) < 0.5)


def test_late_points_are_observed_in_their_views(config):
    result = run_incremental_sfm(cube_corner_scene().images, config)

    recon = result.reconstruction
    for name in LATE_23:
        assert set(recon.observations_of(name)) == {"img2", "img3"}
    for name in LATE_13:
        assert set(recon.observations_of(name)) == {"img1", "img3"}


def test_relative_rotations_match_ground_truth(config):
    scene = cube_corner_scene()
    result = run_incremental_sfm(scene.images, config)

    recon = result.reconstruction
    R0_true = scene.poses["img0"][0]
    for image_id in ("img1", "img2", "img3"):
        R_true = scene.poses[image_id][0] @ R0_true.T
        assert rotation_angle_deg(recon.camera(image_id).R, R_true) < 0.5


def test_first_camera_stays_at_identity(config):
    result = run_incremental_sfm(cube_corner_scene().images, config)

    first = result.reconstruction.camera("img0")
    np.testing.assert_allclose(first.R, np.eye(3), atol=1e-9)
    np.testing.assert_allclose(first.t, np.zeros((3, 1)), atol=1e-9)


def test_sparse_image_is_skipped_without_aborting(config):
    scene = cube_corner_scene()
    sparse = make_image("sparse", orbit_pose(12.0), scene.points, ["corner", "front_00", "left_11", "top_22"])
    images = scene.images[:2] + [sparse] + scene.images[2:]

    result = run_incremental_sfm(images, config)

    assert result.skipped_images == ["sparse"]
    assert result.registered_images == ["img0", "img1", "img2", "img3"]
    assert not result.reconstruction.has_camera("sparse")
    for name, image_id, _ in result.reconstruction.observations():
        assert image_id != "sparse"


def test_failed_image_is_retried_after_cloud_grows(config, monkeypatch):
    calls = []
    real_register = incremental_sfm.register_image

    def fail_img2_once(reconstruction, image, cfg):
        calls.append(image.image_id)
        if image.image_id == "img2" and calls.count("img2") == 1:
            raise PoseRecoveryError("forced failure")
        return real_register(reconstruction, image, cfg)

    monkeypatch.setattr(incremental_sfm, "register_image", fail_img2_once)

    result = run_incremental_sfm(cube_corner_scene().images, config)

    # img3 adds the LATE_13 points, which makes img2 eligible again.
    assert calls == ["img2", "img3", "img2"]
    assert result.registered_images == ["img0", "img1", "img3", "img2"]
    assert result.skipped_images == []


def test_retries_are_capped(config, monkeypatch):
    calls = []
    real_register = incremental_sfm.register_image

    def always_fail_img2(reconstruction, image, cfg):
        calls.append(image.image_id)
        if image.image_id == "img2":
            raise PoseRecoveryError("forced failure")
        return real_register(reconstruction, image, cfg)

    monkeypatch.setattr(incremental_sfm, "register_image", always_fail_img2)

    result = run_incremental_sfm(cube_corner_scene().images, config)

    assert calls.count("img2") == 1 + config.max_resection_retries
    assert result.skipped_images == ["img2"]
    # LATE_23 is only seen by img2 and img3.
    assert not any(result.reconstruction.has_point(name) for name in LATE_23)


def test_global_transform_applies_to_output_only(config):
    scene = cube_corner_scene()
    plain = run_incremental_sfm(scene.images, config)
    transform = GlobalTransform(translation=[1.0, 2.0, 3.0])

    moved = run_incremental_sfm(scene.images, config, global_transform=transform)

    np.testing.assert_allclose(moved.point_array(), plain.point_array() + [1.0, 2.0, 3.0], atol=1e-6)
    np.testing.assert_allclose(
        np.stack([p.xyz for p in moved.reconstruction.points]), plain.point_array(), atol=1e-6
    )
    name, x, y, z = moved.points()[0]
    assert name == moved.reconstruction.point_names[0]
    np.testing.assert_allclose([x, y, z], moved.point_array()[0])


def test_seeded_runs_are_reproducible():
    images = cube_corner_scene().images
    first = run_incremental_sfm(images, SfMConfig(random_seed=7))
    second = run_incremental_sfm(images, SfMConfig(random_seed=7))
    np.testing.assert_allclose(first.point_array(), second.point_array())


def test_without_incremental_ba_only_final_ba_runs(config):
    config = SfMConfig(random_seed=0, enable_incremental_ba=False)
    result = run_incremental_sfm(cube_corner_scene().images, config)

    assert len(result.ba_results) == 1
    assert result.ba_results[0].final_cost <= result.ba_results[0].initial_cost
    assert np.all(_all_reprojection_errors(result.reconstruction) < 0.5)


def test_no_usable_pair_raises(config):
    scene = cube_corner_scene()
    images = [
        make_image("a", scene.poses["img0"], scene.points, ["corner", "front_00", "front_01", "top_00"]),
        make_image("b", scene.poses["img1"], scene.points, ["corner", "front_00", "front_01", "top_00"]),
    ]
    with pytest.raises(InsufficientCorrespondencesError):
        run_incremental_sfm(images, config)
