import json

import cv2
import numpy as np
import pytest

from marker_sfm.io.annotations_io import load_annotations, parse_annotated_image
from marker_sfm.io.scene_io import load_points_txt, save_points_txt, save_scene_npz
from marker_sfm.sfm_inc.incremental_sfm import run_incremental_sfm
from marker_sfm.sfm_inc.transform import GlobalTransform

from synthetic import cube_corner_scene


def _write_json(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def test_load_annotations_keeps_order(tmp_path):
    path = _write_json(
        tmp_path / "points.json",
        {
            "images": [
                {"id": "b.jpg", "width": 640, "height": 480, "points": [{"name": "p", "x": 1, "y": 2}]},
                {"id": "a.jpg", "width": 800, "height": 600, "points": [{"name": "p", "x": 3.5, "y": 4}]},
            ]
        },
    )

    images = load_annotations(path)

    assert [image.image_id for image in images] == ["b.jpg", "a.jpg"]
    assert (images[1].width, images[1].height) == (800, 600)
    assert images[1].points["p"].uv.tolist() == [3.5, 4.0]


def test_size_is_read_from_image_file(tmp_path):
    cv2.imwrite(str(tmp_path / "photo.png"), np.zeros((30, 40, 3), dtype=np.uint8))
    path = _write_json(
        tmp_path / "points.json",
        {"images": [{"path": "photo.png", "points": [{"name": "p", "x": 1, "y": 2}]}]},
    )

    (image,) = load_annotations(path)

    assert image.image_id == "photo.png"
    assert (image.width, image.height) == (40, 30)


@pytest.mark.parametrize(
    "entry",
    [
        {"id": "a", "points": []},
        {"id": "a", "width": 0, "height": 480, "points": []},
        {"id": "a", "width": 640, "height": 480, "points": [{"name": "p", "x": 1}]},
        {"id": "a", "width": 640, "height": 480, "points": [{"name": "p", "x": 1, "y": 2}, {"name": "p", "x": 3, "y": 4}]},
        {"width": 640, "height": 480, "points": []},
    ],
)
def test_malformed_entries_raise(entry):
    with pytest.raises(ValueError):
        parse_annotated_image(entry)


def test_missing_images_list_raises(tmp_path):
    path = _write_json(tmp_path / "points.json", {"frames": []})
    with pytest.raises(ValueError):
        load_annotations(path)


def test_points_txt_roundtrip(tmp_path):
    points = [("corner", 0.0, 1.5, -2.25), ("door knob", 1e-3, 2.0, 3.0)]
    path = str(tmp_path / "points.txt")

    save_points_txt(path, points)

    assert (tmp_path / "points.txt").read_text().splitlines()[0] == "# NAME X Y Z"
    assert load_points_txt(path) == points


def test_points_txt_keeps_hash_names(tmp_path):
    points = [("#1", 1.0, 2.0, 3.0), ("a", 4.0, 5.0, 6.0)]
    path = str(tmp_path / "points.txt")

    save_points_txt(path, points)

    assert load_points_txt(path) == points


@pytest.mark.parametrize("name", ["", "   ", " padded", "two\nlines", "# comment"])
def test_points_txt_rejects_unwritable_names(tmp_path, name):
    path = tmp_path / "points.txt"
    with pytest.raises(ValueError):
        save_points_txt(str(path), [(name, 0.0, 0.0, 0.0)])
    assert not path.exists()


def test_points_txt_malformed_line(tmp_path):
    path = tmp_path / "points.txt"
    path.write_text("# NAME X Y Z\ncorner 1.0 two 3.0\n")
    with pytest.raises(ValueError):
        load_points_txt(str(path))


def test_save_scene_npz(tmp_path):
    result = run_incremental_sfm(cube_corner_scene().images)
    result.global_transform = GlobalTransform(translation=[0.0, 0.0, 5.0])
    path = str(tmp_path / "scene.npz")

    save_scene_npz(path, result)

    data = np.load(path)
    recon = result.reconstruction
    assert data["camera_Rs"].shape == (4, 3, 3)
    assert list(data["camera_image_ids"]) == recon.camera_ids
    assert list(data["point_names"]) == recon.point_names
    np.testing.assert_allclose(data["points_xyz"], result.point_array())
    assert len(data["obs_uvs"]) == recon.num_observations
    # Stored poses live in the same (transformed) frame as the stored points.
    name, image_id, corr = next(recon.observations())
    X = data["points_xyz"][recon.point_names.index(name)]
    cam_index = recon.camera_ids.index(image_id)
    R, t = data["camera_Rs"][cam_index], data["camera_ts"][cam_index]
    uvw = recon.K @ (R @ X + t)
    np.testing.assert_allclose(uvw[:2] / uvw[2], corr.uv, atol=0.5)
