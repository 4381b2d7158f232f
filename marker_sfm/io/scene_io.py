"""
Exporting reconstructed scenes: named point lists (.txt) and full scenes (.npz).
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np

from marker_sfm.sfm_inc.incremental_sfm import ReconstructionResult

NamedPoint = Tuple[str, float, float, float]

POINTS_HEADER = "# NAME X Y Z"


def _is_comment(line: str) -> bool:
    return line == "#" or line.startswith("# ")


def save_points_txt(output_path: str, points: Sequence[NamedPoint]) -> None:
    """
    Write one "NAME X Y Z" line per point.

    Args:
        output_path: Destination text file.
        points: (name, x, y, z) tuples, e.g. ReconstructionResult.points().

    Raises:
        ValueError: If a name is empty, has surrounding whitespace, contains a
            line break, or would be read back as a comment line.
    """
    for name, *_ in points:
        if not name or name != name.strip() or "\n" in name or "\r" in name or _is_comment(name):
            raise ValueError(f"Point name {name!r} cannot be written to a points file")
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(POINTS_HEADER + "\n")
        for name, x, y, z in points:
            f.write(f"{name} {x:.9g} {y:.9g} {z:.9g}\n")


def load_points_txt(input_path: str) -> List[NamedPoint]:
    """
    Read a file written by save_points_txt.

    Blank lines and comment lines ("#" alone or "# " followed by text) are
    skipped, so names such as "#1" survive. The last three fields are the
    coordinates, so names may contain spaces.
    """
    points = []
    with open(input_path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line or _is_comment(line):
                continue
            fields = line.rsplit(maxsplit=3)
            if len(fields) != 4:
                raise ValueError(f"{input_path}:{line_no}: expected 'NAME X Y Z', got {line!r}")
            name, *coords = fields
            try:
                x, y, z = (float(c) for c in coords)
            except ValueError as exc:
                raise ValueError(f"{input_path}:{line_no}: invalid coordinates in {line!r}") from exc
            points.append((name, x, y, z))
    return points


def save_scene_npz(output_path: str, result: ReconstructionResult) -> None:
    """
    Serialize a reconstruction result to a .npz file.

    Points and camera poses are stored in the output frame, i.e. with the
    global transform applied (a pose R, t becomes R Rg^T, t - R Rg^T Tg).

    Args:
        output_path: Path where the scene data will be saved (.npz file).
        result: Output of run_incremental_sfm.
    """
    recon = result.reconstruction
    Rg = result.global_transform.rotation
    Tg = result.global_transform.translation.reshape(3, 1)

    # Extract camera poses
    camera_ids = recon.camera_ids
    n_cameras = len(camera_ids)
    camera_Rs = np.zeros((n_cameras, 3, 3))
    camera_ts = np.zeros((n_cameras, 3))
    for i, cam in enumerate(recon.cameras):
        R_out = cam.R @ Rg.T
        camera_Rs[i] = R_out
        camera_ts[i] = (cam.t - R_out @ Tg).flatten()

    # Extract 3D points
    point_names = recon.point_names
    points_xyz = result.point_array()

    # Extract observations
    camera_index = {image_id: i for i, image_id in enumerate(camera_ids)}
    point_index = {name: i for i, name in enumerate(point_names)}
    observations = list(recon.observations())
    obs_camera_ids = np.zeros(len(observations), dtype=int)
    obs_point_ids = np.zeros(len(observations), dtype=int)
    obs_uvs = np.zeros((len(observations), 2))
    for i, (name, image_id, corr) in enumerate(observations):
        obs_camera_ids[i] = camera_index[image_id]
        obs_point_ids[i] = point_index[name]
        obs_uvs[i] = corr.uv

    np.savez(
        output_path,
        K=recon.K,
        camera_Rs=camera_Rs,
        camera_ts=camera_ts,
        camera_image_ids=np.array(camera_ids, dtype=str),
        points_xyz=points_xyz,
        point_names=np.array(point_names, dtype=str),
        obs_camera_ids=obs_camera_ids,
        obs_point_ids=obs_point_ids,
        obs_uvs=obs_uvs,
        skipped_images=np.array(result.skipped_images, dtype=str),
    )


__all__ = ["save_points_txt", "load_points_txt", "save_scene_npz"]
