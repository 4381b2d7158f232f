"""
Shared core data structures for the SfM pipeline.

Input side:
- CorrespondencePoint / AnnotatedImage: named 2D points per image, read-only.
- TrackTable: the name-keyed track index built once from all images.

Output side:
- Camera / TrackPoint: registered poses and reconstructed points.
- Reconstruction: the aggregate owning cameras, points and observations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from marker_sfm.geometry.triangulation import camera_center, reprojection_errors


@dataclass(frozen=True)
class CorrespondencePoint:
    """A named 2D point in one image, in pixel coordinates."""

    name: str
    image_id: str
    x: float
    y: float

    @property
    def uv(self) -> np.ndarray:
        return np.array([self.x, self.y], dtype=np.float64)


@dataclass
class AnnotatedImage:
    """An image's size and its named points (names unique per image)."""

    image_id: str
    width: int
    height: int
    points: Dict[str, CorrespondencePoint] = field(default_factory=dict)

    @classmethod
    def from_points(
        cls,
        image_id: str,
        width: int,
        height: int,
        points: Iterable[Tuple[str, float, float]],
    ) -> "AnnotatedImage":
        """Build an image from (name, x, y) tuples; a repeated name is an error."""
        named: Dict[str, CorrespondencePoint] = {}
        for name, x, y in points:
            if name in named:
                raise ValueError(f"Duplicate point name {name!r} in image {image_id!r}")
            named[name] = CorrespondencePoint(name, image_id, float(x), float(y))
        return cls(image_id=image_id, width=int(width), height=int(height), points=named)

    def __len__(self) -> int:
        return len(self.points)


class TrackTable:
    """
    Track index: point name -> {image id -> CorrespondencePoint}.

    Built once so that pair scoring and triangulation never re-derive tracks
    by intersecting per-image name sets. Image order is preserved and defines
    the stable enumeration order used for tie-breaking.
    """

    def __init__(self, images: Sequence[AnnotatedImage]):
        self._images: Dict[str, AnnotatedImage] = {}
        self._tracks: Dict[str, Dict[str, CorrespondencePoint]] = {}

        for image in images:
            if image.image_id in self._images:
                raise ValueError(f"Duplicate image id {image.image_id!r}")
            self._images[image.image_id] = image
            for name, point in image.points.items():
                self._tracks.setdefault(name, {})[image.image_id] = point

    @property
    def image_ids(self) -> List[str]:
        return list(self._images)

    @property
    def names(self) -> List[str]:
        return list(self._tracks)

    def image(self, image_id: str) -> AnnotatedImage:
        return self._images[image_id]

    def views(self, name: str) -> Dict[str, CorrespondencePoint]:
        """All images observing `name`, in input image order."""
        track = self._tracks.get(name, {})
        return {image_id: track[image_id] for image_id in self._images if image_id in track}

    def observation(self, name: str, image_id: str) -> Optional[CorrespondencePoint]:
        return self._tracks.get(name, {}).get(image_id)

    def common_names(self, image_a: str, image_b: str) -> List[str]:
        """Names visible in both images, in image_a's annotation order."""
        points_b = self._images[image_b].points
        return [name for name in self._images[image_a].points if name in points_b]

    def __len__(self) -> int:
        return len(self._tracks)


@dataclass(frozen=True)
class Camera:
    """A registered camera: world-to-camera rotation (3x3) and translation (3x1), read-only."""

    image_id: str
    R: np.ndarray
    t: np.ndarray

    @property
    def center(self) -> np.ndarray:
        return camera_center(self.R, self.t)


@dataclass(frozen=True)
class TrackPoint:
    """A reconstructed 3D point, named after its track. Read-only; see Reconstruction.update_point."""

    name: str
    xyz: np.ndarray

    @property
    def x(self) -> float:
        return float(self.xyz[0])

    @property
    def y(self) -> float:
        return float(self.xyz[1])

    @property
    def z(self) -> float:
        return float(self.xyz[2])


class Reconstruction:
    """
    Cameras, 3D points and the observations linking them.

    This is the only mutable state of the engine. Every change goes through
    the methods below, which keep these invariants:
    - an observation references an existing camera and an existing point;
    - a point is created with at least two observations;
    - K never changes after construction.
    Points are expressed in the frame of the first registered camera.
    """

    def __init__(self, K: np.ndarray):
        K = np.array(K, dtype=np.float64)
        if K.shape != (3, 3):
            raise ValueError(f"K must be 3x3, got shape {K.shape}")
        K.setflags(write=False)
        self._K = K
        self._cameras: Dict[str, Camera] = {}
        self._points: Dict[str, TrackPoint] = {}
        self._observations: Dict[str, Dict[str, CorrespondencePoint]] = {}

    @property
    def K(self) -> np.ndarray:
        return self._K

    # -- cameras ---------------------------------------------------------

    def add_camera(self, image_id: str, R: np.ndarray, t: np.ndarray) -> Camera:
        if image_id in self._cameras:
            raise ValueError(f"Camera {image_id!r} is already registered")
        camera = Camera(image_id, *_checked_pose(R, t))
        self._cameras[image_id] = camera
        return camera

    def update_camera(self, image_id: str, R: np.ndarray, t: np.ndarray) -> None:
        if image_id not in self._cameras:
            raise KeyError(f"Camera {image_id!r} is not registered")
        self._cameras[image_id] = Camera(image_id, *_checked_pose(R, t))

    def has_camera(self, image_id: str) -> bool:
        return image_id in self._cameras

    def camera(self, image_id: str) -> Camera:
        return self._cameras[image_id]

    @property
    def camera_ids(self) -> List[str]:
        """Registered image ids, in registration order."""
        return list(self._cameras)

    @property
    def cameras(self) -> Tuple[Camera, ...]:
        return tuple(self._cameras.values())

    # -- points ----------------------------------------------------------

    def add_point(
        self,
        name: str,
        xyz: np.ndarray,
        observations: Mapping[str, CorrespondencePoint],
    ) -> TrackPoint:
        """Create a point together with the (>= 2) views it was triangulated from."""
        if name in self._points:
            raise ValueError(f"Point {name!r} already exists")
        if len(observations) < 2:
            raise ValueError(f"Point {name!r} needs at least 2 observations, got {len(observations)}")
        for image_id, corr in observations.items():
            self._check_observation(name, image_id, corr)

        point = TrackPoint(name, _checked_xyz(xyz))
        self._points[name] = point
        self._observations[name] = dict(observations)
        return point

    def update_point(self, name: str, xyz: np.ndarray) -> None:
        if name not in self._points:
            raise KeyError(f"Point {name!r} does not exist")
        self._points[name] = TrackPoint(name, _checked_xyz(xyz))

    def has_point(self, name: str) -> bool:
        return name in self._points

    def point(self, name: str) -> TrackPoint:
        return self._points[name]

    @property
    def point_names(self) -> List[str]:
        """Point names, in creation order."""
        return list(self._points)

    @property
    def points(self) -> Tuple[TrackPoint, ...]:
        return tuple(self._points.values())

    # -- observations ----------------------------------------------------

    def add_observation(self, name: str, image_id: str, corr: CorrespondencePoint) -> None:
        if name not in self._points:
            raise KeyError(f"Cannot observe unknown point {name!r}")
        self._check_observation(name, image_id, corr)
        self._observations[name][image_id] = corr

    def has_observation(self, name: str, image_id: str) -> bool:
        return image_id in self._observations.get(name, {})

    def observation(self, name: str, image_id: str) -> CorrespondencePoint:
        return self._observations[name][image_id]

    def observations_of(self, name: str) -> Dict[str, CorrespondencePoint]:
        return dict(self._observations.get(name, {}))

    def observations(self) -> Iterator[Tuple[str, str, CorrespondencePoint]]:
        """Yield (point name, image id, observation) for every observation."""
        for name, views in self._observations.items():
            for image_id, corr in views.items():
                yield name, image_id, corr

    @property
    def num_observations(self) -> int:
        return sum(len(views) for views in self._observations.values())

    def reprojection_error(self, name: str, image_id: str) -> float:
        """Pixel error of a recorded observation against the current point and pose."""
        camera = self._cameras[image_id]
        corr = self._observations[name][image_id]
        return float(
            reprojection_errors(self._K, camera.R, camera.t, self._points[name].xyz, corr.uv)[0]
        )

    def _check_observation(self, name: str, image_id: str, corr: CorrespondencePoint) -> None:
        if image_id not in self._cameras:
            raise KeyError(f"Cannot observe point {name!r} from unregistered camera {image_id!r}")
        if corr.name != name or corr.image_id != image_id:
            raise ValueError(
                f"Observation ({corr.image_id!r}, {corr.name!r}) does not match ({image_id!r}, {name!r})"
            )

    def __repr__(self) -> str:
        return (
            f"Reconstruction(cameras={len(self._cameras)}, points={len(self._points)}, "
            f"observations={self.num_observations})"
        )


def _checked_pose(R: np.ndarray, t: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    R = np.array(R, dtype=np.float64)
    t = np.array(t, dtype=np.float64).reshape(3, 1)
    if R.shape != (3, 3):
        raise ValueError(f"Rotation must be 3x3, got shape {R.shape}")
    R.setflags(write=False)
    t.setflags(write=False)
    return R, t


def _checked_xyz(xyz: np.ndarray) -> np.ndarray:
    xyz = np.array(xyz, dtype=np.float64).reshape(3)
    if not np.all(np.isfinite(xyz)):
        raise ValueError(f"Point coordinates must be finite, got {xyz}")
    xyz.setflags(write=False)
    return xyz


__all__ = [
    "CorrespondencePoint",
    "AnnotatedImage",
    "TrackTable",
    "Camera",
    "TrackPoint",
    "Reconstruction",
]
