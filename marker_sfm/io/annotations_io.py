"""
Loading named 2D point annotations from JSON.

Expected layout:

    {"images": [{"id": "a.jpg", "width": 640, "height": 480, "path": "a.jpg",
                 "points": [{"name": "corner", "x": 10.5, "y": 20.0}, ...]}, ...]}
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple

import cv2

from marker_sfm.sfm_inc.data_structures import AnnotatedImage


def _read_image_size(image_path: Path) -> Tuple[int, int]:
    image = cv2.imread(str(image_path))
    if image is None:
        raise ValueError(f"Could not read image file: {image_path}")
    h, w = image.shape[:2]
    return w, h


def parse_annotated_image(entry: Mapping[str, Any], base_dir: Optional[Path] = None) -> AnnotatedImage:
    """
    Build one AnnotatedImage from its JSON entry.

    Args:
        entry: Mapping with "points" and at least one of "id"/"path".
        base_dir: Directory that relative image paths are resolved against.

    Returns:
        AnnotatedImage; width/height are read from the image file when absent.
    """
    image_path = entry.get("path")
    image_id = entry.get("id", image_path)
    if not image_id:
        raise ValueError("Image entry needs an 'id' or a 'path'")
    image_id = str(image_id)

    width, height = entry.get("width"), entry.get("height")
    if width is None or height is None:
        if not image_path:
            raise ValueError(f"Image {image_id!r}: width/height missing and no 'path' to read them from")
        path = Path(image_path)
        if base_dir is not None and not path.is_absolute():
            path = base_dir / path
        width, height = _read_image_size(path)

    try:
        width, height = int(width), int(height)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Image {image_id!r}: invalid size {width!r}x{height!r}") from exc
    if width <= 0 or height <= 0:
        raise ValueError(f"Image {image_id!r}: size must be positive, got {width}x{height}")

    points = []
    for point in entry.get("points", []):
        try:
            points.append((str(point["name"]), float(point["x"]), float(point["y"])))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Image {image_id!r}: malformed point {point!r}") from exc

    return AnnotatedImage.from_points(image_id, width, height, points)


def load_annotations(json_path: str) -> List[AnnotatedImage]:
    """
    Load all annotated images from a JSON file, keeping file order.

    Relative image paths are resolved against the JSON file's directory.
    """
    json_path = Path(json_path)
    with open(json_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, dict) or not isinstance(data.get("images"), list):
        raise ValueError(f"{json_path}: expected an object with an 'images' list")

    return [parse_annotated_image(entry, base_dir=json_path.parent) for entry in data["images"]]


__all__ = ["load_annotations", "parse_annotated_image"]
