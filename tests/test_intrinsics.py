import numpy as np
import pytest

from marker_sfm.geometry.intrinsics import estimate_intrinsics


def test_focal_from_larger_side():
    K = estimate_intrinsics(640, 480)
    np.testing.assert_allclose(K, [[768.0, 0.0, 320.0], [0.0, 768.0, 240.0], [0.0, 0.0, 1.0]])


def test_portrait_image_uses_height():
    K = estimate_intrinsics(480, 640, scale=1.0)
    assert K[0, 0] == K[1, 1] == 640.0
    assert (K[0, 2], K[1, 2]) == (240.0, 320.0)


@pytest.mark.parametrize("width,height,scale", [(0, 480, 1.2), (640, -1, 1.2), (640, 480, 0.0)])
def test_invalid_input_raises(width, height, scale):
    with pytest.raises(ValueError):
        estimate_intrinsics(width, height, scale)
