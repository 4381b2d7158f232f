import numpy as np
import pytest

from marker_sfm.sfm_inc.config import SfMConfig
from marker_sfm.sfm_inc.data_structures import TrackTable
from marker_sfm.sfm_inc.incremental_sfm import initialize_from_pair
from marker_sfm.sfm_inc.pair_selection import select_initial_pair

from synthetic import K, cube_corner_scene


@pytest.fixture
def config():
    return SfMConfig(random_seed=0)


@pytest.fixture
def cube_scene():
    return cube_corner_scene()


@pytest.fixture
def cube_tracks(cube_scene):
    return TrackTable(cube_scene.images)


@pytest.fixture
def seed_reconstruction(cube_tracks, config):
    """Two-view reconstruction of the cube corner from img0/img1."""
    pair = select_initial_pair(cube_tracks, config.min_common_points)
    return initialize_from_pair(cube_tracks, pair, K, config)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
