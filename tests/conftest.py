import numpy as np
import pytest

from lustre_shop.core.model import FitContext

from synthetic import (
    co_located_view_set,
    plane_geometry,
    render_observations,
    small_settings,
    two_material_truth,
)


@pytest.fixture
def plane():
    return plane_geometry(4, 4)


@pytest.fixture
def view_set():
    return co_located_view_set()


@pytest.fixture
def truth(plane):
    return two_material_truth(plane)


@pytest.fixture
def observations(plane, view_set, truth):
    return render_observations(plane, view_set, truth)


@pytest.fixture
def context(plane, view_set, observations):
    return FitContext(plane, view_set, observations, small_settings())


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
