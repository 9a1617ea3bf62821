import pytest
import numpy as np

from hypothesis import settings

from oversampled_histogram import OversampledHistogram, disable_implicit_mt

# Configure hypothesis profiles
settings.register_profile("ci", max_examples=50, deadline=None)
settings.register_profile("dev", max_examples=10, deadline=None)
settings.register_profile("debug", max_examples=1, deadline=None)
settings.load_profile("ci")


@pytest.fixture(autouse=True)
def reset_implicit_mt():
    """Every test starts and ends with implicit MT disabled."""
    disable_implicit_mt()
    yield
    disable_implicit_mt()


@pytest.fixture
def rng():
    """Seeded generator for reproducible samples."""
    return np.random.default_rng(42)


@pytest.fixture
def make_histogram():
    """Factory for actions with a 10-bin [0, 10) default binning."""

    def _make(n_lanes=1, oversampling_factor=1.0, jackknife_groups=0,
              n_bins=10, x_min=0.0, x_max=10.0, name="h"):
        return OversampledHistogram(
            name, f"{name} title", n_bins, x_min, x_max,
            oversampling_factor=oversampling_factor,
            jackknife_groups=jackknife_groups,
            n_lanes=n_lanes,
        )

    return _make


def round_robin(action, events, values_for, weight=1.0):
    """Deliver ``events`` in order, lane = event index modulo lane count."""
    for index, event in enumerate(events):
        action.exec(index % action.n_lanes, event, values_for(event), weight)
