"""Test configuration and fixtures."""

import shutil
import tempfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from mofasvi.core.config_schema import ModelOptions
from mofasvi.data.dataset import Dataset
from mofasvi.models.backends import NumpyBackend
from mofasvi.models.estimator import ElboEstimator
from mofasvi.models.initialization import initialize_state


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir)


def make_matrices(
    n_samples=(30, 20),
    n_features=(8, 6),
    K=3,
    missing_fraction=0.1,
    seed=0,
):
    """Low-rank Gaussian data as ``{group: {view: DataFrame}}``."""
    rng = np.random.RandomState(seed)
    W = [rng.normal(0, 1, (D, K)) for D in n_features]
    matrices = {}
    for g, N in enumerate(n_samples):
        group = f"group{g + 1}"
        Z = rng.normal(0, 1, (N, K))
        samples = [f"{group}_s{i:03d}" for i in range(N)]
        matrices[group] = {}
        for m, D in enumerate(n_features):
            view = f"view{m + 1}"
            Y = Z @ W[m].T + rng.normal(0, 0.5, (N, D)) + rng.normal(0, 1, D)
            Y[rng.rand(N, D) < missing_fraction] = np.nan
            matrices[group][view] = pd.DataFrame(
                Y, index=samples, columns=[f"{view}_f{j:02d}" for j in range(D)]
            )
    return matrices


@pytest.fixture
def matrices_factory():
    """Factory for custom-sized test matrices."""
    return make_matrices


@pytest.fixture
def small_matrices():
    """Two groups x two views with 10% missing entries."""
    return make_matrices()


@pytest.fixture
def small_dataset(small_matrices):
    """Dataset built from ``small_matrices``."""
    return Dataset.from_matrices(small_matrices)


@pytest.fixture
def long_data(small_dataset):
    """Observed entries of ``small_dataset`` in long format."""
    return small_dataset.to_long()


@pytest.fixture
def numpy_backend():
    return NumpyBackend()


@pytest.fixture
def model_options():
    return ModelOptions(num_factors=3)


@pytest.fixture
def initial_state(small_dataset, model_options, numpy_backend):
    """Randomly initialized model state for ``small_dataset``."""
    return initialize_state(small_dataset, model_options, numpy_backend, seed=0)


@pytest.fixture
def estimator(small_dataset, numpy_backend):
    return ElboEstimator(small_dataset, numpy_backend)


@pytest.fixture(scope="module")
def trained_pair():
    """Two four-factor models with different seeds, trained on rank-2 data."""
    from mofasvi.models.training import TrainingController

    dataset = Dataset.from_matrices(make_matrices(K=2, missing_fraction=0.05))
    states = []
    for seed in (0, 1):
        controller = TrainingController(dataset, num_factors=4, seed=seed)
        controller.configure(max_iterations=200, convergence_mode="medium")
        states.append(controller.run().state)
    return dataset, states
