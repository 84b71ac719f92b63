"""Tests for mofasvi.models.estimator module."""

import itertools
from unittest.mock import patch

import numpy as np
import pytest

from mofasvi.core.config_schema import ModelOptions
from mofasvi.core.error_handling import NumericalFailureError
from mofasvi.data import Dataset
from mofasvi.models.estimator import Batch, ElboEstimator, Estimate, apply_update
from mofasvi.models.initialization import initialize_state
from mofasvi.models.model_state import NODE_NAMES, GammaNode


def _all_batches(samples_per_group, sizes):
    """Every joint batch with ``sizes[g]`` samples per group."""
    per_group = [
        list(itertools.combinations(range(samples_per_group[g]), sizes[g]))
        for g in samples_per_group
    ]
    for combo in itertools.product(*per_group):
        yield Batch.from_indices(
            {g: np.array(idx) for g, idx in zip(samples_per_group, combo)}, samples_per_group
        )


@pytest.fixture
def tiny_setup(matrices_factory, numpy_backend):
    """Dataset small enough to enumerate every batch."""
    dataset = Dataset.from_matrices(
        matrices_factory(n_samples=(5, 4), n_features=(4, 3), K=2, missing_fraction=0.2, seed=3)
    )
    state = initialize_state(dataset, ModelOptions(num_factors=2), numpy_backend, seed=1)
    return dataset, state, ElboEstimator(dataset, numpy_backend)


@pytest.mark.unit
class TestBatch:
    """Test Batch construction."""

    def test_full(self):
        batch = Batch.full({"a": 3, "b": 2})
        np.testing.assert_array_equal(batch.indices["a"], [0, 1, 2])
        assert batch.scales == {"a": 1.0, "b": 1.0}

    def test_from_indices_sorts_and_scales(self):
        batch = Batch.from_indices({"a": np.array([4, 1])}, {"a": 10})
        np.testing.assert_array_equal(batch.indices["a"], [1, 4])
        assert batch.scales["a"] == 5.0
        assert batch.size("a") == 2


@pytest.mark.unit
class TestUnbiasedness:
    """Batch estimates average exactly to their full-data values."""

    def test_global_directions_and_elbo(self, tiny_setup):
        dataset, state, estimator = tiny_setup
        full = Batch.full(dataset.N)
        expected = {node: estimator.direction(node, state, full) for node in ("W", "AlphaW", "Tau")}
        expected_elbo = estimator.elbo(state, full)

        batches = list(_all_batches(dataset.N, {"group1": 2, "group2": 3}))
        sums = {
            node: {key: [np.zeros_like(d) for d in value] for key, value in directions.items()}
            for node, directions in expected.items()
        }
        elbo_sum = 0.0
        for batch in batches:
            elbo_sum += estimator.elbo(state, batch)
            for node in sums:
                for key, value in estimator.direction(node, state, batch).items():
                    for total, d in zip(sums[node][key], value):
                        total += d

        n = len(batches)
        assert n == 10 * 4
        np.testing.assert_allclose(elbo_sum / n, expected_elbo, rtol=1e-10)
        for node, directions in expected.items():
            for key, value in directions.items():
                for total, d in zip(sums[node][key], value):
                    np.testing.assert_allclose(total / n, d, rtol=1e-9, atol=1e-9)

    def test_full_index_batch_matches_full_batch(self, small_dataset, initial_state, estimator):
        full = Batch.full(small_dataset.N)
        explicit = Batch.from_indices(
            {g: np.arange(n)[::-1] for g, n in small_dataset.N.items()}, small_dataset.N
        )
        assert estimator.elbo(initial_state, explicit) == estimator.elbo(initial_state, full)
        for node in NODE_NAMES:
            a = estimator.direction(node, initial_state, full)
            b = estimator.direction(node, initial_state, explicit)
            for key in a:
                np.testing.assert_array_equal(a[key][0], b[key][0])
                np.testing.assert_array_equal(a[key][1], b[key][1])


@pytest.mark.unit
class TestEstimate:
    """ELBO and directions evaluated together at one state."""

    def test_matches_separate_calls(self, small_dataset, initial_state, estimator):
        batch = Batch.from_indices(
            {"group1": np.array([0, 4, 9]), "group2": np.array([1, 2])}, small_dataset.N
        )
        result = estimator.estimate(initial_state, batch)

        assert isinstance(result, Estimate)
        assert set(result.directions) == set(NODE_NAMES)
        assert result.elbo == estimator.elbo(initial_state, batch)
        for node in NODE_NAMES:
            expected = estimator.direction(node, initial_state, batch)
            assert set(result.directions[node]) == set(expected)
            for key, (d1, d2) in expected.items():
                np.testing.assert_array_equal(result.directions[node][key][0], d1)
                np.testing.assert_array_equal(result.directions[node][key][1], d2)

    def test_state_not_modified(self, small_dataset, initial_state, estimator):
        before = initial_state.get_factors("group1").copy()
        estimator.estimate(initial_state, Batch.full(small_dataset.N))
        np.testing.assert_array_equal(initial_state.get_factors("group1"), before)


@pytest.mark.unit
class TestMissingValues:
    """Masked entries never contribute."""

    def test_values_at_missing_positions_are_ignored(self, small_dataset, initial_state, numpy_backend):
        reference = ElboEstimator(small_dataset, numpy_backend)
        corrupted = ElboEstimator(small_dataset, numpy_backend)
        for key in corrupted._Y:
            mask = small_dataset.mask(*key)
            corrupted._Y[key] = np.where(mask, corrupted._Y[key], 1e3)
            corrupted._Y2[key] = np.where(mask, corrupted._Y2[key], 1e6)

        full = Batch.full(small_dataset.N)
        assert corrupted.elbo(initial_state, full) == pytest.approx(
            reference.elbo(initial_state, full), rel=1e-12
        )
        for node in NODE_NAMES:
            a = reference.direction(node, initial_state, full)
            b = corrupted.direction(node, initial_state, full)
            for key in a:
                np.testing.assert_allclose(b[key][0], a[key][0], rtol=1e-12, atol=1e-12)
                np.testing.assert_allclose(b[key][1], a[key][1], rtol=1e-12, atol=1e-12)


@pytest.mark.unit
class TestCoordinateAscent:
    """Full-batch unit steps land on the conditional optimum."""

    @pytest.mark.parametrize("node", NODE_NAMES)
    def test_direction_vanishes_after_full_step(self, small_dataset, initial_state, estimator, node):
        full = Batch.full(small_dataset.N)
        state = initial_state.copy()
        apply_update(state, node, estimator.direction(node, state, full), 1.0, full)

        for d1, d2 in estimator.direction(node, state, full).values():
            np.testing.assert_allclose(d1, 0.0, atol=1e-8)
            np.testing.assert_allclose(d2, 0.0, atol=1e-8)

    @pytest.mark.parametrize("node", NODE_NAMES)
    def test_single_update_does_not_decrease_elbo(self, small_dataset, initial_state, estimator, node):
        full = Batch.full(small_dataset.N)
        state = initial_state.copy()
        before = estimator.elbo(state, full)
        apply_update(state, node, estimator.direction(node, state, full), 1.0, full)
        assert estimator.elbo(state, full) >= before - 1e-8 * abs(before)

    def test_z_update_only_touches_batch_rows(self, small_dataset, initial_state, estimator):
        batch = Batch.from_indices({"group1": np.array([0, 5]), "group2": np.array([3])}, small_dataset.N)
        state = initial_state.copy()
        apply_update(state, "Z", estimator.direction("Z", state, batch), 1.0, batch)

        before = initial_state.get_factors("group1")
        after = state.get_factors("group1")
        untouched = np.setdiff1d(np.arange(30), [0, 5])
        np.testing.assert_array_equal(after[untouched], before[untouched])
        assert not np.allclose(after[[0, 5]], before[[0, 5]])
        # Committed state is untouched
        np.testing.assert_array_equal(initial_state.get_factors("group1"), before)


@pytest.mark.unit
class TestNumericalFailures:
    """Non-finite quantities raise NumericalFailureError."""

    def test_non_finite_direction(self, small_dataset, initial_state, estimator):
        state = initial_state.copy()
        state.set_node("Tau", ("group1", "view1"), GammaNode(a=np.ones(8), b=np.zeros(8)))
        with np.errstate(divide="ignore", invalid="ignore"):
            with pytest.raises(NumericalFailureError) as exc_info:
                estimator.direction("Z", state, Batch.full(small_dataset.N), iteration=7)
        assert exc_info.value.iteration == 7
        assert exc_info.value.parameter == "Z[group1]"

    def test_non_finite_elbo(self, small_dataset, initial_state, estimator):
        full = Batch.full(small_dataset.N)
        with patch.object(ElboEstimator, "_gamma_terms", return_value=float("nan")):
            with pytest.raises(NumericalFailureError) as exc_info:
                estimator.elbo(initial_state, full, iteration=3)
        assert exc_info.value.parameter == "ELBO"
        assert exc_info.value.iteration == 3

    def test_gamma_update_leaving_domain(self, initial_state):
        state = initial_state.copy()
        b = state.get_node("AlphaW", "view1").b
        with pytest.raises(NumericalFailureError, match="positive"):
            apply_update(state, "AlphaW", {"view1": (np.zeros(3), -2.0 * b)}, 1.0)
        assert state.get_node("AlphaW", "view1") is initial_state.get_node("AlphaW", "view1")

    def test_unknown_node(self, small_dataset, initial_state, estimator):
        with pytest.raises(KeyError):
            estimator.direction("Beta", initial_state, Batch.full(small_dataset.N))


@pytest.mark.unit
class TestThreadedStatistics:
    """Per-group thread pool gives the same numbers as sequential evaluation."""

    def test_n_jobs_agreement(self, small_dataset, initial_state, numpy_backend):
        sequential = ElboEstimator(small_dataset, numpy_backend, n_jobs=1)
        threaded = ElboEstimator(small_dataset, numpy_backend, n_jobs=2)
        full = Batch.full(small_dataset.N)

        assert threaded.elbo(initial_state, full) == pytest.approx(
            sequential.elbo(initial_state, full), rel=1e-12
        )
        a = sequential.direction("W", initial_state, full)
        b = threaded.direction("W", initial_state, full)
        np.testing.assert_allclose(b["view2"][1], a["view2"][1], rtol=1e-12)
