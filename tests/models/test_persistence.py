"""Tests for mofasvi.models.persistence module."""

import json

import numpy as np
import pytest

from mofasvi.core.config_schema import TrainingOptions
from mofasvi.core.error_handling import DataInconsistencyError
from mofasvi.models.persistence import FORMAT_VERSION, load_model, save_model
from mofasvi.models.training import TrainingController, TrainingStatus


@pytest.fixture
def trained(small_dataset):
    controller = TrainingController(small_dataset, num_factors=3, seed=0)
    options = controller.configure(max_iterations=4, convergence_tolerance=0.0)
    result = controller.run()
    return result, options


@pytest.mark.unit
class TestSaveModel:
    """Test save_model function."""

    def test_writes_both_files(self, trained, small_dataset, temp_dir):
        result, options = trained
        paths = save_model(
            temp_dir / "model.npz", result.state, result.training_state, small_dataset, options
        )

        assert paths["arrays"].exists()
        assert paths["metadata"].suffix == ".json"
        with open(paths["metadata"]) as f:
            metadata = json.load(f)
        assert metadata["format_version"] == FORMAT_VERSION
        assert metadata["groups"] == ["group1", "group2"]
        assert metadata["num_factors"] == 3
        assert metadata["training_state"]["status"] == "max_iter_reached"
        assert metadata["training_options"]["max_iterations"] == 4
        assert len(metadata["samples"]["group2"]) == 20
        assert len(metadata["intercepts"]["group1"]["view2"]) == 6


@pytest.mark.unit
class TestLoadModel:
    """Test load_model function."""

    def test_round_trip(self, trained, small_dataset, temp_dir):
        result, _ = trained
        save_model(temp_dir / "model", result.state, result.training_state, small_dataset)
        loaded = load_model(temp_dir / "model.json")

        assert loaded.state.groups == result.state.groups
        assert loaded.state.num_factors == 3
        assert loaded.training_state.status == TrainingStatus.MAX_ITER_REACHED
        assert loaded.training_state.elbo_history == result.elbo_history
        assert loaded.samples["group1"] == small_dataset.samples("group1")
        np.testing.assert_allclose(
            loaded.intercepts("group2", "view1"), small_dataset.intercepts["group2"]["view1"]
        )
        np.testing.assert_allclose(
            loaded.state.get_factors("group2"), result.state.get_factors("group2")
        )
        np.testing.assert_allclose(
            loaded.state.get_node("Tau", ("group1", "view2")).b,
            result.state.get_node("Tau", ("group1", "view2")).b,
        )

    def test_loaded_state_continues_training(self, trained, small_dataset, temp_dir):
        result, _ = trained
        save_model(temp_dir / "model", result.state, result.training_state)
        loaded = load_model(temp_dir / "model")

        controller = TrainingController(small_dataset, state=loaded.state)
        controller.configure(max_iterations=2, convergence_tolerance=0.0)
        continued = controller.run()
        # Coordinate ascent picks up where the saved run stopped
        assert continued.elbo_history[0] >= result.elbo_history[-1] - 1e-8 * abs(result.elbo_history[-1])
        assert loaded.samples == {}
        assert loaded.intercepts("group1", "view1") is None

    def test_unsupported_version(self, trained, temp_dir):
        result, _ = trained
        paths = save_model(temp_dir / "model", result.state, result.training_state)
        with open(paths["metadata"]) as f:
            metadata = json.load(f)
        metadata["format_version"] = FORMAT_VERSION + 1
        with open(paths["metadata"], "w") as f:
            json.dump(metadata, f)

        with pytest.raises(DataInconsistencyError, match="format version"):
            load_model(paths["arrays"])

    def test_missing_files(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            load_model(temp_dir / "absent")


@pytest.mark.unit
class TestTrainingOptionsMetadata:
    """Stored training options rebuild the original options."""

    def test_options_round_trip(self, trained, temp_dir):
        result, options = trained
        paths = save_model(temp_dir / "model", result.state, result.training_state, training_options=options)
        with open(paths["metadata"]) as f:
            stored = json.load(f)["training_options"]
        assert TrainingOptions(**stored) == options
