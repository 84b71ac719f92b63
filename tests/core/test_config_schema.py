"""Tests for mofasvi.core.config_schema module."""

import dataclasses

import pytest

from mofasvi.core.config_schema import (
    CONVERGENCE_TOLERANCES,
    ConfigurationValidator,
    ModelOptions,
    RunConfiguration,
    SystemOptions,
    TrainingOptions,
    build_training_options,
)
from mofasvi.core.error_handling import InvalidConfigError


@pytest.mark.unit
class TestModelOptions:
    """Test model section validation."""

    def test_defaults_valid(self):
        assert ModelOptions().validate() == []

    def test_invalid_values(self):
        errors = ModelOptions(num_factors=0, init_factors="svd", tau_a0=-1.0).validate()
        assert any("num_factors" in e for e in errors)
        assert any("init_factors" in e for e in errors)
        assert any("tau_a0" in e for e in errors)

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            ModelOptions().num_factors = 3


@pytest.mark.unit
class TestTrainingOptions:
    """Test training section validation and derived properties."""

    def test_defaults(self):
        options = TrainingOptions()
        assert options.validate() == []
        assert not options.stochastic
        assert options.effective_batch_fraction == 1.0
        assert options.tolerance == CONVERGENCE_TOLERANCES["fast"]

    def test_explicit_tolerance_wins(self):
        options = TrainingOptions(convergence_mode="slow", convergence_tolerance=0.0)
        assert options.tolerance == 0.0

    def test_batch_fraction_with_standard_mode_rejected(self):
        errors = TrainingOptions(mode="standard", batch_fraction=0.5).validate()
        assert any("batch_fraction" in e for e in errors)

    @pytest.mark.parametrize("fraction", [0.0, -0.1, 1.5])
    def test_batch_fraction_range(self, fraction):
        errors = TrainingOptions(mode="stochastic", batch_fraction=fraction).validate()
        assert any("batch_fraction" in e for e in errors)

    def test_batch_fraction_one_allowed(self):
        assert TrainingOptions(mode="stochastic", batch_fraction=1.0).validate() == []

    @pytest.mark.parametrize(
        "field,value",
        [
            ("learning_rate", 0.0),
            ("learning_rate", float("inf")),
            ("forgetting_rate", -0.5),
            ("max_iterations", 0),
            ("convergence_mode", "instant"),
            ("convergence_window", 0),
            ("seed", -1),
        ],
    )
    def test_invalid_fields(self, field, value):
        errors = TrainingOptions(**{field: value}).validate()
        assert any(field in e for e in errors)

    def test_from_dict_aliases(self):
        options = TrainingOptions.from_dict(
            {"stochastic": True, "batch_size": 0.25, "initial_learning_rate": 0.5}
        )
        assert options.mode == "stochastic"
        assert options.batch_fraction == 0.25
        assert options.learning_rate == 0.5

    def test_from_dict_unknown_key(self):
        with pytest.raises(InvalidConfigError, match="unknown option"):
            TrainingOptions.from_dict({"momentum": 0.9})


@pytest.mark.unit
class TestBuildTrainingOptions:
    """Test build_training_options helper."""

    def test_overrides_applied(self):
        options = build_training_options(mode="stochastic", batch_fraction=0.1, max_iterations=5)
        assert options.stochastic
        assert options.batch_fraction == 0.1
        assert options.max_iterations == 5

    def test_base_options_preserved(self):
        base = TrainingOptions(max_iterations=7, seed=3)
        options = build_training_options(base, convergence_mode="medium")
        assert options.max_iterations == 7
        assert options.seed == 3
        assert options.convergence_mode == "medium"

    def test_all_errors_reported(self):
        with pytest.raises(InvalidConfigError) as exc_info:
            build_training_options(learning_rate=-1.0, forgetting_rate=-1.0)
        message = str(exc_info.value)
        assert "learning_rate" in message
        assert "forgetting_rate" in message

    def test_batch_fraction_in_standard_mode(self):
        with pytest.raises(InvalidConfigError, match="batch_fraction"):
            build_training_options(mode="standard", batch_fraction=0.5)

    @pytest.mark.parametrize("override", [{"mode": "standard"}, {"stochastic": False}])
    def test_switch_to_standard_drops_batch_fraction(self, override):
        base = build_training_options(mode="stochastic", batch_fraction=0.25, max_iterations=7)
        options = build_training_options(base, **override)
        assert not options.stochastic
        assert options.batch_fraction is None
        assert options.max_iterations == 7

    def test_switch_to_standard_keeps_explicit_batch_fraction_error(self):
        base = build_training_options(mode="stochastic", batch_fraction=0.25)
        with pytest.raises(InvalidConfigError, match="batch_fraction"):
            build_training_options(base, mode="standard", batch_fraction=0.25)


@pytest.mark.unit
class TestSystemOptions:
    """Test system section validation."""

    def test_gpu_requires_jax(self):
        errors = SystemOptions(backend="numpy", device="gpu").validate()
        assert any("jax" in e for e in errors)

    def test_jax_gpu_valid(self):
        assert SystemOptions(backend="jax", device="gpu").validate() == []

    def test_invalid_log_level(self):
        errors = SystemOptions(log_level="LOUD").validate()
        assert any("log_level" in e for e in errors)


@pytest.mark.unit
class TestConfigurationValidator:
    """Test ConfigurationValidator."""

    def test_build_defaults(self):
        config = ConfigurationValidator.build({})
        assert isinstance(config, RunConfiguration)
        assert config.model.num_factors == 10
        assert config.training.mode == "standard"
        assert config.training.seed == 42
        assert config.system.backend == "numpy"

    def test_merge_keeps_defaults(self):
        merged = ConfigurationValidator.merge_with_defaults({"model": {"num_factors": 4}})
        assert merged["model"]["num_factors"] == 4
        assert merged["model"]["init_factors"] == "random"
        assert merged["training"]["max_iterations"] == 1000

    def test_stochastic_gets_default_batch_fraction(self):
        config = ConfigurationValidator.build({"training": {"stochastic": True}})
        assert config.training.stochastic
        assert config.training.batch_fraction == 0.5

    def test_mode_overrides_stochastic_flag(self):
        config = ConfigurationValidator.build(
            {"training": {"mode": "stochastic", "batch_size": 0.1}}
        )
        assert config.training.mode == "stochastic"
        assert config.training.batch_fraction == 0.1

    def test_validation_errors_collected(self):
        errors = ConfigurationValidator.validate_configuration(
            ConfigurationValidator.merge_with_defaults(
                {"model": {"num_factors": 0}, "system": {"n_jobs": 0}}
            )
        )
        assert any(e.startswith("model:") for e in errors)
        assert any(e.startswith("system:") for e in errors)

    def test_unknown_section(self):
        with pytest.raises(InvalidConfigError):
            ConfigurationValidator.build({"plotting": {"dpi": 300}})

    def test_invalid_build_raises(self):
        with pytest.raises(InvalidConfigError, match="Configuration validation failed"):
            ConfigurationValidator.build({"training": {"learning_rate": 0}})

    def test_to_dict_round_trip(self):
        config = ConfigurationValidator.build({"model": {"num_factors": 3}})
        rebuilt = ConfigurationValidator.build(config.to_dict())
        assert rebuilt == config
