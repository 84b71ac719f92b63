"""Configuration schema validation for mofa-svi training runs.

Every section is an immutable dataclass with a ``validate()`` method that
returns a list of problems. ``ConfigurationValidator`` merges a user
configuration with the defaults, validates all sections and builds the
frozen option objects consumed by the training controller. Option objects
are never mutated after construction; use ``dataclasses.replace`` to derive
a modified copy.
"""

import logging
import math
from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from .error_handling import InvalidConfigError
from .logger_utils import LogLevel

logger = logging.getLogger(__name__)

# Relative ELBO change below which training is considered converged
CONVERGENCE_TOLERANCES = {
    "fast": 5e-4,
    "medium": 5e-5,
    "slow": 5e-6,
}

DEFAULT_BATCH_FRACTION = 0.5


class TrainingMode(Enum):
    """Valid inference modes."""

    STANDARD = "standard"
    STOCHASTIC = "stochastic"


class BackendType(Enum):
    """Valid compute backends."""

    NUMPY = "numpy"
    JAX = "jax"


class InitMethod(Enum):
    """Valid factor initialisation methods."""

    RANDOM = "random"
    PCA = "pca"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class ModelOptions:
    """Model configuration schema."""

    num_factors: int = 10
    init_factors: str = "random"
    alpha_a0: float = 1e-3
    alpha_b0: float = 1e-3
    tau_a0: float = 1e-3
    tau_b0: float = 1e-3

    def validate(self) -> List[str]:
        """Validate model configuration."""
        errors = []

        if not isinstance(self.num_factors, int) or isinstance(self.num_factors, bool):
            errors.append("num_factors must be an integer")
        elif self.num_factors < 1:
            errors.append("num_factors must be >= 1")

        valid_inits = [m.value for m in InitMethod]
        if self.init_factors not in valid_inits:
            errors.append(
                f"init_factors must be one of {valid_inits}, got {self.init_factors}"
            )

        for name in ("alpha_a0", "alpha_b0", "tau_a0", "tau_b0"):
            value = getattr(self, name)
            if not _is_number(value) or not value > 0:
                errors.append(f"{name} must be > 0, got {value}")

        return errors


@dataclass(frozen=True)
class DataOptions:
    """Data configuration schema."""

    center_features: bool = True

    def validate(self) -> List[str]:
        """Validate data configuration."""
        errors = []
        if not isinstance(self.center_features, bool):
            errors.append("center_features must be a boolean")
        return errors


@dataclass(frozen=True)
class TrainingOptions:
    """Training-loop configuration schema.

    ``learning_rate`` is the initial learning rate rho0 and
    ``forgetting_rate`` the decay kappa of the stochastic schedule
    ``rho(t) = rho0 / (1 + kappa * t) ** 0.75``. Both are ignored in
    standard mode, where every update is a full coordinate-ascent step.
    """

    mode: str = "standard"
    batch_fraction: Optional[float] = None
    learning_rate: float = 1.0
    forgetting_rate: float = 0.5
    max_iterations: int = 1000
    convergence_mode: str = "fast"
    convergence_tolerance: Optional[float] = None
    convergence_window: int = 1
    seed: Optional[int] = 42
    continue_schedule: bool = False
    log_every: int = 10

    @property
    def stochastic(self) -> bool:
        return self.mode == TrainingMode.STOCHASTIC.value

    @property
    def tolerance(self) -> float:
        """Effective convergence tolerance (explicit value wins over the mode preset)."""
        if self.convergence_tolerance is not None:
            return float(self.convergence_tolerance)
        return CONVERGENCE_TOLERANCES[self.convergence_mode]

    @property
    def effective_batch_fraction(self) -> float:
        if not self.stochastic:
            return 1.0
        if self.batch_fraction is None:
            return DEFAULT_BATCH_FRACTION
        return float(self.batch_fraction)

    def validate(self) -> List[str]:
        """Validate training configuration."""
        errors = []

        valid_modes = [m.value for m in TrainingMode]
        if self.mode not in valid_modes:
            errors.append(f"mode must be one of {valid_modes}, got {self.mode}")

        if self.batch_fraction is not None:
            if self.mode == TrainingMode.STANDARD.value:
                errors.append(
                    "batch_fraction can only be supplied with mode='stochastic'"
                )
            elif not _is_number(self.batch_fraction) or not 0 < self.batch_fraction <= 1:
                errors.append(
                    f"batch_fraction must be in (0, 1], got {self.batch_fraction}"
                )

        if not _is_number(self.learning_rate) or not (
            self.learning_rate > 0 and math.isfinite(self.learning_rate)
        ):
            errors.append(f"learning_rate must be > 0, got {self.learning_rate}")

        if not _is_number(self.forgetting_rate) or not (
            self.forgetting_rate >= 0 and math.isfinite(self.forgetting_rate)
        ):
            errors.append(f"forgetting_rate must be >= 0, got {self.forgetting_rate}")

        if not isinstance(self.max_iterations, int) or self.max_iterations < 1:
            errors.append("max_iterations must be an integer >= 1")

        if self.convergence_mode not in CONVERGENCE_TOLERANCES:
            errors.append(
                f"convergence_mode must be one of {list(CONVERGENCE_TOLERANCES)}, "
                f"got {self.convergence_mode}"
            )

        if self.convergence_tolerance is not None:
            if not _is_number(self.convergence_tolerance) or self.convergence_tolerance < 0:
                errors.append("convergence_tolerance must be >= 0")

        if not isinstance(self.convergence_window, int) or self.convergence_window < 1:
            errors.append("convergence_window must be an integer >= 1")

        if self.seed is not None:
            if not isinstance(self.seed, int) or isinstance(self.seed, bool):
                errors.append("seed must be an integer")
            elif self.seed < 0:
                errors.append("seed must be >= 0")

        if not isinstance(self.log_every, int) or self.log_every < 1:
            errors.append("log_every must be an integer >= 1")

        return errors

    @classmethod
    def from_dict(cls, options: Dict[str, Any]) -> "TrainingOptions":
        """Create options from a configuration mapping.

        Accepts the user-facing aliases ``stochastic`` (bool) and
        ``batch_size`` (fraction of samples per group) in place of
        ``mode`` and ``batch_fraction``.
        """
        return _construct(cls, _normalize_training_keys(options), "training")


@dataclass(frozen=True)
class SystemOptions:
    """System configuration schema."""

    backend: str = "numpy"
    device: str = "cpu"
    n_jobs: int = 1
    log_level: str = "INFO"

    def validate(self) -> List[str]:
        """Validate system configuration."""
        errors = []

        valid_backends = [b.value for b in BackendType]
        if self.backend not in valid_backends:
            errors.append(f"backend must be one of {valid_backends}, got {self.backend}")

        if self.device not in ("cpu", "gpu"):
            errors.append(f"device must be 'cpu' or 'gpu', got {self.device}")
        elif self.device == "gpu" and self.backend == BackendType.NUMPY.value:
            errors.append("device='gpu' requires backend='jax'")

        if not isinstance(self.n_jobs, int) or self.n_jobs < 1:
            errors.append("n_jobs must be an integer >= 1")
        elif self.n_jobs > 64:
            errors.append("n_jobs should not exceed 64")

        valid_levels = [level.value for level in LogLevel]
        if str(self.log_level).upper() not in valid_levels:
            errors.append(f"log_level must be one of {valid_levels}")

        return errors


@dataclass(frozen=True)
class RunConfiguration:
    """Validated, immutable configuration of one training run."""

    model: ModelOptions
    data: DataOptions
    training: TrainingOptions
    system: SystemOptions

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": asdict(self.model),
            "data": asdict(self.data),
            "training": asdict(self.training),
            "system": asdict(self.system),
        }


def _construct(cls, options: Dict[str, Any], section: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(options) - known)
    if unknown:
        raise InvalidConfigError(f"{section}: unknown option(s) {unknown}")
    return cls(**options)


def _normalize_training_keys(options: Dict[str, Any]) -> Dict[str, Any]:
    """Map the user-facing aliases onto ``TrainingOptions`` field names."""
    options = dict(options)
    stochastic = options.pop("stochastic", None)
    if stochastic is not None and "mode" not in options:
        options["mode"] = (
            TrainingMode.STOCHASTIC.value if stochastic else TrainingMode.STANDARD.value
        )
    if "batch_size" in options:
        batch_size = options.pop("batch_size")
        options.setdefault("batch_fraction", batch_size)
    if "initial_learning_rate" in options:
        initial = options.pop("initial_learning_rate")
        options.setdefault("learning_rate", initial)
    return options


def build_training_options(
    options: Optional[TrainingOptions] = None, **overrides: Any
) -> TrainingOptions:
    """Build and validate a ``TrainingOptions`` object.

    Parameters
    ----------
    options : TrainingOptions, optional
        Base options; defaults are used when omitted
    **overrides
        Field values (or the ``stochastic``/``batch_size`` aliases)

    Returns
    -------
    TrainingOptions
        Validated options

    Raises
    ------
    InvalidConfigError
        If any value is out of range
    """
    merged = asdict(options) if options is not None else {}
    overrides = _normalize_training_keys(overrides)
    # A stochastic base switched to standard mode drops its batch fraction
    if overrides.get("mode") == TrainingMode.STANDARD.value and "batch_fraction" not in overrides:
        merged.pop("batch_fraction", None)
    merged.update(overrides)
    built = _construct(TrainingOptions, merged, "training")

    errors = built.validate()
    if errors:
        raise InvalidConfigError(
            "Invalid training options:\n" + "\n".join(f"  - {e}" for e in errors)
        )
    return built


class ConfigurationValidator:
    """Main configuration validator."""

    @staticmethod
    def get_default_configuration() -> Dict[str, Any]:
        """Get default configuration."""
        return {
            "model": {"num_factors": 10, "init_factors": "random"},
            "data": {"center_features": True},
            "training": {
                "max_iterations": 1000,
                "convergence_mode": "fast",
                "seed": 42,
                "stochastic": False,
                "learning_rate": 1.0,
                "forgetting_rate": 0.5,
            },
            "system": {"backend": "numpy", "device": "cpu", "n_jobs": 1, "log_level": "INFO"},
        }

    @staticmethod
    def merge_with_defaults(config_dict: Dict[str, Any]) -> Dict[str, Any]:
        """Merge user configuration with defaults."""
        default_config = ConfigurationValidator.get_default_configuration()

        def deep_merge(base: Dict, update: Dict) -> Dict:
            """Deep merge two dictionaries."""
            merged = base.copy()
            for key, value in update.items():
                if (
                    key in merged
                    and isinstance(merged[key], dict)
                    and isinstance(value, dict)
                ):
                    merged[key] = deep_merge(merged[key], value)
                else:
                    merged[key] = value
            return merged

        return deep_merge(default_config, config_dict or {})

    @staticmethod
    def create_from_dict(config_dict: Dict[str, Any]) -> RunConfiguration:
        """Create configuration objects from a (merged) dictionary."""
        unknown_sections = sorted(
            set(config_dict) - {"model", "data", "training", "system"}
        )
        if unknown_sections:
            raise InvalidConfigError(f"Unknown configuration section(s): {unknown_sections}")

        return RunConfiguration(
            model=_construct(ModelOptions, config_dict.get("model", {}), "model"),
            data=_construct(DataOptions, config_dict.get("data", {}), "data"),
            training=TrainingOptions.from_dict(config_dict.get("training", {})),
            system=_construct(SystemOptions, config_dict.get("system", {}), "system"),
        )

    @staticmethod
    def validate_configuration(config_dict: Dict[str, Any]) -> List[str]:
        """Validate complete configuration."""
        all_errors = []

        try:
            config = ConfigurationValidator.create_from_dict(config_dict)
        except (InvalidConfigError, TypeError, ValueError) as e:
            return [f"Configuration structure error: {str(e)}"]

        for section_name in ("model", "data", "training", "system"):
            section_errors = getattr(config, section_name).validate()
            for error in section_errors:
                all_errors.append(f"{section_name}: {error}")

        return all_errors

    @staticmethod
    def build(config_dict: Optional[Dict[str, Any]] = None) -> RunConfiguration:
        """Merge with defaults, validate, and build the immutable configuration.

        Raises
        ------
        InvalidConfigError
            With every validation message when the configuration is invalid
        """
        merged = ConfigurationValidator.merge_with_defaults(config_dict or {})
        errors = ConfigurationValidator.validate_configuration(merged)

        if errors:
            error_message = "Configuration validation failed:\n" + "\n".join(
                f"  - {error}" for error in errors
            )
            raise InvalidConfigError(error_message)

        config = ConfigurationValidator.create_from_dict(merged)
        if config.training.stochastic and config.training.batch_fraction is None:
            config = replace(
                config,
                training=replace(config.training, batch_fraction=DEFAULT_BATCH_FRACTION),
            )

        logger.info("Configuration validation passed")
        return config
