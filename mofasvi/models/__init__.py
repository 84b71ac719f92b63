"""Models package - variational state, estimator and training loop."""

from .backends import BackendFactory, ComputeBackend, JaxBackend, NumpyBackend, create_backend
from .estimator import Batch, ElboEstimator, Estimate
from .model_state import GammaNode, GaussianNode, ModelState
from .persistence import TrainedModel, load_model, save_model
from .training import (
    LearningRateSchedule,
    TrainingController,
    TrainingResult,
    TrainingState,
    TrainingStatus,
)

__all__ = [
    "BackendFactory",
    "ComputeBackend",
    "NumpyBackend",
    "JaxBackend",
    "create_backend",
    "Batch",
    "ElboEstimator",
    "Estimate",
    "GammaNode",
    "GaussianNode",
    "ModelState",
    "TrainedModel",
    "load_model",
    "save_model",
    "LearningRateSchedule",
    "TrainingController",
    "TrainingResult",
    "TrainingState",
    "TrainingStatus",
]
