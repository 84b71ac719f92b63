"""Training loop controller for standard and stochastic variational inference.

Standard mode uses every sample in every iteration and applies exact
coordinate-ascent updates, so the ELBO never decreases. Stochastic mode draws
a uniform batch of samples per group, fully refreshes the local factors of the
batch and moves the global nodes a step ``rho(t)`` along their natural
gradient, with ``rho(t) = rho0 / (1 + kappa * t) ** 0.75``.

Each step is prepared on a copy of the model state and committed in a single
swap under a lock. Steps are strictly sequential; cancellation is checked
between iterations.
"""

import logging
import math
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from ..core.config_schema import ModelOptions, TrainingOptions, build_training_options
from ..core.error_handling import (
    DataInconsistencyError,
    InvalidConfigError,
    NumericalFailureError,
)
from .backends import ComputeBackend, create_backend
from .estimator import Batch, ElboEstimator, apply_update
from .initialization import initialize_state
from .model_state import NODE_NAMES, ModelState

logger = logging.getLogger(__name__)

SCHEDULE_EXPONENT = 0.75


class TrainingStatus(Enum):
    """Lifecycle states of a training run."""

    INITIALIZED = "initialized"
    RUNNING = "running"
    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class LearningRateSchedule:
    """Decaying step size ``rho(t) = rho0 / (1 + kappa * t) ** 0.75``."""

    initial_learning_rate: float = 1.0
    forgetting_rate: float = 0.5

    def __call__(self, t: int) -> float:
        return self.initial_learning_rate / (1.0 + self.forgetting_rate * t) ** SCHEDULE_EXPONENT


def compute_batch_size(n_samples: int, batch_fraction: float) -> int:
    """Rounded batch size, at least one sample for a nonempty group."""
    if n_samples <= 0:
        return 0
    return min(n_samples, max(1, int(math.floor(batch_fraction * n_samples + 0.5))))


def sample_batch(
    rng: np.random.RandomState,
    samples_per_group: Dict[str, int],
    batch_fraction: float,
) -> Batch:
    """Draw a uniform batch without replacement from every group."""
    indices = {
        g: rng.choice(n, size=compute_batch_size(n, batch_fraction), replace=False)
        for g, n in samples_per_group.items()
    }
    return Batch.from_indices(indices, samples_per_group)


@dataclass
class TrainingState:
    """Progress of a training run.

    Attributes
    ----------
    iteration : int
        Completed iterations since the controller was created
    learning_rate : float
        Step size used by the last iteration (1.0 in standard mode)
    elbo_history : List[float]
        One ELBO value per completed iteration
    status : TrainingStatus
    schedule_origin : int
        Iteration at which the decay schedule restarted (``t = 0``)
    """

    iteration: int = 0
    learning_rate: float = 1.0
    elbo_history: List[float] = field(default_factory=list)
    status: TrainingStatus = TrainingStatus.INITIALIZED
    schedule_origin: int = 0
    failed_iteration: Optional[int] = None
    failed_parameter: Optional[str] = None

    @property
    def converged(self) -> bool:
        return self.status == TrainingStatus.CONVERGED

    def copy(self) -> "TrainingState":
        clone = TrainingState(**{k: v for k, v in self.__dict__.items() if k != "elbo_history"})
        clone.elbo_history = list(self.elbo_history)
        return clone

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["status"] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainingState":
        data = dict(data)
        data["status"] = TrainingStatus(data.get("status", TrainingStatus.INITIALIZED.value))
        data["elbo_history"] = [float(v) for v in data.get("elbo_history", [])]
        return cls(**data)


@dataclass(frozen=True)
class TrainingResult:
    """Outcome of ``TrainingController.run``.

    ``state`` is the last committed state, except after cancellation where it
    is the best state seen so far. ``best_state`` always holds the state with
    the highest ELBO.
    """

    status: TrainingStatus
    state: ModelState
    best_state: ModelState
    training_state: TrainingState
    elapsed_seconds: float = 0.0
    error: Optional[NumericalFailureError] = None

    @property
    def elbo_history(self) -> List[float]:
        return self.training_state.elbo_history


class TrainingController:
    """Drives variational inference for one model.

    Parameters
    ----------
    dataset : Dataset
        Training data
    num_factors : int, optional
        K; ignored when ``model_options`` is given
    model_options : ModelOptions, optional
        Factor count, initialization and priors
    backend : ComputeBackend, optional
        Numerics backend (NumPy when omitted)
    state : ModelState, optional
        Existing state to continue from instead of a fresh initialization
    seed : int, optional
        Seed for the initialization
    n_jobs : int
        Worker threads for per-group statistics

    Examples
    --------
    >>> controller = TrainingController(dataset, num_factors=5)
    >>> controller.configure(mode="stochastic", batch_fraction=0.25)
    >>> result = controller.run()
    """

    def __init__(
        self,
        dataset,
        num_factors: Optional[int] = None,
        model_options: Optional[ModelOptions] = None,
        backend: Optional[ComputeBackend] = None,
        state: Optional[ModelState] = None,
        seed: Optional[int] = 42,
        n_jobs: int = 1,
    ):
        if state is not None:
            requested = num_factors if num_factors is not None else (
                model_options.num_factors if model_options is not None else state.num_factors
            )
            if requested != state.num_factors:
                raise DataInconsistencyError(
                    f"State has {state.num_factors} factors, {requested} requested"
                )
            if not state.is_complete():
                raise DataInconsistencyError("State is missing variational parameters")
            state.check_compatible(dataset)
            model_options = model_options or state.options
            backend = state.backend
        elif model_options is None:
            model_options = (
                ModelOptions(num_factors=num_factors) if num_factors is not None else ModelOptions()
            )

        errors = model_options.validate()
        if errors:
            raise InvalidConfigError(
                "Invalid model options:\n" + "\n".join(f"  - {e}" for e in errors)
            )

        self.dataset = dataset
        self.model_options = model_options
        self.backend = backend if backend is not None else create_backend("numpy")

        if state is None:
            state = initialize_state(dataset, model_options, self.backend, seed=seed)

        self.estimator = ElboEstimator(dataset, self.backend, n_jobs=n_jobs)

        self._state = state
        self._best_state = state
        self._best_elbo = -math.inf
        self._training_state = TrainingState()
        self._options: Optional[TrainingOptions] = None
        self._schedule = LearningRateSchedule()
        self._rng = np.random.RandomState(seed)
        self._configured_at = 0

        self._lock = threading.Lock()
        self._step_guard = threading.Lock()
        self._cancel_event = threading.Event()
        self._running = False

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> ModelState:
        """Last committed model state."""
        with self._lock:
            return self._state

    @property
    def best_state(self) -> ModelState:
        with self._lock:
            return self._best_state

    @property
    def training_state(self) -> TrainingState:
        """Snapshot of the training progress."""
        with self._lock:
            return self._training_state.copy()

    @property
    def options(self) -> Optional[TrainingOptions]:
        return self._options

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, options: Optional[TrainingOptions] = None, **overrides: Any) -> TrainingOptions:
        """Set (or replace) the training options.

        Parameters
        ----------
        options : TrainingOptions, optional
            Base options; defaults when omitted
        **overrides
            ``mode``, ``batch_fraction``, ``learning_rate``,
            ``forgetting_rate``, ``max_iterations``, ``convergence_tolerance``
            and the other ``TrainingOptions`` fields (aliases
            ``stochastic``, ``batch_size`` and ``initial_learning_rate`` are
            accepted)

        Returns
        -------
        TrainingOptions
            The validated, immutable options now in effect

        Raises
        ------
        InvalidConfigError
            If any value is out of range; nothing is changed in that case
        RuntimeError
            If called while ``run()`` is in progress
        """
        if self._running:
            raise RuntimeError("Cannot reconfigure while training is running")

        built = build_training_options(options, **overrides)
        if built.stochastic and built.batch_fraction is None:
            built = build_training_options(built, batch_fraction=built.effective_batch_fraction)

        with self._lock:
            previous = self._options
            iteration = self._training_state.iteration
            if not built.continue_schedule:
                self._training_state.schedule_origin = iteration
            self._configured_at = iteration
            self._training_state.status = TrainingStatus.INITIALIZED
            self._options = built
            self._schedule = LearningRateSchedule(built.learning_rate, built.forgetting_rate)
            self._rng = np.random.RandomState(built.seed)

        if previous is not None and previous.mode != built.mode:
            logger.info(
                f"Switching from {previous.mode} to {built.mode} mode at iteration {iteration} "
                f"(schedule {'continued' if built.continue_schedule else 'reset'})"
            )
        if built.stochastic:
            logger.info(
                f"Configured stochastic inference: batch_fraction={built.batch_fraction}, "
                f"learning_rate={built.learning_rate}, forgetting_rate={built.forgetting_rate}, "
                f"max_iterations={built.max_iterations}"
            )
        else:
            logger.info(
                f"Configured standard inference: max_iterations={built.max_iterations}, "
                f"tolerance={built.tolerance:g}"
            )
        return built

    # ------------------------------------------------------------------
    # Iterations
    # ------------------------------------------------------------------

    def step(self) -> float:
        """Run one iteration and commit it.

        Returns
        -------
        float
            ELBO (estimate in stochastic mode) after the update

        Raises
        ------
        NumericalFailureError
            If the update produced non-finite values; the committed state is
            left unchanged and the status becomes FAILED
        RuntimeError
            If another ``step()`` is already executing
        """
        if not self._step_guard.acquire(blocking=False):
            raise RuntimeError("step() called while another step is in progress")
        try:
            if self._options is None:
                self.configure()
            opts = self._options

            with self._lock:
                self._training_state.status = TrainingStatus.RUNNING
                iteration = self._training_state.iteration
                t = iteration - self._training_state.schedule_origin
                work = self._state.copy()

            if opts.stochastic:
                rho = self._schedule(t)
                batch = sample_batch(self._rng, self.dataset.N, opts.batch_fraction)
            else:
                rho = 1.0
                batch = Batch.full(self.dataset.N)

            try:
                for node in NODE_NAMES:
                    directions = self.estimator.direction(node, work, batch, iteration)
                    step_size = 1.0 if node == "Z" else rho
                    try:
                        apply_update(work, node, directions, step_size, batch, iteration)
                    except np.linalg.LinAlgError as e:
                        raise NumericalFailureError(iteration, node, str(e))

                elbo = self.estimator.elbo(work, batch, iteration)
            except NumericalFailureError as e:
                with self._lock:
                    self._training_state.status = TrainingStatus.FAILED
                    self._training_state.failed_iteration = e.iteration
                    self._training_state.failed_parameter = e.parameter
                raise

            with self._lock:
                self._state = work
                self._training_state.iteration = iteration + 1
                self._training_state.learning_rate = rho
                self._training_state.elbo_history.append(elbo)
                if elbo >= self._best_elbo:
                    self._best_elbo = elbo
                    self._best_state = work

            logger.debug(f"Iteration {iteration}: ELBO={elbo:.6f}, rho={rho:.6f}")
            return elbo
        finally:
            self._step_guard.release()

    def _has_converged(self, opts: TrainingOptions) -> bool:
        window = opts.convergence_window
        history = self._training_state.elbo_history[self._configured_at:]
        if len(history) < window + 1:
            return False
        previous = history[-1 - window]
        change = abs(history[-1] - previous)
        if previous != 0:
            change /= abs(previous)
        return change < opts.tolerance

    def run(self, cancel_event: Optional[threading.Event] = None) -> TrainingResult:
        """Iterate until convergence, the iteration limit, failure or cancellation.

        Parameters
        ----------
        cancel_event : threading.Event, optional
            External cancellation flag, checked between iterations

        Returns
        -------
        TrainingResult
        """
        if self._running:
            raise RuntimeError("run() is already in progress")
        if self._options is None:
            self.configure()
        opts = self._options

        self._running = True
        self._cancel_event.clear()
        error = None
        start_time = time.time()

        with self._lock:
            self._training_state.status = TrainingStatus.RUNNING
            self._training_state.failed_iteration = None
            self._training_state.failed_parameter = None

        logger.info("=" * 60)
        logger.info(
            f"Training {self._state.num_factors} factors on {len(self.dataset.groups)} group(s) "
            f"x {len(self.dataset.views)} view(s) ({opts.mode} mode)"
        )

        try:
            while True:
                if self._cancel_event.is_set() or (cancel_event is not None and cancel_event.is_set()):
                    status = TrainingStatus.CANCELLED
                    logger.warning(
                        f"⚠️  Training cancelled after {self._training_state.iteration} iterations"
                    )
                    break

                if self._training_state.iteration - self._configured_at >= opts.max_iterations:
                    status = TrainingStatus.MAX_ITER_REACHED
                    logger.info(f"Reached max_iterations={opts.max_iterations} without converging")
                    break

                try:
                    elbo = self.step()
                except NumericalFailureError as e:
                    status = TrainingStatus.FAILED
                    error = e
                    logger.error(f"❌ {e}")
                    break

                completed = self._training_state.iteration - self._configured_at
                if completed % opts.log_every == 0:
                    logger.info(
                        f"Iteration {completed}: ELBO={elbo:.4f}, "
                        f"learning rate={self._training_state.learning_rate:.4f}"
                    )

                if self._has_converged(opts):
                    status = TrainingStatus.CONVERGED
                    logger.info(f"✅ Converged after {completed} iterations (ELBO={elbo:.4f})")
                    break
        except Exception as e:
            with self._lock:
                self._training_state.status = TrainingStatus.FAILED
            logger.error(f"❌ Training aborted at iteration {self._training_state.iteration}: {e}")
            raise
        finally:
            self._running = False

        with self._lock:
            self._training_state.status = status
            training_state = self._training_state.copy()
            final_state = self._best_state if status == TrainingStatus.CANCELLED else self._state
            best_state = self._best_state

        elapsed = time.time() - start_time
        logger.info(f"Training finished with status '{status.value}' in {elapsed:.1f}s")
        return TrainingResult(
            status=status,
            state=final_state,
            best_state=best_state,
            training_state=training_state,
            elapsed_seconds=elapsed,
            error=error,
        )

    def cancel(self) -> None:
        """Request cooperative cancellation; honoured before the next iteration."""
        self._cancel_event.set()

    # ------------------------------------------------------------------
    # Post-hoc factor selection
    # ------------------------------------------------------------------

    def subset_factors(self, keep: Iterable[int]) -> ModelState:
        """Keep only the given factors in the committed state.

        Raises
        ------
        InvalidFactorSetError
            If ``keep`` is empty or out of range
        RuntimeError
            If called while training is running
        """
        if self._running:
            raise RuntimeError("Cannot subset factors while training is running")
        with self._lock:
            subset = self._state.subset_factors(keep)
            self._state = subset
            self._best_state = subset
            self._best_elbo = -math.inf
            self.model_options = subset.options
        return subset
