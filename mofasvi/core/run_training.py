#!/usr/bin/env python
"""
Command-line training pipeline.

Loads a long-format table (or simulates data), builds the validated run
configuration, trains the model, reports variance explained and writes the
trained model to disk.
"""

import argparse
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..analysis.variance_explained import calculate_variance_explained
from ..data.dataset import Dataset
from ..data.synthetic import generate_synthetic_data
from ..models.backends import create_backend
from ..models.persistence import save_model
from ..models.training import TrainingController, TrainingStatus
from .config_schema import ConfigurationValidator, RunConfiguration
from .config_utils import load_config_dict, save_config, update_config_safely
from .error_handling import (
    DataInconsistencyError,
    InvalidConfigError,
    MOFAError,
    create_success_result,
    log_and_return_error,
)
from .io_utils import load_table, save_csv
from .logger_utils import LoggerProtocol, configure_logging, ensure_logger

logger = logging.getLogger(__name__)


def run_mofa(
    dataset: Dataset,
    config: Optional[Union[RunConfiguration, Dict[str, Any]]] = None,
    output_path: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
    logger_instance: Optional[LoggerProtocol] = None,
) -> Dict[str, Any]:
    """
    Train a model on ``dataset`` and return a result dictionary.

    Parameters
    ----------
    dataset : Dataset
        Training data
    config : RunConfiguration or dict, optional
        Validated configuration, or a raw mapping merged with the defaults
    output_path : str, optional
        Where to save the trained model (``.npz`` plus ``.json`` sidecar)
    cancel_event : threading.Event, optional
        Cooperative cancellation flag
    logger_instance : LoggerProtocol, optional
        Logger for pipeline messages

    Returns
    -------
    Dict[str, Any]
        ``status='completed'`` with the training outcome, or
        ``status='failed'`` with error details
    """
    log = ensure_logger(logger_instance, __name__)

    try:
        if not isinstance(config, RunConfiguration):
            config = ConfigurationValidator.build(config or {})

        backend = create_backend(config.system.backend, config.system.device)
        controller = TrainingController(
            dataset,
            model_options=config.model,
            backend=backend,
            seed=config.training.seed,
            n_jobs=config.system.n_jobs,
        )
        controller.configure(config.training)
        result = controller.run(cancel_event=cancel_event)
    except MOFAError as e:
        return log_and_return_error(e, log, context="MOFA training")

    history = result.training_state.elbo_history
    if result.status == TrainingStatus.FAILED:
        return log_and_return_error(
            result.error,
            log,
            context="MOFA training",
            additional_fields={
                "training_status": result.status.value,
                "iterations": result.training_state.iteration,
                "elbo_history": history,
            },
        )

    r2 = calculate_variance_explained(result.state, dataset)
    log.info(f"Variance explained (groups x views):\n{r2.total_dataframe().round(3).to_string()}")

    paths = {}
    if output_path:
        paths = save_model(
            output_path,
            result.state,
            result.training_state,
            dataset=dataset,
            training_options=config.training,
        )
        stem = Path(output_path).with_suffix("")
        paths["variance_explained"] = Path(f"{stem}_variance_explained.csv")
        save_csv(r2.to_dataframe(), paths["variance_explained"])
        paths["config"] = Path(f"{stem}_config.yaml")
        save_config(config, paths["config"])

    return create_success_result(
        training_status=result.status.value,
        iterations=result.training_state.iteration,
        final_elbo=history[-1] if history else None,
        elbo_history=history,
        num_factors=result.state.num_factors,
        variance_explained=r2.to_dataframe(),
        elapsed_seconds=result.elapsed_seconds,
        output_files={k: str(v) for k, v in paths.items()},
        state=result.state,
    )


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Train a multi-group, multi-view factor model with (stochastic) variational inference"
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--data", help="Long-format CSV/TSV with columns sample, group, feature, view, value"
    )
    source.add_argument(
        "--simulate", action="store_true", help="Train on simulated data instead of a file"
    )
    parser.add_argument("--config", default=None, help="YAML configuration file")
    parser.add_argument(
        "--output", default="results/model.npz", help="Output path of the trained model"
    )
    parser.add_argument(
        "--num-factors", type=int, default=None, help="Number of latent factors (overrides config)"
    )
    parser.add_argument(
        "--stochastic",
        action="store_const",
        const="stochastic",
        dest="mode",
        default=None,
        help="Use stochastic variational inference",
    )
    parser.add_argument(
        "--batch-size",
        type=float,
        default=None,
        help="Fraction of samples per group in each batch (stochastic mode only)",
    )
    parser.add_argument("--learning-rate", type=float, default=None, help="Initial learning rate")
    parser.add_argument("--forgetting-rate", type=float, default=None, help="Learning-rate decay")
    parser.add_argument("--max-iterations", type=int, default=None, help="Maximum iterations")
    parser.add_argument(
        "--convergence-mode", choices=["fast", "medium", "slow"], default=None,
        help="Convergence tolerance preset",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--backend", choices=["numpy", "jax"], default=None, help="Compute backend")
    parser.add_argument("--device", choices=["cpu", "gpu"], default=None, help="Device (jax only)")
    parser.add_argument("--log-level", default=None, help="Logging level")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main training pipeline."""
    args = _parse_args(argv)
    configure_logging("INFO")

    try:
        config_dict = load_config_dict(args.config) if args.config else {}
        config_dict = update_config_safely(
            config_dict,
            {
                "model": {"num_factors": args.num_factors},
                "training": {
                    "mode": args.mode,
                    "batch_fraction": args.batch_size,
                    "learning_rate": args.learning_rate,
                    "forgetting_rate": args.forgetting_rate,
                    "max_iterations": args.max_iterations,
                    "convergence_mode": args.convergence_mode,
                    "seed": args.seed,
                },
                "system": {
                    "backend": args.backend,
                    "device": args.device,
                    "log_level": args.log_level,
                },
            },
        )
        config = ConfigurationValidator.build(config_dict)
    except (InvalidConfigError, OSError) as e:
        logger.error(f"❌ Configuration validation failed: {e}")
        return 1

    configure_logging(config.system.log_level)
    logger.info("=" * 80)
    logger.info("MOFA TRAINING PIPELINE")
    logger.info("=" * 80)

    try:
        if args.simulate:
            sim = generate_synthetic_data(
                num_factors=config.model.num_factors,
                seed=config.training.seed if config.training.seed is not None else 42,
            )
            data = sim["data"]
        else:
            data = load_table(args.data)
        dataset = Dataset.from_long(data, center_features=config.data.center_features)
    except (DataInconsistencyError, InvalidConfigError, OSError) as e:
        logger.error(f"❌ Could not load data: {e}")
        return 1

    logger.info(f"Dataset:\n{dataset.summary().to_string(index=False)}")

    result = run_mofa(dataset, config, output_path=args.output)
    if result["status"] != "completed":
        return 1

    final_elbo = result["final_elbo"]
    logger.info(
        f"✅ Training {result['training_status']} after {result['iterations']} iterations"
        + (f", final ELBO {final_elbo:.4f}" if final_elbo is not None else "")
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
