"""Synthetic data generation module."""

import logging
from typing import Any, Dict, List, Sequence, Union

import jax
import numpy as np
import pandas as pd
from numpyro.infer import Predictive

from ..core.error_handling import InvalidConfigError
from .dataset import LONG_FORMAT_COLUMNS
from ..models.generative import mofa_model

logger = logging.getLogger(__name__)

# ARD precision of a factor that is switched off in a view
INACTIVE_ALPHA = 1e6


def _per_item(value: Union[int, Sequence[int]], count: int, name: str) -> List[int]:
    if isinstance(value, (int, np.integer)):
        return [int(value)] * count
    values = [int(v) for v in value]
    if len(values) != count:
        raise InvalidConfigError(f"{name} must have {count} entries, got {len(values)}")
    return values


def generate_synthetic_data(
    n_groups: int = 2,
    n_views: int = 2,
    n_samples: Union[int, Sequence[int]] = 100,
    n_features: Union[int, Sequence[int]] = 50,
    num_factors: int = 5,
    missing_fraction: float = 0.0,
    missing_sample_fraction: float = 0.0,
    noise_precision: Union[float, Sequence[float]] = 1.0,
    seed: int = 42,
) -> Dict[str, Any]:
    """
    Generate synthetic multi-group, multi-view data with known factors.

    Every factor is active in a random nonempty subset of views; in the other
    views its loadings are shrunk to (numerically) zero through a large ARD
    precision. Data are drawn from ``mofa_model`` with
    ``numpyro.infer.Predictive``.

    Parameters
    ----------
    n_groups, n_views : int
        Number of sample groups and feature views
    n_samples : int or sequence of int
        Samples per group
    n_features : int or sequence of int
        Features per view
    num_factors : int
        True number of latent factors
    missing_fraction : float
        Fraction of entries set to NaN uniformly at random
    missing_sample_fraction : float
        Fraction of samples per (group, view) whose whole row is missing
    noise_precision : float or sequence of float
        Noise precision per view
    seed : int
        Seed for the factor activity pattern, missingness and the NumPyro draw

    Returns
    -------
    Dict containing the long-format table, the matrices and the ground truth
    """
    if n_groups < 1 or n_views < 1 or num_factors < 1:
        raise InvalidConfigError("n_groups, n_views and num_factors must all be >= 1")
    for name, value in (
        ("missing_fraction", missing_fraction),
        ("missing_sample_fraction", missing_sample_fraction),
    ):
        if not 0.0 <= value < 1.0:
            raise InvalidConfigError(f"{name} must be in [0, 1), got {value}")

    N = _per_item(n_samples, n_groups, "n_samples")
    D = _per_item(n_features, n_views, "n_features")
    if isinstance(noise_precision, (int, float)):
        tau = np.full(n_views, float(noise_precision))
    else:
        tau = np.asarray(noise_precision, dtype=float)
        if tau.shape != (n_views,):
            raise InvalidConfigError(f"noise_precision must have {n_views} entries")

    logger.info(
        f"Generating synthetic data: {n_groups} group(s) x {n_views} view(s), "
        f"N={N}, D={D}, K={num_factors}"
    )

    rng = np.random.RandomState(seed)

    # Factor activity: every factor active in at least one view
    active = rng.rand(n_views, num_factors) < 0.5
    for k in range(num_factors):
        if not active[:, k].any():
            active[rng.randint(n_views), k] = True
    alpha = np.where(active, 1.0, INACTIVE_ALPHA)

    group_names = [f"group{g + 1}" for g in range(n_groups)]
    view_names = [f"view{m + 1}" for m in range(n_views)]

    return_sites = (
        [f"Z{g + 1}" for g in range(n_groups)]
        + [f"W{m + 1}" for m in range(n_views)]
        + [f"Y{g + 1}_{m + 1}" for g in range(n_groups) for m in range(n_views)]
    )
    predictive = Predictive(mofa_model, num_samples=1, return_sites=return_sites)
    draws = predictive(
        jax.random.PRNGKey(seed),
        n_samples=N,
        n_features=D,
        num_factors=num_factors,
        alpha=alpha,
        tau=tau,
    )
    draws = {site: np.asarray(value[0]) for site, value in draws.items()}

    samples = {
        g: [f"{g}_sample{i:03d}" for i in range(N[gi])] for gi, g in enumerate(group_names)
    }
    features = {
        m: [f"{m}_feature{j:03d}" for j in range(D[mi])] for mi, m in enumerate(view_names)
    }

    matrices: Dict[str, Dict[str, pd.DataFrame]] = {}
    frames = []
    for gi, g in enumerate(group_names):
        matrices[g] = {}
        for mi, m in enumerate(view_names):
            Y = draws[f"Y{gi + 1}_{mi + 1}"].astype(np.float64)

            if missing_fraction > 0:
                Y[rng.rand(*Y.shape) < missing_fraction] = np.nan
            n_missing_rows = int(round(missing_sample_fraction * N[gi]))
            if n_missing_rows > 0:
                Y[rng.choice(N[gi], n_missing_rows, replace=False), :] = np.nan

            frame = pd.DataFrame(Y, index=samples[g], columns=features[m])
            matrices[g][m] = frame

            long = frame.rename_axis("sample").reset_index().melt(
                id_vars="sample", var_name="feature", value_name="value"
            )
            long["group"] = g
            long["view"] = m
            frames.append(long)

    data = pd.concat(frames, ignore_index=True)[LONG_FORMAT_COLUMNS]
    n_missing = int(data["value"].isna().sum())
    logger.info(f"  ✓ Generated {len(data)} entries ({n_missing} missing)")

    return {
        "data": data,
        "matrices": matrices,
        "group_names": group_names,
        "view_names": view_names,
        "samples": samples,
        "features": features,
        "meta": {
            "dataset": "synthetic",
            "N": N,
            "D": D,
            "K_true": num_factors,
            "missing_fraction": missing_fraction,
            "missing_sample_fraction": missing_sample_fraction,
            "seed": seed,
        },
        "ground_truth": {
            "Z": {g: draws[f"Z{gi + 1}"] for gi, g in enumerate(group_names)},
            "W": {m: draws[f"W{mi + 1}"] for mi, m in enumerate(view_names)},
            "alpha": alpha,
            "tau": tau,
            "active": active,
            "K_true": num_factors,
        },
    }
