"""Variance explained, factor filtering and factor comparison.

All quantities are computed on observed entries of the centered data only.
For group g and view m the coefficient of determination of a set of factors
S is::

    r2 = 1 - sum_obs (y - sum_{k in S} z_k w_k) ** 2 / sum_obs y ** 2

``r2`` values are fractions in (-inf, 1], not percentages.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..core.error_handling import (
    DataInconsistencyError,
    InvalidConfigError,
    InvalidFactorSetError,
)

logger = logging.getLogger(__name__)

AGGREGATIONS = ("any", "all", "mean", "sum")


@dataclass(frozen=True)
class VarianceExplained:
    """r2 per (group, view, factor) and in total per (group, view).

    Attributes
    ----------
    r2_per_factor : np.ndarray
        Shape (G, M, K)
    r2_total : np.ndarray
        Shape (G, M), using all factors jointly
    groups, views : List[str]
    factors : List[int]
        Factor indices of the columns of ``r2_per_factor``
    """

    r2_per_factor: np.ndarray
    r2_total: np.ndarray
    groups: List[str]
    views: List[str]
    factors: List[int] = field(default_factory=list)

    def to_dataframe(self) -> pd.DataFrame:
        """Long table with columns group, view, factor, r2."""
        rows = []
        for gi, g in enumerate(self.groups):
            for mi, m in enumerate(self.views):
                for ki, k in enumerate(self.factors):
                    rows.append(
                        {"group": g, "view": m, "factor": k, "r2": float(self.r2_per_factor[gi, mi, ki])}
                    )
        return pd.DataFrame(rows, columns=["group", "view", "factor", "r2"])

    def total_dataframe(self) -> pd.DataFrame:
        """Total r2 as a groups x views table."""
        return pd.DataFrame(self.r2_total, index=self.groups, columns=self.views)


def _r2(Y: np.ndarray, mask: np.ndarray, prediction: np.ndarray) -> float:
    ss_tot = float(np.sum(np.where(mask, Y, 0.0) ** 2))
    if ss_tot == 0.0:
        return 0.0
    ss_res = float(np.sum(np.where(mask, Y - prediction, 0.0) ** 2))
    return 1.0 - ss_res / ss_tot


def calculate_variance_explained(state, dataset, factors: Optional[Sequence[int]] = None) -> VarianceExplained:
    """Compute r2 of each factor and of all selected factors jointly.

    Parameters
    ----------
    state : ModelState
        Trained model
    dataset : Dataset
        Data the model was trained on
    factors : Sequence[int], optional
        Factor indices to evaluate (default: all)

    Returns
    -------
    VarianceExplained
    """
    state.check_compatible(dataset)
    K = state.num_factors
    factors = list(range(K)) if factors is None else [int(k) for k in factors]
    for k in factors:
        if not 0 <= k < K:
            raise InvalidFactorSetError(f"Factor index {k} is out of range for {K} factors")

    Z = state.get_factors()
    W = state.get_weights()
    groups, views = dataset.groups, dataset.views

    r2_per_factor = np.zeros((len(groups), len(views), len(factors)))
    r2_total = np.zeros((len(groups), len(views)))
    for gi, g in enumerate(groups):
        for mi, m in enumerate(views):
            Y = dataset.Y(g, m)
            mask = dataset.mask(g, m)
            for ki, k in enumerate(factors):
                r2_per_factor[gi, mi, ki] = _r2(Y, mask, np.outer(Z[g][:, k], W[m][:, k]))
            r2_total[gi, mi] = _r2(Y, mask, Z[g][:, factors] @ W[m][:, factors].T)

    logger.debug(f"Total variance explained per (group, view):\n{r2_total}")
    return VarianceExplained(
        r2_per_factor=r2_per_factor,
        r2_total=r2_total,
        groups=groups,
        views=views,
        factors=factors,
    )


@dataclass(frozen=True)
class FactorFilterPolicy:
    """Rule for keeping factors based on their variance explained.

    Parameters
    ----------
    threshold : float
        Minimum r2 (fraction, not percent)
    inclusive : bool
        Keep factors exactly at the threshold (``>=``) instead of strictly
        above it (``>``)
    aggregation : str
        How the (group, view) values of one factor are combined: ``any`` or
        ``all`` (each value compared to the threshold), ``mean`` or ``sum``
        (the aggregate compared to the threshold)
    """

    threshold: float = 0.01
    inclusive: bool = False
    aggregation: str = "any"

    def __post_init__(self):
        if self.aggregation not in AGGREGATIONS:
            raise InvalidConfigError(
                f"aggregation must be one of {list(AGGREGATIONS)}, got {self.aggregation}"
            )
        if not np.isfinite(self.threshold):
            raise InvalidConfigError(f"threshold must be finite, got {self.threshold}")

    def passes(self, values: np.ndarray) -> np.ndarray:
        if self.inclusive:
            return values >= self.threshold
        return values > self.threshold


def select_factors(r2: VarianceExplained, policy: Optional[FactorFilterPolicy] = None) -> List[int]:
    """Factor indices (as listed in ``r2.factors``) that satisfy ``policy``."""
    policy = policy or FactorFilterPolicy()
    values = r2.r2_per_factor.reshape(-1, r2.r2_per_factor.shape[-1])

    if policy.aggregation == "any":
        keep = policy.passes(values).any(axis=0)
    elif policy.aggregation == "all":
        keep = policy.passes(values).all(axis=0)
    elif policy.aggregation == "mean":
        keep = policy.passes(values.mean(axis=0))
    else:
        keep = policy.passes(values.sum(axis=0))

    return [k for k, kept in zip(r2.factors, keep) if kept]


def filter_factors(state, dataset, policy: Optional[FactorFilterPolicy] = None):
    """Drop factors that explain too little variance.

    Returns
    -------
    ModelState
        State restricted to the kept factors

    Raises
    ------
    InvalidFactorSetError
        If no factor satisfies the policy
    """
    policy = policy or FactorFilterPolicy()
    r2 = calculate_variance_explained(state, dataset)
    keep = select_factors(r2, policy)
    if not keep:
        raise InvalidFactorSetError(
            f"No factor explains more than {policy.threshold} of the variance "
            f"(aggregation='{policy.aggregation}')"
        )
    logger.info(
        f"Keeping {len(keep)}/{state.num_factors} factors with r2 "
        f"{'>=' if policy.inclusive else '>'} {policy.threshold} ({policy.aggregation})"
    )
    return state.subset_factors(keep)


def _stacked_factors(state, groups: List[str]) -> np.ndarray:
    return np.concatenate([state.get_factors(g) for g in groups], axis=0)


def compare_factors(states: Sequence[Any], groups: Optional[List[str]] = None) -> Dict[Tuple[int, int], Dict[str, Any]]:
    """
    Absolute Pearson correlation between the factors of several models.

    Parameters
    ----------
    states : Sequence[ModelState]
        Models trained on the same samples
    groups : List[str], optional
        Groups whose samples are compared (default: all groups of the first model)

    Returns
    -------
    Dict keyed by model index pairs ``(i, j)`` with ``i < j``, each containing:
        - correlation_matrix: np.ndarray (K_i, K_j), absolute correlations
        - best_match: np.ndarray (K_i,), index of the most correlated factor of model j
        - max_abs_correlation: np.ndarray (K_i,), the matching correlation
    """
    if len(states) < 2:
        raise InvalidConfigError("compare_factors needs at least two models")

    groups = groups or states[0].groups
    for idx, state in enumerate(states):
        missing = [g for g in groups if g not in state.groups]
        if missing:
            raise DataInconsistencyError(f"Model {idx} has no group(s) {missing}")
        if any(state.N[g] != states[0].N[g] for g in groups):
            raise DataInconsistencyError(f"Model {idx} was trained on different samples")

    stacked = [_stacked_factors(state, groups) for state in states]
    results = {}
    for i in range(len(states)):
        for j in range(i + 1, len(states)):
            Ki = stacked[i].shape[1]
            corr = np.corrcoef(stacked[i].T, stacked[j].T)[:Ki, Ki:]
            corr = np.nan_to_num(np.abs(corr))
            results[(i, j)] = {
                "correlation_matrix": corr,
                "best_match": corr.argmax(axis=1),
                "max_abs_correlation": corr.max(axis=1),
            }
            logger.info(
                f"Models {i} vs {j}: mean best-match |r| = {corr.max(axis=1).mean():.3f}"
            )
    return results
