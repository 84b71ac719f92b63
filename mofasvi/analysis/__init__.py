"""Analysis of trained models."""

from .variance_explained import (
    FactorFilterPolicy,
    VarianceExplained,
    calculate_variance_explained,
    compare_factors,
    filter_factors,
    select_factors,
)

__all__ = [
    "FactorFilterPolicy",
    "VarianceExplained",
    "calculate_variance_explained",
    "compare_factors",
    "filter_factors",
    "select_factors",
]
