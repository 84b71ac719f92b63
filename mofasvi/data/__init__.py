"""Data loading and generation modules."""

from .dataset import Dataset
from .synthetic import generate_synthetic_data

__all__ = ["Dataset", "generate_synthetic_data"]
