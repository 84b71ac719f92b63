"""mofa-svi: variational inference for multi-group, multi-view factor models."""

__version__ = "0.1.0"
