"""
Standard error handling patterns for mofa-svi.

Defines the exception taxonomy raised by model construction and training,
plus helpers for building standardized result dictionaries.
"""

from __future__ import annotations

# Standard library imports
import logging
import traceback
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class MOFAError(Exception):
    """Base exception for mofa-svi errors."""
    pass


class InvalidConfigError(MOFAError):
    """Raised when training or model hyperparameters are malformed.

    Always raised before any iteration runs.
    """
    pass


class InvalidFactorSetError(MOFAError):
    """Raised when a post-hoc factor subset request is empty or out of range."""
    pass


class DataInconsistencyError(MOFAError):
    """Raised when sample/feature identifiers or dimensions disagree.

    Detected at dataset or model construction time, never during training.
    """
    pass


class NumericalFailureError(MOFAError):
    """Raised when a training step produces a non-finite ELBO or direction.

    Attributes
    ----------
    iteration : int
        0-indexed iteration at which the failure happened
    parameter : str
        Name of the implicated variational parameter (or "ELBO")
    """

    def __init__(self, iteration: int, parameter: str, detail: str = ""):
        self.iteration = iteration
        self.parameter = parameter
        self.detail = detail
        message = f"Numerical failure at iteration {iteration} in '{parameter}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


def create_error_result(
    error: Exception,
    context: str = "",
    additional_fields: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Create a standardized error result dictionary.

    Args:
        error: The exception that occurred
        context: Additional context about where/why error occurred
        additional_fields: Optional additional fields to include

    Returns:
        Standardized error dictionary with status, error message, and context
    """
    result = {
        "status": "failed",
        "error": str(error),
        "error_type": type(error).__name__,
    }

    if context:
        result["error_context"] = context

    if isinstance(error, NumericalFailureError):
        result["failed_iteration"] = error.iteration
        result["failed_parameter"] = error.parameter

    if additional_fields:
        result.update(additional_fields)

    return result


def log_and_return_error(
    error: Exception,
    logger_instance: logging.Logger,
    context: str = "",
    log_level: str = "error",
    include_traceback: bool = False,
    additional_fields: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Log an error and return standardized error dictionary.

    Args:
        error: The exception that occurred
        logger_instance: Logger to use for logging
        context: Additional context about the error
        log_level: Logging level ('error', 'warning', 'info')
        include_traceback: Whether to include full traceback in log
        additional_fields: Optional additional fields for result dict

    Returns:
        Standardized error dictionary
    """
    if context:
        message = f"{context}: {error}"
    else:
        message = str(error)

    log_func = getattr(logger_instance, log_level.lower())

    if include_traceback:
        log_func(f"❌ {message}\n{traceback.format_exc()}")
    else:
        log_func(f"❌ {message}")

    return create_error_result(error, context, additional_fields)


SUCCESS_RESULT_TEMPLATE = {
    "status": "completed",
}


def create_success_result(**kwargs) -> Dict[str, Any]:
    """
    Create a standardized success result dictionary.

    Args:
        **kwargs: Additional fields to include in result

    Returns:
        Dictionary with status='completed' and additional fields
    """
    result = SUCCESS_RESULT_TEMPLATE.copy()
    result.update(kwargs)
    return result
