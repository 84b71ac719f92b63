"""
Core functionality shared by the whole package.

- error_handling.py: exception taxonomy and result dictionaries
- config_schema.py / config_utils.py: validated, immutable run configuration
- logger_utils.py: logging setup
- io_utils.py: JSON, table and array files
- run_training.py: command-line training pipeline
"""

from . import config_schema, config_utils, error_handling, io_utils, logger_utils

__all__ = ["config_schema", "config_utils", "error_handling", "io_utils", "logger_utils"]
