"""IO utilities for consistent file operations."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


def save_json(data: Any, filepath: Union[str, Path], indent: int = 2) -> None:
    """
    Save data to JSON file with consistent formatting.

    Parameters
    ----------
    data : Any
        Data to save (must be JSON serializable)
    filepath : Union[str, Path]
        Output file path
    indent : int, optional
        JSON indentation level
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    try:
        with open(filepath, "w") as f:
            json.dump(data, f, indent=indent, default=str)
        logger.debug(f"Saved JSON to {filepath}")
    except Exception as e:
        logger.error(f"Failed to save JSON to {filepath}: {e}")
        raise


def load_json(filepath: Union[str, Path]) -> Any:
    """
    Load data from JSON file.

    Parameters
    ----------
    filepath : Union[str, Path]
        Input file path

    Returns
    -------
    Any
        Loaded data
    """
    filepath = Path(filepath)
    try:
        with open(filepath, "r") as f:
            data = json.load(f)
        logger.debug(f"Loaded JSON from {filepath}")
        return data
    except Exception as e:
        logger.error(f"Failed to load JSON from {filepath}: {e}")
        raise


def save_csv(
    df: pd.DataFrame, filepath: Union[str, Path], index: bool = False, **kwargs
) -> None:
    """
    Save DataFrame to CSV with consistent formatting.

    Parameters
    ----------
    df : pd.DataFrame
        DataFrame to save
    filepath : Union[str, Path]
        Output file path
    index : bool, optional
        Whether to save index
    **kwargs
        Additional arguments for to_csv
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    try:
        df.to_csv(filepath, index=index, **kwargs)
        logger.debug(f"Saved CSV to {filepath}")
    except Exception as e:
        logger.error(f"Failed to save CSV to {filepath}: {e}")
        raise


def load_table(filepath: Union[str, Path], **kwargs) -> pd.DataFrame:
    """
    Load a delimited text table (CSV, or TSV when the suffix is .tsv/.txt).

    Parameters
    ----------
    filepath : Union[str, Path]
        Input file path
    **kwargs
        Additional arguments for read_csv

    Returns
    -------
    pd.DataFrame
        Loaded DataFrame
    """
    filepath = Path(filepath)
    if filepath.suffix in (".tsv", ".txt"):
        kwargs.setdefault("sep", "\t")
    try:
        df = pd.read_csv(filepath, **kwargs)
        logger.debug(f"Loaded table from {filepath}")
        return df
    except Exception as e:
        logger.error(f"Failed to load table from {filepath}: {e}")
        raise


def save_arrays(
    arrays: Dict[str, np.ndarray], filepath: Union[str, Path], max_size_mb: int = 500
) -> Path:
    """
    Save a mapping of named arrays to a compressed ``.npz`` file.

    Parameters
    ----------
    arrays : Dict[str, np.ndarray]
        Arrays to save, keyed by name
    filepath : Union[str, Path]
        Output file path (the ``.npz`` suffix is enforced)
    max_size_mb : int, optional
        Total size in MB above which a warning is logged (default: 500)

    Returns
    -------
    Path
        The path actually written
    """
    filepath = Path(filepath)
    if filepath.suffix != ".npz":
        filepath = filepath.with_suffix(".npz")
    filepath.parent.mkdir(parents=True, exist_ok=True)

    total_mb = sum(np.asarray(a).nbytes for a in arrays.values()) / (1024 * 1024)
    if total_mb > max_size_mb:
        logger.warning(f"Large model detected: {total_mb:.1f}MB > {max_size_mb}MB limit for {filepath}")

    try:
        np.savez_compressed(filepath, **{k: np.asarray(v) for k, v in arrays.items()})
        logger.debug(f"Saved {len(arrays)} arrays to {filepath}")
    except Exception as e:
        logger.error(f"Failed to save arrays to {filepath}: {e}")
        raise
    return filepath


def load_arrays(filepath: Union[str, Path]) -> Dict[str, np.ndarray]:
    """
    Load every array stored in an ``.npz`` file.

    Parameters
    ----------
    filepath : Union[str, Path]
        Input file path

    Returns
    -------
    Dict[str, np.ndarray]
        Arrays keyed by name
    """
    filepath = Path(filepath)
    try:
        with np.load(filepath, allow_pickle=False) as data:
            arrays = {key: data[key] for key in data.files}
        logger.debug(f"Loaded {len(arrays)} arrays from {filepath}")
        return arrays
    except Exception as e:
        logger.error(f"Failed to load arrays from {filepath}: {e}")
        raise
