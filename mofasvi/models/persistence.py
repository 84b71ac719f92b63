"""Saving and loading trained models.

A model is stored as two files sharing a stem:

- ``<stem>.npz``: every variational parameter (compressed NumPy archive)
- ``<stem>.json``: names, dimensions, priors, ELBO history and status
"""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..core.config_schema import ModelOptions, TrainingOptions
from ..core.config_utils import safe_get
from ..core.error_handling import DataInconsistencyError
from ..core.io_utils import load_arrays, load_json, save_arrays, save_json
from .backends import ComputeBackend, create_backend
from .model_state import ModelState
from .training import TrainingState

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


@dataclass(frozen=True)
class TrainedModel:
    """A model read back from disk."""

    state: ModelState
    training_state: TrainingState
    metadata: Dict[str, Any]

    @property
    def samples(self) -> Dict[str, Any]:
        return safe_get(self.metadata, "samples", default={})

    @property
    def features(self) -> Dict[str, Any]:
        return safe_get(self.metadata, "features", default={})

    def intercepts(self, group: str, view: str) -> Optional[List[float]]:
        """Feature means removed from (group, view) before training, if stored."""
        return safe_get(self.metadata, "intercepts", group, view)


def save_model(
    path: Union[str, Path],
    state: ModelState,
    training_state: TrainingState,
    dataset=None,
    training_options: Optional[TrainingOptions] = None,
) -> Dict[str, Path]:
    """
    Persist a trained model.

    Parameters
    ----------
    path : Union[str, Path]
        Output path; the suffix is replaced by ``.npz`` and ``.json``
    state : ModelState
        Variational parameters to store
    training_state : TrainingState
        ELBO history and status
    dataset : Dataset, optional
        When given, sample and feature names and intercepts are stored too
    training_options : TrainingOptions, optional
        Options of the run, stored for reference

    Returns
    -------
    Dict[str, Path]
        Paths of the written ``arrays`` and ``metadata`` files
    """
    path = Path(path)
    arrays_path = save_arrays(state.to_arrays(), path.with_suffix(".npz"))

    metadata: Dict[str, Any] = {
        "format_version": FORMAT_VERSION,
        "groups": state.groups,
        "views": state.views,
        "N": state.N,
        "D": state.D,
        "num_factors": state.num_factors,
        "model_options": asdict(state.options),
        "training_state": training_state.to_dict(),
        "backend": state.backend.name,
    }
    if training_options is not None:
        metadata["training_options"] = asdict(training_options)
    if dataset is not None:
        metadata["samples"] = {g: dataset.samples(g) for g in dataset.groups}
        metadata["features"] = {m: dataset.features(m) for m in dataset.views}
        metadata["intercepts"] = {
            g: {m: dataset.intercepts[g][m].tolist() for m in dataset.views}
            for g in dataset.groups
        }

    metadata_path = path.with_suffix(".json")
    save_json(metadata, metadata_path)
    logger.info(f"✅ Saved model ({state.num_factors} factors) to {arrays_path}")
    return {"arrays": arrays_path, "metadata": metadata_path}


def load_model(
    path: Union[str, Path], backend: Optional[ComputeBackend] = None
) -> TrainedModel:
    """
    Read a model written by ``save_model``.

    Parameters
    ----------
    path : Union[str, Path]
        Path of either file, or their common stem
    backend : ComputeBackend, optional
        Backend for the restored state (NumPy when omitted)

    Returns
    -------
    TrainedModel
    """
    path = Path(path)
    metadata = load_json(path.with_suffix(".json"))
    if metadata.get("format_version") != FORMAT_VERSION:
        raise DataInconsistencyError(
            f"Unsupported model format version: {metadata.get('format_version')}"
        )

    arrays = load_arrays(path.with_suffix(".npz"))
    backend = backend or create_backend("numpy")
    state = ModelState.from_arrays(
        backend,
        arrays,
        samples_per_group={g: metadata["N"][g] for g in metadata["groups"]},
        features_per_view={m: metadata["D"][m] for m in metadata["views"]},
        num_factors=metadata["num_factors"],
        options=ModelOptions(**metadata["model_options"]),
    )
    training_state = TrainingState.from_dict(metadata["training_state"])
    logger.info(f"Loaded model with {state.num_factors} factors from {path.with_suffix('.npz')}")
    return TrainedModel(state=state, training_state=training_state, metadata=metadata)
