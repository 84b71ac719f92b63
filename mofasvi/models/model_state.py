"""Variational model state for the multi-group, multi-view factor model.

The approximate posterior factorises over four node families:

- ``Z[group]``: one Gaussian ``N(mean_n, cov_n)`` per sample (K x K blocks)
- ``W[view]``: one Gaussian ``N(mean_d, cov_d)`` per feature (K x K blocks)
- ``AlphaW[view]``: Gamma ARD precision per factor
- ``Tau[(group, view)]``: Gamma noise precision per feature

Nodes are immutable value objects. ``ModelState`` owns them, enforces the
shared factor count and dimensions on every assignment, and is copied
(shallowly, since nodes are never mutated) whenever a training step
prepares an update.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional

import numpy as np

from ..core.config_schema import ModelOptions
from ..core.error_handling import DataInconsistencyError, InvalidFactorSetError
from .backends import ComputeBackend

logger = logging.getLogger(__name__)

NODE_NAMES = ("Z", "W", "AlphaW", "Tau")


@dataclass(frozen=True)
class GaussianNode:
    """Row-wise multivariate Gaussian factors.

    Stores both natural parameters (``precision``, ``h = precision @ mean``)
    and moments (``mean``, ``cov``); natural parameters are what the
    stochastic updates move along.
    """

    precision: Any
    h: Any
    mean: Any
    cov: Any

    @classmethod
    def from_natural(cls, backend: ComputeBackend, precision, h) -> "GaussianNode":
        cov = backend.inv(precision)
        mean = backend.einsum("nkl,nl->nk", cov, h)
        return cls(precision=precision, h=h, mean=mean, cov=cov)

    @classmethod
    def from_moments(cls, backend: ComputeBackend, mean, cov) -> "GaussianNode":
        precision = backend.inv(cov)
        h = backend.einsum("nkl,nl->nk", precision, mean)
        return cls(precision=precision, h=h, mean=mean, cov=cov)

    @property
    def n_rows(self) -> int:
        return int(self.mean.shape[0])

    @property
    def num_factors(self) -> int:
        return int(self.mean.shape[1])

    def second_moment(self, backend: ComputeBackend):
        """E[x x^T] per row, shape (n, K, K)."""
        return self.cov + backend.outer(self.mean)

    def rows(self, backend: ComputeBackend, rows) -> "GaussianNode":
        return GaussianNode(
            precision=backend.take(self.precision, rows),
            h=backend.take(self.h, rows),
            mean=backend.take(self.mean, rows),
            cov=backend.take(self.cov, rows),
        )

    def with_rows(self, backend: ComputeBackend, rows, update: "GaussianNode") -> "GaussianNode":
        """Return a node where ``rows`` are replaced by ``update``."""
        return GaussianNode(
            precision=backend.scatter(self.precision, rows, update.precision),
            h=backend.scatter(self.h, rows, update.h),
            mean=backend.scatter(self.mean, rows, update.mean),
            cov=backend.scatter(self.cov, rows, update.cov),
        )

    def subset(self, backend: ComputeBackend, keep: List[int]) -> "GaussianNode":
        mean = backend.take(self.mean, keep, axis=1)
        cov = backend.take(backend.take(self.cov, keep, axis=1), keep, axis=2)
        return GaussianNode.from_moments(backend, mean, cov)


@dataclass(frozen=True)
class GammaNode:
    """Elementwise Gamma(a, b) factors (shape/rate)."""

    a: Any
    b: Any

    def expectation(self):
        return self.a / self.b

    def log_expectation(self, backend: ComputeBackend):
        return backend.digamma(self.a) - backend.log(self.b)

    def subset(self, backend: ComputeBackend, keep: List[int]) -> "GammaNode":
        return GammaNode(a=backend.take(self.a, keep), b=backend.take(self.b, keep))


class ModelState:
    """Aggregate of all variational nodes for one model.

    Parameters
    ----------
    backend : ComputeBackend
        Array backend the node arrays live on
    samples_per_group : Dict[str, int]
        N_g for every group, in group order
    features_per_view : Dict[str, int]
        D_m for every view, in view order
    num_factors : int
        K, fixed for the lifetime of a training run
    options : ModelOptions
        Prior hyperparameters
    """

    def __init__(
        self,
        backend: ComputeBackend,
        samples_per_group: Dict[str, int],
        features_per_view: Dict[str, int],
        num_factors: int,
        options: Optional[ModelOptions] = None,
    ):
        if num_factors < 1:
            raise InvalidFactorSetError("A model needs at least one factor")
        self.backend = backend
        self._N = dict(samples_per_group)
        self._D = dict(features_per_view)
        self._K = int(num_factors)
        self.options = options or ModelOptions(num_factors=num_factors)
        self._nodes: Dict[str, Dict[Any, Any]] = {name: {} for name in NODE_NAMES}

    # ------------------------------------------------------------------
    # Dimensions
    # ------------------------------------------------------------------

    @property
    def groups(self) -> List[str]:
        return list(self._N.keys())

    @property
    def views(self) -> List[str]:
        return list(self._D.keys())

    @property
    def num_factors(self) -> int:
        return self._K

    @property
    def N(self) -> Dict[str, int]:
        return dict(self._N)

    @property
    def D(self) -> Dict[str, int]:
        return dict(self._D)

    def keys(self, name: str) -> List[Any]:
        """Node keys of a family, in canonical order."""
        if name == "Z":
            return self.groups
        if name in ("W", "AlphaW"):
            return self.views
        if name == "Tau":
            return [(g, m) for g in self.groups for m in self.views]
        raise KeyError(f"Unknown node '{name}', expected one of {NODE_NAMES}")

    # ------------------------------------------------------------------
    # Node access
    # ------------------------------------------------------------------

    def get_node(self, name: str, key: Any):
        try:
            return self._nodes[name][key]
        except KeyError:
            raise KeyError(f"Model state has no node {name}[{key}]")

    def set_node(self, name: str, key: Any, node) -> None:
        """Assign a node after checking it matches the model dimensions."""
        if key not in self.keys(name):
            raise DataInconsistencyError(f"{name} has no entry for {key!r}")

        if name in ("Z", "W"):
            expected_rows = self._N[key] if name == "Z" else self._D[key]
            if tuple(node.mean.shape) != (expected_rows, self._K) or tuple(
                node.cov.shape
            ) != (expected_rows, self._K, self._K):
                raise DataInconsistencyError(
                    f"{name}[{key}] must have {expected_rows} rows and {self._K} factors, "
                    f"got mean {tuple(node.mean.shape)}"
                )
        elif name == "AlphaW":
            if tuple(node.a.shape) != (self._K,) or tuple(node.b.shape) != (self._K,):
                raise DataInconsistencyError(
                    f"AlphaW[{key}] must have {self._K} entries, got {tuple(node.a.shape)}"
                )
        else:
            view = key[1]
            if tuple(node.a.shape) != (self._D[view],) or tuple(node.b.shape) != (self._D[view],):
                raise DataInconsistencyError(
                    f"Tau[{key}] must have {self._D[view]} entries, got {tuple(node.a.shape)}"
                )
        self._nodes[name][key] = node

    def is_complete(self) -> bool:
        return all(
            key in self._nodes[name] for name in NODE_NAMES for key in self.keys(name)
        )

    def copy(self) -> "ModelState":
        """Shallow copy: node objects are immutable and shared."""
        clone = ModelState(self.backend, self._N, self._D, self._K, self.options)
        for name in NODE_NAMES:
            clone._nodes[name] = dict(self._nodes[name])
        return clone

    def check_compatible(self, dataset) -> None:
        """Raise ``DataInconsistencyError`` unless the dataset matches the state dims."""
        if dataset.N != self._N or dataset.D != self._D:
            raise DataInconsistencyError(
                f"Dataset dimensions N={dataset.N}, D={dataset.D} do not match "
                f"model dimensions N={self._N}, D={self._D}"
            )

    # ------------------------------------------------------------------
    # Read-back accessors (NumPy)
    # ------------------------------------------------------------------

    def get_factors(self, group: Optional[str] = None):
        """Posterior means of Z, for one group or all groups."""
        if group is not None:
            return self.backend.to_numpy(self.get_node("Z", group).mean)
        return {g: self.get_factors(g) for g in self.groups}

    def get_weights(self, view: Optional[str] = None):
        """Posterior means of W, for one view or all views."""
        if view is not None:
            return self.backend.to_numpy(self.get_node("W", view).mean)
        return {m: self.get_weights(m) for m in self.views}

    # ------------------------------------------------------------------
    # Post-hoc factor selection
    # ------------------------------------------------------------------

    def subset_factors(self, keep: Iterable[int]) -> "ModelState":
        """Project Z, W and AlphaW onto the kept factor columns.

        Parameters
        ----------
        keep : Iterable[int]
            0-indexed factor indices; duplicates are ignored and the
            original factor order is preserved

        Returns
        -------
        ModelState
            New state with ``len(set(keep))`` factors; this state is untouched

        Raises
        ------
        InvalidFactorSetError
            If ``keep`` is empty or references an index outside ``[0, K)``
        """
        keep_list = list(keep)
        if not keep_list:
            raise InvalidFactorSetError("Factor subset is empty")
        for k in keep_list:
            if not isinstance(k, (int, np.integer)) or isinstance(k, bool):
                raise InvalidFactorSetError(f"Factor index {k!r} is not an integer")
            if not 0 <= int(k) < self._K:
                raise InvalidFactorSetError(
                    f"Factor index {k} is out of range for a model with {self._K} factors"
                )
        keep_list = sorted({int(k) for k in keep_list})

        subset = ModelState(
            self.backend,
            self._N,
            self._D,
            len(keep_list),
            replace(self.options, num_factors=len(keep_list)),
        )
        for g in self.groups:
            subset.set_node("Z", g, self.get_node("Z", g).subset(self.backend, keep_list))
        for m in self.views:
            subset.set_node("W", m, self.get_node("W", m).subset(self.backend, keep_list))
            subset.set_node(
                "AlphaW", m, self.get_node("AlphaW", m).subset(self.backend, keep_list)
            )
        for key in self.keys("Tau"):
            subset.set_node("Tau", key, self.get_node("Tau", key))

        logger.info(f"Kept {len(keep_list)} of {self._K} factors: {keep_list}")
        return subset

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_arrays(self) -> Dict[str, np.ndarray]:
        """Flatten all variational parameters into index-keyed NumPy arrays."""
        to_numpy = self.backend.to_numpy
        arrays: Dict[str, np.ndarray] = {}
        for i, g in enumerate(self.groups):
            node = self.get_node("Z", g)
            arrays[f"Z_{i}_mean"] = to_numpy(node.mean)
            arrays[f"Z_{i}_cov"] = to_numpy(node.cov)
        for j, m in enumerate(self.views):
            node = self.get_node("W", m)
            arrays[f"W_{j}_mean"] = to_numpy(node.mean)
            arrays[f"W_{j}_cov"] = to_numpy(node.cov)
            alpha = self.get_node("AlphaW", m)
            arrays[f"AlphaW_{j}_a"] = to_numpy(alpha.a)
            arrays[f"AlphaW_{j}_b"] = to_numpy(alpha.b)
        for i, g in enumerate(self.groups):
            for j, m in enumerate(self.views):
                tau = self.get_node("Tau", (g, m))
                arrays[f"Tau_{i}_{j}_a"] = to_numpy(tau.a)
                arrays[f"Tau_{i}_{j}_b"] = to_numpy(tau.b)
        return arrays

    @classmethod
    def from_arrays(
        cls,
        backend: ComputeBackend,
        arrays: Dict[str, np.ndarray],
        samples_per_group: Dict[str, int],
        features_per_view: Dict[str, int],
        num_factors: int,
        options: Optional[ModelOptions] = None,
    ) -> "ModelState":
        """Inverse of ``to_arrays``."""
        state = cls(backend, samples_per_group, features_per_view, num_factors, options)
        asarray = backend.asarray
        try:
            for i, g in enumerate(state.groups):
                state.set_node("Z", g, GaussianNode.from_moments(
                    backend, asarray(arrays[f"Z_{i}_mean"]), asarray(arrays[f"Z_{i}_cov"])
                ))
            for j, m in enumerate(state.views):
                state.set_node("W", m, GaussianNode.from_moments(
                    backend, asarray(arrays[f"W_{j}_mean"]), asarray(arrays[f"W_{j}_cov"])
                ))
                state.set_node("AlphaW", m, GammaNode(
                    a=asarray(arrays[f"AlphaW_{j}_a"]), b=asarray(arrays[f"AlphaW_{j}_b"])
                ))
            for i, g in enumerate(state.groups):
                for j, m in enumerate(state.views):
                    state.set_node("Tau", (g, m), GammaNode(
                        a=asarray(arrays[f"Tau_{i}_{j}_a"]), b=asarray(arrays[f"Tau_{i}_{j}_b"])
                    ))
        except KeyError as e:
            raise DataInconsistencyError(f"Stored model is missing array {e}")
        return state

    def __repr__(self) -> str:
        return (
            f"ModelState(groups={self.groups}, views={self.views}, "
            f"K={self._K}, backend={self.backend.name})"
        )
