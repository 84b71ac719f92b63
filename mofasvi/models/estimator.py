"""ELBO and update-direction estimator for batches of samples.

For every node the estimator computes the closed-form conjugate optimum
``eta_hat`` from batch sufficient statistics and returns the natural-gradient
direction ``eta_hat - eta``. Sample-local statistics are scaled by
``N_g / |B_g|`` so that, for a uniform batch drawn without replacement, both
the ELBO estimate and every global direction are unbiased for their
full-data counterparts. With the full dataset as batch and a unit step the
update is exact coordinate ascent.

Missing entries are handled through the observation mask: the centered
data carries zeros at missing positions and every statistic is weighted by
the mask, so missing values never contribute.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from ..core.error_handling import NumericalFailureError
from .backends import ComputeBackend
from .model_state import NODE_NAMES, GammaNode, GaussianNode, ModelState

logger = logging.getLogger(__name__)

LOG_2PI = math.log(2.0 * math.pi)

Direction = Tuple[Any, Any]


@dataclass(frozen=True)
class Batch:
    """Sorted sample indices drawn from every group, with their scale factors.

    ``scales[g] = N_g / |B_g|`` is the inverse sampling fraction.
    """

    indices: Dict[str, np.ndarray]
    scales: Dict[str, float]

    @classmethod
    def full(cls, samples_per_group: Dict[str, int]) -> "Batch":
        return cls(
            indices={g: np.arange(n) for g, n in samples_per_group.items()},
            scales={g: 1.0 for g in samples_per_group},
        )

    @classmethod
    def from_indices(
        cls, indices: Dict[str, np.ndarray], samples_per_group: Dict[str, int]
    ) -> "Batch":
        sorted_indices = {g: np.sort(np.asarray(idx, dtype=int)) for g, idx in indices.items()}
        scales = {g: samples_per_group[g] / len(idx) for g, idx in sorted_indices.items()}
        return cls(indices=sorted_indices, scales=scales)

    def size(self, group: str) -> int:
        return int(len(self.indices[group]))


@dataclass(frozen=True)
class Estimate:
    """ELBO estimate plus the directions of every node, all taken at one state."""

    elbo: float
    directions: Dict[str, Dict[Any, Direction]]


class ElboEstimator:
    """Batch ELBO and natural-gradient directions for a ``Dataset``.

    Parameters
    ----------
    dataset : Dataset
        Centered data and observation masks
    backend : ComputeBackend
        Backend holding the model state arrays
    n_jobs : int
        Worker threads for the per-group statistics (1 = sequential)
    """

    def __init__(self, dataset, backend: ComputeBackend, n_jobs: int = 1):
        self.dataset = dataset
        self.backend = backend
        self.n_jobs = n_jobs
        self._Y: Dict[Tuple[str, str], Any] = {}
        self._Y2: Dict[Tuple[str, str], Any] = {}
        self._M: Dict[Tuple[str, str], Any] = {}
        for g in dataset.groups:
            for m in dataset.views:
                Y = dataset.Y(g, m)
                self._Y[(g, m)] = backend.asarray(Y)
                self._Y2[(g, m)] = backend.asarray(Y ** 2)
                self._M[(g, m)] = backend.asarray(dataset.mask(g, m).astype(np.float64))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _map_groups(self, fn: Callable[[str], Any], groups: List[str]) -> Dict[str, Any]:
        """Evaluate ``fn`` for every group, in a thread pool when ``n_jobs > 1``."""
        if self.n_jobs == 1 or len(groups) < 2:
            return {g: fn(g) for g in groups}

        results = {}
        with ThreadPoolExecutor(max_workers=min(self.n_jobs, len(groups))) as executor:
            future_to_group = {executor.submit(fn, g): g for g in groups}
            for future in as_completed(future_to_group):
                results[future_to_group[future]] = future.result()
        return results

    def _block(self, group: str, view: str, batch: Batch):
        """Batch rows of (Y, Y**2, mask) for one (group, view)."""
        key = (group, view)
        if batch.size(group) == self.dataset.N[group]:
            return self._Y[key], self._Y2[key], self._M[key]
        rows = batch.indices[group]
        bk = self.backend
        return bk.take(self._Y[key], rows), bk.take(self._Y2[key], rows), bk.take(self._M[key], rows)

    def _local_z(self, state: ModelState, group: str, batch: Batch) -> GaussianNode:
        node = state.get_node("Z", group)
        if batch.size(group) == node.n_rows:
            return node
        return node.rows(self.backend, batch.indices[group])

    def _expected_sq_residuals(self, Y, Y2, Z: GaussianNode, Ezz, W: GaussianNode, Eww):
        """E[(y_nd - w_d^T z_n)^2] for every batch row and feature."""
        bk = self.backend
        cross = bk.matmul(Z.mean, W.mean.T)
        trace = bk.einsum("nkl,dkl->nd", Ezz, Eww)
        return Y2 - 2.0 * Y * cross + trace

    def _check(self, name: str, key: Any, values, iteration: int) -> None:
        for value in values:
            if not self.backend.all_finite(value):
                raise NumericalFailureError(iteration, f"{name}[{key}]", "non-finite direction")

    # ------------------------------------------------------------------
    # Directions
    # ------------------------------------------------------------------

    def direction(
        self, node: str, state: ModelState, batch: Batch, iteration: int = 0
    ) -> Dict[Any, Direction]:
        """Natural-gradient direction ``eta_hat - eta`` for one node family.

        Parameters
        ----------
        node : str
            One of ``Z``, ``W``, ``AlphaW``, ``Tau``
        state : ModelState
            State the direction is evaluated at
        batch : Batch
            Per-group sample indices and scales
        iteration : int
            Reported in ``NumericalFailureError``

        Returns
        -------
        Dict[Any, Tuple]
            ``{key: (d1, d2)}``; for ``Z`` the directions cover the batch rows
            only, for Gaussian nodes ``(d_precision, d_h)``, for Gamma nodes
            ``(d_a, d_b)``
        """
        if node == "Z":
            directions = self._z_directions(state, batch)
        elif node == "W":
            directions = self._w_directions(state, batch)
        elif node == "AlphaW":
            directions = self._alpha_directions(state)
        elif node == "Tau":
            directions = self._tau_directions(state, batch)
        else:
            raise KeyError(f"Unknown node '{node}', expected one of {NODE_NAMES}")

        for key, values in directions.items():
            self._check(node, key, values, iteration)
        return directions

    def _z_directions(self, state: ModelState, batch: Batch) -> Dict[str, Direction]:
        bk = self.backend
        eye = bk.eye(state.num_factors)
        Eww = {m: state.get_node("W", m).second_moment(bk) for m in state.views}

        def group_direction(g: str) -> Direction:
            precision = eye
            h = 0.0
            for m in state.views:
                Y, _, M = self._block(g, m, batch)
                weights = M * state.get_node("Tau", (g, m)).expectation()
                precision = precision + bk.einsum("nd,dkl->nkl", weights, Eww[m])
                h = h + bk.matmul(weights * Y, state.get_node("W", m).mean)
            current = self._local_z(state, g, batch)
            return precision - current.precision, h - current.h

        return self._map_groups(group_direction, state.groups)

    def _w_directions(self, state: ModelState, batch: Batch) -> Dict[str, Direction]:
        bk = self.backend
        eye = bk.eye(state.num_factors)

        def group_statistics(g: str):
            Z = self._local_z(state, g, batch)
            Ezz = Z.second_moment(bk)
            scale = batch.scales[g]
            stats = {}
            for m in state.views:
                Y, _, M = self._block(g, m, batch)
                weights = M * state.get_node("Tau", (g, m)).expectation()
                stats[m] = (
                    scale * bk.einsum("nd,nkl->dkl", weights, Ezz),
                    scale * bk.matmul((weights * Y).T, Z.mean),
                )
            return stats

        per_group = self._map_groups(group_statistics, state.groups)

        directions = {}
        for m in state.views:
            precision = eye * state.get_node("AlphaW", m).expectation()
            h = 0.0
            for g in state.groups:
                precision = precision + per_group[g][m][0]
                h = h + per_group[g][m][1]
            current = state.get_node("W", m)
            directions[m] = (precision - current.precision, h - current.h)
        return directions

    def _alpha_directions(self, state: ModelState) -> Dict[str, Direction]:
        bk = self.backend
        opts = state.options
        directions = {}
        for m in state.views:
            W = state.get_node("W", m)
            Ew2 = bk.diagonal(W.second_moment(bk))
            a_hat = bk.asarray(np.full(state.num_factors, opts.alpha_a0 + 0.5 * state.D[m]))
            b_hat = opts.alpha_b0 + 0.5 * bk.xp.sum(Ew2, axis=0)
            current = state.get_node("AlphaW", m)
            directions[m] = (a_hat - current.a, b_hat - current.b)
        return directions

    def _tau_directions(self, state: ModelState, batch: Batch) -> Dict[Tuple[str, str], Direction]:
        bk = self.backend
        opts = state.options
        Eww = {m: state.get_node("W", m).second_moment(bk) for m in state.views}

        def group_directions(g: str):
            Z = self._local_z(state, g, batch)
            Ezz = Z.second_moment(bk)
            scale = batch.scales[g]
            out = {}
            for m in state.views:
                Y, Y2, M = self._block(g, m, batch)
                res2 = self._expected_sq_residuals(Y, Y2, Z, Ezz, state.get_node("W", m), Eww[m])
                a_hat = opts.tau_a0 + 0.5 * scale * bk.xp.sum(M, axis=0)
                b_hat = opts.tau_b0 + 0.5 * scale * bk.xp.sum(M * res2, axis=0)
                current = state.get_node("Tau", (g, m))
                out[(g, m)] = (a_hat - current.a, b_hat - current.b)
            return out

        directions = {}
        for out in self._map_groups(group_directions, state.groups).values():
            directions.update(out)
        return {key: directions[key] for key in state.keys("Tau")}

    # ------------------------------------------------------------------
    # ELBO
    # ------------------------------------------------------------------

    def _gamma_terms(self, node: GammaNode, a0: float, b0: float) -> float:
        """E[log p] - E[log q] for elementwise Gamma(a0, b0) priors."""
        bk = self.backend
        E = node.expectation()
        Elog = node.log_expectation(bk)
        prior = a0 * math.log(b0) - math.lgamma(a0) + (a0 - 1.0) * Elog - b0 * E
        entropy = -(node.a * bk.log(node.b) - bk.gammaln(node.a) + (node.a - 1.0) * Elog - node.b * E)
        return bk.total(prior + entropy)

    def elbo(self, state: ModelState, batch: Batch, iteration: int = 0) -> float:
        """ELBO estimate; exact when ``batch`` covers every sample.

        Raises
        ------
        NumericalFailureError
            If the estimate is not finite
        """
        bk = self.backend
        opts = state.options
        K = state.num_factors
        Eww = {m: state.get_node("W", m).second_moment(bk) for m in state.views}

        def group_terms(g: str) -> float:
            Z = self._local_z(state, g, batch)
            Ezz = Z.second_moment(bk)
            total = 0.0
            for m in state.views:
                tau = state.get_node("Tau", (g, m))
                Y, Y2, M = self._block(g, m, batch)
                res2 = self._expected_sq_residuals(Y, Y2, Z, Ezz, state.get_node("W", m), Eww[m])
                n_obs = bk.xp.sum(M, axis=0)
                total += bk.total(
                    0.5 * n_obs * (tau.log_expectation(bk) - LOG_2PI)
                    - 0.5 * tau.expectation() * bk.xp.sum(M * res2, axis=0)
                )
            total += 0.5 * (
                bk.total(bk.logdet(Z.cov)) + Z.n_rows * K - bk.total(bk.diagonal(Ezz))
            )
            return batch.scales[g] * total

        elbo = sum(self._map_groups(group_terms, state.groups).values())

        for m in state.views:
            W = state.get_node("W", m)
            alpha = state.get_node("AlphaW", m)
            Ew2 = bk.diagonal(Eww[m])
            elbo += 0.5 * bk.total(alpha.log_expectation(bk) - alpha.expectation() * Ew2)
            elbo += 0.5 * (bk.total(bk.logdet(W.cov)) + W.n_rows * K)
            elbo += self._gamma_terms(alpha, opts.alpha_a0, opts.alpha_b0)

        for key in state.keys("Tau"):
            elbo += self._gamma_terms(state.get_node("Tau", key), opts.tau_a0, opts.tau_b0)

        if not math.isfinite(elbo):
            raise NumericalFailureError(iteration, "ELBO", f"estimate is {elbo}")
        return float(elbo)

    def estimate(self, state: ModelState, batch: Batch, iteration: int = 0) -> Estimate:
        """ELBO and every node's direction, all evaluated at ``state``."""
        directions = {
            node: self.direction(node, state, batch, iteration) for node in NODE_NAMES
        }
        return Estimate(elbo=self.elbo(state, batch, iteration), directions=directions)


def apply_update(
    state: ModelState,
    node: str,
    directions: Dict[Any, Direction],
    step_size: float,
    batch: Optional[Batch] = None,
    iteration: int = 0,
) -> None:
    """Move ``state`` along ``directions`` in place: ``eta <- eta + step * d``.

    ``Z`` directions apply to the batch rows only. Resulting nodes are
    checked before assignment.

    Raises
    ------
    NumericalFailureError
        If a precision matrix is singular or a parameter leaves its domain
    """
    bk = state.backend
    for key, (d1, d2) in directions.items():
        current = state.get_node(node, key)
        parameter = f"{node}[{key}]"
        if isinstance(current, GaussianNode):
            full = node != "Z" or batch is None or batch.size(key) == current.n_rows
            base = current if full else current.rows(bk, batch.indices[key])
            try:
                updated = GaussianNode.from_natural(
                    bk, base.precision + step_size * d1, base.h + step_size * d2
                )
            except np.linalg.LinAlgError as e:
                raise NumericalFailureError(iteration, parameter, str(e))
            variances = bk.diagonal(updated.cov)
            if not (bk.all_finite(updated.cov) and bk.all_finite(updated.mean)) or not bool(
                bk.xp.all(variances > 0)
            ):
                raise NumericalFailureError(iteration, parameter, "covariance is not positive definite")
            if not full:
                updated = current.with_rows(bk, batch.indices[key], updated)
        else:
            updated = GammaNode(a=current.a + step_size * d1, b=current.b + step_size * d2)
            if not (bk.all_finite(updated.a) and bk.all_finite(updated.b)) or not bool(
                bk.xp.all(updated.a > 0) & bk.xp.all(updated.b > 0)
            ):
                raise NumericalFailureError(iteration, parameter, "Gamma parameters must stay positive")
        state.set_node(node, key, updated)
