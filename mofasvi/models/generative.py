"""NumPyro program for the multi-group, multi-view factor model.

Generative process, for groups g and views m::

    Z_g  ~ Normal(0, 1)                          (N_g x K)
    W_m  ~ Normal(0, alpha_m ** -1/2)            (D_m x K, ARD per factor)
    Y_gm ~ Normal(Z_g W_m^T, tau_m ** -1/2)      (N_g x D_m)
"""

from typing import Dict, Optional, Sequence

import jax.numpy as jnp
import numpyro
import numpyro.distributions as dist


def mofa_model(
    n_samples: Sequence[int],
    n_features: Sequence[int],
    num_factors: int,
    alpha,
    tau,
    Y: Optional[Dict[str, jnp.ndarray]] = None,
):
    """MOFA generative model.

    Parameters
    ----------
    n_samples : Sequence[int]
        Samples per group
    n_features : Sequence[int]
        Features per view
    num_factors : int
        Number of latent factors K
    alpha : array, shape (M, K)
        ARD precision of every factor in every view; large values switch a
        factor off in that view
    tau : array, shape (M,)
        Noise precision per view
    Y : Dict[str, array], optional
        Observations keyed by site name ``Y{g}_{m}`` (1-indexed)

    Sites are named ``Z{g}``, ``W{m}`` and ``Y{g}_{m}``.
    """
    K = num_factors
    alpha = jnp.asarray(alpha)
    tau = jnp.asarray(tau)
    Y = Y or {}

    Z = [
        numpyro.sample(f"Z{g + 1}", dist.Normal(0, 1), sample_shape=(N, K))
        for g, N in enumerate(n_samples)
    ]
    W = [
        numpyro.sample(
            f"W{m + 1}",
            dist.Normal(jnp.zeros(K), 1 / jnp.sqrt(alpha[m])),
            sample_shape=(D,),
        )
        for m, D in enumerate(n_features)
    ]

    for g in range(len(n_samples)):
        for m in range(len(n_features)):
            site = f"Y{g + 1}_{m + 1}"
            numpyro.sample(
                site,
                dist.Normal(jnp.dot(Z[g], W[m].T), 1 / jnp.sqrt(tau[m])),
                obs=Y.get(site),
            )
