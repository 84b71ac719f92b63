"""
Compute backends for the variational updates.

The estimator and training loop only talk to a ``ComputeBackend``; the
concrete array library is chosen once, at configuration time, through
``create_backend``. Two implementations are registered:

- ``numpy``: CPU arrays, SciPy special functions
- ``jax``: jax.numpy arrays on the CPU or GPU platform, float64 enabled

Backend arrays are treated as immutable: row updates go through
``scatter``, which copies for NumPy and uses ``.at[].set`` for JAX.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Type

import numpy as np

from ..core.error_handling import InvalidConfigError

logger = logging.getLogger(__name__)


class ComputeBackend(ABC):
    """Abstract numerics interface.

    Capability set: matrix products (``matmul``, ``einsum``), elementwise
    operations (``log``, ``digamma``, ``gammaln`` and native array
    arithmetic) and batched gathers (``take``/``scatter``), plus batched
    ``K x K`` inverses and log-determinants.
    """

    name: str = "abstract"

    @property
    @abstractmethod
    def xp(self):
        """Array namespace (``numpy`` or ``jax.numpy``)."""

    @abstractmethod
    def digamma(self, x):
        pass

    @abstractmethod
    def gammaln(self, x):
        pass

    @abstractmethod
    def scatter(self, x, rows, values):
        """Return a copy of ``x`` with ``x[rows] = values``."""

    def asarray(self, x, dtype=None):
        return self.xp.asarray(x, dtype=dtype or self.xp.float64)

    def to_numpy(self, x) -> np.ndarray:
        return np.asarray(x)

    def zeros(self, shape):
        return self.xp.zeros(shape, dtype=self.xp.float64)

    def eye(self, k: int):
        return self.xp.eye(k, dtype=self.xp.float64)

    def matmul(self, a, b):
        return self.xp.matmul(a, b)

    def einsum(self, subscripts: str, *operands):
        return self.xp.einsum(subscripts, *operands)

    def take(self, x, rows, axis: int = 0):
        return self.xp.take(x, self.xp.asarray(rows), axis=axis)

    def inv(self, a):
        """Batched inverse of symmetric positive-definite matrices."""
        return self.xp.linalg.inv(a)

    def logdet(self, a):
        """Batched log-determinant (sign assumed positive)."""
        _, value = self.xp.linalg.slogdet(a)
        return value

    def log(self, x):
        return self.xp.log(x)

    def diagonal(self, a):
        """Diagonal of the trailing ``K x K`` axes."""
        return self.xp.diagonal(a, axis1=-2, axis2=-1)

    def outer(self, a):
        """Row-wise outer products ``a[n] a[n]^T``."""
        return self.xp.einsum("nk,nl->nkl", a, a)

    def total(self, x) -> float:
        return float(self.xp.sum(x))

    def all_finite(self, x) -> bool:
        return bool(self.xp.all(self.xp.isfinite(x)))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class NumpyBackend(ComputeBackend):
    """CPU backend built on NumPy and SciPy."""

    name = "numpy"

    def __init__(self):
        from scipy import special

        self._special = special

    @property
    def xp(self):
        return np

    def digamma(self, x):
        return self._special.digamma(x)

    def gammaln(self, x):
        return self._special.gammaln(x)

    def scatter(self, x, rows, values):
        out = np.array(x, copy=True)
        out[np.asarray(rows)] = values
        return out


class JaxBackend(ComputeBackend):
    """Accelerated backend built on JAX.

    Parameters
    ----------
    device : str
        ``'cpu'`` or ``'gpu'``; a GPU request without visible GPU devices
        falls back to the CPU platform with a warning
    """

    name = "jax"

    def __init__(self, device: str = "cpu"):
        import jax
        import jax.numpy as jnp
        import numpyro
        from jax.scipy import special

        if device == "gpu":
            try:
                if not jax.devices("gpu"):
                    raise RuntimeError("no GPU devices")
            except RuntimeError as e:
                logger.warning(f"GPU requested but not available ({e}). Falling back to CPU.")
                device = "cpu"

        numpyro.set_platform(device)
        # Variational updates need double precision to keep the ELBO monotone
        numpyro.enable_x64()

        self.device = device
        self._jax = jax
        self._jnp = jnp
        self._special = special

    @property
    def xp(self):
        return self._jnp

    def digamma(self, x):
        return self._special.digamma(x)

    def gammaln(self, x):
        return self._special.gammaln(x)

    def scatter(self, x, rows, values):
        return x.at[self._jnp.asarray(rows)].set(values)

    def to_numpy(self, x) -> np.ndarray:
        return np.asarray(self._jax.device_get(x))

    def __repr__(self) -> str:
        return f"JaxBackend(device={self.device!r})"


class BackendFactory:
    """
    Registry of compute backends.

    Examples:
        >>> backend = BackendFactory.create("numpy")
        >>> BackendFactory.register("mine", MyBackend)
    """

    _backends: Dict[str, Dict[str, Any]] = {
        "numpy": {
            "class": NumpyBackend,
            "description": "NumPy/SciPy arrays on the CPU",
            "devices": ["cpu"],
        },
        "jax": {
            "class": JaxBackend,
            "description": "jax.numpy arrays on the CPU or GPU platform",
            "devices": ["cpu", "gpu"],
        },
    }

    @classmethod
    def create(cls, name: str = "numpy", device: str = "cpu") -> ComputeBackend:
        """Instantiate a registered backend.

        Raises
        ------
        InvalidConfigError
            If the backend is unknown or does not support ``device``
        """
        if name not in cls._backends:
            raise InvalidConfigError(
                f"Unknown backend: '{name}'. Available backends: {cls.list_backends()}"
            )
        info = cls._backends[name]
        if device not in info["devices"]:
            raise InvalidConfigError(
                f"Backend '{name}' does not support device '{device}' "
                f"(supported: {info['devices']})"
            )

        backend_class = info["class"]
        backend = backend_class(device=device) if "gpu" in info["devices"] else backend_class()
        logger.info(f"Using compute backend: {backend!r}")
        return backend

    @classmethod
    def register(
        cls,
        name: str,
        backend_class: Type[ComputeBackend],
        description: str = "",
        devices: List[str] = ("cpu",),
    ) -> None:
        if not issubclass(backend_class, ComputeBackend):
            raise TypeError(f"{backend_class} must inherit from ComputeBackend")
        cls._backends[name] = {
            "class": backend_class,
            "description": description,
            "devices": list(devices),
        }

    @classmethod
    def list_backends(cls) -> List[str]:
        return list(cls._backends.keys())


def create_backend(name: str = "numpy", device: str = "cpu") -> ComputeBackend:
    """Create a compute backend using the ``BackendFactory``."""
    return BackendFactory.create(name, device)
