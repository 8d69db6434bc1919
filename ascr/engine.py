"""
Likelihood engine: the objective handed to the external minimizer.

Survey arrays are prepared once at construction. Each evaluation is a pure
function of the unconstrained parameter vector; gradients and Hessians come
from JAX automatic differentiation of the same function.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import jax
import jax.numpy as jnp

from .density import DensityModel
from .detfns import DetectionFunction
from .errors import NonFiniteLikelihoodError
from .likelihood import (
    effective_sampling_area,
    floored_share,
    negloglik,
    prepare_session,
)
from .params import ParameterSet
from .supplementary import DEFAULT_SOUND_SPEED
from .survey import Session

logger = logging.getLogger(__name__)


class LikelihoodEngine:
    """Negative log-likelihood, gradient and Hessian on the unconstrained scale.

    Attributes:
        detfn: Detection function, chosen once at model construction.
        params: Parameter set defining the layout of `theta`.
        density: Density surface model.
        arrays: Per-session precomputed arrays.
        n_evaluations: Number of objective evaluations so far.
    """

    def __init__(self,
                 sessions: Sequence[Session],
                 detfn: DetectionFunction,
                 params: ParameterSet,
                 density: DensityModel,
                 sound_speed: float = DEFAULT_SOUND_SPEED,
                 local: bool = False,
                 buffer: Optional[float] = None,
                 trace: bool = False) -> None:
        self.detfn = detfn
        self.params = params
        self.density = density
        self.sound_speed = float(sound_speed)
        self.trace = trace
        self.arrays = [prepare_session(s, k, local=local, buffer=buffer)
                       for k, s in enumerate(sessions)]
        self.n_evaluations = 0

        def nll(theta):
            return negloglik(detfn, density, params, theta, self.arrays, self.sound_speed)

        def esa(theta):
            values = params.natural(theta)
            return jnp.stack([
                effective_sampling_area(detfn, params.session_values(values, a.index), a)
                for a in self.arrays
            ])

        self._nll = jax.jit(nll)
        self._value_and_grad = jax.jit(jax.value_and_grad(nll))
        self._hessian = jax.jit(jax.hessian(nll))
        self._esa = jax.jit(esa)
        self._esa_jacobian = jax.jit(jax.jacobian(esa))

        def natural_vector(theta):
            return jnp.stack([jnp.asarray(v, dtype=float) for v in params.natural(theta).values()])

        self._natural_vector = jax.jit(natural_vector)
        self._natural_jacobian = jax.jit(jax.jacobian(natural_vector))

    @property
    def n_sessions(self) -> int:
        return len(self.arrays)

    def _theta(self, theta) -> jnp.ndarray:
        return jnp.asarray(np.asarray(theta, dtype=float).reshape(len(self.params)))

    def evaluate(self, theta, hessian: bool = False) -> Tuple:
        """Return (nll, gradient) or (nll, gradient, Hessian) at `theta`.

        Raises NonFiniteLikelihoodError if the objective is NaN or infinite.
        """
        t = self._theta(theta)
        value, grad = self._value_and_grad(t)
        value = float(value)
        if not np.isfinite(value):
            raise NonFiniteLikelihoodError(
                f"Negative log-likelihood is {value} at theta={np.asarray(t).tolist()}",
                theta=np.asarray(t),
            )
        if hessian:
            return value, np.asarray(grad), np.asarray(self._hessian(t))
        return value, np.asarray(grad)

    def objective(self, theta) -> Tuple[float, np.ndarray]:
        """(nll, gradient) without raising; for use inside the minimizer."""
        t = self._theta(theta)
        value, grad = self._value_and_grad(t)
        self.n_evaluations += 1
        if self.trace:
            logger.info("eval %d: nll=%.6f %s", self.n_evaluations, float(value),
                        self.format_values(self.natural(t)))
        return float(value), np.asarray(grad)

    def value(self, theta) -> float:
        t = self._theta(theta)
        self.n_evaluations += 1
        value = float(self._nll(t))
        if self.trace:
            logger.info("eval %d: nll=%.6f %s", self.n_evaluations, value,
                        self.format_values(self.natural(t)))
        return value

    def hessian(self, theta) -> np.ndarray:
        return np.asarray(self._hessian(self._theta(theta)))

    def natural(self, theta) -> Dict[str, float]:
        vec = np.asarray(self._natural_vector(self._theta(theta)))
        return dict(zip(self.params.names, vec.tolist()))

    def natural_jacobian(self, theta) -> np.ndarray:
        """d(natural values) / d(theta), shape (n_params, n_free)."""
        return np.asarray(self._natural_jacobian(self._theta(theta)))

    def esa(self, theta) -> np.ndarray:
        """Effective sampling area for each session."""
        return np.asarray(self._esa(self._theta(theta)))

    def esa_jacobian(self, theta) -> np.ndarray:
        return np.asarray(self._esa_jacobian(self._theta(theta)))

    def floored_fraction(self, theta) -> float:
        """Share of detection probabilities pinned at the numerical floor."""
        values = self.params.natural(self._theta(theta))
        shares = [floored_share(self.detfn, self.params.session_values(values, a.index), a)
                  for a in self.arrays]
        return float(np.mean(shares))

    @staticmethod
    def format_values(values: Dict[str, float]) -> str:
        return " ".join(f"{k}={v:.6g}" for k, v in values.items())

    def __repr__(self) -> str:
        free: List[str] = self.params.free_names
        return (f"LikelihoodEngine(detfn={self.detfn.name}, sessions={self.n_sessions}, "
                f"free={free})")
