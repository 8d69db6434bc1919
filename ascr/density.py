"""
Density surface: log D(m) = X(m) @ beta.

Homogeneous density uses one parameter, "D", on the natural scale (log
link). With covariates the coefficients are "D.intercept" plus one
"D.<covariate>" per column, all on the log-density scale.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import jax.numpy as jnp

from .errors import ConfigurationError
from .survey import Session


class DensityModel:
    """Design matrices for a log-linear density surface across sessions.

    Covariates named in `covariates` are looked up first among each session's
    mask covariates, then among its session covariates (broadcast over the
    mask). With `scale=True` every column is centred and scaled using the
    stacked mask rows of all sessions.
    """

    def __init__(self, sessions: Sequence[Session],
                 covariates: Optional[Sequence[str]] = None,
                 scale: bool = True):
        self.covariates: List[str] = list(covariates or [])
        self.scale = scale
        raw = [self._columns(s, k) for k, s in enumerate(sessions)]
        self.center = np.zeros(len(self.covariates))
        self.spread = np.ones(len(self.covariates))
        if self.covariates and scale:
            stacked = np.vstack(raw)
            self.center = stacked.mean(axis=0)
            sd = stacked.std(axis=0, ddof=1) if stacked.shape[0] > 1 else np.ones(stacked.shape[1])
            self.spread = np.where(sd > 0, sd, 1.0)
        self.designs: List[np.ndarray] = [
            np.column_stack([np.ones(r.shape[0]), (r - self.center) / self.spread]) for r in raw
        ]

    def _columns(self, session: Session, index: int) -> np.ndarray:
        n = session.mask.n
        cols = []
        for name in self.covariates:
            if name in session.mask_covariates:
                cols.append(np.asarray(session.mask_covariates[name], dtype=float))
            elif name in session.session_covariates:
                cols.append(np.full(n, float(session.session_covariates[name])))
            else:
                raise ConfigurationError(f"Session {index}: no covariate named '{name}'.")
        if not cols:
            return np.zeros((n, 0))
        return np.column_stack(cols)

    @property
    def homogeneous(self) -> bool:
        return not self.covariates

    @property
    def param_names(self) -> List[str]:
        if self.homogeneous:
            return ["D"]
        return ["D.intercept"] + [f"D.{c}" for c in self.covariates]

    def start_values(self, d_start: float) -> Dict[str, float]:
        if self.homogeneous:
            return {"D": d_start}
        out = {"D.intercept": float(np.log(d_start))}
        out.update({f"D.{c}": 0.0 for c in self.covariates})
        return out

    def coefficients(self, values: Mapping[str, object]):
        if self.homogeneous:
            return jnp.log(values["D"])[None]
        return jnp.stack([values[n] for n in self.param_names])

    def log_density(self, values: Mapping[str, object], session: int):
        """log D at every mask point of a session, shape (n_mask,)."""
        return jnp.asarray(self.designs[session]) @ self.coefficients(values)
