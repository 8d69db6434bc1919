"""
Log-densities of supplementary measurements given a candidate animal location.

All functions take observed measurements as (n_ind, n_det) arrays with zeros
at undetected entries, the (n_ind, n_det) binary capture histories, and
(n_det, P) geometry for P candidate points. They return (n_ind, P) arrays,
already summed over the detectors that made a detection.
"""

from __future__ import annotations

from typing import Dict, Tuple

import jax.numpy as jnp
from jax.scipy.special import gammaln, i0e

from .detfns import DIST_FLOOR, LOG_2PI, contract

SUPP_TYPES: Tuple[str, ...] = ("bearing", "dist", "toa", "mrds")

# One measurement-error parameter per type; mrds has none.
SUPP_PARAM_NAMES: Dict[str, str] = {
    "bearing": "kappa",
    "dist": "alpha",
    "toa": "sigma.toa",
}

DEFAULT_SOUND_SPEED: float = 330.0


def bearing_log_density(values, obs, bincapt, expected, diagonal=False):
    """Von Mises measurement error on bearings.

    `expected` holds the true bearing from each detector to each point.
    """
    kappa = values["kappa"]
    n_det = jnp.sum(bincapt, axis=1)[:, None]
    cos_term = (contract(bincapt * jnp.cos(obs), jnp.cos(expected), diagonal)
                + contract(bincapt * jnp.sin(obs), jnp.sin(expected), diagonal))
    # log I0(kappa) = log(i0e(kappa)) + kappa
    log_norm = LOG_2PI + jnp.log(i0e(kappa)) + kappa
    return kappa * cos_term - n_det * log_norm


def dist_log_density(values, obs, bincapt, dists, diagonal=False):
    """Gamma measurement error on distances, shape alpha and mean equal to the true distance."""
    alpha = values["alpha"]
    d = jnp.maximum(dists, DIST_FLOOR)
    n_det = jnp.sum(bincapt, axis=1)[:, None]
    log_obs = jnp.log(jnp.where(bincapt > 0, obs, 1.0))
    sum_log_obs = jnp.sum(bincapt * log_obs, axis=1)[:, None]
    return ((alpha - 1.0) * sum_log_obs
            - alpha * contract(bincapt * obs, 1.0 / d, diagonal)
            - alpha * contract(bincapt, jnp.log(d), diagonal)
            + n_det * (alpha * jnp.log(alpha) - gammaln(alpha)))


def toa_log_density(values, obs, bincapt, dists, sound_speed=DEFAULT_SOUND_SPEED, diagonal=False):
    """Normal measurement error on times of arrival.

    The call's emission time is unknown and integrated out, so only the
    spread of travel-time-corrected arrival times matters. `obs` should be
    centred per individual to keep the squared sums well conditioned.
    """
    sigma = values["sigma.toa"]
    k = jnp.sum(bincapt, axis=1)[:, None]
    wt = bincapt * obs
    s1 = jnp.sum(wt, axis=1)[:, None] - contract(bincapt, dists, diagonal) / sound_speed
    s2 = (jnp.sum(wt * obs, axis=1)[:, None]
          - 2.0 * contract(wt, dists, diagonal) / sound_speed
          + contract(bincapt, dists ** 2, diagonal) / sound_speed ** 2)
    ssq = s2 - s1 ** 2 / k
    return ((1.0 - k) * jnp.log(sigma)
            - 0.5 * (k - 1.0) * LOG_2PI
            - 0.5 * jnp.log(k)
            - ssq / (2.0 * sigma ** 2))
