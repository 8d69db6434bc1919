"""
Likelihood for acoustic spatially explicit capture-recapture.

For one session with n detected individuals and mask points m:

    p.(m)    = 1 - prod_det (1 - g(d_det,m))
    esa      = area * sum_m p.(m)
    lambda   = survey_length * area * sum_m D(m) p.(m)
    log f_i(m) = log D(m) + log P(capture history_i | m)
                 + sum_types log f_type(measurements_i | m)

    nll = -( sum_i logsumexp_m log f_i(m)
             + n log(lambda) - lambda - log(n!)
             - n log(sum_m D(m) p.(m)) )

The sum over m for individual i runs over its local integration set. Sessions
are independent given the parameters and their objectives add up.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

import numpy as np
import jax.numpy as jnp
from jax.scipy.special import gammaln, logsumexp

from .detfns import PROB_FLOOR, DetectionFunction, floored_log
from .geometry import bearings, distances, local_integration_sets, nearest_point
from .supplementary import (
    DEFAULT_SOUND_SPEED,
    bearing_log_density,
    dist_log_density,
    toa_log_density,
)
from .survey import Session


@dataclass
class SessionArrays:
    """Read-only arrays for one session, built once before optimisation."""
    index: int
    n: int
    area: float
    survey_length: float
    dists: jnp.ndarray                     # (n_det, n_mask)
    bearings: jnp.ndarray                  # detector -> mask point
    orient: jnp.ndarray                    # mask point -> detector
    bincapt: jnp.ndarray                   # (n_ind, n_det)
    local: jnp.ndarray                     # (n_ind, n_mask) bool
    ss: Optional[jnp.ndarray] = None
    bearing_obs: Optional[jnp.ndarray] = None
    dist_obs: Optional[jnp.ndarray] = None
    toa_obs: Optional[jnp.ndarray] = None
    # Known locations (mrds): geometry between detectors and each individual.
    ind_dists: Optional[jnp.ndarray] = None      # (n_det, n_ind)
    ind_bearings: Optional[jnp.ndarray] = None
    ind_orient: Optional[jnp.ndarray] = None
    ind_nearest: Optional[np.ndarray] = None     # nearest mask point per individual

    @property
    def known_locations(self) -> bool:
        return self.ind_dists is not None


def _opposite(b: np.ndarray) -> np.ndarray:
    return np.mod(b + np.pi, 2.0 * np.pi)


def prepare_session(session: Session, index: int = 0, local: bool = False,
                    buffer: Optional[float] = None) -> SessionArrays:
    """Precompute geometry, local integration sets and cleaned measurements."""
    traps = session.traps
    points = np.asarray(session.mask.points, dtype=float)
    capt = session.capt
    dists = distances(traps, points)
    bear = bearings(traps, points)
    bincapt = np.asarray(capt.bincapt, dtype=float)

    if local:
        radius = session.buffer if buffer is None else float(buffer)
        keep = local_integration_sets(dists, bincapt, radius, session=index)
    else:
        keep = local_integration_sets(dists, bincapt, None)

    toa = capt.measurement("toa")
    if toa is not None:
        # Centre each individual's arrival times; only their spread matters.
        mean_t = np.sum(toa, axis=1) / np.sum(bincapt, axis=1)
        toa = np.where(bincapt > 0, toa - mean_t[:, None], 0.0)

    arrays = SessionArrays(
        index=index,
        n=capt.n,
        area=float(session.mask.area),
        survey_length=float(session.survey_length),
        dists=jnp.asarray(dists),
        bearings=jnp.asarray(bear),
        orient=jnp.asarray(_opposite(bear)),
        bincapt=jnp.asarray(bincapt),
        local=jnp.asarray(keep),
        ss=None if capt.ss is None else jnp.asarray(capt.measurement("ss")),
        bearing_obs=None if capt.bearing is None else jnp.asarray(capt.measurement("bearing")),
        dist_obs=None if capt.dist is None else jnp.asarray(capt.measurement("dist")),
        toa_obs=None if toa is None else jnp.asarray(toa),
    )
    if capt.mrds is not None:
        loc = np.asarray(capt.mrds, dtype=float)
        ind_bear = bearings(traps, loc)
        arrays.ind_dists = jnp.asarray(distances(traps, loc))
        arrays.ind_bearings = jnp.asarray(ind_bear)
        arrays.ind_orient = jnp.asarray(_opposite(ind_bear))
        arrays.ind_nearest = nearest_point(points, loc)
    return arrays


def detection_surface(detfn: DetectionFunction, values: Mapping, data: SessionArrays):
    """p.(m): probability of at least one detection from each mask point."""
    log_w, g = detfn.detection_probs(values, data.dists, data.orient)
    log_none = jnp.sum(floored_log(1.0 - g), axis=1)            # (Q, n_mask)
    return jnp.sum(jnp.exp(log_w)[:, None] * -jnp.expm1(log_none), axis=0)


def effective_sampling_area(detfn: DetectionFunction, values: Mapping, data: SessionArrays):
    return data.area * jnp.sum(detection_surface(detfn, values, data))


def _supplementary_terms(values, data: SessionArrays, dists, bear, diagonal, sound_speed):
    total = 0.0
    if data.bearing_obs is not None:
        total = total + bearing_log_density(values, data.bearing_obs, data.bincapt, bear, diagonal)
    if data.dist_obs is not None:
        total = total + dist_log_density(values, data.dist_obs, data.bincapt, dists, diagonal)
    if data.toa_obs is not None:
        total = total + toa_log_density(values, data.toa_obs, data.bincapt, dists,
                                        sound_speed, diagonal)
    return total


def individual_log_contributions(detfn: DetectionFunction, values: Mapping,
                                 data: SessionArrays, log_d,
                                 sound_speed: float = DEFAULT_SOUND_SPEED):
    """log of sum_m f_i(m) for every individual, shape (n_ind,)."""
    if data.known_locations:
        dists, bear, orient, diagonal = data.ind_dists, data.ind_bearings, data.ind_orient, True
    else:
        dists, bear, orient, diagonal = data.dists, data.bearings, data.orient, False

    log_w, lp = detfn.capture_log_probs(values, dists, orient, data.bincapt,
                                        ss=data.ss, diagonal=diagonal)
    log_f = logsumexp(log_w[:, None, None] + lp, axis=0)        # (n_ind, P)
    log_f = log_f + _supplementary_terms(values, data, dists, bear, diagonal, sound_speed)

    if diagonal:
        # Location known: a density per unit area rather than a mask sum.
        log_d_ind = log_d[data.ind_nearest]
        return log_d_ind + log_f[:, 0] - jnp.log(data.area)

    log_f = log_f + log_d[None, :]
    return logsumexp(jnp.where(data.local, log_f, -jnp.inf), axis=1)


def session_negloglik(detfn: DetectionFunction, values: Mapping, data: SessionArrays,
                      log_d, sound_speed: float = DEFAULT_SOUND_SPEED):
    """Negative log-likelihood contribution of one session."""
    p_dot = detection_surface(detfn, values, data)
    weighted = jnp.sum(jnp.exp(log_d) * p_dot)                  # sum_m D(m) p.(m)
    lam = data.survey_length * data.area * weighted
    n = data.n
    poisson = n * jnp.log(lam) - lam - gammaln(n + 1.0)
    if n == 0:
        return -poisson
    contrib = jnp.sum(individual_log_contributions(detfn, values, data, log_d, sound_speed))
    return -(contrib + poisson - n * jnp.log(weighted))


def negloglik(detfn: DetectionFunction, density, pset, theta,
              sessions: Sequence[SessionArrays],
              sound_speed: float = DEFAULT_SOUND_SPEED):
    """Total negative log-likelihood across sessions at unconstrained `theta`."""
    values = pset.natural(theta)
    total = 0.0
    for data in sessions:
        sv = pset.session_values(values, data.index)
        log_d = density.log_density(sv, data.index)
        total = total + session_negloglik(detfn, sv, data, log_d, sound_speed)
    return total


def floored_share(detfn: DetectionFunction, values: Mapping, data: SessionArrays) -> float:
    """Share of detection probabilities (or their complements) below the floor."""
    _, g = detfn.detection_probs(values, data.dists, data.orient)
    g = np.asarray(g)
    hit = (g < PROB_FLOOR) | (1.0 - g < PROB_FLOOR)
    return float(np.mean(hit))
