"""
Detection function library.

Each detection function is a small class with a fixed parameter list and a
vectorised `prob(dists, values)` returning the probability of detection at
the given distances. The likelihood only talks to two higher-level methods:

- `detection_probs(values, dists, orient)` -> (log_w, g)
    latent quadrature log-weights (Q,) and detection probabilities
    (Q, n_det, P). Ordinary detection functions have a single latent point.
- `capture_log_probs(values, dists, orient, bincapt, ss, diagonal)` -> (log_w, lp)
    the same log-weights and log P(capture history | point, latent point),
    shape (Q, n_ind, P).

Signal-strength models use the latent axis to integrate over heterogeneous
source strengths and over call direction.

Formulas (d = distance):

    hn            g0 * exp(-d^2 / (2 sigma^2))
    hhn           1 - exp(-lambda0 * exp(-d^2 / (2 sigma^2)))
    hr            g0 * (1 - exp(-(d / sigma)^(-z)))
    th            0.5 - 0.5 * erf(d / scale - shape)
    lth           0.5 - 0.5 * erf(shape.1 - exp(shape.2 - scale * d))
    ss            E(SS) = b0.ss - b1.ss * d
    log.ss        E(SS) = exp(b0.ss - b1.ss * d)
    spherical.ss  E(SS) = b0.ss - 10 log10(d^2) - b1.ss * (d - 1)

For the signal-strength family the detection probability is
P(SS > cutoff) with SS ~ Normal(E(SS), sigma.ss).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Type, Union

import numpy as np
import jax.numpy as jnp
from jax.scipy.special import erfc, log_ndtr, ndtr

from .errors import ConfigurationError


# ----------------------------
# NUMERICAL CONSTANTS
# ----------------------------

PROB_FLOOR: float = 1e-150              # Probabilities are floored here before logs.
LOG_PROB_FLOOR: float = float(np.log(PROB_FLOOR))
DIST_FLOOR: float = 1e-10               # Keeps d^(-z) and log(d) finite at d = 0.
MAX_EXPONENT: float = 700.0             # exp() argument cap, below float64 overflow.
LOG_2PI: float = float(np.log(2.0 * np.pi))

SS_LINKS: Tuple[str, ...] = ("identity", "log", "spherical")
HET_SOURCE_METHODS: Tuple[str, ...] = ("GH", "rect")
DEFAULT_N_HET_SOURCE_QUADPOINTS: int = 15
DEFAULT_N_DIR_QUADPOINTS: int = 8
RECT_HALF_WIDTH: float = 5.0            # Rectangle rule spans +/- 5 sd.


def floored_log(p):
    """log(p) with p floored at PROB_FLOOR."""
    return jnp.log(jnp.maximum(p, PROB_FLOOR))


def contract(w, a, diagonal: bool = False):
    """Sum per-detector terms over detectors for every individual.

    `w` is (n_ind, n_det) and `a` is (..., n_det, P). Returns (..., n_ind, P).
    With `diagonal=True`, column i of `a` belongs to individual i only
    (known-location data) and the result is (..., n_ind, 1).
    """
    if diagonal:
        return jnp.einsum("ij,...ji->...i", w, a)[..., None]
    return jnp.einsum("ij,...jm->...im", w, a)


@dataclass
class SignalStrengthOptions:
    """Options for the signal-strength detection functions.

    `cutoff` is compulsory. `directional=None` means "decide from the
    parameters": the fitting driver switches it on when `b2.ss` is given a
    start value or a fixed value.
    """
    cutoff: Optional[float] = None
    ss_link: Optional[str] = None
    het_source: bool = False
    het_source_method: str = "GH"
    n_het_source_quadpoints: int = DEFAULT_N_HET_SOURCE_QUADPOINTS
    directional: Optional[bool] = None
    n_dir_quadpoints: int = DEFAULT_N_DIR_QUADPOINTS


# ----------------------------
# DETECTION FUNCTIONS
# ----------------------------

class DetectionFunction:
    """Base class: binary detection with probability `prob(d)` per detector."""

    name: str = ""
    id: int = 0
    param_names: Tuple[str, ...] = ()
    uses_signal_strength: bool = False

    def prob(self, dists, values, theta=None):
        raise NotImplementedError

    def detection_probs(self, values, dists, orient=None):
        g = self.prob(dists, values)
        return jnp.zeros(1), g[None]

    def capture_log_probs(self, values, dists, orient, bincapt, ss=None, diagonal=False):
        log_w, g = self.detection_probs(values, dists, orient)
        lp = (contract(bincapt, floored_log(g), diagonal)
              + contract(1.0 - bincapt, floored_log(1.0 - g), diagonal))
        return log_w, lp

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(self.param_names)})"


def _halfnormal_kernel(dists, sigma):
    return jnp.exp(-dists ** 2 / (2.0 * sigma ** 2))


class HalfNormal(DetectionFunction):
    name = "hn"
    id = 1
    param_names = ("g0", "sigma")

    def prob(self, dists, values, theta=None):
        return values["g0"] * _halfnormal_kernel(dists, values["sigma"])


class HazardHalfNormal(DetectionFunction):
    name = "hhn"
    id = 2
    param_names = ("lambda0", "sigma")

    def prob(self, dists, values, theta=None):
        hazard = values["lambda0"] * _halfnormal_kernel(dists, values["sigma"])
        return -jnp.expm1(-hazard)


class HazardRate(DetectionFunction):
    name = "hr"
    id = 3
    param_names = ("g0", "sigma", "z")

    def prob(self, dists, values, theta=None):
        d = jnp.maximum(dists, DIST_FLOOR)
        # (d / sigma)^(-z), evaluated on the log scale and capped.
        expo = jnp.minimum(-values["z"] * jnp.log(d / values["sigma"]), MAX_EXPONENT)
        return values["g0"] * -jnp.expm1(-jnp.exp(expo))


class Threshold(DetectionFunction):
    name = "th"
    id = 4
    param_names = ("shape", "scale")

    def prob(self, dists, values, theta=None):
        # 0.5 - 0.5 * erf(x) == 0.5 * erfc(x), without cancellation in the tail.
        return 0.5 * erfc(dists / values["scale"] - values["shape"])


class LogThreshold(DetectionFunction):
    name = "lth"
    id = 5
    param_names = ("shape.1", "shape.2", "scale")

    def prob(self, dists, values, theta=None):
        inner = jnp.exp(jnp.minimum(values["shape.2"] - values["scale"] * dists, MAX_EXPONENT))
        return 0.5 * erfc(values["shape.1"] - inner)


class SignalStrength(DetectionFunction):
    """Signal-strength detection with optional source heterogeneity and directionality.

    Latent axis layout: source-strength nodes (K) x call directions (L),
    flattened to Q = K * L.
    """

    uses_signal_strength = True
    _ids = {"identity": 6, "log": 7, "spherical": 8}
    _names = {"identity": "ss", "log": "log.ss", "spherical": "spherical.ss"}

    def __init__(self, opts: SignalStrengthOptions, link: str = "identity"):
        if opts.cutoff is None:
            raise ConfigurationError("Signal strength detection functions require ss_opts.cutoff.")
        if link not in SS_LINKS:
            raise ConfigurationError(f"Unknown ss_link '{link}'. Allowed: {SS_LINKS}")
        if opts.het_source_method not in HET_SOURCE_METHODS:
            raise ConfigurationError(
                f"Unknown het_source_method '{opts.het_source_method}'. Allowed: {HET_SOURCE_METHODS}"
            )
        if opts.n_het_source_quadpoints < 1 or opts.n_dir_quadpoints < 1:
            raise ConfigurationError("Quadrature point counts must be positive.")
        self.cutoff = float(opts.cutoff)
        self.link = link
        self.het_source = bool(opts.het_source)
        self.directional = bool(opts.directional)
        self.name = self._names[link]
        self.id = self._ids[link]

        names = ["b0.ss", "b1.ss"]
        if self.directional:
            names.append("b2.ss")
        names.append("sigma.ss")
        if self.het_source:
            names.append("sigma.b0.ss")
        self.param_names = tuple(names)

        if self.het_source:
            nodes, log_w = source_quadrature(opts.het_source_method, opts.n_het_source_quadpoints)
        else:
            nodes, log_w = np.zeros(1), np.zeros(1)
        self._source_nodes = jnp.asarray(nodes)
        self._source_log_w = jnp.asarray(log_w)

        n_dir = opts.n_dir_quadpoints if self.directional else 1
        self._directions = jnp.asarray(2.0 * np.pi * np.arange(n_dir) / n_dir)
        self._direction_log_w = jnp.full(n_dir, -np.log(n_dir))

    def expected_ss(self, dists, values, b0=None, theta=None):
        """Expected received signal strength.

        `theta` is the angle between the call direction and the bearing from
        the animal to the detector; only used by directional models.
        """
        if b0 is None:
            b0 = values["b0.ss"]
        slope = values["b1.ss"]
        if self.directional and theta is not None:
            slope = slope - values["b2.ss"] * (jnp.cos(theta) - 1.0)
        if self.link == "identity":
            return b0 - slope * dists
        if self.link == "log":
            return jnp.exp(jnp.minimum(b0 - slope * dists, MAX_EXPONENT))
        d = jnp.maximum(dists, DIST_FLOOR)
        return b0 - 10.0 * jnp.log10(d ** 2) - slope * (d - 1.0)

    def prob(self, dists, values, theta=None):
        """P(SS > cutoff), averaged over source strengths when heterogeneous."""
        b0 = self._source_b0(values)                        # (K,)
        shape = (-1,) + (1,) * jnp.ndim(dists)
        mu = self.expected_ss(dists, values, b0=b0.reshape(shape),
                              theta=0.0 if theta is None else theta)
        g = ndtr((mu - self.cutoff) / values["sigma.ss"])
        return jnp.sum(jnp.exp(self._source_log_w).reshape(shape) * g, axis=0)

    def _source_b0(self, values):
        if self.het_source:
            return values["b0.ss"] + values["sigma.b0.ss"] * self._source_nodes
        return values["b0.ss"] + 0.0 * self._source_nodes

    def _latent_means(self, values, dists, orient):
        """E(SS) over the latent grid, (Q, n_det, P), and log-weights (Q,)."""
        b0 = self._source_b0(values)[:, None, None, None]   # (K, 1, 1, 1)
        if self.directional:
            if orient is None:
                raise ConfigurationError("Directional signal strength models need bearings.")
            theta = self._directions[None, :, None, None] - orient[None, None]
        else:
            theta = None
        mu = self.expected_ss(dists[None, None], values, b0=b0, theta=theta)
        k = self._source_nodes.shape[0]
        l = self._directions.shape[0]
        mu = jnp.broadcast_to(mu, (k, l) + dists.shape).reshape((k * l,) + dists.shape)
        log_w = (self._source_log_w[:, None] + self._direction_log_w[None, :]).reshape(-1)
        return mu, log_w

    def detection_probs(self, values, dists, orient=None):
        mu, log_w = self._latent_means(values, dists, orient)
        return log_w, ndtr((mu - self.cutoff) / values["sigma.ss"])

    def capture_log_probs(self, values, dists, orient, bincapt, ss=None, diagonal=False):
        if ss is None:
            raise ConfigurationError("Signal strength detection function needs signal strength data.")
        mu, log_w = self._latent_means(values, dists, orient)
        sigma = values["sigma.ss"]
        log_undet = jnp.maximum(log_ndtr((self.cutoff - mu) / sigma), LOG_PROB_FLOOR)
        n_det = jnp.sum(bincapt, axis=1)[:, None]           # (n_ind, 1)
        wy = bincapt * ss
        # Sum over detections of the normal log-density, expanded so that every
        # term is a detector contraction.
        sq = (jnp.sum(wy * ss, axis=1)[:, None]
              - 2.0 * contract(wy, mu, diagonal)
              + contract(bincapt, mu ** 2, diagonal))
        log_det = -sq / (2.0 * sigma ** 2) - n_det * (jnp.log(sigma) + 0.5 * LOG_2PI)
        lp = log_det + contract(1.0 - bincapt, log_undet, diagonal)
        return log_w, lp


def source_quadrature(method: str, n: int) -> Tuple[np.ndarray, np.ndarray]:
    """Standard-normal quadrature nodes and log-weights for source strengths."""
    if method == "GH":
        x, w = np.polynomial.hermite.hermgauss(n)
        return np.sqrt(2.0) * x, np.log(w / np.sqrt(np.pi))
    if n == 1:
        return np.zeros(1), np.zeros(1)
    u = np.linspace(-RECT_HALF_WIDTH, RECT_HALF_WIDTH, n)
    w = np.exp(-0.5 * u ** 2)
    return u, np.log(w / np.sum(w))


# ----------------------------
# REGISTRY
# ----------------------------

DETFN_CLASSES: Dict[str, Type[DetectionFunction]] = {
    "hn": HalfNormal,
    "hhn": HazardHalfNormal,
    "hr": HazardRate,
    "th": Threshold,
    "lth": LogThreshold,
}
SS_DETFN_LINKS: Dict[str, str] = {"ss": "identity", "log.ss": "log", "spherical.ss": "spherical"}
DETFN_IDS: Dict[int, str] = {
    1: "hn", 2: "hhn", 3: "hr", 4: "th", 5: "lth", 6: "ss", 7: "log.ss", 8: "spherical.ss",
}


def build_detfn(detfn: Union[str, int],
                ss_opts: Optional[SignalStrengthOptions] = None) -> DetectionFunction:
    """Resolve a detection function by name or numeric id.

    Raises ConfigurationError for unknown identifiers, or for a
    signal-strength variant without a cutoff.
    """
    if isinstance(detfn, (int, np.integer)) and not isinstance(detfn, bool):
        if int(detfn) not in DETFN_IDS:
            raise ConfigurationError(f"Unknown detection function id {detfn}.")
        detfn = DETFN_IDS[int(detfn)]
    if detfn in DETFN_CLASSES:
        return DETFN_CLASSES[detfn]()
    if detfn in SS_DETFN_LINKS:
        opts = ss_opts if ss_opts is not None else SignalStrengthOptions()
        link = SS_DETFN_LINKS[detfn]
        if detfn == "ss" and opts.ss_link is not None:
            link = opts.ss_link
        elif opts.ss_link is not None and opts.ss_link != link:
            raise ConfigurationError(
                f"Detection function '{detfn}' conflicts with ss_link '{opts.ss_link}'."
            )
        return SignalStrength(opts, link=link)
    allowed = list(DETFN_CLASSES) + list(SS_DETFN_LINKS)
    raise ConfigurationError(f"Unknown detection function '{detfn}'. Allowed: {allowed}")
