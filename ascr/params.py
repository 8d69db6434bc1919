"""
Parameter vector: names, link functions, fixing, bounds.

The optimizer works on an unconstrained vector `theta` holding only the
free parameters. `ParameterSet.natural(theta)` maps it back to a dict of
natural-scale values (fixed parameters included) and is traceable by JAX,
so gradients flow through the reparameterisation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import jax
import jax.numpy as jnp

from .errors import ConfigurationError

LINKS: Tuple[str, ...] = ("identity", "log", "logit", "bounded")

# Default link per parameter; anything not listed is on the identity scale.
DEFAULT_LINKS: Dict[str, str] = {
    "D": "log",
    "g0": "logit",
    "sigma": "log",
    "lambda0": "log",
    "z": "log",
    "shape": "identity",
    "scale": "log",
    "shape.1": "identity",
    "shape.2": "identity",
    "b0.ss": "log",
    "b1.ss": "log",
    "b2.ss": "log",
    "sigma.ss": "log",
    "sigma.b0.ss": "log",
    "kappa": "log",
    "alpha": "log",
    "sigma.toa": "log",
}


def _logit(p):
    return np.log(p) - np.log1p(-p)


@dataclass
class Parameter:
    """One named scalar parameter.

    A parameter with `bounds` uses a scaled logit link,
    natural = lo + (hi - lo) * sigmoid(theta), regardless of its default link.
    """
    name: str
    start: float
    link: str = "identity"
    fixed: Optional[float] = None
    bounds: Optional[Tuple[float, float]] = None

    def __post_init__(self):
        if self.bounds is not None:
            lo, hi = (float(v) for v in self.bounds)
            if not lo < hi:
                raise ConfigurationError(f"Bounds for '{self.name}' must satisfy lower < upper.")
            self.bounds = (lo, hi)
            self.link = "bounded"
        if self.link not in LINKS:
            raise ConfigurationError(f"Unknown link '{self.link}' for '{self.name}'.")
        if self.fixed is None:
            self._check_domain(self.start, "start value")
        elif not np.isfinite(float(self.fixed)):
            raise ConfigurationError(f"Fixed value for '{self.name}' must be finite.")

    @property
    def is_fixed(self) -> bool:
        return self.fixed is not None

    def _check_domain(self, value: float, what: str) -> None:
        value = float(value)
        ok = np.isfinite(value)
        if self.link == "log":
            ok = ok and value > 0
        elif self.link == "logit":
            ok = ok and 0 < value < 1
        elif self.link == "bounded":
            ok = ok and self.bounds[0] < value < self.bounds[1]
        if not ok:
            raise ConfigurationError(f"Invalid {what} {value!r} for '{self.name}' ({self.link} link).")

    def to_unconstrained(self, value: float) -> float:
        value = float(value)
        if self.link == "log":
            return float(np.log(value))
        if self.link == "logit":
            return float(_logit(value))
        if self.link == "bounded":
            lo, hi = self.bounds
            return float(_logit((value - lo) / (hi - lo)))
        return value

    def to_natural(self, theta):
        if self.link == "log":
            return jnp.exp(theta)
        if self.link == "logit":
            return jax.nn.sigmoid(theta)
        if self.link == "bounded":
            lo, hi = self.bounds
            return lo + (hi - lo) * jax.nn.sigmoid(theta)
        return theta


class ParameterSet:
    """Ordered collection of parameters; the free ones make up `theta`."""

    def __init__(self, params: Sequence[Parameter], vary_by_session: Sequence[str] = ()):
        self.params: List[Parameter] = list(params)
        self.vary_by_session = tuple(vary_by_session)
        self._by_name = {p.name: p for p in self.params}
        self.names: List[str] = [p.name for p in self.params]
        self.free: List[Parameter] = [p for p in self.params if not p.is_fixed]
        self.free_names: List[str] = [p.name for p in self.free]

    def __getitem__(self, name: str) -> Parameter:
        return self._by_name[name]

    def __len__(self) -> int:
        return len(self.free)

    def base_name(self, name: str) -> str:
        """Strip a session suffix (".s<k>") from a session-specific name."""
        for base in self.vary_by_session:
            if name.startswith(base + ".s") and name[len(base) + 2:].isdigit():
                return base
        return name

    def start_vector(self) -> np.ndarray:
        return np.array([p.to_unconstrained(p.start) for p in self.free], dtype=float)

    def to_theta(self, values: Mapping[str, float]) -> np.ndarray:
        """Unconstrained vector for the free parameters from natural values."""
        return np.array([p.to_unconstrained(values[p.name]) for p in self.free], dtype=float)

    def natural(self, theta) -> Dict[str, object]:
        """Natural-scale values of every parameter, fixed ones included."""
        out = {}
        k = 0
        for p in self.params:
            if p.is_fixed:
                out[p.name] = jnp.asarray(p.fixed, dtype=float)
            else:
                out[p.name] = p.to_natural(theta[k])
                k += 1
        return out

    def session_values(self, values: Mapping[str, object], session: int) -> Dict[str, object]:
        """Values for one session, with session-specific copies under their base names."""
        out = dict(values)
        suffix = f".s{session + 1}"
        for base in self.vary_by_session:
            out[base] = values[base + suffix]
        return out


def expand_names(names: Sequence[str], vary_by_session: Sequence[str], n_sessions: int) -> List[str]:
    out = []
    for name in names:
        if name in vary_by_session:
            out.extend(f"{name}.s{k + 1}" for k in range(n_sessions))
        else:
            out.append(name)
    return out


def build_parameters(names: Sequence[str],
                     sv: Mapping[str, float],
                     fix: Optional[Mapping[str, float]] = None,
                     bounds: Optional[Mapping[str, Tuple[float, float]]] = None,
                     vary_by_session: Sequence[str] = (),
                     n_sessions: int = 1,
                     links: Optional[Mapping[str, str]] = None) -> ParameterSet:
    """Build the parameter set for a model.

    `sv`, `fix` and `bounds` are keyed by base name (applies to every session
    copy) or by a session-specific name such as "sigma.s2". Unknown names are
    configuration errors.
    """
    fix = dict(fix or {})
    bounds = dict(bounds or {})
    links = dict(DEFAULT_LINKS, **(links or {}))
    for name in vary_by_session:
        if name not in names:
            raise ConfigurationError(f"Cannot vary '{name}' by session: not a model parameter.")
    full = expand_names(names, vary_by_session, n_sessions)
    allowed = set(full) | set(names)
    for label, given in (("sv", sv), ("fix", fix), ("bounds", bounds)):
        unknown = sorted(set(given) - allowed)
        if unknown:
            raise ConfigurationError(
                f"Unknown parameter(s) in {label}: {unknown}. Model parameters: {list(names)}"
            )

    params = []
    for name in full:
        base = name.rsplit(".s", 1)[0] if name not in names else name

        def lookup(d):
            return d.get(name, d.get(base))

        fixed = lookup(fix)
        start = lookup(sv)
        if start is None:
            start = fixed
        if start is None:
            raise ConfigurationError(f"No start value for parameter '{name}'.")
        params.append(Parameter(
            name=name,
            start=float(start),
            link=links.get(base, "identity"),
            fixed=None if fixed is None else float(fixed),
            bounds=lookup(bounds),
        ))
    return ParameterSet(params, vary_by_session=vary_by_session)
