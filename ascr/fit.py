"""
Fitting driver: builds the model, minimises the negative log-likelihood with
scipy, and derives effective sampling areas, densities and standard errors.

Standard errors come from the inverse Hessian of the negative log-likelihood
on the unconstrained scale, carried to natural-scale quantities by the delta
method. When cue rates are supplied (calls rather than animals are the
detected units) the Hessian is not computed unless `hess=True` is given,
because repeated calls from one animal break the independence the asymptotic
variance relies on.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field, replace
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import jax.numpy as jnp
from scipy.optimize import minimize

from .density import DensityModel
from .detfns import SS_DETFN_LINKS, DetectionFunction, SignalStrengthOptions, build_detfn
from .engine import LikelihoodEngine
from .errors import ConfigurationError, NonFiniteLikelihoodError
from .likelihood import effective_sampling_area, prepare_session
from .params import ParameterSet, build_parameters
from .supplementary import DEFAULT_SOUND_SPEED, SUPP_PARAM_NAMES
from .survey import Session, check_signal_strength_consistency, supp_types_present

logger = logging.getLogger(__name__)


# ----------------------------
# CONFIGURABLE CONSTANTS
# ----------------------------

DEFAULT_METHOD: str = "BFGS"
DEFAULT_MAXITER: int = 1000
DEFAULT_GTOL: float = 1e-6
MAX_GRADIENT_CONVERGED: float = 1e-3    # Largest |gradient| still accepted as converged.
FLOOR_WARNING_SHARE: float = 0.10       # Warn if more detection probabilities than this are floored.

# Start values for parameters that do not depend on the data.
FIXED_START_VALUES: Dict[str, float] = {
    "g0": 0.9,
    "lambda0": 2.0,
    "z": 5.0,
    "shape": 2.0,
    "shape.1": 2.0,
    "shape.2": float(np.log(4.0)),
    "kappa": 10.0,
    "alpha": 10.0,
    "sigma.toa": 0.0025,
}


@dataclass
class OptimOptions:
    """Options for the external minimizer.

    `phases` maps parameter names to a phase number. Parameters are released
    phase by phase; parameters without a phase are released in the last one.
    """
    method: str = DEFAULT_METHOD
    nelder_mead: bool = False
    phases: Dict[str, int] = field(default_factory=dict)
    maxiter: int = DEFAULT_MAXITER
    gtol: float = DEFAULT_GTOL
    max_gradient: float = MAX_GRADIENT_CONVERGED


@dataclass
class FitResult:
    """Outputs of a model fit.

    `se`, `vcov`, `esa_se` and `Da_se` are None when the Hessian was not
    computed; entries are NaN when it could not be inverted.
    """
    detfn: str
    estimates: Dict[str, float]
    nll: float
    converged: bool
    message: str
    theta: np.ndarray
    free_names: List[str]
    esa: np.ndarray
    se: Optional[Dict[str, float]] = None
    vcov: Optional[np.ndarray] = None
    esa_se: Optional[np.ndarray] = None
    D: Optional[float] = None
    D_se: Optional[float] = None
    mean_density: Optional[np.ndarray] = None
    Da: Optional[Union[float, np.ndarray]] = None
    Da_se: Optional[float] = None
    n_evaluations: int = 0

    @property
    def hessian_computed(self) -> bool:
        return self.vcov is not None

    def to_dict(self) -> Dict:
        """JSON-serialisable summary."""
        def arr(x):
            return None if x is None else np.asarray(x, dtype=float).tolist()

        return {
            "detfn": self.detfn,
            "converged": bool(self.converged),
            "message": self.message,
            "nll": float(self.nll),
            "estimates": {k: float(v) for k, v in self.estimates.items()},
            "se": None if self.se is None else {k: float(v) for k, v in self.se.items()},
            "esa": arr(self.esa),
            "esa_se": arr(self.esa_se),
            "D": self.D,
            "D_se": self.D_se,
            "mean_density": arr(self.mean_density),
            "Da": arr(self.Da) if isinstance(self.Da, np.ndarray) else self.Da,
            "Da_se": self.Da_se,
            "n_evaluations": int(self.n_evaluations),
        }


# ----------------------------
# MODEL SET-UP
# ----------------------------

def resolve_detfn(detfn: Union[str, int], sessions: Sequence[Session],
                  ss_opts: Optional[SignalStrengthOptions],
                  sv: Mapping[str, float], fix: Mapping[str, float]) -> DetectionFunction:
    """Choose the detection function given the data actually collected."""
    check_signal_strength_consistency(sessions)
    has_ss = sessions[0].capt.ss is not None
    is_ss = detfn in SS_DETFN_LINKS or detfn in (6, 7, 8)
    if has_ss and not is_ss:
        warnings.warn(
            f"Argument 'detfn' ({detfn!r}) is being ignored as signal strength information "
            "is provided; a signal strength detection function is fitted instead.",
            UserWarning,
            stacklevel=3,
        )
        detfn = "ss"
        is_ss = True
    if is_ss and not has_ss:
        raise ConfigurationError(
            f"Detection function {detfn!r} requires signal strength measurements."
        )
    if ss_opts is not None and not has_ss:
        warnings.warn("Argument 'ss_opts' is ignored: no signal strength data.", UserWarning,
                      stacklevel=3)
        ss_opts = None
    if ss_opts is not None and ss_opts.directional is None:
        ss_opts = replace(ss_opts, directional=("b2.ss" in sv or "b2.ss" in fix))
    return build_detfn(detfn, ss_opts)


def default_start_values(detfn: DetectionFunction, sessions: Sequence[Session],
                         supp_types: Sequence[str], density: DensityModel,
                         overrides: Optional[Mapping[str, float]] = None) -> Dict[str, float]:
    """Data-driven start values for every model parameter.

    `overrides` (user start values and fixed values) replace the defaults
    before the density start value is derived from them.
    """
    sigma0 = float(np.mean([s.buffer for s in sessions])) / 4.0
    sv: Dict[str, float] = {k: v for k, v in FIXED_START_VALUES.items()
                            if k in detfn.param_names}
    sv["sigma"] = sigma0
    sv["scale"] = sigma0 / 2.0 if detfn.name == "th" else float(np.log(2.0)) / sigma0

    if detfn.uses_signal_strength:
        obs = np.concatenate([s.capt.measurement("ss")[s.capt.bincapt > 0] for s in sessions])
        top = float(np.max(obs))
        spread = float(np.std(obs)) if obs.size > 1 else 1.0
        cutoff = detfn.cutoff
        if detfn.link == "log":
            b0 = np.log(top) if top > 1.0 else 1.0
            b1 = (b0 - np.log(cutoff)) / sigma0 if cutoff > 0 and b0 > np.log(cutoff) else 0.1 / sigma0
        else:
            b0 = top if top > 0 else 1.0
            b1 = max(b0 - cutoff, 1.0) / sigma0
        sv.update({"b0.ss": float(b0), "b1.ss": float(b1), "b2.ss": float(b1) / 2.0,
                   "sigma.ss": spread if spread > 0 else 1.0,
                   "sigma.b0.ss": spread if spread > 0 else 1.0})

    for t in supp_types:
        if t in SUPP_PARAM_NAMES:
            name = SUPP_PARAM_NAMES[t]
            sv[name] = FIXED_START_VALUES[name]
    sv = {k: v for k, v in sv.items() if k in detfn.param_names or k in SUPP_PARAM_NAMES.values()}
    sv.update({k: float(v) for k, v in (overrides or {}).items() if k in sv})

    # Density start: detected count over expected count per unit density.
    values = {k: jnp.asarray(v) for k, v in sv.items()}
    exposure = 0.0
    for k, s in enumerate(sessions):
        esa = float(effective_sampling_area(detfn, values, prepare_session(s, k)))
        exposure += s.survey_length * esa
    n_total = sum(s.capt.n for s in sessions)
    if exposure > 0 and n_total > 0:
        d0 = n_total / exposure
    else:
        d0 = 1.0 / sum(s.mask.area * s.mask.n for s in sessions)
    sv.update(density.start_values(d0))
    return sv


def _clip_into_bounds(sv: Dict[str, float], user_sv: Mapping[str, float],
                      bounds: Mapping[str, Tuple[float, float]]) -> Dict[str, float]:
    out = dict(sv)
    for name, (lo, hi) in bounds.items():
        if name in user_sv or name not in out:
            continue
        if not lo < out[name] < hi:
            out[name] = 0.5 * (lo + hi)
    return out


# ----------------------------
# OPTIMISATION
# ----------------------------

def _phase_groups(pset: ParameterSet, phases: Mapping[str, int]) -> List[np.ndarray]:
    """Indices into theta released in each phase (cumulative)."""
    if not phases:
        return [np.arange(len(pset))]
    last = max(phases.values())
    levels = np.array([phases.get(n, phases.get(pset.base_name(n), last))
                       for n in pset.free_names])
    return [np.flatnonzero(levels <= p) for p in sorted(set(levels.tolist()))]


def _minimize(engine: LikelihoodEngine, theta0: np.ndarray, opts: OptimOptions):
    theta = np.array(theta0, dtype=float)
    result = None
    for idx in _phase_groups(engine.params, opts.phases):
        if idx.size == 0:
            continue
        base = theta.copy()

        def full(sub, base=base, idx=idx):
            t = base.copy()
            t[idx] = sub
            return t

        if opts.nelder_mead:
            result = minimize(lambda sub: engine.value(full(sub)), theta[idx],
                              method="Nelder-Mead",
                              options={"maxiter": opts.maxiter, "xatol": 1e-8, "fatol": 1e-10})
        else:
            def fun(sub):
                value, grad = engine.objective(full(sub))
                return value, grad[idx]

            result = minimize(fun, theta[idx], jac=True, method=opts.method,
                              options={"maxiter": opts.maxiter, "gtol": opts.gtol})
        theta = full(result.x)
    return theta, result


def _delta_se(jacobian: np.ndarray, vcov: np.ndarray) -> np.ndarray:
    var = np.einsum("ij,jk,ik->i", jacobian, vcov, jacobian)
    return np.sqrt(np.where(var >= 0, var, np.nan))


# ----------------------------
# MAIN ENTRY POINT
# ----------------------------

def fit_ascr(sessions: Union[Session, Sequence[Session]],
             detfn: Union[str, int] = "hn",
             sv: Optional[Mapping[str, float]] = None,
             fix: Optional[Mapping[str, float]] = None,
             bounds: Optional[Mapping[str, Tuple[float, float]]] = None,
             ss_opts: Optional[SignalStrengthOptions] = None,
             cue_rates: Optional[Sequence[float]] = None,
             sound_speed: float = DEFAULT_SOUND_SPEED,
             local: bool = False,
             buffer: Optional[float] = None,
             density_covariates: Optional[Sequence[str]] = None,
             cov_scale: bool = True,
             vary_by_session: Optional[Sequence[str]] = None,
             hess: Optional[bool] = None,
             trace: bool = False,
             optim_opts: Optional[OptimOptions] = None) -> FitResult:
    """Fit an acoustic SCR model by maximum likelihood.

    Configuration problems raise ConfigurationError before the optimizer
    runs. A non-finite objective raises NonFiniteLikelihoodError. Failure of
    the optimizer to converge is reported through `FitResult.converged`.
    """
    if isinstance(sessions, Session):
        sessions = [sessions]
    sessions = list(sessions)
    if not sessions:
        raise ConfigurationError("At least one session is required.")
    sv = dict(sv or {})
    fix = dict(fix or {})
    bounds = dict(bounds or {})
    opts = optim_opts or OptimOptions()
    vary = tuple(vary_by_session or ())

    det = resolve_detfn(detfn, sessions, ss_opts, sv, fix)
    density = DensityModel(sessions, density_covariates, scale=cov_scale)
    supp = supp_types_present(sessions)
    names = (density.param_names + list(det.param_names)
             + [SUPP_PARAM_NAMES[t] for t in supp if t in SUPP_PARAM_NAMES])
    clash = [n for n in vary if n in density.param_names]
    if clash:
        raise ConfigurationError(f"Density parameters cannot vary by session: {clash}")

    start = default_start_values(det, sessions, supp, density, overrides={**sv, **fix})
    start = _clip_into_bounds(start, sv, bounds)
    start.update(sv)
    pset = build_parameters(names, start, fix, bounds, vary, len(sessions))

    if cue_rates is not None:
        cue_rates = np.asarray(cue_rates, dtype=float)
        if cue_rates.size == 0 or np.any(cue_rates <= 0):
            raise ConfigurationError("Cue rates must be positive.")
    if hess is None:
        hess = cue_rates is None

    engine = LikelihoodEngine(sessions, det, pset, density, sound_speed=sound_speed,
                              local=local, buffer=buffer, trace=trace)
    logger.info("Fitting %r", engine)
    theta0 = pset.start_vector()
    engine.evaluate(theta0)

    theta, result = _minimize(engine, theta0, opts)
    nll, grad = engine.objective(theta)
    if not np.isfinite(nll):
        raise NonFiniteLikelihoodError(f"Negative log-likelihood is {nll} at the returned point.",
                                       theta=theta)
    max_grad = float(np.max(np.abs(grad))) if grad.size else 0.0
    success = True if result is None else bool(result.success)
    message = "no free parameters" if result is None else str(result.message)
    converged = success or max_grad < opts.max_gradient
    if not converged:
        logger.warning("Optimizer did not converge (%s); max |gradient| = %.3g",
                       message, max_grad)

    floored = engine.floored_fraction(theta)
    if floored > FLOOR_WARNING_SHARE:
        logger.warning("%.1f%% of detection probabilities are at the numerical floor.",
                       100.0 * floored)

    estimates = engine.natural(theta)
    esa = engine.esa(theta)
    out = FitResult(
        detfn=det.name,
        estimates=estimates,
        nll=nll,
        converged=converged,
        message=message,
        theta=theta,
        free_names=list(pset.free_names),
        esa=esa,
        n_evaluations=engine.n_evaluations,
    )

    if density.homogeneous:
        out.D = estimates["D"]
    values = pset.natural(jnp.asarray(theta))
    out.mean_density = np.array([
        float(jnp.mean(jnp.exp(density.log_density(pset.session_values(values, k), k))))
        for k in range(len(sessions))
    ])

    if hess and len(pset):
        vcov = _invert_hessian(engine.hessian(theta))
        nat_se = _delta_se(engine.natural_jacobian(theta), vcov)
        se_all = dict(zip(pset.names, nat_se.tolist()))
        out.vcov = vcov
        out.se = {n: se_all[n] for n in pset.free_names}
        out.esa_se = _delta_se(engine.esa_jacobian(theta), vcov)
        if density.homogeneous:
            out.D_se = se_all["D"]

    if cue_rates is not None:
        mu = float(np.mean(cue_rates))
        out.Da = out.D / mu if density.homogeneous else out.mean_density / mu
        if out.D_se is not None:
            var_mu = float(np.var(cue_rates, ddof=1)) / cue_rates.size if cue_rates.size > 1 else 0.0
            out.Da_se = out.Da * float(np.sqrt((out.D_se / out.D) ** 2 + var_mu / mu ** 2))
    return out


def _invert_hessian(h: np.ndarray) -> np.ndarray:
    try:
        vcov = np.linalg.inv(h)
    except np.linalg.LinAlgError:
        logger.warning("Hessian is singular; standard errors are unavailable.")
        return np.full_like(h, np.nan)
    if not np.all(np.isfinite(vcov)) or np.any(np.diag(vcov) <= 0):
        logger.warning("Hessian is not positive definite; standard errors may be unreliable.")
    return vcov
