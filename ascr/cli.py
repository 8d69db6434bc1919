"""
Command-line front end: fit a model to a survey stored in a .npz file.

Survey layout (per session s = 0, 1, ...):
    traps_<s>          (n_det, 2) detector coordinates
    mask_<s>           (n_mask, 2) mask points
    area_<s>           mask cell area
    bincapt_<s>        (n_ind, n_det) binary capture histories
    bearing_<s>, dist_<s>, toa_<s>, ss_<s>   optional, (n_ind, n_det), NaN where undetected
    mrds_<s>           optional, (n_ind, 2) known locations
    survey_length_<s>  optional
    ss_cutoff          optional scalar, required with signal strengths
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import re
from typing import Dict, List, Optional, Tuple

import numpy as np

from .detfns import (
    DEFAULT_N_DIR_QUADPOINTS,
    DEFAULT_N_HET_SOURCE_QUADPOINTS,
    HET_SOURCE_METHODS,
    SignalStrengthOptions,
)
from .errors import ConfigurationError, NonFiniteLikelihoodError
from .fit import FitResult, OptimOptions, fit_ascr
from .survey import CaptureHistories, Mask, Session, make_sessions

logger = logging.getLogger(__name__)


# ----------------------------
# PARSERS
# ----------------------------

def parse_keyvals(text: Optional[str],
                  allowed_keys: Optional[Tuple[str, ...]] = None) -> Dict[str, float]:
    """Parse comma/semicolon-separated `key=value` pairs into a float dict.

    Example: "g0=0.9,sigma=20;b0.ss=90". Keys are model parameter names,
    including dotted ones such as "b0.ss", "sigma.toa" or "sigma.s2", and are
    kept exactly as given: matching is case-sensitive, so "Sigma" is not
    "sigma". Unknown keys are rejected if `allowed_keys` is provided.
    """
    if not text:
        return {}
    parts = re.split(r"[;,]\s*", text.strip())
    out: Dict[str, float] = {}
    for p in parts:
        if not p:
            continue
        if "=" not in p:
            raise ValueError(f"Expected 'key=value' pairs, got '{p}'.")
        k, v = p.split("=", 1)
        key = k.strip()
        if allowed_keys and key not in allowed_keys:
            raise ValueError(f"Unknown key '{key}'. Allowed: {allowed_keys}")
        try:
            val = float(v.strip())
        except ValueError:
            raise ValueError(f"Value for '{key}' must be numeric, got '{v}'.")
        out[key] = val
    return out


def parse_floats(text: Optional[str]) -> Optional[List[float]]:
    """Parse "0.5,0.7;0.6" into [0.5, 0.7, 0.6]."""
    if not text:
        return None
    try:
        return [float(x) for x in re.split(r"[;,]\s*", text.strip()) if x]
    except ValueError:
        raise ValueError(f"Expected a comma-separated list of numbers, got '{text}'.")


def load_survey(path: str) -> Tuple[List[Session], Optional[float]]:
    """Read sessions (and the signal strength cutoff, if any) from a .npz file."""
    with np.load(path) as data:
        keys = set(data.files)
        n_sessions = 0
        while f"traps_{n_sessions}" in keys:
            n_sessions += 1
        if n_sessions == 0:
            raise ConfigurationError(f"{path}: no 'traps_0' array found.")
        traps, masks, capts, lengths = [], [], [], []
        for s in range(n_sessions):
            for required in ("mask", "area", "bincapt"):
                if f"{required}_{s}" not in keys:
                    raise ConfigurationError(f"{path}: missing '{required}_{s}'.")
            traps.append(data[f"traps_{s}"])
            masks.append(Mask(points=data[f"mask_{s}"], area=float(data[f"area_{s}"])))
            extra = {name: data[f"{name}_{s}"] for name in ("bearing", "dist", "toa", "ss", "mrds")
                     if f"{name}_{s}" in keys}
            capts.append(CaptureHistories(bincapt=data[f"bincapt_{s}"], **extra))
            lengths.append(float(data[f"survey_length_{s}"]) if f"survey_length_{s}" in keys else 1.0)
        cutoff = float(data["ss_cutoff"]) if "ss_cutoff" in keys else None
    return make_sessions(traps, masks, capts, survey_length=lengths), cutoff


# ----------------------------
# REPORTING
# ----------------------------

def print_summary(result: FitResult) -> None:
    """Human-readable summary of a fit."""
    status = "converged" if result.converged else f"NOT converged ({result.message})"
    print(f"Detection function: {result.detfn}   ({status})")
    print(f"Negative log-likelihood: {result.nll:.4f}")
    print("\nParameter estimates:")
    for name, value in result.estimates.items():
        if result.se is not None and name in result.se:
            print(f"  {name:<14s} {value:12.6g}   se={result.se[name]:.4g}")
        elif name in result.free_names:
            print(f"  {name:<14s} {value:12.6g}")
        else:
            print(f"  {name:<14s} {value:12.6g}   (fixed)")
    print("\nEffective sampling area:")
    for k, esa in enumerate(result.esa):
        se = "" if result.esa_se is None else f"   se={result.esa_se[k]:.4g}"
        print(f"  session {k + 1}: {esa:.6g}{se}")
    if result.Da is not None:
        da = np.atleast_1d(result.Da)
        se = "" if result.Da_se is None else f"   se={result.Da_se:.4g}"
        print(f"\nAnimal density: {', '.join(f'{v:.6g}' for v in da)}{se}")
    if result.se is None:
        print("\nStandard errors not computed (use --hess to force).")


def write_csv(result: FitResult, path: str) -> None:
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["parameter", "estimate", "se"])
        for name, value in result.estimates.items():
            se = "" if result.se is None or name not in result.se else f"{result.se[name]:.6g}"
            writer.writerow([name, f"{value:.6g}", se])
        for k, esa in enumerate(result.esa):
            se = "" if result.esa_se is None else f"{result.esa_se[k]:.6g}"
            writer.writerow([f"esa.s{k + 1}", f"{esa:.6g}", se])


# ----------------------------
# CLI
# ----------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Fit an acoustic spatially explicit capture-recapture model by maximum likelihood "
            "and report density, effective sampling area and standard errors."
        )
    )
    p.add_argument("survey", type=str, help="Path to the survey .npz file (see module docs).")
    p.add_argument(
        "--detfn", type=str, default="hn",
        help="Detection function: hn, hhn, hr, th, lth, ss, log.ss, spherical.ss.",
    )
    p.add_argument("--sv", type=str, default=None, help='Start values, e.g. "g0=0.9,sigma=20".')
    p.add_argument("--fix", type=str, default=None, help='Fixed values, e.g. "g0=1".')
    # Signal strength
    p.add_argument("--ss_cutoff", type=float, default=None,
                   help="Signal strength cutoff (overrides the value stored in the survey).")
    p.add_argument("--ss_link", type=str, default=None, help="identity, log or spherical.")
    p.add_argument("--het_source", action="store_true", help="Heterogeneous source strengths.")
    p.add_argument("--directional", action="store_true", help="Directional calling model.")
    p.add_argument("--het_source_method", type=str, choices=HET_SOURCE_METHODS, default="GH",
                   help="Source-strength quadrature: Gauss-Hermite (GH) or rectangles (rect).")
    p.add_argument("--n_het_source_quadpoints", type=int, default=DEFAULT_N_HET_SOURCE_QUADPOINTS,
                   help="Quadrature points for heterogeneous source strengths.")
    p.add_argument("--n_dir_quadpoints", type=int, default=DEFAULT_N_DIR_QUADPOINTS,
                   help="Call directions integrated over in directional models.")
    # Integration and acoustics
    p.add_argument("--local", action="store_true",
                   help="Integrate each call only over mask points near its detectors.")
    p.add_argument("--buffer", type=float, default=None, help="Local integration buffer distance.")
    p.add_argument("--sound_speed", type=float, default=330.0, help="Speed of sound (m/s).")
    p.add_argument("--cue_rates", type=str, default=None,
                   help="Independently measured call rates, e.g. \"10.2,11.5,9.8\".")
    # Optimisation
    hess = p.add_mutually_exclusive_group()
    hess.add_argument("--hess", dest="hess", action="store_true", default=None,
                      help="Compute the Hessian even when cue rates are given.")
    hess.add_argument("--no_hess", dest="hess", action="store_false", help="Skip the Hessian.")
    p.set_defaults(hess=None)
    p.add_argument("--nelder_mead", action="store_true", help="Use Nelder-Mead instead of BFGS.")
    p.add_argument("--phases", type=str, default=None,
                   help='Optimisation phase per parameter, e.g. "sigma=1,D=2"; unlisted ones join the last phase.')
    p.add_argument("--trace", action="store_true", help="Log parameter values at every evaluation.")
    # Output
    p.add_argument("--report_json", type=str, default=None, help="Path to save the fit summary as JSON.")
    p.add_argument("--report_csv", type=str, default=None, help="Path to save estimates as CSV.")
    p.add_argument("--verbose", action="store_true", help="Verbose logging.")
    return p


def signal_strength_options(args: argparse.Namespace,
                            cutoff: Optional[float]) -> SignalStrengthOptions:
    """Signal strength settings from the command line; --ss_cutoff wins over the stored cutoff."""
    return SignalStrengthOptions(
        cutoff=args.ss_cutoff if args.ss_cutoff is not None else cutoff,
        ss_link=args.ss_link,
        het_source=args.het_source,
        het_source_method=args.het_source_method,
        n_het_source_quadpoints=args.n_het_source_quadpoints,
        directional=True if args.directional else None,
        n_dir_quadpoints=args.n_dir_quadpoints,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if (args.verbose or args.trace) else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        sessions, cutoff = load_survey(args.survey)
        ss_opts = None
        if sessions[0].capt.ss is not None:
            ss_opts = signal_strength_options(args, cutoff)
        result = fit_ascr(
            sessions,
            detfn=args.detfn,
            sv=parse_keyvals(args.sv),
            fix=parse_keyvals(args.fix),
            ss_opts=ss_opts,
            cue_rates=parse_floats(args.cue_rates),
            sound_speed=args.sound_speed,
            local=args.local,
            buffer=args.buffer,
            hess=args.hess,
            trace=args.trace,
            optim_opts=OptimOptions(
                nelder_mead=args.nelder_mead,
                phases={k: int(v) for k, v in parse_keyvals(args.phases).items()},
            ),
        )
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 2
    except NonFiniteLikelihoodError as e:
        logger.error("Numerical failure: %s", e)
        return 3

    print_summary(result)

    if args.report_json:
        with open(args.report_json, "w", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, indent=2)
        print(f"Saved JSON report to: {args.report_json}")

    if args.report_csv:
        write_csv(result, args.report_csv)
        print(f"Saved CSV report to: {args.report_csv}")
    return 0 if result.converged else 1


if __name__ == "__main__":
    raise SystemExit(main())
