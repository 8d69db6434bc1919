"""
Acoustic spatially explicit capture-recapture (ascr).

Estimates animal or call density from detections at a fixed detector array by
maximising a likelihood integrated over a discretised mask. Gradients and
Hessians of the likelihood come from JAX, which is switched to 64-bit
floating point on import.
"""

import jax

jax.config.update("jax_enable_x64", True)

from .detfns import SignalStrengthOptions, build_detfn  # noqa: E402
from .engine import LikelihoodEngine  # noqa: E402
from .errors import ConfigurationError, NonFiniteLikelihoodError  # noqa: E402
from .fit import FitResult, OptimOptions, fit_ascr  # noqa: E402
from .survey import CaptureHistories, Mask, Session, make_sessions  # noqa: E402

__all__ = [
    "CaptureHistories",
    "ConfigurationError",
    "FitResult",
    "LikelihoodEngine",
    "Mask",
    "NonFiniteLikelihoodError",
    "OptimOptions",
    "Session",
    "SignalStrengthOptions",
    "build_detfn",
    "fit_ascr",
    "make_sessions",
]
