"""
Survey inputs: detector arrays, masks, capture histories, sessions.

Inputs arrive as plain numpy arrays; everything is validated here so that
configuration problems surface before any likelihood evaluation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .errors import ConfigurationError
from .geometry import mask_buffer
from .supplementary import SUPP_TYPES

MEASUREMENT_TYPES: Tuple[str, ...] = ("bearing", "dist", "toa", "ss")


@dataclass(frozen=True)
class Mask:
    """Mask points (n_mask, 2) with a common cell area.

    `buffer` is the distance used for local integration; when omitted it is
    derived from the detector array (largest nearest-detector distance).
    """
    points: np.ndarray
    area: float
    buffer: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "points", np.asarray(self.points, dtype=float))

    @property
    def n(self) -> int:
        return int(self.points.shape[0])


@dataclass
class CaptureHistories:
    """Capture histories for the detected individuals (or calls) of one session.

    `bincapt` is (n_ind, n_det) binary. Measurement matrices share its shape
    and hold a value exactly where a detection occurred (NaN elsewhere; zeros
    are also read as "absent" at undetected entries). `mrds` holds known
    locations, (n_ind, 2).
    """
    bincapt: np.ndarray
    bearing: Optional[np.ndarray] = None
    dist: Optional[np.ndarray] = None
    toa: Optional[np.ndarray] = None
    ss: Optional[np.ndarray] = None
    mrds: Optional[np.ndarray] = None

    @property
    def n(self) -> int:
        return int(self.bincapt.shape[0])

    @property
    def supp_types(self) -> Tuple[str, ...]:
        """Supplementary information types present (excluding signal strength)."""
        return tuple(t for t in SUPP_TYPES if getattr(self, t) is not None)

    def measurement(self, name: str) -> Optional[np.ndarray]:
        """Measurement matrix with zeros at undetected entries."""
        m = getattr(self, name)
        if m is None:
            return None
        return np.where(self.bincapt > 0, np.nan_to_num(np.asarray(m, dtype=float)), 0.0)


@dataclass
class Session:
    traps: np.ndarray
    mask: Mask
    capt: CaptureHistories
    survey_length: float = 1.0
    mask_covariates: Dict[str, np.ndarray] = field(default_factory=dict)
    session_covariates: Dict[str, float] = field(default_factory=dict)

    @property
    def buffer(self) -> float:
        if self.mask.buffer is not None:
            return float(self.mask.buffer)
        return mask_buffer(self.traps, self.mask.points)


def _as_list(x, kind) -> list:
    if x is None:
        return None
    if isinstance(x, (list, tuple)):
        return list(x)
    if kind == "array" and isinstance(x, np.ndarray) and x.ndim == 3:
        return list(x)
    return [x]


def make_sessions(traps: Union[np.ndarray, Sequence[np.ndarray]],
                  masks: Union[Mask, Sequence[Mask]],
                  capts: Union[CaptureHistories, Sequence[CaptureHistories]],
                  survey_length: Union[None, float, Sequence[float]] = None,
                  mask_covariates: Optional[Sequence[Dict[str, np.ndarray]]] = None,
                  session_covariates: Optional[Sequence[Dict[str, float]]] = None) -> List[Session]:
    """Assemble and validate sessions from single-session or per-session inputs.

    Fails fast if the inputs imply different numbers of sessions.
    """
    traps_l = _as_list(traps, "array")
    masks_l = _as_list(masks, "mask")
    capts_l = _as_list(capts, "capt")
    n_sessions = len(traps_l)
    counts = {"traps": n_sessions, "mask": len(masks_l), "capt": len(capts_l)}
    if survey_length is None:
        lengths = [1.0] * n_sessions
    else:
        lengths = [float(v) for v in np.atleast_1d(np.asarray(survey_length, dtype=float))]
        counts["survey_length"] = len(lengths)
    if mask_covariates is not None:
        counts["mask_covariates"] = len(mask_covariates)
    if session_covariates is not None:
        counts["session_covariates"] = len(session_covariates)
    if len(set(counts.values())) != 1:
        raise ConfigurationError(f"Arguments imply different numbers of sessions: {counts}")

    sessions = []
    for s in range(n_sessions):
        session = Session(
            traps=np.asarray(traps_l[s], dtype=float),
            mask=masks_l[s],
            capt=capts_l[s],
            survey_length=lengths[s],
            mask_covariates=dict(mask_covariates[s]) if mask_covariates is not None else {},
            session_covariates=dict(session_covariates[s]) if session_covariates is not None else {},
        )
        validate_session(session, s)
        sessions.append(session)
    check_signal_strength_consistency(sessions)
    return sessions


def validate_session(session: Session, index: int = 0) -> None:
    """Check shapes and the detection / measurement correspondence."""
    traps = session.traps
    points = np.asarray(session.mask.points, dtype=float)
    if traps.ndim != 2 or traps.shape[1] != 2 or traps.shape[0] == 0:
        raise ConfigurationError(f"Session {index}: detector coordinates must be an (n, 2) array.")
    if points.ndim != 2 or points.shape[1] != 2 or points.shape[0] == 0:
        raise ConfigurationError(f"Session {index}: mask points must be an (n, 2) array.")
    if not session.mask.area > 0:
        raise ConfigurationError(f"Session {index}: mask area must be positive.")
    if not session.survey_length > 0:
        raise ConfigurationError(f"Session {index}: survey length must be positive.")

    capt = session.capt
    b = np.asarray(capt.bincapt)
    if b.ndim != 2 or b.shape[1] != traps.shape[0]:
        raise ConfigurationError(
            f"Session {index}: capture histories must be (n_ind, {traps.shape[0]}), got {b.shape}."
        )
    if not np.all(np.isin(b, (0, 1))):
        raise ConfigurationError(f"Session {index}: capture histories must be binary.")
    never = np.flatnonzero(b.sum(axis=1) == 0)
    if never.size:
        raise ConfigurationError(
            f"Session {index}: individual(s) {never.tolist()} have no detections."
        )

    detected = b > 0
    for name in MEASUREMENT_TYPES:
        m = getattr(capt, name)
        if m is None:
            continue
        m = np.asarray(m, dtype=float)
        if m.shape != b.shape:
            raise ConfigurationError(
                f"Session {index}: '{name}' measurements have shape {m.shape}, expected {b.shape}."
            )
        populated = np.isfinite(m)
        missing = np.argwhere(detected & ~populated)
        if missing.size:
            i, j = missing[0]
            raise ConfigurationError(
                f"Session {index}: individual {i} was detected at detector {j} "
                f"but has no '{name}' measurement."
            )
        extra = np.argwhere(~detected & populated & (m != 0))
        if extra.size:
            i, j = extra[0]
            raise ConfigurationError(
                f"Session {index}: individual {i} has a '{name}' measurement at "
                f"detector {j} without a detection."
            )
        if name == "dist" and np.any(m[detected] <= 0):
            raise ConfigurationError(f"Session {index}: estimated distances must be positive.")

    if capt.mrds is not None:
        loc = np.asarray(capt.mrds, dtype=float)
        if loc.shape != (b.shape[0], 2) or not np.all(np.isfinite(loc)):
            raise ConfigurationError(f"Session {index}: mrds locations must be a finite (n_ind, 2) array.")

    for name, cov in session.mask_covariates.items():
        if np.shape(cov) != (points.shape[0],):
            raise ConfigurationError(
                f"Session {index}: mask covariate '{name}' must have one value per mask point."
            )


def check_signal_strength_consistency(sessions: Sequence[Session]) -> None:
    has_ss = [s.capt.ss is not None for s in sessions]
    if any(has_ss) and not all(has_ss):
        raise ConfigurationError(
            "Signal strengths must be collected for all sessions, or for no sessions."
        )


def supp_types_present(sessions: Sequence[Session]) -> Tuple[str, ...]:
    """Supplementary types present in at least one session."""
    found = set()
    for s in sessions:
        found.update(s.capt.supp_types)
    return tuple(t for t in SUPP_TYPES if t in found)
