"""
Mask geometry: detector-to-mask distances, bearings, and local integration sets.

Everything here depends on coordinates only, so it is computed once per
session and reused for every likelihood evaluation.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from .errors import ConfigurationError


def distances(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Euclidean distances between rows of `a` (n, 2) and rows of `b` (m, 2).

    Returns an (n, m) array.
    """
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    diff = a[:, None, :] - b[None, :, :]
    return np.sqrt(np.sum(diff ** 2, axis=-1))


def bearings(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Bearings from each row of `a` to each row of `b`.

    Radians clockwise from north (the +y axis), in [0, 2*pi). Shape (n, m).
    """
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    dx = b[None, :, 0] - a[:, None, 0]
    dy = b[None, :, 1] - a[:, None, 1]
    return np.mod(np.arctan2(dx, dy), 2.0 * np.pi)


def mask_buffer(traps: np.ndarray, points: np.ndarray) -> float:
    """Largest distance from a mask point to its nearest detector."""
    return float(np.max(np.min(distances(traps, points), axis=0)))


def local_integration_sets(dists: np.ndarray,
                           bincapt: np.ndarray,
                           buffer: Optional[float] = None,
                           session: int = 0) -> np.ndarray:
    """Mask points each individual's likelihood is summed over.

    Args:
        dists: (n_det, n_mask) detector-to-mask distances.
        bincapt: (n_ind, n_det) binary capture histories.
        buffer: Radius around detecting detectors. None means no restriction.
        session: Session index, only used in error messages.
    Returns:
        (n_ind, n_mask) boolean array. A point is kept when it lies within
        `buffer` of every detector that detected the individual.
    """
    n_ind = bincapt.shape[0]
    n_mask = dists.shape[1]
    if buffer is None:
        return np.ones((n_ind, n_mask), dtype=bool)
    near = dists <= buffer                                  # (n_det, n_mask)
    detected = np.asarray(bincapt) > 0                      # (n_ind, n_det)
    # A point is excluded if any detecting detector is out of range.
    n_far = detected.astype(int) @ (~near).astype(int)      # (n_ind, n_mask)
    keep = n_far == 0
    empty = np.flatnonzero(~keep.any(axis=1))
    if empty.size:
        raise ConfigurationError(
            f"Local integration set is empty for individual(s) {empty.tolist()} "
            f"in session {session}; buffer {buffer:g} is too small for the "
            "detector spacing."
        )
    return keep


def nearest_point(points: np.ndarray, locations: np.ndarray) -> np.ndarray:
    """Index of the nearest mask point for each row of `locations`."""
    return np.argmin(distances(locations, points), axis=1)
