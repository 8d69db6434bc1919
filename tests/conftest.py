import numpy as np
import pytest

from ascr.geometry import bearings, distances
from ascr.survey import CaptureHistories, Mask, make_sessions


TRAP_SPACING = 30.0
MASK_SPACING = 10.0


def grid_traps(n_side=3, spacing=TRAP_SPACING):
    xs = np.arange(n_side) * spacing
    xx, yy = np.meshgrid(xs, xs)
    return np.column_stack([xx.ravel(), yy.ravel()])


def grid_mask(lo=-60.0, hi=120.0, spacing=MASK_SPACING):
    xs = np.arange(lo, hi + spacing / 2, spacing)
    xx, yy = np.meshgrid(xs, xs)
    return Mask(points=np.column_stack([xx.ravel(), yy.ravel()]), area=spacing ** 2)


def simulate_survey(seed=1, D=0.005, g0=0.9, sigma=15.0, kappa=None, toa_sd=None,
                    alpha=None, ss=None, mrds=False, survey_length=1.0):
    """Simulate one session on a 3x3 detector grid.

    `ss` is a dict with b0, b1, sigma and cutoff; when given, detection is
    driven by signal strength instead of the half-normal.
    """
    rng = np.random.default_rng(seed)
    traps = grid_traps()
    mask = grid_mask()
    lo, hi = -65.0, 125.0
    n_animals = rng.poisson(D * (hi - lo) ** 2 * survey_length)
    locs = rng.uniform(lo, hi, size=(n_animals, 2))
    d = distances(locs, traps)                                  # (N, n_det)

    if ss is not None:
        strength = ss["b0"] - ss["b1"] * d + rng.normal(0.0, ss["sigma"], size=d.shape)
        capt = strength > ss["cutoff"]
    else:
        p = g0 * np.exp(-d ** 2 / (2.0 * sigma ** 2))
        capt = rng.random(d.shape) < p
    keep = capt.any(axis=1)
    capt, d, locs = capt[keep], d[keep], locs[keep]
    bincapt = capt.astype(int)

    extra = {}
    if kappa is not None:
        true = bearings(traps, locs).T
        obs = np.mod(true + rng.vonmises(0.0, kappa, size=true.shape), 2.0 * np.pi)
        extra["bearing"] = np.where(capt, obs, np.nan)
    if toa_sd is not None:
        t0 = rng.uniform(0.0, 100.0, size=(capt.shape[0], 1))
        obs = t0 + d / 330.0 + rng.normal(0.0, toa_sd, size=d.shape)
        extra["toa"] = np.where(capt, obs, np.nan)
    if alpha is not None:
        obs = rng.gamma(alpha, np.maximum(d, 1e-3) / alpha)
        extra["dist"] = np.where(capt, obs, np.nan)
    if ss is not None:
        extra["ss"] = np.where(capt, strength[keep], np.nan)
    if mrds:
        extra["mrds"] = locs

    capt_hist = CaptureHistories(bincapt=bincapt, **extra)
    return make_sessions(traps, mask, capt_hist, survey_length=survey_length)[0]


@pytest.fixture(scope="session")
def hn_survey():
    return simulate_survey(seed=2024)


@pytest.fixture(scope="session")
def bearing_toa_survey():
    return simulate_survey(seed=7, kappa=5.0, toa_sd=0.05)


@pytest.fixture(scope="session")
def known_location_survey():
    """The bearing/toa survey with each individual's true location recorded."""
    return simulate_survey(seed=7, kappa=5.0, toa_sd=0.05, mrds=True)



@pytest.fixture(scope="session")
def ss_survey():
    return simulate_survey(seed=11, ss={"b0": 90.0, "b1": 1.0, "sigma": 5.0, "cutoff": 60.0})


@pytest.fixture
def tiny_session():
    """Two detectors, a 100-point mask and two detected individuals."""
    traps = np.array([[0.0, 0.0], [20.0, 0.0]])
    xs = np.arange(-45.0, 50.0, 10.0)
    xx, yy = np.meshgrid(xs, xs)
    mask = Mask(points=np.column_stack([xx.ravel(), yy.ravel()]), area=100.0)
    capt = CaptureHistories(bincapt=np.array([[1, 0], [1, 1]]))
    return make_sessions(traps, mask, capt)[0]
