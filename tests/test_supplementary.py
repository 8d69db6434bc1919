import numpy as np
import jax.numpy as jnp
import pytest
from scipy import integrate, stats

from ascr.density import DensityModel
from ascr.detfns import build_detfn
from ascr.engine import LikelihoodEngine
from ascr.geometry import distances
from ascr.likelihood import individual_log_contributions, prepare_session
from ascr.params import build_parameters
from ascr.supplementary import bearing_log_density, dist_log_density, toa_log_density
from ascr.survey import CaptureHistories, Session


def test_bearing_density_is_von_mises():
    obs = np.array([[0.3, 0.0]])
    bincapt = np.array([[1.0, 0.0]])
    expected = np.array([[0.5, 2.0], [1.0, 1.0]])             # (n_det, P)
    out = bearing_log_density({"kappa": jnp.asarray(8.0)}, obs, bincapt, expected)
    ref = stats.vonmises.logpdf(0.3, 8.0, loc=np.array([0.5, 2.0]))
    assert np.allclose(np.asarray(out)[0], ref, atol=1e-10)


def test_bearing_density_large_kappa_is_finite():
    obs = np.array([[0.3]])
    out = bearing_log_density({"kappa": jnp.asarray(5000.0)}, obs, np.array([[1.0]]),
                              np.array([[0.3]]))
    assert np.isfinite(float(out[0, 0]))


def test_dist_density_is_gamma_with_mean_true_distance():
    obs = np.array([[12.0, 30.0]])
    bincapt = np.array([[1.0, 1.0]])
    d = np.array([[10.0, 15.0], [25.0, 40.0]])
    alpha = 6.0
    out = np.asarray(dist_log_density({"alpha": jnp.asarray(alpha)}, obs, bincapt, d))
    ref = [stats.gamma.logpdf(12.0, alpha, scale=d[0, m] / alpha)
           + stats.gamma.logpdf(30.0, alpha, scale=d[1, m] / alpha) for m in range(2)]
    assert np.allclose(out[0], ref, atol=1e-10)


def test_toa_single_detection_carries_no_information():
    out = toa_log_density({"sigma.toa": jnp.asarray(0.01)}, np.array([[0.0]]),
                          np.array([[1.0]]), np.array([[25.0, 80.0]]))
    assert np.allclose(np.asarray(out), 0.0)


def test_toa_density_integrates_out_emission_time():
    sigma, c = 0.004, 330.0
    d = np.array([[20.0], [45.0], [60.0]])
    times = np.array([0.061, 0.138, 0.180])
    bincapt = np.array([[1.0, 1.0, 1.0]])
    obs = (times - times.mean())[None, :]
    out = float(toa_log_density({"sigma.toa": jnp.asarray(sigma)}, obs, bincapt, d, c)[0, 0])

    arrival = d[:, 0] / c

    def joint(t0):
        return np.prod(stats.norm.pdf(obs[0], loc=t0 + arrival, scale=sigma))

    centre = float(np.mean(obs[0] - arrival))
    val, _ = integrate.quad(joint, centre - 0.1, centre + 0.1, points=[centre], epsabs=0)
    assert out == pytest.approx(np.log(val), abs=1e-6)


def test_known_locations_use_individual_geometry(hn_survey):
    # Individuals placed on mask points: the known-location contribution is
    # log D + log P(capture history | location) - log(area).
    capt = hn_survey.capt
    rng = np.random.default_rng(3)
    idx = rng.integers(0, hn_survey.mask.n, size=capt.n)
    locs = hn_survey.mask.points[idx]
    session = Session(hn_survey.traps, hn_survey.mask,
                      CaptureHistories(bincapt=capt.bincapt, mrds=locs))
    data = prepare_session(session)
    assert np.array_equal(data.ind_nearest, idx)

    det = build_detfn("hn")
    values = {"g0": jnp.asarray(0.9), "sigma": jnp.asarray(15.0)}
    log_d = jnp.full(session.mask.n, np.log(0.005))
    out = np.asarray(individual_log_contributions(det, values, data, log_d))

    p = 0.9 * np.exp(-distances(locs, session.traps) ** 2 / (2 * 15.0 ** 2))
    b = capt.bincapt
    ref = (np.log(0.005) + np.sum(b * np.log(p) + (1 - b) * np.log(1 - p), axis=1)
           - np.log(session.mask.area))
    assert np.allclose(out, ref, atol=1e-8)

    pset = build_parameters(["D", "g0", "sigma"], {"D": 0.005, "g0": 0.9, "sigma": 15.0})
    engine = LikelihoodEngine([session], det, pset, DensityModel([session]))
    value, grad = engine.evaluate(pset.start_vector())
    assert np.isfinite(value)
    assert np.all(np.isfinite(grad))


def test_supplementary_data_sharpens_likelihood(bearing_toa_survey):
    det = build_detfn("hn")
    names = ["D", "g0", "sigma", "kappa", "sigma.toa"]
    sv = {"D": 0.005, "g0": 0.9, "sigma": 15.0, "kappa": 5.0, "sigma.toa": 0.05}
    pset = build_parameters(names, sv)
    engine = LikelihoodEngine([bearing_toa_survey], det, pset, DensityModel([bearing_toa_survey]))
    theta = pset.start_vector()
    value, grad = engine.evaluate(theta)
    assert np.isfinite(value)
    assert np.all(np.isfinite(grad))
    # A much worse bearing precision lowers the likelihood.
    worse = theta.copy()
    worse[pset.free_names.index("kappa")] = np.log(0.5)
    assert engine.value(worse) > value
