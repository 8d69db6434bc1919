import numpy as np
import pytest

from ascr.detfns import (
    HalfNormal,
    SignalStrength,
    SignalStrengthOptions,
    build_detfn,
    source_quadrature,
)
from ascr.errors import ConfigurationError


VALUES = {
    "hn": {"g0": 0.8, "sigma": 20.0},
    "hhn": {"lambda0": 2.0, "sigma": 20.0},
    "hr": {"g0": 0.8, "sigma": 20.0, "z": 4.0},
    "th": {"shape": 3.0, "scale": 10.0},
    "lth": {"shape.1": 2.0, "shape.2": 4.0, "scale": 0.1},
}
SS_VALUES = {"b0.ss": 90.0, "b1.ss": 1.0, "sigma.ss": 5.0}


def test_intercepts_at_zero_distance():
    d = np.array([0.0])
    assert float(build_detfn("hn").prob(d, VALUES["hn"])[0]) == pytest.approx(0.8)
    assert float(build_detfn("hr").prob(d, VALUES["hr"])[0]) == pytest.approx(0.8)
    assert float(build_detfn("hhn").prob(d, VALUES["hhn"])[0]) == pytest.approx(1.0 - np.exp(-2.0))


@pytest.mark.parametrize("name", ["hn", "hhn", "hr", "th", "lth"])
def test_probabilities_decrease_to_zero(name):
    det = build_detfn(name)
    d = np.array([0.0, 5.0, 20.0, 50.0, 200.0, 1e4])
    g = np.asarray(det.prob(d, VALUES[name]))
    assert np.all(np.isfinite(g))
    assert np.all((g >= 0.0) & (g <= 1.0))
    assert np.all(np.diff(g) <= 1e-12)
    assert g[-1] < 0.01


@pytest.mark.parametrize("name,cutoff,values", [
    ("ss", 60.0, SS_VALUES),
    ("log.ss", 40.0, {"b0.ss": 4.5, "b1.ss": 0.05, "sigma.ss": 5.0}),
    ("spherical.ss", 60.0, SS_VALUES),
])
def test_signal_strength_tail(name, cutoff, values):
    det = build_detfn(name, SignalStrengthOptions(cutoff=cutoff))
    d = np.array([0.0, 10.0, 1e4])
    g = np.asarray(det.prob(d, values))
    assert np.all(np.isfinite(g))
    assert g[-1] < 1e-6
    assert g[0] >= g[1]


def test_identity_ss_detection_at_zero_is_normal_tail():
    det = build_detfn("ss", SignalStrengthOptions(cutoff=60.0))
    g = float(det.prob(np.array([0.0]), SS_VALUES)[0])
    # P(N(90, 5) > 60)
    assert g == pytest.approx(1.0, abs=1e-8)
    g = float(det.prob(np.array([30.0]), SS_VALUES)[0])
    assert g == pytest.approx(0.5, abs=1e-12)


def test_build_by_numeric_id():
    assert isinstance(build_detfn(1), HalfNormal)
    assert build_detfn(3).name == "hr"
    det = build_detfn(7, SignalStrengthOptions(cutoff=1.0))
    assert det.name == "log.ss"
    assert det.link == "log"


def test_build_rejects_unknown_and_missing_cutoff():
    with pytest.raises(ConfigurationError):
        build_detfn("gaussian")
    with pytest.raises(ConfigurationError):
        build_detfn(42)
    with pytest.raises(ConfigurationError):
        build_detfn("ss")
    with pytest.raises(ConfigurationError):
        build_detfn("log.ss", SignalStrengthOptions(cutoff=1.0, ss_link="identity"))


def test_ss_link_option_selects_variant():
    det = build_detfn("ss", SignalStrengthOptions(cutoff=60.0, ss_link="spherical"))
    assert det.name == "spherical.ss"
    assert det.id == 8


def test_signal_strength_parameter_names():
    plain = SignalStrength(SignalStrengthOptions(cutoff=60.0))
    assert plain.param_names == ("b0.ss", "b1.ss", "sigma.ss")
    full = SignalStrength(SignalStrengthOptions(cutoff=60.0, het_source=True, directional=True))
    assert full.param_names == ("b0.ss", "b1.ss", "b2.ss", "sigma.ss", "sigma.b0.ss")


@pytest.mark.parametrize("method", ["GH", "rect"])
def test_source_quadrature_weights_sum_to_one(method):
    nodes, log_w = source_quadrature(method, 15)
    assert nodes.shape == (15,)
    assert np.exp(log_w).sum() == pytest.approx(1.0, abs=1e-10)
    # Symmetric about zero
    assert np.allclose(nodes, -nodes[::-1])


def test_heterogeneous_source_probabilities_are_valid():
    det = SignalStrength(SignalStrengthOptions(cutoff=60.0, het_source=True))
    values = dict(SS_VALUES, **{"sigma.b0.ss": 3.0})
    dists = np.array([[0.0, 10.0, 30.0, 80.0]])
    log_w, g = det.detection_probs(values, dists)
    assert log_w.shape == (15,)
    assert g.shape == (15, 1, 4)
    avg = np.asarray(det.prob(dists, values))
    assert np.allclose(avg, np.einsum("q,qjm->jm", np.exp(np.asarray(log_w)), np.asarray(g)))
    # Source strengths are symmetric about b0, so g is 0.5 where E(SS) hits the cutoff.
    assert 0.4 < float(avg[0, 2]) < 0.6


def test_directional_probabilities_depend_on_orientation():
    det = SignalStrength(SignalStrengthOptions(cutoff=60.0, directional=True, n_dir_quadpoints=8))
    values = dict(SS_VALUES, **{"b2.ss": 0.5})
    dists = np.array([[25.0]])
    orient = np.array([[0.0]])
    log_w, g = det.detection_probs(values, dists, orient)
    g = np.asarray(g)[:, 0, 0]
    assert log_w.shape == (8,)
    # Calling straight at the detector beats calling away from it.
    assert g[0] > g[4]


def test_capture_log_probs_finite_at_zero_distance():
    bincapt = np.array([[1.0, 0.0], [1.0, 1.0]])
    dists = np.array([[0.0, 10.0, 50.0], [20.0, 0.0, 60.0]])
    for name in ("hn", "hhn", "hr", "th", "lth"):
        det = build_detfn(name)
        _, lp = det.capture_log_probs(VALUES[name], dists, None, bincapt)
        assert lp.shape == (1, 2, 3)
        assert np.all(np.isfinite(np.asarray(lp)))
    det = build_detfn("ss", SignalStrengthOptions(cutoff=60.0))
    ss = np.array([[85.0, 0.0], [70.0, 75.0]])
    _, lp = det.capture_log_probs(SS_VALUES, dists, None, bincapt, ss=ss)
    assert np.all(np.isfinite(np.asarray(lp)))


def test_signal_strength_capture_probability_matches_direct_sum():
    from scipy.stats import norm

    det = build_detfn("ss", SignalStrengthOptions(cutoff=60.0))
    bincapt = np.array([[1.0, 0.0]])
    ss = np.array([[72.0, 0.0]])
    dists = np.array([[15.0], [40.0]])
    _, lp = det.capture_log_probs(SS_VALUES, dists, None, bincapt, ss=ss)
    expected = norm.logpdf(72.0, 75.0, 5.0) + norm.logcdf(60.0, 50.0, 5.0)
    assert float(lp[0, 0, 0]) == pytest.approx(expected, abs=1e-10)
