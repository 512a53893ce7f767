import warnings
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from multiwayvcov import (
    GLM,
    OLS,
    BootConfig,
    EstimationFailure,
    InvalidInput,
    NumericalWarning,
    WildDist,
    cluster_boot,
    cluster_vcov,
    vcov_hc,
)
from multiwayvcov.core import bootstrap as bt
from multiwayvcov.core import clusters as cl

# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------


@pytest.fixture
def ols_fit(hetero_data):
    y, X = hetero_data
    return OLS(y, X, var_names=["x1", "x2"]).fit()


# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------


def test_boot_config_defaults():
    cfg = BootConfig()
    assert cfg.n_boot == bt.DEFAULT_BOOT_ITERATIONS == 300
    assert cfg.boot_type == "xy"
    assert cfg.wild_dist == "rademacher"
    assert cfg.on_failure == "propagate"


def test_boot_config_normalizes_aliases():
    assert BootConfig(boot_type="pairs").boot_type == "xy"
    assert BootConfig(boot_type="Wild").boot_type == "wild"
    assert BootConfig(on_failure="DROP").on_failure == "drop"


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"n_boot": 1}, "at least 2"),
        ({"n_boot": 2.5}, "integer"),
        ({"boot_type": "block"}, "boot_type"),
        ({"wild_dist": "webb"}, "Unknown wild distribution"),
        ({"on_failure": "ignore"}, "on_failure"),
        ({"seed": "abc"}, "seed"),
    ],
)
def test_boot_config_validation(kwargs, match):
    with pytest.raises(InvalidInput, match=match):
        BootConfig(**kwargs)


def test_boot_argument_must_be_config(ols_fit):
    with pytest.raises(InvalidInput, match="BootConfig"):
        cluster_boot(ols_fit, np.arange(ols_fit.n_obs), boot={"n_boot": 10})


# ---------------------------------------------------------------------
# Wild multipliers
# ---------------------------------------------------------------------


@pytest.mark.parametrize("name", ["rademacher", "mammen", "normal", "norm"])
def test_wild_dist_moments(name):
    v = WildDist(name).draw(200_000, np.random.default_rng(0))
    assert v.shape == (200_000,)
    assert abs(v.mean()) < 0.02
    assert abs(v.var() - 1.0) < 0.02


def test_wild_dist_supports():
    r = np.random.default_rng(1)
    assert set(np.unique(WildDist("rademacher").draw(100, r))) == {-1.0, 1.0}
    s5 = np.sqrt(5.0)
    mammen = set(np.unique(WildDist("mammen").draw(1000, r)))
    assert mammen == {-(s5 - 1) / 2, (s5 + 1) / 2}


def test_wild_dist_callable_is_called_per_cluster():
    calls = []

    def draw():
        calls.append(1)
        return 1.0

    out = WildDist(draw).draw(7, np.random.default_rng(0))
    assert np.all(out == 1.0)
    assert len(calls) == 7


# ---------------------------------------------------------------------
# Resamplers
# ---------------------------------------------------------------------


def test_pairs_replicate_stacks_drawn_clusters(petersen, petersen_fit):
    (subset,) = cl.build_subsets(petersen["firmid"])
    rs = bt.PairsResampler(petersen_fit, subset)
    assert len(rs.members) == 50
    assert all(m.shape[0] == 10 for m in rs.members)
    b = rs.replicate(np.random.default_rng(3))
    assert b.shape == (2,)
    assert np.all(np.isfinite(b))


def test_residual_replicate_with_equal_sizes_swaps_blocks(petersen_fit, petersen):
    (subset,) = cl.build_subsets(petersen["firmid"])
    rs = bt.ResidualResampler(petersen_fit, subset)
    captured = {}

    def fake_refit(y=None, rows=None):
        captured["y"] = y
        return petersen_fit

    petersen_fit_refit = petersen_fit.refit
    petersen_fit.refit = fake_refit
    try:
        rs.replicate(np.random.default_rng(5))
    finally:
        petersen_fit.refit = petersen_fit_refit
    e_star = captured["y"] - petersen_fit.fitted
    # every firm slot holds some firm's complete residual block
    for slot in rs.members:
        assert any(np.allclose(e_star[slot], petersen_fit.resid[m]) for m in rs.members)


def test_residual_replicate_recycles_short_blocks(rng):
    n = 9
    x = rng.standard_normal(n)
    y = x + rng.standard_normal(n)
    res = OLS(y, x).fit()
    # cluster sizes 2, 3 and 4
    (subset,) = cl.build_subsets(np.array([0, 0, 1, 1, 1, 2, 2, 2, 2]))
    rs = bt.ResidualResampler(res, subset)
    captured = {}
    orig = res.refit

    def fake_refit(y=None, rows=None):
        captured["y"] = y
        return orig(y=y)

    res.refit = fake_refit
    rs.replicate(np.random.default_rng(0))
    e_star = captured["y"] - res.fitted
    for slot in rs.members:
        vals = e_star[slot]
        # each slot is some cluster's residual block recycled to the slot size
        assert any(
            np.allclose(vals, np.resize(res.resid[m], slot.shape[0])) for m in rs.members
        )


def test_wild_replicate_uses_one_multiplier_per_cluster(petersen_fit, petersen):
    (subset,) = cl.build_subsets(petersen["firmid"])
    rs = bt.WildResampler(petersen_fit, subset, WildDist("rademacher"))
    captured = {}
    orig = petersen_fit.refit

    def fake_refit(y=None, rows=None):
        captured["y"] = y
        return orig(y=y)

    petersen_fit.refit = fake_refit
    rs.replicate(np.random.default_rng(9))
    ratio = (captured["y"] - petersen_fit.fitted) / petersen_fit.resid
    for m in rs.members:
        assert np.allclose(ratio[m], ratio[m][0])
        assert abs(ratio[m][0]) == pytest.approx(1.0)


# ---------------------------------------------------------------------
# cluster_boot
# ---------------------------------------------------------------------


def test_wild_bootstrap_with_singleton_clusters_approximates_hc0(ols_fit):
    V = cluster_boot(
        ols_fit,
        np.arange(ols_fit.n_obs),
        boot=BootConfig(n_boot=2000, boot_type="wild", seed=123),
    )
    V0 = vcov_hc(ols_fit, "HC0")
    assert np.allclose(np.diag(V), np.diag(V0), rtol=0.15)


def test_pairs_bootstrap_is_close_to_analytic(petersen, petersen_fit):
    V = cluster_boot(petersen_fit, petersen["firmid"], boot=BootConfig(n_boot=400, seed=1))
    Va = cluster_vcov(petersen_fit, petersen["firmid"])
    assert V.shape == (2, 2)
    assert np.allclose(V, V.T)
    assert np.allclose(np.diag(V), np.diag(Va), rtol=0.35)


@pytest.mark.parametrize("boot_type", ["xy", "residual", "wild"])
def test_seed_makes_results_reproducible(petersen, petersen_fit, boot_type):
    cfg = BootConfig(n_boot=30, boot_type=boot_type, seed=2024)
    clusters = petersen[["firmid", "year"]]
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NumericalWarning)
        V1 = cluster_boot(petersen_fit, clusters, boot=cfg)
        V2 = cluster_boot(petersen_fit, clusters, boot=cfg)
        V3 = cluster_boot(petersen_fit, clusters, boot=BootConfig(n_boot=30, boot_type=boot_type, seed=7))
    np.testing.assert_array_equal(V1, V2)
    assert not np.allclose(V1, V3)


def test_parallel_matches_serial(petersen, petersen_fit):
    cfg = BootConfig(n_boot=25, boot_type="wild", seed=99)
    clusters = petersen[["firmid", "year"]]
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NumericalWarning)
        V_serial = cluster_boot(petersen_fit, clusters, boot=cfg, use_white=False)
        V_threads = cluster_boot(petersen_fit, clusters, boot=cfg, use_white=False, parallel=3)
        with ThreadPoolExecutor(max_workers=2) as pool:
            V_pool = cluster_boot(petersen_fit, clusters, boot=cfg, use_white=False, parallel=pool)
    np.testing.assert_allclose(V_serial, V_threads, rtol=1e-12, atol=0)
    np.testing.assert_allclose(V_serial, V_pool, rtol=1e-12, atol=0)


def test_white_term_replaces_top_subset(small_panel):
    res = OLS.from_formula("y ~ x", small_panel).fit()
    cfg = BootConfig(n_boot=40, boot_type="wild", seed=5)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", NumericalWarning)
        V_auto = cluster_boot(res, cluster_varnames=["firmid", "year"], boot=cfg)
        V_white = cluster_boot(res, cluster_varnames=["firmid", "year"], boot=cfg, use_white=True)
        V_full = cluster_boot(res, cluster_varnames=["firmid", "year"], boot=cfg, use_white=False)
    np.testing.assert_array_equal(V_auto, V_white)
    assert not np.allclose(V_auto, V_full)


def test_oneway_white_uses_hc0_only(ols_fit):
    V = cluster_boot(
        ols_fit, np.arange(ols_fit.n_obs), boot=BootConfig(n_boot=5, seed=0), use_white=True,
    )
    assert np.allclose(V, vcov_hc(ols_fit, "HC0"))


def test_force_posdef(petersen, petersen_fit):
    cfg = BootConfig(n_boot=20, seed=3)
    V = cluster_boot(
        petersen_fit, petersen[["firmid", "year"]], boot=cfg, use_white=False, force_posdef=True,
    )
    assert np.linalg.eigvalsh(V).min() >= -1e-12


# ---------------------------------------------------------------------
# Failure policy
# ---------------------------------------------------------------------


def _logit_with_rare_events(rng):
    """Logit fit on data where many cluster resamples separate perfectly."""
    n = 40
    x = rng.standard_normal(n)
    y = np.zeros(n)
    y[[0, 1, 2]] = 1.0
    return GLM(y, x, family="binomial").fit()


def test_failing_refit_propagates(rng):
    res = _logit_with_rare_events(rng)
    # wild responses leave [0, 1], so every binomial refit is rejected
    cfg = BootConfig(n_boot=5, boot_type="wild", seed=0)
    with pytest.raises(EstimationFailure, match="replicate 1"):
        cluster_boot(res, np.arange(res.n_obs), boot=cfg)


def test_dropping_all_replicates_still_fails(rng):
    res = _logit_with_rare_events(rng)
    cfg = BootConfig(n_boot=5, boot_type="wild", seed=0, on_failure="drop")
    with pytest.raises(EstimationFailure, match="at least 2"):
        cluster_boot(res, np.arange(res.n_obs), boot=cfg)


def test_dropped_replicates_warn(petersen, petersen_fit):
    fails = {"n": 0}
    orig = petersen_fit.refit

    def flaky_refit(y=None, rows=None):
        fails["n"] += 1
        if fails["n"] % 4 == 0:
            raise EstimationFailure("synthetic failure")
        return orig(y=y, rows=rows)

    petersen_fit.refit = flaky_refit
    cfg = BootConfig(n_boot=20, seed=8, on_failure="drop")
    with pytest.warns(NumericalWarning, match="5 bootstrap replicate"):
        V = cluster_boot(petersen_fit, petersen["firmid"], boot=cfg)
    assert V.shape == (2, 2)
    assert np.all(np.isfinite(V))

    fails["n"] = 0
    with pytest.raises(EstimationFailure, match="synthetic failure"):
        cluster_boot(petersen_fit, petersen["firmid"], boot=BootConfig(n_boot=20, seed=8))


def test_bootstrap_cov_needs_two_rows():
    with pytest.raises(EstimationFailure, match="at least 2"):
        bt.bootstrap_cov(np.ones((1, 3)))
    C = bt.bootstrap_cov(np.array([[1.0, 2.0], [3.0, 6.0], [5.0, 10.0]]))
    assert np.allclose(C, [[4.0, 8.0], [8.0, 16.0]])
