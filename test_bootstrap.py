"""
test_bootstrap.py

Unit tests for the parametric bootstrap, singularity summaries and the runner.

Run: python -m pytest test_bootstrap.py -v
"""

import json
import os

import numpy as np
import pandas as pd
import pytest

from rrsingularity.bootstrap import BootstrapResult, load_bootstrap_frame, parametric_bootstrap, save_bootstrap
from rrsingularity.datasets import load_dataset, simulate_random_regression
from rrsingularity.lmm import RandomRegressionData, fit_lmm
from rrsingularity.run import run_pipeline
from rrsingularity.summary import bootstrap_report, shortest_coverage_interval, singularity_table


@pytest.fixture(scope="module")
def model():
    df = simulate_random_regression(np.random.default_rng(7))
    data = RandomRegressionData.from_frame(df, "reaction", "subj", ["days"])
    return data, fit_lmm(data)


@pytest.fixture(scope="module")
def boot(model):
    data, fit = model
    return parametric_bootstrap(fit, data, 12, np.random.default_rng(99), progress=False)


def _handmade_result():
    theta = np.array([
        [1.0, 0.0, 1.0],   # well conditioned
        [1.0, 0.5, 0.0],   # theta3 on the boundary
        [0.0, 0.2, 0.4],   # theta1 on the boundary
        [0.8, 0.1, 0.3],
    ])
    n = len(theta)
    return BootstrapResult(
        objective=np.arange(n, dtype=float),
        sigma=np.full(n, 2.0),
        beta=np.zeros((n, 2)),
        theta=theta,
        coef_names=["(Intercept)", "days"],
    )


# ============================================================================
# Bootstrap
# ============================================================================


class TestParametricBootstrap:
    """Test parametric_bootstrap and BootstrapResult."""

    def test_shapes(self, boot):
        assert len(boot) == 12
        assert boot.beta.shape == (12, 2)
        assert boot.theta.shape == (12, 3)
        assert boot.sigmas.shape == (12, 2)
        assert boot.rhos.shape == (12, 1)
        assert boot.q == 2

    def test_same_seed_same_result(self, model, boot):
        data, fit = model
        again = parametric_bootstrap(fit, data, 12, np.random.default_rng(99), progress=False)
        np.testing.assert_array_equal(again.theta, boot.theta)
        np.testing.assert_array_equal(again.objective, boot.objective)

    def test_parallel_matches_serial(self, model, boot):
        data, fit = model
        par = parametric_bootstrap(fit, data, 12, np.random.default_rng(99), workers=3)
        np.testing.assert_allclose(par.theta, boot.theta, rtol=1e-6, atol=1e-9)
        np.testing.assert_allclose(par.sigma, boot.sigma, rtol=1e-6)

    def test_different_seed_differs(self, model, boot):
        data, fit = model
        other = parametric_bootstrap(fit, data, 12, np.random.default_rng(100), progress=False)
        assert not np.allclose(other.beta, boot.beta)

    def test_rcond_in_range(self, boot):
        rc = boot.rcond()
        assert rc.shape == (12,)
        assert np.all((rc >= 0.0) & (rc <= 1.0))

    def test_frame_columns(self, boot):
        df = boot.to_frame()
        assert list(df.columns) == [
            "objective", "sigma", "beta1", "beta2", "theta1", "theta2", "theta3", "sigma1", "sigma2", "rho1",
        ]
        assert len(df) == 12

    def test_failed_refit_names_replicate(self, model, monkeypatch):
        data, fit = model
        import rrsingularity.bootstrap as bootstrap_module

        calls = []
        real_fit = bootstrap_module.fit_lmm

        def flaky_fit(*args, **kwargs):
            calls.append(1)
            if len(calls) == 3:
                raise ValueError("infeasible theta")
            return real_fit(*args, **kwargs)

        monkeypatch.setattr(bootstrap_module, "fit_lmm", flaky_fit)
        with pytest.raises(ValueError, match="bootstrap replicate 2: infeasible theta"):
            parametric_bootstrap(fit, data, 4, np.random.default_rng(1), progress=False)

    def test_invalid_arguments(self, model):
        data, fit = model
        with pytest.raises(ValueError):
            parametric_bootstrap(fit, data, 0, np.random.default_rng(0))
        with pytest.raises(ValueError):
            parametric_bootstrap(fit, data, 2, np.random.default_rng(0), workers=0)

    @pytest.mark.parametrize("name", ["samples.parquet", "samples.csv"])
    def test_save_and_load(self, boot, tmp_path, name):
        path = save_bootstrap(boot, str(tmp_path / "out" / name))
        df = load_bootstrap_frame(path)
        pd.testing.assert_frame_equal(df, boot.to_frame(), check_exact=False)


# ============================================================================
# Summaries
# ============================================================================


class TestShortestCoverageInterval:
    """Test shortest_coverage_interval."""

    def test_uniform_grid(self):
        assert shortest_coverage_interval(np.arange(1, 101), 0.9) == (1.0, 90.0)

    def test_picks_dense_region(self):
        values = [0.0, 10.0, 10.1, 10.2, 10.3, 50.0]
        assert shortest_coverage_interval(values, 0.5) == (10.0, 10.2)

    def test_full_level(self):
        assert shortest_coverage_interval([3.0, 1.0, 2.0], 1.0) == (1.0, 3.0)

    def test_ignores_nan(self):
        assert shortest_coverage_interval([np.nan, 1.0, 2.0], 1.0) == (1.0, 2.0)

    def test_errors(self):
        with pytest.raises(ValueError):
            shortest_coverage_interval([], 0.95)
        with pytest.raises(ValueError):
            shortest_coverage_interval([1.0, 2.0], 0.0)


class TestSingularityTable:
    """Test counting of singular bootstrap replicates."""

    def test_counts(self):
        table = singularity_table(_handmade_result()).set_index("parameter")
        assert table.loc["theta1", "count"] == 1
        assert table.loc["theta3", "count"] == 1
        assert table.loc["rho1", "count"] == 1
        assert table.loc["rcond", "count"] == 2
        assert table.loc["any", "count"] == 2
        assert table.loc["any", "proportion"] == pytest.approx(0.5)

    def test_tolerance(self):
        result = _handmade_result()
        result.theta[3, 2] = 0.01
        table = singularity_table(result, atol=0.05).set_index("parameter")
        assert table.loc["theta3", "count"] == 2


def test_bootstrap_report(model, boot, tmp_path):
    data, fit = model
    outdir = os.path.join(str(tmp_path), "report")
    res = bootstrap_report(fit, boot, outdir, level=0.9)
    assert os.path.exists(res["report_json"]) and os.path.exists(res["rcond_csv"]) and os.path.exists(res["samples_parquet"])
    with open(res["report_json"]) as f:
        saved = json.load(f)
    assert saved["n_samples"] == 12
    assert set(saved["coverage_intervals"]) >= {"sigma", "theta1", "rcond"}
    rc = pd.read_csv(res["rcond_csv"])
    assert len(rc) == 12


# ============================================================================
# Datasets and runner
# ============================================================================


def test_load_dataset_roundtrip(tmp_path):
    df = simulate_random_regression(np.random.default_rng(3), n_groups=4, n_times=5)
    df.loc[0, "reaction"] = np.nan
    path = tmp_path / "study.parquet"
    df.to_parquet(path)
    loaded = load_dataset(path)
    assert len(loaded) == 19
    assert list(loaded.columns) == ["subj", "days", "reaction"]


def test_load_dataset_missing_column(tmp_path):
    path = tmp_path / "study.csv"
    pd.DataFrame({"subj": ["a"], "reaction": [1.0]}).to_csv(path, index=False)
    with pytest.raises(ValueError, match="Missing expected columns"):
        load_dataset(path)


def test_load_dataset_unknown_suffix(tmp_path):
    path = tmp_path / "study.txt"
    path.write_text("x")
    with pytest.raises(ValueError):
        load_dataset(path)


def test_run_pipeline_simulated(tmp_path):
    res = run_pipeline(str(tmp_path / "out"), n_samples=5, seed=1, progress=False)
    assert os.path.exists(res["report_json"])
    assert res["n_samples"] == 5
    assert res["fit"]["criterion"] == "REML"


def test_run_pipeline_from_file(tmp_path):
    df = simulate_random_regression(np.random.default_rng(2), n_groups=10)
    path = tmp_path / "study.csv"
    df.to_csv(path, index=False)
    res = run_pipeline(str(tmp_path / "out"), input_path=str(path), n_samples=4, reml=False, zerocorr=True, progress=False)
    assert res["fit"]["criterion"] == "ML"
    assert res["fit"]["zerocorr"]
    assert res["fit"]["theta"][1] == 0.0
