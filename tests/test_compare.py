"""Tests for the comparison report, data simulation and run_analysis."""

import numpy as np
import pandas as pd
import pytest

import hbpathway as hb

FAST = ("univariate", "joint", "penalized")


class TestCompareEstimators:
    """compare_estimators and comparison_table."""

    def test_runs_requested_estimators(self, pathway_spec):
        results = hb.compare_estimators(pathway_spec, estimators=FAST, verbose=False)
        assert list(results) == list(FAST)
        assert all(isinstance(r, hb.EstimationResult) for r in results.values())

    def test_failure_is_isolated(self, pathway_spec, monkeypatch):
        def failing(spec, **kwargs):
            raise hb.SamplerFailure("fit_hierarchical: simulated failure")

        monkeypatch.setattr(hb, "fit_hierarchical", failing)
        results = hb.compare_estimators(pathway_spec, verbose=False)
        assert isinstance(results["hierarchical"], hb.SamplerFailure)
        for name in FAST:
            assert isinstance(results[name], hb.EstimationResult)

        table = hb.comparison_table(results)
        assert table[("hierarchical", "estimate")].isna().all()
        assert table[("penalized", "estimate")].notna().all()
        assert "simulated failure" in table.attrs["errors"]["hierarchical"]

    def test_kwargs_reach_estimators(self, pathway_spec, monkeypatch):
        seen = {}

        def fake(spec, **kwargs):
            seen.update(kwargs)
            return hb.fit_joint(spec)

        monkeypatch.setattr(hb, "fit_hierarchical", fake)
        hb.compare_estimators(pathway_spec, estimators=("hierarchical",),
                              hierarchical_kwargs={"num_samples": 7}, verbose=False)
        assert seen == {"num_samples": 7, "verbose": False}

    def test_unknown_estimator(self, pathway_spec):
        with pytest.raises(ValueError, match="Unknown estimators"):
            hb.compare_estimators(pathway_spec, estimators=("lasso",))

    def test_table_layout(self, pathway_spec, univariate_fit, joint_fit, penalized_fit):
        results = {"univariate": univariate_fit, "joint": joint_fit,
                   "penalized": penalized_fit}
        table = hb.comparison_table(results, decimals=3)
        assert list(table.index) == list(pathway_spec.exposure_names)
        assert table.columns.names == ["estimator", "quantity"]
        assert list(table.columns.get_level_values(0).unique()) == list(results)
        np.testing.assert_allclose(table[("joint", "se")],
                                   np.round(joint_fit.se, 3))
        assert table.attrs["errors"] == {}

    def test_table_with_odds_ratios(self, joint_fit):
        table = hb.comparison_table({"joint": joint_fit}, decimals=None,
                                    odds_ratios=True)
        assert set(table["joint"].columns) == {"estimate", "se", "OR", "OR_lo", "OR_hi"}
        np.testing.assert_allclose(table[("joint", "OR")], np.exp(joint_fit.estimate))

    def test_table_requires_one_result(self):
        with pytest.raises(hb.EstimationFailure):
            hb.comparison_table({"joint": hb.OptimizationFailure("boom")})

    def test_plot_comparison(self, univariate_fit, joint_fit, tmp_path):
        outpath = hb.plot_comparison({"univariate": univariate_fit,
                                      "joint": joint_fit,
                                      "hierarchical": hb.SamplerFailure("x")},
                                     str(tmp_path / "cmp"))
        assert (tmp_path / "cmp_comparison.pdf").exists()
        assert outpath.endswith("_comparison.pdf")


class TestSimulatePathwayData:
    """simulate_pathway_data."""

    def test_shapes_and_design(self):
        data = hb.simulate_pathway_data(n=100, group_sizes=(4, 4), n_bridge=2)
        assert data["x"].shape == (100, 10)
        assert data["Z"].shape == (10, 2)
        np.testing.assert_array_equal(data["Z"][:4], [[1, 0]] * 4)
        np.testing.assert_array_equal(data["Z"][8:], [[0.5, 0.5]] * 2)
        assert set(np.unique(data["y"])) <= {0.0, 1.0}
        assert np.isclose(data["w"].mean(), 0.0)
        assert np.isclose(data["w"].std(), 1.0)

    def test_within_group_correlation(self):
        data = hb.simulate_pathway_data(n=20000, rho=0.8, rng_seed=5)
        corr = np.corrcoef(data["x"], rowvar=False)
        within = corr[:4, :4][np.triu_indices(4, 1)]
        between = corr[:4, 4:8]
        np.testing.assert_allclose(within, 0.8, atol=0.03)
        np.testing.assert_allclose(between, 0.0, atol=0.05)

    def test_reproducible(self):
        a = hb.simulate_pathway_data(rng_seed=9)
        b = hb.simulate_pathway_data(rng_seed=9)
        np.testing.assert_array_equal(a["y"], b["y"])
        np.testing.assert_array_equal(a["x"], b["x"])

    def test_bridge_needs_two_groups(self):
        with pytest.raises(ValueError):
            hb.simulate_pathway_data(group_sizes=(4,), n_bridge=1)

    def test_explicit_beta(self):
        beta = np.array([0.4] * 4 + [-0.2] * 4 + [0.1, 0.1])
        data = hb.simulate_pathway_data(n=50, beta=beta, rng_seed=2)
        np.testing.assert_array_equal(data["beta_true"], beta)
        np.testing.assert_allclose(data["pi_true"], [0.4, -0.2])

    def test_explicit_beta_shape_checked(self):
        with pytest.raises(ValueError, match="beta must have shape"):
            hb.simulate_pathway_data(beta=np.zeros(3))


class TestRunAnalysis:
    """DataFrame entry point."""

    @pytest.fixture
    def frame(self, pathway_data):
        names = pathway_data["exposure_names"]
        df = pd.DataFrame(pathway_data["x"], columns=names)
        df["outcome"] = pathway_data["y"]
        df["age"] = 50 + 10 * pathway_data["w"]
        Z = pd.DataFrame(pathway_data["Z"], index=names,
                         columns=pathway_data["group_names"])
        return df, Z, names

    def test_end_to_end(self, frame, tmp_path):
        df, Z, names = frame
        df = df.copy()
        df.loc[0, "age"] = np.nan
        out = hb.run_analysis(df, "outcome", names, "age", Z.iloc[::-1],
                              filestem=str(tmp_path / "ra"), estimators=FAST)
        spec = out["spec"]
        assert spec.N == len(df) - 1
        np.testing.assert_allclose(spec.Z, Z.to_numpy())
        assert spec.group_names == tuple(Z.columns)
        assert np.isclose(spec.w.mean(), 0.0)
        assert (tmp_path / "ra_comparison.csv").exists()
        assert (tmp_path / "ra_comparison.pdf").exists()
        assert out["summary"] is None
        assert list(out["table"].columns.get_level_values(0).unique()) == list(FAST)

    def test_missing_design_rows(self, frame):
        df, Z, names = frame
        with pytest.raises(hb.ShapeMismatch):
            hb.run_analysis(df, "outcome", names, "age", Z.iloc[1:],
                            estimators=FAST)

    def test_non_binary_outcome(self, frame):
        df, Z, names = frame
        df = df.copy()
        df["outcome"] = df["outcome"] * 2
        with pytest.raises(hb.ShapeMismatch, match="binary"):
            hb.run_analysis(df, "outcome", names, "age", Z, estimators=FAST)

    def test_quiet_when_not_verbose(self, frame, capsys):
        df, Z, names = frame
        df = df.copy()
        df.loc[0, "age"] = np.nan
        hb.run_analysis(df, "outcome", names, "age", Z, estimators=FAST,
                        verbose=False)
        assert capsys.readouterr().out == ""
