"""
Tests for garden_city.estimation module.

Tests cover:
- Formula construction
- Fixed-effects OLS recovers a known effect
- Leave-one-out and national-average instruments
- 2SLS recovers the structural effect under endogeneity
- Probit propensity scores, IPW weights and balance
- The specification battery and its failure handling
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
import pandas as pd
import numpy as np
from scipy.stats import norm

from garden_city.estimation import (
    RESULT_COLUMNS,
    covariate_balance,
    fe_formula,
    ipw_weights,
    leave_one_out_mean,
    national_average_instrument,
    propensity_scores,
    results_markdown,
    run_iv,
    run_ipw,
    run_ols,
    run_specification_grid,
)


@pytest.fixture
def endogenous_panel():
    """
    y = 1.5 * d + u + e with d = z + u + v, so OLS is biased upward and z is
    a valid instrument.
    """
    rng = np.random.default_rng(11)
    n = 2000
    county = rng.integers(0, 40, n)
    z = rng.normal(size=n)
    u = rng.normal(size=n)
    d = z + u + rng.normal(size=n)
    y = 1.5 * d + u + rng.normal(0, 0.5, n) + rng.normal(0, 1, 40)[county]
    return pd.DataFrame({
        "y": y, "d": d, "z": z,
        "county_fips": [f"01{c:03d}" for c in county],
    })


@pytest.fixture
def selection_panel():
    """Treatment selected on x; y = 1.0 * t + 2 * x + noise."""
    rng = np.random.default_rng(5)
    n = 3000
    county = rng.integers(0, 30, n)
    x = rng.normal(size=n)
    t = (rng.uniform(size=n) < norm.cdf(0.8 * x)).astype(float)
    y = 1.0 * t + 2.0 * x + rng.normal(0, 0.5, n)
    return pd.DataFrame({
        "y": y, "t": t, "x": x,
        "region": np.where(county % 2 == 0, "South", "West"),
        "county_fips": [f"01{c:03d}" for c in county],
    })


class TestFormula:
    """Tests for pyfixest formula strings."""

    def test_ols(self):
        assert fe_formula("y", ["d", "x"], ["county_fips"]) == "y ~ d + x | county_fips"

    def test_no_fixed_effects(self):
        assert fe_formula("y", ["d"]) == "y ~ d"

    def test_iv_without_controls(self):
        assert fe_formula("y", [], ["metro"], iv=("d", "z")) == "y ~ 1 | metro | d ~ z"

    def test_multiple_fixed_effects(self):
        formula = fe_formula("y", ["d"], ["county_fips", "vintage_decade"])
        assert formula == "y ~ d | county_fips + vintage_decade"


class TestOLS:
    """Tests for fixed-effects OLS."""

    def test_recovers_effect(self, synthetic_panel):
        result = run_ols(synthetic_panel, "walkability", "garden_metric_osm",
                         controls=["elevation"], fixed_effects=["county_fips"])
        assert result["coefficient"] == pytest.approx(2.0, abs=0.15)
        assert result["ci_lower"] < 2.0 < result["ci_upper"]
        assert result["n_obs"] == len(synthetic_panel)
        assert 0 < result["r_squared"] <= 1

    def test_drops_incomplete_rows(self, synthetic_panel):
        df = synthetic_panel.copy()
        df.loc[:99, "elevation"] = np.nan
        result = run_ols(df, "walkability", "garden_metric_osm",
                         controls=["elevation"], fixed_effects=["county_fips"])
        assert result["n_obs"] == len(df) - 100

    def test_missing_column(self, synthetic_panel):
        with pytest.raises(KeyError, match="ghg_emissions"):
            run_ols(synthetic_panel, "ghg_emissions", "garden_metric_osm")


class TestInstruments:
    """Tests for the grouped-mean instruments."""

    def test_leave_one_out(self):
        df = pd.DataFrame({"g": ["a", "a", "a", "b"], "v": [1.0, 2.0, 3.0, 4.0]})
        result = leave_one_out_mean(df, "v", "g")
        assert result.name == "v_loo_g"
        np.testing.assert_allclose(result.iloc[:3], [2.5, 2.0, 1.5])
        assert np.isnan(result.iloc[3])

    def test_leave_one_out_missing_own_value(self):
        df = pd.DataFrame({"g": ["a", "a", "a"], "v": [1.0, np.nan, 3.0]})
        result = leave_one_out_mean(df, "v", "g")
        assert result.iloc[1] == pytest.approx(2.0)
        assert result.iloc[0] == pytest.approx(3.0)

    def test_national_average_excludes_own_metro(self):
        df = pd.DataFrame({
            "decade": [1950.0] * 4 + [1970.0],
            "metro": ["M1", "M1", "M2", None, "M1"],
            "v": [1.0, 2.0, 3.0, 4.0, 5.0],
        })
        result = national_average_instrument(df, "v", by="decade", exclude="metro")
        assert result.iloc[0] == pytest.approx(3.5)
        assert result.iloc[2] == pytest.approx(7.0 / 3.0)
        assert result.iloc[3] == pytest.approx(2.0)
        assert np.isnan(result.iloc[4])


class TestIV:
    """Tests for 2SLS."""

    def test_recovers_structural_effect(self, endogenous_panel):
        ols = run_ols(endogenous_panel, "y", "d", fixed_effects=["county_fips"])
        iv = run_iv(endogenous_panel, "y", "d", "z", fixed_effects=["county_fips"])

        assert ols["coefficient"] > 1.7
        assert iv["coefficient"] == pytest.approx(1.5, abs=0.1)
        assert iv["instrument"] == "z"
        assert iv["first_stage_f"] > 100

    def test_weak_instrument_has_low_f(self, endogenous_panel):
        rng = np.random.default_rng(1)
        df = endogenous_panel.assign(noise=rng.normal(size=len(endogenous_panel)))
        result = run_iv(df, "y", "d", "noise", fixed_effects=["county_fips"])
        assert result["first_stage_f"] < 20


class TestIPW:
    """Tests for propensity scores and weighting."""

    def test_weights_ate_and_att(self):
        t = pd.Series([1.0, 0.0])
        p = pd.Series([0.5, 0.25])
        np.testing.assert_allclose(ipw_weights(t, p, "ate"), [2.0, 1.0 / 0.75])
        np.testing.assert_allclose(ipw_weights(t, p, "att"), [1.0, 0.25 / 0.75])

    def test_trimming_drops_extreme_scores(self):
        w = ipw_weights(pd.Series([1.0, 0.0]), pd.Series([0.995, 0.5]), trim=(0.01, 0.99))
        assert np.isnan(w.iloc[0])
        assert w.iloc[1] == pytest.approx(2.0)

    def test_unknown_estimand(self):
        with pytest.raises(ValueError, match="estimand"):
            ipw_weights(pd.Series([1.0]), pd.Series([0.5]), "atc")

    def test_propensity_scores_aligned(self, selection_panel):
        df = selection_panel.copy()
        df.loc[0, "x"] = np.nan
        scores, fit = propensity_scores(df, "t", ["x"], ["region"])
        assert scores.index.equals(df.index)
        assert np.isnan(scores.iloc[0])
        assert scores.dropna().between(0, 1).all()
        assert fit.params["x"] > 0

    def test_balance_improves(self, selection_panel):
        scores, _ = propensity_scores(selection_panel, "t", ["x"])
        weights = ipw_weights(selection_panel["t"], scores)
        balance = covariate_balance(selection_panel, "t", ["x"], weights)
        row = balance.iloc[0]
        assert abs(row["smd_raw"]) > 0.3
        assert abs(row["smd_weighted"]) < 0.1

    def test_recovers_effect(self, selection_panel):
        naive = run_ols(selection_panel, "y", "t", fixed_effects=["county_fips"])
        result, balance = run_ipw(selection_panel, "y", "t", covariates=["x"],
                                  fixed_effects=["county_fips"])
        assert naive["coefficient"] > 1.5
        assert result["coefficient"] == pytest.approx(1.0, abs=0.25)
        assert result["n_trimmed"] >= 0
        assert list(balance["covariate"]) == ["x"]


class TestSpecificationGrid:
    """Tests for the battery runner."""

    SPECS = [
        {"name": "county_fe", "controls": ["elevation"], "fixed_effects": ["county_fips"]},
        {"name": "metro_fe", "controls": ["elevation"], "fixed_effects": ["metro"]},
    ]

    def test_ols_grid(self, synthetic_panel):
        results = run_specification_grid(
            synthetic_panel, ["walkability"], ["garden_metric_osm", "gcd_top20"], self.SPECS,
        )
        assert len(results) == 4
        assert list(results.columns[:len(RESULT_COLUMNS)]) == RESULT_COLUMNS
        assert (results["status"] == "ok").all()

    def test_failure_recorded(self, synthetic_panel):
        results = run_specification_grid(
            synthetic_panel, ["walkability", "not_a_column"], ["garden_metric_osm"],
            self.SPECS[:1],
        )
        failed = results[results["status"] == "failed"]
        assert len(failed) == 1
        assert "not_a_column" in failed["error"].iloc[0]
        assert np.isnan(failed["coefficient"].iloc[0])

    def test_iv_grid_labels(self, synthetic_panel):
        df = synthetic_panel.copy()
        df["gcd_loo"] = leave_one_out_mean(df, "garden_metric_osm", "vintage_decade")
        results = run_specification_grid(
            df, ["not_a_column"], ["gcd_loo"], self.SPECS[:1],
            estimator="iv", endogenous="garden_metric_osm",
        )
        row = results.iloc[0]
        assert row["treatment"] == "garden_metric_osm"
        assert row["instrument"] == "gcd_loo"
        assert row["status"] == "failed"
        assert "first_stage_f" in results.columns

    def test_iv_grid_recovers_effect(self, endogenous_panel):
        specs = [{"name": "county_fe", "controls": [], "fixed_effects": ["county_fips"]}]
        results = run_specification_grid(endogenous_panel, ["y"], ["z"], specs,
                                         estimator="iv", endogenous="d")
        row = results.iloc[0]
        assert row["status"] == "ok", row["error"]
        assert row["coefficient"] == pytest.approx(1.5, abs=0.1)
        assert row["first_stage_f"] > 100

    def test_ipw_grid_applies_specification_controls(self):
        """y = t + 2x + 3c; c drives selection but only x enters the probit."""
        rng = np.random.default_rng(8)
        n = 3000
        x = rng.normal(size=n)
        c = rng.normal(size=n)
        t = (rng.uniform(size=n) < norm.cdf(0.6 * x + 0.8 * c)).astype(float)
        df = pd.DataFrame({
            "y": t + 2.0 * x + 3.0 * c + rng.normal(0, 0.5, n),
            "t": t, "x": x, "c": c,
            "county_fips": [f"01{k:03d}" for k in rng.integers(0, 30, n)],
        })
        specs = [{"name": "county_fe", "controls": ["c"], "fixed_effects": ["county_fips"]}]

        results = run_specification_grid(df, ["y"], ["t"], specs, estimator="ipw",
                                         covariates=["x"])
        with_controls, _ = run_ipw(df, "y", "t", covariates=["x"], controls=["c"],
                                   fixed_effects=["county_fips"])
        without_controls, _ = run_ipw(df, "y", "t", covariates=["x"],
                                      fixed_effects=["county_fips"])

        row = results.iloc[0]
        assert row["status"] == "ok", row["error"]
        assert row["coefficient"] == pytest.approx(with_controls["coefficient"])
        assert abs(row["coefficient"] - without_controls["coefficient"]) > 0.5
        assert "n_trimmed" in results.columns

    def test_ipw_grid_covariates_default_to_controls(self, selection_panel):
        specs = [{"name": "county_fe", "controls": ["x"], "fixed_effects": ["county_fips"]}]
        results = run_specification_grid(selection_panel, ["y"], ["t"], specs,
                                         estimator="ipw")
        row = results.iloc[0]
        assert row["status"] == "ok", row["error"]
        assert row["coefficient"] == pytest.approx(1.0, abs=0.25)

    def test_unknown_estimator(self, synthetic_panel):
        with pytest.raises(ValueError, match="Unknown estimator"):
            run_specification_grid(synthetic_panel, ["walkability"], ["gcd_top20"],
                                   self.SPECS, estimator="gmm")

    def test_markdown(self, synthetic_panel):
        results = run_specification_grid(
            synthetic_panel, ["walkability", "not_a_column"], ["garden_metric_osm"],
            self.SPECS[:1],
        )
        text = results_markdown(results, "OLS", notes=["Clustered by county."])
        assert text.startswith("# OLS")
        assert "## walkability" in text
        assert "## Failed runs" in text
        assert "- Clustered by county." in text


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
