"""
Econometric battery: fixed-effects OLS, IV/2SLS and probit IPW.

Estimation is done with pyfixest (OLS and 2SLS with absorbed fixed effects
and clustered standard errors) and statsmodels (probit propensity scores).
Each estimate is reduced to a flat record so that a whole battery of
outcome x treatment x specification runs becomes one tidy table.
"""

import logging
from typing import Any

import numpy as np
import pandas as pd
import pyfixest as pf
import statsmodels.formula.api as smf

from garden_city.logging_utils import log_estimate


DEFAULT_VCOV = {"CRV1": "county_fips"}

RESULT_COLUMNS = [
    "estimator", "specification", "outcome", "treatment",
    "coefficient", "std_error", "p_value", "ci_lower", "ci_upper",
    "n_obs", "r_squared", "status", "error",
]

ESTIMATOR_EXTRAS = {
    "ols": [],
    "iv": ["instrument", "first_stage_f"],
    "ipw": ["n_trimmed"],
}


# =============================================================================
# Formulas and result extraction
# =============================================================================

def fe_formula(
    outcome: str,
    regressors: list[str],
    fixed_effects: list[str] | None = None,
    iv: tuple[str, str] | None = None,
) -> str:
    """
    Build a pyfixest formula.

    Examples:
        fe_formula("y", ["d", "x"], ["county_fips"])  ->  "y ~ d + x | county_fips"
        fe_formula("y", ["x"], ["county_fips"], iv=("d", "z"))
            ->  "y ~ x | county_fips | d ~ z"
    """
    rhs = " + ".join(regressors) if regressors else "1"
    parts = [f"{outcome} ~ {rhs}"]
    if fixed_effects:
        parts.append(" + ".join(fixed_effects))
    if iv is not None:
        endog, instrument = iv
        parts.append(f"{endog} ~ {instrument}")
    return " | ".join(parts)


def _tidy(model, term: str) -> dict[str, Any]:
    ci = model.confint()
    r2 = getattr(model, "_r2", None)
    return {
        "coefficient": float(model.coef()[term]),
        "std_error": float(model.se()[term]),
        "p_value": float(model.pvalue()[term]),
        "ci_lower": float(ci.loc[term, ci.columns[0]]),
        "ci_upper": float(ci.loc[term, ci.columns[1]]),
        "n_obs": float(model._N),
        "r_squared": float(r2) if r2 is not None else np.nan,
    }


def _estimation_sample(df: pd.DataFrame, columns: list[str]) -> pd.DataFrame:
    needed = list(dict.fromkeys(c for c in columns if c))
    missing = [c for c in needed if c not in df.columns]
    if missing:
        raise KeyError(f"Columns not in data: {missing}")
    return df[needed].dropna()


def _cluster_columns(vcov) -> list[str]:
    if isinstance(vcov, dict):
        return [c for v in vcov.values() for c in str(v).split("+")]
    return []


# =============================================================================
# OLS
# =============================================================================

def run_ols(
    df: pd.DataFrame,
    outcome: str,
    treatment: str,
    controls: list[str] | None = None,
    fixed_effects: list[str] | None = None,
    vcov: dict | str = DEFAULT_VCOV,
    weights: str | None = None,
) -> dict[str, Any]:
    """
    Fixed-effects OLS of `outcome` on `treatment` and controls.

    Returns:
        Flat record with coefficient, std_error, p_value, ci_lower, ci_upper,
        n_obs and r_squared for the treatment.
    """
    controls = controls or []
    fixed_effects = fixed_effects or []
    data = _estimation_sample(
        df,
        [outcome, treatment] + controls + fixed_effects + _cluster_columns(vcov) + [weights],
    )
    formula = fe_formula(outcome, [treatment] + controls, fixed_effects)
    model = pf.feols(formula, data=data, vcov=vcov, weights=weights)
    return _tidy(model, treatment)


# =============================================================================
# Instruments and 2SLS
# =============================================================================

def leave_one_out_mean(df: pd.DataFrame, value: str, group: str) -> pd.Series:
    """
    Mean of `value` within `group`, excluding the row itself.

    Rows whose own value is missing get the plain group mean; singleton
    groups and rows with a missing group are NaN.
    """
    x = df[value].astype(float)
    grouped = x.groupby(df[group])
    total = grouped.transform("sum")
    count = grouped.transform("count")

    own = x.fillna(0.0)
    n_other = count - x.notna().astype(int)
    with np.errstate(divide="ignore", invalid="ignore"):
        loo = (total - own) / n_other.where(n_other > 0)
    return loo.rename(f"{value}_loo_{group}")


def national_average_instrument(
    df: pd.DataFrame,
    value: str,
    by: str,
    exclude: str,
) -> pd.Series:
    """
    Mean of `value` among neighborhoods sharing `by` but outside the own
    `exclude` group (e.g. same vintage decade, other metros).

    Rows with a missing `exclude` group only exclude themselves.
    """
    x = df[value].astype(float)
    by_total = x.groupby(df[by]).transform("sum")
    by_count = x.groupby(df[by]).transform("count")

    pair = x.groupby([df[by], df[exclude]])
    own_total = pair.transform("sum")
    own_count = pair.transform("count")

    no_group = df[exclude].isna()
    own_total = own_total.where(~no_group, x.fillna(0.0))
    own_count = own_count.where(~no_group, x.notna().astype(int))

    n_other = by_count - own_count
    with np.errstate(divide="ignore", invalid="ignore"):
        avg = (by_total - own_total) / n_other.where(n_other > 0)
    return avg.rename(f"{value}_national_{by}")


def run_iv(
    df: pd.DataFrame,
    outcome: str,
    endog: str,
    instrument: str,
    controls: list[str] | None = None,
    fixed_effects: list[str] | None = None,
    vcov: dict | str = DEFAULT_VCOV,
) -> dict[str, Any]:
    """
    2SLS of `outcome` on `endog` instrumented by `instrument`.

    The first-stage F statistic for the excluded instrument is the squared
    t-statistic of the instrument in the first-stage regression, under the
    same fixed effects and variance estimator.

    Returns:
        Flat record for `endog` plus instrument and first_stage_f.
    """
    controls = controls or []
    fixed_effects = fixed_effects or []
    data = _estimation_sample(
        df, [outcome, endog, instrument] + controls + fixed_effects + _cluster_columns(vcov)
    )

    model = pf.feols(fe_formula(outcome, controls, fixed_effects, iv=(endog, instrument)),
                     data=data, vcov=vcov)
    result = _tidy(model, endog)

    first = pf.feols(fe_formula(endog, [instrument] + controls, fixed_effects),
                     data=data, vcov=vcov)
    t_first = float(first.coef()[instrument] / first.se()[instrument])
    result["instrument"] = instrument
    result["first_stage_f"] = t_first ** 2
    return result


# =============================================================================
# Propensity scores and IPW
# =============================================================================

def propensity_scores(
    df: pd.DataFrame,
    treatment: str,
    covariates: list[str],
    categorical: list[str] | None = None,
) -> tuple[pd.Series, Any]:
    """
    Probit propensity score of a binary treatment.

    Returns:
        (scores aligned to df.index, NaN where a covariate is missing;
        fitted statsmodels result)
    """
    categorical = categorical or []
    terms = list(covariates) + [f"C({c})" for c in categorical]
    formula = f"{treatment} ~ " + (" + ".join(terms) if terms else "1")

    sample = df.dropna(subset=[treatment] + list(covariates) + categorical)
    fit = smf.probit(formula, data=sample).fit(disp=0)

    scores = pd.Series(np.nan, index=df.index, name=f"pscore_{treatment}")
    scores.loc[sample.index] = np.asarray(fit.predict(sample), dtype=float)
    return scores, fit


def ipw_weights(
    treat: pd.Series,
    pscore: pd.Series,
    estimand: str = "ate",
    trim: tuple[float, float] | None = (0.01, 0.99),
) -> pd.Series:
    """
    Inverse probability weights.

    ATE: t/p + (1 - t)/(1 - p). ATT: t + (1 - t) p/(1 - p).
    Observations with a score outside `trim` are dropped (weight NaN).

    Raises:
        ValueError: For an unknown estimand.
    """
    estimand = estimand.lower()
    if estimand not in ("ate", "att"):
        raise ValueError(f"Unknown IPW estimand '{estimand}', expected 'ate' or 'att'")

    t = treat.astype(float)
    p = pscore.astype(float)
    if trim is not None:
        lo, hi = trim
        p = p.where((p >= lo) & (p <= hi))

    if estimand == "ate":
        w = t / p + (1.0 - t) / (1.0 - p)
    else:
        w = t + (1.0 - t) * p / (1.0 - p)
    return w.rename("ipw")


def covariate_balance(
    df: pd.DataFrame,
    treatment: str,
    covariates: list[str],
    weights: pd.Series | None = None,
) -> pd.DataFrame:
    """
    Standardized mean differences between treated and control groups.

    The SMD denominator is the pooled unweighted standard deviation, so raw
    and weighted differences are on the same scale. Rows without a weight
    (trimmed) only enter the raw comparison.
    """
    w_all = weights if weights is not None else pd.Series(1.0, index=df.index)
    rows = []
    for cov in covariates:
        raw = df[[treatment, cov]].dropna()
        treated = raw.loc[raw[treatment] == 1, cov]
        control = raw.loc[raw[treatment] == 0, cov]
        if treated.empty or control.empty:
            rows.append({"covariate": cov, "smd_raw": np.nan, "smd_weighted": np.nan})
            continue

        sd = np.sqrt((treated.var() + control.var()) / 2.0)
        weighted = raw.assign(_w=w_all.reindex(raw.index)).dropna(subset=["_w"])
        wt = weighted[weighted[treatment] == 1]
        wc = weighted[weighted[treatment] == 0]
        if wt.empty or wc.empty:
            diff_w = np.nan
        else:
            diff_w = np.average(wt[cov], weights=wt["_w"]) - np.average(wc[cov], weights=wc["_w"])

        rows.append({
            "covariate": cov,
            "mean_treated": treated.mean(),
            "mean_control": control.mean(),
            "smd_raw": (treated.mean() - control.mean()) / sd if sd > 0 else np.nan,
            "smd_weighted": diff_w / sd if sd > 0 else np.nan,
        })
    return pd.DataFrame(rows)


def run_ipw(
    df: pd.DataFrame,
    outcome: str,
    treatment: str,
    covariates: list[str],
    categorical: list[str] | None = None,
    fixed_effects: list[str] | None = None,
    controls: list[str] | None = None,
    vcov: dict | str = DEFAULT_VCOV,
    estimand: str = "ate",
    trim: tuple[float, float] | None = (0.01, 0.99),
) -> tuple[dict[str, Any], pd.DataFrame]:
    """
    Probit propensity score, inverse probability weights, then weighted
    fixed-effects OLS of `outcome` on `treatment`.

    Returns:
        (flat record for the treatment, covariate balance table)
    """
    scores, _ = propensity_scores(df, treatment, covariates, categorical)
    weights = ipw_weights(df[treatment], scores, estimand=estimand, trim=trim)

    data = df.assign(_ipw=weights)
    result = run_ols(data, outcome, treatment, controls=controls,
                     fixed_effects=fixed_effects, vcov=vcov, weights="_ipw")
    result["n_trimmed"] = float((scores.notna() & weights.isna()).sum())

    balance = covariate_balance(data, treatment, covariates, weights=data["_ipw"])
    return result, balance


# =============================================================================
# Specification battery
# =============================================================================

def run_specification_grid(
    df: pd.DataFrame,
    outcomes: list[str],
    treatments: list[str],
    specifications: list[dict],
    estimator: str = "ols",
    vcov: dict | str = DEFAULT_VCOV,
    logger: logging.Logger | None = None,
    **options: Any,
) -> pd.DataFrame:
    """
    Run every outcome x treatment x specification combination.

    Args:
        df: Analysis panel.
        outcomes: Outcome columns.
        treatments: Treatment columns for "ols"/"ipw"; instrument columns for
            "iv" (the endogenous regressor is `options["endogenous"]`).
        specifications: Dicts with name, controls and fixed_effects.
        estimator: "ols", "iv" or "ipw".
        vcov: pyfixest variance specification.
        logger: Optional logger; failed runs are logged as warnings.
        **options: Estimator options (endogenous for IV; covariates,
            categorical, estimand, trim for IPW).

    Returns:
        Tidy table with RESULT_COLUMNS plus estimator-specific extras. A run
        that raises is recorded with status "failed" and its error message.
    """
    if estimator not in ("ols", "iv", "ipw"):
        raise ValueError(f"Unknown estimator '{estimator}'")

    records = []
    for spec in specifications:
        controls = list(spec.get("controls") or [])
        fes = list(spec.get("fixed_effects") or [])

        for outcome in outcomes:
            for treatment in treatments:
                record = {"estimator": estimator, "specification": spec["name"],
                          "outcome": outcome, "treatment": treatment}
                if estimator == "iv":
                    record.update(treatment=options["endogenous"], instrument=treatment)
                try:
                    if estimator == "ols":
                        est = run_ols(df, outcome, treatment, controls, fes, vcov)
                    elif estimator == "iv":
                        est = run_iv(df, outcome, options["endogenous"], treatment,
                                     controls, fes, vcov)
                    else:
                        est, _ = run_ipw(
                            df, outcome, treatment,
                            covariates=options.get("covariates", controls),
                            categorical=options.get("categorical"),
                            fixed_effects=fes,
                            controls=controls,
                            vcov=vcov,
                            estimand=options.get("estimand", "ate"),
                            trim=options.get("trim", (0.01, 0.99)),
                        )
                    record.update(est, status="ok", error=None)
                    if logger:
                        log_estimate(logger, estimator, outcome, record["treatment"],
                                     spec["name"], est["coefficient"], est["std_error"],
                                     int(est["n_obs"]))
                except Exception as e:
                    record.update(status="failed", error=str(e)[:240])
                    if logger:
                        logger.warning(
                            f"{estimator} {outcome} ~ {treatment} [{spec['name']}] failed: {e}"
                        )
                records.append(record)

    results = pd.DataFrame(records)
    for col in RESULT_COLUMNS + ESTIMATOR_EXTRAS[estimator]:
        if col not in results.columns:
            results[col] = np.nan
    numeric = ["coefficient", "std_error", "p_value", "ci_lower", "ci_upper",
               "n_obs", "r_squared"]
    results[numeric] = results[numeric].astype(float)
    extras = [c for c in results.columns if c not in RESULT_COLUMNS]
    return results[RESULT_COLUMNS + extras]


def _stars(p: float) -> str:
    if not np.isfinite(p):
        return ""
    return "***" if p < 0.01 else "**" if p < 0.05 else "*" if p < 0.1 else ""


def results_markdown(results: pd.DataFrame, title: str, notes: list[str] | None = None) -> str:
    """
    Markdown summary of a results table: one section per outcome, one row
    per treatment x specification. Failed runs are listed separately.
    """
    lines = [f"# {title}", ""]
    ok = results[results["status"] == "ok"]
    failed = results[results["status"] != "ok"]

    has_f = "first_stage_f" in results.columns
    header = "| Treatment | Specification | Coefficient | SE | N | R² |"
    rule = "|-----------|---------------|-------------|----|---|----|"
    if has_f:
        header += " First-stage F |"
        rule += "---------------|"

    for outcome, block in ok.groupby("outcome", sort=False):
        lines.extend([f"## {outcome}", "", header, rule])
        for _, r in block.iterrows():
            label = r["treatment"]
            if has_f and isinstance(r.get("instrument"), str):
                label = f"{label} (IV: {r['instrument']})"
            row = (
                f"| {label} | {r['specification']} | "
                f"{r['coefficient']:.4f}{_stars(r['p_value'])} | ({r['std_error']:.4f}) | "
                f"{int(r['n_obs']):,} | {r['r_squared']:.3f} |"
            )
            if has_f:
                row += f" {r['first_stage_f']:.1f} |"
            lines.append(row)
        lines.append("")

    if not failed.empty:
        lines.extend(["## Failed runs", ""])
        for _, r in failed.iterrows():
            lines.append(f"- {r['outcome']} ~ {r['treatment']} [{r['specification']}]: {r['error']}")
        lines.append("")

    lines.extend(["## Notes", "", "- \\* p<0.1, \\*\\* p<0.05, \\*\\*\\* p<0.01"])
    lines.extend(f"- {n}" for n in notes or [])
    return "\n".join(lines) + "\n"
