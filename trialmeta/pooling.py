"""
Pooling Module
==============

Fixed- and random-effects pooling of independent effect sizes.

Fixed-effect quantities and Cochran's Q come from statsmodels'
combine_effects(); the between-study variance (tau^2) is estimated with
one of:
- "REML": restricted maximum likelihood (scipy optimizer)
- "DL": DerSimonian-Laird
- "PM": Paule-Mandel

All three estimators accept a moderator design matrix, so they are reused
by meta-regression.

Also provides:
- Knapp-Hartung adjustment of the pooled SE (t distribution, k - 1 df)
- Higgins-Thompson confidence interval of I^2
- Prediction interval (t distribution, k - 2 df)
- Within-study aggregation of dependent effects
- Outlier detection (non-overlapping confidence intervals)
- Leave-one-out influence diagnostics

Architecture Note:
    Results are TypedDicts; the statsmodels CombineResults object is kept
    under "fit" for per-comparison weights and summary frames.
"""
from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple, TypedDict
import warnings

import numpy as np
import pandas as pd
from scipy import optimize, stats
from statsmodels.stats.meta_analysis import combine_effects


TAU2_METHODS = ("REML", "DL", "PM")


# =============================================================================
# PooledEstimate TypedDict
# =============================================================================

class PooledEstimate(TypedDict):
    """
    Result of pooling k effect sizes.

    Keys:
        k: Number of effect sizes
        estimate: Pooled effect (random effects unless fixed=True)
        se: Standard error of the pooled effect (Knapp-Hartung if hakn=True)
        ci_lower, ci_upper: Confidence interval of the pooled effect
        statistic: z (or t with Knapp-Hartung) statistic
        p: Two-sided p-value
        tau2: Between-study variance
        q: Cochran's Q
        q_df: Degrees of freedom of Q (k - 1)
        q_p: p-value of the heterogeneity test
        i2: I^2 in percent
        i2_lower, i2_upper: Confidence interval of I^2 in percent
        pi_lower, pi_upper: Prediction interval (NaN if k < 3 or fixed)
        method_tau: Tau^2 estimator
        hakn: Whether the Knapp-Hartung adjustment was applied
        fixed: Whether the fixed-effect estimate is reported
        weights: Weight of each effect size (sums to 1)
        fit: statsmodels CombineResults (None if k == 1)
    """
    k: int
    estimate: float
    se: float
    ci_lower: float
    ci_upper: float
    statistic: float
    p: float
    tau2: float
    q: float
    q_df: int
    q_p: float
    i2: float
    i2_lower: float
    i2_upper: float
    pi_lower: float
    pi_upper: float
    method_tau: str
    hakn: bool
    fixed: bool
    weights: np.ndarray
    fit: Any


def summarize_pooled_estimate(pooled: PooledEstimate) -> str:
    """
    Generate summary string for a pooled estimate.

    :param pooled: PooledEstimate dictionary
    :returns: Human-readable summary string
    """
    model = "Fixed effect" if pooled["fixed"] else f"Random effects ({pooled['method_tau']})"
    lines = [
        f"{model}: k = {pooled['k']}",
        f"  g = {pooled['estimate']:.3f} "
        f"[{pooled['ci_lower']:.3f}; {pooled['ci_upper']:.3f}], p = {pooled['p']:.4f}",
        f"  Q = {pooled['q']:.2f} (df = {pooled['q_df']}, p = {pooled['q_p']:.4f})",
        f"  I2 = {pooled['i2']:.1f}% [{pooled['i2_lower']:.1f}; {pooled['i2_upper']:.1f}]",
        f"  tau2 = {pooled['tau2']:.4f}",
    ]
    if pooled["hakn"]:
        lines.append("  Knapp-Hartung adjustment applied")
    return "\n".join(lines)


# =============================================================================
# Tau^2 estimators
# =============================================================================

def _design(X: Optional[np.ndarray], k: int) -> np.ndarray:
    if X is None:
        return np.ones((k, 1))
    X = np.asarray(X, dtype=float)
    return X.reshape(-1, 1) if X.ndim == 1 else X


def _wls(y: np.ndarray, w: np.ndarray, X: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Weighted least squares coefficients and their covariance (inverse information)."""
    xtwx = X.T @ (w[:, None] * X)
    cov = np.linalg.inv(xtwx)
    beta = cov @ (X.T @ (w * y))
    return beta, cov


def residual_q(y: np.ndarray, v: np.ndarray, X: np.ndarray, tau2: float) -> float:
    """Generalized Q statistic under weights 1 / (v + tau2)."""
    w = 1.0 / (v + tau2)
    beta, _ = _wls(y, w, X)
    r = y - X @ beta
    return float(np.sum(w * r ** 2))


def _reml_objective(tau2: float, y: np.ndarray, v: np.ndarray, X: np.ndarray) -> float:
    """Negative restricted log-likelihood (up to a constant)."""
    w = 1.0 / (v + tau2)
    xtwx = X.T @ (w[:, None] * X)
    beta = np.linalg.solve(xtwx, X.T @ (w * y))
    r = y - X @ beta
    _, logdet = np.linalg.slogdet(xtwx)
    return 0.5 * (np.sum(np.log(v + tau2)) + logdet + np.sum(w * r ** 2))


def tau2_dl(y: np.ndarray, v: np.ndarray, X: Optional[np.ndarray] = None) -> float:
    """DerSimonian-Laird estimate of tau^2 (method of moments)."""
    y, v = np.asarray(y, dtype=float), np.asarray(v, dtype=float)
    X = _design(X, len(y))
    k, p = X.shape
    w = 1.0 / v
    q = residual_q(y, v, X, 0.0)
    xtwx_inv = np.linalg.inv(X.T @ (w[:, None] * X))
    trace_p = np.sum(w) - np.trace(xtwx_inv @ (X.T @ ((w ** 2)[:, None] * X)))
    if trace_p <= 0:
        return 0.0
    return max(0.0, (q - (k - p)) / trace_p)


def tau2_pm(y: np.ndarray, v: np.ndarray, X: Optional[np.ndarray] = None) -> float:
    """Paule-Mandel estimate of tau^2: generalized Q equals its expectation k - p."""
    y, v = np.asarray(y, dtype=float), np.asarray(v, dtype=float)
    X = _design(X, len(y))
    k, p = X.shape
    target = k - p

    def excess(tau2: float) -> float:
        return residual_q(y, v, X, tau2) - target

    if target <= 0 or excess(0.0) <= 0:
        return 0.0
    upper = max(np.var(y), np.max(v), 1e-4)
    while excess(upper) > 0:
        upper *= 2
    return float(optimize.brentq(excess, 0.0, upper, xtol=1e-10))


def tau2_reml(y: np.ndarray, v: np.ndarray, X: Optional[np.ndarray] = None) -> float:
    """Restricted maximum likelihood estimate of tau^2."""
    y, v = np.asarray(y, dtype=float), np.asarray(v, dtype=float)
    X = _design(X, len(y))
    k, p = X.shape
    if k - p <= 0:
        return 0.0

    upper = max(10 * np.var(y), 10 * np.max(v), 1.0)
    res = optimize.minimize_scalar(
        _reml_objective, bounds=(0.0, upper), args=(y, v, X),
        method="bounded", options={"xatol": 1e-10},
    )
    if not res.success:
        warnings.warn(f"REML estimation of tau2 did not converge: {res.message}")
    tau2 = float(res.x)
    # Boundary solution
    if _reml_objective(0.0, y, v, X) <= _reml_objective(tau2, y, v, X):
        return 0.0
    return tau2


def estimate_tau2(
    y: Sequence[float],
    v: Sequence[float],
    method: str = "REML",
    X: Optional[np.ndarray] = None,
) -> float:
    """
    Estimate the between-study variance.

    :param y: Effect sizes
    :param v: Sampling variances
    :param method: "REML", "DL" or "PM"
    :param X: Moderator design matrix including the intercept (None = intercept only)
    :returns: tau^2 (>= 0)
    """
    method = method.upper()
    if method == "REML":
        return tau2_reml(y, v, X)
    if method == "DL":
        return tau2_dl(y, v, X)
    if method == "PM":
        return tau2_pm(y, v, X)
    raise ValueError(f"Unknown tau2 estimator '{method}'. Expected one of {list(TAU2_METHODS)}")


# =============================================================================
# Heterogeneity
# =============================================================================

def i2_confint(q: float, k: int, alpha: float = 0.05) -> Tuple[float, float, float]:
    """
    I^2 and its Higgins-Thompson confidence interval, in percent.

    Based on the test-based interval of H = sqrt(Q / (k - 1)).

    :returns: (i2, lower, upper)
    """
    df = k - 1
    if df < 1 or q <= 0:
        return (0.0 if df >= 1 else np.nan), np.nan, np.nan

    i2 = max(0.0, (q - df) / q) * 100
    if q > k:
        se_log_h = 0.5 * (np.log(q) - np.log(df)) / (np.sqrt(2 * q) - np.sqrt(2 * k - 3))
    elif k > 2:
        se_log_h = np.sqrt(1 / (2 * (k - 2)) * (1 - 1 / (3 * (k - 2) ** 2)))
    else:
        return i2, np.nan, np.nan

    z = stats.norm.ppf(1 - alpha / 2)
    log_h = np.log(np.sqrt(q / df))
    h_lower = max(1.0, np.exp(log_h - z * se_log_h))
    h_upper = max(1.0, np.exp(log_h + z * se_log_h))
    return i2, (h_lower ** 2 - 1) / h_lower ** 2 * 100, (h_upper ** 2 - 1) / h_upper ** 2 * 100


# =============================================================================
# Pooling
# =============================================================================

def _check_inputs(y: Sequence[float], v: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    y = np.asarray(y, dtype=float)
    v = np.asarray(v, dtype=float)
    if y.shape != v.shape or y.ndim != 1:
        raise ValueError("Effect sizes and variances must be 1-d arrays of equal length")
    if len(y) == 0:
        raise ValueError("Cannot pool zero effect sizes")
    if not (np.all(np.isfinite(y)) and np.all(np.isfinite(v)) and np.all(v > 0)):
        raise ValueError("Effect sizes must be finite and variances finite and positive")
    return y, v


def pool_effects(
    y: Sequence[float],
    v: Sequence[float],
    method_tau: str = "REML",
    hakn: bool = False,
    fixed: bool = False,
    alpha: float = 0.05,
    labels: Optional[Sequence[str]] = None,
    tau2: Optional[float] = None,
) -> PooledEstimate:
    """
    Pool effect sizes with inverse-variance weights.

    :param y: Effect sizes
    :param v: Sampling variances
    :param method_tau: Tau^2 estimator ("REML", "DL" or "PM")
    :param hakn: Apply the Knapp-Hartung adjustment
    :param fixed: Report the fixed-effect instead of the random-effects estimate
    :param alpha: 1 - confidence level
    :param labels: Row names passed to combine_effects
    :param tau2: Use this tau^2 instead of estimating it (e.g., a common
        tau^2 across subgroups)
    :returns: PooledEstimate dictionary
    :raises ValueError: On empty or invalid input

    Example:
        >>> pooled = pool_effects(df["es"], df["se_es"] ** 2, method_tau="DL")
        >>> pooled["estimate"], pooled["i2"]
    """
    y, v = _check_inputs(y, v)
    method_tau = method_tau.upper()
    if method_tau not in TAU2_METHODS:
        raise ValueError(f"Unknown tau2 estimator '{method_tau}'. Expected one of {list(TAU2_METHODS)}")
    k = len(y)

    if k == 1:
        se = float(np.sqrt(v[0]))
        z = stats.norm.ppf(1 - alpha / 2)
        return {
            "k": 1, "estimate": float(y[0]), "se": se,
            "ci_lower": float(y[0] - z * se), "ci_upper": float(y[0] + z * se),
            "statistic": float(y[0] / se), "p": float(2 * stats.norm.sf(abs(y[0] / se))),
            "tau2": 0.0, "q": 0.0, "q_df": 0, "q_p": np.nan,
            "i2": np.nan, "i2_lower": np.nan, "i2_upper": np.nan,
            "pi_lower": np.nan, "pi_upper": np.nan,
            "method_tau": method_tau, "hakn": hakn, "fixed": fixed,
            "weights": np.ones(1), "fit": None,
        }

    fit = combine_effects(
        y, v,
        method_re="pm" if method_tau == "PM" else "dl",
        row_names=list(labels) if labels is not None else None,
        alpha=alpha,
    )

    if tau2 is None:
        tau2 = float(fit.tau2) if method_tau in ("DL", "PM") else tau2_reml(y, v)
    tau2 = max(0.0, float(tau2))

    if fixed:
        w = 1.0 / v
        estimate = float(fit.mean_effect_fe)
    else:
        w = 1.0 / (v + tau2)
        estimate = float(np.sum(w * y) / np.sum(w))
    se = float(np.sqrt(1.0 / np.sum(w)))

    if hakn:
        se = float(np.sqrt(np.sum(w * (y - estimate) ** 2) / ((k - 1) * np.sum(w))))
        crit = stats.t.ppf(1 - alpha / 2, k - 1)
        statistic = estimate / se if se > 0 else np.inf
        p = float(2 * stats.t.sf(abs(statistic), k - 1))
    else:
        crit = stats.norm.ppf(1 - alpha / 2)
        statistic = estimate / se
        p = float(2 * stats.norm.sf(abs(statistic)))

    q = float(fit.q)
    i2, i2_lower, i2_upper = i2_confint(q, k, alpha)

    if k >= 3 and not fixed:
        t_pi = stats.t.ppf(1 - alpha / 2, k - 2)
        half = t_pi * np.sqrt(tau2 + se ** 2)
        pi_lower, pi_upper = estimate - half, estimate + half
    else:
        pi_lower, pi_upper = np.nan, np.nan

    return {
        "k": k,
        "estimate": estimate,
        "se": se,
        "ci_lower": float(estimate - crit * se),
        "ci_upper": float(estimate + crit * se),
        "statistic": float(statistic),
        "p": p,
        "tau2": tau2,
        "q": q,
        "q_df": k - 1,
        "q_p": float(stats.chi2.sf(q, k - 1)),
        "i2": i2,
        "i2_lower": i2_lower,
        "i2_upper": i2_upper,
        "pi_lower": float(pi_lower),
        "pi_upper": float(pi_upper),
        "method_tau": method_tau,
        "hakn": hakn,
        "fixed": fixed,
        "weights": w / np.sum(w),
        "fit": fit,
    }


# =============================================================================
# Within-study aggregation
# =============================================================================

def aggregate_effects(
    y: Sequence[float],
    v: Sequence[float],
    cluster: Sequence[Any],
    rho: float = 0.5,
) -> pd.DataFrame:
    """
    Aggregate dependent effect sizes to one effect per cluster.

    Effects within a cluster are assumed to share the correlation rho
    (compound symmetry); the aggregate is their GLS mean.

    :param y: Effect sizes
    :param v: Sampling variances
    :param cluster: Cluster (study) of each effect size
    :param rho: Within-cluster correlation of the sampling errors
    :returns: DataFrame with cluster, es, var, n_comp (clusters in order of appearance)
    :raises ValueError: If rho is out of range or a cluster label is missing
    """
    if not -1 < rho <= 1:
        raise ValueError(f"rho must lie in (-1, 1], got {rho}")
    y, v = _check_inputs(y, v)
    cluster = pd.Series(list(cluster))
    if len(cluster) != len(y):
        raise ValueError("cluster must have one entry per effect size")
    if cluster.isna().any():
        raise ValueError(f"cluster is missing for {int(cluster.isna().sum())} effect size(s)")

    rows = []
    for label in cluster.unique():
        idx = np.flatnonzero((cluster == label).to_numpy())
        yi, vi = y[idx], v[idx]
        sd = np.sqrt(vi)
        m = len(idx)
        corr = np.full((m, m), rho)
        np.fill_diagonal(corr, 1.0)
        cov = corr * np.outer(sd, sd)
        ones = np.ones(m)
        cov_inv_one = np.linalg.solve(cov, ones)
        var = 1.0 / (ones @ cov_inv_one)
        rows.append({
            "cluster": label,
            "es": float(var * (cov_inv_one @ yi)),
            "var": float(var),
            "n_comp": m,
        })
    return pd.DataFrame(rows, columns=["cluster", "es", "var", "n_comp"])


# =============================================================================
# Outliers and influence
# =============================================================================

def find_outliers(
    y: Sequence[float],
    v: Sequence[float],
    pooled: PooledEstimate,
    alpha: float = 0.05,
) -> np.ndarray:
    """
    Flag effect sizes whose confidence interval does not overlap the pooled one.

    :param y: Effect sizes
    :param v: Sampling variances
    :param pooled: Pooled estimate of the same effect sizes
    :param alpha: 1 - confidence level of the individual intervals
    :returns: Boolean array (True = outlier)
    """
    y, v = _check_inputs(y, v)
    z = stats.norm.ppf(1 - alpha / 2)
    lower = y - z * np.sqrt(v)
    upper = y + z * np.sqrt(v)
    return (upper < pooled["ci_lower"]) | (lower > pooled["ci_upper"])


def influence_diagnostics(
    y: Sequence[float],
    v: Sequence[float],
    method_tau: str = "REML",
    labels: Optional[Sequence[Any]] = None,
) -> pd.DataFrame:
    """
    Leave-one-out influence diagnostics of a random-effects model.

    Columns:
    - rstudent: studentized deleted residual
    - dffits: change in the fitted value, scaled
    - cook_d: Cook's distance
    - cov_r: covariance ratio
    - tau2_del, q_del: tau^2 and Q with the effect size removed
    - hat: leverage
    - weight: weight in percent
    - dfbetas: change in the pooled effect, scaled
    - influential: |dffits| > 3 * sqrt(1 / (k - 1)), Cook's distance above
      the median of a chi-square(1), or hat > 3 / k

    :param y: Effect sizes
    :param v: Sampling variances
    :param method_tau: Tau^2 estimator
    :param labels: Label of each effect size
    :returns: DataFrame, one row per effect size
    :raises ValueError: If fewer than three effect sizes are given
    """
    y, v = _check_inputs(y, v)
    k = len(y)
    if k < 3:
        raise ValueError("Influence diagnostics need at least 3 effect sizes")

    tau2 = estimate_tau2(y, v, method_tau)
    w = 1.0 / (v + tau2)
    estimate = np.sum(w * y) / np.sum(w)
    var_est = 1.0 / np.sum(w)
    hat = w / np.sum(w)

    rows = []
    for i in range(k):
        keep = np.arange(k) != i
        yd, vd = y[keep], v[keep]
        tau2_d = estimate_tau2(yd, vd, method_tau)
        wd = 1.0 / (vd + tau2_d)
        est_d = np.sum(wd * yd) / np.sum(wd)
        var_d = 1.0 / np.sum(wd)
        diff = estimate - est_d
        rows.append({
            "rstudent": (y[i] - est_d) / np.sqrt(v[i] + tau2_d + var_d),
            "dffits": diff / np.sqrt(hat[i] * (tau2_d + v[i])),
            "cook_d": diff ** 2 / var_est,
            "cov_r": var_d / var_est,
            "tau2_del": tau2_d,
            "q_del": residual_q(yd, vd, np.ones((k - 1, 1)), 0.0),
            "hat": hat[i],
            "weight": hat[i] * 100,
            "dfbetas": diff / np.sqrt(var_d),
        })

    out = pd.DataFrame(rows)
    out.insert(0, "label", list(labels) if labels is not None else list(range(k)))
    out["influential"] = (
        (out["dffits"].abs() > 3 * np.sqrt(1 / (k - 1)))
        | (out["cook_d"] > stats.chi2.ppf(0.5, 1))
        | (out["hat"] > 3 / k)
    )
    return out
