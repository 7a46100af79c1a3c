"""
Three-Level Model Module
========================

Random-effects model with comparisons nested in studies:

    y_ij = x_ij' beta + u_i + e_ij + eps_ij
    u_i ~ N(0, sigma2_between)   (level 3: study)
    e_ij ~ N(0, sigma2_within)   (level 2: comparison within study)
    eps_ij ~ N(0, v_ij)          (level 1: known sampling variance)

Variance components are estimated by restricted maximum likelihood with
scipy's L-BFGS-B optimizer. I^2 is split across levels using the typical
sampling variance (k - p) / tr(P).

Note: statsmodels MixedLM cannot fix the level-1 variances at known
values, so the likelihood is written out here.
"""
from __future__ import annotations

from typing import Any, List, Optional, Sequence, Tuple, TypedDict
import warnings

import numpy as np
import pandas as pd
from scipy import optimize, stats


# =============================================================================
# ThreeLevelResult TypedDict
# =============================================================================

class ThreeLevelResult(TypedDict):
    """
    Result of a three-level model fit.

    Keys:
        k: Number of effect sizes
        n_studies: Number of studies (level-3 units)
        coefficients: DataFrame with term, estimate, std_error, z_value,
            p_value, ci_lower, ci_upper
        cov: Covariance matrix of the coefficients
        sigma2_between: Between-study variance (level 3)
        sigma2_within: Within-study variance (level 2)
        i2_between, i2_within, i2_total: Heterogeneity in percent
        q: Residual heterogeneity statistic (fixed-effect weights)
        q_df: Degrees of freedom of q (k - p)
        q_p: p-value of q
        qm, qm_df, qm_p: Omnibus Wald test of the moderators (NaN if none)
        pi_lower, pi_upper: Prediction interval of the first coefficient
        loglik: Restricted log-likelihood
        converged: Whether the optimizer converged
        test: "z" or "t"
        warnings: Warnings generated during fitting
    """
    k: int
    n_studies: int
    coefficients: pd.DataFrame
    cov: np.ndarray
    sigma2_between: float
    sigma2_within: float
    i2_between: float
    i2_within: float
    i2_total: float
    q: float
    q_df: int
    q_p: float
    qm: float
    qm_df: int
    qm_p: float
    pi_lower: float
    pi_upper: float
    loglik: float
    converged: bool
    test: str
    warnings: List[str]


def summarize_three_level_result(result: ThreeLevelResult) -> str:
    """
    Generate summary string for a three-level fit.

    :param result: ThreeLevelResult dictionary
    :returns: Human-readable summary string
    """
    lines = [
        f"Three-level model: k = {result['k']}, studies = {result['n_studies']}",
        f"  sigma2 (between) = {result['sigma2_between']:.4f}, "
        f"sigma2 (within) = {result['sigma2_within']:.4f}",
        f"  I2 total = {result['i2_total']:.1f}% "
        f"(between {result['i2_between']:.1f}%, within {result['i2_within']:.1f}%)",
        f"  Converged: {result['converged']}",
    ]
    for _, row in result["coefficients"].iterrows():
        lines.append(
            f"  {row['term']}: {row['estimate']:.3f} "
            f"[{row['ci_lower']:.3f}; {row['ci_upper']:.3f}], p = {row['p_value']:.4f}"
        )
    if np.isfinite(result["qm"]):
        lines.append(f"  QM({result['qm_df']}) = {result['qm']:.2f}, p = {result['qm_p']:.4f}")
    return "\n".join(lines)


# =============================================================================
# Likelihood
# =============================================================================

def _marginal_cov(v: np.ndarray, same_study: np.ndarray, s_between: float, s_within: float) -> np.ndarray:
    return np.diag(v + s_within) + s_between * same_study


def _neg_restricted_loglik(
    theta: np.ndarray,
    y: np.ndarray,
    v: np.ndarray,
    X: np.ndarray,
    same_study: np.ndarray,
) -> float:
    V = _marginal_cov(v, same_study, theta[0], theta[1])
    chol = np.linalg.cholesky(V)
    logdet_v = 2 * np.sum(np.log(np.diag(chol)))
    vi_x = np.linalg.solve(V, X)
    vi_y = np.linalg.solve(V, y)
    xtvix = X.T @ vi_x
    beta = np.linalg.solve(xtvix, X.T @ vi_y)
    r = y - X @ beta
    _, logdet_x = np.linalg.slogdet(xtvix)
    return 0.5 * (logdet_v + logdet_x + r @ np.linalg.solve(V, r))


def _wald_p(stat: float, q: int, df_resid: Optional[int]) -> float:
    if df_resid is None:
        return float(stats.chi2.sf(stat, q))
    return float(stats.f.sf(stat / q, q, df_resid))


def wald_test(
    beta: np.ndarray,
    cov: np.ndarray,
    indices: Sequence[int],
    df_resid: Optional[int] = None,
) -> Tuple[float, int, float]:
    """
    Wald test that the selected coefficients are all zero.

    :param beta: Coefficient vector
    :param cov: Covariance matrix of beta
    :param indices: Positions of the tested coefficients
    :param df_resid: Residual df; when given the p-value comes from
        F(q, df_resid) with the statistic divided by q, else from chi-square
    :returns: (statistic, df, p-value)
    """
    idx = list(indices)
    if not idx:
        return np.nan, 0, np.nan
    b = beta[idx]
    c = cov[np.ix_(idx, idx)]
    stat = float(b @ np.linalg.solve(c, b))
    return stat, len(idx), _wald_p(stat, len(idx), df_resid)


def contrast_test(
    beta: np.ndarray,
    cov: np.ndarray,
    L: np.ndarray,
    df_resid: Optional[int] = None,
) -> Tuple[float, int, float]:
    """
    Wald test of the linear hypothesis L beta = 0.

    :returns: (statistic, df, p-value)
    """
    L = np.atleast_2d(L)
    lb = L @ beta
    stat = float(lb @ np.linalg.solve(L @ cov @ L.T, lb))
    return stat, L.shape[0], _wald_p(stat, L.shape[0], df_resid)


# =============================================================================
# Fitting
# =============================================================================

def fit_three_level(
    y: Sequence[float],
    v: Sequence[float],
    study: Sequence[Any],
    X: Optional[np.ndarray] = None,
    term_names: Optional[Sequence[str]] = None,
    intercept: bool = True,
    test: str = "z",
    alpha: float = 0.05,
) -> ThreeLevelResult:
    """
    Fit a three-level random-effects model by REML.

    :param y: Effect sizes
    :param v: Sampling variances
    :param study: Study of each effect size
    :param X: Design matrix (None = intercept only)
    :param term_names: Names of the columns of X
    :param intercept: Whether the first column of X is an intercept; the
        moderator test then excludes it
    :param test: "z" (normal) or "t" (t distribution with k - p df)
    :param alpha: 1 - confidence level
    :returns: ThreeLevelResult dictionary
    :raises ValueError: On invalid input
    :raises numpy.linalg.LinAlgError: If the model matrix is singular
    """
    y = np.asarray(y, dtype=float)
    v = np.asarray(v, dtype=float)
    study = np.asarray(list(study), dtype=object)
    if not (len(y) == len(v) == len(study)):
        raise ValueError("y, v and study must have equal length")
    if not (np.all(np.isfinite(y)) and np.all(v > 0)):
        raise ValueError("Effect sizes must be finite and variances positive")
    if test not in ("z", "t"):
        raise ValueError(f"test must be 'z' or 't', got '{test}'")

    k = len(y)
    if X is None:
        X = np.ones((k, 1))
        term_names = ["intrcpt"]
    X = np.asarray(X, dtype=float)
    p = X.shape[1]
    if term_names is None:
        term_names = [f"x{i}" for i in range(p)]
    if k - p < 1:
        raise ValueError(f"Three-level model needs more effect sizes (k = {k}) than coefficients ({p})")

    same_study = (study[:, None] == study[None, :]).astype(float)
    n_studies = len(pd.unique(study))
    model_warnings: List[str] = []

    start_var = max(float(np.var(y)) - float(np.mean(v)), 0.01) / 2
    res = optimize.minimize(
        _neg_restricted_loglik,
        x0=np.array([start_var, start_var]),
        args=(y, v, X, same_study),
        method="L-BFGS-B",
        bounds=[(0.0, None), (0.0, None)],
    )
    converged = bool(res.success)
    if not converged:
        msg = f"Three-level REML optimizer did not converge: {res.message}"
        warnings.warn(msg)
        model_warnings.append(msg)
    s_between, s_within = (float(x) for x in res.x)

    V = _marginal_cov(v, same_study, s_between, s_within)
    vi_x = np.linalg.solve(V, X)
    cov = np.linalg.inv(X.T @ vi_x)
    beta = cov @ (vi_x.T @ y)
    se = np.sqrt(np.diag(cov))
    stat = beta / se

    if test == "t":
        dist_sf = lambda s: 2 * stats.t.sf(np.abs(s), k - p)
        crit = stats.t.ppf(1 - alpha / 2, k - p)
    else:
        dist_sf = lambda s: 2 * stats.norm.sf(np.abs(s))
        crit = stats.norm.ppf(1 - alpha / 2)

    coefficients = pd.DataFrame({
        "term": list(term_names),
        "estimate": beta,
        "std_error": se,
        "z_value": stat,
        "p_value": dist_sf(stat),
        "ci_lower": beta - crit * se,
        "ci_upper": beta + crit * se,
    })

    # Heterogeneity
    w = 1.0 / v
    xtwx_inv = np.linalg.inv(X.T @ (w[:, None] * X))
    trace_p = np.sum(w) - np.trace(xtwx_inv @ (X.T @ ((w ** 2)[:, None] * X)))
    typical_v = (k - p) / trace_p
    total = s_between + s_within + typical_v
    beta_fe = xtwx_inv @ (X.T @ (w * y))
    q = float(np.sum(w * (y - X @ beta_fe) ** 2))

    moderators = list(range(1, p)) if intercept else list(range(p))
    qm, qm_df, qm_p = wald_test(beta, cov, moderators, df_resid=k - p if test == "t" else None)

    half = crit * np.sqrt(se[0] ** 2 + s_between + s_within)

    return {
        "k": k,
        "n_studies": n_studies,
        "coefficients": coefficients,
        "cov": cov,
        "sigma2_between": s_between,
        "sigma2_within": s_within,
        "i2_between": 100 * s_between / total,
        "i2_within": 100 * s_within / total,
        "i2_total": 100 * (s_between + s_within) / total,
        "q": q,
        "q_df": k - p,
        "q_p": float(stats.chi2.sf(q, k - p)),
        "qm": qm,
        "qm_df": qm_df,
        "qm_p": qm_p,
        "pi_lower": float(beta[0] - half),
        "pi_upper": float(beta[0] + half),
        "loglik": float(-res.fun - 0.5 * (k - p) * np.log(2 * np.pi)),
        "converged": converged,
        "test": test,
        "warnings": model_warnings,
    }
