"""
Heterogeneity statistics for mlmeta.

Cochran's Q for residual heterogeneity, the Wald omnibus test of
moderators, and multilevel I² (the share of total variance attributable to
each random-effects level rather than to sampling error).
"""

from __future__ import annotations
from typing import Optional, Dict, Any, Sequence, Tuple
import numpy as np
from scipy import stats


def _fixed_effect_projection(v: np.ndarray, X: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Inverse-variance weights W and P_W = W - WX(XᵀWX)⁻¹XᵀW."""
    W = np.diag(1 / v)
    WX = W @ X
    XtWX_inv = np.linalg.pinv(X.T @ WX)
    return W, W - WX @ XtWX_inv @ WX.T


def cochran_q(
    y: np.ndarray,
    v: np.ndarray,
    X: Optional[np.ndarray] = None,
) -> Dict[str, float]:
    """
    Test for residual heterogeneity.

    Q is the weighted residual sum of squares of an inverse-variance
    (fixed-effect) fit of y on X, compared to a chi-square with k - p df.

    Args:
        y: Effect estimates
        v: Sampling variances
        X: Design matrix (default: intercept only)

    Returns:
        Dictionary with Q statistic, degrees of freedom, and p-value
    """
    y = np.asarray(y, dtype=float).flatten()
    v = np.asarray(v, dtype=float).flatten()
    if X is None:
        X = np.ones((len(y), 1))

    weights = 1 / v
    WX = X * weights[:, None]
    beta_fe = np.linalg.lstsq(X.T @ WX, WX.T @ y, rcond=None)[0]
    residuals = y - X @ beta_fe

    q = float(max(np.sum(weights * residuals ** 2), 0.0))
    df = len(y) - X.shape[1]
    pvalue = float(stats.chi2.sf(q, df)) if df > 0 else np.nan

    return {
        "Q": q,
        "df": int(df),
        "p_value": pvalue,
    }


def typical_sampling_variance(v: np.ndarray, X: Optional[np.ndarray] = None) -> float:
    """
    'Typical' within-study sampling variance, (k - p) / tr(P_W).

    Reduces to the Higgins-Thompson typical variance for an intercept-only
    model.
    """
    v = np.asarray(v, dtype=float).flatten()
    if X is None:
        X = np.ones((len(v), 1))
    _, P = _fixed_effect_projection(v, X)
    df = len(v) - X.shape[1]
    trace = float(np.trace(P))
    if df <= 0 or trace <= 0:
        return float(np.mean(v))
    return df / trace


def multilevel_i_squared(
    sigma2: Sequence[float],
    v: np.ndarray,
    X: Optional[np.ndarray] = None,
    level_names: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    """
    I² for a multilevel model, in percent.

    I²_k = σ²_k / (Σ_j σ²_j + ṽ) where ṽ is the typical sampling variance.

    Args:
        sigma2: Variance components
        v: Sampling variances
        X: Design matrix
        level_names: Names of the levels

    Returns:
        Dictionary with total I² and I² per level
    """
    sigma2 = np.asarray(sigma2, dtype=float)
    if level_names is None:
        level_names = [f"level{k + 1}" for k in range(len(sigma2))]

    v_typical = typical_sampling_variance(v, X)
    total = float(np.sum(sigma2)) + v_typical

    by_level = {
        name: float(100 * s / total) for name, s in zip(level_names, sigma2)
    }

    return {
        "I_squared": float(100 * np.sum(sigma2) / total),
        "I_squared_levels": by_level,
        "typical_variance": v_typical,
    }


def compute_h_squared(q: float, df: int) -> float:
    """H² = Q / df (1 when there is no residual df)."""
    if df <= 0:
        return 1.0
    return max(1.0, q / df)


def moderator_test(
    beta: np.ndarray,
    vcov: np.ndarray,
    term_names: Sequence[str],
) -> Dict[str, Any]:
    """
    Wald omnibus test that all non-intercept coefficients are zero.

    Args:
        beta: Fixed-effect coefficients
        vcov: Their covariance matrix
        term_names: Coefficient names ('intercept' is excluded from the test)

    Returns:
        Dictionary with QM statistic, df and p-value (None values when the
        model has no moderators)
    """
    idx = [i for i, name in enumerate(term_names) if name != "intercept"]
    if not idx:
        return {"QM": None, "df": 0, "p_value": None}

    b = np.asarray(beta)[idx]
    S = np.asarray(vcov)[np.ix_(idx, idx)]
    qm = float(b @ np.linalg.pinv(S, hermitian=True) @ b)
    df = len(idx)

    return {
        "QM": qm,
        "df": df,
        "p_value": float(stats.chi2.sf(qm, df)),
    }
