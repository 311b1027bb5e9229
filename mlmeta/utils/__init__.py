"""
Utility functions for mlmeta.

Normal and t reference distributions, inverse-variance pooling and the
number formatting shared by the summary tables.
"""

from __future__ import annotations
from typing import Optional, Tuple
import numpy as np
from scipy import stats


# ============================================================================
# Reference Distributions
# ============================================================================

def z_score(level: float = 0.95) -> float:
    """Two-sided normal critical value for a confidence level in (0, 1)."""
    return float(stats.norm.ppf((1 + level) / 2))


def ci_from_se(
    estimate: float,
    se: float,
    level: float = 0.95,
) -> Tuple[float, float]:
    """
    Wald confidence interval estimate ± z·se.

    Args:
        estimate: Point estimate
        se: Standard error
        level: Confidence level

    Returns:
        Tuple of (ci_lower, ci_upper)
    """
    half_width = z_score(level) * se
    return float(estimate - half_width), float(estimate + half_width)


def p_value_from_z(z, two_tailed: bool = True):
    """
    p-value of a Wald z statistic.

    Args:
        z: Statistic (scalar or array)
        two_tailed: Two-sided alternative

    Returns:
        p-value(s) under the standard normal
    """
    if two_tailed:
        return 2 * stats.norm.sf(np.abs(z))
    return stats.norm.sf(z)


def p_value_from_t(t, df: float, two_tailed: bool = True):
    """p-value of a t statistic with ``df`` degrees of freedom."""
    if two_tailed:
        return 2 * stats.t.sf(np.abs(t), df)
    return stats.t.sf(t, df)


# ============================================================================
# Pooling
# ============================================================================

def pooled_estimate_fixed(
    estimates: np.ndarray,
    variances: np.ndarray,
) -> Tuple[float, float]:
    """
    Inverse-variance (fixed-effect) pooled estimate.

    Returns:
        Tuple of (pooled_estimate, variance of the pooled estimate)
    """
    w = 1 / np.asarray(variances, dtype=float)
    total = np.sum(w)
    return float(np.sum(w * np.asarray(estimates, dtype=float)) / total), float(1 / total)


# ============================================================================
# Formatting
# ============================================================================

def format_estimate(
    estimate: float,
    se: Optional[float] = None,
    ci: Optional[Tuple[float, float]] = None,
    decimals: int = 3,
    back_transform: bool = False,
) -> str:
    """
    Render an estimate as text, e.g. ``0.412 (SE: 0.081) [0.253, 0.571]``.

    Args:
        estimate: Point estimate
        se: Standard error (optional)
        ci: Confidence interval (optional)
        decimals: Number of decimal places
        back_transform: Report a Fisher z estimate (and CI) as a correlation;
            the SE stays on the z scale

    Returns:
        Formatted string
    """
    if back_transform:
        estimate = np.tanh(estimate)
        if ci is not None:
            ci = (np.tanh(ci[0]), np.tanh(ci[1]))

    text = f"{estimate:.{decimals}f}"
    if se is not None:
        text += f" (SE: {se:.{decimals}f})"
    if ci is not None:
        text += f" [{ci[0]:.{decimals}f}, {ci[1]:.{decimals}f}]"
    return text


def format_p_value(p: float, threshold: float = 0.001) -> str:
    """'p < 0.001' below the threshold, three decimals otherwise."""
    if p < threshold:
        return f"p < {threshold}"
    return f"p = {p:.3f}"
