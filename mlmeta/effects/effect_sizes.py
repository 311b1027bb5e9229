"""
Effect-Size Calculator for mlmeta.

This module converts raw per-study summary statistics into a standardized
effect size (``yi``) and its sampling variance (``vi``):

* two independent groups (n, mean, SD) -> bias-corrected standardized mean
  difference (Hedges' g)
* correlation and sample size -> Fisher's r-to-z transformed correlation

All functions are pure and vectorised; scalars in, floats out, arrays in,
arrays out.
"""

from __future__ import annotations
from typing import Optional, Dict, Tuple, Union
import numpy as np
import pandas as pd
from scipy.special import gammaln

from mlmeta.core.errors import InvalidInputError
from mlmeta.core.records import EffectMeasure

ArrayLike = Union[float, np.ndarray, pd.Series]

SMD_COLUMNS = {
    "n1": "n1", "mean1": "mean1", "sd1": "sd1",
    "n2": "n2", "mean2": "mean2", "sd2": "sd2",
}
ZCOR_COLUMNS = {"r": "r", "n": "n"}


def _as_float_array(values: ArrayLike, name: str) -> np.ndarray:
    try:
        arr = np.asarray(values, dtype=float)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"{name} must be numeric") from e
    if np.any(np.isnan(arr)):
        raise InvalidInputError(f"{name} contains missing values")
    return arr


def _scalar_or_array(arr: np.ndarray) -> Union[float, np.ndarray]:
    return float(arr) if arr.ndim == 0 else arr


def _check_variance(vi: np.ndarray) -> None:
    bad = ~np.isfinite(vi) | (vi <= 0)
    if np.any(bad):
        rows = np.flatnonzero(np.atleast_1d(bad)).tolist()
        raise InvalidInputError(
            f"Computed sampling variance is non-positive or non-finite (rows {rows})"
        )


def hedges_correction(df: ArrayLike) -> Union[float, np.ndarray]:
    """
    Exact small-sample bias-correction factor for the SMD.

    J(m) = Γ(m/2) / (sqrt(m/2) · Γ((m-1)/2)), evaluated on the log scale
    so that large degrees of freedom do not overflow.

    Args:
        df: Degrees of freedom (n1 + n2 - 2), must be > 1

    Returns:
        Correction factor in (0, 1]
    """
    m = _as_float_array(df, "df")
    if np.any(m <= 1):
        raise InvalidInputError(f"Degrees of freedom must exceed 1, got {df}")

    log_j = gammaln(m / 2) - 0.5 * np.log(m / 2) - gammaln((m - 1) / 2)
    return _scalar_or_array(np.exp(log_j))


def cohens_d(
    mean1: ArrayLike, sd1: ArrayLike, n1: ArrayLike,
    mean2: ArrayLike, sd2: ArrayLike, n2: ArrayLike,
) -> Union[float, np.ndarray]:
    """
    Uncorrected standardized mean difference using the pooled SD.

    Args:
        mean1, sd1, n1: Mean, standard deviation and size of group 1
        mean2, sd2, n2: Mean, standard deviation and size of group 2

    Returns:
        Cohen's d
    """
    m1, s1, k1 = (_as_float_array(v, name) for v, name in ((mean1, "mean1"), (sd1, "sd1"), (n1, "n1")))
    m2, s2, k2 = (_as_float_array(v, name) for v, name in ((mean2, "mean2"), (sd2, "sd2"), (n2, "n2")))

    if np.any(k1 < 2) or np.any(k2 < 2):
        raise InvalidInputError("Both group sizes must be at least 2 for SMD")
    if np.any(s1 < 0) or np.any(s2 < 0):
        raise InvalidInputError("Standard deviations must be non-negative")

    sd_pooled = np.sqrt(((k1 - 1) * s1 ** 2 + (k2 - 1) * s2 ** 2) / (k1 + k2 - 2))
    with np.errstate(divide="ignore", invalid="ignore"):
        d = (m1 - m2) / sd_pooled
    if np.any(~np.isfinite(d)):
        raise InvalidInputError("Pooled standard deviation is zero; SMD is undefined")
    return _scalar_or_array(d)


def standardized_mean_difference(
    mean1: ArrayLike, sd1: ArrayLike, n1: ArrayLike,
    mean2: ArrayLike, sd2: ArrayLike, n2: ArrayLike,
) -> Tuple[Union[float, np.ndarray], Union[float, np.ndarray]]:
    """
    Bias-corrected standardized mean difference (Hedges' g) and its variance.

    g = J(n1 + n2 - 2) · d, with the large-sample variance
    vi = 1/n1 + 1/n2 + g² / (2 (n1 + n2)).

    Args:
        mean1, sd1, n1: Mean, standard deviation and size of group 1
        mean2, sd2, n2: Mean, standard deviation and size of group 2

    Returns:
        Tuple of (g, variance)
    """
    d = np.asarray(cohens_d(mean1, sd1, n1, mean2, sd2, n2))
    k1 = np.asarray(n1, dtype=float)
    k2 = np.asarray(n2, dtype=float)

    j = np.asarray(hedges_correction(k1 + k2 - 2))
    g = j * d
    vi = 1 / k1 + 1 / k2 + g ** 2 / (2 * (k1 + k2))

    _check_variance(vi)
    return _scalar_or_array(g), _scalar_or_array(vi)


def fisher_z(
    r: ArrayLike,
    n: ArrayLike,
) -> Tuple[Union[float, np.ndarray], Union[float, np.ndarray]]:
    """
    Fisher's r-to-z transformation and its sampling variance.

    Args:
        r: Correlation coefficient in [-1, 1]
        n: Sample size (at least 4)

    Returns:
        Tuple of (z, variance) with z = atanh(r), variance = 1 / (n - 3)
    """
    r = _as_float_array(r, "r")
    n = _as_float_array(n, "n")

    if np.any(np.abs(r) > 1):
        raise InvalidInputError("Correlations must lie in [-1, 1]")
    if np.any(n < 4):
        raise InvalidInputError("Sample size must be at least 4 for ZCOR")

    with np.errstate(divide="ignore"):
        z = np.arctanh(r)
    if np.any(~np.isfinite(z)):
        raise InvalidInputError("|r| = 1 gives an infinite Fisher z")

    vi = 1 / (n - 3)
    _check_variance(vi)
    return _scalar_or_array(z), _scalar_or_array(vi)


def fisher_z_to_r(z: ArrayLike) -> Union[float, np.ndarray]:
    """Back-transform Fisher z values (estimates or CI bounds) to correlations."""
    return _scalar_or_array(np.tanh(np.asarray(z, dtype=float)))


def compute_effect_sizes(
    table: pd.DataFrame,
    measure: Union[str, EffectMeasure] = "SMD",
    columns: Optional[Dict[str, str]] = None,
    yi_col: str = "yi",
    vi_col: str = "vi",
) -> pd.DataFrame:
    """
    Compute effect sizes for every row of a study table.

    Args:
        table: Study table with one row per effect size
        measure: 'SMD' or 'ZCOR'
        columns: Mapping from the calculator's argument names
            (n1, mean1, sd1, n2, mean2, sd2 or r, n) to column names in
            ``table``; unspecified names map to themselves
        yi_col: Output column for the effect size
        vi_col: Output column for the sampling variance

    Returns:
        Copy of ``table`` with ``yi_col`` and ``vi_col`` added

    Raises:
        InvalidInputError: If any row has degenerate statistics. No row is
            dropped.
    """
    measure = EffectMeasure.from_string(measure)
    defaults = SMD_COLUMNS if measure is EffectMeasure.STANDARDIZED_MEAN_DIFFERENCE else ZCOR_COLUMNS
    mapping = {**defaults, **(columns or {})}

    missing = [col for key, col in mapping.items() if key in defaults and col not in table.columns]
    if missing:
        raise InvalidInputError(f"Missing columns for {measure.value}: {missing}")

    def col(key: str) -> np.ndarray:
        return table[mapping[key]].to_numpy(dtype=float)

    if measure is EffectMeasure.STANDARDIZED_MEAN_DIFFERENCE:
        yi, vi = standardized_mean_difference(
            col("mean1"), col("sd1"), col("n1"),
            col("mean2"), col("sd2"), col("n2"),
        )
    else:
        yi, vi = fisher_z(col("r"), col("n"))

    result = table.copy()
    result[yi_col] = np.atleast_1d(yi)
    result[vi_col] = np.atleast_1d(vi)
    return result
