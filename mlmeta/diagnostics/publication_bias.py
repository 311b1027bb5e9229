"""
Small-study effect (publication bias) diagnostics for mlmeta.

Implements:
- Corrected standard errors that do not depend on the effect size itself
- Egger-type regression tests in two forms:
    * 'mixed': yi/se = b0 + b1/se + u_cluster + e, a linear mixed model with
      a random intercept for the outermost cluster (dropped when every
      cluster holds a single row); the intercept b0 is the asymmetry statistic
    * 'weighted': yi = b0 + b1·se with REML heterogeneity, weights 1/se² and
      a sandwich covariance; the slope b1 is the asymmetry statistic
- Kendall rank-correlation test between standardized deviates and
  sampling variances
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, List, Sequence, Union
import logging
import warnings

import numpy as np
import pandas as pd
from scipy import stats

from mlmeta.core.config import FitOptions, VALID_EGGER_FORMS, VALID_EGGER_SE
from mlmeta.core.errors import InvalidInputError, NumericalWarning
from mlmeta.core.records import EffectMeasure
from mlmeta.models.design import build_design
from mlmeta.models.reml import fit_variance_components
from mlmeta.utils import p_value_from_t, p_value_from_z, pooled_estimate_fixed

logger = logging.getLogger(__name__)


# ============================================================================
# Standard errors
# ============================================================================

def raw_standard_error(table: pd.DataFrame, vi_col: str = "vi") -> np.ndarray:
    """Standard error sqrt(vi)."""
    if vi_col not in table.columns:
        raise InvalidInputError(f"Column '{vi_col}' not found in table")
    vi = table[vi_col].to_numpy(dtype=float)
    if np.any(~np.isfinite(vi) | (vi <= 0)):
        raise InvalidInputError("Sampling variances must be finite and positive")
    return np.sqrt(vi)


def corrected_standard_error(
    table: pd.DataFrame,
    measure: Union[str, EffectMeasure] = "SMD",
    n1_col: str = "n1",
    n2_col: str = "n2",
    n_col: str = "n",
    vi_col: str = "vi",
) -> np.ndarray:
    """
    Standard error that is free of the effect size.

    The SMD variance contains a g² term, which makes sqrt(vi) correlate with
    g by construction and biases Egger-type tests. The corrected SE keeps
    only the sample-size part.

    Args:
        table: Effect-size table
        measure: 'SMD' -> sqrt((n1 + n2) / (n1 · n2));
            'ZCOR' -> sqrt(vi) / sqrt(n)
        n1_col: Column with the first group size (SMD)
        n2_col: Column with the second group size (SMD)
        n_col: Column with the sample size (ZCOR)
        vi_col: Column with sampling variances (ZCOR)

    Returns:
        Array of standard errors, one per row
    """
    measure = EffectMeasure.from_string(measure)

    if measure is EffectMeasure.STANDARDIZED_MEAN_DIFFERENCE:
        for col in (n1_col, n2_col):
            if col not in table.columns:
                raise InvalidInputError(f"Column '{col}' not found in table")
        n1 = table[n1_col].to_numpy(dtype=float)
        n2 = table[n2_col].to_numpy(dtype=float)
        if np.any(~(n1 > 0)) or np.any(~(n2 > 0)):
            raise InvalidInputError("Group sizes must be positive")
        return np.sqrt((n1 + n2) / (n1 * n2))

    if n_col not in table.columns:
        raise InvalidInputError(f"Column '{n_col}' not found in table")
    n = table[n_col].to_numpy(dtype=float)
    if np.any(~(n > 0)):
        raise InvalidInputError("Sample sizes must be positive")
    return raw_standard_error(table, vi_col) / np.sqrt(n)


# ============================================================================
# Egger-type regression test
# ============================================================================

@dataclass(frozen=True)
class EggerTestResult:
    """
    Result of an Egger-type regression test.

    Attributes:
        form: 'mixed' or 'weighted'
        se_type: 'corrected' or 'raw'
        intercept: Estimated intercept
        intercept_se: Its standard error
        slope: Estimated slope
        slope_se: Its standard error
        statistic: Test statistic of the asymmetry coefficient (intercept
            for 'mixed', slope for 'weighted')
        p_value: Two-sided p-value
        distribution: 't' or 'z'
        df: Degrees of freedom of the t test (None for z)
        sigma2: Estimated variance components by name
        n_studies: Number of effect sizes
        warnings: Numerical warnings raised while fitting
    """

    form: str
    se_type: str
    intercept: float
    intercept_se: float
    slope: float
    slope_se: float
    statistic: float
    p_value: float
    distribution: str
    df: Optional[int] = None
    sigma2: Dict[str, float] = field(default_factory=dict)
    n_studies: int = 0
    warnings: tuple = ()

    @property
    def tested_coefficient(self) -> str:
        return "intercept" if self.form == "mixed" else "slope"

    def bias_detected(self, alpha: float = 0.1) -> bool:
        """Funnel asymmetry at the given significance level."""
        return self.p_value < alpha

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "form": self.form,
            "se_type": self.se_type,
            "tested_coefficient": self.tested_coefficient,
            "intercept": self.intercept,
            "intercept_se": self.intercept_se,
            "slope": self.slope,
            "slope_se": self.slope_se,
            "statistic": self.statistic,
            "p_value": self.p_value,
            "distribution": self.distribution,
            "df": self.df,
            "sigma2": dict(self.sigma2),
            "n_studies": self.n_studies,
            "warnings": list(self.warnings),
        }


def _egger_mixed(
    table: pd.DataFrame,
    se: np.ndarray,
    grouping: Sequence[str],
    options: FitOptions,
    yi_col: str,
    vi_col: str,
    se_type: str,
) -> EggerTestResult:
    # Only the outermost cluster enters as a random intercept
    design = build_design(table, grouping=list(grouping[:1]), yi_col=yi_col, vi_col=vi_col, strict=False)
    k = design.n_obs

    y = design.y / se
    X = np.column_stack([np.ones(k), 1 / se])
    if np.linalg.matrix_rank(X) < 2:
        raise InvalidInputError("Egger test needs standard errors that are not all equal")

    # A cluster with one row per group would duplicate the residual term
    clusters = [(level.name, level.gram()) for level in design.levels if level.n_groups < k]
    components = [("residual", np.eye(k))] + clusters
    fit = fit_variance_components(y, X, np.zeros(k), components, options)

    beta_se = fit.se
    df = k - X.shape[1]
    t_stat = float(fit.beta[0] / beta_se[0])

    return EggerTestResult(
        form="mixed",
        se_type=se_type,
        intercept=float(fit.beta[0]),
        intercept_se=float(beta_se[0]),
        slope=float(fit.beta[1]),
        slope_se=float(beta_se[1]),
        statistic=t_stat,
        p_value=float(p_value_from_t(t_stat, df)),
        distribution="t",
        df=df,
        sigma2=dict(zip(fit.component_names, fit.sigma2.tolist())),
        n_studies=k,
        warnings=fit.warnings,
    )


def _egger_weighted(
    table: pd.DataFrame,
    se: np.ndarray,
    grouping: Sequence[str],
    options: FitOptions,
    yi_col: str,
    vi_col: str,
    se_type: str,
    strict: bool,
) -> EggerTestResult:
    design = build_design(table, grouping=grouping, yi_col=yi_col, vi_col=vi_col, strict=strict)
    design = replace(
        design,
        X=np.column_stack([design.X, se]),
        term_names=design.term_names + ("sei",),
    )
    if np.linalg.matrix_rank(design.X) < 2:
        raise InvalidInputError("Egger test needs standard errors that are not all equal")

    # Step 1: Heterogeneity by REML with the SE as moderator
    fit = fit_variance_components(design.y, design.X, design.v, design.components(), options)

    # Step 2: Weighted least squares with weights 1/se²
    sigma = design.V.copy()
    for s2, (_, G) in zip(fit.sigma2, design.components()):
        sigma += s2 * G
    w = 1 / se ** 2
    XtW = design.X.T * w
    bread = np.linalg.inv(XtW @ design.X)
    beta = bread @ XtW @ design.y

    # Step 3: Sandwich covariance under the fitted marginal model
    vcov = bread @ XtW @ sigma @ XtW.T @ bread
    beta_se = np.sqrt(np.diag(vcov))
    z = float(beta[1] / beta_se[1])

    return EggerTestResult(
        form="weighted",
        se_type=se_type,
        intercept=float(beta[0]),
        intercept_se=float(beta_se[0]),
        slope=float(beta[1]),
        slope_se=float(beta_se[1]),
        statistic=z,
        p_value=float(p_value_from_z(z)),
        distribution="z",
        df=None,
        sigma2=dict(zip(fit.component_names, fit.sigma2.tolist())),
        n_studies=design.n_obs,
        warnings=fit.warnings,
    )


def egger_test(
    table: pd.DataFrame,
    grouping: Sequence[str] = (),
    measure: Union[str, EffectMeasure] = "SMD",
    se: str = "corrected",
    form: str = "mixed",
    options: Optional[FitOptions] = None,
    yi_col: str = "yi",
    vi_col: str = "vi",
    strict: bool = True,
    **se_columns,
) -> EggerTestResult:
    """
    Egger-type regression test for funnel-plot asymmetry.

    Args:
        table: Effect-size table
        grouping: Grouping columns, outermost first
        measure: Effect-size measure (selects the corrected SE formula)
        se: 'corrected' (default) or 'raw' (sqrt(vi))
        form: 'mixed' (random-intercept model on the standardized effect,
            intercept tested with t on k - 2 df) or 'weighted' (weighted
            meta-regression on the SE, slope tested with z)
        options: Estimator control parameters
        yi_col: Column with effect sizes
        vi_col: Column with sampling variances
        strict: Require at least two outermost groups ('weighted' form)
        **se_columns: Column names passed to ``corrected_standard_error``

    Returns:
        EggerTestResult
    """
    if se not in VALID_EGGER_SE:
        raise ValueError(f"se must be one of {VALID_EGGER_SE}")
    if form not in VALID_EGGER_FORMS:
        raise ValueError(f"form must be one of {VALID_EGGER_FORMS}")
    if isinstance(grouping, str):
        grouping = [grouping]
    grouping = list(grouping)
    options = options or FitOptions()

    if len(table) < 3:
        raise InvalidInputError("Egger test needs at least 3 effect sizes")

    if se == "corrected":
        sei = corrected_standard_error(table, measure, vi_col=vi_col, **se_columns)
    else:
        sei = raw_standard_error(table, vi_col)

    logger.debug("Egger test: form=%s se=%s k=%d", form, se, len(table))
    if form == "mixed":
        return _egger_mixed(table, sei, grouping, options, yi_col, vi_col, se)
    return _egger_weighted(table, sei, grouping, options, yi_col, vi_col, se, strict)


# ============================================================================
# Rank correlation test
# ============================================================================

@dataclass(frozen=True)
class RankTestResult:
    """
    Kendall rank-correlation test.

    Attributes:
        tau: Kendall's tau between standardized deviates and variances
        p_value: Two-sided p-value
        n_studies: Number of effect sizes
        reliable: False when the data are clustered, since the test
            assumes independent effect sizes
        warnings: Notes on the validity of the test
    """

    tau: float
    p_value: float
    n_studies: int
    reliable: bool = True
    warnings: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "tau": self.tau,
            "p_value": self.p_value,
            "n_studies": self.n_studies,
            "reliable": self.reliable,
            "warnings": list(self.warnings),
        }


def rank_correlation_test(
    table: pd.DataFrame,
    grouping: Sequence[str] = (),
    yi_col: str = "yi",
    vi_col: str = "vi",
) -> RankTestResult:
    """
    Rank correlation test for funnel-plot asymmetry.

    Standardized deviates (yi - β_FE) / sqrt(vi - v_β) from the
    fixed-effect pooled estimate are correlated with vi using Kendall's tau.

    Args:
        table: Effect-size table
        grouping: Grouping columns of the fitted model; with two or more
            levels the result is flagged as unreliable
        yi_col: Column with effect sizes
        vi_col: Column with sampling variances

    Returns:
        RankTestResult
    """
    if isinstance(grouping, str):
        grouping = [grouping]
    design = build_design(table, yi_col=yi_col, vi_col=vi_col)
    if design.n_obs < 3:
        raise InvalidInputError("Rank correlation test needs at least 3 effect sizes")

    notes: List[str] = []
    reliable = len(grouping) < 2
    if not reliable:
        notes.append(
            "Rank correlation test assumes independent effect sizes; "
            f"the model has {len(grouping)} nested levels"
        )
        warnings.warn(notes[-1], NumericalWarning, stacklevel=2)

    pooled, pooled_var = pooled_estimate_fixed(design.y, design.v)
    deviates = (design.y - pooled) / np.sqrt(design.v - pooled_var)
    tau, p_value = stats.kendalltau(deviates, design.v)

    return RankTestResult(
        tau=float(tau),
        p_value=float(p_value),
        n_studies=design.n_obs,
        reliable=reliable,
        warnings=tuple(notes),
    )
