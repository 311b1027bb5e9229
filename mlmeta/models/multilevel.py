"""
Multilevel random-effects models for mlmeta.

Implements the model:
    y_i = x_i'β + u_i^(1) + ... + u_i^(L) + e_i
    u^(l) ~ N(0, σ²_l) shared by all rows of a level-l group
    e_i ~ N(0, v_i) with known sampling variance v_i

Variance components are estimated by REML, fixed effects by GLS, and the
inference layer adds Wald tests, heterogeneity statistics and information
criteria.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union
import numpy as np
import pandas as pd

from mlmeta.core.config import FitOptions
from mlmeta.diagnostics.heterogeneity import (
    cochran_q,
    moderator_test,
    multilevel_i_squared,
)
from mlmeta.models.base import MultilevelResults
from mlmeta.models.design import DesignMatrix, Moderator, build_design
from mlmeta.models.reml import VarianceComponentFit, fit_variance_components
from mlmeta.utils import p_value_from_z, z_score


def summarize_fit(
    design: DesignMatrix,
    fit: VarianceComponentFit,
    ci_level: float = 0.95,
) -> MultilevelResults:
    """
    Inference layer: derive Wald tests, heterogeneity and fit statistics.

    Args:
        design: Model structure the fit was computed on
        fit: Converged variance-component fit
        ci_level: Confidence level

    Returns:
        MultilevelResults
    """
    k, p = design.X.shape

    # Step 1: Wald inference for the fixed effects
    beta = fit.beta
    beta_se = fit.se
    with np.errstate(divide="ignore", invalid="ignore"):
        beta_z = beta / beta_se
    beta_pvalue = p_value_from_z(beta_z)
    z_crit = z_score(ci_level)
    beta_ci = np.column_stack([beta - z_crit * beta_se, beta + z_crit * beta_se])

    # Step 2: Heterogeneity
    q_test = cochran_q(design.y, design.v, design.X)
    qm_test = moderator_test(beta, fit.vcov, design.term_names)
    i_sq = multilevel_i_squared(fit.sigma2, design.v, design.X, fit.component_names)

    # Step 3: Information criteria on the restricted likelihood
    n_params = p + sum(1 for pinned in fit.pinned if not pinned)
    df_reml = k - p
    aic = -2 * fit.log_likelihood + 2 * n_params
    bic = -2 * fit.log_likelihood + n_params * np.log(df_reml) if df_reml > 0 else np.nan
    aicc = aic + 2 * n_params * (n_params + 1) / (df_reml - n_params - 1) if df_reml - n_params - 1 > 0 else np.nan

    fitted = design.X @ beta

    return MultilevelResults(
        beta=beta,
        beta_se=beta_se,
        beta_z=beta_z,
        beta_pvalue=np.asarray(beta_pvalue),
        beta_ci=beta_ci,
        vcov=fit.vcov,
        term_names=design.term_names,
        sigma2=fit.sigma2,
        level_names=fit.component_names,
        pinned=fit.pinned,
        q_statistic=q_test["Q"],
        q_df=q_test["df"],
        q_pvalue=q_test["p_value"],
        qm_statistic=qm_test["QM"],
        qm_df=qm_test["df"],
        qm_pvalue=qm_test["p_value"],
        i_squared=i_sq["I_squared"],
        i_squared_levels=i_sq["I_squared_levels"],
        log_likelihood=fit.log_likelihood,
        aic=float(aic),
        bic=float(bic),
        aicc=float(aicc),
        n_iter=fit.n_iter,
        converged=fit.converged,
        study_effects=design.y,
        study_variances=design.v,
        study_weights=fit.weights,
        fitted_values=fitted,
        residuals=design.y - fitted,
        row_index=design.row_index,
        ci_level=ci_level,
        method="REML",
        warnings=fit.warnings,
    )


@dataclass(frozen=True)
class MultilevelModel:
    """
    Multilevel meta-analytic model fitted by REML.

    The model object only carries control parameters; each call to ``fit``
    is independent and returns a new result.

    Attributes:
        options: Estimator control parameters
    """

    options: FitOptions = field(default_factory=FitOptions)

    def fit(self, design: DesignMatrix) -> MultilevelResults:
        """
        Fit the model to a prepared design.

        Args:
            design: Output of ``build_design``

        Returns:
            MultilevelResults
        """
        vc_fit = fit_variance_components(
            design.y,
            design.X,
            design.v,
            design.components(),
            self.options,
        )
        return summarize_fit(design, vc_fit, self.options.ci_level)


def fit_multilevel(
    table: pd.DataFrame,
    grouping: Sequence[str] = (),
    moderators: Sequence[Union[str, Moderator]] = (),
    options: Optional[FitOptions] = None,
    yi_col: str = "yi",
    vi_col: str = "vi",
    intercept: bool = True,
    strict: bool = True,
) -> MultilevelResults:
    """
    Fit a multilevel random-effects meta-analysis to an effect-size table.

    Args:
        table: Table with effect sizes, variances, grouping and moderator columns
        grouping: Grouping columns, outermost first (empty for a
            fixed-effect model)
        moderators: Moderator columns or Moderator specs
        options: Estimator control parameters
        yi_col: Column with effect sizes
        vi_col: Column with sampling variances
        intercept: Include an intercept
        strict: Require at least two outermost groups

    Returns:
        MultilevelResults
    """
    design = build_design(
        table,
        grouping=grouping,
        moderators=moderators,
        yi_col=yi_col,
        vi_col=vi_col,
        intercept=intercept,
        strict=strict,
    )
    return MultilevelModel(options or FitOptions()).fit(design)
