"""
Result container for mlmeta models.

``MultilevelResults`` holds everything the inference layer derives from a
converged variance-component fit: coefficients with Wald inference,
variance components, heterogeneity statistics, information criteria and
per-study quantities for the presentation layer.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple
import numpy as np

from mlmeta.utils import z_score


@dataclass(frozen=True)
class MultilevelResults:
    """
    Container for multilevel meta-analysis results.

    Attributes:
        beta: Fixed-effect coefficients
        beta_se: Standard errors of beta
        beta_z: Wald z statistics
        beta_pvalue: Two-sided p-values
        beta_ci: Confidence intervals, one row per coefficient
        vcov: Covariance matrix of beta
        term_names: Names of the coefficients
        sigma2: Variance components, one per random-effects level
        level_names: Names of the random-effects levels
        pinned: Components held fixed rather than estimated
        q_statistic: Cochran's Q for residual heterogeneity
        q_df: Degrees of freedom of Q
        q_pvalue: p-value of Q
        qm_statistic: Wald omnibus test of moderators (None without moderators)
        qm_df: Degrees of freedom of QM
        qm_pvalue: p-value of QM
        i_squared: Total I² in percent
        i_squared_levels: I² per level in percent
        log_likelihood: Restricted log-likelihood
        aic: Akaike Information Criterion
        bic: Bayesian Information Criterion
        aicc: Corrected AIC
        n_iter: Iterations used by the estimator
        converged: Whether the estimator converged
        study_effects: Observed effect sizes
        study_variances: Sampling variances
        study_weights: GLS weights diag(Σ⁻¹)
        fitted_values: X @ beta
        residuals: Observed minus fitted
        row_index: Index labels of the fitted rows
        ci_level: Confidence level
        method: Estimation method
        warnings: Numerical warnings raised during fitting
    """

    beta: np.ndarray
    beta_se: np.ndarray
    beta_z: np.ndarray
    beta_pvalue: np.ndarray
    beta_ci: np.ndarray
    vcov: np.ndarray
    term_names: Tuple[str, ...]
    sigma2: np.ndarray
    level_names: Tuple[str, ...]
    pinned: Tuple[bool, ...] = ()

    q_statistic: float = 0.0
    q_df: int = 0
    q_pvalue: float = np.nan
    qm_statistic: Optional[float] = None
    qm_df: int = 0
    qm_pvalue: Optional[float] = None
    i_squared: float = 0.0
    i_squared_levels: Dict[str, float] = field(default_factory=dict)

    log_likelihood: float = 0.0
    aic: float = np.nan
    bic: float = np.nan
    aicc: float = np.nan
    n_iter: int = 0
    converged: bool = True

    study_effects: np.ndarray = field(default_factory=lambda: np.array([]))
    study_variances: np.ndarray = field(default_factory=lambda: np.array([]))
    study_weights: np.ndarray = field(default_factory=lambda: np.array([]))
    fitted_values: np.ndarray = field(default_factory=lambda: np.array([]))
    residuals: np.ndarray = field(default_factory=lambda: np.array([]))
    row_index: Tuple[Any, ...] = ()

    ci_level: float = 0.95
    method: str = "REML"
    warnings: Tuple[str, ...] = ()

    @property
    def n_studies(self) -> int:
        """Number of effect sizes."""
        return len(self.study_effects)

    @property
    def estimate(self) -> float:
        """First coefficient (the pooled effect in an intercept-only model)."""
        return float(self.beta[0])

    @property
    def estimate_se(self) -> float:
        return float(self.beta_se[0])

    @property
    def estimate_ci(self) -> Tuple[float, float]:
        return float(self.beta_ci[0, 0]), float(self.beta_ci[0, 1])

    @property
    def tau_squared(self) -> float:
        """Total between-study variance (sum over levels)."""
        return float(np.sum(self.sigma2))

    @property
    def h_squared(self) -> float:
        """H² = Q / df for the residual heterogeneity."""
        from mlmeta.diagnostics.heterogeneity import compute_h_squared
        return compute_h_squared(self.q_statistic, self.q_df)

    @property
    def weights_percent(self) -> np.ndarray:
        """Study weights as a percentage of the total."""
        total = np.sum(self.study_weights)
        return 100 * self.study_weights / total if total > 0 else self.study_weights

    @property
    def prediction_interval(self) -> Tuple[float, float]:
        """Prediction interval for the effect in a new study (first coefficient)."""
        return self.predict(np.eye(1, len(self.beta)))[2][0]

    def coefficient(self, name: str) -> Tuple[float, float, Tuple[float, float]]:
        """
        Get coefficient, SE, and CI for a named term.

        Args:
            name: Term name (e.g. 'intercept', 'female_proportion')

        Returns:
            Tuple of (coefficient, se, (ci_lower, ci_upper))
        """
        if name not in self.term_names:
            raise KeyError(f"Term '{name}' not found")
        idx = self.term_names.index(name)
        return (
            float(self.beta[idx]),
            float(self.beta_se[idx]),
            (float(self.beta_ci[idx, 0]), float(self.beta_ci[idx, 1])),
        )

    def predict(
        self,
        X_new: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray, List[Tuple[float, float]]]:
        """
        Predict effects for new moderator values.

        Args:
            X_new: Design rows (same columns as the fitted design)

        Returns:
            Tuple of (predictions, standard_errors, prediction_intervals)
        """
        X_new = np.atleast_2d(np.asarray(X_new, dtype=float))
        predictions = X_new @ self.beta
        pred_var = np.einsum("ij,jk,ik->i", X_new, self.vcov, X_new)
        se = np.sqrt(pred_var)

        # Prediction interval adds the total between-study variance
        z = z_score(self.ci_level)
        pi_se = np.sqrt(pred_var + self.tau_squared)
        intervals = [
            (float(p - z * s), float(p + z * s)) for p, s in zip(predictions, pi_se)
        ]
        return predictions, se, intervals

    def summary_table(self) -> str:
        """Generate summary table as string."""
        level = int(round(self.ci_level * 100))
        lines = [
            "=" * 60,
            "Multilevel Meta-Analysis Results",
            "=" * 60,
            "",
            f"Estimation: {self.method}  (k = {self.n_studies})",
            f"  Restricted log-likelihood: {self.log_likelihood:.4f}",
            f"  AIC: {self.aic:.4f}  BIC: {self.bic:.4f}  AICc: {self.aicc:.4f}",
            f"  Converged: {self.converged} ({self.n_iter} iterations)",
            "",
            "Variance Components:",
        ]
        for name, s, fixed in zip(self.level_names, self.sigma2, self.pinned or (False,) * len(self.sigma2)):
            suffix = " (fixed)" if fixed else ""
            lines.append(f"  {name}: sigma² = {s:.4f}, sigma = {np.sqrt(s):.4f}{suffix}")
        if len(self.sigma2) == 0:
            lines.append("  none (fixed-effect model)")
        lines.extend([
            "",
            "Heterogeneity:",
            f"  Q({self.q_df}) = {self.q_statistic:.4f}, p = {self.q_pvalue:.4f}",
            f"  I² (total): {self.i_squared:.1f}%",
            f"  H²: {self.h_squared:.4f}",
        ])
        for name, value in self.i_squared_levels.items():
            lines.append(f"  I² ({name}): {value:.1f}%")

        if self.qm_statistic is not None:
            lines.extend([
                "",
                "Test of Moderators:",
                f"  QM({self.qm_df}) = {self.qm_statistic:.4f}, p = {self.qm_pvalue:.4f}",
            ])

        lines.extend(["", f"Model Results ({level}% CI):"])
        for i, name in enumerate(self.term_names):
            lines.append(
                f"  {name}: {self.beta[i]:.4f} (SE: {self.beta_se[i]:.4f}, "
                f"z = {self.beta_z[i]:.4f}, p = {self.beta_pvalue[i]:.4f}) "
                f"[{self.beta_ci[i, 0]:.4f}, {self.beta_ci[i, 1]:.4f}]"
            )

        if self.warnings:
            lines.append("")
            lines.append("Warnings:")
            for w in self.warnings:
                lines.append(f"  - {w}")

        lines.append("=" * 60)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a flat dictionary for serialization."""
        return {
            "term_names": list(self.term_names),
            "beta": self.beta.tolist(),
            "beta_se": self.beta_se.tolist(),
            "beta_z": self.beta_z.tolist(),
            "beta_pvalue": self.beta_pvalue.tolist(),
            "beta_ci": self.beta_ci.tolist(),
            "level_names": list(self.level_names),
            "sigma2": self.sigma2.tolist(),
            "pinned": list(self.pinned),
            "q_statistic": float(self.q_statistic),
            "q_df": int(self.q_df),
            "q_pvalue": float(self.q_pvalue),
            "qm_statistic": self.qm_statistic,
            "qm_df": int(self.qm_df),
            "qm_pvalue": self.qm_pvalue,
            "i_squared": float(self.i_squared),
            "i_squared_levels": dict(self.i_squared_levels),
            "h_squared": self.h_squared,
            "log_likelihood": float(self.log_likelihood),
            "aic": float(self.aic),
            "bic": float(self.bic),
            "aicc": float(self.aicc),
            "n_iter": int(self.n_iter),
            "converged": bool(self.converged),
            "n_studies": self.n_studies,
            "study_weights": self.study_weights.tolist(),
            "ci_level": self.ci_level,
            "method": self.method,
            "warnings": list(self.warnings),
        }
