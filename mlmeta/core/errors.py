"""
Error taxonomy for mlmeta.

Input and structural problems are raised immediately where they are
detected (effect-size calculator, design-matrix builder). Estimation
failures carry the last iterate so callers can retry with different
control parameters. Non-fatal numerical events are warnings.
"""

from __future__ import annotations
from typing import Optional, Sequence, Tuple


class MetaAnalysisError(Exception):
    """Base class for all mlmeta errors."""


class InvalidInputError(MetaAnalysisError, ValueError):
    """Malformed or degenerate raw statistics (bad N, SD, correlation, variance)."""


class StructuralError(MetaAnalysisError, ValueError):
    """Grouping or moderator specification cannot yield an identifiable model."""


class NonConvergenceError(MetaAnalysisError, RuntimeError):
    """
    The variance-component estimator failed.

    Raised when the iteration cap is exhausted on every start in the retry
    budget, or when the marginal covariance matrix is not positive definite.

    Attributes:
        sigma2: Last variance-component iterate
        log_likelihood: Restricted log-likelihood at the last iterate
        n_iter: Iterations performed on the last attempt
    """

    def __init__(
        self,
        message: str,
        sigma2: Sequence[float] = (),
        log_likelihood: Optional[float] = None,
        n_iter: int = 0,
    ):
        super().__init__(message)
        self.sigma2: Tuple[float, ...] = tuple(float(s) for s in sigma2)
        self.log_likelihood = log_likelihood
        self.n_iter = n_iter

    def __str__(self) -> str:
        base = super().__str__()
        return (
            f"{base} (n_iter={self.n_iter}, sigma2={list(self.sigma2)}, "
            f"log_likelihood={self.log_likelihood})"
        )


class NumericalWarning(RuntimeWarning):
    """Non-fatal numerical event: boundary clipping or pseudo-inverse fallback."""
