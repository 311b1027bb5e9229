"""Diagnostic tools for mlmeta analyses."""

from mlmeta.diagnostics.heterogeneity import (
    cochran_q,
    typical_sampling_variance,
    multilevel_i_squared,
    compute_h_squared,
    moderator_test,
)
from mlmeta.diagnostics.publication_bias import (
    EggerTestResult,
    RankTestResult,
    raw_standard_error,
    corrected_standard_error,
    egger_test,
    rank_correlation_test,
)

__all__ = [
    "cochran_q",
    "typical_sampling_variance",
    "multilevel_i_squared",
    "compute_h_squared",
    "moderator_test",
    "EggerTestResult",
    "RankTestResult",
    "raw_standard_error",
    "corrected_standard_error",
    "egger_test",
    "rank_correlation_test",
]
