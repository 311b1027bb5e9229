"""
mlmeta: Multilevel Meta-Analysis

A meta-analysis engine for effect sizes that are nested in clusters
(effect sizes within samples, samples within studies, ...). Effect sizes
from the same cluster are not independent; mlmeta models that dependence
with one random-effects variance component per nesting level and estimates
the components by restricted maximum likelihood.

Key Features:
    - Hedges' g and Fisher's z effect sizes from raw summary statistics
    - Multilevel random-effects models with any number of nested levels
    - Fixed-effect moderators, Wald tests, Q and multilevel I²
    - Independent subgroup refits
    - Egger-type regression and rank-correlation tests for small-study effects
    - Plain data records for forest and funnel plots

Example Usage:
    >>> import pandas as pd
    >>> from mlmeta import compute_effect_sizes, fit_multilevel
    >>>
    >>> studies = pd.read_csv("studies.csv")
    >>> es = compute_effect_sizes(studies, measure="SMD")
    >>> results = fit_multilevel(es, grouping=["lab_id", "es_id"])
    >>> print(results.summary_table())

Version: 1.0.0
License: MIT
"""

import logging

__version__ = "1.0.0"

# Core classes
from mlmeta.core.errors import (
    MetaAnalysisError,
    InvalidInputError,
    StructuralError,
    NonConvergenceError,
    NumericalWarning,
)
from mlmeta.core.records import StudyRecord, EffectSizeRecord, EffectMeasure
from mlmeta.core.config import FitOptions, AnalysisConfig

# Effect sizes
from mlmeta.effects.effect_sizes import (
    hedges_correction,
    standardized_mean_difference,
    fisher_z,
    fisher_z_to_r,
    compute_effect_sizes,
)

# Models
from mlmeta.models.design import Moderator, DesignMatrix, build_design
from mlmeta.models.reml import VarianceComponentFit, fit_variance_components
from mlmeta.models.base import MultilevelResults
from mlmeta.models.multilevel import MultilevelModel, fit_multilevel
from mlmeta.models.subgroups import SubgroupResult, fit_subset, subgroup_analysis

# Diagnostics
from mlmeta.diagnostics.heterogeneity import cochran_q, multilevel_i_squared
from mlmeta.diagnostics.publication_bias import (
    corrected_standard_error,
    egger_test,
    rank_correlation_test,
)

# Presentation data
from mlmeta.visualization.forest import ForestRecord, SubgroupSummary, forest_data
from mlmeta.visualization.funnel import funnel_data

# Main analysis
from mlmeta.analysis import AnalysisReport, run_analysis

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Version info
    "__version__",

    # Errors
    "MetaAnalysisError",
    "InvalidInputError",
    "StructuralError",
    "NonConvergenceError",
    "NumericalWarning",

    # Core classes
    "StudyRecord",
    "EffectSizeRecord",
    "EffectMeasure",
    "FitOptions",
    "AnalysisConfig",

    # Effect sizes
    "hedges_correction",
    "standardized_mean_difference",
    "fisher_z",
    "fisher_z_to_r",
    "compute_effect_sizes",

    # Models
    "Moderator",
    "DesignMatrix",
    "build_design",
    "VarianceComponentFit",
    "fit_variance_components",
    "MultilevelResults",
    "MultilevelModel",
    "fit_multilevel",
    "SubgroupResult",
    "fit_subset",
    "subgroup_analysis",

    # Diagnostics
    "cochran_q",
    "multilevel_i_squared",
    "corrected_standard_error",
    "egger_test",
    "rank_correlation_test",

    # Presentation data
    "ForestRecord",
    "SubgroupSummary",
    "forest_data",
    "funnel_data",

    # Main analysis
    "AnalysisReport",
    "run_analysis",
]
