"""
Statistical models for mlmeta.

This module provides the design builder, the REML variance-component
estimator and the multilevel model built on them.
"""

from mlmeta.models.design import (
    Moderator,
    RandomLevel,
    DesignMatrix,
    build_design,
    ordered_levels,
)
from mlmeta.models.reml import (
    VarianceComponentFit,
    fit_variance_components,
    heuristic_start,
)
from mlmeta.models.base import MultilevelResults
from mlmeta.models.multilevel import (
    MultilevelModel,
    fit_multilevel,
    summarize_fit,
)
from mlmeta.models.subgroups import (
    SubgroupResult,
    fit_subset,
    subgroup_analysis,
)

__all__ = [
    # Design
    "Moderator",
    "RandomLevel",
    "DesignMatrix",
    "build_design",
    "ordered_levels",
    # Estimator
    "VarianceComponentFit",
    "fit_variance_components",
    "heuristic_start",
    # Results
    "MultilevelResults",
    # Models
    "MultilevelModel",
    "fit_multilevel",
    "summarize_fit",
    # Subgroups
    "SubgroupResult",
    "fit_subset",
    "subgroup_analysis",
]
