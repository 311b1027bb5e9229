"""Core data structures for mlmeta."""

from mlmeta.core.errors import (
    MetaAnalysisError,
    InvalidInputError,
    StructuralError,
    NonConvergenceError,
    NumericalWarning,
)
from mlmeta.core.records import StudyRecord, EffectSizeRecord, EffectMeasure
from mlmeta.core.config import FitOptions, AnalysisConfig

__all__ = [
    "MetaAnalysisError",
    "InvalidInputError",
    "StructuralError",
    "NonConvergenceError",
    "NumericalWarning",
    "StudyRecord",
    "EffectSizeRecord",
    "EffectMeasure",
    "FitOptions",
    "AnalysisConfig",
]
