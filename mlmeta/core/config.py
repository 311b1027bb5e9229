"""
Configuration objects for mlmeta.

``FitOptions`` holds the control parameters of the REML estimator and is
passed to every fit call. ``AnalysisConfig`` describes a whole analysis
(measure, grouping levels, moderators, bias-test variant) and produces the
``FitOptions`` used by each stage.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, List, Tuple

from mlmeta.core.records import EffectMeasure


@dataclass(frozen=True)
class FitOptions:
    """
    Control parameters for the variance-component estimator.

    Attributes:
        tol: Relative convergence tolerance for the variance components and
            the restricted log-likelihood
        max_iter: Maximum Fisher-scoring iterations per start
        start: Initial variance components (one per level); heuristic if None
        fixed: Per-level pinned values; None entries are estimated
        ci_level: Confidence level for intervals
        max_step_halvings: Step halvings tried when an update lowers the
            restricted log-likelihood
        max_restarts: Alternative starts tried after the iteration cap is hit
    """

    tol: float = 1e-8
    max_iter: int = 1000
    start: Optional[Tuple[float, ...]] = None
    fixed: Optional[Tuple[Optional[float], ...]] = None
    ci_level: float = 0.95
    max_step_halvings: int = 20
    max_restarts: int = 1

    def __post_init__(self):
        """Validate inputs."""
        if not self.tol > 0:
            raise ValueError(f"tol must be positive, got {self.tol}")
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {self.max_iter}")
        if not 0 < self.ci_level < 1:
            raise ValueError(f"ci_level must be in (0, 1), got {self.ci_level}")
        if self.max_step_halvings < 0:
            raise ValueError("max_step_halvings must be non-negative")
        if self.max_restarts < 0:
            raise ValueError("max_restarts must be non-negative")
        if self.start is not None:
            start = tuple(float(s) for s in self.start)
            if any(s < 0 for s in start):
                raise ValueError("start values must be non-negative")
            object.__setattr__(self, "start", start)
        if self.fixed is not None:
            fixed = tuple(None if f is None else float(f) for f in self.fixed)
            if any(f is not None and f < 0 for f in fixed):
                raise ValueError("fixed variance components must be non-negative")
            object.__setattr__(self, "fixed", fixed)

    def with_changes(self, **changes) -> FitOptions:
        """Return a copy with some fields replaced (e.g. a tighter tol)."""
        return replace(self, **changes)


VALID_METHODS = {"REML"}
VALID_EGGER_SE = {"corrected", "raw"}
VALID_EGGER_FORMS = {"mixed", "weighted"}

_CAMEL_CASE_KEYS = {
    "groupingLevels": "grouping_levels",
    "maxIterations": "max_iterations",
    "ciLevel": "ci_level",
    "eggerSe": "egger_se",
    "eggerForm": "egger_form",
    "subgroupBy": "subgroup_by",
    "labelColumn": "label_column",
}


@dataclass
class AnalysisConfig:
    """
    Configuration for a complete multilevel meta-analysis.

    Attributes:
        measure: Effect-size measure ('SMD' or 'ZCOR')
        grouping_levels: Grouping columns, outermost first (e.g. ['lab_id', 'es_id'])
        moderators: Moderator column names or ``Moderator`` specs
        method: Estimation method; only 'REML' is available
        tolerance: Relative convergence tolerance
        max_iterations: Iteration cap per start
        ci_level: Confidence level
        egger_se: Standard error used by the Egger test ('corrected' or 'raw')
        egger_form: 'mixed' (lmer-style random-intercept model) or
            'weighted' (weighted meta-regression on the SE)
        subgroup_by: Categorical column for subgroup refits (optional)
        label_column: Column holding per-study display labels (optional)
    """

    measure: str = "SMD"
    grouping_levels: List[str] = field(default_factory=list)
    moderators: List[Any] = field(default_factory=list)
    method: str = "REML"
    tolerance: float = 1e-8
    max_iterations: int = 1000
    ci_level: float = 0.95
    egger_se: str = "corrected"
    egger_form: str = "mixed"
    subgroup_by: Optional[str] = None
    label_column: Optional[str] = None

    def __post_init__(self):
        """Validate inputs."""
        self.measure = EffectMeasure.from_string(self.measure).value
        self.method = self.method.upper()
        if self.method not in VALID_METHODS:
            raise ValueError(f"method must be one of {VALID_METHODS}")
        if self.egger_se not in VALID_EGGER_SE:
            raise ValueError(f"egger_se must be one of {VALID_EGGER_SE}")
        if self.egger_form not in VALID_EGGER_FORMS:
            raise ValueError(f"egger_form must be one of {VALID_EGGER_FORMS}")
        if isinstance(self.grouping_levels, str):
            self.grouping_levels = [self.grouping_levels]
        self.grouping_levels = list(self.grouping_levels)
        if len(set(self.grouping_levels)) != len(self.grouping_levels):
            raise ValueError("grouping_levels must not repeat a column")
        if isinstance(self.moderators, str):
            self.moderators = [self.moderators]
        self.moderators = list(self.moderators)
        # Validated here so bad values fail at construction time
        self.fit_options()

    def fit_options(self, **overrides) -> FitOptions:
        """Build the FitOptions shared by every fit in this analysis."""
        options = FitOptions(
            tol=self.tolerance,
            max_iter=self.max_iterations,
            ci_level=self.ci_level,
        )
        if overrides:
            options = options.with_changes(**overrides)
        return options

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AnalysisConfig:
        """
        Create from a dictionary.

        Accepts both snake_case keys and the camelCase keys of the external
        interface (``groupingLevels``, ``maxIterations``, ...).
        """
        kwargs = {}
        for key, value in data.items():
            key = _CAMEL_CASE_KEYS.get(key, key)
            if key not in cls.__dataclass_fields__:
                raise ValueError(f"Unknown configuration key: {key}")
            kwargs[key] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "measure": self.measure,
            "grouping_levels": list(self.grouping_levels),
            "moderators": [getattr(m, "name", m) for m in self.moderators],
            "method": self.method,
            "tolerance": self.tolerance,
            "max_iterations": self.max_iterations,
            "ci_level": self.ci_level,
            "egger_se": self.egger_se,
            "egger_form": self.egger_form,
            "subgroup_by": self.subgroup_by,
            "label_column": self.label_column,
        }
