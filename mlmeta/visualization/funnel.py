"""
Funnel plot data for mlmeta.

Points (estimate, standard error) per effect size plus the pooled estimate
and pseudo-confidence limits, for an external renderer.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Dict, Any, Sequence, Tuple
import numpy as np

from mlmeta.core.errors import InvalidInputError
from mlmeta.models.base import MultilevelResults
from mlmeta.utils import z_score


@dataclass(frozen=True)
class FunnelPoint:
    """One effect size on the funnel."""

    label: str
    estimate: float
    se: float

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "estimate": self.estimate, "se": self.se}


@dataclass(frozen=True)
class FunnelPlotData:
    """
    Funnel plot points and reference lines.

    Attributes:
        points: One point per effect size, in input order
        pooled_estimate: Vertical reference line
        ci_level: Level of the pseudo-confidence region
    """

    points: Tuple[FunnelPoint, ...]
    pooled_estimate: float
    ci_level: float = 0.95

    def pseudo_confidence_limits(self, se_max: Optional[float] = None) -> Dict[str, Any]:
        """
        Triangle of the pseudo-confidence region.

        Returns:
            Dictionary with the se grid and lower/upper bounds
        """
        if se_max is None:
            se_max = max((p.se for p in self.points), default=0.0)
        se_grid = np.linspace(0.0, se_max, 50)
        z = z_score(self.ci_level)
        return {
            "se": se_grid.tolist(),
            "lower": (self.pooled_estimate - z * se_grid).tolist(),
            "upper": (self.pooled_estimate + z * se_grid).tolist(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "funnel_plot",
            "pooled_estimate": self.pooled_estimate,
            "ci_level": self.ci_level,
            "studies": [p.to_dict() for p in self.points],
        }


def funnel_data(
    result: MultilevelResults,
    labels: Optional[Sequence[str]] = None,
    se: Optional[Sequence[float]] = None,
) -> FunnelPlotData:
    """
    Build funnel plot points from a fitted model.

    Args:
        result: Fitted model
        labels: Display label per fitted row (default: the row index)
        se: Standard errors to plot (default: sqrt(vi)); pass corrected
            standard errors to match the Egger test

    Returns:
        FunnelPlotData
    """
    k = result.n_studies
    if labels is None:
        labels = [str(i) for i in result.row_index] or [str(i + 1) for i in range(k)]
    labels = list(labels)
    se = np.sqrt(result.study_variances) if se is None else np.asarray(se, dtype=float)
    if len(labels) != k or se.shape != (k,):
        raise InvalidInputError("Labels and standard errors must match the fitted rows")

    points = tuple(
        FunnelPoint(label=labels[i], estimate=float(result.study_effects[i]), se=float(se[i]))
        for i in range(k)
    )
    return FunnelPlotData(points=points, pooled_estimate=result.estimate, ci_level=result.ci_level)
