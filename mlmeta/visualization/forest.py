"""
Forest plot data for mlmeta.

Builds the ordered per-study rows and subgroup summary rows a forest plot
renderer draws. Drawing itself is left to the caller; every record here is
plain numbers and labels.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple, Callable, Mapping, Sequence
import numpy as np

from mlmeta.core.errors import InvalidInputError
from mlmeta.models.base import MultilevelResults
from mlmeta.utils import z_score

VALID_ORDERS = {"obs", "input"}


@dataclass(frozen=True)
class ForestRecord:
    """
    One study row of a forest plot.

    Attributes:
        label: Display label
        point_estimate: Observed effect size (display scale)
        variance: Sampling variance (analysis scale)
        weight: Weight in percent of the total
        ci_lower: Lower confidence bound (display scale)
        ci_upper: Upper confidence bound (display scale)
        subgroup: Subgroup the row belongs to, if any
    """

    label: str
    point_estimate: float
    variance: float
    weight: float
    ci_lower: float
    ci_upper: float
    subgroup: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "label": self.label,
            "point_estimate": self.point_estimate,
            "variance": self.variance,
            "weight": self.weight,
            "ci_lower": self.ci_lower,
            "ci_upper": self.ci_upper,
            "subgroup": self.subgroup,
        }


@dataclass(frozen=True)
class SubgroupSummary:
    """
    Pooled row of a forest plot.

    Attributes:
        group_label: Subgroup label ('Overall' for the full model)
        point_estimate: Pooled estimate (display scale)
        ci_lower: Lower confidence bound
        ci_upper: Upper confidence bound
        row_range: Half-open range (start, stop) of the study rows this
            summary covers
    """

    group_label: Any
    point_estimate: float
    ci_lower: float
    ci_upper: float
    row_range: Tuple[int, int]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "group_label": self.group_label,
            "point_estimate": self.point_estimate,
            "ci_lower": self.ci_lower,
            "ci_upper": self.ci_upper,
            "row_range": list(self.row_range),
        }


@dataclass(frozen=True)
class ForestPlotData:
    """Everything a forest plot renderer needs."""

    records: Tuple[ForestRecord, ...]
    subgroups: Tuple[SubgroupSummary, ...]
    overall: SubgroupSummary
    ci_level: float = 0.95

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "forest_plot",
            "ci_level": self.ci_level,
            "studies": [r.to_dict() for r in self.records],
            "subgroups": [s.to_dict() for s in self.subgroups],
            "overall": self.overall.to_dict(),
        }


def _summary(
    label: Any,
    result: MultilevelResults,
    row_range: Tuple[int, int],
    transform: Callable[[float], float],
) -> SubgroupSummary:
    lower, upper = result.estimate_ci
    return SubgroupSummary(
        group_label=label,
        point_estimate=float(transform(result.estimate)),
        ci_lower=float(transform(lower)),
        ci_upper=float(transform(upper)),
        row_range=row_range,
    )


def forest_data(
    result: MultilevelResults,
    labels: Optional[Sequence[str]] = None,
    subgroups: Optional[Mapping[Any, Any]] = None,
    order: str = "obs",
    transform: Optional[Callable[[float], float]] = None,
) -> ForestPlotData:
    """
    Build forest plot records from a fitted model.

    Args:
        result: Fit of the full data set (intercept-only model for a
            pooled summary row)
        labels: Display label per fitted row (default: the row index)
        subgroups: Ordered mapping of label -> SubgroupResult, as returned
            by ``subgroup_analysis``; their row masks must partition the
            fitted rows
        order: 'obs' sorts rows by observed effect within each subgroup,
            'input' keeps the input order
        transform: Display transform for estimates and bounds (e.g.
            ``fisher_z_to_r`` for Fisher z)

    Returns:
        ForestPlotData
    """
    if order not in VALID_ORDERS:
        raise ValueError(f"order must be one of {VALID_ORDERS}")
    transform = transform or (lambda x: x)

    k = result.n_studies
    if labels is None:
        labels = [str(i) for i in result.row_index] or [str(i + 1) for i in range(k)]
    labels = list(labels)
    if len(labels) != k:
        raise InvalidInputError(f"Got {len(labels)} labels for {k} effect sizes")

    yi = result.study_effects
    vi = result.study_variances
    z = z_score(result.ci_level)
    weights = result.weights_percent

    # Step 1: Assign rows to subgroups
    if subgroups:
        membership = np.full(k, -1)
        for position, sub in enumerate(subgroups.values()):
            mask = np.asarray(sub.mask, dtype=bool)
            if mask.shape != (k,):
                raise InvalidInputError("Subgroup masks do not match the fitted rows")
            if np.any(membership[mask] >= 0):
                raise InvalidInputError("Subgroup masks overlap")
            membership[mask] = position
        if np.any(membership < 0):
            raise InvalidInputError("Subgroup masks do not cover every fitted row")
        blocks = [np.flatnonzero(membership == i) for i in range(len(subgroups))]
        group_labels = list(subgroups.keys())
    else:
        blocks = [np.arange(k)]
        group_labels = [None]

    # Step 2: Order rows within each block
    records: List[ForestRecord] = []
    summaries: List[SubgroupSummary] = []
    for block, group in zip(blocks, group_labels):
        if order == "obs":
            block = block[np.argsort(yi[block], kind="stable")]
        start = len(records)
        for i in block:
            half = z * np.sqrt(vi[i])
            records.append(ForestRecord(
                label=labels[i],
                point_estimate=float(transform(yi[i])),
                variance=float(vi[i]),
                weight=float(weights[i]),
                ci_lower=float(transform(yi[i] - half)),
                ci_upper=float(transform(yi[i] + half)),
                subgroup=group,
            ))
        if subgroups:
            summaries.append(
                _summary(group, subgroups[group].result, (start, len(records)), transform)
            )

    return ForestPlotData(
        records=tuple(records),
        subgroups=tuple(summaries),
        overall=_summary("Overall", result, (0, len(records)), transform),
        ci_level=result.ci_level,
    )
