"""
Subgroup analysis for mlmeta.

Each subgroup is an independent fit on a row subset of the effect-size
table; fits share nothing but the (read-only) input table, so they can be
evaluated in any ``concurrent.futures`` executor.
"""

from __future__ import annotations
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Optional, Dict, Any, Sequence, Union
import logging

import numpy as np
import pandas as pd

from mlmeta.core.config import FitOptions
from mlmeta.core.errors import InvalidInputError
from mlmeta.models.base import MultilevelResults
from mlmeta.models.design import Moderator, ordered_levels
from mlmeta.models.multilevel import fit_multilevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubgroupResult:
    """
    Fit restricted to one subset of rows.

    Attributes:
        label: Subgroup label (category value or caller-supplied name)
        mask: Boolean row mask over the source table
        result: Independent fit on the subset
    """

    label: Any
    mask: np.ndarray
    result: MultilevelResults

    @property
    def n_studies(self) -> int:
        return int(np.sum(self.mask))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "label": self.label,
            "n_studies": self.n_studies,
            "result": self.result.to_dict(),
        }


def fit_subset(
    table: pd.DataFrame,
    mask: Union[np.ndarray, pd.Series, Sequence[bool]],
    grouping: Sequence[str] = (),
    moderators: Sequence[Union[str, Moderator]] = (),
    options: Optional[FitOptions] = None,
    label: Any = None,
    strict: bool = True,
    **kwargs,
) -> SubgroupResult:
    """
    Fit the model on the rows selected by a boolean mask.

    Args:
        table: Effect-size table
        mask: Boolean row selector, same length as ``table``
        grouping: Grouping columns, outermost first
        moderators: Moderators for the subset model
        options: Estimator control parameters (e.g. a tighter tolerance for
            a difficult subset)
        label: Name recorded on the result
        strict: Require at least two outermost groups in the subset
        **kwargs: Passed to ``fit_multilevel`` (yi_col, vi_col, intercept)

    Returns:
        SubgroupResult
    """
    mask = np.asarray(mask, dtype=bool)
    if mask.shape != (len(table),):
        raise InvalidInputError(
            f"Row mask has shape {mask.shape}, expected ({len(table)},)"
        )
    if not mask.any():
        raise InvalidInputError(f"Subgroup {label!r} selects no rows")

    subset = table.loc[mask]
    result = fit_multilevel(
        subset,
        grouping=grouping,
        moderators=moderators,
        options=options,
        strict=strict,
        **kwargs,
    )
    return SubgroupResult(label=label, mask=mask, result=result)


def subgroup_analysis(
    table: pd.DataFrame,
    by: str,
    grouping: Sequence[str] = (),
    options: Optional[FitOptions] = None,
    levels: Optional[Sequence[Any]] = None,
    subgroup_options: Optional[Dict[Any, FitOptions]] = None,
    executor: Optional[Executor] = None,
    strict: bool = True,
    **kwargs,
) -> Dict[Any, SubgroupResult]:
    """
    Fit one model per category of a column.

    Args:
        table: Effect-size table
        by: Categorical column defining the subgroups
        grouping: Grouping columns, outermost first
        options: Estimator control parameters shared by all subgroups
        levels: Categories to fit, in order (default: observed categories in
            declared or sorted order)
        subgroup_options: Per-category overrides of ``options``
        executor: Optional executor to fit subgroups concurrently
        strict: Require at least two outermost groups in each subgroup
        **kwargs: Passed to ``fit_multilevel``

    Returns:
        Ordered mapping from category to SubgroupResult
    """
    if by not in table.columns:
        raise InvalidInputError(f"Column '{by}' not found in table")
    if table[by].isna().any():
        raise InvalidInputError(f"Column '{by}' has missing values; rows are never dropped silently")

    if levels is None:
        levels = ordered_levels(table[by])
    subgroup_options = subgroup_options or {}

    def run(level: Any) -> SubgroupResult:
        logger.debug("Fitting subgroup %s=%r", by, level)
        return fit_subset(
            table,
            (table[by] == level).to_numpy(),
            grouping=grouping,
            options=subgroup_options.get(level, options),
            label=level,
            strict=strict,
            **kwargs,
        )

    if executor is None:
        results = [run(level) for level in levels]
    else:
        results = list(executor.map(run, levels))

    return {level: result for level, result in zip(levels, results)}
