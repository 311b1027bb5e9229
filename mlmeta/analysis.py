"""
End-to-end analysis pipeline for mlmeta.

Runs one complete multilevel meta-analysis from an ``AnalysisConfig``:
effect sizes, the pooled model, one meta-regression per moderator,
subgroup refits, publication-bias diagnostics and the presentation records.
"""

from __future__ import annotations
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
import logging

import pandas as pd

from mlmeta.core.config import AnalysisConfig
from mlmeta.core.errors import InvalidInputError
from mlmeta.core.records import EffectMeasure
from mlmeta.diagnostics.publication_bias import (
    EggerTestResult,
    RankTestResult,
    egger_test,
    rank_correlation_test,
)
from mlmeta.effects.effect_sizes import compute_effect_sizes, fisher_z_to_r
from mlmeta.models.base import MultilevelResults
from mlmeta.models.design import Moderator
from mlmeta.models.multilevel import fit_multilevel
from mlmeta.models.subgroups import SubgroupResult, subgroup_analysis
from mlmeta.visualization.forest import ForestPlotData, forest_data
from mlmeta.visualization.funnel import FunnelPlotData, funnel_data
from mlmeta.utils import format_estimate, format_p_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisReport:
    """
    Results of a complete analysis.

    Attributes:
        config: Configuration the analysis ran with
        effect_sizes: Input table with ``yi`` and ``vi`` columns
        overall: Intercept-only multilevel model
        moderators: One meta-regression per configured moderator
        subgroups: Independent fits per category of ``subgroup_by``
        egger: Egger-type regression test
        rank_test: Kendall rank-correlation test
        forest: Forest plot records
        funnel: Funnel plot points
    """

    config: AnalysisConfig
    effect_sizes: pd.DataFrame
    overall: MultilevelResults
    moderators: Dict[str, MultilevelResults] = field(default_factory=dict)
    subgroups: Dict[Any, SubgroupResult] = field(default_factory=dict)
    egger: Optional[EggerTestResult] = None
    rank_test: Optional[RankTestResult] = None
    forest: Optional[ForestPlotData] = None
    funnel: Optional[FunnelPlotData] = None

    @property
    def warnings(self) -> List[str]:
        """All numerical warnings raised by the fits, without repeats."""
        messages: List[str] = []
        fits = [self.overall, *self.moderators.values(), *(s.result for s in self.subgroups.values())]
        for fit in fits:
            for message in fit.warnings:
                if message not in messages:
                    messages.append(message)
        for test in (self.egger, self.rank_test):
            if test is not None:
                messages.extend(m for m in test.warnings if m not in messages)
        return messages

    def summary_table(self) -> str:
        """Generate summary table as string."""
        back_transform = self.config.measure == EffectMeasure.FISHER_Z.value
        lines = [self.overall.summary_table()]
        if back_transform:
            lines.append(
                "Back-transformed pooled correlation: "
                + format_estimate(self.overall.estimate, ci=self.overall.estimate_ci, decimals=4, back_transform=True)
            )

        for name, fit in self.moderators.items():
            lines.extend(["", f"Moderator: {name}", fit.summary_table()])

        if self.subgroups:
            lines.append("")
        for label, sub in self.subgroups.items():
            est = sub.result
            lines.append(
                f"Subgroup {self.config.subgroup_by}={label}: k = {sub.n_studies}, estimate = "
                + format_estimate(est.estimate, ci=est.estimate_ci, decimals=4, back_transform=back_transform)
            )

        if self.rank_test is not None:
            note = "" if self.rank_test.reliable else " (clustered data; interpret with caution)"
            lines.append(
                f"Rank correlation test: tau = {self.rank_test.tau:.4f}, "
                f"{format_p_value(self.rank_test.p_value)}{note}"
            )
        if self.egger is not None:
            egger = self.egger
            coef = egger.intercept if egger.form == "mixed" else egger.slope
            lines.append(
                f"Egger test ({egger.form}, {egger.se_type} SE): "
                f"{egger.tested_coefficient} = {coef:.4f}, "
                f"{egger.distribution} = {egger.statistic:.4f}, {format_p_value(egger.p_value)}"
            )
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "config": self.config.to_dict(),
            "overall": self.overall.to_dict(),
            "moderators": {name: fit.to_dict() for name, fit in self.moderators.items()},
            "subgroups": {str(label): sub.to_dict() for label, sub in self.subgroups.items()},
            "egger": self.egger.to_dict() if self.egger else None,
            "rank_test": self.rank_test.to_dict() if self.rank_test else None,
            "forest": self.forest.to_dict() if self.forest else None,
            "funnel": self.funnel.to_dict() if self.funnel else None,
            "warnings": self.warnings,
        }


def run_analysis(
    table: pd.DataFrame,
    config: Optional[AnalysisConfig] = None,
    executor: Optional[Executor] = None,
    bias_tests: bool = True,
) -> AnalysisReport:
    """
    Run a complete multilevel meta-analysis.

    Args:
        table: Study table with raw statistics, or an effect-size table that
            already has ``yi`` and ``vi`` columns
        config: Analysis configuration
        executor: Optional executor for the subgroup fits
        bias_tests: Run the Egger and rank-correlation tests

    Returns:
        AnalysisReport
    """
    config = config or AnalysisConfig()
    options = config.fit_options()
    grouping = config.grouping_levels

    # Step 1: Effect sizes
    if {"yi", "vi"}.issubset(table.columns):
        effect_sizes = table.copy()
    else:
        effect_sizes = compute_effect_sizes(table, config.measure)
    logger.debug("Analysis on %d effect sizes, grouping=%s", len(effect_sizes), grouping)

    # Step 2: Pooled model and one meta-regression per moderator
    overall = fit_multilevel(effect_sizes, grouping=grouping, options=options)
    moderators = {}
    for spec in config.moderators:
        name = Moderator.coerce(spec).name
        moderators[name] = fit_multilevel(
            effect_sizes, grouping=grouping, moderators=[spec], options=options
        )

    # Step 3: Subgroups
    subgroups: Dict[Any, SubgroupResult] = {}
    if config.subgroup_by is not None:
        subgroups = subgroup_analysis(
            effect_sizes,
            by=config.subgroup_by,
            grouping=grouping,
            options=options,
            executor=executor,
            strict=False,
        )

    # Step 4: Publication bias
    egger = rank = None
    if bias_tests:
        egger = egger_test(
            effect_sizes,
            grouping=grouping,
            measure=config.measure,
            se=config.egger_se,
            form=config.egger_form,
            options=options,
        )
        rank = rank_correlation_test(effect_sizes, grouping=grouping)

    # Step 5: Presentation records
    labels = None
    if config.label_column is not None:
        if config.label_column not in effect_sizes.columns:
            raise InvalidInputError(f"Column '{config.label_column}' not found in table")
        labels = effect_sizes[config.label_column].astype(str).tolist()
    transform = fisher_z_to_r if config.measure == EffectMeasure.FISHER_Z.value else None

    return AnalysisReport(
        config=config,
        effect_sizes=effect_sizes,
        overall=overall,
        moderators=moderators,
        subgroups=subgroups,
        egger=egger,
        rank_test=rank,
        forest=forest_data(overall, labels=labels, subgroups=subgroups or None, transform=transform),
        funnel=funnel_data(overall, labels=labels),
    )
