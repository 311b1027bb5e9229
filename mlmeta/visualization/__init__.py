"""Forest and funnel plot data for mlmeta analyses."""

from mlmeta.visualization.forest import (
    ForestRecord,
    SubgroupSummary,
    ForestPlotData,
    forest_data,
)
from mlmeta.visualization.funnel import FunnelPoint, FunnelPlotData, funnel_data

__all__ = [
    "ForestRecord",
    "SubgroupSummary",
    "ForestPlotData",
    "forest_data",
    "FunnelPoint",
    "FunnelPlotData",
    "funnel_data",
]
