"""Effect-size calculation for mlmeta."""

from mlmeta.effects.effect_sizes import (
    hedges_correction,
    cohens_d,
    standardized_mean_difference,
    fisher_z,
    fisher_z_to_r,
    compute_effect_sizes,
)

__all__ = [
    "hedges_correction",
    "cohens_d",
    "standardized_mean_difference",
    "fisher_z",
    "fisher_z_to_r",
    "compute_effect_sizes",
]
