"""
Study and effect-size records for mlmeta.

This module defines how a single row of raw input and its derived
effect size are represented. The table-oriented functions in
``mlmeta.effects`` work on ``pandas.DataFrame`` objects; these records are
the row-level equivalents used when studies are assembled one at a time.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, Tuple, Union
import math

from mlmeta.core.errors import InvalidInputError


class EffectMeasure(Enum):
    """Effect-size measures supported by the calculator."""

    STANDARDIZED_MEAN_DIFFERENCE = "SMD"
    FISHER_Z = "ZCOR"

    @classmethod
    def from_string(cls, s: Union[str, EffectMeasure]) -> EffectMeasure:
        """Convert string to EffectMeasure enum."""
        if isinstance(s, EffectMeasure):
            return s
        s_upper = s.upper().strip()
        aliases = {
            "HEDGES G": "SMD",
            "HEDGES' G": "SMD",
            "STANDARDIZED MEAN DIFFERENCE": "SMD",
            "FISHER Z": "ZCOR",
            "FISHER'S Z": "ZCOR",
            "Z": "ZCOR",
        }
        s_upper = aliases.get(s_upper, s_upper)

        for member in cls:
            if member.value == s_upper or member.name == s_upper:
                return member
        raise ValueError(f"Unknown effect measure: {s}")


@dataclass
class StudyRecord:
    """
    One row of raw study input.

    Either the two-group fields (``n1``, ``mean1``, ``sd1``, ``n2``,
    ``mean2``, ``sd2``) or the correlational fields (``r``, ``n``) are
    filled, depending on the effect measure.

    Attributes:
        es_id: Unique effect-size identifier
        clusters: Cluster identifiers, outermost first (e.g. lab, study)
        moderators: Moderator covariates by name
        label: Display label for the presentation layer
        author: Author string (metadata)
        year: Publication year (metadata)
        publication_type: Publication type (metadata)
    """

    es_id: Any
    n1: Optional[float] = None
    mean1: Optional[float] = None
    sd1: Optional[float] = None
    n2: Optional[float] = None
    mean2: Optional[float] = None
    sd2: Optional[float] = None
    r: Optional[float] = None
    n: Optional[float] = None
    clusters: Dict[str, Any] = field(default_factory=dict)
    moderators: Dict[str, Any] = field(default_factory=dict)
    label: Optional[str] = None
    author: Optional[str] = None
    year: Optional[int] = None
    publication_type: Optional[str] = None

    def __post_init__(self):
        """Check the statistics that are filled in."""
        for name in ("n1", "n2", "n"):
            value = getattr(self, name)
            if value is not None and not value > 0:
                raise InvalidInputError(f"Study {self.es_id!r}: {name} must be > 0, got {value}")
        for name in ("sd1", "sd2"):
            value = getattr(self, name)
            if value is not None and not value >= 0:
                raise InvalidInputError(f"Study {self.es_id!r}: {name} must be >= 0, got {value}")
        if self.r is not None and not -1 <= self.r <= 1:
            raise InvalidInputError(f"Study {self.es_id!r}: r must lie in [-1, 1], got {self.r}")

    @property
    def display_label(self) -> str:
        """Label used by forest plots ("Author, Year" when available)."""
        if self.label:
            return self.label
        if self.author and self.year:
            return f"{self.author}, {self.year}"
        return str(self.es_id)

    def to_effect_size(self, measure: Union[str, EffectMeasure]) -> EffectSizeRecord:
        """
        Compute the effect size for this study.

        Args:
            measure: 'SMD' or 'ZCOR'

        Returns:
            EffectSizeRecord
        """
        from mlmeta.effects.effect_sizes import fisher_z, standardized_mean_difference

        measure = EffectMeasure.from_string(measure)
        if measure is EffectMeasure.STANDARDIZED_MEAN_DIFFERENCE:
            yi, vi = standardized_mean_difference(
                self.mean1, self.sd1, self.n1,
                self.mean2, self.sd2, self.n2,
            )
        else:
            yi, vi = fisher_z(self.r, self.n)

        return EffectSizeRecord(
            es_id=self.es_id,
            yi=float(yi),
            vi=float(vi),
            measure=measure,
            label=self.display_label,
        )

    def to_row(self) -> Dict[str, Any]:
        """Flatten into a table row (clusters and moderators become columns)."""
        row = {
            "es_id": self.es_id,
            "n1": self.n1, "mean1": self.mean1, "sd1": self.sd1,
            "n2": self.n2, "mean2": self.mean2, "sd2": self.sd2,
            "r": self.r, "n": self.n,
            "label": self.display_label,
            "author": self.author,
            "year": self.year,
            "publication_type": self.publication_type,
        }
        row.update(self.clusters)
        row.update(self.moderators)
        return row


@dataclass(frozen=True)
class EffectSizeRecord:
    """
    Effect size derived from a StudyRecord.

    Attributes:
        es_id: Identifier carried over from the study
        yi: Point estimate
        vi: Sampling variance (always > 0)
        measure: Effect measure used
        label: Display label
    """

    es_id: Any
    yi: float
    vi: float
    measure: EffectMeasure
    label: Optional[str] = None

    @property
    def sei(self) -> float:
        """Standard error of the estimate."""
        return math.sqrt(self.vi)

    def ci(self, level: float = 0.95) -> Tuple[float, float]:
        """Normal-theory confidence interval for the study estimate."""
        from mlmeta.utils import ci_from_se
        return ci_from_se(self.yi, self.sei, level)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "es_id": self.es_id,
            "yi": self.yi,
            "vi": self.vi,
            "measure": self.measure.value,
            "label": self.label,
        }
