"""
Design Matrix Builder for mlmeta.

Turns an effect-size table into the pieces the estimator works on: the
fixed-effect design matrix X, the response y, the sampling variances
V = diag(vi), and the row-to-group mapping at every nesting level of the
random-effects structure.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Any, List, Sequence, Tuple, Union
import numpy as np
import pandas as pd

from mlmeta.core.errors import InvalidInputError, StructuralError


@dataclass(frozen=True)
class Moderator:
    """
    Specification of one moderator term.

    Attributes:
        name: Column name in the effect-size table
        kind: 'auto' (infer from dtype), 'categorical' or 'continuous'
        center: Center a continuous moderator at its mean
        reference: Reference level of a categorical moderator
            (default: first level)
    """

    name: str
    kind: str = "auto"
    center: bool = False
    reference: Optional[Any] = None

    def __post_init__(self):
        valid_kinds = {"auto", "categorical", "continuous"}
        if self.kind not in valid_kinds:
            raise ValueError(f"kind must be one of {valid_kinds}")

    @classmethod
    def coerce(cls, spec: Union[str, Moderator]) -> Moderator:
        """Accept a bare column name or a Moderator."""
        if isinstance(spec, Moderator):
            return spec
        if isinstance(spec, str):
            return cls(name=spec)
        raise TypeError(f"Moderator must be a column name or Moderator, got {type(spec).__name__}")

    def is_categorical(self, series: pd.Series) -> bool:
        if self.kind != "auto":
            return self.kind == "categorical"
        return not pd.api.types.is_numeric_dtype(series) or pd.api.types.is_bool_dtype(series)


@dataclass(frozen=True)
class RandomLevel:
    """
    One nesting level of the random-effects structure.

    Attributes:
        name: Grouping column name
        codes: Integer group index per row (0 .. n_groups - 1)
        labels: Group label for each code
    """

    name: str
    codes: np.ndarray
    labels: Tuple[Any, ...]

    @property
    def n_groups(self) -> int:
        return len(self.labels)

    def indicator(self) -> np.ndarray:
        """Block-indicator matrix Z (rows x groups)."""
        z = np.zeros((len(self.codes), self.n_groups))
        z[np.arange(len(self.codes)), self.codes] = 1.0
        return z

    def gram(self) -> np.ndarray:
        """Z Zᵀ: 1 where two rows share a group, 0 otherwise."""
        return (self.codes[:, None] == self.codes[None, :]).astype(float)

    @classmethod
    def from_values(cls, name: str, values: Sequence[Any]) -> RandomLevel:
        """Build a level from raw group identifiers (order of first appearance)."""
        codes, uniques = pd.factorize(pd.Series(list(values)), sort=False)
        return cls(name=name, codes=np.asarray(codes, dtype=int), labels=tuple(uniques))


@dataclass(frozen=True)
class DesignMatrix:
    """
    Model structure for one fit.

    Attributes:
        X: Fixed-effect design matrix (k x p)
        y: Effect sizes (k,)
        v: Sampling variances (k,)
        term_names: Names of the columns of X
        levels: Random-effects levels, outermost first
        row_index: Index labels of the source table rows
    """

    X: np.ndarray
    y: np.ndarray
    v: np.ndarray
    term_names: Tuple[str, ...]
    levels: Tuple[RandomLevel, ...] = ()
    row_index: Tuple[Any, ...] = ()

    @property
    def n_obs(self) -> int:
        return len(self.y)

    @property
    def n_coef(self) -> int:
        return self.X.shape[1]

    @property
    def V(self) -> np.ndarray:
        """Sampling-variance matrix diag(vi)."""
        return np.diag(self.v)

    @property
    def level_names(self) -> Tuple[str, ...]:
        return tuple(level.name for level in self.levels)

    @property
    def has_intercept(self) -> bool:
        return "intercept" in self.term_names

    def components(self) -> List[Tuple[str, np.ndarray]]:
        """(name, Z Zᵀ) pairs handed to the variance-component estimator."""
        return [(level.name, level.gram()) for level in self.levels]


def _check_complete(table: pd.DataFrame, columns: Sequence[str]) -> None:
    missing_cols = [c for c in columns if c not in table.columns]
    if missing_cols:
        raise InvalidInputError(f"Columns not found in table: {missing_cols}")
    incomplete = table[list(columns)].isna().any()
    bad = incomplete[incomplete].index.tolist()
    if bad:
        raise InvalidInputError(f"Missing values in columns {bad}; rows are never dropped silently")


def ordered_levels(series: pd.Series) -> List[Any]:
    """Levels in declared order (categoricals) or sorted order, observed only."""
    observed = set(series.unique())
    if isinstance(series.dtype, pd.CategoricalDtype):
        return [c for c in series.cat.categories if c in observed]
    try:
        return sorted(observed)
    except TypeError:
        return list(pd.unique(series))


def _encode_moderator(
    moderator: Moderator,
    series: pd.Series,
    full_rank_dummies: bool,
) -> Tuple[List[np.ndarray], List[str]]:
    if moderator.is_categorical(series):
        levels = ordered_levels(series)
        if full_rank_dummies:
            dummies = levels
        else:
            reference = moderator.reference if moderator.reference is not None else levels[0]
            if reference not in levels:
                raise StructuralError(
                    f"Reference level {reference!r} not present in moderator '{moderator.name}'"
                )
            dummies = [lvl for lvl in levels if lvl != reference]
            if not dummies:
                raise StructuralError(
                    f"Categorical moderator '{moderator.name}' has a single observed level "
                    f"({reference!r}); its effect is not estimable"
                )
        columns = [(series == lvl).to_numpy(dtype=float) for lvl in dummies]
        names = [f"{moderator.name}[{lvl}]" for lvl in dummies]
        return columns, names

    values = series.to_numpy(dtype=float)
    if moderator.center:
        values = values - values.mean()
    return [values], [moderator.name]


def _check_nesting(table: pd.DataFrame, grouping: Sequence[str]) -> None:
    for outer, inner in zip(grouping[:-1], grouping[1:]):
        parents = table.groupby(inner, sort=False)[outer].nunique()
        crossed = parents[parents > 1]
        if len(crossed) > 0:
            raise StructuralError(
                f"Level '{inner}' is not nested in '{outer}': ids "
                f"{crossed.index.tolist()[:5]} appear under more than one '{outer}'"
            )


def build_design(
    table: pd.DataFrame,
    grouping: Sequence[str] = (),
    moderators: Sequence[Union[str, Moderator]] = (),
    yi_col: str = "yi",
    vi_col: str = "vi",
    intercept: bool = True,
    strict: bool = True,
) -> DesignMatrix:
    """
    Build the design for a multilevel meta-analytic model.

    Args:
        table: Effect-size table (one row per effect size)
        grouping: Grouping columns, outermost first; level k must be nested
            in level k-1
        moderators: Moderator column names or Moderator specs
        yi_col: Column with effect sizes
        vi_col: Column with sampling variances
        intercept: Include an intercept column. Without it the first
            categorical moderator is coded with one indicator per level
            (cell means).
        strict: Require at least two outermost groups

    Returns:
        DesignMatrix

    Raises:
        InvalidInputError: Missing cells or non-positive variances
        StructuralError: Unidentifiable grouping or moderator structure
    """
    if isinstance(grouping, str):
        grouping = [grouping]
    grouping = list(grouping)
    specs = [Moderator.coerce(m) for m in moderators]

    if len(table) == 0:
        raise InvalidInputError("Effect-size table is empty")

    _check_complete(table, [yi_col, vi_col] + grouping + [m.name for m in specs])

    y = table[yi_col].to_numpy(dtype=float)
    v = table[vi_col].to_numpy(dtype=float)
    if np.any(~np.isfinite(y)):
        raise InvalidInputError("Effect sizes must be finite")
    if np.any(~np.isfinite(v) | (v <= 0)):
        raise InvalidInputError("Sampling variances must be finite and positive")

    # Step 1: Random-effects structure
    if grouping:
        if strict and table[grouping[0]].nunique() < 2:
            raise StructuralError(
                f"Grouping column '{grouping[0]}' has fewer than 2 distinct groups; "
                "the top-level variance component is not identifiable"
            )
        _check_nesting(table, grouping)
    levels = tuple(RandomLevel.from_values(name, table[name].tolist()) for name in grouping)

    # Step 2: Fixed effects
    columns: List[np.ndarray] = []
    names: List[str] = []
    if intercept:
        columns.append(np.ones(len(table)))
        names.append("intercept")

    cell_means_used = intercept
    for spec in specs:
        series = table[spec.name]
        full_rank = not cell_means_used and spec.is_categorical(series)
        cols, col_names = _encode_moderator(spec, series, full_rank)
        cell_means_used = cell_means_used or full_rank
        columns.extend(cols)
        names.extend(col_names)

    if not columns:
        raise StructuralError("Model has no fixed effects")

    X = np.column_stack(columns)
    k, p = X.shape
    if p > k:
        raise StructuralError(f"More coefficients ({p}) than effect sizes ({k})")
    if np.linalg.matrix_rank(X) < p:
        raise StructuralError(f"Moderators are collinear; design matrix {names} is rank deficient")

    return DesignMatrix(
        X=X,
        y=y,
        v=v,
        term_names=tuple(names),
        levels=levels,
        row_index=tuple(table.index),
    )
