"""
Variance-Component Estimator for mlmeta.

Restricted maximum likelihood (REML) estimation of the variance components
of the marginal model

    y ~ N(X β, Σ),   Σ = V + Σ_k σ²_k G_k

where V holds the known sampling (co)variances and G_k = Z_k Z_kᵀ is the
block-indicator matrix of nesting level k. Components are updated by Fisher
scoring with step halving and clipped at the zero boundary; the fixed
effects follow by generalized least squares at every iterate.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, List, Sequence, Tuple
import logging
import warnings

import numpy as np
from scipy import linalg

from mlmeta.core.config import FitOptions
from mlmeta.core.errors import NonConvergenceError, NumericalWarning

logger = logging.getLogger(__name__)

# Components below this fraction of the mean sampling variance are
# compared on an absolute scale in the convergence test.
_RELATIVE_FLOOR = 1e-6
_IDENTIFIABILITY_TOL = 1e-10


@dataclass(frozen=True)
class VarianceComponentFit:
    """
    Result of one REML fit.

    Attributes:
        beta: GLS fixed-effect coefficients
        vcov: Covariance matrix of beta, (XᵀΣ⁻¹X)⁻¹
        sigma2: Variance components, one per level (each >= 0)
        component_names: Names of the components
        log_likelihood: Restricted log-likelihood at convergence
        n_iter: Fisher-scoring iterations used
        converged: Whether the tolerance was met
        sigma_inv: Σ⁻¹ at the estimate
        pinned: Which components were held fixed rather than estimated
        warnings: Numerical warnings raised during the fit
    """

    beta: np.ndarray
    vcov: np.ndarray
    sigma2: np.ndarray
    component_names: Tuple[str, ...]
    log_likelihood: float
    n_iter: int
    converged: bool
    sigma_inv: np.ndarray
    pinned: Tuple[bool, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def se(self) -> np.ndarray:
        """Standard errors of the fixed effects."""
        return np.sqrt(np.diag(self.vcov))

    @property
    def weights(self) -> np.ndarray:
        """Per-row GLS weights, diag(Σ⁻¹)."""
        return np.diag(self.sigma_inv).copy()

    @property
    def n_components(self) -> int:
        return len(self.sigma2)


class _NotPositiveDefinite(Exception):
    pass


class _WarningLog:
    """Collects numerical warnings so each is issued once per fit."""

    def __init__(self):
        self.messages: List[str] = []

    def add(self, message: str) -> None:
        if message not in self.messages:
            self.messages.append(message)

    def emit(self, stacklevel: int = 3) -> Tuple[str, ...]:
        for message in self.messages:
            warnings.warn(message, NumericalWarning, stacklevel=stacklevel)
        return tuple(self.messages)


@dataclass
class _State:
    """Quantities of the marginal model at one value of the components."""

    theta: np.ndarray
    sigma_inv: np.ndarray
    xtsx_inv: np.ndarray
    beta: np.ndarray
    P: np.ndarray
    Py: np.ndarray
    log_likelihood: float


def _inverse_spd(A: np.ndarray, what: str, log: _WarningLog) -> np.ndarray:
    """Invert a symmetric positive-definite matrix; pseudo-inverse if singular."""
    try:
        c = linalg.cho_factor(A, lower=True)
        return linalg.cho_solve(c, np.eye(A.shape[0]))
    except linalg.LinAlgError:
        log.add(f"{what} is numerically singular; used pseudo-inverse")
        return np.linalg.pinv(A, hermitian=True)


def _logdet_spd(A: np.ndarray) -> float:
    """log|A| by Cholesky, pseudo-determinant if A is singular."""
    try:
        c, _ = linalg.cho_factor(A, lower=True)
        return float(2.0 * np.sum(np.log(np.diag(c))))
    except linalg.LinAlgError:
        eig = np.linalg.eigvalsh(A)
        eig = eig[eig > eig.max() * 1e-12] if eig.max() > 0 else eig[:0]
        return float(np.sum(np.log(eig)))


def _evaluate(
    theta: np.ndarray,
    y: np.ndarray,
    X: np.ndarray,
    V: np.ndarray,
    grams: Sequence[np.ndarray],
    logdet_xtx: float,
    log: _WarningLog,
) -> _State:
    n, p = X.shape
    sigma = V.copy()
    for t, G in zip(theta, grams):
        if t != 0.0:
            sigma += t * G

    try:
        c, lower = linalg.cho_factor(sigma, lower=True)
    except linalg.LinAlgError as e:
        raise _NotPositiveDefinite(str(e)) from e
    logdet_sigma = float(2.0 * np.sum(np.log(np.diag(c))))
    sigma_inv = linalg.cho_solve((c, lower), np.eye(n))

    # GLS: β = (XᵀΣ⁻¹X)⁻¹ XᵀΣ⁻¹y
    six = sigma_inv @ X
    xtsx = X.T @ six
    xtsx_inv = _inverse_spd(xtsx, "XᵀΣ⁻¹X", log)
    beta = xtsx_inv @ (six.T @ y)

    residuals = y - X @ beta
    Py = sigma_inv @ residuals
    P = sigma_inv - six @ xtsx_inv @ six.T

    log_lik = -0.5 * (
        (n - p) * np.log(2 * np.pi)
        - logdet_xtx
        + logdet_sigma
        + _logdet_spd(xtsx)
        + float(residuals @ Py)
    )

    return _State(
        theta=theta,
        sigma_inv=sigma_inv,
        xtsx_inv=xtsx_inv,
        beta=beta,
        P=P,
        Py=Py,
        log_likelihood=float(log_lik),
    )


def _score_and_information(
    state: _State,
    grams: Sequence[np.ndarray],
    free: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """REML score and expected information for the free components."""
    PG = [state.P @ grams[k] for k in free]
    m = len(free)
    score = np.empty(m)
    info = np.empty((m, m))
    for a, k in enumerate(free):
        score[a] = -0.5 * np.trace(PG[a]) + 0.5 * float(state.Py @ grams[k] @ state.Py)
        for b in range(a, m):
            info[a, b] = info[b, a] = 0.5 * np.einsum("ij,ji->", PG[a], PG[b])
    return score, info


def _unidentifiable(X: np.ndarray, grams: Sequence[np.ndarray]) -> List[bool]:
    """A component is unidentifiable when G lies in the column space of X."""
    M = np.eye(X.shape[0]) - X @ np.linalg.pinv(X)
    flags = []
    for G in grams:
        projected = M @ G @ M
        flags.append(bool(np.linalg.norm(projected) <= _IDENTIFIABILITY_TOL * max(np.linalg.norm(G), 1.0)))
    return flags


def _relative_change(new: np.ndarray, old: np.ndarray, floor: float) -> float:
    if new.size == 0:
        return 0.0
    return float(np.max(np.abs(new - old) / np.maximum(np.abs(old), floor)))


def heuristic_start(y: np.ndarray, X: np.ndarray, V: np.ndarray) -> float:
    """
    Moment-based starting value for each variance component.

    Excess of the OLS residual variance over the mean sampling variance,
    floored at 1% of the residual variance.
    """
    n, p = X.shape
    beta_ols = np.linalg.lstsq(X, y, rcond=None)[0]
    residuals = y - X @ beta_ols
    s2 = float(residuals @ residuals / (n - p)) if n > p else float(np.var(y))
    mean_v = float(np.mean(np.diag(V)))

    start = max(s2 - mean_v, 0.01 * s2)
    if start <= 0:
        start = 0.01 * mean_v if mean_v > 0 else 1.0
    return start


def fit_variance_components(
    y: np.ndarray,
    X: np.ndarray,
    V: np.ndarray,
    components: Sequence[Tuple[str, np.ndarray]],
    options: Optional[FitOptions] = None,
) -> VarianceComponentFit:
    """
    Estimate variance components by REML and fixed effects by GLS.

    Args:
        y: Response (k,)
        X: Fixed-effect design matrix (k x p)
        V: Known sampling variances, vector (k,) or matrix (k x k)
        components: (name, G) pairs, G = Z Zᵀ for each random level
        options: Control parameters

    Returns:
        VarianceComponentFit

    Raises:
        NonConvergenceError: If Σ is not positive definite at the start, or
            no start in the retry budget converges within max_iter
    """
    options = options or FitOptions()
    y = np.asarray(y, dtype=float).flatten()
    X = np.asarray(X, dtype=float)
    V = np.asarray(V, dtype=float)
    if V.ndim == 1:
        V = np.diag(V)

    n, p = X.shape
    if len(y) != n or V.shape != (n, n):
        raise ValueError("y, X and V must have matching dimensions")

    names = tuple(name for name, _ in components)
    grams = [np.asarray(G, dtype=float) for _, G in components]
    m = len(grams)
    log = _WarningLog()

    # Step 1: Pinned and unidentifiable components
    fixed = list(options.fixed) if options.fixed is not None else [None] * m
    if len(fixed) != m:
        raise ValueError(f"fixed has {len(fixed)} entries for {m} variance components")
    for k, unidentifiable in enumerate(_unidentifiable(X, grams)):
        if unidentifiable and fixed[k] is None:
            log.add(
                f"Variance component '{names[k]}' is not identifiable "
                "(fewer than 2 groups beyond the fixed effects); fixed at 0"
            )
            fixed[k] = 0.0
    pinned = tuple(f is not None for f in fixed)
    free = np.array([k for k in range(m) if not pinned[k]], dtype=int)

    logdet_xtx = _logdet_spd(X.T @ X)
    mean_v = float(np.mean(np.diag(V)))
    scale = mean_v if mean_v > 0 else max(float(np.var(y)), 1e-12)
    floor = _RELATIVE_FLOOR * scale

    # Step 2: Starting values
    base = np.array([0.0 if f is None else f for f in fixed])
    if options.start is not None:
        if len(options.start) != m:
            raise ValueError(f"start has {len(options.start)} entries for {m} variance components")
        primary = np.array(options.start, dtype=float)
    else:
        primary = np.full(m, heuristic_start(y, X, V))
    starts = [primary]
    for attempt in range(options.max_restarts):
        starts.append(primary * 10.0 ** (-(attempt + 1)))

    last_theta = base.copy()
    last_ll: Optional[float] = None
    n_iter = 0

    for attempt, start in enumerate(starts):
        theta = base.copy()
        theta[free] = start[free]
        try:
            state = _evaluate(theta, y, X, V, grams, logdet_xtx, log)
        except _NotPositiveDefinite as e:
            raise NonConvergenceError(
                "Marginal covariance matrix is not positive definite at the starting values",
                sigma2=theta, log_likelihood=None, n_iter=0,
            ) from e

        converged = free.size == 0
        n_iter = 0

        # Step 3: Fisher scoring
        while not converged and n_iter < options.max_iter:
            n_iter += 1
            score, info = _score_and_information(state, grams, free)

            # Components held at the boundary by a negative score stay there
            active = ~((state.theta[free] <= 0.0) & (score <= 0.0))
            step = np.zeros(free.size)
            if np.any(active):
                sub_info = info[np.ix_(active, active)]
                step[active] = _inverse_spd(sub_info, "REML information matrix", log) @ score[active]

            factor = 1.0
            new_state = None
            for _ in range(options.max_step_halvings + 1):
                raw = state.theta[free] + factor * step
                candidate = state.theta.copy()
                candidate[free] = np.maximum(raw, 0.0)
                try:
                    trial = _evaluate(candidate, y, X, V, grams, logdet_xtx, log)
                except _NotPositiveDefinite:
                    factor /= 2.0
                    continue
                new_state = trial
                if trial.log_likelihood >= state.log_likelihood - 1e-12 * abs(state.log_likelihood):
                    break
                factor /= 2.0

            if new_state is None:
                raise NonConvergenceError(
                    "Marginal covariance matrix is not positive definite along the update",
                    sigma2=state.theta, log_likelihood=state.log_likelihood, n_iter=n_iter,
                )

            d_theta = _relative_change(new_state.theta[free], state.theta[free], floor)
            d_ll = abs(new_state.log_likelihood - state.log_likelihood) / (abs(state.log_likelihood) + 0.1)
            logger.debug(
                "REML iteration %d: ll=%.10g sigma2=%s step=%.3g",
                n_iter, new_state.log_likelihood, np.round(new_state.theta, 8).tolist(), factor,
            )
            state = new_state
            converged = d_theta <= options.tol and d_ll <= options.tol

        last_theta = state.theta
        last_ll = state.log_likelihood

        if converged:
            # Report every free component that finishes on the boundary
            at_zero = [names[k] for k in free if state.theta[k] == 0.0]
            if at_zero:
                log.add(f"Variance component(s) {at_zero} clipped to the zero boundary")
            logger.debug(
                "REML converged after %d iterations (start %d): sigma2=%s",
                n_iter, attempt, state.theta.tolist(),
            )
            return VarianceComponentFit(
                beta=state.beta,
                vcov=state.xtsx_inv,
                sigma2=state.theta.copy(),
                component_names=names,
                log_likelihood=state.log_likelihood,
                n_iter=n_iter,
                converged=True,
                sigma_inv=state.sigma_inv,
                pinned=pinned,
                warnings=log.emit(),
            )

        logger.debug("REML start %d hit the iteration cap (%d)", attempt, options.max_iter)

    raise NonConvergenceError(
        f"REML did not converge within {options.max_iter} iterations "
        f"on {len(starts)} start(s)",
        sigma2=last_theta, log_likelihood=last_ll, n_iter=n_iter,
    )
