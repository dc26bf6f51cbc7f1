# src/fitting/splines.py - v2
"""Penalized cubic regression splines (P-splines) in plain numpy.

Uniform cubic B-spline basis with a second-order difference penalty. The
smoothing parameter is chosen by generalized cross-validation over a fixed
log grid, which keeps every fit deterministic. A cyclic variant wraps the
basis over a 365-day period; a tensor-product variant smooths over (x, y),
optionally next to an unpenalized linear covariate.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

DEGREE = 3
DAYS_PER_YEAR = 365.0
LAMBDA_GRID = np.logspace(-6, 6, 25)
MIN_BASIS = DEGREE + 1


# === BASES ===


def _bspline_matrix(x: np.ndarray, knots: np.ndarray) -> np.ndarray:
    """Cox-de Boor evaluation of all cubic B-splines on ``knots`` at ``x``."""
    x = np.asarray(x, dtype=np.float64)[:, None]
    t = knots
    basis = ((x >= t[None, :-1]) & (x < t[None, 1:])).astype(np.float64)
    for p in range(1, DEGREE + 1):
        n = len(t) - p - 1
        left = (x - t[None, :n]) / (t[p:p + n] - t[:n])
        right = (t[p + 1:p + 1 + n] - x) / (t[p + 1:p + 1 + n] - t[1:1 + n])
        basis = left * basis[:, :n] + right * basis[:, 1:n + 1]
    return basis


def _difference_penalty(k: int, cyclic: bool) -> np.ndarray:
    if cyclic:
        eye = np.eye(k)
        d = eye - 2 * np.roll(eye, 1, axis=1) + np.roll(eye, 2, axis=1)
    else:
        d = np.diff(np.eye(k), n=2, axis=0)
    return d.T @ d


@dataclass(frozen=True)
class SplineBasis:
    """Uniform cubic B-spline basis with ``k`` functions on ``[lo, hi]``."""

    k: int
    lo: float
    hi: float
    cyclic: bool = False

    def __post_init__(self) -> None:
        if self.k < MIN_BASIS:
            raise ValueError(f"Cubic spline basis needs at least {MIN_BASIS} functions, got {self.k}")
        if not self.hi > self.lo:
            raise ValueError(f"Empty basis range [{self.lo}, {self.hi}]")

    @property
    def spacing(self) -> float:
        if self.cyclic:
            return (self.hi - self.lo) / self.k
        return (self.hi - self.lo) / (self.k - DEGREE)

    def design(self, x: np.ndarray) -> np.ndarray:
        """Design matrix (len(x) × k)."""
        x = np.asarray(x, dtype=np.float64)
        h = self.spacing
        if self.cyclic:
            period = self.hi - self.lo
            wrapped = self.lo + np.mod(x - self.lo, period)
            knots = self.lo + h * np.arange(-DEGREE, self.k + DEGREE + 2)
            full = _bspline_matrix(wrapped, knots)
            folded = np.zeros((len(x), self.k))
            for j in range(full.shape[1]):
                folded[:, (j - DEGREE) % self.k] += full[:, j]
            return folded
        knots = self.lo + h * np.arange(-DEGREE, self.k + 1)
        return _bspline_matrix(np.clip(x, self.lo, self.hi), knots)

    def penalty(self) -> np.ndarray:
        return _difference_penalty(self.k, self.cyclic)


@dataclass(frozen=True)
class TensorBasis:
    """Row-wise Kronecker product of two marginal bases over (x, y)."""

    bx: SplineBasis
    by: SplineBasis

    @property
    def k(self) -> int:
        return self.bx.k * self.by.k

    def design(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        dx = self.bx.design(x)
        dy = self.by.design(y)
        return (dx[:, :, None] * dy[:, None, :]).reshape(len(dx), -1)

    def penalty(self) -> np.ndarray:
        return (
            np.kron(self.bx.penalty(), np.eye(self.by.k))
            + np.kron(np.eye(self.bx.k), self.by.penalty())
        )


@dataclass(frozen=True)
class CovariateTensorBasis:
    """Linear covariate column followed by a tensor basis over (x, y).

    The covariate coefficient is unpenalized; no separate intercept column.
    """

    tensor: TensorBasis

    @property
    def k(self) -> int:
        return self.tensor.k + 1

    def design(self, covariate: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        return np.column_stack([np.asarray(covariate, dtype=np.float64), self.tensor.design(x, y)])

    def penalty(self) -> np.ndarray:
        p = np.zeros((self.k, self.k))
        p[1:, 1:] = self.tensor.penalty()
        return p


# === FITTING ===


@dataclass
class SplineFit:
    """Penalized least-squares fit.

    ``cov`` is the Bayesian posterior covariance ``sigma2 · (XᵀX + λP)⁻¹``.
    """

    coef: np.ndarray
    cov: np.ndarray
    edf: float
    sigma2: float
    lam: float
    n_obs: int
    converged: bool

    def predict(self, design: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Fitted values and standard errors for a prediction design matrix."""
        mean = design @ self.coef
        var = np.einsum("ij,jk,ik->i", design, self.cov, design)
        return mean, np.sqrt(np.clip(var, 0.0, None))


def fit_penalized(design: np.ndarray, response: np.ndarray, penalty: np.ndarray) -> SplineFit:
    """Fit ``response ~ design`` with penalty ``penalty``; λ by GCV.

    Raises:
        numpy.linalg.LinAlgError: If every candidate system is singular.
    """
    response = np.asarray(response, dtype=np.float64)
    n, k = design.shape
    xtx = design.T @ design
    xty = design.T @ response
    scale = np.trace(xtx) / max(np.trace(penalty), 1e-12)

    best: tuple[float, float, np.ndarray, np.ndarray, float] | None = None
    last_error: np.linalg.LinAlgError | None = None
    for lam in LAMBDA_GRID * scale:
        a = xtx + lam * penalty
        try:
            a_inv = np.linalg.inv(a)
        except np.linalg.LinAlgError as exc:
            last_error = exc
            continue
        coef = a_inv @ xty
        edf = float(np.trace(a_inv @ xtx))
        resid_df = n - edf
        if resid_df <= 0:
            continue
        rss = float(np.sum((response - design @ coef) ** 2))
        gcv = n * rss / resid_df ** 2
        if not np.isfinite(gcv):
            continue
        if best is None or gcv < best[0]:
            best = (gcv, lam, coef, a_inv, edf)

    if best is None:
        if last_error is not None:
            raise last_error
        return SplineFit(
            coef=np.full(k, np.nan), cov=np.full((k, k), np.nan), edf=float("nan"),
            sigma2=float("nan"), lam=float("nan"), n_obs=n, converged=False,
        )

    _, lam, coef, a_inv, edf = best
    rss = float(np.sum((response - design @ coef) ** 2))
    sigma2 = rss / (n - edf)
    cov = sigma2 * a_inv
    cov = (cov + cov.T) / 2
    converged = bool(np.all(np.isfinite(coef)) and np.all(np.isfinite(cov)) and n - edf > 0)
    return SplineFit(
        coef=coef, cov=cov, edf=edf, sigma2=sigma2, lam=float(lam), n_obs=n, converged=converged,
    )


def fit_penalized_spline(
    x: np.ndarray,
    y: np.ndarray,
    k: int,
    lo: float = 1.0,
    hi: float = DAYS_PER_YEAR,
    cyclic: bool = False,
) -> tuple[SplineFit, SplineBasis]:
    """One-dimensional P-spline. Cyclic bases use a period of ``hi - lo``."""
    x = np.asarray(x, dtype=np.float64)
    if cyclic:
        basis = SplineBasis(k=k, lo=lo - 1.0, hi=hi, cyclic=True)
    else:
        basis = SplineBasis(k=k, lo=min(lo, float(x.min())), hi=max(hi, float(x.max())))
    return fit_penalized(basis.design(x), y, basis.penalty()), basis


def fit_tensor_spline(
    x: np.ndarray,
    y: np.ndarray,
    z: np.ndarray,
    k: int,
    grid_x: np.ndarray | None = None,
    grid_y: np.ndarray | None = None,
) -> tuple[SplineFit, TensorBasis]:
    """Tensor-product P-spline ``z ~ te(x, y)``.

    The basis range covers the observations and, if given, the prediction
    grid so that predictions are never extrapolated by clipping.
    """
    xs = [np.asarray(x, dtype=np.float64)] + ([np.asarray(grid_x)] if grid_x is not None else [])
    ys = [np.asarray(y, dtype=np.float64)] + ([np.asarray(grid_y)] if grid_y is not None else [])
    basis = TensorBasis(bx=_range_basis(np.concatenate(xs), k), by=_range_basis(np.concatenate(ys), k))
    return fit_penalized(basis.design(x, y), z, basis.penalty()), basis


def fit_covariate_tensor_spline(
    covariate: np.ndarray,
    x: np.ndarray,
    y: np.ndarray,
    z: np.ndarray,
    k: int,
    grid_x: np.ndarray | None = None,
    grid_y: np.ndarray | None = None,
) -> tuple[SplineFit, CovariateTensorBasis]:
    """``z ~ covariate + te(x, y) - 1``; the basis range follows ``fit_tensor_spline``."""
    xs = [np.asarray(x, dtype=np.float64)] + ([np.asarray(grid_x)] if grid_x is not None else [])
    ys = [np.asarray(y, dtype=np.float64)] + ([np.asarray(grid_y)] if grid_y is not None else [])
    basis = CovariateTensorBasis(
        tensor=TensorBasis(bx=_range_basis(np.concatenate(xs), k), by=_range_basis(np.concatenate(ys), k)),
    )
    return fit_penalized(basis.design(covariate, x, y), z, basis.penalty()), basis


def _range_basis(values: np.ndarray, k: int) -> SplineBasis:
    lo, hi = float(values.min()), float(values.max())
    if hi <= lo:
        lo, hi = lo - 0.5, hi + 0.5
    return SplineBasis(k=k, lo=lo, hi=hi)
