"""Random-regression linear mixed models.

Model: y = X beta + Z b + eps, with one random-effects block per group,
    b_i ~ N(0, sigma^2 * Lambda Lambda'),   eps ~ N(0, sigma^2 I).
In a random regression Z repeats the columns of X, so every group gets its
own intercept and slopes.

Fitting minimises the profiled deviance over theta, the column-major lower
triangle of Lambda, following Bates et al. (2015) "Fitting Linear
Mixed-Effects Models Using lme4" (JSS 67(1)). beta and sigma^2 are profiled
out; only theta goes to the optimizer (L-BFGS-B, diagonal entries >= 0).
A diagonal entry of theta at its bound 0 means the estimated covariance
matrix of the random effects is singular.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.optimize import minimize

from .condition import factor_dimension, rcond, theta_to_lambda

logger = logging.getLogger(__name__)

INFEASIBLE = 1e30
DEFAULT_SINGULAR_ATOL = 1e-4


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass
class RandomRegressionData:
    """Design of a random-regression model.

    The design matrices are shared by every bootstrap refit; only ``y``
    changes (see ``with_response``).
    """

    y: np.ndarray  # (N,)
    X: np.ndarray  # (N, p) fixed effects, intercept first
    Z: np.ndarray  # (N, q) random effects per group
    groups: np.ndarray  # (N,) int codes 0..K-1
    group_names: List[str]
    coef_names: List[str]

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        response: str,
        group: str,
        covariates: Sequence[str],
    ) -> "RandomRegressionData":
        codes, uniques = pd.factorize(df[group], sort=True)
        X = np.column_stack([np.ones(len(df))] + [df[c].to_numpy(dtype=float) for c in covariates])
        return cls(
            y=df[response].to_numpy(dtype=float),
            X=X,
            Z=X.copy(),
            groups=codes.astype(np.int64),
            group_names=[str(u) for u in uniques],
            coef_names=["(Intercept)"] + list(covariates),
        )

    @property
    def n_obs(self) -> int:
        return len(self.y)

    @property
    def n_groups(self) -> int:
        return len(self.group_names)

    @property
    def p(self) -> int:
        return self.X.shape[1]

    @property
    def q(self) -> int:
        return self.Z.shape[1]

    def with_response(self, y: np.ndarray) -> "RandomRegressionData":
        return dataclasses.replace(self, y=np.asarray(y, dtype=float))


@dataclass
class SufficientStats:
    """Per-group cross-products; computed once per response vector."""

    N: int
    p: int
    q: int
    ZtZ: np.ndarray  # (K, q, q)
    ZtX: np.ndarray  # (K, q, p)
    Zty: np.ndarray  # (K, q)
    XtX: np.ndarray  # (p, p)
    Xty: np.ndarray  # (p,)
    yty: float


@dataclass
class LMMFit:
    """Estimates of a fitted random-regression model."""

    beta: np.ndarray
    sigma: float
    theta: np.ndarray
    objective: float
    reml: bool
    zerocorr: bool
    converged: bool
    n_obs: int
    n_groups: int
    coef_names: List[str]
    n_evals: int = 0

    @property
    def q(self) -> int:
        return factor_dimension(len(self.theta))

    @property
    def lambda_(self) -> np.ndarray:
        return theta_to_lambda(self.theta)

    @property
    def ranef_cov(self) -> np.ndarray:
        lam = self.lambda_
        return self.sigma**2 * (lam @ lam.T)

    @property
    def ranef_sd(self) -> np.ndarray:
        sds, _ = variance_components(self.theta, self.sigma)
        return sds[0]

    @property
    def ranef_corr(self) -> np.ndarray:
        _, rhos = variance_components(self.theta, self.sigma)
        return rhos[0]

    @property
    def loglik(self) -> float:
        return -0.5 * self.objective

    def rcond(self) -> float:
        return rcond(self.theta)

    def is_singular(self, atol: float = DEFAULT_SINGULAR_ATOL) -> bool:
        """True when any diagonal element of Lambda is within atol of 0."""
        return bool(np.any(np.abs(self.theta[diag_positions(self.q)]) <= atol))

    def summary(self) -> Dict:
        return {
            "criterion": "REML" if self.reml else "ML",
            "objective": float(self.objective),
            "converged": bool(self.converged),
            "n_obs": int(self.n_obs),
            "n_groups": int(self.n_groups),
            "zerocorr": bool(self.zerocorr),
            "beta": dict(zip(self.coef_names, map(float, self.beta))),
            "sigma": float(self.sigma),
            "theta": [float(t) for t in self.theta],
            "ranef_sd": dict(zip(self.coef_names, map(float, self.ranef_sd))),
            "ranef_corr": [None if np.isnan(r) else float(r) for r in self.ranef_corr],
            "rcond": self.rcond(),
            "singular": self.is_singular(),
        }


# ---------------------------------------------------------------------------
# theta layout
# ---------------------------------------------------------------------------


def theta_size(q: int, zerocorr: bool = False) -> int:
    return q if zerocorr else q * (q + 1) // 2


def diag_positions(q: int) -> np.ndarray:
    """Indices of the diagonal of Lambda within the column-major theta."""
    pos = []
    idx = 0
    for j in range(q):
        pos.append(idx)
        idx += q - j
    return np.asarray(pos, dtype=np.int64)


def _initial_theta(q: int) -> np.ndarray:
    theta = np.zeros(theta_size(q))
    theta[diag_positions(q)] = 1.0
    return theta


def variance_components(theta, sigma) -> Tuple[np.ndarray, np.ndarray]:
    """Random-effect standard deviations and correlations.

    Accepts a single theta vector or an (N, k) stack with N sigmas. Returns
    sds of shape (N, q) and lower-triangle correlations of shape
    (N, q(q-1)/2), row-major. A correlation involving a zero standard
    deviation is undefined and reported as NaN.
    """
    theta = np.atleast_2d(np.asarray(theta, dtype=float))
    sigma = np.atleast_1d(np.asarray(sigma, dtype=float))
    q = factor_dimension(theta.shape[1])
    lams = np.stack([theta_to_lambda(t) for t in theta])
    rel = lams @ lams.transpose(0, 2, 1)
    norms = np.sqrt(np.einsum("nii->ni", rel))
    sds = sigma[:, None] * norms

    rows, cols = np.tril_indices(q, -1)
    denom = norms[:, rows] * norms[:, cols]
    with np.errstate(invalid="ignore", divide="ignore"):
        rhos = np.where(denom > 0, rel[:, rows, cols] / denom, np.nan)
    return sds, np.clip(rhos, -1.0, 1.0)


# ---------------------------------------------------------------------------
# Profiled deviance
# ---------------------------------------------------------------------------


def compute_sufficient_statistics(data: RandomRegressionData) -> SufficientStats:
    K, q, p = data.n_groups, data.q, data.p
    g, X, Z, y = data.groups, data.X, data.Z, data.y

    ZtZ = np.zeros((K, q, q))
    ZtX = np.zeros((K, q, p))
    Zty = np.zeros((K, q))
    np.add.at(ZtZ, g, Z[:, :, None] * Z[:, None, :])
    np.add.at(ZtX, g, Z[:, :, None] * X[:, None, :])
    np.add.at(Zty, g, Z * y[:, None])

    return SufficientStats(
        N=data.n_obs,
        p=p,
        q=q,
        ZtZ=ZtZ,
        ZtX=ZtX,
        Zty=Zty,
        XtX=X.T @ X,
        Xty=X.T @ y,
        yty=float(y @ y),
    )


def _profile(theta: np.ndarray, stats: SufficientStats) -> Optional[Dict]:
    """Penalized least squares solution at theta; None if infeasible."""
    T = theta_to_lambda(theta)
    q = stats.q

    # M_j = T' ZtZ_j T + I_q, one Cholesky per group
    M = np.einsum("ba,jbc,cd->jad", T, stats.ZtZ, T) + np.eye(q)
    try:
        L = np.linalg.cholesky(M)
    except np.linalg.LinAlgError:
        return None

    cu = np.linalg.solve(L, np.einsum("ba,jb->ja", T, stats.Zty)[..., None])[..., 0]
    CX = np.linalg.solve(L, np.einsum("ba,jbc->jac", T, stats.ZtX))

    A = stats.XtX - np.einsum("jqa,jqb->ab", CX, CX)
    b = stats.Xty - np.einsum("jqa,jq->a", CX, cu)
    c = stats.yty - float(np.sum(cu * cu))
    log_det_L = 2.0 * float(np.sum(np.log(np.diagonal(L, axis1=1, axis2=2))))

    try:
        R_X = np.linalg.cholesky(A)
    except np.linalg.LinAlgError:
        return None
    beta = np.linalg.solve(R_X.T, np.linalg.solve(R_X, b))
    r_sq = c - float(beta @ b)
    if not np.isfinite(r_sq) or r_sq <= 0:
        return None

    return {
        "beta": beta,
        "r_sq": r_sq,
        "log_det_L": log_det_L,
        "log_det_RX": 2.0 * float(np.sum(np.log(np.diag(R_X)))),
    }


def _objective(prof: Dict, N: int, p: int, reml: bool) -> float:
    if reml:
        n = N - p
        return prof["log_det_L"] + prof["log_det_RX"] + n * (1.0 + np.log(2.0 * np.pi * prof["r_sq"] / n))
    return prof["log_det_L"] + N * (1.0 + np.log(2.0 * np.pi * prof["r_sq"] / N))


def profiled_deviance(data_or_stats, theta, reml: bool = True) -> float:
    """-2 log-likelihood (ML) or REML criterion at theta, beta and sigma profiled out."""
    stats = data_or_stats
    if isinstance(stats, RandomRegressionData):
        stats = compute_sufficient_statistics(stats)
    theta = np.asarray(theta, dtype=float)
    if not np.all(np.isfinite(theta)):
        return INFEASIBLE
    prof = _profile(theta, stats)
    if prof is None:
        return INFEASIBLE
    return float(_objective(prof, stats.N, stats.p, reml))


# ---------------------------------------------------------------------------
# Fitting
# ---------------------------------------------------------------------------


def fit_lmm(
    data: RandomRegressionData,
    reml: bool = True,
    zerocorr: bool = False,
    start: Optional[np.ndarray] = None,
    maxiter: int = 500,
) -> LMMFit:
    """Fit a random-regression model.

    Args:
        data: Model design and response.
        reml: REML (True) or maximum likelihood (False).
        zerocorr: Estimate only the diagonal of Lambda (uncorrelated random effects).
        start: Full theta vector to start from, e.g. the original estimate
            when refitting bootstrap responses.
        maxiter: L-BFGS-B iteration limit.

    Returns:
        LMMFit with estimated parameters.
    """
    q = data.q
    if data.n_obs <= data.p:
        raise ValueError(f"Need more observations than fixed effects, got N={data.n_obs}, p={data.p}")

    stats = compute_sufficient_statistics(data)
    diag = diag_positions(q)
    free = diag if zerocorr else np.arange(theta_size(q))

    def expand(x):
        theta = np.zeros(theta_size(q))
        theta[free] = x
        return theta

    def objective(x):
        return profiled_deviance(stats, expand(x), reml)

    # Bounds: diagonal elements >= 0, off-diagonal free
    bounds = [(0.0, None) if i in diag else (None, None) for i in free]

    x0 = (_initial_theta(q) if start is None else np.asarray(start, dtype=float))[free].copy()
    x0[np.isin(free, diag)] = np.maximum(x0[np.isin(free, diag)], 0.0)

    result = minimize(
        objective,
        x0,
        method="L-BFGS-B",
        bounds=bounds,
        options={"maxiter": maxiter, "ftol": 1e-10, "gtol": 1e-6},
    )
    if not result.success:
        logger.warning(f"Optimizer did not converge: {result.message}")

    theta = expand(result.x)
    prof = _profile(theta, stats)
    if prof is None:
        raise ValueError("Model fit ended at an infeasible theta; check the design for collinear columns")

    dof = data.n_obs - data.p if reml else data.n_obs
    return LMMFit(
        beta=prof["beta"],
        sigma=float(np.sqrt(prof["r_sq"] / dof)),
        theta=theta,
        objective=float(_objective(prof, data.n_obs, data.p, reml)),
        reml=reml,
        zerocorr=zerocorr,
        converged=bool(result.success),
        n_obs=data.n_obs,
        n_groups=data.n_groups,
        coef_names=list(data.coef_names),
        n_evals=int(result.nfev),
    )


def simulate_response(fit: LMMFit, data: RandomRegressionData, rng: np.random.Generator) -> np.ndarray:
    """Draw a response vector from the fitted model."""
    u = rng.standard_normal((data.n_groups, fit.q))
    b = fit.sigma * u @ fit.lambda_.T
    eps = fit.sigma * rng.standard_normal(data.n_obs)
    return data.X @ fit.beta + np.einsum("nq,nq->n", data.Z, b[data.groups]) + eps
