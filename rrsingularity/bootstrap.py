"""Parametric bootstrap for random-regression models.

Simulates responses from a fitted model, refits each one and collects the
estimates in a fixed-schema record whose width depends only on the number of
fixed effects p and the random-effects dimension q.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List

import dask
import numpy as np
import pandas as pd
from tqdm import tqdm

from .condition import ReciprocalConditionEstimator, factor_dimension
from .lmm import LMMFit, RandomRegressionData, fit_lmm, simulate_response, variance_components

logger = logging.getLogger(__name__)


@dataclass
class BootstrapResult:
    """Estimates from N bootstrap refits, one row per replicate."""

    objective: np.ndarray  # (N,)
    sigma: np.ndarray  # (N,)
    beta: np.ndarray  # (N, p)
    theta: np.ndarray  # (N, k), k = q(q+1)/2
    coef_names: List[str]

    def __len__(self) -> int:
        return len(self.objective)

    @property
    def q(self) -> int:
        return factor_dimension(self.theta.shape[1])

    @property
    def sigmas(self) -> np.ndarray:
        return variance_components(self.theta, self.sigma)[0]

    @property
    def rhos(self) -> np.ndarray:
        return variance_components(self.theta, self.sigma)[1]

    def rcond(self) -> np.ndarray:
        return ReciprocalConditionEstimator().compute(self.theta)

    def to_frame(self) -> pd.DataFrame:
        """Flatten to columns objective, sigma, beta1.., theta1.., sigma1.., rho1.."""
        cols = {"objective": self.objective, "sigma": self.sigma}
        for name, block in (("beta", self.beta), ("theta", self.theta), ("sigma", self.sigmas), ("rho", self.rhos)):
            for j in range(block.shape[1]):
                cols[f"{name}{j + 1}"] = block[:, j]
        return pd.DataFrame(cols)


def _refit(data: RandomRegressionData, y: np.ndarray, fit: LMMFit, replicate: int) -> LMMFit:
    try:
        return fit_lmm(data.with_response(y), reml=fit.reml, zerocorr=fit.zerocorr, start=fit.theta)
    except ValueError as e:
        raise ValueError(f"bootstrap replicate {replicate}: {e}") from e


def parametric_bootstrap(
    fit: LMMFit,
    data: RandomRegressionData,
    n_samples: int,
    rng: np.random.Generator,
    workers: int = 1,
    progress: bool = True,
) -> BootstrapResult:
    """Run a parametric bootstrap.

    Parameters
    ----------
    fit : LMMFit
        Model whose estimates generate the simulated responses.
    data : RandomRegressionData
        Design shared by every replicate.
    n_samples : int
        Number of bootstrap replicates.
    rng : numpy.random.Generator
        Generator owned by the caller. All responses are drawn from it up
        front, so the result depends on its state and not on ``workers``.
    workers : int
        Refits run serially for 1, otherwise in parallel on a dask threads
        scheduler with this many workers.
    progress : bool
        Show a tqdm progress bar for serial runs.

    Raises
    ------
    ValueError
        If a refit ends at an infeasible theta. The run is aborted and the
        message names the 0-based replicate number.

    Returns
    -------
    BootstrapResult
    """
    if n_samples < 1:
        raise ValueError(f"n_samples must be positive, got {n_samples}")
    if workers < 1:
        raise ValueError(f"workers must be positive, got {workers}")

    responses = [simulate_response(fit, data, rng) for _ in range(n_samples)]

    logger.info(f"Refitting {n_samples} bootstrap samples with {workers} worker(s)")
    if workers == 1:
        fits = [_refit(data, y, fit, b) for b, y in enumerate(tqdm(responses, desc="bootstrap", disable=not progress))]
    else:
        tasks = [dask.delayed(_refit)(data, y, fit, b) for b, y in enumerate(responses)]
        fits = list(dask.compute(*tasks, scheduler="threads", num_workers=workers))

    n_failed = sum(not f.converged for f in fits)
    if n_failed:
        logger.warning(f"{n_failed} of {n_samples} bootstrap refits did not converge")

    return BootstrapResult(
        objective=np.array([f.objective for f in fits]),
        sigma=np.array([f.sigma for f in fits]),
        beta=np.stack([f.beta for f in fits]),
        theta=np.stack([f.theta for f in fits]),
        coef_names=list(fit.coef_names),
    )


def save_bootstrap(result: BootstrapResult, path: str) -> str:
    """Write the flattened bootstrap table as parquet (pyarrow) or csv."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    df = result.to_frame()
    if path.endswith(".csv"):
        df.to_csv(path, index=False)
    else:
        df.to_parquet(path, engine="pyarrow", index=False)
    logger.info(f"Wrote {len(df)} bootstrap rows to {path}")
    return path


def load_bootstrap_frame(path: str) -> pd.DataFrame:
    if path.endswith(".csv"):
        return pd.read_csv(path)
    return pd.read_parquet(path, engine="pyarrow")
