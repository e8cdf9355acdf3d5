"""
datasets.py

Longitudinal datasets for random-regression models.
Loads tables from csv / parquet / feather files and simulates balanced
random-intercept-and-slope studies from an explicit random generator.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE = "reaction"
DEFAULT_GROUP = "subj"
DEFAULT_COVARIATES = ["days"]


# ============================================================================
# File Loading
# ============================================================================


def _read_table(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return pd.read_csv(path)
    if suffix in (".parquet", ".pq"):
        return pd.read_parquet(path, engine="pyarrow")
    if suffix == ".feather":
        return pd.read_feather(path)
    raise ValueError(f"Unsupported file type '{suffix}' for {path}; expected .csv, .parquet or .feather")


def load_dataset(
    path,
    response: str = DEFAULT_RESPONSE,
    group: str = DEFAULT_GROUP,
    covariates: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Load a longitudinal table and check it can be used for model fitting.

    Args:
        path: File path (.csv, .parquet or .feather)
        response: Response column name
        group: Grouping (subject) column name
        covariates: Covariate column names; default ['days']

    Returns:
        DataFrame with the group, covariate and response columns, rows with a
        missing response removed

    Raises:
        ValueError: If columns are missing or covariates are non-finite
    """
    covariates = list(DEFAULT_COVARIATES if covariates is None else covariates)
    path = Path(path)
    logger.info(f"Reading dataset: {path}")
    df = _read_table(path)

    needed = [group] + covariates + [response]
    missing = [c for c in needed if c not in df.columns]
    if missing:
        raise ValueError(f"Missing expected columns: {missing}")

    df = df[needed].copy()
    n_missing = int(df[response].isna().sum())
    if n_missing:
        logger.warning(f"Dropping {n_missing} rows with missing {response}")
        df = df[df[response].notna()].reset_index(drop=True)

    numeric = df[covariates + [response]].to_numpy(dtype=float)
    if not np.all(np.isfinite(numeric)):
        raise ValueError(f"Non-finite values in columns {covariates + [response]}")
    if df[group].isna().any():
        raise ValueError(f"Missing values in group column '{group}'")

    logger.info(f"Loaded {len(df)} rows in {df[group].nunique()} groups")
    return df


# ============================================================================
# Simulation
# ============================================================================


def simulate_random_regression(
    rng: np.random.Generator,
    n_groups: int = 18,
    n_times: int = 10,
    beta: Sequence[float] = (251.4, 10.5),
    sigma: float = 25.6,
    ranef_sd: Sequence[float] = (24.7, 5.9),
    rho: float = 0.07,
    response: str = DEFAULT_RESPONSE,
    group: str = DEFAULT_GROUP,
    time: str = "days",
) -> pd.DataFrame:
    """
    Simulate a balanced study with a random intercept and slope per group.

    Defaults resemble a sleep-deprivation reaction-time study: 18 subjects
    measured on days 0..9.

    Args:
        rng: Random generator owned by the caller
        n_groups: Number of subjects
        n_times: Measurements per subject at times 0..n_times-1
        beta: Fixed intercept and slope
        sigma: Residual standard deviation
        ranef_sd: Standard deviations of the random intercept and slope
        rho: Correlation of the random intercept and slope

    Returns:
        Long DataFrame with columns [group, time, response]
    """
    if n_groups < 1 or n_times < 1:
        raise ValueError(f"n_groups and n_times must be positive, got {n_groups}, {n_times}")
    if not -1.0 <= rho <= 1.0:
        raise ValueError(f"rho must lie in [-1, 1], got {rho}")

    sd = np.asarray(ranef_sd, dtype=float)
    cov = np.array([[sd[0] ** 2, rho * sd[0] * sd[1]], [rho * sd[0] * sd[1], sd[1] ** 2]])
    b = rng.multivariate_normal(np.zeros(2), cov, size=n_groups, method="svd")

    t = np.tile(np.arange(n_times, dtype=float), n_groups)
    g = np.repeat(np.arange(n_groups), n_times)
    mu = (beta[0] + b[g, 0]) + (beta[1] + b[g, 1]) * t
    y = mu + sigma * rng.standard_normal(mu.size)

    labels: List[str] = [f"S{i + 1:03d}" for i in range(n_groups)]
    return pd.DataFrame({group: np.asarray(labels)[g], time: t, response: y})
