"""Singularity summaries for parametric bootstrap results.

Tabulates how often bootstrap refits land on the boundary of the parameter
space (a zero diagonal element of Lambda, a correlation of +/-1, a reciprocal
condition number of 0), computes shortest coverage intervals, and writes a
JSON report plus the per-replicate reciprocal condition numbers.
"""
from __future__ import annotations

import json
import math
import os
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

from .bootstrap import BootstrapResult, save_bootstrap
from .lmm import DEFAULT_SINGULAR_ATOL, LMMFit, diag_positions


def shortest_coverage_interval(values, level: float = 0.95) -> Tuple[float, float]:
    """Narrowest interval containing a fraction ``level`` of the finite values."""
    if not 0.0 < level <= 1.0:
        raise ValueError(f"level must lie in (0, 1], got {level}")
    v = np.asarray(values, dtype=float).ravel()
    v = np.sort(v[np.isfinite(v)])
    n = len(v)
    if n == 0:
        raise ValueError("no finite values to summarize")
    m = max(1, int(math.ceil(level * n)))
    widths = v[m - 1:] - v[: n - m + 1]
    i = int(np.argmin(widths))
    return float(v[i]), float(v[i + m - 1])


def singularity_table(
    result: BootstrapResult,
    atol: float = DEFAULT_SINGULAR_ATOL,
    rcond: Optional[np.ndarray] = None,
) -> pd.DataFrame:
    """Count bootstrap replicates on the singular boundary, per parameter."""
    n = len(result)
    rows = []
    diag = diag_positions(result.q)
    at_zero = np.abs(result.theta[:, diag]) <= atol
    for j, d in enumerate(diag):
        rows.append((f"theta{d + 1}", f"|theta| <= {atol:g}", int(at_zero[:, j].sum())))

    rhos = result.rhos
    with np.errstate(invalid="ignore"):
        at_one = np.abs(rhos) >= 1.0 - atol
    for j in range(rhos.shape[1]):
        rows.append((f"rho{j + 1}", f"|rho| >= 1 - {atol:g}", int(at_one[:, j].sum())))

    if rcond is None:
        rcond = result.rcond()
    rows.append(("rcond", f"rcond <= {atol:g}", int((rcond <= atol).sum())))
    rows.append(("any", "singular Lambda", int(at_zero.any(axis=1).sum())))

    df = pd.DataFrame(rows, columns=["parameter", "criterion", "count"])
    df["proportion"] = df["count"] / n
    return df


def bootstrap_report(
    fit: LMMFit,
    result: BootstrapResult,
    output_dir: str,
    level: float = 0.95,
    atol: float = DEFAULT_SINGULAR_ATOL,
) -> Dict:
    """Write the bootstrap report.

    Parameters
    ----------
    fit : LMMFit
        Original fit the bootstrap was drawn from.
    result : BootstrapResult
        Bootstrap estimates.
    output_dir : str
        Directory to save the JSON report, rcond CSV and bootstrap table.
    level : float
        Coverage of the shortest intervals.
    atol : float
        Tolerance for treating a parameter as on the singular boundary.

    Returns
    -------
    dict
        Report contents plus the paths written.
    """
    os.makedirs(output_dir, exist_ok=True)

    rc = result.rcond()
    frame = result.to_frame()
    frame["rcond"] = rc

    intervals = {}
    for col in frame.columns:
        vals = frame[col].to_numpy(dtype=float)
        if np.isfinite(vals).any():
            lo, hi = shortest_coverage_interval(vals, level)
            intervals[col] = [lo, hi]
        else:
            intervals[col] = None

    table = singularity_table(result, atol=atol, rcond=rc)

    report = {
        "n_samples": len(result),
        "level": float(level),
        "atol": float(atol),
        "fit": fit.summary(),
        "coverage_intervals": intervals,
        "singularity": table.to_dict(orient="records"),
        "rcond_quantiles": {
            str(q): float(np.quantile(rc, q)) for q in (0.0, 0.025, 0.25, 0.5, 0.75, 0.975, 1.0)
        },
    }

    json_path = os.path.join(output_dir, "bootstrap_report.json")
    with open(json_path, "w") as f:
        json.dump(report, f, indent=2)

    rcond_csv = os.path.join(output_dir, "rcond.csv")
    pd.DataFrame({"replicate": np.arange(1, len(rc) + 1), "rcond": rc}).to_csv(rcond_csv, index=False)

    samples_path = save_bootstrap(result, os.path.join(output_dir, "bootstrap_samples.parquet"))

    report["report_json"] = json_path
    report["rcond_csv"] = rcond_csv
    report["samples_parquet"] = samples_path
    return report
