"""Singularity of random-regression covariance estimates under parametric bootstrap.

Keep this file minimal so the package is importable via `-m rrsingularity.run`.
"""
from .condition import InvalidInputError, ReciprocalConditionEstimator, rcond, theta_to_lambda

__all__ = [
    "condition",
    "datasets",
    "lmm",
    "bootstrap",
    "summary",
    "run",
    "InvalidInputError",
    "ReciprocalConditionEstimator",
    "rcond",
    "theta_to_lambda",
]
__version__ = "0.1.0"
