"""Reciprocal condition number of relative covariance factors.

A bootstrap replicate of a random-regression model carries the free entries
of the lower-triangular relative covariance factor Lambda as a theta vector.
For a random intercept and slope, theta = (t1, t2, t3) and

    Lambda = [[t1,  0],
              [t2, t3]]

The reciprocal condition number of Lambda (smallest over largest singular
value) is 0 when the estimated covariance matrix is singular and 1 when it is
a scaled orthogonal matrix. It does not depend on the residual variance,
since sigma^2 * Lambda Lambda' only rescales Lambda.

Usage
-----
    from rrsingularity.condition import ReciprocalConditionEstimator

    est = ReciprocalConditionEstimator()
    est.compute([(1.0, 0.0, 1.0), (3.0, 4.0, 0.0)])   # array([1., 0.])
"""
from __future__ import annotations

from typing import Iterable, Optional

import numpy as np
from scipy.linalg import svd


class InvalidInputError(ValueError):
    """Raised for a covariance factor sample that cannot be evaluated."""

    def __init__(self, message: str, index: Optional[int] = None):
        if index is not None:
            message = f"sample {index}: {message}"
        super().__init__(message)
        self.index = index


def factor_dimension(k: int) -> int:
    """Return q such that q(q+1)/2 == k, or raise InvalidInputError."""
    q = int(round((np.sqrt(8 * k + 1) - 1) / 2))
    if k < 1 or q * (q + 1) // 2 != k:
        raise InvalidInputError(f"length {k} is not a triangular number")
    return q


def theta_to_lambda(theta) -> np.ndarray:
    """Assemble the lower-triangular factor from its column-major entries.

    For q=2: theta = [t1, t2, t3] -> [[t1, 0], [t2, t3]]
    """
    theta = np.asarray(theta, dtype=float).ravel()
    q = factor_dimension(theta.size)
    lam = np.zeros((q, q))
    idx = 0
    for j in range(q):
        for i in range(j, q):
            lam[i, j] = theta[idx]
            idx += 1
    return lam


def rcond(theta) -> float:
    """Reciprocal condition number of the factor described by ``theta``.

    An all-zero factor has no nonzero singular value; it is reported as 0.
    """
    try:
        theta = np.asarray(theta, dtype=float).ravel()
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"not a numeric vector: {theta!r}") from e
    if not np.all(np.isfinite(theta)):
        raise InvalidInputError(f"non-finite entry in {theta.tolist()}")
    s = svd(theta_to_lambda(theta), compute_uv=False)  # descending
    if s[0] == 0.0:
        return 0.0
    return float(s[-1] / s[0])


class ReciprocalConditionEstimator:
    """Batch reciprocal condition numbers for bootstrap theta samples.

    Fails fast: the first non-finite or malformed sample raises
    InvalidInputError with its position in ``index``.
    """

    def compute(self, samples: Iterable) -> np.ndarray:
        if hasattr(samples, "theta") and not isinstance(samples, np.ndarray):
            samples = samples.theta
        if hasattr(samples, "to_numpy"):
            samples = samples.to_numpy(dtype=float)
        out = []
        for i, sample in enumerate(samples):
            if np.ndim(sample) == 0:
                raise InvalidInputError(f"expected a theta vector, got scalar {sample!r}", index=i)
            try:
                out.append(rcond(sample))
            except InvalidInputError as e:
                raise InvalidInputError(str(e), index=i) from e
        return np.asarray(out, dtype=float)

    __call__ = compute
