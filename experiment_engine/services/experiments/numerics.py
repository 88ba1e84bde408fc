"""
Standard normal distribution helpers.

Closed-form approximations keep results reproducible across platforms and
library versions:
- normal_cdf: Abramowitz & Stegun 7.1.26 (max absolute error 1.5e-7)
- inverse_normal_cdf: Beasley-Springer-Moro (max absolute error ~3e-9
  inside [1e-10, 1 - 1e-10])

The "scipy" backend swaps in scipy.stats.norm for callers that prefer the
library routine over bit-for-bit parity with stored results.
"""

import math
from typing import Callable, Tuple

from scipy import stats as scipy_stats

# Abramowitz & Stegun 7.1.26
_AS_P = 0.3275911
_AS_A = (0.254829592, -0.284496736, 1.421413741, -1.453152027, 1.061405429)

# Beasley-Springer central region
_BSM_A = (2.50662823884, -18.61500062529, 41.39119773534, -25.44106049637)
_BSM_B = (-8.47351093090, 23.08336743743, -21.06224101826, 3.13082909833)

# Moro tail (Chebyshev series in log(-log(r)))
_BSM_C = (
    0.3374754822726147,
    0.9761690190917186,
    0.1607979714918209,
    0.0276438810333863,
    0.0038405729373609,
    0.0003951896511919,
    0.0000321767881768,
    0.0000002888167364,
    0.0000003960315187,
)

NormalFunctions = Tuple[Callable[[float], float], Callable[[float], float]]


def normal_cdf(x: float) -> float:
    sign = -1.0 if x < 0 else 1.0
    z = abs(x) / math.sqrt(2.0)

    t = 1.0 / (1.0 + _AS_P * z)
    a1, a2, a3, a4, a5 = _AS_A
    poly = ((((a5 * t + a4) * t + a3) * t + a2) * t + a1) * t
    erf = 1.0 - poly * math.exp(-z * z)

    return 0.5 * (1.0 + sign * erf)


def inverse_normal_cdf(p: float) -> float:
    if p <= 0 or p >= 1:
        raise ValueError(f"Probability must be between 0 and 1, got {p}")

    y = p - 0.5
    if abs(y) < 0.42:
        r = y * y
        a0, a1, a2, a3 = _BSM_A
        b0, b1, b2, b3 = _BSM_B
        numerator = y * (((a3 * r + a2) * r + a1) * r + a0)
        denominator = (((b3 * r + b2) * r + b1) * r + b0) * r + 1.0
        return numerator / denominator

    r = p if y < 0 else 1.0 - p
    r = math.log(-math.log(r))

    x = 0.0
    for coefficient in reversed(_BSM_C):
        x = x * r + coefficient

    return -x if y < 0 else x


def _scipy_cdf(x: float) -> float:
    return float(scipy_stats.norm.cdf(x))


def _scipy_ppf(p: float) -> float:
    if p <= 0 or p >= 1:
        raise ValueError(f"Probability must be between 0 and 1, got {p}")
    return float(scipy_stats.norm.ppf(p))


def get_normal_distribution(backend: str = "approximation") -> NormalFunctions:
    """Return the (cdf, ppf) pair for the configured statistics backend."""
    if backend == "approximation":
        return normal_cdf, inverse_normal_cdf
    if backend == "scipy":
        return _scipy_cdf, _scipy_ppf
    raise ValueError(f"Unknown statistics backend '{backend}'")
