"""
Numeric helpers for the significance calculator.

``erf`` is the Abramowitz & Stegun formula 7.1.26 (maximum absolute error
1.5e-7 over the whole real line). That is well below the resolution at which
p-values are reported, and keeps Phi a handful of float operations.
"""
import math

# Abramowitz & Stegun 7.1.26 coefficients
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429
_P = 0.3275911

ERF_MAX_ABS_ERROR = 1.5e-7


def erf(x: float) -> float:
    sign = 1.0 if x >= 0 else -1.0
    x = abs(x)

    t = 1.0 / (1.0 + _P * x)
    y = 1.0 - (((((_A5 * t + _A4) * t) + _A3) * t + _A2) * t + _A1) * t * math.exp(-x * x)

    return sign * y


def normal_cdf(x: float) -> float:
    """Standard normal CDF, Phi(x)."""
    return 0.5 * (1.0 + erf(x / math.sqrt(2.0)))


def two_tailed_p_value(z: float) -> float:
    # clamp: the approximation can overshoot 1 by ~1e-7 for tiny |z|
    return min(1.0, max(0.0, 2.0 * (1.0 - normal_cdf(abs(z)))))


def two_proportion_z_test(control_conversions: int, control_n: int,
                          treatment_conversions: int, treatment_n: int) -> tuple[float, float]:
    """
    Pooled two-proportion z-test. Returns (z, two-tailed p).

    A zero standard error (no samples, or a pooled rate of exactly 0 or 1)
    means the two arms are indistinguishable: z = 0, p = 1.
    """
    if control_n <= 0 or treatment_n <= 0:
        return 0.0, 1.0

    control_rate = control_conversions / control_n
    treatment_rate = treatment_conversions / treatment_n
    pooled_rate = (control_conversions + treatment_conversions) / (control_n + treatment_n)
    standard_error = math.sqrt(pooled_rate * (1 - pooled_rate) * (1 / control_n + 1 / treatment_n))
    if standard_error == 0:
        return 0.0, 1.0

    z = (treatment_rate - control_rate) / standard_error
    return z, two_tailed_p_value(z)


def lift_percentage(control_rate: float, treatment_rate: float) -> float:
    """
    Relative change of the treatment rate over the control rate, in percent.
    With a zero control rate lift is undefined: 0.0 if the treatment is also
    zero, otherwise 100.0.
    """
    if control_rate == 0:
        return 0.0 if treatment_rate == 0 else 100.0
    return (treatment_rate - control_rate) / control_rate * 100
