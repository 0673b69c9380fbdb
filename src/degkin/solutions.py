"""
Analytical solutions for parent-only kinetics.

Each function maps output times and the initial amount to concentrations.
Times may be unsorted. Rate constants are assumed to be non-negative; the
parameter transformations used during fitting take care of that.

Formulas follow the FOCUS (2006, 2014) kinetics guidance.
"""

import numpy as np


def sfo_solution(t, parent_0: float, k: float) -> np.ndarray:
    """Single first-order kinetics"""
    t = np.asarray(t, dtype=float)
    return parent_0 * np.exp(-k * t)


def fomc_solution(t, parent_0: float, alpha: float, beta: float) -> np.ndarray:
    """First-order multi-compartment kinetics (Gustafson and Holden 1990)"""
    t = np.asarray(t, dtype=float)
    return parent_0 / (t / beta + 1) ** alpha


def iore_solution(t, parent_0: float, k__iore: float, N: float) -> np.ndarray:
    """
    Indeterminate order rate equation kinetics.

    c(t) = c0 * (1 + (N - 1) * k * c0^(N - 1) * t)^(1 / (1 - N))

    N = 1 is the first-order limit. For N < 1 the compound is depleted after a
    finite time, from then on the concentration is zero.
    """
    t = np.asarray(t, dtype=float)
    if N == 1:
        return sfo_solution(t, parent_0, k__iore)
    base = 1 + (N - 1) * k__iore * parent_0 ** (N - 1) * t
    with np.errstate(divide="ignore"):
        return parent_0 * np.where(base > 0, np.maximum(base, 0) ** (1 / (1 - N)), 0.0)


def dfop_solution(t, parent_0: float, k1: float, k2: float, g: float) -> np.ndarray:
    """Double first-order in parallel kinetics"""
    t = np.asarray(t, dtype=float)
    return parent_0 * (g * np.exp(-k1 * t) + (1 - g) * np.exp(-k2 * t))


def hs_solution(t, parent_0: float, k1: float, k2: float, tb: float) -> np.ndarray:
    """Hockey-stick kinetics: rate k1 until the breakpoint tb, k2 thereafter"""
    t = np.asarray(t, dtype=float)
    before = parent_0 * np.exp(-k1 * t)
    after = parent_0 * np.exp(-k1 * tb) * np.exp(-k2 * (t - tb))
    return np.where(t <= tb, before, after)


def sforb_solution(t, parent_0: float, k_12: float, k_21: float, k_1output: float) -> np.ndarray:
    """
    Single first-order kinetics with reversible binding.

    Returns the total (free + bound) amount, starting from the free form only.

    Args:
        t: Output times
        parent_0: Initial amount in the free form
        k_12: Rate constant free -> bound
        k_21: Rate constant bound -> free
        k_1output: Total rate constant of degradation from the free form
    """
    t = np.asarray(t, dtype=float)
    b1, b2 = sforb_eigenvalues(k_12, k_21, k_1output)
    return parent_0 * (((k_12 + k_21 - b1) / (b2 - b1)) * np.exp(-b1 * t)
                       + ((k_12 + k_21 - b2) / (b1 - b2)) * np.exp(-b2 * t))


def sforb_eigenvalues(k_12: float, k_21: float, k_1output: float):
    """Fast (b1) and slow (b2) decline rates of the SFORB model"""
    sqrt_exp = np.sqrt(0.25 * (k_12 + k_21 + k_1output) ** 2
                       + k_12 * k_21 - (k_12 + k_1output) * k_21)
    b1 = 0.5 * (k_12 + k_21 + k_1output) + sqrt_exp
    b2 = 0.5 * (k_12 + k_21 + k_1output) - sqrt_exp
    return b1, b2


def logistic_solution(t, parent_0: float, kmax: float, k0: float, r: float) -> np.ndarray:
    """
    Logistic kinetics: the rate constant grows from k0 towards kmax with rate r.
    """
    t = np.asarray(t, dtype=float)
    return parent_0 * (1 + k0 / kmax * (np.exp(r * t) - 1)) ** (-kmax / r)
