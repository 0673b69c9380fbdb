"""
Post-fit analysis
=================

Statistics derived from fitted kinetic models:

- FOCUS chi-squared error levels per observed variable and for all data
- Disappearance times (DT50, DT90) and formation fractions
- Likelihood ratio tests for nested fits

The functions take a FitResult from degkin.fitting.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats
from scipy.optimize import brentq

from .compiler import observed_of, require_all_types
from .models import SubmodelType, UseOfFF
from .solutions import dfop_solution, logistic_solution, sforb_eigenvalues, sforb_solution


# =============================================================================
# CHI-SQUARED ERROR LEVEL
# =============================================================================

def _error_level(means: pd.DataFrame, n_optim: int, alpha: float):
    df = len(means) - n_optim
    if df <= 0:
        return np.nan, n_optim, df
    mean = means["value"].mean()
    ssq = np.sum((means["value"] - means["predicted"]) ** 2)
    return float(np.sqrt(ssq / mean ** 2 / stats.chi2.ppf(1 - alpha, df))), n_optim, df


def chi2_error_level(result, alpha: float = 0.05) -> pd.DataFrame:
    """
    Minimum error level at which the chi-squared test is passed.

    Calculated on the means of the observations at each sampling time, as
    recommended by FOCUS (2006). Values at time zero of variables whose
    initial values are fixed do not count.

    Args:
        result: FitResult
        alpha: Significance level of the test

    Returns:
        DataFrame with columns err_min (as a fraction), n_optim and df, one
        row for all data and one per observed variable
    """
    model = result.model
    means = (result.data.groupby(["name", "time"], sort=False)
             .agg(value=("value", "mean"), predicted=("predicted", "first"))
             .reset_index())

    fixed_initial_variables = [
        name for name, boxes in model.observed_to_state_map.items()
        if all(f"{box}_0" in result.fixed.index for box in boxes)
    ]
    means = means[~((means["time"] == 0) & means["name"].isin(fixed_initial_variables))]

    optimized_initials = [box for box in model.state_variables
                          if f"{box}_0" in result.estimates.index]
    optimized_parms = [p for p in model.parameter_names if p not in result.fixed.index]

    rows = {"All data": _error_level(means, result.n_optim - len(result.error_parameters), alpha)}
    for name in model.observed_variables:
        n_optim = sum(1 for box in optimized_initials if observed_of(model, box) == name)
        n_optim += sum(1 for p in optimized_parms if model.parameter_owner[p] == name)
        rows[name] = _error_level(means[means["name"] == name], n_optim, alpha)

    return pd.DataFrame.from_dict(rows, orient="index", columns=["err_min", "n_optim", "df"])


# =============================================================================
# DISAPPEARANCE TIMES
# =============================================================================

FRACTIONS = {"DT50": 0.5, "DT90": 0.1}


def _time_to_fraction(remaining, fraction: float, rate_bound: float) -> float:
    """Time at which a declining curve, starting at 1, reaches the given fraction"""
    if not rate_bound > 0:
        return np.inf
    upper = np.log(1 / fraction) / rate_bound
    while remaining(upper) > fraction:
        upper *= 2
        if upper > 1e15:
            return np.inf
    return brentq(lambda t: remaining(t) - fraction, 0.0, upper)


def _first_order_time(k: float, fraction: float) -> float:
    return np.log(1 / fraction) / k if k > 0 else np.inf


def _total_outflow(model, box, parms) -> float:
    return float(sum(parms[p] for p in model.outflow_parameters[box]))


def _sfo_times(model, name, parms, initials):
    k = _total_outflow(model, name, parms)
    return {label: _first_order_time(k, x) for label, x in FRACTIONS.items()}


def _fomc_times(model, name, parms, initials):
    alpha, beta = parms["alpha"], parms["beta"]
    return {label: beta * (x ** (-1 / alpha) - 1) for label, x in FRACTIONS.items()}


def _iore_times(model, name, parms, initials):
    k = _total_outflow(model, name, parms)
    N = parms[f"N_{name}"]
    if N == 1:
        return {label: _first_order_time(k, x) for label, x in FRACTIONS.items()}
    # Disappearance times depend on the initial amount, unit amount where there is none
    c0 = initials[name] if initials[name] > 0 else 1.0
    return {label: (x ** (1 - N) - 1) / ((N - 1) * k * c0 ** (N - 1))
            for label, x in FRACTIONS.items()}


def _dfop_times(model, name, parms, initials):
    k1, k2, g = parms["k1"], parms["k2"], parms["g"]
    times = {label: _time_to_fraction(lambda t: dfop_solution(t, 1.0, k1, k2, g), x, min(k1, k2))
             for label, x in FRACTIONS.items()}
    times["DT50back"] = times["DT90"] / np.log2(10)
    return times


def _hs_times(model, name, parms, initials):
    k1, k2, tb = parms["k1"], parms["k2"], parms["tb"]
    times = {}
    for label, x in FRACTIONS.items():
        L = np.log(1 / x)
        times[label] = L / k1 if k1 * tb >= L else tb + (L - k1 * tb) / k2
    times["DT50back"] = times["DT90"] / np.log2(10)
    return times


def _sforb_times(model, name, parms, initials):
    free = model.observed_to_state_map[name][0]
    k_12 = parms[f"k_{name}_free_bound"]
    k_21 = parms[f"k_{name}_bound_free"]
    k_out = _total_outflow(model, free, parms)
    _, b2 = sforb_eigenvalues(k_12, k_21, k_out)
    times = {label: _time_to_fraction(lambda t: sforb_solution(t, 1.0, k_12, k_21, k_out),
                                      x, b2)
             for label, x in FRACTIONS.items()}
    times["DT50back"] = times["DT90"] / np.log2(10)
    return times


def _logistic_times(model, name, parms, initials):
    kmax, k0, r = parms["kmax"], parms["k0"], parms["r"]
    return {label: _time_to_fraction(lambda t: logistic_solution(t, 1.0, kmax, k0, r),
                                     x, min(kmax, k0))
            for label, x in FRACTIONS.items()}


DISAPPEARANCE_TIMES = {
    SubmodelType.SFO: _sfo_times,
    SubmodelType.FOMC: _fomc_times,
    SubmodelType.IORE: _iore_times,
    SubmodelType.DFOP: _dfop_times,
    SubmodelType.HS: _hs_times,
    SubmodelType.SFORB: _sforb_times,
    SubmodelType.LOGISTIC: _logistic_times,
}

require_all_types(DISAPPEARANCE_TIMES, "Disappearance time calculation")


def _formation_fractions(model, parms) -> pd.Series:
    ff = {}
    for origin, (fractions, sink) in model.fraction_groups.items():
        values = {f: float(parms[f]) for f in fractions}
        ff.update(values)
        if sink:
            ff[f"f_{origin}_to_sink"] = 1 - sum(values.values())

    if model.use_of_ff is UseOfFF.MIN:
        for name, cs in model.spec.items():
            if not cs.to or cs.type not in (SubmodelType.SFO, SubmodelType.SFORB):
                continue
            origin = model.observed_to_state_map[name][0]
            total = _total_outflow(model, origin, parms)
            for target in cs.to:
                k = float(parms[f"k_{origin}_{model.observed_to_state_map[target][0]}"])
                ff[f"f_{origin}_to_{target}"] = k / total
            if cs.sink:
                ff[f"f_{origin}_to_sink"] = float(parms[f"k_{origin}_sink"]) / total
    return pd.Series(ff, dtype=float)


@dataclass(frozen=True, eq=False)
class Endpoints:
    """
    Endpoints of a fitted model.

    Attributes:
        distimes: DT50, DT90 and, for biphasic models, DT50back (DT90 / log2(10))
            by observed variable
        ff: Formation fractions, including the fractions going to sink
        SFORB: Eigenvalues b1 and b2 of SFORB compartments
    """
    distimes: pd.DataFrame
    ff: pd.Series
    SFORB: pd.Series

    def __str__(self):
        lines = ["Estimated disappearance times:", self.distimes.to_string()]
        if len(self.ff):
            lines += ["", "Resulting formation fractions:", self.ff.to_string()]
        if len(self.SFORB):
            lines += ["", "Estimated eigenvalues of SFORB model(s):", self.SFORB.to_string()]
        return "\n".join(lines)


def endpoints(result) -> Endpoints:
    """
    Disappearance times and formation fractions from a fitted model.

    Closed forms are used for SFO, FOMC, IORE and HS; DFOP, SFORB and
    logistic disappearance times are found by root finding.
    """
    model = result.model
    parms = result.bparms_ode
    initials = result.bparms_state

    distimes = {}
    sforb = {}
    for name, cs in model.spec.items():
        distimes[name] = DISAPPEARANCE_TIMES[cs.type](model, name, parms, initials)
        if cs.type is SubmodelType.SFORB:
            free = model.observed_to_state_map[name][0]
            b1, b2 = sforb_eigenvalues(parms[f"k_{name}_free_bound"],
                                       parms[f"k_{name}_bound_free"],
                                       _total_outflow(model, free, parms))
            sforb[f"{name}_b1"] = b1
            sforb[f"{name}_b2"] = b2

    table = pd.DataFrame.from_dict(distimes, orient="index")
    table = table.reindex(columns=[c for c in ("DT50", "DT90", "DT50back") if c in table.columns])
    return Endpoints(distimes=table, ff=_formation_fractions(model, parms),
                     SFORB=pd.Series(sforb, dtype=float))


# =============================================================================
# MODEL COMPARISON
# =============================================================================

@dataclass(frozen=True)
class LikelihoodRatioTest:
    """Result of a likelihood ratio test of a reduced against a full fit"""
    statistic: float
    df: int
    p_value: float
    loglik_full: float
    loglik_reduced: float

    def __str__(self):
        return (f"Likelihood ratio test: log-likelihood full {self.loglik_full:.4f}, "
                f"reduced {self.loglik_reduced:.4f}\n"
                f"Chisq = {self.statistic:.4f}, df = {self.df}, p = {self.p_value:.4g}")


def lrtest(fit_a, fit_b) -> LikelihoodRatioTest:
    """
    Likelihood ratio test for two nested fits to the same data.

    The fit with more optimized parameters is taken as the full model.
    """
    full, reduced = (fit_a, fit_b) if fit_a.n_optim >= fit_b.n_optim else (fit_b, fit_a)
    df = full.n_optim - reduced.n_optim
    if df == 0:
        raise ValueError("Both fits have the same number of parameters, they are not nested")
    if full.nobs != reduced.nobs:
        raise ValueError("The fits are based on different numbers of observations")
    statistic = 2 * (full.loglik - reduced.loglik)
    return LikelihoodRatioTest(statistic=float(statistic), df=int(df),
                               p_value=float(stats.chi2.sf(statistic, df)),
                               loglik_full=float(full.loglik),
                               loglik_reduced=float(reduced.loglik))
