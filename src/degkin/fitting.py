"""
Fitting of kinetic models to degradation data
=============================================

Fit the parameters of a compiled kinetic model to observed concentrations,
by ordinary least squares or by maximum likelihood together with an error
model.

Workflow:
1. Arrange observations in long format (name, time, value)
2. Derive starting values and fixed parameters
3. Optimize the transformed (unconstrained) parameters
4. Estimate the covariance from the Hessian of the negative log-likelihood
5. Back-transform estimates and confidence intervals

Example:
    >>> from degkin import fit
    >>> result = fit("SFO", focus_c)
    >>> print(result.parms())
"""

import warnings
from dataclasses import dataclass, field
from time import perf_counter
from typing import List, Mapping, NamedTuple, Optional, Sequence

import numdifftools as nd
import numpy as np
import pandas as pd
from scipy import stats
from scipy.optimize import least_squares, minimize

from . import analysis
from .compiler import CompiledModel, compile_model
from .models import (
    ErrorModel, FitAlgorithm, IntegrationFailure, NonConvergenceWarning,
    SingularCovarianceWarning, SolutionType, SubmodelType,
)
from .predict import (
    DEFAULT_ATOL, DEFAULT_ODE_METHOD, DEFAULT_RTOL, default_solution_type, predict,
)
from .transform import natural_interval, to_natural, to_transformed, transformed_names


DEFAULT_REWEIGHT_TOL = 1e-8
DEFAULT_REWEIGHT_MAX_ITER = 10
DEFAULT_MAXIT = 2000

# Objective values for parameters where no trajectory can be computed
PENALTY = 1e10
PENALTY_RESIDUAL = 1e5

# Lower bound for standard deviations estimated from residuals
MIN_SIGMA = 1e-8

# Hessian eigenvalues below this fraction of the largest one count as zero
HESSIAN_RTOL = 1e-10

SOURCE_DEFAULTS = {
    "alpha": 1.0, "beta": 10.0,
    "k1": 0.1, "k2": 0.01, "tb": 5.0, "g": 0.5,
    "kmax": 0.1, "k0": 1e-4, "r": 0.2,
}

ERROR_DEFAULTS = {"sigma_low": 0.1, "rsd_high": 0.1}


# =============================================================================
# DATA AND STARTING VALUES
# =============================================================================

def observed_data(model: CompiledModel, observed) -> pd.DataFrame:
    """
    Observations in long format for the observed variables of a model.

    Accepts a DataFrame with columns name, time and value, or an iterable of
    (name, time, value) records. Rows with missing values are dropped, as are
    rows for variables the model does not contain (with a warning).
    """
    if isinstance(observed, pd.DataFrame):
        missing = [c for c in ("name", "time", "value") if c not in observed.columns]
        if missing:
            raise ValueError(f"Observed data lack the columns {missing}")
        data = observed.loc[:, ["name", "time", "value"]].copy()
    else:
        data = pd.DataFrame(list(observed), columns=["name", "time", "value"])

    data["name"] = data["name"].astype(str)
    data["time"] = pd.to_numeric(data["time"], errors="coerce")
    data["value"] = pd.to_numeric(data["value"], errors="coerce")
    data = data.dropna(subset=["time", "value"])

    unknown = sorted(set(data["name"]) - set(model.observed_variables))
    if unknown:
        warnings.warn(f"Observations of {', '.join(unknown)} are not used, "
                      "the model does not contain these variables", stacklevel=3)
        data = data[data["name"].isin(model.observed_variables)]
    if data.empty:
        raise ValueError("There are no observations for the variables of the model")
    if (data["time"] < 0).any():
        raise ValueError("Observation times must be non-negative")
    return data.reset_index(drop=True)


def default_parameters(model: CompiledModel, parms_ini: Optional[Mapping[str, float]] = None) -> pd.Series:
    """
    Starting values of the model parameters on the natural scale.

    Rate constants start at 0.1 plus an increment of 1e-4 per parameter, so
    that parallel pathways are distinguishable. Formation fractions that are
    not given share what remains of their group, the sink slot included.
    """
    given = {} if parms_ini is None else {k: float(v) for k, v in dict(parms_ini).items()}
    unknown = sorted(set(given) - set(model.parameter_names))
    if unknown:
        raise ValueError(f"Starting values given for parameters not in the model: {unknown}")

    values = {}
    salt = 0.0
    for name in model.parameter_names:
        if name in given or name.startswith("f_"):
            continue
        if name.endswith("_free_bound"):
            values[name] = 0.1
        elif name.endswith("_bound_free"):
            values[name] = 0.02
        elif name.startswith("k_"):
            values[name] = 0.1 + salt
            salt += 1e-4
        elif name.startswith("N_"):
            values[name] = 1.1
        else:
            values[name] = SOURCE_DEFAULTS[name]

    for origin, (fractions, sink) in model.fraction_groups.items():
        unspecified = [f for f in fractions if f not in given]
        if unspecified:
            remaining = 1 - sum(given[f] for f in fractions if f in given)
            share = remaining / (len(unspecified) + int(sink))
            values.update((f, share) for f in unspecified)

    values.update(given)
    return pd.Series([values[name] for name in model.parameter_names],
                     index=list(model.parameter_names), dtype=float)


def initial_value_name(model: CompiledModel, key: str) -> str:
    """Name of the initial value parameter for a state or observed variable"""
    if key.endswith("_0") and key[:-2] in model.state_variables:
        return key
    if key in model.state_variables:
        return f"{key}_0"
    if key in model.observed_to_state_map:
        return f"{model.observed_to_state_map[key][0]}_0"
    raise ValueError(f"{key} is not a state variable of the model")


def initial_values(model: CompiledModel, data: pd.DataFrame,
                   state_ini: Optional[Mapping[str, float]] = None) -> pd.Series:
    """
    Starting values of the initial state.

    The source starts at the mean of its observations at time zero (100 if
    there are none), all other state variables at zero.
    """
    values = {f"{box}_0": 0.0 for box in model.state_variables}
    at_zero = data.loc[(data["name"] == model.source) & (data["time"] == 0), "value"]
    values[f"{model.state_variables[0]}_0"] = float(at_zero.mean()) if len(at_zero) else 100.0
    for key, value in ({} if state_ini is None else dict(state_ini)).items():
        values[initial_value_name(model, key)] = float(value)
    return pd.Series(values, dtype=float)


def fixed_parameters(model: CompiledModel, fixed_parms: Optional[Sequence[str]]) -> List[str]:
    """
    Model parameters kept at their starting values.

    Fixing a formation fraction fixes all fractions of its group, since they
    share their ILR coordinates.
    """
    fixed = set(fixed_parms or ())
    unknown = sorted(fixed - set(model.parameter_names))
    if unknown:
        raise ValueError(f"Parameters {unknown} can not be fixed, they are not in the model")
    for fractions, _ in model.fraction_groups.values():
        if fixed.intersection(fractions):
            fixed.update(fractions)
    return [p for p in model.parameter_names if p in fixed]


def error_parameter_names(error_model: ErrorModel, variables: Sequence[str]) -> List[str]:
    if error_model is ErrorModel.CONST:
        return ["sigma"]
    if error_model is ErrorModel.OBS:
        return [f"sigma_{v}" for v in variables]
    return ["sigma_low", "rsd_high"]


def sigma_twocomp(y, sigma_low: float, rsd_high: float) -> np.ndarray:
    """
    Two-component error model.

    Standard deviation sqrt(sigma_low^2 + rsd_high^2 * y^2), i.e. constant
    for small values and proportional to the value for large ones.
    """
    y = np.asarray(y, dtype=float)
    return np.sqrt(sigma_low ** 2 + y ** 2 * rsd_high ** 2)


# =============================================================================
# OBJECTIVE
# =============================================================================

class _Objective:
    """Predictions, residuals and likelihood as functions of the optimized parameters"""

    def __init__(self, model: CompiledModel, data: pd.DataFrame, start: pd.Series,
                 optimized: Sequence[str], error_model: ErrorModel,
                 variables: Sequence[str], solver: Mapping, anchor=None):
        self.model = model
        self.start = start
        self.optimized = list(optimized)
        # Penalties grow with the distance from the last parameter vector
        # that could be integrated, or from the anchor before there is one
        self.anchor = self.x0 if anchor is None else np.asarray(anchor, dtype=float)
        self.last_good = None
        self.initial_names = [f"{box}_0" for box in model.state_variables]
        self.error_model = error_model
        self.solver = dict(solver)

        times = data["time"].to_numpy(dtype=float)
        self.values = data["value"].to_numpy(dtype=float)
        self.times = np.unique(times)
        self._time_index = np.searchsorted(self.times, times)
        self._columns = list(model.observed_variables)
        self._variable_index = data["name"].map(
            {v: i for i, v in enumerate(self._columns)}).to_numpy()
        self.error_index = data["name"].map(
            {v: i for i, v in enumerate(variables)}).to_numpy()

    @property
    def x0(self) -> np.ndarray:
        return self.start.loc[self.optimized].to_numpy(dtype=float)

    def parameters(self, x):
        """Model parameters (natural scale) and initial state for a parameter vector"""
        full = self.start.copy()
        full.loc[self.optimized] = x
        odeini = {box: float(full[f"{box}_0"]) for box in self.model.state_variables}
        odeparms = to_natural(self.model, full.drop(self.initial_names))
        return odeparms, odeini

    def predicted(self, x) -> np.ndarray:
        """Predictions matching the rows of the observed data"""
        odeparms, odeini = self.parameters(x)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            out = predict(self.model, odeparms, odeini, self.times, **self.solver)
        self.last_good = np.array(x, dtype=float)
        return out[self._columns].to_numpy()[self._time_index, self._variable_index]

    def penalty_scale(self, x) -> float:
        """Factor >= 1 increasing with the distance from integrable parameters"""
        reference = self.anchor if self.last_good is None else self.last_good
        distance = float(np.linalg.norm(np.asarray(x, dtype=float) - reference))
        return 1.0 + distance if np.isfinite(distance) else PENALTY

    def residuals(self, x, sigma=None) -> np.ndarray:
        try:
            pred = self.predicted(x)
        except IntegrationFailure:
            return np.full(len(self.values), PENALTY_RESIDUAL * self.penalty_scale(x))
        residuals = pred - self.values
        return residuals if sigma is None else residuals / sigma

    def sigma(self, errparms, pred) -> np.ndarray:
        """Standard deviation of each observation"""
        errparms = np.asarray(errparms, dtype=float)
        if self.error_model is ErrorModel.CONST:
            return np.full(len(self.values), errparms[0])
        if self.error_model is ErrorModel.OBS:
            return errparms[self.error_index]
        return sigma_twocomp(pred, errparms[0], errparms[1])

    def nll(self, x, errparms) -> float:
        """Negative log-likelihood"""
        try:
            pred = self.predicted(x)
        except IntegrationFailure:
            return PENALTY * self.penalty_scale(x)
        sigma = self.sigma(errparms, pred)
        if not np.all(np.isfinite(sigma)) or np.any(sigma <= 0):
            return PENALTY
        return float(-np.sum(stats.norm.logpdf(self.values, pred, sigma)))


# =============================================================================
# ALGORITHMS
# =============================================================================

class _Optimization(NamedTuple):
    converged: bool
    message: str
    iterations: int
    nfev: int


def _rms(residuals) -> float:
    return max(float(np.sqrt(np.mean(np.square(residuals)))), MIN_SIGMA)


def _estimate_error_parameters(objective: _Objective, x, start=None) -> np.ndarray:
    """Maximum likelihood error model parameters for fixed predictions"""
    pred = objective.predicted(x)
    residuals = objective.values - pred

    if objective.error_model is ErrorModel.CONST:
        return np.array([_rms(residuals)])

    if objective.error_model is ErrorModel.OBS:
        n = int(np.max(objective.error_index)) + 1
        return np.array([_rms(residuals[objective.error_index == i]) for i in range(n)])

    if start is None:
        start = [ERROR_DEFAULTS["sigma_low"], ERROR_DEFAULTS["rsd_high"]]

    def nll(log_errparms):
        sigma = sigma_twocomp(pred, *np.exp(log_errparms))
        return -np.sum(stats.norm.logpdf(objective.values, pred, sigma))

    result = minimize(nll, np.log(start), method="Nelder-Mead")
    return np.exp(result.x)


def _integrable(objective: _Objective, x, info: _Optimization):
    """
    Fall back to the last parameters with a trajectory if the optimizer
    ended where none can be computed. The fit is then not converged.
    """
    try:
        objective.predicted(x)
    except IntegrationFailure as exc:
        if objective.last_good is None:
            raise IntegrationFailure(
                f"No trajectory could be computed for any of the parameter sets tried ({exc})"
            ) from exc
        return objective.last_good.copy(), info._replace(
            converged=False,
            message=f"Optimizer stopped at parameters without a trajectory ({exc})")
    return x, info


def _fit_ols(objective: _Objective, x0, maxit: int, sigma=None):
    result = least_squares(objective.residuals, x0, kwargs={"sigma": sigma}, max_nfev=maxit)
    return _integrable(objective, result.x, _Optimization(
        result.status > 0, str(result.message), int(result.njev or 0), int(result.nfev)))


def _fit_direct(objective: _Objective, x0, err0, maxit: int):
    """Joint minimization of the negative log-likelihood, error parameters on log scale"""
    k = len(x0)

    def nll(theta):
        return objective.nll(theta[:k], np.exp(theta[k:]))

    result = minimize(nll, np.concatenate([x0, np.log(err0)]), method="L-BFGS-B",
                      options={"maxiter": maxit})
    x, info = _integrable(objective, result.x[:k], _Optimization(
        bool(result.success), str(result.message), int(result.nit), int(result.nfev)))
    return x, np.exp(result.x[k:]), info


def _fit_irls(objective: _Objective, x0, maxit: int, tol: float, max_iter: int, quiet: bool):
    """Iteratively reweighted least squares, alternating with error model estimation"""
    x, info = _fit_ols(objective, x0, maxit)
    errparms = _estimate_error_parameters(objective, x)
    nfev = info.nfev

    for iteration in range(1, max_iter + 1):
        sigma = objective.sigma(errparms, objective.predicted(x))
        x, info = _fit_ols(objective, x, maxit, sigma=sigma)
        nfev += info.nfev
        updated = _estimate_error_parameters(objective, x, errparms)
        change = float(np.sum((updated - errparms) ** 2))
        errparms = updated
        if not quiet:
            print(f"IRLS iteration {iteration}: sum of squared changes "
                  f"in error model parameters {change:.3g}")
        if change < tol:
            return x, errparms, _Optimization(info.converged, info.message, iteration, nfev)

    return x, errparms, _Optimization(
        False, f"No convergence of error model parameters in {max_iter} reweighting iterations",
        max_iter, nfev)


def _covariance(objective: _Objective, x, errparms) -> np.ndarray:
    """Inverse Hessian of the negative log-likelihood, error parameters on natural scale"""
    k = len(x)
    theta = np.concatenate([x, errparms])

    def nll(theta):
        return objective.nll(theta[:k], theta[k:])

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        hessian = np.atleast_2d(nd.Hessian(nll)(theta))

    try:
        if not np.all(np.isfinite(hessian)):
            raise np.linalg.LinAlgError("the Hessian is not finite")
        magnitudes = np.abs(np.linalg.eigvalsh(hessian))
        if magnitudes.min() <= HESSIAN_RTOL * magnitudes.max():
            raise np.linalg.LinAlgError("the Hessian is numerically singular, "
                                        "some parameters are not identifiable")
        covariance = np.linalg.inv(hessian)
    except np.linalg.LinAlgError as exc:
        warnings.warn(f"Could not invert the Hessian of the negative log-likelihood ({exc}), "
                      "standard errors are not available",
                      SingularCovarianceWarning, stacklevel=3)
        return np.full((len(theta), len(theta)), np.nan)

    if np.any(np.diag(covariance) <= 0):
        warnings.warn("The covariance matrix has non-positive variances, "
                      "some standard errors are not available",
                      SingularCovarianceWarning, stacklevel=3)
    return covariance


def _resolve_algorithm(error_model: ErrorModel, algorithm) -> FitAlgorithm:
    algorithm = FitAlgorithm.parse(algorithm)
    if algorithm is FitAlgorithm.AUTO:
        return FitAlgorithm.OLS if error_model is ErrorModel.CONST else FitAlgorithm.DIRECT
    if algorithm is FitAlgorithm.OLS and error_model is not ErrorModel.CONST:
        raise ValueError("Ordinary least squares can only be used with the error model 'const'")
    if algorithm is FitAlgorithm.IRLS and error_model is ErrorModel.CONST:
        raise ValueError("IRLS can only be used with the error models 'obs' and 'tc'")
    return algorithm


# =============================================================================
# RESULTS
# =============================================================================

@dataclass(frozen=True, eq=False)
class FitResult:
    """
    Result of fitting a kinetic model.

    Attributes:
        model: The fitted model
        data: Observations with predicted values, residuals and standard deviations
        error_model: Error model
        algorithm: Algorithm used for the fit
        solver: Settings used for predictions (solution type, integrator)
        start: Starting values of the optimized parameters (transformed scale)
        fixed: Values of fixed parameters and initial values (natural scale)
        estimates: Optimized parameters (transformed scale) followed by the
            error model parameters (natural scale)
        covariance: Covariance matrix of the estimates
        bparms_ode: All model parameters, natural scale
        bparms_state: Initial values by state variable
        error_parameters: Error model parameters
        loglik: Log-likelihood at the estimates
        converged: Whether the optimizer reported convergence
        message: Message of the optimizer
        iterations: Number of iterations
        nfev: Number of objective evaluations
        time_elapsed: Wall clock time of the fit in seconds
        settings: Arguments of the call to fit, used by update
    """
    model: CompiledModel
    data: pd.DataFrame
    error_model: ErrorModel
    algorithm: FitAlgorithm
    solver: Mapping
    start: pd.Series
    fixed: pd.Series
    estimates: pd.Series
    covariance: pd.DataFrame
    bparms_ode: pd.Series
    bparms_state: pd.Series
    error_parameters: pd.Series
    loglik: float
    converged: bool
    message: str
    iterations: int
    nfev: int
    time_elapsed: float
    settings: Mapping = field(default_factory=dict, repr=False)

    @property
    def solution_type(self) -> SolutionType:
        return self.solver["solution_type"]

    @property
    def nobs(self) -> int:
        return len(self.data)

    @property
    def n_optim(self) -> int:
        """Number of optimized parameters, error model parameters included"""
        return len(self.estimates)

    @property
    def df(self) -> int:
        return self.nobs - self.n_optim

    @property
    def aic(self) -> float:
        return 2 * self.n_optim - 2 * self.loglik

    @property
    def bic(self) -> float:
        return np.log(self.nobs) * self.n_optim - 2 * self.loglik

    @property
    def std_errors(self) -> pd.Series:
        with np.errstate(invalid="ignore"):
            se = np.sqrt(np.diag(self.covariance.to_numpy()))
        return pd.Series(se, index=self.estimates.index)

    def parms(self, transformed: bool = False) -> pd.Series:
        """Initial values, model parameters and error model parameters"""
        initials = self.bparms_state.rename(lambda box: f"{box}_0")
        ode = to_transformed(self.model, self.bparms_ode) if transformed else self.bparms_ode
        return pd.concat([initials, ode, self.error_parameters])

    def transformed_table(self, level: float = 0.95) -> pd.DataFrame:
        """Estimates with symmetric confidence intervals on the optimization scale"""
        se = self.std_errors
        q = stats.t.ppf(1 - (1 - level) / 2, self.df) if self.df > 0 else np.nan
        return pd.DataFrame({
            "estimate": self.estimates,
            "std_error": se,
            "lower": self.estimates - q * se,
            "upper": self.estimates + q * se,
        })

    def natural_table(self, level: float = 0.95) -> pd.DataFrame:
        """
        Estimates on the natural scale with back-transformed confidence intervals.

        Intervals of formation fractions sharing their ILR coordinates with
        other fractions can not be back-transformed and are flagged in the
        ci_translatable column.
        """
        table = self.transformed_table(level)
        initial_names = {f"{box}_0" for box in self.model.state_variables}
        rows = {}

        for name in table.index:
            if name in initial_names:
                rows[name] = (table.at[name, "estimate"], table.at[name, "lower"],
                              table.at[name, "upper"], True)

        for p in self.model.parameter_names:
            if p in self.fixed.index:
                continue
            mapped = None
            names = transformed_names(self.model, p)
            if len(names) == 1:
                mapped = natural_interval(self.model, names[0], table.at[names[0], "lower"],
                                          table.at[names[0], "upper"])
            if mapped is None:
                rows[p] = (self.bparms_ode[p], np.nan, np.nan, False)
            else:
                rows[p] = (self.bparms_ode[p], mapped[1], mapped[2], True)

        for name in self.error_parameters.index:
            rows[name] = (table.at[name, "estimate"], table.at[name, "lower"],
                          table.at[name, "upper"], True)

        return pd.DataFrame.from_dict(
            rows, orient="index", columns=["estimate", "lower", "upper", "ci_translatable"])

    def confint(self, level: float = 0.95, transformed: bool = False) -> pd.DataFrame:
        """Confidence intervals of the optimized parameters"""
        table = self.transformed_table(level) if transformed else self.natural_table(level)
        return table[["lower", "upper"]]

    def predict(self, outtimes=None, map_output: bool = True) -> pd.DataFrame:
        """Predictions of the fitted model, by default on a grid over the observation period"""
        if outtimes is None:
            outtimes = np.linspace(0, self.data["time"].max(), 101)
        return predict(self.model, self.bparms_ode, self.bparms_state, outtimes,
                       map_output=map_output, **self.solver)

    def residuals(self, standardized: bool = False) -> pd.Series:
        """Observed minus predicted values, optionally divided by their standard deviation"""
        residuals = self.data["residual"]
        return residuals / self.data["std"] if standardized else residuals

    def errmin(self, alpha: float = 0.05) -> pd.DataFrame:
        """FOCUS chi-squared error levels"""
        return analysis.chi2_error_level(self, alpha)

    def endpoints(self) -> "analysis.Endpoints":
        """Disappearance times and formation fractions"""
        return analysis.endpoints(self)

    def update(self, **changes) -> "FitResult":
        """Repeat the fit with some arguments changed"""
        return fit(**{**self.settings, **changes})

    def __str__(self):
        errmin = self.errmin()
        errmin["err_min"] = errmin["err_min"] * 100
        lines = [
            f"Kinetic model fitted with error model {self.error_model.value} "
            f"and algorithm {self.algorithm.value}",
            "",
            "Equations:",
            *self.model.equations().values(),
            "",
            f"Model predictions using solution type {self.solution_type.value}",
            f"Fitted in {self.time_elapsed:.3f} s with {self.nfev} model solutions",
            f"{'Converged' if self.converged else 'Not converged'}: {self.message}",
            "",
            "Starting values for parameters to be optimised:",
            self.start.to_string(),
        ]
        if len(self.fixed):
            lines += ["", "Fixed parameter values:", self.fixed.to_string()]
        lines += [
            "",
            "Optimised, transformed parameters with symmetric confidence intervals:",
            self.transformed_table().to_string(),
            "",
            "Estimated parameters with back-transformed confidence intervals:",
            self.natural_table().to_string(),
            "",
            f"Log-likelihood: {self.loglik:.4f}  AIC: {self.aic:.4f}  BIC: {self.bic:.4f}",
            "",
            "FOCUS chi2 error levels in percent:",
            errmin.to_string(float_format=lambda v: f"{v:.3g}"),
            "",
            str(self.endpoints()),
        ]
        return "\n".join(lines)


# =============================================================================
# FITTING
# =============================================================================

def _is_auto(value) -> bool:
    return value is None or (isinstance(value, str) and value == "auto")


def fit(model, observed,
        parms_ini="auto",
        state_ini="auto",
        err_ini="auto",
        fixed_parms: Optional[Sequence[str]] = None,
        fixed_initials: Optional[Sequence[str]] = None,
        solution_type="auto",
        use_compiled="auto",
        method_ode: str = DEFAULT_ODE_METHOD,
        atol: float = DEFAULT_ATOL,
        rtol: float = DEFAULT_RTOL,
        error_model="const",
        error_model_algorithm="auto",
        reweight_tol: float = DEFAULT_REWEIGHT_TOL,
        reweight_max_iter: int = DEFAULT_REWEIGHT_MAX_ITER,
        maxit: int = DEFAULT_MAXIT,
        quiet: bool = True) -> FitResult:
    """
    Fit a kinetic model to observed data.

    Args:
        model: CompiledModel, or a submodel type for a parent-only model of
            a variable named "parent"
        observed: Long-format DataFrame (name, time, value) or records
        parms_ini: Starting values of model parameters (natural scale), "auto"
            for defaults
        state_ini: Starting values of the initial state by state variable,
            "auto" for defaults
        err_ini: Starting values of the error model parameters, "auto" to
            estimate them from the least squares fit
        fixed_parms: Model parameters kept at their starting values
        fixed_initials: Initial values kept fixed; by default all except the
            source
        solution_type: "auto", "analytical", "eigen" or "numerical"
        use_compiled: Use native derivative code ("auto", True, False)
        method_ode: Integration method for numerical solutions
        atol: Absolute tolerance of the integrator
        rtol: Relative tolerance of the integrator
        error_model: "const", "obs" or "tc"
        error_model_algorithm: "auto", "OLS", "direct" or "IRLS"
        reweight_tol: Convergence tolerance of IRLS
        reweight_max_iter: Maximum number of IRLS iterations
        maxit: Maximum number of optimizer iterations
        quiet: Suppress messages

    Returns:
        FitResult
    """
    settings = dict(locals())
    started = perf_counter()

    if isinstance(model, (str, SubmodelType)):
        model = compile_model(parent=model, quiet=True)
        settings["model"] = model
    data = observed_data(model, observed)
    error_model = ErrorModel.parse(error_model)
    algorithm = _resolve_algorithm(error_model, error_model_algorithm)

    if _is_auto(solution_type):
        solution_type = default_solution_type(model)
    solution_type = SolutionType.parse(solution_type)
    if solution_type is SolutionType.ANALYTICAL and len(model.observed_variables) > 1:
        raise ValueError("Analytical solutions are only implemented for models "
                         "with one observed variable")
    if solution_type is SolutionType.EIGEN and not model.has_coefficient_matrix:
        raise ValueError("Eigenvalue based solutions are only possible for models "
                         "with a coefficient matrix")
    solver = {"solution_type": solution_type, "use_compiled": use_compiled,
              "method": method_ode, "atol": atol, "rtol": rtol}

    natural = default_parameters(model, None if _is_auto(parms_ini) else parms_ini)
    initials = initial_values(model, data, None if _is_auto(state_ini) else state_ini)

    fixed_natural = fixed_parameters(model, fixed_parms)
    if fixed_initials is None:
        fixed_initials = [f"{box}_0" for box in model.state_variables[1:]]
    fixed_initials = [initial_value_name(model, name) for name in fixed_initials]

    transformed = to_transformed(model, natural)
    fixed_transformed = {t for p in fixed_natural for t in transformed_names(model, p)}
    optimized = ([name for name in initials.index if name not in fixed_initials]
                 + [name for name in transformed.index if name not in fixed_transformed])
    if not optimized:
        raise ValueError("At least one model parameter or initial value has to be optimised")

    present = set(data["name"])
    variables = [v for v in model.observed_variables if v in present]
    error_names = error_parameter_names(error_model, variables)

    defaults = pd.concat([initial_values(model, data),
                          to_transformed(model, default_parameters(model))])
    objective = _Objective(model, data, pd.concat([initials, transformed]), optimized,
                           error_model, variables, solver,
                           anchor=defaults.loc[optimized].to_numpy(dtype=float))
    x0 = objective.x0

    if not quiet:
        print(f"Fitting {len(optimized)} parameters to {len(data)} observations "
              f"({algorithm.value}, error model {error_model.value})")

    if algorithm is FitAlgorithm.OLS:
        x, info = _fit_ols(objective, x0, maxit)
        errparms = _estimate_error_parameters(objective, x)
    elif algorithm is FitAlgorithm.DIRECT:
        x_ols, info_ols = _fit_ols(objective, x0, maxit)
        if _is_auto(err_ini):
            err0 = _estimate_error_parameters(objective, x_ols)
        else:
            try:
                err0 = np.array([float(err_ini[name]) for name in error_names])
            except KeyError as exc:
                raise ValueError(f"No starting value for error model parameter {exc}") from None
        x, errparms, info = _fit_direct(objective, x_ols, err0, maxit)
        info = info._replace(nfev=info.nfev + info_ols.nfev)
    else:
        x, errparms, info = _fit_irls(objective, x0, maxit, reweight_tol,
                                      reweight_max_iter, quiet)

    if not info.converged:
        warnings.warn(f"Optimisation did not converge: {info.message}",
                      NonConvergenceWarning, stacklevel=2)
    elif not quiet:
        print(f"Optimisation successfully terminated: {info.message}")

    names = optimized + error_names
    covariance = pd.DataFrame(_covariance(objective, x, errparms), index=names, columns=names)

    odeparms, odeini = objective.parameters(x)
    pred = objective.predicted(x)
    data = data.assign(predicted=pred, residual=data["value"].to_numpy() - pred,
                       std=objective.sigma(errparms, pred))

    fixed = pd.concat([initials.loc[fixed_initials], natural.loc[fixed_natural]])

    return FitResult(
        model=model,
        data=data,
        error_model=error_model,
        algorithm=algorithm,
        solver=solver,
        start=pd.Series(x0, index=optimized),
        fixed=fixed,
        estimates=pd.Series(np.concatenate([x, errparms]), index=names),
        covariance=covariance,
        bparms_ode=odeparms.loc[list(model.parameter_names)],
        bparms_state=pd.Series(odeini, dtype=float),
        error_parameters=pd.Series(errparms, index=error_names),
        loglik=-objective.nll(x, errparms),
        converged=info.converged,
        message=info.message,
        iterations=info.iterations,
        nfev=info.nfev,
        time_elapsed=perf_counter() - started,
        settings=settings,
    )


# =============================================================================
# SYNTHETIC DATA
# =============================================================================

def create_synthetic_data(prediction: pd.DataFrame, sdfunc, n: int = 1, reps: int = 1,
                          digits: int = 1, lod: float = 0.1, seed=None) -> List[pd.DataFrame]:
    """
    Noisy data sets in long format from a model prediction.

    Args:
        prediction: Output of predict (a time column plus one column per variable)
        sdfunc: Standard deviation as a function of the predicted values
        n: Number of data sets
        reps: Replicates per variable and sampling time
        digits: Number of decimal digits of the generated values
        lod: Values below this limit of detection are set to NaN
        seed: Seed for numpy.random.default_rng

    Returns:
        List of n DataFrames with columns name, time and value
    """
    rng = np.random.default_rng(seed)
    long = prediction.melt(id_vars="time", var_name="name", value_name="predicted")
    long = long.loc[long.index.repeat(reps)].reset_index(drop=True)
    predicted = long["predicted"].to_numpy(dtype=float)

    datasets = []
    for _ in range(n):
        sd = np.asarray(sdfunc(predicted), dtype=float)
        value = np.round(predicted + rng.normal(0.0, 1.0, len(predicted)) * sd, digits)
        value[value < lod] = np.nan
        datasets.append(pd.DataFrame({"name": long["name"].to_numpy(),
                                      "time": long["time"].to_numpy(),
                                      "value": value}))
    return datasets
