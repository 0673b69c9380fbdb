"""
Trajectory solver for compiled kinetic models.

Three solution strategies are available:

    analytical  closed-form parent-only solutions (one observed variable)
    eigen       eigen-decomposition of the coefficient matrix (linear models)
    numerical   numerical integration with scipy.integrate.solve_ivp

The initial state is the state at time zero. Output times must be
non-negative but may be unsorted and may repeat.
"""

from typing import Mapping, Sequence, Union

import numpy as np
import pandas as pd
from scipy.integrate import solve_ivp

from .compiler import CompiledModel, require_all_types
from .models import (
    EvaluationStrategy, IntegrationFailure, SolutionType, SubmodelType, UseOfFF,
)
from .solutions import (
    dfop_solution, fomc_solution, hs_solution, iore_solution,
    logistic_solution, sfo_solution, sforb_solution,
)


DEFAULT_ODE_METHOD = "LSODA"
DEFAULT_ATOL = 1e-8
DEFAULT_RTOL = 1e-10


# =============================================================================
# ANALYTICAL SOLUTIONS
# =============================================================================

def _value(parms: Mapping[str, float], name: str) -> float:
    try:
        return float(parms[name])
    except KeyError:
        raise ValueError(f"No value given for parameter {name}") from None


def _decline_rate_name(model: CompiledModel, box: str, prefix: str = "k") -> str:
    if model.use_of_ff is UseOfFF.MIN:
        return f"{prefix}_{box}_sink"
    return f"{prefix}_{box}"


def _sfo(model, parms, initial, t):
    box = model.state_variables[0]
    return sfo_solution(t, initial[box], _value(parms, _decline_rate_name(model, box)))


def _fomc(model, parms, initial, t):
    box = model.state_variables[0]
    return fomc_solution(t, initial[box], _value(parms, "alpha"), _value(parms, "beta"))


def _iore(model, parms, initial, t):
    box = model.state_variables[0]
    return iore_solution(t, initial[box],
                         _value(parms, _decline_rate_name(model, box, "k__iore")),
                         _value(parms, f"N_{box}"))


def _dfop(model, parms, initial, t):
    box = model.state_variables[0]
    return dfop_solution(t, initial[box], _value(parms, "k1"), _value(parms, "k2"),
                         _value(parms, "g"))


def _hs(model, parms, initial, t):
    box = model.state_variables[0]
    return hs_solution(t, initial[box], _value(parms, "k1"), _value(parms, "k2"),
                       _value(parms, "tb"))


def _sforb(model, parms, initial, t):
    name = model.source
    free = model.state_variables[0]
    return sforb_solution(t, initial[free],
                          _value(parms, f"k_{name}_free_bound"),
                          _value(parms, f"k_{name}_bound_free"),
                          _value(parms, _decline_rate_name(model, free)))


def _logistic(model, parms, initial, t):
    box = model.state_variables[0]
    return logistic_solution(t, initial[box], _value(parms, "kmax"), _value(parms, "k0"),
                             _value(parms, "r"))


ANALYTICAL_SOLUTIONS = {
    SubmodelType.SFO: _sfo,
    SubmodelType.FOMC: _fomc,
    SubmodelType.IORE: _iore,
    SubmodelType.DFOP: _dfop,
    SubmodelType.HS: _hs,
    SubmodelType.SFORB: _sforb,
    SubmodelType.LOGISTIC: _logistic,
}

require_all_types(ANALYTICAL_SOLUTIONS, "Analytical solution")


# =============================================================================
# HELPERS
# =============================================================================

def default_solution_type(model: CompiledModel) -> SolutionType:
    """
    Preferred solution type for a model.

    Analytical for one observed variable, numerical integration of native
    code if available, the eigenvalue method for linear models, and
    interpreted numerical integration otherwise.
    """
    if len(model.observed_variables) == 1:
        return SolutionType.ANALYTICAL
    if model.evaluation_strategy is EvaluationStrategy.NATIVE:
        return SolutionType.NUMERICAL
    if model.has_coefficient_matrix:
        return SolutionType.EIGEN
    return SolutionType.NUMERICAL


def initial_state(model: CompiledModel, odeini) -> np.ndarray:
    """Initial values ordered like ``model.state_variables``"""
    if isinstance(odeini, (Mapping, pd.Series)):
        missing = [box for box in model.state_variables if box not in odeini]
        if missing:
            raise ValueError(f"No initial values given for state variables {missing}")
        return np.array([float(odeini[box]) for box in model.state_variables])
    values = np.asarray(odeini, dtype=float).ravel()
    if len(values) != len(model.state_variables):
        raise ValueError(f"Expected {len(model.state_variables)} initial values, "
                         f"got {len(values)}")
    return values


def _check_parameters(model: CompiledModel, odeparms: Mapping[str, float]):
    missing = [p for p in model.parameter_names if p not in odeparms]
    if missing:
        raise ValueError(f"No values given for parameters {missing}")


def _use_native(model: CompiledModel, use_compiled) -> bool:
    if use_compiled is False:
        return False
    if model.evaluation_strategy is EvaluationStrategy.INTERPRETED:
        if use_compiled is True:
            raise ValueError("The model has no compiled derivative code")
        return False
    if not model.native.loaded:
        if use_compiled is True:
            raise RuntimeError("The compiled derivative code of this model has been released")
        return False
    return True


def derivative_function(model: CompiledModel, odeparms: Mapping[str, float],
                        use_compiled="auto"):
    """Right-hand side ``f(t, y)`` for scipy.integrate.solve_ivp"""
    _check_parameters(model, odeparms)

    if _use_native(model, use_compiled):
        native = model.native
        p = native.pack_parameters(odeparms)
        return lambda t, y: native(t, y, p)

    parms = {name: float(odeparms[name]) for name in model.parameter_names}
    boxes = model.state_variables
    equations = [model.differential_equations[box] for box in boxes]

    def rhs(t, y):
        state = dict(zip(boxes, y))
        return np.array([eq.evaluate(state, parms, t) for eq in equations], dtype=float)

    return rhs


def numeric_coefficient_matrix(model: CompiledModel, odeparms: Mapping[str, float]) -> np.ndarray:
    """Coefficient matrix with parameter values substituted"""
    if model.coefficient_matrix is None:
        raise ValueError("The eigenvalue method requires a model with a coefficient matrix")
    _check_parameters(model, odeparms)
    evaluate = np.vectorize(lambda entry: float(entry.evaluate({}, odeparms)), otypes=[float])
    return evaluate(model.coefficient_matrix)


# =============================================================================
# SOLVERS
# =============================================================================

def _solve_eigen(model, odeparms, y0, outtimes) -> np.ndarray:
    A = numeric_coefficient_matrix(model, odeparms)
    try:
        values, vectors = np.linalg.eig(A)
        c = np.linalg.solve(vectors, y0)
    except np.linalg.LinAlgError as exc:
        raise IntegrationFailure(
            f"Eigenvalue solution failed ({exc})"
        ) from exc
    states = vectors @ (c[:, None] * np.exp(np.outer(values, outtimes)))
    return np.real(states)


def _solve_numerical(model, odeparms, y0, outtimes, use_compiled, method, atol, rtol) -> np.ndarray:
    times, inverse = np.unique(outtimes, return_inverse=True)
    if times[-1] == 0:
        return np.repeat(y0[:, None], len(outtimes), axis=1)

    rhs = derivative_function(model, odeparms, use_compiled)
    solution = solve_ivp(rhs, (0.0, times[-1]), y0, method=method, t_eval=times,
                         atol=atol, rtol=rtol)
    if solution.status != 0 or solution.y.shape[1] != len(times):
        raise IntegrationFailure(
            "Differential equations were not integrated for all output times "
            f"({solution.message})"
        )
    return solution.y[:, inverse]


def predict(model: CompiledModel,
            odeparms: Mapping[str, float],
            odeini: Union[Mapping[str, float], Sequence[float]],
            outtimes: Sequence[float] = np.arange(0, 120.1, 0.1),
            solution_type: Union[str, SolutionType] = "numerical",
            use_compiled="auto",
            method: str = DEFAULT_ODE_METHOD,
            atol: float = DEFAULT_ATOL,
            rtol: float = DEFAULT_RTOL,
            map_output: bool = True) -> pd.DataFrame:
    """
    Produce predictions from a kinetic model for given parameters.

    Args:
        model: CompiledModel
        odeparms: Model parameters by name
        odeini: Initial values of the state variables, by name or in the order
            of ``model.state_variables``
        outtimes: Output times (non-negative)
        solution_type: "analytical", "eigen", "numerical" or "auto"
        use_compiled: "auto" uses native derivative code when the model has it,
            False never does, True requires it
        method: Integration method passed to solve_ivp
        atol: Absolute error tolerance of the integrator
        rtol: Relative error tolerance of the integrator
        map_output: Return observed variables (True) or state variables (False).
            Analytical solutions of SFORB models only give the observed variable,
            and need a zero initial value of the bound state.

    Returns:
        DataFrame with a "time" column and one column per variable, one row
        per output time in the given order

    Raises:
        IntegrationFailure: If the trajectory is not finite at all output times
    """
    outtimes = np.asarray(outtimes, dtype=float).ravel()
    if len(outtimes) == 0:
        raise ValueError("At least one output time is required")
    if not np.all(np.isfinite(outtimes)) or np.any(outtimes < 0):
        raise ValueError("Output times must be finite and non-negative")

    if isinstance(solution_type, str) and solution_type == "auto":
        solution_type = default_solution_type(model)
    solution_type = SolutionType.parse(solution_type)
    y0 = initial_state(model, odeini)

    if solution_type is SolutionType.ANALYTICAL:
        if len(model.observed_variables) != 1:
            raise ValueError("Analytical solutions are only available for models "
                             "with one observed variable")
        # Closed forms start from the first state variable only
        if np.any(y0[1:] != 0):
            raise ValueError("Analytical solutions require zero initial values for "
                             f"{', '.join(model.state_variables[1:])}")
        if not map_output and len(model.state_variables) > 1:
            raise ValueError("Analytical solutions do not give the state variables "
                             f"{', '.join(model.state_variables)} separately")
        initial = dict(zip(model.state_variables, y0))
        values = ANALYTICAL_SOLUTIONS[model.source_type](model, odeparms, initial, outtimes)
        if not np.all(np.isfinite(values)):
            raise IntegrationFailure("Analytical solution is not finite at all output times")
        column = model.source if map_output else model.state_variables[0]
        return pd.DataFrame({"time": outtimes, column: values})

    if solution_type is SolutionType.EIGEN:
        states = _solve_eigen(model, odeparms, y0, outtimes)
    else:
        states = _solve_numerical(model, odeparms, y0, outtimes, use_compiled,
                                  method, atol, rtol)

    if not np.all(np.isfinite(states)):
        raise IntegrationFailure(
            "Differential equations were not integrated for all output times because "
            "non-finite values occurred"
        )

    out = pd.DataFrame(states.T, columns=list(model.state_variables))
    out.insert(0, "time", outtimes)
    if not map_output:
        return out

    mapped = pd.DataFrame({"time": outtimes})
    for name, boxes in model.observed_to_state_map.items():
        mapped[name] = out[list(boxes)].sum(axis=1).to_numpy()
    return mapped
