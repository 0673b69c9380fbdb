"""
Transformation of model parameters for unconstrained optimization.

Natural parameters carry constraints: rate constants and shape parameters are
positive, formation fractions originating from one compartment lie on a
simplex (together with the implicit fraction going to sink). Internally, the
optimizer works on transformed parameters that can take any real value:

    k_*, k__iore_*, N_*, alpha, beta, k1, k2, tb, kmax, k0, r   ->  log_<name>
    g (DFOP)                                                   ->  logit_g
    f_<origin>_to_* (one group per origin)                     ->  f_<origin>_ilr_<i>

The isometric log-ratio (ILR) transformation maps a group of n fractions
(including the sink slot, if any) to n - 1 coordinates. Its inverse returns
a valid point on the simplex for any real input, so no boundary violations
can occur during optimization. Initial values of state variables are not
transformed.
"""

from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.special import expit, logit

from .compiler import CompiledModel


POSITIVE_PARAMETERS = frozenset({"alpha", "beta", "k1", "k2", "tb", "kmax", "k0", "r"})


def ilr(x) -> np.ndarray:
    """
    Isometric log-ratio transformation of a composition.

    Args:
        x: Vector of D positive components

    Returns:
        Vector of D - 1 unconstrained coordinates
    """
    logs = np.log(np.asarray(x, dtype=float))
    D = len(logs)
    z = np.empty(D - 1)
    for i in range(1, D):
        z[i - 1] = np.sqrt(i / (i + 1)) * (np.mean(logs[:i]) - logs[i])
    return z


def invilr(z) -> np.ndarray:
    """
    Inverse isometric log-ratio transformation.

    Args:
        z: Vector of D - 1 real coordinates

    Returns:
        Composition of D components in [0, 1] summing to 1
    """
    z = np.append(np.asarray(z, dtype=float), 0.0)
    D = len(z)
    s = np.sqrt(np.arange(1, D + 1) * np.arange(2, D + 2))
    q = z / s
    y = np.empty(D)
    y[0] = np.sum(q)
    for i in range(2, D + 1):
        y[i - 1] = np.sum(q[i - 1:]) - np.sqrt((i - 1) / i) * z[i - 2]
    # Shifting by the maximum keeps the exponentials finite
    e = np.exp(y - np.max(y))
    return e / np.sum(e)


def is_positive_parameter(name: str) -> bool:
    return (name.startswith("k_") or name.startswith("k__iore_") or name.startswith("N_")
            or name in POSITIVE_PARAMETERS)


def _initial_value_names(model: CompiledModel) -> frozenset:
    return frozenset(f"{box}_0" for box in model.state_variables)


def ilr_names(model: CompiledModel, origin: str) -> List[str]:
    """Transformed names of the formation fraction group leaving origin"""
    fractions, sink = model.fraction_groups[origin]
    n = len(fractions) if sink else len(fractions) - 1
    return [f"f_{origin}_ilr_{i}" for i in range(1, n + 1)]


def _fraction_origins(model: CompiledModel) -> Dict[str, str]:
    return {f: origin for origin, (fractions, _) in model.fraction_groups.items()
            for f in fractions}


def to_transformed(model: CompiledModel, natural: Mapping[str, float]) -> pd.Series:
    """
    Transform natural parameters to the unconstrained scale.

    Parameters that are not model parameters (e.g. initial values) pass
    through unchanged. All fractions of a group have to be given together.
    """
    initial_names = _initial_value_names(model)
    origins = _fraction_origins(model)
    transformed: Dict[str, float] = {}
    done = set()

    for name, value in natural.items():
        value = float(value)
        if name in initial_names:
            transformed[name] = value
        elif name in origins:
            origin = origins[name]
            if origin in done:
                continue
            done.add(origin)
            fractions, sink = model.fraction_groups[origin]
            missing = [f for f in fractions if f not in natural]
            if missing:
                raise ValueError(f"Formation fractions {missing} are required together with {name}")
            composition = np.array([float(natural[f]) for f in fractions])
            if sink:
                composition = np.append(composition, 1 - composition.sum())
            if np.any(composition <= 0) or abs(composition.sum() - 1) > 1e-10:
                raise ValueError(f"Formation fractions from {origin} must be positive and sum to 1"
                                 + (", leaving a positive fraction for the sink" if sink else ""))
            transformed.update(zip(ilr_names(model, origin), ilr(composition)))
        elif name == "g":
            transformed["logit_g"] = float(logit(value))
        elif is_positive_parameter(name):
            transformed[f"log_{name}"] = np.log(value)
        else:
            transformed[name] = value

    return pd.Series(transformed, dtype=float)


def to_natural(model: CompiledModel, transformed: Mapping[str, float]) -> pd.Series:
    """
    Back-transform parameters to the natural scale.

    Yields positive rate constants and feasible formation fractions for any
    real-valued input.
    """
    ilr_origins = {name: origin for origin in model.fraction_groups
                   for name in ilr_names(model, origin)}
    natural: Dict[str, float] = {}
    done = set()

    for name, value in transformed.items():
        value = float(value)
        if name in ilr_origins:
            origin = ilr_origins[name]
            if origin in done:
                continue
            done.add(origin)
            names = ilr_names(model, origin)
            missing = [n for n in names if n not in transformed]
            if missing:
                raise ValueError(f"ILR coordinates {missing} are required together with {name}")
            fractions, _ = model.fraction_groups[origin]
            composition = invilr([float(transformed[n]) for n in names])
            natural.update(zip(fractions, composition[:len(fractions)]))
        elif name == "logit_g":
            natural["g"] = float(expit(value))
        elif name.startswith("log_") and is_positive_parameter(name[4:]):
            natural[name[4:]] = np.exp(value)
        else:
            natural[name] = value

    return pd.Series(natural, dtype=float)


def transformed_names(model: CompiledModel, natural_name: str) -> List[str]:
    """Transformed parameters that a natural parameter is mapped onto"""
    origins = _fraction_origins(model)
    if natural_name in origins:
        return ilr_names(model, origins[natural_name])
    if natural_name in _initial_value_names(model):
        return [natural_name]
    if natural_name == "g":
        return ["logit_g"]
    if is_positive_parameter(natural_name):
        return [f"log_{natural_name}"]
    return [natural_name]


def natural_interval(model: CompiledModel, name: str, lower: float,
                     upper: float) -> Optional[Tuple[str, float, float]]:
    """
    Natural-scale interval for a transformed parameter.

    Returns (natural name, lower, upper), or None where the interval can not
    be translated to a single natural parameter (ILR groups with more than
    one free fraction).
    """
    if name == "logit_g":
        return "g", float(expit(lower)), float(expit(upper))
    if name.startswith("log_") and is_positive_parameter(name[4:]):
        return name[4:], float(np.exp(lower)), float(np.exp(upper))
    for origin, (fractions, sink) in model.fraction_groups.items():
        if name in ilr_names(model, origin):
            if sink and len(fractions) == 1:
                return fractions[0], float(invilr([lower])[0]), float(invilr([upper])[0])
            return None
    return name, lower, upper
