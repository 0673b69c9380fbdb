"""
Numba-compiled derivative functions for kinetic models.

The symbolic differential equations of a model are lowered to an
array-indexed Python function

    def derivatives(time, y, p):
        f = np.empty(n)
        f[0] = ...
        return f

which is compiled eagerly with an explicit signature, so compilation happens
when the model is built and not during the first integration step. The
parameter vector ``p`` holds the model parameters in the order of
``CompiledModel.parameter_names``; ``NativeDerivatives.pack_parameters`` is
the companion function arranging them.

Compilation is serialized by a process-wide lock. The compiled function is
owned by its ``NativeDerivatives`` handle and dropped on ``release()``.
"""

import math
import threading
import warnings
from typing import Mapping, Optional, Sequence

import numba
import numpy as np
from numba import njit
from numba.core.errors import NumbaError

from .expressions import Expr
from .models import CompilationWarning


_COMPILE_LOCK = threading.Lock()
_SIGNATURE = "float64[::1](float64, float64[::1], float64[::1])"


def native_available() -> bool:
    """Whether native compilation is possible in this process"""
    return not numba.config.DISABLE_JIT


def generate_source(state_variables: Sequence[str], equations: Mapping[str, Expr],
                    parameter_names: Sequence[str], name: str = "derivatives") -> str:
    """Lower the differential equations to array-indexed Python source"""
    state_index = {box: i for i, box in enumerate(state_variables)}
    parameter_index = {p: i for i, p in enumerate(parameter_names)}

    lines = [f"def {name}(time, y, p):",
             f"    f = np.empty({len(state_variables)})"]
    for i, box in enumerate(state_variables):
        lines.append(f"    f[{i}] = {equations[box].lower(state_index, parameter_index)}")
    lines.append("    return f")
    return "\n".join(lines) + "\n"


class NativeDerivatives:
    """
    Handle to a natively compiled derivative function.

    Use ``pack_parameters`` to arrange a parameter mapping for ``__call__``.
    """

    def __init__(self, function, source: str, parameter_names: Sequence[str]):
        self._function = function
        self.source = source
        self.parameter_names = tuple(parameter_names)

    @property
    def loaded(self) -> bool:
        return self._function is not None

    def pack_parameters(self, parms: Mapping[str, float]) -> np.ndarray:
        """Parameter values in the order expected by the compiled function"""
        missing = [p for p in self.parameter_names if p not in parms]
        if missing:
            raise ValueError(f"Missing values for parameters: {', '.join(missing)}")
        return np.array([parms[p] for p in self.parameter_names], dtype=np.float64)

    def __call__(self, time: float, y: np.ndarray, p: np.ndarray) -> np.ndarray:
        if self._function is None:
            raise RuntimeError("Native derivative code has been released")
        return self._function(float(time), np.ascontiguousarray(y, dtype=np.float64), p)

    def release(self):
        """Drop the compiled function"""
        self._function = None


def build_native(state_variables: Sequence[str], equations: Mapping[str, Expr],
                 parameter_names: Sequence[str], quiet: bool = True) -> Optional[NativeDerivatives]:
    """
    Compile the derivatives of a model.

    Returns None, with a CompilationWarning, if the code could not be compiled.
    """
    source = generate_source(state_variables, equations, parameter_names)
    namespace = {"np": np, "math": math}

    with _COMPILE_LOCK:
        try:
            exec(compile(source, "<degkin derivatives>", "exec"), namespace)
            function = njit(_SIGNATURE)(namespace["derivatives"])
        except (NumbaError, SyntaxError, TypeError, ValueError) as exc:
            warnings.warn(
                f"Compilation of the differential equations failed ({exc}), "
                "derivatives will be evaluated by the interpreter",
                CompilationWarning,
                stacklevel=3
            )
            return None

    if not quiet:
        print("Successfully compiled differential equation model from auto-generated code.")

    return NativeDerivatives(function, source, parameter_names)
