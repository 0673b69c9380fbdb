"""
Model compiler: from compartment specifications to differential equations.

A model is specified as an ordered mapping from observed variable names to
compartment specifications. The first compartment is the source compartment.
For the definition of model types and parameters, the equations given in the
FOCUS and NAFTA guidance documents are used.

Example:
    >>> from degkin import compile_model, compartment
    >>> SFO_SFO = compile_model(parent=compartment("SFO", "m1"),
    ...                         m1=compartment("SFO"))
    >>> SFO_SFO.parameter_names
    ('k_parent_sink', 'k_parent_m1', 'k_m1_sink')
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from .expressions import (
    Expr, Parameter, StateVar, ZERO, ONE, TIME,
    add, exp, ifelse, mul, negate,
)
from .models import (
    CompartmentSpec, ConfigurationError, EvaluationStrategy, SubmodelType, UseOfFF,
    compartment,
)
from .native import NativeDerivatives, build_native, native_available


# =============================================================================
# COMPILED MODEL
# =============================================================================

@dataclass(frozen=True)
class CompiledModel:
    """
    A kinetic model ready for prediction and fitting.

    Attributes:
        spec: Compartment specifications by observed variable
        use_of_ff: Use of formation fractions
        state_variables: Modelling variables (SFORB compartments have two)
        observed_variables: Observed variables, the first is the source
        differential_equations: Right-hand side for each state variable
        parameter_names: Model parameters, in the order used by native code
        observed_to_state_map: State variables summed for each observed variable
        coefficient_matrix: Linear coefficients (target row, origin column) or None
        fraction_groups: Formation fractions and sink flag by origin state variable
        outflow_parameters: First-order (or IORE) rate constants leaving each state variable
        parameter_owner: Observed variable each parameter describes
        evaluation_strategy: Native or interpreted derivatives
        native: Handle to the native derivative code, if any
    """
    spec: Mapping[str, CompartmentSpec]
    use_of_ff: UseOfFF
    state_variables: Tuple[str, ...]
    observed_variables: Tuple[str, ...]
    differential_equations: Mapping[str, Expr]
    parameter_names: Tuple[str, ...]
    observed_to_state_map: Mapping[str, Tuple[str, ...]]
    coefficient_matrix: Optional[np.ndarray]
    fraction_groups: Mapping[str, Tuple[Tuple[str, ...], bool]]
    outflow_parameters: Mapping[str, Tuple[str, ...]]
    parameter_owner: Mapping[str, str]
    evaluation_strategy: EvaluationStrategy = EvaluationStrategy.INTERPRETED
    native: Optional[NativeDerivatives] = field(default=None, compare=False)

    @property
    def source(self) -> str:
        return self.observed_variables[0]

    @property
    def source_type(self) -> SubmodelType:
        return self.spec[self.source].type

    @property
    def has_coefficient_matrix(self) -> bool:
        return self.coefficient_matrix is not None

    def equations(self) -> Dict[str, str]:
        """Readable form of the differential equations"""
        return {box: f"d_{box}/dt = {rhs.render()}"
                for box, rhs in self.differential_equations.items()}

    def close(self):
        """Release the native derivative code"""
        if self.native is not None:
            self.native.release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def __str__(self):
        lines = ["<CompiledModel> kinetic model with",
                 f"Use of formation fractions: {self.use_of_ff.value}",
                 "Specification:"]
        for name, spec in self.spec.items():
            line = f"  {name}: type {spec.type.value}"
            if spec.to:
                line += f"; to {', '.join(spec.to)}"
            line += f"; sink {spec.sink}"
            if spec.full_name:
                line += f"; full name {spec.full_name}"
            lines.append(line)
        if self.has_coefficient_matrix:
            lines.append("Coefficient matrix available")
        if self.evaluation_strategy is EvaluationStrategy.NATIVE:
            lines.append("Compiled derivative code available")
        lines.append("Differential equations:")
        lines.extend(f"  {eq}" for eq in self.equations().values())
        return "\n".join(lines)


# =============================================================================
# SPECIFICATION HANDLING
# =============================================================================

_SPEC_KEYS = {"type", "to", "sink", "full_name"}


def _as_compartment(value) -> CompartmentSpec:
    if isinstance(value, CompartmentSpec):
        return value
    if isinstance(value, (str, SubmodelType)):
        return compartment(value)
    if isinstance(value, Mapping):
        if "type" not in value:
            raise ConfigurationError(
                "Every part of the model specification must contain a type component")
        unknown = set(value) - _SPEC_KEYS
        if unknown:
            raise ConfigurationError(f"Unknown components in specification: {sorted(unknown)}")
        return compartment(value["type"], value.get("to"),
                           sink=True if value.get("sink") is None else value["sink"],
                           full_name=value.get("full_name"))
    if isinstance(value, (list, tuple)):
        return compartment(*value)
    raise ConfigurationError(f"Can not interpret compartment specification {value!r}")


def normalize_spec(speclist=None, **compartments) -> Dict[str, CompartmentSpec]:
    """
    Ordered mapping from names to CompartmentSpec.

    Accepts a mapping, a list of ``(name, spec)`` or ``(name, type, to, sink)``
    sequences, or keyword arguments.
    """
    if speclist is not None and compartments:
        raise ConfigurationError(
            "Compartments can be given either as speclist or as keyword arguments, not both")
    items = speclist if speclist is not None else compartments

    if isinstance(items, Mapping):
        pairs = list(items.items())
    else:
        pairs = []
        for item in items:
            item = tuple(item)
            if len(item) < 2:
                raise ConfigurationError(f"Incomplete compartment specification {item!r}")
            rest = item[1] if len(item) == 2 else item[1:]
            pairs.append((item[0], rest))

    spec = {}
    for name, value in pairs:
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"Invalid compartment name {name!r}")
        if name in spec:
            raise ConfigurationError(f"Compartment {name} is specified twice")
        spec[name] = _as_compartment(value)
    if not spec:
        raise ConfigurationError("At least one compartment has to be specified")
    return spec


def _validate(spec: Mapping[str, CompartmentSpec], use_of_ff: UseOfFF):
    names = list(spec)
    for name in names:
        if any(name in other for other in names if other != name):
            raise ConfigurationError("Sorry, variable names can not contain each other")
        if "_to_" in name:
            raise ConfigurationError("Sorry, names of observed variables can not contain _to_")
        if name == "sink":
            raise ConfigurationError("Naming a compound 'sink' is not supported")

    for i, (name, cs) in enumerate(spec.items()):
        if cs.type.source_only and i != 0:
            raise ConfigurationError(
                "Types FOMC, DFOP, HS and logistic are only implemented for the first "
                f"compartment, which is assumed to be the source compartment ({name})")
        for target in cs.to:
            if target not in spec:
                raise ConfigurationError(
                    f"You did not specify a submodel for target variable {target}")
            if target == name:
                raise ConfigurationError(f"Compartment {name} can not transfer to itself")
        if cs.type is SubmodelType.IORE and cs.to and use_of_ff is UseOfFF.MIN:
            raise ConfigurationError(
                "Transformation reactions from compounds modelled with IORE "
                "are only supported with formation fractions (use_of_ff = 'max')")


# =============================================================================
# MODEL BUILDER
# =============================================================================

class _ModelBuilder:
    """Accumulates equations, parameters and linear coefficients"""

    def __init__(self, spec: Mapping[str, CompartmentSpec], use_of_ff: UseOfFF):
        self.spec = spec
        self.use_of_ff = use_of_ff
        self.boxes: Dict[str, Tuple[str, ...]] = {}
        for name, cs in spec.items():
            if cs.type is SubmodelType.SFORB:
                self.boxes[name] = (f"{name}_free", f"{name}_bound")
            else:
                self.boxes[name] = (name,)
        self.state_variables = [box for boxes in self.boxes.values() for box in boxes]
        self.terms: Dict[str, List[Expr]] = {box: [] for box in self.state_variables}
        self.parms: List[str] = []
        self.owner: Dict[str, str] = {}
        self.edges: List[Tuple[str, str, Expr]] = []
        self.losses: Dict[str, List[Expr]] = {box: [] for box in self.state_variables}
        self.outflows: Dict[str, List[str]] = {box: [] for box in self.state_variables}
        self.fractions: Dict[str, List[str]] = {}
        self.fraction_sink: Dict[str, bool] = {}

    def parameter(self, name: str, owner: str) -> Parameter:
        if name not in self.parms:
            self.parms.append(name)
            self.owner[name] = owner
        return Parameter(name)

    def rate(self, name: str, owner: str, box: str) -> Parameter:
        """A rate constant counted as outflow from box"""
        self.outflows[box].append(name)
        return self.parameter(name, owner)

    def flux(self, origin: str, target: Optional[str], coefficient: Expr):
        """First-order flux coefficient * origin, from origin to target (None: sink)"""
        term = mul(coefficient, StateVar(origin))
        self.terms[origin].append(negate(term))
        self.losses[origin].append(coefficient)
        if target is not None:
            self.terms[target].append(term)
            self.edges.append((target, origin, coefficient))


def _first_order_decline(builder: _ModelBuilder, name: str, box: str):
    """SFO and SFORB (free form) decline: returns (term, linear coefficient)"""
    cs = builder.spec[name]
    if builder.use_of_ff is UseOfFF.MIN:
        if not cs.sink:
            return ZERO, None
        k = builder.rate(f"k_{box}_sink", name, box)
    else:
        k = builder.rate(f"k_{box}", name, box)
    return mul(k, StateVar(box)), k


def _iore_decline(builder: _ModelBuilder, name: str, box: str):
    cs = builder.spec[name]
    if builder.use_of_ff is UseOfFF.MIN:
        if not cs.sink:
            return ZERO, None
        k = builder.rate(f"k__iore_{box}_sink", name, box)
    else:
        k = builder.rate(f"k__iore_{box}", name, box)
    N = builder.parameter(f"N_{box}", name)
    return mul(k, StateVar(box) ** N), None


def _fomc_decline(builder: _ModelBuilder, name: str, box: str):
    alpha = builder.parameter("alpha", name)
    beta = builder.parameter("beta", name)
    rate = (alpha / beta) * (ONE / (TIME / beta + ONE))
    return mul(rate, StateVar(box)), None


def _dfop_decline(builder: _ModelBuilder, name: str, box: str):
    k1 = builder.parameter("k1", name)
    k2 = builder.parameter("k2", name)
    g = builder.parameter("g", name)
    e1 = exp(negate(k1 * TIME))
    e2 = exp(negate(k2 * TIME))
    rate = (k1 * g * e1 + k2 * (ONE - g) * e2) / (g * e1 + (ONE - g) * e2)
    return mul(rate, StateVar(box)), None


def _hs_decline(builder: _ModelBuilder, name: str, box: str):
    k1 = builder.parameter("k1", name)
    k2 = builder.parameter("k2", name)
    tb = builder.parameter("tb", name)
    return mul(ifelse(TIME, tb, k1, k2), StateVar(box)), None


def _logistic_decline(builder: _ModelBuilder, name: str, box: str):
    kmax = builder.parameter("kmax", name)
    k0 = builder.parameter("k0", name)
    r = builder.parameter("r", name)
    rate = (k0 * kmax) / (k0 + (kmax - k0) * exp(negate(r * TIME)))
    return mul(rate, StateVar(box)), None


DECLINE_TERMS = {
    SubmodelType.SFO: _first_order_decline,
    SubmodelType.SFORB: _first_order_decline,
    SubmodelType.IORE: _iore_decline,
    SubmodelType.FOMC: _fomc_decline,
    SubmodelType.DFOP: _dfop_decline,
    SubmodelType.HS: _hs_decline,
    SubmodelType.LOGISTIC: _logistic_decline,
}


def require_all_types(table: Mapping, site: str):
    """Refuse to work with a dispatch table that misses submodel types"""
    missing = [t.value for t in SubmodelType if t not in table]
    if missing:
        raise TypeError(f"{site} is not implemented for submodel types {missing}")


require_all_types(DECLINE_TERMS, "Decline term construction")


def _build_compartment(builder: _ModelBuilder, name: str):
    cs = builder.spec[name]
    boxes = builder.boxes[name]
    origin = boxes[0]

    decline, coefficient = DECLINE_TERMS[cs.type](builder, name, origin)
    if coefficient is not None:
        builder.flux(origin, None, coefficient)
    elif not decline.is_zero:
        builder.terms[origin].append(negate(decline))

    if cs.type is SubmodelType.SFORB:
        bound = boxes[1]
        k_free_bound = builder.parameter(f"k_{name}_free_bound", name)
        k_bound_free = builder.parameter(f"k_{name}_bound_free", name)
        builder.flux(origin, bound, k_free_bound)
        builder.flux(bound, origin, k_bound_free)

    for target in cs.to:
        target_box = builder.boxes[target][0]
        if builder.use_of_ff is UseOfFF.MIN and cs.type in (SubmodelType.SFO, SubmodelType.SFORB):
            k = builder.rate(f"k_{origin}_{target_box}", name, origin)
            builder.flux(origin, target_box, k)
        elif not cs.sink and len(cs.to) == 1:
            # The only pathway, no formation fraction needed
            builder.terms[target_box].append(decline)
            if coefficient is not None:
                builder.edges.append((target_box, origin, coefficient))
        else:
            f = builder.parameter(f"f_{origin}_to_{target}", target)
            builder.fractions.setdefault(origin, []).append(f.name)
            builder.fraction_sink[origin] = cs.sink
            builder.terms[target_box].append(mul(f, decline))
            if coefficient is not None:
                builder.edges.append((target_box, origin, mul(f, coefficient)))


def _coefficient_matrix(builder: _ModelBuilder) -> np.ndarray:
    boxes = builder.state_variables
    index = {box: i for i, box in enumerate(boxes)}
    n = len(boxes)
    matrix = np.empty((n, n), dtype=object)
    matrix[:, :] = ZERO
    for target, origin, coefficient in builder.edges:
        i, j = index[target], index[origin]
        matrix[i, j] = add(matrix[i, j], coefficient)
    for box, coefficients in builder.losses.items():
        matrix[index[box], index[box]] = negate(add(*coefficients))
    return matrix


def compile_model(speclist=None, *, use_of_ff: str = "min", quiet: bool = False,
                  use_native="auto", **compartments) -> CompiledModel:
    """
    Set up a kinetic model with one or more state variables.

    Args:
        speclist: Mapping or list of (name, spec) items. Alternatively, give
            the compartments as keyword arguments.
        use_of_ff: "min" to use formation fractions only where they can not be
            avoided, "max" to always use them
        quiet: Suppress messages
        use_native: "auto" compiles native derivative code for models with more
            than one observed variable if numba JIT is enabled; False never does

    Returns:
        CompiledModel

    Raises:
        ConfigurationError: For invalid names, types or topology
    """
    spec = normalize_spec(speclist, **compartments)
    use_of_ff = UseOfFF.parse(use_of_ff)
    _validate(spec, use_of_ff)

    builder = _ModelBuilder(spec, use_of_ff)
    for name in spec:
        _build_compartment(builder, name)

    equations = {box: add(*terms) for box, terms in builder.terms.items()}

    linear = not any(cs.type.nonlinear for cs in spec.values())
    matrix = _coefficient_matrix(builder) if linear else None

    native = None
    if len(spec) > 1 and use_native is not False:
        if native_available():
            native = build_native(builder.state_variables, equations, builder.parms, quiet=quiet)
        elif use_native is True:
            raise ConfigurationError("Native compilation was requested, but numba JIT is disabled")

    fraction_groups = {origin: (tuple(names), builder.fraction_sink[origin])
                       for origin, names in builder.fractions.items()}

    return CompiledModel(
        spec=MappingProxyType(dict(spec)),
        use_of_ff=use_of_ff,
        state_variables=tuple(builder.state_variables),
        observed_variables=tuple(spec),
        differential_equations=MappingProxyType(equations),
        parameter_names=tuple(builder.parms),
        observed_to_state_map=MappingProxyType(dict(builder.boxes)),
        coefficient_matrix=matrix,
        fraction_groups=MappingProxyType(fraction_groups),
        outflow_parameters=MappingProxyType({box: tuple(p) for box, p in builder.outflows.items()}),
        parameter_owner=MappingProxyType(dict(builder.owner)),
        evaluation_strategy=(EvaluationStrategy.NATIVE if native is not None
                             else EvaluationStrategy.INTERPRETED),
        native=native,
    )


def observed_of(model: CompiledModel, box: str) -> str:
    """Observed variable a state variable belongs to"""
    for name, boxes in model.observed_to_state_map.items():
        if box in boxes:
            return name
    raise KeyError(box)
