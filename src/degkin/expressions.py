"""
Symbolic right-hand sides of the kinetic differential equations.

Expressions are small immutable trees built from a closed set of node types:

    Constant, Parameter, StateVar, Time, Sum, Product, Power, Exp, Conditional

Division is represented as a product with a reciprocal power. A tree can be

1. evaluated by a tree-walking interpreter (``evaluate``),
2. rendered as readable text (``render``), and
3. lowered to array-indexed Python source (``lower``) that is compiled to
   native code in ``degkin.native``.
"""

from dataclasses import dataclass
from typing import Mapping, Tuple, Union

import numpy as np


Number = Union[int, float]


class Expr:
    """Base class of all expression nodes"""

    __slots__ = ()

    def evaluate(self, state: Mapping[str, float], parms: Mapping[str, float],
                 time: float = 0.0) -> float:
        raise NotImplementedError

    def render(self) -> str:
        raise NotImplementedError

    def lower(self, state_index: Mapping[str, int], parameter_index: Mapping[str, int]) -> str:
        raise NotImplementedError

    def parameters(self) -> frozenset:
        """Names of all parameters occurring in the expression"""
        return frozenset()

    def state_variables(self) -> frozenset:
        """Names of all state variables occurring in the expression"""
        return frozenset()

    @property
    def is_zero(self) -> bool:
        return False

    def __add__(self, other):
        return add(self, other)

    def __radd__(self, other):
        return add(other, self)

    def __sub__(self, other):
        return add(self, negate(other))

    def __rsub__(self, other):
        return add(other, negate(self))

    def __neg__(self):
        return negate(self)

    def __mul__(self, other):
        return mul(self, other)

    def __rmul__(self, other):
        return mul(other, self)

    def __truediv__(self, other):
        return mul(self, Power(as_expr(other), Constant(-1.0)))

    def __rtruediv__(self, other):
        return mul(other, Power(self, Constant(-1.0)))

    def __pow__(self, other):
        return Power(self, as_expr(other))

    def __str__(self):
        return self.render()


@dataclass(frozen=True)
class Constant(Expr):
    value: float

    def evaluate(self, state, parms, time=0.0):
        return self.value

    def render(self):
        return f"{self.value:g}"

    def lower(self, state_index, parameter_index):
        return repr(float(self.value))

    @property
    def is_zero(self):
        return self.value == 0.0


@dataclass(frozen=True)
class Parameter(Expr):
    name: str

    def evaluate(self, state, parms, time=0.0):
        return parms[self.name]

    def render(self):
        return self.name

    def lower(self, state_index, parameter_index):
        return f"p[{parameter_index[self.name]}]"

    def parameters(self):
        return frozenset((self.name,))


@dataclass(frozen=True)
class StateVar(Expr):
    name: str

    def evaluate(self, state, parms, time=0.0):
        return state[self.name]

    def render(self):
        return self.name

    def lower(self, state_index, parameter_index):
        return f"y[{state_index[self.name]}]"

    def state_variables(self):
        return frozenset((self.name,))


@dataclass(frozen=True)
class Time(Expr):

    def evaluate(self, state, parms, time=0.0):
        return time

    def render(self):
        return "time"

    def lower(self, state_index, parameter_index):
        return "time"


@dataclass(frozen=True)
class Sum(Expr):
    terms: Tuple[Expr, ...]

    def evaluate(self, state, parms, time=0.0):
        total = 0.0
        for term in self.terms:
            total += term.evaluate(state, parms, time)
        return total

    def render(self):
        text = ""
        for i, term in enumerate(self.terms):
            negative, magnitude = _split_sign(term)
            rendered = magnitude.render()
            if i == 0:
                text = f"- {rendered}" if negative else rendered
            else:
                text += f" - {rendered}" if negative else f" + {rendered}"
        return text

    def lower(self, state_index, parameter_index):
        return "(" + " + ".join(t.lower(state_index, parameter_index) for t in self.terms) + ")"

    def parameters(self):
        return frozenset().union(*(t.parameters() for t in self.terms))

    def state_variables(self):
        return frozenset().union(*(t.state_variables() for t in self.terms))


@dataclass(frozen=True)
class Product(Expr):
    factors: Tuple[Expr, ...]

    def evaluate(self, state, parms, time=0.0):
        result = 1.0
        for factor in self.factors:
            result *= factor.evaluate(state, parms, time)
        return result

    def render(self):
        negative, magnitude = _split_sign(self)
        if negative:
            return f"- {magnitude.render()}"
        numerator = []
        denominator = []
        for factor in self.factors:
            if isinstance(factor, Power) and _is_reciprocal(factor):
                denominator.append(_wrap(factor.base))
            else:
                numerator.append(_wrap(factor))
        text = " * ".join(numerator) if numerator else "1"
        for d in denominator:
            text += f" / {d}"
        return text

    def lower(self, state_index, parameter_index):
        return "(" + " * ".join(f.lower(state_index, parameter_index) for f in self.factors) + ")"

    def parameters(self):
        return frozenset().union(*(f.parameters() for f in self.factors))

    def state_variables(self):
        return frozenset().union(*(f.state_variables() for f in self.factors))


@dataclass(frozen=True)
class Power(Expr):
    base: Expr
    exponent: Expr

    def evaluate(self, state, parms, time=0.0):
        return np.power(np.float64(self.base.evaluate(state, parms, time)),
                        self.exponent.evaluate(state, parms, time))

    def render(self):
        if _is_reciprocal(self):
            return f"1 / {_wrap(self.base)}"
        return f"{_wrap(self.base)}^{_wrap(self.exponent)}"

    def lower(self, state_index, parameter_index):
        return (f"({self.base.lower(state_index, parameter_index)} ** "
                f"{self.exponent.lower(state_index, parameter_index)})")

    def parameters(self):
        return self.base.parameters() | self.exponent.parameters()

    def state_variables(self):
        return self.base.state_variables() | self.exponent.state_variables()


@dataclass(frozen=True)
class Exp(Expr):
    argument: Expr

    def evaluate(self, state, parms, time=0.0):
        return np.exp(np.float64(self.argument.evaluate(state, parms, time)))

    def render(self):
        return f"exp({self.argument.render()})"

    def lower(self, state_index, parameter_index):
        return f"math.exp({self.argument.lower(state_index, parameter_index)})"

    def parameters(self):
        return self.argument.parameters()

    def state_variables(self):
        return self.argument.state_variables()


@dataclass(frozen=True)
class Conditional(Expr):
    """``if_true`` where ``left <= right``, else ``if_false``"""
    left: Expr
    right: Expr
    if_true: Expr
    if_false: Expr

    def evaluate(self, state, parms, time=0.0):
        if self.left.evaluate(state, parms, time) <= self.right.evaluate(state, parms, time):
            return self.if_true.evaluate(state, parms, time)
        return self.if_false.evaluate(state, parms, time)

    def render(self):
        return (f"ifelse({self.left.render()} <= {self.right.render()}, "
                f"{self.if_true.render()}, {self.if_false.render()})")

    def lower(self, state_index, parameter_index):
        args = [node.lower(state_index, parameter_index)
                for node in (self.if_true, self.left, self.right, self.if_false)]
        return "({} if {} <= {} else {})".format(*args)

    def parameters(self):
        return frozenset().union(*(n.parameters() for n in
                                   (self.left, self.right, self.if_true, self.if_false)))

    def state_variables(self):
        return frozenset().union(*(n.state_variables() for n in
                                   (self.left, self.right, self.if_true, self.if_false)))


ZERO = Constant(0.0)
ONE = Constant(1.0)
TIME = Time()


# =============================================================================
# CONSTRUCTION HELPERS
# =============================================================================

def as_expr(value: Union[Expr, Number]) -> Expr:
    if isinstance(value, Expr):
        return value
    return Constant(float(value))


def add(*terms) -> Expr:
    """Sum of terms, flattening nested sums and dropping zeros"""
    flat = []
    for term in map(as_expr, terms):
        if isinstance(term, Sum):
            flat.extend(term.terms)
        elif not term.is_zero:
            flat.append(term)
    if not flat:
        return ZERO
    if len(flat) == 1:
        return flat[0]
    return Sum(tuple(flat))


def mul(*factors) -> Expr:
    """Product of factors, flattening nested products and folding constants"""
    flat = []
    coefficient = 1.0
    for factor in map(as_expr, factors):
        if isinstance(factor, Product):
            items = factor.factors
        else:
            items = (factor,)
        for item in items:
            if isinstance(item, Constant):
                coefficient *= item.value
            else:
                flat.append(item)
    if coefficient == 0.0:
        return ZERO
    if coefficient != 1.0 or not flat:
        flat.insert(0, Constant(coefficient))
    if len(flat) == 1:
        return flat[0]
    return Product(tuple(flat))


def negate(value) -> Expr:
    return mul(Constant(-1.0), value)


def exp(value) -> Expr:
    return Exp(as_expr(value))


def ifelse(left, right, if_true, if_false) -> Expr:
    return Conditional(as_expr(left), as_expr(right), as_expr(if_true), as_expr(if_false))


def _split_sign(term: Expr) -> Tuple[bool, Expr]:
    """Separate a leading negative constant from a term for rendering"""
    if isinstance(term, Constant) and term.value < 0:
        return True, Constant(-term.value)
    if isinstance(term, Product) and isinstance(term.factors[0], Constant) \
            and term.factors[0].value < 0:
        magnitude = mul(-term.factors[0].value, *term.factors[1:])
        return True, magnitude
    return False, term


def _is_reciprocal(node: "Power") -> bool:
    return isinstance(node.exponent, Constant) and node.exponent.value == -1.0


def _wrap(node: Expr) -> str:
    if isinstance(node, (Sum, Product)) or (isinstance(node, Constant) and node.value < 0):
        return f"({node.render()})"
    if isinstance(node, Power) and _is_reciprocal(node):
        return f"({node.render()})"
    return node.render()
