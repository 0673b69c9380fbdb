"""
Data structures for degradation kinetics models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Tuple, Union


class ConfigurationError(ValueError):
    """Invalid model specification (names, types, topology)."""


class IntegrationFailure(RuntimeError):
    """A trajectory could not be computed for all requested output times."""


class NonConvergenceWarning(RuntimeWarning):
    """The optimizer stopped without reporting convergence."""


class SingularCovarianceWarning(RuntimeWarning):
    """The Hessian at the optimum could not be inverted."""


class CompilationWarning(RuntimeWarning):
    """Native derivative code could not be built; interpreted evaluation is used."""


class SubmodelType(Enum):
    """Kinetic submodel types"""
    SFO = "SFO"            # Single first-order
    FOMC = "FOMC"          # First-order multi-compartment (Gustafson-Holden)
    IORE = "IORE"          # Indeterminate order rate equation
    DFOP = "DFOP"          # Double first-order in parallel
    HS = "HS"              # Hockey-stick
    SFORB = "SFORB"        # Single first-order with reversible binding
    LOGISTIC = "logistic"  # Logistic decline

    @classmethod
    def parse(cls, value: Union[str, "SubmodelType"]) -> "SubmodelType":
        if isinstance(value, cls):
            return value
        for member in cls:
            if str(value).lower() == member.value.lower():
                return member
        raise ConfigurationError(
            f"Unknown submodel type {value!r}. Available types are "
            "SFO, FOMC, IORE, DFOP, HS, SFORB and logistic only"
        )

    @property
    def source_only(self) -> bool:
        """Types that are only implemented for the first (source) compartment"""
        return self in SOURCE_ONLY_TYPES

    @property
    def nonlinear(self) -> bool:
        """Types that rule out a coefficient matrix representation"""
        return self in NONLINEAR_TYPES


SOURCE_ONLY_TYPES = frozenset({
    SubmodelType.FOMC, SubmodelType.DFOP, SubmodelType.HS, SubmodelType.LOGISTIC,
})

NONLINEAR_TYPES = SOURCE_ONLY_TYPES | {SubmodelType.IORE}


class UseOfFF(Enum):
    """Use of formation fractions in the model equations"""
    MIN = "min"
    MAX = "max"

    @classmethod
    def parse(cls, value: Union[str, "UseOfFF"]) -> "UseOfFF":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigurationError(
                "The use of formation fractions 'use_of_ff' can only be 'min' or 'max'"
            ) from None


class SolutionType(Enum):
    """Strategies for computing trajectories"""
    ANALYTICAL = "analytical"
    EIGEN = "eigen"
    NUMERICAL = "numerical"

    @classmethod
    def parse(cls, value: Union[str, "SolutionType"]) -> "SolutionType":
        if isinstance(value, cls):
            return value
        # "deSolve" is accepted for compatibility with older scripts
        if str(value).lower() == "desolve":
            return cls.NUMERICAL
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown solution type {value!r}, use 'analytical', 'eigen' or 'numerical'"
            ) from None


class EvaluationStrategy(Enum):
    """How the derivatives of a compiled model are evaluated"""
    NATIVE = "native"
    INTERPRETED = "interpreted"


class ErrorModel(Enum):
    """Variance models for the residuals"""
    CONST = "const"  # one standard deviation for all data
    OBS = "obs"      # one standard deviation per observed variable
    TC = "tc"        # two-component error model (Rocke and Lorenzato)

    @classmethod
    def parse(cls, value: Union[str, "ErrorModel"]) -> "ErrorModel":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown error model {value!r}, use 'const', 'obs' or 'tc'"
            ) from None


class FitAlgorithm(Enum):
    """Algorithms for fitting the error model together with the kinetic model"""
    AUTO = "auto"
    OLS = "OLS"
    DIRECT = "direct"
    IRLS = "IRLS"

    @classmethod
    def parse(cls, value: Union[str, "FitAlgorithm"]) -> "FitAlgorithm":
        if isinstance(value, cls):
            return value
        for member in cls:
            if str(value).lower() == member.value.lower():
                return member
        raise ValueError(
            f"Unknown error model algorithm {value!r}, use 'auto', 'OLS', 'direct' or 'IRLS'"
        )


@dataclass(frozen=True)
class CompartmentSpec:
    """
    Specification of one observed compartment.

    Attributes:
        type: Kinetic submodel type
        to: Ordered names of compartments receiving transfer from this one
        sink: Whether a pathway to sink (unobserved products) exists
        full_name: Optional descriptive name of the compound
    """
    type: SubmodelType
    to: Tuple[str, ...] = field(default_factory=tuple)
    sink: bool = True
    full_name: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "type", SubmodelType.parse(self.type))
        targets = _as_targets(self.to)
        if len(set(targets)) != len(targets):
            raise ConfigurationError(f"Duplicate transfer targets in {targets}")
        object.__setattr__(self, "to", targets)
        object.__setattr__(self, "sink", bool(self.sink))


def _as_targets(to) -> Tuple[str, ...]:
    if to is None:
        return ()
    if isinstance(to, str):
        return (to,)
    return tuple(to)


def compartment(type: Union[str, SubmodelType], to: Union[None, str, Sequence[str]] = None,
                sink: bool = True, full_name: Optional[str] = None) -> CompartmentSpec:
    """
    Convenience constructor for a compartment specification.

    Example:
        >>> compartment("SFO", ["m1", "m2"])
        >>> compartment("SFO", "m1", sink=False)
    """
    return CompartmentSpec(type=type, to=_as_targets(to), sink=sink, full_name=full_name)
