"""
degkin - Kinetic Evaluation of Chemical Degradation Data
========================================================

This package fits compartmental kinetic models to time series of observed
concentrations of a parent compound and its transformation products, as
recommended by the FOCUS kinetics guidance.

A model is built from one submodel per observed compound:
    SFO       single first-order
    FOMC      first-order multi-compartment (Gustafson and Holden)
    IORE      indeterminate order rate equation
    DFOP      double first-order in parallel
    HS        hockey-stick
    SFORB     single first-order with reversible binding
    logistic  logistic decline

FOMC, DFOP, HS and logistic are only available for the first (source)
compartment. Transfer between compartments is described by pairwise rate
constants or by formation fractions.

Pipeline:
    compartment spec -> differential equations -> trajectories -> objective
    -> optimizer -> back-transformed estimates with confidence intervals

Example:
    >>> from degkin import compile_model, compartment, fit
    >>> model = compile_model(parent=compartment("SFO", "m1"), m1=compartment("SFO"))
    >>> result = fit(model, observed)
    >>> print(result)
"""

__version__ = "0.1.0"

# Data structures
from .models import (
    SubmodelType,
    UseOfFF,
    SolutionType,
    EvaluationStrategy,
    ErrorModel,
    FitAlgorithm,
    CompartmentSpec,
    compartment,
    # Errors and warnings
    ConfigurationError,
    IntegrationFailure,
    NonConvergenceWarning,
    SingularCovarianceWarning,
    CompilationWarning,
)

# Model compiler
from .compiler import CompiledModel, compile_model

# Analytical solutions
from .solutions import (
    sfo_solution,
    fomc_solution,
    iore_solution,
    dfop_solution,
    hs_solution,
    sforb_solution,
    logistic_solution,
)

# Trajectories
from .predict import predict, default_solution_type

# Parameter transformations
from .transform import ilr, invilr, to_transformed, to_natural

# Fitting
from .fitting import FitResult, fit, sigma_twocomp, create_synthetic_data

# Post-fit analysis
from .analysis import Endpoints, LikelihoodRatioTest, chi2_error_level, endpoints, lrtest

__all__ = [
    # Version
    "__version__",
    # Data structures
    "SubmodelType",
    "UseOfFF",
    "SolutionType",
    "EvaluationStrategy",
    "ErrorModel",
    "FitAlgorithm",
    "CompartmentSpec",
    "compartment",
    "ConfigurationError",
    "IntegrationFailure",
    "NonConvergenceWarning",
    "SingularCovarianceWarning",
    "CompilationWarning",
    # Compiler
    "CompiledModel",
    "compile_model",
    # Analytical solutions
    "sfo_solution",
    "fomc_solution",
    "iore_solution",
    "dfop_solution",
    "hs_solution",
    "sforb_solution",
    "logistic_solution",
    # Trajectories
    "predict",
    "default_solution_type",
    # Transformations
    "ilr",
    "invilr",
    "to_transformed",
    "to_natural",
    # Fitting
    "FitResult",
    "fit",
    "sigma_twocomp",
    "create_synthetic_data",
    # Analysis
    "Endpoints",
    "LikelihoodRatioTest",
    "chi2_error_level",
    "endpoints",
    "lrtest",
]
