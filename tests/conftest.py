"""
Shared pytest fixtures for the degkin test suite.

The FOCUS C data set is the parent-only example from the FOCUS (2006)
kinetics report. Parent-metabolite data are generated from known parameters
so that fits can be checked against the truth.
"""

import numpy as np
import pandas as pd
import pytest

from degkin.compiler import compile_model
from degkin.fitting import create_synthetic_data, sigma_twocomp
from degkin.models import compartment
from degkin.predict import predict


FOCUS_C_TIMES = [0, 1, 3, 7, 14, 28, 63, 91, 119]
FOCUS_C_VALUES = [85.1, 57.9, 29.9, 14.6, 9.7, 6.6, 4.0, 3.9, 0.6]

SFO_SFO_TRUE = {"k_parent_sink": 0.03, "k_parent_m1": 0.07, "k_m1_sink": 0.05}
SAMPLING_TIMES = [0, 1, 3, 7, 14, 28, 60, 90, 120]


@pytest.fixture
def focus_c():
    """FOCUS C data set in long format."""
    return pd.DataFrame({
        "name": "parent",
        "time": FOCUS_C_TIMES,
        "value": FOCUS_C_VALUES,
    })


@pytest.fixture
def sfo():
    """Parent-only SFO model."""
    return compile_model(parent="SFO", quiet=True)


@pytest.fixture
def sfo_sfo():
    """Parent with one metabolite, pairwise rate constants."""
    model = compile_model(parent=compartment("SFO", "m1"), m1=compartment("SFO"), quiet=True)
    yield model
    model.close()


@pytest.fixture
def sfo_sfo_ff():
    """Parent with one metabolite, formation fractions."""
    model = compile_model(parent=compartment("SFO", "m1"), m1=compartment("SFO"),
                          use_of_ff="max", quiet=True)
    yield model
    model.close()


@pytest.fixture
def dfop_two_metabolites():
    """DFOP parent forming two metabolites."""
    model = compile_model(parent=compartment("DFOP", ["m1", "m2"]),
                          m1=compartment("SFO"), m2=compartment("SFO"), quiet=True)
    yield model
    model.close()


@pytest.fixture
def sfo_sfo_truth():
    """Parameters used to generate the parent-metabolite data."""
    return dict(SFO_SFO_TRUE)


@pytest.fixture
def sfo_sfo_data(sfo_sfo):
    """Noisy parent-metabolite data with replicates, generated from SFO_SFO_TRUE."""
    prediction = predict(sfo_sfo, SFO_SFO_TRUE, {"parent": 100.0, "m1": 0.0},
                         SAMPLING_TIMES, solution_type="eigen")
    return create_synthetic_data(prediction,
                                 lambda y: sigma_twocomp(y, 0.5, 0.05),
                                 reps=2, digits=2, lod=0.01, seed=123)[0]


@pytest.fixture
def rng():
    """Seeded random number generator."""
    return np.random.default_rng(42)
