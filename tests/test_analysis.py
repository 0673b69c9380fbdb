"""
Tests for degkin.analysis module.
"""

from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from degkin.analysis import Endpoints, endpoints, lrtest
from degkin.compiler import compile_model
from degkin.fitting import fit
from degkin.models import compartment
from degkin.solutions import dfop_solution


def fitted(model, parms, initials=None):
    """Minimal stand-in for a FitResult, as far as endpoints are concerned"""
    if initials is None:
        initials = {box: 0.0 for box in model.state_variables}
        initials[model.state_variables[0]] = 100.0
    return SimpleNamespace(model=model, bparms_ode=pd.Series(parms, dtype=float),
                           bparms_state=pd.Series(initials, dtype=float))


class TestErrorLevel:
    """Tests for the FOCUS chi-squared error level."""

    def test_sfo_focus_c(self, focus_c):
        errmin = fit("SFO", focus_c).errmin()
        assert list(errmin.index) == ["All data", "parent"]
        assert errmin.at["All data", "n_optim"] == 2
        assert errmin.at["All data", "df"] == 7
        # Reference: 15.9 % for SFO on FOCUS C
        assert errmin.at["All data", "err_min"] == pytest.approx(0.159, abs=0.01)

    def test_dfop_better_than_sfo(self, focus_c):
        sfo = fit("SFO", focus_c).errmin()
        dfop = fit("DFOP", focus_c).errmin()
        assert dfop.at["parent", "n_optim"] == 4
        assert dfop.at["parent", "err_min"] < 0.05
        assert dfop.at["parent", "err_min"] < sfo.at["parent", "err_min"]

    def test_replicates_are_averaged(self, focus_c):
        doubled = pd.concat([focus_c, focus_c], ignore_index=True)
        single = fit("SFO", focus_c).errmin()
        double = fit("SFO", doubled).errmin()
        assert double.at["parent", "df"] == single.at["parent", "df"]
        assert double.at["parent", "err_min"] == pytest.approx(single.at["parent", "err_min"],
                                                                rel=1e-3)

    def test_metabolite_rows(self, sfo_sfo, sfo_sfo_data):
        errmin = fit(sfo_sfo, sfo_sfo_data, solution_type="eigen").errmin()
        assert list(errmin.index) == ["All data", "parent", "m1"]
        # Rate constants count for the compartment they leave
        assert errmin.at["parent", "n_optim"] == 3
        assert errmin.at["m1", "n_optim"] == 1
        # m1 starts at a fixed zero, its time zero value does not count
        n_times = sfo_sfo_data.dropna().query("name == 'm1' and time > 0")["time"].nunique()
        assert errmin.at["m1", "df"] == n_times - 1


class TestDisappearanceTimes:
    """Tests for DT50 and DT90."""

    def test_sfo(self, sfo):
        distimes = endpoints(fitted(sfo, {"k_parent_sink": 0.1})).distimes
        assert distimes.at["parent", "DT50"] == pytest.approx(np.log(2) / 0.1)
        assert distimes.at["parent", "DT90"] == pytest.approx(np.log(10) / 0.1)
        assert "DT50back" not in distimes.columns

    def test_fomc(self):
        model = compile_model(parent="FOMC", quiet=True)
        distimes = endpoints(fitted(model, {"alpha": 2.0, "beta": 10.0})).distimes
        assert distimes.at["parent", "DT50"] == pytest.approx(10.0 * (np.sqrt(2) - 1))

    def test_iore_second_order(self):
        """For N = 2, DT50 = 1 / (k c0)."""
        model = compile_model(parent="IORE", quiet=True)
        result = fitted(model, {"k__iore_parent_sink": 0.001, "N_parent": 2.0})
        distimes = endpoints(result).distimes
        assert distimes.at["parent", "DT50"] == pytest.approx(1 / (0.001 * 100.0))
        assert distimes.at["parent", "DT90"] == pytest.approx(9 / (0.001 * 100.0))

    def test_iore_first_order(self):
        model = compile_model(parent="IORE", quiet=True)
        result = fitted(model, {"k__iore_parent_sink": 0.1, "N_parent": 1.0})
        assert endpoints(result).distimes.at["parent", "DT50"] == pytest.approx(np.log(2) / 0.1)

    def test_dfop(self):
        model = compile_model(parent="DFOP", quiet=True)
        distimes = endpoints(fitted(model, {"k1": 0.46, "k2": 0.0178, "g": 0.854})).distimes
        dt50, dt90 = distimes.at["parent", "DT50"], distimes.at["parent", "DT90"]
        assert dfop_solution(dt50, 1.0, 0.46, 0.0178, 0.854) == pytest.approx(0.5)
        assert dfop_solution(dt90, 1.0, 0.46, 0.0178, 0.854) == pytest.approx(0.1)
        assert distimes.at["parent", "DT50back"] == pytest.approx(dt90 / np.log2(10))

    def test_hs(self):
        model = compile_model(parent="HS", quiet=True)
        distimes = endpoints(fitted(model, {"k1": 0.3, "k2": 0.02, "tb": 5.0})).distimes
        assert distimes.at["parent", "DT50"] == pytest.approx(np.log(2) / 0.3)
        assert distimes.at["parent", "DT90"] == pytest.approx(5.0 + (np.log(10) - 1.5) / 0.02)

    def test_sforb(self):
        model = compile_model(parent="SFORB", quiet=True)
        parms = {"k_parent_free_sink": 0.3, "k_parent_free_bound": 0.1,
                 "k_parent_bound_free": 0.02}
        result = endpoints(fitted(model, parms, {"parent_free": 100.0, "parent_bound": 0.0}))
        assert list(result.SFORB.index) == ["parent_b1", "parent_b2"]
        assert result.SFORB["parent_b1"] > result.SFORB["parent_b2"]
        assert result.distimes.at["parent", "DT90"] > np.log(10) / result.SFORB["parent_b1"]

    def test_logistic_constant_rate(self):
        model = compile_model(parent="logistic", quiet=True)
        distimes = endpoints(fitted(model, {"kmax": 0.1, "k0": 0.1, "r": 0.2})).distimes
        assert distimes.at["parent", "DT50"] == pytest.approx(np.log(2) / 0.1, rel=1e-6)


class TestFormationFractions:
    """Tests for formation fractions in the endpoints."""

    def test_pairwise_rates(self, sfo_sfo):
        parms = {"k_parent_sink": 0.03, "k_parent_m1": 0.07, "k_m1_sink": 0.05}
        result = endpoints(fitted(sfo_sfo, parms))
        assert result.ff["f_parent_to_m1"] == pytest.approx(0.7)
        assert result.ff["f_parent_to_sink"] == pytest.approx(0.3)
        assert result.distimes.at["parent", "DT50"] == pytest.approx(np.log(2) / 0.1)
        assert result.distimes.at["m1", "DT50"] == pytest.approx(np.log(2) / 0.05)

    def test_fraction_parameters(self, dfop_two_metabolites):
        parms = {"k1": 0.5, "k2": 0.05, "g": 0.4, "f_parent_to_m1": 0.3,
                 "f_parent_to_m2": 0.2, "k_m1_sink": 0.1, "k_m2_sink": 0.02}
        ff = endpoints(fitted(dfop_two_metabolites, parms)).ff
        assert ff["f_parent_to_m1"] == 0.3
        assert ff["f_parent_to_sink"] == pytest.approx(0.5)

    def test_str(self, sfo_sfo_ff):
        parms = {"k_parent": 0.1, "f_parent_to_m1": 0.7, "k_m1": 0.05}
        text = str(endpoints(fitted(sfo_sfo_ff, parms)))
        assert "Estimated disappearance times" in text
        assert "f_parent_to_m1" in text

    def test_empty_ff(self, sfo):
        result = endpoints(fitted(sfo, {"k_parent_sink": 0.1}))
        assert isinstance(result, Endpoints)
        assert len(result.ff) == 0
        assert "formation fractions" not in str(result)


class TestLikelihoodRatio:
    """Tests for the comparison of nested fits."""

    def test_dfop_against_sfo(self, focus_c):
        sfo = fit("SFO", focus_c)
        dfop = fit("DFOP", focus_c)
        test = lrtest(sfo, dfop)
        assert test.df == 2
        assert test.statistic > 0
        assert test.p_value < 0.05
        assert test.loglik_full == pytest.approx(dfop.loglik)

    def test_same_number_of_parameters(self, focus_c):
        sfo = fit("SFO", focus_c)
        with pytest.raises(ValueError):
            lrtest(sfo, sfo)

    def test_different_data(self, focus_c):
        sfo = fit("SFO", focus_c)
        dfop = fit("DFOP", focus_c.iloc[1:])
        with pytest.raises(ValueError):
            lrtest(sfo, dfop)


def test_models_with_sink_less_targets():
    """A parent without sink passes everything on to its only metabolite."""
    model = compile_model(parent=compartment("SFO", "m1", sink=False), m1="SFO",
                          quiet=True, use_native=False)
    ff = endpoints(fitted(model, {"k_parent_m1": 0.2, "k_m1_sink": 0.05})).ff
    assert ff["f_parent_to_m1"] == pytest.approx(1.0)
    assert "f_parent_to_sink" not in ff.index
