"""
Tests for degkin.compiler module.
"""

import numpy as np
import pytest

from degkin.compiler import compile_model, normalize_spec, observed_of, require_all_types
from degkin.models import (
    ConfigurationError, EvaluationStrategy, SubmodelType, UseOfFF, compartment,
)
from degkin.predict import numeric_coefficient_matrix


class TestSpecification:
    """Tests for the accepted forms of model specifications."""

    def test_keyword_compartments(self):
        spec = normalize_spec(parent=compartment("SFO", "m1"), m1="SFO")
        assert list(spec) == ["parent", "m1"]
        assert spec["m1"].type is SubmodelType.SFO

    def test_dict_specs(self):
        spec = normalize_spec({"parent": {"type": "SFO", "to": "m1", "sink": False},
                               "m1": {"type": "SFO"}})
        assert spec["parent"].to == ("m1",)
        assert spec["parent"].sink is False
        assert spec["m1"].sink is True

    def test_list_of_lists(self):
        spec = normalize_spec([["parent", "SFO", ["m1"]], ["m1", "SFO"]])
        assert spec["parent"].to == ("m1",)

    def test_missing_type(self):
        with pytest.raises(ConfigurationError):
            normalize_spec({"parent": {"to": "m1"}})

    def test_empty(self):
        with pytest.raises(ConfigurationError):
            normalize_spec({})

    def test_both_forms(self):
        with pytest.raises(ConfigurationError):
            normalize_spec({"parent": "SFO"}, m1="SFO")


class TestValidation:
    """Tests for rejected model specifications."""

    def test_sink_name(self):
        with pytest.raises(ConfigurationError):
            compile_model(parent=compartment("SFO", "sink"), sink="SFO", quiet=True)

    def test_source_only_type_not_first(self):
        """DFOP is only available for the source compartment."""
        with pytest.raises(ConfigurationError):
            compile_model(parent=compartment("SFO", "m1"), m1="DFOP", quiet=True)

    def test_undefined_target(self):
        with pytest.raises(ConfigurationError):
            compile_model(parent=compartment("SFO", "m1"), quiet=True)

    def test_names_contained_in_each_other(self):
        with pytest.raises(ConfigurationError):
            compile_model(m1=compartment("SFO", "m10"), m10="SFO", quiet=True)

    def test_name_with_to(self):
        with pytest.raises(ConfigurationError):
            compile_model(parent_to_x="SFO", quiet=True)

    def test_self_transfer(self):
        with pytest.raises(ConfigurationError):
            compile_model(parent=compartment("SFO", "parent"), quiet=True)

    def test_iore_transfer_requires_formation_fractions(self):
        with pytest.raises(ConfigurationError):
            compile_model(parent=compartment("IORE", "m1"), m1="SFO", quiet=True)
        model = compile_model(parent=compartment("IORE", "m1"), m1="SFO",
                              use_of_ff="max", quiet=True, use_native=False)
        assert model.parameter_names == ("k__iore_parent", "N_parent", "f_parent_to_m1", "k_m1")

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            compile_model(parent="SFO4", quiet=True)


class TestParameterNames:
    """Tests for the parameters of compiled models."""

    @pytest.mark.parametrize("type_, names", [
        ("SFO", ("k_parent_sink",)),
        ("FOMC", ("alpha", "beta")),
        ("IORE", ("k__iore_parent_sink", "N_parent")),
        ("DFOP", ("k1", "k2", "g")),
        ("HS", ("k1", "k2", "tb")),
        ("SFORB", ("k_parent_free_sink", "k_parent_free_bound", "k_parent_bound_free")),
        ("logistic", ("kmax", "k0", "r")),
    ])
    def test_parent_only(self, type_, names):
        assert compile_model(parent=type_, quiet=True).parameter_names == names

    def test_sfo_sfo_pairwise(self, sfo_sfo):
        assert sfo_sfo.parameter_names == ("k_parent_sink", "k_parent_m1", "k_m1_sink")
        assert sfo_sfo.fraction_groups == {}

    def test_sfo_sfo_formation_fractions(self, sfo_sfo_ff):
        assert sfo_sfo_ff.parameter_names == ("k_parent", "f_parent_to_m1", "k_m1")
        assert sfo_sfo_ff.fraction_groups == {"parent": (("f_parent_to_m1",), True)}

    def test_fraction_group_of_two_metabolites(self, dfop_two_metabolites):
        assert dfop_two_metabolites.fraction_groups["parent"] == (
            ("f_parent_to_m1", "f_parent_to_m2"), True)

    def test_single_pathway_without_sink(self):
        """The only pathway of a sink-less compartment needs no formation fraction."""
        model = compile_model(parent=compartment("FOMC", "m1", sink=False), m1="SFO",
                              quiet=True, use_native=False)
        assert model.parameter_names == ("alpha", "beta", "k_m1_sink")
        assert model.fraction_groups == {}

    def test_sink_less_fraction_group(self):
        model = compile_model(parent=compartment("SFO", ["m1", "m2"], sink=False),
                              m1="SFO", m2="SFO", use_of_ff="max", quiet=True, use_native=False)
        assert model.fraction_groups["parent"] == (("f_parent_to_m1", "f_parent_to_m2"), False)

    def test_parameter_owner(self, sfo_sfo_ff):
        """Rates belong to their compartment, formation fractions to the target."""
        assert sfo_sfo_ff.parameter_owner == {
            "k_parent": "parent", "f_parent_to_m1": "m1", "k_m1": "m1"}

    def test_outflow_parameters(self, sfo_sfo):
        assert sfo_sfo.outflow_parameters["parent"] == ("k_parent_sink", "k_parent_m1")
        assert sfo_sfo.outflow_parameters["m1"] == ("k_m1_sink",)


class TestStateVariables:
    """Tests for the expansion of compartments into state variables."""

    def test_sforb_expansion(self):
        model = compile_model(parent=compartment("SFORB", "m1"), m1="SFO",
                              quiet=True, use_native=False)
        assert model.state_variables == ("parent_free", "parent_bound", "m1")
        assert model.observed_variables == ("parent", "m1")
        assert model.observed_to_state_map["parent"] == ("parent_free", "parent_bound")
        assert observed_of(model, "parent_bound") == "parent"
        assert "k_parent_free_m1" in model.parameter_names

    def test_source_properties(self, dfop_two_metabolites):
        assert dfop_two_metabolites.source == "parent"
        assert dfop_two_metabolites.source_type is SubmodelType.DFOP


class TestEquations:
    """Tests for the differential equations."""

    def test_metabolite_equation(self, sfo_sfo):
        assert sfo_sfo.equations()["m1"] == "d_m1/dt = k_parent_m1 * parent - k_m1_sink * m1"

    def test_parent_equation(self, sfo_sfo):
        equation = sfo_sfo.equations()["parent"]
        assert "k_parent_sink * parent" in equation
        assert "k_parent_m1 * parent" in equation

    def test_hs_uses_conditional(self):
        model = compile_model(parent="HS", quiet=True)
        assert "ifelse(time <= tb, k1, k2)" in model.equations()["parent"]

    def test_str(self, sfo_sfo):
        text = str(sfo_sfo)
        assert "parent: type SFO; to m1; sink True" in text
        assert "d_m1/dt" in text

    def test_sink_less_chain_conserves_mass(self):
        """Without sinks the right-hand sides add up to zero."""
        model = compile_model(parent=compartment("SFO", "m1", sink=False),
                              m1=compartment("SFO", "m2", sink=False),
                              m2=compartment("SFO", sink=False),
                              quiet=True, use_native=False)
        parms = {"k_parent_m1": 0.2, "k_m1_m2": 0.05}
        state = {"parent": 50.0, "m1": 30.0, "m2": 20.0}
        total = sum(eq.evaluate(state, parms, 1.0)
                    for eq in model.differential_equations.values())
        assert total == pytest.approx(0.0, abs=1e-12)


class TestCoefficientMatrix:
    """Tests for the coefficient matrix of linear models."""

    def test_sfo_sfo(self, sfo_sfo):
        A = numeric_coefficient_matrix(
            sfo_sfo, {"k_parent_sink": 0.1, "k_parent_m1": 0.2, "k_m1_sink": 0.05})
        np.testing.assert_allclose(A, [[-0.3, 0.0], [0.2, -0.05]])

    def test_formation_fractions(self, sfo_sfo_ff):
        A = numeric_coefficient_matrix(
            sfo_sfo_ff, {"k_parent": 0.3, "f_parent_to_m1": 0.4, "k_m1": 0.05})
        np.testing.assert_allclose(A, [[-0.3, 0.0], [0.12, -0.05]])

    def test_sforb_binding(self):
        model = compile_model(parent="SFORB", quiet=True)
        A = numeric_coefficient_matrix(model, {"k_parent_free_sink": 0.3,
                                               "k_parent_free_bound": 0.1,
                                               "k_parent_bound_free": 0.02})
        np.testing.assert_allclose(A, [[-0.4, 0.02], [0.1, -0.02]])

    @pytest.mark.parametrize("spec", [
        {"parent": "DFOP"},
        {"parent": "IORE"},
        {"parent": compartment("SFO", "m1"), "m1": "IORE"},
    ])
    def test_nonlinear_models_have_none(self, spec):
        model = compile_model(spec, quiet=True, use_native=False)
        assert model.coefficient_matrix is None
        assert not model.has_coefficient_matrix

    def test_diagonal_is_negative_outflow(self, sfo_sfo):
        parms = {"k_parent_sink": 0.1, "k_parent_m1": 0.2, "k_m1_sink": 0.05}
        A = numeric_coefficient_matrix(sfo_sfo, parms)
        # Columns of a sink-less model would sum to zero, here they give the sink rates
        np.testing.assert_allclose(A.sum(axis=0), [-0.1, -0.05])


class TestEvaluationStrategy:
    """Tests for the choice of derivative evaluation."""

    def test_parent_only_is_interpreted(self, sfo):
        assert sfo.evaluation_strategy is EvaluationStrategy.INTERPRETED
        assert sfo.native is None

    def test_native_disabled(self):
        model = compile_model(parent=compartment("SFO", "m1"), m1="SFO",
                              quiet=True, use_native=False)
        assert model.evaluation_strategy is EvaluationStrategy.INTERPRETED

    def test_close_without_native_code(self, sfo):
        with sfo as model:
            assert model is sfo


class TestDispatchTables:
    """Tests for the completeness check of per-type tables."""

    def test_incomplete_table(self):
        with pytest.raises(TypeError):
            require_all_types({SubmodelType.SFO: None}, "Test table")

    def test_complete_table(self):
        require_all_types({t: None for t in SubmodelType}, "Test table")

    def test_use_of_ff_stored(self, sfo_sfo, sfo_sfo_ff):
        assert sfo_sfo.use_of_ff is UseOfFF.MIN
        assert sfo_sfo_ff.use_of_ff is UseOfFF.MAX
