"""
Tests for degkin.solutions module.
"""

import numpy as np
import pytest

from degkin.solutions import (
    dfop_solution,
    fomc_solution,
    hs_solution,
    iore_solution,
    logistic_solution,
    sfo_solution,
    sforb_eigenvalues,
    sforb_solution,
)


TIMES = np.array([0.0, 0.5, 1.0, 3.0, 7.0, 14.0, 28.0, 63.0, 119.0])


class TestSFO:
    """Tests for single first-order kinetics."""

    def test_initial_value(self):
        assert sfo_solution(0.0, 100.0, 0.1) == pytest.approx(100.0)

    def test_half_life(self):
        assert sfo_solution(np.log(2) / 0.1, 100.0, 0.1) == pytest.approx(50.0)

    def test_reference_value(self):
        assert sfo_solution(10.0, 100.0, 0.1) == pytest.approx(100 * np.exp(-1), rel=1e-12)

    def test_unsorted_times(self):
        times = np.array([10.0, 0.0, 5.0])
        np.testing.assert_allclose(sfo_solution(times, 100.0, 0.1),
                                   100.0 * np.exp(-0.1 * times))


class TestFOMC:
    """Tests for first-order multi-compartment kinetics."""

    def test_initial_value(self):
        assert fomc_solution(0.0, 100.0, 1.0, 10.0) == pytest.approx(100.0)

    def test_large_alpha_approaches_sfo(self):
        """FOMC tends to SFO with k = alpha / beta for large alpha and beta."""
        alpha, beta = 1e6, 1e7
        np.testing.assert_allclose(fomc_solution(TIMES, 100.0, alpha, beta),
                                   sfo_solution(TIMES, 100.0, alpha / beta), rtol=1e-4)


class TestIORE:
    """Tests for indeterminate order rate equation kinetics."""

    def test_first_order_limit(self):
        """N = 1 reduces to SFO."""
        np.testing.assert_allclose(iore_solution(TIMES, 100.0, 0.1, 1.0),
                                   sfo_solution(TIMES, 100.0, 0.1))

    def test_close_to_first_order(self):
        np.testing.assert_allclose(iore_solution(TIMES, 100.0, 0.1, 1.0 + 1e-6),
                                   sfo_solution(TIMES, 100.0, 0.1), rtol=1e-3)

    def test_second_order(self):
        """N = 2 gives c = c0 / (1 + k c0 t)."""
        np.testing.assert_allclose(iore_solution(TIMES, 100.0, 0.001, 2.0),
                                   100.0 / (1 + 0.001 * 100.0 * TIMES))

    def test_depletion_below_first_order(self):
        """For N < 1 the compound is gone after a finite time and stays at zero."""
        values = iore_solution(TIMES, 100.0, 0.5, 0.5)
        assert np.all(np.isfinite(values))
        assert np.all(values >= 0)
        assert values[-1] == 0.0


class TestDFOP:
    """Tests for double first-order in parallel kinetics."""

    def test_initial_value(self):
        assert dfop_solution(0.0, 85.0, 0.46, 0.018, 0.85) == pytest.approx(85.0)

    @pytest.mark.parametrize("g", [0.0, 1.0])
    def test_single_compartment_limits(self, g):
        """With g = 1 (or 0) only k1 (or k2) matters."""
        k = 0.46 if g == 1.0 else 0.018
        np.testing.assert_allclose(dfop_solution(TIMES, 85.0, 0.46, 0.018, g),
                                   sfo_solution(TIMES, 85.0, k))

    def test_equal_rates(self):
        np.testing.assert_allclose(dfop_solution(TIMES, 85.0, 0.1, 0.1, 0.3),
                                   sfo_solution(TIMES, 85.0, 0.1))


class TestHS:
    """Tests for hockey-stick kinetics."""

    def test_continuity_at_breakpoint(self):
        tb = 5.0
        before = hs_solution(tb - 1e-9, 100.0, 0.3, 0.02, tb)
        after = hs_solution(tb + 1e-9, 100.0, 0.3, 0.02, tb)
        assert before == pytest.approx(after, rel=1e-8)

    def test_phases(self):
        tb = 5.0
        assert hs_solution(2.0, 100.0, 0.3, 0.02, tb) == pytest.approx(100 * np.exp(-0.6))
        assert hs_solution(10.0, 100.0, 0.3, 0.02, tb) == pytest.approx(
            100 * np.exp(-0.3 * tb) * np.exp(-0.02 * 5.0))

    def test_equal_rates(self):
        np.testing.assert_allclose(hs_solution(TIMES, 100.0, 0.1, 0.1, 5.0),
                                   sfo_solution(TIMES, 100.0, 0.1))


class TestSFORB:
    """Tests for first-order kinetics with reversible binding."""

    def test_initial_value(self):
        assert sforb_solution(0.0, 100.0, 0.1, 0.02, 0.3) == pytest.approx(100.0)

    def test_no_binding(self):
        """Without binding SFORB is SFO."""
        np.testing.assert_allclose(sforb_solution(TIMES, 100.0, 0.0, 0.02, 0.3),
                                   sfo_solution(TIMES, 100.0, 0.3), rtol=1e-10, atol=1e-10)

    def test_eigenvalues(self):
        """b1 + b2 is the trace and b1 * b2 the determinant of the rate matrix."""
        k_12, k_21, k_out = 0.1, 0.02, 0.3
        b1, b2 = sforb_eigenvalues(k_12, k_21, k_out)
        assert b1 > b2 > 0
        assert b1 + b2 == pytest.approx(k_12 + k_21 + k_out)
        assert b1 * b2 == pytest.approx(k_out * k_21)

    def test_biphasic(self):
        """The slow phase is governed by b2."""
        k_12, k_21, k_out = 0.1, 0.02, 0.3
        _, b2 = sforb_eigenvalues(k_12, k_21, k_out)
        late = sforb_solution(np.array([200.0, 201.0]), 100.0, k_12, k_21, k_out)
        assert late[1] / late[0] == pytest.approx(np.exp(-b2), rel=1e-6)


class TestLogistic:
    """Tests for logistic kinetics."""

    def test_initial_value(self):
        assert logistic_solution(0.0, 100.0, 0.1, 1e-4, 0.2) == pytest.approx(100.0)

    def test_constant_rate(self):
        """With k0 = kmax the rate constant does not change."""
        np.testing.assert_allclose(logistic_solution(TIMES, 100.0, 0.1, 0.1, 0.2),
                                   sfo_solution(TIMES, 100.0, 0.1))

    def test_monotone_decline(self):
        values = logistic_solution(TIMES, 100.0, 0.1, 1e-4, 0.2)
        assert np.all(np.diff(values) <= 0)
