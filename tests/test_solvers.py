#!/usr/bin/env python3
"""
Unit tests for the preliminary solver, non-linear refiner and covariance estimator.

Tests cover:
- Exact recovery from minimal subsets (general and common-axis)
- Degenerate subset detection (try_solve / solve)
- Initial-guess seeding when the linear solver is disabled
- Preliminary refinement over a subset
- Non-linear refinement statistics (MSE, chi-square) and fixed parameters
- Refinement failure reporting
- Covariance expansion and zero structure for fixed parameters
"""

import numpy as np
import pytest

from triad_calibration.covariance import estimate_covariance, expand_covariance
from triad_calibration.exceptions import DegenerateSubsetError, RefinementError
from triad_calibration.measurement import Measurement, MeasurementSet
from triad_calibration.measurement_model import (
    KnownBiasMeasurementModel,
    TriadMeasurementModel,
)
from triad_calibration.parameters import COMMON_AXIS_FIXED_INDICES, CalibrationParameters
from triad_calibration.preliminary_solver import PreliminarySolver
from triad_calibration.refiner import NonLinearRefiner


# ============================================================================
# Test Fixtures
# ============================================================================

@pytest.fixture
def model():
    return TriadMeasurementModel()


@pytest.fixture
def clean_set(make_data):
    data = make_data(num_measurements=50, outlier_fraction=0.0)
    return MeasurementSet(data.measurements), data.truth


@pytest.fixture
def noisy_set(make_data):
    data = make_data(num_measurements=300, outlier_fraction=0.0,
                     inlier_noise=1e-3, standard_deviation=1e-3)
    return MeasurementSet(data.measurements), data.truth


# ============================================================================
# PreliminarySolver
# ============================================================================

class TestPreliminarySolver:
    """Tests for subset solutions."""

    def test_minimal_subset_exact(self, model, clean_set):
        mset, truth = clean_set
        solver = PreliminarySolver(model)
        result = solver.solve(mset, [0, 1, 2, 3])
        assert result.parameters.allclose(truth, atol=1e-9)
        assert result.refinement is None
        assert result.mse == 0.0 and result.chi_sq == 0.0

    def test_overdetermined_subset(self, model, clean_set):
        mset, truth = clean_set
        result = PreliminarySolver(model).solve(mset)
        assert result.parameters.allclose(truth, atol=1e-9)

    def test_common_axis_minimal_subset(self, model, make_data):
        data = make_data(num_measurements=10, outlier_fraction=0.0, common_axis=True)
        solver = PreliminarySolver(model, common_axis=True)
        assert solver.minimum_measurements == 3
        result = solver.solve(MeasurementSet(data.measurements), [0, 1, 2])
        assert result.parameters.allclose(data.truth, atol=1e-9)
        assert result.parameters.is_common_axis()

    def test_known_bias_model(self, make_data):
        data = make_data(num_measurements=10, outlier_fraction=0.0)
        solver = PreliminarySolver(KnownBiasMeasurementModel(data.truth.bias))
        result = solver.solve(MeasurementSet(data.measurements), [0, 1, 2])
        assert result.parameters.allclose(data.truth, atol=1e-9)

    def test_degenerate_subset(self, model):
        """Repeated reference values cannot determine 12 parameters."""
        repeated = [Measurement([1.0, 0.1, 0.2], [1.0, 0.0, 0.0]) for _ in range(6)]
        mset = MeasurementSet(repeated)
        solver = PreliminarySolver(model)
        assert solver.try_solve(mset, [0, 1, 2, 3]) is None
        with pytest.raises(DegenerateSubsetError):
            solver.solve(mset, [0, 1, 2, 3])

    def test_subset_below_minimum(self, model, clean_set):
        mset, _ = clean_set
        with pytest.raises(ValueError) as exc_info:
            PreliminarySolver(model).try_solve(mset, [0, 1, 2])
        assert "minimum" in str(exc_info.value)

    def test_linear_solver_disabled_uses_initial_guess(self, model, clean_set):
        mset, _ = clean_set
        guess = CalibrationParameters(bias=[0.01, 0.02, 0.03], matrix=np.full((3, 3), 0.01))
        solver = PreliminarySolver(model, linear_solver_used=False, initial_guess=guess)
        assert solver.solve(mset, [0, 1, 2, 3]).parameters == guess

        common = PreliminarySolver(model, common_axis=True, linear_solver_used=False,
                                   initial_guess=guess)
        assert common.solve(mset, [0, 1, 2]).parameters.is_common_axis()

    def test_preliminary_refinement(self, model, noisy_set):
        mset, truth = noisy_set
        solver = PreliminarySolver(model, refine_preliminary=True)
        result = solver.solve(mset, list(range(20)))
        assert result.refinement is not None
        assert result.mse > 0.0
        assert result.chi_sq > 0.0

    def test_refinement_from_initial_guess(self, model, noisy_set):
        """With the linear solver disabled, refinement starts at the guess."""
        mset, truth = noisy_set
        solver = PreliminarySolver(model, linear_solver_used=False, refine_preliminary=True)
        result = solver.solve(mset)
        assert result.parameters.allclose(truth, atol=5e-3)


# ============================================================================
# NonLinearRefiner
# ============================================================================

class TestNonLinearRefiner:
    """Tests for weighted least-squares refinement."""

    def test_refines_noisy_data(self, model, noisy_set):
        mset, truth = noisy_set
        result = NonLinearRefiner().refine(model, mset, CalibrationParameters(), common_axis=False)
        assert result.parameters.allclose(truth, atol=5e-3)
        assert result.mse > 0.0
        assert result.chi_sq > 0.0
        # chi-square of 3N unit-variance residuals is close to 3N - 12
        assert 0.5 * 900 < result.chi_sq < 1.5 * 900
        assert result.weighted_jacobian.shape == (900, 12)
        assert result.weighted_residuals.shape == (900,)

    def test_mse_and_chi_sq_relation(self, model, noisy_set):
        """With uniform sigma, chi_sq = N * mse / sigma^2."""
        mset, _ = noisy_set
        result = NonLinearRefiner().refine(model, mset, CalibrationParameters(), common_axis=False)
        assert result.chi_sq == pytest.approx(len(mset) * result.mse / 1e-6, rel=1e-9)

    def test_common_axis_terms_stay_zero(self, model, noisy_set):
        mset, _ = noisy_set
        initial = CalibrationParameters(matrix=np.full((3, 3), 0.01))
        result = NonLinearRefiner().refine(model, mset, initial, common_axis=True)
        assert result.parameters.is_common_axis()
        assert len(result.free_indices) == 9

    def test_too_few_measurements(self, model, clean_set):
        mset, _ = clean_set
        with pytest.raises(RefinementError):
            NonLinearRefiner().refine(model, mset.subset([0, 1, 2]), CalibrationParameters(), False)

    def test_non_convergence_raises(self, model, noisy_set):
        mset, _ = noisy_set
        refiner = NonLinearRefiner(max_evaluations=1)
        with pytest.raises(RefinementError) as exc_info:
            refiner.refine(model, mset, CalibrationParameters(bias=[1.0, 1.0, 1.0]), False)
        assert "converge" in str(exc_info.value)

    @pytest.mark.parametrize("kwargs", [{'max_evaluations': 0}, {'ftol': 0.0}, {'gtol': -1.0}])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            NonLinearRefiner(**kwargs)


# ============================================================================
# Covariance
# ============================================================================

class TestCovariance:
    """Tests for covariance estimation and expansion."""

    def test_expand_places_entries(self):
        free = [0, 3, 11]
        cov = np.array([[1.0, 0.1, 0.2], [0.1, 2.0, 0.3], [0.2, 0.3, 3.0]])
        full = expand_covariance(cov, free)
        assert full.shape == (12, 12)
        assert full[3, 3] == 2.0
        assert full[0, 11] == 0.2
        assert np.count_nonzero(full) == 9

    def test_expand_shape_mismatch(self):
        with pytest.raises(ValueError):
            expand_covariance(np.eye(2), [0, 1, 2])

    def test_common_axis_zero_structure(self, model, noisy_set):
        mset, _ = noisy_set
        result = NonLinearRefiner().refine(model, mset, CalibrationParameters(), common_axis=True)
        cov = estimate_covariance(result.weighted_jacobian, result.weighted_residuals,
                                  result.free_indices)
        for index in COMMON_AXIS_FIXED_INDICES:
            assert np.all(cov[index, :] == 0.0)
            assert np.all(cov[:, index] == 0.0)
        free = [i for i in range(12) if i not in COMMON_AXIS_FIXED_INDICES]
        assert np.all(np.diag(cov)[free] > 0.0)
        assert np.allclose(cov, cov.T)

    def test_absolute_sigma_matches_noise_level(self, model, noisy_set):
        """Bias standard deviation is about sigma * sqrt(1/N) scaled by geometry."""
        mset, _ = noisy_set
        result = NonLinearRefiner().refine(model, mset, CalibrationParameters(), common_axis=False)
        cov = estimate_covariance(result.weighted_jacobian, result.weighted_residuals,
                                  result.free_indices, absolute_sigma=True)
        bias_std = np.sqrt(np.diag(cov)[:3])
        assert np.all(bias_std > 1e-3 / np.sqrt(300) * 0.5)
        assert np.all(bias_std < 1e-3 / np.sqrt(300) * 3.0)

    def test_relative_sigma_scales_by_residual_variance(self):
        jac = np.array([[1.0], [1.0], [1.0], [1.0]])
        res = np.array([1.0, -1.0, 1.0, -1.0])
        absolute = estimate_covariance(jac, res, [0], absolute_sigma=True)
        relative = estimate_covariance(jac, res, [0], absolute_sigma=False)
        assert absolute[0, 0] == pytest.approx(0.25)
        # s^2 = 4 / (4 - 1)
        assert relative[0, 0] == pytest.approx(0.25 * 4.0 / 3.0)

    def test_singular_jacobian_returns_none(self):
        jac = np.array([[1.0, 1.0], [2.0, 2.0], [3.0, 3.0]])
        assert estimate_covariance(jac, np.zeros(3), [0, 1]) is None
