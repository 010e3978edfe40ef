#!/usr/bin/env python3
"""
Property-based tests for triaxial calibration.

This module uses Hypothesis to verify properties that must hold for any
parameters, reference directions and residual sets.

Properties tested:
1. Adaptive iteration bound stays within [1, max] and never grows with the
   inlier ratio
2. The linear system reproduces the forward model exactly
3. Minimal subsets of well-conditioned measurements recover the parameters
4. Expanded covariances keep fixed-parameter rows and columns at zero
5. Scoring invariants: MSAC cost is bounded, LMedS threshold never drops
   below the stop threshold, sampled subsets hold distinct indices
"""

import numpy as np
from hypothesis import HealthCheck, assume, given, settings
from hypothesis import strategies as st

from triad_calibration.covariance import expand_covariance
from triad_calibration.measurement import MeasurementSet, measurements_from_arrays
from triad_calibration.measurement_model import TriadMeasurementModel
from triad_calibration.parameters import (
    COMMON_AXIS_FIXED_INDICES,
    NUM_PARAMETERS,
    CalibrationParameters,
)
from triad_calibration.preliminary_solver import PreliminarySolver
from triad_calibration.robust_estimator import adaptive_iteration_bound
from triad_calibration.scoring import LMedSStrategy, MSACStrategy, UniformSubsetSampler


# ============================================================================
# Hypothesis Strategies for Test Data Generation
# ============================================================================

finite = st.floats(min_value=-0.2, max_value=0.2, allow_nan=False, allow_infinity=False)


@st.composite
def parameters_strategy(draw, common_axis=False):
    """Calibration parameters with bias and matrix entries in [-0.2, 0.2]."""
    vector = np.array(draw(st.lists(finite, min_size=NUM_PARAMETERS, max_size=NUM_PARAMETERS)))
    params = CalibrationParameters.from_vector(vector)
    return params.with_common_axis() if common_axis else params


@st.composite
def references_strategy(draw, count):
    """Reference vectors drawn from a seeded normal distribution."""
    seed = draw(st.integers(min_value=0, max_value=2 ** 32 - 1))
    return np.random.default_rng(seed).normal(size=(count, 3))


residuals_strategy = st.lists(
    st.floats(min_value=0.0, max_value=10.0, allow_nan=False, allow_infinity=False),
    min_size=5,
    max_size=50,
).map(np.array)


# ============================================================================
# Property 1: Adaptive iteration bound
# ============================================================================

@given(
    ratio_a=st.floats(min_value=0.0, max_value=1.0),
    ratio_b=st.floats(min_value=0.0, max_value=1.0),
    subset_size=st.integers(min_value=1, max_value=12),
    confidence=st.floats(min_value=0.5, max_value=0.999),
    max_iterations=st.integers(min_value=1, max_value=100000),
)
@settings(deadline=None, suppress_health_check=[HealthCheck.too_slow])
def test_property_adaptive_bound_monotonic(ratio_a, ratio_b, subset_size, confidence,
                                           max_iterations):
    """
    Property: the bound lies in [1, max_iterations] and is non-increasing in
    the inlier ratio.

    A better inlier ratio makes an all-inlier subset more likely, so it can
    never require more iterations.
    """
    low, high = sorted([ratio_a, ratio_b])
    bound_low = adaptive_iteration_bound(low, subset_size, confidence, max_iterations)
    bound_high = adaptive_iteration_bound(high, subset_size, confidence, max_iterations)

    assert 1 <= bound_high <= max_iterations
    assert 1 <= bound_low <= max_iterations
    assert bound_high <= bound_low


# ============================================================================
# Property 2: Linear system consistency
# ============================================================================

@given(params=parameters_strategy(), reference=references_strategy(6))
@settings(deadline=None, suppress_health_check=[HealthCheck.too_slow])
def test_property_linear_system_matches_prediction(params, reference):
    """
    Property: design @ parameters == rhs for observations from the model.
    """
    model = TriadMeasurementModel()
    observed = model.predict(params, reference)
    design, rhs = model.linear_system(observed, reference, common_axis=False)
    assert np.allclose(design @ params.to_vector(), rhs, atol=1e-12)


@given(params=parameters_strategy(common_axis=True), reference=references_strategy(5))
@settings(deadline=None, suppress_health_check=[HealthCheck.too_slow])
def test_property_common_axis_linear_system(params, reference):
    """
    Property: with common axis, the reduced system only uses free columns.
    """
    model = TriadMeasurementModel()
    observed = model.predict(params, reference)
    design, rhs = model.linear_system(observed, reference, common_axis=True)
    free = list(model.free_parameter_indices(True))
    assert design.shape == (15, len(free))
    assert np.allclose(design @ params.to_vector()[free], rhs, atol=1e-12)


# ============================================================================
# Property 3: Exact recovery from minimal subsets
# ============================================================================

@given(params=parameters_strategy(), reference=references_strategy(4))
@settings(deadline=None, suppress_health_check=[HealthCheck.too_slow])
def test_property_minimal_subset_recovers_parameters(params, reference):
    """
    Property: four noise-free, well-conditioned measurements determine all
    twelve parameters.
    """
    model = TriadMeasurementModel()
    observed = model.predict(params, reference)
    design, _ = model.linear_system(observed, reference, common_axis=False)
    assume(np.linalg.cond(design) < 1e6)

    mset = MeasurementSet(measurements_from_arrays(observed, reference))
    result = PreliminarySolver(model).solve(mset, [0, 1, 2, 3])
    assert result.parameters.allclose(params, atol=1e-6)


# ============================================================================
# Property 4: Covariance zero structure
# ============================================================================

@given(seed=st.integers(min_value=0, max_value=10000))
@settings(deadline=None, suppress_health_check=[HealthCheck.too_slow])
def test_property_expanded_covariance_zero_structure(seed):
    """
    Property: fixed parameters get exactly-zero rows and columns, free
    entries are copied unchanged.
    """
    free = [i for i in range(NUM_PARAMETERS) if i not in COMMON_AXIS_FIXED_INDICES]
    a = np.random.default_rng(seed).normal(size=(len(free), len(free)))
    free_cov = a @ a.T

    full = expand_covariance(free_cov, free)
    for index in COMMON_AXIS_FIXED_INDICES:
        assert np.all(full[index, :] == 0.0)
        assert np.all(full[:, index] == 0.0)
    assert np.array_equal(full[np.ix_(free, free)], free_cov)


# ============================================================================
# Property 5: Scoring invariants
# ============================================================================

@given(residuals=residuals_strategy, threshold=st.floats(min_value=1e-3, max_value=5.0))
@settings(deadline=None, suppress_health_check=[HealthCheck.too_slow])
def test_property_msac_cost_bounded(residuals, threshold):
    """
    Property: truncated quadratic cost never exceeds N * t^2 and inliers are
    exactly the residuals within the threshold.
    """
    score = MSACStrategy().evaluate(residuals, threshold, 4)
    assert score.ranking[0] <= len(residuals) * threshold ** 2 * (1 + 1e-12)
    assert np.array_equal(score.inliers, residuals <= threshold)


@given(residuals=residuals_strategy, threshold=st.floats(min_value=1e-9, max_value=1.0))
@settings(deadline=None, suppress_health_check=[HealthCheck.too_slow])
def test_property_lmeds_threshold_floor(residuals, threshold):
    """
    Property: the LMedS inlier threshold is never below the stop threshold.
    """
    score = LMedSStrategy().evaluate(residuals, threshold, 4)
    assert score.threshold >= threshold
    assert score.num_inliers == int(np.count_nonzero(residuals <= score.threshold))


@given(
    num_measurements=st.integers(min_value=4, max_value=40),
    subset_size=st.integers(min_value=1, max_value=4),
    seed=st.integers(min_value=0, max_value=10000),
)
@settings(deadline=None, suppress_health_check=[HealthCheck.too_slow])
def test_property_uniform_subsets_distinct(num_measurements, subset_size, seed):
    """
    Property: every drawn subset holds distinct, in-range indices.
    """
    sampler = UniformSubsetSampler(num_measurements, subset_size, np.random.default_rng(seed))
    for _ in range(5):
        subset = sampler.draw()
        assert len(set(subset.tolist())) == subset_size
        assert 0 <= subset.min() and subset.max() < num_measurements
