"""
Shared fixtures for triaxial calibration tests.

Synthetic measurements follow observed = b + (I + M) t with unit-norm random
reference directions. A fraction of measurements is contaminated with large
errors; quality scores are 1 / (1 + error) so PROSAC/PROMedS rank clean
measurements first.
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pytest

from triad_calibration.measurement import Measurement
from triad_calibration.parameters import CalibrationParameters

BIAS_RANGE = 0.1
MATRIX_RANGE = 0.05
OUTLIER_NOISE = 0.1


@dataclass
class SyntheticData:
    measurements: List[Measurement]
    truth: CalibrationParameters
    outliers: np.ndarray
    quality_scores: np.ndarray


def generate_data(
    rng: np.random.Generator,
    num_measurements: int = 200,
    outlier_fraction: float = 0.2,
    inlier_noise: float = 0.0,
    outlier_noise: float = OUTLIER_NOISE,
    common_axis: bool = False,
    standard_deviation: Optional[float] = None,
    truth: Optional[CalibrationParameters] = None,
) -> SyntheticData:
    if truth is None:
        matrix = rng.uniform(-MATRIX_RANGE, MATRIX_RANGE, (3, 3))
        if common_axis:
            matrix = np.triu(matrix)
        truth = CalibrationParameters(bias=rng.uniform(-BIAS_RANGE, BIAS_RANGE, 3), matrix=matrix)

    directions = rng.normal(size=(num_measurements, 3))
    reference = directions / np.linalg.norm(directions, axis=1, keepdims=True)
    observed = reference @ truth.transform.T + truth.bias

    if inlier_noise > 0:
        observed = observed + rng.normal(0.0, inlier_noise, observed.shape)

    outliers = np.zeros(num_measurements, dtype=bool)
    num_outliers = int(round(outlier_fraction * num_measurements))
    if num_outliers:
        outliers[rng.choice(num_measurements, num_outliers, replace=False)] = True
    errors = np.zeros(num_measurements)
    if num_outliers:
        contamination = rng.normal(0.0, outlier_noise, (num_outliers, 3))
        observed[outliers] += contamination
        errors[outliers] = np.linalg.norm(contamination, axis=1)

    quality_scores = 1.0 / (1.0 + errors)
    measurements = [
        Measurement(observed[i], reference[i], standard_deviation=standard_deviation)
        for i in range(num_measurements)
    ]
    return SyntheticData(measurements, truth, outliers, quality_scores)


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)


@pytest.fixture
def make_data(rng):
    """Factory fixture producing SyntheticData from the shared generator."""
    def _make(**kwargs) -> SyntheticData:
        return generate_data(rng, **kwargs)
    return _make


@pytest.fixture
def clean_data(make_data):
    """Noise-free inliers with 20% gross outliers."""
    return make_data()


@pytest.fixture
def noisy_data(make_data):
    """Inliers with 1e-3 noise (standard deviation supplied), 20% outliers."""
    return make_data(inlier_noise=1e-3, standard_deviation=1e-3)
