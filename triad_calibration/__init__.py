"""
Robust Triaxial Sensor Calibration Package.

Estimates the bias and the scale/cross-coupling matrix of triaxial sensors
(magnetometers, accelerometers, gyroscopes) from measurements paired with
known reference values (or known field magnitudes), while rejecting
outlying measurements.

The package supports five robust estimation methods sharing one
sample-consensus loop:
    - RANSAC: fixed inlier threshold
    - LMedS: least median of squares (default)
    - MSAC: truncated quadratic cost
    - PROSAC: RANSAC with quality-ranked progressive sampling
    - PROMedS: LMedS with quality-ranked progressive sampling

Example Usage:
    >>> from triad_calibration import (
    ...     Measurement,
    ...     RobustMethod,
    ...     create_session,
    ... )
    >>>
    >>> measurements = [Measurement(observed=m, reference=r) for m, r in pairs]
    >>> session = create_session(RobustMethod.MSAC, measurements=measurements)
    >>> session.threshold = 1e-3
    >>> result = session.calibrate()
    >>> print(result.parameters.bias, result.parameters.matrix)
"""

from triad_calibration.config import CalibrationConfig, get_default_config
from triad_calibration.exceptions import (
    CalibrationError,
    DegenerateSubsetError,
    EstimationFailedError,
    LockedError,
    NotReadyError,
    RefinementError,
)
from triad_calibration.factory import SessionFactory, create_session
from triad_calibration.listener import CalibrationListener
from triad_calibration.measurement import Measurement, MeasurementSet, measurements_from_arrays
from triad_calibration.measurement_model import (
    KnownBiasMeasurementModel,
    KnownNormMeasurementModel,
    MeasurementModel,
    TriadMeasurementModel,
)
from triad_calibration.parameters import PARAMETER_NAMES, CalibrationParameters
from triad_calibration.robust_estimator import InliersData
from triad_calibration.scoring import RobustMethod
from triad_calibration.session import CalibrationResult, CalibrationSession

__version__ = "0.1.0"

__all__ = [
    'CalibrationConfig',
    'CalibrationError',
    'CalibrationListener',
    'CalibrationParameters',
    'CalibrationResult',
    'CalibrationSession',
    'DegenerateSubsetError',
    'EstimationFailedError',
    'InliersData',
    'KnownBiasMeasurementModel',
    'KnownNormMeasurementModel',
    'LockedError',
    'Measurement',
    'MeasurementModel',
    'MeasurementSet',
    'NotReadyError',
    'PARAMETER_NAMES',
    'RefinementError',
    'RobustMethod',
    'SessionFactory',
    'TriadMeasurementModel',
    'create_session',
    'get_default_config',
    'measurements_from_arrays',
]
