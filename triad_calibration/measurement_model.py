"""
Measurement models relating calibration parameters to sensor readings.

The robust estimator never evaluates sensor physics directly: it asks a
MeasurementModel to predict readings, to linearize the prediction, and to
state how many measurements determine the unknown parameters. Three models are
provided:

- TriadMeasurementModel: bias and scale/cross-coupling matrix both unknown.
- KnownBiasMeasurementModel: bias supplied by the caller, matrix unknown.
- KnownNormMeasurementModel: only the magnitude of the sensed field is known
  (gravity or the Earth magnetic field at a known location).

Mathematical Model:
    For a reference value t = [tx, ty, tz] and parameters p, the prediction

        m = b + (I + M) t

    is linear in p, so the Jacobian does not depend on p:

        dm_x/dp = [1, 0, 0, tx, 0,  0,  ty, tz, 0,  0,  0,  0 ]
        dm_y/dp = [0, 1, 0, 0,  ty, 0,  0,  0,  tx, tz, 0,  0 ]
        dm_z/dp = [0, 0, 1, 0,  0,  tz, 0,  0,  0,  0,  tx, ty]

    with p ordered [bx, by, bz, sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy].

Usage Example:
    >>> model = TriadMeasurementModel()
    >>> model.minimum_measurements(common_axis=False)
    4
    >>> model.minimum_measurements(common_axis=True)
    3
    >>> params = CalibrationParameters(bias=[0.1, 0.0, 0.0])
    >>> model.predict(params, np.array([1.0, 0.0, 0.0]))
    array([1.1, 0. , 0. ])
"""

import math
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import numpy as np

from triad_calibration.parameters import (
    BIAS_INDICES,
    COMMON_AXIS_FIXED_INDICES,
    MATRIX_ENTRY_INDICES,
    NUM_PARAMETERS,
    CalibrationParameters,
)


class MeasurementModel(ABC):
    """Abstract relation between calibration parameters and sensor readings.

    Implementations work on a single reference (shape (3,)) or on stacked
    references (shape (N, 3)). Each measurement contributes
    ``equations_per_measurement`` residual components.
    """

    equations_per_measurement = 3

    @abstractmethod
    def free_parameter_indices(self, common_axis: bool) -> Tuple[int, ...]:
        """Indices of the flattened parameter vector that are estimated."""
        pass

    @abstractmethod
    def predict(self, parameters: CalibrationParameters, reference: np.ndarray) -> np.ndarray:
        """Predict the sensor reading(s) for the given reference value(s)."""
        pass

    @abstractmethod
    def jacobian(self, parameters: CalibrationParameters, reference: np.ndarray) -> np.ndarray:
        """Partial derivatives of the prediction w.r.t. all 12 parameters.

        Returns:
            (3, 12) array for a single reference, (N, 3, 12) for stacked ones
        """
        pass

    @abstractmethod
    def linear_system(
        self,
        observed: np.ndarray,
        reference: np.ndarray,
        common_axis: bool,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Linear relation A @ x = b used for preliminary solutions.

        For models linear in their parameters x holds the free parameters.
        Other models linearize the relation in their own unknowns and map the
        solution back through from_linear_solution().

        Args:
            observed: (N, 3) sensor readings
            reference: (N, 3) reference values
            common_axis: Whether the common-axis parameters are fixed

        Returns:
            Tuple (A, b) with one row per residual component
        """
        pass

    def from_linear_solution(
        self,
        solution: np.ndarray,
        common_axis: bool,
        base: Optional[CalibrationParameters] = None,
    ) -> Optional[CalibrationParameters]:
        """Parameters for a solution of linear_system(), None if inadmissible."""
        return self.compose(solution, common_axis, base)

    def fixed_parameters(
        self,
        common_axis: bool,
        base: Optional[CalibrationParameters] = None,
    ) -> np.ndarray:
        """Flattened parameter vector holding the values of fixed entries."""
        vector = np.zeros(NUM_PARAMETERS) if base is None else base.to_vector()
        if common_axis:
            vector[list(COMMON_AXIS_FIXED_INDICES)] = 0.0
        return vector

    def minimum_measurements(self, common_axis: bool) -> int:
        """Smallest number of measurements that determines the free parameters."""
        free = self.free_parameter_indices(common_axis)
        return int(math.ceil(len(free) / self.equations_per_measurement))

    def compose(
        self,
        free_values: np.ndarray,
        common_axis: bool,
        base: Optional[CalibrationParameters] = None,
    ) -> CalibrationParameters:
        """Rebuild full parameters from the estimated free values."""
        vector = self.fixed_parameters(common_axis, base)
        vector[list(self.free_parameter_indices(common_axis))] = free_values
        return CalibrationParameters.from_vector(vector)

    def residual_vectors(
        self,
        parameters: CalibrationParameters,
        observed: np.ndarray,
        reference: np.ndarray,
    ) -> np.ndarray:
        """Residual components, shape (N, equations_per_measurement).

        Linear triad models return predicted minus observed readings.
        """
        return self.predict(parameters, reference) - observed

    def residual_jacobian(
        self,
        parameters: CalibrationParameters,
        observed: np.ndarray,
        reference: np.ndarray,
    ) -> np.ndarray:
        """Derivatives of residual_vectors() w.r.t. all 12 parameters.

        Returns:
            (N, equations_per_measurement, 12) array
        """
        return self.jacobian(parameters, np.atleast_2d(reference))

    def residuals(
        self,
        parameters: CalibrationParameters,
        observed: np.ndarray,
        reference: np.ndarray,
    ) -> np.ndarray:
        """Euclidean norm of each measurement's residual components."""
        return np.linalg.norm(self.residual_vectors(parameters, observed, reference), axis=-1)


class TriadMeasurementModel(MeasurementModel):
    """Linear triad model with unknown bias and unknown matrix."""

    def free_parameter_indices(self, common_axis: bool) -> Tuple[int, ...]:
        if common_axis:
            return tuple(i for i in range(NUM_PARAMETERS) if i not in COMMON_AXIS_FIXED_INDICES)
        return tuple(range(NUM_PARAMETERS))

    def predict(self, parameters: CalibrationParameters, reference: np.ndarray) -> np.ndarray:
        reference = np.asarray(reference, dtype=float)
        return reference @ parameters.transform.T + parameters.bias

    def jacobian(self, parameters: CalibrationParameters, reference: np.ndarray) -> np.ndarray:
        reference = np.asarray(reference, dtype=float)
        single = reference.ndim == 1
        t = np.atleast_2d(reference)
        tx, ty, tz = t[:, 0], t[:, 1], t[:, 2]

        jac = np.zeros((t.shape[0], 3, NUM_PARAMETERS))
        jac[:, 0, 0] = 1.0
        jac[:, 0, 3] = tx
        jac[:, 0, 6] = ty
        jac[:, 0, 7] = tz

        jac[:, 1, 1] = 1.0
        jac[:, 1, 4] = ty
        jac[:, 1, 8] = tx
        jac[:, 1, 9] = tz

        jac[:, 2, 2] = 1.0
        jac[:, 2, 5] = tz
        jac[:, 2, 10] = tx
        jac[:, 2, 11] = ty

        return jac[0] if single else jac

    def _offset(self) -> np.ndarray:
        return np.zeros(3)

    def linear_system(
        self,
        observed: np.ndarray,
        reference: np.ndarray,
        common_axis: bool,
    ) -> Tuple[np.ndarray, np.ndarray]:
        observed = np.atleast_2d(np.asarray(observed, dtype=float))
        reference = np.atleast_2d(np.asarray(reference, dtype=float))
        free = list(self.free_parameter_indices(common_axis))

        # Prediction is linear, so the Jacobian at zero is the design matrix
        design = self.jacobian(CalibrationParameters(), reference).reshape(-1, NUM_PARAMETERS)
        rhs = (observed - reference - self._offset()).reshape(-1)
        return design[:, free], rhs


class KnownBiasMeasurementModel(TriadMeasurementModel):
    """Triad model whose bias is known in advance and held fixed.

    Only the scale factors and cross-coupling terms are estimated. Rows and
    columns of the bias in any covariance produced for this model are zero.

    Args:
        bias: Known bias 3-vector
    """

    def __init__(self, bias):
        self.bias = CalibrationParameters(bias=bias).bias

    def free_parameter_indices(self, common_axis: bool) -> Tuple[int, ...]:
        return tuple(
            i for i in super().free_parameter_indices(common_axis) if i not in BIAS_INDICES
        )

    def fixed_parameters(
        self,
        common_axis: bool,
        base: Optional[CalibrationParameters] = None,
    ) -> np.ndarray:
        vector = super().fixed_parameters(common_axis, base)
        vector[list(BIAS_INDICES)] = self.bias
        return vector

    def _offset(self) -> np.ndarray:
        return self.bias


class KnownNormMeasurementModel(TriadMeasurementModel):
    """Model for readings whose field magnitude is known but not its direction.

    An accelerometer at rest senses gravity and a magnetometer senses the
    local Earth field; at a given location the magnitude of either is known
    while its direction in the sensor frame is not. The residual of a
    reading m with expected magnitude n is

        r = || (I + M)^-1 (m - b) || - n

    Rotating the sensor frame leaves every residual unchanged, so myx, mzx
    and mzy are always held at zero whatever ``common_axis`` says: (I + M)
    is estimated in upper-triangular form.

    Preliminary solutions come from the ellipsoid relation

        (m - b)^T Q (m - b) = n^2,    Q = (I + M)^-T (I + M)^-1

    which is linear in the six entries of Q, g = Q b and d = b^T Q b. The
    bias follows as Q^-1 g and (I + M) as the upper-triangular Cholesky
    factor of Q^-1. With a known bias only Q is unknown.

    Args:
        norm: Expected magnitude of every reading. When None the magnitude
            of each measurement's reference value is used, and its direction
            is ignored.
        bias: Known bias 3-vector; estimated when None
    """

    equations_per_measurement = 1

    def __init__(self, norm: Optional[float] = None, bias=None):
        if norm is not None:
            norm = float(norm)
            if not np.isfinite(norm) or norm <= 0.0:
                raise ValueError(f"norm must be positive and finite, got {norm}")
        self.norm = norm
        self.bias = CalibrationParameters(bias=bias).bias if bias is not None else None

    @property
    def bias_known(self) -> bool:
        return self.bias is not None

    def free_parameter_indices(self, common_axis: bool) -> Tuple[int, ...]:
        free = super().free_parameter_indices(True)
        if self.bias_known:
            free = tuple(i for i in free if i not in BIAS_INDICES)
        return free

    def fixed_parameters(
        self,
        common_axis: bool,
        base: Optional[CalibrationParameters] = None,
    ) -> np.ndarray:
        vector = super().fixed_parameters(True, base)
        if self.bias_known:
            vector[list(BIAS_INDICES)] = self.bias
        return vector

    def minimum_measurements(self, common_axis: bool) -> int:
        # One row per reading for each unknown of the ellipsoid relation
        return 6 if self.bias_known else 10

    def expected_norms(self, reference: np.ndarray) -> np.ndarray:
        reference = np.atleast_2d(np.asarray(reference, dtype=float))
        if self.norm is not None:
            return np.full(reference.shape[0], self.norm)
        return np.linalg.norm(reference, axis=1)

    def _corrected(
        self,
        parameters: CalibrationParameters,
        observed: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Readings with bias and scale/cross-coupling removed, and (I + M)^-1."""
        inverse = np.linalg.inv(parameters.transform)
        observed = np.atleast_2d(np.asarray(observed, dtype=float))
        return (observed - parameters.bias) @ inverse.T, inverse

    def residual_vectors(
        self,
        parameters: CalibrationParameters,
        observed: np.ndarray,
        reference: np.ndarray,
    ) -> np.ndarray:
        corrected, _ = self._corrected(parameters, observed)
        difference = np.linalg.norm(corrected, axis=1) - self.expected_norms(reference)
        return difference[:, np.newaxis]

    def residual_jacobian(
        self,
        parameters: CalibrationParameters,
        observed: np.ndarray,
        reference: np.ndarray,
    ) -> np.ndarray:
        corrected, inverse = self._corrected(parameters, observed)
        length = np.linalg.norm(corrected, axis=1, keepdims=True)
        direction = np.divide(corrected, length, out=np.zeros_like(corrected), where=length > 0)

        # dr = -w^T (dM u + db) with u the corrected reading and w = A^T u / |u|
        w = direction @ inverse
        jac = np.zeros((corrected.shape[0], 1, NUM_PARAMETERS))
        jac[:, 0, list(BIAS_INDICES)] = -w
        for index, (row, col) in MATRIX_ENTRY_INDICES.items():
            jac[:, 0, index] = -w[:, row] * corrected[:, col]
        return jac

    def linear_system(
        self,
        observed: np.ndarray,
        reference: np.ndarray,
        common_axis: bool,
    ) -> Tuple[np.ndarray, np.ndarray]:
        observed = np.atleast_2d(np.asarray(observed, dtype=float))
        centered = observed - self.bias if self.bias_known else observed
        x, y, z = centered[:, 0], centered[:, 1], centered[:, 2]

        columns = [x * x, y * y, z * z, 2 * x * y, 2 * x * z, 2 * y * z]
        if not self.bias_known:
            columns += [-2 * x, -2 * y, -2 * z, np.ones_like(x)]
        return np.column_stack(columns), self.expected_norms(reference) ** 2

    def from_linear_solution(
        self,
        solution: np.ndarray,
        common_axis: bool,
        base: Optional[CalibrationParameters] = None,
    ) -> Optional[CalibrationParameters]:
        q11, q22, q33, q12, q13, q23 = solution[:6]
        quadric = np.array([[q11, q12, q13], [q12, q22, q23], [q13, q23, q33]])
        flip = np.eye(3)[::-1]
        try:
            bias = self.bias if self.bias_known else np.linalg.solve(quadric, solution[6:9])
            # Q^-1 = (I + M)(I + M)^T with (I + M) upper triangular
            lower = np.linalg.cholesky(flip @ np.linalg.inv(quadric) @ flip)
        except np.linalg.LinAlgError:
            return None

        transform = flip @ lower @ flip
        if not (np.all(np.isfinite(bias)) and np.all(np.isfinite(transform))):
            return None
        return CalibrationParameters(bias=bias, matrix=transform - np.eye(3))
