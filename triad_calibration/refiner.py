"""
Non-linear refinement of calibration parameters.

Refines a candidate solution by weighted least squares over a set of
measurements (normally the inliers of the robust search), using
scipy.optimize.least_squares with the analytic residual Jacobian of the
measurement model.

Mathematical Model:
    For free parameter vector x and measurements i with standard deviation
    sigma_i, minimize:

        chi_sq(x) = sum_i || r_i(x) / sigma_i ||^2

    where r_i is the residual of measurement i: h(x, t_i) - m_i for the triad
    models (h the prediction for reference t_i, m_i the observed reading), or
    the magnitude error of the corrected reading for the known-norm model.
    Reported statistics:

    - chi_sq: weighted sum of squared residuals at the solution
    - mse: mean over measurements of the squared (unweighted) residual norm

Parameters fixed by the configuration (common-axis cross-coupling terms, a
known bias) never enter the optimization and keep their input values.

Usage Example:
    >>> refiner = NonLinearRefiner()
    >>> result = refiner.refine(model, MeasurementSet(measurements), candidate,
    ...                         common_axis=False)
    >>> print(f"MSE: {result.mse:.3e}, chi2: {result.chi_sq:.3f}")
"""

from dataclasses import dataclass
from typing import Tuple
import logging

import numpy as np
from scipy.optimize import least_squares

from triad_calibration.exceptions import RefinementError
from triad_calibration.measurement import MeasurementSet
from triad_calibration.measurement_model import MeasurementModel
from triad_calibration.parameters import CalibrationParameters

logger = logging.getLogger(__name__)


@dataclass
class RefinementResult:
    """Outcome of one non-linear refinement.

    Attributes:
        parameters: Refined calibration parameters
        mse: Mean squared residual norm over the refined measurements
        chi_sq: Sigma-weighted sum of squared residual components
        weighted_jacobian: (3N, P) Jacobian of the weighted residuals with
            respect to the free parameters, at the solution
        weighted_residuals: (3N,) weighted residuals at the solution
        free_indices: Flattened parameter indices that were optimized
        num_evaluations: Function evaluations performed by the solver
        message: Solver termination message
    """
    parameters: CalibrationParameters
    mse: float
    chi_sq: float
    weighted_jacobian: np.ndarray
    weighted_residuals: np.ndarray
    free_indices: Tuple[int, ...]
    num_evaluations: int
    message: str = ''


class NonLinearRefiner:
    """Weighted least-squares refinement around a candidate solution.

    Args:
        max_evaluations: Maximum residual evaluations before giving up
        ftol: Relative cost-change tolerance
        xtol: Relative step tolerance
        gtol: Gradient tolerance
    """

    DEFAULT_MAX_EVALUATIONS = 200
    DEFAULT_TOLERANCE = 1e-12

    def __init__(
        self,
        max_evaluations: int = DEFAULT_MAX_EVALUATIONS,
        ftol: float = DEFAULT_TOLERANCE,
        xtol: float = DEFAULT_TOLERANCE,
        gtol: float = DEFAULT_TOLERANCE,
    ):
        if max_evaluations < 1:
            raise ValueError(f"max_evaluations must be at least 1, got {max_evaluations}")
        for name, value in (('ftol', ftol), ('xtol', xtol), ('gtol', gtol)):
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        self.max_evaluations = max_evaluations
        self.ftol = ftol
        self.xtol = xtol
        self.gtol = gtol

    def refine(
        self,
        model: MeasurementModel,
        measurements: MeasurementSet,
        initial: CalibrationParameters,
        common_axis: bool,
    ) -> RefinementResult:
        """Refine ``initial`` over ``measurements``.

        Args:
            model: Measurement model providing predictions and Jacobians
            measurements: Measurements to fit (typically the inliers)
            initial: Starting point; also supplies the values of fixed entries
            common_axis: Whether the common-axis terms are held at zero

        Returns:
            RefinementResult at the converged solution

        Raises:
            RefinementError: If the solver fails, does not converge within
                max_evaluations, or produces non-finite parameters
        """
        free = model.free_parameter_indices(common_axis)
        if len(measurements) * model.equations_per_measurement < len(free):
            raise RefinementError(
                f"Cannot refine {len(free)} parameters from {len(measurements)} measurements"
            )

        base = initial.with_common_axis() if common_axis else initial
        x0 = base.to_vector()[list(free)]
        observed = measurements.observed
        reference = measurements.reference
        inv_sigma = 1.0 / measurements.standard_deviations

        def residuals(x: np.ndarray) -> np.ndarray:
            params = model.compose(x, common_axis, base)
            diff = model.residual_vectors(params, observed, reference)
            return (diff * inv_sigma[:, np.newaxis]).ravel()

        def jacobian(x: np.ndarray) -> np.ndarray:
            params = model.compose(x, common_axis, base)
            jac = model.residual_jacobian(params, observed, reference)[:, :, list(free)]
            jac = jac * inv_sigma[:, np.newaxis, np.newaxis]
            return jac.reshape(-1, len(free))

        try:
            solution = least_squares(
                residuals,
                x0,
                jac=jacobian,
                method='trf',
                x_scale='jac',
                ftol=self.ftol,
                xtol=self.xtol,
                gtol=self.gtol,
                max_nfev=self.max_evaluations,
            )
        except (ValueError, np.linalg.LinAlgError) as e:
            raise RefinementError(f"Non-linear refinement failed: {e}") from e

        if not solution.success:
            raise RefinementError(
                f"Non-linear refinement did not converge after {solution.nfev} "
                f"evaluations: {solution.message}"
            )
        if not np.all(np.isfinite(solution.x)):
            raise RefinementError("Non-linear refinement produced non-finite parameters")

        refined = model.compose(solution.x, common_axis, base)
        raw = model.residual_vectors(refined, observed, reference)
        weighted = residuals(solution.x)

        result = RefinementResult(
            parameters=refined,
            mse=float(np.mean(np.sum(raw ** 2, axis=1))),
            chi_sq=float(np.sum(weighted ** 2)),
            weighted_jacobian=jacobian(solution.x),
            weighted_residuals=weighted,
            free_indices=free,
            num_evaluations=int(solution.nfev),
            message=str(solution.message),
        )

        logger.debug(
            f"Refined {len(free)} parameters over {len(measurements)} measurements: "
            f"mse={result.mse:.3e}, chi_sq={result.chi_sq:.3e}, nfev={result.num_evaluations}"
        )
        return result
