"""
Closed-form preliminary solutions from measurement subsets.

Each robust iteration draws a small subset of measurements and turns it into
a candidate solution here. By default the candidate is the least-squares
solution of the model's linear (or linearized) relation, exact for a minimal
subset of noise-free readings. Optionally the candidate is refined
non-linearly over the subset, or the linear solve is skipped entirely in
favour of a caller-supplied initial guess.

A subset whose linear system is rank deficient (for example repeated
reference values) is degenerate: try_solve() returns None so the robust loop
can resample, while solve() raises DegenerateSubsetError for direct callers.
"""

from dataclasses import dataclass
from typing import Optional, Sequence
import logging

import numpy as np

from triad_calibration.exceptions import DegenerateSubsetError, RefinementError
from triad_calibration.measurement import MeasurementSet
from triad_calibration.measurement_model import MeasurementModel
from triad_calibration.parameters import CalibrationParameters
from triad_calibration.refiner import NonLinearRefiner, RefinementResult

logger = logging.getLogger(__name__)


@dataclass
class PreliminaryResult:
    """Candidate solution for one measurement subset.

    Attributes:
        parameters: Candidate calibration parameters
        refinement: Subset refinement details, when preliminary refinement ran
    """
    parameters: CalibrationParameters
    refinement: Optional[RefinementResult] = None

    @property
    def mse(self) -> float:
        return self.refinement.mse if self.refinement is not None else 0.0

    @property
    def chi_sq(self) -> float:
        return self.refinement.chi_sq if self.refinement is not None else 0.0


class PreliminarySolver:
    """Produce candidate parameters from measurement subsets.

    Args:
        model: Measurement model describing the unknowns
        common_axis: Hold myx, mzx, mzy at zero
        linear_solver_used: Solve the linear relation for each subset. When
            False the initial guess is used as the candidate.
        refine_preliminary: Refine each candidate non-linearly over its subset
        initial_guess: Seed used when the linear solver is disabled
        refiner: Refiner used when refine_preliminary is True
    """

    def __init__(
        self,
        model: MeasurementModel,
        common_axis: bool = False,
        linear_solver_used: bool = True,
        refine_preliminary: bool = False,
        initial_guess: Optional[CalibrationParameters] = None,
        refiner: Optional[NonLinearRefiner] = None,
    ):
        self.model = model
        self.common_axis = common_axis
        self.linear_solver_used = linear_solver_used
        self.refine_preliminary = refine_preliminary
        self.initial_guess = initial_guess if initial_guess is not None else CalibrationParameters()
        self.refiner = refiner if refiner is not None else NonLinearRefiner()

    @property
    def minimum_measurements(self) -> int:
        return self.model.minimum_measurements(self.common_axis)

    def solve_linear(self, subset: MeasurementSet) -> Optional[CalibrationParameters]:
        """Least-squares solution of the linear relation, or None if degenerate."""
        design, rhs = self.model.linear_system(subset.observed, subset.reference, self.common_axis)

        # Columns differ in magnitude (bias vs matrix terms, linear vs quadratic)
        scale = np.linalg.norm(design, axis=0)
        if np.any(scale == 0.0):
            return None
        scaled = design / scale
        if np.linalg.matrix_rank(scaled) < design.shape[1]:
            return None

        solution, _, _, _ = np.linalg.lstsq(scaled, rhs, rcond=None)
        solution = solution / scale
        if not np.all(np.isfinite(solution)):
            return None
        return self.model.from_linear_solution(solution, self.common_axis, self.initial_guess)

    def try_solve(
        self,
        measurements: MeasurementSet,
        indices: Optional[Sequence[int]] = None,
    ) -> Optional[PreliminaryResult]:
        """Compute a candidate for a subset, returning None when degenerate.

        Args:
            measurements: Full measurement set
            indices: Subset indices; all measurements when omitted

        Returns:
            PreliminaryResult, or None if the subset does not determine the
            free parameters

        Raises:
            ValueError: If the subset is smaller than the model minimum
        """
        subset = measurements if indices is None else measurements.subset(indices)
        if len(subset) < self.minimum_measurements:
            raise ValueError(
                f"Subset of {len(subset)} measurements is below the minimum of "
                f"{self.minimum_measurements}"
            )

        if self.linear_solver_used:
            candidate = self.solve_linear(subset)
            if candidate is None:
                logger.debug(f"Degenerate subset {list(indices) if indices is not None else 'all'}")
                return None
        else:
            free = list(self.model.free_parameter_indices(self.common_axis))
            candidate = self.model.compose(
                self.initial_guess.to_vector()[free], self.common_axis, self.initial_guess
            )

        if not self.refine_preliminary:
            return PreliminaryResult(parameters=candidate)

        try:
            refinement = self.refiner.refine(self.model, subset, candidate, self.common_axis)
        except RefinementError as e:
            logger.debug(f"Subset refinement failed, treating subset as degenerate: {e}")
            return None
        return PreliminaryResult(parameters=refinement.parameters, refinement=refinement)

    def solve(
        self,
        measurements: MeasurementSet,
        indices: Optional[Sequence[int]] = None,
    ) -> PreliminaryResult:
        """Like try_solve(), but raise DegenerateSubsetError on failure."""
        result = self.try_solve(measurements, indices)
        if result is None:
            raise DegenerateSubsetError(
                f"Measurement subset does not determine the "
                f"{len(self.model.free_parameter_indices(self.common_axis))} free parameters"
            )
        return result
