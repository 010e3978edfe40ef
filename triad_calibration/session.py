"""
Robust calibration session for triaxial sensors.

CalibrationSession owns the measurements, configuration and results of one
calibration and drives the pipeline end to end:

    robust search (preliminary solver + scoring strategy)
        -> best candidate and inlier set
        -> non-linear refinement over the inliers (optional)
        -> covariance estimation (optional)

The session is a two-state machine (idle / running). While calibrate() runs,
every configuration setter and any re-entrant calibrate() call raise
LockedError; listener callbacks run inside this window. Invalid configuration
values raise ValueError at the setter that received them.

Usage Example:
    >>> from triad_calibration import create_session, RobustMethod
    >>>
    >>> session = create_session(RobustMethod.RANSAC, measurements=measurements)
    >>> session.threshold = 1e-3
    >>> session.common_axis = True
    >>> result = session.calibrate()
    >>>
    >>> print(f"Bias: {session.estimated_bias}")
    >>> print(f"Scale factors: {session.estimated_sx}, {session.estimated_sy}, "
    ...       f"{session.estimated_sz}")
    >>> print(f"Inliers: {session.inliers_data.num_inliers}/{len(measurements)}")
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional, Sequence
import logging

import numpy as np

from triad_calibration.config import CalibrationConfig
from triad_calibration.covariance import estimate_covariance
from triad_calibration.exceptions import LockedError, NotReadyError, RefinementError
from triad_calibration.listener import CalibrationListener
from triad_calibration.measurement import Measurement, MeasurementSet
from triad_calibration.measurement_model import MeasurementModel, TriadMeasurementModel
from triad_calibration.parameters import CalibrationParameters
from triad_calibration.preliminary_solver import PreliminarySolver
from triad_calibration.refiner import NonLinearRefiner, RefinementResult
from triad_calibration.robust_estimator import InliersData, RobustEstimator
from triad_calibration.scoring import RobustMethod, ScoringStrategy

logger = logging.getLogger(__name__)


@dataclass
class CalibrationResult:
    """Outcome of a successful calibrate() call.

    Attributes:
        parameters: Estimated bias and scale/cross-coupling matrix
        covariance: 12x12 parameter covariance, or None when not estimated
        mse: Mean squared residual norm over the fitted measurements
            (0.0 when no refinement ran)
        chi_sq: Weighted sum of squared residuals (0.0 when no refinement ran)
        inliers_data: Inlier classification of the robust search
        method: Robust method that produced the result
        iterations: Scored iterations of the robust search
        refined: Whether the final non-linear refinement succeeded
        num_measurements: Measurements supplied to the session
        timestamp: When the calibration finished (UTC)
    """
    parameters: CalibrationParameters
    covariance: Optional[np.ndarray]
    mse: float
    chi_sq: float
    inliers_data: InliersData
    method: RobustMethod
    iterations: int
    refined: bool
    num_measurements: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CalibrationSession:
    """Robust estimation of triaxial calibration parameters.

    Args:
        strategy: Scoring strategy selecting the robust method
        measurements: Measurements with known reference values
        model: Measurement model (default: TriadMeasurementModel)
        config: Initial configuration (default: CalibrationConfig())
        listener: Receiver of lifecycle notifications
        quality_scores: Per-measurement quality, required by PROSAC/PROMedS.
            When omitted, scores carried by the measurements are used.
        initial_bias: Initial bias guess (default zeros)
        initial_matrix: Initial matrix guess (default zeros)
        refiner: Non-linear refiner (default NonLinearRefiner())
    """

    def __init__(
        self,
        strategy: ScoringStrategy,
        measurements: Optional[Sequence[Measurement]] = None,
        model: Optional[MeasurementModel] = None,
        config: Optional[CalibrationConfig] = None,
        listener: Optional[CalibrationListener] = None,
        quality_scores: Optional[Sequence[float]] = None,
        initial_bias=None,
        initial_matrix=None,
        refiner: Optional[NonLinearRefiner] = None,
    ):
        self._running = False
        self._strategy = strategy
        self._model = model if model is not None else TriadMeasurementModel()
        self._config = CalibrationConfig(method=strategy.method)
        self._measurements = None
        self._quality_scores = None
        self._initial_guess = CalibrationParameters()
        self._refiner = refiner if refiner is not None else NonLinearRefiner()
        self._listener = listener
        self._result: Optional[CalibrationResult] = None

        if config is not None:
            self.config = config
        if measurements is not None:
            self.measurements = measurements
        if quality_scores is not None:
            self.quality_scores = quality_scores
        if initial_bias is not None:
            self.initial_bias = initial_bias
        if initial_matrix is not None:
            self.initial_matrix = initial_matrix

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    def _check_unlocked(self) -> None:
        if self._running:
            raise LockedError("Calibration session is running; configuration is locked")

    def _update_config(self, **changes) -> None:
        self._check_unlocked()
        updated = replace(self._config, **changes)
        self._validate_subset_size(updated, self._model)
        self._config = updated

    def _validate_subset_size(self, config: CalibrationConfig, model: MeasurementModel) -> None:
        size = config.preliminary_subset_size
        minimum = model.minimum_measurements(config.common_axis)
        if size is not None and size < minimum:
            raise ValueError(
                f"preliminary_subset_size {size} is below the minimum of {minimum} "
                f"measurements (common_axis={config.common_axis})"
            )

    @property
    def method(self) -> RobustMethod:
        return self._strategy.method

    @property
    def strategy(self) -> ScoringStrategy:
        return self._strategy

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def config(self) -> CalibrationConfig:
        return self._config

    @config.setter
    def config(self, config: CalibrationConfig) -> None:
        self._check_unlocked()
        if not isinstance(config, CalibrationConfig):
            raise ValueError(f"config must be a CalibrationConfig, got {type(config)}")
        if config.method != self._strategy.method:
            logger.info(
                f"Configuration method '{config.method.value}' ignored; session uses "
                f"'{self._strategy.method.value}'"
            )
            config = replace(config, method=self._strategy.method)
        self._validate_subset_size(config, self._model)
        self._config = config

    @property
    def model(self) -> MeasurementModel:
        return self._model

    @model.setter
    def model(self, model: MeasurementModel) -> None:
        self._check_unlocked()
        if not isinstance(model, MeasurementModel):
            raise ValueError(f"model must be a MeasurementModel, got {type(model)}")
        self._validate_subset_size(self._config, model)
        self._model = model

    @property
    def threshold(self) -> float:
        """Inlier threshold (stop threshold for median-based methods)."""
        if self._config.threshold is None:
            return self._strategy.default_threshold
        return self._config.threshold

    @threshold.setter
    def threshold(self, value: float) -> None:
        self._update_config(threshold=value)

    @property
    def confidence(self) -> float:
        return self._config.confidence

    @confidence.setter
    def confidence(self, value: float) -> None:
        self._update_config(confidence=value)

    @property
    def max_iterations(self) -> int:
        return self._config.max_iterations

    @max_iterations.setter
    def max_iterations(self, value: int) -> None:
        self._update_config(max_iterations=value)

    @property
    def progress_delta(self) -> float:
        return self._config.progress_delta

    @progress_delta.setter
    def progress_delta(self, value: float) -> None:
        self._update_config(progress_delta=value)

    @property
    def preliminary_subset_size(self) -> int:
        """Measurements per subset; defaults to the model minimum."""
        if self._config.preliminary_subset_size is None:
            return self.minimum_required_measurements
        return self._config.preliminary_subset_size

    @preliminary_subset_size.setter
    def preliminary_subset_size(self, value: int) -> None:
        self._update_config(preliminary_subset_size=value)

    @property
    def common_axis(self) -> bool:
        return self._config.common_axis

    @common_axis.setter
    def common_axis(self, value: bool) -> None:
        self._update_config(common_axis=value)

    @property
    def linear_solver_used(self) -> bool:
        return self._config.linear_solver_used

    @linear_solver_used.setter
    def linear_solver_used(self, value: bool) -> None:
        self._update_config(linear_solver_used=value)

    @property
    def preliminary_solution_refined(self) -> bool:
        return self._config.preliminary_solution_refined

    @preliminary_solution_refined.setter
    def preliminary_solution_refined(self, value: bool) -> None:
        self._update_config(preliminary_solution_refined=value)

    @property
    def result_refined(self) -> bool:
        return self._config.result_refined

    @result_refined.setter
    def result_refined(self, value: bool) -> None:
        self._update_config(result_refined=value)

    @property
    def covariance_kept(self) -> bool:
        return self._config.covariance_kept

    @covariance_kept.setter
    def covariance_kept(self, value: bool) -> None:
        self._update_config(covariance_kept=value)

    @property
    def seed(self) -> Optional[int]:
        return self._config.seed

    @seed.setter
    def seed(self, value: Optional[int]) -> None:
        self._update_config(seed=value)

    @property
    def listener(self) -> Optional[CalibrationListener]:
        return self._listener

    @listener.setter
    def listener(self, listener: Optional[CalibrationListener]) -> None:
        self._check_unlocked()
        self._listener = listener

    @property
    def measurements(self) -> Optional[tuple]:
        return self._measurements

    @measurements.setter
    def measurements(self, measurements: Optional[Sequence[Measurement]]) -> None:
        self._check_unlocked()
        if measurements is None:
            self._measurements = None
            return
        measurements = tuple(measurements)
        for i, m in enumerate(measurements):
            if not isinstance(m, Measurement):
                raise ValueError(f"Measurement {i} must be a Measurement, got {type(m)}")
        self._measurements = measurements

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        """Quality scores in effect, explicit or carried by the measurements."""
        if self._quality_scores is not None:
            return self._quality_scores
        if self._measurements and all(m.quality_score is not None for m in self._measurements):
            return np.array([m.quality_score for m in self._measurements])
        return None

    @quality_scores.setter
    def quality_scores(self, scores: Optional[Sequence[float]]) -> None:
        self._check_unlocked()
        if scores is None:
            self._quality_scores = None
            return
        array = np.array(scores, dtype=float)
        if array.ndim != 1:
            raise ValueError(f"quality_scores must be one-dimensional, got shape {array.shape}")
        if not np.all(np.isfinite(array)):
            raise ValueError("quality_scores must contain finite values")
        if not self._strategy.requires_quality_scores:
            logger.warning(
                f"Quality scores are not used by {self._strategy.method.value}; "
                f"they are stored but ignored"
            )
        array.flags.writeable = False
        self._quality_scores = array

    @property
    def initial_bias(self) -> np.ndarray:
        return self._initial_guess.bias

    @initial_bias.setter
    def initial_bias(self, bias) -> None:
        self._check_unlocked()
        self._initial_guess = CalibrationParameters(bias=bias, matrix=self._initial_guess.matrix)

    @property
    def initial_matrix(self) -> np.ndarray:
        return self._initial_guess.matrix

    @initial_matrix.setter
    def initial_matrix(self, matrix) -> None:
        self._check_unlocked()
        self._initial_guess = CalibrationParameters(bias=self._initial_guess.bias, matrix=matrix)

    @property
    def initial_guess(self) -> CalibrationParameters:
        return self._initial_guess

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    @property
    def minimum_required_measurements(self) -> int:
        return self._model.minimum_measurements(self._config.common_axis)

    def _readiness_problem(self) -> Optional[str]:
        if self._measurements is None:
            return "no measurements provided"
        count = len(self._measurements)
        required = max(self.minimum_required_measurements, self.preliminary_subset_size)
        if count < required:
            return f"{count} measurements provided, at least {required} required"
        if self._strategy.requires_quality_scores:
            scores = self.quality_scores
            if scores is None:
                return f"{self._strategy.method.value} requires quality scores"
            if len(scores) != count:
                return f"{len(scores)} quality scores provided for {count} measurements"
        return None

    @property
    def is_ready(self) -> bool:
        return self._readiness_problem() is None

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def _notify(self, event: str, *args) -> None:
        if self._listener is not None:
            getattr(self._listener, event)(self, *args)

    def calibrate(self) -> CalibrationResult:
        """Run robust calibration and store the result on the session.

        Returns:
            CalibrationResult of this run

        Raises:
            LockedError: If a calibration is already running on this session
            NotReadyError: If the session is not ready (see is_ready)
            EstimationFailedError: If no usable measurement subset was found
        """
        self._check_unlocked()
        problem = self._readiness_problem()
        if problem is not None:
            raise NotReadyError(f"Calibration session not ready: {problem}")

        self._running = True
        self._result = None
        try:
            self._notify('on_calibrate_start')
            self._result = self._run()
        finally:
            try:
                self._notify('on_calibrate_end')
            finally:
                self._running = False
        return self._result

    def _run(self) -> CalibrationResult:
        config = self._config
        measurements = MeasurementSet(self._measurements)

        logger.info(
            f"Starting {self.method.value} calibration: {len(measurements)} measurements, "
            f"threshold={self.threshold:g}, common_axis={config.common_axis}"
        )

        solver = PreliminarySolver(
            self._model,
            common_axis=config.common_axis,
            linear_solver_used=config.linear_solver_used,
            refine_preliminary=config.preliminary_solution_refined,
            initial_guess=self._initial_guess,
            refiner=self._refiner,
        )
        estimator = RobustEstimator(
            strategy=self._strategy,
            solver=solver,
            threshold=self.threshold,
            confidence=config.confidence,
            max_iterations=config.max_iterations,
            progress_delta=config.progress_delta,
            subset_size=self.preliminary_subset_size,
            quality_scores=self.quality_scores if self._strategy.requires_quality_scores else None,
            rng=np.random.default_rng(config.seed),
            on_iteration=lambda iteration: self._notify('on_calibrate_next_iteration', iteration),
            on_progress=lambda progress: self._notify('on_calibrate_progress_change', progress),
        )
        estimate = estimator.estimate(measurements)
        preliminary = estimate.preliminary

        parameters = preliminary.parameters
        mse, chi_sq = preliminary.mse, preliminary.chi_sq
        fit: Optional[RefinementResult] = preliminary.refinement
        fit_set = measurements
        refined = False

        if config.result_refined:
            inlier_set = measurements.subset(np.flatnonzero(estimate.inliers_data.inliers))
            try:
                refinement = self._refiner.refine(
                    self._model, inlier_set, parameters, config.common_axis
                )
            except RefinementError as e:
                logger.warning(f"Refinement failed, keeping preliminary solution: {e}")
            else:
                parameters = refinement.parameters
                mse, chi_sq = refinement.mse, refinement.chi_sq
                fit, fit_set = refinement, inlier_set
                refined = True

        covariance = None
        if config.covariance_kept and fit is not None:
            covariance = estimate_covariance(
                fit.weighted_jacobian,
                fit.weighted_residuals,
                fit.free_indices,
                absolute_sigma=fit_set.has_standard_deviations,
            )

        result = CalibrationResult(
            parameters=parameters,
            covariance=covariance,
            mse=mse,
            chi_sq=chi_sq,
            inliers_data=estimate.inliers_data,
            method=self.method,
            iterations=estimate.iterations,
            refined=refined,
            num_measurements=len(measurements),
        )

        logger.info(
            f"{self.method.value} calibration finished after {estimate.iterations} iterations: "
            f"{estimate.inliers_data.num_inliers}/{len(measurements)} inliers, "
            f"refined={refined}, mse={mse:.3e}"
        )
        return result

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @property
    def result(self) -> Optional[CalibrationResult]:
        return self._result

    @property
    def estimated_parameters(self) -> Optional[CalibrationParameters]:
        return self._result.parameters if self._result is not None else None

    @property
    def estimated_bias(self) -> Optional[np.ndarray]:
        params = self.estimated_parameters
        return params.bias.copy() if params is not None else None

    @property
    def estimated_matrix(self) -> Optional[np.ndarray]:
        params = self.estimated_parameters
        return params.matrix.copy() if params is not None else None

    def _parameter(self, name: str) -> Optional[float]:
        params = self.estimated_parameters
        return getattr(params, name) if params is not None else None

    @property
    def estimated_bias_x(self) -> Optional[float]:
        return self._parameter('bias_x')

    @property
    def estimated_bias_y(self) -> Optional[float]:
        return self._parameter('bias_y')

    @property
    def estimated_bias_z(self) -> Optional[float]:
        return self._parameter('bias_z')

    @property
    def estimated_sx(self) -> Optional[float]:
        return self._parameter('sx')

    @property
    def estimated_sy(self) -> Optional[float]:
        return self._parameter('sy')

    @property
    def estimated_sz(self) -> Optional[float]:
        return self._parameter('sz')

    @property
    def estimated_mxy(self) -> Optional[float]:
        return self._parameter('mxy')

    @property
    def estimated_mxz(self) -> Optional[float]:
        return self._parameter('mxz')

    @property
    def estimated_myx(self) -> Optional[float]:
        return self._parameter('myx')

    @property
    def estimated_myz(self) -> Optional[float]:
        return self._parameter('myz')

    @property
    def estimated_mzx(self) -> Optional[float]:
        return self._parameter('mzx')

    @property
    def estimated_mzy(self) -> Optional[float]:
        return self._parameter('mzy')

    @property
    def estimated_covariance(self) -> Optional[np.ndarray]:
        if self._result is None or self._result.covariance is None:
            return None
        return self._result.covariance.copy()

    @property
    def estimated_mse(self) -> float:
        return self._result.mse if self._result is not None else 0.0

    @property
    def estimated_chi_sq(self) -> float:
        return self._result.chi_sq if self._result is not None else 0.0

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return self._result.inliers_data if self._result is not None else None

    @property
    def estimated_bias_variance(self) -> Optional[np.ndarray]:
        """Per-axis bias variance from the covariance diagonal."""
        covariance = self.estimated_covariance
        if covariance is None:
            return None
        return np.diag(covariance)[:3].copy()

    @property
    def estimated_bias_standard_deviation(self) -> Optional[np.ndarray]:
        variance = self.estimated_bias_variance
        return np.sqrt(np.maximum(variance, 0.0)) if variance is not None else None

    @property
    def estimated_bias_standard_deviation_average(self) -> Optional[float]:
        std = self.estimated_bias_standard_deviation
        return float(np.mean(std)) if std is not None else None

    @property
    def estimated_bias_standard_deviation_norm(self) -> Optional[float]:
        std = self.estimated_bias_standard_deviation
        return float(np.linalg.norm(std)) if std is not None else None
