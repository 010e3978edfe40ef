"""
Sample-consensus core loop shared by every robust estimation method.

Each iteration draws a subset, turns it into a candidate with the
PreliminarySolver, scores the candidate against the full measurement set with
the configured ScoringStrategy and keeps the best candidate seen so far. The
iteration bound adapts to the best inlier ratio found:

    N = ceil(log(1 - confidence) / log(1 - w^n))

for inlier ratio w and subset size n, floored at 1 and capped at the
configured maximum. The bound never increases during a run.

Threshold-based strategies (RANSAC, MSAC, PROSAC) only accept candidates with
at least one inlier; a run that never finds one fails.

Degenerate subsets are retried in a bounded inner loop. They do not count as
iterations; all retries of a run share a budget of
DEGENERATE_ATTEMPTS_FACTOR x max_iterations draws.

Usage Example:
    >>> estimator = RobustEstimator(
    ...     strategy=RANSACStrategy(),
    ...     solver=PreliminarySolver(TriadMeasurementModel()),
    ...     threshold=1e-2,
    ...     rng=np.random.default_rng(0),
    ... )
    >>> estimate = estimator.estimate(MeasurementSet(measurements))
    >>> print(f"{estimate.inliers_data.num_inliers} inliers "
    ...       f"after {estimate.iterations} iterations")
"""

from dataclasses import dataclass
from typing import Callable, Optional, Sequence
import logging
import math

import numpy as np

from triad_calibration.exceptions import EstimationFailedError
from triad_calibration.measurement import MeasurementSet
from triad_calibration.preliminary_solver import PreliminaryResult, PreliminarySolver
from triad_calibration.scoring import ScoreResult, ScoringStrategy

logger = logging.getLogger(__name__)

DEGENERATE_ATTEMPTS_FACTOR = 10

# Keeps log() finite for inlier ratios of exactly 0 or 1
_PROBABILITY_EPSILON = 1e-12


def adaptive_iteration_bound(
    inlier_ratio: float,
    subset_size: int,
    confidence: float,
    max_iterations: int,
) -> int:
    """Iterations needed to draw one all-inlier subset with given confidence.

    Args:
        inlier_ratio: Estimated fraction of inliers, in [0, 1]
        subset_size: Measurements per subset
        confidence: Desired probability of success, in (0, 1)
        max_iterations: Upper cap on the result

    Returns:
        Iteration bound in [1, max_iterations]
    """
    if inlier_ratio <= 0.0:
        return max_iterations
    if inlier_ratio >= 1.0:
        return 1

    p_all_inliers = min(max(inlier_ratio ** subset_size, _PROBABILITY_EPSILON), 1.0 - _PROBABILITY_EPSILON)
    bound = math.log(1.0 - confidence) / math.log(1.0 - p_all_inliers)
    if not math.isfinite(bound):
        return max_iterations
    return int(min(max(math.ceil(bound), 1), max_iterations))


@dataclass(frozen=True)
class InliersData:
    """Inlier classification of the winning candidate.

    Attributes:
        inliers: Boolean mask, True for measurements classified as inliers
        residuals: Residual of every measurement for the winning candidate
        threshold: Residual threshold that produced the mask
    """
    inliers: np.ndarray
    residuals: np.ndarray
    threshold: float

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))

    @property
    def outlier_ratio(self) -> float:
        if len(self.inliers) == 0:
            return 0.0
        return 1.0 - self.num_inliers / len(self.inliers)

    @classmethod
    def from_score(cls, score: ScoreResult) -> 'InliersData':
        inliers = np.array(score.inliers, dtype=bool)
        residuals = np.array(score.residuals, dtype=float)
        inliers.flags.writeable = False
        residuals.flags.writeable = False
        return cls(inliers=inliers, residuals=residuals, threshold=float(score.threshold))


@dataclass
class RobustEstimate:
    """Best candidate found by the robust loop.

    Attributes:
        preliminary: Winning preliminary solution
        inliers_data: Inlier classification for that solution
        iterations: Scored iterations performed
        degenerate_attempts: Subsets rejected as degenerate
    """
    preliminary: PreliminaryResult
    inliers_data: InliersData
    iterations: int
    degenerate_attempts: int = 0


class RobustEstimator:
    """Sample-consensus search over a measurement set.

    Args:
        strategy: Scoring strategy (RANSAC, LMedS, MSAC, PROSAC, PROMedS)
        solver: Preliminary solver turning subsets into candidates
        threshold: Inlier threshold, or stop threshold for median strategies
        confidence: Desired probability of drawing an all-inlier subset
        max_iterations: Hard cap on scored iterations
        progress_delta: Minimum progress advance between progress callbacks
        subset_size: Measurements per subset; defaults to the model minimum
        quality_scores: Per-measurement quality, for progressive strategies
        rng: Random generator used for sampling
        on_iteration: Called with the iteration number after every pass
        on_progress: Called with progress in [0, 1]
    """

    def __init__(
        self,
        strategy: ScoringStrategy,
        solver: PreliminarySolver,
        threshold: float,
        confidence: float = 0.99,
        max_iterations: int = 5000,
        progress_delta: float = 0.05,
        subset_size: Optional[int] = None,
        quality_scores: Optional[Sequence[float]] = None,
        rng: Optional[np.random.Generator] = None,
        on_iteration: Optional[Callable[[int], None]] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ):
        self.strategy = strategy
        self.solver = solver
        self.threshold = threshold
        self.confidence = confidence
        self.max_iterations = max_iterations
        self.progress_delta = progress_delta
        self.subset_size = subset_size if subset_size is not None else solver.minimum_measurements
        self.quality_scores = quality_scores
        self.rng = rng if rng is not None else np.random.default_rng()
        self.on_iteration = on_iteration
        self.on_progress = on_progress

    def estimate(self, measurements: MeasurementSet) -> RobustEstimate:
        """Run the search and return the best candidate.

        Raises:
            ValueError: If there are fewer measurements than the subset size
            EstimationFailedError: If no subset produced a candidate within
                the resampling budget, or no candidate was acceptable
                to the strategy
        """
        count = len(measurements)
        if count < self.subset_size:
            raise ValueError(
                f"Need at least {self.subset_size} measurements, got {count}"
            )

        model = self.solver.model
        sampler = self.strategy.create_sampler(
            count, self.subset_size, self.rng, self.quality_scores, self.max_iterations
        )
        attempt_budget = DEGENERATE_ATTEMPTS_FACTOR * self.max_iterations

        bound = self.max_iterations
        best_score: Optional[ScoreResult] = None
        best_candidate: Optional[PreliminaryResult] = None
        iteration = 0
        failed_attempts = 0
        last_progress = 0.0

        while iteration < bound:
            candidate = None
            while candidate is None and failed_attempts < attempt_budget:
                candidate = self.solver.try_solve(measurements, sampler.draw())
                if candidate is None:
                    failed_attempts += 1

            if candidate is None:
                logger.warning(
                    f"Resampling budget exhausted after {failed_attempts} degenerate subsets "
                    f"({iteration} scored iterations)"
                )
                break

            iteration += 1
            residuals = model.residuals(candidate.parameters, measurements.observed, measurements.reference)
            score = self.strategy.evaluate(residuals, self.threshold, self.subset_size)

            if self.strategy.is_acceptable(score) and score.is_better_than(best_score):
                best_score, best_candidate = score, candidate
                bound = min(bound, adaptive_iteration_bound(
                    best_score.inlier_ratio, self.subset_size, self.confidence, self.max_iterations
                ))
                logger.debug(
                    f"Iteration {iteration}: new best {self.strategy.method.value} score "
                    f"{best_score.ranking}, {best_score.num_inliers}/{count} inliers, bound {bound}"
                )

            if self.on_iteration is not None:
                self.on_iteration(iteration)

            progress = min(iteration / bound, 1.0)
            if self.on_progress is not None and progress - last_progress >= self.progress_delta:
                self.on_progress(progress)
                last_progress = progress

            if best_score is not None and self.strategy.has_converged(best_score, self.threshold):
                logger.debug(f"Converged at iteration {iteration}")
                break

        if best_score is None:
            if iteration == 0:
                raise EstimationFailedError(
                    f"No non-degenerate subset found in {failed_attempts} attempts "
                    f"over {count} measurements"
                )
            raise EstimationFailedError(
                f"No candidate with at least one inlier in {iteration} iterations "
                f"(threshold={self.threshold:g})"
            )

        return RobustEstimate(
            preliminary=best_candidate,
            inliers_data=InliersData.from_score(best_score),
            iterations=iteration,
            degenerate_attempts=failed_attempts,
        )
