"""
Scoring strategies and subset samplers for the robust estimator.

The robust loop is written once against the ScoringStrategy interface. A
strategy decides how subsets are drawn, how a candidate is scored against the
full measurement set, how candidates are ranked, which measurements count as
inliers and whether the search may stop early.

Strategies:
    RANSAC:  inliers are residuals <= threshold; more inliers is better, ties
             broken by the smaller total inlier residual.
    LMedS:   the median of squared residuals is minimized; the threshold acts
             as a stop criterion and inliers are classified with a robust
             standard deviation derived from the median.
    MSAC:    truncated quadratic cost sum(min(r^2, t^2)) is minimized.
    PROSAC:  RANSAC scoring with subsets drawn progressively from the
             measurements ranked by quality score.
    PROMedS: LMedS scoring with PROSAC progressive sampling.

References:
    Fischler & Bolles, "Random Sample Consensus", 1981
    Rousseeuw, "Least Median of Squares Regression", 1984
    Torr & Zisserman, "MLESAC", 2000
    Chum & Matas, "Matching with PROSAC", 2005
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple
import math

import numpy as np


class RobustMethod(Enum):
    """Available robust estimation methods."""

    RANSAC = "ransac"
    """Random sample consensus with a fixed inlier threshold."""

    LMEDS = "lmeds"
    """Least median of squares."""

    MSAC = "msac"
    """M-estimator sample consensus (truncated quadratic cost)."""

    PROSAC = "prosac"
    """Progressive sample consensus driven by quality scores."""

    PROMEDS = "promeds"
    """Progressive least median of squares driven by quality scores."""


@dataclass
class ScoreResult:
    """Evaluation of one candidate against the full measurement set.

    Attributes:
        ranking: Sort key, lower is better
        residuals: Residual of every measurement for this candidate
        inliers: Boolean inlier mask
        threshold: Residual threshold used to classify inliers
    """
    ranking: Tuple[float, ...]
    residuals: np.ndarray
    inliers: np.ndarray
    threshold: float

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))

    @property
    def inlier_ratio(self) -> float:
        if len(self.inliers) == 0:
            return 0.0
        return self.num_inliers / len(self.inliers)

    def is_better_than(self, other: Optional['ScoreResult']) -> bool:
        return other is None or self.ranking < other.ranking


class UniformSubsetSampler:
    """Draw subsets uniformly at random without replacement."""

    def __init__(self, num_measurements: int, subset_size: int, rng: np.random.Generator):
        if subset_size > num_measurements:
            raise ValueError(
                f"Subset size {subset_size} exceeds {num_measurements} measurements"
            )
        self.num_measurements = num_measurements
        self.subset_size = subset_size
        self.rng = rng

    def draw(self) -> np.ndarray:
        return self.rng.choice(self.num_measurements, self.subset_size, replace=False)


class ProgressiveSubsetSampler:
    """PROSAC sampling schedule over measurements sorted by quality.

    Subsets are drawn from a growing window of the best-ranked measurements.
    The window grows on the schedule of Chum & Matas so that, after
    ``max_iterations`` draws, the sampler behaves like uniform sampling over
    the whole set.

    Args:
        quality_scores: One score per measurement, higher is better
        subset_size: Measurements per subset (m)
        rng: Random generator
        max_iterations: Draw budget the schedule is tuned for (T_N)
    """

    def __init__(
        self,
        quality_scores: Sequence[float],
        subset_size: int,
        rng: np.random.Generator,
        max_iterations: int,
    ):
        scores = np.asarray(quality_scores, dtype=float)
        if subset_size > len(scores):
            raise ValueError(
                f"Subset size {subset_size} exceeds {len(scores)} measurements"
            )
        self.order = np.argsort(-scores, kind='stable')
        self.num_measurements = len(scores)
        self.subset_size = subset_size
        self.rng = rng

        # T_m: expected draws from the first m measurements within T_N draws
        t_n = float(max_iterations)
        for i in range(subset_size):
            t_n *= (subset_size - i) / (self.num_measurements - i)
        self._t_n = t_n
        self._t_n_prime = 1
        self._n = subset_size
        self._t = 0

    @property
    def window_size(self) -> int:
        return self._n

    def draw(self) -> np.ndarray:
        m = self.subset_size
        self._t += 1

        if self._t == self._t_n_prime and self._n < self.num_measurements:
            t_next = self._t_n * (self._n + 1) / (self._n + 1 - m)
            self._t_n_prime += int(math.ceil(t_next - self._t_n))
            self._t_n = t_next
            self._n += 1

        if self._t_n_prime < self._t:
            positions = self.rng.choice(self._n, m, replace=False)
        else:
            # m - 1 from the first n - 1, plus the n-th measurement
            positions = np.append(self.rng.choice(self._n - 1, m - 1, replace=False), self._n - 1)
        return self.order[positions]


class ScoringStrategy(ABC):
    """Interface between the robust loop and a scoring method."""

    method: RobustMethod
    default_threshold: float = 1e-2
    requires_quality_scores: bool = False

    @abstractmethod
    def evaluate(self, residuals: np.ndarray, threshold: float, subset_size: int) -> ScoreResult:
        """Score a candidate given its residuals over all measurements."""
        pass

    def is_acceptable(self, score: ScoreResult) -> bool:
        """Whether a candidate may become the best one."""
        return True

    def has_converged(self, score: ScoreResult, threshold: float) -> bool:
        """Whether the search may stop before the iteration bound."""
        return False

    def create_sampler(
        self,
        num_measurements: int,
        subset_size: int,
        rng: np.random.Generator,
        quality_scores: Optional[Sequence[float]] = None,
        max_iterations: int = 1,
    ):
        return UniformSubsetSampler(num_measurements, subset_size, rng)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class RANSACStrategy(ScoringStrategy):
    method = RobustMethod.RANSAC

    def is_acceptable(self, score: ScoreResult) -> bool:
        return score.num_inliers > 0

    def evaluate(self, residuals: np.ndarray, threshold: float, subset_size: int) -> ScoreResult:
        inliers = residuals <= threshold
        count = int(np.count_nonzero(inliers))
        return ScoreResult(
            ranking=(-float(count), float(np.sum(residuals[inliers]))),
            residuals=residuals,
            inliers=inliers,
            threshold=threshold,
        )


class MSACStrategy(ScoringStrategy):
    method = RobustMethod.MSAC

    def is_acceptable(self, score: ScoreResult) -> bool:
        return score.num_inliers > 0

    def evaluate(self, residuals: np.ndarray, threshold: float, subset_size: int) -> ScoreResult:
        cost = float(np.sum(np.minimum(residuals ** 2, threshold ** 2)))
        return ScoreResult(
            ranking=(cost,),
            residuals=residuals,
            inliers=residuals <= threshold,
            threshold=threshold,
        )


class LMedSStrategy(ScoringStrategy):
    """Least median of squares.

    The configured threshold is a stop threshold: the search ends as soon as
    the median residual drops to it. Inliers are those within
    ``max(INLIER_FACTOR * robust_sigma, threshold)`` where

        robust_sigma = 1.4826 * (1 + 5 / (N - n)) * sqrt(median(r^2))

    for N measurements and subsets of n.
    """

    method = RobustMethod.LMEDS
    default_threshold = 1e-9

    INLIER_FACTOR = 1.5
    # Consistency factor of the MAD for Gaussian noise
    SIGMA_FACTOR = 1.4826

    def robust_sigma(self, median_squared: float, num_measurements: int, subset_size: int) -> float:
        redundancy = num_measurements - subset_size
        correction = 1.0 + 5.0 / redundancy if redundancy > 0 else 1.0
        return self.SIGMA_FACTOR * correction * math.sqrt(median_squared)

    def evaluate(self, residuals: np.ndarray, threshold: float, subset_size: int) -> ScoreResult:
        median_squared = float(np.median(residuals ** 2))
        sigma = self.robust_sigma(median_squared, len(residuals), subset_size)
        inlier_threshold = max(self.INLIER_FACTOR * sigma, threshold)
        return ScoreResult(
            ranking=(median_squared,),
            residuals=residuals,
            inliers=residuals <= inlier_threshold,
            threshold=inlier_threshold,
        )

    def has_converged(self, score: ScoreResult, threshold: float) -> bool:
        return math.sqrt(score.ranking[0]) <= threshold


class _ProgressiveSamplingMixin:
    requires_quality_scores = True

    def create_sampler(
        self,
        num_measurements: int,
        subset_size: int,
        rng: np.random.Generator,
        quality_scores: Optional[Sequence[float]] = None,
        max_iterations: int = 1,
    ):
        if quality_scores is None or len(quality_scores) != num_measurements:
            raise ValueError(
                f"{type(self).__name__} requires one quality score per measurement"
            )
        return ProgressiveSubsetSampler(quality_scores, subset_size, rng, max_iterations)


class PROSACStrategy(_ProgressiveSamplingMixin, RANSACStrategy):
    method = RobustMethod.PROSAC


class PROMedSStrategy(_ProgressiveSamplingMixin, LMedSStrategy):
    method = RobustMethod.PROMEDS
