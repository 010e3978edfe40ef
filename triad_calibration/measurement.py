"""
Measurements consumed by the calibration session.

Each Measurement pairs one triaxial sensor reading with the reference value
the sensor should have reported (for example the expected Earth magnetic
field expressed in the sensor frame, or specific force for an accelerometer).
Reference values are resolved by the caller before calibration.

MeasurementSet stacks a measurement sequence into contiguous numpy arrays so
the robust loop can evaluate residuals for the whole set at once.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

DEFAULT_STANDARD_DEVIATION = 1.0


@dataclass(frozen=True, eq=False)
class Measurement:
    """A single triaxial reading with its known reference value.

    Attributes:
        observed: Measured 3-vector reported by the sensor
        reference: Expected 3-vector for an ideal sensor
        standard_deviation: Optional noise standard deviation of the reading.
            Used to weight the measurement during refinement.
        quality_score: Optional prior confidence (higher is better), used by
            the progressive sampling strategies
    """
    observed: np.ndarray
    reference: np.ndarray
    standard_deviation: Optional[float] = None
    quality_score: Optional[float] = None

    def __post_init__(self):
        for name in ('observed', 'reference'):
            value = np.asarray(getattr(self, name), dtype=float)
            if value.shape != (3,):
                raise ValueError(f"{name} must be a 3-vector, got shape {value.shape}")
            if not np.all(np.isfinite(value)):
                raise ValueError(f"{name} must contain finite values, got {value}")
            value = value.copy()
            value.flags.writeable = False
            object.__setattr__(self, name, value)

        if self.standard_deviation is not None:
            std = float(self.standard_deviation)
            if not np.isfinite(std) or std <= 0.0:
                raise ValueError(
                    f"standard_deviation must be positive and finite, got {self.standard_deviation}"
                )
            object.__setattr__(self, 'standard_deviation', std)

        if self.quality_score is not None:
            score = float(self.quality_score)
            if not np.isfinite(score):
                raise ValueError(f"quality_score must be finite, got {self.quality_score}")
            object.__setattr__(self, 'quality_score', score)

    def to_dict(self) -> dict:
        data = {
            'observed': [float(v) for v in self.observed],
            'reference': [float(v) for v in self.reference],
        }
        if self.standard_deviation is not None:
            data['standard_deviation'] = self.standard_deviation
        if self.quality_score is not None:
            data['quality_score'] = self.quality_score
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Measurement':
        if not isinstance(data, dict):
            raise ValueError(f"Measurement must be a dictionary, got {type(data)}")
        missing = [key for key in ('observed', 'reference') if key not in data]
        if missing:
            raise ValueError(f"Measurement missing required fields: {missing}")
        return cls(
            observed=data['observed'],
            reference=data['reference'],
            standard_deviation=data.get('standard_deviation'),
            quality_score=data.get('quality_score'),
        )


class MeasurementSet:
    """Stacked, read-only array view of a measurement sequence.

    Attributes:
        observed: (N, 3) observed readings
        reference: (N, 3) reference values
        standard_deviations: (N,) noise standard deviations; measurements
            without one use DEFAULT_STANDARD_DEVIATION
        has_standard_deviations: True when every measurement carried its own
            standard deviation
    """

    def __init__(self, measurements: Sequence[Measurement]):
        self.measurements = tuple(measurements)
        count = len(self.measurements)
        self.observed = np.array([m.observed for m in self.measurements], dtype=float).reshape(count, 3)
        self.reference = np.array([m.reference for m in self.measurements], dtype=float).reshape(count, 3)
        self.standard_deviations = np.array([
            DEFAULT_STANDARD_DEVIATION if m.standard_deviation is None else m.standard_deviation
            for m in self.measurements
        ], dtype=float)
        self.has_standard_deviations = count > 0 and all(
            m.standard_deviation is not None for m in self.measurements
        )
        for array in (self.observed, self.reference, self.standard_deviations):
            array.flags.writeable = False

    def __len__(self) -> int:
        return len(self.measurements)

    def subset(self, indices) -> 'MeasurementSet':
        """Return a new set containing only the measurements at ``indices``."""
        indices = np.asarray(indices, dtype=int)
        return MeasurementSet([self.measurements[i] for i in indices])


def measurements_from_arrays(
    observed,
    reference,
    standard_deviations=None,
    quality_scores=None,
) -> List[Measurement]:
    """Build Measurement objects from parallel arrays.

    Args:
        observed: (N, 3) array of sensor readings
        reference: (N, 3) array of reference values
        standard_deviations: Optional scalar or (N,) array
        quality_scores: Optional (N,) array

    Returns:
        List of N measurements

    Raises:
        ValueError: If array shapes do not agree
    """
    observed = np.asarray(observed, dtype=float)
    reference = np.asarray(reference, dtype=float)
    if observed.ndim != 2 or observed.shape[1] != 3:
        raise ValueError(f"observed must have shape (N, 3), got {observed.shape}")
    if reference.shape != observed.shape:
        raise ValueError(
            f"reference shape {reference.shape} does not match observed shape {observed.shape}"
        )
    count = observed.shape[0]

    if standard_deviations is None:
        stds = [None] * count
    else:
        stds = np.broadcast_to(np.asarray(standard_deviations, dtype=float), (count,)).tolist()

    if quality_scores is None:
        scores = [None] * count
    else:
        scores = np.asarray(quality_scores, dtype=float)
        if scores.shape != (count,):
            raise ValueError(
                f"quality_scores must have {count} elements, got shape {scores.shape}"
            )
        scores = scores.tolist()

    return [
        Measurement(observed[i], reference[i], standard_deviation=stds[i], quality_score=scores[i])
        for i in range(count)
    ]
