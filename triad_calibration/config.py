"""
Configuration for robust triaxial calibration sessions.

A CalibrationConfig is an immutable-by-convention value object: the session
swaps in a modified copy (dataclasses.replace) whenever a setting changes, so
every change goes through the same validation. Configurations can be loaded
from a YAML file with a top-level ``calibration`` section:

    calibration:
      method: lmeds
      threshold: 1.0e-9
      confidence: 0.99
      max_iterations: 5000
      progress_delta: 0.05
      preliminary_subset_size: 4
      common_axis: false
      linear_solver_used: true
      preliminary_solution_refined: false
      result_refined: true
      covariance_kept: true
      seed: 42
"""

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional
import logging

import yaml

from triad_calibration.scoring import RobustMethod

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05
DEFAULT_METHOD = RobustMethod.LMEDS


@dataclass(frozen=True)
class CalibrationConfig:
    """Settings shared by every robust calibration method.

    Attributes:
        method: Robust estimation method, used when building sessions from a
            configuration file
        threshold: Inlier threshold (stop threshold for LMedS/PROMedS);
            None selects the method default
        confidence: Probability of drawing an all-inlier subset, in (0, 1)
        max_iterations: Hard cap on scored iterations
        progress_delta: Minimum progress advance between progress callbacks,
            in (0, 1]
        preliminary_subset_size: Measurements per subset; None selects the
            model minimum
        common_axis: Assume the sensor x axis is the reference x axis
            (myx = mzx = mzy = 0)
        linear_solver_used: Compute preliminary solutions with the linear
            solver; otherwise the initial guess is used
        preliminary_solution_refined: Refine each preliminary solution
            non-linearly over its subset
        result_refined: Refine the best solution non-linearly over its inliers
        covariance_kept: Estimate the parameter covariance after refinement
        seed: Seed for the sampling random generator
    """
    method: RobustMethod = DEFAULT_METHOD
    threshold: Optional[float] = None
    confidence: float = DEFAULT_CONFIDENCE
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    progress_delta: float = DEFAULT_PROGRESS_DELTA
    preliminary_subset_size: Optional[int] = None
    common_axis: bool = False
    linear_solver_used: bool = True
    preliminary_solution_refined: bool = False
    result_refined: bool = True
    covariance_kept: bool = True
    seed: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.method, RobustMethod):
            object.__setattr__(self, 'method', self._parse_method(self.method))

        # YAML 1.1 reads values such as 1e-9 as strings
        for name in ('threshold', 'confidence', 'progress_delta'):
            value = getattr(self, name)
            if value is None or isinstance(value, float):
                continue
            if isinstance(value, bool):
                raise ValueError(f"{name} must be a number, got {value!r}")
            try:
                object.__setattr__(self, name, float(value))
            except (TypeError, ValueError):
                raise ValueError(f"{name} must be a number, got {value!r}") from None

        if self.threshold is not None and not self.threshold > 0:
            raise ValueError(f"threshold must be positive, got {self.threshold}")

        if not 0.0 < self.confidence < 1.0:
            raise ValueError(f"confidence must be in (0, 1), got {self.confidence}")

        if isinstance(self.max_iterations, bool) or not isinstance(self.max_iterations, int):
            raise ValueError(f"max_iterations must be an integer, got {self.max_iterations!r}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {self.max_iterations}")

        if not 0.0 < self.progress_delta <= 1.0:
            raise ValueError(f"progress_delta must be in (0, 1], got {self.progress_delta}")

        if self.preliminary_subset_size is not None:
            if (isinstance(self.preliminary_subset_size, bool)
                    or not isinstance(self.preliminary_subset_size, int)
                    or self.preliminary_subset_size < 1):
                raise ValueError(
                    f"preliminary_subset_size must be a positive integer, "
                    f"got {self.preliminary_subset_size!r}"
                )

        for name in ('common_axis', 'linear_solver_used', 'preliminary_solution_refined',
                     'result_refined', 'covariance_kept'):
            if not isinstance(getattr(self, name), bool):
                raise ValueError(f"{name} must be a boolean, got {getattr(self, name)!r}")

        if self.seed is not None and (isinstance(self.seed, bool) or not isinstance(self.seed, int)):
            raise ValueError(f"seed must be an integer, got {self.seed!r}")

    @staticmethod
    def _parse_method(method_str: str) -> RobustMethod:
        """Parse a method name into RobustMethod.

        Raises:
            ValueError: If method_str is not a known method
        """
        try:
            return RobustMethod(str(method_str).lower())
        except ValueError:
            valid = [m.value for m in RobustMethod]
            raise ValueError(
                f"Invalid method '{method_str}'. Must be one of: {', '.join(valid)}"
            ) from None

    @classmethod
    def from_dict(cls, config: dict) -> 'CalibrationConfig':
        """Create a configuration from a dictionary.

        Unknown keys are rejected so typos do not silently fall back to
        defaults.

        Raises:
            ValueError: If the dictionary is malformed or contains invalid values
        """
        if not isinstance(config, dict):
            raise ValueError(f"Configuration must be a dictionary, got {type(config)}")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config) - known)
        if unknown:
            raise ValueError(
                f"Unknown configuration keys: {', '.join(unknown)}. "
                f"Valid keys: {', '.join(sorted(known))}"
            )
        return cls(**config)

    @classmethod
    def from_yaml(cls, path: str) -> 'CalibrationConfig':
        """Load configuration from the ``calibration`` section of a YAML file.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is empty, malformed or lacks the section
        """
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {path}\n"
                f"Please create a configuration file or use get_default_config()"
            )

        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Failed to parse YAML configuration file: {e}") from e

        if not data:
            raise ValueError(
                f"Configuration file is empty: {path}\n"
                f"Expected a 'calibration' section"
            )
        if not isinstance(data, dict) or 'calibration' not in data:
            raise ValueError(
                f"Configuration file missing 'calibration' section: {path}\n"
                f"Expected structure: calibration:\n  method: ...\n  ..."
            )

        config = cls.from_dict(data['calibration'] or {})
        logger.info(f"Loaded calibration configuration from {path} (method: {config.method.value})")
        return config

    def to_dict(self) -> dict:
        data = asdict(self)
        data['method'] = self.method.value
        return data

    def save_to_yaml(self, path: str) -> None:
        """Write the configuration under a ``calibration`` section."""
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(config_path, 'w') as f:
                yaml.safe_dump({'calibration': self.to_dict()}, f, default_flow_style=False, sort_keys=False)
        except IOError as e:
            raise IOError(f"Failed to write configuration file: {e}") from e


def get_default_config() -> CalibrationConfig:
    """Return the default configuration (LMedS, refinement and covariance on)."""
    return CalibrationConfig()
