#!/usr/bin/env python3
"""
YAML I/O for calibration measurements and results.

YAML Schema:
    Measurements:

    measurements:
      - observed: [0.512, -0.231, 0.874]
        reference: [0.500, -0.240, 0.860]
        standard_deviation: 0.001   # optional
        quality_score: 0.93         # optional
      - observed: [...]
        reference: [...]

    Results:

    calibration_result:
      method: "lmeds"
      timestamp: "2026-01-05T10:00:00+00:00"
      num_measurements: 1000
      iterations: 12
      refined: true
      parameters:
        bias: [bx, by, bz]
        matrix: [[sx, mxy, mxz], [myx, sy, myz], [mzx, mzy, sz]]
      mse: 1.02e-06
      chi_sq: 2950.4
      covariance: [[...], ...]      # 12x12, null when not estimated
      inliers:
        num_inliers: 812
        outlier_ratio: 0.188
        threshold: 0.0021
        mask: [true, false, ...]
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Sequence
import logging

import numpy as np
import yaml

from triad_calibration.measurement import Measurement
from triad_calibration.parameters import CalibrationParameters
from triad_calibration.robust_estimator import InliersData
from triad_calibration.scoring import RobustMethod
from triad_calibration.session import CalibrationResult

logger = logging.getLogger(__name__)


def _read_yaml(yaml_path: str, section: str) -> Any:
    path = Path(yaml_path)
    if not path.exists():
        raise FileNotFoundError(f"YAML file not found: {yaml_path}")
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse YAML file '{yaml_path}': {e}") from e
    if not isinstance(data, dict) or section not in data:
        raise ValueError(f"YAML file '{yaml_path}' missing '{section}' section")
    return data[section]


def _write_yaml(yaml_path: str, data: Dict[str, Any]) -> None:
    path = Path(yaml_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(path, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    except IOError as e:
        raise IOError(f"Failed to write YAML file '{yaml_path}': {e}") from e


def _serialize_inliers(inliers: InliersData) -> Dict[str, Any]:
    return {
        'num_inliers': inliers.num_inliers,
        'outlier_ratio': float(inliers.outlier_ratio),
        'threshold': float(inliers.threshold),
        'mask': [bool(v) for v in inliers.inliers],
        'residuals': [float(v) for v in inliers.residuals],
    }


def _deserialize_inliers(data: Dict[str, Any]) -> InliersData:
    if 'mask' not in data:
        raise ValueError("Inliers section missing required field: mask")
    mask = np.array(data['mask'], dtype=bool)
    residuals = np.array(data.get('residuals', np.full(len(mask), np.nan)), dtype=float)
    if residuals.shape != mask.shape:
        raise ValueError(
            f"Inlier residuals ({residuals.shape}) do not match mask ({mask.shape})"
        )
    return InliersData(inliers=mask, residuals=residuals, threshold=float(data.get('threshold', 0.0)))


def save_measurements(measurements: Sequence[Measurement], yaml_path: str) -> None:
    """Save measurements to a YAML file.

    Raises:
        ValueError: If an item is not a Measurement
        IOError: If the file cannot be written
    """
    items = []
    for i, m in enumerate(measurements):
        if not isinstance(m, Measurement):
            raise ValueError(f"Item {i} must be a Measurement, got {type(m)}")
        items.append(m.to_dict())
    _write_yaml(yaml_path, {'measurements': items})
    logger.info(f"Saved {len(items)} measurements to {yaml_path}")


def load_measurements(yaml_path: str) -> List[Measurement]:
    """Load measurements from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is malformed or a measurement is invalid
    """
    items = _read_yaml(yaml_path, 'measurements')
    if not isinstance(items, list):
        raise ValueError(f"'measurements' must be a list, got {type(items)}")

    measurements = []
    for i, item in enumerate(items):
        try:
            measurements.append(Measurement.from_dict(item))
        except ValueError as e:
            raise ValueError(f"Invalid measurement at index {i}: {e}") from e

    logger.info(f"Loaded {len(measurements)} measurements from {yaml_path}")
    return measurements


def save_calibration_result(result: CalibrationResult, yaml_path: str) -> None:
    """Save a CalibrationResult to a YAML file.

    Raises:
        ValueError: If result is not a CalibrationResult
        IOError: If the file cannot be written
    """
    if not isinstance(result, CalibrationResult):
        raise ValueError(f"result must be CalibrationResult, got {type(result)}")

    covariance = None
    if result.covariance is not None:
        covariance = [[float(v) for v in row] for row in result.covariance]

    _write_yaml(yaml_path, {
        'calibration_result': {
            'method': result.method.value,
            'timestamp': result.timestamp.isoformat(),
            'num_measurements': result.num_measurements,
            'iterations': result.iterations,
            'refined': result.refined,
            'parameters': result.parameters.to_dict(),
            'mse': float(result.mse),
            'chi_sq': float(result.chi_sq),
            'covariance': covariance,
            'inliers': _serialize_inliers(result.inliers_data),
        }
    })
    logger.info(f"Saved calibration result to {yaml_path}")


def load_calibration_result(yaml_path: str) -> CalibrationResult:
    """Load a CalibrationResult from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is malformed
    """
    data = _read_yaml(yaml_path, 'calibration_result')
    if not isinstance(data, dict):
        raise ValueError(f"'calibration_result' must be a dictionary, got {type(data)}")

    required = ['method', 'parameters', 'inliers']
    missing = [key for key in required if key not in data]
    if missing:
        raise ValueError(f"Calibration result missing required fields: {missing}")

    try:
        method = RobustMethod(data['method'])
    except ValueError:
        raise ValueError(f"Unknown method in calibration result: {data['method']!r}") from None

    covariance = data.get('covariance')
    if covariance is not None:
        covariance = np.array(covariance, dtype=float)
        if covariance.shape != (12, 12):
            raise ValueError(f"Covariance must be 12x12, got shape {covariance.shape}")

    inliers = _deserialize_inliers(data['inliers'])
    kwargs = {}
    if 'timestamp' in data:
        timestamp = data['timestamp']
        kwargs['timestamp'] = timestamp if isinstance(timestamp, datetime) else datetime.fromisoformat(timestamp)

    return CalibrationResult(
        parameters=CalibrationParameters.from_dict(data['parameters']),
        covariance=covariance,
        mse=float(data.get('mse', 0.0)),
        chi_sq=float(data.get('chi_sq', 0.0)),
        inliers_data=inliers,
        method=method,
        iterations=int(data.get('iterations', 0)),
        refined=bool(data.get('refined', False)),
        num_measurements=int(data.get('num_measurements', len(inliers.inliers))),
        **kwargs,
    )
