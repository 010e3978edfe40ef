"""
Calibration parameter value type for triaxial sensors.

A triaxial sensor reading is modelled as

    observed = b + (I + M) @ reference

where ``b`` is the bias (hard iron for magnetometers) and ``M`` collects the
scale factors on its diagonal and the cross-coupling terms off-diagonal:

    M = [[sx,  mxy, mxz],
         [myx, sy,  myz],
         [mzx, mzy, sz ]]

Parameters are flattened in a fixed order that every Jacobian and covariance
matrix in this package follows:

    [bx, by, bz, sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy]

Under the common-axis assumption the sensor x axis is shared with the
reference frame and ``M`` is upper triangular (myx = mzx = mzy = 0).

Usage Example:
    >>> params = CalibrationParameters.from_vector(np.zeros(12))
    >>> params.sx
    0.0
    >>> params.to_vector().shape
    (12,)
"""

from dataclasses import dataclass, field
from typing import Tuple

import numpy as np

PARAMETER_NAMES: Tuple[str, ...] = (
    'bx', 'by', 'bz',
    'sx', 'sy', 'sz',
    'mxy', 'mxz', 'myx', 'myz', 'mzx', 'mzy',
)
NUM_PARAMETERS = len(PARAMETER_NAMES)

BIAS_INDICES: Tuple[int, ...] = (0, 1, 2)

# Parameter index -> (row, col) within M
MATRIX_ENTRY_INDICES = {
    3: (0, 0),
    4: (1, 1),
    5: (2, 2),
    6: (0, 1),
    7: (0, 2),
    8: (1, 0),
    9: (1, 2),
    10: (2, 0),
    11: (2, 1),
}

# myx, mzx, mzy
COMMON_AXIS_FIXED_INDICES: Tuple[int, ...] = (8, 10, 11)


def _as_vector(values, name: str) -> np.ndarray:
    array = np.asarray(values, dtype=float)
    if array.shape != (3,):
        raise ValueError(f"{name} must be a 3-vector, got shape {array.shape}")
    if not np.all(np.isfinite(array)):
        raise ValueError(f"{name} must contain finite values, got {array}")
    return array


def _as_matrix(values, name: str) -> np.ndarray:
    array = np.asarray(values, dtype=float)
    if array.shape != (3, 3):
        raise ValueError(f"{name} must be a 3x3 matrix, got shape {array.shape}")
    if not np.all(np.isfinite(array)):
        raise ValueError(f"{name} must contain finite values")
    return array


@dataclass(frozen=True, eq=False)
class CalibrationParameters:
    """Bias vector and scale/cross-coupling matrix of a triaxial sensor.

    Attributes:
        bias: Bias 3-vector, in the units of the sensor readings
        matrix: 3x3 scale factor and cross-coupling matrix M
    """
    bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    matrix: np.ndarray = field(default_factory=lambda: np.zeros((3, 3)))

    def __post_init__(self):
        # Frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, 'bias', _as_vector(self.bias, 'bias').copy())
        object.__setattr__(self, 'matrix', _as_matrix(self.matrix, 'matrix').copy())
        self.bias.flags.writeable = False
        self.matrix.flags.writeable = False

    @classmethod
    def from_vector(cls, vector) -> 'CalibrationParameters':
        """Build parameters from the flattened 12-element vector."""
        vector = np.asarray(vector, dtype=float)
        if vector.shape != (NUM_PARAMETERS,):
            raise ValueError(
                f"Parameter vector must have {NUM_PARAMETERS} elements, "
                f"got shape {vector.shape}"
            )
        matrix = np.zeros((3, 3))
        for index, (row, col) in MATRIX_ENTRY_INDICES.items():
            matrix[row, col] = vector[index]
        return cls(bias=vector[:3], matrix=matrix)

    def to_vector(self) -> np.ndarray:
        """Flatten into [bx, by, bz, sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy]."""
        vector = np.zeros(NUM_PARAMETERS)
        vector[:3] = self.bias
        for index, (row, col) in MATRIX_ENTRY_INDICES.items():
            vector[index] = self.matrix[row, col]
        return vector

    def with_common_axis(self) -> 'CalibrationParameters':
        """Return a copy with the lower-triangular cross-coupling terms zeroed."""
        return CalibrationParameters(bias=self.bias, matrix=np.triu(self.matrix))

    def is_common_axis(self, atol: float = 0.0) -> bool:
        return bool(np.all(np.abs(np.tril(self.matrix, k=-1)) <= atol))

    @property
    def transform(self) -> np.ndarray:
        """I + M, mapping reference values onto bias-free sensor readings."""
        return np.eye(3) + self.matrix

    @property
    def bias_x(self) -> float:
        return float(self.bias[0])

    @property
    def bias_y(self) -> float:
        return float(self.bias[1])

    @property
    def bias_z(self) -> float:
        return float(self.bias[2])

    @property
    def sx(self) -> float:
        return float(self.matrix[0, 0])

    @property
    def sy(self) -> float:
        return float(self.matrix[1, 1])

    @property
    def sz(self) -> float:
        return float(self.matrix[2, 2])

    @property
    def mxy(self) -> float:
        return float(self.matrix[0, 1])

    @property
    def mxz(self) -> float:
        return float(self.matrix[0, 2])

    @property
    def myx(self) -> float:
        return float(self.matrix[1, 0])

    @property
    def myz(self) -> float:
        return float(self.matrix[1, 2])

    @property
    def mzx(self) -> float:
        return float(self.matrix[2, 0])

    @property
    def mzy(self) -> float:
        return float(self.matrix[2, 1])

    def to_dict(self) -> dict:
        """Serialize to plain Python types (YAML friendly)."""
        return {
            'bias': [float(v) for v in self.bias],
            'matrix': [[float(v) for v in row] for row in self.matrix],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CalibrationParameters':
        if not isinstance(data, dict):
            raise ValueError(f"Parameters must be a dictionary, got {type(data)}")
        return cls(
            bias=data.get('bias', [0.0, 0.0, 0.0]),
            matrix=data.get('matrix', np.zeros((3, 3))),
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, CalibrationParameters):
            return NotImplemented
        return bool(
            np.array_equal(self.bias, other.bias)
            and np.array_equal(self.matrix, other.matrix)
        )

    def allclose(
        self,
        other: 'CalibrationParameters',
        atol: float = 1e-9,
        rtol: float = 0.0,
    ) -> bool:
        return bool(
            np.allclose(self.bias, other.bias, atol=atol, rtol=rtol)
            and np.allclose(self.matrix, other.matrix, atol=atol, rtol=rtol)
        )
