"""
Covariance estimation for refined calibration parameters.

The covariance of the free parameters is the inverse of the weighted normal
matrix, scaled by a variance factor:

    C_free = inv(J^T J) * s^2

where J is the sigma-weighted Jacobian at the solution. When every
measurement carried its own standard deviation the weights are absolute and
s^2 = 1; otherwise s^2 is the residual variance estimate
sum(r^2) / (m - p) (m residual components, p free parameters).

C_free is then expanded into the full 12x12 layout
[bx, by, bz, sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy]. Entries of parameters
that were not estimated (common-axis terms, a known bias) are exactly zero.
"""

from typing import Optional, Sequence
import logging

import numpy as np

from triad_calibration.parameters import NUM_PARAMETERS

logger = logging.getLogger(__name__)


def expand_covariance(free_covariance: np.ndarray, free_indices: Sequence[int]) -> np.ndarray:
    """Embed a covariance over free parameters into the 12x12 layout.

    Args:
        free_covariance: (P, P) covariance of the free parameters
        free_indices: Flattened indices of those P parameters

    Returns:
        (12, 12) covariance with zero rows/columns for fixed parameters
    """
    free_indices = list(free_indices)
    if free_covariance.shape != (len(free_indices), len(free_indices)):
        raise ValueError(
            f"Covariance shape {free_covariance.shape} does not match "
            f"{len(free_indices)} free parameters"
        )
    # Selection matrix J maps free -> full: C_full = J C J^T
    selection = np.zeros((NUM_PARAMETERS, len(free_indices)))
    selection[free_indices, np.arange(len(free_indices))] = 1.0
    return selection @ free_covariance @ selection.T


def estimate_covariance(
    weighted_jacobian: np.ndarray,
    weighted_residuals: np.ndarray,
    free_indices: Sequence[int],
    absolute_sigma: bool = True,
) -> Optional[np.ndarray]:
    """Estimate the 12x12 parameter covariance at a refined solution.

    Args:
        weighted_jacobian: (m, P) sigma-weighted Jacobian over free parameters
        weighted_residuals: (m,) sigma-weighted residuals
        free_indices: Flattened indices of the P free parameters
        absolute_sigma: Treat the weights as absolute standard deviations

    Returns:
        (12, 12) covariance matrix, or None when the normal matrix is singular
    """
    jac = np.asarray(weighted_jacobian, dtype=float)
    res = np.asarray(weighted_residuals, dtype=float)
    num_residuals, num_free = jac.shape

    # Column scaling keeps bias and matrix columns comparable before inversion
    scale = np.linalg.norm(jac, axis=0)
    scale[scale == 0.0] = 1.0
    scaled = jac / scale

    if np.linalg.matrix_rank(scaled) < num_free:
        logger.warning(
            f"Normal matrix is rank deficient ({num_free} parameters); covariance not available"
        )
        return None

    try:
        free_covariance = np.linalg.inv(scaled.T @ scaled) / np.outer(scale, scale)
    except np.linalg.LinAlgError as e:
        logger.warning(f"Failed to invert normal matrix: {e}")
        return None

    if not absolute_sigma:
        dof = num_residuals - num_free
        variance = float(res @ res) / dof if dof > 0 else 1.0
        free_covariance = free_covariance * variance

    # Symmetrize round-off from the inversion
    free_covariance = 0.5 * (free_covariance + free_covariance.T)
    return expand_covariance(free_covariance, free_indices)
