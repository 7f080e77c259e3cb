from __future__ import annotations

import logging
import math
from typing import Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

REFERENCE_DEGREE = 3


def world_to_vehicle(
    ptsx: Sequence[float],
    ptsy: Sequence[float],
    px: float,
    py: float,
    psi: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Express world-frame waypoints in the vehicle frame.

    The vehicle sits at the origin facing +x; +y is to its left when psi
    grows counter-clockwise.
    """
    dx = np.asarray(ptsx, dtype=float) - px
    dy = np.asarray(ptsy, dtype=float) - py
    cos_psi = math.cos(psi)
    sin_psi = math.sin(psi)
    x_vehicle = dx * cos_psi + dy * sin_psi
    y_vehicle = dy * cos_psi - dx * sin_psi
    return x_vehicle, y_vehicle


def fit_reference_polynomial(
    xs: Sequence[float],
    ys: Sequence[float],
    degree: int = REFERENCE_DEGREE,
) -> Optional[np.ndarray]:
    """
    Least-squares polynomial fit y = c0 + c1*x + ... + cd*x^d.

    Returns the coefficients in increasing power order, or None when the
    waypoints cannot determine a curve of the requested degree (too few
    points, non-finite values or repeated x positions).
    """
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    if xs.shape != ys.shape or xs.ndim != 1:
        logger.warning("Reference fit rejected: mismatched waypoint arrays %s vs %s", xs.shape, ys.shape)
        return None
    if xs.size < degree + 1:
        logger.warning("Reference fit rejected: %d waypoints for degree %d", xs.size, degree)
        return None
    if not (np.all(np.isfinite(xs)) and np.all(np.isfinite(ys))):
        logger.warning("Reference fit rejected: non-finite waypoint values")
        return None

    vandermonde = np.vander(xs, degree + 1, increasing=True)
    coeffs, _, rank, _ = np.linalg.lstsq(vandermonde, ys, rcond=None)
    if rank < degree + 1:
        logger.warning("Reference fit rejected: waypoints span rank %d < %d", rank, degree + 1)
        return None
    return coeffs


def evaluate_polynomial(coeffs: Sequence[float], x):
    """Evaluate the reference curve at one or many longitudinal offsets."""
    return np.polynomial.polynomial.polyval(x, np.asarray(coeffs, dtype=float))


def compute_tracking_errors(coeffs: Sequence[float]) -> Tuple[float, float]:
    """
    Cross-track and heading error of a vehicle at the origin with zero heading.

    cte is the curve's offset at x=0; epsi is psi - atan(f'(0)) with psi=0.
    """
    cte = float(evaluate_polynomial(coeffs, 0.0))
    epsi = -math.atan(float(coeffs[1]))
    return cte, epsi


def reference_polyline(
    coeffs: Sequence[float],
    spacing: float = 2.5,
    count: int = 25,
) -> Tuple[np.ndarray, np.ndarray]:
    """Sample the reference curve ahead of the vehicle for display."""
    xs = spacing * np.arange(count, dtype=float)
    return xs, evaluate_polynomial(coeffs, xs)
