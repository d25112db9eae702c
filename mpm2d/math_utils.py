"""Lightweight 2D tensor helpers used throughout the solver.

Every helper accepts either a single value (``(2,)`` vector, ``(2, 2)``
matrix) or a batch with leading axes (``(n, 2, 2)``), so the same code path
serves one particle and a whole particle set.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

DIM = 2
SAFE_INVERSE_EPSILON = 1e-12


def zero_vector() -> np.ndarray:
    return np.zeros(DIM, dtype=np.float64)


def zero_matrix() -> np.ndarray:
    return np.zeros((DIM, DIM), dtype=np.float64)


def identity_matrix() -> np.ndarray:
    return np.eye(DIM, dtype=np.float64)


def matrix_trace(m: np.ndarray) -> np.ndarray | float:
    m = np.asarray(m)
    return m[..., 0, 0] + m[..., 1, 1]


def matrix_transpose(m: np.ndarray) -> np.ndarray:
    return np.swapaxes(np.asarray(m), -1, -2)


def matrix_determinant(m: np.ndarray) -> np.ndarray | float:
    m = np.asarray(m)
    return m[..., 0, 0] * m[..., 1, 1] - m[..., 0, 1] * m[..., 1, 0]


def diagonal_from_value(value) -> np.ndarray:
    value = np.asarray(value, dtype=np.float64)
    return np.eye(DIM) * value[..., None, None]


def diagonal_from_vec(vec: np.ndarray) -> np.ndarray:
    vec = np.asarray(vec, dtype=np.float64)
    out = np.zeros(vec.shape[:-1] + (DIM, DIM))
    out[..., 0, 0] = vec[..., 0]
    out[..., 1, 1] = vec[..., 1]
    return out


def spherical_part(tensor: np.ndarray) -> np.ndarray | float:
    """Mean of the diagonal."""
    return matrix_trace(tensor) / DIM


def deviatoric_part(tensor: np.ndarray) -> np.ndarray:
    """Tensor with its spherical part removed (trace-free)."""
    return np.asarray(tensor) - diagonal_from_value(spherical_part(tensor))


def strain_rate(velocity_gradient: np.ndarray) -> np.ndarray:
    """Symmetric part of a velocity gradient."""
    return 0.5 * (np.asarray(velocity_gradient) + matrix_transpose(velocity_gradient))


def safe_inverse(value, epsilon: float = SAFE_INVERSE_EPSILON):
    """Saturating reciprocal: ``1 / value``, or 0 where ``|value| <= epsilon``.

    Non-finite inputs also map to 0 so a blown-up denominator never turns
    into a NaN that leaks into the grid.
    """
    value = np.asarray(value, dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        inverse = np.where(np.abs(value) > epsilon, 1.0 / value, 0.0)
    inverse = np.where(np.isfinite(inverse), inverse, 0.0)
    return inverse if inverse.ndim else float(inverse)


def is_finite(a) -> bool:
    return bool(np.all(np.isfinite(a)))


@dataclass
class DecomposedTensor:
    """Split of a 2x2 tensor into deviatoric and spherical parts."""

    deviatoric_part: np.ndarray
    spherical_part: float

    @classmethod
    def decompose(cls, tensor: np.ndarray) -> "DecomposedTensor":
        spherical = float(spherical_part(tensor))
        return cls(deviatoric_part=deviatoric_part(tensor), spherical_part=spherical)

    @classmethod
    def zero(cls) -> "DecomposedTensor":
        return cls(deviatoric_part=zero_matrix(), spherical_part=0.0)

    def recompose(self) -> np.ndarray:
        return self.deviatoric_part + diagonal_from_value(self.spherical_part)
