"""
Quadratic B-spline interpolation kernel shared by P2G and G2P.

Grid nodes sit at cell centres: node ``(i, j)`` lives at
``((i + 0.5) * cell_width, (j + 0.5) * cell_width)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Tuple

import numpy as np

NEIGHBOR_COUNT = 9
KERNEL_SIZE = 3

# (gx, gy) for neighbour slot k = gy * 3 + gx
STENCIL_OFFSETS = np.array([(gx, gy) for gy in range(KERNEL_SIZE) for gx in range(KERNEL_SIZE)], dtype=np.int64)


def inv_d(cell_width: float) -> float:
    """MLS normalisation constant of the quadratic kernel."""
    return 4.0 / (cell_width * cell_width)


def bspline_weights(d: np.ndarray) -> np.ndarray:
    """
    Per-axis quadratic B-spline weights.

    Args:
        d: Offset of the particle from the centre of its cell, ``|d| <= 0.5``

    Returns:
        Array with a trailing axis of 3 weights for the left, centre and right node
    """
    d = np.asarray(d, dtype=np.float64)
    return np.stack(
        [0.5 * (0.5 - d) * (0.5 - d), 0.75 - d * d, 0.5 * (0.5 + d) * (0.5 + d)],
        axis=-1,
    )


def cell_from_position(position: np.ndarray, cell_width: float) -> np.ndarray:
    """Index of the node nearest to a position (the centre of its 3x3 stencil)."""
    return np.floor(np.asarray(position, dtype=np.float64) / cell_width).astype(np.int64)


def compute_stencils(positions: np.ndarray, cell_width: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Evaluate the kernel for a batch of positions.

    Args:
        positions: ``(n, 2)`` particle positions in world units
        cell_width: Grid spacing

    Returns:
        Tuple of (coords ``(n, 9, 2)``, weights ``(n, 9)``, distances ``(n, 9, 2)``).
        Distances point from the particle to the node, in world units.
    """
    scaled = np.asarray(positions, dtype=np.float64) / cell_width
    cell = np.floor(scaled)
    diff = scaled - cell - 0.5
    axis_weights = bspline_weights(diff)  # (n, 2, 3)

    base = cell.astype(np.int64) - 1
    coords = base[:, None, :] + STENCIL_OFFSETS[None, :, :]
    weights = axis_weights[:, 0, STENCIL_OFFSETS[:, 0]] * axis_weights[:, 1, STENCIL_OFFSETS[:, 1]]
    distances = ((coords + 0.5) - scaled[:, None, :]) * cell_width
    return coords, weights, distances


@dataclass(frozen=True)
class GridInterpolation:
    """Kernel evaluation for a single particle."""

    base: np.ndarray
    coords: np.ndarray
    weights: np.ndarray
    distances: np.ndarray

    @classmethod
    def compute_for_particle(cls, position: np.ndarray, cell_width: float = 1.0) -> "GridInterpolation":
        coords, weights, distances = compute_stencils(np.asarray(position, dtype=np.float64)[None, :], cell_width)
        return cls(base=coords[0, 0].copy(), coords=coords[0], weights=weights[0], distances=distances[0])

    def weight_for_neighbor(self, index: int) -> float:
        return float(self.weights[index])

    def iter_neighbors(self) -> Iterator[Tuple[Tuple[int, int], float, np.ndarray]]:
        for coord, weight, distance in zip(self.coords, self.weights, self.distances):
            yield (int(coord[0]), int(coord[1])), float(weight), distance
