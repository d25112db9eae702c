"""Grid velocity integration: gravity and wall boundary handling."""

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

from ..configuration import BoundaryHandling
from ..sparse_grid import Coord, SparseGrid

BOUNDARY_MARGIN = 2  # cells from the edge of the valid range


def boundary_axes(coord: Coord, lower: Coord, upper: Coord, margin: int = BOUNDARY_MARGIN) -> Tuple[bool, bool]:
    """Whether a node is inside the wall margin along x and along y."""
    x, y = coord
    near_x = x < lower[0] + margin or x > upper[0] - margin
    near_y = y < lower[1] + margin or y > upper[1] - margin
    return near_x, near_y


def apply_boundary_conditions(velocity: np.ndarray, near_x: bool, near_y: bool, mode: BoundaryHandling) -> None:
    """Correct a node velocity in place."""
    if mode is BoundaryHandling.STICK:
        if near_x or near_y:
            velocity[:] = 0.0
    elif mode is BoundaryHandling.SLIP:
        if near_x:
            velocity[0] = 0.0
        if near_y:
            velocity[1] = 0.0


def integrate_grid_velocities(
    grid: SparseGrid,
    gravity: Sequence[float],
    dt: float,
    boundary: BoundaryHandling = BoundaryHandling.SLIP,
) -> int:
    """Add ``gravity * dt`` to every active node with mass and apply the wall policy.

    Returns:
        Number of nodes flagged as boundary nodes
    """
    boundary = BoundaryHandling.parse(boundary)
    gravity_step = np.asarray(gravity, dtype=np.float64) * dt
    lower, upper = grid.valid_range

    flagged = 0
    for coord, node in grid.iter_active():
        if node.mass <= 0.0:
            continue
        node.velocity += gravity_step
        near_x, near_y = boundary_axes(coord, lower, upper)
        node.boundary = near_x or near_y
        if node.boundary:
            flagged += 1
            apply_boundary_conditions(node.velocity, near_x, near_y, boundary)
    return flagged
