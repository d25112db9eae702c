"""Grid-to-particle transfer and particle state integration."""

from __future__ import annotations

from concurrent.futures import Executor
from typing import Optional

import numpy as np

from ..kernel import NEIGHBOR_COUNT, inv_d
from ..materials import project_deformation
from ..math_utils import identity_matrix
from ..particle_set import ParticleSet
from ..sparse_grid import SparseGrid
from .scheduling import for_each_colour


def gather_node_velocities(
    grid: SparseGrid, particle_set: ParticleSet, executor: Optional[Executor] = None
) -> np.ndarray:
    """``(n, 9, 2)`` velocities of each particle's stencil nodes; zero where a node was reclaimed."""
    gathered = np.zeros((len(particle_set), NEIGHBOR_COUNT, 2), dtype=np.float64)
    keys = particle_set.transfer_cache.keys.tolist()
    get_node = grid.cells.get

    def gather(indices: np.ndarray) -> None:
        for p in indices.tolist():
            row = gathered[p]
            for slot, key in enumerate(keys[p]):
                node = get_node(key)
                if node is not None:
                    row[slot] = node.velocity

    for_each_colour(particle_set, gather, executor)
    return gathered


def grid_to_particle(
    grid: SparseGrid,
    particle_set: ParticleSet,
    dt: float,
    executor: Optional[Executor] = None,
) -> None:
    """Gather velocity and its gradient, update F, move and clamp particles.

    Leaves the spatial index stale, since positions changed.
    """
    particle_set.require_spatial_index()
    live = particle_set.live_indices()
    if live.size == 0:
        particle_set.mark_positions_changed()
        return

    cache = particle_set.transfer_cache
    node_velocity = gather_node_velocities(grid, particle_set, executor)[live]
    weighted = cache.weights[live, :, None] * node_velocity
    velocity = weighted.sum(axis=1)
    gradient = np.einsum("nki,nkj->nij", weighted, cache.distances[live]) * inv_d(grid.cell_width)

    particle_set.velocities[live] = velocity
    particle_set.affine[live] = gradient
    particle_set.velocity_gradients[live] = gradient

    deformation = (identity_matrix() + dt * gradient) @ particle_set.deformation_gradients[live]
    materials = particle_set.materials[live]
    for material in np.unique(materials):
        mask = materials == material
        deformation[mask] = project_deformation(int(material), deformation[mask])
    particle_set.deformation_gradients[live] = deformation

    lower, upper = grid.position_bounds()
    particle_set.positions[live] = np.clip(particle_set.positions[live] + velocity * dt, lower, upper)
    particle_set.mark_positions_changed()
