"""
Particle-to-grid transfer.

Three passes: scatter mass, gather density and scatter momentum (including
the stress-derived force), then derive node velocities. Failed particles
never reach the grid.
"""

from __future__ import annotations

from concurrent.futures import Executor
from typing import Optional

import numpy as np

from ..configuration import SolverParams
from ..kernel import inv_d
from ..materials import compute_stress
from ..math_utils import safe_inverse
from ..particle_set import ParticleSet
from ..sparse_grid import SparseGrid
from .scheduling import for_each_colour


def scatter_mass(grid: SparseGrid, particle_set: ParticleSet, executor: Optional[Executor] = None) -> None:
    """Pass 1: accumulate ``w * m`` (and ``w * m * phase``) into node mass."""
    cache = particle_set.transfer_cache
    keys = cache.keys.tolist()
    weights = cache.weights.tolist()
    masses = particle_set.masses.tolist()
    phases = particle_set.phases.tolist()
    get_node = grid.get_or_create_packed

    def scatter(indices: np.ndarray) -> None:
        for p in indices.tolist():
            mass = masses[p]
            phase_mass = mass * phases[p]
            for key, weight in zip(keys[p], weights[p]):
                node = get_node(key)
                node.mass += weight * mass
                node.phase_mass += weight * phase_mass

    for_each_colour(particle_set, scatter, executor)


def gather_density(grid: SparseGrid, particle_set: ParticleSet) -> np.ndarray:
    """Kernel-weighted node mass per unit cell area at each particle; 0 for failed particles."""
    density = np.zeros(len(particle_set), dtype=np.float64)
    live = particle_set.live_indices()
    if live.size == 0:
        return density

    cache = particle_set.transfer_cache
    cells = grid.cells
    node_mass = np.array([[cells[key].mass for key in row] for row in cache.keys[live].tolist()])
    area = grid.cell_width * grid.cell_width
    density[live] = np.sum(cache.weights[live] * node_mass, axis=1) / area
    return density


def compute_particle_stress(particle_set: ParticleSet, density: np.ndarray, params: SolverParams) -> np.ndarray:
    """Evaluate the material stress of every live particle, one material at a time."""
    stress = np.zeros((len(particle_set), 2, 2), dtype=np.float64)
    live = particle_set.live_indices()
    if live.size == 0:
        return stress

    materials = particle_set.materials[live]
    for material in np.unique(materials):
        indices = live[materials == material]
        batch = particle_set.batch(indices)
        stress[indices] = compute_stress(int(material), batch, density[indices], params)
    return stress


def scatter_momentum(
    grid: SparseGrid,
    particle_set: ParticleSet,
    stress: np.ndarray,
    dt: float,
    executor: Optional[Executor] = None,
) -> None:
    """Pass 2: scatter ``w * (A d + m v)`` with ``A = m L - V0 inv_D dt stress``."""
    live = particle_set.live_indices()
    if live.size == 0:
        return

    count = len(particle_set)
    cache = particle_set.transfer_cache
    mass = particle_set.masses
    velocity = particle_set.velocities
    phase = np.where(particle_set.failed, 0.0, particle_set.phases)

    affine = np.zeros((count, 2, 2), dtype=np.float64)
    affine[live] = (
        mass[live, None, None] * particle_set.velocity_gradients[live]
        - (particle_set.volumes[live] * inv_d(grid.cell_width) * dt)[:, None, None] * stress[live]
    )
    momentum = np.zeros((count, 2), dtype=np.float64)
    momentum[live] = mass[live, None] * velocity[live]
    contributions = cache.weights[..., None] * (
        np.einsum("nij,nkj->nki", affine, cache.distances) + momentum[:, None, :]
    )
    phase_contributions = cache.weights[..., None] * (phase[:, None] * momentum)[:, None, :]

    keys = cache.keys.tolist()
    contributions = contributions.tolist()
    phase_contributions = phase_contributions.tolist()
    cells = grid.cells

    def scatter(indices: np.ndarray) -> None:
        for p in indices.tolist():
            for key, (mx, my), (px, py) in zip(keys[p], contributions[p], phase_contributions[p]):
                node = cells[key]
                node.momentum[0] += mx
                node.momentum[1] += my
                node.phase_momentum[0] += px
                node.phase_momentum[1] += py

    for_each_colour(particle_set, scatter, executor)


def compute_grid_velocities(grid: SparseGrid) -> None:
    """Pass 3: ``velocity = momentum / mass`` on every active node with mass."""
    for node in grid.cells.values():
        if node.active and node.mass > 0.0:
            node.velocity[:] = node.momentum * safe_inverse(node.mass)


def particle_to_grid(
    grid: SparseGrid,
    particle_set: ParticleSet,
    params: SolverParams,
    dt: float,
    executor: Optional[Executor] = None,
) -> np.ndarray:
    """Run the full P2G transfer. Returns the per-particle density used for stress."""
    particle_set.require_spatial_index()
    scatter_mass(grid, particle_set, executor)
    density = gather_density(grid, particle_set)
    stress = compute_particle_stress(particle_set, density, params)
    scatter_momentum(grid, particle_set, stress, dt, executor)
    compute_grid_velocities(grid)
    return density
