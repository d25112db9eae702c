"""Aggregate simulation state: grid, particles, parameters and the step driver."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Sequence

import numpy as np

from .configuration import (
    GRAVITY,
    BoundaryHandling,
    GridConfig,
    PbmpmConfig,
    SimulationConfig,
    SolverParams,
)
from .health import update_particles_health
from .particle_set import ParticleSet
from .particles import Particle
from .solvers import grid_to_particle, integrate_grid_velocities, particle_to_grid, solve_constraints
from .sparse_grid import SparseGrid


@dataclass
class ParticleRemap:
    """``old index -> new index`` (``None`` = removed) from the latest compaction."""

    map: List[Optional[int]] = field(default_factory=list)

    def clear(self) -> None:
        self.map = []

    @property
    def is_empty(self) -> bool:
        return not self.map

    def new_index(self, old_index: int) -> Optional[int]:
        if not self.map:
            return old_index
        return self.map[old_index]

    def __len__(self) -> int:
        return len(self.map)

    def __iter__(self) -> Iterator[Optional[int]]:
        return iter(self.map)


class SimulationState:
    """Owns the sparse grid, the particle set and every solver setting.

    ``advance`` runs one full step: rebuild the spatial index, clear the grid,
    P2G, grid integration, grid cleanup, G2P, the optional PBMPM pass, the
    health check and compaction of failed particles.
    """

    def __init__(
        self,
        solver_params: SolverParams | None = None,
        gravity: Sequence[float] = GRAVITY,
        boundary: BoundaryHandling | str = BoundaryHandling.SLIP,
        grid_config: GridConfig | None = None,
        pbmpm: PbmpmConfig | None = None,
        workers: int = 1,
        debug: bool = False,
        debug_interval: int = 60,
    ) -> None:
        self.solver_params = solver_params if solver_params is not None else SolverParams()
        self.gravity = np.asarray(gravity, dtype=np.float64).reshape(2).copy()
        self.boundary = BoundaryHandling.parse(boundary)
        self.grid = SparseGrid(grid_config)
        self.particle_set = ParticleSet()
        self.pbmpm = pbmpm if pbmpm is not None else PbmpmConfig()
        self.workers = max(1, int(workers))
        self.debug = debug
        self.debug_interval = max(1, int(debug_interval))

        self.remap = ParticleRemap()
        self.step_count = 0
        self.removed_total = 0
        self._executor: ThreadPoolExecutor | None = None

        if self.debug:
            print(f"[SimulationState] grid={self.grid.resolution}^2 @ h={self.grid.cell_width}, origin={self.grid.lower}")
            print(f"[SimulationState] gravity={tuple(self.gravity)}, boundary={self.boundary.value}, workers={self.workers}")
            print(f"[SimulationState] PBMPM enabled={self.pbmpm.enabled}, iterations={self.pbmpm.iteration_count}")

    @classmethod
    def from_config(cls, config: SimulationConfig) -> "SimulationState":
        return cls(
            solver_params=config.solver,
            gravity=config.gravity,
            boundary=config.boundary,
            grid_config=config.grid,
            pbmpm=config.pbmpm,
            workers=config.workers,
            debug=config.debug,
            debug_interval=config.debug_interval,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def set_solver_params(self, params: SolverParams) -> None:
        self.solver_params = params

    def set_gravity(self, gravity: Sequence[float]) -> None:
        self.gravity = np.asarray(gravity, dtype=np.float64).reshape(2).copy()

    def set_boundary(self, boundary: BoundaryHandling | str) -> None:
        self.boundary = BoundaryHandling.parse(boundary)

    def set_pbmpm_config(self, config: PbmpmConfig) -> None:
        self.pbmpm = config

    @property
    def executor(self) -> ThreadPoolExecutor | None:
        """Thread pool for same-colour tiles; ``None`` when running single-threaded."""
        if self.workers <= 1:
            return None
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="mpm2d")
        return self._executor

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "SimulationState":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Particles
    # ------------------------------------------------------------------
    def add_particle(self, particle: Particle) -> int:
        return self.particle_set.insert(particle)

    def add_particles(self, particles: Iterable[Particle]) -> range:
        return self.particle_set.insert_batch(particles)

    def particles(self) -> List[Particle]:
        return list(self.particle_set)

    def positions(self) -> np.ndarray:
        return self.particle_set.positions.copy()

    def velocities(self) -> np.ndarray:
        return self.particle_set.velocities.copy()

    def particle_count(self) -> int:
        return len(self.particle_set)

    def grid_active_cell_count(self) -> int:
        return self.grid.active_count

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def rebuild_particle_bins(self) -> int:
        return self.particle_set.rebuild(self.grid.cell_width, self.grid.valid_range)

    def zero_grid(self) -> None:
        self.grid.zero_active()

    def cleanup_grid(self) -> int:
        return self.grid.compact()

    def integrate_grid_velocities(self, dt: float) -> int:
        return integrate_grid_velocities(self.grid, self.gravity, dt, self.boundary)

    def remove_failed_particles(self) -> List[Optional[int]]:
        """Compact failed particles out and publish the remap table."""
        mapping = self.particle_set.remove_failed()
        self.remap = ParticleRemap(mapping)
        self.removed_total += sum(1 for new in mapping if new is None)
        return mapping

    def take_remap(self) -> ParticleRemap:
        """Hand the latest remap to the caller and clear the stored one."""
        remap = self.remap
        self.remap = ParticleRemap()
        return remap

    def advance(self, dt: float) -> ParticleRemap:
        """Advance the simulation by ``dt`` and return the remap of this step.

        Each step publishes a new :class:`ParticleRemap`; a table the host
        keeps from an earlier step is never rewritten.
        """
        removed_before = self.removed_total

        self.rebuild_particle_bins()
        self.zero_grid()
        particle_to_grid(self.grid, self.particle_set, self.solver_params, dt, self.executor)
        self.integrate_grid_velocities(dt)
        self.cleanup_grid()
        grid_to_particle(self.grid, self.particle_set, dt, self.executor)
        if self.pbmpm.enabled:
            solve_constraints(self.particle_set, self.pbmpm, dt)
        update_particles_health(self.particle_set)
        self.remove_failed_particles()

        self.step_count += 1
        if self.debug and self.step_count % self.debug_interval == 0:
            self._print_debug(self.removed_total - removed_before)
        return self.remap

    def _print_debug(self, removed: int) -> None:
        print(
            f"[SimulationState] step={self.step_count} particles={self.particle_count()} "
            f"active_cells={self.grid_active_cell_count()} removed={removed} "
            f"grid_mass={self.grid.total_mass():.6f}"
        )


# ----------------------------------------------------------------------
# Host-facing functional API
# ----------------------------------------------------------------------
def advance(state: SimulationState, dt: float) -> ParticleRemap:
    return state.advance(dt)


def add_particle(state: SimulationState, particle: Particle) -> int:
    return state.add_particle(particle)


def remove_failed(state: SimulationState) -> List[Optional[int]]:
    return state.remove_failed_particles()


def particles(state: SimulationState) -> List[Particle]:
    return state.particles()


def particle_count(state: SimulationState) -> int:
    return state.particle_count()


def grid_active_cell_count(state: SimulationState) -> int:
    return state.grid_active_cell_count()
