"""2D MLS-MPM fluid solver on a sparse grid."""

from .configuration import (
    BoundaryHandling,
    FluidParams,
    GridConfig,
    PbmpmConfig,
    SceneConfig,
    SimulationConfig,
    SolverParams,
    load_scene_config,
)
from .materials import MaterialType
from .particle_set import ParticleSet
from .particles import Particle
from .sparse_grid import Node, SparseGrid
from .state import (
    ParticleRemap,
    SimulationState,
    add_particle,
    advance,
    grid_active_cell_count,
    particle_count,
    particles,
    remove_failed,
)

__all__ = [
    "BoundaryHandling",
    "FluidParams",
    "GridConfig",
    "MaterialType",
    "Node",
    "Particle",
    "ParticleRemap",
    "ParticleSet",
    "PbmpmConfig",
    "SceneConfig",
    "SimulationConfig",
    "SimulationState",
    "SolverParams",
    "SparseGrid",
    "add_particle",
    "advance",
    "grid_active_cell_count",
    "load_scene_config",
    "particle_count",
    "particles",
    "remove_failed",
]
