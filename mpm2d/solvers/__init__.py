"""
Per-step solver stages.
Transfers between particles and the sparse grid, grid integration and the
optional incompressibility pass.
"""

from .g2p import grid_to_particle
from .grid_update import BOUNDARY_MARGIN, BoundaryHandling, integrate_grid_velocities
from .p2g import particle_to_grid
from .pbmpm import solve_constraints
from .scheduling import for_each_colour

__all__ = [
    'BOUNDARY_MARGIN',
    'BoundaryHandling',
    'for_each_colour',
    'grid_to_particle',
    'integrate_grid_velocities',
    'particle_to_grid',
    'solve_constraints',
]
