"""
Position-based incompressibility pass (PBMPM).

Runs after G2P on live incompressible particles. Each particle's velocity
gradient is turned into a per-step deformation displacement ``D = C * dt``,
which is then relaxed towards zero volumetric error for a fixed number of
iterations.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

from ..configuration import PbmpmConfig
from ..materials import MaterialType
from ..math_utils import diagonal_from_value, matrix_trace, safe_inverse
from ..particle_set import ParticleSet

LIQUID_DENSITY_FLOOR = 0.05


def solve_incompressibility_constraint(
    deformation: np.ndarray,
    liquid_density: np.ndarray,
    warm_start: np.ndarray,
    iteration: int,
    config: PbmpmConfig,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    One constraint iteration for a batch of particles.

    Args:
        deformation: ``(n, 2, 2)`` deformation displacement
        liquid_density: ``(n,)`` tracked density ratio
        warm_start: ``(n, 2, 2)`` solution stored by the previous step
        iteration: Iteration index; the warm start only seeds iteration 0
        config: Relaxation and warm-start weights

    Returns:
        Tuple of (new deformation, new liquid density, volume residual)
    """
    deformation = np.asarray(deformation, dtype=np.float64)
    if iteration == 0:
        weight = config.warm_start_weight
        deformation = (1.0 - weight) * deformation + weight * np.asarray(warm_start, dtype=np.float64)

    strain = matrix_trace(deformation)
    previous_density = np.asarray(liquid_density, dtype=np.float64)
    density = np.maximum(previous_density * (1.0 + strain), LIQUID_DENSITY_FLOOR)

    residual = safe_inverse(previous_density) - 1.0 - strain
    deformation = deformation + diagonal_from_value(residual * config.relaxation_factor)
    return deformation, density, residual


def solve_constraints(particle_set: ParticleSet, config: PbmpmConfig, dt: float) -> int:
    """Run the constraint iterations and write the result back.

    ``deformation_displacement`` and ``warm_start`` receive the relaxed
    displacement; ``affine`` and ``velocity_gradient`` receive it converted
    back to a rate. Returns the number of iterations performed.
    """
    if not config.enabled or config.iteration_count <= 0 or len(particle_set) == 0:
        return 0

    incompressible = np.array([MaterialType(int(tag)).is_incompressible for tag in particle_set.materials], dtype=bool)
    indices = np.flatnonzero(incompressible & ~particle_set.failed)
    if indices.size == 0:
        return 0

    deformation = particle_set.affine[indices] * dt
    density = particle_set.liquid_densities[indices].copy()
    warm_start = particle_set.field("warm_start")[indices]

    iterations = 0
    for iteration in range(config.iteration_count):
        deformation, density, residual = solve_incompressibility_constraint(
            deformation, density, warm_start, iteration, config
        )
        iterations += 1
        tolerance = config.convergence_tolerance
        if tolerance is not None and np.all(np.abs(residual) < tolerance):
            break

    particle_set.liquid_densities[indices] = density
    particle_set.field("deformation_displacement")[indices] = deformation
    particle_set.field("warm_start")[indices] = deformation
    rate = deformation * safe_inverse(dt)
    particle_set.affine[indices] = rate
    particle_set.velocity_gradients[indices] = rate
    return iterations
