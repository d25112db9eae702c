"""Per-step particle health checks."""

from __future__ import annotations

import numpy as np

from .math_utils import matrix_determinant, matrix_trace

CONDITION_THRESHOLD = 1e6
DEGENERATE_DETERMINANT = 1e-12


def condition_numbers(affine: np.ndarray) -> np.ndarray:
    """Cheap conditioning estimate ``|tr C| / |det C|`` of each affine matrix.

    Non-finite matrices and matrices with a vanishing determinant report
    ``inf``.
    """
    affine = np.asarray(affine, dtype=np.float64)
    finite = np.all(np.isfinite(affine), axis=(-2, -1))
    with np.errstate(invalid="ignore", over="ignore", divide="ignore"):
        det = np.abs(matrix_determinant(affine))
        trace = np.abs(matrix_trace(affine))
        regular = finite & (det > DEGENERATE_DETERMINANT)
        condition = np.where(regular, trace / np.where(regular, det, 1.0), np.inf)
    return condition


def update_particles_health(particle_set) -> int:
    """Refresh ``condition_number`` and ``failed`` for every particle.

    A particle fails when its affine matrix is non-finite or finitely
    ill-conditioned, or when its position, velocity, mass or rest volume is
    unusable. Failed flags are sticky.

    Singular but finite affine matrices (``|det C| <= 1e-12``) are exempt from
    the conditioning check and only report ``inf``: a particle at rest has
    ``C = 0`` and would otherwise be removed on its first step.

    Returns:
        Number of particles newly marked failed
    """
    if len(particle_set) == 0:
        return 0

    affine = particle_set.affine
    condition = condition_numbers(affine)
    particle_set.condition_numbers[:] = condition

    affine_bad = ~np.all(np.isfinite(affine), axis=(1, 2))
    ill_conditioned = np.isfinite(condition) & (condition > CONDITION_THRESHOLD)

    mass = particle_set.masses
    volume0 = particle_set.volumes
    state_bad = (
        ~np.all(np.isfinite(particle_set.positions), axis=1)
        | ~np.all(np.isfinite(particle_set.velocities), axis=1)
        | ~np.isfinite(mass)
        | (mass <= 0.0)
        | ~np.isfinite(volume0)
        | (volume0 <= 0.0)
    )

    failing = affine_bad | ill_conditioned | state_bad
    failed = particle_set.failed
    newly_failed = int(np.count_nonzero(failing & ~failed))
    failed |= failing
    return newly_failed
