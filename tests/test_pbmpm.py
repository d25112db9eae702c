import numpy as np
import pytest

from mpm2d.configuration import PbmpmConfig
from mpm2d.particle_set import ParticleSet
from mpm2d.particles import Particle
from mpm2d.solvers.pbmpm import LIQUID_DENSITY_FLOOR, solve_constraints, solve_incompressibility_constraint


def _single(deformation, density=1.0, warm_start=None, iteration=0, **config):
    config.setdefault("warm_start_weight", 0.0)
    warm_start = np.zeros((1, 2, 2)) if warm_start is None else np.asarray(warm_start)[None]
    return solve_incompressibility_constraint(
        np.asarray(deformation, dtype=np.float64)[None],
        np.array([density]),
        warm_start,
        iteration,
        PbmpmConfig(enabled=True, **config),
    )


def test_zero_displacement_at_unit_density_is_fixed_point():
    deformation, density, residual = _single(np.zeros((2, 2)))
    assert np.array_equal(deformation[0], np.zeros((2, 2)))
    assert density[0] == 1.0
    assert residual[0] == 0.0


def test_expansion_is_relaxed_on_the_diagonal():
    deformation, density, residual = _single(np.diag([0.1, 0.1]), relaxation_factor=0.5)
    assert density[0] == pytest.approx(1.2)
    assert residual[0] == pytest.approx(-0.2)
    assert np.allclose(deformation[0], np.zeros((2, 2)))


def test_residual_uses_density_before_update():
    deformation, density, residual = _single(np.zeros((2, 2)), density=2.0, relaxation_factor=1.0)
    assert residual[0] == pytest.approx(-0.5)
    assert density[0] == 2.0
    assert np.allclose(deformation[0], np.diag([-0.5, -0.5]))


def test_liquid_density_is_floored():
    _, density, _ = _single(np.diag([-0.6, -0.6]))
    assert density[0] == LIQUID_DENSITY_FLOOR


def test_warm_start_seeds_only_the_first_iteration():
    warm = np.diag([0.4, 0.4])
    first, _, _ = _single(np.zeros((2, 2)), warm_start=warm, iteration=0, warm_start_weight=0.25, relaxation_factor=0.0)
    assert np.allclose(first[0], np.diag([0.1, 0.1]))
    later, _, _ = _single(np.zeros((2, 2)), warm_start=warm, iteration=1, warm_start_weight=0.25, relaxation_factor=0.0)
    assert np.array_equal(later[0], np.zeros((2, 2)))


def _particle_set():
    particle_set = ParticleSet()
    particle_set.insert(Particle(position=(5.0, 5.0), affine=np.diag([3.0, 3.0])))
    particle_set.insert(Particle(position=(6.0, 5.0), affine=np.diag([-1.0, 2.0])))
    particle_set.insert(Particle(position=(7.0, 5.0), affine=np.diag([1.0, 1.0])))
    return particle_set


def test_disabled_pass_does_nothing():
    particle_set = _particle_set()
    assert solve_constraints(particle_set, PbmpmConfig(enabled=False), 0.1) == 0
    assert np.array_equal(particle_set.affine[0], np.diag([3.0, 3.0]))


def test_constraint_pass_writes_back_state():
    particle_set = _particle_set()
    particle_set.failed[2] = True
    dt = 0.1
    iterations = solve_constraints(particle_set, PbmpmConfig(enabled=True, iteration_count=3), dt)
    assert iterations == 3

    displacement = particle_set.field("deformation_displacement")
    assert np.array_equal(particle_set.field("warm_start"), displacement)
    assert np.allclose(particle_set.affine[:2], displacement[:2] / dt)
    assert np.array_equal(particle_set.velocity_gradients[:2], particle_set.affine[:2])
    assert np.all(particle_set.liquid_densities[:2] >= LIQUID_DENSITY_FLOOR)

    # failed particles are left alone
    assert np.array_equal(particle_set.affine[2], np.diag([1.0, 1.0]))
    assert particle_set.liquid_densities[2] == 1.0


def test_convergence_tolerance_stops_early():
    particle_set = ParticleSet()
    particle_set.insert(Particle(position=(5.0, 5.0)))
    config = PbmpmConfig(enabled=True, iteration_count=10, convergence_tolerance=1e-6)
    assert solve_constraints(particle_set, config, 0.1) == 1
