import numpy as np
import pytest

from mpm2d.health import CONDITION_THRESHOLD, condition_numbers, update_particles_health
from mpm2d.particle_set import ParticleSet
from mpm2d.particles import Particle


def test_condition_numbers():
    affine = np.array(
        [
            np.zeros((2, 2)),
            0.5 * np.eye(2),
            [[np.nan, 0.0], [0.0, 1.0]],
            [[1.0, 0.0], [0.0, -1.0]],
        ]
    )
    condition = condition_numbers(affine)
    assert np.isinf(condition[0])
    assert condition[1] == 4.0
    assert np.isinf(condition[2])
    assert condition[3] == 0.0


def test_resting_particle_stays_healthy():
    particles = ParticleSet()
    particles.insert(Particle(position=(4.0, 4.0)))
    assert update_particles_health(particles) == 0
    assert not particles.failed[0]
    assert np.isinf(particles.condition_numbers[0])


def test_unhealthy_particles_are_flagged():
    particles = ParticleSet()
    particles.insert(Particle(position=(4.0, 4.0), affine=0.1 * np.eye(2)))
    particles.insert(Particle(position=(4.0, 4.0), affine=np.diag([1.0, 1e-7])))  # ill-conditioned
    particles.insert(Particle(position=(4.0, 4.0), affine=[[np.inf, 0.0], [0.0, 1.0]]))
    particles.insert(Particle(position=(np.nan, 4.0)))
    particles.insert(Particle(position=(4.0, 4.0), velocity=(0.0, np.inf)))
    particles.insert(Particle(position=(4.0, 4.0), mass=0.0))
    particles.insert(Particle(position=(4.0, 4.0), volume0=-1.0))

    assert update_particles_health(particles) == 6
    assert particles.failed.tolist() == [False, True, True, True, True, True, True]
    assert particles.condition_numbers[0] == pytest.approx(20.0)
    assert particles.condition_numbers[1] > CONDITION_THRESHOLD


def test_failed_flag_is_sticky():
    particles = ParticleSet()
    particles.insert(Particle(position=(4.0, 4.0)))
    particles.failed[0] = True
    assert update_particles_health(particles) == 0
    assert particles.failed[0]
