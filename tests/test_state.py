import numpy as np
import pytest

import mpm2d
from mpm2d import (
    BoundaryHandling,
    GridConfig,
    Particle,
    PbmpmConfig,
    SimulationConfig,
    SimulationState,
)


def test_stationary_particle_stays_at_rest(zero_gravity_state):
    """A lone fluid particle with zero velocity does not drift."""
    state = zero_gravity_state
    rest_density = state.solver_params.fluid.rest_density
    start = np.array([32.3, 32.7])
    state.add_particle(Particle(position=start, mass=1.0, volume0=1.0 / rest_density))

    state.advance(1.0 / 60.0)

    assert state.particle_count() == 1
    particle = state.particles()[0]
    assert np.allclose(particle.velocity, 0.0, atol=1e-9)
    assert np.allclose(particle.position, start, atol=1e-9)
    assert not particle.failed
    assert particle.deformation_gradient[0, 1] == 0.0


def _isolated(count):
    # far enough apart that no two stencils overlap
    return [Particle(position=(10.3 + 4.0 * i, 30.6), mass=1.0, volume0=0.5) for i in range(count)]


def test_advance_publishes_remap_for_failed_particles(zero_gravity_state):
    state = zero_gravity_state
    state.add_particles(_isolated(5))
    state.particle_set.failed[[1, 3]] = True

    remap = state.advance(1.0 / 60.0)
    assert remap.map == [0, None, 1, None, 2]
    assert state.particle_count() == 3

    taken = state.take_remap()
    assert taken.map == [0, None, 1, None, 2]
    assert state.remap.is_empty
    assert taken.new_index(2) == 1
    assert taken.new_index(3) is None


def test_remap_from_earlier_step_is_not_overwritten(zero_gravity_state):
    state = zero_gravity_state
    state.add_particles(_isolated(3))
    state.particle_set.failed[1] = True

    first = state.advance(1.0 / 60.0)
    assert first.map == [0, None, 1]

    second = state.advance(1.0 / 60.0)
    assert second is not first
    assert second.is_empty
    assert first.map == [0, None, 1]

    taken = state.take_remap()
    assert taken is second
    assert first.map == [0, None, 1]


def test_particle_outside_grid_is_removed(zero_gravity_state):
    state = zero_gravity_state
    state.add_particle(Particle(position=(0.2, 30.0)))
    state.add_particle(Particle(position=(30.0, 30.0), volume0=0.5))
    state.advance(1.0 / 60.0)
    assert state.take_remap().map == [None, 0]
    assert state.particle_count() == 1


def test_remap_is_empty_when_nothing_fails(zero_gravity_state):
    state = zero_gravity_state
    state.add_particles(_isolated(3))
    state.advance(1.0 / 60.0)
    assert state.remap.is_empty
    assert state.remove_failed_particles() == []


def test_grid_holds_only_nodes_with_mass(zero_gravity_state, make_block):
    state = zero_gravity_state
    state.add_particles(make_block())
    state.advance(1.0 / 60.0)
    assert state.grid_active_cell_count() > 0
    assert state.grid_active_cell_count() == len(state.grid)
    assert all(node.mass > 0.0 for node in state.grid.cells.values())
    # the grid still holds the mass scattered at the start of the step
    assert state.grid.total_mass() == pytest.approx(0.5 * 36)


def test_block_falls_under_gravity(make_block):
    with SimulationState(grid_config=GridConfig(resolution=64)) as state:
        state.add_particles(make_block(origin=(20.0, 30.0)))
        start = state.positions().mean(axis=0)
        for _ in range(5):
            state.advance(1.0 / 60.0)
        assert state.positions().mean(axis=0)[1] < start[1]
        assert np.all(np.isfinite(state.velocities()))


def test_thread_pool_matches_sequential(make_block):
    results = []
    for workers in (1, 3):
        with SimulationState(grid_config=GridConfig(resolution=64), workers=workers) as state:
            state.add_particles(make_block(origin=(10.0, 20.0), shape=(30, 12), velocity=(4.0, 1.0)))
            for _ in range(3):
                state.advance(1.0 / 60.0)
            results.append((state.positions(), state.velocities(), state.particle_set.affine.copy()))

    sequential, threaded = results
    for expected, actual in zip(sequential, threaded):
        assert np.array_equal(expected, actual)


def test_pbmpm_pass_runs_inside_advance(make_block):
    pbmpm = PbmpmConfig(enabled=True, iteration_count=2)
    with SimulationState(gravity=(0.0, 0.0), grid_config=GridConfig(resolution=64), pbmpm=pbmpm) as state:
        state.add_particles(make_block())
        state.advance(1.0 / 60.0)
        particle_set = state.particle_set
        assert np.array_equal(particle_set.field("warm_start"), particle_set.field("deformation_displacement"))
        assert np.all(np.isfinite(particle_set.liquid_densities))


def test_from_config_and_setters():
    config = SimulationConfig(boundary=BoundaryHandling.STICK, workers=2)
    state = SimulationState.from_config(config)
    assert state.boundary is BoundaryHandling.STICK
    assert state.workers == 2
    state.set_boundary("none")
    assert state.boundary is BoundaryHandling.OPEN
    state.set_gravity((1.0, 2.0))
    assert np.array_equal(state.gravity, [1.0, 2.0])
    state.set_pbmpm_config(PbmpmConfig(enabled=True))
    assert state.pbmpm.enabled
    state.close()


def test_functional_api():
    state = SimulationState(gravity=(0.0, 0.0), grid_config=GridConfig(resolution=64))
    index = mpm2d.add_particle(state, Particle(position=(30.3, 30.6), volume0=0.5))
    assert index == 0
    assert mpm2d.particle_count(state) == 1
    mpm2d.advance(state, 1.0 / 60.0)
    assert mpm2d.grid_active_cell_count(state) == 9
    assert len(mpm2d.particles(state)) == 1
    assert mpm2d.remove_failed(state) == []


def test_debug_output(capsys):
    state = SimulationState(gravity=(0.0, 0.0), grid_config=GridConfig(resolution=64), debug=True, debug_interval=1)
    state.add_particles(_isolated(2))
    state.advance(1.0 / 60.0)
    output = capsys.readouterr().out
    assert "[SimulationState] step=1 particles=2" in output
