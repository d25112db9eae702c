import os
import sys

import pytest

# Ensure the package is importable without installation
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from mpm2d import GridConfig, Particle, SimulationState, SolverParams


@pytest.fixture
def solver_params():
    return SolverParams()


@pytest.fixture
def make_block():
    """Factory for a rectangular lattice of particles."""

    def factory(origin=(20.0, 20.0), shape=(6, 6), spacing=0.5, velocity=(0.0, 0.0), mass=0.5):
        return [
            Particle(
                position=(origin[0] + (i + 0.5) * spacing, origin[1] + (j + 0.5) * spacing),
                velocity=velocity,
                mass=mass,
                volume0=spacing * spacing,
            )
            for i in range(shape[0])
            for j in range(shape[1])
        ]

    return factory


@pytest.fixture
def zero_gravity_state():
    state = SimulationState(gravity=(0.0, 0.0), grid_config=GridConfig(resolution=64))
    yield state
    state.close()
