"""Material points: a single-particle record and a batch view over the set."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from math import pi

import numpy as np

from .materials import MaterialType
from .math_utils import identity_matrix, matrix_determinant, zero_matrix, zero_vector

_MATRIX_FIELDS = ("affine", "velocity_gradient", "deformation_gradient", "deformation_displacement", "warm_start")


@dataclass
class Particle:
    """Value record for one particle.

    The solver keeps particles in a :class:`~mpm2d.particle_set.ParticleSet`
    (struct-of-arrays); this record is what goes in and what comes back out.
    """

    position: np.ndarray = field(default_factory=zero_vector)
    velocity: np.ndarray = field(default_factory=zero_vector)
    mass: float = 1.0
    volume0: float = 1.0
    radius0: float = 1.0
    affine: np.ndarray = field(default_factory=zero_matrix)  # APIC C matrix
    velocity_gradient: np.ndarray = field(default_factory=zero_matrix)
    deformation_gradient: np.ndarray = field(default_factory=identity_matrix)
    material: MaterialType = MaterialType.WATER

    # bookkeeping
    grid_index: int = 0
    phase: float = 1.0
    failed: bool = False
    condition_number: float = 1.0

    # position-based incompressibility state
    liquid_density: float = 1.0
    deformation_displacement: np.ndarray = field(default_factory=zero_matrix)
    warm_start: np.ndarray = field(default_factory=zero_matrix)

    def __post_init__(self) -> None:
        self.position = np.asarray(self.position, dtype=np.float64).reshape(2).copy()
        self.velocity = np.asarray(self.velocity, dtype=np.float64).reshape(2).copy()
        for name in _MATRIX_FIELDS:
            setattr(self, name, np.array(getattr(self, name), dtype=np.float64).reshape(2, 2))
        self.material = MaterialType(int(self.material))

    @classmethod
    def zeroed(cls, material: MaterialType = MaterialType.WATER) -> "Particle":
        return cls(material=material)

    @classmethod
    def new(cls, position, material: MaterialType = MaterialType.WATER) -> "Particle":
        return cls(position=position, material=material)

    @classmethod
    def with_density(cls, radius: float, density: float) -> "Particle":
        """Disc-shaped particle whose mass matches ``density``."""
        volume = pi * radius * radius
        return cls(mass=volume * density, volume0=volume, radius0=radius)

    def with_velocity(self, velocity) -> "Particle":
        return replace(self, velocity=velocity)

    def with_mass(self, mass: float) -> "Particle":
        return replace(self, mass=float(mass))

    def with_radius(self, radius: float) -> "Particle":
        return replace(self, radius0=float(radius))

    def current_volume(self, density: float) -> float:
        return self.mass / density if density > 0.0 else self.volume0

    def density_from_volume(self, volume: float) -> float:
        return self.mass / volume if volume > 0.0 else 0.0

    def rest_density(self) -> float:
        return self.mass / self.volume0 if self.volume0 > 0.0 else 0.0

    def jacobian(self) -> float:
        return float(matrix_determinant(self.deformation_gradient))

    def current_volume_from_deformation(self) -> float:
        return self.volume0 * abs(self.jacobian())


@dataclass
class ParticleBatch:
    """Copies of the per-particle arrays a material model reads."""

    indices: np.ndarray
    mass: np.ndarray
    volume0: np.ndarray
    velocity_gradient: np.ndarray
    deformation_gradient: np.ndarray

    def __len__(self) -> int:
        return len(self.indices)
