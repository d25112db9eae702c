"""
Material models.

Materials form a closed set, so dispatch is a plain branch on
:class:`MaterialType` rather than a class hierarchy. Each model provides
``compute_stress`` and ``project_deformation``; both accept either one
particle (a :class:`~mpm2d.particles.Particle`) or a homogeneous batch of
particles (a :class:`~mpm2d.particles.ParticleBatch`).

The elastic modulus conversions and the ``*_ok`` range checks at the bottom
of the module are standalone physics utilities for solid materials and
parameter validation. No fluid solver stage calls them.
"""

from __future__ import annotations

import enum

import numpy as np

from .configuration import SolverParams
from .math_utils import (
    deviatoric_part,
    diagonal_from_value,
    matrix_determinant,
    matrix_trace,
    safe_inverse,
    strain_rate,
)

EOS_PRESSURE_FLOOR = -0.1


class MaterialType(enum.IntEnum):
    WATER = 0

    @property
    def is_fluid(self) -> bool:
        return self is MaterialType.WATER

    @property
    def is_incompressible(self) -> bool:
        return self is MaterialType.WATER

    @property
    def material_name(self) -> str:
        return self.name.lower()


def _material(value) -> MaterialType:
    try:
        return MaterialType(int(value))
    except ValueError:
        raise ValueError(f"Unknown material tag {value!r}") from None


# ----------------------------------------------------------------------
# Fluid (water)
# ----------------------------------------------------------------------
def fluid_pressure(particles, density, params: SolverParams):
    """EOS pressure plus the optional linear volume correction."""
    fluid = params.fluid
    density = np.asarray(density, dtype=np.float64)
    ratio = density / fluid.rest_density
    pressure = np.maximum(EOS_PRESSURE_FLOOR, fluid.eos_stiffness * (ratio ** fluid.eos_power - 1.0))

    if params.preserve_fluid_volume:
        mass = np.asarray(particles.mass, dtype=np.float64)
        volume0 = np.asarray(particles.volume0, dtype=np.float64)
        current_volume = mass * safe_inverse(density)
        deviation = (current_volume - volume0) * safe_inverse(volume0)
        pressure = pressure + params.volume_correction_strength * deviation * fluid.rest_density
    return pressure


def fluid_stress(particles, density, params: SolverParams) -> np.ndarray:
    jacobian = np.asarray(matrix_determinant(particles.deformation_gradient), dtype=np.float64)
    pressure = fluid_pressure(particles, density, params)
    stress = diagonal_from_value(-pressure * jacobian)

    deviatoric_strain = deviatoric_part(strain_rate(particles.velocity_gradient))
    viscous = (2.0 * params.dynamic_viscosity * jacobian)[..., None, None] * deviatoric_strain
    return stress + viscous


def fluid_project_deformation(deformation_gradient: np.ndarray) -> np.ndarray:
    """Drop accumulated shear: ``F := I * |det F| ** 0.25``."""
    jacobian = np.abs(np.asarray(matrix_determinant(deformation_gradient), dtype=np.float64))
    return diagonal_from_value(jacobian ** 0.25)


# ----------------------------------------------------------------------
# Dispatch
# ----------------------------------------------------------------------
def compute_stress(material, particles, density, params: SolverParams) -> np.ndarray:
    """Cauchy-like stress used by the P2G force term."""
    material = _material(material)
    if material is MaterialType.WATER:
        return fluid_stress(particles, density, params)
    raise ValueError(f"No stress model for material {material!r}")


def project_deformation(material, deformation_gradient: np.ndarray) -> np.ndarray:
    material = _material(material)
    if material is MaterialType.WATER:
        return fluid_project_deformation(deformation_gradient)
    raise ValueError(f"No deformation projection for material {material!r}")


# ----------------------------------------------------------------------
# Helpers shared by material models
# ----------------------------------------------------------------------
def pressure(stress: np.ndarray):
    """Mean normal stress."""
    return matrix_trace(stress) / 2.0


def stress_magnitude(stress: np.ndarray):
    stress = np.asarray(stress)
    return np.sqrt(np.sum(stress * stress, axis=(-2, -1)))


# ----------------------------------------------------------------------
# Elastic moduli and range checks (not used by the fluid pipeline)
# ----------------------------------------------------------------------
def lame_lambda_mu(young_modulus: float, poisson_ratio: float):
    lam = young_modulus * poisson_ratio / ((1.0 + poisson_ratio) * (1.0 - 2.0 * poisson_ratio))
    return lam, shear_modulus(young_modulus, poisson_ratio)


def shear_modulus(young_modulus: float, poisson_ratio: float) -> float:
    return young_modulus / (2.0 * (1.0 + poisson_ratio))


def bulk_modulus(young_modulus: float, poisson_ratio: float) -> float:
    return young_modulus / (3.0 * (1.0 - 2.0 * poisson_ratio))


def bulk_modulus_from_lame(lam: float, mu: float) -> float:
    return lam + 2.0 * mu / 3.0


def density_ok(density: float) -> bool:
    return bool(np.isfinite(density) and 0.0 < density < 50000.0)


def viscosity_ok(viscosity: float) -> bool:
    return bool(np.isfinite(viscosity) and 0.0 <= viscosity < 1e6)


def deformation_gradient_ok(det: float) -> bool:
    return bool(np.isfinite(det) and 1e-6 < det < 1e6)
