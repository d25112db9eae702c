"""Solver configuration dataclasses and the YAML scene loader."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from importlib import import_module
from pathlib import Path
from types import ModuleType
from typing import Any, Dict, List, Mapping, Sequence, Tuple

# Defaults tuned for a 128x128 grid with unit cell width.
GRAVITY: Tuple[float, float] = (0.0, -80.0)
REST_DENSITY = 2.0
EOS_STIFFNESS = 2.5
EOS_POWER = 4
GRID_RESOLUTION = 128

_YAML_MODULE: ModuleType | None = None


def _load_yaml_module() -> ModuleType:
    global _YAML_MODULE
    if _YAML_MODULE is None:
        try:
            _YAML_MODULE = import_module("yaml")
        except ModuleNotFoundError as exc:  # pragma: no cover - dependency hint
            raise ImportError(
                "PyYAML is required to load scene configurations. Install it via 'pip install pyyaml'."
            ) from exc
    return _YAML_MODULE


class BoundaryHandling(enum.Enum):
    STICK = "stick"  # zero both axes near a wall
    SLIP = "slip"  # zero only the wall-normal axis
    OPEN = "open"  # no correction, particles may leave the tracked region

    @classmethod
    def parse(cls, value: "BoundaryHandling | str") -> "BoundaryHandling":
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        if name == "none":
            return cls.OPEN
        try:
            return cls(name)
        except ValueError:
            choices = ", ".join(member.value for member in cls)
            raise ValueError(f"Unknown boundary mode {value!r}; expected one of: {choices}") from None


@dataclass(frozen=True)
class FluidParams:
    """Equation-of-state parameters of a fluid material."""

    name: str = "fluid"
    rest_density: float = REST_DENSITY
    eos_stiffness: float = EOS_STIFFNESS
    eos_power: int = EOS_POWER

    @classmethod
    def defaults(cls) -> "FluidParams":
        return cls()

    @classmethod
    def water(cls) -> "FluidParams":
        return cls(name="water")


@dataclass
class SolverParams:
    preserve_fluid_volume: bool = False  # EOS handles volume by itself
    volume_correction_strength: float = 0.0  # 0.0 = disabled, 1.0 = strong
    dynamic_viscosity: float = 0.001
    fluid: FluidParams = field(default_factory=FluidParams)

    @classmethod
    def with_volume_preservation(cls) -> "SolverParams":
        return cls(preserve_fluid_volume=True, volume_correction_strength=0.5)

    @classmethod
    def without_volume_preservation(cls) -> "SolverParams":
        return cls(preserve_fluid_volume=False, volume_correction_strength=0.0)

    def with_correction_strength(self, strength: float) -> "SolverParams":
        return replace(self, volume_correction_strength=min(max(float(strength), 0.0), 1.0))


@dataclass
class PbmpmConfig:
    """Position-based incompressibility pass run after G2P."""

    enabled: bool = False
    iteration_count: int = 4
    relaxation_factor: float = 0.5
    warm_start_weight: float = 0.25  # blend applied on the first iteration only
    convergence_tolerance: float | None = None  # None = always run every iteration


@dataclass(frozen=True)
class GridConfig:
    cell_width: float = 1.0
    resolution: int = GRID_RESOLUTION
    origin: Tuple[int, int] = (0, 0)  # lowest valid cell coordinate


@dataclass
class SimulationConfig:
    solver: SolverParams = field(default_factory=SolverParams)
    pbmpm: PbmpmConfig = field(default_factory=PbmpmConfig)
    grid: GridConfig = field(default_factory=GridConfig)
    gravity: Tuple[float, float] = GRAVITY  # acceleration
    boundary: BoundaryHandling = BoundaryHandling.SLIP
    time_step: float = 1.0 / 60.0  # seconds (s)
    total_steps: int = 600
    workers: int = 1
    debug: bool = False
    debug_interval: int = 60


@dataclass
class FluidBlockConfig:
    min_corner: Sequence[float]
    max_corner: Sequence[float]
    spacing: float = 0.25
    velocity: Sequence[float] = (0.0, 0.0)
    jitter: float = 0.0  # random initial speed magnitude per axis
    particle_mass: float = 1.0


@dataclass
class SceneConfig:
    scene_name: str
    simulation: SimulationConfig
    fluid_blocks: List[FluidBlockConfig] = field(default_factory=list)


def _build(cls, raw: Mapping[str, Any] | None, section: str):
    raw = dict(raw or {})
    known = set(cls.__dataclass_fields__)
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown keys in '{section}': {', '.join(unknown)}")
    return cls(**raw)


def simulation_config_from_dict(raw: Mapping[str, Any]) -> SimulationConfig:
    """Coerce a plain mapping (e.g. parsed YAML) into a :class:`SimulationConfig`."""
    raw: Dict[str, Any] = dict(raw)
    solver_raw = dict(raw.pop("solver", None) or {})
    fluid = _build(FluidParams, solver_raw.pop("fluid", None), "solver.fluid")
    solver = _build(SolverParams, solver_raw, "solver")
    solver = replace(solver, fluid=fluid)

    grid_raw = dict(raw.pop("grid", None) or {})
    if "origin" in grid_raw:
        grid_raw["origin"] = tuple(int(v) for v in grid_raw["origin"])
    grid = _build(GridConfig, grid_raw, "grid")

    pbmpm = _build(PbmpmConfig, raw.pop("pbmpm", None), "pbmpm")

    if "gravity" in raw:
        raw["gravity"] = tuple(float(v) for v in raw["gravity"])
    if "boundary" in raw:
        raw["boundary"] = BoundaryHandling.parse(raw["boundary"])

    config = _build(SimulationConfig, raw, "simulation")
    config.solver = solver
    config.grid = grid
    config.pbmpm = pbmpm
    return config


def load_scene_config(config_path: str | Path) -> SceneConfig:
    """Load a scene configuration from YAML."""
    path = Path(config_path).expanduser().resolve()
    with path.open("r", encoding="utf-8") as handle:
        yaml_module = _load_yaml_module()
        raw = yaml_module.safe_load(handle) or {}

    simulation = simulation_config_from_dict(raw.get("simulation") or {})
    fluid_blocks = [_build(FluidBlockConfig, entry, "fluid_blocks") for entry in (raw.get("fluid_blocks") or [])]
    if not fluid_blocks:
        print("Warning: No fluid blocks configured, the scene starts empty.")

    return SceneConfig(
        scene_name=raw.get("scene_name", path.stem),
        simulation=simulation,
        fluid_blocks=fluid_blocks,
    )
