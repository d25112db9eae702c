"""CLI entry point to run the 2D MPM fluid simulation."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List

# Add parent directory to path to find the mpm2d package
sys.path.insert(0, str(Path(__file__).parent.parent))

import numpy as np
from tqdm import tqdm

from mpm2d import Particle, SimulationState, load_scene_config
from mpm2d.configuration import FluidBlockConfig


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the 2D MLS-MPM fluid simulation")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("config/dam_break.yaml"),
        help="Path to the scene configuration YAML file.",
    )
    parser.add_argument("--steps", type=int, default=None, help="Optional override for number of steps")
    parser.add_argument("--workers", type=int, default=None, help="Threads used for same-colour scatter batches")
    parser.add_argument("--debug", action="store_true", help="Print solver diagnostics every debug_interval steps")
    parser.add_argument("--pbmpm", action="store_true", help="Enable the position-based incompressibility pass")
    parser.add_argument("--seed", type=int, default=0, help="Random seed for initial velocity jitter")
    return parser.parse_args()


def seed_fluid_block(block: FluidBlockConfig, rng: np.random.Generator) -> List[Particle]:
    """Fill an axis-aligned box with particles on a regular lattice."""
    spacing = float(block.spacing)
    lower = np.asarray(block.min_corner, dtype=np.float64)
    upper = np.asarray(block.max_corner, dtype=np.float64)
    xs = np.arange(lower[0], upper[0], spacing) + 0.5 * spacing
    ys = np.arange(lower[1], upper[1], spacing) + 0.5 * spacing
    grid_x, grid_y = np.meshgrid(xs, ys, indexing="ij")
    positions = np.stack([grid_x.ravel(), grid_y.ravel()], axis=1)

    velocities = np.tile(np.asarray(block.velocity, dtype=np.float64), (len(positions), 1))
    if block.jitter > 0.0:
        velocities += rng.uniform(-block.jitter, block.jitter, size=velocities.shape)

    volume = spacing * spacing
    return [
        Particle(
            position=position,
            velocity=velocity,
            mass=block.particle_mass,
            volume0=volume,
            radius0=0.5 * spacing,
        )
        for position, velocity in zip(positions, velocities)
    ]


def main() -> None:
    args = parse_args()
    scene = load_scene_config(args.config)
    config = scene.simulation
    if args.workers is not None:
        config.workers = args.workers
    if args.debug:
        config.debug = True
    if args.pbmpm:
        config.pbmpm.enabled = True

    rng = np.random.default_rng(args.seed)
    steps = args.steps if args.steps is not None else config.total_steps

    print(f"[Simulate] Scene '{scene.scene_name}' from {args.config}")
    with SimulationState.from_config(config) as state:
        for block in scene.fluid_blocks:
            seeded = state.add_particles(seed_fluid_block(block, rng))
            print(f"[Simulate] Seeded {len(seeded)} particles in block {tuple(block.min_corner)}-{tuple(block.max_corner)}")
        initial_count = state.particle_count()

        removed = 0
        for _ in tqdm(range(steps), desc="Simulating"):
            state.advance(config.time_step)
            remap = state.take_remap()
            removed += sum(1 for new_index in remap if new_index is None)

        positions = state.positions()
        print(f"[Simulate] Finished {steps} steps")
        print(f"  Particles alive: {state.particle_count()} / {initial_count} (removed {removed})")
        print(f"  Active grid cells: {state.grid_active_cell_count()}")
        if len(positions):
            centre = positions.mean(axis=0)
            print(f"  Centre of mass: ({centre[0]:.3f}, {centre[1]:.3f})")


if __name__ == "__main__":
    main()
