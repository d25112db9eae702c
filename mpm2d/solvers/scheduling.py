"""Colour-ordered execution of per-tile particle work."""

from __future__ import annotations

from concurrent.futures import Executor
from typing import Callable, Optional

import numpy as np

from ..particle_set import COLOUR_COUNT, ParticleSet

TileTask = Callable[[np.ndarray], None]


def for_each_colour(particle_set: ParticleSet, task: TileTask, executor: Optional[Executor] = None) -> None:
    """Run ``task(indices)`` once per occupied tile.

    Colours run strictly one after another. Within a colour, tiles are handed
    to ``executor`` when one is given; their stencils are disjoint, so no two
    concurrent tasks touch the same grid node. Exceptions raised by a task
    propagate to the caller.
    """
    particle_set.require_spatial_index()
    for colour in range(COLOUR_COUNT):
        batches = particle_set.colour_batches(colour)
        if not batches:
            continue
        if executor is None or len(batches) == 1:
            for indices in batches:
                task(indices)
        else:
            for _ in executor.map(task, batches):
                pass
