"""
Sparse background grid keyed by packed integer cell coordinates.

Nodes are created lazily on first write, reset at the start of every step and
garbage-collected once their mass stays at zero. Two signed 32-bit axis values
pack into one unsigned 64-bit key, so negative coordinates are allowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np

from .configuration import GridConfig

PackedCell = int
Coord = Tuple[int, int]

_LOW_BITS = 0xFFFFFFFF
_SIGN_BIT = 0x80000000
_LOW_MASK = np.uint64(_LOW_BITS)
_SHIFT = np.uint64(32)

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

NEIGHBOR_OFFSETS: Tuple[Coord, ...] = (
    (-1, -1),
    (0, -1),
    (1, -1),
    (-1, 0),
    (0, 0),
    (1, 0),
    (-1, 1),
    (0, 1),
    (1, 1),
)


def pack_coords(ix: int, iy: int) -> PackedCell:
    return ((int(ix) & _LOW_BITS) << 32) | (int(iy) & _LOW_BITS)


def _to_signed(value: int) -> int:
    return value - (1 << 32) if value & _SIGN_BIT else value


def unpack_coords(key: PackedCell) -> Coord:
    key = int(key)
    return _to_signed((key >> 32) & _LOW_BITS), _to_signed(key & _LOW_BITS)


def pack_coords_array(ix, iy) -> np.ndarray:
    """Vectorised :func:`pack_coords`; returns ``uint64`` keys."""
    ux = np.asarray(ix, dtype=np.int64).astype(np.uint64) & _LOW_MASK
    uy = np.asarray(iy, dtype=np.int64).astype(np.uint64) & _LOW_MASK
    return (ux << _SHIFT) | uy


@dataclass
class Node:
    """Grid node. ``velocity`` is only meaningful after velocity integration."""

    mass: float = 0.0
    momentum: np.ndarray = field(default_factory=lambda: np.zeros(2))
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(2))
    phase_mass: float = 0.0
    phase_momentum: np.ndarray = field(default_factory=lambda: np.zeros(2))
    active: bool = False
    boundary: bool = False

    def reset(self) -> None:
        self.mass = 0.0
        self.momentum.fill(0.0)
        self.velocity.fill(0.0)
        self.phase_mass = 0.0
        self.phase_momentum.fill(0.0)
        self.boundary = False


class SparseGrid:
    """Hash-map backed grid over a configurable valid cell range."""

    def __init__(self, config: GridConfig | None = None) -> None:
        config = config if config is not None else GridConfig()
        self.config = config
        self.cell_width = float(config.cell_width)
        self.resolution = int(config.resolution)
        self.lower = (int(config.origin[0]), int(config.origin[1]))
        self.upper = (self.lower[0] + self.resolution - 1, self.lower[1] + self.resolution - 1)
        self.cells: Dict[PackedCell, Node] = {}

    # ------------------------------------------------------------------
    # Range queries
    # ------------------------------------------------------------------
    @property
    def valid_range(self) -> Tuple[Coord, Coord]:
        """Inclusive (lower, upper) cell coordinates."""
        return self.lower, self.upper

    def in_range(self, coord: Coord) -> bool:
        x, y = coord
        return self.lower[0] <= x <= self.upper[0] and self.lower[1] <= y <= self.upper[1]

    def is_neighborhood_safe(self, coord: Coord) -> bool:
        """True when the whole 3x3 stencil centred on ``coord`` is in range."""
        x, y = coord
        return self.in_range((x - 1, y - 1)) and self.in_range((x + 1, y + 1))

    def position_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """World-space box particles are clamped into after G2P."""
        lower = (np.asarray(self.lower, dtype=np.float64) + 1.0) * self.cell_width
        upper = (np.asarray(self.upper, dtype=np.float64) - 1.0) * self.cell_width
        return lower, upper

    def cell_center(self, key: PackedCell) -> np.ndarray:
        ix, iy = unpack_coords(key)
        return np.array([(ix + 0.5) * self.cell_width, (iy + 0.5) * self.cell_width])

    @staticmethod
    def region_neighbors(key: PackedCell) -> List[PackedCell]:
        ix, iy = unpack_coords(key)
        return [pack_coords(ix + dx, iy + dy) for dx, dy in NEIGHBOR_OFFSETS if (dx, dy) != (0, 0)]

    # ------------------------------------------------------------------
    # Node access
    # ------------------------------------------------------------------
    def get(self, coord: Coord) -> Optional[Node]:
        if not self.in_range(coord):
            return None
        return self.cells.get(pack_coords(*coord))

    def get_packed(self, key: PackedCell) -> Optional[Node]:
        return self.cells.get(key)

    def get_or_create(self, coord: Coord) -> Node:
        if not self.in_range(coord):
            raise IndexError(f"Cell {coord} is outside the grid range {self.lower}..{self.upper}")
        return self.get_or_create_packed(pack_coords(*coord))

    def get_or_create_packed(self, key: PackedCell) -> Node:
        """Unchecked variant for keys that already passed the neighbourhood check."""
        node = self.cells.get(key)
        if node is None:
            node = self.cells.setdefault(key, Node())
        node.active = True
        return node

    def neighbors(self, key: PackedCell) -> Iterator[Tuple[PackedCell, Coord, Node]]:
        """Existing nodes of the 3x3 stencil around ``key`` with their stencil shift."""
        ix, iy = unpack_coords(key)
        for dx, dy in NEIGHBOR_OFFSETS:
            neighbor = pack_coords(ix + dx, iy + dy)
            node = self.cells.get(neighbor)
            if node is not None:
                yield neighbor, (dx + 1, dy + 1), node

    def iter_active(self) -> Iterator[Tuple[Coord, Node]]:
        for key, node in self.cells.items():
            if node.active:
                yield unpack_coords(key), node

    def iter_active_packed(self) -> Iterator[Tuple[PackedCell, Node]]:
        for key, node in self.cells.items():
            if node.active:
                yield key, node

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def zero_active(self) -> None:
        """Reset accumulators of every active node; demotion is left to ``compact``."""
        for node in self.cells.values():
            if node.active:
                node.reset()

    def compact(self) -> int:
        """Drop nodes whose mass is exactly zero. Returns the number removed."""
        empty = [key for key, node in self.cells.items() if node.mass == 0.0]
        for key in empty:
            self.cells[key].active = False
            del self.cells[key]
        return len(empty)

    def clear(self) -> None:
        self.cells.clear()

    def total_mass(self) -> float:
        return float(sum(node.mass for node in self.cells.values()))

    @property
    def active_count(self) -> int:
        return sum(1 for node in self.cells.values() if node.active)

    def __len__(self) -> int:
        return len(self.cells)

    def __contains__(self, coord: Coord) -> bool:
        return self.get(coord) is not None
