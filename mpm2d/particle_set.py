"""
Particle container and the spatial index derived from it.

Per-particle properties are stored as NumPy arrays (struct-of-arrays) so the
integration stages can work on whole columns at once. The spatial index is
rebuilt from scratch once per step and is never patched in place.

Scheduling: particles are grouped by 2x2-cell tiles. A tile's colour is the
parity of its tile coordinate, so two tiles of the same colour are always at
least one whole tile apart and the 3x3 stencils of their particles never
touch the same node. Tiles of one colour may therefore scatter concurrently;
the four colours run one after another.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

import numpy as np

from .kernel import NEIGHBOR_COUNT, compute_stencils
from .particles import Particle, ParticleBatch
from .sparse_grid import INT32_MAX, INT32_MIN, PackedCell, pack_coords, pack_coords_array, unpack_coords

BIN_CAPACITY = 4
BIN_WIDTH = BIN_CAPACITY + 1  # last slot stores the bin colour
COLOUR_COUNT = 4
EMPTY_SLOT = -1
INVALID_CELL = np.uint64(np.iinfo(np.uint64).max)

# Centre node of the 3x3 stencil (gx = gy = 1).
_STENCIL_CENTRE = 4

_FIELD_LAYOUT: Dict[str, Tuple[Tuple[int, ...], type]] = {
    "position": ((2,), np.float64),
    "velocity": ((2,), np.float64),
    "mass": ((), np.float64),
    "volume0": ((), np.float64),
    "radius0": ((), np.float64),
    "affine": ((2, 2), np.float64),
    "velocity_gradient": ((2, 2), np.float64),
    "deformation_gradient": ((2, 2), np.float64),
    "material": ((), np.int8),
    "grid_index": ((), np.uint64),
    "phase": ((), np.float64),
    "failed": ((), np.bool_),
    "condition_number": ((), np.float64),
    "liquid_density": ((), np.float64),
    "deformation_displacement": ((2, 2), np.float64),
    "warm_start": ((2, 2), np.float64),
}

CellRegion = Tuple[PackedCell, range]


def cell_colour(cell_x: int, cell_y: int) -> int:
    """Colour class of the 2x2 tile holding a cell, in ``0..3``."""
    return ((cell_x >> 1) & 1) * 2 + ((cell_y >> 1) & 1)


def tile_key(cell_x: int, cell_y: int) -> PackedCell:
    return pack_coords(cell_x >> 1, cell_y >> 1)


@dataclass
class TransferCache:
    """Kernel evaluation per particle, computed once per rebuild and read by P2G and G2P."""

    coords: np.ndarray  # (n, 9, 2) int64
    keys: np.ndarray  # (n, 9) uint64 packed node keys
    weights: np.ndarray  # (n, 9)
    distances: np.ndarray  # (n, 9, 2)

    @classmethod
    def empty(cls, count: int = 0) -> "TransferCache":
        return cls(
            coords=np.zeros((count, NEIGHBOR_COUNT, 2), dtype=np.int64),
            keys=np.zeros((count, NEIGHBOR_COUNT), dtype=np.uint64),
            weights=np.zeros((count, NEIGHBOR_COUNT), dtype=np.float64),
            distances=np.zeros((count, NEIGHBOR_COUNT, 2), dtype=np.float64),
        )

    def neighbors(self, index: int) -> Iterator[Tuple[Tuple[int, int], float, np.ndarray]]:
        for coord, weight, distance in zip(self.coords[index], self.weights[index], self.distances[index]):
            yield (int(coord[0]), int(coord[1])), float(weight), distance

    def __len__(self) -> int:
        return len(self.weights)


def _field_view(name: str, doc: str = "") -> property:
    def getter(self: "ParticleSet") -> np.ndarray:
        return self._data[name][: self._count]

    return property(getter, doc=doc or f"Live view of the '{name}' column.")


class ParticleSet:
    """Owns the particle arrays, the spatial index and the transfer cache."""

    positions = _field_view("position")
    velocities = _field_view("velocity")
    masses = _field_view("mass")
    volumes = _field_view("volume0")
    affine = _field_view("affine")
    velocity_gradients = _field_view("velocity_gradient")
    deformation_gradients = _field_view("deformation_gradient")
    materials = _field_view("material")
    phases = _field_view("phase")
    failed = _field_view("failed")
    condition_numbers = _field_view("condition_number")
    liquid_densities = _field_view("liquid_density")

    def __init__(self, capacity: int = 256) -> None:
        self._count = 0
        self._capacity = max(1, int(capacity))
        self._data = {name: self._allocate(name, self._capacity) for name in _FIELD_LAYOUT}
        self.invalidate_spatial_index()

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    @staticmethod
    def _allocate(name: str, capacity: int) -> np.ndarray:
        shape, dtype = _FIELD_LAYOUT[name]
        return np.zeros((capacity,) + shape, dtype=dtype)

    def _reserve(self, required: int) -> None:
        if required <= self._capacity:
            return
        capacity = self._capacity
        while capacity < required:
            capacity *= 2
        for name, array in self._data.items():
            grown = self._allocate(name, capacity)
            grown[: self._count] = array[: self._count]
            self._data[name] = grown
        self._capacity = capacity

    def _write(self, index: int, particle: Particle) -> None:
        for name in _FIELD_LAYOUT:
            self._data[name][index] = getattr(particle, name)

    def field(self, name: str) -> np.ndarray:
        if name not in _FIELD_LAYOUT:
            raise KeyError(f"Unknown particle field {name!r}")
        return self._data[name][: self._count]

    def __len__(self) -> int:
        return self._count

    def is_empty(self) -> bool:
        return self._count == 0

    def get(self, index: int) -> Optional[Particle]:
        if not 0 <= index < self._count:
            return None
        values = {name: self._data[name][index] for name in _FIELD_LAYOUT}
        values["mass"] = float(values["mass"])
        values["volume0"] = float(values["volume0"])
        values["radius0"] = float(values["radius0"])
        values["grid_index"] = int(values["grid_index"])
        values["phase"] = float(values["phase"])
        values["failed"] = bool(values["failed"])
        values["condition_number"] = float(values["condition_number"])
        values["liquid_density"] = float(values["liquid_density"])
        return Particle(**values)

    def __getitem__(self, index: int) -> Particle:
        if index < 0:
            index += self._count
        particle = self.get(index)
        if particle is None:
            raise IndexError(f"Particle index {index} out of range for {self._count} particles")
        return particle

    def __setitem__(self, index: int, particle: Particle) -> None:
        if index < 0:
            index += self._count
        if not 0 <= index < self._count:
            raise IndexError(f"Particle index {index} out of range for {self._count} particles")
        self._write(index, particle)
        self.invalidate_spatial_index()

    def __iter__(self) -> Iterator[Particle]:
        for index in range(self._count):
            yield self.get(index)

    def insert(self, particle: Particle) -> int:
        index = self._count
        self._reserve(index + 1)
        self._write(index, particle)
        self._count += 1
        self.invalidate_spatial_index()
        return index

    push = insert

    def insert_batch(self, particles: Iterable[Particle]) -> range:
        batch = list(particles)
        start = self._count
        self._reserve(start + len(batch))
        for offset, particle in enumerate(batch):
            self._write(start + offset, particle)
        self._count += len(batch)
        self.invalidate_spatial_index()
        return range(start, self._count)

    def clear(self) -> None:
        self._count = 0
        self.invalidate_spatial_index()

    def batch(self, indices: Sequence[int]) -> ParticleBatch:
        indices = np.asarray(indices, dtype=np.int64)
        return ParticleBatch(
            indices=indices,
            mass=self.masses[indices],
            volume0=self.volumes[indices],
            velocity_gradient=self.velocity_gradients[indices],
            deformation_gradient=self.deformation_gradients[indices],
        )

    def live_indices(self) -> np.ndarray:
        return np.flatnonzero(~self.failed)

    def remove_failed(self) -> List[Optional[int]]:
        """Drop failed particles, keeping survivors in their relative order.

        Returns ``old index -> new index`` (``None`` for removed particles), or
        an empty list when nothing was removed.
        """
        keep = ~self.failed
        if keep.all():
            return []

        new_index = np.cumsum(keep) - 1
        mapping = [int(new) if alive else None for alive, new in zip(keep.tolist(), new_index.tolist())]

        survivors = int(keep.sum())
        for array in self._data.values():
            array[:survivors] = array[: self._count][keep]
        self._count = survivors
        self.invalidate_spatial_index()
        return mapping

    # ------------------------------------------------------------------
    # Spatial index
    # ------------------------------------------------------------------
    def invalidate_spatial_index(self) -> None:
        self._indexed = False
        self._order = np.empty(0, dtype=np.int64)
        self._regions: List[CellRegion] = []
        self._active_regions: Set[PackedCell] = set()
        self._cell_assignments = np.empty(0, dtype=np.uint64)
        self._bins = np.empty((0, BIN_WIDTH), dtype=np.int64)
        self._bin_tiles = np.empty(0, dtype=np.uint64)
        self._schedule: List[List[np.ndarray]] = [[] for _ in range(COLOUR_COUNT)]
        self._transfer_cache = TransferCache.empty()

    def mark_positions_changed(self) -> None:
        """Flag the index as stale while keeping it readable for diagnostics."""
        self._indexed = False

    @property
    def is_indexed(self) -> bool:
        return self._indexed

    def require_spatial_index(self) -> None:
        if not self._indexed:
            raise RuntimeError("Particle spatial index is stale; call rebuild() before transferring")

    def rebuild(
        self,
        cell_width: float,
        valid_range: Tuple[Tuple[int, int], Tuple[int, int]] | None = None,
    ) -> int:
        """Sort particles by cell, fill the transfer cache and build the bins.

        Particles whose 3x3 stencil would leave ``valid_range`` (inclusive cell
        bounds; defaults to the representable 32-bit range) are marked failed.
        Returns the number of particles newly marked failed.
        """
        count = self._count
        self.invalidate_spatial_index()
        if count == 0:
            self._indexed = True
            return 0

        if valid_range is None:
            valid_range = ((INT32_MIN, INT32_MIN), (INT32_MAX, INT32_MAX))
        lower = np.asarray(valid_range[0], dtype=np.float64)
        upper = np.asarray(valid_range[1], dtype=np.float64)

        failed = self.failed
        grid_index = self._data["grid_index"][:count]

        with np.errstate(invalid="ignore", over="ignore"):
            scaled = self.positions / cell_width
            finite = np.all(np.isfinite(scaled), axis=1)
            cells = np.where(finite[:, None], np.floor(scaled), 0.0)
        in_range = np.all((cells - 1.0 >= lower) & (cells + 1.0 <= upper), axis=1)
        unsafe = ~(finite & in_range)
        newly_failed = int(np.count_nonzero(unsafe & ~failed))
        failed |= unsafe

        live = np.flatnonzero(~failed)
        grid_index[:] = INVALID_CELL
        cache = TransferCache.empty(count)
        if live.size:
            coords, weights, distances = compute_stencils(self.positions[live], cell_width)
            cache.coords[live] = coords
            cache.keys[live] = pack_coords_array(coords[..., 0], coords[..., 1])
            cache.weights[live] = weights
            cache.distances[live] = distances
            grid_index[live] = cache.keys[live, _STENCIL_CENTRE]
        self._transfer_cache = cache
        self._cell_assignments = grid_index.copy()

        order = live[np.argsort(grid_index[live], kind="stable")]
        self._order = order
        self._build_regions_and_bins(order, grid_index[order])
        self._indexed = True
        return newly_failed

    def _build_regions_and_bins(self, order: np.ndarray, sorted_keys: np.ndarray) -> None:
        if order.size == 0:
            return

        starts = np.concatenate(([0], np.flatnonzero(sorted_keys[1:] != sorted_keys[:-1]) + 1))
        stops = np.concatenate((starts[1:], [order.size]))

        tile_members: Dict[PackedCell, List[np.ndarray]] = {}
        tile_colours: Dict[PackedCell, int] = {}
        for start, stop in zip(starts.tolist(), stops.tolist()):
            key = int(sorted_keys[start])
            self._regions.append((key, range(start, stop)))
            self._active_regions.add(key)

            cell_x, cell_y = unpack_coords(key)
            tile = tile_key(cell_x, cell_y)
            tile_members.setdefault(tile, []).append(order[start:stop])
            tile_colours[tile] = cell_colour(cell_x, cell_y)

        rows: List[np.ndarray] = []
        tiles: List[PackedCell] = []
        for tile, chunks in tile_members.items():
            members = np.concatenate(chunks)
            colour = tile_colours[tile]
            for start in range(0, members.size, BIN_CAPACITY):
                chunk = members[start : start + BIN_CAPACITY]
                row = np.full(BIN_WIDTH, EMPTY_SLOT, dtype=np.int64)
                row[: chunk.size] = chunk
                row[BIN_CAPACITY] = colour
                rows.append(row)
                tiles.append(tile)

        self._bins = np.vstack(rows)
        self._bin_tiles = np.asarray(tiles, dtype=np.uint64)
        self._schedule_from_bins()

    def _schedule_from_bins(self) -> None:
        # rows of one tile are contiguous in the bin table
        boundaries = np.flatnonzero(self._bin_tiles[1:] != self._bin_tiles[:-1]) + 1
        for rows in np.split(np.arange(len(self._bins)), boundaries):
            slots = self._bins[rows, :BIN_CAPACITY].ravel()
            colour = int(self._bins[rows[0], BIN_CAPACITY])
            self._schedule[colour].append(slots[slots != EMPTY_SLOT])

    @property
    def particle_order(self) -> np.ndarray:
        return self._order

    @property
    def cell_regions(self) -> List[CellRegion]:
        return self._regions

    @property
    def active_region_ids(self) -> Set[PackedCell]:
        return self._active_regions

    @property
    def cell_assignments(self) -> np.ndarray:
        return self._cell_assignments

    @property
    def bins(self) -> np.ndarray:
        """``(n_bins, 5)``: up to four particle indices (-1 padded) and the colour."""
        return self._bins

    @property
    def bin_colours(self) -> np.ndarray:
        return self._bins[:, BIN_CAPACITY]

    @property
    def bin_tiles(self) -> np.ndarray:
        return self._bin_tiles

    @property
    def transfer_cache(self) -> TransferCache:
        return self._transfer_cache

    def colour_batches(self, colour: int) -> List[np.ndarray]:
        """Particle indices of every tile in a colour class, one array per tile.

        Read off the bin table: each array is the concatenated bins of one tile.
        """
        return self._schedule[colour]
