# uniform_grid.py

import math
import numpy as np
from collections import namedtuple
import logging
import numba

logger = logging.getLogger("boids_sim")

# Encoding of a 3D cell coordinate that lies outside the grid.
NO_CELL = -1
# CellHeadLookup value for a cell that holds no particles this step.
EMPTY_CELL = -1

# Immutable grid geometry, derived once at initialization and passed into every stage.
GridParams = namedtuple(
    'GridParams',
    ['cell_width', 'inverse_cell_width', 'side_count', 'cell_count', 'minimum']
)


def make_grid_params(half_extent: float, max_rule_distance: float) -> GridParams:
    """
    Derives the grid geometry for a cubic domain [-half_extent, half_extent]^3.

    Cells are twice the largest rule radius wide, so every neighbor within
    that radius lies in the focal cell or one of its 26 adjacent cells. The grid
    overhangs the domain by at least one cell on every side.
    """
    if half_extent <= 0:
        raise ValueError(f"half_extent must be positive, got {half_extent}")
    if max_rule_distance <= 0:
        raise ValueError(f"max_rule_distance must be positive, got {max_rule_distance}")

    cell_width = 2.0 * max_rule_distance
    half_side_count = int(half_extent / cell_width) + 1
    side_count = 2 * half_side_count
    corner = -half_side_count * cell_width
    return GridParams(
        cell_width=cell_width,
        inverse_cell_width=1.0 / cell_width,
        side_count=side_count,
        cell_count=side_count ** 3,
        minimum=(corner, corner, corner),
    )


@numba.jit(nopython=True)
def cell_coordinate(value, minimum, inverse_cell_width):
    """Grid coordinate along one axis (may fall outside [0, side_count))."""
    return int(math.floor((value - minimum) * inverse_cell_width))


@numba.jit(nopython=True)
def encode_cell(x, y, z, side_count):
    """Dense 1D cell id, or NO_CELL when any coordinate is out of range."""
    if x < 0 or y < 0 or z < 0 or x >= side_count or y >= side_count or z >= side_count:
        return NO_CELL
    return x + y * side_count + z * side_count * side_count


@numba.jit(nopython=True, parallel=True)
def _compute_indices_jit(positions, grid_min, inverse_cell_width, side_count, particle_index, grid_index):
    for i in numba.prange(positions.shape[0]):
        x = cell_coordinate(positions[i, 0], grid_min[0], inverse_cell_width)
        y = cell_coordinate(positions[i, 1], grid_min[1], inverse_cell_width)
        z = cell_coordinate(positions[i, 2], grid_min[2], inverse_cell_width)
        particle_index[i] = i
        grid_index[i] = encode_cell(x, y, z, side_count)


@numba.jit(nopython=True)
def _sort_by_key_jit(keys, values):
    order = np.argsort(keys)
    sorted_keys = keys[order]
    sorted_values = values[order]
    keys[:] = sorted_keys
    values[:] = sorted_values


@numba.jit(nopython=True)
def _identify_cell_ranges_jit(grid_index, range_start, range_end):
    """Boundary scan: each slot is compared only to its immediate neighbor."""
    n = grid_index.shape[0]
    for i in range(n):
        if i == 0 or grid_index[i] != grid_index[i - 1]:
            range_start[i] = i
        else:
            range_start[i] = range_start[i - 1]
    for i in range(n - 1, -1, -1):
        if i == n - 1 or grid_index[i] != grid_index[i + 1]:
            range_end[i] = i
        else:
            range_end[i] = range_end[i + 1]


@numba.jit(nopython=True, parallel=True)
def _reset_cell_heads_jit(cell_head):
    for c in numba.prange(cell_head.shape[0]):
        cell_head[c] = EMPTY_CELL


@numba.jit(nopython=True, parallel=True)
def _scatter_cell_heads_jit(grid_index, range_start, cell_head):
    # Every slot of a run writes the same start value, so write order is irrelevant.
    for i in numba.prange(grid_index.shape[0]):
        cell = grid_index[i]
        if cell != NO_CELL:
            cell_head[cell] = range_start[i]


def compute_indices(positions: np.ndarray, params: GridParams, particle_index: np.ndarray, grid_index: np.ndarray):
    """
    Spatial grid indexer.

    Data Contract:
    - Inputs: positions (N, 3) float64; params (GridParams).
    - Outputs: None. Fills particle_index[i] = i and grid_index[i] = cell id of
      particle i (NO_CELL when outside the grid).
    """
    grid_min = np.asarray(params.minimum, dtype=np.float64)
    _compute_indices_jit(positions, grid_min, params.inverse_cell_width, params.side_count, particle_index, grid_index)


def sort_by_key(keys: np.ndarray, values: np.ndarray):
    """
    Sorts keys ascending in place, carrying values along. Ties may land in any
    relative order. Returns only once every element has settled.
    """
    if keys.shape != values.shape:
        raise ValueError(f"keys {keys.shape} and values {values.shape} must have the same shape")
    _sort_by_key_jit(keys, values)


def identify_cell_ranges(grid_index: np.ndarray, range_start: np.ndarray, range_end: np.ndarray):
    """Fills the inclusive [start, end] run of every sorted slot's cell."""
    _identify_cell_ranges_jit(grid_index, range_start, range_end)


def reset_cell_heads(cell_head: np.ndarray):
    _reset_cell_heads_jit(cell_head)


def build_cell_head_lookup(grid_index: np.ndarray, range_start: np.ndarray, cell_head: np.ndarray):
    """Maps each occupied cell id to its first sorted slot. Requires a reset table."""
    _scatter_cell_heads_jit(grid_index, range_start, cell_head)


class UniformGrid:
    """
    Owns the per-step grid tables and rebuilds them from scratch each step.

    Data Contract:
    - Inputs:
        - params (GridParams): Immutable grid geometry.
        - num_particles (int): Fixed particle count; tables are sized once.
    - Invariants: After build(), particle_index/grid_index are co-sorted by
      grid_index ascending, range_start/range_end describe each slot's run,
      and cell_head holds the first slot of every occupied cell (EMPTY_CELL
      elsewhere).
    """
    def __init__(self, params: GridParams, num_particles: int):
        self.params = params
        self.num_particles = num_particles

        self.particle_index = np.zeros(num_particles, dtype=np.int32)
        self.grid_index = np.zeros(num_particles, dtype=np.int32)
        self.range_start = np.zeros(num_particles, dtype=np.int32)
        self.range_end = np.zeros(num_particles, dtype=np.int32)
        self.cell_head = np.full(params.cell_count, EMPTY_CELL, dtype=np.int32)
        self.grid_min = np.asarray(params.minimum, dtype=np.float64)

        logger.info(
            f"Uniform grid allocated: cell width {params.cell_width}, "
            f"{params.side_count}^3 = {params.cell_count} cells, minimum corner {params.minimum}."
        )

    def build(self, positions: np.ndarray):
        """Runs index -> sort -> ranges -> head reset -> head scatter."""
        compute_indices(positions, self.params, self.particle_index, self.grid_index)
        sort_by_key(self.grid_index, self.particle_index)
        identify_cell_ranges(self.grid_index, self.range_start, self.range_end)
        reset_cell_heads(self.cell_head)
        build_cell_head_lookup(self.grid_index, self.range_start, self.cell_head)

    def cell_slots(self, cell: int):
        """Sorted slots [start, end) occupied by a cell; empty range for empty cells."""
        head = self.cell_head[cell]
        if head == EMPTY_CELL:
            return range(0)
        return range(int(head), int(self.range_end[head]) + 1)

    def occupied_cell_count(self) -> int:
        return int(np.count_nonzero(self.cell_head != EMPTY_CELL))

    def largest_cell_population(self) -> int:
        if self.num_particles == 0:
            return 0
        return int(np.max(self.range_end - self.range_start) + 1)

    def release(self):
        """Drops every table. The grid must not be built again afterwards."""
        self.particle_index = np.empty(0, dtype=np.int32)
        self.grid_index = np.empty(0, dtype=np.int32)
        self.range_start = np.empty(0, dtype=np.int32)
        self.range_end = np.empty(0, dtype=np.int32)
        self.cell_head = np.empty(0, dtype=np.int32)
        self.num_particles = 0
