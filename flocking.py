# flocking.py

import math
import numpy as np
from collections import namedtuple
import logging
import numba
import constants
from uniform_grid import EMPTY_CELL, NO_CELL, cell_coordinate, encode_cell

logger = logging.getLogger("boids_sim")

# Immutable rule parameters. Numba receives the namedtuple as-is.
FlockingRules = namedtuple('FlockingRules', [
    'cohesion_distance', 'separation_distance', 'alignment_distance',
    'cohesion_scale', 'separation_scale', 'alignment_scale',
    'max_speed', 'separation_guard',
])

# Per-particle accumulator layout used by every strategy.
_COHESION_SUM = 0       # 0..2: summed neighbor positions
_COHESION_COUNT = 3
_SEPARATION_SUM = 4     # 4..6: summed negative offsets
_ALIGNMENT_SUM = 7      # 7..9: summed neighbor velocities
_ALIGNMENT_COUNT = 10
_ACCUMULATOR_SIZE = 11


def rules_from_config(config: dict) -> FlockingRules:
    """
    Builds the rule parameters from the 'simulation' config section, falling
    back to the defaults in constants.py for missing keys.
    """
    rules = FlockingRules(
        cohesion_distance=float(config.get('cohesion_distance', constants.COHESION_DISTANCE)),
        separation_distance=float(config.get('separation_distance', constants.SEPARATION_DISTANCE)),
        alignment_distance=float(config.get('alignment_distance', constants.ALIGNMENT_DISTANCE)),
        cohesion_scale=float(config.get('cohesion_scale', constants.COHESION_SCALE)),
        separation_scale=float(config.get('separation_scale', constants.SEPARATION_SCALE)),
        alignment_scale=float(config.get('alignment_scale', constants.ALIGNMENT_SCALE)),
        max_speed=float(config.get('max_speed', constants.MAX_SPEED)),
        separation_guard=float(config.get('separation_guard', constants.SEPARATION_GUARD_DISTANCE)),
    )
    for name in ('cohesion_distance', 'separation_distance', 'alignment_distance', 'max_speed'):
        if getattr(rules, name) <= 0:
            raise ValueError(f"{name} must be positive, got {getattr(rules, name)}")
    return rules


def max_rule_distance(rules: FlockingRules) -> float:
    return max(rules.cohesion_distance, rules.separation_distance, rules.alignment_distance)


# --- JIT-Compiled Rule Kernels ---
# Each strategy only differs in which candidates it feeds to _accumulate_neighbor.
# Every prange iteration owns one focal particle and writes one slot of the
# next-velocity buffer; all reads come from the current snapshot.

@numba.jit(nopython=True)
def _accumulate_neighbor(acc, px, py, pz, qx, qy, qz, wx, wy, wz, rules):
    """Folds one candidate neighbor (position q, velocity w) into the accumulator."""
    dx = qx - px
    dy = qy - py
    dz = qz - pz
    distance = math.sqrt(dx * dx + dy * dy + dz * dz)

    if distance < rules.cohesion_distance:
        acc[_COHESION_SUM] += qx
        acc[_COHESION_SUM + 1] += qy
        acc[_COHESION_SUM + 2] += qz
        acc[_COHESION_COUNT] += 1.0

    if distance < rules.separation_distance and distance < rules.separation_guard:
        acc[_SEPARATION_SUM] -= dx
        acc[_SEPARATION_SUM + 1] -= dy
        acc[_SEPARATION_SUM + 2] -= dz

    if distance < rules.alignment_distance:
        acc[_ALIGNMENT_SUM] += wx
        acc[_ALIGNMENT_SUM + 1] += wy
        acc[_ALIGNMENT_SUM + 2] += wz
        acc[_ALIGNMENT_COUNT] += 1.0


@numba.jit(nopython=True)
def _resolve_velocity(acc, positions, velocities, source, out, target, rules):
    """Combines the three rule contributions, clamps speed, writes out[target]."""
    px = positions[source, 0]
    py = positions[source, 1]
    pz = positions[source, 2]
    vx = velocities[source, 0]
    vy = velocities[source, 1]
    vz = velocities[source, 2]

    # Cohesion: steer towards the perceived center
    if acc[_COHESION_COUNT] > 0:
        inv = 1.0 / acc[_COHESION_COUNT]
        vx += (acc[_COHESION_SUM] * inv - px) * rules.cohesion_scale
        vy += (acc[_COHESION_SUM + 1] * inv - py) * rules.cohesion_scale
        vz += (acc[_COHESION_SUM + 2] * inv - pz) * rules.cohesion_scale

    # Separation
    vx += acc[_SEPARATION_SUM] * rules.separation_scale
    vy += acc[_SEPARATION_SUM + 1] * rules.separation_scale
    vz += acc[_SEPARATION_SUM + 2] * rules.separation_scale

    # Alignment: match the perceived velocity
    if acc[_ALIGNMENT_COUNT] > 0:
        inv = 1.0 / acc[_ALIGNMENT_COUNT]
        vx += acc[_ALIGNMENT_SUM] * inv * rules.alignment_scale
        vy += acc[_ALIGNMENT_SUM + 1] * inv * rules.alignment_scale
        vz += acc[_ALIGNMENT_SUM + 2] * inv * rules.alignment_scale

    speed = math.sqrt(vx * vx + vy * vy + vz * vz)
    if speed > rules.max_speed:
        clamp = rules.max_speed / speed
        vx *= clamp
        vy *= clamp
        vz *= clamp

    out[target, 0] = vx
    out[target, 1] = vy
    out[target, 2] = vz


@numba.jit(nopython=True, parallel=True)
def _update_velocity_brute_force_jit(positions, velocities, next_velocities, rules):
    n = positions.shape[0]
    for i in numba.prange(n):
        acc = np.zeros(_ACCUMULATOR_SIZE)
        px = positions[i, 0]
        py = positions[i, 1]
        pz = positions[i, 2]
        for j in range(n):
            if j == i:
                continue
            _accumulate_neighbor(
                acc, px, py, pz,
                positions[j, 0], positions[j, 1], positions[j, 2],
                velocities[j, 0], velocities[j, 1], velocities[j, 2],
                rules
            )
        _resolve_velocity(acc, positions, velocities, i, next_velocities, i, rules)


@numba.jit(nopython=True, parallel=True)
def _update_velocity_scattered_jit(positions, velocities, next_velocities, particle_index, cell_head, range_end,
                                   grid_min, inverse_cell_width, side_count, rules):
    n = positions.shape[0]
    for i in numba.prange(n):
        acc = np.zeros(_ACCUMULATOR_SIZE)
        px = positions[i, 0]
        py = positions[i, 1]
        pz = positions[i, 2]
        cx = cell_coordinate(px, grid_min[0], inverse_cell_width)
        cy = cell_coordinate(py, grid_min[1], inverse_cell_width)
        cz = cell_coordinate(pz, grid_min[2], inverse_cell_width)

        for dz in range(-1, 2):
            for dy in range(-1, 2):
                for dx in range(-1, 2):
                    cell = encode_cell(cx + dx, cy + dy, cz + dz, side_count)
                    if cell == NO_CELL:
                        continue
                    head = cell_head[cell]
                    if head == EMPTY_CELL:
                        continue
                    for slot in range(head, range_end[head] + 1):
                        j = particle_index[slot]
                        if j == i:
                            continue
                        _accumulate_neighbor(
                            acc, px, py, pz,
                            positions[j, 0], positions[j, 1], positions[j, 2],
                            velocities[j, 0], velocities[j, 1], velocities[j, 2],
                            rules
                        )
        _resolve_velocity(acc, positions, velocities, i, next_velocities, i, rules)


@numba.jit(nopython=True, parallel=True)
def _update_velocity_coherent_jit(sorted_positions, sorted_velocities, next_sorted_velocities, cell_head, range_end,
                                  grid_min, inverse_cell_width, side_count, rules):
    n = sorted_positions.shape[0]
    for k in numba.prange(n):
        acc = np.zeros(_ACCUMULATOR_SIZE)
        px = sorted_positions[k, 0]
        py = sorted_positions[k, 1]
        pz = sorted_positions[k, 2]
        cx = cell_coordinate(px, grid_min[0], inverse_cell_width)
        cy = cell_coordinate(py, grid_min[1], inverse_cell_width)
        cz = cell_coordinate(pz, grid_min[2], inverse_cell_width)

        for dz in range(-1, 2):
            for dy in range(-1, 2):
                for dx in range(-1, 2):
                    cell = encode_cell(cx + dx, cy + dy, cz + dz, side_count)
                    if cell == NO_CELL:
                        continue
                    head = cell_head[cell]
                    if head == EMPTY_CELL:
                        continue
                    for slot in range(head, range_end[head] + 1):
                        if slot == k:
                            continue
                        _accumulate_neighbor(
                            acc, px, py, pz,
                            sorted_positions[slot, 0], sorted_positions[slot, 1], sorted_positions[slot, 2],
                            sorted_velocities[slot, 0], sorted_velocities[slot, 1], sorted_velocities[slot, 2],
                            rules
                        )
        _resolve_velocity(acc, sorted_positions, sorted_velocities, k, next_sorted_velocities, k, rules)


@numba.jit(nopython=True, parallel=True)
def _gather_sorted_jit(source, particle_index, out):
    for k in numba.prange(particle_index.shape[0]):
        p = particle_index[k]
        for d in range(source.shape[1]):
            out[k, d] = source[p, d]


@numba.jit(nopython=True, parallel=True)
def _scatter_canonical_jit(sorted_source, particle_index, out):
    for k in numba.prange(particle_index.shape[0]):
        p = particle_index[k]
        for d in range(sorted_source.shape[1]):
            out[p, d] = sorted_source[k, d]


@numba.jit(nopython=True, parallel=True)
def _update_positions_jit(dt, half_extent, positions, velocities):
    for i in numba.prange(positions.shape[0]):
        for d in range(3):
            p = positions[i, d] + velocities[i, d] * dt
            # Single wrap; per-step displacement is bounded by max_speed * dt.
            if p < -half_extent:
                p = half_extent
            elif p > half_extent:
                p = -half_extent
            positions[i, d] = p


# --- Strategy Entry Points ---

def update_velocity_brute_force(positions: np.ndarray, velocities: np.ndarray, next_velocities: np.ndarray,
                                rules: FlockingRules):
    """
    Evaluates all three rules against every other particle. O(N^2), no grid.
    Reads positions/velocities, writes next_velocities only.
    """
    _update_velocity_brute_force_jit(positions, velocities, next_velocities, rules)


def update_velocity_scattered(grid, positions: np.ndarray, velocities: np.ndarray, next_velocities: np.ndarray,
                              rules: FlockingRules):
    """
    Evaluates the rules against the 27 cells around each particle's cell.

    Data Contract:
    - Inputs:
        - grid (UniformGrid): Built for the current positions.
        - positions, velocities: Canonical (id-ordered) current state.
    - Outputs: None. next_velocities[i] receives particle i's new velocity.
    - Invariants: Candidates are fetched through grid.particle_index, so the
      state arrays are never reordered.
    """
    _update_velocity_scattered_jit(
        positions, velocities, next_velocities,
        grid.particle_index, grid.cell_head, grid.range_end,
        grid.grid_min, grid.params.inverse_cell_width, grid.params.side_count, rules
    )


def update_velocity_coherent(grid, sorted_positions: np.ndarray, sorted_velocities: np.ndarray,
                             next_sorted_velocities: np.ndarray, rules: FlockingRules):
    """
    Same neighborhood as update_velocity_scattered, but the state arrays are
    already in sorted slot order (see gather_sorted), so candidates are read at
    their slot directly. next_sorted_velocities is written in slot order too.
    """
    _update_velocity_coherent_jit(
        sorted_positions, sorted_velocities, next_sorted_velocities,
        grid.cell_head, grid.range_end,
        grid.grid_min, grid.params.inverse_cell_width, grid.params.side_count, rules
    )


def gather_sorted(source: np.ndarray, particle_index: np.ndarray) -> np.ndarray:
    """Returns a freshly allocated copy of source reordered into sorted slot order."""
    out = np.empty_like(source)
    _gather_sorted_jit(source, particle_index, out)
    return out


def scatter_canonical(sorted_source: np.ndarray, particle_index: np.ndarray, out: np.ndarray):
    """Writes slot-ordered data back into canonical id order."""
    _scatter_canonical_jit(sorted_source, particle_index, out)


def update_positions(dt: float, half_extent: float, positions: np.ndarray, velocities: np.ndarray):
    """Advances positions in place by velocities * dt and wraps at the domain faces."""
    _update_positions_jit(float(dt), float(half_extent), positions, velocities)
