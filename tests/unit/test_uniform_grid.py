"""Tests for grid indexing, sorting, cell ranges and the cell head lookup."""

import numpy as np
import pytest

from uniform_grid import (
    EMPTY_CELL,
    NO_CELL,
    UniformGrid,
    build_cell_head_lookup,
    compute_indices,
    identify_cell_ranges,
    make_grid_params,
    reset_cell_heads,
    sort_by_key,
)

DEFAULT_HALF_EXTENT = 100.0
DEFAULT_MAX_DISTANCE = 5.0


def _default_params():
    return make_grid_params(DEFAULT_HALF_EXTENT, DEFAULT_MAX_DISTANCE)


def test_grid_params_from_defaults():
    params = _default_params()

    assert params.cell_width == 10.0
    assert params.inverse_cell_width == pytest.approx(0.1)
    assert params.side_count == 22
    assert params.cell_count == 22 ** 3
    assert params.minimum == (-110.0, -110.0, -110.0)


def test_grid_params_reject_non_positive_inputs():
    with pytest.raises(ValueError):
        make_grid_params(0.0, 5.0)
    with pytest.raises(ValueError):
        make_grid_params(100.0, -1.0)


def test_compute_indices_encodes_cells_and_identity():
    params = _default_params()
    positions = np.array(
        [
            [0.0, 0.0, 0.0],
            [-100.0, -100.0, -100.0],
            [1.0, 0.0, 0.0],
            [-200.0, 0.0, 0.0],
            [0.0, 500.0, 0.0],
        ]
    )
    particle_index = np.empty(5, dtype=np.int32)
    grid_index = np.empty(5, dtype=np.int32)

    compute_indices(positions, params, particle_index, grid_index)

    side = params.side_count
    np.testing.assert_array_equal(particle_index, np.arange(5))
    assert grid_index[0] == 11 + 11 * side + 11 * side * side
    assert grid_index[1] == 1 + 1 * side + 1 * side * side
    assert grid_index[2] == grid_index[0]
    assert grid_index[3] == NO_CELL
    assert grid_index[4] == NO_CELL


def test_sort_by_key_preserves_pairs():
    keys = np.array([0, 1, 0, 3, 0, 2, 2, 0, 5, 6], dtype=np.int32)
    values = np.arange(10, dtype=np.int32)
    original_pairs = sorted(zip(keys.tolist(), values.tolist()))

    sort_by_key(keys, values)

    assert np.all(np.diff(keys) >= 0)
    assert sorted(zip(keys.tolist(), values.tolist())) == original_pairs
    assert set(values[keys == 0].tolist()) == {0, 2, 4, 7}
    assert set(values[keys == 2].tolist()) == {5, 6}


def test_sort_by_key_rejects_mismatched_shapes():
    with pytest.raises(ValueError):
        sort_by_key(np.zeros(3, dtype=np.int32), np.zeros(4, dtype=np.int32))


def test_identify_cell_ranges():
    grid_index = np.array([0, 0, 0, 2, 2, 5], dtype=np.int32)
    range_start = np.empty(6, dtype=np.int32)
    range_end = np.empty(6, dtype=np.int32)

    identify_cell_ranges(grid_index, range_start, range_end)

    np.testing.assert_array_equal(range_start, [0, 0, 0, 3, 3, 5])
    np.testing.assert_array_equal(range_end, [2, 2, 2, 4, 4, 5])


def test_identify_cell_ranges_single_run():
    grid_index = np.array([7, 7, 7, 7], dtype=np.int32)
    range_start = np.empty(4, dtype=np.int32)
    range_end = np.empty(4, dtype=np.int32)

    identify_cell_ranges(grid_index, range_start, range_end)

    np.testing.assert_array_equal(range_start, [0, 0, 0, 0])
    np.testing.assert_array_equal(range_end, [3, 3, 3, 3])


def test_cell_head_lookup_marks_only_occupied_cells():
    grid_index = np.array([0, 0, 0, 2, 2, 5], dtype=np.int32)
    range_start = np.array([0, 0, 0, 3, 3, 5], dtype=np.int32)
    cell_head = np.zeros(8, dtype=np.int32)

    reset_cell_heads(cell_head)
    build_cell_head_lookup(grid_index, range_start, cell_head)

    np.testing.assert_array_equal(
        cell_head,
        [0, EMPTY_CELL, 3, EMPTY_CELL, EMPTY_CELL, 5, EMPTY_CELL, EMPTY_CELL],
    )


def test_cell_head_lookup_skips_out_of_grid_particles():
    grid_index = np.array([NO_CELL, NO_CELL, 3, 3], dtype=np.int32)
    range_start = np.array([0, 0, 2, 2], dtype=np.int32)
    cell_head = np.zeros(4, dtype=np.int32)

    reset_cell_heads(cell_head)
    build_cell_head_lookup(grid_index, range_start, cell_head)

    np.testing.assert_array_equal(cell_head, [EMPTY_CELL, EMPTY_CELL, EMPTY_CELL, 2])


def test_uniform_grid_build_invariants():
    params = _default_params()
    rng = np.random.default_rng(3)
    positions = rng.uniform(-100.0, 100.0, (400, 3))
    grid = UniformGrid(params, 400)

    grid.build(positions)

    assert np.all(np.diff(grid.grid_index) >= 0)
    assert sorted(grid.particle_index.tolist()) == list(range(400))

    # Every slot's key matches the cell its particle actually lives in.
    expected_particle_index = np.empty(400, dtype=np.int32)
    expected_grid_index = np.empty(400, dtype=np.int32)
    compute_indices(positions, params, expected_particle_index, expected_grid_index)
    np.testing.assert_array_equal(grid.grid_index, expected_grid_index[grid.particle_index])

    occupied = np.unique(grid.grid_index)
    for cell in occupied:
        first = int(np.argmax(grid.grid_index == cell))
        assert grid.cell_head[cell] == first
        slots = grid.cell_slots(cell)
        assert np.all(grid.grid_index[slots.start:slots.stop] == cell)

    empty = np.setdiff1d(np.arange(params.cell_count), occupied)
    assert np.all(grid.cell_head[empty] == EMPTY_CELL)
    assert grid.occupied_cell_count() == occupied.size
    assert len(grid.cell_slots(int(empty[0]))) == 0


def test_uniform_grid_rebuild_clears_stale_heads():
    params = _default_params()
    grid = UniformGrid(params, 2)

    grid.build(np.array([[0.0, 0.0, 0.0], [50.0, 50.0, 50.0]]))
    first_cells = set(grid.grid_index.tolist())
    grid.build(np.array([[-50.0, -50.0, -50.0], [-50.0, -50.0, -49.0]]))

    assert grid.occupied_cell_count() == 1
    assert grid.largest_cell_population() == 2
    for cell in first_cells:
        assert grid.cell_head[cell] == EMPTY_CELL


def test_uniform_grid_release_drops_tables():
    grid = UniformGrid(_default_params(), 10)

    grid.release()

    assert grid.num_particles == 0
    assert grid.cell_head.size == 0
    assert grid.particle_index.size == 0
