"""Lifecycle, buffer-role and error-handling tests for BoidSystem."""

import numpy as np
import pytest

import boid_system
import flocking
from boid_system import (
    AllocationFailure,
    BoidSystem,
    InvalidStateError,
    LaunchFailure,
    SimulationState,
    Strategy,
)


def _system(**overrides):
    config = {'strategy': 'scattered_grid'}
    config.update(overrides)
    return BoidSystem(config)


def test_initialize_seeds_positions_inside_domain():
    system = _system()
    assert system.state is SimulationState.UNINITIALIZED

    system.initialize(200, np.random.default_rng(1))

    assert system.state is SimulationState.INITIALIZED
    positions = system.get_positions()
    assert positions.shape == (200, 3)
    assert np.all(np.abs(positions) <= system.half_extent)
    np.testing.assert_array_equal(system.get_velocities(), 0.0)


def test_same_seed_gives_same_initial_state():
    first = _system().initialize(50, np.random.default_rng(9))
    second = _system().initialize(50, np.random.default_rng(9))

    np.testing.assert_array_equal(first.get_positions(), second.get_positions())


def test_step_moves_through_states_and_swaps_buffers():
    system = _system().initialize(20, np.random.default_rng(2))
    assert system.current_buffer_index == 0

    system.step(0.2)
    assert system.state is SimulationState.STEPPING
    assert system.current_buffer_index == 1

    system.step(0.2)
    assert system.current_buffer_index == 0
    assert system.step_count == 2

    system.teardown()
    assert system.state is SimulationState.TORN_DOWN


def test_step_before_initialize_fails_fast():
    with pytest.raises(InvalidStateError):
        _system().step(0.2)


def test_step_after_teardown_fails_fast():
    system = _system().initialize(5, np.random.default_rng(0))
    system.teardown()

    with pytest.raises(InvalidStateError):
        system.step(0.2)
    with pytest.raises(InvalidStateError):
        system.get_positions()
    with pytest.raises(InvalidStateError):
        system.initialize(5, np.random.default_rng(0))


def test_initialize_twice_is_rejected():
    system = _system().initialize(5, np.random.default_rng(0))

    with pytest.raises(InvalidStateError):
        system.initialize(5, np.random.default_rng(0))


def test_snapshots_are_read_only_copies():
    system = _system().initialize(5, np.random.default_rng(0))
    positions = system.get_positions()

    with pytest.raises(ValueError):
        positions[0, 0] = 1.0
    assert positions is not system.positions


def test_strategy_parsing():
    assert Strategy.parse("brute_force") is Strategy.BRUTE_FORCE
    assert Strategy.parse(Strategy.COHERENT_GRID) is Strategy.COHERENT_GRID
    with pytest.raises(ValueError):
        Strategy.parse("octree")
    with pytest.raises(ValueError):
        BoidSystem({'strategy': 'octree'})


def test_initialize_rejects_bad_shapes_and_counts():
    with pytest.raises(ValueError):
        _system().initialize(-1, np.random.default_rng(0))
    with pytest.raises(ValueError):
        _system().initialize(3, np.random.default_rng(0), positions=np.zeros((2, 3)))


def test_allocation_failure_is_recoverable(monkeypatch):
    real_grid = boid_system.UniformGrid

    def exhausted(params, num_particles):
        if num_particles > 10:
            raise MemoryError("out of memory")
        return real_grid(params, num_particles)

    monkeypatch.setattr(boid_system, "UniformGrid", exhausted)
    system = _system()

    with pytest.raises(AllocationFailure):
        system.initialize(1000, np.random.default_rng(0))
    assert system.state is SimulationState.UNINITIALIZED

    system.initialize(10, np.random.default_rng(0))
    assert system.state is SimulationState.INITIALIZED


def test_launch_failure_tears_down(monkeypatch):
    def broken(*args):
        raise IndexError("kernel fault")

    monkeypatch.setattr(flocking, "update_velocity_scattered", broken)
    system = _system().initialize(10, np.random.default_rng(0))

    with pytest.raises(LaunchFailure) as excinfo:
        system.step(0.2)

    assert isinstance(excinfo.value.__cause__, IndexError)
    assert system.state is SimulationState.TORN_DOWN
    with pytest.raises(InvalidStateError):
        system.step(0.2)


def test_stats_report_grid_occupancy():
    system = _system().initialize(3, np.random.default_rng(0), positions=[
        [0.0, 0.0, 0.0],
        [1.0, 0.0, 0.0],
        [50.0, 50.0, 50.0],
    ])
    system.step(0.0)

    stats = system.get_stats()

    assert stats['num_boids'] == 3
    assert stats['step_count'] == 1
    assert stats['strategy'] == 'scattered_grid'
    assert stats['occupied_cells'] == 2
    assert stats['largest_cell_population'] == 2
    assert stats['mean_speed'] > 0.0


def test_stats_omit_grid_figures_until_a_grid_is_built():
    system = _system(strategy='brute_force').initialize(50, np.random.default_rng(0))
    assert system.get_stats()['strategy'] is None

    system.step(0.2)
    stats = system.get_stats()

    assert stats['strategy'] == 'brute_force'
    assert stats['occupied_cells'] is None
    assert stats['largest_cell_population'] is None


def test_stats_report_strategy_of_last_step():
    system = _system(strategy='brute_force').initialize(50, np.random.default_rng(0))

    system.step(0.2, 'coherent_grid')
    stats = system.get_stats()

    assert stats['strategy'] == 'coherent_grid'
    assert stats['occupied_cells'] > 0
    assert stats['largest_cell_population'] >= 1

    system.step(0.2)
    assert system.get_stats()['strategy'] == 'brute_force'


def test_empty_flock_steps_cleanly():
    system = _system().initialize(0, np.random.default_rng(0))

    for strategy in Strategy:
        system.step(0.2, strategy)

    assert system.get_positions().shape == (0, 3)
    assert system.get_mean_speed() == 0.0
