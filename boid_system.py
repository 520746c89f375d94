# boid_system.py

import enum
import numpy as np
import logging
import constants
import flocking
from flocking import rules_from_config, max_rule_distance
from uniform_grid import UniformGrid, make_grid_params

logger = logging.getLogger("boids_sim")


class BoidSimulationError(Exception):
    """Base class for every failure raised by the simulator."""


class AllocationFailure(BoidSimulationError):
    """Buffers could not be allocated. The system stays uninitialized, so the
    caller may retry with fewer boids."""


class LaunchFailure(BoidSimulationError):
    """A stage failed to execute. The run is over."""


class InvalidStateError(BoidSimulationError, RuntimeError):
    """A lifecycle operation was called in a state that does not allow it."""


class SimulationState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    STEPPING = "stepping"
    TORN_DOWN = "torn_down"


class Strategy(enum.Enum):
    BRUTE_FORCE = "brute_force"
    SCATTERED_GRID = "scattered_grid"
    COHERENT_GRID = "coherent_grid"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValueError(f"Unknown strategy {value!r}. Expected one of: {valid}") from None


class BoidSystem:
    """
    Owns every particle buffer and drives one full simulation pipeline per step.

    Data Contract:
    - Inputs:
        - config (dict): The 'simulation' section of the config file. Missing
          keys fall back to constants.py.
    - Outputs: None. Read state through get_positions()/get_velocities().
    - Side Effects: Manages the lifecycle of all particle and grid buffers.
    - Invariants: The boid count is fixed after initialize(). Exactly one of the
      two velocity buffers is current; the other receives the next step's
      velocities and the roles swap at the end of every step.
    """
    def __init__(self, config: dict):
        self.config = config
        self.rules = rules_from_config(config)
        self.half_extent = float(config.get('half_extent', constants.HALF_EXTENT))
        self.strategy = Strategy.parse(config.get('strategy', constants.DEFAULT_STRATEGY))
        self.grid_params = make_grid_params(self.half_extent, max_rule_distance(self.rules))

        self.state = SimulationState.UNINITIALIZED
        self.num_boids = 0
        self.step_count = 0
        self.last_strategy = None
        self.grid_built = False
        self.positions = None
        self.grid = None
        self._velocity_buffers = None
        self._current = 0

    # --- Lifecycle ---

    def initialize(self, num_boids: int, rng: np.random.Generator, positions=None, velocities=None):
        """
        Allocates all buffers and seeds the initial state.

        Positions are drawn uniformly from [-half_extent, half_extent)^3 unless
        given; velocities start at zero unless given. Raises AllocationFailure
        if memory runs out, leaving the system uninitialized.
        """
        if self.state is not SimulationState.UNINITIALIZED:
            raise InvalidStateError(f"initialize() called in state {self.state.value}")
        if num_boids < 0:
            raise ValueError(f"num_boids must be non-negative, got {num_boids}")

        try:
            if positions is None:
                seeded = (rng.random((num_boids, 3)) * 2.0 - 1.0) * self.half_extent
            else:
                seeded = np.array(positions, dtype=np.float64)
            current = np.zeros((num_boids, 3), dtype=np.float64)
            if velocities is not None:
                current[:] = velocities
            following = np.zeros((num_boids, 3), dtype=np.float64)
            grid = UniformGrid(self.grid_params, num_boids)
        except MemoryError as exc:
            logger.error(f"Allocation failed for {num_boids} boids: {exc!r}")
            raise AllocationFailure(f"could not allocate buffers for {num_boids} boids") from exc

        if seeded.shape != (num_boids, 3):
            raise ValueError(f"positions must have shape ({num_boids}, 3), got {seeded.shape}")

        self.positions = seeded
        self._velocity_buffers = [current, following]
        self._current = 0
        self.grid = grid
        self.num_boids = num_boids
        self.step_count = 0
        self.state = SimulationState.INITIALIZED

        logger.info(f"BoidSystem initialized with {num_boids} boids, strategy '{self.strategy.value}'.")
        logger.info(f"Flocking rules: {self.rules}")
        return self

    def step(self, dt: float, strategy=None):
        """
        Advances the simulation by one frame using the given (or configured)
        strategy. Each stage returns only once all of its work has finished.
        """
        if self.state not in (SimulationState.INITIALIZED, SimulationState.STEPPING):
            raise InvalidStateError(f"step() called in state {self.state.value}")
        strategy = self.strategy if strategy is None else Strategy.parse(strategy)

        if strategy is Strategy.BRUTE_FORCE:
            self._step_brute_force(dt)
        elif strategy is Strategy.SCATTERED_GRID:
            self._step_scattered_grid(dt)
        else:
            self._step_coherent_grid(dt)

        # Ping-pong: the freshly written buffer becomes current.
        self._current = 1 - self._current
        self.step_count += 1
        self.last_strategy = strategy
        self.state = SimulationState.STEPPING

    def teardown(self):
        """Releases every buffer. Any later step() fails with InvalidStateError."""
        if self.state is SimulationState.TORN_DOWN:
            return
        if self.grid is not None:
            self.grid.release()
        self.grid = None
        self.positions = None
        self._velocity_buffers = None
        self.state = SimulationState.TORN_DOWN
        logger.info(f"BoidSystem torn down after {self.step_count} steps.")

    # --- Pipelines ---

    @property
    def current_velocities(self) -> np.ndarray:
        return self._velocity_buffers[self._current]

    @property
    def next_velocities(self) -> np.ndarray:
        return self._velocity_buffers[1 - self._current]

    @property
    def current_buffer_index(self) -> int:
        return self._current

    def _run_stage(self, name: str, stage, *args):
        """Runs one stage; any failure tears the run down and surfaces as LaunchFailure."""
        try:
            return stage(*args)
        except Exception as exc:
            logger.exception(f"Stage '{name}' failed at step {self.step_count}.")
            self.teardown()
            raise LaunchFailure(f"stage '{name}' failed at step {self.step_count}") from exc

    def _step_brute_force(self, dt):
        self._run_stage(
            "update_velocity_brute_force", flocking.update_velocity_brute_force,
            self.positions, self.current_velocities, self.next_velocities, self.rules
        )
        self._run_stage(
            "update_positions", flocking.update_positions,
            dt, self.half_extent, self.positions, self.next_velocities
        )

    def _step_scattered_grid(self, dt):
        self._run_stage("build_grid", self.grid.build, self.positions)
        self.grid_built = True
        self._run_stage(
            "update_velocity_scattered", flocking.update_velocity_scattered,
            self.grid, self.positions, self.current_velocities, self.next_velocities, self.rules
        )
        self._run_stage(
            "update_positions", flocking.update_positions,
            dt, self.half_extent, self.positions, self.next_velocities
        )

    def _step_coherent_grid(self, dt):
        self._run_stage("build_grid", self.grid.build, self.positions)
        self.grid_built = True
        particle_index = self.grid.particle_index

        sorted_positions = self._run_stage("gather_positions", flocking.gather_sorted, self.positions, particle_index)
        sorted_velocities = self._run_stage(
            "gather_velocities", flocking.gather_sorted, self.current_velocities, particle_index
        )
        next_sorted_velocities = np.empty_like(sorted_velocities)

        self._run_stage(
            "update_velocity_coherent", flocking.update_velocity_coherent,
            self.grid, sorted_positions, sorted_velocities, next_sorted_velocities, self.rules
        )
        self._run_stage(
            "update_positions", flocking.update_positions,
            dt, self.half_extent, sorted_positions, next_sorted_velocities
        )

        # Back to canonical id order before anything outside the step sees it.
        self._run_stage(
            "scatter_positions", flocking.scatter_canonical,
            sorted_positions, particle_index, self.positions
        )
        self._run_stage(
            "scatter_velocities", flocking.scatter_canonical,
            next_sorted_velocities, particle_index, self.next_velocities
        )

    # --- Read-only views ---

    def _require_live(self):
        if self.state in (SimulationState.UNINITIALIZED, SimulationState.TORN_DOWN):
            raise InvalidStateError(f"no simulation data in state {self.state.value}")

    def get_positions(self) -> np.ndarray:
        """Read-only snapshot of positions in canonical id order."""
        self._require_live()
        snapshot = self.positions.copy()
        snapshot.flags.writeable = False
        return snapshot

    def get_velocities(self) -> np.ndarray:
        """Read-only snapshot of the current velocity buffer in canonical id order."""
        self._require_live()
        snapshot = self.current_velocities.copy()
        snapshot.flags.writeable = False
        return snapshot

    def get_mean_speed(self) -> float:
        self._require_live()
        if self.num_boids == 0:
            return 0.0
        return float(np.mean(np.linalg.norm(self.current_velocities, axis=1)))

    def get_stats(self) -> dict:
        """
        Diagnostics for periodic logging. 'strategy' is the one the last step
        ran (None before the first step). Grid figures reflect the last grid
        build and are None until a grid strategy has run.
        """
        self._require_live()
        return {
            'num_boids': self.num_boids,
            'step_count': self.step_count,
            'strategy': None if self.last_strategy is None else self.last_strategy.value,
            'occupied_cells': self.grid.occupied_cell_count() if self.grid_built else None,
            'largest_cell_population': self.grid.largest_cell_population() if self.grid_built else None,
            'mean_speed': self.get_mean_speed(),
        }
