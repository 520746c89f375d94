# main.py

import time
import logging
import cProfile, pstats
import numpy as np
import pygame
import constants
import logger_setup
import renderer
from boid_system import BoidSystem, AllocationFailure

# Get the application's dedicated logger
logger = logging.getLogger("boids_sim")

HEADLESS_DEFAULT_TICKS = 1000


def create_boid_system(sim_config: dict, rng: np.random.Generator) -> BoidSystem:
    """
    Builds and initializes the simulation, halving the boid count after each
    allocation failure until it fits. Raises AllocationFailure when even a
    single boid cannot be allocated.
    """
    num_boids = sim_config['particle_count']
    while True:
        system = BoidSystem(sim_config)
        try:
            return system.initialize(num_boids, rng)
        except AllocationFailure:
            if num_boids <= 1:
                raise
            num_boids //= 2
            logger.warning(f"Retrying initialization with {num_boids} boids.")


def run_simulation_loop(boid_system: BoidSystem, dt: float, harness: dict, screen=None, clock=None, trail_surface=None):
    """
    Steps the simulation until the window closes or max_ticks is reached,
    logging timing and flock statistics every log_interval ticks.
    With no screen the loop runs headless.
    """
    max_ticks = harness.get('max_ticks', 0) or (None if screen is not None else HEADLESS_DEFAULT_TICKS)
    log_interval = harness.get('log_interval', 100)
    if log_interval < 1:
        raise ValueError(f"harness log_interval must be at least 1, got {log_interval}")
    view_scale = harness.get('view_scale', constants.WIDTH / (2.0 * boid_system.half_extent))
    bias = (constants.WIDTH / 2, constants.HEIGHT / 2)

    running = True
    tick = 0
    step_seconds = 0.0

    while running and (max_ticks is None or tick < max_ticks):
        if screen is not None:
            for event in pygame.event.get():
                if event.type == pygame.QUIT:
                    running = False

        # --- Physics ---
        start = time.perf_counter()
        boid_system.step(dt)
        step_seconds += time.perf_counter() - start

        # --- Logging (throttled) ---
        if tick % log_interval == 0:
            stats = boid_system.get_stats()
            average_ms = 1000.0 * step_seconds / (1 if tick == 0 else log_interval)
            logger.debug(
                f"Tick={tick}, "
                f"StepMs={average_ms:.3f}, "
                f"MeanSpeed={stats['mean_speed']:.4f}, "
                f"OccupiedCells={stats['occupied_cells']}, "
                f"LargestCell={stats['largest_cell_population']}"
            )
            step_seconds = 0.0

        # --- Drawing ---
        if screen is not None:
            trail_surface.fill(constants.TRAIL_EFFECT_COLOR)
            screen.blit(trail_surface, (0, 0))
            renderer.draw_boids(
                screen,
                boid_system.get_positions(),
                boid_system.get_velocities(),
                boid_system.rules.max_speed,
                view_scale,
                bias
            )
            pygame.display.flip()
            clock.tick(constants.FPS)

        tick += 1

    return tick


def main():
    """
    Main function to initialize and run the boids simulation.
    """
    # --- Setup ---
    logger_setup.setup_logging()

    config = logger_setup.load_config()
    sim_config = config['simulation']
    harness = config.get('harness', {})

    logger.info("Application starting...")
    logger.info(f"Loaded configuration: {config}")

    rng = np.random.default_rng(config['master_seed'])
    logger.info(f"Master RNG initialized with seed: {config['master_seed']}")

    boid_system = create_boid_system(sim_config, rng)
    dt = sim_config.get('dt', constants.DEFAULT_DT)

    screen = clock = trail_surface = None
    if harness.get('visualize', True):
        pygame.init()
        screen = pygame.display.set_mode((constants.WIDTH, constants.HEIGHT))
        pygame.display.set_caption(constants.TITLE)
        clock = pygame.time.Clock()
        trail_surface = pygame.Surface((constants.WIDTH, constants.HEIGHT), pygame.SRCALPHA)

    try:
        if harness.get('profile', False):
            profiled_harness = dict(harness, max_ticks=harness.get('profile_ticks', HEADLESS_DEFAULT_TICKS))
            profiler = cProfile.Profile()
            profiler.enable()
            ticks = run_simulation_loop(boid_system, dt, profiled_harness, screen, clock, trail_surface)
            profiler.disable()
            logger.info(f"Profiling complete after {ticks} ticks. Printing stats...")
            stats = pstats.Stats(profiler).sort_stats('cumtime')
            stats.print_stats(20)
        else:
            ticks = run_simulation_loop(boid_system, dt, harness, screen, clock, trail_surface)
            logger.info(f"Simulation loop finished after {ticks} ticks.")
    finally:
        boid_system.teardown()
        if screen is not None:
            pygame.quit()
        logger.info("Application shutting down.")
        logger_setup.shutdown_logging()


if __name__ == "__main__":
    main()
