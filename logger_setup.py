# logger_setup.py

import logging
import os
import json

LOGGER_NAME = "boids_sim"


def load_config(config_path='config.json'):
    """Reads the JSON run configuration."""
    with open(config_path, 'r') as f:
        return json.load(f)


def setup_logging(config_path='config.json', log_root='runs'):
    """
    Sets up logging for the simulator.

    Reads the logging section of the run configuration, creates a run-specific
    log directory, and configures the dedicated "boids_sim" logger (not the root
    logger) to write to both the console and a log file. Numba's own loggers are
    left untouched.

    Data Contract:
    - Inputs:
        - config_path (str): Path to the configuration file.
        - log_root (str): Directory under which run directories are created.
    - Outputs: The path of the log file (str).
    - Side Effects:
        - Configures the "boids_sim" logger.
        - Creates runs/<run_id>/ if it does not exist.
    - Invariants: Assumes the config file contains 'run_id' and a 'logging' dictionary
      with 'level' and 'format'.
    """
    config = load_config(config_path)

    run_id = config['run_id']
    log_config = config['logging']

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_config['level'])
    logger.propagate = False

    log_dir = os.path.join(log_root, run_id)
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, 'simulation.log')

    formatter = logging.Formatter(log_config['format'])

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(formatter)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)

    # Reconfiguring must not duplicate output
    shutdown_logging()
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)

    logger.info(f"Logging initialized. Run ID: {run_id}. Log file: {log_file}")
    return log_file


def shutdown_logging():
    """Flushes, closes and detaches every handler on the application logger."""
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.flush()
        handler.close()
        logger.removeHandler(handler)
