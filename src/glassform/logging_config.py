"""
Logging Configuration
Sets up the package logger for solver runs.
"""
import logging
import sys
from typing import Optional

# Native jobs log from worker threads, so the thread name is part of every record
LOG_FORMAT = '%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """
    Configures the logger for the 'glassform' namespace.

    Solver modules log through ``logging.getLogger(__name__)``; Newton and
    time-step details go to DEBUG, outer iterations and run summaries to INFO,
    and runs that end with a ``SolverError`` to WARNING.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO)
        log_file: Optional path to save logs to a file.
    """
    logger = logging.getLogger("glassform")
    logger.setLevel(level)

    # repeated calls (notebooks, sweeps) replace the handlers instead of stacking them
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt='%H:%M:%S')
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.info("Logging initialized.")
