"""
Logging setup, output directories and JSON helpers shared by the CLI and the session.
"""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path

# Third-party loggers that flood DEBUG output
NOISY_LOGGERS = ('rasterio', 'matplotlib', 'PIL', 'pyproj', 'fiona')


def setup_logging(output_dir: Path, verbose: bool = False) -> Path:
    """
    Configure the root logger: terse console output plus a detailed log file
    under <output_dir>/logs.

    Args:
        output_dir: Run output directory
        verbose: DEBUG on the console when True, INFO otherwise

    Returns:
        Path of the log file
    """
    console_level = logging.DEBUG if verbose else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter('%(message)s'))
    root_logger.addHandler(console_handler)

    logs_dir = Path(output_dir) / 'logs'
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / f"georef_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    # The file always gets everything, including solver iteration details
    file_handler = logging.FileHandler(log_file, mode='w')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s', datefmt='%Y-%m-%d %H:%M:%S'))
    root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info(f"Log file: {log_file}")
    logging.info(f"Verbose mode: {verbose}")
    return log_file


def create_output_directory(base_dir: str, timestamped: bool = True) -> Path:
    """
    Create the run directory with its visualizations/ and logs/ subdirectories.

    Args:
        base_dir: Base output directory path
        timestamped: Put the run in a run_<timestamp> subdirectory

    Returns:
        Path object for the created directory
    """
    output_dir = Path(base_dir)
    if timestamped:
        output_dir = output_dir / f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

    output_dir.mkdir(parents=True, exist_ok=True)
    (output_dir / 'visualizations').mkdir(exist_ok=True)
    (output_dir / 'logs').mkdir(exist_ok=True)
    return output_dir


def read_json(path) -> dict:
    with open(path, 'r') as f:
        return json.load(f)


def write_json(data, path) -> Path:
    """Write indented JSON, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(data, f, indent=2)
    return path
