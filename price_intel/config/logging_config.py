# price_intel/config/logging_config.py

"""Per-run timestamped logging for the price intelligence engine.

Every CLI invocation (including cron-driven ``run-cycle`` calls) gets
its own log file inside ``logs/``, e.g. ``logs/run_20260214_153045.log``.
All ``price_intel.*`` loggers share that file handler.

Scheduler stages fan out to worker threads, so the detailed format
carries the thread name next to the module path.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

from price_intel.config.settings import Settings

_ROOT_LOGGER = "price_intel"

_DETAILED_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | "
    "%(module)s:%(funcName)s:%(lineno)d | %(message)s"
)

_CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    verbose: bool = False,
    logs_dir: Path | None = None,
) -> Path:
    """Attach file and console handlers to the ``price_intel`` logger.

    Args:
        verbose: Lower the console threshold from WARNING to INFO.
        logs_dir: Directory for the run log (defaults to
            ``Settings.LOGS_DIR``).

    Returns:
        The path of the log file for this run.
    """
    directory = logs_dir or Settings.LOGS_DIR
    directory.mkdir(parents=True, exist_ok=True)

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = directory / f"run_{stamp}.log"

    root_logger = logging.getLogger(_ROOT_LOGGER)
    root_logger.setLevel(logging.DEBUG)

    # Repeated calls (tests, nested CLI entry points) keep one handler set
    if root_logger.handlers:
        return log_file

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(_DETAILED_FORMAT, datefmt=_DATE_FORMAT)
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO if verbose else logging.WARNING)
    console_handler.setFormatter(
        logging.Formatter(_CONSOLE_FORMAT, datefmt=_DATE_FORMAT)
    )

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    root_logger.info("Logging initialised, log file: %s", log_file)

    return log_file
