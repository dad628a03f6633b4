"""Console logging helpers shared by every murm command.

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import os
from datetime import datetime

# Global verbose flag
VERBOSE = False

_MURM_PID = os.getpid()


def set_verbose(enabled: bool) -> None:
    """Enable or disable verbose tracing."""
    global VERBOSE
    VERBOSE = enabled


def log(message: str) -> None:
    """Print a timestamped log message with PID for process tracking."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [MURM:{_MURM_PID}] {message}", flush=True)


def verbose_log(message: str, prefix: str = "VERBOSE") -> None:
    """Print a verbose log message if verbose mode is enabled."""
    if VERBOSE:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        print(f"[{timestamp}] [{prefix}] {message}", flush=True)


def warn(message: str) -> None:
    """Log a [WARNING] line with the same timestamp and PID tag as log()."""
    log(f"[WARNING] {message}")


def error(message: str) -> None:
    """Log an [ERROR] line with the same timestamp and PID tag as log()."""
    log(f"[ERROR] {message}")
