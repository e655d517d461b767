"""
Server Migration Toolkit
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import datetime
import logging
import os
import sys
from pathlib import Path
from typing import Optional

LOGGER_NAME = "servermigrate"

# Extra level between INFO and WARNING for "it worked" lines
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "SUCCESS": SUCCESS,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

_COLORS = {
    logging.DEBUG: "\033[0;36m",
    logging.INFO: "\033[0;34m",
    SUCCESS: "\033[0;32m",
    logging.WARNING: "\033[1;33m",
    logging.ERROR: "\033[0;31m",
}
_RESET = "\033[0m"

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class ColorFormatter(logging.Formatter):
    """Colour the level tag on terminals; plain text everywhere else."""

    def __init__(self, use_color: bool = True):
        super().__init__(LOG_FORMAT, datefmt=DATE_FORMAT)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if not self.use_color:
            return line
        color = _COLORS.get(record.levelno, "")
        return f"{color}{line}{_RESET}" if color else line


def setup_logging(log_file: Optional[str] = None, verbose: bool = False) -> None:
    """
    Configure the root logger for one run of a workflow.

    Console output goes to stdout (coloured when attached to a terminal);
    when a log file is given every line is also appended to it.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(ColorFormatter(use_color=sys.stdout.isatty()))
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)
        try:
            os.chmod(log_file, 0o600)
        except OSError as e:
            log_message(f"Could not restrict permissions on {log_file}: {e}", "WARNING")


def log_message(message: str, level: str = "INFO"):
    """Unified logger used throughout the workflows and helpers."""
    logging.getLogger(LOGGER_NAME).log(_LEVELS.get(level.upper(), logging.INFO), message)


def timestamp() -> str:
    """Timestamp used in generated file and directory names."""
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def create_run_log_dir(log_root: str, tool: str) -> Path:
    """Create the per-run log directory, e.g. /var/log/servermigrate/db_20240101_120000."""
    run_dir = Path(log_root) / f"{tool}_{timestamp()}"
    run_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(run_dir, 0o700)
    return run_dir


def format_duration(seconds: float) -> str:
    """
    Render a duration the way the summaries show it.

    Examples: 45 -> "45s", 125 -> "2m 5s", 3725 -> "1h 2m 5s"
    """
    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def banner(title: str, width: int = 77) -> None:
    log_message("=" * width)
    log_message(title)
    log_message("=" * width)
