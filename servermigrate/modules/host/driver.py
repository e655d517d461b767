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

"""
Step sequencing for the host migration.

Every step goes through StepRunner.run_step, which numbers it, sends the
step's log output to ``<base_dir>/<step>_output.log`` as well as the run
log, times it, and on failure asks the operator whether to keep going.
All counters live in RunContext; nothing is global.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ...utils import format_duration, log_message
from ...utils.index import DATE_FORMAT, LOG_FORMAT


class HostMigrationError(Exception):
    """Custom exception for host migration failures."""
    pass


class StepName(str, Enum):
    PREREQUISITES = "prerequisites"
    SSH_CONNECTION = "ssh_connection"
    DISCOVER_APPLICATIONS = "discover_applications"
    CREATE_BACKUP = "create_backup"
    MIGRATE_NGINX = "migrate_nginx"
    MIGRATE_UWSGI = "migrate_uwsgi"
    MIGRATE_CRON_JOBS = "migrate_cron_jobs"
    MIGRATE_DOCKER = "migrate_docker"
    MIGRATE_APPLICATIONS = "migrate_applications"
    MIGRATE_FILES = "migrate_files"
    MIGRATE_SYSTEM_CONFIGS = "migrate_system_configs"
    POST_MIGRATION_SETUP = "post_migration_setup"


STEP_DESCRIPTIONS = {
    StepName.PREREQUISITES: "Checking System Prerequisites",
    StepName.SSH_CONNECTION: "Testing SSH Connection to Source Server",
    StepName.DISCOVER_APPLICATIONS: "Discovering Applications on Source Server",
    StepName.CREATE_BACKUP: "Creating Backup of Current Configuration",
    StepName.MIGRATE_NGINX: "Migrating Nginx Configuration",
    StepName.MIGRATE_UWSGI: "Migrating uWSGI Configuration",
    StepName.MIGRATE_CRON_JOBS: "Migrating Cron Jobs",
    StepName.MIGRATE_DOCKER: "Migrating Docker Containers and Volumes",
    StepName.MIGRATE_APPLICATIONS: "Migrating Application Files",
    StepName.MIGRATE_FILES: "Migrating Additional File Trees",
    StepName.MIGRATE_SYSTEM_CONFIGS: "Migrating System Configurations",
    StepName.POST_MIGRATION_SETUP: "Running Post-Migration Setup",
}


@dataclass
class StepResult:
    name: str
    description: str
    success: bool
    duration: float = 0.0
    log_file: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    @property
    def status(self) -> str:
        if self.skipped:
            return "skipped (completed earlier)"
        return "success" if self.success else "failed"


@dataclass
class RunContext:
    """Everything a run accumulates, handed to each step and to the report."""
    source: str
    base_dir: str
    backup_dir: str
    total_steps: int = 0
    current_step: int = 0
    failures: int = 0
    results: List[StepResult] = field(default_factory=list)
    discovered: Dict[str, List[str]] = field(default_factory=lambda: {"django": [], "nextjs": [], "compose": []})
    subsystems: Dict[str, str] = field(default_factory=dict)
    aborted: bool = False
    interrupted: bool = False
    started: float = field(default_factory=time.time)

    def record_subsystem(self, name: str, outcome: str) -> None:
        self.subsystems[name] = outcome

    @property
    def exit_code(self) -> int:
        if self.interrupted:
            return 130
        if self.aborted or self.failures:
            return 1
        return 0


def tail(path: str, lines: int = 10) -> List[str]:
    try:
        with open(path, 'r', errors='replace') as f:
            return f.read().splitlines()[-lines:]
    except OSError:
        return []


class StepRunner:
    """Uniform wrapper around one migration step."""

    def __init__(self, context: RunContext, confirm: Callable[[str, bool], bool],
                 clock: Callable[[], float] = time.monotonic):
        self.context = context
        self.confirm = confirm
        self.clock = clock

    def _header(self, name: str, description: str) -> None:
        ctx = self.context
        log_message("=" * 77)
        log_message(f"STEP {ctx.current_step}/{ctx.total_steps}: {description}")
        log_message("=" * 77)
        log_message(f"Starting step {ctx.current_step}/{ctx.total_steps}: {name} - {description}")

    def _footer(self, name: str, duration: float, success: bool) -> None:
        ctx = self.context
        log_message("-" * 77)
        if success:
            log_message(f"✓ COMPLETED: Step {ctx.current_step}/{ctx.total_steps} ({name}) - "
                        f"Took {format_duration(duration)}", "SUCCESS")
        else:
            log_message(f"✗ FAILED: Step {ctx.current_step}/{ctx.total_steps} ({name}) - "
                        f"Took {format_duration(duration)}", "ERROR")
        log_message("-" * 77)

    def _attach_step_log(self, log_file: Path) -> logging.Handler:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(log_file), mode='w')
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logging.getLogger().addHandler(handler)
        return handler

    def skip(self, name: str, description: str) -> StepResult:
        """Count a step finished in an earlier run without running it."""
        self.context.current_step += 1
        log_message(f"Skipping step {self.context.current_step}/{self.context.total_steps}: "
                    f"{name} (completed in a previous run)")
        result = StepResult(name=name, description=description, success=True, skipped=True)
        self.context.results.append(result)
        return result

    def run_step(self, name: str, description: str, func: Callable[[], bool]) -> StepResult:
        """
        Run one step.

        The step counts as failed when it returns False or raises. After a
        failure the operator is asked whether to continue (default yes);
        declining sets context.aborted.
        """
        ctx = self.context
        ctx.current_step += 1
        self._header(name, description)

        log_file = Path(ctx.base_dir) / f"{name}_output.log"
        handler = self._attach_step_log(log_file)
        started = self.clock()
        error = None
        try:
            success = func() is not False
        except Exception as e:
            success = False
            error = str(e)
            log_message(f"Step {name} raised: {e}", "ERROR")
        finally:
            logging.getLogger().removeHandler(handler)
            handler.close()
        duration = self.clock() - started

        result = StepResult(name=name, description=description, success=success,
                            duration=duration, log_file=str(log_file), error=error)
        ctx.results.append(result)

        if success:
            log_message(f"Step completed successfully: {name} (took {format_duration(duration)})")
            self._footer(name, duration, True)
            return result

        ctx.failures += 1
        log_message(f"Step failed: {name} (took {format_duration(duration)})", "ERROR")
        log_message(f"See log file for details: {log_file}", "ERROR")
        self._footer(name, duration, False)
        log_message("Last 10 lines of step output:", "ERROR")
        for line in tail(str(log_file)):
            log_message(f"  {line}", "ERROR")

        if not self.confirm("Continue with migration despite error?", True):
            log_message("Migration aborted by user", "ERROR")
            ctx.aborted = True
        return result
