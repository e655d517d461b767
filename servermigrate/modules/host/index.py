#!/usr/bin/env python3
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
Host Migration

Pulls services and applications from a source server over ssh/rsync onto
this host: nginx, uWSGI, cron, Docker, Django and Next.js applications,
extra file trees and system configuration. Steps run in a fixed order
through StepRunner; a failed step asks the operator whether to go on. The
report is written whatever happens, including SIGINT and SIGTERM.

Exit codes: 0 no step failed, 1 a step failed or the run was aborted,
130 interrupted.
"""

import argparse
import datetime
import os
import signal
import sys
import threading
import time
from typing import Callable, Dict, Optional, Sequence, Tuple

from ...utils import (
    Confirmer,
    ConfirmPolicy,
    ServiceManager,
    StateManager,
    StateManagerError,
    banner,
    create_run_log_dir,
    format_duration,
    load_config,
    log_message,
    section,
    setup_logging,
)
from .driver import STEP_DESCRIPTIONS, HostMigrationError, RunContext, StepName, StepRunner
from .remote import RemoteExecutor
from .report import REPORT_SERVICES, write_report
from .steps import DEFAULT_SUBSYSTEMS, MigrationSteps


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt(f"signal {signum}")


class HostMigrationDriver:
    """Runs the ordered step list and always finishes with a report."""

    def __init__(self, context: RunContext, steps: Sequence[Tuple[StepName, Callable[[], bool]]],
                 confirm: Callable[[str, bool], bool], services: Optional[ServiceManager] = None,
                 state: Optional[StateManager] = None, clock: Callable[[], float] = time.monotonic,
                 report_services: Sequence[str] = REPORT_SERVICES, report_path: Optional[str] = None,
                 restorers: Optional[Dict[StepName, Callable[[], bool]]] = None):
        self.context = context
        self.steps = list(steps)
        self.services = services or ServiceManager()
        self.state = state
        self.clock = clock
        self.report_services = report_services
        self.report_path = report_path
        self.restorers = restorers or {}
        self.runner = StepRunner(context, confirm, clock)
        self.report = None

    def _run_steps(self) -> None:
        for name, func in self.steps:
            description = STEP_DESCRIPTIONS.get(name, name.value)
            if self.state and self.state.is_completed(name):
                restore = self.restorers.get(name)
                if restore is None or restore():
                    self.runner.skip(name.value, description)
                    continue
                log_message(f"Running {name.value} again; its earlier results could not be restored", "WARNING")

            result = self.runner.run_step(name.value, description, func)
            if result.success and self.state:
                try:
                    self.state.mark_completed(name)
                except StateManagerError as e:
                    log_message(f"Could not record progress: {e}", "WARNING")
            if self.context.aborted:
                break

    def run(self) -> RunContext:
        ctx = self.context
        ctx.total_steps = len(self.steps)
        started = self.clock()

        previous = None
        in_main_thread = threading.current_thread() is threading.main_thread()
        if in_main_thread:
            previous = signal.signal(signal.SIGTERM, _raise_interrupt)
        try:
            self._run_steps()
        except KeyboardInterrupt:
            ctx.interrupted = True
            log_message("Migration interrupted; writing report before exit", "WARNING")
        finally:
            if in_main_thread and previous is not None:
                signal.signal(signal.SIGTERM, previous)
            self.report = write_report(ctx, self.services, self.clock() - started,
                                       self.report_services, self.report_path)
        return ctx


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="servermigrate host",
                                     description="Migrate services and applications from a source server")
    parser.add_argument("--source-host", required=True, help="Source server hostname or IP")
    parser.add_argument("--source-user", default="root", help="SSH user on the source server")
    parser.add_argument("--source-port", type=int, default=22, help="SSH port on the source server")
    parser.add_argument("--ssh-key", help="Private key for the SSH connection")
    parser.add_argument("--base-dir", help="Working directory for step logs, listings and the report")
    parser.add_argument("--skip", action="append", default=[], choices=DEFAULT_SUBSYSTEMS,
                        metavar="SUBSYSTEM", help="Subsystem to leave out (repeatable)")
    parser.add_argument("--sync-path", action="append", default=[], metavar="SRC[:DEST]",
                        help="Extra path to pull from the source (repeatable)")
    parser.add_argument("--resume", action="store_true", help="Skip steps completed in a previous run")
    parser.add_argument("--yes", action="store_true", help="Answer yes to every confirmation")
    parser.add_argument("--config", help="JSON file merged over the packaged defaults")
    parser.add_argument("--log-root", help="Parent directory for the run log directory")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(args=None):
    """
    Entry point for ``servermigrate host``.

    Returns:
        dict: success flag, exit code, report path and the run context
    """
    options = build_parser().parse_args(args)
    settings = load_config(options.config)
    host_config = section(settings, "host")

    log_root = options.log_root or section(settings, "logging").get("log_root", "/var/log/servermigrate")
    run_dir = create_run_log_dir(log_root, "host")
    setup_logging(str(run_dir / "host.log"), verbose=options.verbose)

    base_dir = options.base_dir or host_config.get("base_dir", "/opt/migration")
    if options.base_dir:
        backup_dir = os.path.join(base_dir, "backup")
    else:
        backup_dir = host_config.get("backup_dir", os.path.join(base_dir, "backup"))
    os.makedirs(base_dir, exist_ok=True)

    confirm = Confirmer(ConfirmPolicy.YES if options.yes else ConfirmPolicy.ASK)
    remote = RemoteExecutor(options.source_host, user=options.source_user, port=options.source_port,
                            ssh_key=options.ssh_key, retries=int(host_config.get("remote_retries", 3)),
                            delay=float(host_config.get("remote_retry_delay", 2)))
    context = RunContext(source=remote.describe(), base_dir=base_dir, backup_dir=backup_dir)

    banner(f"SERVER MIGRATION - {datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    log_message(f"Source server: {remote.describe()}")
    log_message(f"Working directory: {base_dir}")
    log_message(f"Run log: {run_dir / 'host.log'}")

    services = ServiceManager()
    try:
        steps = MigrationSteps(context, remote, config=host_config, runner=remote.runner,
                               services=services, confirm=confirm, skip=options.skip,
                               sync_paths=options.sync_path)
    except HostMigrationError as e:
        log_message(f"Cannot proceed: {e}", "ERROR")
        return {"success": False, "exit_code": 1, "error": str(e)}

    try:
        if not confirm(f"Proceed with migration from {remote.describe()}?", False):
            log_message("Migration cancelled by operator", "WARNING")
            return {"success": False, "exit_code": 1, "error": "cancelled"}
    except KeyboardInterrupt:
        log_message("Migration cancelled by operator", "WARNING")
        return {"success": False, "exit_code": 130, "error": "interrupted"}

    state = StateManager(os.path.join(base_dir, "migration_state.json"), StepName, "host")
    if not options.resume:
        state.reset()
    elif state.pending() != list(StepName):
        log_message(f"Resuming; {len(StepName) - len(state.pending())} step(s) already completed")

    functions = steps.functions()
    driver = HostMigrationDriver(context, [(name, functions[name]) for name in StepName], confirm,
                                 services=services, state=state,
                                 report_services=host_config.get("report_services", REPORT_SERVICES),
                                 restorers={StepName.DISCOVER_APPLICATIONS: steps.load_discovered})
    driver.run()

    elapsed = format_duration(time.time() - context.started)
    if context.exit_code == 0:
        log_message(f"Migration completed successfully in {elapsed}", "SUCCESS")
    else:
        log_message(f"Migration finished with {context.failures} failed step(s) in {elapsed}", "WARNING")
    if driver.report:
        log_message(f"Review the report: {driver.report}")

    return {
        "success": context.exit_code == 0,
        "exit_code": context.exit_code,
        "report": str(driver.report) if driver.report else None,
        "context": context,
    }


if __name__ == "__main__":
    sys.exit(main()["exit_code"])
