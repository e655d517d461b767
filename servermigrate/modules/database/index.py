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
PostgreSQL Database Migration

Moves one or all databases from a source server to a destination server
with pg_dump/pg_restore:

1. Destination database: reuse, drop-and-recreate (on confirmation) or
   create with the source's encoding and locale (template0), falling back
   to a default-settings database when the locale is not available.
2. Cluster globals (roles, tablespaces) replayed without re-creating roles
   that already exist.
3. Custom-format dump without owner/privilege statements; an empty dump
   fails the database.
4. Restore with a bounded number of attempts.
5. Sequence resync and table-count validation, both advisory.

Each database is isolated: a failure is recorded and the batch moves on.
The process exit status is the number of failed databases.
"""

import argparse
import os
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional

from packaging.version import InvalidVersion, Version

from ...utils import (
    CommandRunner,
    Confirmer,
    ConfirmPolicy,
    PackageManager,
    banner,
    create_run_log_dir,
    format_duration,
    load_config,
    log_message,
    prompt_password,
    section,
    setup_logging,
    timestamp
)
from .models import DatabaseOutcome, DatabaseRecord, DatabaseTarget, MigrationSummary
from .postgres import PostgresClient, filter_existing_roles

REQUIRED_TOOLS = ("psql", "pg_dump", "pg_dumpall", "pg_restore")

CLIENT_PACKAGES = {
    "apt": ["postgresql-client"],
    "dnf": ["postgresql"],
    "yum": ["postgresql"],
    "pacman": ["postgresql"],
}

# pg_restore prints this when it carried on past failing statements
PARTIAL_RESTORE_MARKER = "errors ignored on restore"


class DatabaseMigrationError(Exception):
    """Custom exception for database migration precondition failures."""
    pass


class DatabaseMigrator:
    """Dump/restore migration between two PostgreSQL servers."""

    def __init__(self, source, dest, config: Optional[dict] = None,
                 confirm_drop: Optional[Callable[[str, bool], bool]] = None,
                 runner: Optional[CommandRunner] = None,
                 package_manager: Optional[PackageManager] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 log_dir: Optional[str] = None):
        self.source = source
        self.dest = dest
        self.config = config or {}
        self.confirm_drop = confirm_drop or Confirmer(ConfirmPolicy.ASK)
        self.runner = runner or CommandRunner()
        self._package_manager = package_manager
        self.sleep = sleep
        self.clock = clock
        self.log_dir = log_dir

        self.restore_attempts = int(self.config.get("restore_attempts", 3))
        self.restore_retry_delay = float(self.config.get("restore_retry_delay", 5))
        self.drop_wait = float(self.config.get("drop_wait", 2))
        self.work_dir = self.config.get("work_dir", "/tmp")
        self.version_check = bool(self.config.get("version_check", False))

    @property
    def package_manager(self) -> PackageManager:
        if self._package_manager is None:
            self._package_manager = PackageManager(self.runner)
        return self._package_manager

    # Preflight

    def check_prerequisites(self) -> None:
        log_message("Checking prerequisites...")
        missing = [tool for tool in REQUIRED_TOOLS if not self.runner.which(tool)]
        if not missing:
            log_message("Prerequisites check completed", "SUCCESS")
            return

        log_message(f"Missing PostgreSQL client tools: {', '.join(missing)}", "WARNING")
        pm = self.package_manager
        packages = self.config.get("client_packages", CLIENT_PACKAGES).get(pm.name, [])
        if packages:
            pm.install(*packages, update=True)

        still_missing = [tool for tool in REQUIRED_TOOLS if not self.runner.which(tool)]
        if still_missing:
            raise DatabaseMigrationError(
                f"Missing required tools: {', '.join(still_missing)}. "
                "Install the PostgreSQL client tools manually "
                "(Debian/Ubuntu: postgresql-client, RHEL/Fedora: postgresql)"
            )
        log_message("PostgreSQL client tools installed", "SUCCESS")

    def check_connections(self) -> None:
        log_message("Testing database connections...")
        for label, client in (("source", self.source), ("destination", self.dest)):
            log_message(f"Testing {label} connection to {client.target.host}:{client.target.port}...")
            if not client.ping():
                raise DatabaseMigrationError(
                    f"Failed to connect to {label} database ({client.target.describe()}). "
                    f"Check the {label} credentials, pg_hba.conf and network connectivity"
                )
            log_message(f"{label.capitalize()} database connection successful", "SUCCESS")

    def check_version_compatibility(self) -> None:
        """Refuse to restore into an older major version than the source."""
        if not self.version_check:
            log_message("Version compatibility check disabled", "DEBUG")
            return

        source_raw = self.source.server_version()
        dest_raw = self.dest.server_version()
        try:
            source_version = Version(source_raw or "")
            dest_version = Version(dest_raw or "")
        except InvalidVersion as e:
            raise DatabaseMigrationError(f"Could not parse server versions ({source_raw!r}, {dest_raw!r}): {e}")

        log_message(f"Source PostgreSQL {source_version}, destination PostgreSQL {dest_version}")
        if dest_version.major < source_version.major:
            raise DatabaseMigrationError(
                f"Destination PostgreSQL {dest_version.major} is older than source "
                f"{source_version.major}; upgrade the destination before migrating"
            )
        log_message("Version compatibility check passed", "SUCCESS")

    def preflight(self) -> None:
        self.check_prerequisites()
        self.check_connections()
        self.check_version_compatibility()

    def resolve_databases(self, selection: str) -> List[str]:
        if selection == "all":
            log_message("Getting list of all databases from source...")
            databases = self.source.list_databases()
            if not databases:
                raise DatabaseMigrationError("No user databases found on source server")
            log_message(f"Found databases: {' '.join(databases)}")
            return databases

        if not self.source.database_exists(selection):
            raise DatabaseMigrationError(f"Database '{selection}' does not exist on source server")
        log_message(f"Migrating single database: {selection}")
        return [selection]

    # Per-database steps

    def _prepare_destination(self, record: DatabaseRecord) -> bool:
        name = record.dest_name
        log_message(f"Checking if database '{name}' exists on destination...")

        if self.dest.database_exists(name):
            log_message(f"Database '{name}' already exists on destination", "WARNING")
            if not self.confirm_drop(f"Drop and recreate database '{name}' on the destination?", False):
                log_message(f"Using existing database '{name}'")
                return True

            log_message(f"Terminating connections to database '{name}'...")
            self.dest.terminate_connections(name)
            log_message(f"Dropping database '{name}'...")
            result = self.dest.drop_database(name)
            if not result.success:
                log_message(f"Failed to drop database '{name}': {result.stderr.strip()}", "ERROR")
                return False
            log_message(f"Database '{name}' dropped", "SUCCESS")
            self.sleep(self.drop_wait)

        settings = self.source.database_settings(record.name)
        collate, ctype, encoding = settings or (None, None, None)
        owner = self.dest.target.user
        if settings:
            log_message(f"Creating database '{name}' with encoding='{encoding}', "
                        f"collate='{collate}', ctype='{ctype}'...")
            result = self.dest.create_database(name, owner, encoding=encoding, collate=collate, ctype=ctype)
            if result.success:
                log_message(f"Database '{name}' created", "SUCCESS")
                return True
            log_message(f"Creating '{name}' from template0 failed: {result.stderr.strip()}", "WARNING")
        else:
            log_message(f"Could not read encoding/locale of '{record.name}' on source", "WARNING")

        result = self.dest.create_database(name, owner, template0=False)
        if not result.success:
            log_message(f"Failed to create database '{name}': {result.stderr.strip()}", "ERROR")
            return False
        message = f"Database '{name}' created with default encoding/locale settings"
        log_message(message, "WARNING")
        record.warn(message)
        return True

    def _copy_globals(self, record: DatabaseRecord) -> None:
        log_message("Copying global objects (roles, tablespaces)...")
        result = self.source.dump_globals()
        if not result.success:
            message = f"Could not dump global objects: {result.stderr.strip()}"
            log_message(message, "WARNING")
            record.warn(message)
            return

        script, skipped = filter_existing_roles(result.stdout, self.dest.roles())
        if skipped:
            log_message(f"Skipping existing roles: {', '.join(sorted(skipped))}", "DEBUG")

        applied = self.dest.apply_script(script)
        if not applied.success:
            message = f"Replaying global objects reported errors: {applied.stderr.strip()}"
            log_message(message, "WARNING")
            record.warn(message)
            return
        log_message("Global objects copied", "SUCCESS")

    def _restore(self, record: DatabaseRecord, dump_path: str) -> bool:
        for attempt in range(1, self.restore_attempts + 1):
            record.restore_attempts = attempt
            log_message(f"Restore attempt {attempt}/{self.restore_attempts} into '{record.dest_name}'...")
            result = self.dest.restore(record.dest_name, dump_path)

            if result.success:
                log_message(f"Database '{record.dest_name}' restored", "SUCCESS")
                return True
            if PARTIAL_RESTORE_MARKER in result.stderr:
                message = "Restore completed with ignored statement errors (partial restore)"
                log_message(f"{message}; see {self.log_dir or 'the run log'} for details", "WARNING")
                log_message(result.stderr.strip(), "DEBUG")
                record.warn(message)
                return True

            log_message(f"Restore attempt {attempt} failed (exit code {result.returncode}): "
                        f"{result.stderr.strip()}", "WARNING")
            if attempt < self.restore_attempts:
                self.sleep(self.restore_retry_delay)

        return False

    def _resync_sequences(self, record: DatabaseRecord) -> None:
        log_message("Resynchronizing sequences...")
        try:
            sequences = self.dest.sequences(record.dest_name)
        except Exception as e:
            message = f"Could not list sequences: {e}"
            log_message(message, "WARNING")
            record.warn(message)
            return

        failed = []
        for sequence, table, column in sequences:
            if not self.dest.reset_sequence(record.dest_name, sequence, table, column).success:
                failed.append(sequence)

        if failed:
            message = f"{len(failed)} sequence(s) could not be resynchronized: {', '.join(failed)}"
            log_message(message, "WARNING")
            record.warn(message)
        else:
            log_message(f"Resynchronized {len(sequences)} sequence(s)", "SUCCESS")

    def _validate(self, record: DatabaseRecord) -> None:
        log_message("Validating migration...")
        record.source_tables = self.source.table_count(record.name)
        record.dest_tables = self.dest.table_count(record.dest_name)
        log_message(f"Source tables: {record.source_tables}, Destination tables: {record.dest_tables}")

        if record.source_tables is not None and record.source_tables == record.dest_tables \
                and record.source_tables > 0:
            log_message("Table count validation passed", "SUCCESS")
            return

        message = (f"Table count mismatch or no tables found "
                   f"(source {record.source_tables}, destination {record.dest_tables})")
        log_message(message, "WARNING")
        record.warn(message)

    def _migrate(self, record: DatabaseRecord) -> None:
        if not self._prepare_destination(record):
            record.fail("database creation failed")
            return

        self._copy_globals(record)

        log_message(f"Source database size: {self.source.database_size(record.name)}")
        Path(self.work_dir).mkdir(parents=True, exist_ok=True)
        dump_path = os.path.join(self.work_dir, f"migration_{record.name}_{timestamp()}.dump")
        try:
            log_message("Creating database dump...")
            result = self.source.dump(record.name, dump_path)
            if not result.success:
                record.fail(f"pg_dump failed: {result.stderr.strip()}")
                return
            if not os.path.exists(dump_path) or os.path.getsize(dump_path) == 0:
                record.fail("dump file is empty")
                return
            log_message(f"Database dump created ({os.path.getsize(dump_path)} bytes)", "SUCCESS")

            if not self._restore(record, dump_path):
                record.fail(f"restore failed after {record.restore_attempts} attempts")
                return
        finally:
            if os.path.exists(dump_path):
                os.remove(dump_path)

        self._resync_sequences(record)
        self._validate(record)
        record.outcome = DatabaseOutcome.SUCCEEDED

    def migrate_database(self, name: str, dest_name: Optional[str] = None) -> DatabaseRecord:
        """Migrate one database; never raises."""
        record = DatabaseRecord(name=name, dest_name=dest_name or name)
        log_message(f"Starting migration of database: {record.name} -> {record.dest_name}")
        started = self.clock()
        try:
            self._migrate(record)
        except Exception as e:
            record.fail(str(e))
        finally:
            record.duration = self.clock() - started

        if record.succeeded:
            log_message(f"✓ {record.name} migrated in {format_duration(record.duration)}", "SUCCESS")
        else:
            log_message(f"✗ Skipping database '{record.name}': {record.error}", "ERROR")
        return record

    def run(self, selection: str = "all", dest_name: Optional[str] = None) -> MigrationSummary:
        summary = MigrationSummary(log_dir=self.log_dir)
        started = self.clock()

        databases = self.resolve_databases(selection)
        if dest_name and len(databases) > 1:
            log_message(f"Ignoring destination name '{dest_name}' for a multi-database run", "WARNING")
            dest_name = None

        for index, name in enumerate(databases, 1):
            log_message(f"[{index}/{len(databases)}] {name}")
            summary.records.append(self.migrate_database(name, dest_name))

        summary.total_duration = self.clock() - started
        print_summary(summary)
        return summary


def print_summary(summary: MigrationSummary) -> None:
    banner("MIGRATION SUMMARY")
    for record in summary.records:
        if record.succeeded:
            log_message(f"  ✓ {record.name} -> {record.dest_name} "
                        f"({record.source_tables}/{record.dest_tables} tables, "
                        f"{format_duration(record.duration)}, "
                        f"{record.restore_attempts} restore attempt(s))")
        else:
            log_message(f"  ✗ {record.name}: {record.error}", "ERROR")
        for warning in record.warnings:
            log_message(f"      ! {warning}", "WARNING")
    log_message(f"Databases migrated successfully: {summary.succeeded}")
    log_message(f"Databases failed: {summary.failed}")
    log_message(f"Warnings: {summary.warning_count}")
    log_message(f"Total duration: {format_duration(summary.total_duration)}")
    if summary.log_dir:
        log_message(f"Logs: {summary.log_dir}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="servermigrate db",
                                     description="Migrate PostgreSQL databases between servers")
    parser.add_argument("--source-host", required=True, help="Source PostgreSQL host")
    parser.add_argument("--dest-host", required=True, help="Destination PostgreSQL host")
    parser.add_argument("-p", "--source-port", type=int, default=5432)
    parser.add_argument("-P", "--dest-port", type=int, default=5432)
    parser.add_argument("-u", "--source-user", default="postgres")
    parser.add_argument("-U", "--dest-user", default="postgres")
    parser.add_argument("-s", "--source-password", help="Prompted for when omitted")
    parser.add_argument("-d", "--dest-password", help="Prompted for when omitted")
    parser.add_argument("--source-db", default="all", help="Database to migrate (default: all)")
    parser.add_argument("--dest-db", help="Destination name for a single database")
    parser.add_argument("--drop-existing", choices=[p.value for p in ConfirmPolicy],
                        help="Drop databases that already exist on the destination")
    parser.add_argument("--yes", action="store_true", help="Do not ask before starting")
    parser.add_argument("--version-check", action="store_true", default=None,
                        help="Require destination major version >= source")
    parser.add_argument("--config", help="JSON file merged over the packaged defaults")
    parser.add_argument("--log-root", help="Parent directory for the run log directory")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def _password(given: Optional[str], label: str) -> str:
    if given:
        return given
    password = prompt_password(label)
    if not password:
        raise DatabaseMigrationError(f"{label} is required")
    return password


def main(args=None):
    """
    Entry point for ``servermigrate db``.

    Args:
        args: argv list (without the subcommand)

    Returns:
        dict: success flag, exit code and the migration summary
    """
    options = build_parser().parse_args(args)
    settings = load_config(options.config)
    db_config = dict(section(settings, "database"))
    if options.version_check is not None:
        db_config["version_check"] = options.version_check

    log_root = options.log_root or section(settings, "logging").get("log_root", "/var/log/servermigrate")
    run_dir = create_run_log_dir(log_root, "db")
    setup_logging(str(run_dir / "db.log"), verbose=options.verbose)
    log_message(f"Logging initialized in: {run_dir}")

    try:
        source = DatabaseTarget(options.source_host, options.source_port, options.source_user,
                                _password(options.source_password, "Source database password"))
        dest = DatabaseTarget(options.dest_host, options.dest_port, options.dest_user,
                              _password(options.dest_password, "Destination database password"))

        runner = CommandRunner()
        migrator = DatabaseMigrator(
            PostgresClient(source, runner),
            PostgresClient(dest, runner),
            config=db_config,
            confirm_drop=Confirmer(options.drop_existing or db_config.get("drop_existing", "ask")),
            runner=runner,
            log_dir=str(run_dir)
        )

        banner("POSTGRESQL DATABASE MIGRATION")
        log_message(f"Source:      {source.describe()}")
        log_message(f"Destination: {dest.describe()}")
        log_message(f"Database:    {options.source_db}")

        migrator.preflight()

        proceed = Confirmer(ConfirmPolicy.YES if options.yes else ConfirmPolicy.ASK)
        if not proceed("Proceed with migration?", False):
            log_message("Migration cancelled by operator", "WARNING")
            return {"success": False, "exit_code": 1, "error": "cancelled"}

        summary = migrator.run(options.source_db, options.dest_db)
        return {
            "success": summary.failed == 0,
            "exit_code": summary.exit_code,
            "summary": summary
        }

    except DatabaseMigrationError as e:
        log_message(str(e), "ERROR")
        return {"success": False, "exit_code": 1, "error": str(e)}
    except KeyboardInterrupt:
        log_message("Migration interrupted by operator", "WARNING")
        return {"success": False, "exit_code": 130, "error": "interrupted"}


if __name__ == "__main__":
    sys.exit(main()["exit_code"])
