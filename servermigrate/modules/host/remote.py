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
Remote command execution and file transfer over ssh/rsync.
"""

import os
import shlex
import time
from typing import Callable, Iterable, List, Optional

from ...utils import CommandResult, CommandRunner, log_message

RSYNC_OPTIONS = ["-avzP", "--stats", "--human-readable", "--timeout=1800"]


class RemoteExecutor:
    """Runs commands on the source server; each command gets a bounded number of attempts."""

    def __init__(self, host: str, user: str = "root", port: int = 22, ssh_key: Optional[str] = None,
                 runner: Optional[CommandRunner] = None, retries: int = 3, delay: float = 2,
                 connect_timeout: int = 10, sleep: Callable[[float], None] = time.sleep):
        self.host = host
        self.user = user
        self.port = port
        self.ssh_key = ssh_key
        self.runner = runner or CommandRunner()
        self.retries = retries
        self.delay = delay
        self.connect_timeout = connect_timeout
        self.sleep = sleep

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}"

    def describe(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"

    def _ssh_options(self) -> List[str]:
        options = ["-p", str(self.port), "-o", "StrictHostKeyChecking=no"]
        if self.ssh_key:
            options += ["-i", self.ssh_key]
        return options

    def ssh_command(self, command: str, batch: bool = False) -> List[str]:
        argv = ["ssh", *self._ssh_options(), "-o", f"ConnectTimeout={self.connect_timeout}"]
        if batch:
            argv += ["-o", "BatchMode=yes"]
        return argv + [self.address, command]

    def execute(self, command: str, retries: Optional[int] = None,
                stdout_path: Optional[str] = None) -> CommandResult:
        """Run a shell command remotely, retrying on a non-zero exit."""
        attempts = retries or self.retries
        result = None
        for attempt in range(1, attempts + 1):
            result = self.runner.run(self.ssh_command(command), stdout_path=stdout_path)
            if result.success:
                return result
            if attempt < attempts:
                log_message(f"Command failed, retrying ({attempt}/{attempts})...", "WARNING")
                self.sleep(self.delay)

        log_message(f"Remote command failed after {attempts} attempts: {command}", "WARNING")
        if result.output:
            log_message(f"Error: {result.output.strip()}", "WARNING")
        return result

    def lines(self, command: str) -> List[str]:
        """Non-empty output lines of a remote command; [] when it fails."""
        result = self.execute(command)
        if not result.success:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def test_connection(self) -> bool:
        result = self.runner.run(self.ssh_command("echo 'SSH connection successful'", batch=True))
        return result.success

    def path_exists(self, path: str) -> bool:
        return self.runner.run(self.ssh_command(f"test -e {shlex.quote(path)}")).success

    def is_dir(self, path: str) -> bool:
        return self.runner.run(self.ssh_command(f"test -d {shlex.quote(path)}")).success

    def fetch_to_file(self, command: str, path: str) -> CommandResult:
        """Run a remote command and stream its stdout into a local file."""
        return self.execute(command, stdout_path=path)

    def sync(self, source_path: str, dest_path: str, excludes: Iterable[str] = (),
             delete: bool = False, description: str = "", directory: bool = True,
             exclude_from: Optional[str] = None) -> bool:
        """
        Pull source_path from the remote host with rsync.

        Directories are synced content-to-content (trailing slashes on both
        sides); single files are copied to dest_path.
        """
        description = description or source_path
        log_message(f"Starting migration of {description}...")

        options = list(RSYNC_OPTIONS)
        for pattern in excludes:
            options.append(f"--exclude={pattern}")
        if exclude_from:
            options.append(f"--exclude-from={exclude_from}")
        if delete:
            options.append("--delete")
        options += ["-e", " ".join(["ssh", *(shlex.quote(o) for o in self._ssh_options())])]

        if directory:
            os.makedirs(dest_path, exist_ok=True)
            source = f"{self.address}:{source_path.rstrip('/')}/"
            dest = f"{dest_path.rstrip('/')}/"
        else:
            os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)
            source = f"{self.address}:{source_path}"
            dest = dest_path

        command = ["rsync", *options, source, dest]
        log_message(f"Rsync command: {' '.join(command)}", "DEBUG")
        result = self.runner.run(command)
        if result.success:
            log_message(f"{description} migration completed successfully", "SUCCESS")
            for line in result.stdout.splitlines():
                if line.startswith(("Number of files", "Total transferred file size")):
                    log_message(f"  {line.strip()}")
            return True

        log_message(f"{description} migration failed (exit code {result.returncode}): "
                    f"{result.stderr.strip()}", "ERROR")
        return False
