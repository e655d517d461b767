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
Command execution for the migration workflows.

Every external tool (psql, pg_dump, nginx, rsync, ssh, systemctl, docker,
the package manager) is reached through CommandRunner so that workflows
can be exercised against a fake runner in tests.
"""

import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

from .index import log_message


@dataclass
class CommandResult:
    """Outcome of one external command."""
    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """stdout and stderr combined, the way a terminal would show them."""
        parts = [p for p in (self.stdout, self.stderr) if p]
        return "\n".join(p.rstrip("\n") for p in parts)


class CommandRunner:
    """Synchronous call / exit code / stdout contract over subprocess."""

    def run(self, command: List[str], env: Optional[Dict[str, str]] = None,
            timeout: Optional[int] = None, input_text: Optional[str] = None,
            cwd: Optional[str] = None, stdout_path: Optional[str] = None) -> CommandResult:
        """
        Run a command and capture its result.

        Args:
            command: argv list, never a shell string
            env: extra environment variables for this invocation only
            timeout: seconds before the command is killed
            input_text: text fed to stdin
            cwd: working directory
            stdout_path: write stdout to this file instead of capturing it

        Returns:
            CommandResult: never raises for a failing or missing command
        """
        command = [str(part) for part in command]
        log_message(f"Running: {' '.join(command)}", "DEBUG")

        run_env = None
        if env:
            run_env = os.environ.copy()
            run_env.update(env)

        try:
            if stdout_path:
                with open(stdout_path, 'wb') as out:
                    result = subprocess.run(
                        command,
                        stdout=out,
                        stderr=subprocess.PIPE,
                        input=input_text.encode() if input_text is not None else None,
                        env=run_env,
                        cwd=cwd,
                        timeout=timeout
                    )
                return CommandResult(
                    command=command,
                    returncode=result.returncode,
                    stderr=result.stderr.decode(errors="replace") if result.stderr else ""
                )

            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                input=input_text,
                env=run_env,
                cwd=cwd,
                timeout=timeout
            )
            return CommandResult(
                command=command,
                returncode=result.returncode,
                stdout=result.stdout or "",
                stderr=result.stderr or ""
            )

        except subprocess.TimeoutExpired:
            log_message(f"Command timed out after {timeout}s: {' '.join(command)}", "WARNING")
            return CommandResult(command=command, returncode=124, timed_out=True,
                                 stderr=f"timed out after {timeout}s")
        except FileNotFoundError:
            return CommandResult(command=command, returncode=127,
                                 stderr=f"{command[0]}: command not found")
        except OSError as e:
            return CommandResult(command=command, returncode=126, stderr=str(e))

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)
