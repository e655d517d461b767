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
Package Manager Abstraction

Thin wrapper over apt/dnf/yum/pacman covering the handful of operations
the workflows need: availability query, install, reinstall and purge.
Installs are bounded by a timeout so a hung mirror cannot stall a repair.
"""

from typing import List, Optional

from .commands import CommandRunner, CommandResult
from .index import log_message

NONINTERACTIVE_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class PackageManager:
    """Package manager detected on the local host."""

    # Detection order matters: dnf hosts often also ship a yum shim
    DETECTION_ORDER = (
        ("apt", "apt-get"),
        ("dnf", "dnf"),
        ("yum", "yum"),
        ("pacman", "pacman"),
    )

    def __init__(self, runner: Optional[CommandRunner] = None, name: Optional[str] = None,
                 timeout: int = 120):
        self.runner = runner or CommandRunner()
        self.timeout = timeout
        self.name = name or self.detect()

    def detect(self) -> str:
        for name, binary in self.DETECTION_ORDER:
            if self.runner.which(binary):
                return name
        return "unknown"

    def _run(self, command: List[str], timeout: Optional[int] = None) -> CommandResult:
        return self.runner.run(command, env=NONINTERACTIVE_ENV, timeout=timeout)

    def is_available(self, package: str) -> bool:
        """Check whether the repositories offer a package."""
        if self.name == "apt":
            result = self._run(["apt-cache", "show", package])
        elif self.name in ("yum", "dnf"):
            result = self._run([self.name, "list", "available", package])
        elif self.name == "pacman":
            result = self._run(["pacman", "-Si", package])
        else:
            return False
        return result.success

    def update_index(self) -> bool:
        if self.name == "apt":
            return self._run(["apt-get", "update"], timeout=self.timeout).success
        if self.name == "pacman":
            return self._run(["pacman", "-Sy"], timeout=self.timeout).success
        return True

    def install(self, *packages: str, update: bool = False) -> bool:
        """
        Install packages non-interactively.

        Args:
            packages: package names
            update: refresh the package index first (apt/pacman)

        Returns:
            bool: True if the package manager reported success
        """
        if not packages:
            return True
        if self.name == "unknown":
            log_message(f"No supported package manager found; install manually: {' '.join(packages)}", "WARNING")
            return False

        if update:
            self.update_index()

        if self.name == "apt":
            command = ["apt-get", "install", "-y", *packages]
        elif self.name in ("yum", "dnf"):
            command = [self.name, "install", "-y", *packages]
        else:
            command = ["pacman", "-S", "--noconfirm", *packages]

        log_message(f"Installing package(s): {' '.join(packages)}")
        result = self._run(command, timeout=self.timeout)
        if result.success:
            log_message(f"Installed: {' '.join(packages)}", "SUCCESS")
            return True

        reason = "timed out" if result.timed_out else f"exit code {result.returncode}"
        log_message(f"Failed to install {' '.join(packages)} ({reason})", "WARNING")
        if result.stderr.strip():
            log_message(f"Error output: {result.stderr.strip()}", "DEBUG")
        return False

    def reinstall(self, *packages: str) -> bool:
        if not packages or self.name == "unknown":
            return False
        if self.name == "apt":
            command = ["apt-get", "install", "--reinstall", "-y", *packages]
        elif self.name in ("yum", "dnf"):
            command = [self.name, "reinstall", "-y", *packages]
        else:
            command = ["pacman", "-S", "--noconfirm", *packages]

        log_message(f"Reinstalling package(s): {' '.join(packages)}")
        result = self._run(command, timeout=self.timeout)
        if not result.success:
            log_message(f"Reinstall of {' '.join(packages)} failed (exit code {result.returncode})", "WARNING")
        return result.success

    def purge(self, *packages: str) -> bool:
        """Remove packages including their configuration."""
        if not packages or self.name == "unknown":
            return False
        if self.name == "apt":
            result = self._run(["apt-get", "remove", "--purge", "-y", *packages])
            if result.success:
                self._run(["apt-get", "autoremove", "-y"])
        elif self.name in ("yum", "dnf"):
            result = self._run([self.name, "remove", "-y", *packages])
        else:
            result = self._run(["pacman", "-Rns", "--noconfirm", *packages])

        if not result.success:
            log_message(f"Failed to remove {' '.join(packages)} (exit code {result.returncode})", "WARNING")
        return result.success

    def installed_packages(self, pattern: str) -> List[str]:
        """Names of installed packages containing ``pattern``."""
        if self.name == "apt":
            result = self._run(["dpkg", "-l"])
            names = []
            for line in result.stdout.splitlines():
                parts = line.split()
                if len(parts) >= 2 and parts[0] == "ii" and pattern in parts[1]:
                    names.append(parts[1])
            return names
        if self.name in ("yum", "dnf"):
            result = self._run(["rpm", "-qa", "--qf", "%{NAME}\\n"])
        elif self.name == "pacman":
            result = self._run(["pacman", "-Qq"])
        else:
            return []
        return [line.strip() for line in result.stdout.splitlines() if pattern in line]
