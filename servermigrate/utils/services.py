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
Service Manager

systemctl wrapper used by the repair and host migration workflows.
"""

from typing import List, Optional

from .commands import CommandRunner
from .index import log_message


class ServiceManager:
    """Start/stop/enable/status over systemctl."""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    def _systemctl(self, *args: str):
        return self.runner.run(["systemctl", *args])

    def start(self, name: str) -> bool:
        result = self._systemctl("start", name)
        if not result.success:
            log_message(f"Failed to start {name}: {result.stderr.strip()}", "WARNING")
        return result.success

    def stop(self, name: str) -> bool:
        return self._systemctl("stop", name).success

    def restart(self, name: str) -> bool:
        result = self._systemctl("restart", name)
        if not result.success:
            log_message(f"Failed to restart {name}: {result.stderr.strip()}", "WARNING")
        return result.success

    def enable(self, name: str) -> bool:
        return self._systemctl("enable", name).success

    def is_active(self, name: str) -> bool:
        result = self._systemctl("is-active", name)
        return result.stdout.strip() == "active"

    def is_enabled(self, name: str) -> bool:
        result = self._systemctl("is-enabled", name)
        return result.stdout.strip() == "enabled"

    def daemon_reload(self) -> bool:
        return self._systemctl("daemon-reload").success

    def list_units(self, pattern: str) -> List[str]:
        """Unit files whose name contains ``pattern``."""
        result = self._systemctl("list-unit-files", "--no-legend", "--no-pager")
        units = []
        for line in result.stdout.splitlines():
            parts = line.split()
            if parts and pattern in parts[0]:
                units.append(parts[0])
        return units

    def unit_exists(self, name: str) -> bool:
        """Exact match on the unit name; ``cron`` does not match ``anacron.service``."""
        unit = name if "." in name else f"{name}.service"
        return unit in self.list_units(name)

    def status_snapshot(self, name: str, lines: int = 3) -> str:
        """First lines of ``systemctl status`` for reports."""
        result = self._systemctl("status", name, "--no-pager", "-l")
        text = result.stdout.strip()
        if not text:
            return f"{name}: status unavailable"
        return "\n".join(text.splitlines()[:lines])
