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
Permission Management Utilities

Applies ownership and modes to files and directories left behind by a
migration or repair. Changes go through chown/chmod so the same code path
works for single files and recursive trees; paths that do not exist are
skipped rather than treated as failures.
"""

import grp
import os
import pwd
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from .commands import CommandRunner
from .index import log_message


@dataclass
class PermissionTarget:
    """Represents a file or directory with its desired permissions."""
    path: str
    owner: Optional[str] = None
    group: Optional[str] = None
    mode: Union[str, int, None] = None  # "755", "0o755" or 0o755
    recursive: bool = False

    def __post_init__(self):
        if isinstance(self.mode, str):
            self.mode = int(self.mode[2:] if self.mode.startswith('0o') else self.mode, 8)


def first_existing_user(candidates: Sequence[str]) -> Optional[str]:
    """Return the first account name in candidates known to the system."""
    for name in candidates:
        try:
            pwd.getpwnam(name)
            return name
        except KeyError:
            continue
    return None


def first_existing_group(candidates: Sequence[str]) -> Optional[str]:
    for name in candidates:
        try:
            grp.getgrnam(name)
            return name
        except KeyError:
            continue
    return None


class PermissionManager:
    """Manages file and directory permissions for the migration workflows."""

    def __init__(self, module_name: str = "unknown", runner: Optional[CommandRunner] = None):
        self.module_name = module_name
        self.runner = runner or CommandRunner()

    def set_permissions(self, targets: List[PermissionTarget]) -> bool:
        """
        Set permissions for multiple targets.

        Args:
            targets: List of PermissionTarget objects

        Returns:
            bool: True if every target was handled, False if none were;
            partial success is logged as a warning and counts as True.
        """
        if not targets:
            log_message("No permission targets specified", "WARNING")
            return True

        success_count = 0
        total_targets = len(targets)

        log_message(f"[{self.module_name}] Setting permissions for {total_targets} targets...")

        for target in targets:
            if self._set_single_permission(target):
                success_count += 1
            else:
                log_message(f"Failed to set permissions for {target.path}", "ERROR")

        if success_count == total_targets:
            log_message(f"Successfully set permissions for all {total_targets} targets")
            return True
        log_message(f"Set permissions for {success_count}/{total_targets} targets", "WARNING")
        return success_count > 0

    def _set_single_permission(self, target: PermissionTarget) -> bool:
        path = target.path

        if not os.path.lexists(path):
            log_message(f"Skipping {path} - does not exist", "DEBUG")
            return True

        try:
            if target.owner and not self._set_ownership(path, target.owner, target.group, target.recursive):
                return False
            if target.mode is not None and not self._set_mode(path, target.mode, target.recursive):
                return False

            owner = f"{target.owner}:{target.group or target.owner}" if target.owner else "-"
            mode = oct(target.mode) if target.mode is not None else "-"
            log_message(f"✓ Set permissions for {path} ({owner} {mode})")
            return True

        except Exception as e:
            log_message(f"Error setting permissions for {path}: {e}", "ERROR")
            return False

    def _set_ownership(self, path: str, owner: str, group: Optional[str], recursive: bool = False) -> bool:
        cmd = ["chown"]
        if recursive and os.path.isdir(path):
            cmd.append("-R")
        cmd.extend([f"{owner}:{group or owner}", path])

        result = self.runner.run(cmd)
        if not result.success:
            log_message(f"Failed to set ownership for {path}: {result.stderr.strip()}", "ERROR")
            return False
        return True

    def _set_mode(self, path: str, mode: int, recursive: bool = False) -> bool:
        cmd = ["chmod"]
        if recursive and os.path.isdir(path):
            cmd.append("-R")
        cmd.extend([oct(mode)[2:], path])

        result = self.runner.run(cmd)
        if not result.success:
            log_message(f"Failed to set permissions for {path}: {result.stderr.strip()}", "ERROR")
            return False
        return True

    def set_tree_modes(self, root: str, dir_mode: Optional[int] = 0o755, file_mode: int = 0o644,
                       file_suffix: Optional[str] = None) -> int:
        """
        Walk root and chmod directories and regular files separately.

        Symlinks are left alone and a dir_mode of None leaves directories
        untouched. Returns the number of entries that failed.
        """
        failures = 0
        if not os.path.isdir(root):
            log_message(f"Skipping {root} - not a directory", "DEBUG")
            return failures

        for current, dirs, files in os.walk(root):
            if dir_mode is not None:
                try:
                    os.chmod(current, dir_mode)
                except OSError as e:
                    log_message(f"Could not chmod {current}: {e}", "WARNING")
                    failures += 1
            for name in files:
                if file_suffix and not name.endswith(file_suffix):
                    continue
                path = os.path.join(current, name)
                if os.path.islink(path):
                    continue
                try:
                    os.chmod(path, file_mode)
                except OSError as e:
                    log_message(f"Could not chmod {path}: {e}", "WARNING")
                    failures += 1
        return failures
