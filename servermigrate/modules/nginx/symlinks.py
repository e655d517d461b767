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
Broken symlink detection and repair for an nginx installation.

A link is broken when its target does not exist. Replacement targets are
inferred from where the link lives:

- ``.../sites-enabled/<name>``   -> ``.../sites-available/<name>``
- ``.../modules-enabled/<name>`` -> ``.../modules-available/<name>``, then module dirs
- ``.../modules/<name>``         -> ``<module dir>/<name>`` for each candidate module dir
- the nginx binary itself        -> first executable candidate binary

The first candidate that exists wins. Nothing is guessed beyond that.
"""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ...utils import log_message


class SymlinkState(str, Enum):
    BROKEN = "broken"
    REPAIRED = "repaired"
    UNRESOLVED = "unresolved"
    GONE = "gone"


@dataclass
class SymlinkEntry:
    """A link found dangling during a scan."""
    path: str
    target: str
    state: SymlinkState = SymlinkState.BROKEN
    new_target: Optional[str] = None

    @property
    def repaired(self) -> bool:
        return self.state == SymlinkState.REPAIRED


def scan_broken_symlinks(roots: Iterable[str], binary: Optional[str] = None) -> List[SymlinkEntry]:
    """Walk each existing root (without following links) and collect dangling links."""
    found = []
    seen = set()

    def consider(path: str) -> None:
        if path in seen or not os.path.islink(path) or os.path.exists(path):
            return
        seen.add(path)
        try:
            target = os.readlink(path)
        except OSError:
            target = "unknown target"
        found.append(SymlinkEntry(path=path, target=target))
        log_message(f"Broken symlink found: {path} -> {target}", "WARNING")

    for root in roots:
        if not os.path.isdir(root):
            continue
        log_message(f"Checking directory: {root}")
        for current, dirs, files in os.walk(root):
            for name in dirs + files:
                consider(os.path.join(current, name))

    if binary:
        consider(binary)

    log_message(f"Found {len(found)} broken symlinks")
    return found


class SymlinkRepairer:
    """Chooses and applies replacement targets for broken links."""

    def __init__(self, module_dirs: Sequence[str], binary_candidates: Sequence[str],
                 binary: Optional[str] = None):
        self.module_dirs = list(module_dirs)
        self.binary_candidates = list(binary_candidates)
        self.binary = binary

    def candidates(self, entry: SymlinkEntry) -> List[Path]:
        link = Path(entry.path)
        name = link.name
        parent = link.parent.name
        options: List[Path] = []

        if parent == "sites-enabled":
            options.append(link.parent.parent / "sites-available" / name)

        if parent == "modules-enabled":
            options.append(link.parent.parent / "modules-available" / name)

        if parent in ("modules", "modules-enabled"):
            options.extend(Path(d) / name for d in self.module_dirs)

        if self.binary and os.path.abspath(entry.path) == os.path.abspath(self.binary):
            options.extend(Path(b) for b in self.binary_candidates if b != entry.path)

        return options

    def choose_target(self, entry: SymlinkEntry) -> Optional[Path]:
        binary_link = self.binary and os.path.abspath(entry.path) == os.path.abspath(self.binary)
        for option in self.candidates(entry):
            if not option.is_file():
                continue
            if binary_link and not os.access(option, os.X_OK):
                continue
            return option
        return None

    def repair(self, entry: SymlinkEntry) -> bool:
        """Point the link at the inferred target; False when there is none."""
        if not os.path.islink(entry.path):
            log_message(f"Symlink no longer exists: {entry.path}", "WARNING")
            entry.state = SymlinkState.GONE
            return False

        target = self.choose_target(entry)
        if target is None:
            entry.state = SymlinkState.UNRESOLVED
            return False

        try:
            os.unlink(entry.path)
            os.symlink(str(target), entry.path)
        except OSError as e:
            log_message(f"Failed to relink {entry.path} -> {target}: {e}", "WARNING")
            entry.state = SymlinkState.UNRESOLVED
            return False

        entry.state = SymlinkState.REPAIRED
        entry.new_target = str(target)
        log_message(f"✓ Fixed: {entry.path} -> {target}", "SUCCESS")
        return True
