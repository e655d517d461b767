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
Pre-change backups

Timestamped copies of configuration state taken before a workflow touches
it. Archives are compressed tarballs; tree copies keep symlinks as links so
a broken link can be restored exactly as it was found.
"""

import shutil
import tarfile
from pathlib import Path
from typing import Iterable, List, Optional

from .index import log_message, timestamp


class BackupError(Exception):
    """Custom exception for backup creation failures."""
    pass


def create_archive(paths: Iterable[str], backup_dir: str, prefix: str) -> Optional[Path]:
    """
    Create <backup_dir>/<prefix>_<timestamp>.tar.gz holding every existing path.

    Returns the archive path, or None when none of the paths exist.
    """
    existing = [Path(p) for p in paths if Path(p).exists()]
    if not existing:
        log_message(f"Nothing to back up for {prefix}", "WARNING")
        return None

    target_dir = Path(backup_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    archive = target_dir / f"{prefix}_{timestamp()}.tar.gz"

    try:
        with tarfile.open(archive, "w:gz") as tar:
            for path in existing:
                arcname = str(path.resolve()).lstrip("/") or path.name
                tar.add(str(path), arcname=arcname)
                log_message(f"  + {path}", "DEBUG")
    except (OSError, tarfile.TarError) as e:
        raise BackupError(f"Failed to create archive {archive}: {e}") from e

    log_message(f"✓ Created backup archive {archive}")
    return archive


def copy_tree_backup(paths: Iterable[str], backup_dir: str) -> List[Path]:
    """
    Copy each existing file or directory into a fresh timestamped directory.

    Symlinks are copied as links, including dangling ones.
    """
    destination = Path(backup_dir) / f"backup_{timestamp()}"
    destination.mkdir(parents=True, exist_ok=True)
    copied = []

    for source in (Path(p) for p in paths):
        if not source.exists() and not source.is_symlink():
            log_message(f"Skipping backup of {source} - does not exist", "DEBUG")
            continue
        target = destination / source.name
        try:
            if source.is_dir() and not source.is_symlink():
                shutil.copytree(source, target, symlinks=True)
            else:
                shutil.copy2(source, target, follow_symlinks=False)
            copied.append(target)
            log_message(f"Backed up {source} → {target}")
        except (OSError, shutil.Error) as e:
            log_message(f"Failed to back up {source}: {e}", "WARNING")

    return copied
