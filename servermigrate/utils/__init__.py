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
Utilities shared by the migration workflows.

Logging, external command execution, package and service management,
permissions, step state, confirmations, configuration and backups.
"""

from .index import log_message, setup_logging, format_duration, create_run_log_dir, banner, timestamp
from .commands import CommandRunner, CommandResult
from .package_manager import PackageManager
from .services import ServiceManager
from .permissions import PermissionManager, PermissionTarget, first_existing_user, first_existing_group
from .state_manager import StateManager, StateManagerError
from .prompts import Confirmer, ConfirmPolicy, prompt_password
from .config import load_config, section
from .backup import create_archive, copy_tree_backup, BackupError

__all__ = [
    'log_message',
    'setup_logging',
    'format_duration',
    'create_run_log_dir',
    'banner',
    'timestamp',
    'CommandRunner',
    'CommandResult',
    'PackageManager',
    'ServiceManager',
    'PermissionManager',
    'PermissionTarget',
    'first_existing_user',
    'first_existing_group',
    'StateManager',
    'StateManagerError',
    'Confirmer',
    'ConfirmPolicy',
    'prompt_password',
    'load_config',
    'section',
    'create_archive',
    'copy_tree_backup',
    'BackupError'
]
