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
Host/service migration driver.
"""

from .driver import HostMigrationError, StepName, StepResult, RunContext, StepRunner, STEP_DESCRIPTIONS
from .remote import RemoteExecutor
from .steps import MigrationSteps, parse_sync_path
from .report import render_report, write_report
from .index import HostMigrationDriver, main

__all__ = [
    'HostMigrationError',
    'StepName',
    'StepResult',
    'RunContext',
    'StepRunner',
    'STEP_DESCRIPTIONS',
    'RemoteExecutor',
    'MigrationSteps',
    'parse_sync_path',
    'render_report',
    'write_report',
    'HostMigrationDriver',
    'main'
]
