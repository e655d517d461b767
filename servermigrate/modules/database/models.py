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
Data types for the PostgreSQL migration workflow.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


@dataclass(frozen=True)
class DatabaseTarget:
    """Connection parameters for one PostgreSQL server."""
    host: str
    port: int = 5432
    user: str = "postgres"
    password: str = field(default="", repr=False)
    database: str = "postgres"

    def env(self) -> Dict[str, str]:
        """Environment for a single client invocation; the password never reaches argv."""
        return {"PGPASSWORD": self.password} if self.password else {}

    def connection_args(self, database: Optional[str] = None) -> List[str]:
        return ["-h", self.host, "-p", str(self.port), "-U", self.user,
                "-d", database or self.database]

    def describe(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"


class DatabaseOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class DatabaseRecord:
    """Result of migrating one database."""
    name: str
    dest_name: str
    source_tables: Optional[int] = None
    dest_tables: Optional[int] = None
    duration: float = 0.0
    outcome: DatabaseOutcome = DatabaseOutcome.PENDING
    restore_attempts: int = 0
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def fail(self, message: str) -> None:
        self.outcome = DatabaseOutcome.FAILED
        self.error = message

    @property
    def succeeded(self) -> bool:
        return self.outcome == DatabaseOutcome.SUCCEEDED


@dataclass
class MigrationSummary:
    """Aggregate of one migration run."""
    records: List[DatabaseRecord] = field(default_factory=list)
    total_duration: float = 0.0
    log_dir: Optional[str] = None

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.records if r.outcome == DatabaseOutcome.SUCCEEDED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.records if r.outcome == DatabaseOutcome.FAILED)

    @property
    def warning_count(self) -> int:
        return sum(len(r.warnings) for r in self.records)

    @property
    def exit_code(self) -> int:
        # Exit statuses wrap at 256
        return min(self.failed, 255)
