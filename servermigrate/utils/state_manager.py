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
State Manager for resumable runs

Keeps one record per tool of which named steps have completed, so an
interrupted run can pick up where it stopped. Steps are keyed by an Enum
supplied by the caller; the record is stored as JSON with a fixed schema:

    {
        "schema_version": 1,
        "tool": "host",
        "updated": 1718000000,
        "steps": {"prerequisites": true, "ssh_connection": false, ...}
    }

Usage:
    from servermigrate.utils.state_manager import StateManager

    state = StateManager("/opt/migration/state.json", StepName, tool="host")
    if not state.is_completed(StepName.MIGRATE_NGINX):
        ...
        state.mark_completed(StepName.MIGRATE_NGINX)
"""

import json
import os
import time
from dataclasses import dataclass, asdict, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Type

from .index import log_message

SCHEMA_VERSION = 1


class StateManagerError(Exception):
    """Custom exception for state manager operation failures."""
    pass


@dataclass
class RunState:
    """Serialized step completion record."""
    tool: str
    steps: Dict[str, bool] = field(default_factory=dict)
    schema_version: int = SCHEMA_VERSION
    updated: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RunState':
        if not isinstance(data, dict):
            raise StateManagerError("state file does not contain an object")
        if data.get("schema_version") != SCHEMA_VERSION:
            raise StateManagerError(f"unsupported schema version {data.get('schema_version')!r}")
        steps = data.get("steps", {})
        if not isinstance(steps, dict):
            raise StateManagerError("'steps' must be an object")
        return cls(
            tool=str(data.get("tool", "")),
            steps={str(k): bool(v) for k, v in steps.items()},
            schema_version=SCHEMA_VERSION,
            updated=int(data.get("updated", 0))
        )


class StateManager:
    """Enum-keyed step completion record persisted to a JSON file."""

    def __init__(self, state_file: str, steps: Type[Enum], tool: str):
        self.state_file = Path(state_file)
        self.step_type = steps
        self.tool = tool
        self.state = self._load()

    def _fresh(self) -> RunState:
        return RunState(tool=self.tool, steps={step.value: False for step in self.step_type})

    def _load(self) -> RunState:
        if not self.state_file.exists():
            return self._fresh()

        try:
            with open(self.state_file, 'r') as f:
                loaded = RunState.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError, StateManagerError) as e:
            log_message(f"Ignoring unreadable state file {self.state_file}: {e}", "WARNING")
            return self._fresh()

        if loaded.tool != self.tool:
            log_message(f"State file {self.state_file} belongs to '{loaded.tool}', starting fresh", "WARNING")
            return self._fresh()

        state = self._fresh()
        known = set(state.steps)
        for name, completed in loaded.steps.items():
            if name in known:
                state.steps[name] = completed
            else:
                log_message(f"Ignoring unknown step '{name}' in {self.state_file}", "WARNING")
        state.updated = loaded.updated

        log_message("Loaded run state:")
        for name, completed in state.steps.items():
            log_message(f"  - {name}: {'Completed' if completed else 'Pending'}")
        return state

    def _save(self) -> None:
        self.state.updated = int(time.time())
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
            with open(tmp_file, 'w') as f:
                json.dump(self.state.to_dict(), f, indent=2)
            os.replace(tmp_file, self.state_file)
        except OSError as e:
            raise StateManagerError(f"Failed to save state to {self.state_file}: {e}") from e

    def is_completed(self, step: Enum) -> bool:
        return self.state.steps.get(step.value, False)

    def mark_completed(self, step: Enum) -> None:
        self.state.steps[step.value] = True
        self._save()

    def pending(self) -> List[Enum]:
        return [step for step in self.step_type if not self.is_completed(step)]

    def reset(self) -> None:
        """Forget all progress and remove the state file."""
        self.state = self._fresh()
        if self.state_file.exists():
            self.state_file.unlink()
