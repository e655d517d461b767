"""Tests for the resumable step record."""

import json
from enum import Enum

from servermigrate.utils.state_manager import SCHEMA_VERSION, StateManager


class Step(str, Enum):
    FIRST = "first"
    SECOND = "second"


class TestStateManager:
    """Loading, saving and resetting step state."""

    def test_fresh_state_has_every_step_pending(self, tmp_path):
        state = StateManager(str(tmp_path / "state.json"), Step, "host")
        assert state.pending() == [Step.FIRST, Step.SECOND]

    def test_completion_survives_reload(self, tmp_path):
        path = tmp_path / "state.json"
        StateManager(str(path), Step, "host").mark_completed(Step.FIRST)

        reloaded = StateManager(str(path), Step, "host")

        assert reloaded.is_completed(Step.FIRST)
        assert not reloaded.is_completed(Step.SECOND)
        data = json.loads(path.read_text())
        assert data["schema_version"] == SCHEMA_VERSION
        assert data["steps"] == {"first": True, "second": False}

    def test_corrupt_file_starts_fresh(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        assert StateManager(str(path), Step, "host").pending() == [Step.FIRST, Step.SECOND]

    def test_wrong_schema_starts_fresh(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"schema_version": 99, "tool": "host", "steps": {"first": True}}))
        assert not StateManager(str(path), Step, "host").is_completed(Step.FIRST)

    def test_other_tool_starts_fresh(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"schema_version": SCHEMA_VERSION, "tool": "db", "steps": {"first": True}}))
        assert not StateManager(str(path), Step, "host").is_completed(Step.FIRST)

    def test_unknown_steps_are_dropped(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"schema_version": SCHEMA_VERSION, "tool": "host",
                                    "steps": {"first": True, "retired": True}}))
        state = StateManager(str(path), Step, "host")
        assert state.is_completed(Step.FIRST)
        assert "retired" not in state.state.steps

    def test_reset_removes_file(self, tmp_path):
        path = tmp_path / "state.json"
        state = StateManager(str(path), Step, "host")
        state.mark_completed(Step.FIRST)

        state.reset()

        assert not path.exists()
        assert state.pending() == [Step.FIRST, Step.SECOND]
