"""Shared fakes for the workflow tests."""

import os
from typing import Callable, Dict, List, Optional

import pytest

from servermigrate.modules.database.models import DatabaseTarget
from servermigrate.utils.commands import CommandResult


def ok(stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(command=[], returncode=0, stdout=stdout, stderr=stderr)


def fail(stderr: str = "error", returncode: int = 1) -> CommandResult:
    return CommandResult(command=[], returncode=returncode, stderr=stderr)


class FakeRunner:
    """Records every command; answers through an optional handler."""

    def __init__(self, handler: Optional[Callable[[List[str]], CommandResult]] = None,
                 available: Optional[set] = None):
        self.handler = handler
        self.available = set(available or ())
        self.commands: List[List[str]] = []
        self.calls: List[Dict] = []

    def run(self, command, env=None, timeout=None, input_text=None, cwd=None, stdout_path=None):
        command = [str(c) for c in command]
        self.commands.append(command)
        self.calls.append({"command": command, "env": env, "input_text": input_text,
                           "cwd": cwd, "stdout_path": stdout_path})
        if self.handler:
            result = self.handler(command)
            if result is not None:
                return result
        return ok()

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.available else None

    def ran(self, *prefix: str) -> bool:
        return any(cmd[:len(prefix)] == list(prefix) for cmd in self.commands)


class FakePostgresClient:
    """In-memory stand-in for PostgresClient."""

    def __init__(self, host: str = "db", databases: Optional[Dict[str, int]] = None,
                 dump_bytes: bytes = b"PGDMP-data", restore_results: Optional[List[CommandResult]] = None,
                 settings=("en_US.UTF-8", "en_US.UTF-8", "UTF8"), reachable: bool = True,
                 version: str = "15.4"):
        self.target = DatabaseTarget(host, password="secret")
        self.databases = dict(databases or {})
        self.dump_bytes = dump_bytes
        self.restore_results = list(restore_results or [])
        self.settings = settings
        self.reachable = reachable
        self.version = version
        self.calls: List[tuple] = []
        self.restored: Dict[str, int] = {}

    def ping(self):
        return self.reachable

    def server_version(self):
        return self.version

    def list_databases(self):
        return list(self.databases)

    def database_exists(self, name):
        return name in self.databases

    def database_settings(self, name):
        return self.settings

    def database_size(self, name):
        return "8 MB"

    def terminate_connections(self, name):
        self.calls.append(("terminate", name))
        return ok()

    def drop_database(self, name):
        self.calls.append(("drop", name))
        self.databases.pop(name, None)
        return ok()

    def create_database(self, name, owner, encoding=None, collate=None, ctype=None, template0=True):
        self.calls.append(("create", name, template0))
        self.databases[name] = 0
        return ok()

    def roles(self):
        return {"postgres"}

    def dump_globals(self):
        return ok("CREATE ROLE postgres;\nCREATE ROLE app;\n")

    def apply_script(self, script, database=None):
        self.calls.append(("globals", script))
        return ok()

    def dump(self, database, path):
        self.calls.append(("dump", database))
        with open(path, "wb") as f:
            f.write(self.dump_bytes)
        return ok()

    def restore(self, database, path):
        self.calls.append(("restore", database))
        result = self.restore_results.pop(0) if self.restore_results else ok()
        return result

    def table_count(self, database):
        return self.databases.get(database)

    def sequences(self, database):
        return [("users_id_seq", "users", "id")]

    def reset_sequence(self, database, sequence, table, column):
        self.calls.append(("setval", sequence))
        return ok()

    def called(self, action: str) -> bool:
        return any(call[0] == action for call in self.calls)


class FakePackageManager:
    def __init__(self, name: str = "apt", available: Optional[set] = None, install_ok: bool = True):
        self.name = name
        self.available = set(available or ())
        self.install_ok = install_ok
        self.installed: List[tuple] = []
        self.reinstalled: List[tuple] = []
        self.purged: List[tuple] = []

    def is_available(self, package):
        return package in self.available

    def update_index(self):
        return True

    def install(self, *packages, update=False):
        self.installed.append(packages)
        return self.install_ok

    def reinstall(self, *packages):
        self.reinstalled.append(packages)
        return True

    def purge(self, *packages):
        self.purged.append(packages)
        return True

    def installed_packages(self, pattern):
        return []


class FakeServices:
    def __init__(self, active: Optional[set] = None, units: Optional[List[str]] = None):
        self.active = set(active or ())
        self.units = list(units or [])
        self.actions: List[tuple] = []

    def start(self, name):
        self.actions.append(("start", name))
        self.active.add(name)
        return True

    def stop(self, name):
        self.actions.append(("stop", name))
        self.active.discard(name)
        return True

    def restart(self, name):
        self.actions.append(("restart", name))
        return True

    def enable(self, name):
        self.actions.append(("enable", name))
        return True

    def is_active(self, name):
        return name in self.active

    def is_enabled(self, name):
        return True

    def daemon_reload(self):
        self.actions.append(("daemon-reload",))
        return True

    def list_units(self, pattern):
        return [u for u in self.units if pattern in u]

    def unit_exists(self, name):
        unit = name if "." in name else f"{name}.service"
        return unit in self.units

    def status_snapshot(self, name, lines=3):
        return f"{name}.service - active (running)" if name in self.active else f"{name}: inactive"


class ScriptedConfirm:
    """Answers questions from a list, recording what was asked."""

    def __init__(self, *answers: bool, default: Optional[bool] = None):
        self.answers = list(answers)
        self.default = default
        self.questions: List[str] = []

    def __call__(self, question, default=False):
        self.questions.append(question)
        if self.answers:
            return self.answers.pop(0)
        return default if self.default is None else self.default


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    os.makedirs(path)
    return str(path)
