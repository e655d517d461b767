"""Tests for the host migration driver and its steps."""

import os

import pytest

from servermigrate.modules.host.driver import RunContext, StepName, StepRunner
from servermigrate.modules.host.index import HostMigrationDriver, build_parser
from servermigrate.modules.host.remote import RemoteExecutor
from servermigrate.modules.host.report import render_report
from servermigrate.modules.host.steps import MigrationSteps, parse_sync_path
from servermigrate.modules.host.driver import HostMigrationError
from servermigrate.utils import PermissionManager, StateManager
from tests.conftest import FakePackageManager, FakeRunner, FakeServices, ScriptedConfirm, fail, ok


@pytest.fixture
def context(tmp_path):
    base = tmp_path / "migration"
    base.mkdir()
    return RunContext(source="root@old:22", base_dir=str(base), backup_dir=str(base / "backup"))


class Recorder:
    """Step functions that note when they run."""

    def __init__(self):
        self.called = []

    def step(self, name, result=True):
        def run():
            self.called.append(name)
            return result
        return run

    def raising(self, name, exc):
        def run():
            self.called.append(name)
            raise exc
        return run


class FakeRemote:
    def __init__(self, lines=None, dirs=()):
        self.line_map = lines or {}
        self.dirs = set(dirs)
        self.synced = []
        self.executed = []
        self.fetched = b"\x1f\x8b image"
        self.fetch_result = ok()

    def describe(self):
        return "root@old:22"

    def test_connection(self):
        return True

    def lines(self, command):
        for key, value in self.line_map.items():
            if key in command:
                return list(value)
        return []

    def execute(self, command, retries=None, stdout_path=None):
        self.executed.append(command)
        return ok()

    def fetch_to_file(self, command, path):
        self.executed.append(command)
        with open(path, "wb") as f:
            f.write(self.fetched)
        return self.fetch_result

    def is_dir(self, path):
        return path in self.dirs

    def path_exists(self, path):
        return path in self.dirs

    def sync(self, source_path, dest_path, excludes=(), delete=False, description="", directory=True,
             exclude_from=None):
        self.synced.append((source_path, dest_path, tuple(excludes), delete))
        if directory:
            os.makedirs(dest_path, exist_ok=True)
        return True


class TestDriver:
    """Step sequencing, abort and report."""

    def test_declined_continue_stops_later_steps(self, context, tmp_path):
        recorder = Recorder()
        steps = [
            (StepName.PREREQUISITES, recorder.step("prerequisites")),
            (StepName.SSH_CONNECTION, recorder.step("ssh_connection", False)),
            (StepName.DISCOVER_APPLICATIONS, recorder.step("discover_applications")),
        ]
        report = tmp_path / "report.txt"
        driver = HostMigrationDriver(context, steps, ScriptedConfirm(False), services=FakeServices(),
                                     report_path=str(report))

        driver.run()

        assert recorder.called == ["prerequisites", "ssh_connection"]
        assert context.aborted
        assert context.exit_code == 1
        text = report.read_text()
        assert "prerequisites" in text
        assert "ssh_connection" in text
        assert "discover_applications" not in text
        assert "Steps Attempted: 2/3" in text

    def test_accepted_continue_runs_remaining_steps(self, context, tmp_path):
        recorder = Recorder()
        steps = [
            (StepName.PREREQUISITES, recorder.step("prerequisites", False)),
            (StepName.SSH_CONNECTION, recorder.step("ssh_connection")),
        ]
        driver = HostMigrationDriver(context, steps, ScriptedConfirm(True), services=FakeServices(),
                                     report_path=str(tmp_path / "r.txt"))

        driver.run()

        assert recorder.called == ["prerequisites", "ssh_connection"]
        assert context.failures == 1
        assert context.exit_code == 1

    def test_raising_step_counts_as_failure(self, context, tmp_path):
        recorder = Recorder()
        steps = [(StepName.PREREQUISITES, recorder.raising("prerequisites", RuntimeError("boom")))]
        driver = HostMigrationDriver(context, steps, ScriptedConfirm(True), services=FakeServices(),
                                     report_path=str(tmp_path / "r.txt"))

        driver.run()

        assert context.results[0].success is False
        assert context.results[0].error == "boom"

    def test_interrupt_still_writes_report(self, context, tmp_path):
        recorder = Recorder()
        steps = [
            (StepName.PREREQUISITES, recorder.raising("prerequisites", KeyboardInterrupt())),
            (StepName.SSH_CONNECTION, recorder.step("ssh_connection")),
        ]
        report = tmp_path / "report.txt"
        driver = HostMigrationDriver(context, steps, ScriptedConfirm(True), services=FakeServices(),
                                     report_path=str(report))

        driver.run()

        assert recorder.called == ["prerequisites"]
        assert context.exit_code == 130
        assert "INTERRUPTED" in report.read_text()

    def test_resume_skips_completed_steps(self, context, tmp_path):
        state = StateManager(str(tmp_path / "state.json"), StepName, "host")
        state.mark_completed(StepName.PREREQUISITES)
        recorder = Recorder()
        steps = [
            (StepName.PREREQUISITES, recorder.step("prerequisites")),
            (StepName.SSH_CONNECTION, recorder.step("ssh_connection")),
        ]
        driver = HostMigrationDriver(context, steps, ScriptedConfirm(True), services=FakeServices(),
                                     state=state, report_path=str(tmp_path / "r.txt"))

        driver.run()

        assert recorder.called == ["ssh_connection"]
        assert context.results[0].skipped
        assert state.is_completed(StepName.SSH_CONNECTION)

    def test_step_log_file_is_created(self, context):
        runner = StepRunner(context, ScriptedConfirm(True))
        result = runner.run_step("prerequisites", "Checking", lambda: True)

        assert os.path.exists(result.log_file)
        assert result.log_file.endswith("prerequisites_output.log")


class TestSteps:
    """Individual migration steps against a fake source server."""

    def make_steps(self, context, remote=None, runner=None, **kwargs):
        runner = runner or FakeRunner(available={"ssh", "rsync", "tar", "gzip", "nginx"})
        kwargs.setdefault("package_manager", FakePackageManager())
        kwargs.setdefault("services", FakeServices())
        kwargs.setdefault("confirm", ScriptedConfirm(default=False))
        kwargs.setdefault("is_root", lambda: True)
        return MigrationSteps(context, remote or FakeRemote(), runner=runner,
                              permissions=PermissionManager("host", runner), **kwargs)

    def test_discovery_records_application_directories(self, context):
        remote = FakeRemote(lines={
            "manage.py": ["/var/www/shop/manage.py"],
            "package.json": ["/srv/front/package.json"],
            "docker-compose": ["/opt/stack/docker-compose.yml"],
        })
        steps = self.make_steps(context, remote)

        assert steps.discover_applications()

        assert context.discovered["django"] == ["/var/www/shop"]
        assert context.discovered["nextjs"] == ["/srv/front"]
        assert context.discovered["compose"] == ["/opt/stack/docker-compose.yml"]
        listing = os.path.join(context.base_dir, "discovered_django.txt")
        assert open(listing).read() == "/var/www/shop\n"

    def test_not_root_and_declined(self, context):
        steps = self.make_steps(context, is_root=lambda: False, confirm=ScriptedConfirm(False))
        assert steps.prerequisites() is False

    def test_prerequisites_creates_directories(self, context):
        steps = self.make_steps(context)
        assert steps.prerequisites()
        assert os.path.isdir(context.backup_dir)

    def test_missing_tools_that_cannot_be_installed(self, context):
        runner = FakeRunner(available={"ssh"})
        steps = self.make_steps(context, runner=runner, package_manager=FakePackageManager(install_ok=False))
        assert steps.prerequisites() is False

    def test_skipped_subsystem_is_recorded(self, context):
        steps = self.make_steps(context, skip=["docker"])
        assert steps.migrate_docker()
        assert context.subsystems["docker"] == "skipped (disabled)"

    def test_nginx_with_invalid_config_stays_stopped(self, context, tmp_path):
        conf_dir = tmp_path / "etc_nginx"
        conf_dir.mkdir()
        runner = FakeRunner(lambda cmd: fail("nginx: [emerg] unknown directive") if cmd[:2] == ["nginx", "-t"]
                            else None, available={"nginx"})
        services = FakeServices()
        steps = self.make_steps(context, runner=runner, services=services,
                                config={"nginx_config_dir": str(conf_dir), "nginx_extra_paths": []})

        assert steps.migrate_nginx() is False

        assert ("start", "nginx") not in services.actions
        assert context.subsystems["nginx"] == "migrated, configuration invalid"

    def test_nginx_sync_uses_delete(self, context, tmp_path):
        conf_dir = tmp_path / "etc_nginx"
        remote = FakeRemote()
        services = FakeServices()
        steps = self.make_steps(context, remote, services=services,
                                config={"nginx_config_dir": str(conf_dir), "nginx_extra_paths": []})

        assert steps.migrate_nginx()

        assert remote.synced[0][0] == str(conf_dir)
        assert remote.synced[0][3] is True
        assert ("start", "nginx") in services.actions

    def test_file_trees_with_excludes(self, context, tmp_path):
        dest = tmp_path / "home_copy"
        remote = FakeRemote(lines={"wc -l": ["0"]})
        steps = self.make_steps(context, remote, sync_paths=[f"/home/alice:{dest}"])

        assert steps.migrate_files()

        assert remote.synced[0][:2] == ("/home/alice", str(dest))
        excludes = open(os.path.join(context.base_dir, "migration_excludes.txt")).read()
        assert "node_modules/" in excludes
        assert context.subsystems["files"] == "1/1 path(s) synced"

    def test_crontab_is_piped_to_local_crontab(self, context):
        runner = FakeRunner(available={"crontab"})
        remote = FakeRemote()
        remote.execute = lambda command, retries=None, stdout_path=None: ok("0 3 * * * /usr/local/bin/backup\n")
        steps = self.make_steps(context, remote, runner=runner, config={"cron_paths": [], "cron_users": []})

        assert steps.migrate_cron_jobs()

        call = next(c for c in runner.calls if c["command"] == ["crontab", "-"])
        assert call["input_text"] == "0 3 * * * /usr/local/bin/backup\n"

    def test_image_export_fails_when_docker_save_fails(self, context):
        remote = FakeRemote()
        remote.fetch_result = fail("Error response from daemon: No such image")
        runner = FakeRunner(available={"docker"})
        steps = self.make_steps(context, remote, runner=runner)

        assert steps._migrate_image("web:latest") is False

        assert "set -o pipefail" in remote.executed[-1]
        assert "docker save web:latest | gzip" in remote.executed[-1]
        assert not runner.ran("docker", "load")
        assert os.listdir(context.base_dir) == []

    def test_image_is_loaded_after_export(self, context):
        runner = FakeRunner(available={"docker"})
        steps = self.make_steps(context, FakeRemote(), runner=runner)

        assert steps._migrate_image("web:latest")
        assert runner.ran("docker", "load", "-i")


class TestResume:
    """A resumed run reuses what the earlier discovery found."""

    def make_steps(self, context, remote):
        runner = FakeRunner(available={"ssh", "rsync", "tar", "gzip", "python3", "npm"})
        return MigrationSteps(context, remote, runner=runner, package_manager=FakePackageManager(),
                              services=FakeServices(), permissions=PermissionManager("host", runner),
                              confirm=ScriptedConfirm(default=True), is_root=lambda: True,
                              config={"web_root": "/nonexistent"})

    def test_skipped_discovery_restores_applications(self, context, tmp_path):
        app = str(tmp_path / "www" / "shop")
        first = self.make_steps(context, FakeRemote(lines={"manage.py": [f"{app}/manage.py"]}))
        assert first.discover_applications()

        state = StateManager(str(tmp_path / "state.json"), StepName, "host")
        state.mark_completed(StepName.DISCOVER_APPLICATIONS)

        resumed = RunContext(source=context.source, base_dir=context.base_dir, backup_dir=context.backup_dir)
        remote = FakeRemote()
        steps = self.make_steps(resumed, remote)
        plan = [
            (StepName.DISCOVER_APPLICATIONS, steps.discover_applications),
            (StepName.MIGRATE_APPLICATIONS, steps.migrate_applications),
        ]
        driver = HostMigrationDriver(resumed, plan, ScriptedConfirm(True), services=FakeServices(), state=state,
                                     report_path=str(tmp_path / "r.txt"),
                                     restorers={StepName.DISCOVER_APPLICATIONS: steps.load_discovered})

        driver.run()

        assert resumed.results[0].skipped
        assert resumed.discovered["django"] == [app]
        assert [s[0] for s in remote.synced] == [app]
        assert resumed.subsystems["django"] == "1/1 app(s) migrated"

    def test_missing_listings_run_discovery_again(self, context, tmp_path):
        state = StateManager(str(tmp_path / "state.json"), StepName, "host")
        state.mark_completed(StepName.DISCOVER_APPLICATIONS)
        steps = self.make_steps(context, FakeRemote(lines={"package.json": ["/srv/front/package.json"]}))
        driver = HostMigrationDriver(context, [(StepName.DISCOVER_APPLICATIONS, steps.discover_applications)],
                                     ScriptedConfirm(True), services=FakeServices(), state=state,
                                     report_path=str(tmp_path / "r.txt"),
                                     restorers={StepName.DISCOVER_APPLICATIONS: steps.load_discovered})

        driver.run()

        assert not context.results[0].skipped
        assert context.discovered["nextjs"] == ["/srv/front"]


class TestSyncPaths:
    def test_dest_defaults_to_source(self):
        assert parse_sync_path("/srv/data") == ("/srv/data", "/srv/data")
        assert parse_sync_path("/srv/data:/mnt/data") == ("/srv/data", "/mnt/data")

    def test_empty_source_rejected(self):
        with pytest.raises(HostMigrationError):
            parse_sync_path(":/mnt")


class TestRemoteExecutor:
    """ssh retries and rsync invocation."""

    def test_retries_three_times(self):
        runner = FakeRunner(lambda cmd: fail("Connection reset"))
        slept = []
        remote = RemoteExecutor("old", runner=runner, sleep=slept.append)

        result = remote.execute("uptime")

        assert not result.success
        assert len(runner.commands) == 3
        assert slept == [2, 2]

    def test_success_stops_retrying(self):
        results = [fail(), ok("up")]
        runner = FakeRunner(lambda cmd: results.pop(0))
        remote = RemoteExecutor("old", runner=runner, sleep=lambda s: None)

        assert remote.execute("uptime").stdout == "up"
        assert len(runner.commands) == 2

    def test_rsync_command(self, tmp_path):
        runner = FakeRunner()
        remote = RemoteExecutor("old", user="deploy", port=2222, runner=runner)

        assert remote.sync("/etc/nginx", str(tmp_path / "nginx"), excludes=["*.pyc"], delete=True)

        command = runner.commands[-1]
        assert command[0] == "rsync"
        assert "--timeout=1800" in command
        assert "--exclude=*.pyc" in command
        assert "--delete" in command
        assert command[-2] == "deploy@old:/etc/nginx/"
        assert command[-1] == f"{tmp_path / 'nginx'}/"
        assert "-p 2222" in command[command.index("-e") + 1]


class TestReport:
    def test_subsystems_and_discoveries(self, context):
        context.record_subsystem("nginx", "migrated")
        context.discovered["django"] = ["/var/www/shop"]
        text = render_report(context, {"nginx": "nginx.service - active"}, 65)

        assert "- nginx: migrated" in text
        assert "/var/www/shop" in text
        assert "Total Time: 1m 5s" in text
        assert "COMPLETED SUCCESSFULLY" in text


class TestParser:
    def test_repeatable_options(self):
        options = build_parser().parse_args(["--source-host", "old", "--skip", "docker", "--skip", "cron",
                                             "--sync-path", "/srv", "--resume"])
        assert options.skip == ["docker", "cron"]
        assert options.sync_path == ["/srv"]
        assert options.resume

    def test_source_host_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
