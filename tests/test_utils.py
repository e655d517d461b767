"""Tests for shared utilities."""

import json
import os
import tarfile

from servermigrate.utils import (
    Confirmer,
    ConfirmPolicy,
    PackageManager,
    PermissionManager,
    PermissionTarget,
    ServiceManager,
    copy_tree_backup,
    create_archive,
    format_duration,
    load_config,
    section,
)
from servermigrate.utils.config import _deep_merge
from tests.conftest import FakeRunner, ok


class TestFormatDuration:
    def test_seconds_minutes_hours(self):
        assert format_duration(45) == "45s"
        assert format_duration(125) == "2m 5s"
        assert format_duration(3725) == "1h 2m 5s"


class TestConfirmer:
    """Policy and interactive answers."""

    def test_policies_never_prompt(self):
        def explode(prompt):
            raise AssertionError("prompted")
        assert Confirmer(ConfirmPolicy.YES, explode)("Drop?", False) is True
        assert Confirmer(ConfirmPolicy.NO, explode)("Drop?", True) is False

    def test_empty_answer_uses_default(self):
        assert Confirmer(ConfirmPolicy.ASK, lambda prompt: "")("Continue?", True) is True
        assert Confirmer(ConfirmPolicy.ASK, lambda prompt: "")("Continue?", False) is False

    def test_yes_answer(self):
        assert Confirmer(ConfirmPolicy.ASK, lambda prompt: "Y")("Continue?", False) is True

    def test_eof_uses_default(self):
        def closed(prompt):
            raise EOFError
        assert Confirmer(ConfirmPolicy.ASK, closed)("Continue?", True) is True


class TestConfig:
    """Packaged defaults and operator overrides."""

    def test_deep_merge_keeps_siblings(self):
        merged = _deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1}

    def test_packaged_defaults(self):
        settings = load_config()
        assert section(settings, "database")["restore_attempts"] == 3
        assert section(settings, "nginx")["max_config_iterations"] == 5
        assert section(settings, "missing") == {}

    def test_override_file(self, tmp_path):
        override = tmp_path / "site.json"
        override.write_text(json.dumps({"config": {"host": {"base_dir": "/srv/migration"}}}))
        host = section(load_config(str(override)), "host")
        assert host["base_dir"] == "/srv/migration"
        assert host["remote_retries"] == 3


class TestPackageManager:
    """Command construction per package manager."""

    def test_apt_install(self):
        runner = FakeRunner()
        assert PackageManager(runner, name="apt").install("nginx", "nginx-extras")
        assert runner.commands[-1] == ["apt-get", "install", "-y", "nginx", "nginx-extras"]
        assert runner.calls[-1]["env"]["DEBIAN_FRONTEND"] == "noninteractive"

    def test_dnf_install(self):
        runner = FakeRunner()
        PackageManager(runner, name="dnf").install("nginx")
        assert runner.commands[-1] == ["dnf", "install", "-y", "nginx"]

    def test_detect(self):
        assert PackageManager(FakeRunner(available={"dnf"})).name == "dnf"
        assert PackageManager(FakeRunner()).name == "unknown"

    def test_unknown_manager_refuses(self):
        assert PackageManager(FakeRunner(), name="unknown").install("nginx") is False


class TestServiceManager:
    def test_list_units(self):
        listing = "uwsgi.service enabled\nuwsgi-app.service disabled\nnginx.service enabled\n"
        runner = FakeRunner(lambda cmd: ok(listing) if "list-unit-files" in cmd else None)
        assert ServiceManager(runner).list_units("uwsgi") == ["uwsgi.service", "uwsgi-app.service"]

    def test_unit_exists_needs_the_exact_name(self):
        listing = "anacron.service enabled\nmysql-router.service disabled\ncron.timer enabled\n"
        runner = FakeRunner(lambda cmd: ok(listing) if "list-unit-files" in cmd else None)
        services = ServiceManager(runner)

        assert not services.unit_exists("cron")
        assert not services.unit_exists("mysql")
        assert services.unit_exists("anacron")
        assert services.unit_exists("cron.timer")


class TestPermissions:
    """Tree modes and chown/chmod targets."""

    def test_tree_modes_only_touch_suffix(self, tmp_path):
        (tmp_path / "site.conf").write_text("")
        (tmp_path / "key.pem").write_text("")
        os.chmod(tmp_path / "key.pem", 0o600)

        PermissionManager("test", FakeRunner()).set_tree_modes(str(tmp_path), 0o755, 0o644, ".conf")

        assert oct(os.stat(tmp_path / "site.conf").st_mode & 0o777) == "0o644"
        assert oct(os.stat(tmp_path / "key.pem").st_mode & 0o777) == "0o600"

    def test_chown_and_chmod_commands(self, tmp_path):
        runner = FakeRunner()
        PermissionManager("test", runner).set_permissions(
            [PermissionTarget(str(tmp_path), owner="www-data", group="adm", mode=0o755, recursive=True)])
        assert ["chown", "-R", "www-data:adm", str(tmp_path)] in runner.commands
        assert ["chmod", "-R", "755", str(tmp_path)] in runner.commands


class TestBackup:
    def test_archive_contains_existing_paths(self, tmp_path):
        source = tmp_path / "etc"
        source.mkdir()
        (source / "a.conf").write_text("x")

        archive = create_archive([str(source), str(tmp_path / "missing")], str(tmp_path / "backup"), "pre")

        assert archive.name.startswith("pre_")
        with tarfile.open(archive) as tar:
            assert any(name.endswith("etc/a.conf") for name in tar.getnames())

    def test_nothing_to_archive(self, tmp_path):
        assert create_archive([str(tmp_path / "missing")], str(tmp_path / "b"), "pre") is None

    def test_copy_keeps_dangling_links(self, tmp_path):
        source = tmp_path / "nginx"
        source.mkdir()
        os.symlink("/nowhere", source / "dangling")

        copied = copy_tree_backup([str(source)], str(tmp_path / "backup"))

        assert os.path.islink(copied[0] / "dangling")
