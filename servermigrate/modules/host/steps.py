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
The individual host migration steps.

Each method returns True on success and False on failure; StepRunner
turns that into the step outcome. Outcomes per subsystem are recorded on
the RunContext so the report can show what happened to each service even
when its step only partly worked.
"""

import os
import shlex
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from ...utils import (
    CommandRunner,
    PackageManager,
    PermissionManager,
    PermissionTarget,
    ServiceManager,
    copy_tree_backup,
    create_archive,
    first_existing_user,
    log_message,
)
from .driver import HostMigrationError, RunContext, StepName
from .remote import RemoteExecutor

DEFAULT_SUBSYSTEMS = ("nginx", "uwsgi", "cron", "docker", "django", "nextjs", "files", "system_configs")

DEFAULT_FILE_EXCLUDES = [
    ".cache/", "Cache/", "cache/", "*.tmp", "*.temp", "*.swp", "*~",
    "node_modules/", "__pycache__/", "*.pyc", ".Trash*", "lost+found/",
]


def parse_sync_path(value: str) -> Tuple[str, str]:
    """Split ``SRC[:DEST]``; DEST defaults to SRC."""
    source, _, dest = value.partition(":")
    source = source.strip()
    if not source:
        raise HostMigrationError(f"Invalid sync path: {value!r}")
    return source, (dest.strip() or source)


def count_local_files(root: str) -> int:
    total = 0
    for _, _, files in os.walk(root):
        total += len(files)
    return total


class MigrationSteps:
    """One method per StepName, all sharing the same context and helpers."""

    def __init__(self, context: RunContext, remote: RemoteExecutor, config: Optional[Dict[str, Any]] = None,
                 runner: Optional[CommandRunner] = None, package_manager: Optional[PackageManager] = None,
                 services: Optional[ServiceManager] = None, permissions: Optional[PermissionManager] = None,
                 confirm: Optional[Callable[[str, bool], bool]] = None, skip: Iterable[str] = (),
                 sync_paths: Iterable[str] = (), is_root: Optional[Callable[[], bool]] = None):
        self.context = context
        self.remote = remote
        self.config = config or {}
        self.runner = runner or CommandRunner()
        self.pm = package_manager or PackageManager(self.runner)
        self.services = services or ServiceManager(self.runner)
        self.permissions = permissions or PermissionManager("host", self.runner)
        self.confirm = confirm or (lambda question, default=False: default)
        self.is_root = is_root or (lambda: os.geteuid() == 0)

        toggles = self.config.get("subsystems", {})
        self.enabled = {name for name in DEFAULT_SUBSYSTEMS if toggles.get(name, True)}
        self.enabled -= set(skip)

        self.sync_paths = [parse_sync_path(p) if isinstance(p, str) else (p["source"], p.get("dest") or p["source"])
                           for p in self.config.get("sync_paths", [])]
        self.sync_paths += [parse_sync_path(p) for p in sync_paths]

    @property
    def base_dir(self) -> str:
        return self.context.base_dir

    @property
    def backup_dir(self) -> str:
        return self.context.backup_dir

    def functions(self) -> Dict[StepName, Callable[[], bool]]:
        return {name: getattr(self, name.value) for name in StepName}

    def _active(self, subsystem: str) -> bool:
        if subsystem in self.enabled:
            return True
        log_message(f"{subsystem} migration disabled, skipping")
        self.context.record_subsystem(subsystem, "skipped (disabled)")
        return False

    def _ensure_command(self, command: str, *packages: str) -> bool:
        if self.runner.which(command):
            return True
        log_message(f"{command} not found, installing {' '.join(packages)}...")
        return self.pm.install(*packages, update=True) and bool(self.runner.which(command))

    def _web_user(self) -> str:
        return first_existing_user(self.config.get("web_users", ["www-data", "nginx"])) or "root"

    # -- steps -------------------------------------------------------------

    def prerequisites(self) -> bool:
        """Root check, required local tools, working directories."""
        if not self.is_root():
            log_message("Not running as root; some operations may fail", "WARNING")
            if not self.confirm("Continue without root privileges?", False):
                return False

        command_packages = self.config.get("command_packages", {})
        missing = [c for c in self.config.get("required_commands", ["ssh", "rsync", "tar", "gzip"])
                   if not self.runner.which(c)]
        if missing:
            log_message(f"Missing required commands: {', '.join(missing)}", "WARNING")
            packages = [command_packages.get(c, c) for c in missing]
            self.pm.install(*packages, update=True)
            still_missing = [c for c in missing if not self.runner.which(c)]
            if still_missing:
                log_message(f"Still missing after install: {', '.join(still_missing)}", "ERROR")
                return False

        for directory in (self.base_dir, self.backup_dir):
            Path(directory).mkdir(parents=True, exist_ok=True)
            log_message(f"Created directory: {directory}")
        return True

    def ssh_connection(self) -> bool:
        log_message(f"Testing SSH connection to {self.remote.describe()}...")
        if self.remote.test_connection():
            log_message("SSH connection test passed", "SUCCESS")
            return True

        log_message(f"Cannot connect to source server {self.remote.describe()}", "ERROR")
        log_message("  1. Is the host reachable (ping) and sshd running?", "ERROR")
        log_message("  2. Is key-based authentication set up (ssh-copy-id)?", "ERROR")
        log_message("  3. Does the firewall allow the ssh port?", "ERROR")
        return False

    def discover_applications(self) -> bool:
        roots = " ".join(shlex.quote(p) for p in self.config.get("app_search_paths",
                                                                   ["/var/www", "/opt", "/home", "/srv"]))
        limit = int(self.config.get("discovery_limit", 20))
        queries = {
            "django": f"find {roots} -name manage.py -type f 2>/dev/null | head -{limit}",
            "nextjs": (f"find {roots} -name package.json -type f -not -path '*/node_modules/*' "
                       f"-exec grep -l '\"next\"' {{}} \\; 2>/dev/null | head -{limit}"),
            "compose": (f"find {roots} \\( -name docker-compose.yml -o -name docker-compose.yaml \\) "
                        f"-type f 2>/dev/null | head -{limit}"),
        }

        for kind, command in queries.items():
            found = self.remote.lines(command)
            if kind in ("django", "nextjs"):
                found = sorted({os.path.dirname(path) for path in found})
            self.context.discovered[kind] = found
            log_message(f"Found {len(found)} {kind} location(s)")
            for path in found:
                log_message(f"  {path}")
            listing = Path(self.base_dir) / f"discovered_{kind}.txt"
            listing.write_text("".join(f"{p}\n" for p in found))
        return True

    def load_discovered(self) -> bool:
        """Reload the listings a previous discovery run wrote to base_dir."""
        listings = {kind: Path(self.base_dir) / f"discovered_{kind}.txt" for kind in self.context.discovered}
        if not all(path.is_file() for path in listings.values()):
            log_message("Discovery listings from the previous run are missing", "WARNING")
            return False
        for kind, path in listings.items():
            self.context.discovered[kind] = [line for line in path.read_text().splitlines() if line.strip()]
            log_message(f"Loaded {len(self.context.discovered[kind])} {kind} location(s) from {path}")
        return True

    def create_backup(self) -> bool:
        paths = self.config.get("backup_paths", ["/etc/nginx", "/etc/uwsgi", "/etc/cron.d",
                                                 "/etc/crontab", "/var/spool/cron"])
        archive = create_archive(paths, self.backup_dir, "pre_migration_backup")
        if archive is None:
            log_message("No existing configuration to back up", "WARNING")
        return True

    def migrate_nginx(self) -> bool:
        if not self._active("nginx"):
            return True
        if not self._ensure_command("nginx", "nginx"):
            self.context.record_subsystem("nginx", "failed (not installed)")
            return False

        self.services.stop("nginx")
        config_dir = self.config.get("nginx_config_dir", "/etc/nginx")
        copy_tree_backup([config_dir], os.path.join(self.backup_dir, "nginx"))

        if not self.remote.sync(config_dir, config_dir, delete=True, description="Nginx configuration"):
            self.context.record_subsystem("nginx", "failed (sync)")
            return False

        for extra in self.config.get("nginx_extra_paths", ["/usr/local/nginx", "/opt/nginx"]):
            if self.remote.is_dir(extra):
                self.remote.sync(extra, extra, description=f"Nginx files in {extra}")

        self.permissions.set_tree_modes(config_dir, 0o755, 0o644, ".conf")

        test = self.runner.run(["nginx", "-t"])
        if not test.success:
            log_message("Nginx configuration test failed; service left stopped", "ERROR")
            log_message(test.output.strip(), "ERROR")
            log_message("Run 'servermigrate nginx' to repair the configuration", "WARNING")
            self.context.record_subsystem("nginx", "migrated, configuration invalid")
            return False

        self.services.enable("nginx")
        self.services.start("nginx")
        self.context.record_subsystem("nginx", "migrated")
        return True

    def migrate_uwsgi(self) -> bool:
        if not self._active("uwsgi"):
            return True
        if not self._ensure_command("uwsgi", *self.config.get("uwsgi_packages", ["uwsgi", "uwsgi-plugin-python3"])):
            self.context.record_subsystem("uwsgi", "failed (not installed)")
            return False

        units = self.services.list_units("uwsgi")
        for unit in units:
            self.services.stop(unit)

        failed = 0
        for path in self.config.get("uwsgi_paths", ["/etc/uwsgi", "/opt/uwsgi", "/usr/local/etc/uwsgi"]):
            if not self.remote.is_dir(path):
                log_message(f"{path} not present on source, skipping", "DEBUG")
                continue
            if self.remote.sync(path, path, description=f"uWSGI configuration in {path}"):
                self.permissions.set_tree_modes(path, None, 0o644, ".ini")
            else:
                failed += 1

        systemd_dir = self.config.get("systemd_dir", "/etc/systemd/system")
        for unit_file in self.remote.lines(f"ls -1 {shlex.quote(systemd_dir)}/*uwsgi* 2>/dev/null"):
            dest = os.path.join(systemd_dir, os.path.basename(unit_file))
            if not self.remote.sync(unit_file, dest, directory=False, description=unit_file):
                failed += 1

        self.services.daemon_reload()
        for unit in self.services.list_units("uwsgi") or units:
            self.services.enable(unit)
            self.services.start(unit)

        self.context.record_subsystem("uwsgi", "migrated" if not failed else f"partial ({failed} failed)")
        return failed == 0

    def _copy_crontab(self, user: Optional[str] = None) -> bool:
        remote_cmd = f"crontab -u {shlex.quote(user)} -l" if user else "crontab -l"
        result = self.remote.execute(remote_cmd, retries=1)
        if not result.success or not result.stdout.strip():
            log_message(f"No crontab for {user or 'root'} on source", "DEBUG")
            return True
        local_cmd = ["crontab", "-u", user, "-"] if user else ["crontab", "-"]
        installed = self.runner.run(local_cmd, input_text=result.stdout)
        if not installed.success:
            log_message(f"Failed to install crontab for {user or 'root'}: {installed.stderr.strip()}", "WARNING")
            return False
        log_message(f"Installed crontab for {user or 'root'}")
        return True

    def migrate_cron_jobs(self) -> bool:
        if not self._active("cron"):
            return True
        cron_package = "cron" if self.pm.name == "apt" else "cronie"
        if not self._ensure_command("crontab", cron_package):
            self.context.record_subsystem("cron", "failed (not installed)")
            return False

        current = self.runner.run(["crontab", "-l"])
        if current.success and current.stdout.strip():
            Path(self.backup_dir).mkdir(parents=True, exist_ok=True)
            (Path(self.backup_dir) / "current_crontab.bak").write_text(current.stdout)

        failed = 0 if self._copy_crontab() else 1

        for path in self.config.get("cron_paths", ["/etc/cron.d", "/etc/crontab", "/var/spool/cron"]):
            if self.remote.is_dir(path):
                ok = self.remote.sync(path, path, description=f"cron files in {path}")
                if ok:
                    mode = 0o600 if path.startswith("/var/spool") else 0o644
                    self.permissions.set_tree_modes(path, None, mode)
            elif self.remote.path_exists(path):
                ok = self.remote.sync(path, path, directory=False, description=path)
                if ok:
                    self.permissions.set_permissions([PermissionTarget(path, mode=0o644)])
            else:
                continue
            failed += 0 if ok else 1

        source_users = set(self.remote.lines("cut -d: -f1 /etc/passwd"))
        for user in self.config.get("cron_users", ["www-data", "nginx", "ubuntu", "deploy"]):
            if user in source_users and first_existing_user([user]):
                failed += 0 if self._copy_crontab(user) else 1

        for unit in ("cron", "crond"):
            if self.services.unit_exists(unit):
                self.services.enable(unit)
                self.services.restart(unit)
                break

        self.context.record_subsystem("cron", "migrated" if not failed else f"partial ({failed} failed)")
        return failed == 0

    def _migrate_image(self, image: str) -> bool:
        archive = Path(self.base_dir) / (image.replace("/", "_").replace(":", "_") + ".tar.gz")
        try:
            export = f"set -o pipefail; docker save {shlex.quote(image)} | gzip"
            saved = self.remote.fetch_to_file(f"bash -c {shlex.quote(export)}", str(archive))
            if not saved.success or not archive.exists() or archive.stat().st_size == 0:
                log_message(f"Failed to export image {image}", "WARNING")
                return False
            loaded = self.runner.run(["docker", "load", "-i", str(archive)])
            if not loaded.success:
                log_message(f"Failed to load image {image}: {loaded.stderr.strip()}", "WARNING")
                return False
            log_message(f"Migrated image {image}")
            return True
        finally:
            if archive.exists():
                archive.unlink()

    def _migrate_volume(self, volume: str, helper: str) -> bool:
        remote_archive = f"/tmp/{volume}.tar.gz"
        local_archive = os.path.join(self.base_dir, f"{volume}.tar.gz")
        packed = self.remote.execute(
            f"docker run --rm -v {shlex.quote(volume)}:/data -v /tmp:/backup {helper} "
            f"tar czf /backup/{shlex.quote(volume)}.tar.gz -C /data .")
        if not packed.success:
            return False
        try:
            if not self.remote.sync(remote_archive, local_archive, directory=False, description=f"volume {volume}"):
                return False
            self.runner.run(["docker", "volume", "create", volume])
            restored = self.runner.run(["docker", "run", "--rm", "-v", f"{volume}:/data",
                                        "-v", f"{self.base_dir}:/backup", helper,
                                        "tar", "xzf", f"/backup/{volume}.tar.gz", "-C", "/data"])
            if not restored.success:
                log_message(f"Failed to restore volume {volume}: {restored.stderr.strip()}", "WARNING")
            return restored.success
        finally:
            self.remote.execute(f"rm -f {shlex.quote(remote_archive)}", retries=1)
            if os.path.exists(local_archive):
                os.remove(local_archive)

    def migrate_docker(self) -> bool:
        if not self._active("docker"):
            return True
        packages = self.config.get("docker_packages", {}).get(self.pm.name, ["docker"])
        if not self._ensure_command("docker", *packages):
            self.context.record_subsystem("docker", "failed (not installed)")
            return False
        self.services.enable("docker")
        self.services.start("docker")

        running = self.runner.run(["docker", "ps", "-q"]).stdout.split()
        if running:
            log_message(f"Stopping {len(running)} local container(s)")
            self.runner.run(["docker", "stop", *running])

        failed = 0
        images = self.remote.lines("docker images --format '{{.Repository}}:{{.Tag}}' | grep -v '<none>'")
        log_message(f"Found {len(images)} image(s) on source")
        for image in images:
            failed += 0 if self._migrate_image(image) else 1

        compose_dir = self.config.get("compose_dir", "/opt/docker")
        if self.remote.is_dir(compose_dir):
            failed += 0 if self.remote.sync(compose_dir, compose_dir, description="Docker compose files") else 1
        for compose_file in self.context.discovered.get("compose", []):
            failed += 0 if self.remote.sync(compose_file, compose_file, directory=False) else 1

        helper = self.config.get("volume_helper_image", "alpine")
        volumes = self.remote.lines("docker volume ls -q")
        log_message(f"Found {len(volumes)} volume(s) on source")
        for volume in volumes:
            failed += 0 if self._migrate_volume(volume, helper) else 1

        self.context.record_subsystem("docker", "migrated" if not failed else f"partial ({failed} failed)")
        return failed == 0

    def _fix_app_ownership(self, app_dir: str) -> None:
        web_root = self.config.get("web_root", "/var/www")
        if not app_dir.startswith(web_root.rstrip("/") + "/"):
            return
        user = self._web_user()
        self.permissions.set_permissions([PermissionTarget(app_dir, owner=user, group=user, recursive=True)])
        self.permissions.set_tree_modes(app_dir, 0o755, 0o644)

    def _migrate_django(self) -> int:
        failed = 0
        apps = self.context.discovered.get("django", [])
        if apps:
            self._ensure_command("python3", *self.config.get("python_packages", ["python3", "python3-pip", "python3-venv"]))
        systemd_dir = self.config.get("systemd_dir", "/etc/systemd/system")
        for app_dir in apps:
            if not self.remote.sync(app_dir, app_dir, excludes=self.config.get("django_excludes", ["*.pyc", "__pycache__", ".git"]),
                                    description=f"Django app {app_dir}"):
                failed += 1
                continue
            self._fix_app_ownership(app_dir)
            manage = os.path.join(app_dir, "manage.py")
            if os.path.exists(manage):
                os.chmod(manage, 0o755)
            name = os.path.basename(app_dir.rstrip("/"))
            for unit_file in self.remote.lines(f"ls -1 {shlex.quote(systemd_dir)}/*{shlex.quote(name)}* 2>/dev/null"):
                self.remote.sync(unit_file, os.path.join(systemd_dir, os.path.basename(unit_file)), directory=False)
        self.context.record_subsystem("django", f"{len(apps) - failed}/{len(apps)} app(s) migrated")
        return failed

    def _migrate_nextjs(self) -> int:
        failed = 0
        apps = self.context.discovered.get("nextjs", [])
        if apps:
            self._ensure_command("npm", *self.config.get("node_packages", ["nodejs", "npm"]))
        timeout = int(self.config.get("build_timeout", 1800))
        for app_dir in apps:
            if not self.remote.sync(app_dir, app_dir, excludes=self.config.get("nextjs_excludes", ["node_modules", ".next", ".git"]),
                                    description=f"Next.js app {app_dir}"):
                failed += 1
                continue
            self._fix_app_ownership(app_dir)
            for command in (["npm", "install"], ["npm", "run", "build"]):
                result = self.runner.run(command, cwd=app_dir, timeout=timeout)
                if not result.success:
                    log_message(f"'{' '.join(command)}' failed in {app_dir}; build it manually", "WARNING")
                    break
        self.context.record_subsystem("nextjs", f"{len(apps) - failed}/{len(apps)} app(s) migrated")
        return failed

    def migrate_applications(self) -> bool:
        failed = 0
        if self._active("django"):
            failed += self._migrate_django()
        if self._active("nextjs"):
            failed += self._migrate_nextjs()
        return failed == 0

    def migrate_files(self) -> bool:
        """Sync operator-chosen trees with an exclude list, then compare file counts."""
        if not self._active("files"):
            return True
        if not self.sync_paths:
            log_message("No additional paths configured")
            self.context.record_subsystem("files", "nothing configured")
            return True

        exclude_file = Path(self.base_dir) / "migration_excludes.txt"
        exclude_file.write_text("".join(f"{p}\n" for p in self.config.get("file_excludes", DEFAULT_FILE_EXCLUDES)))

        failed = 0
        for source, dest in self.sync_paths:
            if not self.remote.sync(source, dest, exclude_from=str(exclude_file), description=source):
                failed += 1
                continue
            remote_count = self.remote.lines(f"find {shlex.quote(source)} -type f 2>/dev/null | wc -l")
            local_count = count_local_files(dest)
            if remote_count and remote_count[0].isdigit():
                expected = int(remote_count[0])
                if expected == local_count:
                    log_message(f"✓ {dest}: {local_count} files")
                else:
                    log_message(f"File count mismatch for {source}: source {expected}, local {local_count} "
                                f"(excluded files account for some difference)", "WARNING")
        self.context.record_subsystem("files", f"{len(self.sync_paths) - failed}/{len(self.sync_paths)} path(s) synced")
        return failed == 0

    def migrate_system_configs(self) -> bool:
        if not self._active("system_configs"):
            return True
        failed = 0
        roots = self.config.get("env_search_paths", ["/opt", "/var/www"])
        for name in self.config.get("env_file_names", [".env", ".env.local", ".env.production"]):
            for root in roots:
                for env_file in self.remote.lines(f"find {shlex.quote(root)} -name {shlex.quote(name)} -type f 2>/dev/null"):
                    if self.remote.sync(env_file, env_file, directory=False, description=env_file):
                        os.chmod(env_file, 0o600)
                    else:
                        failed += 1

        systemd_dir = self.config.get("systemd_dir", "/etc/systemd/system")
        for unit_file in self.remote.lines(f"ls -1 {shlex.quote(systemd_dir)}/*.service 2>/dev/null"):
            dest = os.path.join(systemd_dir, os.path.basename(unit_file))
            if self.remote.sync(unit_file, dest, directory=False, description=unit_file):
                os.chmod(dest, 0o644)
            else:
                failed += 1
        self.services.daemon_reload()

        self.context.record_subsystem("system_configs", "migrated" if not failed else f"partial ({failed} failed)")
        return failed == 0

    def post_migration_setup(self) -> bool:
        web_root = self.config.get("web_root", "/var/www")
        if os.path.isdir(web_root):
            user = self._web_user()
            self.permissions.set_permissions([PermissionTarget(web_root, owner=user, group=user, recursive=True)])
            self.permissions.set_tree_modes(web_root, 0o755, 0o644)

        for root in (web_root, "/opt"):
            for current, _, files in os.walk(root):
                for name in files:
                    path = os.path.join(current, name)
                    if name.endswith(".sh") and not os.path.islink(path):
                        os.chmod(path, 0o755)

        self.permissions.set_tree_modes(self.config.get("nginx_config_dir", "/etc/nginx"), None, 0o644, ".conf")
        self.permissions.set_tree_modes("/etc/uwsgi", None, 0o644, ".ini")

        if "nginx" in self.enabled:
            self.services.restart("nginx")
        if "uwsgi" in self.enabled:
            for unit in self.services.list_units("uwsgi"):
                self.services.restart(unit)

        for service in self.config.get("enable_services", ["nginx", "uwsgi", "postgresql", "mysql", "docker"]):
            if self.services.unit_exists(service):
                self.services.enable(service)
        return True
