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
Nginx Repair

Brings an nginx installation that arrived half-broken from a server
migration back to a passing ``nginx -t``. The run is a single pass through
RepairState; every state is isolated so a failure is logged and the next
state still runs. Only a missing binary or a missing configuration
directory stop the run.

Exit codes: 0 configuration valid, 1 fatal precondition, 2 finished with
unresolved issues.
"""

import argparse
import datetime
import os
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ...utils import (
    CommandRunner,
    Confirmer,
    ConfirmPolicy,
    PackageManager,
    PermissionManager,
    PermissionTarget,
    ServiceManager,
    banner,
    copy_tree_backup,
    create_run_log_dir,
    first_existing_group,
    first_existing_user,
    load_config,
    log_message,
    section,
    setup_logging,
    timestamp
)
from .diagnostics import RemediationAction, RemediationKind, classify, config_file_from_output
from .modules import (
    ModuleReference,
    ModuleState,
    base_module_name,
    compiled_modules,
    conf_module_name,
    find_shared_objects,
    is_wildcard,
    load_module_references,
    module_includes,
    module_package_guesses,
    placeholder_conf,
    site_includes
)
from .symlinks import SymlinkEntry, SymlinkRepairer, SymlinkState, scan_broken_symlinks

VERSION_PATTERN = re.compile(r'nginx/(?P<version>[\d.]+)')

DEFAULTS = {
    "install_dirs": ["/etc/nginx", "/usr/local/nginx", "/opt/nginx", "/usr/share/nginx", "/var/lib/nginx"],
    "binary_candidates": ["/usr/sbin/nginx", "/usr/bin/nginx", "/usr/local/sbin/nginx",
                          "/usr/local/bin/nginx", "/opt/nginx/sbin/nginx"],
    "service_files": ["/etc/systemd/system/nginx.service", "/lib/systemd/system/nginx.service",
                      "/usr/lib/systemd/system/nginx.service", "/etc/init.d/nginx"],
    "module_dirs": ["/usr/lib/nginx/modules", "/usr/local/lib/nginx/modules",
                    "/etc/nginx/modules-available", "/usr/share/nginx/modules"],
    "library_search_paths": ["/usr"],
    "runtime_dirs": ["/var/log/nginx", "/var/cache/nginx", "/run/nginx"],
    "log_dir": "/var/log/nginx",
    "cache_dir": "/var/cache/nginx",
    "web_users": ["www-data", "nginx"],
    "log_groups": ["adm"],
    "max_config_iterations": 5,
    "backup_root": "/opt/servermigrate/nginx_backups",
    "os_release": "/etc/os-release",
    "service_name": "nginx",
    "purge_packages": {"apt": ["nginx", "nginx-common", "nginx-core"]},
}

SERVICE_UNIT = """[Unit]
Description=The nginx HTTP and reverse proxy server
After=network.target remote-fs.target nss-lookup.target

[Service]
Type=forking
PIDFile=/run/nginx.pid
ExecStartPre={binary} -t
ExecStart={binary}
ExecReload=/bin/kill -s HUP $MAINPID
KillSignal=SIGQUIT
TimeoutStopSec=5
KillMode=mixed
PrivateTmp=true

[Install]
WantedBy=multi-user.target
"""


class NginxRepairError(Exception):
    """Custom exception for fatal nginx repair preconditions."""
    pass


class RepairState(str, Enum):
    DETECT_SYSTEM = "detect_system"
    DETECT_BINARY = "detect_binary"
    DETECT_CONFIG_DIR = "detect_config_dir"
    BACKUP = "backup"
    SCAN_SYMLINKS = "scan_symlinks"
    REPAIR_SYMLINKS = "repair_symlinks"
    SCAN_MODULES = "scan_modules"
    REPAIR_MODULES = "repair_modules"
    REPAIR_COMMON = "repair_common"
    FIX_PERMISSIONS = "fix_permissions"
    CHECK_SERVICE = "check_service"
    REPAIR_CONFIG_LOOP = "repair_config_loop"
    FINAL_VALIDATE = "final_validate"
    ESCALATE = "escalate"
    REPORT = "report"


FATAL_STATES = (RepairState.DETECT_BINARY, RepairState.DETECT_CONFIG_DIR)


@dataclass
class RepairStats:
    distro: str = "unknown"
    distro_version: str = "unknown"
    package_manager: str = "unknown"
    nginx_version: str = "unknown"
    binary: Optional[str] = None
    config_dir: Optional[str] = None
    backup_location: Optional[str] = None
    symlinks_found: int = 0
    symlinks_fixed: int = 0
    modules_found: int = 0
    modules_fixed: int = 0
    placeholders: int = 0
    config_issues_found: int = 0
    config_issues_fixed: int = 0
    config_iterations: int = 0
    config_valid: bool = False
    config_output: str = ""
    unresolved: List[str] = field(default_factory=list)
    state_errors: List[str] = field(default_factory=list)
    reinstalled: bool = False
    report_path: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.config_valid else 2


class NginxRepairer:
    """Runs the repair states against one nginx installation."""

    def __init__(self, config: Optional[dict] = None,
                 runner: Optional[CommandRunner] = None,
                 package_manager: Optional[PackageManager] = None,
                 services: Optional[ServiceManager] = None,
                 permissions: Optional[PermissionManager] = None,
                 confirm: Optional[Callable[[str, bool], bool]] = None,
                 binary: Optional[str] = None,
                 config_dir: Optional[str] = None,
                 report_path: Optional[str] = None):
        self.config = dict(DEFAULTS)
        self.config.update(config or {})
        self.runner = runner or CommandRunner()
        self._package_manager = package_manager
        self.services = services or ServiceManager(self.runner)
        self.permissions = permissions or PermissionManager("nginx", self.runner)
        self.confirm = confirm or Confirmer(ConfirmPolicy.ASK)

        self.binary = binary
        self.config_dir = config_dir
        self._explicit_config = config_dir is not None
        self.report_path = report_path

        self.stats = RepairStats()
        self.symlinks: List[SymlinkEntry] = []
        self.module_refs: List[ModuleReference] = []
        self.reinstall_attempted = False

    @property
    def package_manager(self) -> PackageManager:
        if self._package_manager is None:
            self._package_manager = PackageManager(self.runner, timeout=int(self.config.get("package_timeout", 120)))
        return self._package_manager

    @property
    def main_conf(self) -> Path:
        return Path(self.config_dir or "") / "nginx.conf"

    def config_test(self) -> Tuple[bool, str]:
        command = [self.binary, "-t"]
        if self._explicit_config:
            command += ["-c", str(self.main_conf)]
        result = self.runner.run(command)
        return result.success, result.output

    def config_valid(self) -> bool:
        return self.config_test()[0]

    def _read_main_conf(self) -> str:
        try:
            return self.main_conf.read_text()
        except OSError as e:
            log_message(f"Cannot read {self.main_conf}: {e}", "WARNING")
            return ""

    # States

    def _detect_system(self) -> None:
        log_message("Detecting system information...")
        release = Path(self.config["os_release"])
        values = {}
        if release.exists():
            for line in release.read_text().splitlines():
                if "=" in line:
                    key, _, value = line.partition("=")
                    values[key.strip()] = value.strip().strip('"')
        self.stats.distro = values.get("ID", "unknown")
        self.stats.distro_version = values.get("VERSION_ID", "unknown")
        self.stats.package_manager = self.package_manager.name
        log_message(f"System: {self.stats.distro} {self.stats.distro_version}, "
                    f"package manager: {self.stats.package_manager}")

    def _detect_binary(self) -> None:
        log_message("Locating nginx binary...")
        candidates = ([self.binary] if self.binary else []) + list(self.config["binary_candidates"])
        found = next((c for c in candidates if os.path.isfile(c) and os.access(c, os.X_OK)), None)
        if found is None:
            found = self.runner.which("nginx")
        if found is None:
            raise NginxRepairError("Nginx binary not found. Install nginx first (e.g. apt-get install nginx)")

        self.binary = found
        self.stats.binary = found
        match = VERSION_PATTERN.search(self.runner.run([found, "-v"]).output)
        if match:
            self.stats.nginx_version = match.group("version")
        log_message(f"Found nginx binary: {found} (version: {self.stats.nginx_version})", "SUCCESS")

    def _detect_config_dir(self) -> None:
        log_message("Locating nginx configuration directory...")
        if self.config_dir:
            if not os.path.isdir(self.config_dir):
                raise NginxRepairError(f"Configuration directory {self.config_dir} does not exist")
        else:
            conf = config_file_from_output(self.runner.run([self.binary, "-t"]).output)
            if conf and os.path.isdir(os.path.dirname(conf)):
                self.config_dir = os.path.dirname(conf)
            else:
                self.config_dir = next(
                    (d for d in self.config["install_dirs"] if os.path.isfile(os.path.join(d, "nginx.conf"))),
                    None
                )
        if not self.config_dir:
            raise NginxRepairError("Nginx configuration directory not found")
        self.stats.config_dir = self.config_dir
        log_message(f"Found nginx config directory: {self.config_dir}", "SUCCESS")

    def _backup(self) -> None:
        log_message("Creating backup of nginx configuration...")
        backup_root = os.path.join(self.config["backup_root"], f"nginx_{timestamp()}")
        paths = [self.config_dir] + [s for s in self.config["service_files"] if os.path.isfile(s)]
        copied = copy_tree_backup(paths, backup_root)
        if copied:
            self.stats.backup_location = str(copied[0].parent)
            log_message(f"Configuration backed up to: {self.stats.backup_location}")
        else:
            log_message("Nothing was backed up", "WARNING")

    def _scan_symlinks(self) -> None:
        log_message("Scanning for broken symlinks in nginx directories...")
        roots = list(dict.fromkeys(list(self.config["install_dirs"]) + [self.config_dir]))
        self.symlinks = scan_broken_symlinks(roots, self.binary)
        self.stats.symlinks_found = len(self.symlinks)

    def _reinstall_owning_packages(self) -> bool:
        """Last resort for links nothing else explains; done at most once per run."""
        if self.reinstall_attempted:
            return False
        self.reinstall_attempted = True
        packages = self.package_manager.installed_packages("nginx")
        if not packages:
            log_message("No installed nginx packages to reinstall", "WARNING")
            return False
        log_message(f"Reinstalling nginx packages: {' '.join(packages)}")
        return self.package_manager.reinstall(*packages)

    def _repair_symlinks(self) -> None:
        if not self.symlinks:
            return
        log_message("Repairing broken symlinks...")
        repairer = SymlinkRepairer(self.config["module_dirs"], self.config["binary_candidates"], self.binary)

        needs_package = []
        for entry in self.symlinks:
            log_message(f"Repairing: {entry.path} -> {entry.target}")
            if repairer.repair(entry):
                self.stats.symlinks_fixed += 1
            elif entry.state == SymlinkState.UNRESOLVED:
                needs_package.append(entry)

        if needs_package:
            log_message(f"{len(needs_package)} link(s) have no inferable target, trying package reinstall", "WARNING")
            self._reinstall_owning_packages()
            for entry in needs_package:
                if os.path.exists(entry.path):
                    entry.state = SymlinkState.REPAIRED
                    self.stats.symlinks_fixed += 1
                    log_message(f"✓ Restored by package reinstall: {entry.path}", "SUCCESS")
                else:
                    log_message(f"✗ Could not repair {entry.path} -> {entry.target}; "
                                "recreate it manually or remove it", "WARNING")

        log_message(f"Repaired {self.stats.symlinks_fixed} out of {self.stats.symlinks_found} broken symlinks")

    def _scan_modules(self) -> None:
        log_message("Checking nginx modules...")
        version_output = self.runner.run([self.binary, "-V"]).output
        compiled = compiled_modules(version_output)
        if compiled:
            log_message("Compiled-in modules:")
            for module in compiled:
                log_message(f"  - {module}", "DEBUG")

        conf_text = self._read_main_conf()
        refs = load_module_references(conf_text, self.config_dir)
        for ref in refs:
            if ref.state == ModuleState.MISSING:
                log_message(f"Missing module: {ref.expected_path}", "WARNING")
            else:
                log_message(f"Module OK: {ref.expected_path}", "DEBUG")

        conf_refs = []
        for include in module_includes(conf_text, self.config_dir):
            if is_wildcard(include):
                _ok, output = self.config_test()
                actions, _unresolved = classify(output)
                paths = [a.path for a in actions if a.kind == RemediationKind.MISSING_MODULE_CONF]
            else:
                paths = [include] if not os.path.exists(include) else []
            for path in paths:
                log_message(f"Missing module configuration: {path}", "WARNING")
                conf_refs.append(ModuleReference(name=os.path.basename(path), expected_path=path, kind="conf"))

        self.module_refs = refs + conf_refs
        self.stats.modules_found = sum(1 for r in self.module_refs if r.state == ModuleState.MISSING)
        log_message(f"Found {self.stats.modules_found} missing module reference(s)")

    def _install_module_package(self, module: str) -> bool:
        pm = self.package_manager
        for package in module_package_guesses(module, pm.name):
            if pm.is_available(package):
                log_message(f"Installing package: {package}")
                if pm.install(package, update=True):
                    log_message(f"Installed module package: {package}", "SUCCESS")
                    return True
        return False

    def _link_shared_object(self, ref: ModuleReference) -> bool:
        target_dir = os.path.dirname(ref.expected_path)
        for found in find_shared_objects(ref.name, self.config["library_search_paths"]):
            if str(found) == ref.expected_path:
                continue
            try:
                os.makedirs(target_dir, exist_ok=True)
                if os.path.lexists(ref.expected_path):
                    os.unlink(ref.expected_path)
                os.symlink(str(found), ref.expected_path)
            except OSError as e:
                log_message(f"Failed to link module {found} to {ref.expected_path}: {e}", "WARNING")
                continue
            log_message(f"Linked module {found} to {ref.expected_path}", "SUCCESS")
            return True
        return False

    def repair_module_object(self, ref: ModuleReference) -> bool:
        """Package guesses first, then an existing shared object linked into place."""
        module = base_module_name(ref.name)
        log_message(f"Attempting to install missing module: {ref.name}")

        if self._install_module_package(module):
            ref.state = ModuleState.INSTALLED
            self.stats.modules_fixed += 1
            if self.config_valid():
                log_message("Module installation successful and nginx config is valid", "SUCCESS")
                return True
            log_message("Module installed but nginx config still has issues")

        if not os.path.isfile(ref.expected_path) and self._link_shared_object(ref):
            ref.state = ModuleState.LINKED
            self.stats.modules_fixed += 1
            if self.config_valid():
                log_message("Module linking successful and nginx config is valid", "SUCCESS")
                return True
            log_message("Module linked but nginx config still has issues")

        if not ref.fixed:
            ref.state = ModuleState.UNRESOLVED
            log_message(f"Could not automatically install module {ref.name}; "
                        f"install libnginx-mod-{module} or nginx-extras manually", "WARNING")
        return False

    def repair_module_conf(self, conf_path: str) -> ModuleState:
        """
        Make a missing modules-enabled file exist again.

        Tries a modules-available link, then a guessed package, then writes
        a placeholder with the load_module line commented out. The
        placeholder lets the configuration parse but the module stays
        unloaded.
        """
        conf = Path(conf_path)
        module = conf_module_name(conf_path)
        available = conf.parent.parent / "modules-available" / conf.name
        log_message(f"Attempting to repair module configuration: {conf_path} (module: {module})")
        conf.parent.mkdir(parents=True, exist_ok=True)

        def link_available() -> bool:
            if not available.is_file():
                return False
            if os.path.lexists(conf):
                conf.unlink()
            conf.symlink_to(available)
            log_message(f"Created symlink {conf} -> {available}", "SUCCESS")
            return True

        if link_available():
            return ModuleState.LINKED

        pm = self.package_manager
        for package in module_package_guesses(module, pm.name, include_bundles=False):
            if not pm.is_available(package):
                continue
            log_message(f"Found package {package} for module {module}, installing...")
            if pm.install(package, update=True):
                if conf.exists():
                    log_message(f"Module configuration file {conf} now exists", "SUCCESS")
                    return ModuleState.INSTALLED
                if link_available():
                    return ModuleState.INSTALLED

        log_message(f"Could not find or install a package for module {module}, creating placeholder", "WARNING")
        if os.path.lexists(conf):
            conf.unlink()
        conf.write_text(placeholder_conf(module))
        os.chmod(conf, 0o644)
        self.stats.placeholders += 1
        log_message(f"Created placeholder {conf}; nginx can start but module {module} will not be loaded", "WARNING")
        return ModuleState.PLACEHOLDER

    def _repair_modules(self) -> None:
        missing = [r for r in self.module_refs if r.state == ModuleState.MISSING]
        if not missing:
            return
        log_message("Repairing missing modules...")
        for ref in missing:
            if ref.kind == "conf":
                try:
                    ref.state = self.repair_module_conf(ref.expected_path)
                except OSError as e:
                    log_message(f"Could not repair {ref.expected_path}: {e}", "WARNING")
                    ref.state = ModuleState.UNRESOLVED
                    continue
                if ref.fixed:
                    self.stats.modules_fixed += 1
                continue
            if self.repair_module_object(ref):
                break

        unfixed = [r for r in missing if not r.fixed]
        if unfixed:
            log_message(f"{len(unfixed)} module reference(s) remain unresolved", "WARNING")

    def _repair_common(self) -> None:
        log_message("Checking for common configuration issues...")
        if not self.main_conf.is_file():
            log_message(f"Main nginx.conf not found in {self.config_dir}", "ERROR")
            return

        conf_text = self._read_main_conf()
        created = []
        for include in site_includes(conf_text, self.config_dir) + module_includes(conf_text, self.config_dir):
            directory = os.path.dirname(include) if is_wildcard(include) else None
            if directory and not os.path.isdir(directory):
                os.makedirs(directory, exist_ok=True)
                created.append(directory)

        web_user = first_existing_user(self.config["web_users"])
        for directory in self.config["runtime_dirs"]:
            if os.path.isdir(directory):
                continue
            os.makedirs(directory, exist_ok=True)
            created.append(directory)
            if web_user:
                self.permissions.set_permissions([PermissionTarget(directory, web_user, web_user, recursive=True)])

        for directory in created:
            log_message(f"Created missing directory: {directory}")
        if created:
            self.stats.config_issues_found += 1
            self.stats.config_issues_fixed += 1

    def _fix_permissions(self) -> None:
        log_message("Fixing nginx file permissions...")
        failures = self.permissions.set_tree_modes(self.config_dir, 0o755, 0o644, file_suffix=".conf")
        if failures:
            log_message(f"{failures} configuration path(s) kept their old modes", "WARNING")

        web_user = first_existing_user(self.config["web_users"])
        targets = []
        if self.binary and os.path.isfile(self.binary) and not os.path.islink(self.binary):
            targets.append(PermissionTarget(self.binary, mode=0o755))
        if web_user:
            log_group = first_existing_group(list(self.config["log_groups"]) + [web_user])
            targets.append(PermissionTarget(self.config["log_dir"], web_user, log_group, 0o755, recursive=False))
            targets.append(PermissionTarget(self.config["cache_dir"], web_user, web_user, recursive=True))
        else:
            log_message("No web server user found; log and cache ownership left unchanged", "WARNING")
        if targets:
            self.permissions.set_permissions(targets)

    def _check_service(self) -> None:
        log_message("Checking nginx service status...")
        name = self.config["service_name"]
        service_file = next((s for s in self.config["service_files"] if os.path.isfile(s)), None)
        if service_file:
            log_message(f"Found nginx service file: {service_file}")
        else:
            unit_path = Path(self.config["service_files"][0])
            log_message(f"Nginx service file not found, creating {unit_path}", "WARNING")
            unit_path.parent.mkdir(parents=True, exist_ok=True)
            unit_path.write_text(SERVICE_UNIT.format(binary=self.binary))
            self.services.daemon_reload()

        if self.services.is_active(name):
            log_message("Nginx service is running", "SUCCESS")
        elif self.services.start(name):
            log_message("Started nginx service", "SUCCESS")
        else:
            log_message("Failed to start nginx service", "ERROR")
            log_message(self.services.status_snapshot(name, lines=10), "WARNING")

        if not self.services.is_enabled(name):
            log_message("Enabling nginx service")
            self.services.enable(name)

    def apply_action(self, action: RemediationAction) -> bool:
        if action.kind == RemediationKind.MISSING_MODULE_CONF:
            # A placeholder still counts: the file exists and parsing moves on
            return self.repair_module_conf(action.path) != ModuleState.UNRESOLVED

        if action.kind == RemediationKind.MISSING_MODULE_OBJECT:
            ref = ModuleReference(name=os.path.basename(action.path), expected_path=action.path)
            self.repair_module_object(ref)
            return ref.fixed

        if action.kind == RemediationKind.BROKEN_SITE_LINK:
            link = Path(action.path)
            available = link.parent.parent / "sites-available" / link.name
            if not available.is_file():
                log_message(f"No sites-available counterpart for {link}", "WARNING")
                return False
            if os.path.lexists(link):
                link.unlink()
            link.symlink_to(available)
            log_message(f"Relinked {link} -> {available}", "SUCCESS")
            return True

        if action.kind == RemediationKind.MISSING_DIRECTORY:
            os.makedirs(action.path, exist_ok=True)
            log_message(f"Created missing directory: {action.path}")
            return True

        return False

    def _repair_config_loop(self) -> None:
        max_iterations = int(self.config["max_config_iterations"])
        log_message("Iteratively testing and repairing nginx configuration...")

        for iteration in range(1, max_iterations + 1):
            self.stats.config_iterations = iteration
            log_message(f"Repair iteration {iteration} of {max_iterations}")
            ok, output = self.config_test()
            if ok:
                log_message("Nginx configuration is now valid!", "SUCCESS")
                return

            actions, unresolved = classify(output)
            self.stats.config_issues_found += len(actions) + len(unresolved)
            for line in unresolved:
                log_message(f"Unrecognised diagnostic: {line}", "WARNING")

            fixed = 0
            for action in actions:
                try:
                    if self.apply_action(action):
                        fixed += 1
                except OSError as e:
                    log_message(f"Could not apply {action.kind.value} fix for {action.path}: {e}", "WARNING")
            self.stats.config_issues_fixed += fixed

            if fixed == 0:
                log_message("Could not fix any more issues automatically", "WARNING")
                return

        log_message(f"Configuration still failing after {max_iterations} iterations", "WARNING")

    def _final_validate(self) -> None:
        log_message("Checking nginx configuration syntax...")
        ok, output = self.config_test()
        self.stats.config_valid = ok
        self.stats.config_output = output
        if ok:
            log_message("Nginx configuration syntax is OK", "SUCCESS")
            self.stats.unresolved = []
            return

        log_message("Nginx configuration still has issues - manual intervention may be required", "WARNING")
        for line in output.splitlines():
            log_message(f"  {line}", "WARNING")
        actions, unresolved = classify(output)
        self.stats.unresolved = unresolved + [a.line for a in actions]
        if any(a.kind == RemediationKind.MISSING_MODULE_CONF for a in actions):
            log_message("Install the missing module packages or create the module configuration "
                        "files manually (e.g. apt-get install libnginx-mod-* nginx-extras)")

    def escalation_reasons(self) -> List[str]:
        reasons = []
        if not (self.binary and os.path.isfile(self.binary) and os.access(self.binary, os.X_OK)):
            reasons.append("nginx binary is missing or not executable")
        if not self.main_conf.is_file():
            reasons.append("main nginx.conf is missing")
        unfixed = self.stats.symlinks_found - self.stats.symlinks_fixed
        if self.stats.symlinks_found > 0 and unfixed > self.stats.symlinks_found / 2:
            reasons.append(f"{unfixed} of {self.stats.symlinks_found} broken symlinks remain")
        return reasons

    def _escalate(self) -> None:
        reasons = self.escalation_reasons()
        if len(reasons) < 2:
            log_message("Full reinstallation not needed", "DEBUG")
            return

        log_message("Multiple critical issues detected:", "WARNING")
        for reason in reasons:
            log_message(f"  - {reason}", "WARNING")
        if not self.confirm("Purge and reinstall nginx completely?", False):
            log_message("Full reinstallation declined")
            return

        name = self.config["service_name"]
        pm = self.package_manager
        log_message("Performing full nginx reinstallation...")
        self.services.stop(name)
        pm.purge(*self.config["purge_packages"].get(pm.name, ["nginx"]))
        if not pm.install("nginx", update=True):
            log_message("Reinstalling nginx failed; install it manually", "ERROR")
            return
        self.services.enable(name)
        self.services.start(name)
        self.stats.reinstalled = True
        log_message("Nginx reinstallation completed", "SUCCESS")

        ok, output = self.config_test()
        self.stats.config_valid = ok
        self.stats.config_output = output
        if ok:
            self.stats.unresolved = []

    def _report(self) -> None:
        text = render_report(self.stats, self.services.status_snapshot(self.config["service_name"], lines=10))
        if self.report_path:
            Path(self.report_path).parent.mkdir(parents=True, exist_ok=True)
            Path(self.report_path).write_text(text)
            self.stats.report_path = self.report_path
            log_message(f"Repair report saved to: {self.report_path}")
        for line in text.splitlines():
            log_message(line)

    def run(self) -> RepairStats:
        """
        Walk every state once.

        Raises:
            NginxRepairError: binary or configuration directory not found
        """
        for state in RepairState:
            handler = getattr(self, f"_{state.value}")
            log_message(f"--- {state.name} ---", "DEBUG")
            try:
                handler()
            except NginxRepairError:
                raise
            except Exception as e:
                if state in FATAL_STATES:
                    raise NginxRepairError(f"{state.name} failed: {e}") from e
                log_message(f"Error during {state.name.lower().replace('_', ' ')}: {e}; continuing", "WARNING")
                self.stats.state_errors.append(f"{state.name}: {e}")
        return self.stats


def render_report(stats: RepairStats, service_status: str) -> str:
    lines = [
        "=" * 77,
        "NGINX REPAIR SUMMARY REPORT",
        "=" * 77,
        f"Repair Date: {datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"System: {stats.distro} {stats.distro_version}",
        f"Package Manager: {stats.package_manager}",
        f"Nginx Version: {stats.nginx_version}",
        f"Nginx Binary: {stats.binary}",
        f"Nginx Config: {stats.config_dir}",
        "",
        "REPAIR STATISTICS:",
        f"- Broken Symlinks Found: {stats.symlinks_found}",
        f"- Broken Symlinks Fixed: {stats.symlinks_fixed}",
        f"- Missing Modules Found: {stats.modules_found}",
        f"- Missing Modules Fixed: {stats.modules_fixed}",
        f"- Placeholder Module Configs: {stats.placeholders}",
        f"- Config Issues Found: {stats.config_issues_found}",
        f"- Config Issues Fixed: {stats.config_issues_fixed}",
        f"- Config Repair Iterations: {stats.config_iterations}",
        f"- Full Reinstall Performed: {'yes' if stats.reinstalled else 'no'}",
        "",
        "NGINX STATUS:",
        service_status,
        "",
        "CONFIGURATION TEST:",
        stats.config_output or "not run",
        "",
        f"BACKUP LOCATION: {stats.backup_location or 'none'}",
        "",
        "RECOMMENDATIONS:",
    ]
    recommendations = []
    if stats.symlinks_fixed < stats.symlinks_found:
        recommendations.append("- Some broken symlinks could not be automatically repaired")
    if stats.modules_fixed < stats.modules_found:
        recommendations.append("- Some missing modules could not be automatically installed")
    if stats.placeholders:
        recommendations.append("- Placeholder module configs were created; those modules are not loaded")
    if not stats.config_valid:
        recommendations.append("- Review nginx configuration for remaining issues")
    for line in stats.unresolved:
        recommendations.append(f"  unresolved: {line}")
    for error in stats.state_errors:
        recommendations.append(f"  step error: {error}")
    lines += recommendations or ["- None"]
    lines += [
        "",
        "NEXT STEPS:",
        "1. Test nginx configuration: nginx -t",
        "2. Restart nginx service: systemctl restart nginx",
        "3. Check nginx status: systemctl status nginx",
        "4. Monitor nginx logs: tail -f /var/log/nginx/error.log",
        "5. Test website functionality",
    ]
    return "\n".join(lines) + "\n"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="servermigrate nginx",
                                     description="Repair broken symlinks, modules and configuration of nginx")
    parser.add_argument("--binary", help="nginx binary to use instead of searching")
    parser.add_argument("--config-dir", help="nginx configuration directory")
    policy = parser.add_mutually_exclusive_group()
    policy.add_argument("--assume-yes", action="store_true", help="Approve a full reinstall if one is needed")
    policy.add_argument("--assume-no", action="store_true", help="Never perform a full reinstall")
    parser.add_argument("--report", help="Where to write the repair report")
    parser.add_argument("--config", help="JSON file merged over the packaged defaults")
    parser.add_argument("--log-root", help="Parent directory for the run log directory")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(args=None):
    """
    Entry point for ``servermigrate nginx``.

    Returns:
        dict: success flag, exit code and repair statistics
    """
    options = build_parser().parse_args(args)
    settings = load_config(options.config)
    nginx_config = section(settings, "nginx")

    log_root = options.log_root or section(settings, "logging").get("log_root", "/var/log/servermigrate")
    run_dir = create_run_log_dir(log_root, "nginx")
    setup_logging(str(run_dir / "nginx.log"), verbose=options.verbose)

    if hasattr(os, "geteuid") and os.geteuid() != 0:
        log_message("Not running as root; most repairs will fail", "WARNING")

    policy = ConfirmPolicy.YES if options.assume_yes else ConfirmPolicy.NO if options.assume_no else ConfirmPolicy.ASK
    repairer = NginxRepairer(
        config=nginx_config,
        confirm=Confirmer(policy),
        binary=options.binary,
        config_dir=options.config_dir,
        report_path=options.report or str(run_dir / "nginx_repair_report.txt")
    )

    banner(f"NGINX SYMLINK AND MODULE REPAIR - {datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    try:
        stats = repairer.run()
    except NginxRepairError as e:
        log_message(f"Cannot proceed: {e}", "ERROR")
        return {"success": False, "exit_code": 1, "error": str(e)}
    except KeyboardInterrupt:
        log_message("Repair interrupted by operator", "WARNING")
        return {"success": False, "exit_code": 130, "error": "interrupted"}

    if stats.config_valid:
        log_message("Nginx repair process completed; configuration is valid", "SUCCESS")
    else:
        log_message("Nginx repair process completed with unresolved issues", "WARNING")
    return {"success": stats.config_valid, "exit_code": stats.exit_code, "stats": stats}


if __name__ == "__main__":
    sys.exit(main()["exit_code"])
