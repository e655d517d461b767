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
Dynamic module references in an nginx configuration.
"""

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List

LOAD_MODULE_PATTERN = re.compile(r'^\s*load_module\s+([^;]+);', re.MULTILINE)
INCLUDE_PATTERN = re.compile(r'(?<![\w-])include\s+([^;{}]+);')
COMPILED_PATTERN = re.compile(r'--(with-[^\s=]+)')
CONF_PREFIX_PATTERN = re.compile(r'^\d+-mod-')


class ModuleState(str, Enum):
    FOUND = "found"
    MISSING = "missing"
    INSTALLED = "installed"
    LINKED = "linked"
    PLACEHOLDER = "placeholder"
    UNRESOLVED = "unresolved"


@dataclass
class ModuleReference:
    """A module the configuration expects to find on disk."""
    name: str
    expected_path: str
    kind: str = "object"  # "object" (.so via load_module) or "conf" (modules-enabled file)
    state: ModuleState = ModuleState.MISSING

    @property
    def fixed(self) -> bool:
        return self.state in (ModuleState.FOUND, ModuleState.INSTALLED, ModuleState.LINKED)


def _strip_comments(text: str) -> str:
    return "\n".join(line.split("#", 1)[0] for line in text.splitlines())


def _unquote(value: str) -> str:
    return value.strip().strip('"').strip("'")


def compiled_modules(version_output: str) -> List[str]:
    """``with-*`` flags from ``nginx -V`` output."""
    return COMPILED_PATTERN.findall(version_output)


def load_module_references(conf_text: str, config_dir: str) -> List[ModuleReference]:
    """One reference per ``load_module`` directive; relative paths resolve against config_dir."""
    references = []
    for raw in LOAD_MODULE_PATTERN.findall(_strip_comments(conf_text)):
        path = _unquote(raw)
        if not os.path.isabs(path):
            path = os.path.join(config_dir, path)
        state = ModuleState.FOUND if os.path.isfile(path) else ModuleState.MISSING
        references.append(ModuleReference(name=os.path.basename(path), expected_path=path, state=state))
    return references


def _includes(conf_text: str, config_dir: str, marker: str) -> List[str]:
    """Include targets containing marker; relative ones resolve against config_dir like nginx does."""
    targets = []
    for raw in INCLUDE_PATTERN.findall(_strip_comments(conf_text)):
        path = _unquote(raw)
        if marker not in path:
            continue
        if not os.path.isabs(path):
            path = os.path.join(config_dir, path)
        targets.append(path)
    return targets


def module_includes(conf_text: str, config_dir: str) -> List[str]:
    """Include targets that point into a modules-enabled directory."""
    return _includes(conf_text, config_dir, "modules-enabled")


def site_includes(conf_text: str, config_dir: str) -> List[str]:
    return _includes(conf_text, config_dir, "sites-enabled")


def is_wildcard(include: str) -> bool:
    return any(ch in include for ch in "*?[")


def base_module_name(filename: str) -> str:
    """ngx_http_geoip_module.so -> http-geoip (the package-name form)."""
    name = filename[:-3] if filename.endswith(".so") else filename
    if name.startswith("ngx_"):
        name = name[4:]
    if name.endswith("_module"):
        name = name[:-7]
    return name.replace("_", "-")


def conf_module_name(conf_path: str) -> str:
    """50-mod-http-geoip.conf -> http-geoip."""
    name = os.path.basename(conf_path)
    if name.endswith(".conf"):
        name = name[:-5]
    return CONF_PREFIX_PATTERN.sub("", name)


def module_package_guesses(module: str, package_manager: str, include_bundles: bool = True) -> List[str]:
    """Candidate package names for a module, most specific first."""
    if package_manager == "apt":
        guesses = [f"libnginx-mod-{module}", f"nginx-module-{module}"]
        if include_bundles:
            guesses += ["nginx-extras", "nginx-full"]
        return guesses
    if package_manager in ("yum", "dnf"):
        return [f"nginx-mod-{module}", f"nginx-module-{module}"]
    return []


def find_shared_objects(filename: str, search_paths: List[str], limit: int = 5) -> List[Path]:
    """Search library trees for a module file: exact name first, then any .so containing its stem."""
    stem = filename[:-3] if filename.endswith(".so") else filename
    exact, partial = [], []
    for root in search_paths:
        if not os.path.isdir(root):
            continue
        for current, _dirs, files in os.walk(root):
            for name in files:
                if not name.endswith(".so"):
                    continue
                if name == filename:
                    exact.append(Path(current) / name)
                elif stem in name:
                    partial.append(Path(current) / name)
            if len(exact) >= limit:
                break
    return (exact + partial)[:limit]


def placeholder_conf(module: str) -> str:
    return (
        "# Generated by servermigrate nginx repair\n"
        f"# Placeholder for missing module: {module}\n"
        "# Install the module package and restore the directive below to load it\n"
        f"# load_module modules/{module}.so;\n"
    )
