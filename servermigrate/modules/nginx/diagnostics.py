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
Classify ``nginx -t`` diagnostics into remediation actions.

Matchers are tried in order against each line and the first match wins.
Error lines no matcher recognises are returned as unresolved; they are
reported, never acted on.
"""

import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Pattern, Tuple


class RemediationKind(str, Enum):
    MISSING_MODULE_CONF = "missing_module_conf"
    MISSING_MODULE_OBJECT = "missing_module_object"
    BROKEN_SITE_LINK = "broken_site_link"
    MISSING_DIRECTORY = "missing_directory"


@dataclass(frozen=True)
class RemediationAction:
    kind: RemediationKind
    path: str
    line: str


MATCHERS: List[Tuple[RemediationKind, Pattern]] = [
    (RemediationKind.MISSING_MODULE_CONF,
     re.compile(r'open\(\) "(?P<path>[^"]*/modules-enabled/[^"]+\.conf)" failed')),
    (RemediationKind.MISSING_MODULE_OBJECT,
     re.compile(r'dlopen\(\) "(?P<path>[^"]+\.so)" failed')),
    (RemediationKind.BROKEN_SITE_LINK,
     re.compile(r'open\(\) "(?P<path>[^"]*/sites-enabled/[^"]+)" failed')),
    (RemediationKind.MISSING_DIRECTORY,
     re.compile(r'mkdir\(\) "(?P<path>[^"]+)" failed \(2: No such file or directory\)')),
    (RemediationKind.MISSING_DIRECTORY,
     re.compile(r'open\(\) "(?P<path>[^"]+)" failed \(2: No such file or directory\)')),
]

ERROR_MARKERS = ("[emerg]", "[alert]", "[crit]", "[error]")

CONFIG_FILE_PATTERN = re.compile(r'configuration file (?P<path>\S+?) (?:syntax is ok|test (?:is successful|failed))')


def classify_line(line: str) -> List[RemediationAction]:
    for kind, pattern in MATCHERS:
        match = pattern.search(line)
        if not match:
            continue
        path = match.group("path")
        # A failed open() of a file means its directory is missing
        if kind == RemediationKind.MISSING_DIRECTORY and pattern.pattern.startswith("open"):
            path = os.path.dirname(path)
        return [RemediationAction(kind=kind, path=path, line=line.strip())]
    return []


def classify(output: str) -> Tuple[List[RemediationAction], List[str]]:
    """
    Split config-test output into actions and unresolved error lines.

    Returns:
        (actions, unresolved): actions deduplicated by kind and path in
        first-seen order; unresolved holds the error lines nothing matched
    """
    actions: List[RemediationAction] = []
    seen = set()
    unresolved: List[str] = []

    for line in output.splitlines():
        matched = classify_line(line)
        if matched:
            for action in matched:
                key = (action.kind, action.path)
                if key not in seen:
                    seen.add(key)
                    actions.append(action)
            continue
        if any(marker in line for marker in ERROR_MARKERS):
            unresolved.append(line.strip())

    return actions, unresolved


def config_file_from_output(output: str) -> str:
    """Path of the main config file named by nginx -t, or ''."""
    match = CONFIG_FILE_PATTERN.search(output)
    return match.group("path") if match else ""
