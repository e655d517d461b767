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
Configuration loading.

Defaults ship in the package's index.json (metadata + config sections);
an operator-supplied file with the same shape is merged over them.
"""

import copy
import json
import os
from typing import Any, Dict, Optional

from .index import log_message

PACKAGE_INDEX = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "index.json")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_index(index_file: str) -> Optional[Dict[str, Any]]:
    """Load an index.json file, or None if missing/invalid."""
    if not os.path.exists(index_file):
        return None
    try:
        with open(index_file, 'r') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        log_message(f"Failed to load {index_file}: {e}", "ERROR")
        return None


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Build the effective configuration.

    Args:
        config_path: optional operator index.json merged over the defaults

    Returns:
        dict: {"metadata": {...}, "config": {...}}
    """
    index = load_index(PACKAGE_INDEX)
    if index is None:
        log_message(f"Packaged defaults not found at {PACKAGE_INDEX}, using built-in fallbacks", "WARNING")
        index = {"metadata": {"schema_version": "unknown"}, "config": {}}

    if config_path:
        override = load_index(config_path)
        if override is None:
            log_message(f"Config file {config_path} could not be read; continuing with defaults", "WARNING")
        else:
            log_message(f"Loaded configuration overrides from {config_path}")
            index = _deep_merge(index, override)

    return index


def section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return one workflow's config section (``config.<name>``), never None."""
    return config.get("config", {}).get(name, {}) or {}
