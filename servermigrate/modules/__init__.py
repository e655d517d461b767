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
Migration workflows. Each submodule exposes ``main(args=None) -> dict``.
"""

WORKFLOWS = {
    "db": "servermigrate.modules.database.index",
    "nginx": "servermigrate.modules.nginx.index",
    "host": "servermigrate.modules.host.index",
}

__all__ = ['WORKFLOWS']
