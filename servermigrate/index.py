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
Server Migration Orchestrator

    servermigrate db     migrate PostgreSQL databases between servers
    servermigrate nginx  repair an nginx installation after a migration
    servermigrate host   pull services and applications from a source server

Everything after the subcommand is handed to that workflow's own parser.
"""

import argparse
import importlib
import sys
import traceback

from . import __version__
from .modules import WORKFLOWS
from .utils.index import log_message


def run_workflow(name: str, args=None) -> dict:
    """Import a workflow module and run its main()."""
    module = importlib.import_module(WORKFLOWS[name])
    return module.main(args)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="servermigrate", description="Server Migration Toolkit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("workflow", choices=sorted(WORKFLOWS), help="Workflow to run")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments for the workflow")
    options = parser.parse_args(argv)

    try:
        result = run_workflow(options.workflow, options.args)
        return int(result.get("exit_code", 0 if result.get("success") else 1))
    except KeyboardInterrupt:
        log_message("Migration interrupted by user", "WARNING")
        return 130
    except Exception as e:
        log_message(f"Unhandled error in {options.workflow}: {e}", "ERROR")
        traceback.print_exc()
        return 1


def main_cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    main_cli()
