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

import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional

from ...utils import format_duration, log_message, timestamp
from .driver import RunContext

REPORT_SERVICES = ("nginx", "uwsgi", "postgresql", "mysql")


def render_report(context: RunContext, snapshots: Dict[str, str], elapsed: float) -> str:
    """Plain-text migration report; only steps that were attempted are listed."""
    if context.interrupted:
        outcome = "INTERRUPTED"
    elif context.aborted:
        outcome = "ABORTED"
    elif context.failures:
        outcome = f"COMPLETED WITH {context.failures} FAILED STEP(S)"
    else:
        outcome = "COMPLETED SUCCESSFULLY"

    lines = [
        "=" * 77,
        "SERVER MIGRATION REPORT",
        "=" * 77,
        f"Date: {datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"Source Server: {context.source}",
        f"Outcome: {outcome}",
        f"Total Time: {format_duration(elapsed)}",
        f"Steps Attempted: {len(context.results)}/{context.total_steps}",
        f"Failed Steps: {context.failures}",
        "",
        "STEPS:",
    ]
    for index, result in enumerate(context.results, 1):
        line = f"{index:2d}. {result.name:<24} {result.status:<28} {format_duration(result.duration)}"
        lines.append(line)
        if result.error:
            lines.append(f"      error: {result.error}")
    if not context.results:
        lines.append("  none")

    lines += ["", "SUBSYSTEMS:"]
    lines += [f"- {name}: {outcome}" for name, outcome in sorted(context.subsystems.items())] or ["- none recorded"]

    lines += ["", "DISCOVERED APPLICATIONS:"]
    for kind, label in (("django", "Django"), ("nextjs", "Next.js"), ("compose", "Docker Compose")):
        paths = context.discovered.get(kind, [])
        lines.append(f"{label} ({len(paths)}):")
        lines += [f"  {path}" for path in paths]

    lines += ["", "SERVICE STATUS:"]
    for name, snapshot in snapshots.items():
        lines.append(f"[{name}]")
        lines += [f"  {line}" for line in snapshot.splitlines()]

    lines += [
        "",
        f"BACKUP LOCATION: {context.backup_dir}",
        f"STEP LOGS: {context.base_dir}/<step>_output.log",
        "",
        "NEXT STEPS:",
        "1. Review the step logs of any failed step",
        "2. Test nginx configuration: nginx -t (or run: servermigrate nginx)",
        "3. Migrate databases: servermigrate db --source-host ... --dest-host ...",
        "4. Verify application environment files and secrets",
        "5. Update DNS records once the applications respond correctly",
    ]
    return "\n".join(lines) + "\n"


def write_report(context: RunContext, services, elapsed: float,
                 service_names: Iterable[str] = REPORT_SERVICES,
                 path: Optional[str] = None) -> Optional[Path]:
    """Write the report into base_dir; failures here are logged, never raised."""
    snapshots = {}
    for name in service_names:
        try:
            snapshots[name] = services.status_snapshot(name)
        except Exception as e:
            snapshots[name] = f"{name}: status unavailable ({e})"

    report_path = Path(path) if path else Path(context.base_dir) / f"migration_report_{timestamp()}.txt"
    try:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(render_report(context, snapshots, elapsed))
    except OSError as e:
        log_message(f"Could not write migration report {report_path}: {e}", "ERROR")
        return None
    log_message(f"Migration report written to {report_path}")
    return report_path
