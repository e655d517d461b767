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
PostgreSQL client wrapper

Every call goes through psql, pg_dump, pg_dumpall or pg_restore with the
password handed over in PGPASSWORD for that one invocation. Query results
are read in unaligned tuples-only mode (``psql -tA``), one row per line and
columns separated by ``|``.
"""

import re
from typing import List, Optional, Set, Tuple

from ...utils import CommandRunner, CommandResult, log_message
from .models import DatabaseTarget

USER_SCHEMA_FILTER = "n.nspname NOT IN ('pg_catalog', 'information_schema') AND n.nspname NOT LIKE 'pg_toast%'"

SEQUENCES_SQL = f"""
SELECT quote_ident(sn.nspname) || '.' || quote_ident(s.relname),
       quote_ident(n.nspname) || '.' || quote_ident(t.relname),
       quote_ident(a.attname)
FROM pg_class s
JOIN pg_namespace sn ON sn.oid = s.relnamespace
JOIN pg_depend d ON d.objid = s.oid AND d.classid = 'pg_class'::regclass AND d.deptype IN ('a', 'i')
JOIN pg_class t ON t.oid = d.refobjid
JOIN pg_namespace n ON n.oid = t.relnamespace
JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = d.refobjsubid
WHERE s.relkind = 'S' AND {USER_SCHEMA_FILTER}
ORDER BY 1;
"""

TABLE_COUNT_SQL = ("SELECT count(*) FROM information_schema.tables "
                   "WHERE table_type = 'BASE TABLE' "
                   "AND table_schema NOT IN ('pg_catalog', 'information_schema');")

CREATE_ROLE_PATTERN = re.compile(r'^CREATE ROLE\s+"?(?P<name>[^";\s]+)"?\s*;\s*$')


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PostgresClient:
    """One PostgreSQL server reached through the command-line clients."""

    def __init__(self, target: DatabaseTarget, runner: Optional[CommandRunner] = None):
        self.target = target
        self.runner = runner or CommandRunner()

    def _psql(self, sql: str, database: Optional[str] = None, stop_on_error: bool = True) -> CommandResult:
        command = ["psql", *self.target.connection_args(database), "-X", "-tA",
                   "-v", f"ON_ERROR_STOP={1 if stop_on_error else 0}", "-c", sql]
        return self.runner.run(command, env=self.target.env())

    def rows(self, sql: str, database: Optional[str] = None) -> List[List[str]]:
        result = self._psql(sql, database)
        if not result.success:
            raise RuntimeError(result.stderr.strip() or f"psql exited with {result.returncode}")
        return [line.split("|") for line in result.stdout.splitlines() if line.strip()]

    def scalar(self, sql: str, database: Optional[str] = None) -> Optional[str]:
        rows = self.rows(sql, database)
        return rows[0][0] if rows else None

    def execute(self, sql: str, database: Optional[str] = None) -> CommandResult:
        result = self._psql(sql, database)
        if not result.success:
            log_message(f"[{self.target.host}] SQL failed: {result.stderr.strip()}", "DEBUG")
        return result

    def ping(self) -> bool:
        return self._psql("SELECT 1;").success

    def server_version(self) -> Optional[str]:
        """e.g. '15.4' from 'SHOW server_version' ('15.4 (Debian 15.4-1)')."""
        value = self.scalar("SHOW server_version;")
        return value.split()[0] if value else None

    def list_databases(self) -> List[str]:
        rows = self.rows("SELECT datname FROM pg_database "
                         "WHERE datistemplate = false "
                         "AND datname NOT IN ('postgres', 'template0', 'template1') "
                         "ORDER BY datname;")
        return [row[0] for row in rows]

    def database_exists(self, name: str) -> bool:
        return self.scalar(f"SELECT 1 FROM pg_database WHERE datname = {quote_literal(name)};") == "1"

    def database_settings(self, name: str) -> Optional[Tuple[str, str, str]]:
        """(collate, ctype, encoding) of a database."""
        rows = self.rows("SELECT datcollate, datctype, pg_encoding_to_char(encoding) "
                         f"FROM pg_database WHERE datname = {quote_literal(name)};")
        if not rows or len(rows[0]) < 3:
            return None
        collate, ctype, encoding = rows[0][:3]
        return collate, ctype, encoding

    def database_size(self, name: str) -> str:
        try:
            return self.scalar(f"SELECT pg_size_pretty(pg_database_size({quote_literal(name)}));") or "unknown"
        except RuntimeError:
            return "unknown"

    def terminate_connections(self, name: str) -> CommandResult:
        return self.execute("SELECT pg_terminate_backend(pid) FROM pg_stat_activity "
                            f"WHERE datname = {quote_literal(name)} AND pid <> pg_backend_pid();")

    def drop_database(self, name: str) -> CommandResult:
        return self.execute(f"DROP DATABASE IF EXISTS {quote_ident(name)};")

    def create_database(self, name: str, owner: str, encoding: Optional[str] = None,
                        collate: Optional[str] = None, ctype: Optional[str] = None,
                        template0: bool = True) -> CommandResult:
        sql = f"CREATE DATABASE {quote_ident(name)}"
        if template0:
            sql += " WITH TEMPLATE template0"
        sql += f" OWNER {quote_ident(owner)}"
        if template0:
            if encoding:
                sql += f" ENCODING {quote_literal(encoding)}"
            if collate:
                sql += f" LC_COLLATE {quote_literal(collate)}"
            if ctype:
                sql += f" LC_CTYPE {quote_literal(ctype)}"
        return self.execute(sql + ";")

    def roles(self) -> Set[str]:
        return {row[0] for row in self.rows("SELECT rolname FROM pg_roles;")}

    def dump_globals(self) -> CommandResult:
        command = ["pg_dumpall", "-h", self.target.host, "-p", str(self.target.port),
                   "-U", self.target.user, "--globals-only"]
        return self.runner.run(command, env=self.target.env())

    def apply_script(self, script: str, database: Optional[str] = None) -> CommandResult:
        """Feed a SQL script on stdin, continuing past failing statements."""
        command = ["psql", *self.target.connection_args(database), "-X", "-q",
                   "-v", "ON_ERROR_STOP=0"]
        return self.runner.run(command, env=self.target.env(), input_text=script)

    def dump(self, database: str, path: str) -> CommandResult:
        """Custom-format archive without ownership or privilege statements."""
        command = ["pg_dump", *self.target.connection_args(database),
                   "-Fc", "--no-owner", "--no-privileges", "-f", path]
        return self.runner.run(command, env=self.target.env())

    def restore(self, database: str, path: str) -> CommandResult:
        """Load an archive; pg_restore carries on past failing statements."""
        command = ["pg_restore", *self.target.connection_args(database),
                   "--no-owner", "--no-privileges", path]
        return self.runner.run(command, env=self.target.env())

    def table_count(self, database: str) -> Optional[int]:
        try:
            value = self.scalar(TABLE_COUNT_SQL, database)
            return int(value) if value is not None else None
        except (RuntimeError, ValueError) as e:
            log_message(f"Could not count tables in {database} on {self.target.host}: {e}", "WARNING")
            return None

    def sequences(self, database: str) -> List[Tuple[str, str, str]]:
        """(sequence, table, column) for every column-owned sequence in user schemas."""
        return [(row[0], row[1], row[2]) for row in self.rows(SEQUENCES_SQL, database) if len(row) >= 3]

    def reset_sequence(self, database: str, sequence: str, table: str, column: str) -> CommandResult:
        sql = (f"SELECT setval({quote_literal(sequence)}, "
               f"COALESCE((SELECT MAX({column}) FROM {table}), 0) + 1, false);")
        return self.execute(sql, database)


def filter_existing_roles(script: str, existing_roles: Set[str]) -> Tuple[str, List[str]]:
    """
    Drop ``CREATE ROLE x;`` lines for roles the destination already has.

    The matching ``ALTER ROLE`` lines are kept so attributes and passwords
    still converge on reruns. Returns the filtered script and skipped names.
    """
    kept, skipped = [], []
    for line in script.splitlines():
        match = CREATE_ROLE_PATTERN.match(line.strip())
        if match and match.group("name") in existing_roles:
            skipped.append(match.group("name"))
            continue
        kept.append(line)
    return "\n".join(kept) + "\n", skipped
