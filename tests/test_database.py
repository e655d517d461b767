"""Tests for the PostgreSQL migration workflow."""

import pytest

from servermigrate.modules.database.index import DatabaseMigrationError, DatabaseMigrator
from servermigrate.modules.database.models import DatabaseOutcome, DatabaseTarget, MigrationSummary
from servermigrate.modules.database.postgres import PostgresClient, filter_existing_roles, quote_ident, quote_literal
from tests.conftest import FakePostgresClient, FakeRunner, ScriptedConfirm, fail, ok


def make_migrator(source, dest, work_dir, confirm=None, **config):
    config.setdefault("work_dir", work_dir)
    return DatabaseMigrator(source, dest, config=config, confirm_drop=confirm or ScriptedConfirm(default=False),
                            runner=FakeRunner(), sleep=lambda seconds: None)


class TestExistingDestination:
    """A database that already exists on the destination."""

    def test_declined_drop_leaves_database_untouched(self, work_dir):
        """Declining the drop must not issue DROP or CREATE."""
        source = FakePostgresClient("src", {"app": 3})
        dest = FakePostgresClient("dst", {"app": 3})
        confirm = ScriptedConfirm(False)

        record = make_migrator(source, dest, work_dir, confirm).migrate_database("app")

        assert not dest.called("drop")
        assert not dest.called("terminate")
        assert not dest.called("create")
        assert record.succeeded
        assert len(confirm.questions) == 1

    def test_confirmed_drop_recreates_database(self, work_dir):
        source = FakePostgresClient("src", {"app": 3})
        dest = FakePostgresClient("dst", {"app": 3})

        make_migrator(source, dest, work_dir, ScriptedConfirm(True)).migrate_database("app")

        actions = [call[0] for call in dest.calls]
        assert actions.index("terminate") < actions.index("drop") < actions.index("create")

    def test_template0_failure_falls_back_to_defaults(self, work_dir):
        source = FakePostgresClient("src", {"app": 3})
        dest = FakePostgresClient("dst")
        original_create = dest.create_database

        def create(name, owner, encoding=None, collate=None, ctype=None, template0=True):
            original_create(name, owner, encoding, collate, ctype, template0)
            if template0:
                return fail("invalid locale name")
            dest.databases[name] = 3
            return ok()

        dest.create_database = create
        record = make_migrator(source, dest, work_dir).migrate_database("app")

        assert record.succeeded
        assert ("create", "app", False) in dest.calls
        assert any("default encoding" in w for w in record.warnings)


class TestDumpGuard:
    """An empty dump must never reach pg_restore."""

    def test_empty_dump_fails_without_restore(self, work_dir):
        source = FakePostgresClient("src", {"app": 3}, dump_bytes=b"")
        dest = FakePostgresClient("dst")

        record = make_migrator(source, dest, work_dir).migrate_database("app")

        assert record.outcome == DatabaseOutcome.FAILED
        assert "empty" in record.error
        assert not dest.called("restore")

    def test_dump_file_is_removed(self, work_dir, tmp_path):
        source = FakePostgresClient("src", {"app": 3})
        dest = FakePostgresClient("dst", {})

        make_migrator(source, dest, work_dir).migrate_database("app")

        assert list((tmp_path / "work").iterdir()) == []


class TestRestoreRetries:
    """Bounded restore attempts."""

    def test_third_attempt_succeeds(self, work_dir):
        source = FakePostgresClient("src", {"app": 3})
        dest = FakePostgresClient("dst", restore_results=[fail(), fail(), ok()])
        dest.table_count = lambda database: 3

        record = make_migrator(source, dest, work_dir).migrate_database("app")

        assert record.succeeded
        assert record.restore_attempts == 3

    def test_gives_up_after_three_attempts(self, work_dir):
        source = FakePostgresClient("src", {"app": 3})
        dest = FakePostgresClient("dst", restore_results=[fail(), fail(), fail(), ok()])

        record = make_migrator(source, dest, work_dir).migrate_database("app")

        assert record.outcome == DatabaseOutcome.FAILED
        assert record.restore_attempts == 3
        assert sum(1 for call in dest.calls if call[0] == "restore") == 3

    def test_partial_restore_is_a_warning(self, work_dir):
        source = FakePostgresClient("src", {"app": 3})
        dest = FakePostgresClient("dst", restore_results=[fail("WARNING: errors ignored on restore: 2")])

        record = make_migrator(source, dest, work_dir).migrate_database("app")

        assert record.succeeded
        assert record.restore_attempts == 1
        assert any("partial" in w for w in record.warnings)


class TestValidation:
    """Table counts are advisory."""

    def test_mismatch_still_succeeds_with_warning(self, work_dir):
        source = FakePostgresClient("src", {"analytics": 8})
        dest = FakePostgresClient("dst")
        dest.table_count = lambda database: 7

        record = make_migrator(source, dest, work_dir).migrate_database("analytics")

        assert record.succeeded
        assert len(record.warnings) == 1
        assert "mismatch" in record.warnings[0]

    def test_failed_sequence_reset_is_a_warning(self, work_dir):
        source = FakePostgresClient("src", {"shop": 3})
        dest = FakePostgresClient("dst")
        dest.reset_sequence = lambda database, sequence, table, column: fail("permission denied")

        record = make_migrator(source, dest, work_dir).migrate_database("shop")

        assert record.succeeded
        assert record.outcome == DatabaseOutcome.SUCCEEDED
        assert any("users_id_seq" in w for w in record.warnings)

    def test_unlistable_sequences_do_not_abort(self, work_dir):
        source = FakePostgresClient("src", {"shop": 3})
        dest = FakePostgresClient("dst")

        def broken(database):
            raise RuntimeError("connection lost")
        dest.sequences = broken

        record = make_migrator(source, dest, work_dir).migrate_database("shop")

        assert record.succeeded
        assert any("Could not list sequences" in w for w in record.warnings)


class TestRun:
    """Whole-batch behaviour."""

    def test_two_databases_one_mismatch(self, work_dir):
        source = FakePostgresClient("src", {"app": 12, "analytics": 8})
        dest = FakePostgresClient("dst")
        counts = {"app": 12, "analytics": 7}
        dest.table_count = lambda database: counts[database]

        summary = make_migrator(source, dest, work_dir).run("all")

        assert summary.succeeded == 2
        assert summary.failed == 0
        assert summary.warning_count == 1
        assert summary.exit_code == 0
        analytics = next(r for r in summary.records if r.name == "analytics")
        assert analytics.warnings

    def test_failure_is_isolated(self, work_dir):
        source = FakePostgresClient("src", {"app": 2, "broken": 1})
        original_dump = source.dump

        def dump(database, path):
            if database == "broken":
                return fail("pg_dump: connection lost")
            return original_dump(database, path)

        source.dump = dump
        dest = FakePostgresClient("dst")
        dest.table_count = lambda database: 2

        summary = make_migrator(source, dest, work_dir).run("all")

        assert summary.succeeded == 1
        assert summary.failed == 1
        assert summary.exit_code == 1

    def test_empty_source_is_fatal(self, work_dir):
        migrator = make_migrator(FakePostgresClient("src", {}), FakePostgresClient("dst"), work_dir)
        with pytest.raises(DatabaseMigrationError):
            migrator.run("all")

    def test_unknown_database_is_fatal(self, work_dir):
        migrator = make_migrator(FakePostgresClient("src", {"app": 1}), FakePostgresClient("dst"), work_dir)
        with pytest.raises(DatabaseMigrationError):
            migrator.run("missing")

    def test_dest_name_used_for_single_database(self, work_dir):
        source = FakePostgresClient("src", {"app": 1})
        dest = FakePostgresClient("dst")

        summary = make_migrator(source, dest, work_dir).run("app", "app_copy")

        assert summary.records[0].dest_name == "app_copy"
        assert ("restore", "app_copy") in dest.calls


class TestPreflight:
    """Connection and version checks."""

    def test_unreachable_destination(self, work_dir):
        migrator = make_migrator(FakePostgresClient("src"), FakePostgresClient("dst", reachable=False), work_dir)
        with pytest.raises(DatabaseMigrationError):
            migrator.check_connections()

    def test_older_destination_rejected_when_enabled(self, work_dir):
        migrator = make_migrator(FakePostgresClient("src", version="16.2"),
                                 FakePostgresClient("dst", version="14.9"), work_dir, version_check=True)
        with pytest.raises(DatabaseMigrationError):
            migrator.check_version_compatibility()

    def test_version_check_off_by_default(self, work_dir):
        migrator = make_migrator(FakePostgresClient("src", version="16.2"),
                                 FakePostgresClient("dst", version="14.9"), work_dir)
        migrator.check_version_compatibility()


class TestPostgresClient:
    """Command construction for the real client."""

    def test_password_only_in_environment(self, tmp_path):
        runner = FakeRunner()
        client = PostgresClient(DatabaseTarget("db1", password="hunter2"), runner)

        client.dump("app", str(tmp_path / "app.dump"))

        call = runner.calls[-1]
        assert "hunter2" not in " ".join(call["command"])
        assert call["env"] == {"PGPASSWORD": "hunter2"}
        assert call["command"][0] == "pg_dump"
        assert "-Fc" in call["command"]

    def test_target_repr_hides_password(self):
        assert "hunter2" not in repr(DatabaseTarget("db1", password="hunter2"))

    def test_quoting(self):
        assert quote_ident('we"ird') == '"we""ird"'
        assert quote_literal("o'brien") == "'o''brien'"

    def test_existing_roles_are_filtered(self):
        script, skipped = filter_existing_roles("CREATE ROLE postgres;\nALTER ROLE postgres WITH SUPERUSER;\n"
                                                "CREATE ROLE app;\n", {"postgres"})
        assert skipped == ["postgres"]
        assert "CREATE ROLE app;" in script
        assert "ALTER ROLE postgres" in script


class TestSummary:
    def test_exit_code_caps_at_255(self):
        from servermigrate.modules.database.models import DatabaseRecord
        records = [DatabaseRecord(name=str(i), dest_name=str(i), outcome=DatabaseOutcome.FAILED) for i in range(300)]
        assert MigrationSummary(records=records).exit_code == 255
