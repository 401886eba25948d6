"""Session open/upgrade protocol, backups, legacy adoption, and lifecycle tests."""

from __future__ import annotations

import hashlib
import sqlite3
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from localdb.errors import (
    ApplicationIDMismatchError,
    BackupError,
    ConnectionTargetError,
    DatabaseError,
    HandleClosedError,
    MigrationError,
    SchemaVersionTooNewError,
)
from localdb.persistence.schema import SqlSchema
from localdb.persistence.session import (
    ConnectionSettings,
    open_session,
    open_session_async,
)
from localdb.persistence.version import FallbackVersionStore, PragmaVersionStore

from . import (
    ROOT_SCRIPT,
    V2_SCRIPT,
    CountingReader,
    RecordingLogger,
    make_schema,
    read_header,
    table_names,
)

if TYPE_CHECKING:
    from pathlib import Path


def test_open_creates_root_schema_and_writes_header(tmp_path: Path) -> None:
    db_path = tmp_path / "state" / "app.db"
    schema = make_schema(1)

    with open_session(db_path, schema) as session:
        result = session.upgrade_result
        assert result.previous_version == 0
        assert result.current_version == 1
        assert result.applied_versions == (1,)
        assert result.upgraded is True
        assert session.path == str(db_path)

        pragma_fk = session.handle().query_one("PRAGMA foreign_keys")
        pragma_journal = session.handle().query_one("PRAGMA journal_mode")

    assert pragma_fk == {"foreign_keys": 1}
    assert pragma_journal is not None and str(pragma_journal["journal_mode"]).lower() == "wal"
    assert read_header(db_path) == (schema.id, 1)
    assert "items" in table_names(db_path)


def test_reopen_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "app.db"
    schema = make_schema(2)

    with open_session(db_path, schema) as session:
        session.handle().execute("INSERT INTO items(name) VALUES (?)", ("alpha",))

    with open_session(db_path, schema) as session:
        result = session.upgrade_result
        rows = session.handle().query_all("SELECT name FROM items")

    assert result.previous_version == 2
    assert result.current_version == 2
    assert result.applied_versions == ()
    assert result.upgraded is False
    assert rows == [{"name": "alpha"}]
    assert read_header(db_path) == (schema.id, 2)


def test_upgrade_applies_pending_scripts_in_order(tmp_path: Path) -> None:
    db_path = tmp_path / "app.db"
    with open_session(db_path, make_schema(1)) as session:
        session.handle().execute("INSERT INTO items(name) VALUES ('first')")

    schema = make_schema(3)
    with open_session(db_path, schema) as session:
        result = session.upgrade_result
        rows = session.handle().query_all("SELECT name, note FROM items ORDER BY id")

    assert result.previous_version == 1
    assert result.applied_versions == (2, 3)
    assert rows == [
        {"name": "first", "note": None},
        {"name": "seeded; by v3", "note": "v3"},
    ]
    assert {"items", "tags"}.issubset(table_names(db_path))
    assert read_header(db_path) == (schema.id, 3)


def test_failing_upgrade_is_atomic(tmp_path: Path) -> None:
    db_path = tmp_path / "app.db"
    with open_session(db_path, make_schema(1)):
        pass

    schema = make_schema(1)
    schema.define_upgrade(2, "CREATE TABLE extra (x INTEGER); INSERT INTO missing VALUES (1);")

    with pytest.raises(MigrationError) as exc_info:
        open_session(db_path, schema)

    assert exc_info.value.version == 2
    assert isinstance(exc_info.value.__cause__, DatabaseError)
    assert "no such table: missing" in str(exc_info.value)
    assert read_header(db_path) == (schema.id, 1)
    assert "extra" not in table_names(db_path)


def test_application_id_mismatch_leaves_stored_identity(tmp_path: Path) -> None:
    db_path = tmp_path / "app.db"
    original = make_schema(1)
    with open_session(db_path, original):
        pass

    other = SqlSchema("CREATE TABLE unrelated (id INTEGER PRIMARY KEY);")
    with pytest.raises(ApplicationIDMismatchError) as exc_info:
        open_session(db_path, other)

    assert exc_info.value.stored == original.id
    assert exc_info.value.expected == other.id
    assert str(exc_info.value) == (
        f"application_id ({original.id}) does not match schema ID ({other.id})"
    )
    assert read_header(db_path) == (original.id, 1)
    assert "unrelated" not in table_names(db_path)


def test_newer_database_is_refused(tmp_path: Path) -> None:
    db_path = tmp_path / "app.db"
    with open_session(db_path, make_schema(2)):
        pass

    with pytest.raises(SchemaVersionTooNewError) as exc_info:
        open_session(db_path, make_schema(1))

    assert exc_info.value.stored == 2
    assert exc_info.value.latest == 1
    assert str(exc_info.value) == "user_version (2) is higher than the schema version (1)"
    assert read_header(db_path)[1] == 2


def test_legacy_database_is_adopted_once_through_fallback(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(ROOT_SCRIPT)
    conn.close()
    assert read_header(db_path) == (0, 0)

    legacy = CountingReader(user_version=1)
    store = FallbackVersionStore(PragmaVersionStore(), legacy)
    schema = make_schema(2)

    # A re-run root script would fail because the table already exists.
    with open_session(db_path, schema, version_store=store) as session:
        assert session.upgrade_result.previous_version == 1
        assert session.upgrade_result.applied_versions == (2,)

    with open_session(db_path, schema, version_store=store) as session:
        assert session.upgrade_result.upgraded is False

    assert legacy.application_id_reads == 1
    assert legacy.user_version_reads == 1
    assert read_header(db_path) == (schema.id, 2)


def test_legacy_identity_and_version_are_adopted_through_fallback(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy_v2.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(ROOT_SCRIPT + V2_SCRIPT)
    conn.close()
    assert read_header(db_path) == (0, 0)

    schema = make_schema(3)
    legacy = CountingReader(application_id=schema.id, user_version=2)
    store = FallbackVersionStore(PragmaVersionStore(), legacy)

    with open_session(db_path, schema, version_store=store) as session:
        assert session.upgrade_result.previous_version == 2
        assert session.upgrade_result.applied_versions == (3,)
        row = session.handle().query_one("SELECT note FROM items WHERE name = 'seeded; by v3'")
        assert row == {"note": "v3"}

    with open_session(db_path, schema, version_store=store) as session:
        assert session.upgrade_result.upgraded is False
    with open_session(
        db_path, schema, version_store=FallbackVersionStore(PragmaVersionStore(), legacy)
    ) as session:
        assert session.upgrade_result.current_version == 3

    assert read_header(db_path) == (schema.id, 3)
    assert legacy.application_id_reads == 1
    assert legacy.user_version_reads == 1


def test_backup_is_written_before_upgrade(tmp_path: Path) -> None:
    db_path = tmp_path / "data" / "test.db"
    backup_dir = tmp_path / "backups"
    with open_session(db_path, make_schema(1)) as session:
        session.handle().execute("INSERT INTO items(name) VALUES ('kept')")

    logger = RecordingLogger()
    with open_session(db_path, make_schema(2), backup_dir=backup_dir, logger=logger):
        pass

    backup_path = backup_dir / "test.before_v2_upgrade.db"
    assert backup_path.is_file()
    assert read_header(backup_path)[1] == 1
    conn = sqlite3.connect(backup_path)
    try:
        names = [row[0] for row in conn.execute("SELECT name FROM items").fetchall()]
        columns = [row[1] for row in conn.execute("PRAGMA table_info(items)").fetchall()]
    finally:
        conn.close()
    assert names == ["kept"]
    assert "note" not in columns
    assert "database_backed_up" in logger.names()
    assert logger.names().index("database_backed_up") < logger.names().index("schema_upgraded")


def test_backup_is_byte_identical_to_pre_upgrade_file(tmp_path: Path) -> None:
    db_path = tmp_path / "rollback_journal.db"
    backup_dir = tmp_path / "backups"
    with open_session(
        db_path, make_schema(1), settings=ConnectionSettings(journal_mode="DELETE")
    ) as session:
        session.handle().execute("INSERT INTO items(name) VALUES ('kept')")
    original_digest = hashlib.sha256(db_path.read_bytes()).hexdigest()

    with open_session(db_path, make_schema(2), backup_dir=backup_dir):
        pass

    backup_path = backup_dir / "rollback_journal.before_v2_upgrade.db"
    assert hashlib.sha256(backup_path.read_bytes()).hexdigest() == original_digest
    assert hashlib.sha256(db_path.read_bytes()).hexdigest() != original_digest


def test_no_backup_when_schema_is_current(tmp_path: Path) -> None:
    db_path = tmp_path / "test.db"
    backup_dir = tmp_path / "backups"
    with open_session(db_path, make_schema(2)):
        pass

    with open_session(db_path, make_schema(2), backup_dir=backup_dir):
        pass

    assert not backup_dir.exists() or list(backup_dir.iterdir()) == []


def test_no_backup_for_new_database(tmp_path: Path) -> None:
    backup_dir = tmp_path / "backups"
    with open_session(tmp_path / "fresh.db", make_schema(2), backup_dir=backup_dir):
        pass

    assert not backup_dir.exists() or list(backup_dir.iterdir()) == []


def test_backup_reads_fallback_version_only_once(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(ROOT_SCRIPT)
    conn.close()

    legacy = CountingReader(user_version=1)
    store = FallbackVersionStore(PragmaVersionStore(), legacy)
    backup_dir = tmp_path / "backups"

    with open_session(db_path, make_schema(2), version_store=store, backup_dir=backup_dir):
        pass

    assert (backup_dir / "legacy.before_v2_upgrade.db").is_file()
    assert legacy.user_version_reads == 1


def test_failed_backup_aborts_upgrade(tmp_path: Path) -> None:
    db_path = tmp_path / "test.db"
    with open_session(db_path, make_schema(1)):
        pass
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied", encoding="utf-8")

    with pytest.raises(BackupError):
        open_session(db_path, make_schema(2), backup_dir=blocker)

    assert read_header(db_path)[1] == 1


def test_opened_timestamp_and_schema_copy(tmp_path: Path) -> None:
    schema = make_schema(1)
    before = datetime.now(UTC)
    session = open_session(tmp_path / "app.db", schema)
    after = datetime.now(UTC)
    try:
        assert before <= session.opened <= after
        assert session.opened.tzinfo is not None
        assert session.schema is not schema

        schema.define_upgrade(2, "CREATE TABLE later (id INTEGER);")
        assert session.schema.latest_version == 1
    finally:
        session.close()


def test_close_is_idempotent_and_blocks_further_use(tmp_path: Path) -> None:
    logger = RecordingLogger()
    session = open_session(tmp_path / "app.db", make_schema(1), logger=logger)
    statement = session.statements.prepare("SELECT COUNT(*) AS n FROM items")

    session.close()
    session.close()

    assert session.closed is True
    assert statement.closed is True
    assert logger.names().count("session_closed") == 1
    with pytest.raises(HandleClosedError):
        session.handle()
    with pytest.raises(HandleClosedError):
        session.wrap_tx(lambda tx: None)


def test_in_memory_session_and_connection_options(tmp_path: Path) -> None:
    with open_session(":memory:", make_schema(2)) as session:
        assert session.database_file is None
        assert session.upgrade_result.current_version == 2

    db_path = tmp_path / "opts.db"
    with open_session(db_path, make_schema(1), connection_options={"cache": "private"}) as session:
        assert session.dsn == f"{db_path}?cache=private"


def test_malformed_connection_target_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConnectionTargetError):
        open_session(f"{tmp_path / 'bad.db'}?cache=%zz", make_schema(1))


def test_settings_are_validated() -> None:
    with pytest.raises(ValueError, match="journal_mode"):
        ConnectionSettings(journal_mode="sideways")
    with pytest.raises(ValueError, match="busy_timeout_ms"):
        ConnectionSettings(busy_timeout_ms=-1)


def test_non_wal_journal_mode_is_applied(tmp_path: Path) -> None:
    settings = ConnectionSettings(journal_mode="DELETE", foreign_keys=False)
    with open_session(tmp_path / "app.db", make_schema(1), settings=settings) as session:
        journal = session.handle().query_one("PRAGMA journal_mode")
        foreign_keys = session.handle().query_one("PRAGMA foreign_keys")
    assert journal == {"journal_mode": "delete"}
    assert foreign_keys == {"foreign_keys": 0}


@pytest.mark.asyncio
async def test_open_session_async_and_async_transactions(tmp_path: Path) -> None:
    session = await open_session_async(tmp_path / "app.db", make_schema(2))
    try:
        inserted = await session.wrap_tx_async(
            lambda tx: tx.execute("INSERT INTO items(name, note) VALUES ('a', 'b')")
        )
        row = session.handle().query_one("SELECT name, note FROM items")
    finally:
        session.close()

    assert inserted == 1
    assert row == {"name": "a", "note": "b"}
