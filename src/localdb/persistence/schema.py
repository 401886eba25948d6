"""Schema definitions and the open-time upgrade protocol.

A schema is an ordered list of SQL scripts. The root script is version 1 and
every script registered with :meth:`SqlSchema.define_upgrade` adds one version.
The stored ``user_version`` of a database is the number of scripts already
applied, so upgrading runs ``scripts[user_version:]`` in order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from localdb.constants import ROOT_SCHEMA_VERSION
from localdb.errors import (
    ApplicationIDMismatchError,
    MigrationError,
    SchemaDefinitionFault,
    SchemaVersionTooNewError,
)
from localdb.persistence.handle import Handle
from localdb.utils.checksum import application_id_for

if TYPE_CHECKING:
    from localdb.persistence.transaction import TransactionRunner
    from localdb.persistence.version import VersionStore


class Schema(Protocol):
    @property
    def application_id(self) -> int: ...

    @property
    def latest_version(self) -> int: ...

    def copy(self) -> Schema: ...

    def upgrade(self, handle: Handle, current_version: int) -> int: ...


class SqlSchema:
    """Schema built from SQL scripts.

    ``id`` defaults to the CRC-32C of the root script and may be overridden
    before the schema is used to open a database.
    """

    def __init__(self, root_script: str, *, application_id: int | None = None) -> None:
        self.id = application_id if application_id is not None else application_id_for(root_script)
        self._scripts: list[str] = [root_script]

    @property
    def application_id(self) -> int:
        return self.id

    @property
    def latest_version(self) -> int:
        return len(self._scripts)

    @property
    def scripts(self) -> tuple[str, ...]:
        return tuple(self._scripts)

    def define_upgrade(self, new_version: int, script: str) -> SqlSchema:
        """Register ``script`` as the migration to ``new_version``.

        Versions must be registered in order starting at 2. Already-opened
        sessions hold their own copy and are not affected.
        """

        expected = ROOT_SCHEMA_VERSION + len(self._scripts)
        if new_version != expected:
            raise SchemaDefinitionFault(
                f"non-incremental schema version {new_version}; expected {expected}"
            )
        self._scripts.append(script)
        return self

    def copy(self) -> SqlSchema:
        dupe = SqlSchema.__new__(SqlSchema)
        dupe.id = self.id
        dupe._scripts = list(self._scripts)
        return dupe

    def upgrade(self, handle: Handle, current_version: int) -> int:
        latest = self.latest_version
        for index in range(max(current_version, 0), latest):
            try:
                handle.execute_script(self._scripts[index])
            except Exception as exc:
                raise MigrationError(index + 1, exc) from exc
        return latest

    def __repr__(self) -> str:
        return f"SqlSchema(id={self.id}, latest_version={self.latest_version})"


@dataclass(frozen=True, slots=True)
class UpgradeResult:
    application_id: int
    previous_version: int
    current_version: int
    applied_versions: tuple[int, ...]

    @property
    def upgraded(self) -> bool:
        return bool(self.applied_versions)

    def to_dict(self) -> dict[str, object]:
        return {
            "application_id": self.application_id,
            "previous_version": self.previous_version,
            "current_version": self.current_version,
            "applied_versions": list(self.applied_versions),
            "upgraded": self.upgraded,
        }


def upgrade_database(
    runner: TransactionRunner,
    schema: Schema,
    version_store: VersionStore,
) -> UpgradeResult:
    """Validate identity and bring the database to ``schema.latest_version`` atomically.

    Everything happens inside one transaction: on any failure nothing is
    written, including the application id.
    """

    def _upgrade(handle: Handle) -> UpgradeResult:
        stored_id = version_store.get_application_id(handle)
        if stored_id != 0 and stored_id != schema.application_id:
            raise ApplicationIDMismatchError(stored_id, schema.application_id)
        version_store.set_application_id(handle, schema.application_id)

        stored_version = version_store.get_user_version(handle)
        if stored_version > schema.latest_version:
            raise SchemaVersionTooNewError(stored_version, schema.latest_version)

        new_version = schema.upgrade(handle, stored_version)
        version_store.set_user_version(handle, new_version)

        first_pending = max(stored_version, 0) + 1
        return UpgradeResult(
            application_id=schema.application_id,
            previous_version=stored_version,
            current_version=new_version,
            applied_versions=tuple(range(first_pending, new_version + 1)),
        )

    return runner.wrap_tx(_upgrade)


__all__ = [
    "Schema",
    "SqlSchema",
    "UpgradeResult",
    "upgrade_database",
]
