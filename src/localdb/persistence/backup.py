"""Pre-upgrade database backups."""

from __future__ import annotations

from pathlib import Path

from localdb.errors import BackupError
from localdb.utils.fs import copy_file_atomic


def backup_filename(source: str | Path, target_version: int) -> str:
    """Return the backup file name for upgrading ``source`` to ``target_version``.

    ``test.db`` becomes ``test.before_v2_upgrade.db``; the extension stays last
    so backups of one database sort together.

    >>> backup_filename("foo/test.foo.db", 2)
    'test.foo.before_v2_upgrade.db'
    >>> backup_filename("foo/test", 2)
    'test.before_v2_upgrade'
    """

    name = Path(source)
    if not name.name:
        raise BackupError(f"cannot derive a backup name from {str(source)!r}")
    return f"{name.stem}.before_v{target_version}_upgrade{name.suffix}"


def backup_database(source: str | Path, backup_dir: str | Path, target_version: int) -> Path:
    """Copy ``source`` verbatim into ``backup_dir`` before an upgrade to ``target_version``."""

    source_path = Path(source).expanduser()
    destination = Path(backup_dir).expanduser() / backup_filename(source_path, target_version)
    if not source_path.is_file():
        raise BackupError(f"database file to back up does not exist: {source_path}")
    try:
        return copy_file_atomic(source_path, destination)
    except OSError as exc:
        raise BackupError(
            f"failed to back up {source_path} to {destination}: {exc}"
        ) from exc


__all__ = ["backup_database", "backup_filename"]
