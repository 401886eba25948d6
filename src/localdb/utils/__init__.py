"""Utility exports for checksum and filesystem helpers."""

from localdb.utils.checksum import CRC32C_TABLE, application_id_for, crc32c, to_int32
from localdb.utils.fs import copy_file_atomic

__all__ = [
    "CRC32C_TABLE",
    "application_id_for",
    "copy_file_atomic",
    "crc32c",
    "to_int32",
]
