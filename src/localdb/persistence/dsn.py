"""Connection target assembly for SQLite URI filenames."""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, quote, urlencode

from localdb.errors import ConnectionTargetError

if TYPE_CHECKING:
    from collections.abc import Mapping

_MEMORY_PATHS = frozenset({"", ":memory:"})
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def split_dsn(dsn: str) -> tuple[str, str]:
    """Split ``dsn`` into its path and (possibly empty) query string."""

    path, _, query = dsn.partition("?")
    return path, query


def assemble_dsn(input_dsn: str, options: Mapping[str, str] | None = None) -> str:
    """Merge explicit connection ``options`` into the query string of ``input_dsn``.

    Keys already present in the path query are kept as repeated parameters,
    except keys also given in ``options``: for those the explicit value wins.
    The resulting query is encoded with keys in sorted order.
    """

    path, has_query, query = input_dsn.partition("?")
    if not has_query and not options:
        return input_dsn

    embedded = _parse_query(input_dsn, query)

    explicit = dict(options or {})
    for key, value in explicit.items():
        if not isinstance(key, str) or not key:
            raise ConnectionTargetError(f"connection option keys must be non-empty strings: {key!r}")
        if not isinstance(value, str):
            raise ConnectionTargetError(f"connection option {key!r} must be a string")

    pairs = [(key, value) for key, value in embedded if key not in explicit]
    pairs.extend(explicit.items())
    # sorted() is stable, so repeated keys keep their relative order.
    pairs.sort(key=lambda pair: pair[0])

    if not pairs:
        return path
    return f"{path}?{urlencode(pairs)}"


def _parse_query(input_dsn: str, query: str) -> list[tuple[str, str]]:
    """Parse ``query`` like a URL query: bare keys get an empty value, empty segments are skipped."""

    for segment in query.split("&"):
        if ";" in segment:
            raise ConnectionTargetError(
                f"unable to parse input DSN {input_dsn!r}: invalid semicolon separator in query"
            )
        match = _BAD_ESCAPE.search(segment)
        if match is not None:
            raise ConnectionTargetError(
                f"unable to parse input DSN {input_dsn!r}: invalid escape "
                f"{segment[match.start() : match.start() + 3]!r}"
            )
    return parse_qsl(query, keep_blank_values=True)


def sqlite_uri(dsn: str) -> str:
    """Return the ``file:`` URI for ``sqlite3.connect(..., uri=True)``."""

    path, query = split_dsn(dsn)
    uri = "file:" + quote(path, safe="/:")
    if query:
        uri += "?" + query
    return uri


def database_file(dsn: str) -> Path | None:
    """Return the on-disk database path, or ``None`` for in-memory targets."""

    path, query = split_dsn(dsn)
    if path in _MEMORY_PATHS:
        return None
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key == "mode" and value == "memory":
            return None
    return Path(path).expanduser()


__all__ = [
    "assemble_dsn",
    "database_file",
    "split_dsn",
    "sqlite_uri",
]
