"""Module entrypoint for ``python -m localdb``."""

from __future__ import annotations

from localdb.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
