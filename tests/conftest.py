"""Shared pytest fixtures for the canonicalization tests.

The feed tables themselves live in tests/feed_builder.py; these fixtures
write them to disk, as a directory or as a ZIP archive.
"""

from __future__ import annotations

import zipfile
from typing import TYPE_CHECKING

import pytest

from tests.feed_builder import write_feed

if TYPE_CHECKING:
    from pathlib import Path


# ---------------------------------------------------------------------------
# Feed fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def gtfs_dir(tmp_path: Path) -> Path:
    """A feed directory with every table."""
    return write_feed(tmp_path / "gtfs")


@pytest.fixture()
def gtfs_zip(tmp_path: Path) -> Path:
    """The same feed as a ZIP archive, with a nested folder and macOS metadata."""
    source = write_feed(tmp_path / "zip_source")
    zip_path = tmp_path / "google_transit.zip"
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for table in sorted(source.iterdir()):
            zf.write(table, f"google_transit/{table.name}")
        zf.writestr("__MACOSX/google_transit/._routes.txt", "junk")
        zf.writestr("google_transit/README.md", "not a table")
    return zip_path
