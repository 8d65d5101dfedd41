"""Tests for the feed download module.

Covers the archive record, SHA-256 hashing, streaming download and HTTP
error handling. All HTTP calls are mocked via respx.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Final

import httpx
import pytest
import respx

from cithsl_gtfs.download import (
    ArchiveRecord,
    DownloadError,
    compute_sha256,
    download_feed,
    read_record,
    write_record,
)

_FEED_URL: Final[str] = "https://exo.quebec/xdata/cithsl/google_transit.zip"
_ARCHIVE: Final[bytes] = b"PK\x03\x04fake-gtfs-archive"


def _record(path: Path, url: str = _FEED_URL) -> ArchiveRecord:
    return ArchiveRecord(
        url=url,
        file_path=str(path),
        byte_size=path.stat().st_size,
        sha256_hash=compute_sha256(path),
        download_timestamp="2026-06-01T00:00:00+00:00",
    )


class TestComputeSha256:
    """Chunked SHA-256 digest."""

    def test_known_content(self, tmp_path: Path) -> None:
        path = tmp_path / "data.bin"
        path.write_bytes(_ARCHIVE)

        assert compute_sha256(path) == hashlib.sha256(_ARCHIVE).hexdigest()

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.bin"
        path.write_bytes(b"")

        assert compute_sha256(path) == hashlib.sha256(b"").hexdigest()


class TestArchiveRecord:
    """JSON record persistence and matching."""

    def test_read_missing_returns_none(self, tmp_path: Path) -> None:
        assert read_record(tmp_path / "download.json") is None

    def test_write_and_read(self, tmp_path: Path) -> None:
        archive = tmp_path / "gtfs.zip"
        archive.write_bytes(_ARCHIVE)
        record = _record(archive)

        write_record(tmp_path / "download.json", record)

        assert read_record(tmp_path / "download.json") == record
        assert not (tmp_path / "download.json.tmp").exists()
        assert json.loads((tmp_path / "download.json").read_text())["url"] == _FEED_URL

    def test_write_replaces_previous(self, tmp_path: Path) -> None:
        archive = tmp_path / "gtfs.zip"
        archive.write_bytes(_ARCHIVE)
        write_record(tmp_path / "download.json", _record(archive))
        archive.write_bytes(_ARCHIVE + b"v2")

        write_record(tmp_path / "download.json", _record(archive))

        stored = read_record(tmp_path / "download.json")
        assert stored is not None
        assert stored.byte_size == len(_ARCHIVE) + 2

    def test_matches_unchanged_file(self, tmp_path: Path) -> None:
        archive = tmp_path / "gtfs.zip"
        archive.write_bytes(_ARCHIVE)

        assert _record(archive).matches(_FEED_URL, archive)

    def test_changed_content_does_not_match(self, tmp_path: Path) -> None:
        archive = tmp_path / "gtfs.zip"
        archive.write_bytes(_ARCHIVE)
        record = _record(archive)
        # same size, different bytes
        archive.write_bytes(_ARCHIVE[::-1])

        assert not record.matches(_FEED_URL, archive)

    def test_missing_file_does_not_match(self, tmp_path: Path) -> None:
        archive = tmp_path / "gtfs.zip"
        archive.write_bytes(_ARCHIVE)
        record = _record(archive)
        archive.unlink()

        assert not record.matches(_FEED_URL, archive)

    def test_other_destination_does_not_match(self, tmp_path: Path) -> None:
        archive = tmp_path / "gtfs.zip"
        archive.write_bytes(_ARCHIVE)

        assert not _record(archive).matches(_FEED_URL, tmp_path / "other.zip")

    def test_other_url_does_not_match(self, tmp_path: Path) -> None:
        archive = tmp_path / "gtfs.zip"
        archive.write_bytes(_ARCHIVE)

        assert not _record(archive).matches("https://example.org/old.zip", archive)


class TestDownloadFeed:
    """Streaming download with record-based skipping."""

    @respx.mock
    def test_downloads_archive(self, tmp_path: Path) -> None:
        respx.get(_FEED_URL).mock(return_value=httpx.Response(200, content=_ARCHIVE))
        dest = tmp_path / "input" / "gtfs.zip"

        result = download_feed(_FEED_URL, dest)

        assert dest.read_bytes() == _ARCHIVE
        assert result.http_status == 200
        assert result.record.byte_size == len(_ARCHIVE)
        assert result.record.sha256_hash == hashlib.sha256(_ARCHIVE).hexdigest()
        assert not result.skipped
        assert not (dest.parent / "gtfs.zip.part").exists()

    @respx.mock
    def test_skips_when_record_matches(self, tmp_path: Path) -> None:
        route = respx.get(_FEED_URL).mock(return_value=httpx.Response(200, content=_ARCHIVE))
        dest = tmp_path / "gtfs.zip"
        record_path = tmp_path / "download.json"

        first = download_feed(_FEED_URL, dest, record_path)
        second = download_feed(_FEED_URL, dest, record_path)

        assert not first.skipped
        assert second.skipped
        assert second.http_status == 0
        assert second.record == first.record
        assert route.call_count == 1

    @respx.mock
    def test_redownloads_when_file_changed(self, tmp_path: Path) -> None:
        route = respx.get(_FEED_URL).mock(return_value=httpx.Response(200, content=_ARCHIVE))
        dest = tmp_path / "gtfs.zip"
        record_path = tmp_path / "download.json"
        download_feed(_FEED_URL, dest, record_path)
        dest.write_bytes(b"truncated")

        result = download_feed(_FEED_URL, dest, record_path)

        assert not result.skipped
        assert dest.read_bytes() == _ARCHIVE
        assert route.call_count == 2

    @respx.mock
    def test_without_record_path_nothing_is_recorded(self, tmp_path: Path) -> None:
        route = respx.get(_FEED_URL).mock(return_value=httpx.Response(200, content=_ARCHIVE))
        dest = tmp_path / "gtfs.zip"

        download_feed(_FEED_URL, dest)
        download_feed(_FEED_URL, dest)

        assert route.call_count == 2
        assert sorted(p.name for p in tmp_path.iterdir()) == ["gtfs.zip"]

    @respx.mock
    def test_http_404_raises_download_error(self, tmp_path: Path) -> None:
        respx.get(_FEED_URL).mock(return_value=httpx.Response(404, text="Not found"))
        dest = tmp_path / "gtfs.zip"

        with pytest.raises(DownloadError) as exc_info:
            download_feed(_FEED_URL, dest, tmp_path / "download.json")

        assert exc_info.value.status_code == 404
        assert exc_info.value.url == _FEED_URL
        assert "Not found" in exc_info.value.body
        assert not dest.exists()
        assert not (tmp_path / "download.json").exists()

    @respx.mock
    def test_reuses_given_client(self, tmp_path: Path) -> None:
        respx.get(_FEED_URL).mock(return_value=httpx.Response(200, content=_ARCHIVE))

        with httpx.Client() as client:
            result = download_feed(_FEED_URL, tmp_path / "gtfs.zip", client=client)

        assert result.record.byte_size == len(_ARCHIVE)
