"""GTFS archive acquisition for the CITHSL feed.

The agency publishes a single google_transit.zip at a fixed URL. The archive
is streamed to disk with httpx and described by a small JSON record written
next to it (URL, byte size, SHA-256). A later run skips the request while
the archive on disk still matches that record.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import httpx

logger: Final[logging.Logger] = logging.getLogger(__name__)

_CHUNK_SIZE: Final[int] = 65_536
_TIMEOUT: Final[int] = 120
_RETRIES: Final[int] = 3

RECORD_NAME: Final[str] = "download.json"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DownloadError(Exception):
    """Raised when the archive URL answers with an HTTP error status."""

    def __init__(self, url: str, status_code: int, body: str) -> None:
        self.url: Final[str] = url
        self.status_code: Final[int] = status_code
        self.body: Final[str] = body
        super().__init__(f"Archive request to {url} failed with HTTP {status_code}: {body[:200]}")


# ---------------------------------------------------------------------------
# Archive record
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ArchiveRecord:
    """What was fetched last, and from where.

    Attributes:
        url: Source URL.
        file_path: Archive location on disk.
        byte_size: Archive size in bytes.
        sha256_hash: Hex-encoded SHA-256 digest of the archive.
        download_timestamp: ISO-8601 time of the fetch.
    """

    url: str
    file_path: str
    byte_size: int
    sha256_hash: str
    download_timestamp: str

    def matches(self, url: str, dest: Path) -> bool:
        """True if dest still holds the archive this record describes."""
        if self.url != url or Path(self.file_path) != dest or not dest.exists():
            return False
        if dest.stat().st_size != self.byte_size:
            return False
        return compute_sha256(dest) == self.sha256_hash


def read_record(path: Path) -> ArchiveRecord | None:
    """Return the stored record, or None if there is none yet."""
    if not path.exists():
        return None
    data = json.loads(path.read_text(encoding="utf-8"))
    return ArchiveRecord(
        url=str(data["url"]),
        file_path=str(data["file_path"]),
        byte_size=int(data["byte_size"]),
        sha256_hash=str(data["sha256_hash"]),
        download_timestamp=str(data["download_timestamp"]),
    )


def write_record(path: Path, record: ArchiveRecord) -> None:
    """Store the record, replacing any previous one in a single rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(path.name + ".tmp")
    staging.write_text(json.dumps(asdict(record), indent=2), encoding="utf-8")
    os.replace(str(staging), str(path))


@dataclass(frozen=True, slots=True)
class DownloadResult:
    """Outcome of download_feed.

    Attributes:
        record: Description of the archive now on disk.
        http_status: HTTP status code, 0 when the request was skipped.
        skipped: True if the stored record already matched the archive.
    """

    record: ArchiveRecord
    http_status: int
    skipped: bool = False


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def compute_sha256(file_path: Path) -> str:
    """Compute SHA-256 hex digest of a file using chunked reads."""
    hasher = hashlib.sha256()
    with file_path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def build_client() -> httpx.Client:
    """Construct an httpx client with transport-level retries."""
    transport = httpx.HTTPTransport(retries=_RETRIES)
    return httpx.Client(timeout=_TIMEOUT, transport=transport, follow_redirects=True)


def _fetch_archive(client: httpx.Client, url: str, dest: Path) -> tuple[int, int]:
    """Stream the archive to dest through a .part sibling.

    Returns:
        Tuple of (http_status_code, bytes_written).

    Raises:
        DownloadError: On HTTP 4xx/5xx responses. dest is left untouched.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".part")
    with client.stream("GET", url) as response:
        if response.status_code >= 400:
            body = response.read().decode("utf-8", errors="replace")
            raise DownloadError(url, response.status_code, body)
        written = 0
        with partial.open("wb") as fh:
            for chunk in response.iter_bytes(chunk_size=_CHUNK_SIZE):
                fh.write(chunk)
                written += len(chunk)
    os.replace(str(partial), str(dest))
    return response.status_code, written


def download_feed(
    url: str,
    dest: Path,
    record_path: Path | None = None,
    *,
    client: httpx.Client | None = None,
) -> DownloadResult:
    """Download the GTFS archive unless the stored record says it is current.

    Args:
        url: Archive URL.
        dest: Destination file path.
        record_path: JSON record of the last fetch. Without one the archive
            is always downloaded and nothing is recorded.
        client: httpx client to reuse. A retrying client is built if None.

    Returns:
        DownloadResult describing the archive on disk.

    Raises:
        DownloadError: On HTTP 4xx/5xx responses.
        httpx.HTTPError: On transport failures after retries.
    """
    previous = read_record(record_path) if record_path is not None else None
    if previous is not None and previous.matches(url, dest):
        logger.info("Archive %s unchanged since %s; skipped", dest, previous.download_timestamp)
        return DownloadResult(record=previous, http_status=0, skipped=True)

    logger.info("Downloading %s -> %s", url, dest)
    if client is None:
        with build_client() as owned:
            status, size = _fetch_archive(owned, url, dest)
    else:
        status, size = _fetch_archive(client, url, dest)

    record = ArchiveRecord(
        url=url,
        file_path=str(dest),
        byte_size=size,
        sha256_hash=compute_sha256(dest),
        download_timestamp=datetime.now(UTC).isoformat(),
    )
    logger.info("Downloaded %s (%d bytes, sha256 %s)", dest.name, size, record.sha256_hash[:12])
    if record_path is not None:
        write_record(record_path, record)
    return DownloadResult(record=record, http_status=status)
