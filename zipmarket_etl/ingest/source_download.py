"""Download a remote source to a scratch file with checksum provenance."""

from __future__ import annotations

import logging
import re
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable
from urllib.parse import urlparse

from zipmarket_etl.common.fs import remove_tree
from zipmarket_etl.common.http import HttpClient
from zipmarket_etl.common.logging import log_event
from zipmarket_etl.common.time_utils import utc_now

logger = logging.getLogger(__name__)

_EXTENSION_RE = re.compile(r"\.[A-Za-z0-9]+$")
_UNSAFE_NAME_RE = re.compile(r"[^a-z0-9_-]+")


@dataclass(frozen=True)
class DownloadedSource:
    file_path: Path
    checksum_sha256: str
    downloaded_at: datetime
    size_bytes: int
    cleanup: Callable[[], None]


def infer_file_extension(source_url: str) -> str:
    match = _EXTENSION_RE.search(urlparse(source_url).path)
    return match.group(0) if match else ".tmp"


def sanitize_source_name(source_name: str) -> str:
    return _UNSAFE_NAME_RE.sub("-", source_name.lower())


def download_source_to_temp_file(
    source_name: str,
    source_url: str,
    *,
    client: HttpClient | None = None,
) -> DownloadedSource:
    download_dir = Path(tempfile.mkdtemp(prefix=f"zipmarket-{sanitize_source_name(source_name)}-"))
    target_path = download_dir / f"source{infer_file_extension(source_url)}"

    owns_client = client is None
    http = client or HttpClient()
    try:
        result = http.download_to_file(source_url, target_path)
    except BaseException:
        shutil.rmtree(download_dir, ignore_errors=True)
        raise
    finally:
        if owns_client:
            http.close()

    def cleanup() -> None:
        remove_tree(download_dir)

    log_event(
        logger,
        f"downloaded {source_name} source ({result.size_bytes} bytes)",
        source=source_name,
        event="SOURCE_DOWNLOADED",
        status="ok",
    )
    return DownloadedSource(
        file_path=result.path,
        checksum_sha256=result.checksum_sha256,
        downloaded_at=utc_now(),
        size_bytes=result.size_bytes,
        cleanup=cleanup,
    )
