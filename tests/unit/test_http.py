from __future__ import annotations

import hashlib
from pathlib import Path

import pytest
import requests

from zipmarket_etl.common.http import HttpClient, HttpRequestError, RetryConfig, RetryableHttpError


class FakeResponse:
    def __init__(self, status_code: int, chunks: list[bytes] | None = None, fail_midway: bool = False):
        self.status_code = status_code
        self._chunks = chunks or []
        self._fail_midway = fail_midway
        self.closed = False

    def iter_content(self, chunk_size: int):
        for chunk in self._chunks:
            yield chunk
        if self._fail_midway:
            raise requests.ConnectionError("connection reset")

    def close(self):
        self.closed = True


def no_wait_client(max_attempts: int = 1) -> HttpClient:
    return HttpClient(retry=RetryConfig(max_attempts=max_attempts, multiplier=0.0, max_wait=0.0))


def test_download_to_file_streams_and_hashes(monkeypatch, tmp_path: Path):
    client = no_wait_client()
    captured = {}

    def fake_request(**kwargs):
        captured.update(kwargs)
        return FakeResponse(200, [b"hello ", b"", b"world"])

    monkeypatch.setattr(client.session, "request", fake_request)
    result = client.download_to_file("https://example.test/US.zip", tmp_path / "nested" / "source.zip")

    assert result.path.read_bytes() == b"hello world"
    assert result.size_bytes == 11
    assert result.checksum_sha256 == hashlib.sha256(b"hello world").hexdigest()
    assert captured["stream"] is True
    assert captured["timeout"] == (20.0, 300.0)
    assert captured["headers"]["User-Agent"].startswith("zipmarket-etl/")


def test_download_to_file_retries_retryable_status(monkeypatch, tmp_path: Path):
    client = no_wait_client(max_attempts=3)
    responses = iter([FakeResponse(503), FakeResponse(200, [b"ok"])])
    monkeypatch.setattr(client.session, "request", lambda **_kwargs: next(responses))

    result = client.download_to_file("https://example.test/feed.gz", tmp_path / "source.gz")

    assert result.path.read_bytes() == b"ok"


def test_download_to_file_rewrites_partial_file_on_retry(monkeypatch, tmp_path: Path):
    client = no_wait_client(max_attempts=2)
    responses = iter([FakeResponse(200, [b"partial"], fail_midway=True), FakeResponse(200, [b"full"])])
    monkeypatch.setattr(client.session, "request", lambda **_kwargs: next(responses))

    result = client.download_to_file("https://example.test/feed.gz", tmp_path / "source.gz")

    assert result.path.read_bytes() == b"full"
    assert result.checksum_sha256 == hashlib.sha256(b"full").hexdigest()


def test_download_to_file_gives_up_after_max_attempts(monkeypatch, tmp_path: Path):
    client = no_wait_client(max_attempts=2)
    calls = []

    def fake_request(**_kwargs):
        calls.append(1)
        return FakeResponse(502)

    monkeypatch.setattr(client.session, "request", fake_request)

    with pytest.raises(RetryableHttpError):
        client.download_to_file("https://example.test/feed.gz", tmp_path / "source.gz")
    assert len(calls) == 2


def test_download_to_file_does_not_retry_client_errors(monkeypatch, tmp_path: Path):
    client = no_wait_client(max_attempts=3)
    calls = []

    def fake_request(**_kwargs):
        calls.append(1)
        return FakeResponse(404)

    monkeypatch.setattr(client.session, "request", fake_request)

    with pytest.raises(HttpRequestError) as excinfo:
        client.download_to_file("https://example.test/missing.gz", tmp_path / "source.gz")
    assert not isinstance(excinfo.value, RetryableHttpError)
    assert len(calls) == 1


def test_connection_errors_become_retryable(monkeypatch, tmp_path: Path):
    client = no_wait_client()

    def fake_request(**_kwargs):
        raise requests.ConnectionError("dns failure")

    monkeypatch.setattr(client.session, "request", fake_request)

    with pytest.raises(RetryableHttpError):
        client.download_to_file("https://example.test/feed.gz", tmp_path / "source.gz")
