"""HTTP client with retries and timeouts for streamed source downloads."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from zipmarket_etl.common.constants import USER_AGENT
from zipmarket_etl.common.errors import StageError
from zipmarket_etl.common.fs import ensure_dir

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
DOWNLOAD_CHUNK_SIZE = 1024 * 128


@dataclass(frozen=True)
class TimeoutConfig:
    connect: float = 20.0
    read: float = 300.0


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    multiplier: float = 1.0
    max_wait: float = 30.0


@dataclass(frozen=True)
class DownloadResult:
    path: Path
    checksum_sha256: str
    size_bytes: int


class HttpRequestError(StageError):
    error_code = "HTTP_ERROR"


class RetryableHttpError(HttpRequestError):
    pass


class HttpClient:
    def __init__(
        self,
        *,
        timeout: TimeoutConfig | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self.timeout = timeout or TimeoutConfig()
        self.retry = retry or RetryConfig()
        self.session = requests.Session()

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _headers(self, headers: dict[str, str] | None) -> dict[str, str]:
        out = {"User-Agent": USER_AGENT, "Accept": "*/*"}
        if headers:
            out.update(headers)
        return out

    def _raise_for_status_or_retry(self, response: requests.Response, url: str) -> None:
        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            raise RetryableHttpError(f"Retryable HTTP status {status} from {url}")
        if status >= 400:
            raise HttpRequestError(f"HTTP status {status} from {url}")

    def _download_to_file(
        self,
        url: str,
        target_path: Path,
        headers: dict[str, str] | None,
        timeout: TimeoutConfig | None,
    ) -> DownloadResult:
        req_timeout = timeout or self.timeout
        try:
            response = self.session.request(
                method="GET",
                url=url,
                headers=self._headers(headers),
                timeout=(req_timeout.connect, req_timeout.read),
                stream=True,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise RetryableHttpError(f"Request to {url} failed: {exc}") from exc

        try:
            self._raise_for_status_or_retry(response, url)

            # Each attempt rewrites the file and restarts the digest.
            checksum = hashlib.sha256()
            size_bytes = 0
            ensure_dir(target_path.parent)
            with target_path.open("wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if not chunk:
                        continue
                    checksum.update(chunk)
                    size_bytes += len(chunk)
                    f.write(chunk)
        except requests.RequestException as exc:
            raise RetryableHttpError(f"Download from {url} was interrupted: {exc}") from exc
        finally:
            response.close()

        return DownloadResult(path=target_path, checksum_sha256=checksum.hexdigest(), size_bytes=size_bytes)

    def download_to_file(
        self,
        url: str,
        target_path: Path,
        *,
        headers: dict[str, str] | None = None,
        timeout: TimeoutConfig | None = None,
    ) -> DownloadResult:
        @retry(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.retry.multiplier,
                max=self.retry.max_wait,
                jitter=1.0,
            ),
            retry=retry_if_exception_type(RetryableHttpError),
            reraise=True,
        )
        def _wrapped() -> DownloadResult:
            return self._download_to_file(url, target_path, headers, timeout)

        return _wrapped()
