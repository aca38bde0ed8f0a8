"""Streaming downloads with checksum verification and bounded retries."""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TypeVar

import requests

from ..core.errors import (
    FetchError,
    IntegrityError,
    PermanentFetchError,
    TransientFetchError,
)
from ..core.log import get_logger, log_artifact_event
from ..core.time import Deadline
from ..core.types import DownloadDescriptor, RetryPolicy
from ..utils.crypto import checksums_equal, new_hasher
from ..utils.filesystem import safe_remove

logger = get_logger(__name__)

T = TypeVar("T")

CHUNK_SIZE = 1024 * 1024

_TRANSIENT_EXCEPTIONS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
    requests.exceptions.ContentDecodingError,
)


def user_agent() -> str:
    from .. import __version__

    return f"embedded-clickhouse/{__version__}"


def classify_status(url: str, status_code: int) -> Optional[FetchError]:
    """Map an HTTP error status onto a transient or permanent fetch error."""
    if status_code < 400:
        return None
    if status_code >= 500 or status_code == 429:
        return TransientFetchError(
            f"HTTP {status_code} fetching {url}", url, {"status_code": status_code}
        )
    return PermanentFetchError(f"HTTP {status_code} fetching {url}", url, status_code=status_code)


def parse_checksum_file(text: str, filename: str) -> str:
    """Extract the digest for ``filename`` from ``sha512sum``-style output.

    A file holding a single bare digest is accepted as-is.
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    for line in lines:
        parts = line.split(None, 1)
        if len(parts) == 2:
            name = parts[1].strip().lstrip("*")
            if name == filename or name.rsplit("/", 1)[-1] == filename:
                return parts[0].lower()
    if len(lines) == 1 and len(lines[0].split()) == 1:
        return lines[0].lower()
    raise IntegrityError(f"Checksum file does not list {filename}", details={"filename": filename})


@dataclass
class FetchResult:
    """A downloaded file and the digest computed while streaming it."""

    path: Path
    checksum: str
    algorithm: str = "sha512"
    verified: bool = False
    size: int = 0


class Downloader:
    """Fetches release assets over HTTP(S) with ``requests``."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        retry: Optional[RetryPolicy] = None,
        connect_timeout: float = 30.0,
        read_timeout: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session or requests.Session()
        self._owns_session = session is None
        self.retry = retry or RetryPolicy()
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def fetch(
        self, descriptor: DownloadDescriptor, into: Path, deadline: Optional[Deadline] = None
    ) -> FetchResult:
        """Download ``descriptor.url`` into directory ``into`` and verify it.

        Raises:
            IntegrityError: Digest mismatch; the downloaded file is deleted.
            TransientFetchError: Still failing after all retries.
            PermanentFetchError: Non-retryable HTTP status or request error.
        """
        deadline = deadline or Deadline(600.0, name="download")
        expected = descriptor.expected_checksum
        if not expected and descriptor.checksum_url:
            expected = self.fetch_checksum(descriptor.checksum_url, descriptor.filename, deadline)

        target = Path(into) / descriptor.filename
        log_artifact_event(logger, "download.start", key=descriptor.version, url=descriptor.url)
        started = time.monotonic()
        actual, size = self._with_retries(
            descriptor.url,
            deadline,
            lambda: self._stream_to_file(descriptor.url, target, descriptor.checksum_algorithm, deadline),
            cleanup=lambda: safe_remove(target),
        )

        if expected and not checksums_equal(expected, actual):
            safe_remove(target)
            raise IntegrityError(
                f"Checksum mismatch for {descriptor.filename}",
                url=descriptor.url,
                expected=expected,
                actual=actual,
                details={"algorithm": descriptor.checksum_algorithm},
            )

        log_artifact_event(
            logger,
            "download.done",
            key=descriptor.version,
            bytes=size,
            duration=round(time.monotonic() - started, 2),
            verified=bool(expected),
        )
        return FetchResult(
            path=target,
            checksum=actual,
            algorithm=descriptor.checksum_algorithm,
            verified=bool(expected),
            size=size,
        )

    def fetch_checksum(self, url: str, filename: str, deadline: Deadline) -> Optional[str]:
        """Published digest for ``filename``; None when the checksum file does not exist."""
        try:
            text = self._with_retries(url, deadline, lambda: self._get_text(url, deadline))
        except PermanentFetchError as e:
            if e.status_code == 404:
                logger.warning("No checksum file at %s, skipping verification", url)
                return None
            raise
        return parse_checksum_file(text, filename)

    def _with_retries(
        self,
        url: str,
        deadline: Deadline,
        operation: Callable[[], T],
        cleanup: Optional[Callable[[], object]] = None,
    ) -> T:
        attempt = 1
        while True:
            try:
                return operation()
            except TransientFetchError as e:
                if cleanup:
                    cleanup()
                delay = self.retry.backoff(attempt)
                if attempt >= self.retry.attempts or deadline.remaining() <= delay:
                    e.add_context(attempts=attempt)
                    raise
                logger.warning(
                    "Transient error fetching %s (attempt %s/%s), retrying in %.1fs: %s",
                    url,
                    attempt,
                    self.retry.attempts,
                    delay,
                    e.message,
                )
                self._sleep(delay)
                attempt += 1
            except FetchError:
                if cleanup:
                    cleanup()
                raise

    def _timeout(self, deadline: Deadline):
        remaining = deadline.remaining()
        if remaining <= 0:
            raise FetchError(
                f"Download exceeded deadline of {deadline.timeout}s",
                details={"timeout": deadline.timeout},
            )
        return (min(self.connect_timeout, remaining), min(self.read_timeout, remaining))

    def _request(self, url: str, deadline: Deadline, stream: bool) -> requests.Response:
        try:
            response = self._session.get(
                url,
                stream=stream,
                timeout=self._timeout(deadline),
                headers={"User-Agent": user_agent()},
                allow_redirects=True,
            )
        except _TRANSIENT_EXCEPTIONS as e:
            raise TransientFetchError(f"Error fetching {url}: {e}", url) from e
        except requests.RequestException as e:
            raise PermanentFetchError(f"Error fetching {url}: {e}", url) from e

        error = classify_status(url, response.status_code)
        if error is not None:
            response.close()
            raise error
        return response

    def _get_text(self, url: str, deadline: Deadline) -> str:
        response = self._request(url, deadline, stream=False)
        return response.text

    def _stream_to_file(self, url: str, target: Path, algorithm: str, deadline: Deadline):
        hasher = new_hasher(algorithm)
        size = 0
        response = self._request(url, deadline, stream=True)
        try:
            expected_length = response.headers.get("Content-Length")
            with open(target, "wb") as out:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    if deadline.is_expired():
                        raise FetchError(
                            f"Download of {url} exceeded deadline of {deadline.timeout}s",
                            url,
                            {"timeout": deadline.timeout, "bytes": size},
                        )
                    out.write(chunk)
                    hasher.update(chunk)
                    size += len(chunk)
        except _TRANSIENT_EXCEPTIONS as e:
            raise TransientFetchError(f"Download of {url} interrupted: {e}", url) from e
        except OSError as e:
            raise FetchError(f"Cannot write {target}: {e}", url) from e
        finally:
            response.close()

        if (
            expected_length
            and expected_length.isdigit()
            and "Content-Encoding" not in response.headers
            and int(expected_length) != size
        ):
            raise TransientFetchError(
                f"Truncated download of {url}: got {size} of {expected_length} bytes",
                url,
                {"bytes": size},
            )
        return hasher.hexdigest(), size
