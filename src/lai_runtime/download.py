"""Model artifact acquisition over HTTP.

Downloads are deliberately not resumable: the body is streamed into a
``.part`` file next to the destination and renamed into place only after a
200 response has been read completely. Any failure deletes the partial file,
so a retry always starts from byte zero.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable

import httpx

from .errors import DownloadError, NetworkErrorKind
from .shared.logging import EventCategory, emit_event, log_operation
from .types import DownloadProgress

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[DownloadProgress], None]

_HOST_UNRESOLVABLE_PATTERNS = (
    "unable to resolve host",
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
)
_NO_CONNECTION_PATTERNS = (
    "network request failed",
    "network is unreachable",
    "connection refused",
    "no route to host",
)
_TIMEOUT_PATTERNS = ("timeout", "timed out")


def classify_network_error(exc: BaseException) -> NetworkErrorKind:
    """Map a transport failure onto a retry-friendly category.

    Message patterns win over exception types: a ``ConnectError`` caused by
    DNS failure is reported as HOST_UNRESOLVABLE, not NO_CONNECTION.
    """
    message = str(exc).lower()
    if any(p in message for p in _HOST_UNRESOLVABLE_PATTERNS):
        return NetworkErrorKind.HOST_UNRESOLVABLE
    if isinstance(exc, httpx.TimeoutException) or any(p in message for p in _TIMEOUT_PATTERNS):
        return NetworkErrorKind.TIMEOUT
    if isinstance(exc, (httpx.ConnectError, httpx.NetworkError)) or any(p in message for p in _NO_CONNECTION_PATTERNS):
        return NetworkErrorKind.NO_CONNECTION
    return NetworkErrorKind.OTHER


class DownloadManager:
    """Fetches the model artifact and reports progress to a single observer."""

    def __init__(
        self,
        chunk_size: int = 1024 * 1024,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | float | None = None,
    ):
        self.chunk_size = chunk_size
        self._transport = transport
        self._timeout = timeout if timeout is not None else httpx.Timeout(30.0, read=None)

    @staticmethod
    def exists(path: str | Path) -> bool:
        try:
            return Path(path).is_file()
        except OSError as e:
            logger.error(f"Error checking model file {path}: {e}")
            return False

    @staticmethod
    def _partial_path(dest: Path) -> Path:
        return dest.with_name(dest.name + ".part")

    @log_operation(EventCategory.DOWNLOAD, "download")
    async def download(
        self,
        url: str,
        dest_path: str | Path,
        auth_token: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Stream ``url`` into ``dest_path``.

        Returns the destination path on HTTP 200. Raises DownloadError for any
        other status or transport failure; no partial file is left behind.
        """
        dest = Path(dest_path).expanduser()
        partial = self._partial_path(dest)

        if not dest.parent.is_dir():
            logger.info(f"Creating models directory {dest.parent}")
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise DownloadError(f"Could not create {dest.parent}: {e}", kind=NetworkErrorKind.OTHER) from e
        self._discard(partial)

        headers = {}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"

        logger.info(f"Starting model download: {url} -> {dest}")
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self._timeout,
                follow_redirects=True,
            ) as client:
                async with client.stream("GET", url, headers=headers) as response:
                    if response.status_code != 200:
                        raise DownloadError(
                            f"Download failed with status: {response.status_code}",
                            kind=NetworkErrorKind.OTHER,
                            status_code=response.status_code,
                        )
                    total = self._content_length(response)
                    emit_event(EventCategory.DOWNLOAD, "response received", status=response.status_code, total_bytes=total)
                    await self._write_body(response, partial, total, on_progress)
        except DownloadError:
            self._discard(partial)
            raise
        except httpx.HTTPError as e:
            self._discard(partial)
            kind = classify_network_error(e)
            logger.warning(f"Download transport error ({kind.value}): {e}")
            raise DownloadError(str(e) or type(e).__name__, kind=kind) from e
        except OSError as e:
            self._discard(partial)
            raise DownloadError(f"Could not write {dest}: {e}", kind=NetworkErrorKind.OTHER) from e
        except BaseException:
            # Cancellation included: never leave a half-written artifact.
            self._discard(partial)
            raise

        os.replace(partial, dest)
        emit_event(EventCategory.DOWNLOAD, "artifact stored", path=str(dest), bytes=dest.stat().st_size)
        logger.info(f"Model downloaded successfully to {dest}")
        return dest

    async def _write_body(
        self,
        response: httpx.Response,
        partial: Path,
        total: int,
        on_progress: ProgressCallback | None,
    ) -> None:
        # Progress counts wire bytes so it lines up with Content-Length even
        # when the body is content-encoded.
        with open(partial, "wb") as fh:
            async for chunk in response.aiter_bytes(self.chunk_size):
                if not chunk:
                    continue
                fh.write(chunk)
                progress = DownloadProgress.from_counts(response.num_bytes_downloaded, total)
                logger.debug(f"Download progress: {progress.percent:.1f}%")
                if on_progress is not None:
                    on_progress(progress)

    @staticmethod
    def _content_length(response: httpx.Response) -> int:
        raw = response.headers.get("Content-Length")
        if not raw:
            return 0
        try:
            value = int(raw)
        except ValueError:
            logger.warning(f"Ignoring malformed Content-Length: {raw!r}")
            return 0
        return max(value, 0)

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial download {path}: {e}")
