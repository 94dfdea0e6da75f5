"""HTTP client fetching manifests and bundle byte ranges from the CDN."""

import logging
from pathlib import Path
from typing import Optional, Protocol, Union

import httpx

from chunkstore.guarded_file import atomic_write_bytes
from common.constants import DEFAULT_CDN_URL, DEFAULT_TIMEOUT_SECONDS
from common.exceptions import BundleNotFoundError, NetworkError
from downloader.config import DownloaderConfig
from rman.ids import bundle_path, format_id, manifest_path

logger = logging.getLogger(__name__)


class BundleFetcher(Protocol):
    """Anything able to return `length` bytes of a bundle starting at `offset`."""

    async def fetch_range(self, bundle_id: int, offset: int, length: int) -> bytes:
        ...


def is_retryable(error: NetworkError) -> bool:
    """Transport failures, timeouts, 5xx, 408 and 429 are worth retrying."""
    if isinstance(error, BundleNotFoundError):
        return False
    status = error.status_code
    return status is None or status >= 500 or status in (408, 429)


class CdnClient:
    """Async HTTP client for the content CDN."""

    def __init__(
        self,
        config: Optional[DownloaderConfig] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize CDN client.

        Args:
            config: Configuration instance supplying the CDN URL and timeout
            base_url: Overrides the configured CDN URL
            timeout: Overrides the configured timeout, in seconds
            transport: Custom httpx transport (used by tests)
        """
        if base_url is None:
            base_url = config.get_cdn_url() if config else DEFAULT_CDN_URL
        if timeout is None:
            timeout = config.get_timeout() if config else DEFAULT_TIMEOUT_SECONDS
        self.base_url = base_url.rstrip('/')
        self.session = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
        )
        logger.info(f"Initialized CdnClient [base_url={self.base_url}]")

    async def __aenter__(self) -> 'CdnClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.session.aclose()

    async def _get(self, url: str, headers: Optional[dict] = None) -> httpx.Response:
        """
        Issue a GET and map failures onto NetworkError.

        Raises:
            BundleNotFoundError: On 404
            NetworkError: On transport errors, timeouts and other error statuses
        """
        try:
            response = await self.session.get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timed out: GET {url}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Request failed: GET {url} error={type(e).__name__}: {e}") from e

        logger.debug(f"Response received: GET {url} status={response.status_code}")
        if response.status_code == 404:
            raise BundleNotFoundError(f"Not found: {url}", status_code=404)
        if response.status_code >= 400:
            raise NetworkError(
                f"Unexpected status {response.status_code} for GET {url}",
                status_code=response.status_code,
            )
        return response

    async def fetch_range(self, bundle_id: int, offset: int, length: int) -> bytes:
        """
        Fetch `length` bytes of a bundle starting at `offset`.

        A 200 answer (server ignoring the Range header) is sliced locally.

        Raises:
            BundleNotFoundError: If the bundle does not exist
            NetworkError: On failures and short reads
        """
        if length <= 0:
            return b""
        url = bundle_path(bundle_id)
        headers = {'Range': f"bytes={offset}-{offset + length - 1}"}
        response = await self._get(url, headers=headers)

        if response.status_code == 206:
            data = response.content
        else:
            data = response.content[offset:offset + length]

        if len(data) != length:
            raise NetworkError(
                f"Short read from bundle {format_id(bundle_id)}: "
                f"expected {length} bytes at offset {offset}, got {len(data)}"
            )
        return data

    async def fetch_manifest(self, manifest_id: int) -> bytes:
        response = await self._get(manifest_path(manifest_id))
        return response.content

    async def fetch_url(self, url: str) -> bytes:
        """Fetch an absolute URL, or a path relative to the CDN root."""
        response = await self._get(url)
        return response.content

    async def download_manifest(self, manifest_id: int, cache_dir: Union[str, Path]) -> Path:
        """
        Download a release manifest into `cache_dir`, reusing a cached copy.

        Returns:
            Local path of the manifest file
        """
        path = Path(cache_dir) / manifest_path(manifest_id)
        if path.is_file():
            logger.debug(f"Using cached manifest {path}")
            return path
        data = await self.fetch_manifest(manifest_id)
        atomic_write_bytes(path, data)
        logger.info(f"Downloaded manifest {format_id(manifest_id)} ({len(data)} bytes) to {path}")
        return path
