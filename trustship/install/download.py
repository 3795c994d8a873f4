"""
Download Client

Retrieves release manifests and artifact bytes from the release server.

Server layout:
    GET {base_url}/v1/releases/{product}/{version}  -> manifest document
    artifact URLs are absolute or relative to base_url

Transient failures (connection errors, timeouts, 5xx, 408, 429) are retried
with bounded exponential backoff. Any other non-200 status fails at once.
"""

import asyncio
import logging
from typing import Dict, Iterable, Optional
from urllib.parse import quote, urljoin

import aiohttp

from ..core.config import NetworkConfig
from ..core.exceptions import ChecksumMismatchError, ConfigError, DownloadFailedError, NetworkError
from ..trust.manifest import Artifact

logger = logging.getLogger(__name__)


RETRYABLE_STATUSES = frozenset({408, 429})
CHUNK_SIZE = 64 * 1024


def is_retryable_status(status: int) -> bool:
    return status >= 500 or status in RETRYABLE_STATUSES


class RetryPolicy:
    """
    Bounded exponential backoff.

    Attempt ``n`` (1-based) that fails is followed by a delay of
    ``base_delay * 2 ** (n - 1)``, capped at ``max_delay``.
    """

    def __init__(self, max_attempts: int = 4, base_delay: float = 0.5, max_delay: float = 8.0):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    @classmethod
    def from_config(cls, network: NetworkConfig) -> "RetryPolicy":
        return cls(
            max_attempts=network.max_attempts,
            base_delay=network.backoff_base_seconds,
            max_delay=network.backoff_max_seconds,
        )

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def get_delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


class DownloadClient:
    """
    HTTP client for the release server.

    Use as an async context manager, or call ``start``/``stop``.
    """

    def __init__(
        self,
        config: Optional[NetworkConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._config = config or NetworkConfig()
        if self._config.max_concurrent_downloads < 1:
            raise ConfigError(
                f"max_concurrent_downloads must be at least 1, got {self._config.max_concurrent_downloads}"
            )
        self._retry = retry_policy or RetryPolicy.from_config(self._config)
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        """Open the HTTP session."""
        if self._session is not None:
            return
        headers = {"User-Agent": self._config.user_agent}
        if self._config.auth_token:
            headers["Authorization"] = f"Bearer {self._config.auth_token}"
        self._session = aiohttp.ClientSession(
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self._config.attempt_timeout_seconds),
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "DownloadClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _base(self) -> str:
        return self._config.base_url.rstrip("/") + "/"

    def manifest_url(self, product: str, version: str) -> str:
        return urljoin(
            self._base(),
            f"v1/releases/{quote(product, safe='')}/{quote(version, safe='')}",
        )

    def resolve_url(self, url: str) -> str:
        """Resolve an artifact URL against the server base URL."""
        return urljoin(self._base(), url)

    async def _read_body(
        self,
        resp: aiohttp.ClientResponse,
        url: str,
        artifact: Optional[str],
        max_size: Optional[int],
    ) -> bytes:
        """Read a response body, stopping as soon as it exceeds ``max_size``."""
        if max_size is None:
            return await resp.read()

        def oversized(actual: int) -> ChecksumMismatchError:
            return ChecksumMismatchError(
                f"{artifact or url} is larger than its declared {max_size} bytes",
                artifact=artifact or url,
                expected_size=max_size,
                actual_size=actual,
            )

        if resp.content_length is not None and resp.content_length > max_size:
            raise oversized(resp.content_length)

        body = bytearray()
        async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
            body.extend(chunk)
            if len(body) > max_size:
                raise oversized(len(body))
        return bytes(body)

    async def _get_once(
        self,
        url: str,
        artifact: Optional[str] = None,
        max_size: Optional[int] = None,
    ) -> bytes:
        if self._session is None:
            raise RuntimeError("DownloadClient is not started")

        try:
            async with self._session.get(url) as resp:
                if resp.status == 200:
                    return await self._read_body(resp, url, artifact, max_size)
                if is_retryable_status(resp.status):
                    raise NetworkError(f"Server returned HTTP {resp.status}", url=url, status=resp.status)
                raise DownloadFailedError(
                    f"Server returned HTTP {resp.status} for {url}",
                    url=url,
                    attempts=1,
                    status=resp.status,
                )
        except asyncio.TimeoutError:
            raise NetworkError(
                f"Timed out after {self._config.attempt_timeout_seconds}s",
                url=url,
            )
        except aiohttp.ClientError as e:
            raise NetworkError(f"Connection failed: {e}", url=url)

    async def get(
        self,
        url: str,
        artifact: Optional[str] = None,
        max_size: Optional[int] = None,
    ) -> bytes:
        """
        Fetch ``url`` with retries.

        Args:
            url: Absolute URL
            artifact: Artifact name for error context
            max_size: Largest acceptable body in bytes

        Returns:
            Response body

        Raises:
            DownloadFailedError: On a permanent failure or once retries run out
            ChecksumMismatchError: If the body exceeds ``max_size`` (not retried)
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._get_once(url, artifact, max_size)
            except DownloadFailedError as e:
                raise DownloadFailedError(
                    e.message,
                    url=url,
                    attempts=attempt,
                    status=e.status,
                    artifact=artifact,
                )
            except NetworkError as e:
                if not self._retry.should_retry(attempt):
                    raise DownloadFailedError(
                        f"Giving up on {url} after {attempt} attempts: {e.message}",
                        url=url,
                        attempts=attempt,
                        status=e.status,
                        artifact=artifact,
                    )
                delay = self._retry.get_delay(attempt)
                logger.warning(f"Retry #{attempt} for {url} in {delay:.2f}s due to: {e.message}")
                await asyncio.sleep(delay)

    async def fetch_manifest(self, product: str, version: str) -> bytes:
        """Fetch the raw manifest document for a product version."""
        url = self.manifest_url(product, version)
        logger.info(f"Fetching manifest for {product} {version} from {url}")
        return await self.get(url)

    async def fetch_artifact(self, artifact: Artifact) -> bytes:
        url = self.resolve_url(artifact.url)
        logger.info(f"Downloading {artifact.name} from {url}")
        data = await self.get(url, artifact=artifact.name, max_size=artifact.size)
        logger.debug(f"Downloaded {artifact.name}: {len(data)} bytes")
        return data

    async def fetch_artifacts(self, artifacts: Iterable[Artifact]) -> Dict[str, bytes]:
        """
        Fetch all artifacts concurrently.

        Concurrency is bounded by ``max_concurrent_downloads``. Returns only
        once every download has finished; the first failure cancels the rest.
        """
        artifacts = list(artifacts)
        semaphore = asyncio.Semaphore(self._config.max_concurrent_downloads)

        async def bounded(artifact: Artifact) -> bytes:
            async with semaphore:
                return await self.fetch_artifact(artifact)

        tasks = [asyncio.ensure_future(bounded(a)) for a in artifacts]
        try:
            payloads = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return {a.name: data for a, data in zip(artifacts, payloads)}
