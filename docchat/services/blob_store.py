"""
Blob Store Client

Raw file bytes live in an external object store addressed by URL.
This client needs three operations from it: upload, download and
delete, all over plain HTTP with a bearer token.
"""

from __future__ import annotations

import logging
import uuid
from urllib.parse import quote

import httpx

from docchat.core.config import settings
from docchat.core.exceptions import DownloadError

logger = logging.getLogger(__name__)


class HttpBlobStore:
    """
    Async HTTP blob store client.

    Usage::

        store = HttpBlobStore()
        url = await store.upload("report.pdf", raw, "application/pdf")
        raw = await store.download(url)
        await store.delete(url)
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        download_timeout: float | None = None,
    ) -> None:
        self._base_url = (base_url or settings.BLOB_BASE_URL).rstrip("/")
        self._token = settings.BLOB_TOKEN if token is None else token
        self._timeout = timeout or settings.BLOB_TIMEOUT_SECONDS
        self._download_timeout = download_timeout or settings.DOWNLOAD_TIMEOUT_SECONDS

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"} if self._token else {}

    async def upload(self, file_name: str, data: bytes, content_type: str) -> str:
        """
        Store ``data`` under a random prefix and return its public URL.

        The store may answer with ``{"url": ...}``; otherwise the PUT
        target itself is the URL.
        """
        target = f"{self._base_url}/{uuid.uuid4()}/{quote(file_name)}"
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.put(
                target,
                content=data,
                headers={**self._headers(), "Content-Type": content_type},
            )
            response.raise_for_status()

        url = target
        if response.headers.get("content-type", "").startswith("application/json"):
            url = response.json().get("url", target)
        logger.info("Uploaded blob %s (%d bytes)", url, len(data))
        return url

    async def download(self, url: str) -> bytes:
        """
        Fetch the raw bytes behind ``url``.

        Raises:
            DownloadError: On transport errors, timeouts or non-2xx status.
        """
        if not url:
            raise DownloadError("Document has no blob URL")
        try:
            async with httpx.AsyncClient(
                timeout=self._download_timeout, follow_redirects=True
            ) as client:
                response = await client.get(url, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DownloadError(
                f"HTTP {exc.response.status_code} fetching {url}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DownloadError(f"{type(exc).__name__} fetching {url}: {exc}") from exc

        logger.info("Downloaded %s (%d bytes)", url, len(response.content))
        return response.content

    async def delete(self, url: str) -> None:
        """Delete the blob; a blob that is already gone counts as deleted."""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.delete(url, headers=self._headers())
        if response.status_code == 404:
            logger.info("Blob %s already absent", url)
            return
        response.raise_for_status()
        logger.info("Deleted blob %s", url)
