"""Media resolution — fetch a remote file and embed it as a base64 data URL.

The MIME type comes from the URL's file extension, falling back to a default
per media kind. Downloads are streamed and aborted once they pass the size cap.
"""
import base64
import logging
from typing import Dict, Optional, Protocol
from urllib.parse import urlparse

import httpx

from core.exceptions import MediaFetchError, MediaTooLargeError
from schemas.ws_messages import CommandKind

logger = logging.getLogger(__name__)

_IMAGE_TYPES = {
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
}
_VIDEO_TYPES = {
    ".webm": "video/webm",
    ".ogg": "video/ogg",
    ".mov": "video/quicktime",
}
_DOCUMENT_TYPES = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".txt": "text/plain",
    ".zip": "application/zip",
}

_MIME_TABLES: Dict[CommandKind, tuple] = {
    CommandKind.IMAGE: (_IMAGE_TYPES, "image/jpeg"),
    CommandKind.VIDEO: (_VIDEO_TYPES, "video/mp4"),
    CommandKind.DOCUMENT: (_DOCUMENT_TYPES, "application/octet-stream"),
}


class MediaResolver(Protocol):
    async def resolve(self, url: str, kind: CommandKind) -> str: ...


def guess_mime_type(url: str, kind: CommandKind) -> str:
    table, default = _MIME_TABLES[kind]
    path = urlparse(url).path.lower()
    for ext, mime in table.items():
        if path.endswith(ext):
            return mime
    return default


def to_data_url(content: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(content).decode('ascii')}"


class MediaFetcher:
    """httpx-backed MediaResolver."""

    def __init__(
        self,
        max_bytes: int = 10 * 1024 * 1024,
        timeout_s: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.max_bytes = max_bytes
        self.timeout_s = timeout_s
        self._client = client

    async def resolve(self, url: str, kind: CommandKind) -> str:
        mime_type = guess_mime_type(url, kind)
        if self._client is not None:
            content = await self._download(self._client, url)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_s, follow_redirects=True) as client:
                content = await self._download(client, url)
        logger.info("Media fetched: kind=%s mime=%s bytes=%d", kind.value, mime_type, len(content))
        return to_data_url(content, mime_type)

    async def _download(self, client: httpx.AsyncClient, url: str) -> bytes:
        try:
            async with client.stream("GET", url) as response:
                if response.status_code != 200:
                    raise MediaFetchError(
                        f"Failed to fetch URL: {response.status_code} {response.reason_phrase}",
                        details={"url": url, "status_code": response.status_code},
                    )
                chunks = []
                total = 0
                async for chunk in response.aiter_bytes():
                    total += len(chunk)
                    if total > self.max_bytes:
                        raise MediaTooLargeError(
                            self.max_bytes,
                            details={"url": url, "max_size": self.max_bytes, "current_size": total},
                        )
                    chunks.append(chunk)
                return b"".join(chunks)
        except httpx.HTTPError as e:
            logger.warning("Media fetch failed: url=%s error=%s", url, str(e))
            raise MediaFetchError(
                f"Error fetching URL: {e}",
                details={"url": url, "original_error": str(e)},
            ) from e
