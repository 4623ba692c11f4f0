"""Random access to a remote object through HTTP range requests."""

from __future__ import annotations

import logging
from typing import Iterator, Optional

import httpx

__all__ = ["RangeByteSource"]

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


class RangeByteSource:
    """
    Presents the object at *url* as a randomly addressable byte source.

    Every :meth:`stream` call issues its own request, so reads are
    independent of each other and may run concurrently from several
    threads sharing the same ``httpx.Client``. There is no cursor.
    """

    def __init__(
        self,
        client: httpx.Client,
        url: str,
        token: Optional[str] = None,
    ) -> None:
        self.client = client
        self.url = url
        self._headers: dict[str, str] = {}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._size: Optional[int] = None

    def size(self) -> int:
        """Return the total object size in bytes (one HEAD request, cached)."""
        if self._size is None:
            response = self.client.head(
                self.url, headers=self._headers, follow_redirects=True
            )
            response.raise_for_status()
            length = response.headers.get("Content-Length")
            if length is None:
                raise httpx.HTTPError(f"No Content-Length for {self.url}")
            self._size = int(length)
        return self._size

    def stream(self, offset: int, length: Optional[int] = None) -> Iterator[bytes]:
        """
        Yield the bytes ``[offset, offset+length)`` or ``[offset, EOF)``.

        The underlying connection is released as soon as the iterator is
        exhausted or closed, whichever happens first.
        """
        if offset < 0 or (length is not None and length < 0):
            raise ValueError(f"Invalid range offset={offset} length={length}")
        if length == 0:
            return
        if length is None:
            byte_range = f"bytes={offset}-"
        else:
            byte_range = f"bytes={offset}-{offset + length - 1}"
        headers = dict(self._headers, Range=byte_range)

        with self.client.stream(
            "GET", self.url, headers=headers, follow_redirects=True
        ) as response:
            response.raise_for_status()
            # Status 200 means the server ignored the Range header.
            skip = offset if response.status_code == 200 else 0
            if skip:
                logger.debug("Server ignored range request for %s", self.url)
            remaining = length
            for chunk in response.iter_bytes(_CHUNK_SIZE):
                if skip:
                    if len(chunk) <= skip:
                        skip -= len(chunk)
                        continue
                    chunk = chunk[skip:]
                    skip = 0
                if remaining is not None:
                    chunk = chunk[:remaining]
                    remaining -= len(chunk)
                if chunk:
                    yield chunk
                if remaining == 0:
                    break

    def read(self, offset: int, length: Optional[int] = None) -> bytes:
        """Return the requested range as a single ``bytes`` object."""
        return b"".join(self.stream(offset, length))
