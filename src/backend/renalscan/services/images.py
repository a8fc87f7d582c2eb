"""
Image reference resolution.

Every image must be inline (bytes + an image MIME type) before a prompt is
built for it. Inline references are checked by decoding them; remote
references are downloaded once and turned into an inline reference.

Remote fetches only go to publicly routable hosts (checked again on every
redirect hop) and the body is streamed so ``max_bytes`` bounds memory.
"""
from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from typing import List, Optional, Tuple

import httpx

from renalscan.models.errors import ImageResolutionError
from renalscan.models.schemas import ImageReference

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 15.0
MAX_REDIRECTS = 3


async def resolve_image(
    ref: ImageReference,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
    max_bytes: Optional[int] = None,
    allow_private_hosts: bool = False,
) -> ImageReference:
    """
    Make sure ``ref`` points at real image bytes and return it as an inline
    reference.

    Raises:
        ImageResolutionError: the reference cannot be fetched or decoded, is
            empty, too large, not an image, or points at a private host.
    """
    if ref.is_inline:
        try:
            data, _mime = ref.decode()
        except ValueError as e:
            raise ImageResolutionError(str(e)) from e
        _check_size(len(data), max_bytes)
        return ref

    if http_client is None:
        async with httpx.AsyncClient(timeout=timeout) as client:
            content, mime_type = await _fetch(client, ref.uri, timeout, max_bytes, allow_private_hosts)
    else:
        content, mime_type = await _fetch(http_client, ref.uri, timeout, max_bytes, allow_private_hosts)

    try:
        resolved = ImageReference.from_bytes(content, mime_type)
    except ValueError as e:
        raise ImageResolutionError(str(e)) from e

    logger.info(f"Fetched image {ref.describe()} ({len(content)} bytes, {mime_type})")
    return resolved


async def _fetch(
    client: httpx.AsyncClient,
    uri: str,
    timeout: float,
    max_bytes: Optional[int],
    allow_private_hosts: bool,
) -> Tuple[bytes, str]:
    """Follow up to MAX_REDIRECTS hops by hand so every hop gets the host check."""
    url = httpx.URL(uri)
    try:
        for _ in range(MAX_REDIRECTS + 1):
            if url.scheme not in ("http", "https"):
                raise ImageResolutionError(f"unsupported URL scheme {url.scheme!r}")
            if not allow_private_hosts:
                await ensure_public_host(url)

            async with client.stream("GET", url, timeout=timeout, follow_redirects=False) as response:
                if response.is_redirect:
                    url = response.url.join(response.headers["location"])
                    continue
                response.raise_for_status()
                mime_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
                return await _read_limited(response, max_bytes), mime_type
    except httpx.HTTPError as e:
        logger.warning(f"Failed to fetch image {uri[:120]}: {e}")
        raise ImageResolutionError(f"could not fetch image: {e}") from e

    raise ImageResolutionError(f"more than {MAX_REDIRECTS} redirects")


async def _read_limited(response: httpx.Response, max_bytes: Optional[int]) -> bytes:
    declared = response.headers.get("content-length")
    if declared and declared.isdigit():
        _check_size(int(declared), max_bytes)

    chunks: List[bytes] = []
    size = 0
    async for chunk in response.aiter_bytes():
        size += len(chunk)
        _check_size(size, max_bytes)
        chunks.append(chunk)
    return b"".join(chunks)


async def ensure_public_host(url: httpx.URL) -> None:
    """
    Refuse hosts that are loopback, private, link-local or otherwise not
    globally routable. Hostnames are resolved and every address is checked.
    """
    host = url.host
    if not host:
        raise ImageResolutionError("image URL has no host")
    try:
        addresses = [ipaddress.ip_address(host)]
    except ValueError:
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(host, url.port or 443, type=socket.SOCK_STREAM)
        except OSError as e:
            raise ImageResolutionError(f"could not resolve image host {host!r}: {e}") from e
        addresses = [ipaddress.ip_address(info[4][0].split("%")[0]) for info in infos]

    for address in addresses:
        if not address.is_global or address.is_multicast:
            logger.warning(f"Refused image fetch from non-public address {address} ({host})")
            raise ImageResolutionError(f"image host {host!r} is not a public address")


def _check_size(size: int, max_bytes: Optional[int]) -> None:
    if max_bytes is not None and size > max_bytes:
        raise ImageResolutionError(f"image is {size} bytes, limit is {max_bytes}")
