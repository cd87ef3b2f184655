"""
Metadata Store - off-chain blobs for project and user descriptions

Descriptions are too large (and too mutable in wording) to live in contract
storage. The gateway uploads them to a content-addressed store and writes
only the returned locator on-chain.

Two backends:
- IpfsMetadataStore: talks to an IPFS node's HTTP API (/api/v0/add, /api/v0/cat)
- InMemoryMetadataStore: sha256-addressed dict, for dev and tests
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import aiohttp

from .errors import MetadataUnavailable, NotFound

logger = logging.getLogger("crowdfund.metadata")


class MetadataStore(Protocol):
    """What the request handlers need from a content store."""

    async def upload(self, content: bytes) -> str:
        ...

    async def resolve(self, locator: str) -> bytes:
        ...

    async def close(self) -> None:
        ...


@dataclass
class InMemoryMetadataStore:
    """Content-addressed by sha256. Same bytes → same locator."""

    objects: dict = field(default_factory=dict)

    async def upload(self, content: bytes) -> str:
        locator = "sha256-" + hashlib.sha256(content).hexdigest()
        self.objects[locator] = bytes(content)
        return locator

    async def resolve(self, locator: str) -> bytes:
        stored = self.objects.get(locator)
        if stored is None:
            raise NotFound(f"no content for locator {locator}")
        return stored

    async def close(self) -> None:
        return None


class IpfsMetadataStore:
    """
    IPFS HTTP API client (kubo-compatible).

    add → returns the CID as the locator. cat → returns raw bytes.
    The node answers 500 with a JSON {"Message": ...} body for bad or
    unknown CIDs; those become NotFound.
    """

    def __init__(self, api_url: str, timeout: float = 15.0, pin: bool = True):
        self._api_url = api_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._pin = pin
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def upload(self, content: bytes) -> str:
        session = await self._get_session()
        form = aiohttp.FormData()
        form.add_field("file", content, filename="blob", content_type="application/octet-stream")
        url = f"{self._api_url}/api/v0/add"
        params = {"pin": "true" if self._pin else "false", "cid-version": "1"}
        try:
            async with session.post(url, data=form, params=params) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise MetadataUnavailable(f"ipfs add failed: HTTP {resp.status} {text[:200]}")
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MetadataUnavailable(f"ipfs add failed: {type(e).__name__}: {e}")

        cid = body.get("Hash") or body.get("Cid") or ""
        if not cid:
            raise MetadataUnavailable(f"ipfs add returned no hash: {body}")
        logger.debug(f"Uploaded {len(content)} bytes → {cid}")
        return cid

    async def resolve(self, locator: str) -> bytes:
        session = await self._get_session()
        url = f"{self._api_url}/api/v0/cat"
        try:
            async with session.post(url, params={"arg": locator}) as resp:
                if resp.status == 200:
                    return await resp.read()
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MetadataUnavailable(f"ipfs cat failed: {type(e).__name__}: {e}")

        if resp.status in (400, 404, 500):
            raise NotFound(f"{locator}: {text[:200]}")
        raise MetadataUnavailable(f"ipfs cat failed: HTTP {resp.status} {text[:200]}")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


def create_metadata_store(api_url: str, timeout: float = 15.0):
    """IPFS when an API URL is configured, in-memory otherwise."""
    if api_url:
        logger.info(f"Metadata store: IPFS at {api_url}")
        return IpfsMetadataStore(api_url, timeout=timeout)
    logger.warning("Metadata store: IPFS_API_URL not set, using in-memory store (not persistent)")
    return InMemoryMetadataStore()
