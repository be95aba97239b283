"""Bundle directory clients.

The directory stores the public half of every account's pre-key bundle and
hands out one one-time pre-key per fetch.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from .bundle import PreKeyBundle, parse_bundle
from .errors import BundleNotFound

logger = logging.getLogger(__name__)


class BundleDirectory(ABC):

    @abstractmethod
    async def publish(self, peer: str, upload: Dict[str, Any]) -> None:
        """Upsert the bundle; the one-time key list replaces the previous one."""

    @abstractmethod
    async def fetch(self, peer: str) -> PreKeyBundle:
        """Return the bundle with one one-time key consumed. Raises BundleNotFound."""

    @abstractmethod
    async def one_time_key_count(self, peer: str) -> int: ...

    @abstractmethod
    async def replenish(self, peer: str, keys: List[Dict[str, Any]]) -> None: ...

    @abstractmethod
    async def identity_key(self, peer: str) -> Optional[str]: ...


class MemoryBundleDirectory(BundleDirectory):
    """In-process directory, shared by the accounts of a test or a demo."""

    def __init__(self):
        self._bundles: Dict[str, Dict[str, Any]] = {}
        self._otks: Dict[str, List[Dict[str, Any]]] = {}

    async def publish(self, peer: str, upload: Dict[str, Any]) -> None:
        self._bundles[peer] = {
            "peer": peer,
            "identity_key": upload["identity_key"],
            "signing_key": upload["signing_key"],
            "signed_prekey": dict(upload["signed_prekey"]),
        }
        self._otks[peer] = [dict(k) for k in upload.get("one_time_prekeys", [])]

    async def fetch(self, peer: str) -> PreKeyBundle:
        bundle = self._bundles.get(peer)
        if bundle is None:
            raise BundleNotFound(peer)
        pool = self._otks.get(peer, [])
        otk = pool.pop(0) if pool else None
        return parse_bundle({**bundle, "one_time_prekey": otk})

    async def one_time_key_count(self, peer: str) -> int:
        return len(self._otks.get(peer, []))

    async def replenish(self, peer: str, keys: List[Dict[str, Any]]) -> None:
        self._otks.setdefault(peer, []).extend(dict(k) for k in keys)

    async def identity_key(self, peer: str) -> Optional[str]:
        bundle = self._bundles.get(peer)
        return bundle["identity_key"] if bundle else None


class HttpBundleDirectory(BundleDirectory):
    """
    Client for the ``keyserver`` directory service.

    The bearer token identifies the caller; uploads, counts and replenishment
    always apply to the token's own account.
    """

    def __init__(self, base_url: str, token: str, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(base_url=base_url)
        self._headers = {"Authorization": f"Bearer {token}"}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def publish(self, peer: str, upload: Dict[str, Any]) -> None:
        res = await self._client.post("/keys/bundle", json=upload, headers=self._headers)
        res.raise_for_status()

    async def fetch(self, peer: str) -> PreKeyBundle:
        res = await self._client.get(f"/keys/bundle/{peer}", headers=self._headers)
        if res.status_code == 404:
            raise BundleNotFound(peer)
        res.raise_for_status()
        return parse_bundle(res.json())

    async def one_time_key_count(self, peer: str) -> int:
        res = await self._client.get("/keys/count", headers=self._headers)
        res.raise_for_status()
        return int(res.json()["count"])

    async def replenish(self, peer: str, keys: List[Dict[str, Any]]) -> None:
        res = await self._client.post("/keys/replenish", json={"one_time_prekeys": keys},
                                      headers=self._headers)
        res.raise_for_status()

    async def identity_key(self, peer: str) -> Optional[str]:
        res = await self._client.get(f"/keys/identity/{peer}", headers=self._headers)
        if res.status_code == 404:
            return None
        res.raise_for_status()
        return res.json()["identity_key"]
