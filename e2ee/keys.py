from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from cryptography.hazmat.primitives.asymmetric import x25519, ed25519
from cryptography.hazmat.primitives import serialization

from .bundle import PreKeyBundle
from .config import EngineConfig
from .errors import CryptoError
from .primitive import (
    b64e, b64d,
    pub_raw,
    x25519_keypair, ed25519_keypair,
    x25519_pub_to_b64, ed25519_pub_to_b64,
    sign_ed25519,
)

if TYPE_CHECKING:
    from .directory import BundleDirectory
    from .store import SessionStore

logger = logging.getLogger(__name__)

SIGNED_PREKEYS_KEPT = 2


def x25519_priv_to_b64(priv: x25519.X25519PrivateKey) -> str:
    raw = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )
    return b64e(raw)

def x25519_priv_from_b64(s: str) -> x25519.X25519PrivateKey:
    return x25519.X25519PrivateKey.from_private_bytes(b64d(s))

def ed25519_priv_to_b64(priv: ed25519.Ed25519PrivateKey) -> str:
    raw = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )
    return b64e(raw)

def ed25519_priv_from_b64(s: str) -> ed25519.Ed25519PrivateKey:
    return ed25519.Ed25519PrivateKey.from_private_bytes(b64d(s))


@dataclass(frozen=True)
class IdentityKeyPair:
    """Long-term X25519 agreement key plus Ed25519 signing key."""
    dh_priv: x25519.X25519PrivateKey
    sig_priv: ed25519.Ed25519PrivateKey

    @staticmethod
    def generate() -> "IdentityKeyPair":
        dh_priv, _ = x25519_keypair()
        sig_priv, _ = ed25519_keypair()
        return IdentityKeyPair(dh_priv=dh_priv, sig_priv=sig_priv)

    @property
    def dh_pub_b64(self) -> str:
        return x25519_pub_to_b64(self.dh_priv.public_key())

    @property
    def sig_pub_b64(self) -> str:
        return ed25519_pub_to_b64(self.sig_priv.public_key())

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {
            "identity_dh": {"priv": x25519_priv_to_b64(self.dh_priv), "pub": self.dh_pub_b64},
            "identity_sig": {"priv": ed25519_priv_to_b64(self.sig_priv), "pub": self.sig_pub_b64},
        }

    @staticmethod
    def from_dict(d: Dict[str, Dict[str, str]]) -> "IdentityKeyPair":
        return IdentityKeyPair(
            dh_priv=x25519_priv_from_b64(d["identity_dh"]["priv"]),
            sig_priv=ed25519_priv_from_b64(d["identity_sig"]["priv"]),
        )


class KeyManager:
    """
    Owns the local identity key pair, the signed pre-keys and the one-time
    pre-key pool of one account, and keeps the directory's copy in sync.

    Key material is persisted through the SessionStore; the bundle directory
    only ever sees public halves.
    """

    def __init__(self, owner: str, store: "SessionStore", directory: "BundleDirectory",
                 config: Optional[EngineConfig] = None):
        self.owner = owner
        self.store = store
        self.directory = directory
        self.config = config or EngineConfig()
        self.identity: Optional[IdentityKeyPair] = None
        self.sync_failed = False

    async def initialize(self) -> None:
        """Load existing key material, or generate and publish a fresh set."""
        stored = await self.store.get_identity()
        if stored is None:
            await self.generate_identity()
            await self.publish_bundle()
        else:
            self.identity = IdentityKeyPair.from_dict(stored)
            if not await self.store.get_signed_prekeys():
                logger.warning("Signed pre-key missing for %s, regenerating", self.owner)
                await self.rotate_signed_prekey()
                await self.publish_bundle()
            elif not await self.ensure_bundle_on_directory():
                # existing sessions keep working; the next initialize retries
                return
        await self.replenish_if_needed()

    async def ensure_bundle_on_directory(self) -> bool:
        """
        Republish when the directory has no bundle for this account or holds a
        different identity key (directory wiped, another device took over).
        Failures only set ``sync_failed``. Returns True once the directory
        serves our identity key.
        """
        mine = self.get_identity_public_key()
        try:
            published = await self.directory.identity_key(self.owner)
            if published == mine:
                self.sync_failed = False
                return True
            if published is None:
                logger.warning("Directory has no bundle for %s, republishing", self.owner)
            else:
                logger.warning("Directory holds a different identity key for %s, republishing", self.owner)
            await self.publish_bundle()
            published = await self.directory.identity_key(self.owner)
        except Exception as e:
            self.sync_failed = True
            logger.error("Could not sync bundle for %s with the directory: %s", self.owner, e)
            return False

        if published != mine:
            self.sync_failed = True
            logger.error("Directory still does not serve the identity key of %s", self.owner)
            return False
        return True

    async def generate_identity(self) -> IdentityKeyPair:
        """
        Creates:
          - Identity DH keypair (X25519)
          - Identity Signing keypair (Ed25519)
          - A signed pre-key and a batch of one-time pre-keys
        """
        self.identity = IdentityKeyPair.generate()
        await self.store.save_identity(self.identity.to_dict())
        await self.rotate_signed_prekey()
        await self.generate_one_time_prekeys(self.config.num_otk)
        logger.info("Generated identity for %s", self.owner)
        return self.identity

    def require_identity(self) -> IdentityKeyPair:
        if self.identity is None:
            raise CryptoError("No local identity; call initialize() first")
        return self.identity

    def get_identity_public_key(self) -> str:
        return self.require_identity().dh_pub_b64

    async def rotate_signed_prekey(self) -> Dict:
        """
        Generates a new Signed PreKey and signs its raw public bytes with the
        identity signing key. The previous SPK stays available so handshakes
        started against the old bundle still complete.
        """
        identity = self.require_identity()
        existing = await self.store.get_signed_prekeys()
        spk_id = max(existing, default=0) + 1

        spk_priv, spk_pub = x25519_keypair()
        record = {
            "key_id": spk_id,
            "priv": x25519_priv_to_b64(spk_priv),
            "pub": x25519_pub_to_b64(spk_pub),
            "signature": sign_ed25519(identity.sig_priv, pub_raw(spk_pub)),
            "created_at": time.time(),
        }
        await self.store.save_signed_prekey(spk_id, record)

        stale = sorted(existing)[:max(0, len(existing) - (SIGNED_PREKEYS_KEPT - 1))]
        for old_id in stale:
            await self.store.remove_signed_prekey(old_id)
        return record

    async def current_signed_prekey(self) -> Dict:
        existing = await self.store.get_signed_prekeys()
        if not existing:
            raise CryptoError("No signed prekey. Call rotate_signed_prekey first.")
        return existing[max(existing)]

    async def signed_prekey_pair(self, key_id: int) -> Tuple[x25519.X25519PrivateKey, str]:
        existing = await self.store.get_signed_prekeys()
        record = existing.get(key_id)
        if record is None:
            raise CryptoError(f"Signed prekey {key_id} is no longer available")
        return x25519_priv_from_b64(record["priv"]), record["pub"]

    async def generate_one_time_prekeys(self, count: int) -> List[Dict]:
        """
        Generates OPKs and stores them locally. Returns the public list to upload.
        Ids come from a counter kept with the identity, so an id that was
        consumed is never handed out again.
        """
        blob = dict(await self.store.get_identity() or {})
        if not blob:
            raise CryptoError("No local identity; call initialize() first")
        start_id = int(blob.get("next_otk_id", 0))
        blob["next_otk_id"] = start_id + count
        await self.store.save_identity(blob)

        upload_list = []
        for i in range(start_id, start_id + count):
            priv, pub = x25519_keypair()
            record = {"priv": x25519_priv_to_b64(priv), "pub": x25519_pub_to_b64(pub)}
            await self.store.save_one_time_prekey(i, record)
            upload_list.append({"key_id": i, "public_key": record["pub"]})
        return upload_list

    async def build_bundle_upload(self) -> Dict:
        identity = self.require_identity()
        spk = await self.current_signed_prekey()
        otpks = await self.store.list_one_time_prekeys()
        return {
            "identity_key": identity.dh_pub_b64,
            "signing_key": identity.sig_pub_b64,
            "signed_prekey": {
                "key_id": spk["key_id"],
                "public_key": spk["pub"],
                "signature": spk["signature"],
            },
            "one_time_prekeys": [
                {"key_id": k, "public_key": v["pub"]} for k, v in sorted(otpks.items())
            ],
        }

    async def publish_bundle(self) -> None:
        """
        Upload the current bundle. The directory upserts, so repeating this is
        harmless. Retries with linear backoff; the last error propagates.
        """
        payload = await self.build_bundle_upload()
        attempts = max(1, self.config.publish_retries)
        for attempt in range(1, attempts + 1):
            try:
                await self.directory.publish(self.owner, payload)
                self.sync_failed = False
                return
            except Exception as e:
                if attempt == attempts:
                    self.sync_failed = True
                    logger.error("Bundle upload for %s failed after %d attempts: %s",
                                 self.owner, attempts, e)
                    raise
                delay = attempt * self.config.publish_backoff
                logger.warning("Bundle upload attempt %d/%d failed, retrying in %.1fs",
                               attempt, attempts, delay)
                await asyncio.sleep(delay)

    async def fetch_bundle(self, peer: str) -> PreKeyBundle:
        """Raises BundleNotFound when the peer has not published."""
        return await self.directory.fetch(peer)

    async def one_time_prekey(self, key_id: int) -> Optional[x25519.X25519PrivateKey]:
        record = await self.store.get_one_time_prekey(key_id)
        if record is None:
            return None
        return x25519_priv_from_b64(record["priv"])

    async def consume_one_time_prekey(self, key_id: int) -> Optional[x25519.X25519PrivateKey]:
        """Load a one-time pre-key and delete it so it is never used twice."""
        record = await self.store.get_one_time_prekey(key_id)
        if record is None:
            return None
        await self.store.remove_one_time_prekey(key_id)
        return x25519_priv_from_b64(record["priv"])

    async def replenish_if_needed(self) -> int:
        """Top up the directory's one-time pool. Returns how many keys were added."""
        count = await self.directory.one_time_key_count(self.owner)
        if count >= self.config.otk_low_watermark:
            return 0
        new_keys = await self.generate_one_time_prekeys(self.config.num_otk)
        await self.directory.replenish(self.owner, new_keys)
        logger.info("Replenished %d one-time prekeys for %s", len(new_keys), self.owner)
        return len(new_keys)

    async def reset(self) -> None:
        """Wipe every piece of local key material (logout / device reset)."""
        await self.store.clear_all()
        self.identity = None
        self.sync_failed = False
        logger.info("Local key material wiped for %s", self.owner)
