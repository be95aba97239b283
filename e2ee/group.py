"""
GroupCrypto: room encryption with a shared, versioned AES-256 key.

The room key is created by one member and handed to every other member
through the pairwise ratchet sessions. Room messages are then encrypted
directly with the room key, tagged with its version so that messages sent
just before a rotation still decrypt.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

from .errors import CryptoError, DecryptionFailed, NoGroupKey
from .messages import GroupKeyEnvelope, GroupMessage, MessagePayload, RatchetMessage, parse_payload
from .primitive import aead_decrypt, aead_encrypt, b64d, b64e, rand_bytes
from .session import SessionManager
from .store import GroupKey, SessionStore

logger = logging.getLogger(__name__)

GROUP_KEY_LENGTH = 32

# (recipient, wrapped key) -> delivered over the application's transport
SendFn = Callable[[str, RatchetMessage], Awaitable[None]]


@dataclass
class DistributionResult:
    version: int
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def _group_aad(room_id: str, version: int) -> bytes:
    return f"{room_id}|{version}".encode("utf-8")


class GroupCrypto:

    def __init__(self, sessions: SessionManager, store: SessionStore, send: SendFn):
        self.sessions = sessions
        self.store = store
        self.send = send
        self._room_locks: Dict[str, asyncio.Lock] = {}
        # room_id -> members that have not received the latest key yet
        self.pending: Dict[str, Set[str]] = {}

    def _lock(self, room_id: str) -> asyncio.Lock:
        return self._room_locks.setdefault(room_id, asyncio.Lock())

    async def generate_group_key(self, room_id: str) -> GroupKey:
        """New random room key, one version above the latest stored one."""
        async with self._lock(room_id):
            latest = await self.store.get_group_key(room_id)
            key = GroupKey(
                room_id=room_id,
                key_b64=b64e(rand_bytes(GROUP_KEY_LENGTH)),
                version=latest.version + 1 if latest else 1,
                created_at=time.time(),
            )
            await self.store.save_group_key(key)
        logger.info("Generated group key v%d for room %s", key.version, room_id)
        return key

    async def distribute_key(self, room_id: str, members: Iterable[str],
                             my_identity: Optional[str] = None) -> DistributionResult:
        """
        Send the latest room key to every member except ourselves.
        Members that cannot be reached are queued for retry_pending().
        """
        key = await self.store.get_group_key(room_id)
        if key is None:
            raise NoGroupKey(room_id)
        me = my_identity or self.sessions.keys.owner

        result = DistributionResult(version=key.version)
        envelope = GroupKeyEnvelope(room_id=room_id, key=key.key_b64, version=key.version)
        for member in members:
            if member == me:
                continue
            try:
                wrapped = await self.sessions.encrypt(member, MessagePayload(group_key=envelope))
                await self.send(member, wrapped)
            except Exception as e:
                logger.warning("Group key v%d for %s not delivered to %s: %s",
                               key.version, room_id, member, e)
                result.failed.append(member)
                continue
            result.delivered.append(member)

        pending = self.pending.setdefault(room_id, set())
        pending.difference_update(result.delivered)
        pending.update(result.failed)
        if not pending:
            del self.pending[room_id]
        return result

    async def retry_pending(self) -> Dict[str, DistributionResult]:
        results = {}
        for room_id, members in list(self.pending.items()):
            results[room_id] = await self.distribute_key(room_id, sorted(members))
        return results

    async def receive_key(self, sender: str, room_id: str, wrapped: RatchetMessage) -> GroupKey:
        """Unwrap a room key sent by another member and store it under its version."""
        payload = await self.sessions.decrypt(sender, wrapped)
        envelope = payload.group_key
        if envelope is None:
            raise CryptoError(f"Message from {sender} carries no group key")
        if envelope.room_id != room_id:
            raise CryptoError(f"Group key from {sender} is for room {envelope.room_id}, not {room_id}")

        key = GroupKey(room_id=room_id, key_b64=envelope.key, version=envelope.version,
                       created_at=time.time())
        await self.store.save_group_key(key)
        logger.info("Received group key v%d for room %s from %s", key.version, room_id, sender)
        return key

    async def encrypt(self, room_id: str, content: Union[str, MessagePayload]) -> GroupMessage:
        key = await self.store.get_group_key(room_id)
        if key is None:
            raise NoGroupKey(room_id)
        payload = content if isinstance(content, MessagePayload) else MessagePayload(text=content)
        plaintext = payload.model_dump_json(exclude_none=True).encode("utf-8")
        iv, ct = aead_encrypt(b64d(key.key_b64), plaintext, _group_aad(room_id, key.version))
        return GroupMessage(room_id=room_id, ciphertext=b64e(ct), iv=b64e(iv), version=key.version)

    async def decrypt(self, room_id: str, ciphertext: str, iv: str,
                      version: Optional[int] = None) -> MessagePayload:
        """Decrypt with the tagged key version, or the latest when untagged."""
        key = await self.store.get_group_key(room_id, version)
        if key is None:
            raise NoGroupKey(room_id, version)
        try:
            iv_raw, ct_raw = b64d(iv), b64d(ciphertext)
        except ValueError as e:
            raise DecryptionFailed(f"Malformed group message for {room_id}") from e
        plaintext = aead_decrypt(b64d(key.key_b64), iv_raw, ct_raw, _group_aad(room_id, key.version))
        return parse_payload(plaintext)

    async def decrypt_message(self, message: GroupMessage) -> MessagePayload:
        return await self.decrypt(message.room_id, message.ciphertext, message.iv, message.version)

    async def remove_member(self, room_id: str, removed: str, remaining: Iterable[str]) -> DistributionResult:
        """
        Rotate the room key after a member leaves. The new version goes to
        the remaining members only.
        """
        remaining = [m for m in remaining if m != removed]
        pending = self.pending.get(room_id)
        if pending is not None:
            pending.discard(removed)
        await self.generate_group_key(room_id)
        logger.info("Rotated group key for room %s after removing %s", room_id, removed)
        return await self.distribute_key(room_id, remaining)

    async def purge_version(self, room_id: str, version: int) -> None:
        """Forget an old key version; its messages no longer decrypt."""
        await self.store.delete_group_key(room_id, version)
