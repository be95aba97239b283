"""
Media frame encryption for real-time calls.

Each endpoint generates a random AES-128 key per call and hands it to the
other side through signaling. Outgoing frames are sealed with the local key,
incoming frames opened with the peer's key. Frame layout on the wire:

    IV (12 bytes) || AES-GCM ciphertext+tag

A frame that fails to open is dropped; the call goes on. Nothing here is
persisted and nothing touches the ratchet.
"""

import logging
from typing import AsyncIterable, AsyncIterator, Dict, Mapping, Optional

from .errors import CryptoError, DecryptionFailed
from .primitive import IV_LENGTH, aead_decrypt, aead_encrypt, b64d, b64e, rand_bytes

logger = logging.getLogger(__name__)

CALL_KEY_LENGTH = 16


def supports_frame_transforms(capabilities: Mapping[str, object]) -> bool:
    """Whether the remote endpoint advertised per-frame transform support."""
    return bool(capabilities.get("frame_transforms") or capabilities.get("insertable_streams"))


def _import_key(key_b64: str) -> bytes:
    raw = b64d(key_b64)
    if len(raw) != CALL_KEY_LENGTH:
        raise CryptoError(f"Call key must be {CALL_KEY_LENGTH} bytes, got {len(raw)}")
    return raw


def seal_frame(key: bytes, frame: bytes) -> bytes:
    iv, ct = aead_encrypt(key, frame, None)
    return iv + ct


def open_frame(key: bytes, frame: bytes) -> bytes:
    if len(frame) <= IV_LENGTH:
        raise DecryptionFailed("frame too short")
    return aead_decrypt(key, frame[:IV_LENGTH], frame[IV_LENGTH:], None)


class CallCrypto:
    """Key material and frame transforms for one 1:1 call."""

    def __init__(self):
        self._encrypt_key: Optional[bytes] = None
        self._decrypt_key: Optional[bytes] = None
        self.key_b64: Optional[str] = None
        self.dropped_frames = 0

    @property
    def encryption_enabled(self) -> bool:
        return self._encrypt_key is not None

    def generate_key(self) -> str:
        """New local key; returns it base64-encoded for the signaling message."""
        raw = rand_bytes(CALL_KEY_LENGTH)
        self._encrypt_key = raw
        self.key_b64 = b64e(raw)
        return self.key_b64

    def set_decrypt_key(self, key_b64: Optional[str]) -> None:
        if not key_b64:
            return
        self._decrypt_key = _import_key(key_b64)

    def encrypt_frame(self, frame: bytes) -> bytes:
        if self._encrypt_key is None:
            return frame
        return seal_frame(self._encrypt_key, frame)

    def decrypt_frame(self, frame: bytes) -> Optional[bytes]:
        """Opened frame, the frame itself when the peer does not encrypt, or None to drop it."""
        if self._decrypt_key is None:
            return frame
        try:
            return open_frame(self._decrypt_key, frame)
        except DecryptionFailed:
            self.dropped_frames += 1
            logger.debug("Dropped undecryptable media frame (%d bytes)", len(frame))
            return None

    async def encrypt_frames(self, frames: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        async for frame in frames:
            yield self.encrypt_frame(frame)

    async def decrypt_frames(self, frames: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        async for frame in frames:
            opened = self.decrypt_frame(frame)
            if opened is not None:
                yield opened

    def disable_encryption(self) -> None:
        """Peer cannot transform frames; send plaintext from now on."""
        self._encrypt_key = None
        logger.info("Call media encryption disabled")

    def destroy(self) -> None:
        self._encrypt_key = None
        self._decrypt_key = None
        self.key_b64 = None


class ConferenceCrypto:
    """
    N-party variant: one key for our outgoing frames, one decrypt key per
    participant. The local key rotates whenever someone leaves, so a departed
    participant cannot follow frames sent afterwards.
    """

    def __init__(self):
        self._encrypt_key: Optional[bytes] = None
        self._decrypt_keys: Dict[str, bytes] = {}
        self.key_b64: Optional[str] = None
        self.dropped_frames = 0

    def generate_key(self) -> str:
        raw = rand_bytes(CALL_KEY_LENGTH)
        self._encrypt_key = raw
        self.key_b64 = b64e(raw)
        return self.key_b64

    def set_decrypt_key(self, peer: str, key_b64: Optional[str]) -> None:
        if not key_b64:
            return
        self._decrypt_keys[peer] = _import_key(key_b64)

    def remove_decrypt_key(self, peer: str) -> None:
        self._decrypt_keys.pop(peer, None)

    def participants(self):
        return sorted(self._decrypt_keys)

    def remove_participant(self, peer: str) -> str:
        """Forget the peer's key and rotate ours. Returns the new key to send to the others."""
        self.remove_decrypt_key(peer)
        logger.info("Rotating conference media key after %s left", peer)
        return self.generate_key()

    def encrypt_frame(self, frame: bytes) -> bytes:
        if self._encrypt_key is None:
            return frame
        return seal_frame(self._encrypt_key, frame)

    def decrypt_frame(self, peer: str, frame: bytes) -> Optional[bytes]:
        key = self._decrypt_keys.get(peer)
        if key is None:
            return frame
        try:
            return open_frame(key, frame)
        except DecryptionFailed:
            self.dropped_frames += 1
            logger.debug("Dropped undecryptable frame from %s", peer)
            return None

    async def encrypt_frames(self, frames: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        async for frame in frames:
            yield self.encrypt_frame(frame)

    async def decrypt_frames(self, peer: str, frames: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        async for frame in frames:
            opened = self.decrypt_frame(peer, frame)
            if opened is not None:
                yield opened

    def disable_encryption(self) -> None:
        self._encrypt_key = None

    def destroy(self) -> None:
        self._encrypt_key = None
        self._decrypt_keys.clear()
        self.key_b64 = None
