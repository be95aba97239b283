"""
SessionManager: pairwise sessions for one local account.

Orchestrates KeyManager, X3DH and the Double Ratchet:

- the first encrypt to a peer fetches their bundle, runs X3DH and starts a
  ratchet; the X3DH fields ride along until the peer answers
- an incoming initial message runs the responder side of X3DH
- each peer's session is loaded, advanced and saved under that peer's lock,
  and nothing is saved unless the whole transition succeeded
- identity keys are pinned on first contact; a different key later raises
  IdentityKeyMismatch until the user accepts it explicitly
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Dict, Optional, Tuple, Union

from .config import EngineConfig
from .double_ratchet import (
    DoubleRatchetState,
    MessageHeader,
    SkippedKeyCache,
    init_receiver,
    init_sender,
    ratchet_decrypt,
    ratchet_encrypt,
)
from .errors import DecryptionFailed, IdentityKeyMismatch, UnknownSession
from .keys import KeyManager, x25519_priv_to_b64
from .messages import MessagePayload, RatchetMessage, parse_payload
from .primitive import b64d, b64e, x25519_pub_from_b64
from .security_code import generate_security_code
from .store import SessionStore
from .x3dh import InitialMessageHeader, x3dh_initiator, x3dh_responder

logger = logging.getLogger(__name__)

# recent initial-message ephemeral keys remembered per manager
MAX_PROCESSED_INITIALS = 256


class SessionManager:

    def __init__(self, keys: KeyManager, store: SessionStore, config: Optional[EngineConfig] = None):
        self.keys = keys
        self.store = store
        self.config = config or keys.config
        # one lock per peer, kept for the life of the manager
        self._locks: Dict[str, asyncio.Lock] = {}
        self._processed_initials: "OrderedDict[str, None]" = OrderedDict()

    def _lock(self, peer: str) -> asyncio.Lock:
        return self._locks.setdefault(peer, asyncio.Lock())

    def _remember_initial(self, ephemeral_key: str) -> None:
        self._processed_initials[ephemeral_key] = None
        self._processed_initials.move_to_end(ephemeral_key)
        while len(self._processed_initials) > MAX_PROCESSED_INITIALS:
            self._processed_initials.popitem(last=False)

    def _new_cache(self) -> SkippedKeyCache:
        return SkippedKeyCache(self.config.max_skipped_keys, self.config.skipped_key_max_age)

    # ======================== Trust ========================

    async def _check_trust(self, peer: str, identity_key: str) -> bool:
        """True when the key is new (to be pinned after commit)."""
        trusted = await self.store.get_trusted_key(peer)
        if trusted is None:
            return True
        if trusted.identity_key != identity_key:
            logger.warning("Identity key for %s differs from the pinned key", peer)
            raise IdentityKeyMismatch(peer, trusted.identity_key, identity_key)
        return False

    async def verify_identity(self, peer: str, identity_key: str) -> bool:
        trusted = await self.store.get_trusted_key(peer)
        return trusted is not None and trusted.identity_key == identity_key

    async def accept_identity(self, peer: str, identity_key: str) -> None:
        """
        Pin a new identity key after the user verified it out of band.
        The old session is dropped; the next message starts a fresh handshake.
        """
        async with self._lock(peer):
            await self.store.delete_session(peer)
            await self.store.save_trusted_key(peer, identity_key)
        logger.info("Accepted new identity key for %s", peer)

    async def security_code(self, peer: str) -> Optional[str]:
        """Safety number for the pinned key, or the directory's key before first contact."""
        trusted = await self.store.get_trusted_key(peer)
        peer_key = trusted.identity_key if trusted else await self.keys.directory.identity_key(peer)
        if peer_key is None:
            return None
        return generate_security_code(self.keys.get_identity_public_key(), peer_key)

    # ======================== Session setup ========================

    async def _start_session(self, peer: str) -> Tuple[DoubleRatchetState, bool, str]:
        identity = self.keys.require_identity()
        bundle = await self.keys.fetch_bundle(peer)
        pin = await self._check_trust(peer, bundle.identity_key_b64)

        result = x3dh_initiator(identity, bundle)
        state = init_sender(
            result.shared_key,
            result.associated_data,
            bundle.signed_prekey.public_key_b64,
            skipped=self._new_cache(),
        )
        state.pending_initial = InitialMessageHeader(
            sender_identity_key=identity.dh_pub_b64,
            ephemeral_key=result.ephemeral_public_key,
            signed_prekey_id=bundle.signed_prekey.key_id,
            one_time_key_id=result.used_one_time_key_id,
        ).to_dict()
        logger.info("Started session with %s (one-time key %s)", peer, result.used_one_time_key_id)
        return state, pin, bundle.identity_key_b64

    async def _accept_initial(self, peer: str, initial: InitialMessageHeader) -> Tuple[DoubleRatchetState, bool]:
        identity = self.keys.require_identity()
        pin = await self._check_trust(peer, initial.sender_identity_key)

        spk_priv, spk_pub = await self.keys.signed_prekey_pair(initial.signed_prekey_id)
        otk_priv = None
        if initial.one_time_key_id is not None:
            # only peeked here; removed once the first message decrypts
            otk_priv = await self.keys.one_time_prekey(initial.one_time_key_id)
            if otk_priv is None:
                raise DecryptionFailed(f"One-time prekey {initial.one_time_key_id} already consumed")

        result = x3dh_responder(
            identity, spk_priv, otk_priv,
            initial.sender_identity_key, initial.ephemeral_key,
            one_time_key_id=initial.one_time_key_id,
        )
        state = init_receiver(
            result.shared_key,
            result.associated_data,
            x25519_priv_to_b64(spk_priv),
            spk_pub,
            skipped=self._new_cache(),
        )
        state.last_ephemeral_key = initial.ephemeral_key
        return state, pin

    # ======================== Encrypt ========================

    async def encrypt(self, peer: str, content: Union[str, MessagePayload]) -> RatchetMessage:
        """Encrypt for a peer, establishing a session via X3DH if needed."""
        payload = content if isinstance(content, MessagePayload) else MessagePayload(text=content)
        plaintext = payload.model_dump_json(exclude_none=True).encode("utf-8")

        async with self._lock(peer):
            state = await self.store.get_session(peer)
            pin_key = None
            if state is None:
                state, pin, identity_key = await self._start_session(peer)
                pin_key = identity_key if pin else None

            result = ratchet_encrypt(state, plaintext, state.associated_data)
            await asyncio.shield(self._commit(peer, result.state, pin_key))

        initial = result.state.pending_initial or {}
        return RatchetMessage(
            ratchet_key=result.header.ratchet_key,
            counter=result.header.counter,
            previous_chain_length=result.header.previous_chain_length,
            iv=b64e(result.iv),
            ciphertext=b64e(result.ciphertext),
            ephemeral_key=initial.get("ephemeral_key"),
            sender_identity_key=initial.get("sender_identity_key"),
            signed_prekey_id=initial.get("signed_prekey_id"),
            one_time_key_id=initial.get("one_time_key_id"),
        )

    # ======================== Decrypt ========================

    @staticmethod
    def _decode(message: RatchetMessage) -> Tuple[MessageHeader, bytes, bytes]:
        """Header, ciphertext and IV of a message; malformed fields raise DecryptionFailed."""
        try:
            x25519_pub_from_b64(message.ratchet_key)
            initial = message.initial()
            if initial is not None:
                x25519_pub_from_b64(initial.ephemeral_key)
                x25519_pub_from_b64(initial.sender_identity_key)
            return message.header(), b64d(message.ciphertext), b64d(message.iv)
        except ValueError as e:
            raise DecryptionFailed(f"Malformed message: {e}") from e

    async def decrypt(self, peer: str, message: RatchetMessage, now: Optional[float] = None) -> MessagePayload:
        """
        Decrypt a message from a peer, running the X3DH responder side when
        it carries a genuinely new initial header.

        Raises:
            UnknownSession: no session and not an initial message
            DecryptionFailed / TooManySkippedMessages: message rejected,
                stored session unchanged
            IdentityKeyMismatch: the initial message uses an unpinned key
        """
        header, ciphertext, iv = self._decode(message)
        async with self._lock(peer):
            state = await self.store.get_session(peer)
            initial = message.initial()
            pin_key = None
            consumed_otk = None

            if initial is not None:
                duplicate = (initial.ephemeral_key in self._processed_initials
                             or (state is not None and state.last_ephemeral_key == initial.ephemeral_key))
                if not duplicate:
                    if state is not None:
                        logger.warning("New initial message from %s, replacing session", peer)
                    state, pin = await self._accept_initial(peer, initial)
                    pin_key = initial.sender_identity_key if pin else None
                    consumed_otk = initial.one_time_key_id

            if state is None:
                raise UnknownSession(peer)

            result = ratchet_decrypt(
                state,
                header,
                ciphertext,
                iv,
                state.associated_data,
                max_skip=self.config.max_skip,
                now=now,
            )
            await asyncio.shield(self._commit(peer, result.state, pin_key, consumed_otk))
            if initial is not None:
                self._remember_initial(initial.ephemeral_key)

        return parse_payload(result.plaintext)

    async def _commit(self, peer: str, state: DoubleRatchetState,
                      pin_key: Optional[str] = None, consumed_otk: Optional[int] = None) -> None:
        # the one-time key is gone before the session built on it is saved
        if consumed_otk is not None:
            await self.keys.consume_one_time_prekey(consumed_otk)
        await self.store.save_session(peer, state)
        if pin_key is not None:
            await self.store.save_trusted_key(peer, pin_key)

    # ======================== Session Management ========================

    async def has_session(self, peer: str) -> bool:
        return (await self.store.get_session(peer)) is not None

    async def reset_session(self, peer: str) -> None:
        async with self._lock(peer):
            await self.store.delete_session(peer)

    async def reset_all(self) -> None:
        await self.keys.reset()
        self._processed_initials.clear()

    async def sweep(self, now: Optional[float] = None) -> int:
        """Purge expired skipped message keys across all sessions."""
        removed = await self.store.clean_expired_skipped_keys(now if now is not None else time.time())
        if removed:
            logger.info("Purged %d expired skipped message keys", removed)
        return removed
