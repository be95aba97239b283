"""
Double Ratchet Protocol Implementation

Implements the Double Ratchet algorithm as used by Signal.

Key features:
- DH ratchet: Updates root key whenever the peer presents a new ratchet key
- Chain ratchet: Derives per-message keys from chain key
- Out-of-order message support: bounded, expiring skipped-key arena
- Transactional: encrypt/decrypt never mutate the state they are given; they
  return a result carrying the next state, which the caller persists
- JSON persistence: State can be serialized/deserialized
"""

import json
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

from .errors import CryptoError, DecryptionFailed, TooManySkippedMessages
from .primitive import (
    b64e, b64d,
    x25519_keypair,
    x25519_pub_to_b64, x25519_pub_from_b64,
    dh, hkdf_sha256,
    aead_encrypt, aead_decrypt,
)
from .keys import (
    x25519_priv_to_b64, x25519_priv_from_b64,
)

DEFAULT_MAX_SKIP = 1000
DEFAULT_MAX_SKIPPED_KEYS = 2000
DEFAULT_SKIPPED_KEY_MAX_AGE = 24 * 60 * 60


# ============================================
# Message Header + AAD
# ============================================

@dataclass(frozen=True)
class MessageHeader:
    """
    Header carried by every Double Ratchet message.

    Attributes:
        ratchet_key: Sender's current ratchet public key (base64)
        counter: Message number in the current sending chain
        previous_chain_length: Length of the sender's previous sending chain
    """
    ratchet_key: str
    counter: int
    previous_chain_length: int

    def to_dict(self) -> dict:
        return {
            "ratchet_key": self.ratchet_key,
            "counter": self.counter,
            "previous_chain_length": self.previous_chain_length,
        }

    @staticmethod
    def from_dict(d: dict) -> "MessageHeader":
        return MessageHeader(
            ratchet_key=d["ratchet_key"],
            counter=int(d["counter"]),
            previous_chain_length=int(d.get("previous_chain_length", 0)),
        )


def _canonical_json(obj: dict) -> str:
    return json.dumps(obj, separators=(',', ':'), sort_keys=True)


def build_aad(associated_data: bytes, header: MessageHeader) -> bytes:
    """
    AEAD additional data: X3DH associated data followed by the canonical
    JSON of the header, so a header cannot be swapped between messages.
    """
    return associated_data + b"|" + _canonical_json(header.to_dict()).encode("utf-8")


# ============================================
# KDFs (Root + Chain)
# ============================================

def kdf_rk(rk: bytes, dh_out: bytes) -> Tuple[bytes, bytes]:
    """
    Root Key Derivation (DH Ratchet).

    HKDF-SHA256, salt = current RK, info = b"DRatchet_RK".

    Returns:
        Tuple of (new_rk, new_ck), each 32 bytes
    """
    derived = hkdf_sha256(
        ikm=dh_out,
        salt=rk,
        info=b"DRatchet_RK",
        length=64,
    )
    return derived[:32], derived[32:64]


def kdf_ck(ck: bytes) -> Tuple[bytes, bytes]:
    """
    Chain Key Derivation (Symmetric Ratchet).

    HKDF-SHA256, no salt, info = b"DRatchet_CK". One-way: the previous chain
    key cannot be recovered from the new one.

    Returns:
        Tuple of (new_ck, mk), each 32 bytes
    """
    derived = hkdf_sha256(
        ikm=ck,
        salt=None,
        info=b"DRatchet_CK",
        length=64,
    )
    return derived[:32], derived[32:64]


# ============================================
# Skipped message keys
# ============================================

@dataclass(frozen=True)
class SkippedMessageKey:
    ratchet_key: str
    counter: int
    message_key_b64: str
    created_at: float

    def to_dict(self) -> dict:
        return {
            "ratchet_key": self.ratchet_key,
            "counter": self.counter,
            "message_key": self.message_key_b64,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(d: dict) -> "SkippedMessageKey":
        return SkippedMessageKey(
            ratchet_key=d["ratchet_key"],
            counter=int(d["counter"]),
            message_key_b64=d["message_key"],
            created_at=float(d["created_at"]),
        )


class SkippedKeyCache:
    """
    Bounded LRU arena of message keys for messages not yet delivered.

    Keyed by (ratchet_key, counter). Inserting beyond ``max_entries`` evicts
    the least recently inserted entry; entries older than ``max_age`` seconds
    are treated as absent and removed by ``sweep``.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_SKIPPED_KEYS,
                 max_age: float = DEFAULT_SKIPPED_KEY_MAX_AGE):
        self.max_entries = max_entries
        self.max_age = max_age
        self._entries: "OrderedDict[Tuple[str, int], SkippedMessageKey]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Tuple[str, int]) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[SkippedMessageKey]:
        return iter(list(self._entries.values()))

    def put(self, entry: SkippedMessageKey) -> None:
        key = (entry.ratchet_key, entry.counter)
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def pop(self, ratchet_key: str, counter: int, now: Optional[float] = None) -> Optional[SkippedMessageKey]:
        entry = self._entries.pop((ratchet_key, counter), None)
        if entry is None:
            return None
        if self._expired(entry, now):
            return None
        return entry

    def sweep(self, now: Optional[float] = None) -> int:
        stale = [k for k, e in self._entries.items() if self._expired(e, now)]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def copy(self) -> "SkippedKeyCache":
        clone = SkippedKeyCache(self.max_entries, self.max_age)
        clone._entries = OrderedDict(self._entries)
        return clone

    def _expired(self, entry: SkippedMessageKey, now: Optional[float]) -> bool:
        now = time.time() if now is None else now
        return now - entry.created_at > self.max_age


# ============================================
# DoubleRatchetState
# ============================================

@dataclass
class DoubleRatchetState:
    """
    State of a Double Ratchet session with one peer.

    Attributes:
        rk_b64: Root key (base64)
        dhs_priv_b64 / dhs_pub_b64: Our current ratchet key pair (base64)
        dhr_pub_b64: Peer's current ratchet public key (None until known)
        cks_b64: Sending chain key (None until we can send)
        ckr_b64: Receiving chain key (None until first DH ratchet on receive)
        ns / nr: Sending / receiving message numbers
        pn: Length of our previous sending chain
        ad_b64: X3DH associated data bound into every message
        pending_initial: X3DH initial header repeated on outgoing messages
            until the peer has answered
        last_ephemeral_key: Ephemeral key of the initial message that created
            this session (responder side), used to spot duplicates
        skipped: Cached keys for messages not yet received
    """
    rk_b64: str
    dhs_priv_b64: str
    dhs_pub_b64: str
    dhr_pub_b64: Optional[str]
    cks_b64: Optional[str]
    ckr_b64: Optional[str]
    ad_b64: str = ""
    ns: int = 0
    nr: int = 0
    pn: int = 0
    pending_initial: Optional[dict] = None
    last_ephemeral_key: Optional[str] = None
    skipped: SkippedKeyCache = field(default_factory=SkippedKeyCache)

    @property
    def associated_data(self) -> bytes:
        return b64d(self.ad_b64)

    def copy(self) -> "DoubleRatchetState":
        return DoubleRatchetState(
            rk_b64=self.rk_b64,
            dhs_priv_b64=self.dhs_priv_b64,
            dhs_pub_b64=self.dhs_pub_b64,
            dhr_pub_b64=self.dhr_pub_b64,
            cks_b64=self.cks_b64,
            ckr_b64=self.ckr_b64,
            ad_b64=self.ad_b64,
            ns=self.ns,
            nr=self.nr,
            pn=self.pn,
            pending_initial=dict(self.pending_initial) if self.pending_initial else None,
            last_ephemeral_key=self.last_ephemeral_key,
            skipped=self.skipped.copy(),
        )

    def to_dict(self, include_skipped: bool = True) -> dict:
        """Serialize state to JSON-compatible dict."""
        d = {
            "rk_b64": self.rk_b64,
            "dhs_priv_b64": self.dhs_priv_b64,
            "dhs_pub_b64": self.dhs_pub_b64,
            "dhr_pub_b64": self.dhr_pub_b64,
            "cks_b64": self.cks_b64,
            "ckr_b64": self.ckr_b64,
            "ad_b64": self.ad_b64,
            "ns": self.ns,
            "nr": self.nr,
            "pn": self.pn,
            "pending_initial": self.pending_initial,
            "last_ephemeral_key": self.last_ephemeral_key,
        }
        if include_skipped:
            d["skipped"] = [e.to_dict() for e in self.skipped]
        return d

    @staticmethod
    def from_dict(
        d: dict,
        max_skipped_keys: int = DEFAULT_MAX_SKIPPED_KEYS,
        skipped_key_max_age: float = DEFAULT_SKIPPED_KEY_MAX_AGE,
    ) -> "DoubleRatchetState":
        """Deserialize state from JSON-compatible dict."""
        skipped = SkippedKeyCache(max_skipped_keys, skipped_key_max_age)
        for item in d.get("skipped", []):
            skipped.put(SkippedMessageKey.from_dict(item))

        return DoubleRatchetState(
            rk_b64=d["rk_b64"],
            dhs_priv_b64=d["dhs_priv_b64"],
            dhs_pub_b64=d["dhs_pub_b64"],
            dhr_pub_b64=d.get("dhr_pub_b64"),
            cks_b64=d.get("cks_b64"),
            ckr_b64=d.get("ckr_b64"),
            ad_b64=d.get("ad_b64", ""),
            ns=d.get("ns", 0),
            nr=d.get("nr", 0),
            pn=d.get("pn", 0),
            pending_initial=d.get("pending_initial"),
            last_ephemeral_key=d.get("last_ephemeral_key"),
            skipped=skipped,
        )


def init_sender(
    shared_key: bytes,
    associated_data: bytes,
    peer_signed_prekey_b64: str,
    skipped: Optional[SkippedKeyCache] = None,
) -> DoubleRatchetState:
    """
    Initiator initialization.

    - Generate a fresh ratchet key pair
    - DHr starts as the responder's signed pre-key
    - (RK, CKs) = kdf_rk(SK, DH(DHs, SPK)), so we can encrypt immediately

    CKr stays None until the first reply arrives.
    """
    dhs_priv, dhs_pub = x25519_keypair()
    dh_out = dh(dhs_priv, x25519_pub_from_b64(peer_signed_prekey_b64))
    rk, cks = kdf_rk(shared_key, dh_out)

    return DoubleRatchetState(
        rk_b64=b64e(rk),
        dhs_priv_b64=x25519_priv_to_b64(dhs_priv),
        dhs_pub_b64=x25519_pub_to_b64(dhs_pub),
        dhr_pub_b64=peer_signed_prekey_b64,
        cks_b64=b64e(cks),
        ckr_b64=None,
        ad_b64=b64e(associated_data),
        skipped=skipped if skipped is not None else SkippedKeyCache(),
    )


def init_receiver(
    shared_key: bytes,
    associated_data: bytes,
    signed_prekey_priv_b64: str,
    signed_prekey_pub_b64: str,
    skipped: Optional[SkippedKeyCache] = None,
) -> DoubleRatchetState:
    """
    Responder initialization.

    Our signed pre-key acts as the initial ratchet key pair. No chains exist
    until the initiator's first message triggers a DH ratchet step.
    """
    return DoubleRatchetState(
        rk_b64=b64e(shared_key),
        dhs_priv_b64=signed_prekey_priv_b64,
        dhs_pub_b64=signed_prekey_pub_b64,
        dhr_pub_b64=None,
        cks_b64=None,
        ckr_b64=None,
        ad_b64=b64e(associated_data),
        skipped=skipped if skipped is not None else SkippedKeyCache(),
    )


def _dh_ratchet_step(state: DoubleRatchetState, new_dhr_pub_b64: str) -> None:
    """
    Full DH ratchet step when a new peer ratchet key is received.

    1) RK, CKr = kdf_rk(RK, DH(DHs, new DHr))
    2) Generate new DHs
    3) RK, CKs = kdf_rk(RK, DH(new DHs, new DHr))
    4) PN = Ns, Ns = 0, Nr = 0
    """
    new_dhr_pub = x25519_pub_from_b64(new_dhr_pub_b64)
    rk = b64d(state.rk_b64)

    rk, ckr = kdf_rk(rk, dh(x25519_priv_from_b64(state.dhs_priv_b64), new_dhr_pub))

    dhs_priv_new, dhs_pub_new = x25519_keypair()
    rk, cks = kdf_rk(rk, dh(dhs_priv_new, new_dhr_pub))

    state.rk_b64 = b64e(rk)
    state.ckr_b64 = b64e(ckr)
    state.cks_b64 = b64e(cks)
    state.dhr_pub_b64 = new_dhr_pub_b64
    state.dhs_priv_b64 = x25519_priv_to_b64(dhs_priv_new)
    state.dhs_pub_b64 = x25519_pub_to_b64(dhs_pub_new)
    state.pn = state.ns
    state.ns = 0
    state.nr = 0


def _skip_message_keys(state: DoubleRatchetState, until: int, max_skip: int, now: float) -> None:
    """Cache message keys of the receiving chain from Nr up to (excluding) ``until``."""
    if state.ckr_b64 is None or state.nr >= until:
        return
    if until - state.nr > max_skip:
        raise TooManySkippedMessages(until - state.nr, max_skip)

    ck = b64d(state.ckr_b64)
    while state.nr < until:
        ck, mk = kdf_ck(ck)
        state.skipped.put(SkippedMessageKey(state.dhr_pub_b64, state.nr, b64e(mk), now))
        state.nr += 1
    state.ckr_b64 = b64e(ck)


# ============================================
# Encrypt / Decrypt
# ============================================

@dataclass(frozen=True)
class EncryptResult:
    header: MessageHeader
    ciphertext: bytes
    iv: bytes
    state: DoubleRatchetState


@dataclass(frozen=True)
class DecryptResult:
    plaintext: bytes
    state: DoubleRatchetState
    used_skipped_key: bool = False
    skipped_added: List[SkippedMessageKey] = field(default_factory=list)


def ratchet_encrypt(state: DoubleRatchetState, plaintext: bytes, associated_data: bytes) -> EncryptResult:
    """
    Encrypt one message. ``state`` is left untouched; persist ``result.state``.
    """
    if state.cks_b64 is None:
        raise CryptoError("Sending chain not initialized (waiting for first incoming message)")

    new = state.copy()
    cks, mk = kdf_ck(b64d(new.cks_b64))

    header = MessageHeader(
        ratchet_key=new.dhs_pub_b64,
        counter=new.ns,
        previous_chain_length=new.pn,
    )
    iv, ciphertext = aead_encrypt(mk, plaintext, build_aad(associated_data, header))

    new.cks_b64 = b64e(cks)
    new.ns += 1
    return EncryptResult(header=header, ciphertext=ciphertext, iv=iv, state=new)


def ratchet_decrypt(
    state: DoubleRatchetState,
    header: MessageHeader,
    ciphertext: bytes,
    iv: bytes,
    associated_data: bytes,
    max_skip: int = DEFAULT_MAX_SKIP,
    now: Optional[float] = None,
) -> DecryptResult:
    """
    Decrypt one message.

    Algorithm:
    1. (header.ratchet_key, header.counter) in skipped → use and delete it
    2. New peer ratchet key → cache the rest of the old receiving chain up to
       header.previous_chain_length, then DH ratchet step
    3. Cache keys of the receiving chain up to header.counter
    4. Derive the message key and AEAD decrypt

    ``state`` is never modified. On any error the caller keeps it as is.

    Raises:
        DecryptionFailed: authentication failed, or a replayed message
        TooManySkippedMessages: the gap exceeds ``max_skip``
    """
    now = time.time() if now is None else now
    aad = build_aad(associated_data, header)
    new = state.copy()

    entry = new.skipped.pop(header.ratchet_key, header.counter, now)
    if entry is not None:
        plaintext = aead_decrypt(b64d(entry.message_key_b64), iv, ciphertext, aad)
        new.pending_initial = None
        return DecryptResult(plaintext=plaintext, state=new, used_skipped_key=True)

    before = {(e.ratchet_key, e.counter) for e in new.skipped}

    if header.ratchet_key != new.dhr_pub_b64:
        _skip_message_keys(new, header.previous_chain_length, max_skip, now)
        _dh_ratchet_step(new, header.ratchet_key)
    elif new.ckr_b64 is None:
        raise DecryptionFailed("No receiving chain for this ratchet key")
    elif header.counter < new.nr:
        raise DecryptionFailed("Duplicate or expired message")

    _skip_message_keys(new, header.counter, max_skip, now)

    ckr, mk = kdf_ck(b64d(new.ckr_b64))
    new.ckr_b64 = b64e(ckr)
    new.nr += 1

    plaintext = aead_decrypt(mk, iv, ciphertext, aad)
    new.pending_initial = None

    added = [e for e in new.skipped if (e.ratchet_key, e.counter) not in before]
    return DecryptResult(plaintext=plaintext, state=new, skipped_added=added)
