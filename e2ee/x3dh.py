"""
X3DH (Extended Triple Diffie-Hellman) Key Agreement Protocol.

Establishes a shared secret between an initiator and a responder who need
not be online at the same time. The responder publishes a PreKeyBundle; the
initiator verifies it and derives the secret, then sends its ephemeral key
in the first message so the responder can derive the same secret.

Key derivation strictly follows:
- HKDF with SHA256
- Consistent salt (32 zero bytes)
- Consistent info label (b"X3DH")
- Consistent concatenation order of DH outputs: DH1 || DH2 || DH3 [|| DH4]
"""

from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives.asymmetric import x25519

from .bundle import PreKeyBundle, verify_bundle
from .errors import SignatureInvalid
from .keys import IdentityKeyPair
from .primitive import (
    b64d,
    x25519_keypair,
    x25519_pub_to_b64, x25519_pub_from_b64,
    dh, hkdf_sha256,
)

AD_PREFIX = b"X3DH-AD"


@dataclass(frozen=True)
class X3DHResult:
    shared_key: bytes
    associated_data: bytes
    ephemeral_public_key: str            # base64; empty on the responder side
    used_one_time_key_id: Optional[int]


@dataclass
class InitialMessageHeader:
    """
    X3DH fields carried by the first message of a session.

    The responder uses them to pick its key pairs and to reconstruct the
    same shared secret as the initiator.
    """
    sender_identity_key: str             # initiator's identity DH public key (base64)
    ephemeral_key: str                   # initiator's ephemeral public key (base64)
    signed_prekey_id: int                # which SPK the initiator used
    one_time_key_id: Optional[int]       # which OPK was used (None if none)

    def to_dict(self) -> dict:
        return {
            "sender_identity_key": self.sender_identity_key,
            "ephemeral_key": self.ephemeral_key,
            "signed_prekey_id": self.signed_prekey_id,
            "one_time_key_id": self.one_time_key_id,
        }

    @staticmethod
    def from_dict(d: dict) -> "InitialMessageHeader":
        return InitialMessageHeader(
            sender_identity_key=d["sender_identity_key"],
            ephemeral_key=d["ephemeral_key"],
            signed_prekey_id=d["signed_prekey_id"],
            one_time_key_id=d.get("one_time_key_id"),
        )


def _derive_shared_secret(dh1: bytes, dh2: bytes, dh3: bytes, dh4: Optional[bytes] = None) -> bytes:
    """
    Derives the final shared secret from X3DH DH outputs.

    Args:
        dh1: initiator_IK * responder_SPK
        dh2: initiator_EK * responder_IK
        dh3: initiator_EK * responder_SPK
        dh4: initiator_EK * responder_OPK (only if an OPK was used)

    Returns:
        32-byte shared secret
    """
    kdf_input = dh1 + dh2 + dh3
    if dh4 is not None:
        kdf_input += dh4

    return hkdf_sha256(
        ikm=kdf_input,
        salt=b"\x00" * 32,
        info=b"X3DH",
        length=32,
    )


def build_associated_data(initiator_identity_b64: str, responder_identity_b64: str) -> bytes:
    """AD = prefix || IK_initiator || IK_responder. Initiator always first."""
    return AD_PREFIX + b64d(initiator_identity_b64) + b64d(responder_identity_b64)


def x3dh_initiator(identity: IdentityKeyPair, peer_bundle: PreKeyBundle) -> X3DHResult:
    """
    Initiator side: verify the peer's bundle and derive the shared secret.

    Raises:
        SignatureInvalid: the signed pre-key signature does not verify.
    """
    if not verify_bundle(peer_bundle):
        raise SignatureInvalid(f"Invalid signed pre-key signature for {peer_bundle.peer}")

    ek_priv, ek_pub = x25519_keypair()
    peer_ik = peer_bundle.identity_dh_pub()
    peer_spk = peer_bundle.signed_prekey.pubkey()

    dh1 = dh(identity.dh_priv, peer_spk)
    dh2 = dh(ek_priv, peer_ik)
    dh3 = dh(ek_priv, peer_spk)

    dh4 = None
    used_otk_id = None
    if peer_bundle.one_time_prekey is not None:
        dh4 = dh(ek_priv, peer_bundle.one_time_prekey.pubkey())
        used_otk_id = peer_bundle.one_time_prekey.key_id

    return X3DHResult(
        shared_key=_derive_shared_secret(dh1, dh2, dh3, dh4),
        associated_data=build_associated_data(identity.dh_pub_b64, peer_bundle.identity_key_b64),
        ephemeral_public_key=x25519_pub_to_b64(ek_pub),
        used_one_time_key_id=used_otk_id,
    )


def x3dh_responder(
    identity: IdentityKeyPair,
    signed_prekey_priv: x25519.X25519PrivateKey,
    one_time_prekey_priv: Optional[x25519.X25519PrivateKey],
    sender_identity_b64: str,
    sender_ephemeral_b64: str,
    one_time_key_id: Optional[int] = None,
) -> X3DHResult:
    """
    Responder side: mirror the initiator's agreements.

    No signature check happens here; the initiator verified our bundle.
    """
    sender_ik = x25519_pub_from_b64(sender_identity_b64)
    sender_ek = x25519_pub_from_b64(sender_ephemeral_b64)

    dh1 = dh(signed_prekey_priv, sender_ik)
    dh2 = dh(identity.dh_priv, sender_ek)
    dh3 = dh(signed_prekey_priv, sender_ek)

    dh4 = None
    if one_time_prekey_priv is not None:
        dh4 = dh(one_time_prekey_priv, sender_ek)

    return X3DHResult(
        shared_key=_derive_shared_secret(dh1, dh2, dh3, dh4),
        associated_data=build_associated_data(sender_identity_b64, identity.dh_pub_b64),
        ephemeral_public_key="",
        used_one_time_key_id=one_time_key_id if one_time_prekey_priv is not None else None,
    )
