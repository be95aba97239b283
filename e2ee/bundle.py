from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Dict, Any

from cryptography.hazmat.primitives.asymmetric import x25519, ed25519

from .primitive import (
    x25519_pub_from_b64,
    ed25519_pub_from_b64,
    verify_ed25519,
    b64d,
)

@dataclass(frozen=True)
class SignedPreKeyPublic:
    key_id: int
    public_key_b64: str
    signature_b64: str

    def pubkey(self) -> x25519.X25519PublicKey:
        return x25519_pub_from_b64(self.public_key_b64)

    def pubkey_raw(self) -> bytes:
        return b64d(self.public_key_b64)

@dataclass(frozen=True)
class OneTimePreKeyPublic:
    key_id: int
    public_key_b64: str

    def pubkey(self) -> x25519.X25519PublicKey:
        return x25519_pub_from_b64(self.public_key_b64)

@dataclass(frozen=True)
class PreKeyBundle:
    peer: str
    identity_key_b64: str           # X25519 IK (DH)
    signing_key_b64: str            # Ed25519 IK (SIG)
    signed_prekey: SignedPreKeyPublic
    one_time_prekey: Optional[OneTimePreKeyPublic] = None

    def identity_dh_pub(self) -> x25519.X25519PublicKey:
        return x25519_pub_from_b64(self.identity_key_b64)

    def identity_sig_pub(self) -> ed25519.Ed25519PublicKey:
        return ed25519_pub_from_b64(self.signing_key_b64)

    @property
    def one_time_key_id(self) -> Optional[int]:
        return self.one_time_prekey.key_id if self.one_time_prekey else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "peer": self.peer,
            "identity_key": self.identity_key_b64,
            "signing_key": self.signing_key_b64,
            "signed_prekey": {
                "key_id": self.signed_prekey.key_id,
                "public_key": self.signed_prekey.public_key_b64,
                "signature": self.signed_prekey.signature_b64,
            },
            "one_time_prekey": (
                {"key_id": self.one_time_prekey.key_id, "public_key": self.one_time_prekey.public_key_b64}
                if self.one_time_prekey else None
            ),
        }

def parse_bundle(d: Dict[str, Any]) -> PreKeyBundle:
    spk = d["signed_prekey"]
    otpk = d.get("one_time_prekey")
    return PreKeyBundle(
        peer=str(d["peer"]),
        identity_key_b64=d["identity_key"],
        signing_key_b64=d["signing_key"],
        signed_prekey=SignedPreKeyPublic(
            key_id=int(spk["key_id"]),
            public_key_b64=spk["public_key"],
            signature_b64=spk["signature"],
        ),
        one_time_prekey=(
            OneTimePreKeyPublic(key_id=int(otpk["key_id"]), public_key_b64=otpk["public_key"])
            if otpk else None
        ),
    )

def verify_bundle(bundle: PreKeyBundle) -> bool:
    """
    Verify SPK signature using identity signing public key.
    """
    try:
        sig_pub = bundle.identity_sig_pub()
        spk_raw = bundle.signed_prekey.pubkey_raw()
    except ValueError:
        return False
    return verify_ed25519(sig_pub, bundle.signed_prekey.signature_b64, spk_raw)
