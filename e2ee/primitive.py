import base64
import os
from typing import Tuple

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, hmac, serialization
from cryptography.hazmat.primitives.asymmetric import x25519, ed25519
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import DecryptionFailed

IV_LENGTH = 12


def b64e(b: bytes) -> str:
    return base64.b64encode(b).decode("utf-8")

def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode("utf-8"))

def rand_bytes(n: int) -> bytes:
    return os.urandom(n)

def rand_nonce(n: int = IV_LENGTH) -> bytes:
    return os.urandom(n)

def x25519_keypair() -> Tuple[x25519.X25519PrivateKey, x25519.X25519PublicKey]:
    priv = x25519.X25519PrivateKey.generate()
    return priv, priv.public_key()

def ed25519_keypair() -> Tuple[ed25519.Ed25519PrivateKey, ed25519.Ed25519PublicKey]:
    priv = ed25519.Ed25519PrivateKey.generate()
    return priv, priv.public_key()

def pub_raw(pub) -> bytes:
    """Raw 32-byte encoding of an X25519 or Ed25519 public key."""
    return pub.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)

def x25519_pub_to_b64(pub: x25519.X25519PublicKey) -> str:
    return b64e(pub_raw(pub))

def x25519_pub_from_b64(s: str) -> x25519.X25519PublicKey:
    return x25519.X25519PublicKey.from_public_bytes(b64d(s))

def ed25519_pub_to_b64(pub: ed25519.Ed25519PublicKey) -> str:
    return b64e(pub_raw(pub))

def ed25519_pub_from_b64(s: str) -> ed25519.Ed25519PublicKey:
    return ed25519.Ed25519PublicKey.from_public_bytes(b64d(s))

def dh(priv: x25519.X25519PrivateKey, pub: x25519.X25519PublicKey) -> bytes:
    return priv.exchange(pub)

def hkdf_sha256(ikm: bytes, salt: bytes | None, info: bytes, length: int) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info).derive(ikm)

def hmac_sha256(key: bytes, data: bytes) -> bytes:
    mac = hmac.HMAC(key, hashes.SHA256())
    mac.update(data)
    return mac.finalize()

def sha256(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()

def aead_encrypt(key: bytes, plaintext: bytes, aad: bytes | None) -> tuple[bytes, bytes]:
    """AES-GCM with a fresh random IV. Key length picks AES-128 or AES-256."""
    nonce = rand_nonce(IV_LENGTH)
    ct = AESGCM(key).encrypt(nonce, plaintext, aad)
    return nonce, ct

def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: bytes | None) -> bytes:
    """Raises DecryptionFailed on a bad tag and on a malformed key or nonce."""
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, aad)
    except InvalidTag as e:
        raise DecryptionFailed("authentication tag mismatch") from e
    except ValueError as e:
        raise DecryptionFailed(str(e)) from e

def sign_ed25519(priv: ed25519.Ed25519PrivateKey, msg: bytes) -> str:
    return b64e(priv.sign(msg))

def verify_ed25519(pub: ed25519.Ed25519PublicKey, sig_b64: str, msg: bytes) -> bool:
    try:
        pub.verify(b64d(sig_b64), msg)
        return True
    except (InvalidSignature, ValueError):
        return False
