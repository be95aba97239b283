"""Safety numbers for out-of-band identity verification."""

import struct

from .primitive import b64d, sha256

GROUPS = 6


def generate_security_code(identity_key_a: str, identity_key_b: str) -> str:
    """
    Fingerprint of two identity public keys (base64), e.g. ``"0412 9981 ..."``.

    The raw keys are sorted before hashing so both parties get the same code
    regardless of who is "mine". Each group is a big-endian uint16 of the
    SHA-256 digest reduced mod 10000.
    """
    first, second = sorted([b64d(identity_key_a), b64d(identity_key_b)])
    digest = sha256(first + b"|" + second)
    parts = []
    for i in range(GROUPS):
        (value,) = struct.unpack(">H", digest[i * 2:i * 2 + 2])
        parts.append(f"{value % 10000:04d}")
    return " ".join(parts)
