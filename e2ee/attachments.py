"""File attachments: encrypted once with a random key that travels in a ratchet message."""

from typing import Tuple

from .primitive import IV_LENGTH, aead_decrypt, aead_encrypt, b64d, b64e, rand_bytes
from .errors import DecryptionFailed

FILE_KEY_LENGTH = 32


def encrypt_attachment(data: bytes) -> Tuple[bytes, str]:
    """
    Returns (blob, file_key_b64). The blob is IV || AES-256-GCM ciphertext and
    can be uploaded anywhere; the key goes into MessagePayload.file_key.
    """
    key = rand_bytes(FILE_KEY_LENGTH)
    iv, ct = aead_encrypt(key, data, None)
    return iv + ct, b64e(key)


def decrypt_attachment(blob: bytes, file_key_b64: str) -> bytes:
    if len(blob) <= IV_LENGTH:
        raise DecryptionFailed("attachment too short")
    try:
        key = b64d(file_key_b64)
    except ValueError as e:
        raise DecryptionFailed("malformed file key") from e
    return aead_decrypt(key, blob[:IV_LENGTH], blob[IV_LENGTH:], None)
