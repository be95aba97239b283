"""Typed failures raised by the encryption engine.

Every error leaves session state exactly as it was before the failing call;
callers decide whether to drop the message, resync or warn the user.
"""


class CryptoError(Exception):
    """Base exception for engine errors"""
    pass


class SignatureInvalid(CryptoError):
    """Signed pre-key signature did not verify (possible MITM). Fatal to the handshake."""


class DecryptionFailed(CryptoError):
    """AEAD authentication failed or the message key is gone. Drop the message."""


class TooManySkippedMessages(CryptoError):
    """Gap in the receiving chain exceeds the configured maximum skip distance."""

    def __init__(self, requested: int, limit: int):
        super().__init__(f"{requested} skipped messages requested, limit is {limit}")
        self.requested = requested
        self.limit = limit


class UnknownSession(CryptoError):
    """No established session with the peer; a fresh handshake is required."""

    def __init__(self, peer: str):
        super().__init__(f"No session with {peer}")
        self.peer = peer


class IdentityKeyMismatch(CryptoError):
    """Peer presented an identity key different from the pinned one."""

    def __init__(self, peer: str, trusted_key: str, presented_key: str):
        super().__init__(f"Identity key for {peer} changed")
        self.peer = peer
        self.trusted_key = trusted_key
        self.presented_key = presented_key


class BundleNotFound(CryptoError):
    """The directory has no pre-key bundle for the peer."""

    def __init__(self, peer: str):
        super().__init__(f"No key bundle for {peer}")
        self.peer = peer


class NoGroupKey(CryptoError):
    """No group key stored for the room (or for the requested version)."""

    def __init__(self, room_id: str, version: int | None = None):
        detail = f" version {version}" if version is not None else ""
        super().__init__(f"No group key for room {room_id}{detail}")
        self.room_id = room_id
        self.version = version
