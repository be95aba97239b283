"""End-to-end encryption engine: X3DH, Double Ratchet, group and call crypto."""

from .errors import (
    CryptoError,
    SignatureInvalid,
    DecryptionFailed,
    TooManySkippedMessages,
    UnknownSession,
    IdentityKeyMismatch,
    BundleNotFound,
    NoGroupKey,
)

from .config import EngineConfig

from .keys import (
    IdentityKeyPair,
    KeyManager,
)

from .bundle import (
    PreKeyBundle,
    parse_bundle,
    verify_bundle,
)

from .x3dh import (
    X3DHResult,
    InitialMessageHeader,
    x3dh_initiator,
    x3dh_responder,
)

from .double_ratchet import (
    DoubleRatchetState,
    MessageHeader,
    SkippedKeyCache,
    init_sender,
    init_receiver,
    ratchet_encrypt,
    ratchet_decrypt,
)

from .messages import (
    RatchetMessage,
    MessagePayload,
    GroupKeyEnvelope,
    GroupMessage,
)

from .store import SessionStore, MemorySessionStore, GroupKey, TrustedIdentityKey
from .sql_store import SqlSessionStore
from .directory import BundleDirectory, MemoryBundleDirectory, HttpBundleDirectory
from .session import SessionManager
from .group import GroupCrypto, DistributionResult
from .call import CallCrypto, ConferenceCrypto, supports_frame_transforms
from .attachments import encrypt_attachment, decrypt_attachment
from .security_code import generate_security_code

__all__ = [
    # Errors
    "CryptoError",
    "SignatureInvalid",
    "DecryptionFailed",
    "TooManySkippedMessages",
    "UnknownSession",
    "IdentityKeyMismatch",
    "BundleNotFound",
    "NoGroupKey",
    "EngineConfig",
    # Keys and bundles
    "IdentityKeyPair",
    "KeyManager",
    "PreKeyBundle",
    "parse_bundle",
    "verify_bundle",
    # X3DH
    "X3DHResult",
    "InitialMessageHeader",
    "x3dh_initiator",
    "x3dh_responder",
    # Double Ratchet
    "DoubleRatchetState",
    "MessageHeader",
    "SkippedKeyCache",
    "init_sender",
    "init_receiver",
    "ratchet_encrypt",
    "ratchet_decrypt",
    # Wire models
    "RatchetMessage",
    "MessagePayload",
    "GroupKeyEnvelope",
    "GroupMessage",
    # Storage and directory
    "SessionStore",
    "MemorySessionStore",
    "SqlSessionStore",
    "GroupKey",
    "TrustedIdentityKey",
    "BundleDirectory",
    "MemoryBundleDirectory",
    "HttpBundleDirectory",
    # Orchestration
    "SessionManager",
    "GroupCrypto",
    "DistributionResult",
    "CallCrypto",
    "ConferenceCrypto",
    "supports_frame_transforms",
    "encrypt_attachment",
    "decrypt_attachment",
    "generate_security_code",
]
