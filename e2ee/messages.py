from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from .double_ratchet import MessageHeader
from .x3dh import InitialMessageHeader


# a ratchet-encrypted 1:1 message as it travels over the signaling transport
class RatchetMessage(BaseModel):
    ratchet_key: str
    counter: int
    previous_chain_length: int = 0
    iv: str
    ciphertext: str
    # X3DH fields, present until the peer has answered
    ephemeral_key: Optional[str] = None
    sender_identity_key: Optional[str] = None
    signed_prekey_id: Optional[int] = None
    one_time_key_id: Optional[int] = None

    def header(self) -> MessageHeader:
        return MessageHeader(
            ratchet_key=self.ratchet_key,
            counter=self.counter,
            previous_chain_length=self.previous_chain_length,
        )

    def initial(self) -> Optional[InitialMessageHeader]:
        if not (self.ephemeral_key and self.sender_identity_key) or self.signed_prekey_id is None:
            return None
        return InitialMessageHeader(
            sender_identity_key=self.sender_identity_key,
            ephemeral_key=self.ephemeral_key,
            signed_prekey_id=self.signed_prekey_id,
            one_time_key_id=self.one_time_key_id,
        )


# a room key wrapped inside a pairwise message
class GroupKeyEnvelope(BaseModel):
    room_id: str
    key: str
    version: int = Field(ge=1)


# decrypted content of a 1:1 or group message
class MessagePayload(BaseModel):
    text: str = ""
    file_key: Optional[str] = None
    thumbnail_key: Optional[str] = None
    group_key: Optional[GroupKeyEnvelope] = None


class GroupMessage(BaseModel):
    room_id: str
    ciphertext: str
    iv: str
    version: int


def parse_payload(plaintext: bytes) -> MessagePayload:
    """Structured payload, or plain text from peers that send bare strings."""
    text = plaintext.decode("utf-8")
    try:
        return MessagePayload.model_validate_json(text)
    except ValidationError:
        return MessagePayload(text=text)
