from typing import List, Optional

from pydantic import BaseModel, Field


class SignedPreKeyIn(BaseModel):
    key_id: int
    public_key: str
    signature: str

class OneTimePreKeyIn(BaseModel):
    key_id: int
    public_key: str

# bundle upload; replaces whatever the account published before
class BundleUploadIn(BaseModel):
    identity_key: str
    signing_key: str
    signed_prekey: SignedPreKeyIn
    one_time_prekeys: List[OneTimePreKeyIn] = Field(default_factory=list)

class ReplenishIn(BaseModel):
    one_time_prekeys: List[OneTimePreKeyIn]

# returned prekey bundle (for other users to fetch)
class PreKeyBundleOut(BaseModel):
    peer: str
    identity_key: str
    signing_key: str
    signed_prekey: SignedPreKeyIn
    one_time_prekey: Optional[OneTimePreKeyIn] = None  # null once the pool is depleted

class CountOut(BaseModel):
    count: int

class IdentityOut(BaseModel):
    peer: str
    identity_key: str
