from sqlalchemy import Float, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass

# one ratchet session per peer; skipped keys live in their own table
class SessionRecord(Base):
    __tablename__ = "e2ee_sessions"
    peer: Mapped[str] = mapped_column(String(128), primary_key=True)
    state: Mapped[dict] = mapped_column(JSON)
    updated_at: Mapped[float] = mapped_column(Float)

# message keys derived past a gap, consumed at most once
class SkippedKeyRecord(Base):
    __tablename__ = "e2ee_skipped_keys"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    peer: Mapped[str] = mapped_column(String(128), index=True)
    ratchet_key: Mapped[str] = mapped_column(String(64))
    counter: Mapped[int] = mapped_column(Integer)
    message_key: Mapped[str] = mapped_column(Text)
    created_at: Mapped[float] = mapped_column(Float, index=True)

    __table_args__ = (UniqueConstraint("peer", "ratchet_key", "counter", name="uq_skipped_peer_key_counter"),)

# identity keys pinned on first contact
class TrustedKeyRecord(Base):
    __tablename__ = "e2ee_trusted_keys"
    peer: Mapped[str] = mapped_column(String(128), primary_key=True)
    identity_key: Mapped[str] = mapped_column(Text)
    trusted_at: Mapped[float] = mapped_column(Float)

# room keys, one row per version
class GroupKeyRecord(Base):
    __tablename__ = "e2ee_group_keys"
    room_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    key_b64: Mapped[str] = mapped_column(Text)
    created_at: Mapped[float] = mapped_column(Float)

# local private key material: kind is "identity", "signed_prekey" or "one_time_prekey"
class LocalKeyRecord(Base):
    __tablename__ = "e2ee_local_keys"
    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    key_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    data: Mapped[dict] = mapped_column(JSON)
