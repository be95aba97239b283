from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass

# the published half of an account's keys; one row per account, replaced on upload
class KeyBundle(Base):
    __tablename__ = "key_bundles"
    peer: Mapped[str] = mapped_column(String(128), primary_key=True)
    identity_key: Mapped[str] = mapped_column(Text)
    signing_key: Mapped[str] = mapped_column(Text)
    signed_prekey_id: Mapped[int] = mapped_column(Integer)
    signed_prekey: Mapped[str] = mapped_column(Text)
    signed_prekey_signature: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    one_time_prekeys: Mapped[list["OneTimePreKey"]] = relationship(
        back_populates="bundle", cascade="all, delete-orphan"
    )

# one-time prekey definitions (each can be handed out only once)
class OneTimePreKey(Base):
    __tablename__ = "one_time_prekeys"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    peer: Mapped[str] = mapped_column(String(128), ForeignKey("key_bundles.peer"), index=True)
    key_id: Mapped[int] = mapped_column(Integer)
    public_key: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    bundle: Mapped["KeyBundle"] = relationship(back_populates="one_time_prekeys")

Index("ix_otpk_peer_consumed", OneTimePreKey.peer, OneTimePreKey.consumed_at)
