"""SessionStore backed by SQLAlchemy's async ORM (SQLite via aiosqlite by default)."""

import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import EngineConfig
from .double_ratchet import DoubleRatchetState, SkippedMessageKey
from .models import (
    Base,
    GroupKeyRecord,
    LocalKeyRecord,
    SessionRecord,
    SkippedKeyRecord,
    TrustedKeyRecord,
)
from .store import GroupKey, SessionStore, TrustedIdentityKey

logger = logging.getLogger(__name__)

IDENTITY = "identity"
SIGNED_PREKEY = "signed_prekey"
ONE_TIME_PREKEY = "one_time_prekey"


def _skipped_entry(row: SkippedKeyRecord) -> SkippedMessageKey:
    return SkippedMessageKey(
        ratchet_key=row.ratchet_key,
        counter=row.counter,
        message_key_b64=row.message_key,
        created_at=row.created_at,
    )


def _group_key(row: GroupKeyRecord) -> GroupKey:
    return GroupKey(room_id=row.room_id, key_b64=row.key_b64, version=row.version, created_at=row.created_at)


class SqlSessionStore(SessionStore):
    """
    Durable store for one local account.

    Every method runs in its own transaction; ``save_session`` writes the
    session row together with its skipped keys, so a crash never leaves a
    session without the keys it expects (or the other way round).
    """

    def __init__(self, config: Optional[EngineConfig] = None, engine: Optional[AsyncEngine] = None):
        super().__init__(config)
        self.engine = engine or create_async_engine(self.config.database_url, echo=False, future=True)
        self.SessionLocal = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)

    async def init(self) -> None:
        """Create the tables if they do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def aclose(self) -> None:
        await self.engine.dispose()

    # ---- sessions ----

    async def get_session(self, peer: str) -> Optional[DoubleRatchetState]:
        async with self.SessionLocal() as session:
            record = await session.get(SessionRecord, peer)
            if record is None:
                return None
            res = await session.execute(select(SkippedKeyRecord).where(SkippedKeyRecord.peer == peer))
            entries = [_skipped_entry(r) for r in res.scalars().all()]
        return self._new_state(record.state, entries)

    async def save_session(self, peer: str, state: DoubleRatchetState) -> None:
        async with self.SessionLocal() as session, session.begin():
            await session.merge(SessionRecord(
                peer=peer,
                state=state.to_dict(include_skipped=False),
                updated_at=time.time(),
            ))
            await session.execute(delete(SkippedKeyRecord).where(SkippedKeyRecord.peer == peer))
            # flush the delete before re-inserting rows with the same unique key
            await session.flush()
            session.add_all([
                SkippedKeyRecord(
                    peer=peer,
                    ratchet_key=e.ratchet_key,
                    counter=e.counter,
                    message_key=e.message_key_b64,
                    created_at=e.created_at,
                )
                for e in state.skipped
            ])

    async def delete_session(self, peer: str) -> None:
        async with self.SessionLocal() as session, session.begin():
            await session.execute(delete(SkippedKeyRecord).where(SkippedKeyRecord.peer == peer))
            await session.execute(delete(SessionRecord).where(SessionRecord.peer == peer))

    # ---- skipped message keys ----

    async def get_skipped_key(self, peer: str, ratchet_key: str, counter: int) -> Optional[SkippedMessageKey]:
        async with self.SessionLocal() as session:
            res = await session.execute(select(SkippedKeyRecord).where(
                SkippedKeyRecord.peer == peer,
                SkippedKeyRecord.ratchet_key == ratchet_key,
                SkippedKeyRecord.counter == counter,
            ))
            row = res.scalar_one_or_none()
        return _skipped_entry(row) if row else None

    async def save_skipped_key(self, peer: str, entry: SkippedMessageKey) -> None:
        async with self.SessionLocal() as session, session.begin():
            await self._delete_skipped(session, peer, entry.ratchet_key, entry.counter)
            session.add(SkippedKeyRecord(
                peer=peer,
                ratchet_key=entry.ratchet_key,
                counter=entry.counter,
                message_key=entry.message_key_b64,
                created_at=entry.created_at,
            ))

    async def remove_skipped_key(self, peer: str, ratchet_key: str, counter: int) -> None:
        async with self.SessionLocal() as session, session.begin():
            await self._delete_skipped(session, peer, ratchet_key, counter)

    @staticmethod
    async def _delete_skipped(session: AsyncSession, peer: str, ratchet_key: str, counter: int) -> None:
        await session.execute(delete(SkippedKeyRecord).where(
            SkippedKeyRecord.peer == peer,
            SkippedKeyRecord.ratchet_key == ratchet_key,
            SkippedKeyRecord.counter == counter,
        ))

    async def clean_expired_skipped_keys(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        cutoff = now - self.config.skipped_key_max_age
        async with self.SessionLocal() as session, session.begin():
            res = await session.execute(delete(SkippedKeyRecord).where(SkippedKeyRecord.created_at < cutoff))
        return res.rowcount or 0

    # ---- trusted identity keys ----

    async def get_trusted_key(self, peer: str) -> Optional[TrustedIdentityKey]:
        async with self.SessionLocal() as session:
            row = await session.get(TrustedKeyRecord, peer)
        if row is None:
            return None
        return TrustedIdentityKey(peer=row.peer, identity_key=row.identity_key, trusted_at=row.trusted_at)

    async def save_trusted_key(self, peer: str, identity_key: str) -> None:
        async with self.SessionLocal() as session, session.begin():
            await session.merge(TrustedKeyRecord(peer=peer, identity_key=identity_key, trusted_at=time.time()))

    # ---- group keys ----

    async def get_group_key(self, room_id: str, version: Optional[int] = None) -> Optional[GroupKey]:
        async with self.SessionLocal() as session:
            if version is not None:
                row = await session.get(GroupKeyRecord, (room_id, version))
            else:
                res = await session.execute(
                    select(GroupKeyRecord)
                    .where(GroupKeyRecord.room_id == room_id)
                    .order_by(GroupKeyRecord.version.desc())
                    .limit(1)
                )
                row = res.scalar_one_or_none()
        return _group_key(row) if row else None

    async def get_group_keys(self, room_id: str) -> List[GroupKey]:
        async with self.SessionLocal() as session:
            res = await session.execute(
                select(GroupKeyRecord)
                .where(GroupKeyRecord.room_id == room_id)
                .order_by(GroupKeyRecord.version.asc())
            )
            return [_group_key(r) for r in res.scalars().all()]

    async def save_group_key(self, key: GroupKey) -> None:
        async with self.SessionLocal() as session, session.begin():
            await session.merge(GroupKeyRecord(
                room_id=key.room_id,
                version=key.version,
                key_b64=key.key_b64,
                created_at=key.created_at or time.time(),
            ))

    async def delete_group_key(self, room_id: str, version: int) -> None:
        async with self.SessionLocal() as session, session.begin():
            await session.execute(delete(GroupKeyRecord).where(
                GroupKeyRecord.room_id == room_id, GroupKeyRecord.version == version,
            ))

    # ---- local key material ----

    async def _get_local(self, kind: str, key_id: int) -> Optional[Dict[str, Any]]:
        async with self.SessionLocal() as session:
            row = await session.get(LocalKeyRecord, (kind, key_id))
        return dict(row.data) if row else None

    async def _list_local(self, kind: str) -> Dict[int, Dict[str, Any]]:
        async with self.SessionLocal() as session:
            res = await session.execute(select(LocalKeyRecord).where(LocalKeyRecord.kind == kind))
            return {r.key_id: dict(r.data) for r in res.scalars().all()}

    async def _put_local(self, kind: str, key_id: int, data: Dict[str, Any]) -> None:
        async with self.SessionLocal() as session, session.begin():
            await session.merge(LocalKeyRecord(kind=kind, key_id=key_id, data=data))

    async def _remove_local(self, kind: str, key_id: int) -> None:
        async with self.SessionLocal() as session, session.begin():
            await session.execute(delete(LocalKeyRecord).where(
                LocalKeyRecord.kind == kind, LocalKeyRecord.key_id == key_id,
            ))

    async def get_identity(self) -> Optional[Dict[str, Any]]:
        return await self._get_local(IDENTITY, 0)

    async def save_identity(self, blob: Dict[str, Any]) -> None:
        await self._put_local(IDENTITY, 0, blob)

    async def get_signed_prekeys(self) -> Dict[int, Dict[str, Any]]:
        return await self._list_local(SIGNED_PREKEY)

    async def save_signed_prekey(self, key_id: int, record: Dict[str, Any]) -> None:
        await self._put_local(SIGNED_PREKEY, key_id, record)

    async def remove_signed_prekey(self, key_id: int) -> None:
        await self._remove_local(SIGNED_PREKEY, key_id)

    async def get_one_time_prekey(self, key_id: int) -> Optional[Dict[str, Any]]:
        return await self._get_local(ONE_TIME_PREKEY, key_id)

    async def list_one_time_prekeys(self) -> Dict[int, Dict[str, Any]]:
        return await self._list_local(ONE_TIME_PREKEY)

    async def save_one_time_prekey(self, key_id: int, record: Dict[str, Any]) -> None:
        await self._put_local(ONE_TIME_PREKEY, key_id, record)

    async def remove_one_time_prekey(self, key_id: int) -> None:
        await self._remove_local(ONE_TIME_PREKEY, key_id)

    async def clear_all(self) -> None:
        async with self.SessionLocal() as session, session.begin():
            for model in (SkippedKeyRecord, SessionRecord, TrustedKeyRecord, GroupKeyRecord, LocalKeyRecord):
                await session.execute(delete(model))
        logger.info("Cleared all stored sessions and key material")
