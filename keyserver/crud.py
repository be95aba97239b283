from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import KeyBundle, OneTimePreKey
from .schemas import BundleUploadIn, OneTimePreKeyIn

# ---- helpers for CRUD operations ----

async def get_bundle(session: AsyncSession, peer: str) -> KeyBundle | None:
    res = await session.execute(select(KeyBundle).where(KeyBundle.peer == peer))
    return res.scalar_one_or_none()

# store uploaded keys; an upload replaces the previous bundle and its unused one-time keys
async def upsert_bundle(session: AsyncSession, peer: str, data: BundleUploadIn) -> KeyBundle:
    bundle = await get_bundle(session, peer)
    if bundle is None:
        bundle = KeyBundle(peer=peer)
        session.add(bundle)
    bundle.identity_key = data.identity_key
    bundle.signing_key = data.signing_key
    bundle.signed_prekey_id = data.signed_prekey.key_id
    bundle.signed_prekey = data.signed_prekey.public_key
    bundle.signed_prekey_signature = data.signed_prekey.signature
    bundle.updated_at = datetime.utcnow()
    await session.flush()

    await session.execute(
        delete(OneTimePreKey).where(OneTimePreKey.peer == peer, OneTimePreKey.consumed_at.is_(None))
    )
    await add_one_time_prekeys(session, peer, data.one_time_prekeys)
    return bundle

async def add_one_time_prekeys(session: AsyncSession, peer: str, keys: list[OneTimePreKeyIn]) -> None:
    session.add_all([OneTimePreKey(peer=peer, key_id=k.key_id, public_key=k.public_key) for k in keys])
    await session.flush()

async def count_one_time_prekeys(session: AsyncSession, peer: str) -> int:
    res = await session.execute(
        select(func.count(OneTimePreKey.id))
        .where(OneTimePreKey.peer == peer, OneTimePreKey.consumed_at.is_(None))
    )
    return int(res.scalar_one())

# consume one-time prekey for a peer and mark it used
async def consume_one_time_prekey(session: AsyncSession, peer: str) -> OneTimePreKey | None:
    """
    Pick the oldest unused OPK and mark it consumed.
    Row locking applies on backends that support it (ignored by SQLite).
    """
    res = await session.execute(
        select(OneTimePreKey)
        .where(OneTimePreKey.peer == peer, OneTimePreKey.consumed_at.is_(None))
        .order_by(OneTimePreKey.id.asc())
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    opk = res.scalar_one_or_none()
    if opk is None:
        return None
    opk.consumed_at = datetime.utcnow()
    await session.flush()
    return opk
