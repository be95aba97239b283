import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession

from e2ee.bundle import parse_bundle, verify_bundle

from .auth import get_current_peer
from .crud import (
    get_bundle, upsert_bundle,
    add_one_time_prekeys, count_one_time_prekeys,
    consume_one_time_prekey,
)
from .db import engine, get_session
from .models import Base
from .schemas import (
    BundleUploadIn, ReplenishIn,
    PreKeyBundleOut, SignedPreKeyIn, OneTimePreKeyIn,
    CountOut, IdentityOut,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield


app = FastAPI(title="E2EE Key Directory", lifespan=lifespan)

# ---- CORS ----
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---- KEYS ----

@app.post("/keys/bundle")
async def upload_bundle(
    data: BundleUploadIn,
    peer: str = Depends(get_current_peer),
    session: AsyncSession = Depends(get_session),
):
    # reject bundles whose signed prekey does not verify against the signing key
    candidate = parse_bundle({"peer": peer, **data.model_dump(exclude={"one_time_prekeys"})})
    if not verify_bundle(candidate):
        raise HTTPException(400, "Signed prekey signature does not verify")

    await upsert_bundle(session, peer, data)
    await session.commit()
    logger.info("Bundle published for %s with %d one-time keys", peer, len(data.one_time_prekeys))
    return {"status": "ok"}

@app.get("/keys/bundle/{target}", response_model=PreKeyBundleOut)
async def get_prekey_bundle(
    target: str,
    session: AsyncSession = Depends(get_session),
    _caller: str = Depends(get_current_peer),
):
    bundle = await get_bundle(session, target)
    if not bundle:
        raise HTTPException(404, "No key bundle for this peer")

    opk = await consume_one_time_prekey(session, target)
    await session.commit()
    if opk is None:
        logger.warning("One-time prekeys for %s exhausted", target)

    return PreKeyBundleOut(
        peer=bundle.peer,
        identity_key=bundle.identity_key,
        signing_key=bundle.signing_key,
        signed_prekey=SignedPreKeyIn(
            key_id=bundle.signed_prekey_id,
            public_key=bundle.signed_prekey,
            signature=bundle.signed_prekey_signature,
        ),
        one_time_prekey=OneTimePreKeyIn(key_id=opk.key_id, public_key=opk.public_key) if opk else None,
    )

@app.post("/keys/replenish")
async def replenish(
    data: ReplenishIn,
    peer: str = Depends(get_current_peer),
    session: AsyncSession = Depends(get_session),
):
    if not await get_bundle(session, peer):
        raise HTTPException(404, "Publish a bundle first")
    await add_one_time_prekeys(session, peer, data.one_time_prekeys)
    await session.commit()
    return {"status": "ok", "added": len(data.one_time_prekeys)}

@app.get("/keys/count", response_model=CountOut)
async def one_time_key_count(
    peer: str = Depends(get_current_peer),
    session: AsyncSession = Depends(get_session),
):
    return CountOut(count=await count_one_time_prekeys(session, peer))

@app.get("/keys/identity/{target}", response_model=IdentityOut)
async def identity_key(
    target: str,
    session: AsyncSession = Depends(get_session),
    _caller: str = Depends(get_current_peer),
):
    bundle = await get_bundle(session, target)
    if not bundle:
        raise HTTPException(404, "No key bundle for this peer")
    return IdentityOut(peer=bundle.peer, identity_key=bundle.identity_key)
