#!/usr/bin/env python3
"""Reset the key directory and local session databases."""
import asyncio

from e2ee.config import EngineConfig
from e2ee.models import Base as EngineBase
from e2ee.sql_store import SqlSessionStore
from keyserver.db import engine
from keyserver.models import Base


async def init():
    async with engine.begin() as conn:
        print("Dropping key directory tables...")
        await conn.run_sync(Base.metadata.drop_all)
        print("Creating key directory tables...")
        await conn.run_sync(Base.metadata.create_all)

    store = SqlSessionStore(EngineConfig.from_env())
    async with store.engine.begin() as conn:
        print("Dropping session tables...")
        await conn.run_sync(EngineBase.metadata.drop_all)
    await store.init()
    await store.aclose()
    print('✓ Database reset complete!')

if __name__ == '__main__':
    asyncio.run(init())
