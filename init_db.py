import asyncio

from e2ee.config import EngineConfig
from e2ee.sql_store import SqlSessionStore
from keyserver.db import engine
from keyserver.models import Base


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("✅ Key directory tables created successfully!")

    store = SqlSessionStore(EngineConfig.from_env())
    await store.init()
    await store.aclose()
    print("✅ Client session tables created successfully!")

if __name__ == "__main__":
    asyncio.run(init_db())
