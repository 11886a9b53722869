import asyncio
import os
import time

from fanpass.config import ADMIN_EMAIL, DATABASE_URL
from fanpass.infra.sql import GatedAsyncSession, make_async_engine
from fanpass.model.events import create_event, get_event
from fanpass.model.identity import create_user, find_user_by_email
from fanpass.model.orm import Base

# Config
DemoEventId = "demo-event"
DemoEventCapacity = int(os.getenv("DEMO_EVENT_CAPACITY", "500"))
DemoEventPrice = 500_000         # kobo (NGN 5,000)
DemoEventPriceCoins = 10_000


async def create_schema(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print('✅ schema created')


async def seed(db: GatedAsyncSession):
    if await find_user_by_email(db, ADMIN_EMAIL) is None:
        await create_user(db, ADMIN_EMAIL, "Admin", roles=("admin",))
        print(f'✅ admin user {ADMIN_EMAIL} created')

    if await get_event(db, DemoEventId) is None:
        await create_event(
            db,
            event_id=DemoEventId,
            title="Demo Concert",
            venue="Warri",
            starts_at=time.time() + 30 * 24 * 3600,
            max_capacity=DemoEventCapacity,
            price=DemoEventPrice,
            price_coins=DemoEventPriceCoins,
            seated=True,
        )
        print('✅ demo event created')


async def main():
    engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)
    await create_schema(engine)
    async with SessionAsync() as session:
        await seed(GatedAsyncSession(session=session, gated=gated))
    await engine.dispose()


if __name__ == '__main__':
    asyncio.run(main())
