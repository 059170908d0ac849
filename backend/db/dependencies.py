from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import  AsyncSession
from backend.db.connection import async_session

async def get_session() -> AsyncGenerator[AsyncSession,None]:
    # the session opens a connection on first execute and closes it at the end of the block
    async with async_session() as session:
        yield session


