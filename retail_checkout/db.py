"""
Database helpers

Each service owns its own database (database per service). Schemas are
plain SQL statements kept next to the service and applied on startup.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def create_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, echo=False)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(session_factory: sessionmaker, statements: list[str]) -> None:
    async with session_factory() as session:
        for statement in statements:
            await session.execute(text(statement))
        await session.commit()
