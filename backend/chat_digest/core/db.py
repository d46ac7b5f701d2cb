import logging
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)


Base = declarative_base()


class Database:
    """数据库连接：持有 engine 和 sessionmaker，由调用方显式创建并传递"""

    def __init__(self, database_url: str, echo: bool = False) -> None:
        self.url = database_url
        self.engine: AsyncEngine = create_async_engine(database_url, future=True, echo=echo)
        self.sessionmaker: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine, expire_on_commit=False
        )

    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            yield session

    async def init_models(self) -> None:
        import chat_digest.models.device  # noqa: F401
        import chat_digest.models.job  # noqa: F401
        import chat_digest.models.message  # noqa: F401
        import chat_digest.models.summary  # noqa: F401

        async with self.engine.begin() as conn:
            # 创建所有表
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        """检查数据库是否可用"""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"数据库连接检查失败: {e}", exc_info=True)
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()
