"""
Order Service — 永続化とトランザクション

エンジン/セッションの生成と、1 つの注文操作を 1 つの DB トランザクションに
閉じ込めるためのコンテキストマネージャを提供する。

    async with transaction(session):
        ... 読み取り・在庫更新・注文の書き込み ...
    # 正常終了 → COMMIT / 例外 → ROLLBACK して再送出

途中で例外が出た場合、在庫の減算も注文の挿入も一切残らない。
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base

logger = logging.getLogger(__name__)


def make_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルを作成する（開発・テスト用。本番はマイグレーションで管理）。"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    ブロック全体を 1 トランザクションとして実行する。

    ブロック内で送出された例外は握りつぶさず、ロールバック後に
    そのまま呼び出し元へ再送出する。
    """
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        logger.debug("Transaction rolled back")
        raise
