"""
Order Service — 在庫コラボレーター (Product Inventory)

注文の作成・キャンセル・下書き変換から呼ばれ、商品在庫の確認と
増減を行う。すべての操作は呼び出し元のトランザクション内で実行され、
単独でコミットはしない。

在庫の減算は条件付き UPDATE で行う:

    UPDATE products SET quantity = quantity - :qty
    WHERE id = :id AND quantity >= :qty

影響行数が 0 なら在庫不足。同時に 2 件の注文が同じ商品を取り合っても
quantity が負になることはない。

デジタル商品 (is_digital) は在庫管理の対象外。
"""

import logging
from typing import Iterable

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from .errors import InsufficientStock, ProductNotFound, ProductUnavailable
from .models import Product

logger = logging.getLogger(__name__)


async def find_product(
    session: AsyncSession,
    product_id: int,
    lock: bool = False,
) -> Product | None:
    """商品を 1 件取得する。lock=True なら行ロック (FOR UPDATE) を取る。"""
    stmt = (
        select(Product)
        .where(Product.id == product_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def load_products(
    session: AsyncSession,
    product_ids: Iterable[int],
    lock: bool = True,
) -> dict[int, Product]:
    """
    複数商品をまとめて取得する。lock=True なら行ロックも取る。

    ロック順序を id 昇順に固定してデッドロックを避ける。
    存在しない id は戻り値の dict に含まれない。
    """
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    stmt = (
        select(Product)
        .where(Product.id.in_(ids))
        .order_by(Product.id)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return {p.id: p for p in result.scalars()}


def require_product(products: dict[int, Product], product_id: int) -> Product:
    product = products.get(product_id)
    if product is None:
        raise ProductNotFound(product_id)
    return product


def ensure_orderable(product: Product, quantity: int) -> None:
    """公開済みで、物理商品なら在庫が足りることを確認する。"""
    if not product.is_published:
        raise ProductUnavailable(product.name)
    if not product.is_digital and product.quantity < quantity:
        raise InsufficientStock(product.name, quantity, product.quantity)


async def decrement_stock(
    session: AsyncSession,
    product: Product,
    quantity: int,
) -> None:
    """在庫を減らす（注文作成・下書き変換）。"""
    if product.is_digital:
        return

    result = await session.execute(
        text("""
            UPDATE products
            SET quantity = quantity - :qty, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id AND quantity >= :qty
        """),
        {"qty": quantity, "id": product.id},
    )
    if result.rowcount != 1:
        current = await find_product(session, product.id)
        raise InsufficientStock(product.name, quantity, current.quantity if current else 0)

    # 生 SQL で更新したので、ORM 側の値もフラッシュ対象にせず同期する
    set_committed_value(product, "quantity", product.quantity - quantity)
    logger.debug("Stock decremented: product=%s qty=%s", product.id, quantity)


async def increment_stock(
    session: AsyncSession,
    product: Product,
    quantity: int,
) -> None:
    """在庫を戻す（キャンセル時の在庫リコンシリエーション）。"""
    if product.is_digital:
        return

    await session.execute(
        text("""
            UPDATE products
            SET quantity = quantity + :qty, updated_at = CURRENT_TIMESTAMP
            WHERE id = :id
        """),
        {"qty": quantity, "id": product.id},
    )
    set_committed_value(product, "quantity", product.quantity + quantity)
    logger.debug("Stock restored: product=%s qty=%s", product.id, quantity)
