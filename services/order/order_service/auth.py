"""
Order Service — 認可コンテキスト (Principal)

JWT の検証は API ゲートウェイ側で行い、このサービスには検証済みの
ユーザー情報がヘッダーで渡される:

    X-User-Id:   123
    X-User-Role: customer | supplier | admin | superadmin

ロールごとの権限はリクエストのたびに DB へ問い合わせず、
ROLE_PERMISSIONS から解決した Principal を各コマンドに明示的に渡す。
"""

import enum

from fastapi import Depends, Header
from pydantic import BaseModel

from .errors import AuthenticationRequired, Forbidden


class Role(str, enum.Enum):
    ADMIN = "admin"
    SUPERADMIN = "superadmin"
    SUPPLIER = "supplier"
    CUSTOMER = "customer"


def _expand(resources: dict[str, list[str]]) -> frozenset[str]:
    return frozenset(
        f"{resource}:{action}" for resource, actions in resources.items() for action in actions
    )


_ALL = _expand({
    "user": ["view", "create", "update", "delete"],
    "customer": ["view", "create", "update", "delete"],
    "product": ["view", "create", "update", "delete"],
    "category": ["view", "create", "update", "delete"],
    "order": ["view", "create", "update", "delete", "process", "cancel"],
    "dashboard": ["view"],
    "reports": ["view", "export"],
    "settings": ["view", "update"],
})

ROLE_PERMISSIONS: dict[Role, frozenset[str]] = {
    Role.ADMIN: _ALL,
    Role.SUPERADMIN: _ALL,
    Role.SUPPLIER: _expand({
        "product": ["view", "create", "update"],
        "category": ["view"],
        "order": ["view"],
        "dashboard": ["view"],
    }),
    Role.CUSTOMER: frozenset(),
}


class Principal(BaseModel):
    """操作を行う主体。"""

    id: int
    role: Role
    permissions: frozenset[str] = frozenset()

    @classmethod
    def for_role(cls, user_id: int, role: Role | str) -> "Principal":
        role = Role(role)
        return cls(id=user_id, role=role, permissions=ROLE_PERMISSIONS[role])

    @property
    def is_admin(self) -> bool:
        return self.role in (Role.ADMIN, Role.SUPERADMIN)

    def has_permission(self, permission: str) -> bool:
        return self.is_admin or permission in self.permissions

    def owns(self, customer_id: int) -> bool:
        """
        顧客本人なら True。

        id はロールごとに別の名前空間なので、ロールが customer のときだけ
        customer_id と比較する。
        """
        return self.role is Role.CUSTOMER and self.id == customer_id

    def can_access(self, customer_id: int) -> bool:
        """管理者、または注文の所有者なら True。"""
        return self.is_admin or self.owns(customer_id)


# ── FastAPI 依存関係 ─────────────────────────────


async def get_principal(
    x_user_id: int | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Principal:
    if x_user_id is None or not x_user_role:
        raise AuthenticationRequired()
    try:
        return Principal.for_role(x_user_id, x_user_role)
    except ValueError:
        raise AuthenticationRequired(f"Unknown role: {x_user_role}") from None


def require_permission(permission: str):
    """指定した権限を持つ Principal だけを通す依存関係を返す。"""

    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has_permission(permission):
            raise Forbidden()
        return principal

    return dependency


def require_role(*roles: Role):
    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise Forbidden()
        return principal

    return dependency
