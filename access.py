"""
Access guard for product mutations.

The single place where roles are turned into capability decisions; routes
and services never compare role strings themselves.
"""
from enum import Enum
from typing import Any, Mapping

from errors import ForbiddenError


class Role(str, Enum):
    USER = "user"
    SELLER = "seller"
    ADMIN = "admin"


class Capability(str, Enum):
    OWNER_MUTATE = "owner_mutate"


class Decision(Enum):
    ALLOW = "allow"
    FORBIDDEN = "forbidden"


def is_admin(actor: Any) -> bool:
    return actor.role == Role.ADMIN


def authorize(actor: Any, product: Mapping, capability: Capability) -> Decision:
    """`actor` needs `id` and `role`; `product` is a stored product document."""
    if is_admin(actor):
        return Decision.ALLOW
    if capability == Capability.OWNER_MUTATE and str(actor.id) == str(product.get("seller_id")):
        return Decision.ALLOW
    return Decision.FORBIDDEN


def require(actor: Any, product: Mapping, capability: Capability, action: str = "modify") -> None:
    if authorize(actor, product, capability) is Decision.FORBIDDEN:
        raise ForbiddenError(f"You are not authorized to {action} this product")
