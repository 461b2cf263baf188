"""
orderflow — 認可

認証は外部サービスの責務。ここでは呼び出し元 (actor_id, role) を受け取り、
can(actor, action, order) で操作を許可するかだけを判断する。

既定のポリシー:
  admin  : すべて
  購入者 : 自分の注文の参照・キャンセル・支払い・受け取り確認
  出品者 : 自分の商品を含む注文の参照・キャンセル・出荷・配達完了・ラベル発行・配送状況の更新
"""

from enum import Enum
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from .aggregate import OrderAggregate


class Role(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class Action(str, Enum):
    CREATE = "create"
    VIEW = "view"
    CANCEL = "cancel"
    PAY = "pay"
    CREATE_SHIPMENT = "create_shipment"
    SHIP = "ship"
    DELIVER = "deliver"
    LABEL = "label"
    UPDATE_TRACKING = "update_tracking"
    MANAGE_INVENTORY = "manage_inventory"


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    actor_id: str
    role: Role = Role.BUYER

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


class Authorizer(Protocol):
    def can(self, actor: Actor, action: Action, order: OrderAggregate | None) -> bool: ...


BUYER_ACTIONS = frozenset({Action.VIEW, Action.CANCEL, Action.PAY, Action.DELIVER})
SELLER_ACTIONS = frozenset(
    {
        Action.VIEW,
        Action.CANCEL,
        Action.CREATE_SHIPMENT,
        Action.SHIP,
        Action.DELIVER,
        Action.LABEL,
        Action.UPDATE_TRACKING,
    }
)


class RoleBasedAuthorizer:
    def can(self, actor: Actor, action: Action, order: OrderAggregate | None) -> bool:
        if actor.is_admin:
            return True
        if action is Action.CREATE:
            return True
        if action is Action.MANAGE_INVENTORY:
            return actor.role is Role.SELLER
        if order is None:
            return False
        if actor.actor_id == order.buyer_id and action in BUYER_ACTIONS:
            return True
        return actor.actor_id in order.seller_ids and action in SELLER_ACTIONS
