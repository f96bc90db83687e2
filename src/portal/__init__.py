"""Portal order engine: client, item tree and order state machine."""

from portal.errors import (
    PortalError,
    TransportError,
    PreconditionError,
    ValidationError,
    NotFoundError,
    AmbiguousError,
    RemoteOutcomeError,
    OrderFailed,
    ActionWarning,
    ActionFailed,
    SettleTimeoutError,
    SettleCancelledError,
    PartialApplyError,
)
from portal.client import OrderClient, PortalClient
from portal.items import AccessACL, Item, ItemTree, decode_config
from portal.order import ActionStatus, LastAction, Order, OrderStatus

__all__ = [
    "PortalError",
    "TransportError",
    "PreconditionError",
    "ValidationError",
    "NotFoundError",
    "AmbiguousError",
    "RemoteOutcomeError",
    "OrderFailed",
    "ActionWarning",
    "ActionFailed",
    "SettleTimeoutError",
    "SettleCancelledError",
    "PartialApplyError",
    "OrderClient",
    "PortalClient",
    "AccessACL",
    "Item",
    "ItemTree",
    "decode_config",
    "ActionStatus",
    "LastAction",
    "Order",
    "OrderStatus",
]
