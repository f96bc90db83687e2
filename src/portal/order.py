"""Order state machine for portal orders.

An Order mirrors one remote order: its status, its last action and its item
tree. The portal never pushes changes, so every mutation is followed by a
settle wait that polls until the order and its last action are terminal.

Settle classification:
- order status success/deprovisioned AND last action success -> success
- order status error/warning/new (terminal, not success)   -> OrderFailed
- last action warning                                      -> ActionWarning
- any other last action status                             -> ActionFailed
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from common import DEFAULT_SETTLE_TIMEOUT, ActionResult, Deadline, is_cancelled, with_provenance
from portal.client import OrderClient
from portal.errors import (
    ActionFailed,
    ActionWarning,
    OrderFailed,
    PortalError,
    PreconditionError,
    SettleCancelledError,
    SettleTimeoutError,
    TransportError,
)
from portal.items import Item, ItemTree

logger = logging.getLogger(__name__)

# Root item states meaning the resource was removed outside this tool
DELETED_STATES = {'deleted', 'deprovisioned'}

# Recursive delete of the root item and everything under it
DELETE_ACTION = 'delete_two_layer'


class OrderStatus(str, Enum):
    NEW = 'new'
    PENDING = 'pending'
    CHANGING = 'changing'
    REMOVING = 'removing'
    SUCCESS = 'success'
    WARNING = 'warning'
    ERROR = 'error'
    DEPROVISIONED = 'deprovisioned'

    @property
    def is_settling(self) -> bool:
        return self in SETTLING_STATUSES

    @property
    def is_success(self) -> bool:
        return self in (OrderStatus.SUCCESS, OrderStatus.DEPROVISIONED)


SETTLING_STATUSES = {OrderStatus.PENDING, OrderStatus.CHANGING, OrderStatus.REMOVING}


class ActionStatus(str, Enum):
    NEW = 'new'
    PENDING = 'pending'
    SUCCESS = 'success'
    WARNING = 'warning'
    FAILURE = 'failure'

    @property
    def is_running(self) -> bool:
        return self in (ActionStatus.NEW, ActionStatus.PENDING)


def parse_action_status(value: str) -> tuple[ActionStatus, str]:
    """Map a raw action status to ActionStatus, keeping the raw value.

    Unknown statuses (error, canceled, ...) map to FAILURE.
    """
    raw = (value or '').lower()
    try:
        return ActionStatus(raw), raw
    except ValueError:
        return ActionStatus.FAILURE, raw


@dataclass
class LastAction:
    """Most recent action the portal ran on the order."""
    id: str = ''
    status: ActionStatus = ActionStatus.SUCCESS
    raw_status: str = 'success'

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'LastAction':
        if not data:
            # Freshly created orders have no action history yet
            return cls()
        status, raw = parse_action_status(data.get('status', ''))
        return cls(id=str(data.get('id', '')), status=status, raw_status=raw)


class Order:
    """Local view of one remote order.

    Single-owner: resync mutates the object in place and there is no locking.

    Attributes:
        id: Order identifier
        status: Last observed order status
        last_action: Last observed action
        items: Item tree from the last resync
    """

    def __init__(
        self,
        client: OrderClient,
        order_id: str,
        default_timeout: Optional[float] = DEFAULT_SETTLE_TIMEOUT,
        default_max_attempts: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize order.

        Args:
            client: Remote order service
            order_id: Existing order id
            default_timeout: Settle deadline used when wait_until_settled gets
                none (None = unbounded)
            default_max_attempts: Poll bound used when wait_until_settled gets none
            sleep: Sleep function (patched in tests)
        """
        self.client = client
        self.id = order_id
        self.status = OrderStatus.NEW
        self.last_action = LastAction()
        self.items = ItemTree()
        self.label = ''
        self.created_at = ''
        self.default_timeout = default_timeout
        self.default_max_attempts = default_max_attempts
        self._sleep = sleep

    def __repr__(self) -> str:
        return f"Order({self.id}, status={self.status.value}, items={len(self.items)})"

    @classmethod
    def create(
        cls,
        client: OrderClient,
        label: str,
        product_id: str,
        attrs: dict,
        financial_project_id: str,
        lifetime: Optional[int] = None,
        **kwargs,
    ) -> 'Order':
        """Place a new order.

        The returned Order has no items yet; wait_until_settled (or resync)
        fills them in once the portal has provisioned something.
        """
        payload = {
            'label': label,
            'product_id': product_id,
            'attrs': with_provenance(attrs),
            'financial_project_id': financial_project_id,
        }
        if lifetime is not None:
            payload['lifetime'] = lifetime

        logger.info(f"Creating order '{label}' (product {product_id})")
        data = client.create_order(payload)
        order = cls(client, str(data['id']), **kwargs)
        order.label = label
        order._apply(data)
        logger.info(f"Order {order.id} created")
        return order

    @property
    def is_created(self) -> bool:
        """True once a resync has returned at least one item."""
        return len(self.items) > 0

    def resync(self) -> None:
        """Refetch order and last action from the portal.

        Raises:
            TransportError: On network or decode failure
        """
        data = self.client.get_order(self.id)
        self._apply(data)

    def _apply(self, data: dict) -> None:
        try:
            status = OrderStatus((data.get('status') or 'new').lower())
        except ValueError as e:
            raise TransportError(f"Order {self.id}: unknown status '{data.get('status')}'") from e
        items = data.get('data') or []
        if not isinstance(items, list):
            raise TransportError(f"Order {self.id}: item list is not a list")
        try:
            tree = ItemTree.from_list(items)
        except (AttributeError, TypeError, ValueError) as e:
            raise TransportError(f"Order {self.id}: cannot decode items: {e}") from e

        self.status = status
        self.last_action = LastAction.from_dict(data.get('last_action'))
        self.label = data.get('label', self.label)
        self.created_at = data.get('created_at', self.created_at)
        self.items = tree
        logger.debug(
            f"Order {self.id}: status={self.status.value} "
            f"action={self.last_action.raw_status} items={len(self.items)}"
        )

    def root(self) -> Item:
        """Root item of the order (see ItemTree.find_root)."""
        return self.items.find_root()

    def require_state(self, expected: str, item: Optional[Item] = None) -> None:
        """Check an item (root by default) is in the expected state.

        Raises:
            PreconditionError: If the state differs
            NotFoundError / AmbiguousError: If the root cannot be determined
        """
        target = item or self.root()
        if target.state != expected:
            raise PreconditionError(target.id, expected, target.state)

    def is_deleted(self) -> bool:
        """Resync and report whether the resource was deleted outside this tool.

        True when the order is deprovisioned or the root item is in a deleted
        state, so callers can plan a recreation instead of failing.
        """
        self.resync()
        if self.status == OrderStatus.DEPROVISIONED:
            return True
        if not self.items:
            return False
        return self.root().state in DELETED_STATES

    def invoke_action(self, name: str, item_id: Optional[str] = None, attrs: Optional[dict] = None) -> None:
        """Dispatch a named action without waiting for it.

        Args:
            name: Portal action name (e.g., 'start_vm', 's3_ceph_create_bucket')
            item_id: Target item, defaults to the root item
            attrs: Action attributes; the provenance tag is added
        """
        target = item_id or self.root().id
        payload = {'item_id': target, 'order': {'attrs': with_provenance(attrs)}}
        logger.info(f"Order {self.id}: running action '{name}' on item {target}")
        self.client.run_action(self.id, name, payload)

    def change_label(self, label: str) -> None:
        """Rename the order.

        Raises:
            NotFoundError / AmbiguousError: If the order has no single root item yet
        """
        self.root()
        logger.info(f"Order {self.id}: changing label to '{label}'")
        self.client.update_order(self.id, {'order': {'label': label}})
        self.label = label

    def change_financial_project(self, financial_project_id: str) -> None:
        """Bill the order to another financial project from its creation date.

        Raises:
            NotFoundError / AmbiguousError: If the order has no single root item yet
            TransportError: If the portal reported no usable creation date
        """
        self.root()
        payload = {
            'order_fin_projects': [{
                'financial_project_id': financial_project_id,
                'start_date': self._created_date(),
            }],
        }
        logger.info(f"Order {self.id}: moving to financial project {financial_project_id}")
        self.client.update_fin_projects(self.id, payload)

    def _created_date(self) -> str:
        try:
            created = datetime.fromisoformat(self.created_at.replace('Z', '+00:00'))
        except (AttributeError, ValueError) as e:
            raise TransportError(f"Order {self.id}: invalid created_at '{self.created_at}'") from e
        return created.strftime('%Y-%m-%d')

    def _deadline(self, timeout: Optional[float], max_attempts: Optional[int]) -> Deadline:
        return Deadline(
            timeout=timeout if timeout is not None else self.default_timeout,
            max_attempts=max_attempts if max_attempts is not None else self.default_max_attempts,
        )

    def _wait(self, phase: str, still_running: Callable[[], bool], poll_interval: float,
              deadline: Deadline, cancel: Optional[threading.Event]) -> None:
        while True:
            self.resync()
            deadline.tick()
            if not still_running():
                return
            if is_cancelled(cancel):
                raise SettleCancelledError(self.id)
            if deadline.expired():
                raise SettleTimeoutError(self.id, phase, deadline.describe())
            logger.debug(f"Order {self.id}: {phase} not settled, retrying in {poll_interval}s...")
            self._sleep(poll_interval)

    def wait_until_settled(
        self,
        poll_interval: float,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ActionResult:
        """Block until the order and its last action are terminal.

        Polls at a constant interval. Transport errors propagate on the first
        failed resync.

        Args:
            poll_interval: Seconds between polls
            timeout: Overall deadline in seconds (default: order default)
            max_attempts: Max resyncs across both phases (default: order default)
            cancel: Event checked before every sleep

        Returns:
            ActionResult with success=True

        Raises:
            OrderFailed: Order settled in a non-success status
            ActionWarning: Last action finished with warning
            ActionFailed: Last action failed (with diagnostic output)
            SettleTimeoutError: Bound exhausted
            SettleCancelledError: cancel was set
            TransportError: Resync failed
        """
        start = time.time()
        deadline = self._deadline(timeout, max_attempts)

        self._wait('order status', lambda: self.status.is_settling, poll_interval, deadline, cancel)
        if not self.status.is_success:
            raise OrderFailed(self.id, self.status.value)

        self._wait('last action', lambda: self.last_action.status.is_running, poll_interval, deadline, cancel)
        action = self.last_action
        if action.status == ActionStatus.WARNING:
            raise ActionWarning(self.id, action.id)
        if action.status != ActionStatus.SUCCESS:
            raise ActionFailed(self.id, action.id, action.raw_status, self._action_output(action.id))

        duration = time.time() - start
        logger.info(f"Order {self.id} settled ({self.status.value}) in {duration:.1f}s")
        return ActionResult(
            success=True,
            message=f"Order {self.id} settled",
            duration=duration,
            status=self.status.value,
        )

    def wait_last_action_ended(
        self,
        poll_interval: float,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> LastAction:
        """Block until the last action is no longer new or pending.

        Unlike wait_until_settled, neither the order status nor the action
        outcome is checked; the caller inspects the returned LastAction.
        """
        deadline = self._deadline(timeout, max_attempts)
        self._wait('last action', lambda: self.last_action.status.is_running, poll_interval, deadline, cancel)
        return self.last_action

    def _action_output(self, action_id: str) -> str:
        """Best-effort diagnostic output for a failed action."""
        if not action_id:
            return ''
        try:
            return self.client.get_action_output(self.id, action_id)
        except PortalError as e:
            logger.warning(f"Order {self.id}: could not fetch output of action {action_id}: {e}")
            return ''

    def run_action(
        self,
        name: str,
        poll_interval: float,
        item_id: Optional[str] = None,
        attrs: Optional[dict] = None,
        require: Optional[str] = None,
        tolerate_failure: bool = False,
        **wait_kwargs,
    ) -> ActionResult:
        """Invoke an action and wait for it to settle.

        Args:
            name: Portal action name
            poll_interval: Seconds between polls
            item_id: Target item, defaults to the root item
            attrs: Action attributes
            require: Root state the action needs ('on' / 'off')
            tolerate_failure: Downgrade ActionWarning/ActionFailed to a
                logged warning and an unsuccessful result
            **wait_kwargs: timeout / max_attempts / cancel for the settle wait

        Returns:
            ActionResult; success=False only when tolerate_failure is set
        """
        if require is not None:
            self.require_state(require)

        start = time.time()
        self.invoke_action(name, item_id=item_id, attrs=attrs)
        try:
            return self.wait_until_settled(poll_interval, **wait_kwargs)
        except (ActionWarning, ActionFailed) as e:
            if not tolerate_failure:
                raise
            logger.warning(f"Order {self.id}: action '{name}' did not succeed, continuing: {e.message}")
            return ActionResult(
                success=False,
                message=e.message,
                duration=time.time() - start,
                status=e.status,
            )

    def delete(self, poll_interval: float, wait: bool = True, **wait_kwargs) -> Optional[ActionResult]:
        """Delete the order's resources recursively ('delete_two_layer' on the root).

        Args:
            poll_interval: Seconds between polls
            wait: Wait for the deletion to settle; when False return right
                after dispatching
            **wait_kwargs: timeout / max_attempts / cancel for the settle wait

        Returns:
            ActionResult once settled, None when wait is False
        """
        self.invoke_action(DELETE_ACTION)
        if not wait:
            return None
        return self.wait_until_settled(poll_interval, **wait_kwargs)
