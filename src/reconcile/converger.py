"""Converge a nested collection of an order to a desired state.

One ResourceConverger drives one collection (buckets, users, ACL rules,
topics, vhosts...) of one Order:

1. validate desired entries locally (nothing is sent if any is invalid)
2. resync the order and read the current collection from it
3. diff desired against current
4. apply deletes, then creates, then updates; an identity-changing update
   becomes a delete followed by a create
5. settle-wait after every applied step

The batch aborts on the first failing step with PartialApplyError. Steps
already applied stay applied; running converge again finishes the job since
step 2 always starts from the portal's state. Step kinds listed in
`tolerate` are downgraded instead: their ActionWarning/ActionFailed is
logged and recorded, and the batch continues. When the delete half of a
replace pair is tolerated, its create is skipped and recorded as tolerated
too, since the old entry still holds the key.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, Hashable, Mapping, Optional, TypeVar

from portal.errors import ActionFailed, ActionWarning, NotFoundError, PartialApplyError, PortalError
from portal.items import Item
from portal.order import Order
from reconcile.diff import ReconcileSet, diff
from validation import NameRule, validate_names

logger = logging.getLogger(__name__)

K = TypeVar('K', bound=Hashable)
V = TypeVar('V')

ApplyFn = Callable[[Order, Any, Any], None]


class StepKind(str, Enum):
    DELETE = 'delete'
    CREATE = 'create'
    UPDATE = 'update'


@dataclass
class Step:
    """One remote call of a convergence plan.

    Attributes:
        kind: delete, create or update
        key: Entry identity
        spec: Desired entry for create/update, current entry for delete
        replace: Part of a delete+create pair replacing an identity change
    """
    kind: StepKind
    key: Any
    spec: Any = None
    replace: bool = False

    def __str__(self) -> str:
        suffix = ' (replace)' if self.replace else ''
        return f"{self.kind.value} {self.key!r}{suffix}"


@dataclass
class ConvergeResult:
    """Outcome of a convergence run."""
    collection: str
    applied: list[Step] = field(default_factory=list)
    tolerated: list[tuple[Step, str]] = field(default_factory=list)
    duration: float = 0.0

    @property
    def changed(self) -> bool:
        return bool(self.applied)

    @property
    def success(self) -> bool:
        return not self.tolerated


@dataclass
class ResourceConverger(Generic[K, V]):
    """Plans and applies changes to one keyed collection of an order.

    Attributes:
        name: Collection name for logs and errors (e.g. 'buckets')
        order: Order owning the collection
        read_current: Reads the current collection from a resynced order
        apply_create: Dispatches the create action for (order, key, desired)
        apply_update: Dispatches the update action for (order, key, desired)
        apply_delete: Dispatches the delete action for (order, key, current)
        poll_interval: Settle-wait interval after each step
        equal: Equality of desired vs current entries (default: ==)
        identity_changed: True when desired and current differ in an
            identity field that cannot be updated in place
        validate: Raises ValidationError for invalid desired collections
        name_rule: Naming rule every desired key must satisfy
        tolerate: Step kinds whose action failures are downgraded to warnings
        settle_kwargs: Extra wait_until_settled arguments (timeout, cancel...)
    """
    name: str
    order: Order
    read_current: Callable[[Order], Mapping[K, V]]
    apply_create: ApplyFn
    apply_update: ApplyFn
    apply_delete: ApplyFn
    poll_interval: float = 10.0
    equal: Optional[Callable[[V, V], bool]] = None
    identity_changed: Optional[Callable[[V, V], bool]] = None
    validate: Optional[Callable[[Mapping[K, V]], None]] = None
    name_rule: Optional[NameRule] = None
    tolerate: frozenset = frozenset()
    settle_kwargs: dict = field(default_factory=dict)

    def check(self, desired: Mapping[K, V]) -> None:
        """Run local validation on the desired collection.

        Raises:
            ValidationError: On the first rule violated; no network call is made
        """
        if self.name_rule is not None:
            validate_names(desired.keys(), self.name_rule)
        if self.validate is not None:
            self.validate(desired)

    def current(self) -> Mapping[K, V]:
        """Resync the order and read the current collection."""
        self.order.resync()
        return self.read_current(self.order)

    def steps(self, desired: Mapping[K, V], current: Mapping[K, V]) -> list[Step]:
        """Order the diff into remote calls: deletes, creates, updates."""
        changes: ReconcileSet = diff(desired, current, self.equal)

        replaced = []
        updates = []
        for key in changes.to_update:
            if self.identity_changed is not None and self.identity_changed(desired[key], current[key]):
                replaced.append(key)
            else:
                updates.append(key)

        plan = [Step(StepKind.DELETE, key, current[key]) for key in changes.to_delete]
        plan += [Step(StepKind.DELETE, key, current[key], replace=True) for key in replaced]
        plan += [Step(StepKind.CREATE, key, desired[key]) for key in changes.to_create]
        plan += [Step(StepKind.CREATE, key, desired[key], replace=True) for key in replaced]
        plan += [Step(StepKind.UPDATE, key, desired[key]) for key in updates]
        return plan

    def plan(self, desired: Mapping[K, V]) -> list[Step]:
        """Validate, resync and return the steps converge would apply."""
        self.check(desired)
        return self.steps(desired, self.current())

    def _apply_fn(self, kind: StepKind) -> ApplyFn:
        return {
            StepKind.DELETE: self.apply_delete,
            StepKind.CREATE: self.apply_create,
            StepKind.UPDATE: self.apply_update,
        }[kind]

    def converge(self, desired: Mapping[K, V]) -> ConvergeResult:
        """Bring the collection to the desired state.

        Returns:
            ConvergeResult listing applied and tolerated steps

        Raises:
            ValidationError: Desired collection invalid (nothing applied)
            TransportError: Initial resync failed (nothing applied)
            PartialApplyError: A step failed; earlier steps stay applied
        """
        start = time.time()
        self.check(desired)
        plan = self.steps(desired, self.current())
        result = ConvergeResult(collection=self.name)

        if not plan:
            logger.info(f"[{self.name}] Already converged on order {self.order.id}")
            result.duration = time.time() - start
            return result

        logger.info(f"[{self.name}] Applying {len(plan)} step(s) on order {self.order.id}")
        # Keys whose replace-delete failed: the old entry still exists
        kept = set()
        for step in plan:
            if step.replace and step.kind == StepKind.CREATE and step.key in kept:
                reason = f"old {step.key!r} was not deleted"
                logger.warning(f"[{self.name}] Skipping {step}: {reason}")
                result.tolerated.append((step, reason))
                continue
            logger.info(f"[{self.name}] {step}")
            try:
                self._apply_fn(step.kind)(self.order, step.key, step.spec)
                self.order.wait_until_settled(self.poll_interval, **self.settle_kwargs)
            except (ActionWarning, ActionFailed) as e:
                if step.kind not in self.tolerate:
                    raise PartialApplyError(self.name, result.applied, step, e) from e
                logger.warning(f"[{self.name}] {step} did not succeed, continuing: {e.message}")
                result.tolerated.append((step, e.message))
                if step.replace:
                    kept.add(step.key)
                continue
            except PortalError as e:
                raise PartialApplyError(self.name, result.applied, step, e) from e
            result.applied.append(step)

        result.duration = time.time() - start
        logger.info(
            f"[{self.name}] Converged: {len(result.applied)} applied, "
            f"{len(result.tolerated)} tolerated in {result.duration:.1f}s"
        )
        return result


def items_reader(
    item_type: str,
    key: Callable[[Item], Any],
    spec: Callable[[Item], Any] = lambda item: item.config,
) -> Callable[[Order], dict]:
    """Build a read_current function over items of one type.

    Each item becomes one entry keyed by key(item). An order without items
    of this type has an empty collection.
    """
    def read(order: Order) -> dict:
        try:
            found = order.items.find_by_type(item_type)
        except NotFoundError:
            return {}
        return {key(item): spec(item) for item in found}
    return read


def acl_reader(select: Optional[Callable[[Order], Item]] = None) -> Callable[[Order], dict]:
    """Build a read_current function over an item's ACLs (role -> members).

    Args:
        select: Picks the item carrying the ACLs (default: root item)
    """
    def read(order: Order) -> dict:
        item = select(order) if select is not None else order.root()
        return {role: frozenset(members) for role, members in item.access_map().items()}
    return read
