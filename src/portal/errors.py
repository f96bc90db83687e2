"""Exception taxonomy for portal order operations.

Every error carries a short code and a message:
- E4xx: local problems (validation, lookups, preconditions)
- E5xx: remote problems (transport, terminal unsuccessful outcomes)
"""

from typing import Any, Optional


class PortalError(Exception):
    """Base exception for portal order errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class TransportError(PortalError):
    """Network, HTTP or decode failure talking to the portal.

    Never retried by the order engine.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__("E501", message)


class PreconditionError(PortalError):
    """Item is not in a state that allows the requested action."""

    def __init__(self, item_id: str, expected: str, actual: str):
        self.item_id = item_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            "E409",
            f"Item {item_id} is in state '{actual}', expected '{expected}'"
        )


class ValidationError(PortalError):
    """Local pre-flight check failed; nothing was sent to the portal."""

    def __init__(self, message: str):
        super().__init__("E400", message)


class NotFoundError(PortalError):
    """Item lookup matched nothing."""

    def __init__(self, message: str):
        super().__init__("E404", message)


class AmbiguousError(PortalError):
    """Item lookup expected exactly one match and found several."""

    def __init__(self, message: str, count: int):
        self.count = count
        super().__init__("E300", f"{message} ({count} matches)")


class RemoteOutcomeError(PortalError):
    """Order or action reached a terminal but unsuccessful state."""

    def __init__(self, code: str, order_id: str, status: str, message: str):
        self.order_id = order_id
        self.status = status
        super().__init__(code, message)


class OrderFailed(RemoteOutcomeError):
    """Order settled in a status other than success/deprovisioned."""

    def __init__(self, order_id: str, status: str):
        super().__init__("E520", order_id, status, f"Order {order_id} settled with status '{status}'")


class ActionWarning(RemoteOutcomeError):
    """Last action finished with 'warning'; treated as a failure."""

    def __init__(self, order_id: str, action_id: str):
        self.action_id = action_id
        super().__init__(
            "E521", order_id, "warning",
            f"Action {action_id} on order {order_id} finished with warning"
        )


class ActionFailed(RemoteOutcomeError):
    """Last action finished unsuccessfully.

    Attributes:
        output: Diagnostic output fetched from the action history (may be empty)
    """

    def __init__(self, order_id: str, action_id: str, status: str, output: str = ''):
        self.action_id = action_id
        self.output = output
        message = f"Action {action_id} on order {order_id} finished with status '{status}'"
        if output:
            message += f"\n{output}"
        super().__init__("E522", order_id, status, message)


class SettleTimeoutError(PortalError):
    """Polling bound exhausted before the order settled."""

    def __init__(self, order_id: str, phase: str, bound: str):
        self.order_id = order_id
        self.phase = phase
        super().__init__("E504", f"Order {order_id} did not settle ({phase}) within {bound}")


class SettleCancelledError(PortalError):
    """Cancel signal was set while waiting for an order to settle."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("E499", f"Waiting for order {order_id} was cancelled")


class PartialApplyError(PortalError):
    """A convergence batch stopped part way through.

    Steps already applied stay applied; re-running convergence finishes the
    remaining work.

    Attributes:
        applied: Steps that completed before the failure
        failed: The step that raised
        cause: The underlying error
    """

    def __init__(self, collection: str, applied: list, failed: Any, cause: Exception):
        self.collection = collection
        self.applied = list(applied)
        self.failed = failed
        self.cause = cause
        super().__init__(
            "E530",
            f"Converging {collection} stopped at {failed} after "
            f"{len(self.applied)} applied step(s): {cause}"
        )
