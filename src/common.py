"""Common utilities and types for portal order automation."""

import logging
import sys
import threading
import time
from dataclasses import dataclass
from typing import Optional

# Marks every mutating payload as managed by this tool
PROVENANCE_ATTR = 'created_with_opentofu'

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'

# Settle wait bound in seconds when none is configured
DEFAULT_SETTLE_TIMEOUT = 3600.0


@dataclass
class ActionResult:
    """Result of a remote action once it has settled."""
    success: bool
    message: str = ''
    duration: float = 0.0
    status: str = ''


def with_provenance(attrs: Optional[dict] = None) -> dict:
    """Return a copy of attrs carrying the tool-managed provenance tag."""
    tagged = dict(attrs or {})
    tagged[PROVENANCE_ATTR] = True
    return tagged


class Deadline:
    """Bound on a polling loop by wall-clock time and/or attempt count.

    Either limit may be None, in which case it does not apply. A Deadline
    with both limits None never expires.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        clock=time.monotonic,
    ):
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._clock = clock
        self._start = clock()
        self.attempts = 0

    def tick(self) -> None:
        """Record one polling attempt."""
        self.attempts += 1

    @property
    def elapsed(self) -> float:
        return self._clock() - self._start

    def expired(self) -> bool:
        if self.max_attempts is not None and self.attempts >= self.max_attempts:
            return True
        if self.timeout is not None and self.elapsed >= self.timeout:
            return True
        return False

    def describe(self) -> str:
        parts = []
        if self.timeout is not None:
            parts.append(f'{self.timeout}s')
        if self.max_attempts is not None:
            parts.append(f'{self.max_attempts} attempts')
        return ' / '.join(parts) or 'unbounded'


def is_cancelled(cancel: Optional[threading.Event]) -> bool:
    """True when a cancel signal was supplied and has been set."""
    return cancel is not None and cancel.is_set()


def setup_logging(verbose: bool = False) -> None:
    """Install a stderr handler on the root logger.

    Args:
        verbose: Log at DEBUG instead of INFO
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
