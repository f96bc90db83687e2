"""Set difference between a desired and a current keyed collection.

Pure functions, no I/O. Key order in the results is deterministic: keys
from desired keep desired's insertion order, keys only in current keep
current's.
"""

from dataclasses import dataclass
from typing import Callable, Generic, Hashable, Iterable, Mapping, Optional, TypeVar

K = TypeVar('K', bound=Hashable)
V = TypeVar('V')


@dataclass(frozen=True)
class ReconcileSet(Generic[K]):
    """Keys to create, update and delete. The three tuples are disjoint."""
    to_create: tuple = ()
    to_update: tuple = ()
    to_delete: tuple = ()

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)

    def keys(self) -> set:
        return set(self.to_create) | set(self.to_update) | set(self.to_delete)

    def summary(self) -> str:
        return (f"{len(self.to_create)} to create, {len(self.to_update)} to update, "
                f"{len(self.to_delete)} to delete")


def _default_equal(desired, current) -> bool:
    return desired == current


def diff(
    desired: Mapping[K, V],
    current: Mapping[K, V],
    equal: Optional[Callable[[V, V], bool]] = None,
) -> ReconcileSet:
    """Compute the keys to create, update and delete.

    Args:
        desired: Declared collection keyed by identity (bucket name, user name...)
        current: Observed collection with the same keys
        equal: Equality predicate for entries present in both (default: ==)

    Returns:
        ReconcileSet of keys
    """
    equal = equal or _default_equal
    to_create = []
    to_update = []
    for key, spec in desired.items():
        if key not in current:
            to_create.append(key)
        elif not equal(spec, current[key]):
            to_update.append(key)
    to_delete = [key for key in current if key not in desired]
    return ReconcileSet(tuple(to_create), tuple(to_update), tuple(to_delete))


def compare_sets(old: Iterable[K], new: Iterable[K]) -> tuple[list[K], list[K]]:
    """Membership diff for plain collections (vhost names, ACL groups...).

    Duplicates are ignored; order follows first appearance.

    Returns:
        (to_add, to_remove)
    """
    old_list = list(dict.fromkeys(old))
    new_list = list(dict.fromkeys(new))
    old_set = set(old_list)
    new_set = set(new_list)
    to_add = [item for item in new_list if item not in old_set]
    to_remove = [item for item in old_list if item not in new_set]
    return to_add, to_remove
