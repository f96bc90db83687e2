"""Item tree for portal orders.

An order's items arrive from the portal as a flat list where each item names
its parent. ItemTree turns that list into an arena (list of items) with an
id index and a parent->children index, built once per resync.

Item configs are decoded once, at construction, into a closed set of typed
dataclasses keyed by item type. Unknown types keep their raw payload in
GenericConfig.
"""

from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Union

from portal.errors import AmbiguousError, NotFoundError


@dataclass
class AccessACL:
    """Access rule attached to an item: a role and the groups holding it."""
    role: str
    members: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> 'AccessACL':
        return cls(role=data.get('role', ''), members=list(data.get('members') or []))


@dataclass
class VmConfig:
    """Virtual machine item (node of a cluster or standalone VM)."""
    hostname: str = ''
    node_roles: list[str] = field(default_factory=list)
    flavor: dict = field(default_factory=dict)
    extra_mounts: list[dict] = field(default_factory=list)
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict) -> 'VmConfig':
        return cls(
            hostname=data.get('hostname', ''),
            node_roles=list(data.get('node_roles') or []),
            flavor=dict(data.get('flavor') or {}),
            extra_mounts=list(data.get('extra_mounts') or []),
            raw=data,
        )


@dataclass
class AppConfig:
    """Application item (postgresql, redis, nginx...)."""
    version: str = ''
    connection_url: str = ''
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict) -> 'AppConfig':
        return cls(
            version=str(data.get('version', '')),
            connection_url=data.get('connection_url', ''),
            raw=data,
        )


@dataclass
class ClusterConfig:
    """Cluster item (kafka, rabbitmq, etcd...).

    Nested collections (topics, ACLs, quotas, vhosts) stay in raw and are
    read by the converger that owns them.
    """
    cluster_name: str = ''
    version: str = ''
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict) -> 'ClusterConfig':
        return cls(
            cluster_name=data.get('cluster_name') or data.get('full_cluster_name', ''),
            version=str(data.get('version', '')),
            raw=data,
        )


@dataclass
class DbConfig:
    """Database inside an application item."""
    db_name: str = ''
    db_owner: str = ''
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict) -> 'DbConfig':
        return cls(
            db_name=data.get('db_name', ''),
            db_owner=data.get('db_owner', ''),
            raw=data,
        )


@dataclass
class BucketConfig:
    """S3 bucket."""
    name: str = ''
    max_size_gb: int = 0
    versioning: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> 'BucketConfig':
        return cls(
            name=data.get('name', ''),
            max_size_gb=int(data.get('max_size_gb') or 0),
            versioning=bool(data.get('versioning', False)),
        )


@dataclass
class S3UserConfig:
    """S3 tenant user. The secret key is never returned by the portal."""
    user_name: str = ''
    access_key: str = ''

    @classmethod
    def from_dict(cls, data: dict) -> 'S3UserConfig':
        return cls(
            user_name=data.get('user_name', ''),
            access_key=data.get('access_key', ''),
        )


@dataclass
class GslbConfig:
    """GSLB application item."""
    dns_zone: str = ''
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict) -> 'GslbConfig':
        return cls(dns_zone=data.get('dns_zone', ''), raw=data)


@dataclass
class ProjectConfig:
    """Kubernetes/container project item."""
    project_name: str = ''
    quota: dict = field(default_factory=dict)
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict) -> 'ProjectConfig':
        return cls(
            project_name=data.get('project_name') or data.get('name', ''),
            quota=dict(data.get('quota') or {}),
            raw=data,
        )


@dataclass
class GenericConfig:
    """Config for item types without a dedicated decoder."""
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> 'GenericConfig':
        return cls(raw=data)


ItemConfig = Union[
    VmConfig, AppConfig, ClusterConfig, DbConfig, BucketConfig,
    S3UserConfig, GslbConfig, ProjectConfig, GenericConfig,
]

CONFIG_TYPES: dict[str, type] = {
    'vm': VmConfig,
    'app': AppConfig,
    'cluster': ClusterConfig,
    'db': DbConfig,
    's3_bucket': BucketConfig,
    's3_user': S3UserConfig,
    'gslb': GslbConfig,
    'project': ProjectConfig,
}


def decode_config(item_type: str, data: Optional[dict]) -> ItemConfig:
    """Decode an item's config payload into its typed dataclass."""
    config_cls = CONFIG_TYPES.get(item_type, GenericConfig)
    return config_cls.from_dict(data or {})


@dataclass
class Item:
    """A node in an order's item tree.

    Attributes:
        id: Item identifier
        type: Item type (vm, app, cluster, db, s3_bucket, ...)
        parent_id: Parent item id, '' for the root
        state: Item state (on, off, deleted, ...)
        config: Typed config decoded from the portal payload
        acls: Access rules attached to the item
    """
    id: str
    type: str
    parent_id: str = ''
    state: str = ''
    config: ItemConfig = field(default_factory=GenericConfig)
    acls: list[AccessACL] = field(default_factory=list)

    @property
    def is_root(self) -> bool:
        return not self.parent_id

    def access_map(self) -> dict[str, list[str]]:
        """Merge ACL entries into role -> unique members, in portal order."""
        access: dict[str, list[str]] = {}
        for acl in self.acls:
            members = access.setdefault(acl.role, [])
            for member in acl.members:
                if member not in members:
                    members.append(member)
        return access

    @classmethod
    def from_dict(cls, data: dict) -> 'Item':
        """Create Item from portal JSON.

        Accepts both the portal envelope ({"item_id", "type", "data":
        {"parent", "state", "config", "acls"}}) and a flat shape ({"id",
        "parent_id", "state", "config", "acls"}).
        """
        body = data.get('data') if isinstance(data.get('data'), dict) else data
        item_type = data.get('type', '')
        parent = body.get('parent') or data.get('parent') or data.get('parent_id')
        return cls(
            id=str(data.get('item_id') or data.get('id') or ''),
            type=item_type,
            parent_id=str(parent or ''),
            state=body.get('state', ''),
            config=decode_config(item_type, body.get('config')),
            acls=[AccessACL.from_dict(a) for a in body.get('acls') or []],
        )


class ItemTree:
    """Arena of an order's items with id and parent indexes.

    Lookup policy: every lookup raises NotFoundError on zero matches;
    find_root and the find_one_* accessors raise AmbiguousError when more
    than one item matches.
    """

    def __init__(self, items: Optional[list[Item]] = None):
        self._items: list[Item] = list(items or [])
        self._index: dict[str, int] = {}
        self._children: dict[str, list[int]] = {}
        for i, item in enumerate(self._items):
            self._index[item.id] = i
            self._children.setdefault(item.parent_id, []).append(i)

    @classmethod
    def from_list(cls, data: list[dict]) -> 'ItemTree':
        """Build a tree from the portal's item list."""
        return cls([Item.from_dict(d) for d in data or []])

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Item]:
        return iter(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def get(self, item_id: str) -> Item:
        """Get an item by id.

        Raises:
            NotFoundError: If no item has this id
        """
        if item_id not in self._index:
            raise NotFoundError(f"Item {item_id} not found")
        return self._items[self._index[item_id]]

    def roots(self) -> list[Item]:
        return [self._items[i] for i in self._children.get('', [])]

    def find_root(self) -> Item:
        """Return the single item without a parent.

        Raises:
            NotFoundError: If the tree is empty or has no root
            AmbiguousError: If several items have no parent
        """
        if not self._items:
            raise NotFoundError("Order has no items")
        return self._exactly_one(self.roots(), "root item")

    def children_of(self, item_id: str) -> list[Item]:
        """Return direct children of an item (empty list for leaves)."""
        return [self._items[i] for i in self._children.get(item_id, [])]

    def find_by_type(self, item_type: str) -> list[Item]:
        """Return all items of a type.

        Raises:
            NotFoundError: If no item has this type
        """
        found = [item for item in self._items if item.type == item_type]
        if not found:
            raise NotFoundError(f"No items of type '{item_type}'")
        return found

    def find_one_by_type(self, item_type: str) -> Item:
        """Return the single item of a type.

        Raises:
            NotFoundError: If no item has this type
            AmbiguousError: If several items have this type
        """
        return self._exactly_one(self.find_by_type(item_type), f"item of type '{item_type}'")

    def find_by_role(self, predicate: Callable[[ItemConfig], bool], item_type: Optional[str] = None) -> list[Item]:
        """Return items whose typed config satisfies predicate.

        Args:
            predicate: Called with each item's config
            item_type: Restrict the search to one item type

        Raises:
            NotFoundError: If nothing matches
        """
        found = [
            item for item in self._items
            if (item_type is None or item.type == item_type) and predicate(item.config)
        ]
        if not found:
            raise NotFoundError("No items match the role predicate")
        return found

    def find_one_by_role(self, predicate: Callable[[ItemConfig], bool], item_type: Optional[str] = None) -> Item:
        """Return the single item whose config satisfies predicate."""
        return self._exactly_one(self.find_by_role(predicate, item_type), "item matching role predicate")

    def find_vms_by_role(self, role: str) -> list[Item]:
        """Return VM items carrying a node role (e.g. 'kafka', 'rabbitmq')."""
        return self.find_by_role(
            lambda cfg: isinstance(cfg, VmConfig) and role in cfg.node_roles,
            item_type='vm',
        )

    @staticmethod
    def _exactly_one(found: list[Item], what: str) -> Item:
        if not found:
            raise NotFoundError(f"No {what}")
        if len(found) > 1:
            raise AmbiguousError(f"Expected one {what}", len(found))
        return found[0]
