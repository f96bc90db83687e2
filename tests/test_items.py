#!/usr/bin/env python3
"""Tests for portal/items.py - item decoding and tree lookups.

Tests verify:
1. Typed config decoding per item type
2. Item decoding from the portal envelope (parent inside 'data') and flat shape
3. Root lookup cardinality on single and multi-item trees
4. Id, type, role and children lookups
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import item_json
from portal.errors import AmbiguousError, NotFoundError
from portal.items import (
    AccessACL,
    BucketConfig,
    ClusterConfig,
    GenericConfig,
    Item,
    ItemTree,
    S3UserConfig,
    VmConfig,
    decode_config,
)


def kafka_tree():
    return ItemTree.from_list([
        item_json('root', 'cluster', config={'cluster_name': 'kafka-01', 'version': '3.6'}),
        item_json('vm1', 'vm', parent='root', config={'hostname': 'kfk1', 'node_roles': ['kafka']}),
        item_json('vm2', 'vm', parent='root', config={'hostname': 'kfk2', 'node_roles': ['kafka']}),
        item_json('vm3', 'vm', parent='root', config={'hostname': 'zk1', 'node_roles': ['zookeeper']}),
    ])


class TestDecodeConfig:
    """Tests for typed config decoding."""

    def test_vm(self):
        cfg = decode_config('vm', {'hostname': 'h1', 'node_roles': ['kafka'], 'flavor': {'cores': 2}})
        assert isinstance(cfg, VmConfig)
        assert cfg.hostname == 'h1'
        assert cfg.node_roles == ['kafka']
        assert cfg.flavor == {'cores': 2}

    def test_bucket(self):
        cfg = decode_config('s3_bucket', {'name': 'b1', 'max_size_gb': '10', 'versioning': True})
        assert cfg == BucketConfig(name='b1', max_size_gb=10, versioning=True)

    def test_s3_user(self):
        cfg = decode_config('s3_user', {'user_name': 'u1', 'access_key': 'AK'})
        assert cfg == S3UserConfig(user_name='u1', access_key='AK')

    def test_cluster_falls_back_to_full_cluster_name(self):
        cfg = decode_config('cluster', {'full_cluster_name': 'rmq-01'})
        assert isinstance(cfg, ClusterConfig)
        assert cfg.cluster_name == 'rmq-01'

    def test_unknown_type_keeps_raw(self):
        cfg = decode_config('tarantool', {'foo': 1})
        assert isinstance(cfg, GenericConfig)
        assert cfg.raw == {'foo': 1}

    def test_missing_config(self):
        cfg = decode_config('vm', None)
        assert cfg == VmConfig()


class TestItem:
    """Tests for Item parsing."""

    def test_from_envelope(self):
        item = Item.from_dict(item_json(
            'i1', 'vm', parent='root', state='off',
            acls=[{'role': 'admin', 'members': ['g1']}],
        ))
        assert item.id == 'i1'
        assert item.parent_id == 'root'
        assert item.state == 'off'
        assert item.acls == [AccessACL(role='admin', members=['g1'])]
        assert not item.is_root

    def test_parent_inside_data(self):
        """The portal nests parent with state/config/acls under 'data'."""
        item = Item.from_dict({
            'item_id': 'vm-7', 'type': 'vm',
            'data': {'parent': 'cl-1', 'state': 'on', 'config': {'hostname': 'h7'}, 'acls': []},
        })
        assert item.parent_id == 'cl-1'
        assert not item.is_root
        assert item.config.hostname == 'h7'

    def test_from_flat_shape(self):
        item = Item.from_dict({
            'id': 'i2', 'type': 's3_bucket', 'parent_id': '',
            'state': 'on', 'config': {'name': 'b'},
        })
        assert item.id == 'i2'
        assert item.is_root
        assert item.config.name == 'b'

    def test_access_map_merges_roles(self):
        item = Item(id='i', type='vm', acls=[
            AccessACL('admin', ['g1', 'g2']),
            AccessACL('user', ['g3']),
            AccessACL('admin', ['g2', 'g4']),
        ])
        assert item.access_map() == {'admin': ['g1', 'g2', 'g4'], 'user': ['g3']}


class TestFindRoot:
    """Root lookup cardinality."""

    def test_empty_tree(self):
        with pytest.raises(NotFoundError):
            ItemTree().find_root()

    def test_single_root(self):
        assert kafka_tree().find_root().id == 'root'

    def test_no_root(self):
        tree = ItemTree.from_list([item_json('a', 'vm', parent='x')])
        with pytest.raises(NotFoundError):
            tree.find_root()

    def test_two_roots_is_ambiguous(self):
        tree = ItemTree.from_list([item_json('a', 'vm'), item_json('b', 'vm')])
        with pytest.raises(AmbiguousError) as exc:
            tree.find_root()
        assert exc.value.count == 2


class TestLookups:
    """Tests for type/role/id lookups."""

    def test_get(self):
        assert kafka_tree().get('vm2').config.hostname == 'kfk2'

    def test_get_missing(self):
        with pytest.raises(NotFoundError):
            kafka_tree().get('nope')

    def test_children_of(self):
        tree = kafka_tree()
        assert [i.id for i in tree.children_of('root')] == ['vm1', 'vm2', 'vm3']
        assert tree.children_of('vm1') == []

    def test_find_by_type(self):
        assert len(kafka_tree().find_by_type('vm')) == 3

    def test_find_by_type_none(self):
        with pytest.raises(NotFoundError):
            kafka_tree().find_by_type('db')

    def test_find_by_type_empty_tree(self):
        with pytest.raises(NotFoundError):
            ItemTree().find_by_type('vm')

    def test_find_one_by_type(self):
        assert kafka_tree().find_one_by_type('cluster').id == 'root'

    def test_find_one_by_type_ambiguous(self):
        with pytest.raises(AmbiguousError):
            kafka_tree().find_one_by_type('vm')

    def test_find_vms_by_role(self):
        found = kafka_tree().find_vms_by_role('kafka')
        assert [i.id for i in found] == ['vm1', 'vm2']

    def test_find_by_role_nothing(self):
        with pytest.raises(NotFoundError):
            kafka_tree().find_vms_by_role('etcd')

    def test_find_one_by_role(self):
        item = kafka_tree().find_one_by_role(
            lambda cfg: isinstance(cfg, VmConfig) and 'zookeeper' in cfg.node_roles
        )
        assert item.id == 'vm3'

    def test_len_and_iter(self):
        tree = kafka_tree()
        assert len(tree) == 4
        assert [i.id for i in tree][0] == 'root'
        assert not ItemTree()


class TestPortalEnvelope:
    """Trees decoded from literal portal responses."""

    def test_multi_item_tree(self):
        tree = ItemTree.from_list([
            {'item_id': 'cl-1', 'type': 'cluster', 'data': {'parent': '', 'state': 'on', 'config': {}}},
            {'item_id': 'vm-1', 'type': 'vm', 'data': {'parent': 'cl-1', 'state': 'on', 'config': {}}},
            {'item_id': 'db-1', 'type': 'db', 'data': {'parent': 'vm-1', 'state': 'on', 'config': {}}},
        ])
        assert tree.find_root().id == 'cl-1'
        assert [i.id for i in tree.children_of('cl-1')] == ['vm-1']
        assert [i.id for i in tree.children_of('vm-1')] == ['db-1']

    def test_missing_parent_is_root(self):
        tree = ItemTree.from_list([
            {'item_id': 'a', 'type': 'cluster', 'data': {'state': 'on'}},
            {'item_id': 'b', 'type': 'vm', 'data': {'parent': 'a', 'state': 'on'}},
        ])
        assert tree.find_root().id == 'a'
