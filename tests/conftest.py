"""Shared pytest fixtures for portal-driver tests."""

import copy
import os
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


def pytest_configure(config):
    config.addinivalue_line("markers", "requires_portal: needs a reachable portal (PORTAL_ENDPOINT)")


def pytest_collection_modifyitems(config, items):
    """Skip tests marked with requires_portal when no portal is configured."""
    if os.environ.get('PORTAL_ENDPOINT') and os.environ.get('PORTAL_TOKEN'):
        return
    skip_marker = pytest.mark.skip(reason="requires portal (PORTAL_ENDPOINT and PORTAL_TOKEN)")
    for item in items:
        if "requires_portal" in item.keywords:
            item.add_marker(skip_marker)


def item_json(item_id, item_type, parent='', state='on', config=None, acls=None):
    """Build one item in the portal's envelope format."""
    return {
        'item_id': item_id,
        'type': item_type,
        'data': {
            'parent': parent,
            'state': state,
            'config': config or {},
            'acls': acls or [],
        },
    }


def order_json(status='success', action_status='success', items=None, order_id='order-1', action_id='act-1',
               created_at='2024-03-15T10:20:30.123456Z'):
    """Build an order response as returned by GET /orders/{id}."""
    return {
        'id': order_id,
        'status': status,
        'created_at': created_at,
        'last_action': {'id': action_id, 'status': action_status},
        'data': items if items is not None else [item_json('root', 'cluster')],
    }


class ScriptedClient:
    """OrderClient replaying a fixed sequence of get_order responses.

    Once the script is exhausted the last response repeats.
    """

    def __init__(self, responses=None, output='', output_error=None):
        self.responses = list(responses or [])
        self.output = output
        self.output_error = output_error
        self.created = []
        self.actions = []
        self.updates = []
        self.gets = 0
        self.output_requests = []
        self._last = None

    def create_order(self, payload):
        self.created.append(payload)
        return {'id': 'order-1', 'status': 'pending', 'data': []}

    def get_order(self, order_id):
        self.gets += 1
        if self.responses:
            self._last = self.responses.pop(0)
        if isinstance(self._last, Exception):
            raise self._last
        return copy.deepcopy(self._last)

    def update_order(self, order_id, payload):
        self.updates.append(('order', payload))

    def update_fin_projects(self, order_id, payload):
        self.updates.append(('order_fin_projects', payload))

    def run_action(self, order_id, action, payload):
        self.actions.append((action, payload))

    def get_action_output(self, order_id, action_id):
        self.output_requests.append(action_id)
        if self.output_error is not None:
            raise self.output_error
        return self.output


class BucketPortal:
    """Stateful OrderClient simulating an S3 order with bucket and user items.

    Actions mutate the item list immediately; the next get_order reports
    the order settled. `fail` maps an action name to the last-action status
    it should end with (e.g. {'delete_bucket': 'error'}).
    """

    def __init__(self, buckets=None, users=None, fail=None):
        self.buckets = {name: dict(spec) for name, spec in (buckets or {}).items()}
        self.users = {name: dict(spec) for name, spec in (users or {}).items()}
        self.fail = dict(fail or {})
        self.actions = []
        self.gets = 0
        self._action_seq = 0
        self._action_status = 'success'

    def _items(self):
        items = [item_json('tenant', 'cluster', state='on')]
        for name, spec in self.buckets.items():
            items.append(item_json(f'bucket-{name}', 's3_bucket', parent='tenant',
                                   config={'name': name, **spec}))
        for name, spec in self.users.items():
            items.append(item_json(f'user-{name}', 's3_user', parent='tenant',
                                   config={'user_name': name, **spec}))
        return items

    def create_order(self, payload):
        return {'id': 's3-order', 'status': 'pending', 'data': []}

    def get_order(self, order_id):
        self.gets += 1
        return order_json(
            items=self._items(),
            order_id=order_id,
            action_status=self._action_status,
            action_id=f'act-{self._action_seq}',
        )

    def run_action(self, order_id, action, payload):
        self.actions.append((action, payload))
        self._action_seq += 1
        attrs = payload['order']['attrs']
        if action in self.fail:
            self._action_status = self.fail[action]
            return
        self._action_status = 'success'
        if action == 'create_bucket':
            self.buckets[attrs['name']] = {'max_size_gb': attrs['max_size_gb'], 'versioning': attrs['versioning']}
        elif action == 'change_bucket':
            self.buckets[attrs['name']].update(max_size_gb=attrs['max_size_gb'], versioning=attrs['versioning'])
        elif action == 'delete_bucket':
            del self.buckets[attrs['name']]
        elif action == 'create_user':
            self.users[attrs['user_name']] = {'access_key': attrs['access_key']}
        elif action == 'update_user':
            pass
        elif action == 'delete_user':
            del self.users[attrs['user_name']]

    def get_action_output(self, order_id, action_id):
        return f'output of {action_id}'

    def action_names(self):
        return [name for name, _ in self.actions]


@pytest.fixture
def no_sleep():
    """Sleep replacement recording requested intervals."""
    calls = []

    def sleep(seconds):
        calls.append(seconds)

    sleep.calls = calls
    return sleep


@pytest.fixture
def portal_config_dir(tmp_path):
    """Create a temporary config directory with portal.yaml and secrets.yaml."""
    (tmp_path / 'portal.yaml').write_text("""
endpoint: https://portal.example.com/order-service/api/v1/projects/proj-dev
financial_project_id: fin-001
token_ref: default
verify_tls: false
request_timeout: 15
poll_intervals:
  acl: 2
  cluster: 45
settle_timeout: 600
max_attempts: 120
""")

    (tmp_path / 'secrets.yaml').write_text("""
tokens:
  default: "secret-token"
  other: "other-token"
""")

    return tmp_path
