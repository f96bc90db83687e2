"""HTTP client for the portal order API.

Calls covering the order lifecycle:
- POST  /orders                                          create
- GET   /orders/{id}?include=last_action                 resync
- PATCH /orders/{id}                                     order fields (label)
- PATCH /orders/{id}/order_fin_projects                  financial project
- PATCH /orders/{id}/actions/{action}                    invoke action
- GET   /orders/{id}/actions/history/{action_id}/output  diagnostics

Every failure (connection, timeout, HTTP status, undecodable body) is
raised as TransportError. Nothing is retried here.
"""

import logging
from pathlib import Path
from typing import Optional, Protocol, Union, runtime_checkable

import requests
import urllib3

from portal.errors import TransportError

logger = logging.getLogger(__name__)


@runtime_checkable
class OrderClient(Protocol):
    """Remote order service consumed by Order."""

    def create_order(self, payload: dict) -> dict:
        """Create an order and return its JSON."""

    def get_order(self, order_id: str) -> dict:
        """Fetch an order with its last action."""

    def update_order(self, order_id: str, payload: dict) -> None:
        """Change order-level fields (label)."""

    def update_fin_projects(self, order_id: str, payload: dict) -> None:
        """Move the order to another financial project."""

    def run_action(self, order_id: str, action: str, payload: dict) -> None:
        """Invoke a named action on an order."""

    def get_action_output(self, order_id: str, action_id: str) -> str:
        """Fetch diagnostic output of a finished action."""


class PortalClient:
    """requests-based OrderClient for the portal REST API."""

    def __init__(
        self,
        endpoint: str,
        token: Optional[str] = None,
        verify_tls: bool = True,
        ca_cert: Optional[Path] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        """Initialize portal client.

        Args:
            endpoint: Portal API base URL (e.g., https://portal.example.com/order-service/api/v1/projects/my-project)
            token: Bearer token (if required)
            verify_tls: Verify the portal certificate
            ca_cert: CA bundle used for verification
            timeout: Per-request timeout in seconds
            session: Preconfigured session (tests, connection pooling)
        """
        self.endpoint = endpoint.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})
        if token:
            self.session.headers['Authorization'] = f'Bearer {token}'

        self.verify: Union[bool, str] = True
        if not verify_tls:
            # Self-signed portal certs
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self.verify = False
        elif ca_cert:
            self.verify = str(ca_cert)

    def _orders_url(self, *parts: str) -> str:
        return '/'.join([self.endpoint, 'orders', *parts])

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        logger.debug("%s %s", method, url)
        try:
            response = self.session.request(
                method, url, timeout=self.timeout, verify=self.verify, **kwargs
            )
        except requests.exceptions.Timeout as e:
            raise TransportError(f"Timeout calling {method} {url}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransportError(f"Cannot connect to portal: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Request {method} {url} failed: {e}") from e

        if response.status_code >= 400:
            raise TransportError(
                f"{method} {url} returned {response.status_code}: {self._error_message(response)}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        """Extract the portal's error message from an error response."""
        try:
            data = response.json()
        except ValueError:
            return response.text[:200] or 'no body'
        if isinstance(data, dict):
            error = data.get('error')
            if isinstance(error, dict):
                return error.get('message', str(error))
            if error:
                return str(error)
            if 'message' in data:
                return str(data['message'])
        return str(data)[:200]

    @staticmethod
    def _json(response: requests.Response) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON response: {e}") from e
        if not isinstance(data, dict):
            raise TransportError(f"Unexpected response type: {type(data).__name__}")
        return data

    def create_order(self, payload: dict) -> dict:
        """POST a new order.

        The portal answers with a list of created orders; the first one is
        returned.
        """
        response = self._request('POST', self._orders_url(), json=payload)
        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON response: {e}") from e
        if isinstance(data, list):
            if not data:
                raise TransportError("Portal returned no order for create request")
            data = data[0]
        if not isinstance(data, dict) or 'id' not in data:
            raise TransportError("Create order response has no order id")
        return data

    def get_order(self, order_id: str) -> dict:
        response = self._request('GET', self._orders_url(order_id), params={'include': 'last_action'})
        return self._json(response)

    def update_order(self, order_id: str, payload: dict) -> None:
        self._request('PATCH', self._orders_url(order_id), json=payload)

    def update_fin_projects(self, order_id: str, payload: dict) -> None:
        self._request('PATCH', self._orders_url(order_id, 'order_fin_projects'), json=payload)

    def run_action(self, order_id: str, action: str, payload: dict) -> None:
        # Body is ignored: only the following resync decides the outcome
        self._request('PATCH', self._orders_url(order_id, 'actions', action), json=payload)

    def get_action_output(self, order_id: str, action_id: str) -> str:
        response = self._request(
            'GET', self._orders_url(order_id, 'actions', 'history', action_id, 'output')
        )
        try:
            data = response.json()
        except ValueError:
            return response.text
        if isinstance(data, dict):
            return str(data.get('data') or data.get('output') or '')
        if isinstance(data, list):
            return '\n'.join(str(line.get('data', line)) if isinstance(line, dict) else str(line) for line in data)
        return str(data)
