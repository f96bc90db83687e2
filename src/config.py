"""Portal connection and polling configuration.

Configuration is loaded from a YAML file:
- portal.yaml: endpoint, TLS, timeouts, poll intervals
- secrets.yaml (same directory): tokens, referenced from portal.yaml by key

Resolution order for the config file:
1. $PORTAL_CONFIG (path to a YAML file)
2. $PORTAL_ETC/portal.yaml
3. /usr/local/etc/portal-driver/portal.yaml

Environment overrides (highest priority): PORTAL_ENDPOINT, PORTAL_TOKEN.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from common import DEFAULT_SETTLE_TIMEOUT
from portal.client import PortalClient
from portal.order import Order
from validation import validate_portal_config

logger = logging.getLogger(__name__)

FHS_CONFIG_DIR = Path('/usr/local/etc/portal-driver')

# Poll interval per expected duration class, in seconds
DEFAULT_POLL_INTERVALS = {
    'acl': 5.0,
    'default': 10.0,
    'cluster': 30.0,
}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class PortalConfig:
    """Settings for talking to the portal and waiting on orders.

    Attributes:
        endpoint: Portal API base URL, project scope included
        financial_project_id: Default financial project for new orders
        token: Bearer token (resolved from secrets.yaml or PORTAL_TOKEN)
        verify_tls: Verify the portal certificate
        ca_cert: CA bundle for verification
        request_timeout: Per-request timeout in seconds
        poll_intervals: Seconds between polls per duration class
        settle_timeout: Default settle deadline in seconds (None = unbounded)
        max_attempts: Default max polls per settle wait (None = unbounded)
    """
    endpoint: str = ''
    financial_project_id: str = ''
    token: str = field(default='', repr=False)
    verify_tls: bool = True
    ca_cert: Optional[Path] = None
    request_timeout: float = 30.0
    poll_intervals: dict = field(default_factory=lambda: dict(DEFAULT_POLL_INTERVALS))
    settle_timeout: Optional[float] = DEFAULT_SETTLE_TIMEOUT
    max_attempts: Optional[int] = None
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.ca_cert, str):
            self.ca_cert = Path(self.ca_cert)
        if 'default' not in self.poll_intervals:
            raise ConfigError("poll_intervals must define a 'default' interval")
        for name, value in self.poll_intervals.items():
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"poll_intervals.{name} must be a positive number, got {value!r}")
        if self.settle_timeout is not None and self.settle_timeout <= 0:
            raise ConfigError(f"settle_timeout must be positive, got {self.settle_timeout!r}")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be at least 1, got {self.max_attempts!r}")

    @classmethod
    def from_dict(cls, data: dict, secrets: Optional[dict] = None) -> 'PortalConfig':
        """Create PortalConfig from parsed portal.yaml content."""
        intervals = dict(DEFAULT_POLL_INTERVALS)
        intervals.update(data.get('poll_intervals') or {})

        token = ''
        if token_ref := data.get('token_ref'):
            tokens = (secrets or {}).get('tokens', {})
            if token_ref not in tokens:
                raise ConfigError(f"Token '{token_ref}' not found in secrets.yaml")
            token = tokens[token_ref]

        return cls(
            endpoint=data.get('endpoint', ''),
            financial_project_id=data.get('financial_project_id', ''),
            token=token,
            verify_tls=data.get('verify_tls', True),
            ca_cert=data.get('ca_cert'),
            request_timeout=data.get('request_timeout', 30.0),
            poll_intervals=intervals,
            settle_timeout=data.get('settle_timeout', DEFAULT_SETTLE_TIMEOUT),
            max_attempts=data.get('max_attempts'),
        )

    def apply_env(self) -> None:
        """Apply PORTAL_ENDPOINT / PORTAL_TOKEN overrides."""
        if endpoint := os.environ.get('PORTAL_ENDPOINT'):
            self.endpoint = endpoint
        if token := os.environ.get('PORTAL_TOKEN'):
            self.token = token

    def validate(self) -> list[str]:
        """Return connection setting problems (empty if usable)."""
        return validate_portal_config(self.endpoint, self.token)

    def interval(self, duration_class: str = 'default') -> float:
        """Poll interval for a duration class, falling back to 'default'."""
        return float(self.poll_intervals.get(duration_class, self.poll_intervals['default']))

    def client(self) -> PortalClient:
        """Build a PortalClient from this configuration.

        Raises:
            ConfigError: If the endpoint is missing
        """
        if not self.endpoint:
            raise ConfigError("Portal endpoint not configured")
        return PortalClient(
            endpoint=self.endpoint,
            token=self.token or None,
            verify_tls=self.verify_tls,
            ca_cert=self.ca_cert,
            timeout=self.request_timeout,
        )

    def open_order(self, order_id: str, client=None) -> Order:
        """Open an existing order with this configuration's settle bounds."""
        return Order(
            client or self.client(),
            order_id,
            default_timeout=self.settle_timeout,
            default_max_attempts=self.max_attempts,
        )


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def get_config_file() -> Path:
    """Discover portal.yaml.

    Raises:
        ConfigError: If no config file is found
    """
    if env_path := os.environ.get('PORTAL_CONFIG'):
        path = Path(env_path)
        if path.is_file():
            return path
        raise ConfigError(f"PORTAL_CONFIG={env_path} does not exist")

    if env_dir := os.environ.get('PORTAL_ETC'):
        path = Path(env_dir) / 'portal.yaml'
        if path.is_file():
            return path
        raise ConfigError(f"PORTAL_ETC={env_dir} has no portal.yaml")

    fhs_path = FHS_CONFIG_DIR / 'portal.yaml'
    if fhs_path.is_file():
        return fhs_path

    raise ConfigError(
        "portal.yaml not found. "
        "Set PORTAL_CONFIG or PORTAL_ETC, or install it under /usr/local/etc/portal-driver/."
    )


def load_config(path: Optional[Path] = None) -> PortalConfig:
    """Load portal configuration.

    Args:
        path: Explicit portal.yaml path; discovered when omitted

    Returns:
        PortalConfig with secrets resolved and environment overrides applied
    """
    config_file = Path(path) if path else get_config_file()
    if not config_file.is_file():
        raise ConfigError(f"Config file not found: {config_file}")

    data = _parse_yaml(config_file)
    secrets_file = config_file.parent / 'secrets.yaml'
    secrets = _parse_yaml(secrets_file) if secrets_file.exists() else None

    config = PortalConfig.from_dict(data, secrets)
    config.config_file = config_file
    config.apply_env()
    logger.debug(f"Loaded portal config from {config_file}")
    return config
