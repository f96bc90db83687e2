"""Pre-flight validation checks for portal operations.

Everything here runs locally, before any call to the portal, so an invalid
desired state never causes a partial mutation.
"""

import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import urlparse

from portal.errors import ValidationError

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Naming rules
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class NameRule:
    """A naming rule for generated or declared entity names.

    Attributes:
        kind: What is being named (for messages)
        pattern: Regex the whole name must match
        description: Human-readable rule shown on failure
        require_letter: Name must contain at least one a-z letter
        forbid_punycode: Reject names starting with 'xn-'
    """
    kind: str
    pattern: str
    description: str
    require_letter: bool = False
    forbid_punycode: bool = False

    def check(self, name: str) -> bool:
        if not re.fullmatch(self.pattern, name):
            return False
        if name.startswith('-'):
            return False
        if self.forbid_punycode and name.lower().startswith('xn-'):
            return False
        if self.require_letter and not re.search('[a-z]', name):
            return False
        return True


BUCKET_NAME = NameRule(
    kind='bucket',
    pattern=r'[a-z0-9-]{3,62}[a-z0-9]',
    description=(
        "4 to 63 characters, at least one letter; lowercase Latin letters, "
        "digits and hyphens (not at the start or end)"
    ),
    require_letter=True,
    forbid_punycode=True,
)

S3_USER_NAME = NameRule(
    kind='S3 user',
    pattern=r'[a-z0-9][a-z0-9-]{0,19}[a-z0-9]',
    description=(
        "at least one letter; letters, digits and hyphens "
        "(not at the start or end)"
    ),
    require_letter=True,
    forbid_punycode=True,
)


def prefixed_rule(env_prefix: str, ris_code: str, kind: str = 'bucket') -> NameRule:
    """Rule for names that must start with '{env_prefix}-{ris_code}-'."""
    prefix = f"{re.escape(env_prefix)}-{re.escape(ris_code)}-"
    return NameRule(
        kind=kind,
        pattern=prefix + r'[a-z0-9][a-z0-9_-]{1,30}[a-z0-9]',
        description=f"must match '{env_prefix}-{ris_code}-<3 to 32 characters>'",
    )


def find_duplicates(names: Iterable[str]) -> list[str]:
    """Return names that appear more than once, in first-seen order."""
    counts = Counter(names)
    return [name for name, count in counts.items() if count > 1]


def validate_names(names: Iterable[str], rule: NameRule) -> None:
    """Check every name against a rule.

    Raises:
        ValidationError: Listing every invalid name
    """
    bad = [name for name in names if not rule.check(name)]
    if bad:
        listed = ', '.join(repr(name) for name in bad)
        raise ValidationError(f"Invalid {rule.kind} name(s) {listed}: {rule.description}")


def validate_unique(names: Iterable[str], kind: str) -> None:
    """Reject duplicated names.

    Raises:
        ValidationError: Listing every duplicated name
    """
    duplicates = find_duplicates(names)
    if duplicates:
        raise ValidationError(f"Duplicate {kind} name(s): {', '.join(duplicates)}")


# -----------------------------------------------------------------------------
# Configuration checks
# -----------------------------------------------------------------------------

def validate_portal_config(endpoint: str, token: str) -> list[str]:
    """Check portal connection settings without contacting the portal.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not endpoint:
        errors.append(
            "Portal endpoint not configured\n"
            "  Set 'endpoint' in portal.yaml or PORTAL_ENDPOINT"
        )
    else:
        parsed = urlparse(endpoint)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            errors.append(
                f"Portal endpoint is not an http(s) URL\n"
                f"  Got: {endpoint}"
            )
        elif parsed.scheme == 'http':
            logger.warning(f"Portal endpoint {endpoint} is not using TLS")

    if not token:
        errors.append(
            "Portal token not found\n"
            "  Set 'token_ref' in portal.yaml (resolved from secrets.yaml) or PORTAL_TOKEN"
        )

    return errors
