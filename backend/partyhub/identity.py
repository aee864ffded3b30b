"""Identity provider boundary.

The engine treats the provider's participant id as an opaque key. Real
deployments plug in an OAuth-style provider; ``StaticIdentityProvider``
serves development and tests from a configured code table.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from flask import current_app

from partyhub.errors import ValidationError


@dataclass(frozen=True)
class Identity:
    external_id: str
    display_name: str
    avatar_url: Optional[str] = None


class IdentityProvider:
    def exchange(self, code: str) -> Identity:
        """Trade an external auth code for a stable identity."""
        raise NotImplementedError


class StaticIdentityProvider(IdentityProvider):
    def __init__(self, codes: Dict[str, Dict[str, str]]):
        self._codes = dict(codes or {})

    def exchange(self, code: str) -> Identity:
        entry = self._codes.get(code)
        if not entry or not entry.get('external_id'):
            raise ValidationError('Unknown auth code')
        return Identity(
            external_id=str(entry['external_id']),
            display_name=entry.get('display_name') or str(entry['external_id']),
            avatar_url=entry.get('avatar_url'),
        )


def get_identity_provider() -> IdentityProvider:
    return current_app.extensions['identity_provider']
