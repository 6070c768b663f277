"""Trigger authority gate: who may execute scheduled payments."""

from __future__ import annotations

import logging
from typing import Iterable

from .errors import UnauthorizedError
from .models import normalize_address


logger = logging.getLogger(__name__)


class TriggerAuthorityGate:
    """Static allow-list of principals permitted to call ``trigger``.

    An empty allow-list denies every caller.
    """

    def __init__(self, authorities: Iterable[str] = ()):
        self._authorities = frozenset(normalize_address(a) for a in authorities)

    @property
    def authorities(self) -> frozenset[str]:
        return self._authorities

    def is_authorized(self, caller: str) -> bool:
        try:
            return normalize_address(caller) in self._authorities
        except ValueError:
            return False

    def check(self, caller: str) -> str:
        """Return the normalized caller or raise UnauthorizedError."""
        if not self.is_authorized(caller):
            logger.warning("Rejected trigger from unauthorized caller %s", caller)
            raise UnauthorizedError(f"{caller} is not a configured trigger authority")
        return normalize_address(caller)
