"""
Controller and bundle records.

A Controller is the per-user delegate that is allowed to spend from one
funding account. Each Bundle under it is one recurring payment schedule.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Optional

from eth_utils import keccak


# Reserved timestamp: the bundle has never been paid.
NEVER_PAID = 0

UINT64_MAX = 2**64 - 1
# Largest value an SQLite INTEGER column holds.
MAX_STORED_INT = 2**63 - 1

CONTROLLER_SEED = b"controller"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


class BundleState(str, Enum):
    NEVER_PAID = "never_paid"
    PAID = "paid"


def normalize_address(address: str) -> str:
    """Normalize a principal or account address to lower-case hex."""
    candidate = str(address).strip()
    if candidate.startswith(("0X", "0x")):
        candidate = "0x" + candidate[2:]
    if not _ADDRESS_RE.match(candidate):
        raise ValueError(f"Invalid address: {address}")
    return "0x" + candidate[2:].lower()


def derive_controller_id(owner: str) -> str:
    """Deterministic controller address for an owner.

    The controller address is what the owner approves as delegate on the
    funding account, so it must be derivable before the controller exists.
    """
    owner_bytes = bytes.fromhex(normalize_address(owner)[2:])
    return "0x" + keccak(CONTROLLER_SEED + owner_bytes)[-20:].hex()


@dataclass
class Controller:
    """Per-user spending delegate over one funding account."""

    controller_id: str
    owner: str
    funding_account: str
    mint: str
    bundle_counter: int = 0
    created_at: int = 0
    spending_cap: Optional[int] = None
    total_paid: int = 0

    @property
    def remaining_cap(self) -> Optional[int]:
        if self.spending_cap is None:
            return None
        return max(0, self.spending_cap - self.total_paid)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Bundle:
    """One recurring payment schedule under a controller."""

    controller_id: str
    bundle_id: int
    amount_per_interval: int
    interval: int
    last_paid: int = NEVER_PAID
    created_at: int = 0

    @property
    def state(self) -> BundleState:
        if self.last_paid == NEVER_PAID:
            return BundleState.NEVER_PAID
        return BundleState.PAID

    @property
    def next_due_at(self) -> int:
        """Earliest timestamp a payment may execute (0 if due immediately)."""
        if self.last_paid == NEVER_PAID:
            return 0
        return self.last_paid + self.interval

    def is_due(self, now: int) -> bool:
        return self.last_paid == NEVER_PAID or now - self.last_paid >= self.interval

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        d["next_due_at"] = self.next_due_at
        return d
