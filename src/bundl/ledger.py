"""Token ledger abstractions: the external balance/allowance/transfer service."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Protocol

from eth_utils import keccak

from .errors import LedgerAccountNotFoundError, LedgerError, TransferRejectedError
from .models import normalize_address
from .storage import atomic_write_json, ensure_private_dir, exclusive_lock


logger = logging.getLogger(__name__)

DEFAULT_LEDGER_PATH = Path.home() / ".bundl" / "ledger.json"


@dataclass
class TokenAccount:
    address: str
    owner: str
    mint: str
    amount: int = 0
    delegate: Optional[str] = None
    delegated_amount: int = 0


@dataclass
class TransferReceipt:
    transfer_id: str
    source: str
    destination: str
    amount: int
    authority: str
    timestamp: int


class TokenLedger(Protocol):
    def get_account(self, address: str) -> TokenAccount: ...

    def get_balance(self, address: str) -> int: ...

    def get_allowance(self, address: str, delegate: str) -> int: ...

    def get_delegate(self, address: str) -> Optional[str]: ...

    def transfer(self, source: str, destination: str, amount: int, authority: str) -> TransferReceipt: ...


def associated_account_address(owner: str, mint: str) -> str:
    """Deterministic token account address for an (owner, mint) pair."""
    owner_bytes = bytes.fromhex(normalize_address(owner)[2:])
    mint_bytes = bytes.fromhex(normalize_address(mint)[2:])
    return "0x" + keccak(b"token-account" + owner_bytes + mint_bytes)[-20:].hex()


class LocalTokenLedger:
    """File-backed stand-in for an SPL-style token program.

    Every mutation runs under an exclusive file lock and is written with an
    atomic rename, so a transfer is applied completely or not at all.
    Delegated transfers consume the delegate's allowance; an exhausted
    allowance clears the delegate.
    """

    def __init__(self, path: Path | None = None):
        self.path = path or DEFAULT_LEDGER_PATH
        ensure_private_dir(self.path.parent)
        self._lock_path = self.path.parent / f".{self.path.name}.lock"
        with exclusive_lock(self._lock_path):
            if not self.path.exists():
                atomic_write_json(self.path, {"accounts": {}, "transfer_count": 0})

    def _load_state(self) -> dict:
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def _account(self, state: dict, address: str) -> dict:
        normalized = normalize_address(address)
        record = state.get("accounts", {}).get(normalized)
        if record is None:
            raise LedgerAccountNotFoundError(f"Token account not found: {normalized}")
        return record

    def open_account(self, owner: str, mint: str, address: str | None = None) -> TokenAccount:
        """Create a token account, returning the existing one if already open."""
        normalized_owner = normalize_address(owner)
        normalized_mint = normalize_address(mint)
        normalized = normalize_address(address) if address else associated_account_address(owner, mint)

        with exclusive_lock(self._lock_path):
            state = self._load_state()
            accounts = state.setdefault("accounts", {})
            existing = accounts.get(normalized)
            if existing is not None:
                if existing["owner"] != normalized_owner or existing["mint"] != normalized_mint:
                    raise LedgerError(f"Token account {normalized} already exists with another owner or mint")
                return TokenAccount(**existing)
            account = TokenAccount(address=normalized, owner=normalized_owner, mint=normalized_mint)
            accounts[normalized] = asdict(account)
            atomic_write_json(self.path, state)
        return account

    def mint_to(self, address: str, amount: int) -> TokenAccount:
        if amount <= 0:
            raise ValueError("amount must be > 0")
        with exclusive_lock(self._lock_path):
            state = self._load_state()
            record = self._account(state, address)
            record["amount"] = int(record["amount"]) + int(amount)
            atomic_write_json(self.path, state)
            return TokenAccount(**record)

    def approve(self, owner: str, address: str, delegate: str, amount: int) -> TokenAccount:
        """Set (replace) the single delegate and its allowance on an account."""
        if amount < 0:
            raise ValueError("amount must be >= 0")
        normalized_owner = normalize_address(owner)
        with exclusive_lock(self._lock_path):
            state = self._load_state()
            record = self._account(state, address)
            if record["owner"] != normalized_owner:
                raise LedgerError("Only the account owner can approve a delegate")
            record["delegate"] = normalize_address(delegate)
            record["delegated_amount"] = int(amount)
            atomic_write_json(self.path, state)
            return TokenAccount(**record)

    def revoke(self, owner: str, address: str) -> TokenAccount:
        normalized_owner = normalize_address(owner)
        with exclusive_lock(self._lock_path):
            state = self._load_state()
            record = self._account(state, address)
            if record["owner"] != normalized_owner:
                raise LedgerError("Only the account owner can revoke a delegate")
            record["delegate"] = None
            record["delegated_amount"] = 0
            atomic_write_json(self.path, state)
            return TokenAccount(**record)

    def get_account(self, address: str) -> TokenAccount:
        with exclusive_lock(self._lock_path):
            return TokenAccount(**self._account(self._load_state(), address))

    def get_balance(self, address: str) -> int:
        return self.get_account(address).amount

    def get_delegate(self, address: str) -> Optional[str]:
        return self.get_account(address).delegate

    def get_allowance(self, address: str, delegate: str) -> int:
        account = self.get_account(address)
        if account.delegate != normalize_address(delegate):
            return 0
        return account.delegated_amount

    def transfer(self, source: str, destination: str, amount: int, authority: str) -> TransferReceipt:
        """Move amount from source to destination, authorized by owner or delegate."""
        if amount <= 0:
            raise TransferRejectedError("Transfer amount must be positive")
        normalized_authority = normalize_address(authority)

        with exclusive_lock(self._lock_path):
            state = self._load_state()
            src = self._account(state, source)
            dst = self._account(state, destination)
            if src["address"] == dst["address"]:
                raise TransferRejectedError("Source and destination are the same account")
            if src["mint"] != dst["mint"]:
                raise TransferRejectedError(
                    f"Mint mismatch: source holds {src['mint']}, destination holds {dst['mint']}"
                )

            via_delegate = False
            if normalized_authority == src["owner"]:
                pass
            elif normalized_authority == src.get("delegate"):
                if int(src["delegated_amount"]) < amount:
                    raise TransferRejectedError(
                        f"Delegated allowance {src['delegated_amount']} is below amount {amount}"
                    )
                via_delegate = True
            else:
                raise TransferRejectedError(f"{normalized_authority} may not spend from {src['address']}")

            if int(src["amount"]) < amount:
                raise TransferRejectedError(f"Balance {src['amount']} is below amount {amount}")

            src["amount"] = int(src["amount"]) - amount
            dst["amount"] = int(dst["amount"]) + amount
            if via_delegate:
                src["delegated_amount"] = int(src["delegated_amount"]) - amount
                if src["delegated_amount"] == 0:
                    src["delegate"] = None

            seq = int(state.get("transfer_count", 0)) + 1
            state["transfer_count"] = seq
            now = int(time.time())
            transfer_id = "xfer-" + hashlib.sha256(
                f"{seq}:{src['address']}:{dst['address']}:{amount}:{now}".encode()
            ).hexdigest()[:16]
            atomic_write_json(self.path, state)

        logger.info(
            "Ledger transfer %s: %d from %s to %s (authority %s)",
            transfer_id,
            amount,
            src["address"],
            dst["address"],
            normalized_authority,
        )
        return TransferReceipt(
            transfer_id=transfer_id,
            source=src["address"],
            destination=dst["address"],
            amount=amount,
            authority=normalized_authority,
            timestamp=now,
        )
