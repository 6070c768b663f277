"""
Authorization engine for delegated recurring payments.

Trigger flow (fail fast, in order):
1. Gate the caller against the trigger authority allow-list
2. Resolve controller and bundle
3. Enforce the bundle interval since its last payment
4. Check the funding account balance (and the optional controller cap)
5. Execute the delegated ledger transfer
6. Advance ``last_paid``

``last_paid`` only moves after the ledger has applied the transfer. If the
store write fails after that, ``PaymentRecordFailedError`` carries the
transfer id and the payment is audited as failed for reconciliation.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .authority import TriggerAuthorityGate
from .errors import (
    BundleNotFoundError,
    ControllerNotFoundError,
    FundingAccountMismatchError,
    FundingAccountMissingError,
    InsufficientFundsError,
    IntervalNotPassedError,
    InvalidBundleError,
    InvalidDelegateError,
    LedgerAccountNotFoundError,
    LedgerError,
    LowAllowanceError,
    NotOwnerError,
    PaymentRecordFailedError,
    SpendingCapExceededError,
    StaleBundleError,
    TransferFailedError,
    UnauthorizedError,
)
from .ledger import TokenLedger
from .models import (
    MAX_STORED_INT,
    NEVER_PAID,
    UINT64_MAX,
    Bundle,
    Controller,
    derive_controller_id,
    normalize_address,
)
from .store import ControllerStore


logger = logging.getLogger(__name__)


@dataclass
class TriggerResult:
    """Outcome of a successful trigger."""

    controller_id: str
    bundle_id: int
    amount: int
    recipient: str
    last_paid: int
    transfer_id: str

    def to_dict(self) -> dict:
        return {
            "controller_id": self.controller_id,
            "bundle_id": self.bundle_id,
            "amount": self.amount,
            "recipient": self.recipient,
            "last_paid": self.last_paid,
            "transfer_id": self.transfer_id,
        }


def _system_clock() -> int:
    return int(time.time())


class AuthorizationEngine:
    """Owns controller/bundle lifecycle and every trigger gating decision."""

    def __init__(
        self,
        store: ControllerStore,
        ledger: TokenLedger,
        gate: TriggerAuthorityGate,
        audit: Optional[AuditTrail] = None,
        clock: Callable[[], int] = _system_clock,
    ):
        self.store = store
        self.ledger = ledger
        self.gate = gate
        self.audit = audit
        self.clock = clock

    def _now(self) -> int:
        now = int(self.clock())
        if now <= NEVER_PAID:
            raise ValueError(f"Clock returned {now}; timestamps <= {NEVER_PAID} are reserved")
        return now

    def _log(self, event_type: EventType, **kwargs) -> None:
        if self.audit is not None:
            self.audit.log(event_type, **kwargs)

    # ── Controllers ───────────────────────────────────────────────

    def initialize_controller(self, requester: str, funding_account: str, mint: str) -> Controller:
        """Create the requester's controller, or return the existing one.

        The funding account must already delegate to the controller address
        with an allowance covering its full balance. These checks run on
        every call, so a retried setup still fails fast on a bad delegation.
        """
        owner = normalize_address(requester)
        account_ref = normalize_address(funding_account)
        mint_ref = normalize_address(mint)
        controller_id = derive_controller_id(owner)

        try:
            account = self.ledger.get_account(account_ref)
            if account.owner != owner:
                raise FundingAccountMismatchError(
                    f"Funding account {account_ref} is owned by {account.owner}, not {owner}"
                )
            if account.mint != mint_ref:
                raise FundingAccountMismatchError(
                    f"Funding account {account_ref} holds mint {account.mint}, not {mint_ref}"
                )
            if account.delegate != controller_id:
                raise InvalidDelegateError(account_ref, expected=controller_id, actual=account.delegate)
            if account.delegated_amount < account.amount:
                raise LowAllowanceError(allowance=account.delegated_amount, balance=account.amount)
        except LedgerAccountNotFoundError as e:
            self._log(
                EventType.CONTROLLER_REJECTED,
                controller_id=controller_id,
                actor=owner,
                success=False,
                reason=str(e),
            )
            raise FundingAccountMismatchError(str(e)) from e
        except (FundingAccountMismatchError, InvalidDelegateError, LowAllowanceError) as e:
            self._log(
                EventType.CONTROLLER_REJECTED,
                controller_id=controller_id,
                actor=owner,
                success=False,
                reason=f"{e.code}: {e}",
            )
            raise

        controller, created = self.store.create_controller_if_absent(
            Controller(
                controller_id=controller_id,
                owner=owner,
                funding_account=account_ref,
                mint=mint_ref,
                created_at=self._now(),
            )
        )
        if created:
            logger.info("Controller created: %s (owner: %s, funding: %s)", controller_id, owner, account_ref)
        else:
            logger.info("Controller already initialized: %s", controller_id)
        self._log(
            EventType.CONTROLLER_INITIALIZED,
            controller_id=controller_id,
            actor=owner,
            details={"created": created, "funding_account": controller.funding_account},
        )
        return controller

    def get_controller(self, owner: str) -> Optional[Controller]:
        return self.store.get_controller(derive_controller_id(owner))

    def _owned_controller(self, requester: str, controller_id: Optional[str]) -> Controller:
        owner = normalize_address(requester)
        own_id = derive_controller_id(owner)
        if controller_id is not None and normalize_address(controller_id) != own_id:
            raise NotOwnerError(f"{owner} does not own controller {controller_id}")
        controller = self.store.get_controller(own_id)
        if controller is None:
            raise ControllerNotFoundError(f"No controller initialized for {owner}")
        return controller

    def set_spending_cap(
        self,
        requester: str,
        cap: Optional[int],
        controller_id: Optional[str] = None,
    ) -> Controller:
        """Set or clear the aggregate cap on payments across all bundles."""
        if cap is not None and not 0 <= cap <= MAX_STORED_INT:
            raise ValueError(f"spending cap must be between 0 and {MAX_STORED_INT}")
        controller = self._owned_controller(requester, controller_id)
        with self.store.controller_lock(controller.controller_id):
            updated = self.store.set_spending_cap(controller.controller_id, cap)
        logger.info("Spending cap for %s set to %s", controller.controller_id, cap)
        self._log(
            EventType.SPENDING_CAP_SET,
            controller_id=controller.controller_id,
            actor=controller.owner,
            amount=cap,
        )
        return updated

    # ── Bundles ───────────────────────────────────────────────────

    def add_bundle(
        self,
        requester: str,
        amount_per_interval: int,
        interval: int,
        controller_id: Optional[str] = None,
    ) -> Bundle:
        """Register a bundle at the controller's next sequence number."""
        if isinstance(amount_per_interval, bool) or not isinstance(amount_per_interval, int):
            raise InvalidBundleError("amount_per_interval must be an integer")
        if isinstance(interval, bool) or not isinstance(interval, int):
            raise InvalidBundleError("interval must be an integer number of seconds")
        for name, value in (("amount_per_interval", amount_per_interval), ("interval", interval)):
            if value <= 0:
                raise InvalidBundleError(f"{name} must be > 0")
            if value > UINT64_MAX:
                raise InvalidBundleError(f"{name} must fit in 64 bits unsigned")
            if value > MAX_STORED_INT:
                raise InvalidBundleError(f"{name} must be <= {MAX_STORED_INT}")

        controller = self._owned_controller(requester, controller_id)
        bundle = self.store.allocate_bundle(
            controller.controller_id,
            amount_per_interval=amount_per_interval,
            interval=interval,
            created_at=self._now(),
        )
        logger.info(
            "Bundle added: %s/%d (%d every %ds)",
            bundle.controller_id,
            bundle.bundle_id,
            amount_per_interval,
            interval,
        )
        self._log(
            EventType.BUNDLE_ADDED,
            controller_id=bundle.controller_id,
            bundle_id=bundle.bundle_id,
            actor=controller.owner,
            amount=amount_per_interval,
            details={"interval": interval},
        )
        return bundle

    def get_bundle(self, controller_id: str, bundle_id: int) -> Bundle:
        bundle = self.store.get_bundle(normalize_address(controller_id), bundle_id)
        if bundle is None:
            raise BundleNotFoundError(f"Bundle {bundle_id} not found under {controller_id}")
        return bundle

    def list_bundles(self, controller_id: str) -> list[Bundle]:
        return self.store.list_bundles(normalize_address(controller_id))

    # ── Trigger ───────────────────────────────────────────────────

    def trigger(self, caller: str, controller_id: str, bundle_id: int, recipient: str) -> TriggerResult:
        """Execute one interval's payment for a bundle if every gate passes."""
        try:
            authority = self.gate.check(caller)
        except UnauthorizedError as e:
            self._log(
                EventType.TRIGGER_DENIED,
                controller_id=str(controller_id),
                bundle_id=bundle_id,
                actor=str(caller),
                success=False,
                reason=str(e),
            )
            raise

        controller_ref = normalize_address(controller_id)
        recipient_ref = normalize_address(recipient)

        with self.store.bundle_lock(controller_ref, bundle_id):
            controller = self.store.get_controller(controller_ref)
            if controller is None:
                raise ControllerNotFoundError(f"Controller not found: {controller_ref}")
            bundle = self.store.get_bundle(controller_ref, bundle_id)
            if bundle is None:
                raise BundleNotFoundError(f"Bundle {bundle_id} not found under {controller_ref}")

            with ExitStack() as stack:
                if controller.spending_cap is not None:
                    stack.enter_context(self.store.controller_lock(controller_ref))
                    controller = self.store.get_controller(controller_ref) or controller
                return self._execute(controller, bundle, authority, recipient_ref)

    def _execute(
        self,
        controller: Controller,
        bundle: Bundle,
        authority: str,
        recipient: str,
    ) -> TriggerResult:
        now = self._now()
        amount = bundle.amount_per_interval
        audit_ctx = dict(
            controller_id=controller.controller_id,
            bundle_id=bundle.bundle_id,
            actor=authority,
            amount=amount,
            recipient=recipient,
        )

        try:
            if bundle.last_paid != NEVER_PAID and now - bundle.last_paid < bundle.interval:
                raise IntervalNotPassedError(bundle.bundle_id, bundle.last_paid, bundle.interval, now)

            try:
                balance = self.ledger.get_balance(controller.funding_account)
            except LedgerAccountNotFoundError as e:
                raise FundingAccountMissingError(
                    f"Funding account {controller.funding_account} not found: {e}"
                ) from e
            except LedgerError as e:
                raise TransferFailedError(f"Ledger balance lookup failed: {e}") from e
            if balance < amount:
                raise InsufficientFundsError(balance=balance, required=amount)

            if controller.spending_cap is not None and controller.total_paid + amount > controller.spending_cap:
                raise SpendingCapExceededError(amount, controller.total_paid, controller.spending_cap)
        except (
            IntervalNotPassedError,
            InsufficientFundsError,
            SpendingCapExceededError,
            FundingAccountMissingError,
        ) as e:
            logger.warning(
                "Trigger gated for %s/%d: %s (%s)",
                controller.controller_id,
                bundle.bundle_id,
                e.code,
                e,
            )
            self._log(EventType.TRIGGER_GATED, success=False, reason=f"{e.code}: {e}", **audit_ctx)
            raise

        self._log(EventType.PAYMENT_INITIATED, details={"last_paid": bundle.last_paid}, **audit_ctx)
        try:
            receipt = self.ledger.transfer(
                controller.funding_account,
                recipient,
                amount,
                controller.controller_id,
            )
        except LedgerError as e:
            logger.warning(
                "Transfer for %s/%d rejected by ledger: %s",
                controller.controller_id,
                bundle.bundle_id,
                e,
            )
            self._log(EventType.PAYMENT_FAILED, success=False, reason=str(e), **audit_ctx)
            raise TransferFailedError(f"Ledger rejected transfer: {e}") from e

        try:
            updated = self.store.record_payment(
                controller.controller_id,
                bundle.bundle_id,
                expected_last_paid=bundle.last_paid,
                paid_at=now,
                amount=amount,
            )
        except (StaleBundleError, sqlite3.Error) as e:
            logger.error(
                "Transfer %s for %s/%d applied but last_paid not recorded: %s",
                receipt.transfer_id,
                controller.controller_id,
                bundle.bundle_id,
                e,
            )
            self._log(
                EventType.PAYMENT_FAILED,
                success=False,
                reason=f"{PaymentRecordFailedError.code}: {e}",
                details={"transfer_id": receipt.transfer_id, "paid_at": now},
                **audit_ctx,
            )
            raise PaymentRecordFailedError(f"Could not record payment: {e}", receipt.transfer_id) from e
        logger.info(
            "Payment executed for %s/%d: %d to %s (%s)",
            controller.controller_id,
            bundle.bundle_id,
            amount,
            recipient,
            receipt.transfer_id,
        )
        self._log(
            EventType.PAYMENT_COMPLETED,
            details={"transfer_id": receipt.transfer_id, "last_paid": updated.last_paid},
            **audit_ctx,
        )
        return TriggerResult(
            controller_id=controller.controller_id,
            bundle_id=bundle.bundle_id,
            amount=amount,
            recipient=recipient,
            last_paid=updated.last_paid,
            transfer_id=receipt.transfer_id,
        )
