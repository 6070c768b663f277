"""
Bundl error types.

Every failure names the invariant it violated through ``code``, so callers
can tell expected gating outcomes (retry later) from misconfiguration
(stop retrying until someone fixes it).
"""

from __future__ import annotations


class BundlError(Exception):
    """Base error for all Bundl operations."""

    code = "BundlError"


class RetryableError(BundlError):
    """Error that may succeed if retried."""

    code = "Retryable"

    def __init__(self, message: str, retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message)


# Controller setup errors
class ControllerError(BundlError):
    """Base error for controller setup and lookup."""

    code = "ControllerError"


class InvalidDelegateError(ControllerError):
    """Funding account is not delegated to the controller."""

    code = "InvalidDelegate"

    def __init__(self, funding_account: str, expected: str, actual: str | None):
        self.funding_account = funding_account
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Funding account {funding_account} delegates to {actual or 'nobody'}, "
            f"expected controller {expected}"
        )


class LowAllowanceError(ControllerError):
    """Delegated allowance is below the funding account balance."""

    code = "LowAllowance"

    def __init__(self, allowance: int, balance: int):
        self.allowance = allowance
        self.balance = balance
        super().__init__(f"Delegated allowance {allowance} is below balance {balance}")


class FundingAccountMismatchError(ControllerError):
    """Funding account does not belong to the requester or holds another mint."""

    code = "FundingAccountMismatch"


class ControllerNotFoundError(ControllerError):
    """No controller exists for the given identity."""

    code = "ControllerNotFound"


class NotOwnerError(ControllerError):
    """Caller does not own the referenced controller."""

    code = "NotOwner"


# Bundle errors
class BundleError(BundlError):
    """Base error for bundle issues."""

    code = "BundleError"


class BundleNotFoundError(BundleError):
    """Bundle ID not found under the controller."""

    code = "BundleNotFound"


class InvalidBundleError(BundleError, ValueError):
    """Bundle parameters are out of range."""

    code = "InvalidBundle"


class StaleBundleError(BundleError):
    """Bundle row changed between read and compare-and-set update."""

    code = "StaleBundle"


# Trigger errors
class TriggerError(BundlError):
    """Base error for trigger failures."""

    code = "TriggerError"


class UnauthorizedError(TriggerError):
    """Caller is not a configured trigger authority."""

    code = "Unauthorized"


class IntervalNotPassedError(TriggerError, RetryableError):
    """The bundle's interval has not elapsed since its last payment."""

    code = "IntervalNotPassed"

    def __init__(self, bundle_id: int, last_paid: int, interval: int, now: int):
        self.bundle_id = bundle_id
        self.last_paid = last_paid
        self.interval = interval
        remaining = max(0, last_paid + interval - now)
        RetryableError.__init__(
            self,
            f"Bundle {bundle_id} was paid at {last_paid}; next payment allowed "
            f"in {remaining}s (interval {interval}s)",
            retry_after=remaining,
        )


class InsufficientFundsError(TriggerError, RetryableError):
    """Funding account balance is below the bundle amount."""

    code = "InsufficientFunds"

    def __init__(self, balance: int, required: int, retry_after: float = 60.0):
        self.balance = balance
        self.required = required
        RetryableError.__init__(
            self,
            f"Funding account balance {balance} is below required {required}",
            retry_after=retry_after,
        )


class SpendingCapExceededError(TriggerError):
    """Payment would push the controller past its aggregate spending cap."""

    code = "SpendingCapExceeded"

    def __init__(self, amount: int, total_paid: int, cap: int):
        self.amount = amount
        self.total_paid = total_paid
        self.cap = cap
        super().__init__(
            f"Amount {amount} exceeds remaining controller cap {max(0, cap - total_paid)} "
            f"(paid {total_paid} of {cap})"
        )


class TransferFailedError(TriggerError):
    """Ledger rejected the delegated transfer; nothing was applied."""

    code = "TransferFailed"


class FundingAccountMissingError(TriggerError):
    """The controller's funding account no longer exists on the ledger."""

    code = "FundingAccountMissing"


class PaymentRecordFailedError(TriggerError):
    """Transfer was applied but ``last_paid`` could not be advanced.

    Needs manual reconciliation against ``transfer_id``.
    """

    code = "PaymentRecordFailed"

    def __init__(self, message: str, transfer_id: str):
        self.transfer_id = transfer_id
        super().__init__(f"{message} (transfer {transfer_id})")


# Ledger errors
class LedgerError(BundlError):
    """Base error raised by the token ledger."""

    code = "LedgerError"


class LedgerAccountNotFoundError(LedgerError):
    """Token account does not exist on the ledger."""

    code = "LedgerAccountNotFound"


class TransferRejectedError(LedgerError):
    """Ledger refused a transfer (funds, allowance, authority or mint)."""

    code = "TransferRejected"


class AuditIntegrityError(BundlError):
    """Audit log hash chain does not verify."""

    code = "AuditIntegrity"
