"""
Bundl: delegated recurring payments.

A user delegates an allowance to a controller, registers bundles
(amount per interval), and a trigger authority executes each bundle
at most once per interval while funds and allowance hold.
"""

__version__ = "0.1.0"

from .models import Bundle, BundleState, Controller, NEVER_PAID, derive_controller_id, normalize_address
from .ledger import LocalTokenLedger, TokenAccount, TokenLedger, TransferReceipt, associated_account_address
from .store import ControllerStore
from .authority import TriggerAuthorityGate
from .config import EngineConfig
from .engine import AuthorizationEngine, TriggerResult
from .scheduler import TickReport, TriggerScheduler
from .audit import AuditTrail, EventType

__all__ = [
    "Bundle", "BundleState", "Controller", "NEVER_PAID", "derive_controller_id", "normalize_address",
    "LocalTokenLedger", "TokenAccount", "TokenLedger", "TransferReceipt", "associated_account_address",
    "ControllerStore", "TriggerAuthorityGate", "EngineConfig",
    "AuthorizationEngine", "TriggerResult", "TickReport", "TriggerScheduler",
    "AuditTrail", "EventType",
]
