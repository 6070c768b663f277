"""
Periodic trigger runner.

Polls the store for bundles whose interval has elapsed and triggers each one
as the configured authority. Gating failures are steady-state outcomes and
are retried on a later tick; an Unauthorized response means the scheduler
itself is misconfigured, so the tick stops there.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .engine import AuthorizationEngine, TriggerResult
from .errors import (
    BundleNotFoundError,
    ControllerNotFoundError,
    FundingAccountMissingError,
    InsufficientFundsError,
    IntervalNotPassedError,
    PaymentRecordFailedError,
    SpendingCapExceededError,
    TransferFailedError,
)
from .models import Bundle


logger = logging.getLogger(__name__)


@dataclass
class TickOutcome:
    controller_id: str
    bundle_id: int
    code: str
    reason: str


@dataclass
class TickReport:
    """What one scheduler pass did."""

    started_at: int
    paid: list[TriggerResult] = field(default_factory=list)
    skipped: list[TickOutcome] = field(default_factory=list)
    failed: list[TickOutcome] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "paid": [r.to_dict() for r in self.paid],
            "skipped": [vars(o) for o in self.skipped],
            "failed": [vars(o) for o in self.failed],
        }


class TriggerScheduler:
    """Cron-like caller of ``AuthorizationEngine.trigger``."""

    def __init__(
        self,
        engine: AuthorizationEngine,
        authority: str,
        recipient_for: Callable[[Bundle], str],
        clock: Optional[Callable[[], int]] = None,
    ):
        self.engine = engine
        self.authority = authority
        self.recipient_for = recipient_for
        self.clock = clock or engine.clock

    def run_once(self) -> TickReport:
        now = int(self.clock())
        report = TickReport(started_at=now)
        due = self.engine.store.due_bundles(now)
        logger.info("Scheduler tick at %d: %d bundle(s) due", now, len(due))

        for bundle in due:
            try:
                result = self.engine.trigger(
                    self.authority,
                    bundle.controller_id,
                    bundle.bundle_id,
                    self.recipient_for(bundle),
                )
            except (IntervalNotPassedError, InsufficientFundsError, SpendingCapExceededError) as e:
                report.skipped.append(TickOutcome(bundle.controller_id, bundle.bundle_id, e.code, str(e)))
            except (
                TransferFailedError,
                FundingAccountMissingError,
                PaymentRecordFailedError,
                ControllerNotFoundError,
                BundleNotFoundError,
            ) as e:
                logger.warning("Trigger failed for %s/%d: %s", bundle.controller_id, bundle.bundle_id, e)
                report.failed.append(TickOutcome(bundle.controller_id, bundle.bundle_id, e.code, str(e)))
            else:
                report.paid.append(result)

        logger.info(
            "Scheduler tick done: %d paid, %d skipped, %d failed",
            len(report.paid),
            len(report.skipped),
            len(report.failed),
        )
        return report

    def run_forever(
        self,
        poll_seconds: float,
        max_ticks: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        on_report: Optional[Callable[[TickReport], None]] = None,
    ) -> list[TickReport]:
        """Tick every poll_seconds; return reports when max_ticks is reached.

        ``on_report`` sees every tick, including unbounded runs where no
        reports are kept.
        """
        reports: list[TickReport] = []
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            report = self.run_once()
            ticks += 1
            if on_report is not None:
                on_report(report)
            if max_ticks is not None:
                reports.append(report)
            if max_ticks is not None and ticks >= max_ticks:
                break
            sleep(poll_seconds)
        return reports
