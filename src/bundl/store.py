"""
Controller registry and bundle store.

Uses SQLite with BEGIN IMMEDIATE transactions so controller creation and
bundle sequence allocation are atomic across threads and processes.
Per-bundle lock files serialize read-modify-write of ``last_paid``.
"""

from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .errors import StaleBundleError
from .models import Bundle, Controller, NEVER_PAID
from .storage import ensure_private_dir, exclusive_lock, safe_child_path


DEFAULT_STORE_DIR = Path.home() / ".bundl" / "store"


class ControllerStore:
    """Durable controller and bundle records keyed by controller identity."""

    def __init__(self, store_dir: Optional[Path] = None):
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        ensure_private_dir(self.store_dir)
        self.db_path = self.store_dir / "bundl.sqlite3"
        self._lock_dir = self.store_dir / "locks"
        ensure_private_dir(self._lock_dir)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS controllers (
                    controller_id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL UNIQUE,
                    funding_account TEXT NOT NULL,
                    mint TEXT NOT NULL,
                    bundle_counter INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    spending_cap INTEGER,
                    total_paid INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bundles (
                    controller_id TEXT NOT NULL,
                    bundle_id INTEGER NOT NULL,
                    amount_per_interval INTEGER NOT NULL,
                    interval_seconds INTEGER NOT NULL,
                    last_paid INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    PRIMARY KEY (controller_id, bundle_id)
                )
                """
            )

    # ── Locks ─────────────────────────────────────────────────────

    @contextmanager
    def bundle_lock(self, controller_id: str, bundle_id: int) -> Iterator[None]:
        """Serialize triggers on one bundle; other bundles are unaffected."""
        lock_path = safe_child_path(self._lock_dir, f"{controller_id}-{int(bundle_id)}", ".bundle.lock")
        with exclusive_lock(lock_path):
            yield

    @contextmanager
    def controller_lock(self, controller_id: str) -> Iterator[None]:
        """Serialize operations that read and update controller-wide totals."""
        with exclusive_lock(safe_child_path(self._lock_dir, controller_id, ".controller.lock")):
            yield

    # ── Row mapping ───────────────────────────────────────────────

    def _row_to_controller(self, row: sqlite3.Row) -> Controller:
        return Controller(
            controller_id=row["controller_id"],
            owner=row["owner"],
            funding_account=row["funding_account"],
            mint=row["mint"],
            bundle_counter=row["bundle_counter"],
            created_at=row["created_at"],
            spending_cap=row["spending_cap"],
            total_paid=row["total_paid"],
        )

    def _row_to_bundle(self, row: sqlite3.Row) -> Bundle:
        return Bundle(
            controller_id=row["controller_id"],
            bundle_id=row["bundle_id"],
            amount_per_interval=row["amount_per_interval"],
            interval=row["interval_seconds"],
            last_paid=row["last_paid"],
            created_at=row["created_at"],
        )

    # ── Controllers ───────────────────────────────────────────────

    def get_controller(self, controller_id: str) -> Optional[Controller]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM controllers WHERE controller_id = ?",
                (controller_id,),
            ).fetchone()
        return self._row_to_controller(row) if row is not None else None

    def create_controller_if_absent(self, controller: Controller) -> tuple[Controller, bool]:
        """Insert the controller unless one exists; return (record, created)."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            existing = conn.execute(
                "SELECT * FROM controllers WHERE controller_id = ?",
                (controller.controller_id,),
            ).fetchone()
            if existing is not None:
                conn.execute("COMMIT")
                return self._row_to_controller(existing), False

            conn.execute(
                """
                INSERT INTO controllers (
                    controller_id, owner, funding_account, mint,
                    bundle_counter, created_at, spending_cap, total_paid
                ) VALUES (?, ?, ?, ?, 0, ?, ?, 0)
                """,
                (
                    controller.controller_id,
                    controller.owner,
                    controller.funding_account,
                    controller.mint,
                    controller.created_at,
                    controller.spending_cap,
                ),
            )
            conn.execute("COMMIT")
        controller.bundle_counter = 0
        controller.total_paid = 0
        return controller, True

    def set_spending_cap(self, controller_id: str, cap: Optional[int]) -> Controller:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            updated = conn.execute(
                "UPDATE controllers SET spending_cap = ? WHERE controller_id = ?",
                (cap, controller_id),
            ).rowcount
            if updated != 1:
                conn.execute("ROLLBACK")
                raise KeyError(f"Controller not found: {controller_id}")
            row = conn.execute(
                "SELECT * FROM controllers WHERE controller_id = ?",
                (controller_id,),
            ).fetchone()
            conn.execute("COMMIT")
        return self._row_to_controller(row)

    # ── Bundles ───────────────────────────────────────────────────

    def allocate_bundle(
        self,
        controller_id: str,
        amount_per_interval: int,
        interval: int,
        created_at: Optional[int] = None,
    ) -> Bundle:
        """Create a bundle at the controller's counter and advance the counter by one."""
        created_at = int(time.time()) if created_at is None else int(created_at)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT bundle_counter FROM controllers WHERE controller_id = ?",
                (controller_id,),
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                raise KeyError(f"Controller not found: {controller_id}")

            bundle_id = int(row["bundle_counter"])
            conn.execute(
                """
                INSERT INTO bundles (
                    controller_id, bundle_id, amount_per_interval,
                    interval_seconds, last_paid, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (controller_id, bundle_id, amount_per_interval, interval, NEVER_PAID, created_at),
            )
            conn.execute(
                "UPDATE controllers SET bundle_counter = bundle_counter + 1 WHERE controller_id = ?",
                (controller_id,),
            )
            conn.execute("COMMIT")

        return Bundle(
            controller_id=controller_id,
            bundle_id=bundle_id,
            amount_per_interval=amount_per_interval,
            interval=interval,
            last_paid=NEVER_PAID,
            created_at=created_at,
        )

    def get_bundle(self, controller_id: str, bundle_id: int) -> Optional[Bundle]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM bundles WHERE controller_id = ? AND bundle_id = ?",
                (controller_id, int(bundle_id)),
            ).fetchone()
        return self._row_to_bundle(row) if row is not None else None

    def list_bundles(self, controller_id: str) -> list[Bundle]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM bundles WHERE controller_id = ? ORDER BY bundle_id ASC",
                (controller_id,),
            ).fetchall()
        return [self._row_to_bundle(r) for r in rows]

    def due_bundles(self, now: int) -> list[Bundle]:
        """Bundles whose interval has elapsed at ``now`` (never-paid included)."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM bundles
                WHERE last_paid = ? OR ? - last_paid >= interval_seconds
                ORDER BY controller_id ASC, bundle_id ASC
                """,
                (NEVER_PAID, int(now)),
            ).fetchall()
        return [self._row_to_bundle(r) for r in rows]

    def record_payment(
        self,
        controller_id: str,
        bundle_id: int,
        expected_last_paid: int,
        paid_at: int,
        amount: int,
    ) -> Bundle:
        """Advance ``last_paid`` if it still equals expected_last_paid."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            updated = conn.execute(
                """
                UPDATE bundles SET last_paid = ?
                WHERE controller_id = ? AND bundle_id = ? AND last_paid = ?
                """,
                (int(paid_at), controller_id, int(bundle_id), int(expected_last_paid)),
            ).rowcount
            if updated != 1:
                conn.execute("ROLLBACK")
                raise StaleBundleError(
                    f"Bundle {controller_id}/{bundle_id} was modified concurrently"
                )
            conn.execute(
                "UPDATE controllers SET total_paid = total_paid + ? WHERE controller_id = ?",
                (int(amount), controller_id),
            )
            row = conn.execute(
                "SELECT * FROM bundles WHERE controller_id = ? AND bundle_id = ?",
                (controller_id, int(bundle_id)),
            ).fetchone()
            conn.execute("COMMIT")
        return self._row_to_bundle(row)
