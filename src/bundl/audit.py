"""
Audit trail for controller, bundle and trigger decisions.

Each engine decision is one JSON line sealed with an HMAC over the previous
line's seal. Editing, dropping or reordering lines breaks verification, and
every read verifies the whole chain before filtering.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import AuditIntegrityError
from .models import normalize_address
from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".bundl" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".bundl-secrets" / "audit_hmac.key"

AUDIT_KEY_ENV = "BUNDL_AUDIT_HMAC_KEY"

_SEAL_FIELDS = ("prev_hash", "event_hash")


class EventType(str, Enum):
    CONTROLLER_INITIALIZED = "controller_initialized"
    CONTROLLER_REJECTED = "controller_rejected"
    BUNDLE_ADDED = "bundle_added"
    SPENDING_CAP_SET = "spending_cap_set"
    TRIGGER_DENIED = "trigger_denied"
    TRIGGER_GATED = "trigger_gated"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"


@dataclass
class AuditEvent:
    """A single audit trail entry."""

    event_type: str
    timestamp: float
    controller_id: Optional[str] = None
    bundle_id: Optional[int] = None
    actor: Optional[str] = None
    amount: Optional[int] = None
    recipient: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @property
    def bundle_key(self) -> Optional[str]:
        if self.controller_id is None or self.bundle_id is None:
            return None
        return f"{self.controller_id}/{self.bundle_id}"

    def sealed_payload(self) -> dict[str, Any]:
        """Fields covered by the seal: everything set except the seal itself."""
        return {
            k: v for k, v in asdict(self).items()
            if v is not None and k not in _SEAL_FIELDS
        }

    def to_json(self) -> str:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d, separators=(",", ":"))

    @classmethod
    def from_line(cls, line: str) -> "AuditEvent":
        raw = json.loads(line)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})


def _load_key(key_path: Path) -> bytes:
    env_key = os.getenv(AUDIT_KEY_ENV)
    if env_key:
        return env_key.encode()
    stored = key_path.read_bytes().strip()
    if stored:
        return stored
    key = secrets.token_hex(32).encode()
    key_path.write_bytes(key)
    return key


class AuditTrail:
    """Tamper-evident record of every controller, bundle and trigger decision."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)

        self._key = _load_key(self.key_path)
        self._lock = threading.Lock()
        self._head = self._tail_seal()

    def _tail_seal(self) -> str:
        for line in reversed(self.path.read_text(encoding="utf-8").splitlines()):
            if line.strip():
                return json.loads(line).get("event_hash") or ""
        return ""

    def _seal(self, event: AuditEvent, prev_hash: str) -> str:
        mac = hmac.new(self._key, digestmod=hashlib.sha256)
        mac.update(prev_hash.encode())
        mac.update(b"\x00")
        mac.update(json.dumps(event.sealed_payload(), sort_keys=True, separators=(",", ":")).encode())
        return mac.hexdigest()

    def log(self, event_type: EventType, **event_fields: Any) -> AuditEvent:
        """Append one sealed event; keyword fields match ``AuditEvent``."""
        event = AuditEvent(event_type=event_type.value, timestamp=time.time(), **event_fields)
        with self._lock:
            event.prev_hash = self._head or None
            event.event_hash = self._seal(event, self._head)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._head = event.event_hash
        return event

    def _verified_events(self) -> Iterator[AuditEvent]:
        expected_prev = ""
        with open(self.path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                event = AuditEvent.from_line(line)
                if (event.prev_hash or "") != expected_prev:
                    raise AuditIntegrityError(f"Audit chain broken at line {lineno}: previous hash mismatch")
                if not hmac.compare_digest(self._seal(event, expected_prev), event.event_hash or ""):
                    raise AuditIntegrityError(f"Audit chain broken at line {lineno}: event hash mismatch")
                expected_prev = event.event_hash
                yield event

    def verify(self) -> int:
        """Verify the full chain; return the number of events checked."""
        count = 0
        for _ in self._verified_events():
            count += 1
        return count

    def read_events(
        self,
        controller_id: Optional[str] = None,
        bundle_id: Optional[int] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        controller_ref = normalize_address(controller_id) if controller_id else None
        events = [
            e for e in self._verified_events()
            if (controller_ref is None or e.controller_id == controller_ref)
            and (bundle_id is None or e.bundle_id == bundle_id)
            and (event_type is None or e.event_type == event_type.value)
        ]
        return events[-limit:] if limit else events

    def summary(self, controller_id: Optional[str] = None) -> dict:
        """Event counts plus per-bundle payment totals and last gating reason."""
        events = self.read_events(controller_id=controller_id, limit=0)
        by_type: dict[str, int] = {}
        bundles: dict[str, dict[str, Any]] = {}
        for e in events:
            by_type[e.event_type] = by_type.get(e.event_type, 0) + 1
            key = e.bundle_key
            if key is None:
                continue
            entry = bundles.setdefault(
                key,
                {"payments": 0, "paid_total": 0, "last_paid_at": None, "last_gated_reason": None},
            )
            if e.event_type == EventType.PAYMENT_COMPLETED.value:
                entry["payments"] += 1
                entry["paid_total"] += e.amount or 0
                entry["last_paid_at"] = (e.details or {}).get("last_paid")
            elif e.event_type == EventType.TRIGGER_GATED.value:
                entry["last_gated_reason"] = e.reason
        return {
            "total_events": len(events),
            "failures": sum(1 for e in events if not e.success),
            "by_type": by_type,
            "bundles": bundles,
        }
