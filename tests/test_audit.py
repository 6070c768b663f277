"""Tests for tamper-evident audit trail behavior."""

import json

import pytest

from bundl.audit import AuditTrail, EventType
from bundl.errors import AuditIntegrityError


CONTROLLER = "0x" + "ab" * 20


def _trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.BUNDLE_ADDED, controller_id=CONTROLLER, bundle_id=0, amount=10)
    trail.log(EventType.PAYMENT_COMPLETED, controller_id=CONTROLLER, bundle_id=0, amount=10)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount"] = 9999
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(AuditIntegrityError, match="line 1: event hash mismatch"):
        trail.read_events()


def test_dropped_line_breaks_chain(tmp_path):
    trail = _trail(tmp_path)
    for amount in (1, 2, 3):
        trail.log(EventType.PAYMENT_COMPLETED, controller_id=CONTROLLER, bundle_id=0, amount=amount)
    assert trail.verify() == 3

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(AuditIntegrityError, match="line 2: previous hash mismatch"):
        trail.verify()


def test_chain_continues_across_instances(tmp_path):
    _trail(tmp_path).log(EventType.CONTROLLER_INITIALIZED, controller_id=CONTROLLER)
    reopened = _trail(tmp_path)
    reopened.log(EventType.BUNDLE_ADDED, controller_id=CONTROLLER, bundle_id=0, amount=5)

    events = reopened.read_events()
    assert [e.event_type for e in events] == ["controller_initialized", "bundle_added"]
    assert events[1].prev_hash == events[0].event_hash
    assert events[1].bundle_id == 0


def test_filters_by_bundle_and_mixed_case_controller(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.PAYMENT_COMPLETED, controller_id=CONTROLLER, bundle_id=0, amount=10)
    trail.log(EventType.PAYMENT_COMPLETED, controller_id=CONTROLLER, bundle_id=1, amount=15)

    mixed_case = "0x" + "AB" * 20
    events = trail.read_events(controller_id=mixed_case, bundle_id=1)
    assert [e.amount for e in events] == [15]


def test_summary_reports_per_bundle_payments(tmp_path):
    trail = _trail(tmp_path)
    trail.log(
        EventType.PAYMENT_COMPLETED,
        controller_id=CONTROLLER,
        bundle_id=0,
        amount=10,
        details={"last_paid": 1000},
    )
    trail.log(EventType.PAYMENT_COMPLETED, controller_id=CONTROLLER, bundle_id=1, amount=15)
    trail.log(
        EventType.TRIGGER_GATED,
        controller_id=CONTROLLER,
        bundle_id=0,
        success=False,
        reason="IntervalNotPassed: wait",
    )
    trail.log(EventType.TRIGGER_DENIED, controller_id="0x" + "01" * 20, success=False)

    summary = trail.summary(CONTROLLER)
    assert summary["total_events"] == 3
    assert summary["failures"] == 1
    assert summary["by_type"]["payment_completed"] == 2

    first = summary["bundles"][f"{CONTROLLER}/0"]
    assert first["payments"] == 1
    assert first["paid_total"] == 10
    assert first["last_paid_at"] == 1000
    assert first["last_gated_reason"] == "IntervalNotPassed: wait"
    assert summary["bundles"][f"{CONTROLLER}/1"]["paid_total"] == 15
