"""Tests for controller and bundle persistence."""

import pytest

from bundl.errors import StaleBundleError
from bundl.models import NEVER_PAID, Controller
from bundl.store import ControllerStore


CONTROLLER_ID = "0x" + "ab" * 20
OWNER = "0x" + "cd" * 20
FUNDING = "0x" + "ef" * 20
MINT = "0x" + "12" * 20


def _controller(**overrides):
    defaults = dict(
        controller_id=CONTROLLER_ID,
        owner=OWNER,
        funding_account=FUNDING,
        mint=MINT,
        created_at=1_700_000_000,
    )
    defaults.update(overrides)
    return Controller(**defaults)


class TestControllerStore:
    def test_create_if_absent(self, tmp_path):
        store = ControllerStore(tmp_path)
        created, was_created = store.create_controller_if_absent(_controller())
        again, created_again = store.create_controller_if_absent(_controller(funding_account="0x" + "99" * 20))

        assert was_created
        assert not created_again
        assert again.funding_account == FUNDING
        assert created.bundle_counter == 0

    def test_allocate_bundle_advances_counter(self, tmp_path):
        store = ControllerStore(tmp_path)
        store.create_controller_if_absent(_controller())

        first = store.allocate_bundle(CONTROLLER_ID, 10, 60)
        second = store.allocate_bundle(CONTROLLER_ID, 20, 120)

        assert (first.bundle_id, second.bundle_id) == (0, 1)
        assert store.get_controller(CONTROLLER_ID).bundle_counter == 2
        assert [b.bundle_id for b in store.list_bundles(CONTROLLER_ID)] == [0, 1]

    def test_allocate_requires_controller(self, tmp_path):
        store = ControllerStore(tmp_path)
        with pytest.raises(KeyError):
            store.allocate_bundle(CONTROLLER_ID, 10, 60)

    def test_record_payment_compare_and_set(self, tmp_path):
        store = ControllerStore(tmp_path)
        store.create_controller_if_absent(_controller())
        store.allocate_bundle(CONTROLLER_ID, 10, 60)

        updated = store.record_payment(CONTROLLER_ID, 0, expected_last_paid=NEVER_PAID, paid_at=1000, amount=10)
        assert updated.last_paid == 1000
        assert store.get_controller(CONTROLLER_ID).total_paid == 10

        with pytest.raises(StaleBundleError, match="modified concurrently"):
            store.record_payment(CONTROLLER_ID, 0, expected_last_paid=NEVER_PAID, paid_at=2000, amount=10)
        assert store.get_bundle(CONTROLLER_ID, 0).last_paid == 1000
        assert store.get_controller(CONTROLLER_ID).total_paid == 10

    def test_due_bundles(self, tmp_path):
        store = ControllerStore(tmp_path)
        store.create_controller_if_absent(_controller())
        store.allocate_bundle(CONTROLLER_ID, 10, 60)
        store.allocate_bundle(CONTROLLER_ID, 10, 60)
        store.record_payment(CONTROLLER_ID, 1, expected_last_paid=NEVER_PAID, paid_at=1000, amount=10)

        assert [b.bundle_id for b in store.due_bundles(1030)] == [0]
        assert [b.bundle_id for b in store.due_bundles(1060)] == [0, 1]

    def test_spending_cap_roundtrip(self, tmp_path):
        store = ControllerStore(tmp_path)
        store.create_controller_if_absent(_controller())
        assert store.set_spending_cap(CONTROLLER_ID, 500).spending_cap == 500
        assert store.set_spending_cap(CONTROLLER_ID, None).spending_cap is None
        with pytest.raises(KeyError):
            store.set_spending_cap("0x" + "00" * 20, 1)

    def test_records_survive_reopen(self, tmp_path):
        store = ControllerStore(tmp_path)
        store.create_controller_if_absent(_controller())
        store.allocate_bundle(CONTROLLER_ID, 10, 60)

        reopened = ControllerStore(tmp_path)
        assert reopened.get_controller(CONTROLLER_ID).bundle_counter == 1
        assert reopened.get_bundle(CONTROLLER_ID, 0).amount_per_interval == 10
        assert reopened.get_bundle(CONTROLLER_ID, 5) is None
