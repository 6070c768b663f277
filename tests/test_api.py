"""Tests for the HTTP surface."""

import pytest
from eth_account import Account
from fastapi.testclient import TestClient

from bundl.api import PRINCIPAL_HEADER, create_app
from bundl.authority import TriggerAuthorityGate
from bundl.engine import AuthorizationEngine
from bundl.ledger import LocalTokenLedger
from bundl.models import derive_controller_id
from bundl.store import ControllerStore


MINT = Account.create().address
TRIGGER = Account.create().address
DAY = 86400


class FakeClock:
    def __init__(self, now: int):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def setup(tmp_path):
    ledger = LocalTokenLedger(tmp_path / "ledger.json")
    owner = Account.create().address
    funding = ledger.open_account(owner, MINT).address
    ledger.mint_to(funding, 100)
    ledger.approve(owner, funding, derive_controller_id(owner), 100)
    recipient = ledger.open_account(Account.create().address, MINT).address
    clock = FakeClock(1_700_000_000)
    engine = AuthorizationEngine(
        store=ControllerStore(tmp_path / "store"),
        ledger=ledger,
        gate=TriggerAuthorityGate([TRIGGER]),
        clock=clock,
    )
    client = TestClient(create_app(engine))
    return client, owner, funding, recipient, clock


def _init(client, owner, funding):
    response = client.post(
        "/controllers",
        json={"funding_account": funding, "mint": MINT},
        headers={PRINCIPAL_HEADER: owner},
    )
    assert response.status_code == 200
    return response.json()["controller_id"]


class TestApi:
    def test_full_flow(self, setup):
        client, owner, funding, recipient, clock = setup
        controller_id = _init(client, owner, funding)

        added = client.post(
            f"/controllers/{controller_id}/bundles",
            json={"amount_per_interval": 10, "interval": DAY},
            headers={PRINCIPAL_HEADER: owner},
        )
        assert added.status_code == 200
        assert added.json()["bundle_id"] == 0
        assert added.json()["state"] == "never_paid"

        paid = client.post(
            f"/controllers/{controller_id}/bundles/0/trigger",
            json={"recipient": recipient},
            headers={PRINCIPAL_HEADER: TRIGGER},
        )
        assert paid.status_code == 200
        assert paid.json()["last_paid"] == 1_700_000_000

        clock.now += 60
        gated = client.post(
            f"/controllers/{controller_id}/bundles/0/trigger",
            json={"recipient": recipient},
            headers={PRINCIPAL_HEADER: TRIGGER},
        )
        assert gated.status_code == 409
        assert gated.json()["error"] == "IntervalNotPassed"
        assert gated.headers["Retry-After"] == str(DAY - 60)

        listed = client.get(f"/controllers/{controller_id}/bundles")
        assert [b["last_paid"] for b in listed.json()] == [1_700_000_000]

    def test_reinitialize_is_idempotent(self, setup):
        client, owner, funding, _, _ = setup
        assert _init(client, owner, funding) == _init(client, owner, funding)

    def test_trigger_requires_authority(self, setup):
        client, owner, funding, recipient, _ = setup
        controller_id = _init(client, owner, funding)
        response = client.post(
            f"/controllers/{controller_id}/bundles/0/trigger",
            json={"recipient": recipient},
            headers={PRINCIPAL_HEADER: owner},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "Unauthorized"

    def test_missing_principal_header(self, setup):
        client, owner, funding, _, _ = setup
        response = client.post("/controllers", json={"funding_account": funding, "mint": MINT})
        assert response.status_code == 422

    def test_add_bundle_to_foreign_controller(self, setup):
        client, owner, funding, _, _ = setup
        controller_id = _init(client, owner, funding)
        response = client.post(
            f"/controllers/{controller_id}/bundles",
            json={"amount_per_interval": 10, "interval": DAY},
            headers={PRINCIPAL_HEADER: Account.create().address},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "NotOwner"

    def test_rejects_non_positive_amount(self, setup):
        client, owner, funding, _, _ = setup
        controller_id = _init(client, owner, funding)
        response = client.post(
            f"/controllers/{controller_id}/bundles",
            json={"amount_per_interval": 0, "interval": DAY},
            headers={PRINCIPAL_HEADER: owner},
        )
        assert response.status_code == 422

    def test_rejects_amount_beyond_storage_range(self, setup):
        client, owner, funding, _, _ = setup
        controller_id = _init(client, owner, funding)
        response = client.post(
            f"/controllers/{controller_id}/bundles",
            json={"amount_per_interval": 2**64 - 1, "interval": DAY},
            headers={PRINCIPAL_HEADER: owner},
        )
        assert response.status_code == 422
        assert response.json()["error"] == "InvalidBundle"

    def test_invalid_delegate(self, setup, tmp_path):
        client, _, _, _, _ = setup
        stranger = Account.create().address
        ledger = LocalTokenLedger(tmp_path / "ledger.json")
        account = ledger.open_account(stranger, MINT).address
        response = client.post(
            "/controllers",
            json={"funding_account": account, "mint": MINT},
            headers={PRINCIPAL_HEADER: stranger},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "InvalidDelegate"

    def test_unknown_bundle(self, setup):
        client, owner, funding, _, _ = setup
        controller_id = _init(client, owner, funding)
        response = client.get(f"/controllers/{controller_id}/bundles/7")
        assert response.status_code == 404
        assert response.json()["error"] == "BundleNotFound"
