"""Tests for the local token ledger stand-in."""

from concurrent.futures import ThreadPoolExecutor

import pytest
from eth_account import Account

from bundl.errors import LedgerAccountNotFoundError, LedgerError, TransferRejectedError
from bundl.ledger import LocalTokenLedger, associated_account_address


MINT = Account.create().address


def _funded(tmp_path, amount=1_000):
    ledger = LocalTokenLedger(tmp_path / "ledger.json")
    owner = Account.create().address
    source = ledger.open_account(owner, MINT).address
    ledger.mint_to(source, amount)
    dest = ledger.open_account(Account.create().address, MINT).address
    return ledger, owner, source, dest


class TestLocalTokenLedger:
    def test_open_account_is_deterministic_and_idempotent(self, tmp_path):
        ledger = LocalTokenLedger(tmp_path / "ledger.json")
        owner = Account.create().address
        first = ledger.open_account(owner, MINT)
        second = ledger.open_account(owner, MINT)
        assert first.address == second.address == associated_account_address(owner, MINT)
        assert first.amount == 0

    def test_owner_transfer(self, tmp_path):
        ledger, owner, source, dest = _funded(tmp_path)
        receipt = ledger.transfer(source, dest, 250, owner)
        assert receipt.amount == 250
        assert receipt.transfer_id.startswith("xfer-")
        assert ledger.get_balance(source) == 750
        assert ledger.get_balance(dest) == 250

    def test_delegate_transfer_consumes_allowance(self, tmp_path):
        ledger, owner, source, dest = _funded(tmp_path)
        delegate = Account.create().address
        ledger.approve(owner, source, delegate, 300)

        ledger.transfer(source, dest, 100, delegate)
        assert ledger.get_allowance(source, delegate) == 200
        assert ledger.get_delegate(source) == delegate.lower()

    def test_exhausted_allowance_clears_delegate(self, tmp_path):
        ledger, owner, source, dest = _funded(tmp_path)
        delegate = Account.create().address
        ledger.approve(owner, source, delegate, 100)
        ledger.transfer(source, dest, 100, delegate)
        assert ledger.get_delegate(source) is None
        assert ledger.get_allowance(source, delegate) == 0

    def test_delegate_cannot_exceed_allowance(self, tmp_path):
        ledger, owner, source, dest = _funded(tmp_path)
        delegate = Account.create().address
        ledger.approve(owner, source, delegate, 50)
        with pytest.raises(TransferRejectedError, match="allowance"):
            ledger.transfer(source, dest, 51, delegate)
        assert ledger.get_balance(source) == 1_000
        assert ledger.get_allowance(source, delegate) == 50

    def test_balance_checked_even_with_large_allowance(self, tmp_path):
        ledger, owner, source, dest = _funded(tmp_path, amount=10)
        delegate = Account.create().address
        ledger.approve(owner, source, delegate, 1_000)
        with pytest.raises(TransferRejectedError, match="Balance"):
            ledger.transfer(source, dest, 20, delegate)
        assert ledger.get_allowance(source, delegate) == 1_000

    def test_stranger_cannot_spend(self, tmp_path):
        ledger, _, source, dest = _funded(tmp_path)
        with pytest.raises(TransferRejectedError, match="may not spend"):
            ledger.transfer(source, dest, 1, Account.create().address)

    def test_only_owner_approves(self, tmp_path):
        ledger, _, source, _ = _funded(tmp_path)
        with pytest.raises(LedgerError):
            ledger.approve(Account.create().address, source, Account.create().address, 10)

    def test_unknown_account(self, tmp_path):
        ledger = LocalTokenLedger(tmp_path / "ledger.json")
        with pytest.raises(LedgerAccountNotFoundError):
            ledger.get_balance(Account.create().address)

    def test_state_survives_reopen(self, tmp_path):
        ledger, owner, source, dest = _funded(tmp_path)
        ledger.transfer(source, dest, 1, owner)
        reopened = LocalTokenLedger(tmp_path / "ledger.json")
        assert reopened.get_balance(dest) == 1

    def test_concurrent_delegate_transfers_never_overdraw(self, tmp_path):
        ledger, owner, source, dest = _funded(tmp_path, amount=100)
        delegate = Account.create().address
        ledger.approve(owner, source, delegate, 100)

        def attempt(_):
            try:
                ledger.transfer(source, dest, 7, delegate)
                return True
            except TransferRejectedError:
                return False

        with ThreadPoolExecutor(max_workers=10) as ex:
            outcomes = list(ex.map(attempt, range(30)))

        assert sum(outcomes) == 14
        assert ledger.get_balance(source) == 2
        assert ledger.get_balance(dest) == 98
