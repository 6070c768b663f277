"""
Bundl CLI: delegated recurring payments.

Commands:
    bundl ledger       Manage local token accounts (open, mint, approve, balance)
    bundl controller   Initialize and inspect a subscription controller
    bundl bundle       Add and list bundles
    bundl trigger      Execute one bundle payment as a trigger authority
    bundl run-due      Run scheduler ticks over every due bundle
    bundl serve        Serve the HTTP API
    bundl audit        View audit trail
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from .amounts import amount_to_base_units, format_base_units, limit_to_base_units
from .audit import AuditTrail
from .authority import TriggerAuthorityGate
from .config import EngineConfig
from .engine import AuthorizationEngine
from .errors import BundlError, RetryableError
from .ledger import LocalTokenLedger, associated_account_address
from .models import derive_controller_id
from .scheduler import TriggerScheduler
from .store import ControllerStore
from . import __version__


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    if raw.isdigit():
        return int(raw)
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise click.BadParameter(f"Invalid duration: {value} (expected formats like 3600, 12h, 30d)")
    return int(raw[:-1]) * units[raw[-1]]


def _ledger(config: EngineConfig) -> LocalTokenLedger:
    return LocalTokenLedger(config.resolved_ledger_path)


def _engine(config: EngineConfig) -> AuthorizationEngine:
    return AuthorizationEngine(
        store=ControllerStore(config.store_dir),
        ledger=_ledger(config),
        gate=TriggerAuthorityGate(config.trigger_authorities),
        audit=AuditTrail(path=config.audit_path, key_path=config.audit_key_path),
    )


def _fail(error: Exception) -> None:
    code = getattr(error, "code", type(error).__name__)
    click.echo(f"❌ {code}: {error}", err=True)
    if isinstance(error, RetryableError):
        click.echo(f"   Retry after {int(error.retry_after)}s", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--home", type=click.Path(path_type=Path), default=None,
              help="State directory (default: $BUNDL_HOME or ~/.bundl)")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Enable info logging")
@click.pass_context
def main(ctx: click.Context, home: Optional[Path], verbose: bool):
    """Bundl: delegated recurring payments."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = EngineConfig.from_env()
    if home is not None:
        config.home = home
    ctx.obj = config


# ── Ledger ────────────────────────────────────────────────────────

@main.group("ledger")
def ledger_group():
    """Local token ledger for development."""
    pass


@ledger_group.command("open")
@click.option("--owner", required=True, help="Account owner address")
@click.option("--mint", required=True, help="Token mint address")
@click.pass_obj
def ledger_open(config: EngineConfig, owner: str, mint: str):
    """Open the owner's token account for a mint."""
    try:
        account = _ledger(config).open_account(owner, mint)
    except (BundlError, ValueError) as e:
        _fail(e)
    click.echo(account.address)


@ledger_group.command("mint")
@click.argument("account")
@click.argument("amount")
@click.pass_obj
def ledger_mint(config: EngineConfig, account: str, amount: str):
    """Credit AMOUNT (in whole tokens) to ACCOUNT."""
    try:
        updated = _ledger(config).mint_to(account, amount_to_base_units(amount))
    except (BundlError, ValueError) as e:
        _fail(e)
    click.echo(f"✅ {updated.address}: {format_base_units(updated.amount)}")


@ledger_group.command("approve")
@click.option("--owner", required=True, help="Account owner address")
@click.option("--account", "account", default=None, help="Token account (default: owner's account for --mint)")
@click.option("--mint", default=None, help="Token mint address")
@click.option("--amount", required=True, help="Allowance in whole tokens")
@click.pass_obj
def ledger_approve(config: EngineConfig, owner: str, account: Optional[str], mint: Optional[str], amount: str):
    """Delegate an allowance on the owner's account to their controller."""
    if account is None:
        if mint is None:
            raise click.UsageError("Pass --account or --mint")
        account = associated_account_address(owner, mint)
    try:
        controller_id = derive_controller_id(owner)
        updated = _ledger(config).approve(owner, account, controller_id, limit_to_base_units(amount))
    except (BundlError, ValueError) as e:
        _fail(e)
    click.echo(f"✅ Delegated {format_base_units(updated.delegated_amount)} to controller {controller_id}")


@ledger_group.command("balance")
@click.argument("account")
@click.pass_obj
def ledger_balance(config: EngineConfig, account: str):
    """Show balance and delegation of ACCOUNT."""
    try:
        info = _ledger(config).get_account(account)
    except (BundlError, ValueError) as e:
        _fail(e)
    click.echo(f"Account:   {info.address}")
    click.echo(f"Owner:     {info.owner}")
    click.echo(f"Balance:   {format_base_units(info.amount)}")
    click.echo(f"Delegate:  {info.delegate or '-'}")
    click.echo(f"Allowance: {format_base_units(info.delegated_amount)}")


# ── Controller ────────────────────────────────────────────────────

@main.group("controller")
def controller_group():
    """Subscription controller lifecycle."""
    pass


@controller_group.command("init")
@click.option("--owner", required=True, help="Owner address")
@click.option("--mint", required=True, help="Token mint address")
@click.option("--funding-account", default=None, help="Funding token account (default: owner's account for --mint)")
@click.pass_obj
def controller_init(config: EngineConfig, owner: str, mint: str, funding_account: Optional[str]):
    """Initialize (or re-confirm) the owner's controller."""
    try:
        funding = funding_account or associated_account_address(owner, mint)
        controller = _engine(config).initialize_controller(owner, funding, mint)
    except (BundlError, ValueError) as e:
        _fail(e)
    click.echo(f"✅ Controller: {controller.controller_id}")
    click.echo(f"   Owner:   {controller.owner}")
    click.echo(f"   Funding: {controller.funding_account}")
    click.echo(f"   Bundles: {controller.bundle_counter}")


@controller_group.command("show")
@click.option("--owner", required=True, help="Owner address")
@click.pass_obj
def controller_show(config: EngineConfig, owner: str):
    """Show the owner's controller as JSON."""
    try:
        controller = _engine(config).get_controller(owner)
    except ValueError as e:
        _fail(e)
    if controller is None:
        click.echo(f"❌ ControllerNotFound: no controller for {owner}", err=True)
        sys.exit(1)
    click.echo(json.dumps(controller.to_dict(), indent=2))


@controller_group.command("cap")
@click.option("--owner", required=True, help="Owner address")
@click.option("--amount", default=None, help="Aggregate cap in whole tokens (omit to clear)")
@click.pass_obj
def controller_cap(config: EngineConfig, owner: str, amount: Optional[str]):
    """Set or clear the aggregate spending cap across all bundles."""
    try:
        cap = limit_to_base_units(amount) if amount is not None else None
        controller = _engine(config).set_spending_cap(owner, cap)
    except (BundlError, ValueError) as e:
        _fail(e)
    shown = format_base_units(controller.spending_cap) if controller.spending_cap is not None else "none"
    click.echo(f"✅ Spending cap for {controller.controller_id}: {shown}")


# ── Bundles ───────────────────────────────────────────────────────

@main.group("bundle")
def bundle_group():
    """Recurring payment bundles."""
    pass


@bundle_group.command("add")
@click.option("--owner", required=True, help="Owner address")
@click.option("--amount", required=True, help="Amount per interval in whole tokens")
@click.option("--interval", required=True, help="Interval (seconds or 12h, 30d, ...)")
@click.pass_obj
def bundle_add(config: EngineConfig, owner: str, amount: str, interval: str):
    """Add a bundle under the owner's controller."""
    try:
        bundle = _engine(config).add_bundle(
            owner,
            amount_to_base_units(amount),
            _parse_duration_to_seconds(interval),
        )
    except (BundlError, ValueError) as e:
        _fail(e)
    click.echo(f"✅ Bundle {bundle.bundle_id} under {bundle.controller_id}")
    click.echo(f"   {format_base_units(bundle.amount_per_interval)} every {bundle.interval}s")


@bundle_group.command("list")
@click.option("--owner", required=True, help="Owner address")
@click.pass_obj
def bundle_list(config: EngineConfig, owner: str):
    """List the owner's bundles."""
    try:
        bundles = _engine(config).list_bundles(derive_controller_id(owner))
    except ValueError as e:
        _fail(e)
    if not bundles:
        click.echo("No bundles.")
        return
    for b in bundles:
        paid = "never" if b.last_paid == 0 else str(b.last_paid)
        click.echo(
            f"  #{b.bundle_id}  {format_base_units(b.amount_per_interval)} / {b.interval}s  "
            f"last paid: {paid}"
        )


# ── Trigger & scheduler ───────────────────────────────────────────

@main.command()
@click.option("--caller", required=True, help="Trigger authority address")
@click.option("--controller", "controller_id", required=True, help="Controller address")
@click.option("--bundle", "bundle_id", type=int, required=True, help="Bundle ID")
@click.option("--recipient", required=True, help="Recipient token account")
@click.pass_obj
def trigger(config: EngineConfig, caller: str, controller_id: str, bundle_id: int, recipient: str):
    """Execute one interval's payment for a bundle."""
    try:
        result = _engine(config).trigger(caller, controller_id, bundle_id, recipient)
    except (BundlError, ValueError) as e:
        _fail(e)
    click.echo(f"✅ Paid {format_base_units(result.amount)} to {result.recipient}")
    click.echo(f"   Transfer:  {result.transfer_id}")
    click.echo(f"   Last paid: {result.last_paid}")


@main.command("run-due")
@click.option("--caller", default=None, help="Trigger authority (default: first configured)")
@click.option("--recipient", default=None, help="Recipient account (default: $BUNDL_TREASURY_ACCOUNT)")
@click.option("--ticks", type=int, default=1, help="Number of ticks (0 = run forever)")
@click.pass_obj
def run_due(config: EngineConfig, caller: Optional[str], recipient: Optional[str], ticks: int):
    """Trigger every due bundle, once or on a polling loop."""
    caller = caller or (config.trigger_authorities[0] if config.trigger_authorities else None)
    recipient = recipient or config.treasury_account
    if caller is None:
        raise click.UsageError("No trigger authority: pass --caller or set BUNDL_TRIGGER_AUTHORITIES")
    if recipient is None:
        raise click.UsageError("No recipient: pass --recipient or set BUNDL_TREASURY_ACCOUNT")

    scheduler = TriggerScheduler(_engine(config), authority=caller, recipient_for=lambda _bundle: recipient)
    try:
        scheduler.run_forever(
            config.poll_seconds,
            max_ticks=ticks or None,
            on_report=lambda report: click.echo(json.dumps(report.to_dict(), indent=2)),
        )
    except BundlError as e:
        _fail(e)


@main.command()
@click.option("--host", default="127.0.0.1")
@click.option("--port", type=int, default=8420)
@click.pass_obj
def serve(config: EngineConfig, host: str, port: int):
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(_engine(config)), host=host, port=port)


@main.command()
@click.option("--controller", "controller_id", default=None, help="Filter by controller")
@click.option("--bundle", "bundle_id", type=int, default=None, help="Filter by bundle ID")
@click.option("--limit", type=int, default=20)
@click.option("--summary", is_flag=True, default=False, help="Show per-bundle totals instead of events")
@click.option("--verify", is_flag=True, default=False, help="Only verify the hash chain")
@click.pass_obj
def audit(
    config: EngineConfig,
    controller_id: Optional[str],
    bundle_id: Optional[int],
    limit: int,
    summary: bool,
    verify: bool,
):
    """View the audit trail."""
    trail = AuditTrail(path=config.audit_path, key_path=config.audit_key_path)
    try:
        if verify:
            click.echo(f"✅ Audit chain intact ({trail.verify()} events)")
            return
        if summary:
            click.echo(json.dumps(trail.summary(controller_id), indent=2))
            return
        events = trail.read_events(controller_id=controller_id, bundle_id=bundle_id, limit=limit)
    except (BundlError, ValueError) as e:
        _fail(e)
    for event in events:
        click.echo(event.to_json())


if __name__ == "__main__":
    main()
