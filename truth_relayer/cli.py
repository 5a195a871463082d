"""
CLI entry point for the Truth credential relayer.
"""

import json
import logging
import signal
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import structlog
import typer
from dotenv import load_dotenv
from pydantic import ValidationError

from .config import Settings, load_settings
from .errors import TruthRelayerError
from .models import Credential, LedgerEntry, TransactionType
from .runtime import Services, build_services

app = typer.Typer(
    name="truth-relayer",
    help="TRUTH credential issuance: credit ledger, mint relayer and confirmation watcher",
    add_completion=False,
)
account_app = typer.Typer(help="Issuer credit accounts")
app.add_typer(account_app, name="account")


class _State:
    env_file: Optional[Path] = None


_state = _State()


def configure_logging(json_logs: bool = False, verbose: bool = False) -> None:
    """Configure structlog once for the process."""
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if verbose else logging.INFO
        ),
    )


def _settings() -> Settings:
    return load_settings(_state.env_file)


def _services() -> Services:
    return build_services(_settings())


def _amount(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"Not a decimal amount: {value}")


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def _echo_entry(entry: LedgerEntry) -> None:
    typer.echo(
        f"  #{entry.id} {entry.created_at:%Y-%m-%d %H:%M:%S} "
        f"{entry.transaction_type.value:<10} {entry.amount:>10} "
        f"balance={entry.balance_after}"
        + (f" credential={entry.credential_id}" if entry.credential_id else "")
        + (f" ref={entry.payment_reference}" if entry.payment_reference else "")
        + (f" ({entry.description})" if entry.description else "")
    )


def _echo_credential(credential: Credential) -> None:
    typer.echo(f"Credential: {credential.id}")
    typer.echo(f"  Status: {credential.status.value}")
    typer.echo(f"  Issuer: {credential.issuer_id}")
    typer.echo(f"  Recipient: {credential.recipient_wallet_address}")
    if credential.issuer_ref_id:
        typer.echo(f"  Issuer ref: {credential.issuer_ref_id}")
    if credential.metadata_uri:
        typer.echo(f"  Metadata: {credential.metadata_uri}")
    if credential.tx_hash:
        typer.echo(f"  Tx: {credential.tx_hash} (nonce {credential.nonce})")
    for old in credential.superseded_tx_hashes:
        typer.echo(f"  Replaced tx: {old}")
    if credential.token_id is not None:
        typer.echo(f"  Token ID: {credential.token_id}")
    if credential.failure_reason:
        typer.echo(f"  Failure: {credential.failure_reason}")
    if credential.escalated_at:
        typer.echo(f"  Escalated at: {credential.escalated_at:%Y-%m-%d %H:%M:%S}")
    typer.echo(f"  Created: {credential.created_at:%Y-%m-%d %H:%M:%S}")
    if credential.confirmed_at:
        typer.echo(f"  Confirmed: {credential.confirmed_at:%Y-%m-%d %H:%M:%S}")
    if credential.revoked_at:
        typer.echo(f"  Revoked: {credential.revoked_at:%Y-%m-%d %H:%M:%S}")


@app.callback()
def _main(
    env_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to .env configuration file",
    ),
    json_logs: bool = typer.Option(False, "--json", help="Emit JSON log lines"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    configure_logging(json_logs=json_logs, verbose=verbose)
    _state.env_file = env_file


@app.command("init-db")
def init_db() -> None:
    """Create the database schema."""
    services = _services()
    typer.echo(f"Database ready: {services.database._mask_url(services.database.database_url)}")
    services.close()


@account_app.command("open")
def account_open(
    account_id: Optional[str] = typer.Argument(None, help="Account id (random UUID if omitted)"),
) -> None:
    """Open an issuer account with a zero balance."""
    services = _services()
    try:
        account = services.ledger.open_account(account_id)
        typer.echo(f"Account {account.id} balance={account.credits}")
    finally:
        services.close()


@app.command()
def purchase(
    account_id: str = typer.Argument(..., help="Issuer account id"),
    amount: str = typer.Argument(..., help="Credits to add"),
    payment_reference: str = typer.Option(..., "--ref", help="Payment processor reference"),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
) -> None:
    """Credit a confirmed payment to an issuer account."""
    services = _services()
    try:
        entry = services.issuance.purchase_credits(
            account_id, _amount(amount), payment_reference, description
        )
        typer.echo(f"Purchased {entry.amount} credits, balance={entry.balance_after}")
    except (TruthRelayerError, ValueError) as e:
        _fail(str(e))
    finally:
        services.close()


@app.command()
def adjust(
    account_id: str = typer.Argument(..., help="Issuer account id"),
    amount: str = typer.Argument(..., help="Signed correction, e.g. -2.50"),
    description: str = typer.Option(..., "--description", "-d", help="Reason for the correction"),
) -> None:
    """Apply an administrative balance correction."""
    services = _services()
    try:
        entry = services.ledger.adjust(account_id, _amount(amount), description)
        typer.echo(f"Adjusted by {entry.amount}, balance={entry.balance_after}")
    except (TruthRelayerError, ValueError) as e:
        _fail(str(e))
    finally:
        services.close()


@app.command()
def balance(account_id: str = typer.Argument(..., help="Issuer account id")) -> None:
    """Show an account's balance and whether it matches its entries."""
    services = _services()
    try:
        credits = services.issuance.get_balance(account_id)
        consistent = services.ledger.verify(account_id)
        typer.echo(f"Balance: {credits}")
        typer.echo(f"Ledger consistent: {'yes' if consistent else 'NO'}")
    except TruthRelayerError as e:
        _fail(str(e))
    finally:
        services.close()


@app.command()
def history(
    account_id: str = typer.Argument(..., help="Issuer account id"),
    transaction_type: Optional[TransactionType] = typer.Option(
        None, "--type", "-t", case_sensitive=False, help="Only entries of this type"
    ),
) -> None:
    """List ledger entries, newest first."""
    services = _services()
    try:
        entries = services.issuance.get_history(account_id, transaction_type)
        if not entries:
            typer.echo("No ledger entries.")
        for entry in entries:
            _echo_entry(entry)
    finally:
        services.close()


@app.command()
def issue(
    account_id: str = typer.Argument(..., help="Issuer account id"),
    recipient: str = typer.Argument(..., help="Recipient EVM address"),
    metadata: str = typer.Option(
        ..., "--metadata", "-m", help="Metadata as a JSON object, or @path/to/file.json"
    ),
    issuer_ref_id: Optional[str] = typer.Option(None, "--ref", help="Issuer's own reference"),
) -> None:
    """Reserve credit and queue a credential for minting."""
    if metadata.startswith("@"):
        metadata = Path(metadata[1:]).read_text()
    try:
        payload = json.loads(metadata)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Metadata is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise typer.BadParameter("Metadata must be a JSON object")

    services = _services()
    try:
        credential = services.issuance.issue_credential(
            account_id, recipient, payload, issuer_ref_id
        )
        typer.echo(f"Queued credential {credential.id}")
        typer.echo(f"Balance: {services.issuance.get_balance(account_id)}")
    except ValidationError as e:
        _fail("; ".join(err["msg"] for err in e.errors()))
    except TruthRelayerError as e:
        _fail(str(e))
    finally:
        services.close()


@app.command()
def show(credential_id: str = typer.Argument(..., help="Credential id")) -> None:
    """Show a credential."""
    services = _services()
    try:
        _echo_credential(services.issuance.get_credential(credential_id))
    except TruthRelayerError as e:
        _fail(str(e))
    finally:
        services.close()


@app.command("list")
def list_credentials(
    issuer: Optional[str] = typer.Option(None, "--issuer", help="Credentials issued by this account"),
    holder: Optional[str] = typer.Option(None, "--holder", help="Credentials held by this wallet"),
) -> None:
    """List credentials by issuer or by holder."""
    if bool(issuer) == bool(holder):
        raise typer.BadParameter("Pass exactly one of --issuer or --holder")
    services = _services()
    try:
        if issuer:
            found = services.issuance.list_issued(issuer)
        else:
            found = services.issuance.list_held(holder or "")
        if not found:
            typer.echo("No credentials.")
        for credential in found:
            token = f" token={credential.token_id}" if credential.token_id is not None else ""
            typer.echo(
                f"  {credential.id} {credential.status.value:<9} "
                f"{credential.recipient_wallet_address}{token}"
            )
    finally:
        services.close()


@app.command()
def revoke(credential_id: str = typer.Argument(..., help="Credential id")) -> None:
    """Revoke a confirmed credential."""
    services = _services()
    try:
        credential = services.issuance.revoke(credential_id)
        typer.echo(f"Revoked credential {credential.id} (token {credential.token_id})")
    except TruthRelayerError as e:
        _fail(str(e))
    finally:
        services.close()


@app.command()
def verify(token_id: int = typer.Argument(..., help="On-chain token id")) -> None:
    """Check whether a token id belongs to a minted credential."""
    services = _services()
    try:
        credential = services.issuance.verify_token(token_id)
        if credential is None:
            typer.echo(f"✗ Token {token_id} is not a known credential")
            raise typer.Exit(1)
        mark = "✓" if credential.status.value == "CONFIRMED" else "✗"
        typer.echo(f"{mark} Token {token_id}: {credential.status.value}")
        _echo_credential(credential)
    finally:
        services.close()


@app.command()
def relayer(
    once: bool = typer.Option(False, "--once", help="Run one cycle and exit"),
) -> None:
    """Run the relayer worker (QUEUED -> PENDING)."""
    services = _services()
    worker = services.relayer()
    try:
        if once:
            results = worker.run_once()
            for result in results:
                if result.success:
                    typer.echo(f"✓ {result.credential_id}: {result.tx_hash}")
                else:
                    typer.echo(f"✗ {result.credential_id}: {result.status.value} {result.error}")
            typer.echo(f"Processed {len(results)} credentials")
        else:
            typer.echo("Running relayer. Press Ctrl+C to stop.")
            try:
                worker.run()
            except KeyboardInterrupt:
                typer.echo("\nStopping relayer...")
                worker.stop()
    finally:
        services.close()


@app.command()
def watcher(
    once: bool = typer.Option(False, "--once", help="Run one cycle and exit"),
) -> None:
    """Run the confirmation watcher (PENDING -> CONFIRMED / FAILED)."""
    services = _services()
    task = services.watcher()
    try:
        if once:
            results = task.run_once()
            for result in results:
                detail = result.error or (
                    f"token {result.token_id}" if result.token_id is not None
                    else f"{result.confirmations} confirmations"
                )
                typer.echo(f"  {result.credential_id}: {result.status.value} ({detail})")
            typer.echo(f"Checked {len(results)} credentials")
        else:
            typer.echo("Running watcher. Press Ctrl+C to stop.")
            try:
                task.run()
            except KeyboardInterrupt:
                typer.echo("\nStopping watcher...")
                task.stop()
    finally:
        services.close()


@app.command()
def run() -> None:
    """Run the relayer and the watcher together until interrupted."""
    services = _services()
    tasks = [services.relayer().task, services.watcher().task]

    def _shutdown(signum: int, frame: Any) -> None:
        for task in tasks:
            task.stop(timeout=0)

    signal.signal(signal.SIGTERM, _shutdown)

    threads = [task.start() for task in tasks]
    typer.echo("Running relayer and watcher. Press Ctrl+C to stop.")
    try:
        for thread in threads:
            while thread.is_alive():
                thread.join(timeout=1.0)
    except KeyboardInterrupt:
        typer.echo("\nStopping...")
    finally:
        for task in tasks:
            task.stop()
        services.close()


@app.command()
def version() -> None:
    """Show the relayer version."""
    from truth_relayer import __version__
    typer.echo(f"truth-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
