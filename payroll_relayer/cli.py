"""
CLI entry point for the payroll relayer.
"""

import asyncio
from pathlib import Path
from typing import List, NoReturn, Optional

import structlog
import typer
from dotenv import load_dotenv

from .attestation import AttestationClient
from .config import PayrollPlan, Settings
from .db import RelayJournal
from .deployments import DeploymentsAddressBook, resolve_optional
from .envelope import load_envelopes
from .errors import ConfigError, RelayError
from .evm import ChainClient, tx_hash_hex
from .models import BatchOutcome, RouteInfo, SettlementMode
from .orchestrator import RelayOrchestrator
from .routes import RouteRegistry
from .validation import validate_tx_hash

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(
    name="payroll-relayer",
    help="Cross-chain payroll relay pipeline",
    add_completion=False,
)

ConfigOption = typer.Option(None, "--config", "-c", help="Path to .env configuration file")


def load_settings(config_path: Optional[Path]) -> Settings:
    """Load settings, optionally from a specific .env file."""
    return Settings(_env_file=config_path) if config_path else Settings()


def _payroll_address(settings: Settings) -> str:
    book = DeploymentsAddressBook(settings.deployments_dir)
    return resolve_optional(
        book,
        settings.payroll_deployment_id,
        settings.source_chain_id,
        override=settings.payroll_address,
    )


def _relay_target(settings: Settings, mode: SettlementMode) -> str:
    if mode is SettlementMode.PLAIN:
        if not settings.message_transmitter_address:
            raise ConfigError("MESSAGE_TRANSMITTER_ADDRESS is required for plain settlement mode")
        return settings.message_transmitter_address

    book = DeploymentsAddressBook(settings.deployments_dir)
    return resolve_optional(
        book,
        settings.hook_deployment_id,
        settings.destination_chain_id,
        override=settings.hook_wrapper_address,
    )


def _attestation_client(settings: Settings) -> AttestationClient:
    return AttestationClient(
        api_url=settings.attestation_api_url,
        poll_interval=settings.attestation_poll_interval_seconds,
        max_attempts=settings.attestation_max_attempts,
        request_timeout=settings.attestation_request_timeout_seconds,
    )


def _build_orchestrator(
    settings: Settings,
    attestations: AttestationClient,
    mode: SettlementMode,
    needs_source: bool = True,
) -> RelayOrchestrator:
    """Resolve addresses first so lookup failures happen before any chain call."""
    payroll = _payroll_address(settings) if needs_source else None
    target = _relay_target(settings, mode)

    source = ChainClient(settings.source_chain(), settings.private_key)
    destination = ChainClient(settings.destination_chain(), settings.private_key)
    registry = RouteRegistry(source, payroll) if payroll else None

    return RelayOrchestrator(
        source=source,
        destination=destination,
        registry=registry,
        attestations=attestations,
        token_address=settings.source_token_address,
        relay_targets={mode: target},
        source_domain=settings.source_domain,
        token_decimals=settings.token_decimals,
        journal=RelayJournal(settings.database_url),
        envelope_path=settings.envelope_path,
    )


def _report(outcome: BatchOutcome) -> None:
    """Print the outcome record and exit non-zero on failure."""
    for event in outcome.events:
        line = f"  [{event.stage.value}]"
        if event.tx_hash:
            line += f" tx={event.tx_hash}"
        if event.gas_used is not None:
            line += f" gas={event.gas_used}"
        if event.detail:
            line += f" {event.detail}"
        typer.echo(line)

    typer.echo("")
    typer.echo(f"Run: {outcome.run_id}")
    if outcome.source_tx_hash:
        typer.echo(f"Source transaction: {outcome.source_tx_hash}")
    for tx_hash in outcome.destination_tx_hashes:
        typer.echo(f"Destination transaction: {tx_hash}")

    if outcome.failure is not None:
        typer.echo(
            f"✗ Failed at {outcome.failure.stage.value}: {outcome.failure.kind}: {outcome.failure.message}",
            err=True,
        )
        raise typer.Exit(1)
    typer.echo(f"✓ {outcome.stage.value}")


def _fail(error: RelayError) -> NoReturn:
    typer.echo(f"Error: {error.message}", err=True)
    raise typer.Exit(1)


@app.command("set-route")
def set_route(
    recipient: str = typer.Argument(..., help="Recipient address"),
    destination_domain: int = typer.Option(..., "--domain", "-d", help="Destination domain (e.g. 6 for Base)"),
    destination_token: str = typer.Option(..., "--token", "-t", help="Stablecoin address on the destination chain"),
    lending_enabled: bool = typer.Option(False, "--lending/--no-lending", help="Deposit into the lending venue"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Commit a recipient's route on the payroll contract.
    """
    settings = load_settings(config_path)

    async def _set() -> None:
        route = RouteInfo.create(recipient, destination_domain, destination_token, lending_enabled)
        registry = RouteRegistry(ChainClient(settings.source_chain(), settings.private_key), _payroll_address(settings))
        receipt = await registry.set_route(route)
        typer.echo(f"✓ Route set for {route.recipient}")
        typer.echo(f"  Transaction: {tx_hash_hex(receipt['transactionHash'])}")
        typer.echo(f"  Gas used: {receipt['gasUsed']}")

    try:
        asyncio.run(_set())
    except RelayError as e:
        _fail(e)


@app.command("get-route")
def get_route(
    recipient: str = typer.Argument(..., help="Recipient address"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Show a recipient's committed route.
    """
    settings = load_settings(config_path)

    async def _get() -> Optional[RouteInfo]:
        registry = RouteRegistry(ChainClient(settings.source_chain()), _payroll_address(settings))
        return await registry.get_route(recipient)

    try:
        route = asyncio.run(_get())
    except RelayError as e:
        _fail(e)

    if route is None:
        typer.echo(f"No route configured for {recipient}")
        raise typer.Exit(1)

    typer.echo(f"Recipient: {route.recipient}")
    typer.echo(f"  Destination domain: {route.destination_domain}")
    typer.echo(f"  Destination token: {route.destination_token}")
    typer.echo(f"  Lending enabled: {route.lending_enabled}")


@app.command()
def pay(
    plan_path: Path = typer.Argument(..., help="Payroll plan JSON file"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Run a payroll batch end to end: routes, funding, payment, attestation, relay.
    """
    settings = load_settings(config_path)

    async def _pay() -> BatchOutcome:
        plan = PayrollPlan.from_file(plan_path)
        batch = plan.to_batch()
        async with _attestation_client(settings) as attestations:
            orchestrator = _build_orchestrator(settings, attestations, batch.settlement_mode)
            return await orchestrator.run(batch)

    try:
        outcome = asyncio.run(_pay())
    except RelayError as e:
        _fail(e)
    except KeyboardInterrupt:
        typer.echo("\nStopped. Check `status` with the source transaction hash to resume.", err=True)
        raise typer.Exit(130)
    _report(outcome)


@app.command()
def attest(
    tx_hash: str = typer.Argument(..., help="Source transaction hash (0x + 64 hex)"),
    messages: int = typer.Option(1, "--messages", "-m", help="Number of burn messages expected"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Artifact path (defaults to ENVELOPE_PATH)"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Give up after this many seconds"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Poll for the attestation of a submitted batch and write the artifact.
    """
    settings = load_settings(config_path)
    try:
        tx_hash = validate_tx_hash(tx_hash)
    except RelayError as e:
        _fail(e)

    async def _attest() -> BatchOutcome:
        async with _attestation_client(settings) as attestations:
            orchestrator = RelayOrchestrator(
                attestations=attestations,
                source_domain=settings.source_domain,
                journal=RelayJournal(settings.database_url),
                envelope_path=output or settings.envelope_path,
            )
            return await asyncio.wait_for(orchestrator.attest(tx_hash, expected_messages=messages), timeout)

    try:
        outcome = asyncio.run(_attest())
    except asyncio.TimeoutError:
        typer.echo(f"Error: no attestation for {tx_hash} within {timeout}s", err=True)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        typer.echo("\nPolling stopped.", err=True)
        raise typer.Exit(130)
    _report(outcome)


@app.command()
def relay(
    input_path: Optional[Path] = typer.Option(None, "--input", "-i", help="Artifact path (defaults to ENVELOPE_PATH)"),
    mode: SettlementMode = typer.Option(SettlementMode.HOOK, "--mode", help="Settlement mode"),
    verify_token: Optional[List[str]] = typer.Option(
        None, "--verify-token", help="Require a Transfer from this destination token in the relay receipt"
    ),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Relay a persisted attestation artifact on the destination chain.
    """
    settings = load_settings(config_path)

    async def _relay() -> BatchOutcome:
        path = input_path or Path(settings.envelope_path)
        envelopes = load_envelopes(path)
        async with _attestation_client(settings) as attestations:
            orchestrator = _build_orchestrator(settings, attestations, mode, needs_source=False)
            return await orchestrator.resume(envelopes, settlement_mode=mode, verify_tokens=verify_token or None)

    try:
        outcome = asyncio.run(_relay())
    except RelayError as e:
        _fail(e)
    _report(outcome)


@app.command()
def status(
    tx_hash: str = typer.Argument(..., help="Source transaction hash"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Show the last recorded stage for a source transaction.
    """
    settings = load_settings(config_path)
    try:
        tx_hash = validate_tx_hash(tx_hash)
    except RelayError as e:
        _fail(e)

    journal = RelayJournal(settings.database_url)
    event = journal.latest(tx_hash)
    if event is None:
        typer.echo(f"No recorded runs for {tx_hash}")
        raise typer.Exit(1)

    typer.echo(f"Source transaction: {tx_hash}")
    typer.echo(f"  Last stage: {event.stage.value}")
    typer.echo(f"  Run: {event.run_id}")
    typer.echo(f"  At: {event.created_at.isoformat()}")
    if event.tx_hash:
        typer.echo(f"  Transaction: {event.tx_hash}")
    if event.detail:
        typer.echo(f"  Detail: {event.detail}")

    for past in journal.events_for_run(event.run_id):
        typer.echo(f"    {past.created_at.isoformat()} {past.stage.value} {past.detail or ''}".rstrip())


@app.command()
def version() -> None:
    """Show the relayer version."""
    from payroll_relayer import __version__
    typer.echo(f"payroll-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    load_dotenv()
    app()


if __name__ == "__main__":
    main()
