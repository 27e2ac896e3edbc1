"""
Relay pipeline - drives a payment batch from the source chain to delivery.

Stages:
    configuring -> funding -> submitted -> attesting -> attested -> relaying -> delivered
with ``failed`` reachable from any non-terminal stage.

Only the attestation poll retries. State-changing transactions (funding,
batch payment, relay) are never retried automatically: a blind retry risks a
duplicate effect, so their failures end the run and the operator resumes from
the last recorded stage.
"""

import asyncio
import uuid
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, Sequence, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .attestation import AttestationClient
from .db import RelayJournal
from .envelope import save_envelopes
from .errors import (
    ConfigError,
    DeliveryUnverifiedError,
    InsufficientBalanceError,
    RelayError,
    RelayRevertedError,
    TransactionRevertedError,
    UnroutedRecipientError,
    ValidationError,
)
from .evm import ChainClient, count_token_transfers, tx_hash_hex
from .models import (
    BatchOutcome,
    Failure,
    PaymentBatch,
    RelayEnvelope,
    RelayStage,
    SettlementMode,
    StageEvent,
)
from .routes import RouteRegistry
from .validation import format_units, validate_address, validate_tx_hash

logger = structlog.get_logger()

StageListener = Callable[[StageEvent], None]


class RelayOrchestrator:
    """
    Sequential relay pipeline over one source and one destination chain.

    The orchestrator keeps no per-batch state on itself; each run works on
    its own BatchOutcome, so independent batches can run concurrently.
    """

    def __init__(
        self,
        attestations: AttestationClient,
        source: Optional[ChainClient] = None,
        destination: Optional[ChainClient] = None,
        registry: Optional[RouteRegistry] = None,
        token_address: Optional[str] = None,
        relay_targets: Optional[Mapping[SettlementMode, str]] = None,
        source_domain: int = 0,
        token_decimals: int = 6,
        journal: Optional[RelayJournal] = None,
        envelope_path: Optional[Union[str, Path]] = None,
        listener: Optional[StageListener] = None,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.source = source
        self.destination = destination
        self.registry = registry
        self.attestations = attestations
        self.token_address = validate_address(token_address, "token address") if token_address else None
        self.relay_targets = {
            SettlementMode(mode): validate_address(address, f"{SettlementMode(mode).value} relay target")
            for mode, address in (relay_targets or {}).items()
        }
        self.source_domain = source_domain
        self.token_decimals = token_decimals
        self.journal = journal
        self.envelope_path = envelope_path
        self.listener = listener
        self.stop_event = stop_event

    # Entry points

    async def run(self, batch: PaymentBatch) -> BatchOutcome:
        """Full pipeline: configure, fund, pay, attest, relay."""
        outcome = BatchOutcome(run_id=str(uuid.uuid4()))
        try:
            if not batch.payments:
                raise ValidationError("Batch has no payments")
            if self.source is None or self.destination is None or self.registry is None or not self.token_address:
                raise ConfigError("A full run needs source and destination chains, a route registry and a token address")
            self._relay_target(batch.settlement_mode)

            await self._transition(
                outcome,
                RelayStage.CONFIGURING,
                detail=f"{len(batch.payments)} payment(s), mode={batch.settlement_mode.value}",
            )
            await self._configure(outcome, batch)

            await self._transition(outcome, RelayStage.FUNDING)
            await self._fund(outcome, batch)

            await self._submit(outcome, batch)
            await self._attest(outcome, expected_messages=len(batch.payments))

            verify_tokens = await self._delivery_tokens(batch) if batch.verify_delivery else None
            await self._relay(outcome, batch.settlement_mode, verify_tokens)
        except RelayError as e:
            await self._fail(outcome, e)
        except Exception as e:
            logger.error("pipeline_error", run_id=outcome.run_id, stage=outcome.stage.value, error=str(e))
            await self._fail(outcome, e)
        return outcome

    async def run_all(self, batches: Iterable[PaymentBatch]) -> list[BatchOutcome]:
        """Run independent batches concurrently."""
        return list(await asyncio.gather(*(self.run(batch) for batch in batches)))

    async def attest(self, source_tx_hash: str, expected_messages: int = 1) -> BatchOutcome:
        """Resume a submitted batch: poll for its attestation and persist it."""
        outcome = BatchOutcome(run_id=str(uuid.uuid4()), stage=RelayStage.SUBMITTED)
        try:
            outcome.source_tx_hash = validate_tx_hash(source_tx_hash)
            await self._attest(outcome, expected_messages=expected_messages)
        except RelayError as e:
            await self._fail(outcome, e)
        except Exception as e:
            logger.error("pipeline_error", run_id=outcome.run_id, stage=outcome.stage.value, error=str(e))
            await self._fail(outcome, e)
        return outcome

    async def resume(
        self,
        envelopes: Sequence[RelayEnvelope],
        settlement_mode: SettlementMode = SettlementMode.HOOK,
        verify_tokens: Optional[Iterable[str]] = None,
    ) -> BatchOutcome:
        """Relay previously persisted envelopes without polling again."""
        outcome = BatchOutcome(run_id=str(uuid.uuid4()), stage=RelayStage.ATTESTED)
        try:
            if not envelopes:
                raise ValidationError("No envelopes to relay")
            source_tx_hash = envelopes[0].source_tx_hash
            if any(env.source_tx_hash != source_tx_hash for env in envelopes):
                raise ValidationError("Envelopes belong to different source transactions")

            outcome.source_tx_hash = source_tx_hash
            outcome.envelopes = list(envelopes)
            await self._transition(outcome, RelayStage.ATTESTED, detail=f"{len(envelopes)} message(s) loaded")

            tokens = {validate_address(t, "token") for t in verify_tokens} if verify_tokens is not None else None
            await self._relay(outcome, settlement_mode, tokens)
        except RelayError as e:
            await self._fail(outcome, e)
        except Exception as e:
            logger.error("pipeline_error", run_id=outcome.run_id, stage=outcome.stage.value, error=str(e))
            await self._fail(outcome, e)
        return outcome

    def artifact_path(self, source_tx_hash: str) -> Optional[Path]:
        """Where the attestation artifact for a source transaction is written."""
        if self.envelope_path is None:
            return None
        return Path(str(self.envelope_path).format(tx_hash=source_tx_hash))

    # Stages

    async def _configure(self, outcome: BatchOutcome, batch: PaymentBatch) -> None:
        for route in batch.routes:
            receipt = await self.registry.set_route(route)
            await self._emit(
                outcome,
                RelayStage.CONFIGURING,
                tx_hash=tx_hash_hex(receipt["transactionHash"]),
                gas_used=receipt["gasUsed"],
                detail=f"route set for {route.recipient} (domain {route.destination_domain})",
            )

        missing = await self.registry.unrouted(batch.recipients)
        if missing:
            raise UnroutedRecipientError(missing)

    async def _fund(self, outcome: BatchOutcome, batch: PaymentBatch) -> None:
        payroll = self.registry.payroll_address

        if batch.fund_amount:
            signer = self.source.address
            available = await self.source.token_balance(self.token_address, signer)
            if available < batch.fund_amount:
                raise InsufficientBalanceError(signer, batch.fund_amount, available)

            receipt = await self.source.transfer_token(self.token_address, payroll, batch.fund_amount)
            await self._emit(
                outcome,
                RelayStage.FUNDING,
                tx_hash=tx_hash_hex(receipt["transactionHash"]),
                gas_used=receipt["gasUsed"],
                detail=f"payroll funded with {format_units(batch.fund_amount, self.token_decimals)}",
            )

        required = batch.total_amount
        balance = await self.source.token_balance(self.token_address, payroll)
        logger.info(
            "payroll_balance_checked",
            run_id=outcome.run_id,
            payroll=payroll,
            balance=format_units(balance, self.token_decimals),
            required=format_units(required, self.token_decimals),
        )
        if balance < required:
            raise InsufficientBalanceError(payroll, required, balance)

    async def _submit(self, outcome: BatchOutcome, batch: PaymentBatch) -> None:
        receipt = await self.source.batch_pay(self.registry.payroll_address, batch.payments)
        outcome.source_tx_hash = validate_tx_hash(tx_hash_hex(receipt["transactionHash"]))
        await self._transition(
            outcome,
            RelayStage.SUBMITTED,
            tx_hash=outcome.source_tx_hash,
            gas_used=receipt["gasUsed"],
            detail=f"batch of {len(batch.payments)} totalling {format_units(batch.total_amount, self.token_decimals)}",
        )

    async def _attest(self, outcome: BatchOutcome, expected_messages: int) -> None:
        await self._transition(outcome, RelayStage.ATTESTING, tx_hash=outcome.source_tx_hash)

        envelopes = await self.attestations.fetch_all(
            outcome.source_tx_hash,
            self.source_domain,
            expected_messages=expected_messages,
            stop_event=self.stop_event,
        )
        outcome.envelopes = envelopes

        path = self.artifact_path(outcome.source_tx_hash)
        if path is not None:
            save_envelopes(path, envelopes)

        await self._transition(
            outcome,
            RelayStage.ATTESTED,
            tx_hash=outcome.source_tx_hash,
            detail=f"{len(envelopes)} message(s)" + (f", saved to {path}" if path else ""),
        )

    async def _relay(
        self,
        outcome: BatchOutcome,
        mode: SettlementMode,
        verify_tokens: Optional[set[str]],
    ) -> None:
        if self.destination is None:
            raise ConfigError("No destination chain configured")
        target = self._relay_target(mode)
        await self._transition(outcome, RelayStage.RELAYING, detail=f"mode={mode.value} target={target}")

        submitted: set[tuple[str, str]] = set()
        for envelope in outcome.envelopes:
            key = (envelope.message, envelope.attestation)
            if key in submitted:
                logger.info("relay_duplicate_skipped", run_id=outcome.run_id, message=envelope.message[:42])
                continue

            try:
                receipt = await self.destination.relay_message(target, envelope, mode)
            except TransactionRevertedError as e:
                raise RelayRevertedError(e.reason, tx_hash=e.tx_hash) from e
            submitted.add(key)

            tx_hash = tx_hash_hex(receipt["transactionHash"])
            outcome.destination_tx_hashes.append(tx_hash)
            await self._emit(
                outcome,
                RelayStage.RELAYING,
                tx_hash=tx_hash,
                gas_used=receipt["gasUsed"],
                detail=f"message relayed ({len(outcome.destination_tx_hashes)}/{len(outcome.envelopes)})",
            )

            if verify_tokens is not None:
                if not any(count_token_transfers(receipt, token) for token in verify_tokens):
                    raise DeliveryUnverifiedError(
                        f"Relay {tx_hash} forwarded nothing: no non-mint Transfer of destination token(s) {', '.join(sorted(verify_tokens))}",
                        stage=RelayStage.RELAYING.value,
                        tx_hash=tx_hash,
                    )

        await self._transition(
            outcome,
            RelayStage.DELIVERED,
            tx_hash=outcome.destination_tx_hashes[-1] if outcome.destination_tx_hashes else None,
            detail=f"{len(outcome.destination_tx_hashes)} relay transaction(s)",
        )

    # Helpers

    def _relay_target(self, mode: SettlementMode) -> str:
        try:
            return self.relay_targets[mode]
        except KeyError:
            raise ConfigError(f"No relay target configured for settlement mode '{mode.value}'") from None

    async def _delivery_tokens(self, batch: PaymentBatch) -> set[str]:
        tokens = set()
        for recipient in batch.recipients:
            route = await self.registry.get_route(recipient)
            if route is not None:
                tokens.add(route.destination_token)
        return tokens

    async def _transition(self, outcome: BatchOutcome, stage: RelayStage, **details: object) -> None:
        outcome.stage = stage
        await self._emit(outcome, stage, **details)

    async def _emit(
        self,
        outcome: BatchOutcome,
        stage: RelayStage,
        tx_hash: Optional[str] = None,
        gas_used: Optional[int] = None,
        detail: Optional[str] = None,
        swallow_journal_errors: bool = False,
    ) -> None:
        event = StageEvent(
            run_id=outcome.run_id,
            stage=stage,
            source_tx_hash=outcome.source_tx_hash,
            tx_hash=tx_hash,
            gas_used=gas_used,
            detail=detail,
        )
        outcome.events.append(event)

        logger.info(
            "stage_transition",
            run_id=event.run_id,
            stage=stage.value,
            source_tx_hash=event.source_tx_hash,
            tx_hash=tx_hash,
            gas_used=gas_used,
            detail=detail,
        )
        await self._record(event, swallow_journal_errors=swallow_journal_errors)
        if self.listener is not None:
            self.listener(event)

    async def _record(self, event: StageEvent, swallow_journal_errors: bool = False) -> None:
        """Journal write, off the event loop."""
        if self.journal is None:
            return
        try:
            await asyncio.to_thread(self.journal.record, event)
        except SQLAlchemyError as e:
            if not swallow_journal_errors:
                raise
            logger.error("journal_write_failed", run_id=event.run_id, stage=event.stage.value, error=str(e))

    async def _fail(self, outcome: BatchOutcome, error: Exception) -> None:
        stage_reached = outcome.stage
        if isinstance(error, RelayError):
            kind, message = error.kind, error.message
            tx_hash = error.tx_hash or outcome.source_tx_hash
        else:
            kind, message = "Error", str(error) or error.__class__.__name__
            tx_hash = outcome.source_tx_hash

        outcome.failure = Failure(kind=kind, message=message, stage=stage_reached, tx_hash=tx_hash)
        outcome.stage = RelayStage.FAILED

        logger.error(
            "pipeline_failed",
            run_id=outcome.run_id,
            stage_reached=stage_reached.value,
            kind=kind,
            error=message,
            source_tx_hash=outcome.source_tx_hash,
            tx_hash=tx_hash,
        )
        # Journal errors on the failure record are logged, not raised.
        await self._emit(
            outcome,
            RelayStage.FAILED,
            tx_hash=tx_hash,
            detail=f"{kind}: {message}",
            swallow_journal_errors=True,
        )
