"""
Data model for the relay pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .errors import ValidationError
from .validation import (
    validate_address,
    validate_amount,
    validate_hex_payload,
    validate_tx_hash,
)


class AttestationStatus(str, Enum):
    """Attestation state as reported by the service."""

    PENDING = "pending"
    COMPLETE = "complete"

    @classmethod
    def from_service(cls, value: object) -> "AttestationStatus":
        # The service also reports intermediate states such as
        # "pending_confirmations"; only "complete" is usable.
        if value == cls.COMPLETE.value:
            return cls.COMPLETE
        return cls.PENDING


class RelayStage(str, Enum):
    """Named states of a payment batch."""

    CONFIGURING = "configuring"
    FUNDING = "funding"
    SUBMITTED = "submitted"
    ATTESTING = "attesting"
    ATTESTED = "attested"
    RELAYING = "relaying"
    DELIVERED = "delivered"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RelayStage.DELIVERED, RelayStage.FAILED)


class SettlementMode(str, Enum):
    """How the destination side completes the transfer."""

    HOOK = "hook"  # hook wrapper relay(message, attestation), auto-forwards
    PLAIN = "plain"  # MessageTransmitter receiveMessage(message, attestation)


@dataclass(frozen=True)
class RouteInfo:
    """Destination routing for one recipient of a payroll contract."""

    recipient: str
    destination_domain: int
    destination_token: str
    lending_enabled: bool = False

    @classmethod
    def create(
        cls,
        recipient: str,
        destination_domain: int,
        destination_token: str,
        lending_enabled: bool = False,
    ) -> "RouteInfo":
        """Build a validated route (addresses checksummed)."""
        if isinstance(destination_domain, bool) or not isinstance(destination_domain, int):
            raise ValidationError(f"Destination domain must be an integer, got {destination_domain!r}")
        if not 0 <= destination_domain < 2**32:
            raise ValidationError(f"Destination domain out of range: {destination_domain}")
        return cls(
            recipient=validate_address(recipient, "recipient"),
            destination_domain=destination_domain,
            destination_token=validate_address(destination_token, "destination token"),
            lending_enabled=bool(lending_enabled),
        )


@dataclass(frozen=True)
class PaymentRequest:
    """One payment in a batch."""

    recipient: str
    amount: int  # smallest token unit

    @classmethod
    def create(cls, recipient: str, amount: int) -> "PaymentRequest":
        return cls(
            recipient=validate_address(recipient, "recipient"),
            amount=validate_amount(amount),
        )


@dataclass(frozen=True)
class RelayEnvelope:
    """A burn message and the attestation authorizing its consumption."""

    source_tx_hash: str
    message: str
    attestation: str

    @classmethod
    def create(cls, source_tx_hash: str, message: str, attestation: str) -> "RelayEnvelope":
        """Build an envelope, rejecting malformed hashes and payloads."""
        return cls(
            source_tx_hash=validate_tx_hash(source_tx_hash),
            message=validate_hex_payload(message, "message"),
            attestation=validate_hex_payload(attestation, "attestation"),
        )

    @property
    def message_bytes(self) -> bytes:
        return bytes.fromhex(self.message[2:])

    @property
    def attestation_bytes(self) -> bytes:
        return bytes.fromhex(self.attestation[2:])


@dataclass
class PaymentBatch:
    """Everything the orchestrator needs to run one batch end to end."""

    payments: list[PaymentRequest]
    routes: list[RouteInfo] = field(default_factory=list)
    settlement_mode: SettlementMode = SettlementMode.HOOK
    fund_amount: Optional[int] = None
    verify_delivery: bool = False

    @property
    def total_amount(self) -> int:
        return sum(payment.amount for payment in self.payments)

    @property
    def recipients(self) -> list[str]:
        """Recipients in batch order, first occurrence only."""
        seen: dict[str, None] = {}
        for payment in self.payments:
            seen.setdefault(payment.recipient, None)
        return list(seen)


@dataclass(frozen=True)
class StageEvent:
    """One observable state transition."""

    run_id: str
    stage: RelayStage
    source_tx_hash: Optional[str] = None
    tx_hash: Optional[str] = None
    gas_used: Optional[int] = None
    detail: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class Failure:
    """Why a batch ended in the failed state."""

    kind: str
    message: str
    stage: RelayStage
    tx_hash: Optional[str] = None


@dataclass
class BatchOutcome:
    """Outcome record of one pipeline run."""

    run_id: str
    stage: RelayStage = RelayStage.CONFIGURING
    source_tx_hash: Optional[str] = None
    destination_tx_hashes: list[str] = field(default_factory=list)
    envelopes: list[RelayEnvelope] = field(default_factory=list)
    failure: Optional[Failure] = None
    events: list[StageEvent] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.stage is RelayStage.DELIVERED

    @property
    def last_stage_reached(self) -> RelayStage:
        """Last non-failed stage, the one to resume from."""
        if self.failure is not None:
            return self.failure.stage
        return self.stage
