"""
Error taxonomy for the relay pipeline.

Every error carries the stage reached and the transaction hash (if any) so an
operator can resume a stalled batch from the last observed state.
"""

from typing import Optional, Sequence


class RelayError(Exception):
    """Base class for pipeline errors."""

    kind = "Error"

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ):
        self.message = message
        self.stage = stage
        self.tx_hash = tx_hash
        super().__init__(message)


class ValidationError(RelayError):
    """Malformed input. Never sent over the network."""

    kind = "ValidationError"


class ConfigError(ValidationError):
    """Configuration data is invalid or missing."""

    kind = "ConfigError"


class AddressResolutionError(RelayError):
    """Deployment lookup failed (identifier not found or malformed address)."""

    kind = "AddressResolutionError"

    def __init__(self, deployment_id: str, message: str, source: Optional[str] = None):
        self.deployment_id = deployment_id
        self.source = source
        super().__init__(message)


class TransportError(RelayError):
    """Network or service fault talking to the attestation service."""

    kind = "TransportError"


class AttestationTimeoutError(RelayError):
    """Attestation polling budget exhausted."""

    kind = "AttestationTimeout"

    def __init__(self, tx_hash: str, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Failed to retrieve complete attestation for {tx_hash} after {attempts} attempts",
            stage="attesting",
            tx_hash=tx_hash,
        )


class AttestationCancelledError(RelayError):
    """Polling stopped by a shutdown signal."""

    kind = "AttestationCancelled"

    def __init__(self, tx_hash: str, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"Attestation polling for {tx_hash} cancelled after {attempts} attempts",
            stage="attesting",
            tx_hash=tx_hash,
        )


class UnroutedRecipientError(RelayError):
    """One or more batch recipients have no committed route."""

    kind = "UnroutedRecipient"

    def __init__(self, recipients: Sequence[str]):
        self.recipients = list(recipients)
        super().__init__(
            f"No route configured for recipient(s): {', '.join(self.recipients)}",
            stage="configuring",
        )


class InsufficientBalanceError(RelayError):
    """Token balance is below what the next transaction needs."""

    kind = "InsufficientBalance"

    def __init__(self, holder: str, required: int, available: int):
        self.holder = holder
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance for {holder}: required {required}, available {available}",
            stage="funding",
        )


class TransactionRevertedError(RelayError):
    """A state-changing transaction was rejected on-chain."""

    kind = "TransactionReverted"

    def __init__(
        self,
        reason: str,
        tx_hash: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        self.reason = reason
        super().__init__(f"Transaction reverted: {reason}", stage=stage, tx_hash=tx_hash)


class RelayRevertedError(TransactionRevertedError):
    """The destination-chain relay call reverted."""

    kind = "RelayReverted"

    def __init__(self, reason: str, tx_hash: Optional[str] = None):
        super().__init__(reason, tx_hash=tx_hash, stage="relaying")
        self.message = f"Relay reverted: {reason}"
        self.args = (self.message,)


class ReceiptTimeoutError(RelayError):
    """A sent transaction was not mined within the receipt timeout."""

    kind = "ReceiptTimeout"


class DeliveryUnverifiedError(RelayError):
    """The relay receipt shows no token movement on the destination chain."""

    kind = "DeliveryUnverified"
