"""
Payroll Relayer

Carries cross-chain payroll payments from "burned on the source chain" to
"delivered on the destination chain": pays a batch through the payroll
contract, polls the attestation service for the burn message(s), and relays
them to the destination hook wrapper (or MessageTransmitter).

Usage:
    # Commit a recipient's route
    payroll-relayer set-route 0x... --domain 6 --token 0x...

    # Run a whole batch
    payroll-relayer pay plan.json

    # Resume a submitted batch in two steps
    payroll-relayer attest 0x<source tx hash>
    payroll-relayer relay --input attestation_data.json
"""

__version__ = "0.1.0"

from .attestation import AttestationClient
from .config import PayrollPlan, Settings
from .db import RelayJournal
from .deployments import DeploymentsAddressBook, StaticAddressBook
from .envelope import load_envelopes, save_envelopes
from .evm import ChainClient, ChainConfig
from .models import (
    AttestationStatus,
    BatchOutcome,
    PaymentBatch,
    PaymentRequest,
    RelayEnvelope,
    RelayStage,
    RouteInfo,
    SettlementMode,
    StageEvent,
)
from .orchestrator import RelayOrchestrator
from .routes import RouteRegistry

__all__ = [
    "__version__",
    "AttestationClient",
    "AttestationStatus",
    "BatchOutcome",
    "ChainClient",
    "ChainConfig",
    "DeploymentsAddressBook",
    "PaymentBatch",
    "PaymentRequest",
    "PayrollPlan",
    "RelayEnvelope",
    "RelayJournal",
    "RelayOrchestrator",
    "RelayStage",
    "RouteInfo",
    "RouteRegistry",
    "SettlementMode",
    "Settings",
    "StageEvent",
    "StaticAddressBook",
    "load_envelopes",
    "save_envelopes",
]
