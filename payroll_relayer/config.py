"""
Configuration: environment settings and payroll plans.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError
from .evm import ChainConfig
from .models import PaymentBatch, PaymentRequest, RouteInfo, SettlementMode
from .validation import to_base_units

# Token amounts in plan files are human-readable ("0.1" at 6 decimals = 100000)
TokenAmount = Union[int, float, str]


class Settings(BaseSettings):
    """
    Relayer settings.

    All settings can be overridden via environment variables or a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Source chain (payroll contract, burn)
    source_rpc_url: str = Field(default="http://localhost:8545", description="Source chain RPC URL")
    source_chain_id: int = Field(default=11155111, description="Source chain ID (Ethereum Sepolia)")
    source_domain: int = Field(default=0, description="Bridging protocol domain of the source chain")
    source_token_address: str = Field(
        default="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        description="Stablecoin on the source chain (Sepolia USDC)",
    )
    token_decimals: int = Field(default=6, description="Stablecoin decimals")

    # Destination chain (relay, mint, hook)
    destination_rpc_url: str = Field(default="http://localhost:8546", description="Destination chain RPC URL")
    destination_chain_id: int = Field(default=84532, description="Destination chain ID (Base Sepolia)")
    destination_explorer_url: Optional[str] = Field(
        default="https://sepolia.basescan.org",
        description="Block explorer used for transaction links",
    )
    message_transmitter_address: Optional[str] = Field(
        default=None,
        description="MessageTransmitter on the destination chain (plain settlement mode)",
    )

    # Signer
    private_key: str = Field(default="", description="Private key used on both chains")

    # Deployments
    deployments_dir: str = Field(default="ignition/deployments", description="Deployment address files root")
    payroll_deployment_id: str = Field(
        default="MultichainPayrollWithHookSourceModule#MultichainPayrollWithHook",
        description="Deployment ID of the payroll contract on the source chain",
    )
    hook_deployment_id: str = Field(
        default="CCTPHookWrapperV2Module#CCTPHookWrapperV2",
        description="Deployment ID of the hook wrapper on the destination chain",
    )
    payroll_address: Optional[str] = Field(default=None, description="Overrides the payroll deployment lookup")
    hook_wrapper_address: Optional[str] = Field(default=None, description="Overrides the hook deployment lookup")

    # Attestation service
    attestation_api_url: str = Field(
        default="https://iris-api-sandbox.circle.com",
        description="Attestation API base URL",
    )
    attestation_poll_interval_seconds: float = Field(default=5.0, ge=0)
    attestation_max_attempts: int = Field(default=24, ge=1)
    attestation_request_timeout_seconds: float = Field(default=10.0, gt=0)

    # Transactions
    receipt_timeout_seconds: float = Field(default=120.0, gt=0)

    # Persistence
    envelope_path: str = Field(
        default="attestation_data.json",
        description="Attestation artifact path; may contain {tx_hash}",
    )
    database_url: str = Field(default="sqlite:///./payroll_relay.db", description="Stage journal database")

    def source_chain(self) -> ChainConfig:
        return ChainConfig(
            name="source",
            rpc_url=self.source_rpc_url,
            chain_id=self.source_chain_id,
            receipt_timeout_seconds=self.receipt_timeout_seconds,
        )

    def destination_chain(self) -> ChainConfig:
        return ChainConfig(
            name="destination",
            rpc_url=self.destination_rpc_url,
            chain_id=self.destination_chain_id,
            receipt_timeout_seconds=self.receipt_timeout_seconds,
            explorer_url=self.destination_explorer_url,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


class RouteSpec(BaseModel):
    """Route entry of a payroll plan."""

    recipient: str
    destination_domain: int = Field(..., ge=0, description="Bridging protocol domain, not chain ID")
    destination_token: str
    lending_enabled: bool = False


class PaymentSpec(BaseModel):
    """Payment entry of a payroll plan."""

    recipient: str
    amount: TokenAmount = Field(..., description="Human-readable token amount, e.g. \"0.1\"")


class PayrollPlan(BaseModel):
    """
    A payroll run described as data.

    Replaces per-route script copies: chains come from Settings, the rest
    of a run (routes, payments, funding, settlement mode) lives here.
    """

    settlement_mode: SettlementMode = SettlementMode.HOOK
    token_decimals: int = Field(default=6, ge=0, le=36)
    routes: list[RouteSpec] = Field(default_factory=list)
    payments: list[PaymentSpec] = Field(..., min_length=1)
    fund_amount: Optional[TokenAmount] = None
    verify_delivery: bool = False

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "settlement_mode": "hook",
                    "routes": [
                        {
                            "recipient": "0x45D17a2C9092ec9F86FB27A8416c2777858fB591",
                            "destination_domain": 6,
                            "destination_token": "0x036CbD53842c5426634e7929541eC2318f3dCF7e",
                            "lending_enabled": False,
                        }
                    ],
                    "payments": [
                        {"recipient": "0x45D17a2C9092ec9F86FB27A8416c2777858fB591", "amount": "0.1"}
                    ],
                    "fund_amount": "0.2",
                }
            ]
        }
    }

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PayrollPlan":
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigError(f"Plan file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"Plan file {path} is not valid JSON: {e}") from e
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid plan file {path}: {e}") from e

    def to_batch(self) -> PaymentBatch:
        """Convert to the validated batch used by the orchestrator."""
        routes = [
            RouteInfo.create(
                recipient=route.recipient,
                destination_domain=route.destination_domain,
                destination_token=route.destination_token,
                lending_enabled=route.lending_enabled,
            )
            for route in self.routes
        ]
        payments = [
            PaymentRequest.create(
                recipient=payment.recipient,
                amount=to_base_units(payment.amount, self.token_decimals),
            )
            for payment in self.payments
        ]
        fund_amount = None
        if self.fund_amount is not None:
            fund_amount = to_base_units(self.fund_amount, self.token_decimals)

        return PaymentBatch(
            payments=payments,
            routes=routes,
            settlement_mode=self.settlement_mode,
            fund_amount=fund_amount or None,
            verify_delivery=self.verify_delivery,
        )
