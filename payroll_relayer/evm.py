"""
Async EVM access for the payroll (source) and relay (destination) contracts.
"""

import asyncio
import re
from typing import Any, Optional, Sequence

import structlog
from eth_abi import decode as abi_decode
from eth_account import Account
from pydantic import BaseModel
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted
from web3.types import TxReceipt

from .errors import ReceiptTimeoutError, TransactionRevertedError, ValidationError
from .models import PaymentRequest, RelayEnvelope, RouteInfo, SettlementMode
from .validation import ZERO_ADDRESS

logger = structlog.get_logger()


class ChainConfig(BaseModel):
    """Connection settings for one chain."""

    name: str = "chain"
    rpc_url: str = "http://localhost:8545"
    chain_id: int = 11155111
    receipt_timeout_seconds: float = 120.0
    explorer_url: Optional[str] = None


# Minimal ABIs for the contracts we interact with
PAYROLL_ABI = [
    {
        "inputs": [
            {"name": "employee", "type": "address"},
            {"name": "destinationDomain", "type": "uint32"},
            {"name": "destinationToken", "type": "address"},
            {"name": "lendingEnabled", "type": "bool"},
        ],
        "name": "setRouteInfo",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # Assumed view: the deployment scripts only write routes. Point this entry
    # at the contract's real accessor if it is named differently.
    {
        "inputs": [{"name": "employee", "type": "address"}],
        "name": "getRouteInfo",
        "outputs": [
            {
                "components": [
                    {"name": "destinationDomain", "type": "uint32"},
                    {"name": "destinationToken", "type": "address"},
                    {"name": "lendingEnabled", "type": "bool"},
                ],
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {
                "components": [
                    {"name": "employee", "type": "address"},
                    {"name": "amount", "type": "uint256"},
                ],
                "name": "payments",
                "type": "tuple[]",
            }
        ],
        "name": "batchPayEmployees",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

ERC20_ABI = [
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

HOOK_WRAPPER_ABI = [
    {
        "inputs": [
            {"name": "message", "type": "bytes"},
            {"name": "attestation", "type": "bytes"},
        ],
        "name": "relay",
        "outputs": [
            {"name": "relaySuccess", "type": "bool"},
            {"name": "hookSuccess", "type": "bool"},
            {"name": "hookReturnData", "type": "bytes"},
        ],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

MESSAGE_TRANSMITTER_ABI = [
    {
        "inputs": [
            {"name": "message", "type": "bytes"},
            {"name": "attestation", "type": "bytes"},
        ],
        "name": "receiveMessage",
        "outputs": [{"name": "success", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = bytes(Web3.keccak(text="Transfer(address,address,uint256)"))

ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")  # Error(string)
PANIC_SELECTOR = bytes.fromhex("4e487b71")  # Panic(uint256)

_HEX_DATA = re.compile(r"^0x[a-fA-F0-9]*$")


def _as_bytes(value: Any) -> Optional[bytes]:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str) and _HEX_DATA.match(value) and len(value) % 2 == 0:
        return bytes.fromhex(value[2:])
    return None


def tx_hash_hex(value: Any) -> str:
    """Normalize a transaction hash (bytes or str) to ``0x``-prefixed hex."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text


def decode_revert_data(data: Any) -> Optional[str]:
    """Decode ``Error(string)`` / ``Panic(uint256)`` revert payloads."""
    raw = _as_bytes(data)
    if not raw or len(raw) < 4:
        return None

    selector, body = raw[:4], raw[4:]
    try:
        if selector == ERROR_STRING_SELECTOR:
            (reason,) = abi_decode(["string"], body)
            return reason
        if selector == PANIC_SELECTOR:
            (code,) = abi_decode(["uint256"], body)
            return f"Panic(0x{code:02x})"
    except Exception:
        # Truncated or non-standard payload; caller falls back to raw data
        return None
    return None


def extract_revert_reason(error: BaseException) -> str:
    """
    Best-effort revert reason.

    Order: decoded structured revert data, the node's reason message, raw
    revert data, then the raw error text.
    """
    data = getattr(error, "data", None)
    decoded = decode_revert_data(data)
    if decoded:
        return decoded

    message = getattr(error, "message", None)
    if isinstance(message, str) and message and message != data:
        prefix = "execution reverted: "
        if message.startswith(prefix):
            return message[len(prefix):]
        if message != "execution reverted":
            return message

    if isinstance(data, str) and _HEX_DATA.match(data) and data != "0x":
        return f"revert data {data}"

    text = str(error)
    return text or error.__class__.__name__


def count_token_transfers(receipt: Any, token: str) -> int:
    """
    Count ERC-20 Transfer logs emitted by ``token`` in a receipt, mints excluded.

    A relay always mints to the recipient of the burn message, so only a
    Transfer out of an existing holder shows the funds were forwarded.
    """
    token = token.lower()
    count = 0
    for log in receipt.get("logs", []) or []:
        address = str(log.get("address", "")).lower()
        topics = log.get("topics") or []
        if address != token or len(topics) < 2:
            continue
        if _as_bytes(topics[0]) != TRANSFER_TOPIC:
            continue
        sender = _as_bytes(topics[1])
        if sender is None or not any(sender):
            continue
        count += 1
    return count


class ChainClient:
    """
    Async client for one EVM chain.

    Transaction sending is serialized per client: nonce read, signing and
    broadcast happen under one lock so concurrent batches sharing a signer do
    not race for the same nonce.
    """

    def __init__(self, config: ChainConfig, private_key: str = "", w3: Optional[AsyncWeb3] = None):
        self.config = config
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(config.rpc_url))
        self.account = Account.from_key(private_key) if private_key else None
        self._send_lock = asyncio.Lock()

        logger.info(
            "chain_client_initialized",
            chain=config.name,
            chain_id=config.chain_id,
            rpc_url=config.rpc_url,
            sender=self.account.address if self.account else None,
        )

    @property
    def address(self) -> str:
        """Get signer address."""
        if not self.account:
            raise ValidationError("No private key configured")
        return self.account.address

    def explorer_link(self, tx_hash: str) -> Optional[str]:
        if not self.config.explorer_url:
            return None
        return f"{self.config.explorer_url.rstrip('/')}/tx/{tx_hash}"

    def _contract(self, address: str, abi: list[dict[str, Any]]) -> Any:
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    # Reads

    async def token_balance(self, token: str, holder: str) -> int:
        """ERC-20 balanceOf."""
        contract = self._contract(token, ERC20_ABI)
        return await contract.functions.balanceOf(Web3.to_checksum_address(holder)).call()

    async def get_route_info(self, payroll: str, recipient: str) -> Optional[RouteInfo]:
        """Read a recipient's route; None when nothing is committed."""
        contract = self._contract(payroll, PAYROLL_ABI)
        result = await contract.functions.getRouteInfo(Web3.to_checksum_address(recipient)).call()
        domain, token, lending_enabled = result[0], result[1], result[2]
        if not token or token.lower() == ZERO_ADDRESS:
            return None
        return RouteInfo(
            recipient=Web3.to_checksum_address(recipient),
            destination_domain=int(domain),
            destination_token=Web3.to_checksum_address(token),
            lending_enabled=bool(lending_enabled),
        )

    # Writes

    async def transfer_token(self, token: str, to: str, amount: int) -> TxReceipt:
        contract = self._contract(token, ERC20_ABI)
        fn = contract.functions.transfer(Web3.to_checksum_address(to), amount)
        return await self.send_transaction(fn, action="token_transfer")

    async def set_route_info(self, payroll: str, route: RouteInfo) -> TxReceipt:
        contract = self._contract(payroll, PAYROLL_ABI)
        fn = contract.functions.setRouteInfo(
            Web3.to_checksum_address(route.recipient),
            route.destination_domain,
            Web3.to_checksum_address(route.destination_token),
            route.lending_enabled,
        )
        return await self.send_transaction(fn, action="set_route_info")

    async def batch_pay(self, payroll: str, payments: Sequence[PaymentRequest]) -> TxReceipt:
        contract = self._contract(payroll, PAYROLL_ABI)
        fn = contract.functions.batchPayEmployees(
            [(Web3.to_checksum_address(p.recipient), p.amount) for p in payments]
        )
        return await self.send_transaction(fn, action="batch_pay_employees")

    async def relay_message(
        self,
        target: str,
        envelope: RelayEnvelope,
        mode: SettlementMode = SettlementMode.HOOK,
    ) -> TxReceipt:
        """Submit ``(message, attestation)`` to the destination entry point."""
        if mode is SettlementMode.HOOK:
            contract = self._contract(target, HOOK_WRAPPER_ABI)
            fn = contract.functions.relay(envelope.message_bytes, envelope.attestation_bytes)
        else:
            contract = self._contract(target, MESSAGE_TRANSMITTER_ABI)
            fn = contract.functions.receiveMessage(envelope.message_bytes, envelope.attestation_bytes)
        return await self.send_transaction(fn, action=f"relay_{mode.value}")

    async def send_transaction(self, fn: Any, action: str, gas_limit: Optional[int] = None) -> TxReceipt:
        """
        Build, sign and broadcast a contract call, then wait for its receipt.

        Raises:
            TransactionRevertedError: gas estimation reverted or the mined
                transaction has status 0
            ReceiptTimeoutError: no receipt within the configured timeout
        """
        if not self.account:
            raise ValidationError("No private key configured")

        params: dict[str, Any] = {"from": self.account.address, "chainId": self.config.chain_id}
        if gas_limit:
            params["gas"] = gas_limit

        async with self._send_lock:
            params["nonce"] = await self.w3.eth.get_transaction_count(self.account.address, "pending")
            try:
                tx = await fn.build_transaction(params)
            except ContractLogicError as e:
                reason = extract_revert_reason(e)
                logger.error("transaction_simulation_reverted", chain=self.config.name, action=action, reason=reason)
                raise TransactionRevertedError(reason) from e

            signed = self.account.sign_transaction(tx)
            raw_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hash = tx_hash_hex(raw_hash)
        logger.info(
            "transaction_sent",
            chain=self.config.name,
            action=action,
            tx_hash=tx_hash,
            nonce=params["nonce"],
        )

        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                raw_hash, timeout=self.config.receipt_timeout_seconds
            )
        except TimeExhausted as e:
            raise ReceiptTimeoutError(
                f"Transaction {tx_hash} not mined within {self.config.receipt_timeout_seconds}s",
                tx_hash=tx_hash,
            ) from e

        if receipt["status"] != 1:
            reason = await self._replay_revert_reason(tx, receipt["blockNumber"])
            logger.error("transaction_reverted", chain=self.config.name, action=action, tx_hash=tx_hash, reason=reason)
            raise TransactionRevertedError(reason, tx_hash=tx_hash)

        logger.info(
            "transaction_confirmed",
            chain=self.config.name,
            action=action,
            tx_hash=tx_hash,
            gas_used=receipt["gasUsed"],
            block_number=receipt["blockNumber"],
            explorer=self.explorer_link(tx_hash),
        )
        return receipt

    async def _replay_revert_reason(self, tx: dict[str, Any], block_number: int) -> str:
        """Re-run a reverted transaction as a call to recover its reason."""
        call = {key: tx[key] for key in ("from", "to", "data", "value") if key in tx}
        try:
            await self.w3.eth.call(call, block_identifier=block_number)
        except ContractLogicError as e:
            return extract_revert_reason(e)
        except Exception as e:
            logger.warning("revert_replay_failed", error=str(e))
        return "transaction reverted"
