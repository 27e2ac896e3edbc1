from __future__ import annotations

from typing import Any, Callable, Optional, Sequence, Union

import httpx
import pytest
from web3 import Web3

from payroll_relayer.attestation import AttestationClient
from payroll_relayer.errors import TransactionRevertedError
from payroll_relayer.models import PaymentRequest, RelayEnvelope, RouteInfo, SettlementMode

SIGNER = Web3.to_checksum_address("0x" + "11" * 20)
RECIPIENT = Web3.to_checksum_address("0x" + "aa" * 20)
OTHER_RECIPIENT = Web3.to_checksum_address("0x" + "ab" * 20)
DESTINATION_TOKEN = Web3.to_checksum_address("0x" + "bb" * 20)
SOURCE_TOKEN = Web3.to_checksum_address("0x" + "cc" * 20)
PAYROLL = Web3.to_checksum_address("0x" + "dd" * 20)
HOOK_WRAPPER = Web3.to_checksum_address("0x" + "ee" * 20)
MESSAGE_TRANSMITTER = Web3.to_checksum_address("0x" + "ef" * 20)

SOURCE_TX_HASH = "0x" + "12" * 32
MESSAGE = "0x" + "ab" * 64
ATTESTATION = "0x" + "cd" * 65

TRANSFER_TOPIC = "0x" + bytes(Web3.keccak(text="Transfer(address,address,uint256)")).hex()

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


def complete_record(message: Optional[str] = MESSAGE, attestation: Optional[str] = ATTESTATION) -> dict[str, Any]:
    record: dict[str, Any] = {"status": "complete"}
    if message is not None:
        record["message"] = message
    if attestation is not None:
        record["attestation"] = attestation
    return record


def messages_response(*records: dict[str, Any]) -> httpx.Response:
    return httpx.Response(200, json={"messages": list(records)})


PENDING = messages_response({"status": "pending_confirmations", "message": "0x", "attestation": "PENDING"})


class FakeAttestationService:
    """Scripted attestation API; the last responder repeats once the script runs out."""

    def __init__(self, script: Sequence[Responder]):
        self.script = list(script)
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.script) - 1)
        responder = self.script[index]
        if callable(responder):
            return responder(request)
        # Fresh copy per request; httpx responses are single-use.
        return httpx.Response(responder.status_code, headers=responder.headers, content=responder.content)

    @property
    def calls(self) -> int:
        return len(self.requests)


class RecordingSleep:
    """Stands in for asyncio.sleep; records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_attestation_client(
    service: FakeAttestationService,
    poll_interval: float = 5.0,
    max_attempts: int = 24,
    sleep: Optional[RecordingSleep] = None,
) -> AttestationClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(service.handler))
    kwargs: dict[str, Any] = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return AttestationClient(
        api_url="https://iris.test",
        poll_interval=poll_interval,
        max_attempts=max_attempts,
        http_client=http_client,
        **kwargs,
    )


class FakeChainClient:
    """In-memory stand-in for ChainClient covering the calls the pipeline makes."""

    def __init__(self, address: str = SIGNER, tx_prefix: int = 0x10):
        self.address = address
        self.balances: dict[tuple[str, str], int] = {}
        self.routes: dict[tuple[str, str], RouteInfo] = {}
        self.calls: list[tuple[str, Any]] = []
        self.relay_error: Optional[Exception] = None
        self.relay_logs: list[dict[str, Any]] = []
        self._tx_prefix = tx_prefix
        self._tx_count = 0

    def _receipt(self, logs: Optional[list[dict[str, Any]]] = None) -> dict[str, Any]:
        self._tx_count += 1
        tx_hash = bytes([self._tx_prefix]) + self._tx_count.to_bytes(31, "big")
        return {
            "transactionHash": tx_hash,
            "gasUsed": 50_000 + self._tx_count,
            "status": 1,
            "blockNumber": 100 + self._tx_count,
            "logs": logs or [],
        }

    def set_balance(self, token: str, holder: str, amount: int) -> None:
        self.balances[(token.lower(), holder.lower())] = amount

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    async def token_balance(self, token: str, holder: str) -> int:
        self.calls.append(("token_balance", (token, holder)))
        return self.balances.get((token.lower(), holder.lower()), 0)

    async def transfer_token(self, token: str, to: str, amount: int) -> dict[str, Any]:
        self.calls.append(("transfer_token", (token, to, amount)))
        key_from = (token.lower(), self.address.lower())
        key_to = (token.lower(), to.lower())
        self.balances[key_from] = self.balances.get(key_from, 0) - amount
        self.balances[key_to] = self.balances.get(key_to, 0) + amount
        return self._receipt()

    async def set_route_info(self, payroll: str, route: RouteInfo) -> dict[str, Any]:
        self.calls.append(("set_route_info", (payroll, route)))
        self.routes[(payroll.lower(), route.recipient.lower())] = route
        return self._receipt()

    async def get_route_info(self, payroll: str, recipient: str) -> Optional[RouteInfo]:
        self.calls.append(("get_route_info", (payroll, recipient)))
        return self.routes.get((payroll.lower(), recipient.lower()))

    async def batch_pay(self, payroll: str, payments: Sequence[PaymentRequest]) -> dict[str, Any]:
        self.calls.append(("batch_pay", (payroll, list(payments))))
        return self._receipt()

    async def relay_message(
        self, target: str, envelope: RelayEnvelope, mode: SettlementMode = SettlementMode.HOOK
    ) -> dict[str, Any]:
        self.calls.append(("relay_message", (target, envelope, mode)))
        if self.relay_error is not None:
            raise self.relay_error
        return self._receipt(logs=list(self.relay_logs))


def _address_topic(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


def transfer_log(token: str, sender: str = HOOK_WRAPPER, receiver: str = RECIPIENT) -> dict[str, Any]:
    return {
        "address": token,
        "topics": [TRANSFER_TOPIC, _address_topic(sender), _address_topic(receiver)],
        "data": "0x" + "00" * 31 + "01",
    }


def mint_log(token: str, receiver: str = HOOK_WRAPPER) -> dict[str, Any]:
    return transfer_log(token, sender="0x" + "00" * 20, receiver=receiver)


def reverted(reason: str, tx_hash: Optional[str] = None) -> TransactionRevertedError:
    return TransactionRevertedError(reason, tx_hash=tx_hash)


@pytest.fixture
def source_chain() -> FakeChainClient:
    return FakeChainClient(tx_prefix=0x12)


@pytest.fixture
def destination_chain() -> FakeChainClient:
    return FakeChainClient(tx_prefix=0x34)
