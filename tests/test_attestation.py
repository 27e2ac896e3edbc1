"""
Tests for the attestation polling client.

The service is simulated with httpx.MockTransport; the sleep function is
replaced so delays are recorded instead of waited out.
"""

import asyncio
import time

import httpx
import pytest

from conftest import (
    ATTESTATION,
    MESSAGE,
    PENDING,
    SOURCE_TX_HASH,
    FakeAttestationService,
    RecordingSleep,
    complete_record,
    make_attestation_client,
    messages_response,
)
from payroll_relayer.attestation import AttestationClient
from payroll_relayer.errors import (
    AttestationCancelledError,
    AttestationTimeoutError,
    TransportError,
    ValidationError,
)


class TestFetchValidation:
    """Malformed input is rejected before any request is made."""

    @pytest.mark.parametrize("tx_hash", ["", "0x1234", "0x" + "zz" * 32, "12" * 32])
    def test_malformed_hash_makes_no_calls(self, tx_hash: str) -> None:
        service = FakeAttestationService([messages_response(complete_record())])
        client = make_attestation_client(service)

        with pytest.raises(ValidationError):
            asyncio.run(client.fetch(tx_hash, 0))

        assert service.calls == 0

    def test_invalid_budget_rejected(self) -> None:
        with pytest.raises(ValidationError):
            AttestationClient(max_attempts=0)


class TestFetchPolling:
    """Attempt counting and spacing."""

    def test_complete_on_first_attempt(self) -> None:
        service = FakeAttestationService([messages_response(complete_record())])
        sleep = RecordingSleep()
        client = make_attestation_client(service, sleep=sleep)

        envelope = asyncio.run(client.fetch(SOURCE_TX_HASH, 0))

        assert envelope.source_tx_hash == SOURCE_TX_HASH
        assert envelope.message == MESSAGE
        assert envelope.attestation == ATTESTATION
        assert service.calls == 1
        assert sleep.delays == []

    def test_pending_then_complete(self) -> None:
        """Pending for N-1 polls then complete: N calls, N-1 delays."""
        service = FakeAttestationService([PENDING, PENDING, PENDING, messages_response(complete_record())])
        sleep = RecordingSleep()
        client = make_attestation_client(service, poll_interval=5.0, sleep=sleep)

        envelope = asyncio.run(client.fetch(SOURCE_TX_HASH, 0))

        assert envelope.message == MESSAGE
        assert service.calls == 4
        assert sleep.delays == [5.0, 5.0, 5.0]

    def test_request_shape(self) -> None:
        service = FakeAttestationService([messages_response(complete_record())])
        client = make_attestation_client(service, sleep=RecordingSleep())

        asyncio.run(client.fetch("0x" + "AB" * 32, 6))

        request = service.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/v2/messages/6"
        assert request.url.params["transactionHash"] == "0x" + "ab" * 32

    def test_never_completes_times_out(self) -> None:
        service = FakeAttestationService([PENDING])
        sleep = RecordingSleep()
        client = make_attestation_client(service, max_attempts=5, sleep=sleep)

        with pytest.raises(AttestationTimeoutError) as exc_info:
            asyncio.run(client.fetch(SOURCE_TX_HASH, 0))

        assert exc_info.value.attempts == 5
        assert exc_info.value.tx_hash == SOURCE_TX_HASH
        assert "after 5 attempts" in str(exc_info.value)
        assert service.calls == 5
        # No wait after the final attempt.
        assert len(sleep.delays) == 4

    def test_real_delay_elapsed(self) -> None:
        """With the real sleep, a timeout takes about (budget - 1) x delay."""
        service = FakeAttestationService([PENDING])
        client = make_attestation_client(service, poll_interval=0.05, max_attempts=4)

        started = time.monotonic()
        with pytest.raises(AttestationTimeoutError):
            asyncio.run(client.fetch(SOURCE_TX_HASH, 0))
        elapsed = time.monotonic() - started

        assert service.calls == 4
        assert elapsed >= 0.15
        assert elapsed < 2.0

    def test_complete_without_attestation_keeps_polling(self) -> None:
        service = FakeAttestationService(
            [
                messages_response(complete_record(attestation=None)),
                messages_response(complete_record(message=None)),
                messages_response(complete_record(attestation="PENDING")),
                messages_response(complete_record()),
            ]
        )
        client = make_attestation_client(service, sleep=RecordingSleep())

        envelope = asyncio.run(client.fetch(SOURCE_TX_HASH, 0))

        assert envelope.attestation == ATTESTATION
        assert service.calls == 4

    def test_incomplete_record_never_surfaces(self) -> None:
        service = FakeAttestationService([messages_response(complete_record(attestation=None))])
        client = make_attestation_client(service, max_attempts=3, sleep=RecordingSleep())

        with pytest.raises(AttestationTimeoutError):
            asyncio.run(client.fetch(SOURCE_TX_HASH, 0))

        assert service.calls == 3


class TestFetchTransportErrors:
    """Transport failures are retried and count toward the budget."""

    def test_server_error_then_complete(self) -> None:
        service = FakeAttestationService([httpx.Response(500), httpx.Response(502), messages_response(complete_record())])
        sleep = RecordingSleep()
        client = make_attestation_client(service, sleep=sleep)

        envelope = asyncio.run(client.fetch(SOURCE_TX_HASH, 0))

        assert envelope.message == MESSAGE
        assert service.calls == 3
        assert len(sleep.delays) == 2

    def test_not_found_is_retried(self) -> None:
        service = FakeAttestationService([httpx.Response(404), messages_response(complete_record())])
        client = make_attestation_client(service, sleep=RecordingSleep())

        asyncio.run(client.fetch(SOURCE_TX_HASH, 0))

        assert service.calls == 2

    def test_connection_errors_exhaust_budget(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        service = FakeAttestationService([refuse])
        client = make_attestation_client(service, max_attempts=3, sleep=RecordingSleep())

        with pytest.raises(AttestationTimeoutError) as exc_info:
            asyncio.run(client.fetch(SOURCE_TX_HASH, 0))

        assert exc_info.value.attempts == 3
        assert service.calls == 3

    def test_malformed_body_is_retried(self) -> None:
        service = FakeAttestationService(
            [
                httpx.Response(200, text="<html>gateway</html>"),
                httpx.Response(200, json=["unexpected"]),
                messages_response(complete_record()),
            ]
        )
        client = make_attestation_client(service, sleep=RecordingSleep())

        asyncio.run(client.fetch(SOURCE_TX_HASH, 0))

        assert service.calls == 3


class TestQuery:
    def test_query_returns_records(self) -> None:
        service = FakeAttestationService([messages_response(complete_record(), PENDING.json()["messages"][0])])
        client = make_attestation_client(service)

        records = asyncio.run(client.query(SOURCE_TX_HASH, 0))

        assert len(records) == 2
        assert records[0]["status"] == "complete"

    def test_query_missing_messages_key(self) -> None:
        service = FakeAttestationService([httpx.Response(200, json={})])
        client = make_attestation_client(service)

        assert asyncio.run(client.query(SOURCE_TX_HASH, 0)) == []

    def test_query_server_error_raises(self) -> None:
        service = FakeAttestationService([httpx.Response(503)])
        client = make_attestation_client(service)

        with pytest.raises(TransportError, match="HTTP 503"):
            asyncio.run(client.query(SOURCE_TX_HASH, 0))


class TestFetchAll:
    """Transactions with several burn messages."""

    def test_waits_for_expected_count(self) -> None:
        second = complete_record(message="0x" + "01" * 32, attestation="0x" + "02" * 65)
        service = FakeAttestationService(
            [
                messages_response(complete_record()),
                messages_response(complete_record(), PENDING.json()["messages"][0]),
                messages_response(complete_record(), second),
            ]
        )
        client = make_attestation_client(service, sleep=RecordingSleep())

        envelopes = asyncio.run(client.fetch_all(SOURCE_TX_HASH, 0, expected_messages=2))

        assert [env.message for env in envelopes] == [MESSAGE, "0x" + "01" * 32]
        assert service.calls == 3


class TestCancellation:
    def test_stop_event_cancels_wait(self) -> None:
        service = FakeAttestationService([PENDING])
        client = make_attestation_client(service, poll_interval=10.0, max_attempts=24)

        async def scenario() -> None:
            stop = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, stop.set)
            await client.fetch(SOURCE_TX_HASH, 0, stop_event=stop)

        started = time.monotonic()
        with pytest.raises(AttestationCancelledError) as exc_info:
            asyncio.run(scenario())

        assert time.monotonic() - started < 5.0
        assert exc_info.value.attempts == 1
        assert service.calls == 1

    def test_already_set_stop_event_makes_no_calls(self) -> None:
        service = FakeAttestationService([PENDING])
        client = make_attestation_client(service)

        async def scenario() -> None:
            stop = asyncio.Event()
            stop.set()
            await client.fetch(SOURCE_TX_HASH, 0, stop_event=stop)

        with pytest.raises(AttestationCancelledError):
            asyncio.run(scenario())

        assert service.calls == 0
