"""
Attestation service client.

Polls the attestation API for the burn message(s) of a source transaction
until a signed attestation is available, with a fixed delay between attempts
and a bounded attempt budget.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from .errors import (
    AttestationCancelledError,
    AttestationTimeoutError,
    TransportError,
    ValidationError,
)
from .models import AttestationStatus, RelayEnvelope
from .validation import is_hex_payload, validate_tx_hash

logger = structlog.get_logger()

DEFAULT_API_URL = "https://iris-api-sandbox.circle.com"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_ATTEMPTS = 24  # ~2 minutes at 5 s
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0


class AttestationClient:
    """
    Client for the attestation API (Circle Iris v2 shape).

    The client holds no state between fetches; a fetch can be retried from a
    fresh process at any time.
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValidationError(f"max_attempts must be at least 1, got {max_attempts}")
        if poll_interval < 0:
            raise ValidationError(f"poll_interval must not be negative, got {poll_interval}")

        self.api_url = api_url.rstrip("/")
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(timeout=request_timeout)
        self._sleep = sleep

    async def __aenter__(self) -> "AttestationClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    def messages_url(self, source_domain: int) -> str:
        return f"{self.api_url}/v2/messages/{source_domain}"

    async def fetch(
        self,
        source_tx_hash: str,
        source_domain: int,
        stop_event: Optional[asyncio.Event] = None,
    ) -> RelayEnvelope:
        """
        Block until the attestation for a source transaction is complete.

        Raises:
            ValidationError: malformed hash (no network call is made)
            AttestationTimeoutError: attempt budget exhausted
            AttestationCancelledError: ``stop_event`` was set while waiting
        """
        envelopes = await self.fetch_all(source_tx_hash, source_domain, stop_event=stop_event)
        return envelopes[0]

    async def fetch_all(
        self,
        source_tx_hash: str,
        source_domain: int,
        expected_messages: int = 1,
        stop_event: Optional[asyncio.Event] = None,
    ) -> list[RelayEnvelope]:
        """
        Like :meth:`fetch`, for transactions that emit several burn messages.

        Succeeds only once at least ``expected_messages`` records are present
        and every one of them is complete.
        """
        tx_hash = validate_tx_hash(source_tx_hash)
        if expected_messages < 1:
            raise ValidationError(f"expected_messages must be at least 1, got {expected_messages}")

        logger.info(
            "attestation_polling_started",
            url=self.messages_url(source_domain),
            tx_hash=tx_hash,
            max_attempts=self.max_attempts,
            poll_interval=self.poll_interval,
        )

        attempts = 0
        while attempts < self.max_attempts:
            if stop_event is not None and stop_event.is_set():
                raise AttestationCancelledError(tx_hash, attempts)

            attempts += 1
            envelopes = await self._poll_once(tx_hash, source_domain, attempts, expected_messages)
            if envelopes is not None:
                logger.info(
                    "attestation_retrieved",
                    tx_hash=tx_hash,
                    attempts=attempts,
                    messages=len(envelopes),
                )
                return envelopes

            if attempts < self.max_attempts:
                await self._wait(tx_hash, attempts, stop_event)

        logger.error("attestation_timeout", tx_hash=tx_hash, attempts=attempts)
        raise AttestationTimeoutError(tx_hash, attempts)

    async def _wait(self, tx_hash: str, attempts: int, stop_event: Optional[asyncio.Event]) -> None:
        if stop_event is None:
            await self._sleep(self.poll_interval)
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            return
        logger.warning("attestation_polling_cancelled", tx_hash=tx_hash, attempts=attempts)
        raise AttestationCancelledError(tx_hash, attempts)

    async def _poll_once(
        self,
        tx_hash: str,
        source_domain: int,
        attempt: int,
        expected_messages: int,
    ) -> Optional[list[RelayEnvelope]]:
        """One query. None means "not yet", keep polling."""
        logger.debug("attestation_poll_attempt", tx_hash=tx_hash, attempt=attempt, max_attempts=self.max_attempts)
        try:
            records = await self.query(tx_hash, source_domain)
        except TransportError as e:
            logger.warning(
                "attestation_transport_error",
                tx_hash=tx_hash,
                attempt=attempt,
                error=str(e),
            )
            return None

        if len(records) < expected_messages:
            logger.info(
                "attestation_not_available",
                tx_hash=tx_hash,
                attempt=attempt,
                records=len(records),
                expected=expected_messages,
            )
            return None

        envelopes = []
        for index, record in enumerate(records):
            status = AttestationStatus.from_service(record.get("status"))
            if status is not AttestationStatus.COMPLETE:
                logger.info(
                    "attestation_pending",
                    tx_hash=tx_hash,
                    attempt=attempt,
                    index=index,
                    status=record.get("status"),
                )
                return None

            message = record.get("message")
            attestation = record.get("attestation")
            if not is_hex_payload(message) or not is_hex_payload(attestation):
                # Partial or malformed upstream record; never surfaced.
                logger.warning(
                    "attestation_record_incomplete",
                    tx_hash=tx_hash,
                    attempt=attempt,
                    index=index,
                    has_message=bool(message),
                    has_attestation=bool(attestation),
                )
                return None

            envelopes.append(RelayEnvelope(source_tx_hash=tx_hash, message=message, attestation=attestation))

        return envelopes

    async def query(self, tx_hash: str, source_domain: int) -> list[dict[str, Any]]:
        """
        Fetch the raw message records for a transaction.

        Returns an empty list when the service has no record yet (HTTP 404 or
        no ``messages`` key).

        Raises:
            TransportError: network failure, HTTP error status, or a body that
                is not the expected JSON shape
        """
        url = self.messages_url(source_domain)
        try:
            response = await self.client.get(url, params={"transactionHash": tx_hash})
        except httpx.HTTPError as e:
            raise TransportError(f"{e.__class__.__name__}: {e}", stage="attesting", tx_hash=tx_hash) from e

        if response.status_code == 404:
            return []
        if response.status_code >= 400:
            raise TransportError(
                f"Attestation service returned HTTP {response.status_code}",
                stage="attesting",
                tx_hash=tx_hash,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError("Malformed attestation response body", stage="attesting", tx_hash=tx_hash) from e

        if not isinstance(data, dict):
            raise TransportError("Unexpected attestation response format", stage="attesting", tx_hash=tx_hash)

        messages = data.get("messages")
        if messages is None:
            return []
        if not isinstance(messages, list) or not all(isinstance(m, dict) for m in messages):
            raise TransportError("Unexpected attestation response format", stage="attesting", tx_hash=tx_hash)
        return messages
