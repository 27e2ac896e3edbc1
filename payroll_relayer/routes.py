"""
Client-side view of the per-recipient routes stored in the payroll contract.
"""

from typing import Iterable, Optional

import structlog
from web3.types import TxReceipt

from .evm import ChainClient, tx_hash_hex
from .models import RouteInfo
from .validation import validate_address

logger = structlog.get_logger()


class RouteRegistry:
    """
    Reads and writes recipient routes on a payroll contract.

    Writes are last-write-wins; re-setting identical values changes nothing
    on-chain but still costs a transaction.
    """

    def __init__(self, chain: ChainClient, payroll_address: str):
        self.chain = chain
        self.payroll_address = validate_address(payroll_address, "payroll address")

    async def set_route(self, route: RouteInfo) -> TxReceipt:
        """Commit a route and wait for the transaction to be confirmed."""
        logger.info(
            "route_set_requested",
            payroll=self.payroll_address,
            recipient=route.recipient,
            destination_domain=route.destination_domain,
            destination_token=route.destination_token,
            lending_enabled=route.lending_enabled,
        )
        receipt = await self.chain.set_route_info(self.payroll_address, route)
        logger.info(
            "route_set",
            recipient=route.recipient,
            tx_hash=tx_hash_hex(receipt["transactionHash"]),
            gas_used=receipt["gasUsed"],
        )
        return receipt

    async def get_route(self, recipient: str) -> Optional[RouteInfo]:
        """Committed route for a recipient, or None."""
        recipient = validate_address(recipient, "recipient")
        return await self.chain.get_route_info(self.payroll_address, recipient)

    async def unrouted(self, recipients: Iterable[str]) -> list[str]:
        """Recipients without a committed route, in input order, without duplicates."""
        missing: list[str] = []
        checked: set[str] = set()
        for recipient in recipients:
            recipient = validate_address(recipient, "recipient")
            if recipient in checked:
                continue
            checked.add(recipient)
            if await self.get_route(recipient) is None:
                missing.append(recipient)
        return missing
