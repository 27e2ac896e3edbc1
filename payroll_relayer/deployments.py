"""
Deployment address resolution.

The pipeline only needs "deployment id -> contract address". Where that
mapping lives is up to the deployment tooling; two adapters are provided:

- StaticAddressBook: an in-memory mapping (tests, explicit configuration)
- DeploymentsAddressBook: Ignition-style ``chain-<id>/deployed_addresses.json``
  files under a deployments directory
"""

import json
from pathlib import Path
from typing import Mapping, Optional, Protocol, Union

import structlog
from web3 import Web3

from .errors import AddressResolutionError

logger = structlog.get_logger()


class AddressBook(Protocol):
    """Resolves deployment identifiers to checksummed addresses."""

    def resolve(self, deployment_id: str, chain_id: int) -> str:
        ...


def _checked_address(value: object, deployment_id: str, source: str) -> str:
    if not value:
        raise AddressResolutionError(
            deployment_id,
            f"Address for deployment ID '{deployment_id}' not found in {source}",
            source=source,
        )
    if not isinstance(value, str) or not Web3.is_address(value):
        raise AddressResolutionError(
            deployment_id,
            f"Invalid address found in {source} for ID '{deployment_id}': {value}",
            source=source,
        )
    return Web3.to_checksum_address(value)


class StaticAddressBook:
    """Address book backed by a ``{chain_id: {deployment_id: address}}`` mapping."""

    def __init__(self, addresses: Mapping[int, Mapping[str, str]]):
        self._addresses = {int(chain_id): dict(entries) for chain_id, entries in addresses.items()}

    def resolve(self, deployment_id: str, chain_id: int) -> str:
        source = f"static address book (chain {chain_id})"
        entries = self._addresses.get(int(chain_id), {})
        return _checked_address(entries.get(deployment_id), deployment_id, source)


class DeploymentsAddressBook:
    """
    Address book reading one JSON file per chain.

    Layout: ``<root>/chain-<chain_id>/deployed_addresses.json`` containing
    ``{"Module#Contract": "0x..."}``.
    """

    FILE_NAME = "deployed_addresses.json"

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self._cache: dict[int, dict[str, object]] = {}

    def path_for(self, chain_id: int) -> Path:
        return self.root / f"chain-{chain_id}" / self.FILE_NAME

    def _load(self, chain_id: int, deployment_id: str) -> dict[str, object]:
        if chain_id in self._cache:
            return self._cache[chain_id]

        path = self.path_for(chain_id)
        if not path.exists():
            raise AddressResolutionError(
                deployment_id,
                f"Deployment address file not found at {path}. "
                "Ensure the deployment ran on this network.",
                source=str(path),
            )
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise AddressResolutionError(
                deployment_id, f"Deployment address file {path} is not valid JSON: {e}", source=str(path)
            ) from e
        if not isinstance(data, dict):
            raise AddressResolutionError(
                deployment_id, f"Deployment address file {path} must contain a JSON object", source=str(path)
            )

        self._cache[chain_id] = data
        return data

    def resolve(self, deployment_id: str, chain_id: int) -> str:
        data = self._load(chain_id, deployment_id)
        address = _checked_address(data.get(deployment_id), deployment_id, str(self.path_for(chain_id)))
        logger.info(
            "deployment_address_resolved",
            deployment_id=deployment_id,
            chain_id=chain_id,
            address=address,
        )
        return address


def resolve_optional(
    book: AddressBook,
    deployment_id: str,
    chain_id: int,
    override: Optional[str] = None,
) -> str:
    """Use an explicitly configured address when given, else the address book."""
    if override:
        return _checked_address(override, deployment_id, "configuration")
    return book.resolve(deployment_id, chain_id)
