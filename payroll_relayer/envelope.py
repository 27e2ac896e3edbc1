"""
Attestation artifact persistence.

The artifact lets a second, independently invoked run relay a batch from the
Attested state without polling the attestation service again.

File format (one burn message):
    {"sourceTransactionHash": "0x...", "message": "0x...", "attestation": "0x..."}

Batches that emitted several burn messages additionally carry
``"messages": [{"message": ..., "attestation": ...}, ...]``; the top-level
pair is always the first entry.
"""

import json
from pathlib import Path
from typing import Any, Sequence, Union

import structlog

from .errors import ValidationError
from .models import RelayEnvelope

logger = structlog.get_logger()


def envelopes_to_dict(envelopes: Sequence[RelayEnvelope]) -> dict[str, Any]:
    """Serialize envelopes of one source transaction."""
    if not envelopes:
        raise ValidationError("No envelopes to serialize")

    source_tx_hash = envelopes[0].source_tx_hash
    if any(env.source_tx_hash != source_tx_hash for env in envelopes):
        raise ValidationError("Envelopes belong to different source transactions")

    data: dict[str, Any] = {
        "sourceTransactionHash": source_tx_hash,
        "message": envelopes[0].message,
        "attestation": envelopes[0].attestation,
    }
    if len(envelopes) > 1:
        data["messages"] = [
            {"message": env.message, "attestation": env.attestation} for env in envelopes
        ]
    return data


def envelopes_from_dict(data: Any) -> list[RelayEnvelope]:
    """Parse and validate an artifact document."""
    if not isinstance(data, dict):
        raise ValidationError("Attestation artifact must be a JSON object")

    source_tx_hash = data.get("sourceTransactionHash")
    if not source_tx_hash:
        raise ValidationError("Attestation artifact is missing 'sourceTransactionHash'")

    entries = data.get("messages")
    if entries is None:
        if not data.get("message") or not data.get("attestation"):
            raise ValidationError("Attestation artifact is missing 'message' or 'attestation' field")
        entries = [data]
    elif not isinstance(entries, list) or not entries:
        raise ValidationError("Attestation artifact 'messages' must be a non-empty list")

    envelopes = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValidationError("Attestation artifact entries must be JSON objects")
        envelopes.append(
            RelayEnvelope.create(
                source_tx_hash=source_tx_hash,
                message=entry.get("message"),  # type: ignore[arg-type]
                attestation=entry.get("attestation"),  # type: ignore[arg-type]
            )
        )
    return envelopes


def save_envelopes(path: Union[str, Path], envelopes: Sequence[RelayEnvelope]) -> Path:
    """Write the artifact as pretty-printed JSON."""
    path = Path(path)
    data = envelopes_to_dict(envelopes)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    logger.info(
        "attestation_artifact_written",
        path=str(path),
        source_tx_hash=data["sourceTransactionHash"],
        messages=len(envelopes),
    )
    return path


def load_envelopes(path: Union[str, Path]) -> list[RelayEnvelope]:
    """Read and validate an artifact written by :func:`save_envelopes`."""
    path = Path(path)
    if not path.exists():
        raise ValidationError(
            f"Attestation data file not found at {path}. Run the attest step first."
        )

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Attestation data file {path} is not valid JSON: {e}") from e

    envelopes = envelopes_from_dict(data)

    logger.info(
        "attestation_artifact_loaded",
        path=str(path),
        source_tx_hash=envelopes[0].source_tx_hash,
        messages=len(envelopes),
        message_preview=envelopes[0].message[:42],
    )
    return envelopes
