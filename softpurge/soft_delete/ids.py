"""
JSON-safe encoding of entity ids.

Purge tasks carry the entity id in the job store's JSON payload column.
Strings and integers are stored as they are; the other supported id types are
wrapped in a single-key tagged object that decodes back to an equal value.
"""

import uuid
from datetime import datetime
from typing import Any, Callable, Dict

from .exceptions import UnsupportedEntityIdError

UUID_TAG = "$uuid"
DATE_TAG = "$date"
BINARY_TAG = "$binary"

_DECODERS: Dict[str, Callable[[str], Any]] = {
    UUID_TAG: uuid.UUID,
    DATE_TAG: datetime.fromisoformat,
    BINARY_TAG: bytes.fromhex,
}


def encode_entity_id(entity_id: Any) -> Any:
    """
    Convert an entity id to a JSON-safe value.

    Args:
        entity_id: A str, int, UUID, datetime or bytes id

    Returns:
        The id itself for str and int, a tagged object otherwise

    Raises:
        UnsupportedEntityIdError: For any other type, including bool
    """
    if isinstance(entity_id, bool):
        raise UnsupportedEntityIdError(entity_id)
    if isinstance(entity_id, (str, int)):
        return entity_id
    if isinstance(entity_id, uuid.UUID):
        return {UUID_TAG: str(entity_id)}
    if isinstance(entity_id, datetime):
        return {DATE_TAG: entity_id.isoformat()}
    if isinstance(entity_id, bytes):
        return {BINARY_TAG: entity_id.hex()}
    raise UnsupportedEntityIdError(entity_id)


def decode_entity_id(value: Any) -> Any:
    """Inverse of :func:`encode_entity_id`. Raises ValueError on anything else."""
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return value
    if isinstance(value, dict) and len(value) == 1:
        ((tag, raw),) = value.items()
        decoder = _DECODERS.get(tag)
        if decoder is not None and isinstance(raw, str):
            return decoder(raw)
    raise ValueError(f"Unrecognized entity id encoding: {value!r}")
