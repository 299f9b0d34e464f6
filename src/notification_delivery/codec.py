"""EnvelopeCodec: canonical JSON encoding and content-derived message ids."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError

from .envelope import BUSINESS_FIELDS, NotificationEnvelope
from .exceptions import DecodeError, ValidationError


def canonical_json(value: Any) -> bytes:
    """Stable serialization: sorted keys, no insignificant whitespace, UTF-8."""
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def _dump(envelope: NotificationEnvelope, **kwargs: Any) -> dict[str, Any]:
    # Body and message id share pydantic's JSON mode, so UUIDs, decimals
    # and datetimes render the same way in both.
    try:
        return envelope.model_dump(mode="json", **kwargs)
    except PydanticSerializationError as e:
        raise ValidationError({"content": [f"not JSON serializable: {e}"]}) from e


class EnvelopeCodec:
    """Encode/decode NotificationEnvelope to/from canonical JSON bytes."""

    def encode(self, envelope: NotificationEnvelope) -> bytes:
        return canonical_json(_dump(envelope, by_alias=True, exclude_none=True))

    def decode(self, raw: bytes) -> NotificationEnvelope:
        """Decode bytes to an envelope; raises DecodeError on malformed input."""
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecodeError(f"payload is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise DecodeError(
                f"payload must be a JSON object, got {type(data).__name__}"
            )
        try:
            return NotificationEnvelope.model_validate(data)
        except PydanticValidationError as e:
            raise DecodeError(f"payload has invalid fields: {e}") from e

    def compute_message_id(self, envelope: NotificationEnvelope) -> str:
        """SHA-256 hex digest over the canonical business fields.

        Retry counters, timestamps and correlation fields never contribute,
        so identical requests from different call sites share one id.
        """
        fields = _dump(envelope, include=set(BUSINESS_FIELDS))
        return hashlib.sha256(canonical_json(fields)).hexdigest()


_default_codec = EnvelopeCodec()


def encode(envelope: NotificationEnvelope) -> bytes:
    return _default_codec.encode(envelope)


def decode(raw: bytes) -> NotificationEnvelope:
    return _default_codec.decode(raw)


def compute_message_id(envelope: NotificationEnvelope) -> str:
    return _default_codec.compute_message_id(envelope)
