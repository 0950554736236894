"""Records exchanged with the reliable queue.

Stream layout: each entry carries a single ``payload`` field holding the
orjson-encoded caller payload. Entry ids are Redis stream ids
(``<ms>-<seq>``), monotonically increasing per stream; the millisecond part
is the enqueue time.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import orjson

from concord.errors import InvalidArgumentError
from concord.store.redis import to_str

PAYLOAD_FIELD = "payload"

_ENTRY_ID_RE = re.compile(r"^\d+(-\d+)?$")


def validate_entry_id(entry_id: str) -> str:
    """Check ``entry_id`` looks like a stream id before sending it to Redis."""
    if not isinstance(entry_id, str) or not _ENTRY_ID_RE.match(entry_id):
        raise InvalidArgumentError(f"Malformed stream entry id: {entry_id!r}")
    return entry_id


def entry_timestamp_ms(entry_id: str) -> int:
    """Millisecond timestamp embedded in a stream id."""
    return int(entry_id.split("-", 1)[0])


def encode_payload(payload: Mapping[str, Any]) -> bytes:
    """Serialize a payload for the ``payload`` stream field."""
    if not isinstance(payload, Mapping):
        raise InvalidArgumentError(
            f"Queue payload must be a mapping, got {type(payload).__name__}"
        )
    try:
        return orjson.dumps(dict(payload))
    except TypeError as exc:
        raise InvalidArgumentError(f"Queue payload is not JSON serializable: {exc}") from exc


class PayloadDecodeError(InvalidArgumentError):
    """A ``payload`` field that is not a JSON object."""


def decode_fields(raw: Mapping[Any, Any] | None) -> dict[str, Any]:
    """Decode raw stream fields into the caller payload.

    Entries written by other producers (without a ``payload`` field) are
    returned as their plain string fields.

    Raises:
        PayloadDecodeError: the ``payload`` field is not a JSON object
    """
    if not raw:
        return {}
    fields = {to_str(k): v for k, v in raw.items()}
    data = fields.get(PAYLOAD_FIELD)
    if data is None:
        return {k: to_str(v) for k, v in fields.items()}
    try:
        decoded = orjson.loads(data)
    except orjson.JSONDecodeError as exc:
        raise PayloadDecodeError(f"Undecodable payload: {exc}") from exc
    if not isinstance(decoded, dict):
        raise PayloadDecodeError(
            f"Undecodable payload: expected a JSON object, got {type(decoded).__name__}"
        )
    return decoded


def _decode_or_raw(raw: Mapping[Any, Any] | None) -> tuple[dict[str, Any], str | None]:
    # A bad payload must not poison the rest of a batch
    try:
        return decode_fields(raw), None
    except PayloadDecodeError as exc:
        fields = {
            to_str(k) or "": v.decode(errors="replace") if isinstance(v, bytes) else str(v)
            for k, v in (raw or {}).items()
        }
        return fields, str(exc)


@dataclass(frozen=True)
class QueueEntry:
    """An immutable log entry as delivered to a consumer."""

    id: str
    fields: dict[str, Any]
    enqueued_at: int
    delivery_count: int = 1
    # Set when the payload could not be decoded; fields then hold the raw strings
    decode_error: str | None = None

    @property
    def enqueued_datetime(self) -> datetime:
        """Enqueue time as an aware UTC datetime."""
        return datetime.fromtimestamp(self.enqueued_at / 1000, tz=timezone.utc)

    @classmethod
    def from_stream(
        cls,
        entry_id: bytes | str,
        raw_fields: Mapping[Any, Any] | None,
        delivery_count: int = 1,
    ) -> QueueEntry:
        """Build an entry from an XREADGROUP / XCLAIM reply item."""
        entry_id_str = to_str(entry_id) or ""
        fields, decode_error = _decode_or_raw(raw_fields)
        return cls(
            id=entry_id_str,
            fields=fields,
            enqueued_at=entry_timestamp_ms(entry_id_str),
            delivery_count=delivery_count,
            decode_error=decode_error,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize entry to dictionary."""
        data: dict[str, Any] = {
            "id": self.id,
            "fields": self.fields,
            "enqueued_at": self.enqueued_at,
            "delivery_count": self.delivery_count,
        }
        if self.decode_error is not None:
            data["decode_error"] = self.decode_error
        return data


@dataclass(frozen=True)
class PendingEntry:
    """An entry delivered to a consumer and not yet acknowledged."""

    id: str
    consumer: str
    idle_ms: int
    delivery_count: int

    @classmethod
    def from_redis(cls, data: Mapping[str, Any]) -> PendingEntry:
        """Build from one item of redis-py's ``xpending_range`` reply."""
        return cls(
            id=to_str(data["message_id"]) or "",
            consumer=to_str(data["consumer"]) or "",
            idle_ms=int(data.get("time_since_delivered", 0)),
            delivery_count=int(data.get("times_delivered", 0)),
        )


@dataclass(frozen=True)
class PendingSummary:
    """Pending entries of a consumer group, aggregated."""

    pending: int
    min_id: str | None = None
    max_id: str | None = None
    consumers: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_redis(cls, data: Mapping[str, Any]) -> PendingSummary:
        """Build from redis-py's summary ``xpending`` reply."""
        consumers = {
            to_str(c["name"]) or "": int(c["pending"]) for c in data.get("consumers") or []
        }
        return cls(
            pending=int(data.get("pending", 0)),
            min_id=to_str(data.get("min")),
            max_id=to_str(data.get("max")),
            consumers=consumers,
        )


@dataclass(frozen=True)
class DeadLetterEntry:
    """An entry moved out of normal delivery after failing processing."""

    id: str
    original_id: str
    original_stream: str
    group: str
    consumer: str
    delivery_count: int
    reason: str
    dead_lettered_at: int
    fields: dict[str, Any]

    @classmethod
    def from_stream(cls, entry_id: bytes | str, raw_fields: Mapping[Any, Any]) -> DeadLetterEntry:
        """Build from an XRANGE reply item of the dead-letter stream."""
        raw = {to_str(k): v for k, v in raw_fields.items()}
        payload = {PAYLOAD_FIELD: raw[PAYLOAD_FIELD]} if PAYLOAD_FIELD in raw else {}
        return cls(
            id=to_str(entry_id) or "",
            original_id=to_str(raw.get("original_id")) or "",
            original_stream=to_str(raw.get("original_stream")) or "",
            group=to_str(raw.get("group")) or "",
            consumer=to_str(raw.get("consumer")) or "",
            delivery_count=int(to_str(raw.get("delivery_count")) or 0),
            reason=to_str(raw.get("reason")) or "",
            dead_lettered_at=int(to_str(raw.get("dead_lettered_at")) or 0),
            fields=_decode_or_raw(payload)[0],
        )
