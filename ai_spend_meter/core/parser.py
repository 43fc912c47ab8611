"""
Usage log line parsing.

Turns one line of a session log into a UsageRecord or a classified
rejection. Parsing is a pure function of the line text.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Union

from ai_spend_meter.storage.models import UsageRecord, format_timestamp
from .token_counter import TokenCounts

# Placeholder messages the CLI writes locally; they never reach the API
SYNTHETIC_MODEL = "<synthetic>"
UNKNOWN_MODEL = "unknown"


class RejectReason(Enum):
    """Why a line did not produce a usage record."""
    MALFORMED_STRUCTURE = "malformedStructure"
    MISSING_TIMESTAMP = "missingTimestamp"
    UNSUPPORTED_RECORD_TYPE = "unsupportedRecordType"


@dataclass(frozen=True)
class Rejected:
    """A line that was not turned into a usage record."""
    reason: RejectReason
    detail: str = ""


ParseResult = Union[UsageRecord, Rejected]


def parse_line(line: str, source_file: Optional[str] = None) -> ParseResult:
    """Parse one log line.

    Only assistant messages carrying a usage block are cost-bearing; every
    other valid record type is rejected as unsupported, which callers treat
    as a skip rather than an error.

    Args:
        line: Raw line text, with or without its trailing newline
        source_file: Path the line was read from, kept for bookkeeping only

    Returns:
        UsageRecord on success, Rejected with a reason otherwise
    """
    text = line.strip()
    if not text:
        return Rejected(RejectReason.MALFORMED_STRUCTURE, "empty line")

    try:
        data = json.loads(text)
    except ValueError as e:
        return Rejected(RejectReason.MALFORMED_STRUCTURE, f"invalid JSON: {e}")
    if not isinstance(data, dict):
        return Rejected(RejectReason.MALFORMED_STRUCTURE, "record is not a JSON object")

    record_type = data.get("type")
    if record_type != "assistant":
        return Rejected(RejectReason.UNSUPPORTED_RECORD_TYPE, f"type={record_type!r}")

    message = data.get("message")
    if isinstance(message, dict) and isinstance(message.get("usage"), dict):
        usage = message["usage"]
        model = message.get("model")
        message_id = message.get("id")
    elif isinstance(data.get("token_counts"), dict):
        # Flat format: model and token counts at the top level
        usage = data["token_counts"]
        model = data.get("model")
        message_id = data.get("messageId")
    else:
        return Rejected(RejectReason.UNSUPPORTED_RECORD_TYPE, "assistant message without usage")

    if model is not None and not isinstance(model, str):
        return Rejected(RejectReason.MALFORMED_STRUCTURE, "model is not a string")
    model = model or UNKNOWN_MODEL
    if model == SYNTHETIC_MODEL:
        return Rejected(RejectReason.UNSUPPORTED_RECORD_TYPE, "synthetic message")

    timestamp = _parse_timestamp(data.get("timestamp"))
    if timestamp is None:
        return Rejected(RejectReason.MISSING_TIMESTAMP, f"timestamp={data.get('timestamp')!r}")

    try:
        tokens = TokenCounts.from_usage(usage)
    except ValueError as e:
        return Rejected(RejectReason.MALFORMED_STRUCTURE, str(e))

    precomputed_cost = None
    if data.get("costUSD") is not None:
        precomputed_cost = _parse_cost(data["costUSD"])
        if precomputed_cost is None:
            return Rejected(RejectReason.MALFORMED_STRUCTURE, f"costUSD={data['costUSD']!r}")

    session_id = _optional_str(data.get("sessionId"))
    content_hash = _content_hash(timestamp, model, tokens, precomputed_cost, session_id)
    identity = _identity(
        message_id=_optional_str(message_id),
        request_id=_optional_str(data.get("requestId")),
        session_id=session_id,
        uuid=_optional_str(data.get("uuid")),
        content_hash=content_hash,
    )

    return UsageRecord(
        identity=identity,
        timestamp=timestamp,
        model=model,
        tokens=tokens,
        precomputed_cost=precomputed_cost,
        session_id=session_id,
        project_path=_optional_str(data.get("cwd")),
        source_file=source_file,
        content_hash=content_hash,
    )


def _identity(
    message_id: Optional[str],
    request_id: Optional[str],
    session_id: Optional[str],
    uuid: Optional[str],
    content_hash: str,
) -> str:
    # API message ids are globally unique, so resumed sessions that replay the
    # same message into a new file collapse onto one identity
    if message_id and request_id:
        return f"{message_id}:{request_id}"
    if message_id:
        return f"msg:{message_id}"
    if uuid:
        return f"{session_id or '-'}:{uuid}"
    return f"sha:{content_hash}"


def _content_hash(
    timestamp: datetime,
    model: str,
    tokens: TokenCounts,
    precomputed_cost: Optional[Decimal],
    session_id: Optional[str],
) -> str:
    normalized: Dict[str, Any] = {
        "timestamp": format_timestamp(timestamp),
        "model": model,
        "input": tokens.input,
        "output": tokens.output,
        "cache_creation": tokens.cache_creation,
        "cache_read": tokens.cache_read,
        "cost": None if precomputed_cost is None else str(precomputed_cost.normalize()),
        "session": session_id,
    }
    payload = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_cost(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        cost = Decimal(str(value))
    except InvalidOperation:
        return None
    if not cost.is_finite() or cost < 0:
        return None
    return cost


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None
