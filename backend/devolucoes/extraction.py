"""
Return payload extraction: best-effort human-readable text.

Upstream claim/order/return payloads change shape by source and API
version, so every extracted attribute is read through an ordered tuple of
candidate paths. The first candidate holding non-blank text wins; a path
that hits a missing key, a non-container node or an out-of-range index is
simply "not found".

Functions here never raise. Unexpected failures are logged and resolve to
the attribute's fallback literal.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import structlog

logger = structlog.get_logger()

NOT_AVAILABLE = "N/A"
NO_DETAILS = "Sem detalhes disponíveis"
NO_MESSAGES = "Sem mensagens"
CANCELLED_WITHOUT_REASON = "Cancelado - motivo não especificado"

LAST_MESSAGE_PREVIEW_CHARS = 100
TRANSCRIPT_PREVIEW_CHARS = 200
ELLIPSIS = "..."
TRANSCRIPT_SEPARATOR = " | "

Path = tuple[Any, ...]

# Priority order: claim structured reason → claim resolution → claim free
# text → order cancel fields → return fields.
CANCEL_REASON_PATHS: tuple[Path, ...] = (
    ("claim_data", "reason", "description"),
    ("claim_data", "reason", "name"),
    ("claim_data", "reason"),
    ("claim_data", "resolution", "reason"),
    ("claim_data", "resolution", "description"),
    ("claim_data", "cancel_reason"),
    ("order_data", "cancel_detail", "description"),
    ("order_data", "cancel_reason"),
    ("return_data", "reason"),
    ("return_data", "reason_description"),
)

DETAILED_REASON_PATHS: tuple[Path, ...] = (
    ("claim_data", "reason_description"),
    ("claim_data", "reason", "detail"),
    ("claim_data", "resolution", "description"),
    ("claim_data", "description"),
    ("return_data", "reason_description"),
    ("return_data", "description"),
    ("order_data", "cancel_detail", "description"),
    ("order_data", "cancel_description"),
)

# Where the message list may live, in order.
MESSAGE_LIST_PATHS: tuple[Path, ...] = (
    ("message_timeline",),
    ("messages_data", "messages"),
    ("messages_data",),
)

# Where a single message keeps its text.
MESSAGE_TEXT_KEYS: tuple[Path, ...] = (
    ("text",),
    ("message",),
    ("content",),
    ("message", "text"),
)


# ──────────────────────────────────────────────────────────────────────────
# Schema-on-read accessors
# ──────────────────────────────────────────────────────────────────────────


def record_value(record: Any, name: str) -> Any:
    """Top-level attribute of an ORM record or key of a plain mapping."""
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def dig(source: Any, path: Path) -> Any:
    """
    Follow ``path`` through nested mappings/sequences.

    Integer steps index into sequences (negative counts from the end);
    anything else is a mapping key. Returns None instead of raising.
    """
    node = source
    for step in path:
        if node is None:
            return None
        try:
            if isinstance(step, int):
                if isinstance(node, (str, bytes)) or not isinstance(node, Sequence):
                    return None
                node = node[step]
            elif isinstance(node, Mapping):
                node = node.get(step)
            else:
                return None
        except (IndexError, KeyError, TypeError):
            return None
    return node


def as_text(value: Any) -> str | None:
    """Non-blank text for strings and plain numbers, None for everything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, (int, float)):
        return str(value)
    return None


def first_text(record: Any, paths: Sequence[Path]) -> str | None:
    """First candidate path holding text, reading the head of each path from the record."""
    for path in paths:
        head, rest = path[0], path[1:]
        text = as_text(dig(record_value(record, head), rest))
        if text is not None:
            return text
    return None


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + ELLIPSIS


def _messages(record: Any) -> list[Any]:
    for path in MESSAGE_LIST_PATHS:
        head, rest = path[0], path[1:]
        candidate = dig(record_value(record, head), rest)
        if isinstance(candidate, Sequence) and not isinstance(candidate, (str, bytes)) and candidate:
            return list(candidate)
    return []


def _message_text(message: Any) -> str | None:
    direct = as_text(message)
    if direct is not None:
        return direct
    for path in MESSAGE_TEXT_KEYS:
        text = as_text(dig(message, path))
        if text is not None:
            return text
    return None


def _last_message_text(record: Any) -> str | None:
    for message in reversed(_messages(record)):
        text = _message_text(message)
        if text is not None:
            return text
    return None


# ──────────────────────────────────────────────────────────────────────────
# Public extractors
# ──────────────────────────────────────────────────────────────────────────


def extract_cancel_reason(record: Any) -> str:
    """Why the return/claim was opened or cancelled."""
    try:
        reason = first_text(record, CANCEL_REASON_PATHS)
        if reason is not None:
            return reason
        last = _last_message_text(record)
        if last is not None:
            return truncate(last, LAST_MESSAGE_PREVIEW_CHARS)
        if record_value(record, "status") == "cancelled":
            return CANCELLED_WITHOUT_REASON
        return NOT_AVAILABLE
    except Exception as exc:  # noqa: BLE001
        logger.warning("extraction.failed", field="cancel_reason", error=str(exc))
        return NOT_AVAILABLE


def extract_detailed_reason(record: Any) -> str:
    """Longer description of the reason, falling back to the last chat message."""
    try:
        detail = first_text(record, DETAILED_REASON_PATHS)
        if detail is not None:
            return detail
        last = _last_message_text(record)
        if last is not None:
            return truncate(last, TRANSCRIPT_PREVIEW_CHARS)
        return NO_DETAILS
    except Exception as exc:  # noqa: BLE001
        logger.warning("extraction.failed", field="detailed_reason", error=str(exc))
        return NO_DETAILS


def extract_message_text(record: Any) -> str:
    """Chronological transcript of all message texts, as a preview."""
    try:
        texts = [text for text in (_message_text(m) for m in _messages(record)) if text is not None]
        if not texts:
            return NO_MESSAGES
        return truncate(TRANSCRIPT_SEPARATOR.join(texts), TRANSCRIPT_PREVIEW_CHARS)
    except Exception as exc:  # noqa: BLE001
        logger.warning("extraction.failed", field="message_text", error=str(exc))
        return NO_MESSAGES


def extract_last_message_text(record: Any) -> str:
    try:
        last = _last_message_text(record)
        if last is None:
            return NOT_AVAILABLE
        return truncate(last, LAST_MESSAGE_PREVIEW_CHARS)
    except Exception as exc:  # noqa: BLE001
        logger.warning("extraction.failed", field="last_message_text", error=str(exc))
        return NOT_AVAILABLE


def extract_fields(record: Any) -> dict[str, str]:
    """All extracted display fields for one record."""
    return {
        "cancel_reason": extract_cancel_reason(record),
        "detailed_reason": extract_detailed_reason(record),
        "message_text": extract_message_text(record),
        "last_message_text": extract_last_message_text(record),
    }
