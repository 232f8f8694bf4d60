"""
Utility helpers for slot collection sessions

Simple utility functions for ID and timestamp generation.
"""

import time
import uuid
from datetime import datetime, timezone


def utc_now_iso():
    """
    Current UTC time as ISO-8601 string

    Returns:
        str: Timestamp, e.g. '2025-11-26T15:30:45.123456+00:00'
    """
    return datetime.now(timezone.utc).isoformat()


def generate_session_id(prefix, conversation_id=None):
    """
    Generate session identifier

    Format: {prefix}_{conversation_id}_{epoch_ms}
    Conversation segment is replaced by a short uuid when absent.

    Args:
        prefix (str): Domain prefix (e.g., 'workout')
        conversation_id (str): Owning conversation, optional

    Returns:
        str: Session ID

    Examples:
        >>> generate_session_id("workout", "conv42")
        'workout_conv42_1732635045123'
    """
    if not prefix:
        raise ValueError("prefix must be non-empty string")

    anchor = conversation_id or uuid.uuid4().hex[:8]
    timestamp_ms = int(time.time() * 1000)
    return f"{prefix}_{anchor}_{timestamp_ms}"


def generate_ticket_id(short=False):
    """
    Generate generation ticket identifier

    Args:
        short (bool): If True, use 8-char hex. If False, full UUID hex.

    Returns:
        str: Ticket ID, e.g. 'gen_a3f7e2b9c1d2e3f4a5b6c7d8e9f0a1b2'
    """
    full_id = uuid.uuid4().hex
    return f"gen_{full_id[:8] if short else full_id}"


def parse_iso(timestamp):
    """
    Parse ISO-8601 string produced by utc_now_iso()

    Args:
        timestamp (str): ISO timestamp

    Returns:
        datetime: Timezone-aware datetime (UTC assumed if naive)
    """
    parsed = datetime.fromisoformat(timestamp)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
