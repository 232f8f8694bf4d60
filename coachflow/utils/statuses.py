"""
Status vocabularies for slot collection sessions.

Invariants:
- Slot status never regresses from COMPLETE
- Generation lock moves NOT_STARTED -> IN_PROGRESS -> COMPLETE | FAILED
- FAILED -> IN_PROGRESS is the only retry edge
- COMPLETE is terminal

Design:
- All enums are string-based for JSON serialization
- Persistence and contracts validate raw strings against the VALID_* sets
- CompletionPolicy owns PolicyState; CompletionTrigger owns LockStatus transitions
"""

from enum import Enum


class SlotStatus(str, Enum):
    """Collection status of a single slot."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class Confidence(str, Enum):
    """Extractor confidence band attached to a completed slot."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class PriorityTier(str, Enum):
    """
    Priority tier of a slot within its schema.

    REQUIRED:
        Must be collected before generation (unless forced or substantial).
    HIGH:
        Optional, asked right after required slots. Framed as skippable.
    LOW:
        Optional, asked last. Framed as skippable.
    """
    REQUIRED = "required"
    HIGH = "high"
    LOW = "low"


class LockStatus(str, Enum):
    """Generation lock status (idempotency guard)."""
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class PolicyState(str, Enum):
    """
    Completion policy outcome for a single turn.

    Listed in evaluation priority order. The first matching state wins.

    CANCELLED:
        User changed topic. Session is soft-deleted by the caller and the
        raw message is re-dispatched to normal conversation handling.
    FORCED_COMPLETE_SATISFIED / FORCED_COMPLETE_PARTIAL:
        Turn ceiling reached. Collection ends whatever the slot state.
    USER_FINISH_COMPLETE / USER_FINISH_SUBSTANTIAL:
        User asked to finish and the data is sufficient.
    COLLECT_REQUIRED / COLLECT_HIGH_PRIORITY / COLLECT_LOW_PRIORITY:
        Keep asking, tier by tier.
    FULLY_SATISFIED:
        Every slot is complete.
    """
    CANCELLED = "cancelled"
    FORCED_COMPLETE_SATISFIED = "forced_complete_satisfied"
    FORCED_COMPLETE_PARTIAL = "forced_complete_partial"
    USER_FINISH_COMPLETE = "user_finish_complete"
    USER_FINISH_SUBSTANTIAL = "user_finish_substantial"
    COLLECT_REQUIRED = "collect_required"
    COLLECT_HIGH_PRIORITY = "collect_high_priority"
    COLLECT_LOW_PRIORITY = "collect_low_priority"
    FULLY_SATISFIED = "fully_satisfied"


class MessageRole(str, Enum):
    """Author of a conversation history entry."""
    USER = "user"
    ASSISTANT = "assistant"


# Single source of truth for valid raw strings
VALID_SLOT_STATUSES = {status.value for status in SlotStatus}
VALID_CONFIDENCES = {confidence.value for confidence in Confidence}
VALID_TIERS = {tier.value for tier in PriorityTier}
VALID_LOCK_STATUSES = {status.value for status in LockStatus}
VALID_ROLES = {role.value for role in MessageRole}

ALLOWED_LOCK_TRANSITIONS = {
    LockStatus.NOT_STARTED: {LockStatus.IN_PROGRESS},
    LockStatus.IN_PROGRESS: {LockStatus.COMPLETE, LockStatus.FAILED},
    LockStatus.FAILED: {LockStatus.IN_PROGRESS},
    LockStatus.COMPLETE: set(),
}

# Policy states that close collection and hand off to generation
COMPLETION_STATES = {
    PolicyState.FORCED_COMPLETE_SATISFIED,
    PolicyState.FORCED_COMPLETE_PARTIAL,
    PolicyState.USER_FINISH_COMPLETE,
    PolicyState.USER_FINISH_SUBSTANTIAL,
    PolicyState.FULLY_SATISFIED,
}

# Completion states allowed to close a session with required slots missing
PARTIAL_COMPLETION_STATES = {
    PolicyState.FORCED_COMPLETE_PARTIAL,
    PolicyState.USER_FINISH_SUBSTANTIAL,
}
