"""
Semantic contracts for slot collection sessions.

This module defines immutable data structures that serve as contracts
between modules. Every session transition produces a new value built
with dataclasses.replace; nothing here is mutated by reference.

Design principles:
- Frozen dataclasses (immutable after creation)
- Shape invariants checked at construction (fail-fast)
- Lossless to_json()/from_json() for anything that is persisted
- No dependencies on core modules

Contents:
- SlotUpdate: Extracted value for one slot, before it enters the Slot Store
- Slot: Collected state of one slot, with provenance
- GenerationLock: Idempotency guard record for downstream generation
- ConversationMessage: One entry of the append-only conversation history
- Session: Aggregate root for one collection conversation
- ExtractionResult: Extractor output (patch + intents)
- Progress: Read-only completion counts
- PolicyDecision: Completion Policy output
- GenerationTicket: Handle binding a dispatch to its completion report

Usage:
    from coachflow.contracts import Session, Slot, SlotUpdate
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple

from coachflow.utils.statuses import (
    COMPLETION_STATES,
    Confidence,
    LockStatus,
    MessageRole,
    PolicyState,
    SlotStatus,
)


def _is_missing(value: Any) -> bool:
    """None and blank strings count as no value."""
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


@dataclass(frozen=True)
class SlotUpdate:
    """
    Extracted value for a single slot.

    Created by the Extractor, consumed by SlotStore.apply(). A missing
    confidence is resolved to MEDIUM by the Slot Store at write time.

    Attributes:
        value: Extracted value (str, bool, number, list). Explicit negatives
               such as "none" or False are real values.
        confidence: Extractor confidence band, optional
        notes: Free-text extractor notes, optional
    """
    value: Any
    confidence: Optional[Confidence] = None
    notes: Optional[str] = None

    @property
    def has_value(self) -> bool:
        return not _is_missing(self.value)


@dataclass(frozen=True)
class Slot:
    """
    Collected state of a single slot.

    Invariant: value is non-null iff status == COMPLETE.

    Attributes:
        status: pending | in_progress | complete
        value: Collected value (None unless complete)
        confidence: Confidence band of the value
        notes: Extractor notes
        extracted_from: Provenance reference ('message_{turn_index}')
        image_refs: Image references that contributed to this value
    """
    status: SlotStatus = SlotStatus.PENDING
    value: Any = None
    confidence: Optional[Confidence] = None
    notes: Optional[str] = None
    extracted_from: Optional[str] = None
    image_refs: Tuple[str, ...] = ()

    def __post_init__(self):
        if not isinstance(self.status, SlotStatus):
            raise ValueError(f"status must be SlotStatus, got: {self.status!r}")

        if self.status == SlotStatus.COMPLETE and _is_missing(self.value):
            raise ValueError("complete slot must carry a non-null value")

        if self.status != SlotStatus.COMPLETE and self.value is not None:
            raise ValueError(
                f"{self.status.value} slot must not carry a value, got: {self.value!r}"
            )

    @property
    def is_complete(self) -> bool:
        return self.status == SlotStatus.COMPLETE

    def to_json(self) -> dict:
        data = {
            'status': self.status.value,
            'value': self.value,
        }
        if self.confidence is not None:
            data['confidence'] = self.confidence.value
        if self.notes is not None:
            data['notes'] = self.notes
        if self.extracted_from is not None:
            data['extracted_from'] = self.extracted_from
        if self.image_refs:
            data['image_refs'] = list(self.image_refs)
        return data

    @staticmethod
    def from_json(data: dict) -> "Slot":
        confidence = data.get('confidence')
        return Slot(
            status=SlotStatus(data.get('status', SlotStatus.PENDING.value)),
            value=data.get('value'),
            confidence=Confidence(confidence) if confidence else None,
            notes=data.get('notes'),
            extracted_from=data.get('extracted_from'),
            image_refs=tuple(data.get('image_refs', ())),
        )


@dataclass(frozen=True)
class GenerationLock:
    """
    Idempotency guard for downstream generation.

    Transitions are validated by completion_trigger.transition_lock();
    this class only carries the record.

    Attributes:
        status: NOT_STARTED | IN_PROGRESS | COMPLETE | FAILED
        started_at: When the current attempt acquired the lock
        completed_at: When the downstream worker reported success
        failed_at: When the current attempt failed
        error: Failure description
        result_id: Identifier of the generated artifact
        ticket_id: Ticket of the dispatch that owns the lock
    """
    status: LockStatus = LockStatus.NOT_STARTED
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    error: Optional[str] = None
    result_id: Optional[str] = None
    ticket_id: Optional[str] = None

    def to_json(self) -> dict:
        return {
            'status': self.status.value,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'failed_at': self.failed_at,
            'error': self.error,
            'result_id': self.result_id,
            'ticket_id': self.ticket_id,
        }

    @staticmethod
    def from_json(data: Optional[dict]) -> "GenerationLock":
        if not data:
            return GenerationLock()
        return GenerationLock(
            status=LockStatus(data.get('status', LockStatus.NOT_STARTED.value)),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            failed_at=data.get('failed_at'),
            error=data.get('error'),
            result_id=data.get('result_id'),
            ticket_id=data.get('ticket_id'),
        )


@dataclass(frozen=True)
class ConversationMessage:
    """
    One entry of the append-only conversation history.

    Attributes:
        role: user | assistant
        content: Message text
        timestamp: ISO-8601 timestamp
        image_refs: Images attached to the message
        is_pre_session_context: True for chat messages synced in before
            collection started (never counted as turns)
    """
    role: MessageRole
    content: str
    timestamp: str
    image_refs: Tuple[str, ...] = ()
    is_pre_session_context: bool = False

    def to_json(self) -> dict:
        data = {
            'role': self.role.value,
            'content': self.content,
            'timestamp': self.timestamp,
        }
        if self.image_refs:
            data['image_refs'] = list(self.image_refs)
        if self.is_pre_session_context:
            data['is_pre_session_context'] = True
        return data

    @staticmethod
    def from_json(data: dict) -> "ConversationMessage":
        return ConversationMessage(
            role=MessageRole(data['role']),
            content=data.get('content', ''),
            timestamp=data.get('timestamp', ''),
            image_refs=tuple(data.get('image_refs', ())),
            is_pre_session_context=bool(data.get('is_pre_session_context', False)),
        )


@dataclass(frozen=True)
class Session:
    """
    Aggregate root for one collection conversation.

    Lifecycle:
    1. Created on the first user message of a collection flow (empty slots)
    2. Replaced (never mutated) every turn by lifecycle transitions
    3. Soft-deleted on topic change, supersession, or after the downstream
       artifact is generated. Never hard-deleted.

    Attributes:
        user_id: Owning user
        session_id: Unique session identifier
        domain: Slot schema domain (e.g., 'workout_creator')
        conversation_id: Linked conversation, optional
        slots: Slot name -> Slot, conforming to the domain schema
        conversation_history: Ordered, append-only messages
        turn_count: Number of user turns in collection
        is_complete: Collection closed (see completion_reason)
        is_deleted: Soft-delete flag
        started_at / last_activity / completed_at: ISO timestamps
        completion_reason: PolicyState value that closed collection
        cancellation_reason: Why the session was soft-deleted
        generation_lock: Idempotency guard record
        schema_version: Version of the schema the slots conform to
    """
    user_id: str
    session_id: str
    domain: str
    conversation_id: Optional[str] = None
    slots: Dict[str, Slot] = field(default_factory=dict)
    conversation_history: Tuple[ConversationMessage, ...] = ()
    turn_count: int = 0
    is_complete: bool = False
    is_deleted: bool = False
    started_at: Optional[str] = None
    last_activity: Optional[str] = None
    completed_at: Optional[str] = None
    completion_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    generation_lock: GenerationLock = field(default_factory=GenerationLock)
    schema_version: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return not self.is_deleted

    @property
    def image_refs(self) -> Tuple[str, ...]:
        """All image references in conversation order, de-duplicated."""
        seen = []
        for message in self.conversation_history:
            for ref in message.image_refs:
                if ref not in seen:
                    seen.append(ref)
        return tuple(seen)

    def to_json(self) -> dict:
        """
        Serialize to JSON-safe dict.

        Returns:
            dict: Fresh structure (no shared references with this value)
        """
        return {
            'user_id': self.user_id,
            'session_id': self.session_id,
            'domain': self.domain,
            'conversation_id': self.conversation_id,
            'slots': {name: slot.to_json() for name, slot in self.slots.items()},
            'conversation_history': [m.to_json() for m in self.conversation_history],
            'turn_count': self.turn_count,
            'is_complete': self.is_complete,
            'is_deleted': self.is_deleted,
            'started_at': self.started_at,
            'last_activity': self.last_activity,
            'completed_at': self.completed_at,
            'completion_reason': self.completion_reason,
            'cancellation_reason': self.cancellation_reason,
            'generation_lock': self.generation_lock.to_json(),
            'schema_version': self.schema_version,
        }

    @staticmethod
    def from_json(data: dict) -> "Session":
        """
        Deserialize from JSON dict.

        Args:
            data: Raw session document

        Returns:
            Session: New value

        Raises:
            KeyError: If identity fields are missing
            ValueError: If a status string is not recognised
        """
        return Session(
            user_id=data['user_id'],
            session_id=data['session_id'],
            domain=data['domain'],
            conversation_id=data.get('conversation_id'),
            slots={
                name: Slot.from_json(slot)
                for name, slot in (data.get('slots') or {}).items()
            },
            conversation_history=tuple(
                ConversationMessage.from_json(m)
                for m in data.get('conversation_history', [])
            ),
            turn_count=int(data.get('turn_count', 0)),
            is_complete=bool(data.get('is_complete', False)),
            is_deleted=bool(data.get('is_deleted', False)),
            started_at=data.get('started_at'),
            last_activity=data.get('last_activity'),
            completed_at=data.get('completed_at'),
            completion_reason=data.get('completion_reason'),
            cancellation_reason=data.get('cancellation_reason'),
            generation_lock=GenerationLock.from_json(data.get('generation_lock')),
            schema_version=data.get('schema_version'),
        )


@dataclass(frozen=True)
class ExtractionResult:
    """
    Extractor output for one user turn.

    Attributes:
        patch: Slot name -> SlotUpdate (only slots with evidence this turn)
        wants_to_finish: Effective finish intent (short-message guard applied)
        changed_topic: User abandoned the collection flow
        outcome: Extractor outcome constant (see core.extractor)
        metadata: Audit info (warnings, ignored fields, errors)
    """
    patch: Dict[str, SlotUpdate] = field(default_factory=dict)
    wants_to_finish: bool = False
    changed_topic: bool = False
    outcome: str = "success"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def empty(outcome: str, metadata: Optional[Dict[str, Any]] = None) -> "ExtractionResult":
        """No-op result used for every extraction failure."""
        return ExtractionResult(
            patch={},
            wants_to_finish=False,
            changed_topic=False,
            outcome=outcome,
            metadata=dict(metadata or {}),
        )


@dataclass(frozen=True)
class Progress:
    """Completion counts over a slot map. Percentages are rounded ints."""
    completed: int
    total: int
    percentage: int
    required_completed: int
    required_total: int
    required_percentage: int
    high_priority_completed: int
    high_priority_total: int
    low_priority_completed: int
    low_priority_total: int

    def to_json(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class PolicyDecision:
    """
    Completion Policy output.

    Attributes:
        state: Winning PolicyState
        next_slots: One or two thematically related slots to ask about next
                    (empty for completion and cancellation)
        finish_declined: User asked to finish but data was insufficient
        reason: Short human-readable explanation (for logs/debug)
    """
    state: PolicyState
    next_slots: Tuple[str, ...] = ()
    finish_declined: bool = False
    reason: str = ""

    @property
    def completes_session(self) -> bool:
        return self.state in COMPLETION_STATES

    @property
    def is_cancelled(self) -> bool:
        return self.state == PolicyState.CANCELLED


@dataclass(frozen=True)
class GenerationTicket:
    """
    Handle returned by request_generation and echoed back by the
    downstream worker through report_completion.
    """
    ticket_id: str
    user_id: str
    session_id: str
    domain: str
    issued_at: str

    def to_json(self) -> dict:
        return {
            'ticket_id': self.ticket_id,
            'user_id': self.user_id,
            'session_id': self.session_id,
            'domain': self.domain,
            'issued_at': self.issued_at,
        }

    @staticmethod
    def from_json(data: dict) -> "GenerationTicket":
        missing = {'ticket_id', 'user_id', 'session_id'} - set(data or {})
        if missing:
            raise ValueError(f"ticket missing required keys: {sorted(missing)}")
        return GenerationTicket(
            ticket_id=data['ticket_id'],
            user_id=data['user_id'],
            session_id=data['session_id'],
            domain=data.get('domain', ''),
            issued_at=data.get('issued_at', ''),
        )
