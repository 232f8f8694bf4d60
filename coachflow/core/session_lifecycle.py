"""
Session Lifecycle Manager - Creation, transitions and durability of sessions

Responsibilities:
- Load the active session for a (user, conversation, domain) key
- Create empty sessions and seed pre-session chat history
- Enforce one active session per key (supersede prior sessions)
- Append conversation turns and bookkeeping (turn_count, last_activity)
- Mark sessions complete, cancel, soft-delete
- persist() is the single point where state becomes durable

Design principles:
- Every transition returns a new Session (dataclasses.replace)
- Nothing becomes visible to other readers until persist() returns
- Never hard-deletes
- Required-slot invariant enforced at mark_complete()
"""

import logging
from dataclasses import replace
from typing import Callable, Iterable, List, Mapping, Optional, Sequence

from coachflow.contracts import ConversationMessage, GenerationLock, Session, Slot
from coachflow.core.slot_schema import SlotSchema
from coachflow.core.slot_store import SlotStore
from coachflow.persistence import SessionPersistence
from coachflow.utils.helpers import generate_session_id, utc_now_iso
from coachflow.utils.statuses import (
    PARTIAL_COMPLETION_STATES,
    LockStatus,
    MessageRole,
    PolicyState,
    PriorityTier,
)

logger = logging.getLogger(__name__)

MAX_PRE_SESSION_MESSAGES = 10

REASON_SUPERSEDED = "superseded"
REASON_TOPIC_CHANGE = "topic_change"
REASON_USER_CANCELLED = "user_cancelled"
REASON_GENERATION_COMPLETE = "generation_complete"


class SessionLifecycleManager:
    """Value-returning session transitions over a SessionPersistence"""

    def __init__(self, persistence: SessionPersistence, clock: Optional[Callable[[], str]] = None) -> None:
        """
        Initialize lifecycle manager

        Args:
            persistence: Durable store exposing save/load/find_sessions
            clock: Returns ISO timestamps (default: utc_now_iso)

        Raises:
            TypeError: If persistence lacks required methods
        """
        for method in ('save', 'load', 'find_sessions'):
            if not hasattr(persistence, method) or not callable(getattr(persistence, method)):
                raise TypeError(f"persistence must have callable {method}() method")

        self.persistence = persistence
        self.clock = clock or utc_now_iso

    # =========================================================================
    # Reads
    # =========================================================================

    def load(self, user_id: str, conversation_id: Optional[str], domain: str) -> Optional[Session]:
        """
        Active (not deleted) session for a conversation key, or None.

        If more than one active session exists (should not happen, but a
        crash between writes could leave it), the newest wins.
        """
        sessions = self.persistence.find_sessions(
            user_id, conversation_id=conversation_id, domain=domain
        )
        if conversation_id is None:
            sessions = [s for s in sessions if s.conversation_id is None]

        if not sessions:
            return None

        if len(sessions) > 1:
            logger.warning(
                f"{len(sessions)} active sessions for {user_id}/{conversation_id}/{domain}; "
                f"using newest"
            )
        return sessions[-1]

    def load_by_id(self, user_id: str, session_id: str) -> Optional[Session]:
        """Any session by id, deleted or not."""
        return self.persistence.load(user_id, session_id)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_empty(
        self,
        user_id: str,
        conversation_id: Optional[str],
        schema: SlotSchema,
        pre_session_history: Optional[Sequence[ConversationMessage]] = None
    ) -> Session:
        """
        Build a new session value (not persisted).

        Args:
            user_id: Owning user
            conversation_id: Linked conversation, optional
            schema: Domain slot schema
            pre_session_history: Surrounding chat messages; the last 10
                are seeded and flagged as pre-session context

        Returns:
            Session: Empty slots, turn_count=0
        """
        now = self.clock()
        seeded = tuple(
            replace(message, is_pre_session_context=True)
            for message in list(pre_session_history or ())[-MAX_PRE_SESSION_MESSAGES:]
        )

        return Session(
            user_id=user_id,
            session_id=generate_session_id(schema.session_id_prefix, conversation_id),
            domain=schema.domain,
            conversation_id=conversation_id,
            slots=SlotStore(schema).create_empty(),
            conversation_history=seeded,
            turn_count=0,
            started_at=now,
            last_activity=now,
            schema_version=schema.schema_version,
        )

    def start(
        self,
        user_id: str,
        conversation_id: Optional[str],
        schema: SlotSchema,
        pre_session_history: Optional[Sequence[ConversationMessage]] = None
    ) -> Session:
        """
        Start collection: supersede prior sessions for the key, then
        create and persist a fresh one.

        Returns:
            Session: Persisted new session
        """
        for prior in self.persistence.find_sessions(
            user_id, conversation_id=conversation_id, domain=schema.domain
        ):
            if conversation_id is None and prior.conversation_id is not None:
                continue
            self.persist(self.soft_delete(prior, REASON_SUPERSEDED))
            logger.info(f"Superseded session {prior.session_id}")

        session = self.create_empty(user_id, conversation_id, schema, pre_session_history)

        # Same-millisecond restart must not overwrite the superseded document
        base_id, attempt = session.session_id, 1
        while self.persistence.session_exists(user_id, session.session_id):
            session = replace(session, session_id=f"{base_id}_{attempt}")
            attempt += 1

        self.persist(session)

        logger.info(
            f"Started session {session.session_id} "
            f"(domain={schema.domain}, seeded={len(session.conversation_history)})"
        )
        return session

    # =========================================================================
    # Transitions (value-returning, not persisted)
    # =========================================================================

    def append_turn(
        self,
        session: Session,
        role: MessageRole,
        content: str,
        image_refs: Iterable[str] = (),
        count_turn: bool = True
    ) -> Session:
        """
        Append a message to the history.

        User messages increment turn_count unless count_turn is False
        (messages after hand-off are not collection turns).
        """
        now = self.clock()
        message = ConversationMessage(
            role=role,
            content=content,
            timestamp=now,
            image_refs=tuple(image_refs or ()),
        )

        turn_count = session.turn_count
        if role == MessageRole.USER and count_turn:
            turn_count += 1

        return replace(
            session,
            conversation_history=session.conversation_history + (message,),
            turn_count=turn_count,
            last_activity=now,
        )

    def with_slots(self, session: Session, slots: Mapping[str, Slot]) -> Session:
        return replace(session, slots=dict(slots), last_activity=self.clock())

    def with_lock(self, session: Session, lock: GenerationLock) -> Session:
        return replace(session, generation_lock=lock)

    def mark_complete(
        self,
        session: Session,
        completion_reason: PolicyState,
        schema: Optional[SlotSchema] = None
    ) -> Session:
        """
        Close collection.

        Args:
            session: Session to complete
            completion_reason: Completion PolicyState
            schema: Domain schema, used to check required slots

        Raises:
            ValueError: If required slots are missing and the reason does
                not permit partial completion
        """
        if schema is not None and completion_reason not in PARTIAL_COMPLETION_STATES:
            missing = SlotStore(schema).pending(session.slots, PriorityTier.REQUIRED)
            if missing:
                raise ValueError(
                    f"Cannot complete session {session.session_id} as "
                    f"{completion_reason.value}: required slots missing {missing}"
                )

        now = self.clock()
        logger.info(f"Session {session.session_id} complete ({completion_reason.value})")
        return replace(
            session,
            is_complete=True,
            completion_reason=completion_reason.value,
            completed_at=now,
            last_activity=now,
        )

    def soft_delete(self, session: Session, reason: str) -> Session:
        now = self.clock()
        return replace(
            session,
            is_deleted=True,
            cancellation_reason=reason,
            completed_at=session.completed_at or now,
            last_activity=now,
        )

    def cancel(self, session: Session, reason: str = REASON_TOPIC_CHANGE) -> Session:
        """
        Cancel collection: soft-delete with completed_at and reason set.

        Returns:
            Session: Cancelled value (caller persists)
        """
        logger.info(f"Cancelling session {session.session_id} ({reason})")
        return replace(self.soft_delete(session, reason), completed_at=self.clock())

    # =========================================================================
    # Durability
    # =========================================================================

    def persist(
        self,
        session: Session,
        expected_lock_status: Optional[Iterable[LockStatus]] = None,
        expected_is_complete: Optional[bool] = None
    ) -> Session:
        """
        Make a session value durable.

        Args:
            session: Value to write
            expected_lock_status: Optional compare-and-set guard on the
                stored generation lock status
            expected_is_complete: Optional guard on the stored is_complete flag

        Returns:
            Session: The same value, now durable

        Raises:
            PersistenceError: If the write fails
            LockConflictError: If a compare-and-set guard fails
        """
        self.persistence.save(
            session,
            expected_lock_status=expected_lock_status,
            expected_is_complete=expected_is_complete,
        )
        return session

    def summarize(self, session: Session, schema: SlotSchema) -> dict:
        """Compact status view (for APIs and logs)."""
        progress = SlotStore(schema).progress(session.slots)
        return {
            'session_id': session.session_id,
            'domain': session.domain,
            'conversation_id': session.conversation_id,
            'turn_count': session.turn_count,
            'is_complete': session.is_complete,
            'is_deleted': session.is_deleted,
            'completion_reason': session.completion_reason,
            'cancellation_reason': session.cancellation_reason,
            'generation_status': session.generation_lock.status.value,
            'result_id': session.generation_lock.result_id,
            'progress': progress.to_json(),
        }

    def list_sessions(self, user_id: str, include_deleted: bool = True) -> List[Session]:
        return self.persistence.find_sessions(user_id, include_deleted=include_deleted)
