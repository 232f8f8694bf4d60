"""
Completion Trigger - Idempotency guard for downstream generation

Guarantees at most one downstream-generation dispatch per session, even
under retries, duplicate deliveries, or handler re-invocation after a
partial failure.

Two-phase protocol:
1. request_generation(session) -> TriggerOutcome (with a GenerationTicket)
   - COMPLETE lock            -> short-circuit, returns result_id
   - IN_PROGRESS lock         -> already_running
   - NOT_STARTED / FAILED     -> persist IN_PROGRESS lock, THEN dispatch
   - dispatch throws          -> lock rolled back to FAILED (retry allowed)
   - lock write fails         -> LockAcquisitionError, nothing dispatched
2. report_completion(ticket, result_id | error), called by the worker
   - success -> COMPLETE + result_id, session soft-deleted
   - failure -> FAILED + error

Design principles:
- The lock write happens-before dispatch. Never dispatch without it.
- Lock transitions validated against ALLOWED_LOCK_TRANSITIONS
- Compare-and-set on the stored lock closes the check-then-write race
- Only LockAcquisitionError escapes to the caller
"""

import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

from coachflow.contracts import GenerationLock, GenerationTicket, Session
from coachflow.core.payload_formatter import PayloadFormatter
from coachflow.core.session_lifecycle import REASON_GENERATION_COMPLETE, SessionLifecycleManager
from coachflow.persistence import LockConflictError, PersistenceError
from coachflow.results import TriggerOutcome
from coachflow.utils.helpers import generate_ticket_id, parse_iso, utc_now_iso
from coachflow.utils.statuses import ALLOWED_LOCK_TRANSITIONS, LockStatus

logger = logging.getLogger(__name__)

REASON_DISPATCHED = "dispatched"
REASON_ALREADY_COMPLETE = "already_complete"
REASON_IN_PROGRESS = "in_progress"
REASON_LOCK_CONFLICT = "lock_conflict"
REASON_DISPATCH_FAILED = "dispatch_failed"
REASON_NOT_STARTED = "not_started"
REASON_RETRY_AFTER_FAILURE = "retry_after_failure"


class LockAcquisitionError(Exception):
    """
    The IN_PROGRESS lock could not be made durable.

    Fatal for the turn. Nothing was dispatched, so the caller may retry.
    """
    retryable = True

    def __init__(self, session_id: str, cause: Exception):
        self.session_id = session_id
        self.cause = cause
        super().__init__(f"Could not acquire generation lock for {session_id}: {cause}")


class IllegalLockTransition(Exception):
    """Lock status change not in ALLOWED_LOCK_TRANSITIONS."""


class StaleTicketError(Exception):
    """Completion report does not match the session's current ticket."""


def transition_lock(lock: GenerationLock, new_status: LockStatus, **fields) -> GenerationLock:
    """
    Validated lock transition.

    Args:
        lock: Current lock
        new_status: Target status
        **fields: Other GenerationLock fields to set

    Returns:
        GenerationLock: New lock value

    Raises:
        IllegalLockTransition: If the edge is not allowed
    """
    if new_status not in ALLOWED_LOCK_TRANSITIONS[lock.status]:
        raise IllegalLockTransition(
            f"Illegal lock transition: {lock.status.value} -> {new_status.value}"
        )
    return replace(lock, status=new_status, **fields)


class CompletionTrigger:
    """Exactly-once dispatch of downstream generation per session"""

    def __init__(
        self,
        lifecycle: SessionLifecycleManager,
        dispatcher,
        payload_formatter: PayloadFormatter,
        clock: Optional[Callable[[], str]] = None
    ) -> None:
        """
        Initialize Completion Trigger

        Args:
            lifecycle: Session Lifecycle Manager (persist is the durability point)
            dispatcher: Downstream collaborator with dispatch(payload)
            payload_formatter: Builds the dispatch payload
            clock: Returns ISO timestamps (default: utc_now_iso)

        Raises:
            TypeError: If dispatcher lacks dispatch()
        """
        if not hasattr(dispatcher, 'dispatch') or not callable(dispatcher.dispatch):
            raise TypeError("dispatcher must have callable dispatch() method")

        if not hasattr(payload_formatter, 'format_payload'):
            raise TypeError("payload_formatter must have format_payload() method")

        self.lifecycle = lifecycle
        self.dispatcher = dispatcher
        self.formatter = payload_formatter
        self.clock = clock or utc_now_iso

    # =========================================================================
    # Phase 1: request
    # =========================================================================

    def check_idempotency(self, session: Session) -> Tuple[bool, str, Dict[str, Any]]:
        """
        Decide whether a dispatch may proceed for this session.

        Returns:
            tuple: (should_proceed, reason, metadata)
        """
        lock = session.generation_lock

        if lock.status == LockStatus.COMPLETE:
            if not lock.result_id:
                logger.warning(f"Session {session.session_id} lock COMPLETE without result_id")
            return False, REASON_ALREADY_COMPLETE, {
                'completed_at': lock.completed_at,
                'result_id': lock.result_id,
            }

        if lock.status == LockStatus.IN_PROGRESS:
            metadata = {'started_at': lock.started_at, 'elapsed_seconds': None}
            if lock.started_at:
                elapsed = parse_iso(self.clock()) - parse_iso(lock.started_at)
                metadata['elapsed_seconds'] = round(elapsed.total_seconds(), 1)
            return False, REASON_IN_PROGRESS, metadata

        if lock.status == LockStatus.FAILED:
            return True, REASON_RETRY_AFTER_FAILURE, {
                'failed_at': lock.failed_at,
                'previous_error': lock.error,
            }

        return True, REASON_NOT_STARTED, {}

    def request_generation(self, session: Session) -> TriggerOutcome:
        """
        Acquire the generation lock and dispatch, at most once.

        Args:
            session: Completed, persisted session

        Returns:
            TriggerOutcome

        Raises:
            ValueError: If the session has not completed collection
            LockAcquisitionError: If the IN_PROGRESS lock could not be persisted
        """
        should_proceed, reason, metadata = self.check_idempotency(session)

        if not should_proceed:
            logger.info(f"Trigger skipped for {session.session_id}: {reason} {metadata}")
            lock = session.generation_lock
            return TriggerOutcome(
                triggered=False,
                already_running=reason == REASON_IN_PROGRESS,
                result_id=lock.result_id,
                reason=reason,
                session=session,
                metadata=metadata,
            )

        if not session.is_complete:
            raise ValueError(f"Session {session.session_id} has not completed collection")

        previous_status = session.generation_lock.status
        now = self.clock()
        ticket = GenerationTicket(
            ticket_id=generate_ticket_id(),
            user_id=session.user_id,
            session_id=session.session_id,
            domain=session.domain,
            issued_at=now,
        )

        lock = transition_lock(
            session.generation_lock,
            LockStatus.IN_PROGRESS,
            started_at=now,
            ticket_id=ticket.ticket_id,
            failed_at=None,
            error=None,
        )
        locked = self.lifecycle.with_lock(session, lock)

        # Lock must be durable before dispatch
        try:
            self.lifecycle.persist(locked, expected_lock_status={previous_status})
        except LockConflictError as e:
            logger.info(f"Lock conflict for {session.session_id}: stored {e.actual.value}")
            return TriggerOutcome(
                triggered=False,
                already_running=e.actual == LockStatus.IN_PROGRESS,
                reason=REASON_LOCK_CONFLICT,
                session=session,
                metadata={'stored_status': e.actual.value},
            )
        except PersistenceError as e:
            logger.error(f"Lock acquisition failed for {session.session_id}: {e}")
            raise LockAcquisitionError(session.session_id, e) from e

        logger.info(f"Lock acquired for {session.session_id} (ticket={ticket.ticket_id}, {reason})")

        try:
            payload = self.formatter.format_payload(locked, ticket)
            self.dispatcher.dispatch(payload)
        except Exception as e:
            logger.error(f"Dispatch failed for {session.session_id}: {type(e).__name__} - {e}")
            failed = self.lifecycle.with_lock(
                locked,
                transition_lock(lock, LockStatus.FAILED, failed_at=self.clock(), error=str(e))
            )
            try:
                self.lifecycle.persist(failed)
            except PersistenceError as persist_error:
                logger.error(
                    f"Could not persist FAILED lock for {session.session_id}: {persist_error}"
                )
            return TriggerOutcome(
                triggered=False,
                ticket=ticket,
                reason=REASON_DISPATCH_FAILED,
                session=failed,
                metadata={'error': str(e)},
                dispatch_failed=True,
            )

        logger.info(f"Dispatched generation for {session.session_id}")
        return TriggerOutcome(
            triggered=True,
            ticket=ticket,
            reason=REASON_DISPATCHED,
            session=locked,
            metadata=metadata,
        )

    # =========================================================================
    # Phase 2: report
    # =========================================================================

    def report_completion(
        self,
        ticket: GenerationTicket,
        result_id: Optional[str] = None,
        error: Optional[str] = None
    ) -> Session:
        """
        Record the downstream outcome for a ticket.

        Exactly one of result_id and error must be given.

        Returns:
            Session: Persisted session after the report

        Raises:
            ValueError: If both or neither of result_id/error are given
            StaleTicketError: If the session is gone or owned by another ticket
            IllegalLockTransition: If the lock cannot move to the reported status
        """
        if (result_id is None) == (error is None):
            raise ValueError("Exactly one of result_id or error must be provided")

        session = self.lifecycle.load_by_id(ticket.user_id, ticket.session_id)
        if session is None:
            raise StaleTicketError(f"No session {ticket.session_id} for ticket {ticket.ticket_id}")

        lock = session.generation_lock
        if lock.ticket_id != ticket.ticket_id:
            raise StaleTicketError(
                f"Ticket {ticket.ticket_id} does not own session {ticket.session_id} "
                f"(current={lock.ticket_id})"
            )

        if lock.status == LockStatus.COMPLETE:
            if result_id != lock.result_id:
                logger.warning(
                    f"Ignoring report for completed session {session.session_id} "
                    f"(stored result_id={lock.result_id})"
                )
            return session

        if lock.status == LockStatus.FAILED and error is not None:
            logger.info(f"Duplicate failure report for {session.session_id}")
            return session

        now = self.clock()
        if result_id is not None:
            updated = self.lifecycle.soft_delete(
                self.lifecycle.with_lock(
                    session,
                    transition_lock(lock, LockStatus.COMPLETE, completed_at=now, result_id=result_id)
                ),
                REASON_GENERATION_COMPLETE,
            )
            logger.info(f"Generation complete for {session.session_id} (result_id={result_id})")
        else:
            updated = self.lifecycle.with_lock(
                session,
                transition_lock(lock, LockStatus.FAILED, failed_at=now, error=error)
            )
            logger.warning(f"Generation failed for {session.session_id}: {error}")

        try:
            self.lifecycle.persist(updated, expected_lock_status={LockStatus.IN_PROGRESS})
        except LockConflictError:
            logger.warning(f"Concurrent report for {session.session_id}; keeping stored lock")
            return self.lifecycle.load_by_id(ticket.user_id, ticket.session_id)

        return updated
