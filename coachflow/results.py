"""
Result types returned by CollectionEngine and CompletionTrigger.

These are the ONLY return types from the command handler.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from coachflow.contracts import GenerationTicket, PolicyDecision, Progress, Session


@dataclass(frozen=True)
class TriggerOutcome:
    """
    Completion Trigger result.

    Attributes:
        triggered: A dispatch was issued by this call
        already_running: Another invocation owns the generation lock
        result_id: Artifact id when generation already completed
        ticket: Ticket issued for this dispatch (None if nothing attempted)
        reason: Short machine-readable reason
        session: Session value after the call (caller threads it forward)
        metadata: Idempotency check details (started_at, elapsed_seconds, ...)
        dispatch_failed: Dispatch threw; lock rolled back to FAILED
    """
    triggered: bool
    already_running: bool = False
    result_id: Optional[str] = None
    ticket: Optional[GenerationTicket] = None
    reason: str = ""
    session: Optional[Session] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    dispatch_failed: bool = False

    def to_json(self) -> dict:
        return {
            'triggered': self.triggered,
            'already_running': self.already_running,
            'result_id': self.result_id,
            'ticket': self.ticket.to_json() if self.ticket else None,
            'reason': self.reason,
            'metadata': dict(self.metadata),
            'dispatch_failed': self.dispatch_failed,
        }


@dataclass(frozen=True)
class TurnResult:
    """
    Outcome of one user turn.

    Returned by: UserTurn (via TurnStream.result)

    Attributes:
        system_output: Full text shown to the user ('' when cancelled)
        session: Session value after the turn (already persisted)
        decision: Completion Policy decision (None for post-hand-off turns)
        progress: Slot progress after the turn
        session_cancelled: Topic changed; collection ended
        redispatch_message: Raw user message to route to normal chat
        trigger: Completion Trigger outcome, if the trigger ran
        debug: Extraction outcome, warnings, discarded patch, etc.
    """
    system_output: str
    session: Session
    decision: Optional[PolicyDecision] = None
    progress: Optional[Progress] = None
    session_cancelled: bool = False
    redispatch_message: Optional[str] = None
    trigger: Optional[TriggerOutcome] = None
    debug: Dict[str, Any] = field(default_factory=dict)

    @property
    def collection_complete(self) -> bool:
        return self.session.is_complete

    def to_json(self) -> dict:
        return {
            'system_output': self.system_output,
            'session_id': self.session.session_id,
            'turn_count': self.session.turn_count,
            'state': self.decision.state.value if self.decision else None,
            'next_slots': list(self.decision.next_slots) if self.decision else [],
            'progress': self.progress.to_json() if self.progress else None,
            'collection_complete': self.collection_complete,
            'session_cancelled': self.session_cancelled,
            'redispatch_message': self.redispatch_message,
            'trigger': self.trigger.to_json() if self.trigger else None,
        }


@dataclass(frozen=True)
class IllegalCommand:
    """
    Command rejected by the engine (invalid lifecycle transition).

    Examples:
    - CancelCollection when no active session exists
    - ReportCompletion for a ticket of another domain

    Attributes:
        reason: Human-readable explanation
        command_type: Name of rejected command type
    """
    reason: str
    command_type: str
