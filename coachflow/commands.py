"""
Command types for CollectionEngine control flow.

CollectionEngine.handle(command) is the command-style entry point used by
transports. Sessions are never passed in; the engine loads them from the
Session Lifecycle Manager by key.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from coachflow.contracts import ConversationMessage, GenerationTicket


@dataclass(frozen=True)
class UserTurn:
    """
    Process one user message for a collection flow.

    Starts a session if none is active for (user_id, conversation_id).
    Returns: TurnStream (fragments, then TurnResult on .result).
    """
    user_id: str
    conversation_id: Optional[str]
    user_text: str
    image_refs: Tuple[str, ...] = ()
    domain_context: Optional[Dict[str, Any]] = None
    pre_session_history: Tuple[ConversationMessage, ...] = ()
    persona: Optional[str] = None


@dataclass(frozen=True)
class CancelCollection:
    """
    Abandon the active session (soft delete).

    Returns: Session (cancelled) or IllegalCommand if none is active.
    """
    user_id: str
    conversation_id: Optional[str]
    reason: str = "user_cancelled"


@dataclass(frozen=True)
class ReportCompletion:
    """
    Downstream worker reports the outcome of a dispatch.

    Exactly one of result_id and error is set.
    Returns: Session after the report, or IllegalCommand.
    """
    ticket: GenerationTicket
    result_id: Optional[str] = None
    error: Optional[str] = None


# Command union type for type hints
Command = UserTurn | CancelCollection | ReportCompletion
