"""
Payload Formatter - Downstream generation payload for a completed session

Responsibilities:
- Build the dispatch payload (ticket, identity metadata, collected slots)
- List missing required slots for partial completions
- Collect all image references
- Summarize the user side of the conversation

Design principles:
- Pure serialization (no business logic, no I/O)
- JSON-safe output (fresh structures, no shared references)
- Rejects sessions that have not completed collection
"""

import logging
from typing import Any, Dict, Sequence

from coachflow.contracts import ConversationMessage, GenerationTicket, Session
from coachflow.core.slot_schema import SlotSchema
from coachflow.core.slot_store import SlotStore
from coachflow.utils.helpers import utc_now_iso
from coachflow.utils.statuses import MessageRole, PriorityTier

logger = logging.getLogger(__name__)

SUMMARY_SEPARATOR = " | "
DEFAULT_SUMMARY_MAX_CHARS = 1000


def summarize_conversation(history: Sequence[ConversationMessage],
                           max_chars: int = DEFAULT_SUMMARY_MAX_CHARS) -> str:
    """
    User messages joined with ' | ', truncated to max_chars.

    Pre-session context is excluded; only collection turns count.
    """
    user_messages = [
        message.content.strip()
        for message in history
        if message.role == MessageRole.USER
        and not message.is_pre_session_context
        and message.content.strip()
    ]
    return SUMMARY_SEPARATOR.join(user_messages)[:max_chars]


class PayloadFormatter:
    """Serialize completed sessions for the downstream generator"""

    def __init__(self, schema: SlotSchema, summary_max_chars: int = DEFAULT_SUMMARY_MAX_CHARS):
        """
        Initialize Payload Formatter

        Args:
            schema: Domain slot schema (labels and required tier)
            summary_max_chars: Conversation summary limit
        """
        if not isinstance(schema, SlotSchema):
            raise TypeError("schema must be SlotSchema instance")

        self.schema = schema
        self.store = SlotStore(schema)
        self.schema_version = schema.schema_version
        self.summary_max_chars = summary_max_chars

        logger.info(f"Payload Formatter initialized (schema_version={self.schema_version})")

    def format_payload(self, session: Session, ticket: GenerationTicket) -> Dict[str, Any]:
        """
        Build the dispatch payload.

        Args:
            session: Completed session
            ticket: Ticket issued for this dispatch

        Returns:
            dict: schema_version, ticket, metadata, slots, missing_required,
                  completion_reason, image_refs, conversation_summary

        Raises:
            ValueError: If the session is not complete or the ticket does
                not belong to it
        """
        if not session.is_complete:
            raise ValueError(f"Session {session.session_id} is not complete")

        if ticket.session_id != session.session_id:
            raise ValueError(
                f"Ticket {ticket.ticket_id} belongs to {ticket.session_id}, "
                f"not {session.session_id}"
            )

        slots = {
            name: {
                'label': self.schema.label(name),
                'value': session.slots[name].value,
                'confidence': session.slots[name].confidence.value
                if session.slots[name].confidence else None,
                'extracted_from': session.slots[name].extracted_from,
            }
            for name in self.store.completed(session.slots)
        }

        payload = {
            'schema_version': self.schema_version,
            'ticket': ticket.to_json(),
            'metadata': {
                'user_id': session.user_id,
                'session_id': session.session_id,
                'conversation_id': session.conversation_id,
                'domain': session.domain,
                'turn_count': session.turn_count,
                'started_at': session.started_at,
                'completed_at': session.completed_at,
                'generated_at': utc_now_iso(),
            },
            'slots': slots,
            'missing_required': self.store.missing_labels(session.slots, PriorityTier.REQUIRED),
            'completion_reason': session.completion_reason,
            'image_refs': list(session.image_refs),
            'conversation_summary': summarize_conversation(
                session.conversation_history, self.summary_max_chars
            ),
        }

        logger.debug(
            f"Formatted payload for {session.session_id}: "
            f"{len(slots)} slot(s), {len(payload['image_refs'])} image(s)"
        )
        return payload
