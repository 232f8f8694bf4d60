"""
Unit tests for Payload Formatter
"""

import json
from dataclasses import replace

import pytest

from coachflow.contracts import ConversationMessage, GenerationTicket, SlotUpdate
from coachflow.core.payload_formatter import PayloadFormatter, summarize_conversation
from coachflow.core.slot_store import SlotStore
from coachflow.utils.statuses import Confidence, MessageRole, PolicyState


def completed_session(lifecycle, schema, reason=PolicyState.USER_FINISH_COMPLETE, **values):
    session = lifecycle.create_empty("user_1", "conv1", schema, [
        ConversationMessage(MessageRole.USER, "earlier chat about sleep", "t"),
    ])
    session = lifecycle.append_turn(session, MessageRole.USER, "Did squats", image_refs=['img/a.jpg'])
    session = lifecycle.append_turn(session, MessageRole.ASSISTANT, "How long?")
    session = lifecycle.append_turn(session, MessageRole.USER, "30 min", image_refs=['img/a.jpg', 'img/b.jpg'])
    store = SlotStore(schema)
    session = lifecycle.with_slots(session, store.apply(
        session.slots,
        {name: SlotUpdate(value, Confidence.HIGH) for name, value in values.items()},
        2
    ))
    return lifecycle.mark_complete(session, reason)


def ticket_for(session):
    return GenerationTicket("gen_1", session.user_id, session.session_id, session.domain, "now")


def test_payload_shape(lifecycle, schema):
    session = completed_session(lifecycle, schema, exercise='squats', duration='30 min')
    formatter = PayloadFormatter(schema)

    payload = formatter.format_payload(session, ticket_for(session))

    assert set(payload) == {
        'schema_version', 'ticket', 'metadata', 'slots', 'missing_required',
        'completion_reason', 'image_refs', 'conversation_summary'
    }
    assert payload['schema_version'] == schema.schema_version
    assert payload['ticket']['ticket_id'] == "gen_1"
    assert payload['metadata']['session_id'] == session.session_id
    assert payload['metadata']['turn_count'] == 2
    assert payload['slots']['exercise'] == {
        'label': 'Exercise', 'value': 'squats', 'confidence': 'high', 'extracted_from': 'message_2'
    }
    assert payload['missing_required'] == []
    assert payload['completion_reason'] == "user_finish_complete"
    assert payload['image_refs'] == ['img/a.jpg', 'img/b.jpg']
    assert payload['conversation_summary'] == "Did squats | 30 min"
    json.dumps(payload)


def test_partial_lists_missing_required(lifecycle, schema):
    session = completed_session(lifecycle, schema, PolicyState.FORCED_COMPLETE_PARTIAL, exercise='squats')

    payload = PayloadFormatter(schema).format_payload(session, ticket_for(session))

    assert payload['missing_required'] == ['Duration']
    assert set(payload['slots']) == {'exercise'}


def test_rejects_incomplete_session(lifecycle, schema):
    session = lifecycle.create_empty("user_1", "conv1", schema)
    with pytest.raises(ValueError, match="not complete"):
        PayloadFormatter(schema).format_payload(session, ticket_for(session))


def test_rejects_foreign_ticket(lifecycle, schema):
    session = completed_session(lifecycle, schema, exercise='a', duration='b')
    ticket = replace(ticket_for(session), session_id="someone_else")
    with pytest.raises(ValueError, match="belongs to"):
        PayloadFormatter(schema).format_payload(session, ticket)


def test_summary_truncated():
    history = [ConversationMessage(MessageRole.USER, "x" * 600, "t") for _ in range(3)]
    assert len(summarize_conversation(history, max_chars=1000)) == 1000


def test_summary_skips_assistant_and_blank():
    history = [
        ConversationMessage(MessageRole.USER, "  ", "t"),
        ConversationMessage(MessageRole.ASSISTANT, "question", "t"),
        ConversationMessage(MessageRole.USER, "answer", "t"),
    ]
    assert summarize_conversation(history) == "answer"


def test_rejects_non_schema():
    with pytest.raises(TypeError):
        PayloadFormatter({'domain': 'x'})
