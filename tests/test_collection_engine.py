"""
Integration tests for CollectionEngine

Exercises full turns through real Slot Store, Completion Policy,
Lifecycle, Persistence and Completion Trigger, with mocked text,
extraction and dispatch collaborators.
"""

from dataclasses import replace

import pytest

from coachflow.commands import CancelCollection, ReportCompletion, UserTurn
from coachflow.contracts import ConversationMessage, GenerationLock
from coachflow.core.collection_engine import CollectionEngine, TurnStream
from coachflow.core.completion_trigger import CompletionTrigger, LockAcquisitionError
from coachflow.core.extractor import OUTCOME_GENERATION_FAILED, Extractor
from coachflow.core.payload_formatter import PayloadFormatter
from coachflow.core.question_generator import APOLOGY, QuestionGenerator
from coachflow.core.session_lifecycle import REASON_TOPIC_CHANGE, REASON_USER_CANCELLED
from coachflow.core.slot_schema import SlotDefinition
from coachflow.persistence import PersistenceError
from coachflow.results import IllegalCommand, TurnResult
from coachflow.utils.statuses import LockStatus, MessageRole, PolicyState, PriorityTier
from conftest import (
    MockDispatcher,
    MockExtractionClient,
    MockTextClient,
    extraction,
    make_schema,
)

USER = "user_1"
CONV = "conv1"


class EngineHarness:
    """Engine plus handles on its mocked collaborators"""

    def __init__(self, schema, lifecycle, clock, responses=None, extraction_fails=False,
                 text_fragments=None, dispatch_fails=False):
        self.schema = schema
        self.lifecycle = lifecycle
        self.extraction_client = MockExtractionClient(responses, should_fail=extraction_fails)
        self.text_client = MockTextClient(text_fragments)
        self.dispatcher = MockDispatcher(should_fail=dispatch_fails)
        self.trigger = CompletionTrigger(lifecycle, self.dispatcher, PayloadFormatter(schema), clock=clock)
        self.engine = CollectionEngine(
            schema,
            Extractor(self.extraction_client, schema),
            QuestionGenerator(self.text_client, schema),
            lifecycle,
            self.trigger,
        )

    def turn(self, text, **kwargs) -> TurnResult:
        return self.engine.handle_turn(USER, CONV, text, **kwargs).run()

    def stored(self):
        return self.lifecycle.load(USER, CONV, self.schema.domain)


@pytest.fixture
def harness_factory(lifecycle, clock):
    def build(schema, **kwargs):
        return EngineHarness(schema, lifecycle, clock, **kwargs)
    return build


@pytest.fixture
def required_only_schema():
    return make_schema(slots=(
        SlotDefinition("exercise", "Exercise", PriorityTier.REQUIRED),
        SlotDefinition("duration", "Duration", PriorityTier.REQUIRED),
    ))


# ========================
# Core scenarios
# ========================

class TestScenarios:

    def test_all_required_in_one_turn(self, harness_factory):
        """Both required slots on turn 1 complete collection and dispatch once"""
        schema = make_schema(slots=(
            SlotDefinition("exercise", "Exercise", PriorityTier.REQUIRED),
            SlotDefinition("duration", "Duration", PriorityTier.REQUIRED),
        ))
        harness = harness_factory(schema, responses=[extraction({'exercise': 'squats', 'duration': '30 min'})])

        result = harness.turn("Did squats for 30 minutes")

        assert result.decision.state == PolicyState.FULLY_SATISFIED
        assert result.collection_complete
        assert result.trigger.triggered is True
        assert harness.dispatcher.call_count == 1
        assert "I'm creating your workout now" in result.system_output

        again = harness.trigger.request_generation(result.session)
        assert again.triggered is False
        assert harness.dispatcher.call_count == 1

    def test_skip_without_progress_keeps_collecting(self, harness_factory, schema):
        harness = harness_factory(schema, responses=[extraction(finish=True)])

        result = harness.turn("skip")

        assert result.decision.state == PolicyState.COLLECT_REQUIRED
        assert result.decision.finish_declined is True
        assert not result.collection_complete
        assert harness.dispatcher.call_count == 0

    def test_turn_ceiling_forces_partial_completion(self, harness_factory, schema):
        harness = harness_factory(schema, responses=[extraction({'exercise': 'row'})] + [extraction()] * 5)

        results = [harness.turn(f"message number {i}") for i in range(5)]

        final = results[-1]
        assert [r.collection_complete for r in results] == [False, False, False, False, True]
        assert final.decision.state == PolicyState.FORCED_COMPLETE_PARTIAL
        assert final.session.turn_count == 5
        assert final.session.completion_reason == "forced_complete_partial"
        assert "I'll work with what we have so far" in final.system_output
        assert "Still missing: Duration." in final.system_output
        assert harness.dispatcher.payloads[0]['missing_required'] == ['Duration']

    def test_extraction_failure_degrades_to_fallback(self, harness_factory, schema):
        harness = harness_factory(schema, extraction_fails=True)

        result = harness.turn("Did some squats")

        assert result.debug['extraction_outcome'] == OUTCOME_GENERATION_FAILED
        assert result.system_output.startswith(APOLOGY)
        assert harness.text_client.call_count == 0

        stored = harness.stored()
        assert stored.turn_count == 1
        assert [m.role for m in stored.conversation_history] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert stored.conversation_history[0].content == "Did some squats"
        assert all(not slot.is_complete for slot in stored.slots.values())

    def test_topic_change_cancels_and_redispatches(self, harness_factory, schema):
        harness = harness_factory(schema, responses=[
            extraction({'exercise': 'row'}),
            extraction({'duration': '20 min'}, topic=True),
        ])
        harness.turn("I rowed today")

        stream = harness.engine.handle_turn(USER, CONV, "What should I eat for dinner?")
        fragments = list(stream)
        result = stream.result

        assert fragments == []
        assert result.session_cancelled
        assert result.redispatch_message == "What should I eat for dinner?"
        assert result.decision.state == PolicyState.CANCELLED
        assert result.debug['discarded_patch'] == {'duration': '20 min'}
        assert harness.stored() is None

        cancelled = harness.lifecycle.load_by_id(USER, result.session.session_id)
        assert cancelled.is_deleted
        assert cancelled.cancellation_reason == REASON_TOPIC_CHANGE
        assert not cancelled.slots['duration'].is_complete

    def test_interleaved_completing_turns_dispatch_once(self, harness_factory, required_only_schema):
        """Two overlapping turns that both complete collection dispatch exactly once"""
        harness = harness_factory(required_only_schema, responses=[
            extraction({'exercise': 'run'}),
            extraction({'exercise': 'run', 'duration': '30 min'}),
        ])
        harness.turn("went for a run")

        first = harness.engine.handle_turn(USER, CONV, "ran for 30 min")
        second = harness.engine.handle_turn(USER, CONV, "ran for 30 min")
        first_fragments, second_fragments = iter(first), iter(second)
        next(first_fragments)
        next(second_fragments)
        list(first_fragments)
        list(second_fragments)

        assert harness.dispatcher.call_count == 1
        assert first.result.trigger.triggered is True
        assert second.result.trigger.triggered is False
        assert second.result.trigger.reason == "lock_conflict"
        assert second.result.trigger.already_running is True
        assert 'write_conflict' in second.result.debug

        stored = harness.stored()
        assert stored.is_complete
        assert stored.generation_lock.status == LockStatus.IN_PROGRESS
        assert stored.generation_lock.ticket_id == first.result.trigger.ticket.ticket_id

    def test_overlapping_collection_turn_keeps_lock_and_ticket(self, harness_factory, required_only_schema):
        """A collection turn finishing after another turn completed does not undo the hand-off"""
        slow = harness_factory(required_only_schema, responses=[extraction({'exercise': 'run'})])
        fast = harness_factory(required_only_schema, responses=[
            extraction({'exercise': 'run', 'duration': '30 min'}),
        ])
        slow.turn("went for a run")

        stream = slow.engine.handle_turn(USER, CONV, "it was sunny out")
        fragments = iter(stream)
        next(fragments)
        completed = fast.turn("ran for 30 min")
        list(fragments)

        assert completed.trigger.triggered is True
        assert fast.dispatcher.call_count == 1
        assert slow.dispatcher.call_count == 0
        assert 'write_conflict' in stream.result.debug
        assert stream.result.session.is_complete

        stored = slow.stored()
        assert stored.is_complete
        assert stored.generation_lock.status == LockStatus.IN_PROGRESS
        assert stored.generation_lock.ticket_id == completed.trigger.ticket.ticket_id
        assert stored.conversation_history[-1].content == completed.system_output

    def test_topic_change_after_completion_does_not_cancel(self, harness_factory, required_only_schema,
                                                           monkeypatch):
        """A late topic change cannot soft-delete a session another turn completed"""
        drifting = harness_factory(required_only_schema, responses=[
            extraction({'exercise': 'run'}),
            extraction(topic=True),
        ])
        fast = harness_factory(required_only_schema, responses=[
            extraction({'exercise': 'run', 'duration': '30 min'}),
        ])
        drifting.turn("went for a run")

        completed = []
        real_extract = drifting.extraction_client.extract

        def extract_while_other_turn_completes(*args, **kwargs):
            completed.append(fast.turn("ran for 30 min"))
            return real_extract(*args, **kwargs)

        monkeypatch.setattr(drifting.extraction_client, 'extract', extract_while_other_turn_completes)
        result = drifting.turn("what should I eat tonight?")

        assert completed[0].collection_complete
        assert fast.dispatcher.call_count == 1
        assert not result.session_cancelled
        assert result.redispatch_message == "what should I eat tonight?"
        assert 'write_conflict' in result.debug

        stored = drifting.stored()
        assert stored is not None
        assert not stored.is_deleted
        assert stored.generation_lock.status == LockStatus.IN_PROGRESS


# ========================
# Turn behaviour
# ========================

class TestTurns:

    def test_interstitial_streams_and_persists(self, harness_factory, schema):
        harness = harness_factory(
            schema,
            responses=[extraction({'exercise': 'squats'})],
            text_fragments=["Nice! ", "How long ", "did it take?"]
        )

        stream = harness.engine.handle_turn(USER, CONV, "Squats today")
        fragments = list(stream)

        assert fragments == ["Nice! ", "How long ", "did it take?"]
        assert stream.result.system_output == "Nice! How long did it take?"
        assert stream.result.decision.next_slots == ('duration',)
        assert harness.stored().conversation_history[-1].content == "Nice! How long did it take?"

    def test_turn_is_lazy(self, harness_factory, schema):
        harness = harness_factory(schema)
        harness.engine.handle_turn(USER, CONV, "hello there")
        assert harness.stored() is None
        assert harness.extraction_client.call_count == 0

    def test_turn_stream_single_pass(self, harness_factory, schema):
        harness = harness_factory(schema)
        stream = harness.engine.handle_turn(USER, CONV, "hello there")
        stream.run()
        with pytest.raises(RuntimeError):
            stream.run()

    def test_slots_accumulate_across_turns(self, harness_factory, schema):
        harness = harness_factory(schema, responses=[
            extraction({'exercise': 'squats'}),
            extraction({'duration': '30 min'}),
        ])
        harness.turn("Squats today")
        result = harness.turn("About 30 minutes")

        assert result.decision.state == PolicyState.COLLECT_HIGH_PRIORITY
        assert result.progress.required_completed == 2
        assert result.session.slots['duration'].extracted_from == "message_2"
        assert "optional" in harness.text_client.last_system_prompt

    def test_short_message_cannot_finish(self, harness_factory, substantial_schema):
        harness = harness_factory(substantial_schema, responses=[
            extraction({'exercise': 'squats'}),
            extraction(finish=True),
        ])
        harness.turn("Squats today")

        result = harness.turn(".")

        assert not result.collection_complete
        assert result.debug['extraction']['finish_guard_applied'] is True

    def test_finish_with_substantial_progress(self, harness_factory, substantial_schema):
        harness = harness_factory(substantial_schema, responses=[
            extraction({'exercise': 'squats'}),
            extraction(finish=True),
        ])
        harness.turn("Squats today")

        result = harness.turn("that's all, log it")

        assert result.decision.state == PolicyState.USER_FINISH_SUBSTANTIAL
        assert result.collection_complete
        assert harness.dispatcher.call_count == 1

    def test_image_refs_recorded(self, harness_factory, schema):
        harness = harness_factory(schema, responses=[extraction({'exercise': 'squats'})])

        result = harness.turn("see my whiteboard", image_refs=['img/board.jpg'])

        assert result.session.slots['exercise'].image_refs == ('img/board.jpg',)
        assert harness.extraction_client.calls[0]['images'] == ['img/board.jpg']

    def test_pre_session_history_seeded(self, harness_factory, schema):
        harness = harness_factory(schema)
        history = [ConversationMessage(MessageRole.USER, "I want to log a workout", "t")]

        result = harness.engine.handle_turn(USER, CONV, "Squats today", pre_session_history=history).run()

        first = result.session.conversation_history[0]
        assert first.is_pre_session_context
        assert result.session.turn_count == 1
        assert "(earlier chat)" in harness.extraction_client.calls[0]['user_prompt']

    def test_non_string_text_rejected(self, harness_factory, schema):
        harness = harness_factory(schema)
        with pytest.raises(TypeError):
            harness.engine.handle_turn(USER, CONV, 42)

    def test_consumer_disconnect_still_persists(self, harness_factory, schema):
        harness = harness_factory(
            schema,
            responses=[extraction({'exercise': 'squats'})],
            text_fragments=["one ", "two ", "three"]
        )

        stream = harness.engine.handle_turn(USER, CONV, "Squats today")
        iterator = iter(stream)
        assert next(iterator) == "one "
        iterator.close()

        stored = harness.stored()
        assert stored.turn_count == 1
        assert stored.conversation_history[-1].content == "one two three"
        assert stored.slots['exercise'].is_complete

    def test_persistence_failure_on_interstitial_is_reported(self, harness_factory, schema, monkeypatch):
        harness = harness_factory(schema, responses=[extraction({'exercise': 'squats'})])
        harness.turn("Squats today")

        def failing_persist(session, expected_lock_status=None, expected_is_complete=None):
            raise PersistenceError("disk full")

        monkeypatch.setattr(harness.lifecycle, 'persist', failing_persist)
        result = harness.turn("more squats")

        assert result.debug['persistence_error'] == "disk full"

    def test_persistence_failure_on_completion_raises(self, harness_factory, schema, monkeypatch):
        harness = harness_factory(make_schema(max_turns=1), responses=[extraction({'exercise': 'squats'})])
        real_persist = harness.lifecycle.persist

        def persist(session, expected_lock_status=None, expected_is_complete=None):
            if session.is_complete:
                raise PersistenceError("disk full")
            return real_persist(session, expected_lock_status, expected_is_complete)

        monkeypatch.setattr(harness.lifecycle, 'persist', persist)

        with pytest.raises(LockAcquisitionError):
            harness.turn("Squats today")
        assert harness.dispatcher.call_count == 0


# ========================
# Goodbye auto-complete
# ========================

class TestGoodbye:

    def test_goodbye_completes_with_substantial_progress(self, harness_factory):
        schema = make_schema(
            auto_complete_on_goodbye=True,
            messages={'goodbye': "Thanks for the chat!"},
        )
        harness = harness_factory(schema, responses=[extraction({'exercise': 'row', 'duration': '20m'})])
        harness.turn("Rowed for 20 minutes")
        calls_before = harness.extraction_client.call_count

        result = harness.turn("Thanks!")

        assert result.collection_complete
        assert result.debug['goodbye_auto_complete'] is True
        assert result.system_output.startswith("Thanks for the chat!")
        assert harness.extraction_client.call_count == calls_before
        assert harness.dispatcher.call_count == 1

    def test_goodbye_without_progress_is_a_normal_turn(self, harness_factory):
        schema = make_schema(auto_complete_on_goodbye=True)
        harness = harness_factory(schema, responses=[extraction()])

        result = harness.turn("Thanks!")

        assert not result.collection_complete
        assert harness.extraction_client.call_count == 1

    def test_goodbye_ignored_when_disabled(self, harness_factory, schema):
        harness = harness_factory(schema, responses=[extraction({'exercise': 'row', 'duration': '20m'})])
        harness.turn("Rowed for 20 minutes")

        result = harness.turn("bye")

        assert not result.collection_complete


# ========================
# Handed-off sessions
# ========================

class TestHandedOff:

    def complete(self, harness_factory, **kwargs):
        harness = harness_factory(make_schema(max_turns=1), **kwargs)
        result = harness.turn("Did squats")
        assert result.collection_complete
        return harness, result

    def test_in_progress_status_message(self, harness_factory):
        harness, completed = self.complete(harness_factory, responses=[extraction({'exercise': 'squats'})])

        result = harness.turn("is it ready?")

        assert "still working on your workout" in result.system_output
        assert result.session.turn_count == completed.session.turn_count
        assert result.debug['status_message'] == "in_progress"
        assert harness.dispatcher.call_count == 1

    def test_retry_after_dispatch_failure(self, harness_factory):
        harness, completed = self.complete(
            harness_factory, responses=[extraction({'exercise': 'squats'})], dispatch_fails=True
        )
        assert completed.trigger.dispatch_failed
        assert harness.lifecycle.load_by_id(USER, completed.session.session_id).generation_lock.status == \
            LockStatus.FAILED

        harness.dispatcher.should_fail = False
        result = harness.turn("hello?")

        assert result.trigger.triggered is True
        assert result.debug['status_message'] == "retry_started"
        assert harness.dispatcher.call_count == 2
        stored = harness.lifecycle.load_by_id(USER, completed.session.session_id)
        assert stored.generation_lock.status == LockStatus.IN_PROGRESS
        assert stored.conversation_history[-1].role == MessageRole.ASSISTANT

    def test_retry_fails_again(self, harness_factory):
        harness, _ = self.complete(
            harness_factory, responses=[extraction({'exercise': 'squats'})], dispatch_fails=True
        )

        result = harness.turn("hello?")

        assert result.debug['status_message'] == "retry_failed"
        assert "send me another message" in result.system_output

    def test_messages_after_completion_do_not_redispatch(self, harness_factory):
        harness, _ = self.complete(harness_factory, responses=[extraction({'exercise': 'squats'})])
        for text in ("done?", "hello", "thanks"):
            harness.turn(text)
        assert harness.dispatcher.call_count == 1

    def test_worker_report_soft_deletes(self, harness_factory):
        harness, completed = self.complete(harness_factory, responses=[extraction({'exercise': 'squats'})])

        session = harness.engine.report_completion(completed.trigger.ticket, result_id="workout_1")

        assert session.generation_lock.status == LockStatus.COMPLETE
        assert harness.stored() is None

        # A new message starts a fresh collection
        result = harness.turn("Another workout: deadlifts")
        assert result.session.session_id != completed.session.session_id
        assert result.session.turn_count == 1


# ========================
# Commands
# ========================

class TestCommands:

    def test_user_turn_command(self, harness_factory, schema):
        harness = harness_factory(schema, responses=[extraction({'exercise': 'squats'})])

        stream = harness.engine.handle(UserTurn(USER, CONV, "Squats today", domain_context={'recent': []}))

        assert isinstance(stream, TurnStream)
        assert stream.run().session.turn_count == 1

    def test_cancel_command(self, harness_factory, schema):
        harness = harness_factory(schema)
        harness.turn("hello there")

        cancelled = harness.engine.handle(CancelCollection(USER, CONV))

        assert cancelled.is_deleted
        assert cancelled.cancellation_reason == REASON_USER_CANCELLED
        assert harness.stored() is None

    def test_cancel_without_session(self, harness_factory, schema):
        harness = harness_factory(schema)
        result = harness.engine.handle(CancelCollection(USER, CONV))
        assert isinstance(result, IllegalCommand)

    def test_cancel_refused_while_generating(self, harness_factory):
        harness = harness_factory(make_schema(max_turns=1), responses=[extraction({'exercise': 'squats'})])
        harness.turn("Did squats")

        result = harness.engine.cancel(USER, CONV)

        assert isinstance(result, IllegalCommand)
        assert "in progress" in result.reason

    def test_report_command(self, harness_factory):
        harness = harness_factory(make_schema(max_turns=1), responses=[extraction({'exercise': 'squats'})])
        ticket = harness.turn("Did squats").trigger.ticket

        session = harness.engine.handle(ReportCompletion(ticket, error="model crashed"))

        assert session.generation_lock.status == LockStatus.FAILED

    def test_report_for_other_domain(self, harness_factory, schema):
        harness = harness_factory(make_schema(max_turns=1), responses=[extraction({'exercise': 'squats'})])
        ticket = harness.turn("Did squats").trigger.ticket

        result = harness.engine.report_completion(replace(ticket, domain="coach_creator"), result_id="x")

        assert isinstance(result, IllegalCommand)

    def test_invalid_report_becomes_illegal_command(self, harness_factory):
        harness = harness_factory(make_schema(max_turns=1), responses=[extraction({'exercise': 'squats'})])
        ticket = harness.turn("Did squats").trigger.ticket

        result = harness.engine.report_completion(ticket)

        assert isinstance(result, IllegalCommand)
        assert result.command_type == "ReportCompletion"

    def test_unknown_command(self, harness_factory, schema):
        harness = harness_factory(schema)
        result = harness.engine.handle("not a command")
        assert isinstance(result, IllegalCommand)
        assert result.command_type == "str"


def test_engine_validates_modules(schema, lifecycle):
    with pytest.raises(TypeError, match="extractor"):
        CollectionEngine(schema, object(), object(), lifecycle, object())


def test_turn_result_json(harness_factory, schema):
    harness = harness_factory(schema, responses=[extraction({'exercise': 'squats'})])
    data = harness.turn("Squats today").to_json()

    assert data['state'] == "collect_required"
    assert data['next_slots'] == ['duration']
    assert data['collection_complete'] is False
    assert data['trigger'] is None


def test_lock_unchanged_by_collection_turns(harness_factory, schema):
    harness = harness_factory(schema, responses=[extraction({'exercise': 'squats'})])
    harness.turn("Squats today")
    assert harness.stored().generation_lock == GenerationLock()
