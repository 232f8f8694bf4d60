"""
Collection Engine - Slot-filling conversation orchestration (one per domain)

Responsibilities:
- Load or start the session for a (user, conversation) key
- Run one user turn: extract -> merge slots -> decide -> respond
- Stream the next message as fragments, persist the full text
- Cancel on topic change and hand the raw message back for re-routing
- Hand completed sessions to the Completion Trigger
- Re-trigger generation for handed-off sessions whose lock allows it

Per-turn flow:
    load/start -> [handed off? status or retry] -> append user turn
    -> [goodbye with enough data? complete]
    -> extract -> [changed topic? cancel] -> apply patch -> decide
    -> completion: mark complete, stream handoff, persist, trigger
    -> otherwise: stream interstitial (or fallback), persist

Design principles:
- Generic engine parameterized by a SlotSchema (no per-domain copies)
- Value-returning transitions; the session value is threaded forward
- Persist before dispatch; nothing dispatched after an unpersisted change
- Recoverable failures become fallback text; only LockAcquisitionError
  escapes a turn
"""

import logging
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Sequence

from coachflow.commands import CancelCollection, ReportCompletion, UserTurn
from coachflow.contracts import ConversationMessage, GenerationTicket, PolicyDecision, Session
from coachflow.core.completion_policy import CompletionPolicy
from coachflow.core.completion_trigger import (
    IllegalLockTransition,
    LockAcquisitionError,
    REASON_LOCK_CONFLICT,
    StaleTicketError,
)
from coachflow.core.extractor import FAILURE_OUTCOMES
from coachflow.core.question_generator import (
    STATUS_IN_PROGRESS,
    STATUS_RETRY_FAILED,
    STATUS_RETRY_STARTED,
    MessageStream,
    lock_status_message_kind,
)
from coachflow.core.session_lifecycle import REASON_TOPIC_CHANGE, REASON_USER_CANCELLED
from coachflow.core.slot_schema import SlotSchema
from coachflow.core.slot_store import SlotStore
from coachflow.persistence import LockConflictError, PersistenceError
from coachflow.results import IllegalCommand, TriggerOutcome, TurnResult
from coachflow.utils.goodbye import is_goodbye_message
from coachflow.utils.statuses import LockStatus, MessageRole

logger = logging.getLogger(__name__)


class TurnStream:
    """
    Fragments of the turn's message, then the TurnResult.

    Iterate to receive text fragments as they are produced; once the
    iteration ends, .result holds the TurnResult. run() does both for
    callers that do not display fragments. Single pass.
    """

    def __init__(self, generator: Iterator[str]):
        self._generator = generator
        self._consumed = False
        self.result: Optional[TurnResult] = None

    def __iter__(self) -> Iterator[str]:
        if self._consumed:
            raise RuntimeError("TurnStream can only be consumed once")
        self._consumed = True
        self.result = yield from self._generator

    def run(self) -> TurnResult:
        """Consume all fragments and return the TurnResult."""
        for _ in self:
            pass
        return self.result


class CollectionEngine:
    """
    Orchestrates slot collection for one domain schema

    Functional core design:
    - Holds only stateless collaborators and the immutable schema
    - Session state lives in the Session Lifecycle Manager's store
    - handle_turn() threads one session value through the turn
    """

    def __init__(
        self,
        schema: SlotSchema,
        extractor,
        question_generator,
        lifecycle,
        completion_trigger,
        policy: Optional[CompletionPolicy] = None,
        slot_store: Optional[SlotStore] = None
    ) -> None:
        """
        Initialize Collection Engine

        Args:
            schema: Domain slot schema
            extractor: Extractor instance (extract())
            question_generator: QuestionGenerator instance
            lifecycle: SessionLifecycleManager instance
            completion_trigger: CompletionTrigger instance
            policy: CompletionPolicy (default: built from schema)
            slot_store: SlotStore (default: built from schema)

        Raises:
            TypeError: If any module is missing a required method
        """
        if not isinstance(schema, SlotSchema):
            raise TypeError("schema must be SlotSchema instance")

        self._validate_modules(extractor, question_generator, lifecycle, completion_trigger)

        self.schema = schema
        self.extractor = extractor
        self.generator = question_generator
        self.lifecycle = lifecycle
        self.trigger = completion_trigger
        self.store = slot_store or SlotStore(schema)
        self.policy = policy or CompletionPolicy(schema, self.store)

        logger.info(f"Collection Engine initialized for '{schema.domain}'")

    def _validate_modules(self, extractor, question_generator, lifecycle, completion_trigger):
        """Validate module interfaces"""
        required = (
            (extractor, 'extractor', ('extract',)),
            (question_generator, 'question_generator',
             ('interstitial', 'completion', 'fallback', 'status')),
            (lifecycle, 'lifecycle',
             ('load', 'start', 'append_turn', 'with_slots', 'mark_complete', 'cancel', 'persist')),
            (completion_trigger, 'completion_trigger', ('request_generation', 'report_completion')),
        )
        for module, name, methods in required:
            for method in methods:
                if not callable(getattr(module, method, None)):
                    raise TypeError(f"{name} must have callable {method}() method")

    # =========================================================================
    # Command entry point
    # =========================================================================

    def handle(self, command):
        """
        Dispatch a command.

        Returns:
            TurnStream for UserTurn, Session or IllegalCommand otherwise
        """
        if isinstance(command, UserTurn):
            return self.handle_turn(
                command.user_id,
                command.conversation_id,
                command.user_text,
                image_refs=command.image_refs,
                domain_context=command.domain_context,
                pre_session_history=command.pre_session_history,
                persona=command.persona,
            )

        if isinstance(command, CancelCollection):
            return self.cancel(command.user_id, command.conversation_id, command.reason)

        if isinstance(command, ReportCompletion):
            return self.report_completion(command.ticket, command.result_id, command.error)

        return IllegalCommand(
            reason=f"Unsupported command: {type(command).__name__}",
            command_type=type(command).__name__
        )

    # =========================================================================
    # User turn
    # =========================================================================

    def handle_turn(
        self,
        user_id: str,
        conversation_id: Optional[str],
        user_text: str,
        image_refs: Iterable[str] = (),
        domain_context: Optional[Dict[str, Any]] = None,
        pre_session_history: Optional[Sequence[ConversationMessage]] = None,
        persona: Optional[str] = None
    ) -> TurnStream:
        """
        Process one user message.

        Args:
            user_id: Owning user
            conversation_id: Conversation key (None for standalone sessions)
            user_text: Raw user message
            image_refs: Images attached to the message
            domain_context: Related records for extraction quality
            pre_session_history: Surrounding chat, seeded when a session starts
            persona: Coach personality prompt for generated messages

        Returns:
            TurnStream: Lazy. Nothing happens until it is iterated or run().

        Raises:
            TypeError: If user_text is not a string
        """
        if not isinstance(user_text, str):
            raise TypeError(f"user_text must be string, got {type(user_text).__name__}")

        return TurnStream(self._turn(
            user_id,
            conversation_id,
            user_text,
            tuple(image_refs or ()),
            domain_context,
            pre_session_history,
            persona,
        ))

    def _turn(self, user_id, conversation_id, user_text, image_refs, domain_context,
              pre_session_history, persona):
        session = self.lifecycle.load(user_id, conversation_id, self.schema.domain)
        if session is None:
            session = self.lifecycle.start(user_id, conversation_id, self.schema, pre_session_history)
        loaded_lock = session.generation_lock.status

        if session.is_complete:
            return (yield from self._handed_off_turn(session, user_text, image_refs))

        history_before = session.conversation_history
        session = self.lifecycle.append_turn(session, MessageRole.USER, user_text, image_refs)
        debug: Dict[str, Any] = {'turn_count': session.turn_count}

        logger.info(f"[{self.schema.domain}] Turn {session.turn_count} for {session.session_id}")

        # Goodbye with enough data finishes without extraction
        if self._is_goodbye_finish(session, user_text):
            decision = self.policy.decide(
                session.slots, wants_to_finish=True, turn_count=session.turn_count
            )
            if decision.completes_session:
                logger.info(f"[{self.schema.domain}] Goodbye auto-complete for {session.session_id}")
                debug['goodbye_auto_complete'] = True
                return (yield from self._complete_turn(
                    session, loaded_lock, decision, persona, debug, goodbye=True
                ))

        extraction = self.extractor.extract(
            user_text, history_before, session.slots, image_refs, domain_context
        )
        debug['extraction_outcome'] = extraction.outcome
        debug['extraction'] = {
            key: extraction.metadata.get(key)
            for key in ('error_message', 'error_type', 'ignored_fields',
                        'validation_warnings', 'finish_guard_applied')
        }

        if extraction.changed_topic:
            return self._cancel_turn(session, loaded_lock, extraction, user_text, debug)

        slots = self.store.apply(session.slots, extraction.patch, session.turn_count, image_refs)
        session = self.lifecycle.with_slots(session, slots)

        decision = self.policy.decide(
            slots,
            wants_to_finish=extraction.wants_to_finish,
            turn_count=session.turn_count
        )
        debug['decision'] = decision.reason
        logger.info(f"[{self.schema.domain}] Policy: {decision.state.value} {list(decision.next_slots)}")

        if decision.completes_session:
            return (yield from self._complete_turn(session, loaded_lock, decision, persona, debug))

        if extraction.outcome in FAILURE_OUTCOMES:
            stream = self.generator.fallback(decision, apologize=True)
        else:
            stream = self.generator.interstitial(
                decision, slots, session.conversation_history, user_text, persona
            )

        def finish(text: str) -> TurnResult:
            final = self.lifecycle.append_turn(session, MessageRole.ASSISTANT, text)
            try:
                final, _ = self._persist_turn(final, loaded_lock, debug)
            except PersistenceError as e:
                logger.error(f"[{self.schema.domain}] Turn not persisted for {final.session_id}: {e}")
                debug['persistence_error'] = str(e)
            debug['message_class'] = stream.message_class
            debug['used_fallback'] = stream.used_fallback
            return TurnResult(
                system_output=text,
                session=final,
                decision=decision,
                progress=self.store.progress(final.slots),
                debug=debug,
            )

        return (yield from self._deliver(stream, finish))

    def _cancel_turn(self, session: Session, loaded_lock: LockStatus, extraction, user_text: str,
                     debug: Dict[str, Any]) -> TurnResult:
        """Topic changed: discard the patch, soft-delete, hand message back."""
        decision = self.policy.decide(
            session.slots, changed_topic=True, turn_count=session.turn_count
        )
        cancelled, written = self._persist_turn(
            self.lifecycle.cancel(session, REASON_TOPIC_CHANGE), loaded_lock, debug
        )
        if not written:
            # Another turn closed collection first; only the message is handed back
            return TurnResult(
                system_output="",
                session=cancelled,
                decision=decision,
                progress=self.store.progress(cancelled.slots),
                redispatch_message=user_text,
                debug=debug,
            )

        if extraction.patch:
            logger.warning(
                f"[{self.schema.domain}] Topic change discarded {len(extraction.patch)} "
                f"extracted slot(s): {sorted(extraction.patch)}"
            )
        debug['discarded_patch'] = {name: update.value for name, update in extraction.patch.items()}

        return TurnResult(
            system_output="",
            session=cancelled,
            decision=decision,
            progress=self.store.progress(cancelled.slots),
            session_cancelled=True,
            redispatch_message=user_text,
            debug=debug,
        )

    def _complete_turn(self, session: Session, loaded_lock: LockStatus, decision: PolicyDecision,
                       persona: Optional[str], debug: Dict[str, Any], goodbye: bool = False):
        """Close collection, stream the handoff, persist, then trigger."""
        session = self.lifecycle.mark_complete(session, decision.state, self.schema)
        stream = self.generator.completion(decision, session.slots, persona=persona, goodbye=goodbye)

        def finish(text: str) -> TurnResult:
            final = self.lifecycle.append_turn(session, MessageRole.ASSISTANT, text)
            try:
                stored, written = self._persist_turn(final, loaded_lock, debug)
            except PersistenceError as e:
                raise LockAcquisitionError(final.session_id, e) from e

            if written:
                outcome = self.trigger.request_generation(final)
            else:
                # Lost the race to a concurrent completing turn: never dispatch twice
                lock = stored.generation_lock
                outcome = TriggerOutcome(
                    triggered=False,
                    already_running=lock.status == LockStatus.IN_PROGRESS,
                    result_id=lock.result_id,
                    ticket=None,
                    reason=REASON_LOCK_CONFLICT,
                    session=stored,
                    metadata={'stored_status': lock.status.value},
                )
            debug['message_class'] = stream.message_class
            return TurnResult(
                system_output=text,
                session=outcome.session or final,
                decision=decision,
                progress=self.store.progress(final.slots),
                trigger=outcome,
                debug=debug,
            )

        return (yield from self._deliver(stream, finish))

    def _handed_off_turn(self, session: Session, user_text: str, image_refs):
        """
        Message for a session that already completed collection.

        NOT_STARTED / FAILED locks re-invoke the trigger (retry edge);
        IN_PROGRESS gets a status message. Not a collection turn.
        """
        session = self.lifecycle.append_turn(
            session, MessageRole.USER, user_text, image_refs, count_turn=False
        )
        status = session.generation_lock.status
        outcome: Optional[TriggerOutcome] = None

        if status in (LockStatus.NOT_STARTED, LockStatus.FAILED) and not self._persist_guarded(session, status):
            # Stored lock moved underneath us; report what is stored now
            stored = self.lifecycle.load_by_id(session.user_id, session.session_id)
            kind = STATUS_IN_PROGRESS
            if stored is not None and stored.generation_lock.status != LockStatus.IN_PROGRESS:
                kind = lock_status_message_kind(stored.generation_lock.status)
                if stored.generation_lock.status == LockStatus.FAILED:
                    kind = STATUS_RETRY_FAILED
        elif status in (LockStatus.NOT_STARTED, LockStatus.FAILED):
            logger.info(f"[{self.schema.domain}] Retrying generation for {session.session_id}")
            outcome = self.trigger.request_generation(session)
            session = outcome.session or session

            if outcome.triggered:
                kind = STATUS_RETRY_STARTED
            elif outcome.dispatch_failed:
                kind = STATUS_RETRY_FAILED
            else:
                kind = lock_status_message_kind(session.generation_lock.status)
        else:
            kind = lock_status_message_kind(status)

        stream = self.generator.status(kind)

        def finish(text: str) -> TurnResult:
            final = self.lifecycle.append_turn(session, MessageRole.ASSISTANT, text)
            self._persist_guarded(final, final.generation_lock.status)
            return TurnResult(
                system_output=text,
                session=final,
                progress=self.store.progress(final.slots),
                trigger=outcome,
                debug={'status_message': kind},
            )

        return (yield from self._deliver(stream, finish))

    # =========================================================================
    # Other commands
    # =========================================================================

    def cancel(self, user_id: str, conversation_id: Optional[str], reason: str = REASON_USER_CANCELLED):
        """
        Abandon the active session.

        Returns:
            Session (cancelled) or IllegalCommand
        """
        session = self.lifecycle.load(user_id, conversation_id, self.schema.domain)
        if session is None:
            return IllegalCommand(
                reason=f"No active {self.schema.domain} session for {conversation_id}",
                command_type=CancelCollection.__name__
            )

        if session.generation_lock.status == LockStatus.IN_PROGRESS:
            return IllegalCommand(
                reason=f"Generation in progress for {session.session_id}",
                command_type=CancelCollection.__name__
            )

        cancelled = self.lifecycle.cancel(session, reason)
        try:
            self.lifecycle.persist(cancelled, expected_lock_status={session.generation_lock.status})
        except LockConflictError as e:
            return IllegalCommand(reason=str(e), command_type=CancelCollection.__name__)

        return cancelled

    def report_completion(self, ticket: GenerationTicket, result_id: Optional[str] = None,
                          error: Optional[str] = None):
        """
        Downstream outcome for a ticket.

        Returns:
            Session after the report, or IllegalCommand
        """
        if ticket.domain and ticket.domain != self.schema.domain:
            return IllegalCommand(
                reason=f"Ticket domain '{ticket.domain}' does not match '{self.schema.domain}'",
                command_type=ReportCompletion.__name__
            )

        try:
            return self.trigger.report_completion(ticket, result_id=result_id, error=error)
        except (StaleTicketError, IllegalLockTransition, ValueError) as e:
            logger.warning(f"[{self.schema.domain}] Rejected report for {ticket.ticket_id}: {e}")
            return IllegalCommand(reason=str(e), command_type=ReportCompletion.__name__)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _is_goodbye_finish(self, session: Session, user_text: str) -> bool:
        if not self.schema.auto_complete_on_goodbye or not is_goodbye_message(user_text):
            return False
        return (
            self.store.is_required_complete(session.slots)
            or self.store.has_substantial_progress(session.slots)
        )

    def _persist_turn(self, final: Session, loaded_lock: LockStatus, debug: Dict[str, Any]):
        """
        Write a collection turn unless another handler moved the lock or
        completed the session since this turn loaded it.

        Returns:
            (Session, bool): The written value and True, or the stored
                session and False on conflict

        Raises:
            PersistenceError: If the write fails
        """
        try:
            self.lifecycle.persist(final, expected_lock_status={loaded_lock}, expected_is_complete=False)
        except LockConflictError as e:
            logger.warning(f"[{self.schema.domain}] Stale turn for {final.session_id}: {e}")
            debug['write_conflict'] = str(e)
            stored = self.lifecycle.load_by_id(final.user_id, final.session_id)
            return stored or final, False
        return final, True

    def _persist_guarded(self, session: Session, expected: LockStatus) -> bool:
        """Persist unless the stored lock moved (worker wrote first)."""
        try:
            self.lifecycle.persist(session, expected_lock_status={expected})
        except LockConflictError as e:
            logger.info(f"[{self.schema.domain}] Skipped write for {session.session_id}: {e}")
            return False
        except PersistenceError as e:
            logger.error(f"[{self.schema.domain}] Write failed for {session.session_id}: {e}")
            return False
        return True

    def _deliver(self, stream: MessageStream, finish: Callable[[str], TurnResult]):
        """
        Yield the stream's fragments, then finish the turn with the full text.

        A consumer that stops early (disconnect) still gets the turn
        finished: the remaining fragments are drained and persisted.
        """
        disconnected = False
        try:
            for fragment in stream:
                yield fragment
        except GeneratorExit:
            disconnected = True
            logger.warning(f"[{self.schema.domain}] Consumer disconnected mid-message")

        result = finish(stream.drain())
        if disconnected:
            return None
        return result
