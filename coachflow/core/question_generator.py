"""
Question Generator - Next user-facing message for a collection turn

Responsibilities:
- Interstitial messages: acknowledge input, ask for 1-2 missing slots,
  framed per tier (required = necessary, optional = skippable)
- Completion/handoff messages: what was collected, that generation is
  starting, expected wait, where the result will appear
- Fallback messages: deterministic text when text generation fails
- Status messages for sessions already handed off

Design principles:
- Stateless: everything comes in as arguments
- Every message is a MessageStream (lazy fragments + accumulated text)
- Fallbacks are deterministic, non-empty, and streamed the same way
- Upstream failures never escape; they degrade to fallback text
"""

import logging
from typing import Iterable, Iterator, Mapping, Optional, Sequence

from coachflow.contracts import ConversationMessage, PolicyDecision, Slot
from coachflow.core.slot_schema import SlotSchema
from coachflow.core.slot_store import SlotStore
from coachflow.utils.statuses import LockStatus, MessageRole, PolicyState, PriorityTier

logger = logging.getLogger(__name__)

MESSAGE_INTERSTITIAL = "interstitial"
MESSAGE_COMPLETION = "completion"
MESSAGE_FALLBACK = "fallback"
MESSAGE_STATUS = "status"

STATUS_IN_PROGRESS = "in_progress"
STATUS_RETRY_STARTED = "retry_started"
STATUS_RETRY_FAILED = "retry_failed"
STATUS_READY = "ready"

APOLOGY = "I apologize, but I'm having trouble processing that."

DEFAULT_COMPLETION_MESSAGES = {
    'complete': "Perfect! I have what I need.",
    'partial': "I'll work with what we have so far. Some details might be missing, but you can edit them later.",
    'substantial': "Got it! I have enough to go on.",
}

COMPLETION_MESSAGE_KEYS = {
    PolicyState.FULLY_SATISFIED: 'complete',
    PolicyState.USER_FINISH_COMPLETE: 'complete',
    PolicyState.FORCED_COMPLETE_SATISFIED: 'complete',
    PolicyState.FORCED_COMPLETE_PARTIAL: 'partial',
    PolicyState.USER_FINISH_SUBSTANTIAL: 'substantial',
}

OPTIONAL_STATES = {PolicyState.COLLECT_HIGH_PRIORITY, PolicyState.COLLECT_LOW_PRIORITY}


class MessageStream:
    """
    Lazy, single-pass sequence of text fragments that accumulates the
    full message.

    - Iterating yields fragments as the upstream source produces them
    - A second iteration raises RuntimeError (not restartable)
    - If the source fails before producing anything, or produces nothing,
      the fallback text is yielded instead
    - If the source fails mid-stream, the fragments already delivered are
      kept as the final text
    - drain() consumes whatever is left and returns the full text, so
      callers that only display fragments can still persist the message
    """

    def __init__(self, fragments: Optional[Iterable[str]], fallback_text: str,
                 message_class: str = MESSAGE_INTERSTITIAL):
        if not fallback_text:
            raise ValueError("fallback_text must be non-empty")

        self._fragments = fragments
        self.fallback_text = fallback_text
        self.message_class = message_class
        self._parts = []
        self._iterator: Optional[Iterator[str]] = None
        self.completed = False
        self.used_fallback = False
        self.error: Optional[Exception] = None

    @staticmethod
    def from_text(text: str, message_class: str = MESSAGE_FALLBACK) -> "MessageStream":
        """Deterministic single-fragment stream."""
        return MessageStream([text], fallback_text=text, message_class=message_class)

    def __iter__(self) -> Iterator[str]:
        if self._iterator is not None:
            raise RuntimeError("MessageStream can only be consumed once")
        self._iterator = self._produce()
        return self._iterator

    def _produce(self) -> Iterator[str]:
        try:
            for fragment in self._fragments or ():
                if not fragment:
                    continue
                self._parts.append(fragment)
                yield fragment
        except Exception as e:
            self.error = e
            logger.warning(
                f"{self.message_class} stream failed after {len(self._parts)} "
                f"fragment(s): {type(e).__name__} - {e}"
            )

        if not self._parts:
            self.used_fallback = True
            self._parts.append(self.fallback_text)
            yield self.fallback_text

        self.completed = True

    def drain(self) -> str:
        """Consume remaining fragments (if any) and return the full text."""
        if self._iterator is None:
            self._iterator = self._produce()
        for _ in self._iterator:
            pass
        return self.text

    @property
    def text(self) -> str:
        """Text accumulated so far (full text once completed)."""
        return "".join(self._parts)


class QuestionGenerator:
    """Generate interstitial, completion, fallback and status messages"""

    def __init__(
        self,
        text_client,
        schema: SlotSchema,
        slot_store: Optional[SlotStore] = None,
        temperature: float = 0.7,
        max_tokens: int = 300,
        max_time: Optional[float] = 20.0,
        streaming: bool = True
    ) -> None:
        """
        Initialize Question Generator

        Args:
            text_client: Text-generation collaborator exposing
                generate(system_prompt, user_prompt, ...) and, when
                streaming, generate_stream(system_prompt, user_prompt, ...)
            schema: Slot schema for the domain
            slot_store: Slot Store for summaries (default: new one)
            temperature: Sampling temperature
            max_tokens: Max tokens per message
            max_time: Upstream budget in seconds
            streaming: Use generate_stream() rather than generate()

        Raises:
            TypeError: If text_client lacks the required methods
        """
        required = 'generate_stream' if streaming else 'generate'
        if not hasattr(text_client, required) or not callable(getattr(text_client, required)):
            raise TypeError(f"text_client must have callable {required}() method")

        if not isinstance(schema, SlotSchema):
            raise TypeError("schema must be SlotSchema instance")

        self.client = text_client
        self.schema = schema
        self.store = slot_store or SlotStore(schema)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_time = max_time
        self.streaming = streaming

        logger.info(
            f"Question Generator initialized for '{schema.domain}' "
            f"(streaming={streaming}, temp={temperature})"
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def interstitial(
        self,
        decision: PolicyDecision,
        slots: Mapping[str, Slot],
        history: Sequence[ConversationMessage] = (),
        user_text: str = "",
        persona: Optional[str] = None
    ) -> MessageStream:
        """
        Ask for the decision's next slot(s).

        Args:
            decision: Collect-state PolicyDecision
            slots: Current slot map
            history: Conversation history (including the latest user turn)
            user_text: Latest user message
            persona: Optional coach personality/style prompt

        Returns:
            MessageStream: LLM text, or the deterministic fallback question
        """
        if decision.completes_session or decision.is_cancelled:
            raise ValueError(f"interstitial requires a collect state, got {decision.state.value}")

        fallback = self.fallback_question_text(decision)
        system_prompt = self._interstitial_system_prompt(decision, persona)
        user_prompt = self._interstitial_user_prompt(slots, history, user_text)

        return self._stream(system_prompt, user_prompt, fallback, MESSAGE_INTERSTITIAL)

    def completion(
        self,
        decision: PolicyDecision,
        slots: Mapping[str, Slot],
        persona: Optional[str] = None,
        goodbye: bool = False
    ) -> MessageStream:
        """
        Completion/handoff message.

        Deterministic unless schema.llm_completion_message is set; the
        deterministic text is always the fallback.
        """
        if not decision.completes_session:
            raise ValueError(f"completion requires a completion state, got {decision.state.value}")

        text = self.completion_text(decision, slots, goodbye=goodbye)

        if not self.schema.llm_completion_message or goodbye:
            return MessageStream.from_text(text, MESSAGE_COMPLETION)

        system_prompt = self._completion_system_prompt(decision, persona)
        user_prompt = self._completion_user_prompt(slots)
        return self._stream(system_prompt, user_prompt, text, MESSAGE_COMPLETION)

    def fallback(self, decision: PolicyDecision, apologize: bool = True) -> MessageStream:
        """Deterministic question for degraded turns (no upstream call)."""
        text = self.fallback_question_text(decision)
        if apologize:
            text = f"{APOLOGY} {text}"
        return MessageStream.from_text(text, MESSAGE_FALLBACK)

    def status(self, kind: str) -> MessageStream:
        """Deterministic message for sessions already handed off."""
        return MessageStream.from_text(self.status_text(kind), MESSAGE_STATUS)

    # =========================================================================
    # Deterministic text
    # =========================================================================

    def fallback_question_text(self, decision: PolicyDecision) -> str:
        labels = self._join_labels(decision.next_slots)

        prefix = ""
        if decision.finish_declined:
            prefix = "I'd love to wrap up, but I still need a couple of details first. "

        if decision.state in OPTIONAL_STATES:
            artifact = self.schema.handoff.get('artifact', 'result')
            return (
                f"{prefix}Thanks for sharing! If you'd like, tell me about {labels}. "
                f"It's optional, but it helps make your {artifact} more accurate. "
                f"Feel free to skip it."
            )

        return f"{prefix}Thanks for sharing! Can you tell me about {labels}?"

    def completion_text(self, decision: PolicyDecision, slots: Mapping[str, Slot],
                        goodbye: bool = False) -> str:
        key = COMPLETION_MESSAGE_KEYS[decision.state]
        if goodbye and 'goodbye' in self.schema.messages:
            key = 'goodbye'

        parts = [self.schema.message(key, DEFAULT_COMPLETION_MESSAGES.get(key, ""))]

        collected = list(self.store.collected_summary(slots))
        if collected:
            parts.append(f"Here's what I captured: {', '.join(collected)}.")

        required_missing = []
        if key != 'complete':
            required_missing = self.store.missing_labels(slots, PriorityTier.REQUIRED)
        if required_missing:
            parts.append(f"Still missing: {', '.join(required_missing)}.")

        parts.append(self._handoff_sentence())
        return " ".join(part for part in parts if part)

    def status_text(self, kind: str) -> str:
        artifact = self.schema.handoff.get('artifact', 'result')
        location = self.schema.handoff.get('result_location', 'your account')
        wait = self.schema.handoff.get('expected_wait', 'a moment')

        if kind == STATUS_IN_PROGRESS:
            return f"I'm still working on your {artifact}. It'll show up in {location} shortly."
        if kind == STATUS_RETRY_STARTED:
            return f"Let me try that again. I'm creating your {artifact} now, it takes about {wait}."
        if kind == STATUS_RETRY_FAILED:
            return (
                f"I wasn't able to start your {artifact} just now. "
                f"Your details are saved, so send me another message and I'll try again."
            )
        if kind == STATUS_READY:
            return f"Your {artifact} is ready. You'll find it in {location}."

        raise ValueError(f"Unknown status kind: {kind}")

    def _handoff_sentence(self) -> str:
        artifact = self.schema.handoff.get('artifact', 'result')
        wait = self.schema.handoff.get('expected_wait', 'a moment')
        location = self.schema.handoff.get('result_location', 'your account')
        return f"I'm creating your {artifact} now. It usually takes {wait}, and you'll find it in {location}."

    def _join_labels(self, names: Sequence[str]) -> str:
        labels = [_display_label(self.schema.label(name)) for name in names]
        if not labels:
            return "anything else you'd like to add"
        if len(labels) == 1:
            return f"your {labels[0]}"
        return f"your {', '.join(labels[:-1])} and {labels[-1]}"

    # =========================================================================
    # LLM prompts
    # =========================================================================

    def _stream(self, system_prompt: str, user_prompt: str, fallback: str,
                message_class: str) -> MessageStream:
        def fragments():
            if self.streaming:
                yield from self.client.generate_stream(
                    system_prompt,
                    user_prompt,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    max_time=self.max_time
                )
            else:
                yield self.client.generate(
                    system_prompt,
                    user_prompt,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    max_time=self.max_time
                )

        return MessageStream(fragments(), fallback, message_class)

    def _interstitial_system_prompt(self, decision: PolicyDecision, persona: Optional[str]) -> str:
        lines = [persona or "You are a friendly, knowledgeable fitness coach.", ""]

        targets = []
        for name in decision.next_slots:
            definition = self.schema.get(name)
            detail = f" ({definition.description})" if definition.description else ""
            targets.append(f"- {definition.label}{detail}")

        lines.append("Briefly acknowledge what the user just shared, then ask about ONLY:")
        lines += targets

        if decision.state in OPTIONAL_STATES:
            lines.append(
                "These details are optional. Say so, and briefly explain how they "
                "would improve the result."
            )
        else:
            lines.append("These details are needed before we can continue.")

        if decision.finish_declined:
            lines.append(
                "The user asked to wrap up, but required details are still missing. "
                "Explain kindly that you need this before finishing."
            )

        lines.append("Keep it to two or three sentences. Do not ask about anything else.")
        return "\n".join(lines)

    def _interstitial_user_prompt(self, slots: Mapping[str, Slot],
                                  history: Sequence[ConversationMessage], user_text: str) -> str:
        recent = [
            f"{'User' if m.role == MessageRole.USER else 'Coach'}: {m.content}"
            for m in list(history)[-6:]
        ]
        progress = self.store.progress(slots)
        sections = []
        if recent:
            sections.append("RECENT CONVERSATION:\n" + "\n".join(recent))
        sections.append(f"LATEST MESSAGE:\n{user_text}")
        sections.append(
            f"PROGRESS: {progress.required_completed}/{progress.required_total} required, "
            f"{progress.completed}/{progress.total} overall"
        )
        return "\n\n".join(sections)

    def _completion_system_prompt(self, decision: PolicyDecision, persona: Optional[str]) -> str:
        artifact = self.schema.handoff.get('artifact', 'result')
        lines = [
            persona or "You are a friendly, knowledgeable fitness coach.",
            "",
            f"Collection is finished. Write a short message that summarizes what was "
            f"collected and says you are now creating the user's {artifact}.",
            f"Mention it usually takes {self.schema.handoff.get('expected_wait', 'a moment')} "
            f"and will appear in {self.schema.handoff.get('result_location', 'their account')}.",
        ]
        if decision.state in (PolicyState.FORCED_COMPLETE_PARTIAL, PolicyState.USER_FINISH_SUBSTANTIAL):
            lines.append("Some details are missing. Acknowledge that they can be adjusted later.")
        lines.append("Keep it under four sentences.")
        return "\n".join(lines)

    def _completion_user_prompt(self, slots: Mapping[str, Slot]) -> str:
        collected = self.store.collected_summary(slots)
        rendered = "\n".join(f"- {label}: {value}" for label, value in collected.items())
        return f"COLLECTED:\n{rendered or '(nothing)'}"


def _display_label(label: str) -> str:
    # Keep acronyms like RPE as-is
    return label if label.isupper() else label.lower()


def lock_status_message_kind(status: LockStatus) -> str:
    """Map a lock status to the status message shown for a handed-off session."""
    if status == LockStatus.IN_PROGRESS:
        return STATUS_IN_PROGRESS
    if status == LockStatus.COMPLETE:
        return STATUS_READY
    return STATUS_RETRY_STARTED
