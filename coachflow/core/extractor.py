"""
Extractor - Turn one user message into a slot patch plus intents

Responsibilities:
- Build extraction prompts via a pluggable prompt strategy
- Call the structured-extraction collaborator with a declared output schema
- Validate and normalize output (unknown slots ignored, confidence bands,
  boolean intents)
- Apply the short-message guard to the finish intent
- Convert every failure into an empty, no-op result

NOT responsible for:
- Applying the patch (Slot Store)
- Deciding sufficiency (Completion Policy)
- Acting on topic change (Collection Engine)

Design principles:
- Explicit outcome constants on every result
- Validation warnings, not failures, for individual bad fields
- Never raises for upstream failures (timeouts, malformed output)
- Domain wording lives in the prompt strategy, not here
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from coachflow.contracts import ConversationMessage, ExtractionResult, Slot, SlotUpdate
from coachflow.core.slot_schema import SlotSchema
from coachflow.utils.statuses import Confidence, MessageRole, VALID_CONFIDENCES

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"
OUTCOME_NO_UPDATES = "no_updates"
OUTCOME_EXTRACTION_FAILED = "extraction_failed"
OUTCOME_GENERATION_FAILED = "generation_failed"

FAILURE_OUTCOMES = {OUTCOME_EXTRACTION_FAILED, OUTCOME_GENERATION_FAILED}

TRUE_VALUES = {'true', 'yes', 'y', '1', 't'}
FALSE_VALUES = {'false', 'no', 'n', '0', 'f'}

DEFAULT_MAX_HISTORY_MESSAGES = 20


def build_output_schema(schema: SlotSchema) -> Dict[str, Any]:
    """
    Declared output schema for the structured-extraction collaborator.

    Only schema slots are allowed under 'slots'; each entry must carry a
    'value' and may carry a confidence band and notes.
    """
    slot_entry = {
        "type": "object",
        "properties": {
            "value": {},
            "confidence": {"type": "string", "enum": sorted(VALID_CONFIDENCES)},
            "notes": {"type": "string"},
        },
        "required": ["value"],
    }
    return {
        "type": "object",
        "properties": {
            "slots": {
                "type": "object",
                "properties": {name: slot_entry for name in schema.slot_names},
            },
            "wants_to_finish": {"type": "boolean"},
            "changed_topic": {"type": "boolean"},
        },
        "required": ["slots"],
    }


def apply_finish_guard(user_text: str, wants_to_finish: bool, schema: SlotSchema) -> Tuple[bool, bool]:
    """
    Short-message guard for the finish intent.

    A message shorter than schema.min_message_length that contains no
    explicit finish vocabulary cannot finish the session ("." or "k").

    Returns:
        tuple: (effective wants_to_finish, guard_applied)
    """
    if not wants_to_finish:
        return False, False

    text = (user_text or "").strip()
    if len(text) < schema.min_message_length and not schema.contains_finish_vocabulary(text):
        return False, True

    return True, False


class ExtractionPromptStrategy:
    """
    Builds the prompts for one extraction call.

    Subclass per domain to change wording; the Extractor only depends on
    these two methods.
    """

    def build_system_prompt(self, schema: SlotSchema, slots: Mapping[str, Slot]) -> str:
        raise NotImplementedError

    def build_user_prompt(
        self,
        schema: SlotSchema,
        user_text: str,
        history: Sequence[ConversationMessage],
        slots: Mapping[str, Slot],
        image_refs: Sequence[str],
        domain_context: Optional[Dict[str, Any]]
    ) -> str:
        raise NotImplementedError


class SchemaPromptStrategy(ExtractionPromptStrategy):
    """Generic prompt strategy driven entirely by the slot schema."""

    def __init__(self, max_history_messages: int = DEFAULT_MAX_HISTORY_MESSAGES):
        self.max_history_messages = max_history_messages

    def build_system_prompt(self, schema: SlotSchema, slots: Mapping[str, Slot]) -> str:
        lines = [
            "You extract structured information from a user's message for a "
            "multi-turn information collection conversation.",
            "",
        ]
        if schema.extraction_guidance:
            lines += [schema.extraction_guidance, ""]

        lines.append("FIELDS:")
        for definition in schema.slots:
            slot = slots.get(definition.name)
            state = "collected" if slot is not None and slot.is_complete else "missing"
            description = f": {definition.description}" if definition.description else ""
            lines.append(
                f"- {definition.name} ({definition.label}, {definition.tier.value}, "
                f"{state}){description}"
            )

        lines += [
            "",
            "RULES:",
            "1. Only fill a field when the user states it explicitly or strongly implies it.",
            "2. Use confidence 'low' for ambiguous inferences; they are still recorded.",
            "3. Explicit negative answers ('no injuries', 'none') are valid values.",
            "4. Omit fields with no evidence in this message. Never invent values.",
            "5. wants_to_finish = true only if the user asks to wrap up, skip the rest, or save now.",
            "6. changed_topic = true only if the user has clearly moved on to something unrelated.",
        ]
        return "\n".join(lines)

    def build_user_prompt(
        self,
        schema: SlotSchema,
        user_text: str,
        history: Sequence[ConversationMessage],
        slots: Mapping[str, Slot],
        image_refs: Sequence[str],
        domain_context: Optional[Dict[str, Any]]
    ) -> str:
        sections = []

        recent = list(history)[-self.max_history_messages:]
        if recent:
            rendered = []
            for message in recent:
                speaker = "User" if message.role == MessageRole.USER else "Assistant"
                marker = " (earlier chat)" if message.is_pre_session_context else ""
                rendered.append(f"{speaker}{marker}: {message.content}")
            sections.append("CONVERSATION SO FAR:\n" + "\n".join(rendered))

        collected = {
            name: slot.value for name, slot in slots.items() if slot.is_complete
        }
        if collected:
            sections.append("ALREADY COLLECTED:\n" + json.dumps(collected, default=str))

        if domain_context:
            sections.append("RELATED CONTEXT:\n" + json.dumps(domain_context, default=str))

        if image_refs:
            sections.append(f"The user attached {len(image_refs)} image(s) to this message.")

        sections.append(f"USER MESSAGE:\n{user_text}")
        return "\n\n".join(sections)


class Extractor:
    """Extract slot patches and intents from user messages"""

    def __init__(
        self,
        extraction_client,
        schema: SlotSchema,
        prompt_strategy: Optional[ExtractionPromptStrategy] = None,
        max_tokens: int = 512,
        max_time: Optional[float] = 30.0
    ) -> None:
        """
        Initialize extractor

        Args:
            extraction_client: Structured-extraction collaborator exposing
                extract(system_prompt, user_prompt, images, schema, ...)
            schema: Slot schema for the domain
            prompt_strategy: Prompt builder (default: SchemaPromptStrategy)
            max_tokens: Max tokens to generate
            max_time: Upstream budget in seconds (exceeding it = failure)

        Raises:
            TypeError: If client lacks extract() or schema has wrong type
            RuntimeError: If client reports model not loaded
        """
        if not hasattr(extraction_client, 'extract') or not callable(extraction_client.extract):
            raise TypeError("extraction_client must have callable extract() method")

        if hasattr(extraction_client, 'is_loaded') and not extraction_client.is_loaded():
            raise RuntimeError("Extraction client model not loaded")

        if not isinstance(schema, SlotSchema):
            raise TypeError("schema must be SlotSchema instance")

        self.client = extraction_client
        self.schema = schema
        self.prompt_strategy = prompt_strategy or SchemaPromptStrategy()
        self.max_tokens = max_tokens
        self.max_time = max_time
        self.output_schema = build_output_schema(schema)

        logger.info(
            f"Extractor initialized for '{schema.domain}' "
            f"(strategy={type(self.prompt_strategy).__name__}, max_time={max_time})"
        )

    def extract(
        self,
        user_text: str,
        conversation_history: Sequence[ConversationMessage],
        slots: Mapping[str, Slot],
        image_refs: Sequence[str] = (),
        domain_context: Optional[Dict[str, Any]] = None
    ) -> ExtractionResult:
        """
        Extract a slot patch and intents from one user message.

        Args:
            user_text: Raw user message
            conversation_history: History before this message
            slots: Current slot map
            image_refs: Images attached to this message
            domain_context: Optional related records (quality hints only)

        Returns:
            ExtractionResult: Never raises for upstream failures; failures
            come back as an empty patch with a failure outcome.

        Raises:
            TypeError: If user_text is not a string
        """
        if not isinstance(user_text, str):
            raise TypeError(f"user_text must be string, got {type(user_text).__name__}")

        image_refs = tuple(image_refs or ())
        metadata = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'raw_output': None,
            'error_message': None,
            'error_type': None,
            'ignored_fields': [],
            'validation_warnings': [],
            'finish_guard_applied': False,
        }

        try:
            system_prompt = self.prompt_strategy.build_system_prompt(self.schema, slots)
            user_prompt = self.prompt_strategy.build_user_prompt(
                self.schema, user_text, conversation_history, slots, image_refs, domain_context
            )
        except Exception as e:
            logger.warning(
                f"[{self.schema.domain}] Extraction prompt failed: {type(e).__name__} - {e}"
            )
            metadata['error_message'] = str(e)
            metadata['error_type'] = type(e).__name__
            return ExtractionResult.empty(OUTCOME_EXTRACTION_FAILED, metadata)

        logger.debug(
            f"[{self.schema.domain}] Built extraction prompt "
            f"({len(system_prompt)} + {len(user_prompt)} chars)"
        )

        try:
            raw = self.client.extract(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                images=list(image_refs) or None,
                schema=self.output_schema,
                max_tokens=self.max_tokens,
                max_time=self.max_time
            )
            metadata['raw_output'] = raw

        except ValueError as e:
            # Includes json.JSONDecodeError and schema violations
            logger.warning(f"[{self.schema.domain}] Malformed extraction output: {e}")
            metadata['error_message'] = str(e)
            metadata['error_type'] = type(e).__name__
            return ExtractionResult.empty(OUTCOME_EXTRACTION_FAILED, metadata)

        except Exception as e:
            logger.warning(
                f"[{self.schema.domain}] Extraction call failed: {type(e).__name__} - {e}"
            )
            metadata['error_message'] = str(e)
            metadata['error_type'] = type(e).__name__
            return ExtractionResult.empty(OUTCOME_GENERATION_FAILED, metadata)

        if not isinstance(raw, dict):
            logger.warning(f"[{self.schema.domain}] Extraction output is not an object")
            metadata['error_message'] = f"Expected object, got {type(raw).__name__}"
            metadata['error_type'] = 'SchemaViolation'
            return ExtractionResult.empty(OUTCOME_EXTRACTION_FAILED, metadata)

        patch = self._build_patch(raw.get('slots') or {}, metadata)

        wants_to_finish = self._read_intent(raw, 'wants_to_finish', metadata)
        changed_topic = self._read_intent(raw, 'changed_topic', metadata)

        wants_to_finish, guard_applied = apply_finish_guard(user_text, wants_to_finish, self.schema)
        if guard_applied:
            metadata['finish_guard_applied'] = True
            logger.warning(
                f"[{self.schema.domain}] Finish intent overridden for short message "
                f"'{user_text.strip()}'"
            )

        outcome = OUTCOME_SUCCESS if patch else OUTCOME_NO_UPDATES
        logger.info(
            f"[{self.schema.domain}] Extraction {outcome}: {sorted(patch)} "
            f"(finish={wants_to_finish}, topic_change={changed_topic})"
        )

        return ExtractionResult(
            patch=patch,
            wants_to_finish=wants_to_finish,
            changed_topic=changed_topic,
            outcome=outcome,
            metadata=metadata,
        )

    def _build_patch(self, raw_slots: Any, metadata: Dict[str, Any]) -> Dict[str, SlotUpdate]:
        """Validate raw slot entries. Mutates metadata warning lists."""
        patch = {}

        if not isinstance(raw_slots, dict):
            metadata['validation_warnings'].append({
                'field': 'slots',
                'issue': 'not_an_object',
            })
            return patch

        for name, entry in raw_slots.items():
            if not self.schema.has_slot(name):
                metadata['ignored_fields'].append(name)
                logger.warning(f"[{self.schema.domain}] Ignoring unknown slot '{name}'")
                continue

            if not isinstance(entry, dict) or 'value' not in entry:
                metadata['validation_warnings'].append({
                    'field': name,
                    'issue': 'missing_value_envelope',
                })
                continue

            update = SlotUpdate(
                value=entry['value'],
                confidence=self._normalize_confidence(name, entry.get('confidence'), metadata),
                notes=entry.get('notes') if isinstance(entry.get('notes'), str) else None,
            )
            if update.has_value:
                patch[name] = update

        return patch

    def _normalize_confidence(self, name: str, raw: Any, metadata: Dict[str, Any]) -> Optional[Confidence]:
        if raw is None:
            return None

        normalized = str(raw).strip().lower()
        if normalized in VALID_CONFIDENCES:
            return Confidence(normalized)

        metadata['validation_warnings'].append({
            'field': name,
            'value': raw,
            'issue': 'invalid_confidence',
            'expected': sorted(VALID_CONFIDENCES),
        })
        return None

    def _read_intent(self, raw: Dict[str, Any], key: str, metadata: Dict[str, Any]) -> bool:
        value = raw.get(key, False)
        normalized = self._normalize_boolean(value)

        if normalized is None:
            metadata['validation_warnings'].append({
                'field': key,
                'value': value,
                'issue': 'invalid_boolean',
                'expected': [True, False],
            })
            return False

        return normalized

    def _normalize_boolean(self, value: Any) -> Optional[bool]:
        """
        Normalize string boolean values to Python bool.

        Returns:
            True, False, or None if cannot normalize
        """
        if isinstance(value, bool):
            return value

        if value is None:
            return False

        if not isinstance(value, str):
            return None

        normalized = value.strip().lower()
        if normalized in TRUE_VALUES:
            return True
        if normalized in FALSE_VALUES:
            return False
        return None
