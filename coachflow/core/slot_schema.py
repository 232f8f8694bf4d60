"""
Slot Schema - Declarative per-domain slot configuration

Responsibilities:
- Load domain schemas from JSON (data/schemas/*.json)
- Validate schema structure fail-fast (no partial schemas)
- Expose ordered slot definitions, tiers, labels and policy knobs
- Compile the finish vocabulary into a matcher

NOT responsible for:
- Slot values (Slot Store)
- Completion decisions (Completion Policy)
- Prompt wording (Extractor / Question Generator)

Design principles:
- Immutable after load (frozen dataclasses, tuples)
- One schema per domain; the engine is generic over schemas
- Substantial-progress thresholds are configuration, not constants
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from coachflow.utils.statuses import PriorityTier, VALID_TIERS

logger = logging.getLogger(__name__)

# Used when a schema omits finish_vocabulary
DEFAULT_FINISH_VOCABULARY = (
    "done",
    "skip",
    "finish",
    "log it",
    "that's all",
    "that's it",
    "i'm done",
    "just log",
    "save it",
    "yes",
    "yep",
    "yeah",
    "yea",
)

DEFAULT_MIN_MESSAGE_LENGTH = 5

REQUIRED_SCHEMA_KEYS = {'domain', 'max_turns', 'slots'}
REQUIRED_SLOT_KEYS = {'name', 'label', 'tier'}


class SchemaError(Exception):
    """Raised when a slot schema is malformed or incomplete"""
    pass


@dataclass(frozen=True)
class SlotDefinition:
    """
    Declaration of a single slot.

    Attributes:
        name: Slot key (used in patches and persisted documents)
        label: Human-readable name used in prompts and messages
        description: What the slot captures (guides extraction)
        tier: required | high | low
        topic: Thematic group; related slots may be asked together
        image_relevant: Whether attached images count as provenance
    """
    name: str
    label: str
    tier: PriorityTier
    description: str = ""
    topic: Optional[str] = None
    image_relevant: bool = False

    def __post_init__(self):
        if not self.name or not isinstance(self.name, str):
            raise SchemaError(f"slot name must be non-empty string, got: {self.name!r}")

        if not self.label or not isinstance(self.label, str):
            raise SchemaError(f"label missing or empty for slot '{self.name}'")

        if not isinstance(self.tier, PriorityTier):
            raise SchemaError(
                f"tier must be PriorityTier for slot '{self.name}', got: {self.tier!r}"
            )

    @property
    def required(self) -> bool:
        return self.tier == PriorityTier.REQUIRED


@dataclass(frozen=True)
class SubstantialProgressRule:
    """
    One way of satisfying 'substantial progress'.

    Satisfied when at least min_required_completed required slots are
    complete and, if require_all_high_priority, every high-priority slot
    is complete too.
    """
    min_required_completed: int
    require_all_high_priority: bool = False


@dataclass(frozen=True)
class SlotSchema:
    """
    Immutable slot schema for one collection domain.

    Built by load_schema(); construct directly only in tests.
    """
    domain: str
    slots: Tuple[SlotDefinition, ...]
    max_turns: int
    schema_version: str = "1.0.0"
    session_id_prefix: str = "collection"
    min_message_length: int = DEFAULT_MIN_MESSAGE_LENGTH
    finish_vocabulary: Tuple[str, ...] = DEFAULT_FINISH_VOCABULARY
    substantial_progress: Tuple[SubstantialProgressRule, ...] = ()
    auto_complete_on_goodbye: bool = False
    llm_completion_message: bool = False
    handoff: Dict[str, str] = field(default_factory=dict)
    messages: Dict[str, str] = field(default_factory=dict)
    extraction_guidance: str = ""

    def __post_init__(self):
        if not self.domain:
            raise SchemaError("domain must be non-empty string")

        if not self.slots:
            raise SchemaError(f"schema '{self.domain}' declares no slots")

        names = [slot.name for slot in self.slots]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise SchemaError(f"schema '{self.domain}' has duplicate slots: {duplicates}")

        if not self.required_slots:
            raise SchemaError(f"schema '{self.domain}' declares no required slots")

        if not isinstance(self.max_turns, int) or self.max_turns < 1:
            raise SchemaError(f"max_turns must be positive int, got: {self.max_turns!r}")

        if self.min_message_length < 0:
            raise SchemaError("min_message_length must be >= 0")

        for rule in self.substantial_progress:
            if not 0 < rule.min_required_completed <= len(self.required_slots):
                raise SchemaError(
                    f"substantial_progress threshold {rule.min_required_completed} "
                    f"out of range for {len(self.required_slots)} required slots"
                )

    # =========================================================================
    # Lookups
    # =========================================================================

    @property
    def slot_names(self) -> List[str]:
        return [slot.name for slot in self.slots]

    @property
    def required_slots(self) -> List[str]:
        return self.slots_in_tier(PriorityTier.REQUIRED)

    @property
    def high_priority_slots(self) -> List[str]:
        return self.slots_in_tier(PriorityTier.HIGH)

    @property
    def low_priority_slots(self) -> List[str]:
        return self.slots_in_tier(PriorityTier.LOW)

    def slots_in_tier(self, tier: PriorityTier) -> List[str]:
        return [slot.name for slot in self.slots if slot.tier == tier]

    def get(self, name: str) -> SlotDefinition:
        for slot in self.slots:
            if slot.name == name:
                return slot
        raise KeyError(f"Unknown slot '{name}' for schema '{self.domain}'")

    def has_slot(self, name: str) -> bool:
        return any(slot.name == name for slot in self.slots)

    def label(self, name: str) -> str:
        return self.get(name).label

    def message(self, key: str, default: str = "") -> str:
        return self.messages.get(key, default)

    def contains_finish_vocabulary(self, text: str) -> bool:
        """
        Check for explicit finish words (case-insensitive, whole words)

        Apostrophes in vocabulary entries are optional in the text,
        so "thats all" matches "that's all".
        """
        return bool(_compile_finish_pattern(self.finish_vocabulary).search(text or ""))


def _compile_finish_pattern(vocabulary: Tuple[str, ...]):
    alternatives = [
        re.escape(phrase).replace("'", "'?").replace(r"\ ", r"\s+")
        for phrase in vocabulary
    ]
    return re.compile(r"\b(" + "|".join(alternatives) + r")\b", re.IGNORECASE)


# =============================================================================
# Loading
# =============================================================================

def schema_from_dict(data: dict) -> SlotSchema:
    """
    Build SlotSchema from a parsed JSON document.

    Args:
        data: Schema document

    Returns:
        SlotSchema: Validated schema

    Raises:
        SchemaError: If required keys are missing or values are invalid
    """
    if not isinstance(data, dict):
        raise SchemaError(f"schema must be JSON object, got {type(data).__name__}")

    missing = REQUIRED_SCHEMA_KEYS - set(data.keys())
    if missing:
        raise SchemaError(f"schema missing required keys: {sorted(missing)}")

    slots = []
    for index, raw in enumerate(data['slots']):
        missing_slot_keys = REQUIRED_SLOT_KEYS - set(raw.keys())
        if missing_slot_keys:
            raise SchemaError(
                f"slot #{index} missing required keys: {sorted(missing_slot_keys)}"
            )

        if raw['tier'] not in VALID_TIERS:
            raise SchemaError(
                f"slot '{raw['name']}' has invalid tier '{raw['tier']}'. "
                f"Valid: {sorted(VALID_TIERS)}"
            )

        slots.append(SlotDefinition(
            name=raw['name'],
            label=raw['label'],
            tier=PriorityTier(raw['tier']),
            description=raw.get('description', ''),
            topic=raw.get('topic'),
            image_relevant=bool(raw.get('image_relevant', False)),
        ))

    rules = tuple(
        SubstantialProgressRule(
            min_required_completed=int(rule['min_required_completed']),
            require_all_high_priority=bool(rule.get('require_all_high_priority', False)),
        )
        for rule in data.get('substantial_progress', [])
    )

    return SlotSchema(
        domain=data['domain'],
        slots=tuple(slots),
        max_turns=data['max_turns'],
        schema_version=data.get('schema_version', "1.0.0"),
        session_id_prefix=data.get('session_id_prefix', data['domain']),
        min_message_length=int(data.get('min_message_length', DEFAULT_MIN_MESSAGE_LENGTH)),
        finish_vocabulary=tuple(data.get('finish_vocabulary', DEFAULT_FINISH_VOCABULARY)),
        substantial_progress=rules,
        auto_complete_on_goodbye=bool(data.get('auto_complete_on_goodbye', False)),
        llm_completion_message=bool(data.get('llm_completion_message', False)),
        handoff=dict(data.get('handoff', {})),
        messages=dict(data.get('messages', {})),
        extraction_guidance=data.get('extraction_guidance', ""),
    )


def load_schema(schema_path) -> SlotSchema:
    """
    Load and validate a schema file.

    Args:
        schema_path: Path to schema JSON

    Raises:
        FileNotFoundError: If file doesn't exist
        SchemaError: If schema is malformed
    """
    path = Path(schema_path)

    if not path.exists():
        raise FileNotFoundError(f"Slot schema not found: {schema_path}")

    with open(path, 'r') as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise SchemaError(f"Invalid JSON in {path.name}: {e}") from e

    schema = schema_from_dict(data)
    logger.info(
        f"Loaded schema '{schema.domain}' v{schema.schema_version}: "
        f"{len(schema.slots)} slots ({len(schema.required_slots)} required), "
        f"max_turns={schema.max_turns}"
    )
    return schema


def load_schema_registry(schema_dir) -> Dict[str, SlotSchema]:
    """
    Load every *.json schema in a directory, keyed by domain.

    Raises:
        FileNotFoundError: If directory doesn't exist
        SchemaError: If any schema is malformed or two share a domain
    """
    directory = Path(schema_dir)

    if not directory.is_dir():
        raise FileNotFoundError(f"Schema directory not found: {schema_dir}")

    registry = {}
    for path in sorted(directory.glob("*.json")):
        schema = load_schema(path)
        if schema.domain in registry:
            raise SchemaError(f"Duplicate schema domain '{schema.domain}' in {path.name}")
        registry[schema.domain] = schema

    logger.info(f"Schema registry loaded: {sorted(registry)}")
    return registry
