"""
Slot Store - Monotonic slot map operations

Responsibilities:
- Create empty slot maps conforming to a schema
- Merge extractor patches into a slot map (value-returning)
- Record provenance (turn reference, image refs for image-relevant slots)
- Report progress and pending slots per tier
- Evaluate substantial-progress rules

Design principles:
- Pure functions over slot maps (input never mutated, new map returned)
- Monotonic: a complete slot never regresses to pending
- Unknown slot names are ignored and logged, never stored
- No completeness policy here (Completion Policy decides sufficiency)
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from coachflow.contracts import Progress, Slot, SlotUpdate
from coachflow.core.slot_schema import SlotSchema
from coachflow.utils.statuses import Confidence, PriorityTier, SlotStatus

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = Confidence.MEDIUM


class SlotStore:
    """
    Stateless slot map operations for one schema.

    Holds only the (immutable) schema. Every method takes a slot map
    and returns a value; nothing is cached between calls.
    """

    def __init__(self, schema: SlotSchema) -> None:
        if not isinstance(schema, SlotSchema):
            raise TypeError("schema must be SlotSchema instance")

        self.schema = schema

    # =========================================================================
    # Construction and merge
    # =========================================================================

    def create_empty(self) -> Dict[str, Slot]:
        """
        Build an all-pending slot map in schema order.

        Returns:
            dict: slot name -> Slot(status=pending, value=None)
        """
        return {name: Slot() for name in self.schema.slot_names}

    def apply(
        self,
        slots: Mapping[str, Slot],
        patch: Mapping[str, SlotUpdate],
        turn_index: int,
        image_refs: Iterable[str] = ()
    ) -> Dict[str, Slot]:
        """
        Merge an extractor patch into a slot map.

        Only slots present in the patch with a non-null value are touched.
        Touched slots become COMPLETE with confidence defaulting to MEDIUM.
        A later value for an already complete slot replaces the earlier one
        (user corrections), status stays COMPLETE.

        Args:
            slots: Current slot map (not mutated)
            patch: Slot name -> SlotUpdate
            turn_index: Turn that produced the patch (provenance)
            image_refs: Images attached to that turn

        Returns:
            dict: New slot map
        """
        image_refs = tuple(image_refs or ())
        updated = dict(slots)
        applied = []

        for name, update in patch.items():
            if not self.schema.has_slot(name):
                logger.warning(f"Ignoring patch for unknown slot '{name}'")
                continue

            if not isinstance(update, SlotUpdate):
                logger.warning(
                    f"Ignoring non-SlotUpdate patch for '{name}': {type(update).__name__}"
                )
                continue

            if not update.has_value:
                continue

            definition = self.schema.get(name)
            updated[name] = Slot(
                status=SlotStatus.COMPLETE,
                value=update.value,
                confidence=update.confidence or DEFAULT_CONFIDENCE,
                notes=update.notes,
                extracted_from=f"message_{turn_index}",
                image_refs=image_refs if definition.image_relevant else (),
            )
            applied.append(name)

        if applied:
            logger.info(f"Applied {len(applied)} slot(s) at turn {turn_index}: {applied}")

        return updated

    # =========================================================================
    # Read-only views
    # =========================================================================

    def pending(self, slots: Mapping[str, Slot], tier: Optional[PriorityTier] = None) -> List[str]:
        """
        Slots not yet complete, in schema order.

        Args:
            slots: Slot map
            tier: Restrict to one tier (None = all tiers)
        """
        names = self.schema.slot_names if tier is None else self.schema.slots_in_tier(tier)
        return [name for name in names if not self._is_complete(slots, name)]

    def completed(self, slots: Mapping[str, Slot]) -> List[str]:
        return [name for name in self.schema.slot_names if self._is_complete(slots, name)]

    def is_required_complete(self, slots: Mapping[str, Slot]) -> bool:
        return not self.pending(slots, PriorityTier.REQUIRED)

    def is_fully_complete(self, slots: Mapping[str, Slot]) -> bool:
        return not self.pending(slots)

    def progress(self, slots: Mapping[str, Slot]) -> Progress:
        """
        Completion counts for a slot map.

        Returns:
            Progress: Totals overall and per tier
        """
        def count(names):
            return sum(1 for name in names if self._is_complete(slots, name))

        required = self.schema.required_slots
        high = self.schema.high_priority_slots
        low = self.schema.low_priority_slots
        all_names = self.schema.slot_names

        completed = count(all_names)
        required_completed = count(required)

        return Progress(
            completed=completed,
            total=len(all_names),
            percentage=_percent(completed, len(all_names)),
            required_completed=required_completed,
            required_total=len(required),
            required_percentage=_percent(required_completed, len(required)),
            high_priority_completed=count(high),
            high_priority_total=len(high),
            low_priority_completed=count(low),
            low_priority_total=len(low),
        )

    def has_substantial_progress(self, slots: Mapping[str, Slot]) -> bool:
        """
        Check the schema's substantial-progress rules (any rule suffices).

        A schema without rules never has substantial progress; only full
        required completion honours a finish request there.
        """
        progress = self.progress(slots)
        high_priority_done = progress.high_priority_completed == progress.high_priority_total

        for rule in self.schema.substantial_progress:
            if progress.required_completed < rule.min_required_completed:
                continue
            if rule.require_all_high_priority and not high_priority_done:
                continue
            return True

        return False

    def collected_summary(self, slots: Mapping[str, Slot]) -> Dict[str, Any]:
        """Label -> value for every complete slot (schema order)."""
        return {
            self.schema.label(name): slots[name].value
            for name in self.completed(slots)
        }

    def missing_labels(self, slots: Mapping[str, Slot], tier: Optional[PriorityTier] = None) -> List[str]:
        return [self.schema.label(name) for name in self.pending(slots, tier)]

    def _is_complete(self, slots: Mapping[str, Slot], name: str) -> bool:
        slot = slots.get(name)
        return slot is not None and slot.status == SlotStatus.COMPLETE


def _percent(part: int, whole: int) -> int:
    if whole == 0:
        return 100
    return round(part / whole * 100)
