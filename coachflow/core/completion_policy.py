"""
Completion Policy - Decide whether collection is done

Pure decision function over (slots, intents, turn_count). States are
evaluated in strict priority order and the first match wins:

1. CANCELLED                   changed_topic
2. FORCED_COMPLETE_SATISFIED   turn ceiling reached, required slots complete
3. FORCED_COMPLETE_PARTIAL     turn ceiling reached, required slots missing
4. USER_FINISH_COMPLETE        finish requested, required slots complete
   USER_FINISH_SUBSTANTIAL     finish requested, substantial progress
   (otherwise the request is declined and evaluation continues)
5. COLLECT_REQUIRED            required slots pending
6. COLLECT_HIGH_PRIORITY       high-priority optional slots pending
7. COLLECT_LOW_PRIORITY        low-priority optional slots pending
8. FULLY_SATISFIED             nothing pending

Design principles:
- No side effects, no I/O, no logging of user content
- Never returns a collect state at or past the turn ceiling
- At most two thematically related slots are targeted per turn
"""

import logging
from typing import List, Mapping, Optional, Tuple

from coachflow.contracts import PolicyDecision, Slot
from coachflow.core.slot_schema import SlotSchema
from coachflow.core.slot_store import SlotStore
from coachflow.utils.statuses import PolicyState, PriorityTier

logger = logging.getLogger(__name__)

MAX_SLOTS_PER_QUESTION = 2

COLLECT_TIERS = (
    (PriorityTier.REQUIRED, PolicyState.COLLECT_REQUIRED),
    (PriorityTier.HIGH, PolicyState.COLLECT_HIGH_PRIORITY),
    (PriorityTier.LOW, PolicyState.COLLECT_LOW_PRIORITY),
)


class CompletionPolicy:
    """Stateless completion decisions for one schema"""

    def __init__(self, schema: SlotSchema, slot_store: Optional[SlotStore] = None) -> None:
        if not isinstance(schema, SlotSchema):
            raise TypeError("schema must be SlotSchema instance")

        self.schema = schema
        self.store = slot_store or SlotStore(schema)

    def decide(
        self,
        slots: Mapping[str, Slot],
        wants_to_finish: bool = False,
        changed_topic: bool = False,
        turn_count: int = 0,
        max_turns: Optional[int] = None
    ) -> PolicyDecision:
        """
        Evaluate the completion state for the current turn.

        Args:
            slots: Slot map after this turn's patch
            wants_to_finish: Effective finish intent (guard already applied)
            changed_topic: Topic-change intent
            turn_count: User turns so far, including this one
            max_turns: Override for schema.max_turns

        Returns:
            PolicyDecision
        """
        ceiling = max_turns if max_turns is not None else self.schema.max_turns

        if changed_topic:
            return PolicyDecision(
                state=PolicyState.CANCELLED,
                reason="user changed topic"
            )

        required_complete = self.store.is_required_complete(slots)

        if turn_count >= ceiling:
            state = (
                PolicyState.FORCED_COMPLETE_SATISFIED if required_complete
                else PolicyState.FORCED_COMPLETE_PARTIAL
            )
            return PolicyDecision(
                state=state,
                reason=f"turn ceiling reached ({turn_count}/{ceiling})"
            )

        finish_declined = False
        if wants_to_finish:
            if required_complete:
                return PolicyDecision(
                    state=PolicyState.USER_FINISH_COMPLETE,
                    reason="finish requested with all required slots"
                )

            if self.store.has_substantial_progress(slots):
                return PolicyDecision(
                    state=PolicyState.USER_FINISH_SUBSTANTIAL,
                    reason="finish requested with substantial progress"
                )

            finish_declined = True

        for tier, state in COLLECT_TIERS:
            pending = self.store.pending(slots, tier)
            if pending:
                return PolicyDecision(
                    state=state,
                    next_slots=self.select_next_slots(pending),
                    finish_declined=finish_declined,
                    reason=f"{len(pending)} {tier.value} slot(s) pending"
                )

        return PolicyDecision(
            state=PolicyState.FULLY_SATISFIED,
            reason="all slots complete"
        )

    def select_next_slots(self, pending: List[str]) -> Tuple[str, ...]:
        """
        Pick the next slot and at most one thematically related one.

        Args:
            pending: Pending slots of a single tier, in schema order

        Returns:
            tuple: One or two slot names (empty if nothing pending)
        """
        if not pending:
            return ()

        first = pending[0]
        topic = self.schema.get(first).topic
        selected = [first]

        if topic is not None:
            for name in pending[1:]:
                if len(selected) >= MAX_SLOTS_PER_QUESTION:
                    break
                if self.schema.get(name).topic == topic:
                    selected.append(name)

        return tuple(selected)
