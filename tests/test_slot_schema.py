"""
Unit tests for SlotSchema loading and validation
"""

import json

import pytest

from coachflow.core.slot_schema import (
    SchemaError,
    SlotDefinition,
    SlotSchema,
    SubstantialProgressRule,
    load_schema,
    load_schema_registry,
    schema_from_dict,
)
from coachflow.utils.statuses import PriorityTier
from conftest import SCHEMA_DIR, make_schema


def minimal_document(**overrides):
    document = {
        'domain': 'demo',
        'max_turns': 4,
        'slots': [
            {'name': 'goal', 'label': 'Goal', 'tier': 'required'},
            {'name': 'equipment', 'label': 'Equipment', 'tier': 'low'},
        ],
    }
    document.update(overrides)
    return document


class TestShippedSchemas:
    """The three domain schemas load and carry the expected shape"""

    def test_registry_loads_all_domains(self):
        registry = load_schema_registry(SCHEMA_DIR)
        assert set(registry) == {'workout_creator', 'program_creator', 'coach_creator'}

    def test_workout_creator_tiers(self, workout_schema):
        assert len(workout_schema.required_slots) == 6
        assert len(workout_schema.high_priority_slots) == 5
        assert len(workout_schema.low_priority_slots) == 9
        assert workout_schema.max_turns == 7
        assert workout_schema.auto_complete_on_goodbye is True

    def test_workout_creator_substantial_rules(self, workout_schema):
        assert workout_schema.substantial_progress == (
            SubstantialProgressRule(5, False),
            SubstantialProgressRule(4, True),
        )

    def test_program_and_coach_tiers(self):
        registry = load_schema_registry(SCHEMA_DIR)
        program = registry['program_creator']
        coach = registry['coach_creator']

        assert (len(program.required_slots), len(program.high_priority_slots),
                len(program.low_priority_slots)) == (5, 6, 8)
        assert (len(coach.required_slots), len(coach.low_priority_slots)) == (20, 2)


class TestSchemaValidation:
    """Malformed schemas fail fast with SchemaError"""

    def test_missing_top_level_keys(self):
        with pytest.raises(SchemaError, match="missing required keys"):
            schema_from_dict({'domain': 'demo'})

    def test_invalid_tier(self):
        document = minimal_document(slots=[{'name': 'goal', 'label': 'Goal', 'tier': 'urgent'}])
        with pytest.raises(SchemaError, match="invalid tier"):
            schema_from_dict(document)

    def test_slot_missing_label(self):
        document = minimal_document(slots=[{'name': 'goal', 'tier': 'required'}])
        with pytest.raises(SchemaError, match="missing required keys"):
            schema_from_dict(document)

    def test_duplicate_slots(self):
        document = minimal_document(slots=[
            {'name': 'goal', 'label': 'Goal', 'tier': 'required'},
            {'name': 'goal', 'label': 'Goal again', 'tier': 'low'},
        ])
        with pytest.raises(SchemaError, match="duplicate"):
            schema_from_dict(document)

    def test_requires_at_least_one_required_slot(self):
        document = minimal_document(slots=[{'name': 'goal', 'label': 'Goal', 'tier': 'low'}])
        with pytest.raises(SchemaError, match="no required slots"):
            schema_from_dict(document)

    def test_max_turns_must_be_positive(self):
        with pytest.raises(SchemaError, match="max_turns"):
            schema_from_dict(minimal_document(max_turns=0))

    def test_substantial_threshold_out_of_range(self):
        document = minimal_document(substantial_progress=[{'min_required_completed': 3}])
        with pytest.raises(SchemaError, match="out of range"):
            schema_from_dict(document)

    def test_defaults_applied(self):
        schema = schema_from_dict(minimal_document())
        assert schema.session_id_prefix == 'demo'
        assert schema.min_message_length == 5
        assert schema.substantial_progress == ()
        assert schema.llm_completion_message is False

    def test_invalid_json_file(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")
        with pytest.raises(SchemaError, match="Invalid JSON"):
            load_schema(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_schema(tmp_path / "absent.json")

    def test_registry_rejects_duplicate_domains(self, tmp_path):
        for name in ("a.json", "b.json"):
            (tmp_path / name).write_text(json.dumps(minimal_document()))
        with pytest.raises(SchemaError, match="Duplicate schema domain"):
            load_schema_registry(tmp_path)


class TestSchemaLookups:

    def test_tier_order_preserved(self, schema):
        assert schema.slot_names == ['exercise', 'duration', 'intensity', 'notes']
        assert schema.required_slots == ['exercise', 'duration']
        assert schema.slots_in_tier(PriorityTier.HIGH) == ['intensity']

    def test_get_unknown_slot(self, schema):
        with pytest.raises(KeyError, match="Unknown slot"):
            schema.get('bench_press')

    def test_slot_definition_required_property(self):
        assert SlotDefinition('a', 'A', PriorityTier.REQUIRED).required is True
        assert SlotDefinition('b', 'B', PriorityTier.LOW).required is False

    def test_message_default(self, schema):
        assert schema.message('partial', 'fallback text') == 'fallback text'


class TestFinishVocabulary:

    @pytest.mark.parametrize("text", ["done", "Skip", "that's all", "thats all", "I'm   done", "log it please"])
    def test_matches(self, schema, text):
        assert schema.contains_finish_vocabulary(text)

    @pytest.mark.parametrize("text", [".", "k", "undone work", "skipping rope", ""])
    def test_does_not_match(self, schema, text):
        assert not schema.contains_finish_vocabulary(text)

    def test_custom_vocabulary(self):
        schema = make_schema(finish_vocabulary=("wrap up",))
        assert schema.contains_finish_vocabulary("let's wrap up")
        assert not schema.contains_finish_vocabulary("done")

    def test_schema_is_frozen(self, schema):
        with pytest.raises(Exception):
            schema.max_turns = 99

    def test_direct_construction_validates(self):
        with pytest.raises(SchemaError, match="declares no slots"):
            SlotSchema(domain='empty', slots=(), max_turns=3)
