"""
Shared fixtures and mock collaborators for the coachflow test suite.

No test loads a real model: text generation, structured extraction and
downstream dispatch are replaced with the mocks below.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from coachflow.core.session_lifecycle import SessionLifecycleManager
from coachflow.core.slot_schema import (
    SlotDefinition,
    SlotSchema,
    SubstantialProgressRule,
    load_schema,
)
from coachflow.persistence import SessionPersistence
from coachflow.utils.statuses import PriorityTier

SCHEMA_DIR = Path(__file__).resolve().parent.parent / "data" / "schemas"


# ========================
# Mock Collaborators
# ========================

class MockExtractionClient:
    """Structured-extraction collaborator returning queued responses"""

    def __init__(self, responses=None, should_fail=False, fail_type='timeout'):
        """
        Args:
            responses: List of dicts returned in order (last one repeats)
            should_fail: Raise instead of returning
            fail_type: 'timeout' | 'json' | 'cuda'
        """
        self.responses = list(responses or [])
        self.should_fail = should_fail
        self.fail_type = fail_type
        self.call_count = 0
        self.calls = []

    def is_loaded(self):
        return True

    def extract(self, system_prompt, user_prompt, images=None, schema=None,
                max_tokens=512, max_time=None):
        self.call_count += 1
        self.calls.append({
            'system_prompt': system_prompt,
            'user_prompt': user_prompt,
            'images': images,
            'schema': schema,
            'max_time': max_time,
        })

        if self.should_fail:
            if self.fail_type == 'json':
                raise ValueError("Expecting property name enclosed in double quotes")
            if self.fail_type == 'cuda':
                raise RuntimeError("CUDA out of memory")
            raise TimeoutError("Generation timeout")

        if not self.responses:
            return {'slots': {}, 'wants_to_finish': False, 'changed_topic': False}
        if len(self.responses) == 1:
            return self.responses[0]
        return self.responses.pop(0)


class MockTextClient:
    """Text-generation collaborator with streaming support"""

    def __init__(self, fragments=None, should_fail=False, fail_after=None):
        """
        Args:
            fragments: Text fragments to stream
            should_fail: Raise before producing anything
            fail_after: Raise after this many fragments
        """
        self.fragments = list(fragments or ["Great work! ", "How long did it take?"])
        self.should_fail = should_fail
        self.fail_after = fail_after
        self.call_count = 0
        self.last_system_prompt = None
        self.last_user_prompt = None

    def generate_stream(self, system_prompt, user_prompt, max_tokens=300,
                        temperature=0.7, max_time=None):
        self.call_count += 1
        self.last_system_prompt = system_prompt
        self.last_user_prompt = user_prompt

        if self.should_fail:
            raise RuntimeError("CUDA out of memory")

        for index, fragment in enumerate(self.fragments):
            if self.fail_after is not None and index >= self.fail_after:
                raise ConnectionError("stream interrupted")
            yield fragment

    def generate(self, system_prompt, user_prompt, max_tokens=300, temperature=0.7, max_time=None):
        self.call_count += 1
        self.last_system_prompt = system_prompt
        self.last_user_prompt = user_prompt

        if self.should_fail:
            raise TimeoutError("Generation timeout")
        return "".join(self.fragments)


class ScriptedClient:
    """One client serving both extraction and text generation"""

    def __init__(self, responses=None, fragments=None):
        self.extraction = MockExtractionClient(responses)
        self.text = MockTextClient(fragments)
        self.extract = self.extraction.extract
        self.generate = self.text.generate
        self.generate_stream = self.text.generate_stream


class MockDispatcher:
    """Downstream collaborator recording payloads"""

    def __init__(self, should_fail=False):
        self.should_fail = should_fail
        self.call_count = 0
        self.payloads = []

    def dispatch(self, payload):
        self.call_count += 1
        if self.should_fail:
            raise ConnectionError("dispatch endpoint unreachable")
        self.payloads.append(payload)


class FixedClock:
    """Deterministic ISO clock, one second per call"""

    def __init__(self, start=datetime(2025, 1, 1, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self):
        value = self.current.isoformat()
        self.current += timedelta(seconds=1)
        return value


def extraction(slots=None, finish=False, topic=False, confidence='high'):
    """Build a raw extraction response"""
    return {
        'slots': {
            name: {'value': value, 'confidence': confidence}
            for name, value in (slots or {}).items()
        },
        'wants_to_finish': finish,
        'changed_topic': topic,
    }


# ========================
# Schemas
# ========================

def make_schema(max_turns=5, substantial_progress=(), auto_complete_on_goodbye=False, **overrides):
    """Small schema: 2 required, 1 high, 1 low"""
    params = dict(
        domain="test_domain",
        slots=(
            SlotDefinition("exercise", "Exercise", PriorityTier.REQUIRED, topic="session",
                           image_relevant=True),
            SlotDefinition("duration", "Duration", PriorityTier.REQUIRED, topic="session"),
            SlotDefinition("intensity", "Intensity", PriorityTier.HIGH, topic="effort"),
            SlotDefinition("notes", "Notes", PriorityTier.LOW),
        ),
        max_turns=max_turns,
        session_id_prefix="test",
        substantial_progress=tuple(substantial_progress),
        auto_complete_on_goodbye=auto_complete_on_goodbye,
        handoff={
            'artifact': 'workout',
            'expected_wait': 'a few seconds',
            'result_location': 'your training grounds',
        },
    )
    params.update(overrides)
    return SlotSchema(**params)


@pytest.fixture
def schema():
    return make_schema()


@pytest.fixture
def workout_schema():
    return load_schema(SCHEMA_DIR / "workout_creator.json")


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def substantial_schema():
    """2 required; finishing with 1 required counts as substantial"""
    return make_schema(substantial_progress=(SubstantialProgressRule(1),))


# ========================
# Persistence
# ========================

@pytest.fixture
def persistence(tmp_path):
    return SessionPersistence(base_dir=str(tmp_path / "sessions"))


@pytest.fixture
def lifecycle(persistence, clock):
    return SessionLifecycleManager(persistence, clock=clock)
