"""
Wiring for collection engines.

One CollectionEngine per schema domain, sharing a single persistence
layer, lifecycle manager, text/extraction client and dispatcher. The
dispatcher reports worker outcomes back to the engine that owns the
ticket's domain.

Usage:
    client = HuggingFaceClient(model_name="mistralai/Mistral-7B-Instruct-v0.2")
    engines, lifecycle, dispatcher = build_engines(client, "data/schemas", "outputs")
"""

import logging
import os
from typing import Dict, Optional, Tuple

from coachflow.core.collection_engine import CollectionEngine
from coachflow.core.completion_trigger import CompletionTrigger
from coachflow.core.extractor import Extractor
from coachflow.core.payload_formatter import PayloadFormatter
from coachflow.core.question_generator import QuestionGenerator
from coachflow.core.session_lifecycle import SessionLifecycleManager
from coachflow.core.slot_schema import SlotSchema, load_schema_registry
from coachflow.persistence import SessionPersistence
from coachflow.utils.dispatch import FileArtifactWorker, ThreadPoolDispatcher

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "mistralai/Mistral-7B-Instruct-v0.2"
DEFAULT_SCHEMA_DIR = "data/schemas"
DEFAULT_DATA_DIR = "outputs"


def settings_from_env() -> Dict[str, str]:
    """Runtime settings from COACHFLOW_* environment variables."""
    return {
        'model': os.environ.get('COACHFLOW_MODEL', DEFAULT_MODEL),
        'schema_dir': os.environ.get('COACHFLOW_SCHEMA_DIR', DEFAULT_SCHEMA_DIR),
        'data_dir': os.environ.get('COACHFLOW_DATA_DIR', DEFAULT_DATA_DIR),
    }


def build_engine(
    schema: SlotSchema,
    client,
    lifecycle: SessionLifecycleManager,
    dispatcher,
    streaming: bool = True,
    clock=None
) -> CollectionEngine:
    """
    Assemble the engine for one schema.

    Args:
        schema: Domain slot schema
        client: Text + structured-extraction collaborator
        lifecycle: Shared Session Lifecycle Manager
        dispatcher: Downstream collaborator with dispatch(payload)
        streaming: Stream generated messages
        clock: Optional timestamp source for the trigger
    """
    extractor = Extractor(client, schema)
    generator = QuestionGenerator(client, schema, streaming=streaming)
    trigger = CompletionTrigger(lifecycle, dispatcher, PayloadFormatter(schema), clock=clock)
    return CollectionEngine(schema, extractor, generator, lifecycle, trigger)


def build_engines(
    client,
    schema_dir: str = DEFAULT_SCHEMA_DIR,
    data_dir: str = DEFAULT_DATA_DIR,
    max_workers: int = 2,
    worker=None
) -> Tuple[Dict[str, CollectionEngine], SessionLifecycleManager, ThreadPoolDispatcher]:
    """
    Assemble engines for every schema in a directory.

    Args:
        client: Text + structured-extraction collaborator
        schema_dir: Directory of *.json slot schemas
        data_dir: Root for sessions/ and artifacts/
        max_workers: Dispatcher pool size
        worker: Downstream generator callable (default: FileArtifactWorker)

    Returns:
        tuple: (engines by domain, lifecycle manager, dispatcher)
    """
    schemas = load_schema_registry(schema_dir)

    persistence = SessionPersistence(os.path.join(data_dir, "sessions"))
    lifecycle = SessionLifecycleManager(persistence)
    dispatcher = ThreadPoolDispatcher(
        worker or FileArtifactWorker(os.path.join(data_dir, "artifacts")),
        max_workers=max_workers
    )

    engines = {
        domain: build_engine(schema, client, lifecycle, dispatcher)
        for domain, schema in schemas.items()
    }

    def report(ticket, result_id: Optional[str] = None, error: Optional[str] = None):
        engine = engines.get(ticket.domain)
        if engine is None:
            logger.error(f"No engine for ticket domain '{ticket.domain}'")
            return None
        return engine.report_completion(ticket, result_id=result_id, error=error)

    dispatcher.bind(report)

    logger.info(f"Built {len(engines)} engine(s): {sorted(engines)}")
    return engines, lifecycle, dispatcher
