"""
Downstream generation collaborators.

ThreadPoolDispatcher is the fire-and-forget dispatch used by the console
harness and the Flask app. The worker runs on a background thread and the
outcome is reported back through on_complete(ticket, result_id=..., error=...),
which is wired to CompletionTrigger.report_completion.

FileArtifactWorker is a stand-in generator that writes the payload to
disk and returns an artifact id.
"""

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from coachflow.contracts import GenerationTicket
from coachflow.utils.helpers import utc_now_iso

logger = logging.getLogger(__name__)


class ThreadPoolDispatcher:
    """Run a worker per payload on a thread pool and report the outcome"""

    def __init__(
        self,
        worker: Callable[[Dict[str, Any]], str],
        on_complete: Optional[Callable[..., Any]] = None,
        max_workers: int = 2
    ):
        """
        Initialize dispatcher

        Args:
            worker: Callable(payload) -> result_id, may raise
            on_complete: Callable(ticket, result_id=None, error=None),
                usually CompletionTrigger.report_completion
            max_workers: Thread pool size
        """
        if not callable(worker):
            raise TypeError("worker must be callable")

        self.worker = worker
        self.on_complete = on_complete
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="coachflow-gen")

        logger.info(f"ThreadPoolDispatcher initialized (max_workers={max_workers})")

    def bind(self, on_complete: Callable[..., Any]) -> None:
        """Attach the completion callback after construction."""
        self.on_complete = on_complete

    def dispatch(self, payload: Dict[str, Any]) -> Future:
        """
        Submit a payload. Returns immediately.

        Raises:
            ValueError: If the payload has no ticket
            RuntimeError: If the pool has been shut down
        """
        if not payload.get('ticket'):
            raise ValueError("payload must carry a ticket")

        ticket = GenerationTicket.from_json(payload['ticket'])
        logger.info(f"Dispatching {ticket.ticket_id} for {ticket.session_id}")
        return self.executor.submit(self._run, ticket, payload)

    def _run(self, ticket: GenerationTicket, payload: Dict[str, Any]) -> None:
        try:
            result_id = self.worker(payload)
        except Exception as e:
            logger.error(f"Worker failed for {ticket.ticket_id}: {type(e).__name__} - {e}")
            self._report(ticket, error=f"{type(e).__name__}: {e}")
            return

        self._report(ticket, result_id=result_id)

    def _report(self, ticket: GenerationTicket, **outcome) -> None:
        if self.on_complete is None:
            logger.warning(f"No completion callback bound; dropping report for {ticket.ticket_id}")
            return
        try:
            self.on_complete(ticket, **outcome)
        except Exception as e:
            # Nothing upstream to propagate to on a pool thread
            logger.error(f"Completion report failed for {ticket.ticket_id}: {type(e).__name__} - {e}")

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)


class FileArtifactWorker:
    """
    Write the payload as an artifact document.

    Layout:
        outputs/artifacts/{domain}/{session_id}.json
    """

    def __init__(self, output_dir: str = "outputs/artifacts"):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def __call__(self, payload: Dict[str, Any]) -> str:
        metadata = payload['metadata']
        artifact_id = f"{metadata['domain']}_{metadata['session_id']}"

        domain_dir = self.output_dir / metadata['domain']
        domain_dir.mkdir(parents=True, exist_ok=True)
        path = domain_dir / f"{metadata['session_id']}.json"

        with open(path, 'w') as f:
            json.dump(
                {'artifact_id': artifact_id, 'created_at': utc_now_iso(), 'input': payload},
                f,
                indent=2,
                ensure_ascii=False
            )

        logger.info(f"Artifact written: {path}")
        return artifact_id
