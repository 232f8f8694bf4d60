"""
Session document persistence.

One JSON document per session, keyed by (user_id, session_id), with an
optional compare-and-set on the generation lock status.
"""

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from coachflow.contracts import Session
from coachflow.utils.statuses import LockStatus

logger = logging.getLogger(__name__)

SAFE_ID = re.compile(r"^[A-Za-z0-9_.@-]+$")


class PersistenceError(Exception):
    """Durable write or read failed. Safe to retry."""
    retryable = True


class LockConflictError(Exception):
    """Stored generation lock changed since the caller read it."""

    def __init__(self, session_id: str, expected, actual: LockStatus, detail: Optional[str] = None):
        self.session_id = session_id
        self.expected = expected
        self.actual = actual
        super().__init__(detail or (
            f"Lock conflict for {session_id}: expected one of "
            f"{sorted(s.value for s in expected)}, found {actual.value}"
        ))


class SessionPersistence:
    """
    Manages session documents on disk.

    Layout:
        outputs/sessions/
            {user_id}/
                workout_conv42_1732635045123.json
                program_designer_conv7_1732635099001.json

    Design:
    - Whole-document writes via temp file + os.replace (no torn documents)
    - Never hard-deletes (soft delete is a field on the document)
    - save(expected_lock_status=...) is a compare-and-set under a
      per-session lock, so two handlers in one process cannot both
      acquire the generation lock
    """

    def __init__(self, base_dir: str = "outputs/sessions"):
        """
        Initialize persistence layer.

        Args:
            base_dir: Base directory for all session documents
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

        self._registry_lock = threading.Lock()
        self._session_locks: Dict[Tuple[str, str], threading.Lock] = {}

        logger.info(f"SessionPersistence initialized: {self.base_dir}")

    def _lock_for(self, user_id: str, session_id: str) -> threading.Lock:
        with self._registry_lock:
            key = (user_id, session_id)
            if key not in self._session_locks:
                self._session_locks[key] = threading.Lock()
            return self._session_locks[key]

    def _session_path(self, user_id: str, session_id: str) -> Path:
        for name, value in (("user_id", user_id), ("session_id", session_id)):
            if not value or not SAFE_ID.match(value):
                raise ValueError(f"{name} contains unsupported characters: {value!r}")
        return self.base_dir / user_id / f"{session_id}.json"

    def save(
        self,
        session: Session,
        expected_lock_status: Optional[Iterable[LockStatus]] = None,
        expected_is_complete: Optional[bool] = None
    ) -> str:
        """
        Write session document.

        Args:
            session: Session value to persist
            expected_lock_status: If given, the stored lock status must be
                one of these (a missing document counts as NOT_STARTED)
            expected_is_complete: If given, the stored is_complete flag must
                equal it (a missing document counts as False)

        Returns:
            str: Absolute path to saved file

        Raises:
            LockConflictError: If a stored-state guard fails
            PersistenceError: If the write fails
        """
        path = self._session_path(session.user_id, session.session_id)

        with self._lock_for(session.user_id, session.session_id):
            if expected_lock_status is not None or expected_is_complete is not None:
                stored = self.load(session.user_id, session.session_id)
                actual = stored.generation_lock.status if stored else LockStatus.NOT_STARTED
                expected = set(expected_lock_status) if expected_lock_status is not None else {actual}
                if actual not in expected:
                    raise LockConflictError(session.session_id, expected, actual)
                stored_complete = stored.is_complete if stored else False
                if expected_is_complete is not None and stored_complete != expected_is_complete:
                    raise LockConflictError(
                        session.session_id, expected, actual,
                        detail=(
                            f"Session {session.session_id} is_complete={stored_complete}, "
                            f"expected {expected_is_complete} (lock={actual.value})"
                        )
                    )

            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(
                    dir=path.parent, prefix=f".{session.session_id}.", suffix=".tmp"
                )
                try:
                    with os.fdopen(fd, 'w') as f:
                        json.dump(session.to_json(), f, indent=2, ensure_ascii=False)
                    os.replace(tmp_path, path)
                except BaseException:
                    if os.path.exists(tmp_path):
                        os.remove(tmp_path)
                    raise

            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Failed to save session {session.session_id}: {e}")
                raise PersistenceError(f"Failed to save session {session.session_id}: {e}") from e

        logger.debug(
            f"Saved session {session.session_id} "
            f"(turn={session.turn_count}, lock={session.generation_lock.status.value})"
        )
        return str(path.absolute())

    def load(self, user_id: str, session_id: str) -> Optional[Session]:
        """
        Load session document.

        Returns:
            Session if the document exists, None otherwise

        Raises:
            PersistenceError: If the document exists but cannot be read
        """
        path = self._session_path(user_id, session_id)

        if not path.exists():
            return None

        try:
            with open(path, 'r') as f:
                data = json.load(f)
            return Session.from_json(data)
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to load session {session_id}: {e}")
            raise PersistenceError(f"Failed to load session {session_id}: {e}") from e

    def find_sessions(
        self,
        user_id: str,
        conversation_id: Optional[str] = None,
        domain: Optional[str] = None,
        include_deleted: bool = False
    ) -> List[Session]:
        """
        List a user's sessions, oldest first.

        Args:
            user_id: Owning user
            conversation_id: Restrict to one conversation
            domain: Restrict to one schema domain
            include_deleted: Include soft-deleted sessions
        """
        user_dir = self.base_dir / user_id
        if not user_dir.exists():
            return []

        sessions = []
        for path in user_dir.glob("*.json"):
            session = self.load(user_id, path.stem)
            if session is None:
                continue
            if conversation_id is not None and session.conversation_id != conversation_id:
                continue
            if domain is not None and session.domain != domain:
                continue
            if session.is_deleted and not include_deleted:
                continue
            sessions.append(session)

        return sorted(sessions, key=lambda s: (s.started_at or "", s.session_id))

    def session_exists(self, user_id: str, session_id: str) -> bool:
        return self._session_path(user_id, session_id).exists()
