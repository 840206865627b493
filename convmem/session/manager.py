"""Session management for conversation memory."""

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from convmem.config.schema import MemoryConfig
from convmem.memory.summary import SummaryStore
from convmem.session.log import RecordLog
from convmem.session.records import SessionDocument
from convmem.utils.helpers import ensure_dir, file_mtime, generate_session_id, safe_filename

HISTORY_SUFFIX = "_history.json"
LEGACY_HISTORY_SUFFIX = "_history.jsonl"
SUMMARY_SUFFIX = "_summary.json"


@dataclass
class SessionState:
    """
    Everything held in memory for one open session.

    The record log and the summary store share ``lock``, so every mutation
    of the session goes through one critical section.
    """

    session_id: str
    log: RecordLog
    summary: SummaryStore
    lock: asyncio.Lock = field(repr=False)


class SessionManager:
    """
    Opens sessions lazily and keeps one state object per session.

    Directory layout:
        <data_dir>/
        ├── {session_id}_history.json   # record log
        └── {session_id}_summary.json   # rolling summary + checkpoint
    """

    def __init__(self, data_dir: Path):
        self.data_dir = ensure_dir(Path(data_dir).expanduser())
        self._cache: dict[str, SessionState] = {}

    @classmethod
    def from_config(cls, config: MemoryConfig) -> "SessionManager":
        return cls(config.data_path)

    # ── public API ──────────────────────────────────────────────

    def get(self, session_id: str) -> SessionState:
        """
        Get a session's state, opening it from disk on first access.

        A session with no files starts empty; nothing is written until the
        first mutation.

        Raises:
            SessionCorruptedError: If a stored file cannot be parsed.
        """
        state = self._cache.get(session_id)
        if state is not None:
            return state

        lock = asyncio.Lock()
        log = RecordLog.open(
            session_id,
            self._history_path(session_id),
            lock=lock,
            legacy_path=self._legacy_history_path(session_id),
        )
        summary = SummaryStore.open(session_id, self._summary_path(session_id), lock=lock)
        state = SessionState(session_id=session_id, log=log, summary=summary, lock=lock)
        self._cache[session_id] = state
        logger.debug(f"Opened session {session_id} ({len(log)} records, checkpoint {summary.checkpoint})")
        return state

    def new_session(self, session_id: str | None = None) -> SessionState:
        """Open a session under a caller-supplied or freshly generated ID."""
        session_id = session_id or generate_session_id()
        state = self.get(session_id)
        logger.info(f"Created session {session_id}")
        return state

    def is_open(self, session_id: str) -> bool:
        return session_id in self._cache

    def peek(self, session_id: str) -> SessionState | None:
        """A session's state if it is already open; never touches disk."""
        return self._cache.get(session_id)

    def evict(self, session_id: str) -> None:
        """
        Drop a session's in-memory state; the next access reloads it from disk.

        The dropped state refuses further writes, so a caller still holding
        it cannot overwrite what the reloaded state writes.
        """
        state = self._cache.pop(session_id, None)
        if state is not None:
            state.log.close()
            state.summary.close()

    def delete(self, session_id: str) -> bool:
        """
        Delete a session's files and in-memory state.

        Returns:
            True if any file was deleted.
        """
        self.evict(session_id)

        deleted = False
        for path in (
            self._history_path(session_id),
            self._legacy_history_path(session_id),
            self._summary_path(session_id),
        ):
            if path.exists():
                path.unlink()
                deleted = True
        if deleted:
            logger.info(f"Deleted session {session_id}")
        return deleted

    def list_sessions(self) -> list[dict[str, Any]]:
        """
        List persisted sessions, including ones still in the legacy line format.

        Returns:
            Session info dicts sorted by updated_at descending.
        """
        paths = list(self.data_dir.glob(f"*{HISTORY_SUFFIX}"))
        current = {p.name[: -len(HISTORY_SUFFIX)] for p in paths}
        for path in self.data_dir.glob(f"*{LEGACY_HISTORY_SUFFIX}"):
            if path.name[: -len(LEGACY_HISTORY_SUFFIX)] not in current:
                paths.append(path)

        sessions = []
        for path in paths:
            info = self._describe(path)
            if info is not None:
                sessions.append(info)

        return sorted(sessions, key=lambda x: x.get("updated_at") or "", reverse=True)

    def _describe(self, path: Path) -> dict[str, Any] | None:
        suffix = LEGACY_HISTORY_SUFFIX if path.name.endswith(LEGACY_HISTORY_SUFFIX) else HISTORY_SUFFIX
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Skipping unreadable session file {path.name}: {e}")
            return None

        try:
            doc = SessionDocument.model_validate_json(text)
        except ValidationError:
            doc = None

        if doc is not None:
            session_id = doc.session_id
            created_at, updated_at = doc.created_at, doc.updated_at
            record_count = len(doc.records)
            legacy = False
        else:
            record_count = _count_legacy_records(text)
            if record_count == 0 and text.strip():
                logger.warning(f"Skipping unreadable session file {path.name}")
                return None
            session_id = path.name[: -len(suffix)]
            created_at, updated_at = None, file_mtime(path)
            legacy = True

        return {
            "session_id": session_id,
            "created_at": created_at,
            "updated_at": updated_at,
            "record_count": record_count,
            "has_summary": self._summary_path(session_id).exists(),
            "legacy": legacy,
            "path": str(path),
        }

    # ── internal helpers ────────────────────────────────────────

    def _history_path(self, session_id: str) -> Path:
        return self.data_dir / f"{safe_filename(session_id)}{HISTORY_SUFFIX}"

    def _legacy_history_path(self, session_id: str) -> Path:
        return self.data_dir / f"{safe_filename(session_id)}{LEGACY_HISTORY_SUFFIX}"

    def _summary_path(self, session_id: str) -> Path:
        return self.data_dir / f"{safe_filename(session_id)}{SUMMARY_SUFFIX}"


def _count_legacy_records(text: str) -> int:
    """Count lines of the legacy format that carry a role and content."""
    count = 0
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and isinstance(data.get("role"), str) and isinstance(data.get("content"), str):
            count += 1
    return count
