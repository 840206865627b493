"""File-backed, ordered record log for one session."""

import asyncio
import json
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from convmem.session.records import ChatRecord, Role, SessionDocument
from convmem.utils.helpers import atomic_write_text, utc_now

# An older writer stored whole transcripts inside single assistant records.
# Such lines carry both turn markers and are dropped during migration.
LEGACY_ARTIFACT_MARKERS = ("user:", "assistant:")

_LEGACY_ROLE_NAMES = {"human": "user", "ai": "assistant"}
_ROLE_VALUES = {r.value for r in Role}


class SessionCorruptedError(RuntimeError):
    """A session file that parses in neither the current nor the legacy format."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot load session file {path}: {reason}")


class SessionClosedError(RuntimeError):
    """A write reached a session after it was deleted or evicted."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is closed")


def is_legacy_artifact(role: str, content: str) -> bool:
    """Check whether a legacy record is an embedded transcript."""
    return role == Role.ASSISTANT.value and all(m in content for m in LEGACY_ARTIFACT_MARKERS)


class RecordLog:
    """
    Ordered, durable sequence of chat records for one session.

    Every mutation rewrites the whole document atomically (temp file, fsync,
    rename). Sequence numbers are assigned under the session lock and keep
    increasing for the life of the session; only ``clear`` resets them.

    File format::

        {
          "session_id": "...",
          "created_at": "...",
          "updated_at": "...",
          "next_sequence": 4,
          "records": [{"role": "user", "content": "...", "timestamp": "...", "sequence": 1}, ...]
        }
    """

    def __init__(self, session_id: str, path: Path, lock: asyncio.Lock | None = None):
        self.session_id = session_id
        self.path = path
        self._lock = lock or asyncio.Lock()
        now = utc_now()
        self.created_at = now
        self.updated_at = now
        self.metadata: dict[str, Any] = {}
        self._records: list[ChatRecord] = []
        self._next_sequence = 1
        self._closed = False

    # ── loading ─────────────────────────────────────────────────

    @classmethod
    def open(
        cls,
        session_id: str,
        path: Path,
        lock: asyncio.Lock | None = None,
        legacy_path: Path | None = None,
    ) -> "RecordLog":
        """
        Open a session's log, loading and migrating whatever is on disk.

        Args:
            session_id: The session ID.
            path: Where the log lives in the current format.
            lock: The session's lock, shared with its summary store.
            legacy_path: Location used by the older writer, read only when
                ``path`` does not exist yet.

        Raises:
            SessionCorruptedError: If a non-empty file parses in neither format.
        """
        log = cls(session_id, path, lock)

        source = path
        if not path.exists() and legacy_path is not None and legacy_path.exists():
            logger.info(f"Migrating session {session_id} from {legacy_path.name} to {path.name}")
            source = legacy_path

        if source.exists():
            log._load(source)
        return log

    def _load(self, source: Path) -> None:
        text = source.read_text(encoding="utf-8")
        if not text.strip():
            return

        try:
            doc = SessionDocument.model_validate_json(text)
        except ValidationError as e:
            logger.warning(
                f"{source.name} is not a session document ({e.error_count()} error(s)), "
                f"trying legacy line format"
            )
            records = self._parse_legacy(source, text)
            self._records = records
            self._next_sequence = (records[-1].sequence + 1) if records else 1
            self.updated_at = utc_now()
            self._write(self._records, self._next_sequence, self.updated_at)
            logger.info(
                f"Migrated legacy session {self.session_id}: {len(records)} record(s)"
            )
            return

        dirty = source != self.path
        records = list(doc.records)
        if any(r.sequence == 0 for r in records):
            records = [r.model_copy(update={"sequence": i}) for i, r in enumerate(records, start=1)]
            dirty = True
        else:
            records.sort(key=lambda r: r.sequence)

        self.created_at = doc.created_at
        self.updated_at = doc.updated_at
        self.metadata = doc.metadata or {}
        self._records = records
        last = records[-1].sequence if records else 0
        self._next_sequence = max(doc.next_sequence or 1, last + 1)
        logger.debug(f"Loaded session {self.session_id} with {len(records)} record(s)")

        if dirty:
            self._write(self._records, self._next_sequence, self.updated_at)

    def _parse_legacy(self, source: Path, text: str) -> list[ChatRecord]:
        """Parse one-JSON-object-per-line history, numbering records by line order."""
        records: list[ChatRecord] = []
        usable = 0
        skipped_artifacts = 0
        max_sequence = 0

        for lineno, line in enumerate(text.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"{source.name}:{lineno}: skipping unparseable line: {e}")
                continue
            if not isinstance(data, dict):
                logger.warning(f"{source.name}:{lineno}: skipping non-object line")
                continue

            role = data.get("role")
            content = data.get("content")
            if not isinstance(role, str) or not isinstance(content, str):
                logger.warning(f"{source.name}:{lineno}: skipping line without role/content")
                continue
            usable += 1

            role = _LEGACY_ROLE_NAMES.get(role, role)
            if role not in _ROLE_VALUES:
                logger.warning(f"{source.name}:{lineno}: skipping unknown role {role!r}")
                continue
            if not content.strip():
                continue
            if is_legacy_artifact(role, content):
                skipped_artifacts += 1
                continue

            sequence = data.get("sequence_number", data.get("sequence"))
            if not isinstance(sequence, int) or sequence <= 0:
                sequence = max_sequence + 1
            max_sequence = max(max_sequence, sequence)

            name = data.get("name")
            extra = data.get("additional_kwargs", data.get("additional_fields"))
            timestamp = data.get("timestamp")
            records.append(ChatRecord(
                role=role,
                content=content,
                name=name if isinstance(name, str) else None,
                extra=extra if isinstance(extra, dict) and extra else None,
                timestamp=timestamp if isinstance(timestamp, str) and timestamp else utc_now(),
                sequence=sequence,
            ))

        if usable == 0:
            raise SessionCorruptedError(
                source, "neither a session document nor legacy JSON lines"
            )
        if skipped_artifacts:
            logger.info(f"Dropped {skipped_artifacts} embedded-transcript record(s) from {source.name}")

        records.sort(key=lambda r: r.sequence)
        if len({r.sequence for r in records}) != len(records):
            records = [r.model_copy(update={"sequence": i}) for i, r in enumerate(records, start=1)]
        return records

    # ── persistence ─────────────────────────────────────────────

    def _write(self, records: list[ChatRecord], next_sequence: int, updated_at: str) -> None:
        doc = SessionDocument(
            session_id=self.session_id,
            created_at=self.created_at,
            updated_at=updated_at,
            next_sequence=next_sequence,
            records=records,
            metadata=self.metadata or None,
        )
        atomic_write_text(self.path, doc.model_dump_json(indent=2, exclude_none=True))

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError(self.session_id)

    def close(self) -> None:
        """Refuse further writes; reads keep working."""
        self._closed = True

    def _commit(self, records: list[ChatRecord], next_sequence: int) -> None:
        """Persist the new state, then adopt it in memory."""
        updated_at = utc_now()
        self._write(records, next_sequence, updated_at)
        self._records = records
        self._next_sequence = next_sequence
        self.updated_at = updated_at

    # ── mutations ───────────────────────────────────────────────

    async def append(self, record: ChatRecord) -> ChatRecord | None:
        """
        Append one record and persist the log.

        Records whose content is blank are dropped silently.

        Returns:
            The stored record with its sequence number, or None if dropped.
        """
        stored = await self.extend([record])
        return stored[0] if stored else None

    async def extend(self, records: list[ChatRecord]) -> list[ChatRecord]:
        """Append several records with a single durable write."""
        pending = [r for r in records if r.content.strip()]
        if not pending:
            return []

        async with self._lock:
            self._check_open()
            seq = self._next_sequence
            stored = []
            for r in pending:
                stored.append(r.model_copy(update={"sequence": seq}))
                seq += 1
            self._commit(self._records + stored, seq)
        return stored

    async def retain_recent(self, n: int, protect_after: int | None = None) -> int:
        """
        Keep only the last ``n`` records; the sequence counter is unaffected.

        Args:
            n: Number of records to keep.
            protect_after: If given, records with a sequence above it are kept
                even when they fall outside the last ``n``.

        Returns:
            Number of records dropped.
        """
        if n < 0:
            raise ValueError("n must be >= 0")

        async with self._lock:
            self._check_open()
            cut = len(self._records) - n
            if protect_after is not None:
                for i, r in enumerate(self._records[:max(cut, 0)]):
                    if r.sequence > protect_after:
                        cut = i
                        break
            if cut <= 0:
                return 0
            self._commit(self._records[cut:], self._next_sequence)
        logger.debug(f"Session {self.session_id}: dropped {cut} record(s), kept {len(self._records)}")
        return cut

    async def clear(self) -> None:
        """Remove every record and reset the sequence counter."""
        async with self._lock:
            self._check_open()
            self._commit([], 1)

    # ── reads ───────────────────────────────────────────────────

    def records(self) -> list[ChatRecord]:
        """Copy of all records in order."""
        return [r.model_copy(deep=True) for r in self._records]

    def recent(self, n: int) -> list[ChatRecord]:
        """The last ``min(n, len)`` records in order."""
        if n <= 0:
            return []
        return [r.model_copy(deep=True) for r in self._records[-n:]]

    def pending(self, checkpoint: int) -> list[ChatRecord]:
        """Records with a sequence greater than ``checkpoint``."""
        return [r.model_copy(deep=True) for r in self._records if r.sequence > checkpoint]

    @property
    def next_sequence(self) -> int:
        return self._next_sequence

    @property
    def last_sequence(self) -> int:
        """Sequence of the newest record ever appended (0 if none)."""
        return self._next_sequence - 1

    def __len__(self) -> int:
        return len(self._records)
