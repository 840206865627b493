"""Rolling summary and compaction checkpoint for one session."""

import asyncio
from pathlib import Path

from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from convmem.agent.tokens import estimate_tokens
from convmem.session.log import SessionClosedError, SessionCorruptedError
from convmem.utils.helpers import atomic_write_text, utc_now


class CheckpointRegressionError(ValueError):
    """Raised when a summary update would not advance the checkpoint."""

    def __init__(self, current: int, proposed: int):
        self.current = current
        self.proposed = proposed
        super().__init__(
            f"Checkpoint must increase: stored {current}, proposed {proposed}"
        )


class SummaryData(BaseModel):
    """
    Compaction state of a session.

    ``checkpoint`` is the highest record sequence folded into ``summary``.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    session_id: str = ""
    checkpoint: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("checkpoint", "sequence_number")
    )
    summary: str | None = None
    token_estimate: int = Field(
        default=0, ge=0, validation_alias=AliasChoices("token_estimate", "token_count")
    )
    updated_at: str = Field(
        default_factory=utc_now, validation_alias=AliasChoices("updated_at", "last_updated")
    )


class SummaryStore:
    """
    Durable storage of the single ``SummaryData`` value for a session.

    The value is read from disk once, on open; afterwards the store is the
    only writer of its file.
    """

    def __init__(self, session_id: str, path: Path, lock: asyncio.Lock | None = None):
        self.session_id = session_id
        self.path = path
        self._lock = lock or asyncio.Lock()
        self._data = SummaryData(session_id=session_id)
        self._closed = False

    @classmethod
    def open(cls, session_id: str, path: Path, lock: asyncio.Lock | None = None) -> "SummaryStore":
        """Open a session's summary store, reading the persisted value if any."""
        store = cls(session_id, path, lock)
        if path.exists():
            text = path.read_text(encoding="utf-8")
            if text.strip():
                try:
                    store._data = SummaryData.model_validate_json(text)
                except ValidationError as e:
                    raise SessionCorruptedError(path, f"invalid summary document: {e}") from e
        return store

    def load(self) -> SummaryData:
        """Current value; the zero value (checkpoint 0, no summary) if nothing was stored."""
        return self._data

    @property
    def checkpoint(self) -> int:
        return self._data.checkpoint

    def close(self) -> None:
        """Refuse further writes; reads keep working."""
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError(self.session_id)

    async def update(self, summary: str, checkpoint: int) -> SummaryData:
        """
        Replace the summary and advance the checkpoint.

        Raises:
            CheckpointRegressionError: If ``checkpoint`` is not strictly greater
                than the stored one.
        """
        async with self._lock:
            self._check_open()
            current = self._data.checkpoint
            if checkpoint <= current:
                raise CheckpointRegressionError(current, checkpoint)

            data = SummaryData(
                session_id=self.session_id,
                checkpoint=checkpoint,
                summary=summary,
                token_estimate=estimate_tokens(summary),
                updated_at=utc_now(),
            )
            _write_summary(self.path, data)
            self._data = data

        logger.debug(
            f"Session {self.session_id}: summary checkpoint {current} -> {checkpoint} "
            f"(~{data.token_estimate} tokens)"
        )
        return data

    async def clear(self) -> None:
        """Delete the persisted summary, reverting to the zero value."""
        async with self._lock:
            self._check_open()
            self.path.unlink(missing_ok=True)
            self._data = SummaryData(session_id=self.session_id)


def _write_summary(path: Path, data: SummaryData) -> None:
    atomic_write_text(path, data.model_dump_json(indent=2, exclude_none=True))
