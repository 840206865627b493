"""Compaction engine: folds old records into the rolling summary."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from loguru import logger

from convmem.agent.tokens import estimate_records_tokens
from convmem.memory.summary import SummaryStore
from convmem.prompts.compaction import SUMMARY_SYSTEM_PROMPT, build_summary_request
from convmem.providers.base import LLMProvider
from convmem.session.log import RecordLog


class CompactionError(RuntimeError):
    """The summarizer failed; log and summary were left untouched."""


@runtime_checkable
class Summarizer(Protocol):
    async def summarize(self, previous_summary: str | None, lines: list[str]) -> str: ...


class LLMSummarizer:
    """Summarizer backed by a chat-completion provider."""

    def __init__(
        self,
        provider: LLMProvider,
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int | None = None,
    ):
        self.provider = provider
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def summarize(self, previous_summary: str | None, lines: list[str]) -> str:
        messages = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": build_summary_request(previous_summary, lines)},
        ]
        response = await self.provider.chat(
            messages=messages,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        if response.is_error:
            raise CompactionError(response.content or "summarizer returned an error")
        if response.is_truncated:
            raise CompactionError(
                f"summary cut off at max_tokens={self.max_tokens}; raise summarizer.max_tokens"
            )
        return response.content or ""


@dataclass
class CompactionResult:
    """Outcome of a compaction that ran."""
    summarized: int
    checkpoint: int
    dropped: int
    summary_tokens: int


@dataclass
class _Guard:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class Compactor:
    """
    Decides when a session is due for compaction and performs it.

    The pending tail (records newer than the summary checkpoint) is
    summarized once its estimated cost reaches ``summary_threshold``. The
    summary store is updated first, the record log is truncated second, and
    neither is touched unless the summarizer succeeded. At most one
    compaction runs per session at a time; the session lock is not held
    while the summarizer runs.
    """

    def __init__(
        self,
        summarizer: Summarizer,
        summary_threshold: int = 3500,
        recent_window: int = 10,
        enabled: bool = True,
        timeout: float | None = None,
    ):
        if summary_threshold < 1:
            raise ValueError("summary_threshold must be >= 1")
        if recent_window < 0:
            raise ValueError("recent_window must be >= 0")
        self.summarizer = summarizer
        self.summary_threshold = summary_threshold
        self.recent_window = recent_window
        self.enabled = enabled
        self.timeout = timeout
        self._inflight: dict[str, _Guard] = {}

    @asynccontextmanager
    async def guard(self, session_id: str) -> AsyncIterator[None]:
        """
        Hold the per-session lock that admits one compaction at a time.

        The entry is dropped once no caller holds or waits for it.
        """
        entry = self._inflight.get(session_id)
        if entry is None:
            entry = self._inflight[session_id] = _Guard()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._inflight[session_id]

    def is_running(self, session_id: str) -> bool:
        """Check if a compaction is in flight for a session."""
        entry = self._inflight.get(session_id)
        return entry is not None and entry.lock.locked()

    def should_compact(self, pending_tokens: int) -> bool:
        """Check if the pending tail's cost reaches the threshold."""
        return pending_tokens >= self.summary_threshold

    async def maybe_compact(
        self,
        log: RecordLog,
        store: SummaryStore,
        force: bool = False,
    ) -> CompactionResult | None:
        """
        Compact the session if its pending tail is over threshold.

        Args:
            log: The session's record log.
            store: The session's summary store.
            force: Summarize any non-empty pending tail regardless of cost
                (also when compaction is disabled).

        Returns:
            CompactionResult if a compaction ran, None if it was not due.

        Raises:
            CompactionError: If the summarizer failed or returned nothing.
        """
        if not self.enabled and not force:
            return None

        async with self.guard(log.session_id):
            current = store.load()
            pending = log.pending(current.checkpoint)
            if not pending:
                return None

            pending_tokens = estimate_records_tokens(pending)
            if not force and not self.should_compact(pending_tokens):
                logger.debug(
                    f"Session {log.session_id}: {len(pending)} pending record(s), "
                    f"~{pending_tokens} tokens, below threshold {self.summary_threshold}"
                )
                return None

            logger.info(
                f"Compaction triggered for {log.session_id}: {len(pending)} record(s), "
                f"~{pending_tokens:,} tokens, threshold {self.summary_threshold:,}"
            )

            lines = [r.render() for r in pending]
            try:
                summary = await asyncio.wait_for(
                    self.summarizer.summarize(current.summary, lines),
                    timeout=self.timeout,
                )
            except CompactionError as e:
                logger.warning(f"Compaction failed for {log.session_id}: {e}")
                raise
            except Exception as e:
                logger.warning(f"Compaction failed for {log.session_id} (summarizer error): {e!r}")
                raise CompactionError(f"summarizer failed: {e!r}") from e

            if not summary or not summary.strip():
                logger.warning(f"Compaction skipped for {log.session_id}: empty summary")
                raise CompactionError("summarizer returned an empty summary")

            checkpoint = pending[-1].sequence
            data = await store.update(summary.strip(), checkpoint)
            dropped = await log.retain_recent(self.recent_window, protect_after=checkpoint)

        logger.info(
            f"Compacted {len(pending)} record(s) of {log.session_id} into summary "
            f"(~{data.token_estimate} tokens), checkpoint {checkpoint}, dropped {dropped}"
        )
        return CompactionResult(
            summarized=len(pending),
            checkpoint=checkpoint,
            dropped=dropped,
            summary_tokens=data.token_estimate,
        )
