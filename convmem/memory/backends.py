"""Memory variants consumed by the agent loop.

There are exactly three: ``SimpleMemory`` (in-process only), ``FileMemory``
(durable record log, never compacts) and ``CompositeMemory`` (record log plus
rolling summary). They share the same async surface: ``load``, ``save``,
``clear``, ``delete`` and ``stats``. Code that needs something only one
variant has goes through a helper that checks ``kind`` (see
``get_summary``).
"""

from dataclasses import dataclass, field
from typing import Any, Literal

from loguru import logger

from convmem.agent.compactor import CompactionError, Compactor, LLMSummarizer, Summarizer
from convmem.agent.tokens import estimate_records_tokens
from convmem.config.schema import Config, MemoryConfig
from convmem.prompts.compaction import SUMMARY_CONTEXT_PREFIX
from convmem.providers.litellm_provider import LiteLLMProvider
from convmem.session.manager import SessionManager, SessionState
from convmem.session.records import ChatRecord, Role, make_record, normalize_assistant_content

MemoryKind = Literal["simple", "file", "composite"]


@dataclass
class MemoryContext:
    """What the agent loop needs to assemble a prompt for one session."""

    session_id: str
    records: list[ChatRecord] = field(default_factory=list)
    summary: str | None = None

    def to_messages(self, system_prompt: str | None = None) -> list[dict[str, Any]]:
        """
        Build LLM messages: one system message (prompt + summary) then the records.

        The system message is omitted when there is neither a prompt nor a summary.
        """
        parts = []
        if system_prompt:
            parts.append(system_prompt)
        if self.summary:
            parts.append(f"{SUMMARY_CONTEXT_PREFIX}{self.summary}")

        messages: list[dict[str, Any]] = []
        if parts:
            messages.append({"role": "system", "content": "\n\n".join(parts)})
        messages.extend(r.to_message() for r in self.records)
        return messages


def _turn_records(user_text: str | None, assistant_text: str | None) -> list[ChatRecord]:
    records = []
    if user_text and user_text.strip():
        records.append(make_record(Role.USER, user_text))
    if assistant_text and assistant_text.strip():
        records.append(make_record(Role.ASSISTANT, normalize_assistant_content(assistant_text)))
    return records


class SimpleMemory:
    """Process-local memory; nothing is written to disk."""

    kind: Literal["simple"] = "simple"

    def __init__(self, recent_window: int = 10):
        self.recent_window = recent_window
        self._records: dict[str, list[ChatRecord]] = {}
        self._next: dict[str, int] = {}

    async def load(self, session_id: str) -> MemoryContext:
        records = self._records.get(session_id, [])
        recent = records[-self.recent_window:] if self.recent_window > 0 else []
        return MemoryContext(session_id=session_id, records=list(recent))

    async def save(
        self, session_id: str, user_text: str | None, assistant_text: str | None
    ) -> list[ChatRecord]:
        seq = self._next.get(session_id, 1)
        stored = []
        for r in _turn_records(user_text, assistant_text):
            stored.append(r.model_copy(update={"sequence": seq}))
            seq += 1
        self._records.setdefault(session_id, []).extend(stored)
        self._next[session_id] = seq
        return stored

    async def clear(self, session_id: str) -> None:
        self._records.pop(session_id, None)
        self._next.pop(session_id, None)

    async def delete(self, session_id: str) -> bool:
        existed = session_id in self._records
        await self.clear(session_id)
        return existed

    async def stats(self, session_id: str) -> dict[str, Any]:
        records = self._records.get(session_id, [])
        return {
            "session_id": session_id,
            "kind": self.kind,
            "record_count": len(records),
            "token_estimate": estimate_records_tokens(records),
            "has_summary": False,
        }


class FileMemory:
    """Durable record log without summaries; the log is never shrunk."""

    kind: Literal["file"] = "file"

    def __init__(self, sessions: SessionManager, recent_window: int = 10):
        self.sessions = sessions
        self.recent_window = recent_window

    @classmethod
    def from_config(cls, config: MemoryConfig) -> "FileMemory":
        return cls(SessionManager.from_config(config), config.recent_window)

    async def load(self, session_id: str) -> MemoryContext:
        state = self.sessions.get(session_id)
        return MemoryContext(session_id=session_id, records=state.log.recent(self.recent_window))

    async def save(
        self, session_id: str, user_text: str | None, assistant_text: str | None
    ) -> list[ChatRecord]:
        state = self.sessions.get(session_id)
        return await state.log.extend(_turn_records(user_text, assistant_text))

    async def clear(self, session_id: str) -> None:
        await self.sessions.get(session_id).log.clear()

    async def delete(self, session_id: str) -> bool:
        state = self.sessions.peek(session_id)
        if state is None:
            return self.sessions.delete(session_id)
        async with state.lock:
            return self.sessions.delete(session_id)

    async def stats(self, session_id: str) -> dict[str, Any]:
        state = self.sessions.get(session_id)
        records = state.log.records()
        return {
            "session_id": session_id,
            "kind": self.kind,
            "record_count": len(records),
            "last_sequence": state.log.last_sequence,
            "token_estimate": estimate_records_tokens(records),
            "has_summary": False,
        }


class CompositeMemory:
    """
    Record log plus rolling summary: the entry point used by the agent loop.

    ``save`` appends a whole turn durably and then gives the compactor one
    chance to fold old records into the summary. A failed compaction is
    logged and otherwise ignored; the turn is already stored.
    """

    kind: Literal["composite"] = "composite"

    def __init__(self, sessions: SessionManager, compactor: Compactor):
        self.sessions = sessions
        self.compactor = compactor

    @classmethod
    def from_config(cls, config: Config, summarizer: Summarizer | None = None) -> "CompositeMemory":
        """Build from configuration, defaulting to an LLM summarizer over LiteLLM."""
        if summarizer is None:
            provider = LiteLLMProvider(
                api_key=config.summarizer.api_key or None,
                api_base=config.summarizer.api_base,
                default_model=config.summarizer.model,
            )
            summarizer = LLMSummarizer(
                provider,
                model=config.summarizer.model,
                temperature=config.summarizer.temperature,
                max_tokens=config.summarizer.max_tokens,
            )
        mem = config.memory
        compactor = Compactor(
            summarizer,
            summary_threshold=mem.summary_threshold,
            recent_window=mem.recent_window,
            enabled=mem.auto_compact,
            timeout=mem.compaction_timeout,
        )
        return cls(SessionManager.from_config(mem), compactor)

    @property
    def recent_window(self) -> int:
        return self.compactor.recent_window

    def _state(self, session_id: str) -> SessionState:
        return self.sessions.get(session_id)

    async def load(self, session_id: str) -> MemoryContext:
        """Recent records plus the current summary. Never compacts."""
        state = self._state(session_id)
        return MemoryContext(
            session_id=session_id,
            records=state.log.recent(self.recent_window),
            summary=state.summary.load().summary,
        )

    async def save(
        self, session_id: str, user_text: str | None, assistant_text: str | None
    ) -> list[ChatRecord]:
        """
        Store one turn, then check for compaction once.

        Blank halves of the turn are skipped.

        Returns:
            The stored records with their sequence numbers.
        """
        state = self._state(session_id)
        stored = await state.log.extend(_turn_records(user_text, assistant_text))
        await self._compact_quietly(state)
        return stored

    async def add_message(
        self,
        session_id: str,
        role: Role | str,
        content: str,
        name: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> ChatRecord | None:
        """Store a single record (e.g. a tool result), then check for compaction."""
        state = self._state(session_id)
        if role == Role.ASSISTANT:
            content = normalize_assistant_content(content)
        stored = await state.log.append(make_record(role, content, name=name, extra=extra))
        await self._compact_quietly(state)
        return stored

    async def _compact_quietly(self, state: SessionState) -> None:
        try:
            await self.compactor.maybe_compact(state.log, state.summary)
        except CompactionError as e:
            logger.warning(f"Compaction failed for {state.session_id}, history kept as is: {e}")

    async def compact(self, session_id: str, force: bool = False):
        """Run compaction now; unlike ``save``, failures propagate."""
        state = self._state(session_id)
        return await self.compactor.maybe_compact(state.log, state.summary, force=force)

    async def cleanup(self, session_id: str) -> int:
        """Shed records already covered by the summary beyond the recent window."""
        state = self._state(session_id)
        async with self.compactor.guard(session_id):
            return await state.log.retain_recent(
                self.recent_window, protect_after=state.summary.checkpoint
            )

    async def clear(self, session_id: str) -> None:
        """Empty the log and drop the summary; the session ID stays usable."""
        state = self._state(session_id)
        async with self.compactor.guard(session_id):
            await state.summary.clear()
            await state.log.clear()
        logger.info(f"Cleared session {session_id}")

    async def delete(self, session_id: str) -> bool:
        """
        Delete a session's files once no compaction or write is in flight.

        Returns:
            True if any file was deleted.
        """
        async with self.compactor.guard(session_id):
            state = self.sessions.peek(session_id)
            if state is None:
                return self.sessions.delete(session_id)
            async with state.lock:
                return self.sessions.delete(session_id)

    async def evict(self, session_id: str) -> None:
        """Release a session's in-memory state; the files stay on disk."""
        async with self.compactor.guard(session_id):
            state = self.sessions.peek(session_id)
            if state is None:
                return
            async with state.lock:
                self.sessions.evict(session_id)

    def summary(self, session_id: str) -> str | None:
        return self._state(session_id).summary.load().summary

    async def stats(self, session_id: str) -> dict[str, Any]:
        """Read-only snapshot of a session; never compacts."""
        state = self._state(session_id)
        records = state.log.records()
        data = state.summary.load()
        pending = [r for r in records if r.sequence > data.checkpoint]
        return {
            "session_id": session_id,
            "kind": self.kind,
            "config": {
                "summary_threshold": self.compactor.summary_threshold,
                "recent_window": self.compactor.recent_window,
                "auto_compact": self.compactor.enabled,
            },
            "record_count": len(records),
            "last_sequence": state.log.last_sequence,
            "token_estimate": estimate_records_tokens(records),
            "pending_count": len(pending),
            "pending_token_estimate": estimate_records_tokens(pending),
            "has_summary": data.summary is not None,
            "checkpoint": data.checkpoint,
            "summary_token_estimate": data.token_estimate,
            "summary_updated_at": data.updated_at if data.summary is not None else None,
            "compaction_running": self.compactor.is_running(session_id),
        }


Memory = SimpleMemory | FileMemory | CompositeMemory


def get_summary(memory: Memory, session_id: str) -> str | None:
    """Current summary text for variants that keep one; None otherwise."""
    if memory.kind == "composite":
        return memory.summary(session_id)
    return None


def create_memory(
    config: Config,
    kind: MemoryKind = "composite",
    summarizer: Summarizer | None = None,
) -> Memory:
    """Build the requested memory variant from configuration."""
    if kind == "simple":
        return SimpleMemory(config.memory.recent_window)
    if kind == "file":
        return FileMemory.from_config(config.memory)
    if kind == "composite":
        return CompositeMemory.from_config(config, summarizer)
    raise ValueError(f"Unknown memory kind: {kind}")
