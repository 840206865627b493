"""Tests for compaction into the rolling summary."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from convmem.agent.compactor import CompactionError, Compactor, LLMSummarizer
from convmem.memory.summary import SummaryStore
from convmem.prompts.compaction import SUMMARY_SYSTEM_PROMPT
from convmem.providers.base import LLMResponse
from convmem.session.log import RecordLog
from convmem.session.records import make_record


def _session(tmp_path, session_id="s1"):
    lock = asyncio.Lock()
    log = RecordLog.open(session_id, tmp_path / f"{session_id}_history.json", lock=lock)
    store = SummaryStore.open(session_id, tmp_path / f"{session_id}_summary.json", lock=lock)
    return log, store


def _summarizer(text="summary of the talk"):
    summarizer = MagicMock()
    summarizer.summarize = AsyncMock(return_value=text)
    return summarizer


async def _short_exchange(log):
    await log.append(make_record("user", "hello there"))
    await log.append(make_record("assistant", "hi! how can I help?"))
    await log.append(make_record("user", "tell me about rust"))


class GatedSummarizer:
    """Summarizer that blocks until released."""

    def __init__(self, text="gated summary"):
        self.text = text
        self.calls = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def summarize(self, previous_summary, lines):
        self.calls.append((previous_summary, list(lines)))
        self.started.set()
        await self.release.wait()
        return self.text


# ── construction / should_compact ───────────────────────────────


class TestShouldCompact:
    def test_below_threshold_returns_false(self):
        c = Compactor(_summarizer(), summary_threshold=100)
        assert c.should_compact(99) is False

    def test_at_threshold_returns_true(self):
        c = Compactor(_summarizer(), summary_threshold=100)
        assert c.should_compact(100) is True

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            Compactor(_summarizer(), summary_threshold=0)

    def test_invalid_recent_window(self):
        with pytest.raises(ValueError):
            Compactor(_summarizer(), recent_window=-1)

    def test_defaults(self):
        c = Compactor(_summarizer())
        assert c.summary_threshold == 3500
        assert c.recent_window == 10
        assert c.enabled is True


# ── maybe_compact ───────────────────────────────────────────────


class TestMaybeCompact:
    @pytest.mark.asyncio
    async def test_below_threshold_is_noop(self, tmp_path):
        log, store = _session(tmp_path)
        await _short_exchange(log)
        before = log.path.read_bytes()
        summarizer = _summarizer()

        result = await Compactor(summarizer, summary_threshold=50, recent_window=2).maybe_compact(log, store)

        assert result is None
        summarizer.summarize.assert_not_awaited()
        assert log.path.read_bytes() == before
        assert not store.path.exists()

    @pytest.mark.asyncio
    async def test_crossing_threshold_compacts(self, tmp_path):
        log, store = _session(tmp_path)
        summarizer = _summarizer()
        compactor = Compactor(summarizer, summary_threshold=50, recent_window=2)

        await _short_exchange(log)
        assert await compactor.maybe_compact(log, store) is None

        await log.append(make_record("assistant", "x" * 200))
        result = await compactor.maybe_compact(log, store)

        assert result.summarized == 4
        assert result.checkpoint == 4
        assert result.dropped == 2
        assert store.checkpoint == 4
        assert store.load().summary == "summary of the talk"
        assert [r.sequence for r in log.records()] == [3, 4]

        previous, lines = summarizer.summarize.await_args.args
        assert previous is None
        assert lines[0] == "user: hello there"
        assert len(lines) == 4

    @pytest.mark.asyncio
    async def test_only_pending_tail_is_summarized(self, tmp_path):
        log, store = _session(tmp_path)
        summarizer = _summarizer()
        compactor = Compactor(summarizer, summary_threshold=20, recent_window=1)

        await log.append(make_record("user", "a" * 100))
        await compactor.maybe_compact(log, store)

        summarizer.summarize.return_value = "second summary"
        await log.append(make_record("user", "b" * 100))
        await compactor.maybe_compact(log, store)

        previous, lines = summarizer.summarize.await_args.args
        assert previous == "summary of the talk"
        assert lines == ["user: " + "b" * 100]
        assert store.checkpoint == 2
        assert store.load().summary == "second summary"

    @pytest.mark.asyncio
    async def test_retained_records_after_checkpoint_not_resummarized(self, tmp_path):
        log, store = _session(tmp_path)
        compactor = Compactor(_summarizer(), summary_threshold=20, recent_window=5)

        await log.append(make_record("user", "a" * 100))
        await compactor.maybe_compact(log, store)

        # The record is kept verbatim but is already covered by the summary
        assert len(log) == 1
        assert await compactor.maybe_compact(log, store, force=True) is None

    @pytest.mark.asyncio
    async def test_summary_is_stripped(self, tmp_path):
        log, store = _session(tmp_path)
        await log.append(make_record("user", "a" * 100))
        await Compactor(_summarizer("  padded \n"), summary_threshold=1).maybe_compact(log, store)
        assert store.load().summary == "padded"

    @pytest.mark.asyncio
    async def test_empty_log(self, tmp_path):
        log, store = _session(tmp_path)
        summarizer = _summarizer()
        assert await Compactor(summarizer, summary_threshold=1).maybe_compact(log, store, force=True) is None
        summarizer.summarize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_force_below_threshold(self, tmp_path):
        log, store = _session(tmp_path)
        await _short_exchange(log)
        result = await Compactor(_summarizer(), summary_threshold=10_000, recent_window=1).maybe_compact(
            log, store, force=True
        )
        assert result.checkpoint == 3
        assert [r.sequence for r in log.records()] == [3]

    @pytest.mark.asyncio
    async def test_disabled(self, tmp_path):
        log, store = _session(tmp_path)
        await log.append(make_record("user", "a" * 1000))
        summarizer = _summarizer()
        compactor = Compactor(summarizer, summary_threshold=1, enabled=False)

        assert await compactor.maybe_compact(log, store) is None
        summarizer.summarize.assert_not_awaited()

        result = await compactor.maybe_compact(log, store, force=True)
        assert result is not None


class TestCompactionFailure:
    @pytest.mark.asyncio
    async def test_summarizer_error_leaves_state(self, tmp_path):
        log, store = _session(tmp_path)
        await log.append(make_record("user", "a" * 400))
        before = log.path.read_bytes()

        summarizer = MagicMock()
        summarizer.summarize = AsyncMock(side_effect=RuntimeError("provider down"))

        with pytest.raises(CompactionError):
            await Compactor(summarizer, summary_threshold=10, recent_window=0).maybe_compact(log, store)

        assert log.path.read_bytes() == before
        assert len(log) == 1
        assert store.checkpoint == 0
        assert not store.path.exists()

    @pytest.mark.asyncio
    async def test_compaction_error_passes_through(self, tmp_path):
        log, store = _session(tmp_path)
        await log.append(make_record("user", "a" * 400))
        summarizer = MagicMock()
        summarizer.summarize = AsyncMock(side_effect=CompactionError("bad response"))

        with pytest.raises(CompactionError, match="bad response"):
            await Compactor(summarizer, summary_threshold=10).maybe_compact(log, store)

    @pytest.mark.asyncio
    async def test_empty_summary_rejected(self, tmp_path):
        log, store = _session(tmp_path)
        await log.append(make_record("user", "a" * 400))

        with pytest.raises(CompactionError):
            await Compactor(_summarizer("   "), summary_threshold=10, recent_window=0).maybe_compact(log, store)

        assert len(log) == 1
        assert store.checkpoint == 0

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path):
        log, store = _session(tmp_path)
        await log.append(make_record("user", "a" * 400))
        summarizer = GatedSummarizer()

        with pytest.raises(CompactionError):
            await Compactor(summarizer, summary_threshold=10, timeout=0.05).maybe_compact(log, store)

        assert len(log) == 1
        assert store.checkpoint == 0

    @pytest.mark.asyncio
    async def test_guard_released_after_failure(self, tmp_path):
        log, store = _session(tmp_path)
        await log.append(make_record("user", "a" * 400))
        summarizer = MagicMock()
        summarizer.summarize = AsyncMock(side_effect=[RuntimeError("once"), "recovered"])
        compactor = Compactor(summarizer, summary_threshold=10, recent_window=0)

        with pytest.raises(CompactionError):
            await compactor.maybe_compact(log, store)
        assert compactor.is_running("s1") is False

        result = await compactor.maybe_compact(log, store)
        assert result.checkpoint == 1
        assert len(log) == 0


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_single_flight_per_session(self, tmp_path):
        log, store = _session(tmp_path)
        await log.append(make_record("user", "a" * 400))
        summarizer = GatedSummarizer()
        compactor = Compactor(summarizer, summary_threshold=10, recent_window=0)

        first = asyncio.create_task(compactor.maybe_compact(log, store))
        await summarizer.started.wait()
        assert compactor.is_running("s1") is True

        second = asyncio.create_task(compactor.maybe_compact(log, store))
        await asyncio.sleep(0)
        summarizer.release.set()

        results = await asyncio.gather(first, second)
        assert results[0].checkpoint == 1
        assert results[1] is None
        assert len(summarizer.calls) == 1

    @pytest.mark.asyncio
    async def test_appends_during_compaction_are_kept(self, tmp_path):
        log, store = _session(tmp_path)
        await log.append(make_record("user", "a" * 100))
        await log.append(make_record("assistant", "b" * 100))
        summarizer = GatedSummarizer()
        compactor = Compactor(summarizer, summary_threshold=10, recent_window=1)

        task = asyncio.create_task(compactor.maybe_compact(log, store))
        await summarizer.started.wait()
        for i in range(5):
            await log.append(make_record("user", f"late {i}"))
        summarizer.release.set()
        result = await task

        assert result.checkpoint == 2
        assert store.checkpoint == 2
        assert [r.sequence for r in log.records()] == [3, 4, 5, 6, 7]
        assert result.dropped == 2

    @pytest.mark.asyncio
    async def test_sessions_compact_independently(self, tmp_path):
        log_a, store_a = _session(tmp_path, "a")
        log_b, store_b = _session(tmp_path, "b")
        await log_a.append(make_record("user", "a" * 400))
        await log_b.append(make_record("user", "b" * 400))
        summarizer = _summarizer()
        compactor = Compactor(summarizer, summary_threshold=10, recent_window=0)

        await asyncio.gather(
            compactor.maybe_compact(log_a, store_a),
            compactor.maybe_compact(log_b, store_b),
        )
        assert store_a.checkpoint == 1
        assert store_b.checkpoint == 1
        assert summarizer.summarize.await_count == 2


# ── LLMSummarizer ───────────────────────────────────────────────


class TestLLMSummarizer:
    @pytest.mark.asyncio
    async def test_sends_prompt_and_returns_text(self):
        provider = MagicMock()
        provider.chat = AsyncMock(return_value=LLMResponse(content="Concise summary."))
        summarizer = LLMSummarizer(provider, model="test/model", temperature=0.1, max_tokens=256)

        text = await summarizer.summarize("Earlier facts.", ["user: hi", "assistant: hello"])

        assert text == "Concise summary."
        kwargs = provider.chat.call_args.kwargs
        assert kwargs["model"] == "test/model"
        assert kwargs["max_tokens"] == 256
        assert kwargs["temperature"] == 0.1
        messages = kwargs["messages"]
        assert messages[0] == {"role": "system", "content": SUMMARY_SYSTEM_PROMPT}
        assert "Earlier facts." in messages[1]["content"]
        assert "user: hi\nassistant: hello" in messages[1]["content"]

    @pytest.mark.asyncio
    async def test_no_previous_summary_section(self):
        provider = MagicMock()
        provider.chat = AsyncMock(return_value=LLMResponse(content="S"))
        await LLMSummarizer(provider).summarize(None, ["user: hi"])
        user_msg = provider.chat.call_args.kwargs["messages"][1]["content"]
        assert "PREVIOUS SUMMARY" not in user_msg

    @pytest.mark.asyncio
    async def test_error_response_raises(self):
        provider = MagicMock()
        provider.chat = AsyncMock(
            return_value=LLMResponse(content="Error calling LLM: boom", finish_reason="error")
        )
        with pytest.raises(CompactionError, match="boom"):
            await LLMSummarizer(provider).summarize(None, ["user: hi"])

    @pytest.mark.asyncio
    async def test_none_content_is_empty(self):
        provider = MagicMock()
        provider.chat = AsyncMock(return_value=LLMResponse(content=None))
        assert await LLMSummarizer(provider).summarize(None, ["user: hi"]) == ""

    @pytest.mark.asyncio
    async def test_truncated_summary_raises(self):
        provider = MagicMock()
        provider.chat = AsyncMock(return_value=LLMResponse(content="The user asked", finish_reason="length"))
        with pytest.raises(CompactionError, match="max_tokens"):
            await LLMSummarizer(provider, max_tokens=16).summarize(None, ["user: hi"])

    @pytest.mark.asyncio
    async def test_truncated_summary_keeps_records(self, tmp_path):
        log, store = _session(tmp_path)
        await log.append(make_record("user", "a" * 400))
        provider = MagicMock()
        provider.chat = AsyncMock(return_value=LLMResponse(content="partial", finish_reason="length"))
        compactor = Compactor(LLMSummarizer(provider), summary_threshold=10, recent_window=0)

        with pytest.raises(CompactionError):
            await compactor.maybe_compact(log, store)

        assert len(log) == 1
        assert store.checkpoint == 0
