"""
Tests for the per-chunk state machine, driven through EnhancementPipeline.

Jobs run on the InlineJobExecutor so submit() returns once the job has
settled; waits are recorded by FakeSleep instead of blocking.
"""

import itertools
import sys
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

# Add project root to path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from chapter_enhancer.ai.credential_pool import RotationPolicy
from chapter_enhancer.ai.gemini_client import GenerationOutcome, GenerationResult
from chapter_enhancer.ai.prompt_builder import (
    ENHANCE_CONTENT_HEADER,
    SUMMARY_CONTENT_HEADER,
    label_partial_summaries,
)
from chapter_enhancer.errors import NoCredentialsError
from chapter_enhancer.pipeline import (
    ChunkCompleted,
    ChunkFailed,
    ChunkStarted,
    CredentialRotated,
    EnhancementPipeline,
    InMemoryChunkCache,
    JobCompleted,
    JobMode,
    JobOptions,
    JobStatus,
    ThreadedJobExecutor,
)
from helpers import (
    FakeSleep,
    ScriptedClient,
    fatal,
    invalid_credential,
    make_chapter,
    make_pipeline,
    make_settings,
    rate_limited,
    transient,
)


def events_for(events, chunk_index):
    return [e for e in events if getattr(e, "chunk_index", None) == chunk_index]


def enhanced(paragraphs):
    return "\n\n".join(f"ENHANCED {p}" for p in paragraphs)


class RaisingClient(ScriptedClient):
    """Raises for every chunk text matching raise_for; other calls succeed."""

    def __init__(self, raise_for):
        super().__init__()
        self.raise_for = raise_for

    def generate(self, credential, system_prompt, conversation, chunk_text, params=None, content_header=""):
        if self.raise_for(chunk_text):
            self.calls.append({"slot": credential.slot, "chunk_text": chunk_text})
            raise RuntimeError("socket exploded")
        return super().generate(credential, system_prompt, conversation, chunk_text, params, content_header)


class RevokedPrimaryClient(ScriptedClient):
    """Rejects slot 0; the first requests on it meet at a barrier so jobs fail together."""

    def __init__(self, concurrent_jobs):
        super().__init__()
        self.barrier = threading.Barrier(concurrent_jobs)
        self.lock = threading.Lock()
        self.waiting = concurrent_jobs

    def generate(self, credential, system_prompt, conversation, chunk_text, params=None, content_header=""):
        if credential.slot == 0:
            self.calls.append({"slot": 0, "chunk_text": chunk_text})
            with self.lock:
                hold = self.waiting > 0
                self.waiting -= 1
            if hold:
                self.barrier.wait(5)
            return invalid_credential()
        return super().generate(credential, system_prompt, conversation, chunk_text, params, content_header)


class TestOrderingAndEvents:

    def test_clean_run_emits_events_in_order(self):
        text, paragraphs = make_chapter(3)
        client = ScriptedClient()
        events = []

        handle = make_pipeline(client).submit("Chapter 1", text, on_event=events.append)

        job_id = handle.job_id
        assert events[:-1] == [
            ChunkStarted(job_id, 0, 3), ChunkCompleted(job_id, 0, 3, f"ENHANCED {paragraphs[0]}"),
            ChunkStarted(job_id, 1, 3), ChunkCompleted(job_id, 1, 3, f"ENHANCED {paragraphs[1]}"),
            ChunkStarted(job_id, 2, 3), ChunkCompleted(job_id, 2, 3, f"ENHANCED {paragraphs[2]}"),
        ]
        assert events[-1] == JobCompleted(job_id, processed_count=3, failed_count=0,
                                          final_text=enhanced(paragraphs))

    def test_requests_are_sent_in_chunk_order(self):
        text, paragraphs = make_chapter(4)
        client = ScriptedClient()

        make_pipeline(client).submit("Chapter 1", text)

        assert [c["chunk_text"] for c in client.calls] == paragraphs

    def test_events_are_queued_on_the_handle(self):
        text, _ = make_chapter(2)
        handle = make_pipeline(ScriptedClient()).submit("Chapter 1", text)

        streamed = list(handle.events(timeout=1))

        assert isinstance(streamed[0], ChunkStarted)
        assert isinstance(streamed[-1], JobCompleted)
        assert sum(isinstance(e, ChunkCompleted) for e in streamed) == 2

    def test_result_is_complete(self):
        text, paragraphs = make_chapter(3)
        handle = make_pipeline(ScriptedClient()).submit("Chapter 1", text)

        result = handle.wait(timeout=1)

        assert result.status is JobStatus.COMPLETED
        assert result.final_text == enhanced(paragraphs)
        assert result.total_chunks == 3
        assert result.success_rate == 100.0
        assert [r.chunk_index for r in result.chunk_results] == [0, 1, 2]

    def test_chunking_disabled_sends_whole_text(self):
        text, _ = make_chapter(3)
        client = ScriptedClient()

        make_pipeline(client).submit("Chapter 1", text, JobOptions(chunking_enabled=False))

        assert [c["chunk_text"] for c in client.calls] == [text]

    def test_no_credentials_fails_before_any_request(self):
        client = ScriptedClient()
        pipeline = make_pipeline(client, settings=make_settings(api_keys=[]))

        with pytest.raises(NoCredentialsError):
            pipeline.submit("Chapter 1", "Some text.")
        assert client.calls == []

    def test_completions_stay_in_order_when_retries_differ(self):
        text, paragraphs = make_chapter(4)
        client = ScriptedClient({
            paragraphs[0]: [transient(), transient()],
            paragraphs[1]: [rate_limited(5)],
            paragraphs[2]: [invalid_credential()],
        })
        sleep = FakeSleep()
        events = []

        handle = make_pipeline(client, sleep=sleep).submit("Chapter 1", text, on_event=events.append)

        completed = [e.chunk_index for e in events if isinstance(e, ChunkCompleted)]
        assert completed == [0, 1, 2, 3]

        chunk_events = [e for e in events if hasattr(e, "chunk_index")]
        positions = [chunk_events.index(e) for e in chunk_events if isinstance(e, ChunkCompleted)]
        for k in range(3):
            next_started = chunk_events.index(events_for(chunk_events, k + 1)[0])
            assert positions[k] < next_started
        assert all(isinstance(events_for(chunk_events, k)[-1], ChunkCompleted) for k in range(4))

        assert sleep.waits == [2, 4, 5]
        assert handle.result.final_text == enhanced(paragraphs)


class TestRateLimits:

    def test_rate_limit_waits_and_retries_same_credential(self):
        """429 twice on chunk 2 of 3: two waits, no rotation, then success."""
        text, paragraphs = make_chapter(3)
        client = ScriptedClient({paragraphs[1]: [rate_limited(30), rate_limited(30)]})
        sleep = FakeSleep()
        events = []

        handle = make_pipeline(client, sleep=sleep).submit("Chapter 1", text, on_event=events.append)

        chunk_events = events_for(events, 1)
        assert [type(e) for e in chunk_events] == [ChunkStarted, ChunkFailed, ChunkFailed, ChunkCompleted]
        for failed in chunk_events[1:3]:
            assert failed.is_rate_limit
            assert failed.wait_ms == 30_000
            assert not failed.final

        assert sleep.waits == [30, 30]
        assert not any(isinstance(e, CredentialRotated) for e in events)
        assert {c["slot"] for c in client.calls} == {0}
        assert handle.result.final_text == enhanced(paragraphs)

    def test_wait_above_ceiling_fails_without_sleeping(self):
        text, paragraphs = make_chapter(2)
        client = ScriptedClient({paragraphs[0]: [rate_limited(600)]})
        sleep = FakeSleep()

        handle = make_pipeline(client, settings=make_settings(max_wait_seconds=300),
                               sleep=sleep).submit("Chapter 1", text)

        assert sleep.waits == []
        assert handle.result.failed_indices == [0]
        assert handle.result.chunk_results[0].error_message.startswith("Rate limit wait")
        # Job continues with the next chunk
        assert handle.result.chunk_results[1].succeeded

    def test_rate_limit_rotates_once_then_fails(self):
        text, paragraphs = make_chapter(2)
        client = ScriptedClient({paragraphs[0]: [rate_limited(10)] * 3})
        sleep = FakeSleep()
        events = []

        handle = make_pipeline(
            client, settings=make_settings(max_rate_limit_retries=1), sleep=sleep,
        ).submit("Chapter 1", text, on_event=events.append)

        assert [c["slot"] for c in client.calls_for(paragraphs[0])] == [0, 0, 1]
        assert sleep.waits == [10]

        rotated = [e for e in events if isinstance(e, CredentialRotated)]
        assert [(e.from_slot, e.to_slot) for e in rotated] == [(0, 1)]

        final = events_for(events, 0)[-1]
        assert isinstance(final, ChunkFailed)
        assert final.final and final.is_rate_limit
        assert handle.result.failed_indices == [0]

    def test_persistent_rate_limit_can_pause_the_job(self):
        text, paragraphs = make_chapter(3)
        client = ScriptedClient({paragraphs[1]: [rate_limited(10)] * 3})
        pipeline = make_pipeline(client, settings=make_settings(max_rate_limit_retries=1))

        handle = pipeline.submit("Chapter 1", text, JobOptions(pause_on_rate_limit=True))

        assert handle.status is JobStatus.PAUSED
        assert handle.session.next_chunk_index == 1
        assert 1 not in handle.results

        pipeline.resume(handle, handle.session)

        assert handle.result.status is JobStatus.COMPLETED
        assert handle.result.final_text == enhanced(paragraphs)


class TestCredentialFailures:

    def test_failover_exhaustion_advances_once_per_credential(self):
        text, paragraphs = make_chapter(2)
        settings = make_settings()
        client = ScriptedClient({paragraphs[0]: [invalid_credential()] * 3})
        pipeline = make_pipeline(client, settings=settings)
        pool = pipeline._pool_for(JobOptions())

        with patch.object(pool, "advance_from", wraps=pool.advance_from) as spy:
            handle = pipeline.submit("Chapter 1", text)

        assert spy.call_count == pool.size == 3
        assert [c["slot"] for c in client.calls_for(paragraphs[0])] == [0, 1, 2]
        assert handle.result.failed_indices == [0]
        # Pool starts over for the next chunk
        assert client.calls_for(paragraphs[1])[0]["slot"] == 0

    def test_failover_stays_on_backup_after_rotation(self):
        text, paragraphs = make_chapter(3)
        client = ScriptedClient({paragraphs[0]: [invalid_credential()]})
        events = []

        make_pipeline(client).submit("Chapter 1", text, on_event=events.append)

        assert [c["slot"] for c in client.calls] == [0, 1, 1, 1]
        assert [(e.from_slot, e.to_slot) for e in events if isinstance(e, CredentialRotated)] == [(0, 1)]

    def test_round_robin_moves_on_every_request(self):
        text, _ = make_chapter(4)
        client = ScriptedClient()

        make_pipeline(client).submit(
            "Chapter 1", text, JobOptions(rotation_policy=RotationPolicy.ROUND_ROBIN),
        )

        assert [c["slot"] for c in client.calls] == [0, 1, 2, 0]

    def test_round_robin_fails_after_every_key_rejected(self):
        text, paragraphs = make_chapter(2)
        client = ScriptedClient({paragraphs[0]: [invalid_credential()] * 3})

        handle = make_pipeline(client).submit(
            "Chapter 1", text, JobOptions(rotation_policy="round_robin"),
        )

        assert [c["slot"] for c in client.calls_for(paragraphs[0])] == [0, 1, 2]
        assert handle.result.failed_indices == [0]
        assert handle.result.chunk_results[1].succeeded

    def test_pool_is_shared_between_jobs(self):
        text, paragraphs = make_chapter(1)
        client = ScriptedClient({paragraphs[0]: [invalid_credential()]})
        pipeline = make_pipeline(client)

        first = pipeline.submit("Chapter 1", text)
        second = pipeline.submit("Chapter 2", "A different chapter.")

        assert first.pool is second.pool
        assert client.calls[-1]["slot"] == 1

    def test_concurrent_jobs_rejected_on_same_key_both_fail_over(self):
        client = RevokedPrimaryClient(concurrent_jobs=2)
        pipeline = EnhancementPipeline(
            make_settings(api_keys=["revoked-key-0000", "valid-key-1111"]),
            client=client,
            executor=ThreadedJobExecutor(max_workers=2),
            sleep=FakeSleep(),
        )
        try:
            first = pipeline.submit("Chapter 1", "The first chapter.")
            second = pipeline.submit("Chapter 2", "The second chapter.")
            results = [first.wait(timeout=5), second.wait(timeout=5)]
        finally:
            pipeline.shutdown()

        for result in results:
            assert result.failed_indices == []
            assert result.chunk_results[0].error_message is None
        assert sorted(c["slot"] for c in client.calls) == [0, 0, 1, 1]
        assert first.pool.current().slot == 1


class TestTransientFailures:

    def test_exponential_backoff_then_success(self):
        text, paragraphs = make_chapter(2)
        client = ScriptedClient({paragraphs[0]: [transient(), transient()]})
        sleep = FakeSleep()
        events = []

        handle = make_pipeline(client, sleep=sleep).submit("Chapter 1", text, on_event=events.append)

        assert sleep.waits == [2.0, 4.0]
        waits = [e.wait_ms for e in events_for(events, 0) if isinstance(e, ChunkFailed)]
        assert waits == [2000, 4000]
        assert handle.result.chunk_results[0].succeeded
        assert handle.result.chunk_results[0].attempts == 3

    def test_gives_up_after_max_retries(self):
        text, paragraphs = make_chapter(2)
        client = ScriptedClient({paragraphs[0]: [transient()] * 4})
        sleep = FakeSleep()

        handle = make_pipeline(client, sleep=sleep).submit("Chapter 1", text)

        assert sleep.waits == [2.0, 4.0, 8.0]
        assert len(client.calls_for(paragraphs[0])) == 4
        result = handle.result
        assert result.failed_indices == [0]
        assert result.final_text == "\n\n".join([paragraphs[0], f"ENHANCED {paragraphs[1]}"])

    def test_backoff_above_ceiling_fails(self):
        text, paragraphs = make_chapter(1)
        client = ScriptedClient({paragraphs[0]: [transient(), transient()]})
        sleep = FakeSleep()

        handle = make_pipeline(
            client, settings=make_settings(max_wait_seconds=3), sleep=sleep,
        ).submit("Chapter 1", text)

        assert sleep.waits == [2.0]
        assert handle.result.failed_indices == [0]

    def test_fatal_fails_immediately(self):
        text, paragraphs = make_chapter(3)
        client = ScriptedClient({paragraphs[1]: [fatal()]})
        sleep = FakeSleep()
        events = []

        handle = make_pipeline(client, sleep=sleep).submit("Chapter 1", text, on_event=events.append)

        assert len(client.calls_for(paragraphs[1])) == 1
        assert sleep.waits == []
        final = events_for(events, 1)[-1]
        assert isinstance(final, ChunkFailed) and final.final
        assert final.error_message == "Content blocked: SAFETY"
        assert handle.result.processed_count == 2
        assert handle.result.failed_count == 1

    def test_retention_guard_retries_short_output(self):
        text = "a " * 250
        client = ScriptedClient({
            text: [GenerationResult(GenerationOutcome.SUCCESS, text="too short", status_code=200)],
        })
        sleep = FakeSleep()

        handle = make_pipeline(client, sleep=sleep).submit("Chapter 1", text)

        assert len(client.calls) == 2
        assert sleep.waits == [2.0]
        assert handle.result.final_text == f"ENHANCED {text}"

    def test_unexpected_client_error_fails_the_job(self):
        class BrokenClient:
            def generate(self, *args, **kwargs):
                raise RuntimeError("socket exploded")

        text, _ = make_chapter(2)
        events = []

        handle = make_pipeline(BrokenClient()).submit("Chapter 1", text, on_event=events.append)

        assert handle.result.status is JobStatus.FAILED
        assert "socket exploded" in handle.result.error_message
        assert isinstance(events[-1], JobCompleted)

    def test_failing_combine_after_client_error_still_settles(self):
        text, paragraphs = make_chapter(3)
        client = RaisingClient(raise_for=lambda chunk_text: chunk_text not in paragraphs[:2])
        events = []

        handle = make_pipeline(client).submit(
            "Chapter 1", text, JobOptions(mode=JobMode.SUMMARIZE), on_event=events.append,
        )
        result = handle.wait(timeout=1)

        assert result.status is JobStatus.FAILED
        assert "socket exploded" in result.error_message
        assert result.final_text == label_partial_summaries(
            [(1, f"ENHANCED {paragraphs[0]}"), (2, f"ENHANCED {paragraphs[1]}")], 3,
        )
        # Two partial requests, the third chunk, then the combine request
        assert len(client.calls) == 4
        assert isinstance(events[-1], JobCompleted)
        assert events[-1].final_text == result.final_text

    def test_failing_combine_falls_back_to_labelled_partials(self):
        text, paragraphs = make_chapter(2)
        client = RaisingClient(raise_for=lambda chunk_text: chunk_text not in paragraphs)

        handle = make_pipeline(client).submit("Chapter 1", text, JobOptions(mode=JobMode.SUMMARIZE))
        result = handle.wait(timeout=1)

        assert result.status is JobStatus.COMPLETED
        assert result.failed_indices == []
        assert result.error_message.startswith("Combining results failed")
        assert result.final_text.startswith("Part 1/2:")


class TestConversationHistory:

    def test_window_keeps_last_four_turns(self):
        text, paragraphs = make_chapter(6)
        client = ScriptedClient()

        make_pipeline(client).submit("Chapter 1", text)

        assert client.calls[0]["history"] == []
        history = client.calls[5]["history"]
        assert [t.role for t in history] == ["user", "assistant", "user", "assistant"]
        assert [t.text for t in history] == [
            ENHANCE_CONTENT_HEADER + paragraphs[3], f"ENHANCED {paragraphs[3]}",
            ENHANCE_CONTENT_HEADER + paragraphs[4], f"ENHANCED {paragraphs[4]}",
        ]

    def test_window_zero_sends_no_history(self):
        text, _ = make_chapter(3)
        client = ScriptedClient()

        make_pipeline(client, settings=make_settings(history_window=0)).submit("Chapter 1", text)

        assert all(c["history"] == [] for c in client.calls)

    def test_failed_chunk_does_not_enter_history(self):
        text, paragraphs = make_chapter(3)
        client = ScriptedClient({paragraphs[1]: [fatal()]})

        make_pipeline(client).submit("Chapter 1", text)

        history_texts = [t.text for t in client.calls_for(paragraphs[2])[0]["history"]]
        assert ENHANCE_CONTENT_HEADER + paragraphs[1] not in history_texts
        assert f"ENHANCED {paragraphs[0]}" in history_texts


class TestPrompts:

    def test_enhance_prompt_contains_title_part_and_emoji(self):
        text, _ = make_chapter(2)
        client = ScriptedClient()
        pipeline = make_pipeline(client)

        pipeline.submit("Chapter 7", text, JobOptions(use_emoji=True, site_context="Cultivation novel"))

        prompt = client.calls[1]["system_prompt"]
        assert "### Title:\nChapter 7" in prompt
        assert "part 2 of 2" in prompt
        assert "Cultivation novel" in prompt
        assert pipeline.settings.prompts.emoji in prompt
        assert client.calls[1]["content_header"] == ENHANCE_CONTENT_HEADER

    def test_emoji_off_by_default(self):
        text, _ = make_chapter(1)
        client = ScriptedClient()
        pipeline = make_pipeline(client)

        pipeline.submit("Chapter 7", text)

        assert pipeline.settings.prompts.emoji not in client.calls[0]["system_prompt"]

    def test_summary_mode_is_stateless(self):
        text, paragraphs = make_chapter(3)
        client = ScriptedClient()
        pipeline = make_pipeline(client)

        pipeline.submit("Chapter 7", text, JobOptions(mode=JobMode.SUMMARIZE, use_emoji=True))

        chunk_calls = client.calls[:3]
        assert [c["chunk_text"] for c in chunk_calls] == paragraphs
        for call in chunk_calls:
            assert call["history"] is None
            assert call["content_header"] == SUMMARY_CONTENT_HEADER
            assert "Please summarize this part" in call["system_prompt"]
            assert pipeline.settings.prompts.emoji not in call["system_prompt"]
            assert call["params"].max_output_tokens == pipeline.settings.generation.summary_max_output_tokens

    def test_short_summary_uses_short_token_limit(self):
        text, _ = make_chapter(1)
        client = ScriptedClient()
        pipeline = make_pipeline(client)

        pipeline.submit("Chapter 7", text, JobOptions(mode="short_summary"))

        params = client.calls[0]["params"]
        assert params.max_output_tokens == pipeline.settings.generation.short_summary_max_output_tokens
        assert params.temperature == pipeline.settings.generation.summary_temperature


class TestJobControls:

    def test_cancel_from_callback_stops_at_boundary(self):
        text, paragraphs = make_chapter(5)
        client = ScriptedClient()
        pipeline = make_pipeline(client)
        events = []

        def on_event(event):
            events.append(event)
            if isinstance(event, ChunkCompleted) and event.chunk_index == 1:
                pipeline.cancel(pipeline.get_job(event.job_id))

        handle = pipeline.submit("Chapter 1", text, on_event=on_event)

        assert len(client.calls) == 2
        result = handle.result
        assert result.status is JobStatus.CANCELLED
        assert result.processed_count == 2
        assert result.final_text == "\n\n".join(
            [f"ENHANCED {paragraphs[0]}", f"ENHANCED {paragraphs[1]}"] + paragraphs[2:]
        )
        assert events[-1].cancelled

    def test_cancel_after_completion_is_ignored(self):
        text, _ = make_chapter(1)
        pipeline = make_pipeline(ScriptedClient())
        handle = pipeline.submit("Chapter 1", text)

        pipeline.cancel(handle)

        assert handle.status is JobStatus.COMPLETED

    def test_job_timeout_stops_at_next_boundary(self):
        text, paragraphs = make_chapter(3)
        client = ScriptedClient()
        clock = itertools.count(0, 10).__next__

        handle = make_pipeline(
            client, settings=make_settings(job_timeout_seconds=15), clock=clock,
        ).submit("Chapter 1", text)

        assert len(client.calls) == 1
        result = handle.result
        assert result.status is JobStatus.TIMED_OUT
        assert result.processed_count == 1
        assert result.final_text == "\n\n".join([f"ENHANCED {paragraphs[0]}"] + paragraphs[1:])

    def test_get_job_unknown_id(self):
        assert make_pipeline(ScriptedClient()).get_job("missing") is None


class TestChunkCache:

    def test_second_run_uses_cached_chunks(self):
        text, paragraphs = make_chapter(3)
        client = ScriptedClient()
        pipeline = make_pipeline(client, cache=InMemoryChunkCache())
        options = JobOptions(cache_key="https://example.test/chapter-12")

        first = pipeline.submit("Chapter 12", text, options)
        events = []
        second = pipeline.submit("Chapter 12", text, options, on_event=events.append)

        assert len(client.calls) == 3
        assert second.result.final_text == first.result.final_text
        assert all(r.from_cache for r in second.result.chunk_results)
        assert all(e.from_cache for e in events if isinstance(e, ChunkCompleted))

    def test_cache_not_used_without_key(self):
        text, _ = make_chapter(2)
        client = ScriptedClient()
        pipeline = make_pipeline(client, cache=InMemoryChunkCache())

        pipeline.submit("Chapter 12", text)
        pipeline.submit("Chapter 12", text)

        assert len(client.calls) == 4

    def test_cache_keyed_by_mode(self):
        text, _ = make_chapter(1)
        client = ScriptedClient()
        pipeline = make_pipeline(client, cache=InMemoryChunkCache())

        pipeline.submit("Chapter 12", text, JobOptions(cache_key="k"))
        pipeline.submit("Chapter 12", text, JobOptions(cache_key="k", mode=JobMode.SUMMARIZE))

        assert len(client.calls) == 2
