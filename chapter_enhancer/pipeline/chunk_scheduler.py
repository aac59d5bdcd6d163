"""
Chunk Scheduler - drives every chunk of a job through its state machine.

Chunks are processed strictly in order, one request at a time. Each chunk
moves through:

    PENDING -> ATTEMPTING -> SUCCEEDED
                          -> RATE_LIMITED -> WAITING -> ATTEMPTING
                          -> TRANSIENT_FAILED -> BACKING_OFF -> ATTEMPTING
                          -> CREDENTIAL_ROTATING -> ATTEMPTING
                          -> FAILED_FINAL

Rules per outcome of the generation client:
    SUCCESS             record, update the conversation, move on
    RATE_LIMITED        wait the server hint and retry on the same credential;
                        once the rate-limit retries are used up rotate the
                        credential and retry once more, then fail (or pause)
    INVALID_CREDENTIAL  rotate and retry immediately; fail when exhausted
    TRANSIENT           back off base * 2 ** attempt; fail after max_retries
    FATAL               fail immediately

A failed chunk never aborts the job. Pause, cancel and the job deadline are
only checked between chunks, so a chunk is never half applied.
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from ..ai.conversation import ConversationContext
from ..ai.credential_pool import Credential, CredentialPool, RotationPolicy
from ..ai.gemini_client import GenerationOutcome, GenerationParams, GenerationResult
from ..ai.prompt_builder import (
    ENHANCE_CONTENT_HEADER,
    SUMMARY_CONTENT_HEADER,
    build_system_instruction,
)
from ..chunking_engine import Chunk
from ..config import MIN_WORDS_FOR_RETENTION_CHECK
from ..errors import CredentialsExhaustedError
from ..logging_config import Timer, debug_log, info, warning
from ..settings import PipelineSettings
from .chunk_cache import ChunkCache
from .events import ChunkCompleted, ChunkFailed, ChunkStarted, CredentialRotated, PipelineEvent
from .options import Job, JobMode
from .result_types import ChunkResult


class ChunkState(str, Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    RATE_LIMITED = "rate_limited"
    WAITING = "waiting"
    TRANSIENT_FAILED = "transient_failed"
    BACKING_OFF = "backing_off"
    CREDENTIAL_ROTATING = "credential_rotating"
    FAILED_FINAL = "failed_final"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


@dataclass
class JobControls:
    """
    Signals the caller can raise while a job runs.

    Attributes:
        pause_requested: Stop after the in-flight chunk and produce a session.
        cancel_requested: Stop after the in-flight chunk and finish the job.
        deadline: Clock value after which the job stops at the next boundary.
    """
    pause_requested: threading.Event = field(default_factory=threading.Event)
    cancel_requested: threading.Event = field(default_factory=threading.Event)
    deadline: float | None = None


@dataclass
class RunOutcome:
    status: RunStatus
    next_index: int
    conversation: ConversationContext


@dataclass
class _ChunkOutcome:
    result: ChunkResult | None
    conversation: ConversationContext
    pause: bool = False


class ChunkScheduler:
    """
    Runs the chunks of one job against the generation client.

    Args:
        client: Object with GeminiClient.generate()'s signature.
        pool: Credential pool (may be shared with other jobs).
        settings: Prompts, sampling parameters and retry policy.
        emit: Receives every PipelineEvent, in order.
        cache: Optional chunk cache, consulted when a job has a cache_key.
        sleep: Blocking wait function (injectable for tests).
        clock: Monotonic clock used for the job deadline.
    """

    def __init__(
        self,
        client,
        pool: CredentialPool,
        settings: PipelineSettings,
        emit: Callable[[PipelineEvent], None],
        cache: ChunkCache | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.pool = pool
        self.settings = settings
        self.emit = emit
        self.cache = cache
        self.sleep = sleep
        self.clock = clock

    def run(
        self,
        job: Job,
        chunks: list[Chunk],
        start_index: int,
        conversation: ConversationContext,
        results: dict[int, ChunkResult],
        controls: JobControls,
    ) -> RunOutcome:
        """
        Process chunks[start_index:] in order, writing into results.

        Returns:
            RunOutcome with the status and the index the next run starts at.
        """
        total = len(chunks)
        index = start_index
        status = RunStatus.COMPLETED
        debug_log(f"[SCHEDULER] Job {job.job_id}: running chunks {start_index + 1}..{total}")

        while index < total:
            if controls.cancel_requested.is_set():
                status = RunStatus.CANCELLED
                break
            if controls.deadline is not None and self.clock() >= controls.deadline:
                warning(f"[SCHEDULER] Job {job.job_id} hit its deadline before chunk {index + 1}/{total}")
                status = RunStatus.TIMED_OUT
                break
            if controls.pause_requested.is_set():
                status = RunStatus.PAUSED
                break

            chunk = chunks[index]
            with Timer(f"[SCHEDULER] Chunk {index + 1}/{total}"):
                outcome = self._process_chunk(job, chunk, conversation)

            if outcome.pause:
                status = RunStatus.PAUSED
                break

            results[index] = outcome.result
            conversation = outcome.conversation
            index += 1

        info(f"[SCHEDULER] Job {job.job_id} stopped with status {status.value} at chunk {index}/{total}")
        return RunOutcome(status=status, next_index=index, conversation=conversation)

    # ------------------------------------------------------------------
    # Per-chunk state machine
    # ------------------------------------------------------------------

    def _process_chunk(self, job: Job, chunk: Chunk, conversation: ConversationContext) -> _ChunkOutcome:
        mode = job.options.mode
        retry = self.settings.retry
        self._set_state(job, chunk, ChunkState.PENDING)
        self.emit(ChunkStarted(job.job_id, chunk.index, chunk.total_count))

        cached = self._cached_output(job, chunk)
        if cached is not None:
            if not mode.summarizing:
                conversation = conversation.with_exchange(ENHANCE_CONTENT_HEADER + chunk.text, cached)
            self._set_state(job, chunk, ChunkState.SUCCEEDED)
            self.emit(ChunkCompleted(job.job_id, chunk.index, chunk.total_count, cached, from_cache=True))
            return _ChunkOutcome(
                ChunkResult(chunk.index, chunk.text, cached, succeeded=True, from_cache=True),
                conversation,
            )

        system_prompt = self._system_prompt(job, chunk)
        params = self._generation_params(mode)
        header = SUMMARY_CONTENT_HEADER if mode.summarizing else ENHANCE_CONTENT_HEADER
        history = None if mode.summarizing else conversation

        attempts = 0
        transient_failures = 0
        rate_limit_waits = 0
        credential_failures = 0
        rotated_for_rate_limit = False

        while True:
            self._set_state(job, chunk, ChunkState.ATTEMPTING)
            credential = self.pool.current()
            attempts += 1
            result = self.client.generate(credential, system_prompt, history, chunk.text, params, header)

            if self.pool.policy is RotationPolicy.ROUND_ROBIN:
                self.pool.advance()

            if result.succeeded and not mode.summarizing:
                result = self._check_retention(chunk, result)

            if result.outcome is GenerationOutcome.SUCCESS:
                self._set_state(job, chunk, ChunkState.SUCCEEDED)
                if history is not None and result.conversation is not None:
                    conversation = result.conversation
                self._store_output(job, chunk, result.text)
                self.emit(ChunkCompleted(job.job_id, chunk.index, chunk.total_count, result.text))
                return _ChunkOutcome(
                    ChunkResult(chunk.index, chunk.text, result.text, succeeded=True, attempts=attempts),
                    conversation,
                )

            if result.outcome is GenerationOutcome.RATE_LIMITED:
                wait = result.wait_seconds
                if wait is None:
                    wait = retry.default_rate_limit_wait_seconds

                if rate_limit_waits < retry.max_rate_limit_retries:
                    if wait > retry.max_wait_seconds:
                        return self._fail(
                            job, chunk, conversation, attempts,
                            f"Rate limit wait of {wait:.0f}s exceeds the {retry.max_wait_seconds:.0f}s ceiling",
                            is_rate_limit=True,
                        )
                    rate_limit_waits += 1
                    self._set_state(job, chunk, ChunkState.RATE_LIMITED)
                    self.emit(ChunkFailed(
                        job.job_id, chunk.index, chunk.total_count,
                        result.error_message or "Rate limited",
                        is_rate_limit=True, wait_ms=int(wait * 1000),
                    ))
                    self._set_state(job, chunk, ChunkState.WAITING)
                    self.sleep(wait)
                    continue

                if not rotated_for_rate_limit and self._rotate(job, chunk, credential):
                    rotated_for_rate_limit = True
                    continue

                if job.options.pause_on_rate_limit:
                    warning(f"[SCHEDULER] Rate limit persists on {chunk.label}; pausing job {job.job_id}")
                    self.emit(ChunkFailed(
                        job.job_id, chunk.index, chunk.total_count,
                        "Rate limit persisted; job paused",
                        is_rate_limit=True, wait_ms=int(wait * 1000),
                    ))
                    return _ChunkOutcome(None, conversation, pause=True)

                return self._fail(
                    job, chunk, conversation, attempts,
                    "Rate limit persisted after credential rotation", is_rate_limit=True,
                )

            if result.outcome is GenerationOutcome.INVALID_CREDENTIAL:
                credential_failures += 1
                # Failover bound covers another job resetting the shared pool mid-chunk
                limit = self.pool.size if self.pool.policy is RotationPolicy.ROUND_ROBIN else self.pool.size + 1
                if credential_failures >= limit:
                    return self._fail(job, chunk, conversation, attempts,
                                      f"All {self.pool.size} API key(s) were rejected")
                if not self._rotate(job, chunk, credential):
                    return self._fail(job, chunk, conversation, attempts,
                                      f"All {self.pool.size} API key(s) were rejected")
                continue

            if result.outcome is GenerationOutcome.TRANSIENT:
                transient_failures += 1
                if transient_failures > retry.max_retries:
                    return self._fail(
                        job, chunk, conversation, attempts,
                        f"{result.error_message} (gave up after {retry.max_retries} retries)",
                    )
                wait = retry.backoff_base_seconds * 2 ** (transient_failures - 1)
                if wait > retry.max_wait_seconds:
                    return self._fail(
                        job, chunk, conversation, attempts,
                        f"Backoff of {wait:.0f}s exceeds the {retry.max_wait_seconds:.0f}s ceiling",
                    )
                self._set_state(job, chunk, ChunkState.TRANSIENT_FAILED)
                self.emit(ChunkFailed(
                    job.job_id, chunk.index, chunk.total_count,
                    result.error_message or "Transient error",
                    wait_ms=int(wait * 1000),
                ))
                self._set_state(job, chunk, ChunkState.BACKING_OFF)
                self.sleep(wait)
                continue

            return self._fail(job, chunk, conversation, attempts, result.error_message or "Request failed")

    def _rotate(self, job: Job, chunk: Chunk, failed: Credential) -> bool:
        """
        Move to another credential after `failed` was rejected or throttled.

        Round-robin pools have already advanced after the attempt, so only
        failover pools are advanced here, and only if no other job sharing
        the pool has already moved off the failed slot. Returns False when
        this chunk's own advance exhausted the failover pool.
        """
        self._set_state(job, chunk, ChunkState.CREDENTIAL_ROTATING)
        if self.pool.policy is RotationPolicy.ROUND_ROBIN:
            new = self.pool.current()
        else:
            try:
                new = self.pool.advance_from(failed.slot)
            except CredentialsExhaustedError:
                return False

        info(f"[SCHEDULER] {chunk.label}: switching from credential slot {failed.slot} to {new.slot}")
        self.emit(CredentialRotated(job.job_id, chunk.index, failed.slot, new.slot))
        return True

    def _fail(self, job: Job, chunk: Chunk, conversation: ConversationContext, attempts: int,
              message: str, is_rate_limit: bool = False) -> _ChunkOutcome:
        self._set_state(job, chunk, ChunkState.FAILED_FINAL)
        warning(f"[SCHEDULER] {chunk.label} of job {job.job_id} failed: {message}")
        self.emit(ChunkFailed(
            job.job_id, chunk.index, chunk.total_count, message,
            is_rate_limit=is_rate_limit, final=True,
        ))
        return _ChunkOutcome(
            ChunkResult(chunk.index, chunk.text, None, succeeded=False,
                        error_message=message, attempts=attempts),
            conversation,
        )

    def _check_retention(self, chunk: Chunk, result: GenerationResult) -> GenerationResult:
        """Treat an enhancement that dropped too much of the text as transient."""
        ratio = self.settings.min_retention_ratio
        original_words = chunk.word_count
        if ratio <= 0 or original_words < MIN_WORDS_FOR_RETENTION_CHECK:
            return result

        generated_words = len(result.text.split())
        if generated_words < original_words * ratio:
            debug_log(f"[SCHEDULER] {chunk.label}: output kept {generated_words}/{original_words} words")
            return GenerationResult(
                GenerationOutcome.TRANSIENT,
                status_code=result.status_code,
                error_message=(
                    f"Enhanced text kept only {generated_words} of {original_words} words"
                ),
            )
        return result

    # ------------------------------------------------------------------
    # Request preparation
    # ------------------------------------------------------------------

    def _system_prompt(self, job: Job, chunk: Chunk) -> str:
        prompts = self.settings.prompts
        options = job.options
        base = {
            JobMode.ENHANCE: prompts.enhance,
            JobMode.SUMMARIZE: prompts.summary,
            JobMode.SHORT_SUMMARY: prompts.short_summary,
        }[options.mode]

        return build_system_instruction(
            base,
            title=job.title,
            site_context=options.site_context,
            permanent_prompt=prompts.permanent,
            emoji_instruction=prompts.emoji if options.use_emoji and not options.mode.summarizing else "",
            part_number=chunk.index + 1,
            total_parts=chunk.total_count,
            summarizing=options.mode.summarizing,
        )

    def _generation_params(self, mode: JobMode) -> GenerationParams:
        gen = self.settings.generation
        if mode is JobMode.ENHANCE:
            return GenerationParams(gen.temperature, gen.max_output_tokens, gen.top_p, gen.top_k)
        max_tokens = (
            gen.short_summary_max_output_tokens if mode is JobMode.SHORT_SUMMARY
            else gen.summary_max_output_tokens
        )
        return GenerationParams(gen.summary_temperature, max_tokens, gen.top_p, gen.top_k)

    def _cached_output(self, job: Job, chunk: Chunk) -> str | None:
        if self.cache is None or not job.options.cache_key:
            return None
        cached = self.cache.get(job.options.cache_key, job.options.mode.value, chunk.index, chunk.text)
        if cached is not None:
            debug_log(f"[SCHEDULER] {chunk.label}: using cached result")
        return cached

    def _store_output(self, job: Job, chunk: Chunk, text: str) -> None:
        if self.cache is not None and job.options.cache_key:
            self.cache.put(job.options.cache_key, job.options.mode.value, chunk.index, chunk.text, text)

    def _set_state(self, job: Job, chunk: Chunk, state: ChunkState) -> None:
        debug_log(f"[SCHEDULER] Job {job.job_id[:8]} {chunk.label} -> {state.value}")
