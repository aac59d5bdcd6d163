"""
Enhancement Pipeline - caller-facing API for chunked enhancement jobs.

    pipeline = EnhancementPipeline(PipelineSettings.load())
    handle = pipeline.submit("Chapter 12", text, JobOptions(use_emoji=True))

    for event in handle.events():
        if isinstance(event, ChunkCompleted):
            print(f"{event.percentage}% done")

    result = handle.wait()
    print(result.final_text)

Pause and resume:

    session = pipeline.pause(handle)     # returns once the in-flight chunk is done
    saved = session.to_dict()            # JSON-safe
    ...
    pipeline.resume(handle, session)     # continues at session.next_chunk_index

Each job runs on its own executor thread; within a job requests are strictly
sequential. Events are put on the handle's queue in order and are also passed
to the optional on_event callback on the job's thread.
"""

import threading
import time
from queue import Empty, Queue
from typing import Callable, Iterator

from ..ai.conversation import ConversationContext
from ..ai.credential_pool import CredentialPool
from ..ai.gemini_client import GeminiClient
from ..chunking_engine import Chunk, ChunkingEngine
from ..errors import JobStateError, SessionConsumedError
from ..logging_config import debug_log, error, info, warning
from ..settings import PipelineSettings
from .aggregator import Aggregator
from .chunk_cache import ChunkCache, InMemoryChunkCache
from .chunk_scheduler import ChunkScheduler, JobControls, RunOutcome, RunStatus
from .events import TERMINAL_EVENTS, JobCompleted, JobPaused, PipelineEvent
from .executors import JobExecutor, ThreadedJobExecutor
from .options import Job, JobOptions
from .result_types import ChunkResult, JobResult, JobStatus
from .session import ProcessingSession

_FINAL_STATUS = {
    RunStatus.COMPLETED: JobStatus.COMPLETED,
    RunStatus.CANCELLED: JobStatus.CANCELLED,
    RunStatus.TIMED_OUT: JobStatus.TIMED_OUT,
}


class JobHandle:
    """
    Reference to a submitted job.

    Attributes:
        job: The submitted Job.
        chunks: The job's chunks.
        status: Current JobStatus.
        session: Resume token while the job is paused, else None.
        result: JobResult once the job has settled (paused or finished).
    """

    def __init__(self, job: Job, chunks: list[Chunk], pool: CredentialPool,
                 on_event: Callable[[PipelineEvent], None] | None = None):
        self.job = job
        self.chunks = chunks
        self.pool = pool
        self.controls = JobControls()
        self.results: dict[int, ChunkResult] = {}
        self.status = JobStatus.RUNNING
        self.session: ProcessingSession | None = None
        self.result: JobResult | None = None
        self.future = None
        self._on_event = on_event
        self._events: Queue = Queue()
        self._settled = threading.Event()
        # Guards status changes that race between the job thread and cancel/resume
        self._state_lock = threading.Lock()
        self._runner_thread: threading.Thread | None = None
        self._elapsed = 0.0

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def title(self) -> str:
        return self.job.title

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    @property
    def done(self) -> bool:
        return self.status not in (JobStatus.RUNNING, JobStatus.PAUSED)

    def events(self, timeout: float | None = None) -> Iterator[PipelineEvent]:
        """
        Yield events until the current run ends (JobPaused or JobCompleted).

        After a resume, call events() again to follow the next run.

        Args:
            timeout: Seconds to wait for each event; the iterator stops early
                when nothing arrives in time. None waits indefinitely.
        """
        while True:
            try:
                event = self._events.get(timeout=timeout)
            except Empty:
                return
            yield event
            if isinstance(event, TERMINAL_EVENTS):
                return

    def wait(self, timeout: float | None = None) -> JobResult:
        """
        Block until the job pauses or finishes and return its JobResult.

        Raises:
            TimeoutError: If the job has not settled within timeout seconds.
        """
        if not self._settled.wait(timeout):
            raise TimeoutError(f"Job {self.job_id} did not settle within {timeout} seconds")
        return self.result

    def _emit(self, event: PipelineEvent) -> None:
        self._events.put(event)
        if self._on_event is not None:
            try:
                self._on_event(event)
            except Exception as e:
                warning(f"[PIPELINE] on_event callback failed for {type(event).__name__}: {e}")


class EnhancementPipeline:
    """
    Submits, pauses, resumes and cancels chapter jobs.

    Args:
        settings: Pipeline settings (loaded from the default file if None).
        client: Generation client; a GeminiClient built from settings if None.
        executor: Where jobs run; a ThreadedJobExecutor if None.
        cache: Chunk cache used for jobs with a cache_key.
        chunking_engine: Segmenter; built from settings if None.
        sleep: Wait function used for backoff and rate limits.
        clock: Monotonic clock used for job deadlines.
    """

    def __init__(
        self,
        settings: PipelineSettings | None = None,
        client=None,
        executor: JobExecutor | None = None,
        cache: ChunkCache | None = None,
        chunking_engine: ChunkingEngine | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings if settings is not None else PipelineSettings.load()
        self.client = client or GeminiClient(
            endpoint=self.settings.endpoint,
            timeout=self.settings.timeout_seconds,
            default_rate_limit_wait=self.settings.retry.default_rate_limit_wait_seconds,
        )
        self.executor = executor or ThreadedJobExecutor(self.settings.max_concurrent_jobs)
        self.cache = cache if cache is not None else InMemoryChunkCache()
        self.chunking_engine = chunking_engine or ChunkingEngine(
            self.settings.chunk_size, self.settings.min_chunk_length
        )
        self.sleep = sleep
        self.clock = clock

        self._pools: dict[tuple, CredentialPool] = {}
        self._registry_lock = threading.Lock()
        self._handles: dict[str, JobHandle] = {}
        self._consumed_sessions: set[str] = set()
        self._sessions_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, title: str, text: str, options: JobOptions | None = None,
               on_event: Callable[[PipelineEvent], None] | None = None) -> JobHandle:
        """
        Split a chapter into chunks and start processing it.

        Args:
            title: Chapter title (sent with every request).
            text: Full chapter text.
            options: Job options; defaults to JobOptions().
            on_event: Optional callback receiving every event on the job's thread.

        Returns:
            JobHandle for following and controlling the job.

        Raises:
            NoCredentialsError: No API key is configured (nothing is processed).
            SegmentationError: The text could not be split into chunks.
        """
        options = options or JobOptions()
        pool = self._pool_for(options)
        job = Job(title=title, full_text=text, options=options)

        if options.chunking_enabled:
            chunks = self.chunking_engine.split(text, options.chunk_size_chars or self.settings.chunk_size)
        else:
            chunks = [Chunk(index=0, total_count=1, text=text)]

        handle = JobHandle(job, chunks, pool, on_event)
        self._register(handle)
        info(f"[PIPELINE] Submitted job {job.job_id} '{title}': {len(text)} chars, "
             f"{len(chunks)} chunk(s), mode={options.mode.value}")

        self._launch(handle, 0, ConversationContext(self.settings.history_window))
        return handle

    def pause(self, handle: JobHandle, wait: bool = True,
              timeout: float | None = None) -> ProcessingSession | None:
        """
        Ask a running job to pause after its in-flight chunk.

        Args:
            handle: Job to pause.
            wait: Block until the job has paused. Ignored when called from
                the job's own thread (an on_event callback).
            timeout: Maximum seconds to wait.

        Returns:
            The ProcessingSession once paused, or None if the job finished
            first or wait is False.
        """
        if handle.status is JobStatus.PAUSED:
            return handle.session
        if handle.done:
            warning(f"[PIPELINE] Pause ignored: job {handle.job_id} already {handle.status.value}")
            return None

        debug_log(f"[PIPELINE] Pause requested for job {handle.job_id}")
        handle.controls.pause_requested.set()

        if not wait or threading.current_thread() is handle._runner_thread:
            return None
        handle.wait(timeout)
        return handle.session

    def resume(self, handle: JobHandle, session: ProcessingSession) -> JobHandle:
        """
        Continue a paused job from session.next_chunk_index.

        Chunks before that index are never reprocessed, and retry counters
        start fresh.

        Raises:
            JobStateError: The job is not paused or the session belongs to another job.
            SessionConsumedError: The session was already used for a resume.
        """
        if session.job_id != handle.job_id:
            raise JobStateError(f"Session belongs to job {session.job_id}, not {handle.job_id}")

        with self._sessions_lock:
            if session.session_id in self._consumed_sessions:
                raise SessionConsumedError(f"Session {session.session_id} was already resumed")
            with handle._state_lock:
                if handle.status is not JobStatus.PAUSED:
                    raise JobStateError(
                        f"Job {handle.job_id} is {handle.status.value}; only paused jobs can be resumed"
                    )
                session.consume()
                handle.status = JobStatus.RUNNING
            self._consumed_sessions.add(session.session_id)

        for result in session.completed_results:
            handle.results.setdefault(result.chunk_index, result)

        conversation = ConversationContext.from_snapshot(
            session.conversation_snapshot, self.settings.history_window
        )
        handle.controls.pause_requested.clear()
        handle.session = None

        info(f"[PIPELINE] Resuming job {handle.job_id} at chunk "
             f"{session.next_chunk_index + 1}/{handle.total_chunks}")
        self._launch(handle, session.next_chunk_index, conversation)
        return handle

    def restore(self, session: ProcessingSession,
                on_event: Callable[[PipelineEvent], None] | None = None) -> JobHandle:
        """
        Rebuild a paused job from a session (e.g. one loaded from disk) and resume it.

        The job uses the pipeline's configured credentials; credentials are
        never stored in sessions.
        """
        completed = sorted(session.completed_results, key=lambda r: r.chunk_index)
        texts = [r.original_text for r in completed] + list(session.remaining_chunks)
        if len(texts) != session.total_chunks or len(completed) != session.next_chunk_index:
            raise JobStateError(
                f"Session {session.session_id} is inconsistent: "
                f"{len(completed)} completed + {len(session.remaining_chunks)} remaining "
                f"!= {session.total_chunks} chunks"
            )

        options = JobOptions.from_dict(session.options) if session.options else JobOptions()
        pool = self._pool_for(options)
        job = Job(title=session.title, full_text="\n\n".join(texts), options=options,
                  job_id=session.job_id)
        chunks = [Chunk(index=i, total_count=len(texts), text=t) for i, t in enumerate(texts)]

        handle = JobHandle(job, chunks, pool, on_event)
        self._register(handle)
        handle.status = JobStatus.PAUSED
        handle.session = session
        return self.resume(handle, session)

    def cancel(self, handle: JobHandle) -> None:
        """
        Stop a job at the next chunk boundary.

        Completed results are kept; the job finishes with status CANCELLED and
        a JobCompleted event. A paused job is finished immediately.
        """
        with handle._state_lock:
            if handle.done or handle.controls.cancel_requested.is_set():
                return
            debug_log(f"[PIPELINE] Cancel requested for job {handle.job_id}")
            handle.controls.cancel_requested.set()
            if handle.status is not JobStatus.PAUSED:
                return
            # Claimed under the lock so a concurrent resume() refuses the job
            handle.status = JobStatus.CANCELLED
            session = handle.session

        if session is not None:
            with self._sessions_lock:
                self._consumed_sessions.add(session.session_id)
        self._finish(handle, JobStatus.CANCELLED)

    def get_job(self, job_id: str) -> JobHandle | None:
        """Look up the handle of a job submitted to this pipeline."""
        with self._registry_lock:
            return self._handles.get(job_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and release the executor."""
        self.executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown(wait=True)
        return False

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def _pool_for(self, options: JobOptions) -> CredentialPool:
        """Get (or create) the shared pool for a credential list and policy."""
        secrets = options.credentials if options.credentials is not None else self.settings.api_keys
        policy = options.rotation_policy or self.settings.rotation_policy
        key = (tuple(secrets), policy)

        with self._registry_lock:
            pool = self._pools.get(key)
            if pool is None:
                pool = CredentialPool(list(secrets), policy)
                self._pools[key] = pool
            return pool

    def _register(self, handle: JobHandle) -> None:
        with self._registry_lock:
            self._handles[handle.job_id] = handle

    def _launch(self, handle: JobHandle, start_index: int, conversation: ConversationContext) -> None:
        timeout = self.settings.retry.job_timeout_seconds
        handle.controls.deadline = self.clock() + timeout if timeout else None
        handle.status = JobStatus.RUNNING
        handle.result = None
        handle._settled.clear()
        handle.future = self.executor.submit(self._run_job, handle, start_index, conversation)

    def _run_job(self, handle: JobHandle, start_index: int, conversation: ConversationContext) -> JobResult:
        """Worker body: run the scheduler, then pause or finish the job."""
        handle._runner_thread = threading.current_thread()
        start_time = time.time()
        scheduler = ChunkScheduler(
            self.client, handle.pool, self.settings, handle._emit,
            cache=self.cache, sleep=self.sleep, clock=self.clock,
        )

        try:
            outcome = scheduler.run(handle.job, handle.chunks, start_index, conversation,
                                    handle.results, handle.controls)
        except Exception as e:
            error(f"[PIPELINE] Job {handle.job_id} stopped on unexpected error: {e}", exc_info=True)
            handle._elapsed += time.time() - start_time
            self._finish(handle, JobStatus.FAILED, error_message=str(e))
            return handle.result
        finally:
            handle._runner_thread = None

        handle._elapsed += time.time() - start_time
        if outcome.status is RunStatus.PAUSED and self._pause(handle, outcome):
            return handle.result
        self._finish(handle, _FINAL_STATUS.get(outcome.status, JobStatus.CANCELLED))
        return handle.result

    def _pause(self, handle: JobHandle, outcome: RunOutcome) -> bool:
        """Record the pause, unless a cancel got in first. Returns True if paused."""
        with handle._state_lock:
            if handle.controls.cancel_requested.is_set():
                return False

            completed = [handle.results[i] for i in sorted(handle.results)]
            session = ProcessingSession(
                job_id=handle.job_id,
                next_chunk_index=outcome.next_index,
                remaining_chunks=[c.text for c in handle.chunks[outcome.next_index:]],
                total_chunks=handle.total_chunks,
                conversation_snapshot=outcome.conversation.snapshot(),
                completed_results=completed,
                title=handle.title,
                options=handle.job.options.to_dict(),
            )

            handle.session = session
            handle.result = JobResult(
                job_id=handle.job_id,
                title=handle.title,
                status=JobStatus.PAUSED,
                chunk_results=completed,
                total_chunks=handle.total_chunks,
                failed_indices=[r.chunk_index for r in completed if not r.succeeded],
                session=session,
                processing_time_seconds=handle._elapsed,
            )
            handle.status = JobStatus.PAUSED
            handle._settled.set()

        info(f"[PIPELINE] Job {handle.job_id} paused before chunk "
             f"{outcome.next_index + 1}/{handle.total_chunks}")
        handle._emit(JobPaused(handle.job_id, session))
        return True

    def _finish(self, handle: JobHandle, status: JobStatus, error_message: str | None = None) -> None:
        aggregator = Aggregator(self.client, handle.pool, self.settings)
        mode = handle.job.options.mode
        try:
            try:
                aggregate = aggregator.combine(handle.chunks, handle.results, mode, handle.title)
            except Exception as e:
                error(f"[PIPELINE] Combining results of job {handle.job_id} failed: {e}", exc_info=True)
                aggregate = aggregator.combine(handle.chunks, handle.results, mode, handle.title,
                                               use_model=False)
                error_message = error_message or f"Combining results failed: {e}"
            ordered = [handle.results[i] for i in sorted(handle.results)]

            handle.result = JobResult(
                job_id=handle.job_id,
                title=handle.title,
                status=status,
                final_text=aggregate.final_text,
                chunk_results=ordered,
                total_chunks=handle.total_chunks,
                failed_indices=aggregate.failed_indices,
                processing_time_seconds=handle._elapsed,
                error_message=error_message,
            )
            handle.session = None
            handle.status = status
        finally:
            handle._settled.set()

        result = handle.result
        info(f"[PIPELINE] Job {handle.job_id} {status.value}: {result.processed_count} succeeded, "
             f"{result.failed_count} failed, {len(aggregate.unprocessed_indices)} not processed "
             f"in {result.processing_time_seconds:.1f}s")
        handle._emit(JobCompleted(
            handle.job_id,
            processed_count=result.processed_count,
            failed_count=result.failed_count,
            final_text=result.final_text,
            failed_indices=tuple(aggregate.failed_indices),
            cancelled=status is JobStatus.CANCELLED,
            timed_out=status is JobStatus.TIMED_OUT,
        ))
