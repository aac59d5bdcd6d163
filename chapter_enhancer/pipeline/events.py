"""
Progress events emitted by a running job.

Events for one job are delivered in order on the job's queue (and to the
optional on_event callback). For every chunk index the sequence is:

    ChunkStarted
    (ChunkFailed with final=False | CredentialRotated)*
    ChunkCompleted | ChunkFailed with final=True

and the stream for a run ends with JobPaused or JobCompleted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .session import ProcessingSession


@dataclass(frozen=True)
class PipelineEvent:
    job_id: str


@dataclass(frozen=True)
class ChunkStarted(PipelineEvent):
    chunk_index: int
    total_chunks: int


@dataclass(frozen=True)
class ChunkCompleted(PipelineEvent):
    chunk_index: int
    total_chunks: int
    text: str
    from_cache: bool = False

    @property
    def percentage(self) -> int:
        return int((self.chunk_index + 1) / self.total_chunks * 100)


@dataclass(frozen=True)
class ChunkFailed(PipelineEvent):
    """
    A failed attempt (final=False, a retry follows) or a final failure.

    wait_ms is how long the scheduler waits before the next attempt.
    """
    chunk_index: int
    total_chunks: int
    error_message: str
    is_rate_limit: bool = False
    wait_ms: int = 0
    final: bool = False


@dataclass(frozen=True)
class CredentialRotated(PipelineEvent):
    chunk_index: int
    from_slot: int
    to_slot: int


@dataclass(frozen=True)
class JobPaused(PipelineEvent):
    session: ProcessingSession = field(compare=False)


@dataclass(frozen=True)
class JobCompleted(PipelineEvent):
    processed_count: int
    failed_count: int
    final_text: str
    failed_indices: tuple[int, ...] = ()
    cancelled: bool = False
    timed_out: bool = False


TERMINAL_EVENTS = (JobPaused, JobCompleted)
