"""
Result Types for the Enhancement Pipeline

Simple dataclasses that carry results between the scheduler, the aggregator
and the caller.

Key Types:
    ChunkResult     - outcome of one chunk (latest attempt wins)
    AggregateResult - reassembled document plus the failed indices
    JobResult       - everything the caller gets back for a job

Usage:
    result = ChunkResult(
        chunk_index=2,
        original_text="He walked in...",
        generated_text="<p>He strode in...</p>",
        succeeded=True,
        attempts=1,
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .session import ProcessingSession


class JobStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class ChunkResult:
    """
    Result for a single chunk.

    Attributes:
        chunk_index: Zero-based chunk position.
        original_text: Text that was sent.
        generated_text: Model output on success, None otherwise.
        succeeded: Whether the chunk ended in the succeeded state.
        error_message: Failure description if succeeded is False.
        attempts: Number of generation requests made for this chunk.
        from_cache: Result came from the chunk cache, no request was made.
    """
    chunk_index: int
    original_text: str
    generated_text: str | None = None
    succeeded: bool = False
    error_message: str | None = None
    attempts: int = 0
    from_cache: bool = False

    def __post_init__(self):
        """Failed results always carry an error message."""
        if not self.succeeded and not self.error_message:
            self.error_message = "Unknown error during chunk processing"

    @property
    def output_text(self) -> str:
        """Generated text, or the original text when the chunk failed."""
        if self.succeeded and self.generated_text is not None:
            return self.generated_text
        return self.original_text

    def to_dict(self) -> dict:
        return {
            "chunk_index": self.chunk_index,
            "original_text": self.original_text,
            "generated_text": self.generated_text,
            "succeeded": self.succeeded,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "from_cache": self.from_cache,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ChunkResult:
        return cls(**data)


@dataclass
class AggregateResult:
    """Reassembled output of a job."""
    final_text: str
    failed_indices: list[int] = field(default_factory=list)
    unprocessed_indices: list[int] = field(default_factory=list)
    combined_with_model: bool = False


@dataclass
class JobResult:
    """
    What the caller receives once a job settles (finished or paused).

    Attributes:
        job_id: Identifier of the job.
        title: Chapter title.
        status: Final (or paused) status.
        final_text: Reassembled document or merged summary.
        chunk_results: Results ordered by chunk index.
        total_chunks: Number of chunks in the job.
        failed_indices: Chunks that ended in the failed state.
        session: Resume token when status is PAUSED.
        processing_time_seconds: Wall-clock time across all runs of the job.
        error_message: Set when the job stopped on an unexpected error.
    """
    job_id: str
    title: str
    status: JobStatus
    final_text: str = ""
    chunk_results: list[ChunkResult] = field(default_factory=list)
    total_chunks: int = 0
    failed_indices: list[int] = field(default_factory=list)
    session: ProcessingSession | None = None
    processing_time_seconds: float = 0.0
    error_message: str | None = None

    @property
    def processed_count(self) -> int:
        return sum(1 for r in self.chunk_results if r.succeeded)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.chunk_results if not r.succeeded)

    @property
    def cancelled(self) -> bool:
        return self.status is JobStatus.CANCELLED

    @property
    def success_rate(self) -> float:
        """Succeeded chunks as a percentage of all chunks."""
        if self.total_chunks == 0:
            return 0.0
        return (self.processed_count / self.total_chunks) * 100
