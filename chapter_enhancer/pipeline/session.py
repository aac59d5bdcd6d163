"""
ProcessingSession - resume token for a paused job.

A session captures where a job stopped: the next chunk to process, the
chunks still to do, the conversation window, and the results already
produced. It is a plain JSON-safe dict when serialized, so a paused job can
be resumed later, even from another process.

A session can be consumed by exactly one resume call.
"""

import threading
import uuid
from dataclasses import dataclass, field

from ..errors import SessionConsumedError
from .result_types import ChunkResult


@dataclass
class ProcessingSession:
    """
    Attributes:
        job_id: Job this session belongs to.
        next_chunk_index: First chunk the resumed run processes.
        remaining_chunks: Texts of chunks next_chunk_index..end.
        total_chunks: Chunk count of the whole job.
        conversation_snapshot: Conversation turns at the pause point.
        completed_results: Results for chunks before next_chunk_index.
        title: Chapter title.
        options: JobOptions.to_dict() of the job.
        session_id: Unique id used to detect reuse.
    """
    job_id: str
    next_chunk_index: int
    remaining_chunks: list[str]
    total_chunks: int
    conversation_snapshot: list[dict] = field(default_factory=list)
    completed_results: list[ChunkResult] = field(default_factory=list)
    title: str = ""
    options: dict = field(default_factory=dict)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    consumed: bool = False

    def __post_init__(self):
        self._lock = threading.Lock()

    def consume(self) -> None:
        """Mark the session used; a second call raises SessionConsumedError."""
        with self._lock:
            if self.consumed:
                raise SessionConsumedError(f"Session {self.session_id} was already resumed")
            self.consumed = True

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "job_id": self.job_id,
            "next_chunk_index": self.next_chunk_index,
            "remaining_chunks": list(self.remaining_chunks),
            "total_chunks": self.total_chunks,
            "conversation_snapshot": list(self.conversation_snapshot),
            "completed_results": [r.to_dict() for r in self.completed_results],
            "title": self.title,
            "options": dict(self.options),
            "consumed": self.consumed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessingSession":
        return cls(
            session_id=data["session_id"],
            job_id=data["job_id"],
            next_chunk_index=data["next_chunk_index"],
            remaining_chunks=list(data["remaining_chunks"]),
            total_chunks=data["total_chunks"],
            conversation_snapshot=list(data.get("conversation_snapshot", [])),
            completed_results=[ChunkResult.from_dict(r) for r in data.get("completed_results", [])],
            title=data.get("title", ""),
            options=dict(data.get("options", {})),
            consumed=data.get("consumed", False),
        )
