"""
Job definition types: what the caller submits.
"""

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum

from ..ai.credential_pool import RotationPolicy


class JobMode(str, Enum):
    """What the generation API is asked to do with each chunk."""
    ENHANCE = "enhance"
    SUMMARIZE = "summarize"
    SHORT_SUMMARY = "short_summary"

    @property
    def summarizing(self) -> bool:
        return self is not JobMode.ENHANCE


@dataclass
class JobOptions:
    """
    Per-job options.

    Attributes:
        chunking_enabled: Split long text; when False the whole text is one chunk.
        chunk_size_chars: Maximum characters per chunk (None = settings default).
        use_emoji: Ask for emojis after dialogue (enhance mode only).
        site_context: Extra site-specific guidance for the system instruction.
        mode: Enhance, summarize or short_summary.
        rotation_policy: Overrides the settings-level policy when set.
        credentials: Overrides the settings-level API keys when set.
        cache_key: Reuse/store chunk results under this key (e.g. the chapter URL).
        pause_on_rate_limit: Pause the job instead of failing a chunk whose
            rate-limit handling is exhausted.
    """
    chunking_enabled: bool = True
    chunk_size_chars: int | None = None
    use_emoji: bool = False
    site_context: str = ""
    mode: JobMode = JobMode.ENHANCE
    rotation_policy: RotationPolicy | None = None
    credentials: list[str] | None = None
    cache_key: str | None = None
    pause_on_rate_limit: bool = False

    def __post_init__(self):
        self.mode = JobMode(self.mode)
        if self.rotation_policy is not None:
            self.rotation_policy = RotationPolicy(self.rotation_policy)
        if self.chunk_size_chars is not None and self.chunk_size_chars <= 0:
            raise ValueError("chunk_size_chars must be positive")

    def to_dict(self) -> dict:
        """JSON-safe form; credentials are deliberately left out."""
        data = asdict(self)
        data.pop("credentials")
        data["mode"] = self.mode.value
        data["rotation_policy"] = self.rotation_policy.value if self.rotation_policy else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "JobOptions":
        return cls(**{k: v for k, v in data.items() if k != "credentials"})


@dataclass
class Job:
    """A submitted unit of work: one chapter and its options."""
    title: str
    full_text: str
    options: JobOptions = field(default_factory=JobOptions)
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=datetime.now)
