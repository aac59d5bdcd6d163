"""
Pipeline Package for Chapter Enhancer - chunked enhancement and summarization.

Import everything job-related from this package:

    from chapter_enhancer.pipeline import (
        EnhancementPipeline, JobHandle, JobOptions, JobMode,
        ChunkStarted, ChunkCompleted, ChunkFailed, JobCompleted,
        ProcessingSession,
    )

Architecture:
    ┌─────────────────────────────────────────────────────────────┐
    │  EnhancementPipeline (submit / pause / resume / cancel)     │
    │            ↓                                                │
    │  ChunkingEngine → chunks                                    │
    │            ↓                                                │
    │  ChunkScheduler (per-chunk state machine, one job thread)   │
    │      ↕ CredentialPool   ↕ ConversationContext               │
    │  GeminiClient → classified GenerationResult                 │
    │            ↓                                                │
    │  Aggregator → final text / merged summary                   │
    └─────────────────────────────────────────────────────────────┘

Events flow from the scheduler to the JobHandle queue in chunk order.
"""

from .aggregator import Aggregator
from .chunk_cache import ChunkCache, DirectoryChunkCache, InMemoryChunkCache
from .chunk_scheduler import ChunkScheduler, ChunkState, JobControls, RunStatus
from .events import (
    ChunkCompleted,
    ChunkFailed,
    ChunkStarted,
    CredentialRotated,
    JobCompleted,
    JobPaused,
    PipelineEvent,
)
from .executors import InlineJobExecutor, JobExecutor, ThreadedJobExecutor
from .job_manager import EnhancementPipeline, JobHandle
from .options import Job, JobMode, JobOptions
from .result_types import AggregateResult, ChunkResult, JobResult, JobStatus
from .session import ProcessingSession

__all__ = [
    # Caller API
    'EnhancementPipeline',
    'JobHandle',
    'Job',
    'JobMode',
    'JobOptions',
    'ProcessingSession',
    # Events
    'PipelineEvent',
    'ChunkStarted',
    'ChunkCompleted',
    'ChunkFailed',
    'CredentialRotated',
    'JobPaused',
    'JobCompleted',
    # Results
    'ChunkResult',
    'AggregateResult',
    'JobResult',
    'JobStatus',
    # Building blocks
    'Aggregator',
    'ChunkScheduler',
    'ChunkState',
    'JobControls',
    'RunStatus',
    'ChunkCache',
    'InMemoryChunkCache',
    'DirectoryChunkCache',
    'JobExecutor',
    'ThreadedJobExecutor',
    'InlineJobExecutor',
]
