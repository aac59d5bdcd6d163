"""
Chapter Enhancer - chunked enhancement and summarization of long chapters
through the Gemini generation API.

    from chapter_enhancer import EnhancementPipeline, JobOptions, PipelineSettings

    pipeline = EnhancementPipeline(PipelineSettings.load())
    result = pipeline.submit("Chapter 1", text, JobOptions()).wait()
"""

from .errors import (
    CredentialsExhaustedError,
    EnhancerError,
    JobStateError,
    NoCredentialsError,
    SegmentationError,
    SessionConsumedError,
    SettingsError,
)
from .pipeline import EnhancementPipeline, JobHandle, JobMode, JobOptions, ProcessingSession
from .settings import PipelineSettings

__version__ = "1.0.0"

__all__ = [
    'EnhancementPipeline',
    'JobHandle',
    'JobMode',
    'JobOptions',
    'ProcessingSession',
    'PipelineSettings',
    'EnhancerError',
    'NoCredentialsError',
    'CredentialsExhaustedError',
    'SegmentationError',
    'SessionConsumedError',
    'JobStateError',
    'SettingsError',
]
