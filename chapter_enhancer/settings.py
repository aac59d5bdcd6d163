"""
Pipeline Settings Loader
Loads per-deployment settings from a YAML file on top of config.py defaults.

The settings object is built once and handed to EnhancementPipeline
explicitly; nothing in the scheduler reads configuration on its own.

Example settings.yaml:

    credentials:
      api_key: "AIza..."
      backup_api_keys: ["AIza...", "AIza..."]
      rotation: failover          # or round_robin
    api:
      endpoint: https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash:generateContent
      timeout_seconds: 120
    generation:
      temperature: 0.7
      max_output_tokens: 8192
    retry:
      max_retries: 3
      default_rate_limit_wait_seconds: 60
      max_wait_seconds: 300
    prompts:
      permanent: "Use <p> tags only."
    history_window: 4
    chunk_size: 12000

Keys beginning with an underscore are treated as comments and ignored.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from . import config
from .ai.credential_pool import RotationPolicy
from .errors import SettingsError
from .logging_config import debug_log


@dataclass
class GenerationSettings:
    """Sampling parameters sent with every request."""
    temperature: float = config.ENHANCE_TEMPERATURE
    max_output_tokens: int = config.ENHANCE_MAX_OUTPUT_TOKENS
    summary_temperature: float = config.SUMMARY_TEMPERATURE
    summary_max_output_tokens: int = config.SUMMARY_MAX_OUTPUT_TOKENS
    short_summary_max_output_tokens: int = config.SHORT_SUMMARY_MAX_OUTPUT_TOKENS
    combine_max_output_tokens: int = config.COMBINE_MAX_OUTPUT_TOKENS
    top_p: float = config.TOP_P
    top_k: int = config.TOP_K


@dataclass
class RetryPolicy:
    """
    Per-chunk retry limits used by the chunk scheduler.

    Attributes:
        max_retries: Transient failures tolerated before a chunk is final-failed.
        backoff_base_seconds: Transient wait is base * 2 ** attempt.
        default_rate_limit_wait_seconds: Wait used when a 429 carries no hint.
        max_rate_limit_retries: Rate-limit waits before the credential is rotated.
        max_wait_seconds: Ceiling for any single wait; above it the chunk fails.
        job_timeout_seconds: Whole-job deadline (None = no deadline).
    """
    max_retries: int = config.MAX_RETRIES
    backoff_base_seconds: float = config.BACKOFF_BASE_SECONDS
    default_rate_limit_wait_seconds: float = config.DEFAULT_RATE_LIMIT_WAIT_SECONDS
    max_rate_limit_retries: int = config.MAX_RATE_LIMIT_RETRIES
    max_wait_seconds: float = config.MAX_WAIT_SECONDS
    job_timeout_seconds: float | None = config.JOB_TIMEOUT_SECONDS


@dataclass
class PromptSettings:
    """Prompt texts; empty strings switch the optional parts off."""
    enhance: str = config.DEFAULT_ENHANCE_PROMPT
    summary: str = config.DEFAULT_SUMMARY_PROMPT
    short_summary: str = config.DEFAULT_SHORT_SUMMARY_PROMPT
    permanent: str = config.DEFAULT_PERMANENT_PROMPT
    emoji: str = config.EMOJI_INSTRUCTION
    combine: str = config.COMBINE_SUMMARIES_PROMPT


@dataclass
class PipelineSettings:
    """
    Everything the pipeline needs that is not part of a single job.

    Attributes:
        api_keys: Ordered credentials (primary first).
        rotation_policy: Default rotation policy for the credential pool.
        endpoint: generateContent URL of the model.
        timeout_seconds: Per-request HTTP timeout.
        history_window: Conversation turns carried between chunks.
        chunk_size: Default maximum characters per chunk.
        min_chunk_length: Chunks shorter than this are merged into a neighbour.
        min_retention_ratio: Share of words an enhanced chunk must keep.
    """
    api_keys: list[str] = field(default_factory=list)
    rotation_policy: RotationPolicy = RotationPolicy.FAILOVER
    endpoint: str = config.GEMINI_API_ENDPOINT
    timeout_seconds: float = config.GEMINI_TIMEOUT_SECONDS
    history_window: int = config.HISTORY_WINDOW
    chunk_size: int = config.DEFAULT_CHUNK_SIZE
    min_chunk_length: int = config.MIN_CHUNK_LENGTH
    min_retention_ratio: float = config.MIN_RETENTION_RATIO
    max_concurrent_jobs: int = config.MAX_CONCURRENT_JOBS
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    prompts: PromptSettings = field(default_factory=PromptSettings)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "PipelineSettings":
        """
        Load settings from a YAML file, falling back to defaults.

        A missing file is not an error (defaults plus environment credentials
        are used). A file that exists but cannot be parsed is.

        Args:
            path: Settings file. Defaults to config.DEFAULT_SETTINGS_FILE.

        Raises:
            SettingsError: On unreadable YAML or values of the wrong type.
        """
        path = Path(path) if path is not None else config.DEFAULT_SETTINGS_FILE

        data: dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, encoding='utf-8') as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise SettingsError(f"Cannot parse settings file {path}: {e}") from e
            if not isinstance(data, dict):
                raise SettingsError(f"Settings file {path} must contain a mapping")
            debug_log(f"[SETTINGS] Loaded settings from {path}")
        else:
            debug_log(f"[SETTINGS] No settings file at {path}. Using defaults.")

        return cls.from_dict(_filter_comments(data))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineSettings":
        """Build settings from an already-parsed mapping."""
        try:
            creds = data.get('credentials', {}) or {}
            api = data.get('api', {}) or {}

            api_keys = []
            if creds.get('api_key'):
                api_keys.append(str(creds['api_key']))
            api_keys.extend(str(k) for k in creds.get('backup_api_keys', []) or [])
            if not api_keys:
                api_keys = _keys_from_environment()

            settings = cls(
                api_keys=api_keys,
                rotation_policy=RotationPolicy(creds.get('rotation', RotationPolicy.FAILOVER.value)),
                endpoint=api.get('endpoint', config.GEMINI_API_ENDPOINT),
                timeout_seconds=float(api.get('timeout_seconds', config.GEMINI_TIMEOUT_SECONDS)),
                history_window=int(data.get('history_window', config.HISTORY_WINDOW)),
                chunk_size=int(data.get('chunk_size', config.DEFAULT_CHUNK_SIZE)),
                min_chunk_length=int(data.get('min_chunk_length', config.MIN_CHUNK_LENGTH)),
                min_retention_ratio=float(
                    data.get('min_retention_ratio', config.MIN_RETENTION_RATIO)
                ),
                max_concurrent_jobs=int(data.get('max_concurrent_jobs', config.MAX_CONCURRENT_JOBS)),
                generation=GenerationSettings(**(data.get('generation') or {})),
                retry=RetryPolicy(**(data.get('retry') or {})),
                prompts=PromptSettings(**(data.get('prompts') or {})),
            )
        except (TypeError, ValueError) as e:
            raise SettingsError(f"Invalid settings value: {e}") from e

        if settings.history_window < 0:
            raise SettingsError("history_window must be zero or positive")
        if settings.chunk_size <= 0:
            raise SettingsError("chunk_size must be positive")

        return settings


def _keys_from_environment() -> list[str]:
    """Read GEMINI_API_KEY and the comma-separated GEMINI_BACKUP_API_KEYS."""
    keys = []
    primary = os.environ.get(config.API_KEY_ENV_VAR, '').strip()
    if primary:
        keys.append(primary)
    backups = os.environ.get(config.BACKUP_API_KEYS_ENV_VAR, '')
    keys.extend(k.strip() for k in backups.split(',') if k.strip())
    return keys


def _filter_comments(data: Any) -> Any:
    """Recursively remove keys starting with '_' (comments)."""
    if isinstance(data, dict):
        return {
            key: _filter_comments(value)
            for key, value in data.items()
            if not str(key).startswith('_')
        }
    if isinstance(data, list):
        return [_filter_comments(item) for item in data]
    return data
