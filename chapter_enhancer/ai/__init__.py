"""
Chapter Enhancer AI Module
Everything that talks to, or prepares input for, the generation API.

Components:
- CredentialPool: ordered API keys with failover or round-robin rotation
- ConversationContext: sliding window of prior turns carried between chunks
- prompt_builder: system instruction assembly and element preservation
- GeminiClient: one request per call, outcome classified for the scheduler

The client talks to the Gemini REST API through `requests` only; no vendor
SDK is required.
"""

from .conversation import ConversationContext, ConversationTurn
from .credential_pool import Credential, CredentialPool, RotationPolicy
from .gemini_client import (
    GeminiClient,
    GenerationOutcome,
    GenerationParams,
    GenerationResult,
    classify_response,
)

__all__ = [
    'ConversationContext',
    'ConversationTurn',
    'Credential',
    'CredentialPool',
    'RotationPolicy',
    'GeminiClient',
    'GenerationOutcome',
    'GenerationParams',
    'GenerationResult',
    'classify_response',
]
