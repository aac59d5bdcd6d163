"""
Gemini Generation Client
Sends one chunk to the Gemini generateContent REST API and classifies the outcome.

The client performs exactly one HTTP request per call. It never retries and
never rotates credentials; it only reports what happened so the chunk
scheduler can decide:

    SUCCESS             generated text and the updated conversation
    RATE_LIMITED        HTTP 429, with a wait hint (Retry-After header,
                        RetryInfo in the error body, or the default)
    TRANSIENT           5xx, timeouts, connection failures
    INVALID_CREDENTIAL  401/403, or 400 saying the API key is not valid
    FATAL               other 4xx, malformed or blocked responses, empty input
"""

import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import requests

from ..config import (
    DEFAULT_RATE_LIMIT_WAIT_SECONDS,
    ENHANCE_MAX_OUTPUT_TOKENS,
    ENHANCE_TEMPERATURE,
    GEMINI_API_ENDPOINT,
    GEMINI_TIMEOUT_SECONDS,
    TOP_K,
    TOP_P,
)
from ..logging_config import debug_log, warning
from .conversation import ASSISTANT, ConversationContext
from .credential_pool import Credential
from .prompt_builder import ENHANCE_CONTENT_HEADER, preserve_elements

BLOCKED_FINISH_REASONS = {"SAFETY", "BLOCKED_REASON_UNSPECIFIED", "PROHIBITED_CONTENT", "BLOCKLIST"}


class GenerationOutcome(str, Enum):
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    INVALID_CREDENTIAL = "invalid_credential"
    FATAL = "fatal"


@dataclass
class GenerationParams:
    """Sampling parameters for one request (generationConfig)."""
    temperature: float = ENHANCE_TEMPERATURE
    max_output_tokens: int = ENHANCE_MAX_OUTPUT_TOKENS
    top_p: float = TOP_P
    top_k: int = TOP_K

    def to_payload(self) -> dict:
        return {
            "temperature": self.temperature,
            "maxOutputTokens": self.max_output_tokens,
            "topP": self.top_p,
            "topK": self.top_k,
        }


@dataclass
class GenerationResult:
    """
    Classified result of a single generation request.

    Attributes:
        outcome: What happened (see GenerationOutcome).
        text: Generated text on SUCCESS, empty otherwise.
        conversation: Prior turns plus this exchange on SUCCESS.
        wait_seconds: Server-suggested wait on RATE_LIMITED.
        status_code: HTTP status if a response was received.
        error_message: Description of the failure.
    """
    outcome: GenerationOutcome
    text: str = ""
    conversation: ConversationContext | None = None
    wait_seconds: float | None = None
    status_code: int | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is GenerationOutcome.SUCCESS


class GeminiClient:
    """
    Thin HTTP client for Gemini generateContent.

    Args:
        endpoint: Full generateContent URL of the model.
        timeout: Per-request timeout in seconds.
        default_rate_limit_wait: Wait reported for a 429 that carries no hint.
    """

    def __init__(
        self,
        endpoint: str = GEMINI_API_ENDPOINT,
        timeout: float = GEMINI_TIMEOUT_SECONDS,
        default_rate_limit_wait: float = DEFAULT_RATE_LIMIT_WAIT_SECONDS,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.default_rate_limit_wait = default_rate_limit_wait

    def generate(
        self,
        credential: Credential,
        system_prompt: str,
        conversation: ConversationContext | None,
        chunk_text: str,
        params: GenerationParams | None = None,
        content_header: str = ENHANCE_CONTENT_HEADER,
    ) -> GenerationResult:
        """
        Send one chunk and classify the response.

        Args:
            credential: API key to use for this request.
            system_prompt: Full system instruction (see prompt_builder).
            conversation: Prior turns to include, or None for a stateless request.
            chunk_text: The chunk to process.
            params: Sampling parameters.
            content_header: Header placed before the chunk in the user turn.

        Returns:
            GenerationResult; this method does not raise for API failures.
        """
        if not chunk_text or not chunk_text.strip():
            return GenerationResult(GenerationOutcome.FATAL, error_message="Chunk has no content")

        params = params or GenerationParams()
        preserved = preserve_elements(chunk_text)
        user_text = content_header + preserved.text
        history = conversation if conversation is not None else ConversationContext(window=0)

        payload = self._build_payload(system_prompt, history, user_text, params)

        debug_log(f"[GEMINI] Request with {credential.masked}: {len(chunk_text)} chars, "
                  f"{len(payload['contents']) - 1} history turns, "
                  f"{len(preserved.elements)} preserved elements")

        start_time = time.time()
        try:
            response = requests.post(
                self.endpoint,
                params={"key": credential.secret},
                json=payload,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            debug_log(f"[GEMINI] Timeout after {self.timeout}s")
            return GenerationResult(
                GenerationOutcome.TRANSIENT,
                error_message=f"Request timed out after {self.timeout} seconds",
            )
        except requests.exceptions.ConnectionError as e:
            debug_log(f"[GEMINI] Connection error: {e}")
            return GenerationResult(GenerationOutcome.TRANSIENT, error_message=f"Connection error: {e}")
        except requests.exceptions.RequestException as e:
            debug_log(f"[GEMINI] Request failed: {e}")
            return GenerationResult(GenerationOutcome.FATAL, error_message=f"Request failed: {e}")

        result = classify_response(response, self.default_rate_limit_wait)
        debug_log(f"[GEMINI] {result.outcome.value} (HTTP {result.status_code}) "
                  f"in {time.time() - start_time:.2f}s")

        if not result.succeeded:
            return result

        result.conversation = history.with_exchange(user_text, result.text)
        result.text = preserved.restore(result.text)
        return result

    def _build_payload(
        self,
        system_prompt: str,
        history: ConversationContext,
        user_text: str,
        params: GenerationParams,
    ) -> dict:
        contents = [
            {
                "role": "model" if turn.role == ASSISTANT else "user",
                "parts": [{"text": turn.text}],
            }
            for turn in history.cleaned_turns()
        ]
        contents.append({"role": "user", "parts": [{"text": user_text}]})

        return {
            "system_instruction": {"parts": [{"text": system_prompt}]},
            "contents": contents,
            "generationConfig": params.to_payload(),
        }


def classify_response(response: requests.Response, default_wait: float = DEFAULT_RATE_LIMIT_WAIT_SECONDS) -> GenerationResult:
    """
    Map an HTTP response onto a GenerationResult.

    Args:
        response: Response from the generateContent endpoint.
        default_wait: Wait used for a 429 without any hint.
    """
    status = response.status_code
    body = _safe_json(response)
    message = _error_message(body) or f"HTTP {status}"

    if status == 429:
        wait = _retry_after_seconds(response.headers.get("Retry-After"))
        if wait is None:
            wait = _retry_delay_from_body(body)
        if wait is None:
            wait = default_wait
        return GenerationResult(GenerationOutcome.RATE_LIMITED, wait_seconds=wait,
                                status_code=status, error_message=message)

    if status in (401, 403) or (status == 400 and _is_invalid_key_error(body)):
        return GenerationResult(GenerationOutcome.INVALID_CREDENTIAL, status_code=status,
                                error_message=message)

    if status >= 500 or status == 408:
        return GenerationResult(GenerationOutcome.TRANSIENT, status_code=status, error_message=message)

    if status != 200:
        return GenerationResult(GenerationOutcome.FATAL, status_code=status, error_message=message)

    if body is None:
        return GenerationResult(GenerationOutcome.FATAL, status_code=status,
                                error_message="Response was not valid JSON")

    block_reason = (body.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        return GenerationResult(GenerationOutcome.FATAL, status_code=status,
                                error_message=f"Prompt blocked: {block_reason}")

    candidates = body.get("candidates") or []
    if not candidates:
        return GenerationResult(GenerationOutcome.FATAL, status_code=status,
                                error_message="Response contained no candidates")

    candidate = candidates[0]
    finish_reason = candidate.get("finishReason")
    if finish_reason in BLOCKED_FINISH_REASONS:
        warning(f"[GEMINI] Content blocked by safety filters ({finish_reason})")
        return GenerationResult(GenerationOutcome.FATAL, status_code=status,
                                error_message=f"Content blocked: {finish_reason}")

    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
    if not text.strip():
        return GenerationResult(GenerationOutcome.FATAL, status_code=status,
                                error_message="Response contained no text")

    if finish_reason == "MAX_TOKENS":
        warning("[GEMINI] Output hit maxOutputTokens and may be truncated")

    return GenerationResult(GenerationOutcome.SUCCESS, text=text, status_code=status)


def _safe_json(response: requests.Response) -> dict | None:
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _error_message(body: dict | None) -> str | None:
    if not body:
        return None
    err = body.get("error")
    if isinstance(err, dict):
        return err.get("message")
    return None


def _error_details(body: dict | None) -> list[dict[str, Any]]:
    if not body or not isinstance(body.get("error"), dict):
        return []
    details = body["error"].get("details") or []
    return [d for d in details if isinstance(d, dict)]


def _is_invalid_key_error(body: dict | None) -> bool:
    """Gemini reports a bad API key as HTTP 400 with reason API_KEY_INVALID."""
    for detail in _error_details(body):
        if detail.get("reason") in ("API_KEY_INVALID", "API_KEY_EXPIRED"):
            return True
    message = (_error_message(body) or "").lower()
    return "api key" in message and ("not valid" in message or "invalid" in message or "expired" in message)


def _retry_after_seconds(header: str | None) -> float | None:
    """Parse a Retry-After header given either as seconds or as an HTTP date."""
    if not header:
        return None
    header = header.strip()
    try:
        return max(0.0, float(header))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


def _retry_delay_from_body(body: dict | None) -> float | None:
    """Read google.rpc.RetryInfo.retryDelay (e.g. "37s") from an error body."""
    for detail in _error_details(body):
        if str(detail.get("@type", "")).endswith("google.rpc.RetryInfo"):
            delay = str(detail.get("retryDelay", "")).strip()
            if delay.endswith("s"):
                try:
                    return max(0.0, float(delay[:-1]))
                except ValueError:
                    return None
    return None
