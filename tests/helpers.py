"""
Shared fakes for the pipeline tests.

ScriptedClient stands in for GeminiClient: each chunk text can be given a
list of outcomes that are replayed in order, after which every call succeeds.
FakeSleep records waits instead of blocking.
"""

from chapter_enhancer.ai.conversation import ConversationContext
from chapter_enhancer.ai.gemini_client import GenerationOutcome, GenerationResult
from chapter_enhancer.pipeline import EnhancementPipeline, InlineJobExecutor
from chapter_enhancer.settings import PipelineSettings, RetryPolicy

TEST_KEYS = ["key-alpha-0000", "key-bravo-1111", "key-charlie-2222"]


def rate_limited(wait_seconds=30.0):
    return GenerationResult(GenerationOutcome.RATE_LIMITED, wait_seconds=wait_seconds,
                            status_code=429, error_message="Resource has been exhausted")


def transient(message="Service unavailable"):
    return GenerationResult(GenerationOutcome.TRANSIENT, status_code=503, error_message=message)


def invalid_credential():
    return GenerationResult(GenerationOutcome.INVALID_CREDENTIAL, status_code=400,
                            error_message="API key not valid")


def fatal(message="Content blocked: SAFETY"):
    return GenerationResult(GenerationOutcome.FATAL, status_code=200, error_message=message)


class ScriptedClient:
    """
    Fake generation client.

    Args:
        script: Maps chunk text -> list of GenerationResults (or None for a
            default success) returned by successive calls for that chunk.
        transform: Builds the success text from the chunk text.
    """

    def __init__(self, script=None, transform=None):
        self.script = {text: list(outcomes) for text, outcomes in (script or {}).items()}
        self.transform = transform or (lambda text: f"ENHANCED {text}")
        self.calls = []

    def generate(self, credential, system_prompt, conversation, chunk_text, params=None, content_header=""):
        self.calls.append({
            "slot": credential.slot,
            "system_prompt": system_prompt,
            "history": conversation.turns if conversation is not None else None,
            "chunk_text": chunk_text,
            "params": params,
            "content_header": content_header,
        })

        queued = self.script.get(chunk_text)
        if queued:
            scripted = queued.pop(0)
            if scripted is not None:
                return scripted

        text = self.transform(chunk_text)
        history = conversation if conversation is not None else ConversationContext(window=0)
        return GenerationResult(
            GenerationOutcome.SUCCESS,
            text=text,
            conversation=history.with_exchange(content_header + chunk_text, text),
            status_code=200,
        )

    def calls_for(self, chunk_text):
        return [c for c in self.calls if c["chunk_text"] == chunk_text]


class FakeSleep:
    """Records requested waits instead of sleeping."""

    def __init__(self):
        self.waits = []

    def __call__(self, seconds):
        self.waits.append(seconds)


def make_settings(api_keys=None, history_window=4, **retry_overrides):
    retry = RetryPolicy(
        max_retries=retry_overrides.pop("max_retries", 3),
        backoff_base_seconds=retry_overrides.pop("backoff_base_seconds", 2.0),
        default_rate_limit_wait_seconds=retry_overrides.pop("default_rate_limit_wait_seconds", 60.0),
        max_rate_limit_retries=retry_overrides.pop("max_rate_limit_retries", 3),
        max_wait_seconds=retry_overrides.pop("max_wait_seconds", 300.0),
        job_timeout_seconds=retry_overrides.pop("job_timeout_seconds", None),
    )
    assert not retry_overrides, f"unknown retry settings: {retry_overrides}"
    return PipelineSettings(
        api_keys=list(TEST_KEYS if api_keys is None else api_keys),
        history_window=history_window,
        chunk_size=1000,
        retry=retry,
    )


def make_pipeline(client, settings=None, sleep=None, clock=None, cache=None):
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return EnhancementPipeline(
        settings or make_settings(),
        client=client,
        executor=InlineJobExecutor(),
        cache=cache,
        sleep=sleep or FakeSleep(),
        **kwargs,
    )


def make_paragraph(number, length=600):
    """A unique paragraph of roughly `length` characters."""
    text = f"Paragraph {number} begins here."
    while len(text) + 5 <= length:
        text += " word"
    return text


def make_chapter(paragraph_count, length=600):
    """Chapter whose paragraphs each become one chunk at chunk_size=1000."""
    paragraphs = [make_paragraph(i, length) for i in range(paragraph_count)]
    return "\n\n".join(paragraphs), paragraphs
