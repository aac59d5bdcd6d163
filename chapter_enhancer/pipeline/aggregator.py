"""
Aggregator - turns per-chunk results into the job's final text.

Enhancement: chunk outputs are joined in index order. Failed or unprocessed
chunks contribute their original text, so the document is never shorter than
the input.

Summaries: a single partial summary is returned as is. Several partials are
merged with one extra generation call; if that call fails the partials are
concatenated, each labelled 'Part i/N:'.
"""

from ..ai.conversation import ConversationContext
from ..ai.credential_pool import CredentialPool, RotationPolicy
from ..ai.gemini_client import GenerationParams
from ..ai.prompt_builder import build_combine_request, build_system_instruction, label_partial_summaries
from ..chunking_engine import Chunk
from ..logging_config import debug_log, info, warning
from ..settings import PipelineSettings
from .options import JobMode
from .result_types import AggregateResult, ChunkResult

CHUNK_SEPARATOR = "\n\n"


class Aggregator:
    """
    Args:
        client: Generation client used for the summary combine call.
        pool: Credential pool providing the credential for that call.
        settings: Prompts and sampling parameters.
    """

    def __init__(self, client, pool: CredentialPool, settings: PipelineSettings):
        self.client = client
        self.pool = pool
        self.settings = settings

    def combine(
        self,
        chunks: list[Chunk],
        results: dict[int, ChunkResult],
        mode: JobMode = JobMode.ENHANCE,
        title: str = "",
        use_model: bool = True,
    ) -> AggregateResult:
        """
        Reassemble a job's output.

        Args:
            chunks: All chunks of the job, in order.
            results: Results by chunk index (missing = never processed).
            mode: Job mode.
            title: Chapter title, used in the combine request.
            use_model: False skips the combine call; several partial summaries
                are then always concatenated with their part labels.

        Returns:
            AggregateResult with the final text and failed/unprocessed indices.
        """
        failed = sorted(i for i, r in results.items() if not r.succeeded)
        unprocessed = [c.index for c in chunks if c.index not in results]

        if mode.summarizing:
            text, combined = self._combine_summaries(chunks, results, mode, title, use_model)
        else:
            text = CHUNK_SEPARATOR.join(
                results[c.index].output_text if c.index in results else c.text
                for c in chunks
            )
            combined = False

        debug_log(f"[AGGREGATOR] {len(chunks)} chunks -> {len(text)} chars, "
                  f"failed={failed}, unprocessed={unprocessed}")
        return AggregateResult(
            final_text=text,
            failed_indices=failed,
            unprocessed_indices=unprocessed,
            combined_with_model=combined,
        )

    def _combine_summaries(self, chunks, results, mode, title, use_model) -> tuple[str, bool]:
        total = len(chunks)
        partials = [
            (c.index + 1, results[c.index].generated_text)
            for c in chunks
            if c.index in results and results[c.index].succeeded
        ]

        if not partials:
            return "", False
        if len(partials) == 1:
            return partials[0][1], False
        if not use_model:
            return label_partial_summaries(partials, total), False

        info(f"[AGGREGATOR] Combining {len(partials)} partial summaries")
        prompts = self.settings.prompts
        gen = self.settings.generation
        system_prompt = build_system_instruction(
            prompts.short_summary if mode is JobMode.SHORT_SUMMARY else prompts.summary,
            title=title,
            permanent_prompt=prompts.permanent,
        )
        max_tokens = (
            gen.short_summary_max_output_tokens if mode is JobMode.SHORT_SUMMARY
            else gen.combine_max_output_tokens
        )
        params = GenerationParams(gen.summary_temperature, max_tokens, gen.top_p, gen.top_k)

        credential = self.pool.current()
        result = self.client.generate(
            credential,
            system_prompt,
            ConversationContext(window=0),
            build_combine_request(partials, total, prompts.combine),
            params,
            "",
        )
        if self.pool.policy is RotationPolicy.ROUND_ROBIN:
            self.pool.advance()

        if result.succeeded:
            return result.text, True

        warning(f"[AGGREGATOR] Combine call failed ({result.outcome.value}: {result.error_message}); "
                "falling back to labelled concatenation")
        return label_partial_summaries(partials, total), False
