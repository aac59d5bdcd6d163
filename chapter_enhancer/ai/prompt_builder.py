"""
Prompt assembly for enhancement, summary and combine requests.

The system instruction is built in a fixed order:

    base prompt (+ part note for multi-chunk jobs)
    ## Site-Specific Context      (optional)
    ## Always Follow These Instructions   (optional permanent prompt)
    emoji instruction             (optional)
    ### Title

The module also swaps embedded media and stat boxes for placeholders before a
chunk is sent, so the model cannot rewrite or drop them, and puts them back
afterwards.
"""

import re
from dataclasses import dataclass, field

ENHANCE_CONTENT_HEADER = "### Content to Enhance:\n"
SUMMARY_CONTENT_HEADER = "### Content to Summarize:\n"
PARTIAL_SUMMARIES_HEADER = "### Partial Summaries:\n"

PLACEHOLDER_TEMPLATE = "[PRESERVED_ELEMENT_{}]"

_PRESERVED_PATTERNS = [
    re.compile(r'<div\s+class=["\']game-stats-box["\'][^>]*>.*?</div>', re.IGNORECASE | re.DOTALL),
    re.compile(r'<(iframe|video|audio)\b[^>]*>.*?</\1>', re.IGNORECASE | re.DOTALL),
    re.compile(r'<(?:img|source)\b[^>]*>', re.IGNORECASE),
]
_PLACEHOLDER_RE = re.compile(r'\[PRESERVED_ELEMENT_(\d+)\]')


def part_note(part_number: int, total_parts: int, summarizing: bool = False) -> str:
    """Note telling the model it only sees one part of the chapter."""
    action = "summarize" if summarizing else "enhance"
    return (
        f"\n\nNote: This is part {part_number} of {total_parts} parts. "
        f"Please {action} this part while maintaining consistency with other parts."
    )


def build_system_instruction(
    base_prompt: str,
    title: str = "",
    site_context: str = "",
    permanent_prompt: str = "",
    emoji_instruction: str = "",
    part_number: int | None = None,
    total_parts: int | None = None,
    summarizing: bool = False,
) -> str:
    """
    Compose the system instruction for one request.

    Args:
        base_prompt: Enhancement or summary prompt.
        title: Chapter title, appended under a '### Title:' header.
        site_context: Optional site-specific guidance.
        permanent_prompt: Optional instructions applied to every request.
        emoji_instruction: Optional emoji instruction (empty when disabled).
        part_number: 1-based part number; with total_parts > 1 adds a part note.
        total_parts: Number of parts in the job.
        summarizing: Word the part note for summaries.

    Returns:
        The full system instruction text.
    """
    prompt = base_prompt
    if part_number is not None and total_parts and total_parts > 1:
        prompt += part_note(part_number, total_parts, summarizing)

    if site_context:
        prompt += "\n\n## Site-Specific Context:\n" + site_context
    if permanent_prompt:
        prompt += "\n\n## Always Follow These Instructions:\n" + permanent_prompt
    if emoji_instruction:
        prompt += "\n\n" + emoji_instruction
    if title:
        prompt += f"\n\n### Title:\n{title}"
    return prompt


def label_partial_summaries(partials: list[tuple[int, str]], total_parts: int) -> str:
    """
    Join (part_number, summary) pairs as 'Part i/N:' blocks.

    Part numbers are 1-based positions in the original chunk list, so a
    missing (failed) part leaves a visible gap in the numbering.
    """
    return "\n\n".join(f"Part {number}/{total_parts}:\n{summary}" for number, summary in partials)


def build_combine_request(partials: list[tuple[int, str]], total_parts: int, combine_prompt: str) -> str:
    """User text asking the model to merge tagged partial summaries."""
    return f"{combine_prompt}\n\n{PARTIAL_SUMMARIES_HEADER}{label_partial_summaries(partials, total_parts)}"


@dataclass
class PreservedText:
    """Text with protected elements replaced by numbered placeholders."""
    text: str
    elements: list[str] = field(default_factory=list)

    def restore(self, generated: str) -> str:
        """Put the original elements back into generated text."""
        if not self.elements:
            return generated

        def _replace(match: re.Match) -> str:
            index = int(match.group(1))
            if 0 <= index < len(self.elements):
                return self.elements[index]
            return match.group(0)

        return _PLACEHOLDER_RE.sub(_replace, generated)


def preserve_elements(text: str) -> PreservedText:
    """
    Replace media tags and game-stat boxes with [PRESERVED_ELEMENT_n].

    Example:
        >>> p = preserve_elements('<p>Hi</p><img src="a.png">')
        >>> p.text
        '<p>Hi</p>[PRESERVED_ELEMENT_0]'
    """
    elements: list[str] = []

    def _stash(match: re.Match) -> str:
        elements.append(match.group(0))
        return PLACEHOLDER_TEMPLATE.format(len(elements) - 1)

    for pattern in _PRESERVED_PATTERNS:
        text = pattern.sub(_stash, text)
    return PreservedText(text=text, elements=elements)
