"""
Chapter Enhancer Configuration Module
Centralized defaults for the enhancement pipeline.

Values here are the fallbacks used when no settings file is supplied.
Per-deployment overrides live in a YAML settings file loaded by
chapter_enhancer.settings.PipelineSettings.
"""

import os
from pathlib import Path

# Debug Mode Configuration
DEBUG_MODE = os.environ.get('DEBUG', 'false').lower() == 'true'

# Application Paths
APP_NAME = "ChapterEnhancer"
APPDATA_DIR = Path(
    os.environ.get(
        'CHAPTER_ENHANCER_HOME',
        Path(os.environ.get('APPDATA', os.path.expanduser('~/.config'))) / APP_NAME,
    )
)
CACHE_DIR = APPDATA_DIR / "cache"
LOGS_DIR = APPDATA_DIR / "logs"
CONFIG_DIR = APPDATA_DIR / "config"

# Settings file looked up when none is passed explicitly
DEFAULT_SETTINGS_FILE = CONFIG_DIR / "settings.yaml"


def ensure_app_dirs() -> bool:
    """
    Create the application directories if they are missing.

    Returns:
        True if every directory exists afterwards, False if any could not be created
    """
    try:
        for directory in [APPDATA_DIR, CACHE_DIR, LOGS_DIR, CONFIG_DIR]:
            directory.mkdir(parents=True, exist_ok=True)
        return True
    except OSError:
        return False


# Generation API Configuration
GEMINI_MODEL_ID = "gemini-2.5-flash"
GEMINI_API_ENDPOINT = (
    f"https://generativelanguage.googleapis.com/v1beta/models/{GEMINI_MODEL_ID}:generateContent"
)
GEMINI_TIMEOUT_SECONDS = 120  # Per request; long chapters can take a while

# Environment variables consulted when the settings file has no credentials
API_KEY_ENV_VAR = "GEMINI_API_KEY"
BACKUP_API_KEYS_ENV_VAR = "GEMINI_BACKUP_API_KEYS"  # comma separated

# Generation parameters
ENHANCE_TEMPERATURE = 0.7
ENHANCE_MAX_OUTPUT_TOKENS = 8192
SUMMARY_TEMPERATURE = 0.5  # Lower temperature for more focused summaries
SUMMARY_MAX_OUTPUT_TOKENS = 2048
SHORT_SUMMARY_MAX_OUTPUT_TOKENS = 512
COMBINE_MAX_OUTPUT_TOKENS = 512
TOP_P = 0.95
TOP_K = 40

# Chunking
DEFAULT_CHUNK_SIZE = 12000  # Characters per segment
MIN_CHUNK_LENGTH = 200      # Chunks shorter than this get merged into a neighbour

# Conversation context (number of turns kept between chunks)
HISTORY_WINDOW = 4

# Retry policy
MAX_RETRIES = 3                        # Transient failures per chunk
BACKOFF_BASE_SECONDS = 3.0             # Wait = base * 2 ** attempt
DEFAULT_RATE_LIMIT_WAIT_SECONDS = 60.0  # Used when the server gives no hint
MAX_RATE_LIMIT_RETRIES = 3             # Rate-limit waits before rotating
MAX_WAIT_SECONDS = 300.0               # No single wait may exceed this
JOB_TIMEOUT_SECONDS = None             # None disables the job-level timeout

# Enhanced output must keep this share of the original words
MIN_RETENTION_RATIO = 0.7
MIN_WORDS_FOR_RETENTION_CHECK = 200

# Parallel jobs
MAX_CONCURRENT_JOBS = min(os.cpu_count() or 4, 4)

# Logging Configuration
LOG_FILE = LOGS_DIR / "processing.log"
DEBUG_FLOW_FILE = LOGS_DIR / "debug_flow.txt"
LOG_FORMAT = "[%(levelname)s %(asctime)s] %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

# ============================================================================
# Default Prompts
# ============================================================================

DEFAULT_ENHANCE_PROMPT = """Please enhance this novel chapter translation with the following improvements:

1. Fix grammatical errors, punctuation mistakes, and spelling issues
2. Improve the narrative flow and overall readability
3. Ensure consistent character voice, tone, and gender pronouns throughout
4. Make dialogue sound more natural and conversational
5. Refine descriptions to be more vivid and engaging
6. Maintain the original plot points, character development, and story elements exactly
7. Ensure proper transitioning between scenes and ideas
8. Format game-like status windows, character stats or system messages inside a div with class="game-stats-box", preserving their exact text and line breaks
9. Remove any advertising snippets or irrelevant promotional content

Keep the core meaning of the original text intact while making it read like a professionally translated novel. Preserve character names, locations, and plot points precisely."""

DEFAULT_SUMMARY_PROMPT = """Please generate a comprehensive summary of the provided novel chapter, covering:

1. **Major Plot Points:** the main sequence of events and key developments.
2. **Characters:** significant interactions, introductions, decisions and motivations.
3. **Key Reveals:** crucial information, abilities or twists introduced in this chapter.
4. **Setting & Atmosphere:** notable settings and shifts in mood or tone.
5. **Foreshadowing:** hints of future events or character arcs.

Rely only on information explicitly present in the chapter text and keep the summary clear and readable."""

DEFAULT_SHORT_SUMMARY_PROMPT = """Please write a brief summary of the provided novel chapter in one or two short paragraphs. Mention only the most important events and the characters involved, relying only on information present in the chapter text."""

DEFAULT_PERMANENT_PROMPT = (
    "Ensure the output is formatted using only HTML paragraph tags (<p>) for each paragraph. "
    "Handle dialogue formatting with appropriate punctuation and paragraph breaks. "
    "Do not use markdown formatting in your response."
)

EMOJI_INSTRUCTION = (
    "Additional instruction: Add appropriate emojis next to dialogues to enhance emotional "
    "expressions. Place the emoji immediately after the quotation marks that end the dialogue. "
    "For example: \"I'm so happy!\" 😊 she said. Choose emojis that fit the emotion being "
    "expressed in the dialogue."
)

COMBINE_SUMMARIES_PROMPT = (
    "Please combine the following partial summaries into a coherent, comprehensive "
    "summary of the entire chapter:"
)
