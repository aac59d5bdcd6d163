"""
Chapter Enhancer - command-line entry point.

Enhances or summarizes a chapter text file through the pipeline, printing
progress as chunks complete. Pressing Ctrl+C pauses the job after the
current chunk and writes a session file that --resume picks up later.
"""

import argparse
import json
import sys
from pathlib import Path

from .ai.credential_pool import RotationPolicy
from .config import CACHE_DIR
from .errors import EnhancerError
from .logging_config import close_debug_log, error, info
from .pipeline import (
    ChunkCompleted,
    ChunkFailed,
    ChunkStarted,
    CredentialRotated,
    DirectoryChunkCache,
    EnhancementPipeline,
    JobMode,
    JobOptions,
    JobPaused,
    ProcessingSession,
)
from .settings import PipelineSettings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chapter-enhancer",
        description="Chapter Enhancer - enhance or summarize long chapters with Gemini",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Enhance a chapter
  chapter-enhancer chapter.txt --title "Chapter 12" --output chapter_enhanced.html

  # Short summary with a custom settings file
  chapter-enhancer chapter.txt --mode short_summary --config settings.yaml

  # Resume a job paused with Ctrl+C
  chapter-enhancer --resume chapter.session.json --output chapter_enhanced.html

  # Debug mode (verbose logging)
  DEBUG=true chapter-enhancer chapter.txt
        """
    )

    parser.add_argument('input', nargs='?', help='Chapter text file to process')
    parser.add_argument('--title', default=None, help='Chapter title (default: file name)')
    parser.add_argument(
        '--mode',
        default=JobMode.ENHANCE.value,
        choices=[m.value for m in JobMode],
        help='What to do with the chapter (default: enhance)'
    )
    parser.add_argument('--emoji', action='store_true', help='Add emojis after dialogue')
    parser.add_argument('--site-context', default='', help='Extra site-specific instructions')
    parser.add_argument('--chunk-size', type=int, default=None,
                        help='Maximum characters per chunk (default: from settings)')
    parser.add_argument('--no-chunking', action='store_true', help='Send the chapter as a single request')
    parser.add_argument(
        '--rotation',
        default=None,
        choices=[p.value for p in RotationPolicy],
        help='Credential rotation policy (default: from settings)'
    )
    parser.add_argument('--config', default=None, help='Settings YAML file')
    parser.add_argument('--output', default=None, help='Write the final text here (default: stdout)')
    parser.add_argument('--session-file', default=None,
                        help='Where to save the session on pause (default: <input>.session.json)')
    parser.add_argument('--resume', default=None, metavar='SESSION_FILE',
                        help='Resume a paused job from a session file')
    return parser


def _print_event(event) -> None:
    if isinstance(event, ChunkStarted):
        print(f"[{event.chunk_index + 1}/{event.total_chunks}] processing...")
    elif isinstance(event, ChunkCompleted):
        source = " (cached)" if event.from_cache else ""
        print(f"[{event.chunk_index + 1}/{event.total_chunks}] done{source} - {event.percentage}%")
    elif isinstance(event, ChunkFailed):
        if event.final:
            print(f"[{event.chunk_index + 1}/{event.total_chunks}] FAILED: {event.error_message}")
        elif event.is_rate_limit:
            print(f"[{event.chunk_index + 1}/{event.total_chunks}] rate limited, "
                  f"waiting {event.wait_ms / 1000:.0f}s")
        else:
            print(f"[{event.chunk_index + 1}/{event.total_chunks}] retrying in "
                  f"{event.wait_ms / 1000:.0f}s: {event.error_message}")
    elif isinstance(event, CredentialRotated):
        print(f"[{event.chunk_index + 1}] switched API key {event.from_slot} -> {event.to_slot}")


def _save_session(session: ProcessingSession, path: Path) -> None:
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(session.to_dict(), f, ensure_ascii=False, indent=2)
    print(f"Paused. Session saved to {path}; continue with --resume {path}")


def main(argv: list[str] | None = None) -> int:
    """Command-line interface for the pipeline. Returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.input and not args.resume:
        parser.error("an input file or --resume is required")

    try:
        settings = PipelineSettings.load(args.config)
    except EnhancerError as e:
        error(f"Cannot load settings: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 2

    pipeline = EnhancementPipeline(settings, cache=DirectoryChunkCache(CACHE_DIR))
    try:
        if args.resume:
            session_path = Path(args.resume)
            with open(session_path, encoding='utf-8') as f:
                session = ProcessingSession.from_dict(json.load(f))
            handle = pipeline.restore(session)
        else:
            input_path = Path(args.input)
            text = input_path.read_text(encoding='utf-8')
            session_path = Path(args.session_file or f"{input_path}.session.json")
            options = JobOptions(
                chunking_enabled=not args.no_chunking,
                chunk_size_chars=args.chunk_size,
                use_emoji=args.emoji,
                site_context=args.site_context,
                mode=JobMode(args.mode),
                rotation_policy=RotationPolicy(args.rotation) if args.rotation else None,
                cache_key=str(input_path.resolve()),
            )
            handle = pipeline.submit(args.title or input_path.stem, text, options)

        info(f"Processing '{handle.title}' in {handle.total_chunks} chunk(s)")

        try:
            for event in handle.events():
                _print_event(event)
                if isinstance(event, JobPaused):
                    _save_session(event.session, session_path)
                    return 3
        except KeyboardInterrupt:
            print("\nPausing after the current chunk...")
            session = pipeline.pause(handle)
            if session is not None:
                _save_session(session, session_path)
                return 3

        result = handle.wait()
        if result.session is not None:
            _save_session(result.session, session_path)
            return 3

        if args.output:
            Path(args.output).write_text(result.final_text, encoding='utf-8')
            print(f"Saved result to {args.output}")
        else:
            print(result.final_text)

        print(f"\nProcessed {result.processed_count}/{result.total_chunks} chunks, "
              f"{result.failed_count} failed")
        return 0 if result.failed_count == 0 else 1

    except EnhancerError as e:
        error(f"Job could not run: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        pipeline.shutdown(wait=False)
        close_debug_log()


if __name__ == "__main__":
    sys.exit(main())
