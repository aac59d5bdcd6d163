"""
Logging helpers shared by every Chapter Enhancer module.

Two sinks are written:
- the debug flow file (LOGS_DIR/debug_flow.txt), a plain timestamped trace of
  every message, recreated per process and opened on first use
- the standard 'ChapterEnhancer' logger, which goes to LOGS_DIR/processing.log
  and, when DEBUG=true, to stdout as well

Import the functions rather than the logger:
    from chapter_enhancer.logging_config import debug_log, info, warning, error, Timer

Prefix messages with the emitting component ("[SCHEDULER]", "[POOL]", ...);
the flow file is read top to bottom when a job misbehaves.
"""

import logging
import sys
import threading
import time
from datetime import datetime

from .config import (
    DEBUG_FLOW_FILE,
    DEBUG_MODE,
    LOG_DATE_FORMAT,
    LOG_FILE,
    LOG_FORMAT,
    ensure_app_dirs,
)


def _clock_stamp() -> str:
    return datetime.now().strftime("%H:%M:%S.%f")[:-3]


def _format_duration(seconds: float) -> str:
    if seconds < 1:
        return f"{seconds * 1000:.0f} ms"
    if seconds < 60:
        return f"{seconds:.2f}s"
    return f"{seconds / 60:.1f}m"


# =============================================================================
# Debug flow file
# =============================================================================

class _FlowFile:
    """
    Append-only trace file shared by all job threads.

    Nothing is created until the first message arrives. If the log directory
    cannot be written the trace is switched off for the rest of the process.
    """

    def __init__(self, path):
        self.path = path
        self._handle = None
        self._unavailable = False
        self._lock = threading.Lock()

    def _start(self) -> bool:
        if not ensure_app_dirs():
            self._unavailable = True
            return False
        try:
            self._handle = open(self.path, 'w', encoding='utf-8')
        except OSError:
            self._unavailable = True
            return False
        self._handle.write(f"Chapter Enhancer trace, started {datetime.now().isoformat()}\n")
        self._handle.write(f"debug console output: {'on' if DEBUG_MODE else 'off'}\n\n")
        return True

    def append(self, line: str):
        with self._lock:
            if self._unavailable:
                return
            if self._handle is None and not self._start():
                return
            self._handle.write(f"[{_clock_stamp()}] {line}\n")
            self._handle.flush()

    def finish(self):
        with self._lock:
            if self._handle is None:
                return
            self._handle.write(f"\nfinished {datetime.now().isoformat()}\n")
            self._handle.close()
            self._handle = None


_flow = _FlowFile(DEBUG_FLOW_FILE)


# =============================================================================
# 'ChapterEnhancer' logger
# =============================================================================

def _build_logger() -> logging.Logger:
    """Attach the file (and debug console) handlers once."""
    logger = logging.getLogger('ChapterEnhancer')
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG if DEBUG_MODE else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if ensure_app_dirs():
        try:
            handler = logging.FileHandler(LOG_FILE, encoding='utf-8', delay=True)
        except OSError:
            handler = None
        if handler is not None:
            handler.setFormatter(formatter)
            logger.addHandler(handler)

    if DEBUG_MODE:
        stream = logging.StreamHandler(sys.stdout)
        stream.setFormatter(formatter)
        logger.addHandler(stream)

    return logger


_logger = _build_logger()


def _echo(line: str):
    # Windows consoles may not encode every character a model returns
    try:
        print(line)
        sys.stdout.flush()
    except UnicodeEncodeError:
        sys.stdout.buffer.write((line + "\n").encode('utf-8', errors='replace'))
        sys.stdout.buffer.flush()


# =============================================================================
# Public functions
# =============================================================================

def debug_log(message: str):
    """
    Trace a message to the flow file, and to stdout when DEBUG=true.

    Example:
        debug_log("[POOL] Rotated to credential slot 1")
    """
    _flow.append(message)
    if DEBUG_MODE:
        _echo(f"[{_clock_stamp()}] {message}")


def info(message: str):
    _flow.append(f"INFO    {message}")
    _logger.info(message)


def warning(message: str):
    _flow.append(f"WARNING {message}")
    _logger.warning(message)


def error(message: str, exc_info: bool = False):
    """
    Log an error. The traceback is attached only when exc_info is set
    and DEBUG=true, so normal runs keep processing.log readable.
    """
    _flow.append(f"ERROR   {message}")
    _logger.error(message, exc_info=exc_info and DEBUG_MODE)


def debug_timing(operation: str, elapsed_seconds: float):
    """Trace how long an already measured operation took."""
    debug_log(f"{operation} took {_format_duration(elapsed_seconds)}")


class Timer:
    """
    Time a block and trace its start and duration.

        with Timer("[SCHEDULER] Chunk 3/7"):
            ...

    After the block, `elapsed` holds the duration in seconds. Exceptions
    raised inside the block propagate.
    """

    def __init__(self, operation_name: str, auto_log: bool = True):
        self.operation_name = operation_name
        self.auto_log = auto_log
        self.elapsed: float | None = None
        self._started: float | None = None

    def __enter__(self):
        if self.auto_log:
            debug_log(f"{self.operation_name} started")
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed = time.perf_counter() - self._started
        if self.auto_log:
            debug_timing(self.operation_name, self.elapsed)
        return False


def close_debug_log():
    """Flush and close the flow file; call once when the process exits."""
    _flow.finish()


__all__ = [
    'debug_log',
    'debug_timing',
    'info',
    'warning',
    'error',
    'close_debug_log',
    'Timer',
    'DEBUG_MODE',
]
