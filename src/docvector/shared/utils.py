"""
Utilities Module - Common helper functions.
===========================================

Provides utility functions for:
- Hashing (SHA256 for deterministic ids)
- Content normalization
- ID generation (stable, reproducible document and vector ids)
- Bounded-time calls against slow collaborators
"""

import atexit
import hashlib
import re
import threading
import unicodedata
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from docvector.shared.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


# ─────────────────────────────────────────────────────────────────────────────
# Hashing Functions
# ─────────────────────────────────────────────────────────────────────────────


def compute_hash(text: str, algorithm: str = "sha256") -> str:
    """
    Compute hash of text content.

    Args:
        text: Text to hash
        algorithm: Hash algorithm (default: sha256)

    Returns:
        Hexadecimal hash string

    Example:
        >>> compute_hash("hello world")
        'b94d27b9934d3e08a52e52d7da7dabfac484efe37a5380ee9088f7ace2efcde9'
    """
    hasher = hashlib.new(algorithm)
    hasher.update(text.encode("utf-8"))
    return hasher.hexdigest()


# ─────────────────────────────────────────────────────────────────────────────
# Normalization and ID Generation
# ─────────────────────────────────────────────────────────────────────────────

_TRAILING_SPACE = re.compile(r"[ \t]+$", re.MULTILINE)


def normalize_content(text: str) -> str:
    """
    Normalize document content before hashing and chunking.

    Applies Unicode NFC, unifies line endings, strips trailing whitespace on
    every line and strips leading/trailing blank space overall. Two inputs
    that differ only in these respects produce the same document id.

    Args:
        text: Raw document content

    Returns:
        Normalized content
    """
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _TRAILING_SPACE.sub("", text)
    return text.strip()


def generate_document_id(repository: str, normalized_content: str) -> str:
    """
    Generate the content-hash id of a document.

    Ids are scoped to the repository so identical content submitted to two
    repositories yields two distinct documents.

    Args:
        repository: Repository name
        normalized_content: Output of normalize_content()

    Returns:
        64-character hex id
    """
    return compute_hash(f"{repository}\x00{normalized_content}")


def generate_vector_id(document_id: str, sequence: int) -> str:
    """
    Generate the vector id for a chunk.

    The id is UUID-formatted so every supported vector store accepts it.

    Args:
        document_id: Parent document id
        sequence: Chunk sequence index within the document

    Returns:
        Stable UUID string

    Example:
        >>> generate_vector_id("abc", 0) == generate_vector_id("abc", 0)
        True
    """
    digest = compute_hash(f"{document_id}:{sequence}")
    return str(uuid.UUID(hex=digest[:32]))


def ensure_directory(path: Path) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        The same path
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


# ─────────────────────────────────────────────────────────────────────────────
# Bounded Calls
# ─────────────────────────────────────────────────────────────────────────────

_io_executor: Optional[ThreadPoolExecutor] = None
_io_executor_lock = threading.Lock()
IO_MAX_WORKERS = 32


def _get_io_executor() -> ThreadPoolExecutor:
    global _io_executor
    with _io_executor_lock:
        if _io_executor is None:
            _io_executor = ThreadPoolExecutor(
                max_workers=IO_MAX_WORKERS,
                thread_name_prefix="docvector-io",
            )
        return _io_executor


def _shutdown_io_executor() -> None:
    global _io_executor
    with _io_executor_lock:
        if _io_executor is not None:
            _io_executor.shutdown(wait=False, cancel_futures=True)
            _io_executor = None


atexit.register(_shutdown_io_executor)


def call_with_timeout(
    func: Callable[..., T],
    timeout: Optional[float],
    *args: Any,
    on_abandoned: Optional[Callable[[Future], None]] = None,
    **kwargs: Any,
) -> T:
    """
    Run a blocking call with an upper bound on how long the caller waits.

    With `timeout=None` the call runs inline. Otherwise it runs on a shared
    I/O pool and the caller gives up after `timeout` seconds. A call that
    already started cannot be interrupted; it is left to finish in the
    background and its future is handed to `on_abandoned`, so the caller can
    keep holding whatever budget or ownership the call was made under.

    Args:
        func: Callable to invoke
        timeout: Seconds to wait, or None for no limit
        *args: Positional arguments for func
        on_abandoned: Receives the future of a call that timed out while running
        **kwargs: Keyword arguments for func

    Returns:
        Whatever func returns

    Raises:
        TimeoutError: If the call did not finish in time
    """
    if timeout is None:
        return func(*args, **kwargs)

    future = _get_io_executor().submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError:
        if not future.cancel() and on_abandoned is not None:
            on_abandoned(future)
        name = getattr(func, "__qualname__", repr(func))
        raise TimeoutError(f"{name} did not complete within {timeout:.2f}s") from None


def truncate_text(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """Truncate text to max_length, adding suffix if truncated."""
    if len(text) <= max_length:
        return text
    return text[: max_length - len(suffix)] + suffix
