"""
Ownership Module - Per-document ownership tokens.
=================================================

Two pipelines for the same document id must not interleave their writes.
The OwnershipRegistry hands out one token per id; distinct ids never
contend. Tokens are reference counted and dropped once no thread holds or
waits on them, so the registry does not grow with the corpus.

A store call that times out may still be running on the I/O pool. The
holder registers such a call with `release_when_done`, and the token stays
held until the call finishes, so a later pipeline or delete for the same id
cannot be overtaken by a late write.
"""

import threading
from concurrent.futures import Future
from contextlib import contextmanager
from typing import Iterator, Optional

from docvector.shared.logging import get_logger

logger = get_logger(__name__)


class _Token:
    __slots__ = ("lock", "refs", "pending", "outstanding")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0
        self.pending: list[Future] = []
        self.outstanding = 0


class OwnershipRegistry:
    """
    Per-id mutual exclusion.

    Example:
        >>> registry = OwnershipRegistry()
        >>> with registry.hold(document_id) as acquired:
        ...     if acquired:
        ...         run_pipeline()
    """

    def __init__(self):
        self._tokens: dict[str, _Token] = {}
        self._lock = threading.Lock()

    def _checkout(self, key: str) -> _Token:
        with self._lock:
            token = self._tokens.get(key)
            if token is None:
                token = self._tokens[key] = _Token()
            token.refs += 1
            return token

    def _checkin(self, key: str, token: _Token) -> None:
        with self._lock:
            token.refs -= 1
            if token.refs == 0:
                del self._tokens[key]

    @contextmanager
    def hold(
        self,
        key: str,
        blocking: bool = True,
        timeout: Optional[float] = None,
    ) -> Iterator[bool]:
        """
        Hold the token for `key` for the duration of the block.

        Calls registered with `release_when_done` during the block extend the
        hold past it until they finish.

        Args:
            key: Document id
            blocking: Wait for the current holder; if False, yield False
                immediately when the token is taken
            timeout: Longest wait in seconds when blocking

        Yields:
            True if the token was acquired
        """
        token = self._checkout(key)
        acquired = False
        try:
            if not blocking:
                acquired = token.lock.acquire(blocking=False)
            elif timeout is None:
                acquired = token.lock.acquire()
            else:
                acquired = token.lock.acquire(timeout=timeout)
            yield acquired
        finally:
            pending: list[Future] = []
            if acquired:
                with self._lock:
                    pending = [f for f in token.pending if not f.done()]
                    token.pending = []
                    token.outstanding = len(pending)

            if pending:
                logger.debug(
                    f"Ownership of {key[:12]} kept until {len(pending)} abandoned call(s) finish"
                )
                for future in pending:
                    future.add_done_callback(lambda _: self._finish_pending(key, token))
            else:
                if acquired:
                    token.lock.release()
                self._checkin(key, token)

    def release_when_done(self, key: str, future: Future) -> None:
        """
        Keep the token for `key` held until `future` finishes.

        Must be called by the current holder, inside its `hold` block.

        Raises:
            RuntimeError: If the token is not held
        """
        with self._lock:
            token = self._tokens.get(key)
            if token is None or not token.lock.locked():
                raise RuntimeError(f"Ownership of {key} is not held")
            token.pending.append(future)

    def _finish_pending(self, key: str, token: _Token) -> None:
        with self._lock:
            token.outstanding -= 1
            if token.outstanding > 0:
                return
        token.lock.release()
        self._checkin(key, token)

    def is_held(self, key: str) -> bool:
        with self._lock:
            token = self._tokens.get(key)
            return token is not None and token.lock.locked()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
