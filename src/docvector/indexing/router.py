"""
Router Module - Model routing and admission control.
====================================================

The ModelRouter maps a model identifier to its backend and is the only
shared mutable resource in the service. For every backend it owns an
AdmissionController that enforces:

- a bound on in-flight requests
- a minimum spacing between request starts (requests per second)
- a bounded wait queue; when it is full, BackpressureError is raised
  immediately instead of queuing more work

Budget accounting happens under a condition variable; the embedding calls
themselves and any rate-limit sleeps run outside it, so admission never
serializes the actual work.

Transient failures are retried with exponential backoff (tenacity). A
backpressure signal is returned to the caller without retrying.
"""

import logging
import threading
import time
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterator, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from docvector.indexing.embeddings_base import ModelBackend, build_backend
from docvector.shared.errors import (
    BackpressureError,
    ConfigurationError,
    PermanentFailure,
    TransientFailure,
)
from docvector.shared.logging import get_logger
from docvector.shared.utils import call_with_timeout

if TYPE_CHECKING:
    from docvector.shared.config import ModelBindingConfig, Settings

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Admission Control
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class AdmissionLimits:
    """Concurrency and rate budget for one backend. None means unbounded."""

    max_in_flight: Optional[int] = None
    requests_per_second: Optional[float] = None
    max_queue: int = 64
    timeout_seconds: Optional[float] = 30.0

    @classmethod
    def from_binding(cls, binding: "ModelBindingConfig") -> "AdmissionLimits":
        return cls(
            max_in_flight=binding.effective_max_in_flight(),
            requests_per_second=binding.effective_requests_per_second(),
            max_queue=binding.max_queue,
            timeout_seconds=binding.timeout_seconds,
        )


@dataclass
class AdmissionStats:
    """Point-in-time view of a controller's budget."""

    in_flight: int
    waiting: int
    max_in_flight: Optional[int]
    max_queue: int


class AdmissionSlot:
    """One admitted request; `pending` is set when its call outlives the caller."""

    def __init__(self):
        self.pending: Optional[Future] = None

    def release_when_done(self, future: Future) -> None:
        self.pending = future


class AdmissionController:
    """
    Bounded in-flight / rate budget for a single backend.

    Example:
        >>> controller = AdmissionController("m", AdmissionLimits(max_in_flight=2))
        >>> with controller.admit(timeout=5):
        ...     pass  # call the backend here
    """

    def __init__(
        self,
        model_id: str,
        limits: AdmissionLimits,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.model_id = model_id
        self.limits = limits
        self._clock = clock
        self._sleep = sleep
        self._cond = threading.Condition()
        self._in_flight = 0
        self._waiting = 0
        self._next_start = 0.0

    def stats(self) -> AdmissionStats:
        with self._cond:
            return AdmissionStats(
                in_flight=self._in_flight,
                waiting=self._waiting,
                max_in_flight=self.limits.max_in_flight,
                max_queue=self.limits.max_queue,
            )

    @contextmanager
    def admit(self, timeout: Optional[float] = None) -> Iterator["AdmissionSlot"]:
        """
        Hold one in-flight slot for the duration of the block.

        A call that outlives the block (a timed-out request still running on
        the I/O pool) keeps the slot: hand its future to
        `slot.release_when_done` and the slot is freed when it finishes.

        Args:
            timeout: Seconds to wait for a slot (None waits indefinitely)

        Raises:
            BackpressureError: The wait queue is full
            TransientFailure: No slot became free within `timeout`
        """
        deadline = None if timeout is None else self._clock() + timeout
        delay = self._acquire(timeout)
        slot = AdmissionSlot()
        try:
            if delay > 0:
                if deadline is not None and self._clock() + delay > deadline:
                    raise TransientFailure(
                        f"Rate limit for {self.model_id} would delay the call past its timeout"
                    )
                self._sleep(delay)
            yield slot
        finally:
            if slot.pending is not None and not slot.pending.done():
                logger.debug(f"Abandoned call to {self.model_id} keeps its slot until it finishes")
                slot.pending.add_done_callback(lambda _: self._release())
            else:
                self._release()

    def _acquire(self, timeout: Optional[float]) -> float:
        """Take a slot and reserve a start time; returns seconds to wait."""
        limit = self.limits.max_in_flight
        with self._cond:
            if limit is not None and (self._in_flight >= limit or self._waiting > 0):
                if self._waiting >= self.limits.max_queue:
                    raise BackpressureError(self.model_id, self.limits.max_queue)

                self._waiting += 1
                try:
                    admitted = self._cond.wait_for(
                        lambda: self._in_flight < limit, timeout=timeout
                    )
                finally:
                    self._waiting -= 1

                if not admitted:
                    raise TransientFailure(
                        f"Timed out after {timeout}s waiting for admission to {self.model_id}"
                    )

            self._in_flight += 1
            return self._reserve_start_slot()

    def _reserve_start_slot(self) -> float:
        rate = self.limits.requests_per_second
        if not rate:
            return 0.0
        now = self._clock()
        start = max(now, self._next_start)
        self._next_start = start + 1.0 / rate
        return start - now

    def _release(self) -> None:
        with self._cond:
            self._in_flight -= 1
            self._cond.notify()


# ─────────────────────────────────────────────────────────────────────────────
# Model Router
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class _Route:
    backend: ModelBackend
    controller: AdmissionController


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, TransientFailure) and not isinstance(error, BackpressureError)


class ModelRouter:
    """
    Maps model identifiers to backends and enforces their limits.

    Backends declared in settings are built lazily on first resolve, so a
    missing credential surfaces as ConfigurationError when a repository is
    bound to that model rather than at import time.

    Example:
        >>> router = ModelRouter.from_settings(get_settings())
        >>> backend = router.resolve("all-minilm-l12-v2")
        >>> vectors = router.submit("all-minilm-l12-v2", ["hello", "world"])
    """

    def __init__(
        self,
        max_retries: int = 3,
        retry_multiplier: float = 0.5,
        retry_min_wait: float = 0.5,
        retry_max_wait: float = 8.0,
    ):
        self.max_retries = max_retries
        self.retry_multiplier = retry_multiplier
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait

        self._routes: dict[str, _Route] = {}
        self._pending: dict[str, tuple[Callable[[], ModelBackend], AdmissionLimits]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        backend_factory: Callable[["ModelBindingConfig", "Settings"], ModelBackend] = build_backend,
    ) -> "ModelRouter":
        """
        Create a router for every model in settings.available_models.

        Args:
            settings: Service settings
            backend_factory: Builds a backend from a binding

        Returns:
            ModelRouter instance
        """
        router = cls(
            max_retries=settings.router.max_retries,
            retry_multiplier=settings.router.retry_multiplier,
            retry_min_wait=settings.router.retry_min_wait,
            retry_max_wait=settings.router.retry_max_wait,
        )
        for binding in settings.available_models:
            router.register_lazy(
                binding.model,
                lambda b=binding: backend_factory(b, settings),
                AdmissionLimits.from_binding(binding),
            )
        return router

    def register(
        self,
        model_id: str,
        backend: ModelBackend,
        limits: Optional[AdmissionLimits] = None,
    ) -> None:
        """Register a constructed backend under a model identifier."""
        limits = limits or AdmissionLimits()
        with self._lock:
            self._pending.pop(model_id, None)
            self._routes[model_id] = _Route(
                backend=backend,
                controller=AdmissionController(model_id, limits),
            )
        logger.debug(f"Registered backend for {model_id}: {limits}")

    def register_lazy(
        self,
        model_id: str,
        factory: Callable[[], ModelBackend],
        limits: AdmissionLimits,
    ) -> None:
        """Register a backend that is built on first resolve."""
        with self._lock:
            self._pending[model_id] = (factory, limits)

    def model_ids(self) -> list[str]:
        with self._lock:
            return sorted(set(self._routes) | set(self._pending))

    def resolve(self, model_id: str) -> ModelBackend:
        """
        Get the backend bound to a model identifier.

        Raises:
            ConfigurationError: If the model is unknown or cannot be built
        """
        return self._route(model_id).backend

    def _route(self, model_id: str) -> _Route:
        with self._lock:
            route = self._routes.get(model_id)
            if route is not None:
                return route

            pending = self._pending.get(model_id)
            if pending is None:
                known = ", ".join(sorted(set(self._routes) | set(self._pending))) or "none"
                raise ConfigurationError(
                    f"Unknown model: {model_id}. Available models: {known}"
                )

            factory, limits = pending
            backend = factory()
            backend.warm_up()
            route = _Route(backend=backend, controller=AdmissionController(model_id, limits))
            self._routes[model_id] = route
            del self._pending[model_id]
            return route

    def stats(self, model_id: str) -> AdmissionStats:
        return self._route(model_id).controller.stats()

    def submit(
        self,
        model_id: str,
        batch: list[str],
        timeout: Optional[float] = None,
        query: bool = False,
    ) -> list[list[float]]:
        """
        Embed a batch through the model's backend under admission control.

        The batch is split into sub-batches of at most the backend's
        max_batch_size; each sub-batch is admitted, timed and retried
        independently. Output order matches input order.

        Args:
            model_id: Model identifier
            batch: Texts to embed
            timeout: Per-call timeout in seconds (binding default if None)
            query: Embed search queries rather than documents

        Returns:
            One vector per input text

        Raises:
            ConfigurationError: Unknown model
            BackpressureError: Backend wait queue is full
            TransientFailure: Retries exhausted
            PermanentFailure: Input rejected
        """
        if not batch:
            raise PermanentFailure("Cannot embed an empty batch")

        route = self._route(model_id)
        if timeout is None:
            timeout = route.controller.limits.timeout_seconds

        size = route.backend.max_batch_size
        vectors: list[list[float]] = []
        for start in range(0, len(batch), size):
            vectors.extend(
                self._submit_with_retry(route, batch[start : start + size], timeout, query)
            )
        return vectors

    def _submit_with_retry(
        self,
        route: _Route,
        texts: list[str],
        timeout: Optional[float],
        query: bool,
    ) -> list[list[float]]:
        retryer = Retrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.retry_multiplier,
                min=self.retry_min_wait,
                max=self.retry_max_wait,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retryer(self._attempt, route, texts, timeout, query)

    def _attempt(
        self,
        route: _Route,
        texts: list[str],
        timeout: Optional[float],
        query: bool,
    ) -> list[list[float]]:
        with route.controller.admit(timeout) as slot:
            try:
                return call_with_timeout(
                    route.backend.embed,
                    timeout,
                    texts,
                    query=query,
                    on_abandoned=slot.release_when_done,
                )
            except TimeoutError as e:
                raise TransientFailure(
                    f"Embedding call to {route.controller.model_id} timed out"
                ) from e
