"""
Remote invocation contract for the Kii SDK.

Every remote operation is written once as a coroutine. This module turns
that coroutine into the two calling conventions the SDK exposes:

- Blocking: the coroutine is driven to completion while the calling
  thread waits, then the result is returned or the error raised.
- Callback: the coroutine is scheduled on a caller-managed worker loop and
  a completion handler is notified with (result, error).

Body transfers also report progress through a ProgressReporter.

Invariants:
    - The SDK never starts threads on its own; EventLoopWorker is started
      and stopped by the application
    - A completion handler is invoked exactly once per submitted operation
    - Progress values are clamped to [0, 1] and never decrease
    - Nothing is retried or cancelled by the SDK

Example:
    >>> with EventLoopWorker() as worker:
    ...     client = KiiClient(settings, worker=worker)
    ...     obj.save_in_background(lambda result, error: print(result, error))
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Coroutine
from concurrent.futures import Future
from typing import Any, TypeVar

from .errors import PreconditionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

OnComplete = Callable[[Any, "BaseException | None"], None]
OnProgress = Callable[[float], None]
Dispatch = Callable[[Callable[[], None]], None]


def _call_inline(fn: Callable[[], None]) -> None:
    fn()


class ProgressReporter:
    """Forwards transfer progress to a caller handler.

    Values outside [0, 1] are clamped and values lower than the last
    reported one are dropped, so the handler sees a non-decreasing series.
    """

    def __init__(
        self,
        handler: OnProgress | None = None,
        dispatch: Dispatch | None = None,
    ) -> None:
        self._handler = handler
        self._dispatch = dispatch or _call_inline
        self._value: float | None = None

    @property
    def value(self) -> float | None:
        """Last reported fraction, None before the first report."""
        return self._value

    def __call__(self, fraction: float) -> None:
        fraction = min(1.0, max(0.0, float(fraction)))
        if self._value is not None and fraction < self._value:
            return
        self._value = fraction
        if self._handler is not None:
            handler = self._handler
            self._dispatch(lambda: handler(fraction))


class EventLoopWorker:
    """Caller-managed worker context for non-blocking calls.

    Runs a private event loop in a daemon thread that the application
    starts and stops. Completion and progress handlers are delivered through
    dispatch, which defaults to calling them inline on the worker thread.
    A UI application passes a dispatch that posts to its main thread.

    Usage::

        with EventLoopWorker(dispatch=ui_queue.put) as worker:
            client = KiiClient(settings, worker=worker)
    """

    def __init__(
        self,
        dispatch: Dispatch | None = None,
        name: str = "kii-worker",
    ) -> None:
        self._dispatch = dispatch or _call_inline
        self._name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

    @property
    def dispatch(self) -> Dispatch:
        return self._dispatch

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the loop thread. Calling start twice is a no-op."""
        if self.running:
            return
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever, name=self._name, daemon=True
        )
        self._thread.start()
        logger.debug(f"Worker {self._name} started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop and join its thread."""
        if self._loop is None or self._thread is None:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=timeout)
        self._loop.close()
        self._loop = None
        self._thread = None
        logger.debug(f"Worker {self._name} stopped")

    def __enter__(self) -> EventLoopWorker:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()

    def in_worker_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def submit(self, coro: Coroutine[Any, Any, T]) -> Future[T]:
        """Schedule coro on the worker loop."""
        if self._loop is None or not self.running:
            coro.close()
            raise PreconditionError("Worker is not running", operation="submit")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)


class Invoker:
    """Runs operation coroutines in blocking or callback form.

    Attributes:
        worker: Optional worker used for callback calls and, when present,
            for blocking calls as well
    """

    def __init__(self, worker: EventLoopWorker | None = None) -> None:
        self.worker = worker

    def run(self, coro: Coroutine[Any, Any, T]) -> T:
        """Blocking form: wait for coro and return its result.

        Raises:
            RuntimeError: If called from inside the loop that would run coro
            Exception: Whatever the operation raised
        """
        if self.worker is not None and self.worker.running:
            if self.worker.in_worker_thread():
                coro.close()
                raise RuntimeError(
                    "Blocking call made from the worker thread; await the coroutine instead"
                )
            return self.worker.submit(coro).result()

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(coro)
        coro.close()
        raise RuntimeError(
            "Blocking call made inside a running event loop; await the coroutine instead"
        )

    def submit(
        self,
        coro: Coroutine[Any, Any, T],
        on_complete: OnComplete | None = None,
    ) -> Future[T]:
        """Callback form: schedule coro and notify on_complete(result, error).

        Raises:
            PreconditionError: If no running worker is configured
        """
        if self.worker is None:
            coro.close()
            raise PreconditionError(
                "Non-blocking calls need an EventLoopWorker", operation="submit"
            )

        future = self.worker.submit(coro)
        if on_complete is not None:
            dispatch = self.worker.dispatch

            def _done(done: Future[T]) -> None:
                error = done.exception()
                result = None if error is not None else done.result()
                dispatch(lambda: _notify(on_complete, result, error))

            future.add_done_callback(_done)
        return future

    def progress(self, handler: OnProgress | None) -> ProgressReporter:
        """Reporter that delivers progress the same way as completions."""
        dispatch = self.worker.dispatch if self.worker is not None else None
        return ProgressReporter(handler, dispatch)


def _notify(on_complete: OnComplete, result: Any, error: BaseException | None) -> None:
    try:
        on_complete(result, error)
    except Exception:
        logger.exception("Completion handler raised")
