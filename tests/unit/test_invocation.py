"""
Unit tests for the invocation contract.

Tests cover:
- Progress clamping and monotonicity
- Blocking calls with and without a worker
- Callback calls: exactly-once completion, error delivery, dispatch
- Misuse (no worker, blocking inside a loop)
"""

import asyncio
import threading

import pytest

from kii_sdk.errors import PreconditionError, TransportError
from kii_sdk.invocation import EventLoopWorker, Invoker, ProgressReporter


async def _answer(value=42):
    await asyncio.sleep(0)
    return value


async def _fail():
    await asyncio.sleep(0)
    raise TransportError("boom", status=500)


class TestProgressReporter:
    """Tests for ProgressReporter."""

    def test_clamps_values(self):
        seen = []
        reporter = ProgressReporter(seen.append)
        reporter(-0.5)
        reporter(1.5)
        assert seen == [0.0, 1.0]

    def test_drops_decreasing_values(self):
        seen = []
        reporter = ProgressReporter(seen.append)
        for value in (0.2, 0.5, 0.4, 0.5, 0.9):
            reporter(value)
        assert seen == [0.2, 0.5, 0.5, 0.9]
        assert reporter.value == 0.9

    def test_no_handler(self):
        reporter = ProgressReporter()
        reporter(0.3)
        assert reporter.value == 0.3

    def test_dispatch_used(self):
        queued = []
        seen = []
        reporter = ProgressReporter(seen.append, dispatch=queued.append)
        reporter(0.5)
        assert seen == []
        queued[0]()
        assert seen == [0.5]


class TestBlockingForm:
    """Tests for Invoker.run."""

    def test_runs_without_worker(self):
        assert Invoker().run(_answer()) == 42

    def test_raises_operation_error(self):
        with pytest.raises(TransportError):
            Invoker().run(_fail())

    def test_runs_on_worker(self, worker):
        async def thread_name():
            return threading.current_thread().name

        assert Invoker(worker).run(thread_name()) == "kii-test-worker"

    @pytest.mark.asyncio
    async def test_inside_running_loop_rejected(self):
        with pytest.raises(RuntimeError):
            Invoker().run(_answer())

    def test_from_worker_thread_rejected(self, worker):
        invoker = Invoker(worker)

        async def nested():
            invoker.run(_answer())

        with pytest.raises(RuntimeError):
            invoker.run(nested())


class TestCallbackForm:
    """Tests for Invoker.submit."""

    def test_requires_worker(self):
        with pytest.raises(PreconditionError):
            Invoker().submit(_answer())

    def test_stopped_worker_rejected(self):
        worker = EventLoopWorker()
        with pytest.raises(PreconditionError):
            Invoker(worker).submit(_answer())

    def test_completion_called_once(self, worker):
        calls = []
        done = threading.Event()

        def on_complete(result, error):
            calls.append((result, error))
            done.set()

        future = Invoker(worker).submit(_answer(7), on_complete)
        assert future.result(timeout=5) == 7
        assert done.wait(timeout=5)
        assert calls == [(7, None)]

    def test_error_delivered_to_handler(self, worker):
        received = []
        done = threading.Event()

        def on_complete(result, error):
            received.append((result, error))
            done.set()

        future = Invoker(worker).submit(_fail(), on_complete)
        assert done.wait(timeout=5)
        result, error = received[0]
        assert result is None
        assert isinstance(error, TransportError)
        assert isinstance(future.exception(timeout=5), TransportError)

    def test_handler_exception_is_contained(self, worker):
        done = threading.Event()

        def on_complete(result, error):
            done.set()
            raise ValueError("handler bug")

        future = Invoker(worker).submit(_answer(), on_complete)
        assert future.result(timeout=5) == 42
        assert done.wait(timeout=5)

    def test_custom_dispatch(self):
        posted = []
        with EventLoopWorker(dispatch=posted.append) as worker:
            calls = []
            future = Invoker(worker).submit(_answer(1), lambda r, e: calls.append(r))
            future.result(timeout=5)
            # Wait for the done-callback to post the notification
            for _ in range(100):
                if posted:
                    break
                threading.Event().wait(0.01)
        assert calls == []
        posted[0]()
        assert calls == [1]

    def test_worker_restart(self):
        worker = EventLoopWorker()
        worker.start()
        worker.start()
        assert worker.running
        worker.stop()
        assert not worker.running
        worker.stop()


class TestEntityCallbacks:
    """Tests for callback forms on entities."""

    def test_save_in_background(self, background_client):
        done = threading.Event()
        results = []

        def on_complete(result, error):
            results.append((result, error))
            done.set()

        obj = background_client.bucket("notes").object()
        obj.set("a", 1)
        future = obj.save_in_background(on_complete)
        future.result(timeout=5)
        assert done.wait(timeout=5)
        assert results == [(obj, None)]
        assert obj.uuid is not None

    def test_precondition_delivered_to_handler(self, background_client):
        done = threading.Event()
        errors = []

        def on_complete(result, error):
            errors.append(error)
            done.set()

        background_client.bucket("notes").object().refresh_in_background(on_complete)
        assert done.wait(timeout=5)
        assert isinstance(errors[0], PreconditionError)

    def test_background_without_worker(self, client):
        with pytest.raises(PreconditionError):
            client.bucket("notes").object().save_in_background()

    def test_blocking_form_with_worker(self, background_client):
        obj = background_client.bucket("notes").object()
        obj.set("a", 1)
        obj.save()
        assert obj.refresh().get("a") == 1

    def test_body_progress_in_background(self, background_client, tmp_path):
        path = tmp_path / "data.bin"
        path.write_bytes(b"x" * 40)
        progress = []
        f = background_client.file_bucket("blobs").file_with_local_path(path)
        f.save_file_in_background(on_progress=progress.append).result(timeout=5)
        assert progress[-1] == 1.0
        assert progress == sorted(progress)
