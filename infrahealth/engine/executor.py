"""Check executor: runs a batch of plugin invocations with bounded concurrency.

Every invocation is its own unit of work raced against a deadline:

- every plugin runs in a daemon thread, and its normalized output is handed
  back to the event loop with ``call_soon_threadsafe``;
- coroutine plugins run on a private event loop inside that thread, and
  their task is cancelled when the invocation is abandoned.

When the deadline passes the executor sets the invocation's stop flag,
detaches from the worker and synthesizes a ``TimedOut`` result. It never
joins an abandoned thread, so a plugin that ignores cancellation cannot
stall the batch. Exactly one RawResult comes back per definition.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from infrahealth.checks.models import (
    CheckDefinition,
    ExecutionContext,
    ExecutionStatus,
    InvocationState,
    RawResult,
    freeze,
    utc_now,
)
from infrahealth.errors import PluginError, PluginTimeout
from infrahealth.plugins.contract import Plugin, PluginCall, normalize_output
from infrahealth.plugins.loader import resolve_plugin

logger = logging.getLogger(__name__)

# How often the batch-level stop event is polled (seconds)
CANCEL_POLL_INTERVAL = 0.05


class CheckExecutor:
    """Bounded, fault-isolated plugin runner.

    Usage:
        executor = CheckExecutor()
        results = executor.run_batch(definitions, context, max_parallel=10, timeout=300)
    """

    def __init__(
        self,
        resolver: Callable[[str], Plugin] = resolve_plugin,
        log: logging.Logger | None = None,
        cancel_poll_interval: float = CANCEL_POLL_INTERVAL,
    ) -> None:
        self.resolver = resolver
        self.log = log or logger
        self.cancel_poll_interval = cancel_poll_interval

    # -- public API ------------------------------------------------------------

    def run_batch(
        self,
        definitions: Sequence[CheckDefinition],
        context: ExecutionContext,
        max_parallel: int,
        timeout: float,
        *,
        cancel_event: threading.Event | None = None,
        on_result: Callable[[RawResult], Any] | None = None,
    ) -> list[RawResult]:
        """Blocking wrapper around :meth:`run_batch_async`.

        Must not be called from a thread that already runs an event loop;
        async callers await ``run_batch_async`` directly.
        """
        _validate(max_parallel, timeout)
        if not definitions:
            return []
        return asyncio.run(
            self.run_batch_async(
                definitions, context, max_parallel, timeout,
                cancel_event=cancel_event, on_result=on_result,
            )
        )

    async def run_batch_async(
        self,
        definitions: Sequence[CheckDefinition],
        context: ExecutionContext,
        max_parallel: int,
        timeout: float,
        *,
        cancel_event: threading.Event | None = None,
        on_result: Callable[[RawResult], Any] | None = None,
    ) -> list[RawResult]:
        """Run every definition once; results arrive in completion order."""
        _validate(max_parallel, timeout)
        if not definitions:
            return []

        t0 = time.perf_counter()
        semaphore = asyncio.Semaphore(max_parallel)
        stop_requested = cancel_event or threading.Event()
        cancelled = asyncio.Event()
        watcher = asyncio.create_task(self._watch_cancel(stop_requested, cancelled))
        collected: list[RawResult] = []

        async def run_one(definition: CheckDefinition) -> None:
            async with semaphore:
                if cancelled.is_set() or stop_requested.is_set():
                    result = _synthesize(definition, ExecutionStatus.ERROR, "Cancelled before start")
                else:
                    result = await self._invoke(definition, context, timeout, cancelled)
            collected.append(result)
            self._notify(on_result, result)

        self.log.info(
            "Running %d checks (max_parallel=%d, timeout=%.1fs)",
            len(definitions), max_parallel, timeout,
        )
        try:
            outcomes = await asyncio.gather(
                *(run_one(d) for d in definitions), return_exceptions=True,
            )
        finally:
            watcher.cancel()

        # Bookkeeping failures still yield one result per definition.
        for definition, outcome in zip(definitions, outcomes):
            if isinstance(outcome, BaseException):
                self.log.error("Executor failure for %s: %r", definition.check_id, outcome)
                collected.append(_synthesize(
                    definition, ExecutionStatus.ERROR, f"Executor failure: {type(outcome).__name__}: {outcome}",
                ))

        counts = {s: 0 for s in ExecutionStatus}
        for r in collected:
            counts[r.status] += 1
        self.log.info(
            "Batch finished in %.2fs: %d completed, %d errors, %d timed out",
            time.perf_counter() - t0,
            counts[ExecutionStatus.COMPLETED],
            counts[ExecutionStatus.ERROR],
            counts[ExecutionStatus.TIMED_OUT],
        )
        return collected

    # -- per-invocation --------------------------------------------------------

    async def _invoke(
        self,
        definition: CheckDefinition,
        context: ExecutionContext,
        timeout: float,
        cancelled: asyncio.Event,
    ) -> RawResult:
        check_id = definition.check_id
        start = utc_now()
        call = PluginCall(
            check_id=check_id,
            params=definition.params,
            deadline=time.monotonic() + timeout,
        )
        self.log.debug("%s: %s -> %s", check_id, InvocationState.PENDING.value, InvocationState.RUNNING.value)

        try:
            plugin = self.resolver(definition.plugin)
        except PluginError as e:
            return self._finish(definition, start, ExecutionStatus.ERROR, error=str(e))

        work = _PluginThread(plugin, context, call, asyncio.get_running_loop())
        future = work.start()
        stop_wait = asyncio.ensure_future(cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {future, stop_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_wait.cancel()

        if future in done:
            return self._collect(definition, start, future)

        # Deadline or batch stop: ask the plugin to stop, then walk away.
        call.cancel_event.set()
        work.abort()
        future.cancel()
        if cancelled.is_set():
            return self._finish(definition, start, ExecutionStatus.ERROR, error="Cancelled")
        return self._finish(
            definition, start, ExecutionStatus.TIMED_OUT, error=f"Timed out after {timeout:g}s",
        )

    def _collect(
        self,
        definition: CheckDefinition,
        start: datetime,
        work: asyncio.Future[Any],
    ) -> RawResult:
        try:
            fields, findings = work.result()
        except PluginTimeout as e:
            return self._finish(definition, start, ExecutionStatus.TIMED_OUT, error=str(e))
        except PluginError as e:
            return self._finish(definition, start, ExecutionStatus.ERROR, error=str(e))
        except asyncio.CancelledError:
            return self._finish(definition, start, ExecutionStatus.ERROR, error="Plugin was cancelled")
        except Exception as e:
            return self._finish(definition, start, ExecutionStatus.ERROR, error=f"{type(e).__name__}: {e}")
        return self._finish(definition, start, ExecutionStatus.COMPLETED, fields=fields, findings=findings)

    def _finish(
        self,
        definition: CheckDefinition,
        start: datetime,
        status: ExecutionStatus,
        *,
        error: str | None = None,
        fields: Any = None,
        findings: Any = None,
    ) -> RawResult:
        result = RawResult(
            check_id=definition.check_id,
            status=status,
            start_time=start,
            end_time=utc_now(),
            error_message=error,
            fields=fields if fields is not None else freeze({}),
            findings=findings,
        )
        if status is ExecutionStatus.COMPLETED:
            self.log.debug("%s: completed in %dms", definition.check_id, result.duration_ms)
        else:
            self.log.warning("%s: %s: %s", definition.check_id, status.value, error)
        return result

    # -- helpers ---------------------------------------------------------------

    async def _watch_cancel(self, stop_requested: threading.Event, cancelled: asyncio.Event) -> None:
        while not stop_requested.is_set():
            await asyncio.sleep(self.cancel_poll_interval)
        self.log.warning("Batch stop requested, abandoning in-flight checks")
        cancelled.set()

    def _notify(self, on_result: Callable[[RawResult], Any] | None, result: RawResult) -> None:
        if on_result is None:
            return
        try:
            on_result(result)
        except Exception:
            self.log.exception("on_result callback error")


class _PluginThread:
    """One plugin invocation on its own daemon thread.

    The thread calls the plugin and normalizes its output, so a generator
    plugin is drained off the batch loop and inside the deadline. A
    coroutine plugin runs on a private event loop in that thread; the batch
    loop only ever waits on ``future``.
    """

    def __init__(
        self,
        plugin: Plugin,
        context: ExecutionContext,
        call: PluginCall,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self.plugin = plugin
        self.context = context
        self.call = call
        self.future: asyncio.Future[Any] = loop.create_future()
        self._loop = loop
        self._lock = threading.Lock()
        self._plugin_loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[Any] | None = None

    def start(self) -> asyncio.Future[Any]:
        threading.Thread(target=self._run, name=f"check-{self.call.check_id}", daemon=True).start()
        return self.future

    def abort(self) -> None:
        """Cancel a running coroutine plugin. Plain plugins only see ``call.cancel_event``."""
        with self._lock:
            plugin_loop, task = self._plugin_loop, self._task
        if plugin_loop is None or task is None:
            return
        try:
            plugin_loop.call_soon_threadsafe(task.cancel)
        except RuntimeError:
            logger.debug("%s: plugin loop closed before abort", self.call.check_id)

    def _run(self) -> None:
        outcome: Any = None
        error: BaseException | None = None
        try:
            outcome = normalize_output(self._call())
        except Exception as e:
            error = e
        except asyncio.CancelledError:
            error = PluginError("Plugin was cancelled")
        except BaseException as e:
            error = PluginError(f"Plugin aborted with {type(e).__name__}: {e}")
        try:
            self._loop.call_soon_threadsafe(self._resolve, outcome, error)
        except RuntimeError:
            # Batch loop already closed: the batch finished without this result.
            logger.debug("%s: finished after its batch ended", self.call.check_id)

    def _call(self) -> Any:
        output = self.plugin(self.context, self.call)
        if not inspect.iscoroutine(output):
            return output

        plugin_loop = asyncio.new_event_loop()
        try:
            task = plugin_loop.create_task(output)
            with self._lock:
                self._plugin_loop, self._task = plugin_loop, task
            if self.call.cancel_event.is_set():
                task.cancel()
            return plugin_loop.run_until_complete(task)
        finally:
            with self._lock:
                self._plugin_loop, self._task = None, None
            plugin_loop.run_until_complete(plugin_loop.shutdown_asyncgens())
            plugin_loop.close()

    def _resolve(self, outcome: Any, error: BaseException | None) -> None:
        if self.future.done():  # abandoned after timeout or stop
            return
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(outcome)


def run_batch(
    definitions: Sequence[CheckDefinition],
    context: ExecutionContext,
    max_parallel: int,
    timeout: float,
    **kwargs: Any,
) -> list[RawResult]:
    """Module-level shortcut for ``CheckExecutor().run_batch(...)``."""
    return CheckExecutor().run_batch(definitions, context, max_parallel, timeout, **kwargs)


def _validate(max_parallel: int, timeout: float) -> None:
    if max_parallel < 1:
        raise ValueError(f"max_parallel must be >= 1, got {max_parallel}")
    if timeout <= 0:
        raise ValueError(f"timeout must be > 0, got {timeout}")


def _synthesize(definition: CheckDefinition, status: ExecutionStatus, message: str) -> RawResult:
    now = utc_now()
    return RawResult(
        check_id=definition.check_id,
        status=status,
        start_time=now,
        end_time=now,
        error_message=message,
    )
