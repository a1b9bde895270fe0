"""
Execution Engine: runs automation plugins and owns the run lifecycle.

States: idle -> running -> {completed, error, stopped}, with
running <-> paused for plugins supporting pause.

Guarantees:
- Single-flight: at most one non-terminal execution per automation.
  The per-automation slot is claimed under a lock before any state
  change and freed when the execution record is closed.
- Precondition failures (unknown ids, invalid config, missing secrets,
  already running) raise to the caller; no execution is recorded.
- Run-time failures (plugin raised, reported failure, returned garbage,
  exceeded the deadline, ignored stop) end the execution in `error`
  and never propagate past the engine.
- Time spent paused does not count against the deadline.
- A bounded worker pool limits concurrent plugin calls; waiting runs
  are admitted by priority, then FIFO. No preemption.
"""

import asyncio
import heapq
import itertools
import threading
from collections import deque
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog

from core import metrics as prometheus
from core.constants import (
    AutomationStatus,
    Capability,
    EventType,
    ExecutionPriority,
    TriggerType,
)
from core.exceptions import (
    AlreadyRunningError,
    AutomationError,
    ConfigValidationError,
    NotFoundError,
    PluginExecutionError,
    PluginTimeoutError,
    UnsupportedOperationError,
)
from core.logging_config import bind_execution, unbind_execution
from core.utils import generate_id, utc_now
from events.bus import Event, EventBus
from execution.context import ExecutionContext, ExecutionContextFactory
from execution.metrics import MetricsAggregator
from execution.models import AutomationDefinition, Execution, ExecutionResult
from plugins.base import AutomationPlugin, PluginResult
from plugins.registry import PluginRegistry
from services.repository import Repository

logger = structlog.get_logger(__name__)

_TERMINAL_EVENTS = {
    AutomationStatus.COMPLETED: EventType.EXECUTION_COMPLETED,
    AutomationStatus.ERROR: EventType.EXECUTION_FAILED,
    AutomationStatus.STOPPED: EventType.EXECUTION_STOPPED,
}


class _WorkerPool:
    """Counting semaphore whose waiters are served by priority rank, then FIFO."""

    def __init__(self, size: int):
        self.size = max(1, size)
        self._active = 0
        self._waiters: list = []
        self._seq = itertools.count()

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return sum(1 for _, _, fut in self._waiters if not fut.done())

    async def acquire(self, priority: ExecutionPriority) -> None:
        if self._active < self.size and not self.queued:
            self._active += 1
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (priority.rank, next(self._seq), fut))
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # The slot was handed over just before cancellation
                self.release()
            raise

    def release(self) -> None:
        while self._waiters:
            _, _, fut = heapq.heappop(self._waiters)
            if not fut.done():
                fut.set_result(None)
                return
        self._active = max(self._active - 1, 0)


class _Run:
    """Engine-side bookkeeping of one in-flight execution."""

    def __init__(
        self,
        execution: Execution,
        definition: AutomationDefinition,
        plugin: AutomationPlugin,
        context: ExecutionContext,
        timeout: float,
    ):
        self.execution = execution
        self.definition = definition
        self.plugin = plugin
        self.context = context
        self.timeout = timeout
        self.task: Optional[asyncio.Task] = None
        self.plugin_task: Optional[asyncio.Task] = None
        self.done = asyncio.Event()
        self.wake = asyncio.Event()
        self.active_seconds = 0.0
        self.active_since: Optional[float] = None
        self.stop_requested = False
        self.stop_deadline: Optional[float] = None
        self.queued = False
        self.closed = False

    @property
    def paused(self) -> bool:
        return self.execution.status == AutomationStatus.PAUSED

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def start_clock(self) -> None:
        if not self.paused:
            self.active_since = self._now()

    def pause_clock(self) -> None:
        if self.active_since is not None:
            self.active_seconds += self._now() - self.active_since
            self.active_since = None

    def elapsed(self) -> float:
        running = self._now() - self.active_since if self.active_since is not None else 0.0
        return self.active_seconds + running


def _consume_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


class ExecutionEngine:
    """Runs plugins for automations and tracks every execution to a terminal state."""

    def __init__(
        self,
        registry: PluginRegistry,
        repository: Repository,
        event_bus: EventBus,
        metrics: Optional[MetricsAggregator] = None,
        context_factory: Optional[ExecutionContextFactory] = None,
        timeout: float = 300.0,
        stop_grace_period: float = 10.0,
        max_concurrent: int = 3,
        history_limit: int = 100,
        default_user_id: str = "system",
        clock: Callable = utc_now,
    ):
        self.registry = registry
        self.repository = repository
        self.event_bus = event_bus
        self.metrics = metrics or MetricsAggregator()
        self.context_factory = context_factory or ExecutionContextFactory()
        self.timeout = timeout
        self.stop_grace_period = stop_grace_period
        self.history_limit = history_limit
        self.default_user_id = default_user_id
        self.clock = clock

        self._lock = threading.Lock()
        self._current: Dict[str, str] = {}
        self._runs: Dict[str, _Run] = {}
        self._history: Dict[str, deque] = {}
        self._pool = _WorkerPool(max_concurrent)

        registry.set_in_use_check(self.is_type_in_use)

    # ─── Queries ───────────────────────────────────────────

    def is_running(self, automation_id: str) -> bool:
        with self._lock:
            return automation_id in self._current

    def is_type_in_use(self, automation_type: str) -> bool:
        with self._lock:
            return any(r.execution.automation_type == automation_type for r in self._runs.values())

    def current_execution(self, automation_id: str) -> Optional[Execution]:
        with self._lock:
            execution_id = self._current.get(automation_id)
            run = self._runs.get(execution_id) if execution_id else None
            return run.execution.snapshot() if run else None

    def running_executions(self) -> List[Execution]:
        with self._lock:
            return [r.execution.snapshot() for r in self._runs.values()]

    def history(self, automation_id: str) -> List[Execution]:
        """Terminal executions of an automation kept in memory, newest first."""
        with self._lock:
            items = list(self._history.get(automation_id, ()))
        items.reverse()
        return [e.snapshot() for e in items]

    def last_execution(self, automation_id: str) -> Optional[Execution]:
        current = self.current_execution(automation_id)
        if current is not None:
            return current
        with self._lock:
            items = self._history.get(automation_id)
            return items[-1].snapshot() if items else None

    @property
    def pool_stats(self) -> Dict[str, int]:
        return {"size": self._pool.size, "active": self._pool.active, "queued": self._pool.queued}

    async def get_execution(self, execution_id: str) -> Execution:
        with self._lock:
            run = self._runs.get(execution_id)
            if run is not None:
                return run.execution.snapshot()
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def list_executions(
        self,
        status: Optional[AutomationStatus] = None,
        automation_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Execution]:
        """Executions newest first, optionally filtered by status and automation."""
        return await self.repository.list_executions(
            automation_id=automation_id,
            status=AutomationStatus(status) if status else None,
            limit=limit,
        )

    async def get_execution_stats(self) -> Dict[str, Any]:
        executions = await self.repository.list_executions()
        counts = {s: 0 for s in AutomationStatus}
        durations = []
        for execution in executions:
            counts[execution.status] += 1
            if execution.duration is not None:
                durations.append(execution.duration)
        return {
            "total": len(executions),
            "running": counts[AutomationStatus.RUNNING],
            "paused": counts[AutomationStatus.PAUSED],
            "completed": counts[AutomationStatus.COMPLETED],
            "failed": counts[AutomationStatus.ERROR],
            "stopped": counts[AutomationStatus.STOPPED],
            "average_duration": sum(durations) / len(durations) if durations else 0.0,
            "pool": self.pool_stats,
        }

    # ─── Invoke ────────────────────────────────────────────

    async def invoke(
        self,
        automation_id: str,
        triggered_by: TriggerType = TriggerType.MANUAL,
        user_id: Optional[str] = None,
        priority: Optional[ExecutionPriority] = None,
        timeout: Optional[float] = None,
    ) -> Execution:
        """
        Start an execution of an automation.

        Returns the execution snapshot in `running` status; the plugin
        runs in its own task.

        Raises:
            NotFoundError: Unknown automation or no plugin for its type
            AlreadyRunningError: The automation has a non-terminal execution
            ConfigValidationError: Parameters fail the plugin schema
            ContextConstructionError: Required secrets are missing
        """
        definition = await self.repository.get_automation(automation_id)
        if definition is None:
            raise NotFoundError(f"Automation {automation_id} not found")
        plugin = self.registry.require(definition.type)

        with self._lock:
            holder = self._current.get(automation_id)
        if holder is not None:
            raise AlreadyRunningError(automation_id, holder)

        validation = plugin.validate_config(definition.parameters)
        if not validation.valid:
            raise ConfigValidationError(validation.errors, field_errors=validation.field_errors)

        execution_id = generate_id("exec")
        user = user_id or self.default_user_id
        context = await self.context_factory.build(
            definition, execution_id, user, plugin.required_secrets
        )

        execution = Execution(
            id=execution_id,
            automation_id=automation_id,
            automation_type=definition.type,
            status=AutomationStatus.RUNNING,
            triggered_by=TriggerType(triggered_by),
            priority=ExecutionPriority(priority or definition.priority),
            user_id=user,
            started_at=self.clock(),
        )
        run = _Run(execution, definition, plugin, context, timeout or self.timeout)

        with self._lock:
            holder = self._current.get(automation_id)
            if holder is not None:
                raise AlreadyRunningError(automation_id, holder)
            self._current[automation_id] = execution_id
            self._runs[execution_id] = run
            prometheus.gauge_set("automation_hub_executions_in_flight", len(self._runs))

        try:
            await self.repository.save_execution(execution)
        except Exception:
            self._release_slot(run)
            raise

        await self._publish(EventType.EXECUTION_STARTED, run, {
            "triggered_by": execution.triggered_by.value,
            "priority": execution.priority.value,
            "user_id": user,
        })
        run.task = asyncio.create_task(self._supervise(run), name=f"execution-{execution_id}")
        logger.info(
            "Execution started",
            execution_id=execution_id,
            automation_id=automation_id,
            automation_type=definition.type,
            triggered_by=execution.triggered_by.value,
        )
        return execution.snapshot()

    # ─── Run supervision ───────────────────────────────────

    async def _supervise(self, run: _Run) -> None:
        execution = run.execution
        bind_execution(execution.id, execution.automation_id, execution.automation_type)
        try:
            if run.stop_requested:
                await self._finish(run, AutomationStatus.STOPPED, self._stopped_result(run, None))
                return
            run.queued = True
            try:
                await self._pool.acquire(execution.priority)
            except asyncio.CancelledError:
                # Only stop() cancels a queued run
                await self._finish(run, AutomationStatus.STOPPED, self._stopped_result(run, None))
                return
            finally:
                run.queued = False

            try:
                if run.stop_requested:
                    await self._finish(run, AutomationStatus.STOPPED, self._stopped_result(run, None))
                    return
                status, result = await self._run_plugin(run)
                await self._finish(run, status, result)
            finally:
                self._pool.release()
        except asyncio.CancelledError:
            if run.plugin_task is not None:
                run.plugin_task.cancel()
            if not run.done.is_set():
                await self._finish(run, AutomationStatus.ERROR, ExecutionResult(
                    success=False,
                    error="Execution cancelled by engine shutdown",
                    error_kind=PluginTimeoutError.error_code,
                    logs=list(run.context.logger.lines),
                ))
            raise
        except Exception as e:
            logger.exception("Execution supervision failed", error=str(e))
            if not run.done.is_set():
                await self._finish(run, AutomationStatus.ERROR, ExecutionResult(
                    success=False,
                    error=f"Internal engine error: {e}",
                    error_kind=PluginExecutionError.error_code,
                    logs=list(run.context.logger.lines),
                ))
        finally:
            unbind_execution()

    async def _call_plugin(self, run: _Run) -> PluginResult:
        raw = await run.plugin.execute(run.definition.clone(), run.context)
        return PluginResult.coerce(raw)

    async def _run_plugin(self, run: _Run):
        run.start_clock()
        run.plugin_task = asyncio.create_task(
            self._call_plugin(run), name=f"plugin-{run.execution.id}"
        )
        run.plugin_task.add_done_callback(_consume_result)

        outcome = await self._wait_plugin(run)
        if outcome == "done":
            return self._settled(run)

        run.plugin_task.cancel()
        if outcome == "timeout":
            try:
                await run.plugin.stop(run.execution.id)
            except Exception as e:
                logger.warning("Plugin stop after timeout failed", error=str(e))
            message = f"Execution exceeded the {run.timeout:g}s deadline"
        else:
            message = f"Plugin did not stop within the {self.stop_grace_period:g}s grace period"
        logger.warning("Execution timed out", reason=outcome, timeout=run.timeout)
        return AutomationStatus.ERROR, ExecutionResult(
            success=False,
            error=message,
            error_kind=PluginTimeoutError.error_code,
            logs=list(run.context.logger.lines),
        )

    async def _wait_plugin(self, run: _Run) -> str:
        """Wait for the plugin task. Returns "done", "timeout" or "stop_timeout"."""
        loop = asyncio.get_running_loop()
        while True:
            if run.plugin_task.done():
                return "done"
            if run.stop_requested:
                remaining = run.stop_deadline - loop.time()
                if remaining <= 0:
                    return "stop_timeout"
            elif run.paused:
                remaining = None
            else:
                remaining = run.timeout - run.elapsed()
                if remaining <= 0:
                    return "timeout"

            run.wake.clear()
            waker = asyncio.ensure_future(run.wake.wait())
            try:
                await asyncio.wait(
                    {run.plugin_task, waker},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                waker.cancel()

    def _settled(self, run: _Run):
        """Map a finished plugin task to a terminal status and result."""
        task = run.plugin_task
        lines = list(run.context.logger.lines)

        if task.cancelled():
            plugin_result, error = None, "Plugin execution was cancelled"
        elif task.exception() is not None:
            exc = task.exception()
            plugin_result = None
            if isinstance(exc, AutomationError):
                error = exc.message
            else:
                error = f"{type(exc).__name__}: {exc}"
        else:
            plugin_result, error = task.result(), None

        if run.stop_requested:
            return AutomationStatus.STOPPED, self._stopped_result(run, plugin_result)

        if plugin_result is None:
            logger.warning("Plugin execution failed", error=error)
            return AutomationStatus.ERROR, ExecutionResult(
                success=False,
                error=error,
                error_kind=PluginExecutionError.error_code,
                logs=lines,
            )

        result = plugin_result.to_execution_result(lines)
        status = AutomationStatus.COMPLETED if result.success else AutomationStatus.ERROR
        return status, result

    def _stopped_result(self, run: _Run, plugin_result: Optional[PluginResult]) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            data=plugin_result.data if plugin_result else None,
            error="Execution stopped by request",
            logs=[*run.context.logger.lines, *(plugin_result.logs if plugin_result else [])],
            duration=plugin_result.duration if plugin_result else None,
            resource_usage=plugin_result.resource_usage if plugin_result else None,
        )

    def _release_slot(self, run: _Run) -> None:
        execution = run.execution
        with self._lock:
            if self._current.get(execution.automation_id) == execution.id:
                del self._current[execution.automation_id]
            self._runs.pop(execution.id, None)
            prometheus.gauge_set("automation_hub_executions_in_flight", len(self._runs))

    async def _finish(self, run: _Run, status: AutomationStatus, result: ExecutionResult) -> None:
        """Close the execution record. Always frees the single-flight slot."""
        if run.closed:
            run.done.set()
            return
        run.closed = True
        execution = run.execution
        run.pause_clock()
        execution.status = status
        execution.completed_at = self.clock()
        if result.duration is None:
            result.duration = execution.duration
        execution.result = result

        with self._lock:
            history = self._history.setdefault(
                execution.automation_id, deque(maxlen=self.history_limit)
            )
            history.append(execution.snapshot())
        self._release_slot(run)
        run.plugin.release(execution.id)

        try:
            self.metrics.record(execution)
        except Exception as e:
            logger.error("Metrics update failed", error=str(e))

        try:
            await self.repository.save_execution(execution)
            await self.repository.prune_executions(execution.automation_id, self.history_limit)
        except Exception as e:
            logger.error("Failed to persist execution", error=str(e))

        logger.info(
            "Execution finished",
            status=status.value,
            success=result.success,
            duration=execution.duration,
            error=result.error,
        )
        payload = {"success": result.success, "duration": execution.duration}
        if not result.success:
            payload.update(error=result.error, error_kind=result.error_kind)
        await self._publish(_TERMINAL_EVENTS[status], run, payload)
        run.done.set()

    async def _publish(self, event_type: EventType, run: _Run, payload: Dict[str, Any]) -> None:
        execution = run.execution
        await self.event_bus.publish(Event(
            type=event_type,
            automation_id=execution.automation_id,
            execution_id=execution.id,
            payload={"status": execution.status.value, **payload},
        ))

    # ─── Control ───────────────────────────────────────────

    def _require_run(self, execution_id: str) -> _Run:
        with self._lock:
            run = self._runs.get(execution_id)
        if run is None:
            raise UnsupportedOperationError(f"Execution {execution_id} is not in flight")
        return run

    async def _ensure_known(self, execution_id: str) -> None:
        with self._lock:
            if execution_id in self._runs:
                return
        if await self.repository.get_execution(execution_id) is None:
            raise NotFoundError(f"Execution {execution_id} not found")

    async def stop(self, execution_id: str) -> Execution:
        """
        Request a cooperative stop.

        The execution ends `stopped` if the plugin settles within the
        grace period, otherwise `error` with the timeout kind.
        """
        await self._ensure_known(execution_id)
        run = self._require_run(execution_id)
        if run.stop_requested:
            return run.execution.snapshot()

        run.stop_requested = True
        run.stop_deadline = asyncio.get_running_loop().time() + self.stop_grace_period
        try:
            await run.plugin.stop(execution_id)
        except Exception as e:
            logger.warning("Plugin stop raised", execution_id=execution_id, error=str(e))

        if run.queued and run.task is not None:
            run.task.cancel()
        run.wake.set()
        logger.info("Stop requested", execution_id=execution_id)
        return run.execution.snapshot()

    async def pause(self, execution_id: str) -> Execution:
        await self._ensure_known(execution_id)
        run = self._require_run(execution_id)
        if run.execution.status != AutomationStatus.RUNNING or run.stop_requested:
            raise UnsupportedOperationError(
                f"Execution {execution_id} is {run.execution.status.value} and cannot be paused"
            )
        if not run.plugin.supports(Capability.PAUSE):
            raise UnsupportedOperationError(f"Plugin '{run.plugin.type}' does not support pause")

        await run.plugin.pause(execution_id)
        if run.closed or run.stop_requested:
            # Undo the plugin-side pause; the run ended or is stopping
            if run.closed:
                run.plugin.release(execution_id)
            else:
                await run.plugin.resume(execution_id)
            raise UnsupportedOperationError(
                f"Execution {execution_id} stopped running before it could be paused"
            )
        run.pause_clock()
        run.execution.status = AutomationStatus.PAUSED
        run.wake.set()
        await self._persist_transition(run)
        await self._publish(EventType.EXECUTION_PAUSED, run, {})
        logger.info("Execution paused", execution_id=execution_id)
        return run.execution.snapshot()

    async def resume(self, execution_id: str) -> Execution:
        await self._ensure_known(execution_id)
        run = self._require_run(execution_id)
        if run.execution.status != AutomationStatus.PAUSED or run.stop_requested:
            raise UnsupportedOperationError(
                f"Execution {execution_id} is {run.execution.status.value} and cannot be resumed"
            )

        await run.plugin.resume(execution_id)
        if run.closed or run.stop_requested:
            if run.closed:
                run.plugin.release(execution_id)
            raise UnsupportedOperationError(
                f"Execution {execution_id} stopped running before it could be resumed"
            )
        run.execution.status = AutomationStatus.RUNNING
        if run.plugin_task is not None:
            run.start_clock()
        run.wake.set()
        await self._persist_transition(run)
        await self._publish(EventType.EXECUTION_RESUMED, run, {})
        logger.info("Execution resumed", execution_id=execution_id)
        return run.execution.snapshot()

    async def _persist_transition(self, run: _Run) -> None:
        try:
            await self.repository.save_execution(run.execution)
        except Exception as e:
            logger.error("Failed to persist execution", execution_id=run.execution.id, error=str(e))

    async def wait_for(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """Wait until an execution is terminal and return its record."""
        with self._lock:
            run = self._runs.get(execution_id)
        if run is not None:
            await asyncio.wait_for(run.done.wait(), timeout=timeout)
            return run.execution.snapshot()
        return await self.get_execution(execution_id)

    # ─── Housekeeping ──────────────────────────────────────

    def load_history(self, automation_id: str, executions: List[Execution]) -> None:
        """Seed in-memory history and metrics from stored terminal executions."""
        terminal = sorted((e for e in executions if e.is_terminal), key=lambda e: e.started_at)
        with self._lock:
            self._history[automation_id] = deque(terminal, maxlen=self.history_limit)
        self.metrics.rebuild(automation_id, terminal)

    def forget(self, automation_id: str) -> None:
        with self._lock:
            self._history.pop(automation_id, None)
        self.metrics.forget(automation_id)

    async def cleanup_old_executions(self, older_than_days: int = 30) -> int:
        """Delete terminal executions completed more than `older_than_days` ago."""
        cutoff = self.clock() - timedelta(days=older_than_days)
        removed = await self.repository.delete_executions_before(cutoff)
        with self._lock:
            for automation_id, items in self._history.items():
                kept = [e for e in items if e.completed_at is None or e.completed_at >= cutoff]
                self._history[automation_id] = deque(kept, maxlen=self.history_limit)
        logger.info("Old executions cleaned up", removed=removed, older_than_days=older_than_days)
        return removed

    async def shutdown(self) -> None:
        """Stop every in-flight execution and wait for the records to close."""
        with self._lock:
            runs = list(self._runs.values())
        for run in runs:
            try:
                await self.stop(run.execution.id)
            except AutomationError:
                continue
        pending = [r.done.wait() for r in runs if not r.done.is_set()]
        if pending:
            await asyncio.wait(
                [asyncio.ensure_future(p) for p in pending],
                timeout=self.stop_grace_period + 1,
            )
        for run in runs:
            if run.task is not None and not run.task.done():
                run.task.cancel()
        logger.info("Execution engine shut down", stopped=len(runs))
