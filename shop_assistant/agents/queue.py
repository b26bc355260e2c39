# =============================================================================
# Agent Queue — Bounded-Concurrency FIFO Scheduler for Agent Jobs
# =============================================================================
#
# Caps aggregate load on downstream search capacity across ALL sessions.
#
#   run(job, IMMEDIATE) → job awaited inline, result/exception propagates
#   run(job, QUEUED)    → job appended to one process-wide FIFO; at most
#                         `concurrency` jobs run at once
#
# GUARANTEES (queued mode):
# - Dispatch follows submission order; completion may be out of order.
# - A failing job is logged and does not affect other jobs or the
#   scheduler. The submitter's await re-raises the original exception.
# - No per-session priority or fairness. This is a load ceiling, so a
#   wide multi-intent request waits its turn like everyone else.
#
# DESIGN DECISION: Explicit scheduler object, dispatch on submit/complete.
# The pending deque and running counter belong to the instance. All state
# changes happen on the event loop thread between awaits, so no lock is
# needed. Each dispatched job runs in its own task; when it finishes the
# next pending job is started.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from shop_assistant.config import settings
from shop_assistant.services.execution_mode import ExecutionMode

logger = logging.getLogger(__name__)

T = TypeVar("T")

Job = Callable[[], Awaitable[T]]

DEFAULT_CONCURRENCY = 3


class AgentQueue:
    """Runs agent jobs inline or through a shared bounded FIFO."""

    def __init__(self, concurrency: int | None = None) -> None:
        requested = settings.agent_queue_concurrency if concurrency is None else concurrency
        self._concurrency = requested if requested and requested > 0 else DEFAULT_CONCURRENCY
        self._pending: deque[tuple[Job[Any], asyncio.Future[Any]]] = deque()
        self._running = 0
        self._tasks: set[asyncio.Task[None]] = set()
        logger.info("Agent queue initialised (concurrency=%d)", self._concurrency)

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def running(self) -> int:
        return self._running

    async def run(self, job: Job[T], mode: ExecutionMode) -> T:
        """Execute `job` according to `mode` and return its result."""
        if mode is not ExecutionMode.QUEUED:
            return await job()

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._pending.append((job, future))
        self._dispatch()
        return await future

    def _dispatch(self) -> None:
        while self._running < self._concurrency and self._pending:
            job, future = self._pending.popleft()
            if future.cancelled():
                # Submitter gave up before the job started
                continue
            self._running += 1
            task = asyncio.create_task(self._execute(job, future))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _execute(self, job: Job[Any], future: asyncio.Future[Any]) -> None:
        try:
            result = await job()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            logger.warning("Agent queue job failed: %s", e)
            if not future.done():
                future.set_exception(e)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._running -= 1
            self._dispatch()
