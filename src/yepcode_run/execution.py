import asyncio
import bisect
import inspect
import json
from enum import Enum, auto
from logging import getLogger
from typing import Any, Callable, TypeVar

from pydantic import BaseModel

from yepcode_run.api import (
    ExecutionError,
    ExecutionStatus,
    LogEntry,
    NotFoundError,
    RemoteService,
    TimelineEvent,
    collect_pages,
)
from yepcode_run.scheduling import AsyncioScheduler, Scheduler

logger = getLogger(__name__)

T = TypeVar("T")

LOG_POLL_INTERVAL_MILLIS = 2000
LOG_PAGE_SIZE = 100

# (attempts below, delay) pairs; attempts past the last bound use LONG_POLL_INTERVAL_MILLIS
POLL_BACKOFF_MILLIS = [(4, 250), (12, 500)]
LONG_POLL_INTERVAL_MILLIS = 1000


class ExecutionEvents(BaseModel):
    """Observer callbacks fired by an `Execution`. Each may be sync or async."""

    on_log: Callable[[LogEntry], Any] | None = None
    on_finish: Callable[[Any], Any] | None = None
    on_error: Callable[[ExecutionError], Any] | None = None


class PollState(Enum):
    """Polling state machine: IDLE -> POLLING -> (IDLE | DONE)."""

    IDLE = auto()
    POLLING = auto()
    DONE = auto()


def polling_interval_millis(attempts: int) -> int:
    for bound, delay in POLL_BACKOFF_MILLIS:
        if attempts < bound:
            return delay
    return LONG_POLL_INTERVAL_MILLIS


class Execution:
    """
    Local, awaitable view of one remote execution.

    The platform offers no push notifications, so the tracker polls the
    execution status on a backoff schedule, pulls logs on a slower throttle,
    and fires the observer callbacks as things change. Polling starts as soon
    as the object is constructed (a running event loop is required) and stops
    for good once a terminal status is seen.

    Usage:
        execution = Execution(api=api, execution_id="...")
        await execution.wait_for_done()
        print(execution.status, execution.return_value)
    """

    def __init__(
        self,
        api: RemoteService,
        execution_id: str,
        events: ExecutionEvents | None = None,
        scheduler: Scheduler | None = None,
        max_poll_failures: int = 5,
    ):
        self._api = api
        self.execution_id = execution_id
        self.events = events or ExecutionEvents()
        self._scheduler = scheduler or AsyncioScheduler()
        self._max_poll_failures = max_poll_failures

        self.status: ExecutionStatus | None = None
        self.logs: list[LogEntry] = []
        self.timeline: list[TimelineEvent] = []
        self.return_value: Any = None
        self.error: ExecutionError | None = None
        self.process_id: str | None = None
        self.comment: str | None = None
        self.parameters: dict[str, Any] | None = None

        self.state = PollState.IDLE
        self.poll_attempts = 0
        self._consecutive_failures = 0
        self._last_log_poll_millis: float | None = None
        self._seen_log_timestamps: set = set()
        self._poll_task: asyncio.Task | None = None
        self._done: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        self._start_poll()

    def __repr__(self) -> str:
        status = self.status.value if self.status else None
        return f"Execution(execution_id={self.execution_id!r}, status={status!r})"

    async def is_done(self) -> bool:
        """
        Wait for any in-flight poll to settle, then report whether the status is terminal.

        Raises:
            YepCodeApiError: If polling was abandoned after repeated fetch failures
        """
        if self._poll_task is not None and not self._poll_task.done():
            await asyncio.shield(self._poll_task)
        if self._done.done():
            self._done.result()
        return self.status is not None and self.status.is_terminal

    async def wait_for_done(self) -> None:
        """
        Suspend until the execution reaches a terminal status.

        Safe to call from any number of tasks; all are released together.

        Raises:
            YepCodeApiError: If polling was abandoned after repeated fetch failures
        """
        await asyncio.shield(self._done)

    async def kill(self) -> None:
        try:
            await self._api.kill_execution(self.execution_id)
        except NotFoundError as e:
            raise NotFoundError(f"Execution not found for id: {self.execution_id}") from e

    async def rerun(self) -> "Execution":
        """Start a fresh remote execution cloned from this one and track it."""
        try:
            execution_id = await self._api.rerun_execution(self.execution_id)
        except NotFoundError as e:
            raise NotFoundError(f"Execution not found for id: {self.execution_id}") from e

        return Execution(
            api=self._api,
            execution_id=execution_id,
            events=self.events,
            scheduler=self._scheduler,
            max_poll_failures=self._max_poll_failures,
        )

    def _start_poll(self) -> None:
        if self.state is PollState.DONE:
            return
        self.state = PollState.POLLING
        self._poll_task = asyncio.ensure_future(self._poll())

    def _schedule_next_poll(self) -> None:
        delay = polling_interval_millis(self.poll_attempts)
        self.poll_attempts += 1
        self.state = PollState.IDLE
        self._scheduler.call_later(delay, self._start_poll)

    async def _poll(self) -> None:
        try:
            await self._poll_cycle()
            self._consecutive_failures = 0
        except Exception as e:
            self._consecutive_failures += 1
            if self._consecutive_failures >= self._max_poll_failures:
                logger.error(
                    f"Giving up on execution {self.execution_id} after "
                    f"{self._consecutive_failures} consecutive poll failures: {e}"
                )
                self.state = PollState.DONE
                if not self._done.done():
                    self._done.set_exception(e)
                    # Mark retrieved; only callers that await the tracker should see it
                    self._done.exception()
                return

            logger.warning(
                f"Polling execution {self.execution_id} failed "
                f"({self._consecutive_failures}/{self._max_poll_failures}): {e}"
            )
            self._schedule_next_poll()

    async def _poll_cycle(self) -> None:
        execution_data = await self._api.get_execution(self.execution_id)

        self.process_id = execution_data.process_id
        self.status = execution_data.status
        self.timeline = list(execution_data.timeline.events) if execution_data.timeline else []
        self.parameters = execution_data.parameters
        self.comment = execution_data.comment
        logger.debug(f"Execution {self.execution_id} is {self.status.value}")

        # Logs are throttled separately from status, except for the final fetch
        now = self._scheduler.time_millis()
        if (
            self._last_log_poll_millis is None
            or now - self._last_log_poll_millis >= LOG_POLL_INTERVAL_MILLIS
            or self.status.is_terminal
        ):
            await self._poll_logs()
            self._last_log_poll_millis = now

        if not self.status.is_terminal:
            self._schedule_next_poll()
            return

        if execution_data.return_value:
            try:
                self.return_value = json.loads(execution_data.return_value)
            except json.JSONDecodeError:
                self.return_value = execution_data.return_value

        if self.status.is_failed:
            self.error = ExecutionError(message=self._resolve_error_message())
            await self._notify(self.events.on_error, self.error)
        else:
            await self._notify(self.events.on_finish, self.return_value)

        self.state = PollState.DONE
        if not self._done.done():
            self._done.set_result(None)

    def _resolve_error_message(self) -> str | None:
        for event in self.timeline:
            if event.status == self.status and event.explanation:
                return event.explanation
        for log in reversed(self.logs):
            if log.level == "ERROR":
                return log.message
        return None

    async def _fetch_logs(self) -> list[LogEntry]:
        async def fetch_page(page: int, limit: int):
            return await self._api.get_execution_logs(self.execution_id, page=page, limit=limit)

        logs = await collect_pages(fetch_page, limit=LOG_PAGE_SIZE)
        return sorted(logs, key=lambda log: log.timestamp)

    async def _poll_logs(self) -> None:
        for log in await self._fetch_logs():
            if log.timestamp in self._seen_log_timestamps:
                continue
            self._seen_log_timestamps.add(log.timestamp)
            if self.logs and log.timestamp < self.logs[-1].timestamp:
                logger.warning(
                    f"Late log entry for execution {self.execution_id} at {log.timestamp}"
                )
                bisect.insort(self.logs, log, key=lambda entry: entry.timestamp)
            else:
                self.logs.append(log)
            await self._notify(self.events.on_log, log)

    async def _notify(self, callback: Callable[[T], Any] | None, value: T) -> None:
        if callback is None:
            return
        try:
            result = callback(value)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Observer callback failed for execution {self.execution_id}")
