"""
Pytest configuration for the yepcode_run test suite.

Provides an in-memory platform (`FakeRemoteService`) whose executions follow
scripted status/log steps, and a `ManualScheduler` so polling can be driven
tick by tick without real delays.
"""

import itertools
import json
import os
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from yepcode_run.api import (
    CreateProcessInput,
    ExecuteSettings,
    ExecutionData,
    ExecutionId,
    ExecutionStatus,
    ExecutionTimeline,
    LogEntry,
    LogsPage,
    NotFoundError,
    Process,
    TeamVariable,
    TimelineEvent,
    TransportError,
    VariablesPage,
)
from yepcode_run.execution import Execution, PollState

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


@dataclass
class Step:
    """One observable state of a scripted execution, revealed by one status poll."""

    status: ExecutionStatus
    logs: list[tuple[str, str]] = field(default_factory=list)  # (level, message)
    return_value: str | None = None
    explanation: str | None = None


def finishing_program(return_value: Any, logs: list[str] | None = None) -> list[Step]:
    return [
        Step(ExecutionStatus.RUNNING, logs=[("INFO", message) for message in logs or []]),
        Step(ExecutionStatus.FINISHED, return_value=json.dumps(return_value)),
    ]


def failing_program(message: str, explanation: str | None = None) -> list[Step]:
    return [
        Step(ExecutionStatus.RUNNING, logs=[("INFO", "Starting")]),
        Step(ExecutionStatus.ERROR, logs=[("ERROR", message)], explanation=explanation),
    ]


def default_program(process: Process, parameters: dict[str, Any]) -> list[Step]:
    """Pretend to run the process: `throw`/`raise` fails, anything else returns a greeting."""
    source_code = process.source_code or ""
    for keyword in ("throw new Error(", "raise Exception("):
        if keyword in source_code:
            raised = source_code.split(keyword, 1)[1].split(")", 1)[0].strip("\"'")
            return failing_program(f"Error: {raised}")
    return finishing_program({"message": "Hello, World!", **parameters}, logs=["Hello, World!"])


@dataclass
class FakeExecution:
    id: str
    process_id: str
    steps: list[Step]
    parameters: dict[str, Any] = field(default_factory=dict)
    comment: str | None = None
    position: int = -1
    logs: list[LogEntry] = field(default_factory=list)
    timeline: list[TimelineEvent] = field(default_factory=list)
    killed: bool = False

    @property
    def current(self) -> Step:
        return self.steps[self.position]


class FakeRemoteService:
    """In-memory RemoteService. Each `get_execution` call reveals the next scripted step."""

    def __init__(self, program: Callable[[Process, dict[str, Any]], list[Step]] = default_program):
        self.program = program
        self.processes: dict[str, Process] = {}
        self.executions: dict[str, FakeExecution] = {}
        self.variables: dict[str, TeamVariable] = {}
        self.calls: Counter[str] = Counter()
        self.execute_requests: list[dict[str, Any]] = []
        self.get_execution_failures = 0
        self.last_create_input: CreateProcessInput | None = None
        self._ids = itertools.count(1)
        self._clock = itertools.count()

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def add_execution(
        self, steps: list[Step], process_id: str = "process-0", **kwargs: Any
    ) -> str:
        execution_id = self._next_id("execution")
        self.executions[execution_id] = FakeExecution(
            id=execution_id, process_id=process_id, steps=steps, **kwargs
        )
        return execution_id

    def _find_process(self, id_or_slug: str) -> Process:
        for process in self.processes.values():
            if id_or_slug in (process.id, process.slug):
                return process
        raise NotFoundError(f"HTTP error 404 in endpoint GET /processes/{id_or_slug}: Not found")

    def _find_execution(self, execution_id: str) -> FakeExecution:
        if execution_id not in self.executions:
            raise NotFoundError(f"HTTP error 404 in endpoint /executions/{execution_id}: Not found")
        return self.executions[execution_id]

    async def get_process(self, id_or_slug: str) -> Process:
        self.calls["get_process"] += 1
        return self._find_process(id_or_slug)

    async def create_process(self, data: CreateProcessInput) -> Process:
        self.calls["create_process"] += 1
        self.last_create_input = data
        process = Process(
            id=self._next_id("process"),
            name=data.name,
            slug=data.name,
            programming_language=data.script.programming_language,
            source_code=data.script.source_code,
        )
        self.processes[process.id] = process
        return process

    async def delete_process(self, id_or_slug: str) -> None:
        self.calls["delete_process"] += 1
        process = self._find_process(id_or_slug)
        del self.processes[process.id]

    async def execute_process_async(
        self,
        id_or_slug: str,
        parameters: dict[str, Any] | None = None,
        *,
        initiated_by: str | None = None,
        tag: str | None = None,
        comment: str | None = None,
        settings: ExecuteSettings | None = None,
    ) -> ExecutionId:
        self.calls["execute_process_async"] += 1
        process = self._find_process(id_or_slug)
        self.execute_requests.append(
            {
                "process_id": process.id,
                "parameters": parameters,
                "initiated_by": initiated_by,
                "tag": tag,
                "comment": comment,
                "settings": settings,
            }
        )
        execution_id = self.add_execution(
            self.program(process, parameters or {}),
            process_id=process.id,
            parameters=parameters or {},
            comment=comment,
        )
        return ExecutionId(execution_id=execution_id)

    async def get_execution(self, execution_id: str) -> ExecutionData:
        self.calls["get_execution"] += 1
        if self.get_execution_failures:
            self.get_execution_failures -= 1
            raise TransportError("HTTP error 503 in endpoint GET /executions: Unavailable", 503)

        execution = self._find_execution(execution_id)
        if execution.position < len(execution.steps) - 1:
            execution.position += 1
            step = execution.current
            for level, message in step.logs:
                timestamp = BASE_TIME + timedelta(milliseconds=next(self._clock))
                execution.logs.append(LogEntry(timestamp=timestamp, level=level, message=message))
            execution.timeline.append(
                TimelineEvent(
                    status=step.status,
                    timestamp=BASE_TIME + timedelta(milliseconds=next(self._clock)),
                    explanation=step.explanation,
                )
            )

        step = execution.current
        return ExecutionData(
            id=execution.id,
            process_id=execution.process_id,
            status=step.status,
            timeline=ExecutionTimeline(events=list(execution.timeline)),
            parameters=execution.parameters,
            comment=execution.comment,
            return_value=step.return_value,
        )

    async def get_execution_logs(
        self, execution_id: str, *, page: int = 0, limit: int = 100
    ) -> LogsPage:
        self.calls["get_execution_logs"] += 1
        # Newest first, so callers have to sort
        logs = list(reversed(self._find_execution(execution_id).logs))
        chunk = logs[page * limit : (page + 1) * limit]
        return LogsPage(
            has_next_page=(page + 1) * limit < len(logs),
            page=page,
            limit=limit,
            total=len(logs),
            data=chunk,
        )

    async def kill_execution(self, execution_id: str) -> None:
        self.calls["kill_execution"] += 1
        execution = self._find_execution(execution_id)
        execution.killed = True
        execution.steps.append(Step(ExecutionStatus.KILLED, explanation="Killed by user"))
        execution.position = len(execution.steps) - 2

    async def rerun_execution(self, execution_id: str) -> str:
        self.calls["rerun_execution"] += 1
        original = self._find_execution(execution_id)
        process = self._find_process(original.process_id)
        return self.add_execution(
            self.program(process, original.parameters),
            process_id=original.process_id,
            parameters=original.parameters,
        )

    async def get_variables(self, *, page: int = 0, limit: int = 100) -> VariablesPage:
        self.calls["get_variables"] += 1
        variables = list(self.variables.values())
        return VariablesPage(
            has_next_page=(page + 1) * limit < len(variables),
            data=variables[page * limit : (page + 1) * limit],
        )

    async def create_variable(self, key: str, value: str, is_sensitive: bool = True) -> TeamVariable:
        self.calls["create_variable"] += 1
        variable = TeamVariable(
            id=self._next_id("variable"), key=key, value=value, is_sensitive=is_sensitive
        )
        self.variables[variable.id] = variable
        return variable

    async def update_variable(self, variable_id: str, key: str, value: str) -> TeamVariable:
        self.calls["update_variable"] += 1
        variable = self.variables[variable_id].model_copy(update={"key": key, "value": value})
        self.variables[variable_id] = variable
        return variable

    async def delete_variable(self, variable_id: str) -> None:
        self.calls["delete_variable"] += 1
        del self.variables[variable_id]


class ManualScheduler:
    """Scheduler with a virtual clock; callbacks fire only when the test advances time."""

    def __init__(self):
        self.now = 0.0
        self.pending: list[tuple[float, int, Callable[[], None]]] = []
        self.delays: list[float] = []
        self._sequence = itertools.count()

    def time_millis(self) -> float:
        return self.now

    def call_later(self, delay_millis: float, callback: Callable[[], None]) -> None:
        self.delays.append(delay_millis)
        self.pending.append((self.now + delay_millis, next(self._sequence), callback))
        self.pending.sort(key=lambda entry: entry[:2])

    def advance_to_next(self) -> None:
        due, _, callback = self.pending.pop(0)
        self.now = max(self.now, due)
        callback()


async def drive(execution: Execution, scheduler: ManualScheduler, max_ticks: int = 200) -> None:
    """Fire scheduled polls until the execution stops polling."""
    for _ in range(max_ticks):
        done = await execution.is_done()
        if done or execution.state is PollState.DONE:
            return
        scheduler.advance_to_next()
    raise AssertionError(f"{execution!r} still polling after {max_ticks} ticks")


@pytest.fixture
def fake_api() -> FakeRemoteService:
    return FakeRemoteService()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolate tests from YEPCODE_* variables and any .env file in the working directory."""
    for key in list(os.environ):
        if key.startswith("YEPCODE_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    return monkeypatch
