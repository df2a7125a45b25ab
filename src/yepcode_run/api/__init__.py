from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ExecutionStatus(Enum):
    """Status values reported by the platform for an execution."""

    CREATED = "CREATED"
    QUEUED = "QUEUED"
    DEQUEUED = "DEQUEUED"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    KILLED = "KILLED"
    REJECTED = "REJECTED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_failed(self) -> bool:
        return self in FAILED_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.FINISHED,
        ExecutionStatus.KILLED,
        ExecutionStatus.REJECTED,
        ExecutionStatus.ERROR,
    }
)
FAILED_STATUSES = frozenset(
    {ExecutionStatus.ERROR, ExecutionStatus.KILLED, ExecutionStatus.REJECTED}
)


class ApiModel(BaseModel):
    """Base class for wire models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ApiConfig(ApiModel):
    """Connection and credential settings for the platform API."""

    api_host: str = Field(
        default="https://cloud.yepcode.io",
        description="Base URL of the platform.",
    )
    auth_url: str | None = Field(
        default=None,
        description="Token endpoint. Derived from `api_host` if not provided.",
    )
    timeout_millis: int = Field(
        default=60000,
        description="Per-request timeout in milliseconds.",
    )
    access_token: str | None = Field(default=None, description="Pre-issued bearer token.")
    api_token: str | None = Field(
        default=None,
        description="API token encoding a client id and secret (`sk-...` or legacy base64 JSON).",
    )
    client_id: str | None = None
    client_secret: str | None = None
    team_id: str | None = Field(
        default=None,
        description="Team identifier. Inferred from the client id or access token if not provided.",
    )


class LogEntry(ApiModel):
    timestamp: datetime
    level: str
    message: str


class TimelineEvent(ApiModel):
    status: ExecutionStatus
    timestamp: datetime
    explanation: str | None = None


class ExecutionTimeline(ApiModel):
    explanation: str | None = None
    events: list[TimelineEvent] = Field(default_factory=list)


class ExecutionData(ApiModel):
    """Snapshot of a remote execution as returned by the status endpoint."""

    id: str | None = None
    process_id: str | None = None
    status: ExecutionStatus
    timeline: ExecutionTimeline | None = None
    parameters: dict[str, Any] | None = None
    comment: str | None = None
    # Transport string, JSON-encoded by the remote program when possible
    return_value: str | None = None


class ExecutionId(ApiModel):
    execution_id: str


class ExecutionError(BaseModel):
    """Payload handed to `on_error` observers."""

    message: str | None = None


class Process(ApiModel):
    id: str
    name: str | None = None
    slug: str | None = None
    programming_language: str | None = None
    source_code: str | None = None


class ScriptInput(ApiModel):
    programming_language: str
    source_code: str


class DependenciesConfig(ApiModel):
    scoped_to_process: bool = True
    auto_detect: bool = True


class ProcessSettingsInput(ApiModel):
    dependencies: DependenciesConfig = Field(default_factory=DependenciesConfig)


class CreateProcessInput(ApiModel):
    name: str
    script: ScriptInput
    manifest: dict[str, Any] | None = None
    settings: ProcessSettingsInput | None = None


class ExecuteSettings(ApiModel):
    """Per-execution settings forwarded to the platform."""

    agent_pool_slug: str | None = None
    callback_url: str | None = None


class TeamVariable(ApiModel):
    id: str
    key: str
    value: str | None = None
    is_sensitive: bool | None = None


T = TypeVar("T")


class Page(ApiModel, Generic[T]):
    has_next_page: bool = False
    page: int | None = None
    limit: int | None = None
    total: int | None = None
    data: list[T] = Field(default_factory=list)


LogsPage = Page[LogEntry]
VariablesPage = Page[TeamVariable]


class YepCodeError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(YepCodeError):
    """Raised for missing or malformed credentials or settings."""


class ClassificationError(YepCodeError):
    """Raised when the language of a snippet cannot be determined."""


class YepCodeApiError(YepCodeError):
    """Raised when the platform API call fails."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        super().__init__(message)


class NotFoundError(YepCodeApiError):
    """Raised when the requested remote resource does not exist (HTTP 404)."""

    def __init__(self, message: str, status: int | None = 404):
        super().__init__(message, status)


class TransportError(YepCodeApiError):
    """Raised for any other non-2xx response or a network failure."""


class RemoteService(Protocol):
    """Protocol that every platform client implementation must follow.

    Implementations raise `NotFoundError` when the addressed resource does not
    exist and `TransportError` for every other failure.
    """

    async def get_process(self, id_or_slug: str) -> Process: ...

    async def create_process(self, data: CreateProcessInput) -> Process: ...

    async def delete_process(self, id_or_slug: str) -> None: ...

    async def execute_process_async(
        self,
        id_or_slug: str,
        parameters: dict[str, Any] | None = None,
        *,
        initiated_by: str | None = None,
        tag: str | None = None,
        comment: str | None = None,
        settings: ExecuteSettings | None = None,
    ) -> ExecutionId: ...

    async def get_execution(self, execution_id: str) -> ExecutionData: ...

    async def get_execution_logs(
        self, execution_id: str, *, page: int = 0, limit: int = 100
    ) -> LogsPage: ...

    async def kill_execution(self, execution_id: str) -> None: ...

    async def rerun_execution(self, execution_id: str) -> str:
        """Clone the execution remotely and return the new execution id."""
        ...

    async def get_variables(self, *, page: int = 0, limit: int = 100) -> VariablesPage: ...

    async def create_variable(
        self, key: str, value: str, is_sensitive: bool = True
    ) -> TeamVariable: ...

    async def update_variable(self, variable_id: str, key: str, value: str) -> TeamVariable: ...

    async def delete_variable(self, variable_id: str) -> None: ...


async def collect_pages(
    fetch_page: Callable[[int, int], Awaitable[Page[T]]],
    limit: int = 100,
) -> list[T]:
    """Walk a paginated endpoint from page 0 until `has_next_page` is false.

    Args:
        fetch_page: Coroutine function taking `(page, limit)` and returning one page
        limit: Page size to request

    Returns:
        The `data` of every page, concatenated in page order
    """
    items: list[T] = []
    page = 0
    while True:
        result = await fetch_page(page, limit)
        items.extend(result.data)
        if not result.has_next_page:
            return items
        page += 1
