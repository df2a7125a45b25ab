import asyncio
import hashlib
import inspect
from logging import getLogger
from typing import Any, Callable, TypeVar

from yepcode_run.api import (
    ApiConfig,
    CreateProcessInput,
    ExecuteSettings,
    ExecutionError,
    LogEntry,
    NotFoundError,
    ProcessSettingsInput,
    RemoteService,
    ScriptInput,
)
from yepcode_run.api.registry import ApiRegistry, default_registry
from yepcode_run.execution import Execution, ExecutionEvents
from yepcode_run.language import Language, resolve_language
from yepcode_run.scheduling import Scheduler

logger = getLogger(__name__)

T = TypeVar("T")

PROCESS_NAME_PREFIX = "yepcode-run-"


def default_on_log(log: LogEntry) -> None:
    logger.info(f"{log.timestamp.isoformat()} {log.level}: {log.message}")


def default_on_finish(return_value: Any) -> None:
    logger.info(f"Execution finished with return value: {return_value!r}")


def default_on_error(error: ExecutionError) -> None:
    logger.error(f"Execution failed with error: {error.message}")


def process_slug(code: str) -> str:
    """Content-addressed process name: identical code always maps to the same slug."""
    return f"{PROCESS_NAME_PREFIX}{hashlib.sha256(code.encode()).hexdigest()}"


class YepCodeRun:
    """
    Run code snippets on the platform and track the resulting executions.

    Each distinct code body is stored once, as a process whose slug is derived
    from the sha256 of the code, and reused by later runs of the same code.

    Usage:
        runner = YepCodeRun(ApiConfig(api_token="sk-..."))
        execution = await runner.run("def main():\\n    return {'ok': True}")
        await execution.wait_for_done()
    """

    def __init__(
        self,
        config: ApiConfig | None = None,
        *,
        api: RemoteService | None = None,
        registry: ApiRegistry | None = None,
        scheduler: Scheduler | None = None,
    ):
        """
        Args:
            config: API configuration, merged over `YEPCODE_*` environment settings
            api: Service to use directly instead of one from the registry
            registry: Registry to fetch the service from (default: `default_registry`)
            scheduler: Scheduler driving execution polling (default: asyncio loop)

        Raises:
            ConfigurationError: If credentials are missing or malformed
        """
        self._api = api or (registry or default_registry).get_instance(config)
        self._scheduler = scheduler

    def get_client_id(self) -> str | None:
        return getattr(self._api, "get_client_id", lambda: None)()

    def get_team_id(self) -> str | None:
        return getattr(self._api, "get_team_id", lambda: None)()

    async def _create_process(
        self, code: str, language: Language, manifest: dict[str, Any] | None
    ) -> str:
        slug = process_slug(code)

        try:
            existing_process = await self._api.get_process(slug)
            logger.debug(f"Reusing process {slug}")
            return existing_process.id
        except NotFoundError:
            pass

        logger.debug(f"Creating process {slug}")
        process = await self._api.create_process(
            CreateProcessInput(
                name=slug,
                script=ScriptInput(
                    programming_language=language.value.upper(), source_code=code
                ),
                manifest=manifest,
                settings=None if manifest else ProcessSettingsInput(),
            )
        )
        return process.id

    async def _remove_process(self, process_id: str) -> None:
        try:
            await self._api.delete_process(process_id)
        except Exception as e:
            logger.warning(f"Failed to remove process {process_id}: {e}")

    def _with_process_removal(
        self, process_id: str, callback: Callable[[T], Any]
    ) -> Callable[[T], Any]:
        async def wrapper(value: T) -> None:
            # Removal runs alongside the caller's callback and finishes before waiters wake up
            removal = asyncio.ensure_future(self._remove_process(process_id))
            # Let the delete request go out before the callback runs
            await asyncio.sleep(0)
            try:
                result = callback(value)
                if inspect.isawaitable(result):
                    await result
            finally:
                await removal

        return wrapper

    async def run(
        self,
        code: str,
        *,
        language: str | Language | None = None,
        remove_on_done: bool = False,
        manifest: dict[str, Any] | None = None,
        parameters: dict[str, Any] | None = None,
        initiated_by: str | None = None,
        tag: str | None = None,
        comment: str | None = None,
        settings: ExecuteSettings | None = None,
        on_log: Callable[[LogEntry], Any] | None = None,
        on_finish: Callable[[Any], Any] | None = None,
        on_error: Callable[[ExecutionError], Any] | None = None,
    ) -> Execution:
        """
        Run `code` remotely and return a tracker for the execution.

        Args:
            code: Source code to run
            language: "javascript" or "python"; detected from `code` if omitted
            remove_on_done: Delete the remote process once the execution ends
            manifest: Explicit dependency manifest (otherwise dependencies are auto-detected)
            parameters: Execution parameters
            initiated_by: Value for the initiator header
            tag: Execution tag
            comment: Execution comment
            settings: Per-execution settings (agent pool, callback URL)
            on_log: Called with each new log entry (default: `default_on_log`)
            on_finish: Called with the parsed return value (default: `default_on_finish`)
            on_error: Called with the execution error (default: `default_on_error`)

        Raises:
            ClassificationError: If no language was given and it can't be detected
            ConfigurationError: If the given language isn't supported
            YepCodeApiError: If a platform call fails
        """
        resolved_language = resolve_language(language, code)
        on_log = on_log or default_on_log
        on_finish = on_finish or default_on_finish
        on_error = on_error or default_on_error

        process_id = await self._create_process(code, resolved_language, manifest)

        response = await self._api.execute_process_async(
            process_id,
            parameters or {},
            initiated_by=initiated_by,
            tag=tag,
            comment=comment,
            settings=settings,
        )
        logger.debug(f"Started execution {response.execution_id} of process {process_id}")

        if remove_on_done:
            on_finish = self._with_process_removal(process_id, on_finish)
            on_error = self._with_process_removal(process_id, on_error)

        return Execution(
            api=self._api,
            execution_id=response.execution_id,
            events=ExecutionEvents(on_log=on_log, on_finish=on_finish, on_error=on_error),
            scheduler=self._scheduler,
        )

    async def get_execution(self, execution_id: str) -> Execution:
        """Attach a tracker to an execution that already exists."""
        if not execution_id:
            raise ValueError("execution_id is required")

        return Execution(api=self._api, execution_id=execution_id, scheduler=self._scheduler)
