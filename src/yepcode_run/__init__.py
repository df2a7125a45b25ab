"""YepCode Run SDK

Run JavaScript or Python snippets on the YepCode platform and track the
resulting executions from asyncio code.
"""

from yepcode_run.api import (
    ApiConfig,
    ExecuteSettings,
    ExecutionError,
    ExecutionStatus,
    LogEntry,
    RemoteService,
    YepCodeError,
    ConfigurationError,
    ClassificationError,
    YepCodeApiError,
    NotFoundError,
    TransportError,
)
from yepcode_run.api.http import HttpRemoteService
from yepcode_run.api.registry import ApiRegistry, default_registry
from yepcode_run.env import EnvVar, YepCodeEnv
from yepcode_run.execution import Execution, ExecutionEvents, PollState
from yepcode_run.language import Language, detect_language
from yepcode_run.run import (
    YepCodeRun,
    default_on_error,
    default_on_finish,
    default_on_log,
)
from yepcode_run.scheduling import AsyncioScheduler, Scheduler

__all__ = [
    # Entry points
    "YepCodeRun",
    "YepCodeEnv",
    "EnvVar",
    # Execution tracking
    "Execution",
    "ExecutionEvents",
    "PollState",
    "default_on_log",
    "default_on_finish",
    "default_on_error",
    "Scheduler",
    "AsyncioScheduler",
    # Language detection
    "Language",
    "detect_language",
    # API
    "ApiConfig",
    "ApiRegistry",
    "default_registry",
    "ExecuteSettings",
    "ExecutionError",
    "ExecutionStatus",
    "HttpRemoteService",
    "LogEntry",
    "RemoteService",
    # Exceptions
    "YepCodeError",
    "ConfigurationError",
    "ClassificationError",
    "YepCodeApiError",
    "NotFoundError",
    "TransportError",
]
