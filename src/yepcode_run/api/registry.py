import hashlib
import os
from logging import getLogger
from typing import Callable

from dotenv import find_dotenv, load_dotenv

from yepcode_run.api import ApiConfig, RemoteService
from yepcode_run.api.http import HttpRemoteService

logger = getLogger(__name__)

ENV_PREFIX = "YEPCODE_"


def read_env_config() -> dict[str, str]:
    """
    Read API settings from `YEPCODE_*` environment variables.

    A `.env` file in the working directory is loaded first (existing variables
    win). Each variable maps to an `ApiConfig` field by dropping the prefix and
    lower-casing the rest, e.g. `YEPCODE_API_TOKEN` -> `api_token`. Empty values
    and names that don't match a field are ignored.

    Returns:
        Mapping of `ApiConfig` field names to raw string values
    """
    load_dotenv(find_dotenv(usecwd=True))
    env_config = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or not value:
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in ApiConfig.model_fields:
            env_config[field_name] = value
    return env_config


def _config_hash(config: ApiConfig) -> str:
    return hashlib.sha256(config.model_dump_json().encode()).hexdigest()


class ApiRegistry:
    """
    Cache of RemoteService instances, one per distinct merged configuration.

    Owned by whoever composes the SDK. `YepCodeRun` and `YepCodeEnv` fall back
    to `default_registry` when they aren't given one; call `clear()` to reset
    it between tests.
    """

    def __init__(
        self, factory: Callable[[ApiConfig], RemoteService] = HttpRemoteService
    ):
        self._factory = factory
        self._instances: dict[str, RemoteService] = {}

    def resolve_config(self, config: ApiConfig | None = None) -> ApiConfig:
        """Merge environment settings with the fields explicitly set on `config`."""
        overrides = config.model_dump(exclude_unset=True) if config else {}
        return ApiConfig(**{**read_env_config(), **overrides})

    def get_instance(self, config: ApiConfig | None = None) -> RemoteService:
        merged_config = self.resolve_config(config)
        config_hash = _config_hash(merged_config)

        if config_hash not in self._instances:
            logger.debug(f"Creating API client for {merged_config.api_host} ({config_hash[:8]})")
            self._instances[config_hash] = self._factory(merged_config)

        return self._instances[config_hash]

    def clear(self) -> None:
        self._instances.clear()

    def __len__(self) -> int:
        return len(self._instances)


default_registry = ApiRegistry()
