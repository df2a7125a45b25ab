from logging import getLogger

from pydantic import BaseModel

from yepcode_run.api import ApiConfig, RemoteService, TeamVariable, collect_pages
from yepcode_run.api.registry import ApiRegistry, default_registry

logger = getLogger(__name__)


class EnvVar(BaseModel):
    key: str
    value: str | None = None


class YepCodeEnv:
    """Manage the team-level environment variables available to remote executions."""

    def __init__(
        self,
        config: ApiConfig | None = None,
        *,
        api: RemoteService | None = None,
        registry: ApiRegistry | None = None,
    ):
        self._api = api or (registry or default_registry).get_instance(config)

    async def _get_variables(self) -> list[TeamVariable]:
        async def fetch_page(page: int, limit: int):
            return await self._api.get_variables(page=page, limit=limit)

        variables = await collect_pages(fetch_page)
        return sorted(variables, key=lambda variable: variable.key)

    async def _get_variable(self, key: str) -> TeamVariable | None:
        for variable in await self._get_variables():
            if variable.key == key:
                return variable
        return None

    async def get_env_vars(self) -> list[EnvVar]:
        return [
            EnvVar(key=variable.key, value=variable.value) for variable in await self._get_variables()
        ]

    async def set_env_var(self, key: str, value: str, is_sensitive: bool = True) -> None:
        """Create the variable, or update its value if it already exists."""
        existing_variable = await self._get_variable(key)

        if existing_variable:
            logger.debug(f"Updating env var {key}")
            await self._api.update_variable(existing_variable.id, key, value)
        else:
            logger.debug(f"Creating env var {key}")
            await self._api.create_variable(key, value, is_sensitive)

    async def del_env_var(self, key: str) -> None:
        existing_variable = await self._get_variable(key)

        if existing_variable:
            await self._api.delete_variable(existing_variable.id)
