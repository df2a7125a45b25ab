import base64
import binascii
import json
import re
from functools import cache
from logging import getLogger
from typing import Any

import httpx

from yepcode_run.api import (
    ApiConfig,
    ConfigurationError,
    CreateProcessInput,
    ExecuteSettings,
    ExecutionData,
    ExecutionId,
    LogsPage,
    NotFoundError,
    Process,
    TeamVariable,
    TransportError,
    VariablesPage,
)

logger = getLogger(__name__)

_SERVICE_ACCOUNT_CLIENT_ID = re.compile(r"^sa-(.*)-[a-z0-9]{8}$")


def _b64decode(value: str) -> str:
    # Tokens may be url-safe encoded and are not always padded
    value = value.replace("-", "+").replace("_", "/")
    return base64.b64decode(value + "=" * (-len(value) % 4)).decode()


@cache
def _decode_api_token(api_token: str) -> tuple[str, str]:
    """
    Decode an API token into its client id and client secret.

    Two formats are accepted: `sk-<base64 of "clientId:clientSecret">` and the
    legacy `<base64 of {"clientId": ..., "clientSecret": ...}>`.

    This function is memoized so repeated service construction with the same
    token doesn't decode it again.

    Raises:
        ConfigurationError: If the token can't be decoded
    """
    try:
        if api_token.startswith("sk-"):
            client_id, _, client_secret = _b64decode(api_token[3:]).partition(":")
        else:
            payload = json.loads(_b64decode(api_token))
            client_id = payload.get("clientId")
            client_secret = payload.get("clientSecret")
    except (binascii.Error, UnicodeDecodeError, ValueError, AttributeError) as e:
        raise ConfigurationError(f"Invalid apiToken format: {api_token}") from e

    if not client_id or not client_secret:
        raise ConfigurationError(f"Invalid apiToken format: {api_token}")
    return client_id, client_secret


def _team_id_from_access_token(access_token: str) -> str | None:
    try:
        _, payload, *_ = access_token.split(".")
        claims = json.loads(_b64decode(payload))
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(claims, dict):
        return None
    groups = [group for group in claims.get("groups") or [] if group != "sandbox"]
    return groups[0] if groups else None


def _resolve_team_id(
    *, team_id: str | None, client_id: str | None, access_token: str | None
) -> str:
    """
    Determine the team id from explicit config, the client id, or the access token.

    Raises:
        ConfigurationError: If no source yields a team id
    """
    if team_id:
        return team_id
    if client_id:
        match = _SERVICE_ACCOUNT_CLIENT_ID.match(client_id)
        if match:
            return match.group(1)
    if access_token:
        team_id = _team_id_from_access_token(access_token)
        if team_id:
            return team_id
    raise ConfigurationError("Team ID is not set")


class HttpRemoteService:
    """RemoteService implementation over the platform's REST API."""

    def __init__(
        self,
        config: ApiConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Validate credentials and resolve the team the service will act on.

        Args:
            config: API configuration (defaults apply for anything unset)
            transport: Optional httpx transport, mainly for tests

        Raises:
            ConfigurationError: If credentials are missing or malformed
        """
        config = config or ApiConfig()
        client_id, client_secret = config.client_id, config.client_secret

        if not config.access_token and not config.api_token and not (client_id and client_secret):
            raise ConfigurationError(
                "Invalid configuration. Please provide either: accessToken, apiToken or clientId and clientSecret."
            )
        if config.api_token:
            client_id, client_secret = _decode_api_token(config.api_token)

        self.api_host = config.api_host.rstrip("/")
        self.auth_url = (
            config.auth_url
            or f"{self.api_host}/auth/realms/yepcode/protocol/openid-connect/token"
        )
        self.client_id = client_id
        self._client_secret = client_secret
        self._access_token = config.access_token
        self.timeout_millis = config.timeout_millis
        self.team_id = _resolve_team_id(
            team_id=config.team_id, client_id=client_id, access_token=config.access_token
        )
        self._transport = transport

    def get_client_id(self) -> str | None:
        return self.client_id

    def get_team_id(self) -> str:
        return self.team_id

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_millis / 1000.0),
            transport=self._transport,
        )

    async def _fetch_access_token(self) -> str:
        if not self.client_id or not self._client_secret:
            raise ConfigurationError("Cannot refresh the access token without client credentials.")

        try:
            async with self._client() as client:
                response = await client.post(
                    self.auth_url,
                    auth=(self.client_id, self._client_secret),
                    data={"grant_type": "client_credentials"},
                )
                response.raise_for_status()
                access_token = response.json().get("access_token")
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"Authentication failed: {e}") from e

        if not access_token:
            raise TransportError("Authentication failed: No access token received from server")
        self._access_token = access_token
        return access_token

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        data: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        retry_auth: bool = True,
    ) -> Any:
        access_token = self._access_token or await self._fetch_access_token()
        url = f"{self.api_host}/api/{self.team_id}/rest{endpoint}"
        request_headers = {"Authorization": f"Bearer {access_token}", **(headers or {})}
        if params:
            params = {key: value for key, value in params.items() if value is not None}

        logger.debug(f"{method} {url}")
        try:
            async with self._client() as client:
                response = await client.request(
                    method, url, json=data, params=params, headers=request_headers
                )
        except httpx.RequestError as e:
            raise TransportError(f"Request {method} {endpoint} failed: {e}") from e

        if response.status_code == 401 and retry_auth:
            # Token expired or revoked: fetch a fresh one and retry once
            self._access_token = None
            return await self._request(
                method, endpoint, data=data, params=params, headers=headers, retry_auth=False
            )

        if not response.is_success:
            try:
                message = response.json().get("message") or response.reason_phrase
            except (ValueError, AttributeError):
                message = response.reason_phrase
            error_message = (
                f"HTTP error {response.status_code} in endpoint {method} {endpoint}: {message}"
            )
            if response.status_code == 404:
                raise NotFoundError(error_message)
            raise TransportError(error_message, response.status_code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def get_process(self, id_or_slug: str) -> Process:
        return Process.model_validate(await self._request("GET", f"/processes/{id_or_slug}"))

    async def create_process(self, data: CreateProcessInput) -> Process:
        return Process.model_validate(
            await self._request("POST", "/processes", data=data.to_wire())
        )

    async def delete_process(self, id_or_slug: str) -> None:
        await self._request("DELETE", f"/processes/{id_or_slug}")

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
        headers = {"Yep-Initiated-By": initiated_by} if initiated_by else {}
        body: dict[str, Any] = {"parameters": json.dumps(parameters or {})}
        if tag is not None:
            body["tag"] = tag
        if comment is not None:
            body["comment"] = comment
        if settings is not None:
            body["settings"] = settings.to_wire()

        response = await self._request(
            "POST", f"/processes/{id_or_slug}/execute", data=body, headers=headers
        )
        return ExecutionId.model_validate(response)

    async def get_execution(self, execution_id: str) -> ExecutionData:
        return ExecutionData.model_validate(
            await self._request("GET", f"/executions/{execution_id}")
        )

    async def get_execution_logs(
        self, execution_id: str, *, page: int = 0, limit: int = 100
    ) -> LogsPage:
        response = await self._request(
            "GET", f"/executions/{execution_id}/logs", params={"page": page, "limit": limit}
        )
        return LogsPage.model_validate(response)

    async def kill_execution(self, execution_id: str) -> None:
        await self._request("PUT", f"/executions/{execution_id}/kill")

    async def rerun_execution(self, execution_id: str) -> str:
        response = await self._request("POST", f"/executions/{execution_id}/rerun")
        return ExecutionId.model_validate(response).execution_id

    async def get_variables(self, *, page: int = 0, limit: int = 100) -> VariablesPage:
        response = await self._request("GET", "/variables", params={"page": page, "limit": limit})
        return VariablesPage.model_validate(response)

    async def create_variable(
        self, key: str, value: str, is_sensitive: bool = True
    ) -> TeamVariable:
        response = await self._request(
            "POST",
            "/variables",
            data={"key": key, "value": value, "isSensitive": is_sensitive},
        )
        return TeamVariable.model_validate(response)

    async def update_variable(self, variable_id: str, key: str, value: str) -> TeamVariable:
        response = await self._request(
            "PATCH", f"/variables/{variable_id}", data={"key": key, "value": value}
        )
        return TeamVariable.model_validate(response)

    async def delete_variable(self, variable_id: str) -> None:
        await self._request("DELETE", f"/variables/{variable_id}")
