"""
api_client.py
-------------
FHT Message Service — Remote / Local API Client
-----------------------------------------------
Async JSON client for the two HTTP APIs the service consumes:

  Remote API (``AwsUrl``)
    POST login          {userName, password}   → {userName, token, accountId}
    POST SystemConfig   {configurationAccountId, configurationSoftwareId}
                                               → RemoteConfig
  Local API (FHT web API on the practice server)
    GET  GetUnsentMessages                     → ResultRecord[]

After ``login()`` the bearer token is sent on every later call.  Encrypted
database connection strings in the remote config are decrypted through the
injected ``Decryptor``; a value that fails to decrypt is kept as received.

Usage (async context manager — preferred):
    async with ApiClient(settings.aws_url) as client:
        user   = await client.login(credentials)
        config = await client.get_config_info(user.account_id, settings.software_id)

Usage (manual lifecycle):
    client = ApiClient(endpoint)
    await client.connect()
    records = await client.get_unsent_messages()
    await client.close()

Project: FHT Message Service
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import httpx
from pydantic import ValidationError

from crypto import Decryptor, NullDecryptor, decrypt_or_keep
from errors import ApiError
from schemas import ConfigRequestInfo, LoginInfo, RemoteConfig, ResultRecord, UserInfo, parse_records
from settings import ClientCredentials

logger = logging.getLogger(__name__)

LOGIN_PATH = "login"
SYSTEM_CONFIG_PATH = "SystemConfig"
UNSENT_MESSAGES_PATH = "GetUnsentMessages"


class ApiClient:
    """
    Async JSON client over ``httpx.AsyncClient``.

    Args:
        base_url:  API base URL; request paths are relative to it.
        timeout:   HTTP request timeout in seconds.
        verify:    Verify TLS certificates.  The local API usually runs with
                   a self-signed certificate, so deployments may turn this off.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.verify = verify
        self._transport = transport
        self._token: Optional[str] = None
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.base_url + "/",
                verify=self.verify,
                timeout=self.timeout,
                transport=self._transport,
            )
            logger.debug("ApiClient: HTTP transport initialised for %s.", self.base_url)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("ApiClient: HTTP transport closed for %s.", self.base_url)

    async def __aenter__(self) -> "ApiClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    def set_token(self, token: str) -> None:
        """Send ``Authorization: Bearer <token>`` on subsequent requests."""
        self._token = token

    # ── Internal request helper ──────────────────────────────────────────────

    async def _request(self, method: str, path: str, *, json: Optional[Any] = None) -> Any:
        """
        Execute a request and return the decoded JSON body (``None`` if empty).

        Raises:
            RuntimeError: if ``connect()`` / ``__aenter__`` was not called.
            ApiError:     transport failure (status 0), non-2xx status, or a
                          body that is not JSON.
        """
        if self._http is None:
            raise RuntimeError(
                "ApiClient is not connected. "
                "Use 'async with ApiClient(url) as client:' or call connect() first."
            )

        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        url = f"{self.base_url}/{path}"
        try:
            resp = await self._http.request(method, path, headers=headers, json=json)
        except httpx.HTTPError as exc:
            raise ApiError(0, str(exc), url) from exc

        if resp.status_code not in range(200, 300):
            raise ApiError(resp.status_code, resp.text, url)

        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise ApiError(resp.status_code, f"response is not JSON: {exc}", url) from exc

    async def get_json(self, path: str) -> Any:
        return await self._request("GET", path)

    async def post_json(self, path: str, payload: Any) -> Any:
        return await self._request("POST", path, json=payload)

    # ── Remote API ───────────────────────────────────────────────────────────

    async def login(self, credentials: ClientCredentials) -> UserInfo:
        """
        Log in to the remote API and keep the returned bearer token.

        Raises:
            ApiError: the call fails or the response carries no token.
        """
        info = LoginInfo(user_name=credentials.user_name or "", password=credentials.password or "")
        body = await self.post_json(LOGIN_PATH, info.model_dump(by_alias=True))
        try:
            user = UserInfo.model_validate(body or {})
        except ValidationError as exc:
            raise ApiError(200, f"invalid login response: {exc}", f"{self.base_url}/{LOGIN_PATH}") from exc

        if not user.token:
            raise ApiError(200, "login response has no token", f"{self.base_url}/{LOGIN_PATH}")

        self.set_token(user.token)
        logger.info("ApiClient: logged in as %s (account %d).", user.user_name, user.account_id)
        return user

    async def get_config_info(
        self,
        account_id: int,
        software_id: int,
        decryptor: Optional[Decryptor] = None,
    ) -> Optional[RemoteConfig]:
        """
        Fetch the service configuration for an account / software pair.

        Returns:
            RemoteConfig with connection strings decrypted, or ``None`` when
            the API has no configuration for the pair (empty or non-object
            body).

        Raises:
            ApiError: the request fails.
        """
        request = ConfigRequestInfo(
            configuration_account_id=str(account_id),
            configuration_software_id=str(software_id),
        )
        body = await self.post_json(SYSTEM_CONFIG_PATH, request.model_dump(by_alias=True))
        if not isinstance(body, dict):
            logger.info("ApiClient: no remote config for account %d.", account_id)
            return None

        try:
            config = RemoteConfig.model_validate(body)
        except ValidationError as exc:
            logger.warning("ApiClient: remote config for account %d is invalid: %s", account_id, exc)
            return None

        decryptor = decryptor or NullDecryptor()
        return config.model_copy(update={
            "bp_database_connection_string": decrypt_or_keep(
                decryptor, config.bp_database_connection_string
            ),
            "md_database_hcn_connection_string": decrypt_or_keep(
                decryptor, config.md_database_hcn_connection_string
            ),
        })

    # ── Local API ────────────────────────────────────────────────────────────

    async def get_unsent_messages(self) -> List[ResultRecord]:
        """
        Fetch the pending result records from the local API.

        Raises:
            ApiError: the request fails or the body is not a record array.
        """
        body = await self.get_json(UNSENT_MESSAGES_PATH)
        try:
            records = parse_records(body)
        except ValidationError as exc:
            raise ApiError(
                200, f"invalid result records: {exc}", f"{self.base_url}/{UNSENT_MESSAGES_PATH}"
            ) from exc
        logger.info("ApiClient: %d unsent result message(s) received.", len(records))
        return records
