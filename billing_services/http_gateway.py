"""
HttpRemoteGateway -- RemoteGateway over the JSON REST API.

Responsibility:
    Maps ``create`` / ``update`` / ``delete`` onto the configured route
    table, attaches ``Authorization: Bearer <token>``, and on HTTP 401
    refreshes the session once and retries. Every reply goes through
    ``interpret_response``.

Architecture position:
    Services -- the network boundary. ``requests`` is blocking, so each
    call runs in a worker thread via ``asyncio.to_thread`` and the event
    loop stays free for other in-flight mutations.

Failure modes:
    - TransportFailure: connection error, request timeout, non-JSON body,
      or no route configured for the operation.
    - RemoteRejection: non-2xx / ``status: false``; "Session expired" when
      the refresh itself fails.
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Protocol

import requests

from billing_config.schema import RemoteOperation, RemoteSettings
from billing_kernel.envelope import interpret_response
from billing_kernel.exceptions import RemoteRejection, TransportFailure
from billing_kernel.logging_config import get_logger

logger = get_logger("services.http_gateway")

SESSION_EXPIRED = "Session expired"

_METHODS = {
    RemoteOperation.CREATE: "POST",
    RemoteOperation.UPDATE: "PUT",
    RemoteOperation.DELETE: "DELETE",
}


class CredentialProvider(Protocol):
    """Source of the bearer token. Owned by the auth layer."""

    @property
    def token(self) -> str | None: ...

    def store(self, token: str) -> None: ...


class InMemoryCredentials:
    def __init__(self, token: str | None = None):
        self._token = token

    @property
    def token(self) -> str | None:
        return self._token

    def store(self, token: str) -> None:
        self._token = token


class HttpRemoteGateway:
    """RemoteGateway backed by ``requests``."""

    def __init__(
        self,
        settings: RemoteSettings,
        credentials: CredentialProvider,
        session: requests.Session | None = None,
    ):
        self._settings = settings
        self._credentials = credentials
        self._session = session or requests.Session()

    async def create(self, collection: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(
            self._call, RemoteOperation.CREATE, collection, None, payload
        )

    async def update(
        self, collection: str, entity_id: str, payload: Mapping[str, Any]
    ) -> dict[str, Any]:
        return await asyncio.to_thread(
            self._call, RemoteOperation.UPDATE, collection, entity_id, payload
        )

    async def delete(self, collection: str, entity_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(
            self._call, RemoteOperation.DELETE, collection, entity_id, None
        )

    # -- blocking internals ----------------------------------------------------

    def url_for(
        self,
        operation: RemoteOperation,
        collection: str,
        entity_id: str | None,
        payload: Mapping[str, Any] | None,
    ) -> str:
        template = self._settings.route(collection, operation)
        if template is None:
            raise TransportFailure(f"no {operation.value} route for {collection}")
        try:
            path = template.format(id=entity_id or "", **dict(payload or {}))
        except KeyError as exc:
            raise TransportFailure(f"route {template!r} needs field {exc.args[0]!r}") from None
        return f"{self._settings.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _call(
        self,
        operation: RemoteOperation,
        collection: str,
        entity_id: str | None,
        payload: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        url = self.url_for(operation, collection, entity_id, payload)
        method = _METHODS[operation]
        response = self._send(method, url, payload)
        if response.status_code == 401:
            logger.info("session_refresh_started", extra={"url": url})
            self._refresh()
            response = self._send(method, url, payload)
        return interpret_response(response.status_code, self._json(response))

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        token = self._credentials.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _send(
        self, method: str, url: str, payload: Mapping[str, Any] | None
    ) -> requests.Response:
        try:
            return self._session.request(
                method,
                url,
                json=dict(payload) if payload is not None else None,
                headers=self._headers(),
                timeout=self._settings.request_timeout_seconds,
            )
        except requests.exceptions.Timeout:
            logger.warning("http_request_timeout", extra={"url": url, "method": method})
            raise TransportFailure(
                f"request timed out after {self._settings.request_timeout_seconds}s"
            ) from None
        except requests.exceptions.RequestException as exc:
            logger.warning("http_request_failed", extra={"url": url, "method": method})
            raise TransportFailure(str(exc)) from exc

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            raise TransportFailure(
                f"unreadable response body (HTTP {response.status_code})"
            ) from None

    def _refresh(self) -> None:
        url = f"{self._settings.base_url.rstrip('/')}/{self._settings.refresh_path.lstrip('/')}"
        response = self._send("POST", url, None)
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, Mapping):
            body = {}
        token = body.get("token")
        if not (response.ok and body.get("status") and token):
            message = body.get("message") or SESSION_EXPIRED
            logger.warning("session_refresh_failed", extra={"status_code": response.status_code})
            raise RemoteRejection(message, status_code=response.status_code)
        self._credentials.store(token)
        logger.info("session_refreshed")
