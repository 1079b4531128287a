"""Async client for the Firebase Realtime Database REST and streaming API."""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import httpx

from .config import FirebaseConfig, firebase_config
from .errors import BackendError, BackendWriteError

logger = logging.getLogger(__name__)

SIGN_UP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:signUp"


def parse_sse_lines(lines: list[str]) -> Tuple[Optional[str], Any]:
    """Turn the lines of one server-sent event into ``(event, payload)``."""
    event: Optional[str] = None
    data_lines: list[str] = []
    for line in lines:
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)
    raw = "\n".join(data_lines)
    if not raw:
        return event, None
    try:
        return event, json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed %s event payload: %.120s", event, raw)
        return event, None


class FirebaseClient:
    """Reads, writes and streams paths below the hospital root."""

    def __init__(
        self,
        config: FirebaseConfig = firebase_config,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(
            base_url=config.database_url,
            timeout=config.request_timeout,
            follow_redirects=True,
        )
        self._id_token: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self._id_token or self._config.database_secret)

    def _url(self, path: str) -> str:
        parts = [self._config.root.strip("/"), path.strip("/")]
        return "/" + "/".join(part for part in parts if part) + ".json"

    def _params(self, **extra: Any) -> Dict[str, Any]:
        params = {key: value for key, value in extra.items() if value is not None}
        token = self._id_token or self._config.database_secret
        if token:
            params["auth"] = token
        return params

    async def sign_in_anonymously(self) -> bool:
        """Try anonymous sign-in; failure leaves the client unauthenticated."""
        if not self._config.api_key:
            return False
        try:
            response = await self._client.post(
                SIGN_UP_URL,
                params={"key": self._config.api_key},
                json={"returnSecureToken": True},
            )
            response.raise_for_status()
            token = response.json().get("idToken")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Anonymous sign-in failed, continuing unauthenticated: %s", exc)
            return False
        if not token:
            logger.warning("Anonymous sign-in returned no token, continuing unauthenticated")
            return False
        self._id_token = token
        logger.info("Signed in anonymously")
        return True

    async def get(self, path: str, **params: Any) -> Any:
        try:
            response = await self._client.get(self._url(path), params=self._params(**params))
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise BackendError(f"Could not read {path or '/'}: {exc}") from exc

    async def update(self, path: str, patch: Dict[str, Any]) -> None:
        """Partial update. Keys may be relative paths; the batch commits atomically."""
        await self._write("PATCH", path, patch)

    async def put(self, path: str, value: Any) -> None:
        await self._write("PUT", path, value)

    async def push(self, path: str, value: Any) -> str:
        body = await self._write("POST", path, value)
        return str((body or {}).get("name", ""))

    async def _write(self, method: str, path: str, value: Any) -> Any:
        try:
            response = await self._client.request(
                method, self._url(path), params=self._params(), json=value
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise BackendWriteError(f"Write to {path or '/'} failed: {exc}") from exc

    async def stream(self, path: str) -> AsyncIterator[Tuple[str, Any]]:
        """Yield ``(event, payload)`` pairs from the server-sent event stream."""
        timeout = httpx.Timeout(self._config.request_timeout, read=None)
        try:
            async with self._client.stream(
                "GET",
                self._url(path),
                params=self._params(),
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as response:
                response.raise_for_status()
                lines: list[str] = []
                async for line in response.aiter_lines():
                    if line:
                        lines.append(line)
                        continue
                    if lines:
                        event, payload = parse_sse_lines(lines)
                        lines = []
                        if event:
                            yield event, payload
        except httpx.HTTPError as exc:
            raise BackendError(f"Stream for {path or '/'} failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()
