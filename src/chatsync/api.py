from __future__ import annotations

import asyncio
import contextlib
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Protocol

from .constants import DEFAULT_API_URL, DEFAULT_REQUEST_TIMEOUT_S, USER_AGENT
from .exceptions import (
    InvalidArgumentError,
    PermissionDeniedError,
    RemoteApiError,
    TransportError,
)
from .models import ENTITY_TYPES, Entity, EntityDelta, EntityKind
from .util import json as jsonutil


class RemoteApi(Protocol):
    """
    Authoritative store for chats and friends.

    Implementations raise `TransportError` for network trouble,
    `PermissionDeniedError` for HTTP 403 and `RemoteApiError` for any other
    non-success answer.
    """

    async def fetch_all(self, kind: EntityKind, token: str) -> list[Entity]: ...

    async def fetch_delta(
        self, kind: EntityKind, token: str, cursor: str | None = None
    ) -> EntityDelta: ...

    async def delete(self, kind: EntityKind, entity_id: str, token: str) -> None: ...

    async def leave(self, kind: EntityKind, entity_id: str, token: str) -> None: ...


_COLLECTION = {EntityKind.CHAT: "chats", EntityKind.FRIEND: "friends"}


def parse_entity_list(kind: EntityKind, payload: Any) -> list[Entity]:
    if isinstance(payload, dict):
        payload = payload.get(_COLLECTION[kind], payload.get("items", []))
    if not isinstance(payload, list):
        raise RemoteApiError(
            f"expected a list of {kind.value} objects, got {type(payload).__name__}"
        )
    cls = ENTITY_TYPES[kind]
    out: list[Entity] = []
    for item in payload:
        if not isinstance(item, dict):
            raise RemoteApiError(f"malformed {kind.value} entry: {item!r}")
        try:
            out.append(cls.from_payload(item))
        except ValueError as e:
            raise RemoteApiError(str(e)) from e
    return out


def parse_entity_delta(kind: EntityKind, payload: Any) -> EntityDelta:
    """
    Accept either a plain list (treated as upserts) or a delta object.

    Delta objects use `new_<kind>s` / `updated_<kind>s` / `deleted_<kind>_ids`
    and an optional `cursor`.
    """

    if isinstance(payload, list):
        return EntityDelta(upserted=parse_entity_list(kind, payload))
    if not isinstance(payload, dict):
        raise RemoteApiError(f"unexpected delta payload: {type(payload).__name__}")

    name = _COLLECTION[kind]
    items: list[Any] = []
    for key in (f"new_{name}", f"updated_{name}", name):
        value = payload.get(key)
        if isinstance(value, list):
            items.extend(value)
    removed = payload.get(f"deleted_{kind.value}_ids") or payload.get("deleted_ids") or []
    if not isinstance(removed, list):
        raise RemoteApiError(f"malformed deleted ids: {removed!r}")
    cursor = payload.get("cursor")
    return EntityDelta(
        upserted=parse_entity_list(kind, items),
        removed_ids=[str(i) for i in removed],
        cursor=str(cursor) if cursor is not None else None,
    )


class HttpRemoteApi:
    """`RemoteApi` over the REST endpoints, using urllib in a worker thread."""

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        *,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.headers = dict(headers or {})

    async def fetch_all(self, kind: EntityKind, token: str) -> list[Entity]:
        body = await self._call("GET", f"/{_COLLECTION[kind]}", token)
        return parse_entity_list(kind, body)

    async def fetch_delta(
        self, kind: EntityKind, token: str, cursor: str | None = None
    ) -> EntityDelta:
        path = f"/{_COLLECTION[kind]}"
        if cursor:
            path += "?" + urllib.parse.urlencode({"since": cursor})
        body = await self._call("GET", path, token)
        return parse_entity_delta(kind, body)

    async def delete(self, kind: EntityKind, entity_id: str, token: str) -> None:
        await self._call("DELETE", f"/{_COLLECTION[kind]}/{_quote(entity_id)}", token)

    async def leave(self, kind: EntityKind, entity_id: str, token: str) -> None:
        if kind is not EntityKind.CHAT:
            raise InvalidArgumentError(f"leave is not supported for {kind.value}")
        await self._call("DELETE", f"/chats/{_quote(entity_id)}/leave", token)

    async def _call(self, method: str, path: str, token: str) -> Any:
        raw = await asyncio.to_thread(self._request, method, self.base_url + path, token)
        if not raw:
            return None
        try:
            return jsonutil.loads(raw)
        except ValueError as e:
            raise RemoteApiError(f"{method} {path}: invalid JSON response") from e

    def _request(self, method: str, url: str, token: str) -> bytes:
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
            **self.headers,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        req = urllib.request.Request(url, headers=headers, method=method)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                return bytes(resp.read())
        except urllib.error.HTTPError as e:
            body = b""
            with contextlib.suppress(Exception):
                body = e.read()
            text = body[:200].decode("utf-8", "replace")
            if e.code == 403:
                raise PermissionDeniedError(f"{method} {url}: forbidden", body=text) from e
            raise RemoteApiError(f"{method} {url}: http {e.code}", status=e.code, body=text) from e
        except (urllib.error.URLError, OSError) as e:
            raise TransportError(f"{method} {url} failed: {e}") from e


def _quote(segment: str) -> str:
    return urllib.parse.quote(segment, safe="")
