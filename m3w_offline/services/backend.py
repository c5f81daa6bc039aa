"""
Backend REST client.
- Bearer token comes from the token store on every call (it can change at any time).
- Unwraps the {success, data} envelope.
- 401 surfaces as AuthExpiredError so callers can stop and wait for a refresh.
- Replays queued create/update/delete mutations.
"""
import logging
from typing import Any, Optional

import aiohttp

from m3w_offline.config.settings import settings
from m3w_offline.services.models import EntityKind, MutationOperation
from m3w_offline.services.token_store import TokenStore
from m3w_offline.utils.http_client import NetworkError, bearer_headers, fetch_json, send_json

logger = logging.getLogger(__name__)

_COLLECTIONS = {
    EntityKind.LIBRARY: "libraries",
    EntityKind.PLAYLIST: "playlists",
    EntityKind.SONG: "songs",
}

_METHODS = {
    MutationOperation.CREATE: "POST",
    MutationOperation.UPDATE: "PATCH",
    MutationOperation.DELETE: "DELETE",
}


class BackendClient:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        token_store: TokenStore,
        base_url: Optional[str] = None,
    ):
        self._session = session
        self._tokens = token_store
        self._base_url = (base_url or settings.BACKEND_URL).rstrip("/")

    @property
    def base_url(self) -> str:
        return self._base_url

    async def list_libraries(self) -> list[dict[str, Any]]:
        return await self._get_list("/api/libraries")

    async def list_playlists(self) -> list[dict[str, Any]]:
        return await self._get_list("/api/playlists")

    async def list_library_songs(self, library_id: str) -> list[dict[str, Any]]:
        return await self._get_list(f"/api/libraries/{library_id}/songs")

    async def list_playlist_songs(self, playlist_id: str) -> list[dict[str, Any]]:
        return await self._get_list(f"/api/playlists/{playlist_id}/songs")

    async def send_mutation(
        self,
        operation: MutationOperation,
        kind: EntityKind,
        entity_id: str,
        data: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Apply one change on the backend. Returns the unwrapped record (None for deletes)."""
        path = f"/api/{_COLLECTIONS[kind]}"
        if operation is not MutationOperation.CREATE:
            path = f"{path}/{entity_id}"
        token = await self._tokens.read_token()
        payload = await send_json(
            self._session,
            _METHODS[operation],
            f"{self._base_url}{path}",
            headers=bearer_headers(token),
            json_body=data if operation is not MutationOperation.DELETE else None,
        )
        if payload is None and operation is MutationOperation.DELETE:
            return None
        return _unwrap(payload, path)

    async def _get_list(self, path: str) -> list[dict[str, Any]]:
        data = await self._get(path)
        if not isinstance(data, list):
            raise NetworkError(0, f"Expected a list from {path}, got {type(data).__name__}")
        return data

    async def _get(self, path: str) -> Any:
        token = await self._tokens.read_token()
        payload = await fetch_json(
            self._session,
            f"{self._base_url}{path}",
            headers=bearer_headers(token),
        )
        return _unwrap(payload, path)


def _unwrap(payload: Any, path: str) -> Any:
    if not isinstance(payload, dict) or "success" not in payload:
        raise NetworkError(0, f"Malformed response envelope from {path}")
    if not payload["success"]:
        raise NetworkError(0, f"{path} failed: {payload.get('error', 'unknown error')}")
    return payload.get("data")
