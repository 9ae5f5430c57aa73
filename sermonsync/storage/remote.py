"""Cloud backend adapter.

SupabaseBackend talks to the serverless sermon API over httpx and uses the
supabase client for the signed-in session and for public storage URLs.
All failures are mapped onto the sermonsync error taxonomy:

- transport errors, timeouts and 5xx  -> NetworkError
- other unexpected 4xx                -> RemoteRequestError (a NetworkError)
- 401 after one silent refresh        -> AuthError
- bodies that are not the right shape -> DataCorruptionError
"""

import asyncio
import hashlib
import logging
from pathlib import Path
from typing import Any, Optional, TypeVar
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError

from sermonsync.config import Settings, get_settings
from sermonsync.protocols import (
    AuthError,
    DataCorruptionError,
    NetworkError,
    RemoteRequestError,
)
from sermonsync.types import Note, Summary, Transcript, new_id

from .models import ApiEnvelope, CreateResult, RemoteSermon, UploadSlot, children_payload

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_SERMON_LIST = TypeAdapter(list[RemoteSermon])

CREATE_PATH = "/api/create-sermon"
UPDATE_PATH = "/api/update-sermon"
LIST_PATH = "/api/get-sermons"
UPLOAD_URL_PATH = "/api/generate-upload-url"
DELETE_USER_DATA_PATH = "/api/delete-user-data"


def _validate(model: type[ModelT], data: Any) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise DataCorruptionError(f"Unexpected {model.__name__} payload: {e}") from e


class SupabaseBackend:
    """RemoteBackend implementation for the hosted sermon API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        supabase_client: Any = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        if supabase_client is None:
            from supabase import create_client

            if not self.settings.supabase_url or not self.settings.supabase_publishable_key:
                raise ValueError("supabase_url and supabase_publishable_key must be set")
            supabase_client = create_client(
                self.settings.supabase_url, self.settings.supabase_publishable_key
            )
        self._supabase = supabase_client
        self._http = http_client or httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.request_timeout,
        )
        self.audio_dir = Path(self.settings.audio_dir)

    async def __aenter__(self) -> "SupabaseBackend":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # === Session ===

    def _auth_headers(self) -> dict[str, str]:
        session = self._supabase.auth.get_session()
        if session is None or not getattr(session, "access_token", None):
            raise AuthError("No signed-in session")
        return {
            "Authorization": f"Bearer {session.access_token}",
            "Content-Type": "application/json",
        }

    async def _refresh_session(self) -> None:
        try:
            await asyncio.to_thread(self._supabase.auth.refresh_session)
        except Exception as e:
            raise AuthError(f"Session refresh failed: {e}") from e

    # === HTTP ===

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send an authenticated request, refreshing the session once on 401."""
        for attempt in range(2):
            headers = self._auth_headers()
            try:
                response = await self._http.request(method, url, headers=headers, **kwargs)
            except httpx.TimeoutException as e:
                raise NetworkError(f"{method} {url} timed out") from e
            except httpx.HTTPError as e:
                raise NetworkError(f"{method} {url} failed: {e}") from e

            if response.status_code != 401:
                return response
            if attempt == 0:
                logger.info("Access token rejected, refreshing session")
                await self._refresh_session()
        raise AuthError(f"{method} {url} unauthorized after session refresh")

    def _data(self, response: httpx.Response) -> Any:
        """Check status and unwrap the ``data`` field of the response envelope."""
        if response.status_code >= 500:
            raise NetworkError(f"Server error {response.status_code} from {response.url}")
        if response.status_code >= 400:
            raise RemoteRequestError(response.status_code, _error_message(response))
        try:
            body = response.json()
        except ValueError as e:
            raise DataCorruptionError(f"Response from {response.url} is not JSON") from e
        return _validate(ApiEnvelope, body).data

    # === RemoteBackend ===

    async def create_aggregate(self, payload: dict[str, Any]) -> CreateResult:
        response = await self._send("POST", CREATE_PATH, json=payload)
        if response.status_code == 409:
            logger.info(f"Sermon {payload.get('localId')} already exists remotely")
            return CreateResult(conflict=True)
        row = self._data(response)
        if not isinstance(row, dict):
            raise DataCorruptionError("create-sermon returned no sermon row")
        return _validate(
            CreateResult,
            {
                "remote_id": row.get("id"),
                "created_at": row.get("created_at"),
                "updated_at": row.get("updated_at"),
            },
        )

    async def update_aggregate(self, remote_id: str, payload: dict[str, Any]) -> None:
        response = await self._send("PUT", UPDATE_PATH, json={**payload, "remoteId": remote_id})
        self._data(response)

    async def push_children(
        self,
        remote_id: str,
        notes: Optional[list[Note]],
        transcript: Optional[Transcript],
        summary: Optional[Summary],
    ) -> dict[str, str]:
        body = {"remoteId": remote_id, **children_payload(notes, transcript, summary)}
        response = await self._send("PUT", UPDATE_PATH, json=body)
        data = self._data(response)
        # Newer API versions echo the ids they assigned to each child
        if isinstance(data, dict) and isinstance(data.get("children"), dict):
            return {str(k): str(v) for k, v in data["children"].items()}
        return {}

    async def fetch_aggregates(self, user_id: str) -> list[RemoteSermon]:
        response = await self._send("GET", LIST_PATH, params={"userId": user_id})
        data = self._data(response)
        try:
            return _SERMON_LIST.validate_python(data or [])
        except ValidationError as e:
            raise DataCorruptionError(f"Unexpected sermon list payload: {e}") from e

    async def get_signed_upload_slot(
        self, asset_name: str, content_type: str, size_bytes: int
    ) -> UploadSlot:
        response = await self._send(
            "POST",
            UPLOAD_URL_PATH,
            json={"fileName": asset_name, "contentType": content_type, "fileSize": size_bytes},
        )
        return _validate(UploadSlot, self._data(response))

    async def upload_asset(self, local_path: Path, upload_url: str) -> None:
        content = await asyncio.to_thread(Path(local_path).read_bytes)
        try:
            response = await self._http.put(
                upload_url,
                content=content,
                headers={"Content-Type": "application/octet-stream"},
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Audio upload failed: {e}") from e
        if response.status_code >= 500:
            raise NetworkError(f"Audio upload failed with {response.status_code}")
        if response.status_code >= 400:
            raise RemoteRequestError(response.status_code, _error_message(response))
        logger.debug(f"Uploaded {local_path} ({len(content)} bytes)")

    async def get_public_asset_url(self, storage_path: str) -> str:
        url = self._supabase.storage.from_(self.settings.storage_bucket).get_public_url(
            storage_path
        )
        if not isinstance(url, str) or not url:
            raise DataCorruptionError(f"No public URL for {storage_path}")
        return url.rstrip("?")

    async def download_asset(self, url: str) -> Path:
        self.audio_dir.mkdir(parents=True, exist_ok=True)
        target = self.audio_dir / local_audio_name(url)
        try:
            async with self._http.stream("GET", url) as response:
                if response.status_code >= 500:
                    raise NetworkError(f"Audio download failed with {response.status_code}")
                if response.status_code >= 400:
                    raise RemoteRequestError(response.status_code, f"Audio download of {url} rejected")
                with open(target, "wb") as fh:
                    async for chunk in response.aiter_bytes():
                        fh.write(chunk)
        except httpx.HTTPError as e:
            target.unlink(missing_ok=True)
            raise NetworkError(f"Audio download failed: {e}") from e
        return target

    async def delete_all_user_data(self, user_id: str) -> None:
        response = await self._send("POST", DELETE_USER_DATA_PATH, json={"userId": user_id})
        self._data(response)

    async def health_check(self) -> bool:
        """Unauthenticated reachability check against ``/health``."""
        try:
            response = await self._http.get("/health", timeout=self.settings.health_timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Health check failed: {e}")
            return False
        return response.status_code == 200


def local_audio_name(url: str) -> str:
    """Local file name for a downloaded recording, unique per source path."""
    path = urlparse(url).path
    name = Path(path).name or f"{new_id()}.m4a"
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    return f"{digest}-{name}"


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)[:200]
    return str(body)[:200]
