"""Proveedor Google Drive (API REST v3) para el backup cifrado."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from dateutil import parser as date_parser

from bitebudget.providers.base import RemoteInfo, StorageProvider
from bitebudget.sync.errors import AuthenticationExpiredError, ProviderError

logger = logging.getLogger(__name__)

DRIVE_API = "https://www.googleapis.com/drive/v3/files"
DRIVE_UPLOAD_API = "https://www.googleapis.com/upload/drive/v3/files"
FOLDER_MIME = "application/vnd.google-apps.folder"
FOLDER_NAME = "BiteBudget"
DEFAULT_TIMEOUT = 30.0

TokenSource = Callable[[], Awaitable[str]]


class GoogleDriveProvider(StorageProvider):
    """Stores ``bitebudget-data.enc`` inside a ``BiteBudget`` Drive folder."""

    def __init__(
        self,
        token_source: TokenSource,
        *,
        client: httpx.AsyncClient | None = None,
        folder_name: str = FOLDER_NAME,
    ) -> None:
        """Create the provider.

        Args:
            token_source: Coroutine returning a valid access token
                (usually ``OAuthClient.ensure_valid_token``).
            client: Optional shared HTTP client.
            folder_name: Drive folder holding the backup.
        """
        self._token_source = token_source
        self._client = client
        self._folder_name = folder_name
        self._folder_id: str | None = None

    async def upload(self, blob: str) -> None:
        folder_id = await self._ensure_folder()
        file_id = await self._find_file(folder_id)

        metadata: dict[str, Any] = {
            "name": self.file_name,
            "mimeType": "application/octet-stream",
        }
        if file_id is None:
            metadata["parents"] = [folder_id]
        body, content_type = _multipart_related(metadata, blob)

        if file_id is None:
            method, url = "POST", f"{DRIVE_UPLOAD_API}?uploadType=multipart"
        else:
            method, url = "PATCH", f"{DRIVE_UPLOAD_API}/{file_id}?uploadType=multipart"
        await self._request(
            method, url, content=body, headers={"Content-Type": content_type}
        )
        logger.info("Uploaded backup to Drive (%d bytes)", len(blob))

    async def download(self) -> str | None:
        file_id = await self._find_file(await self._ensure_folder())
        if file_id is None:
            return None
        resp = await self._request("GET", f"{DRIVE_API}/{file_id}", params={"alt": "media"})
        return resp.text

    async def info(self) -> RemoteInfo | None:
        file_id = await self._find_file(await self._ensure_folder())
        if file_id is None:
            return None
        resp = await self._request(
            "GET", f"{DRIVE_API}/{file_id}", params={"fields": "modifiedTime,size"}
        )
        data = _json(resp)
        try:
            return RemoteInfo(
                modified=date_parser.isoparse(str(data["modifiedTime"])),
                size=int(data.get("size", 0)),
            )
        except (KeyError, ValueError) as exc:
            raise ProviderError("Drive returned incomplete file metadata") from exc

    async def delete(self) -> None:
        file_id = await self._find_file(await self._ensure_folder())
        if file_id is None:
            return
        await self._request("DELETE", f"{DRIVE_API}/{file_id}")
        logger.info("Deleted Drive backup %s", file_id)

    async def _ensure_folder(self) -> str:
        if self._folder_id is not None:
            return self._folder_id

        query = (
            f"name='{self._folder_name}' and mimeType='{FOLDER_MIME}' "
            "and trashed=false"
        )
        resp = await self._request(
            "GET", DRIVE_API, params={"q": query, "fields": "files(id)"}
        )
        files = _json(resp).get("files") or []
        if files:
            self._folder_id = str(files[0]["id"])
            return self._folder_id

        resp = await self._request(
            "POST", DRIVE_API, json={"name": self._folder_name, "mimeType": FOLDER_MIME}
        )
        self._folder_id = str(_json(resp)["id"])
        logger.info("Created Drive folder %s", self._folder_name)
        return self._folder_id

    async def _find_file(self, folder_id: str) -> str | None:
        query = f"name='{self.file_name}' and '{folder_id}' in parents and trashed=false"
        resp = await self._request(
            "GET", DRIVE_API, params={"q": query, "fields": "files(id)"}
        )
        files = _json(resp).get("files") or []
        if not files:
            return None
        return str(files[0]["id"])

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = await self._token_source()
        headers = {"Authorization": f"Bearer {token}", **kwargs.pop("headers", {})}
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, headers=headers, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
                    resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Drive request failed: {exc}") from exc

        if resp.status_code == 401:
            raise AuthenticationExpiredError(
                "Drive authentication failed - token may have expired"
            )
        if resp.status_code >= 400:
            raise ProviderError(
                f"Drive {method} failed with HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        return resp


def _json(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as exc:
        raise ProviderError("Drive returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise ProviderError("Drive returned an unexpected payload")
    return data


def _multipart_related(metadata: dict[str, Any], blob: str) -> tuple[bytes, str]:
    boundary = f"bitebudget-{uuid.uuid4().hex}"
    parts = [
        f"--{boundary}",
        "Content-Type: application/json; charset=UTF-8",
        "",
        json.dumps(metadata),
        f"--{boundary}",
        "Content-Type: application/octet-stream",
        "",
        blob,
        f"--{boundary}--",
        "",
    ]
    body = "\r\n".join(parts).encode("utf-8")
    return body, f"multipart/related; boundary={boundary}"
