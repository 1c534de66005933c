from __future__ import annotations

import base64
import hashlib
import json
import os
import re
import tempfile
import time
from typing import Dict, Optional, Tuple
from urllib.parse import quote

import dropbox
import requests
from dropbox.exceptions import ApiError, AuthError, HttpError, RateLimitError

from .storage_csal import (
    DEFAULT_CONTENT_TYPE,
    CapacityExceededError,
    DeleteResult,
    DownloadResult,
    ProviderConfig,
    ProviderConfigError,
    StorageAdapter,
    StorageAuthError,
    StoragePermanentError,
    StorageTransientError,
    UploadResult,
    register_adapter,
)
from .storage_rotation import ContainerRotation


USER_AGENT = "ShelfVault"


def _safe_key(object_key: str) -> str:
    return str(object_key or "").replace("/", "_").replace("\\", "_")


def _check_response(response: requests.Response, what: str) -> None:
    status = response.status_code
    if status < 400:
        return
    detail = f"{what} failed with status {status}: {response.text[:512]}"
    if status in {401, 403}:
        raise StorageAuthError(detail)
    if status == 429 or status >= 500:
        raise StorageTransientError(detail)
    raise StoragePermanentError(detail)


def _json_payload(response: requests.Response, what: str) -> Dict:
    try:
        payload = response.json()
    except Exception as exc:  # noqa: BLE001
        raise StoragePermanentError(f"{what} returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise StoragePermanentError(f"{what} returned unexpected JSON")
    return payload


def _content_type(response: requests.Response) -> str:
    return response.headers.get("Content-Type") or DEFAULT_CONTENT_TYPE


def _split_storage_id(storage_id: str, default_prefix: Optional[str]) -> Tuple[str, str]:
    """Split ``<prefix>:<rest>`` on the first colon."""

    if ":" in storage_id:
        prefix, rest = storage_id.split(":", 1)
        return prefix, rest
    if not default_prefix:
        raise StoragePermanentError(f"storage id {storage_id!r} has no container prefix")
    return default_prefix, storage_id


class GoogleDriveStorageAdapter(StorageAdapter):
    provider_id = "gdrive"

    def __init__(
        self,
        access_token: Optional[str] = None,
        folder_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_token: Optional[str] = None,
        timeout: float = 60.0,
    ) -> None:
        self._folder_id = folder_id or None
        self._client_id = (client_id or "").strip() or None
        self._client_secret = (client_secret or "").strip() or None
        self._refresh_token = (refresh_token or "").strip() or None
        self._access_token = (access_token or "").strip() or None
        self._access_token_expires_at: Optional[float] = None
        self._timeout = timeout

    def _can_refresh(self) -> bool:
        return bool(self._client_id and self._client_secret and self._refresh_token)

    def _get_access_token(self, force_refresh: bool = False) -> str:
        if not force_refresh:
            if self._access_token and self._refresh_token is None:
                return self._access_token

            now_ts = time.time()
            if (
                self._access_token
                and self._access_token_expires_at is not None
                and (self._access_token_expires_at - 30) > now_ts
            ):
                return self._access_token

        if not self._can_refresh():
            if self._access_token:
                return self._access_token
            raise StorageAuthError("Google Drive provider is missing OAuth credentials")

        token_url = "https://oauth2.googleapis.com/token"
        payload = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": self._refresh_token,
            "grant_type": "refresh_token",
        }
        resp = requests.post(token_url, data=payload, timeout=self._timeout)
        if resp.status_code >= 400:
            raise StorageAuthError(
                f"Google OAuth token refresh failed with status {resp.status_code}: {resp.text[:512]}"
            )
        data = _json_payload(resp, "Google OAuth token refresh")

        token = str(data.get("access_token") or "").strip()
        if not token:
            raise StorageAuthError("Google OAuth token refresh response missing access_token")
        expires_in = data.get("expires_in")
        try:
            expires_in_val = int(expires_in) if expires_in is not None else 3600
        except (TypeError, ValueError):
            expires_in_val = 3600

        self._access_token = token
        self._access_token_expires_at = time.time() + max(60, expires_in_val)
        return token

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        # One re-authentication after a 401 when a refresh token is available.
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {self._get_access_token()}"
        response = requests.request(method, url, headers=headers, timeout=self._timeout, **kwargs)
        if response.status_code == 401 and self._can_refresh():
            headers["Authorization"] = f"Bearer {self._get_access_token(force_refresh=True)}"
            response = requests.request(
                method, url, headers=headers, timeout=self._timeout, **kwargs
            )
        return response

    def upload(self, object_key: str, data: bytes, content_type: str) -> UploadResult:
        metadata: dict[str, object] = {"name": _safe_key(object_key)}
        if self._folder_id:
            metadata["parents"] = [self._folder_id]

        boundary = "----shelfvault-drive-boundary"
        meta_json = json.dumps(metadata).encode("utf-8")

        # Build a multipart/related body: JSON metadata + binary media.
        body_prefix = (
            f"--{boundary}\r\n"
            "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        ).encode("utf-8") + meta_json + (
            f"\r\n--{boundary}\r\n"
            f"Content-Type: {content_type or DEFAULT_CONTENT_TYPE}\r\n\r\n"
        ).encode("utf-8")
        body_suffix = f"\r\n--{boundary}--\r\n".encode("utf-8")
        body = body_prefix + data + body_suffix

        url = "https://www.googleapis.com/upload/drive/v3/files?uploadType=multipart"
        response = self._request(
            "POST",
            url,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            data=body,
        )
        _check_response(response, "Google Drive upload")
        payload = _json_payload(response, "Google Drive upload")
        file_id = payload.get("id")
        if not file_id:
            raise StoragePermanentError("Google Drive upload response missing file id")
        return UploadResult(
            success=True,
            storage_id=str(file_id),
            locator_url=f"https://drive.google.com/file/d/{file_id}/view",
        )

    def download(self, storage_id: str) -> DownloadResult:
        url = f"https://www.googleapis.com/drive/v3/files/{storage_id}?alt=media"
        response = self._request("GET", url)
        _check_response(response, "Google Drive download")
        return DownloadResult(success=True, data=response.content, content_type=_content_type(response))

    def delete(self, storage_id: str) -> DeleteResult:
        url = f"https://www.googleapis.com/drive/v3/files/{storage_id}"
        response = self._request("DELETE", url)
        _check_response(response, "Google Drive delete")
        return DeleteResult(success=True)


class DropboxStorageAdapter(StorageAdapter):
    provider_id = "dropbox"

    def __init__(self, access_token: str, root_path: Optional[str] = None, timeout: float = 60.0) -> None:
        self._root_path = (root_path or "").rstrip("/")
        self._dbx = dropbox.Dropbox(access_token, timeout=timeout)

    def _translate(self, exc: Exception, what: str) -> Exception:
        if isinstance(exc, AuthError):
            return StorageAuthError(f"{what} failed: {exc}")
        if isinstance(exc, (RateLimitError, HttpError)):
            return StorageTransientError(f"{what} failed: {exc}")
        if isinstance(exc, ApiError):
            return StoragePermanentError(f"{what} failed: {exc}")
        return StorageTransientError(f"{what} failed: {exc}")

    def upload(self, object_key: str, data: bytes, content_type: str) -> UploadResult:
        path = f"{self._root_path}/books/{_safe_key(object_key)}"
        try:
            meta = self._dbx.files_upload(
                data,
                path,
                mode=dropbox.files.WriteMode.add,
                autorename=True,
                mute=True,
            )
        except (ApiError, AuthError, HttpError, RateLimitError) as exc:
            raise self._translate(exc, "Dropbox upload") from exc
        return UploadResult(
            success=True,
            storage_id=str(meta.path_display),
            locator_url=str(getattr(meta, "id", "") or "") or None,
        )

    def download(self, storage_id: str) -> DownloadResult:
        try:
            _meta, response = self._dbx.files_download(storage_id)
        except (ApiError, AuthError, HttpError, RateLimitError) as exc:
            raise self._translate(exc, "Dropbox download") from exc
        try:
            data = response.content
            content_type = response.headers.get("Content-Type") or DEFAULT_CONTENT_TYPE
        finally:
            response.close()
        return DownloadResult(success=True, data=data, content_type=content_type)

    def delete(self, storage_id: str) -> DeleteResult:
        try:
            self._dbx.files_delete_v2(storage_id)
        except (ApiError, AuthError, HttpError, RateLimitError) as exc:
            raise self._translate(exc, "Dropbox delete") from exc
        return DeleteResult(success=True)


class OneDriveStorageAdapter(StorageAdapter):
    provider_id = "onedrive"

    def __init__(self, access_token: str, folder_id: Optional[str] = None, timeout: float = 60.0) -> None:
        self._access_token = access_token
        self._folder_id = (folder_id or "").strip() or "root"
        self._base_url = "https://graph.microsoft.com/v1.0"
        self._timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    def upload(self, object_key: str, data: bytes, content_type: str) -> UploadResult:
        url = f"{self._base_url}/me/drive/items/{self._folder_id}:/{_safe_key(object_key)}:/content"
        headers = self._headers()
        headers["Content-Type"] = content_type or DEFAULT_CONTENT_TYPE
        response = requests.put(url, headers=headers, data=data, timeout=self._timeout)
        _check_response(response, "OneDrive upload")
        payload = _json_payload(response, "OneDrive upload")
        file_id = payload.get("id")
        if not file_id:
            raise StoragePermanentError("OneDrive upload response missing file id")
        return UploadResult(
            success=True,
            storage_id=str(file_id),
            locator_url=payload.get("webUrl"),
        )

    def download(self, storage_id: str) -> DownloadResult:
        url = f"{self._base_url}/me/drive/items/{storage_id}/content"
        response = requests.get(url, headers=self._headers(), timeout=self._timeout)
        _check_response(response, "OneDrive download")
        return DownloadResult(success=True, data=response.content, content_type=_content_type(response))

    def delete(self, storage_id: str) -> DeleteResult:
        url = f"{self._base_url}/me/drive/items/{storage_id}"
        response = requests.delete(url, headers=self._headers(), timeout=self._timeout)
        _check_response(response, "OneDrive delete")
        return DeleteResult(success=True)


class PCloudStorageAdapter(StorageAdapter):
    provider_id = "pcloud"

    def __init__(self, access_token: str, folder_id: Optional[str] = None, timeout: float = 60.0) -> None:
        self._access_token = access_token
        self._folder_id = (folder_id or "").strip() or "0"
        self._api_base = "https://api.pcloud.com"
        self._timeout = timeout

    def _check_result(self, payload: Dict, what: str) -> None:
        try:
            code = int(payload.get("result", 0))
        except (TypeError, ValueError):
            code = -1
        if code != 0:
            raise StoragePermanentError(
                f"{what} error {code}: {str(payload.get('error') or '')[:200]}"
            )

    def upload(self, object_key: str, data: bytes, content_type: str) -> UploadResult:
        filename = _safe_key(object_key)
        url = f"{self._api_base}/uploadfile"
        params = {
            "access_token": self._access_token,
            "folderid": self._folder_id,
            "filename": filename,
        }
        files = {"file": (filename, data, content_type or DEFAULT_CONTENT_TYPE)}
        response = requests.post(url, params=params, files=files, timeout=self._timeout)
        _check_response(response, "pCloud upload")
        payload = _json_payload(response, "pCloud upload")
        self._check_result(payload, "pCloud upload")
        metadata = payload.get("metadata")
        file_id = None
        if isinstance(metadata, list) and metadata:
            file_id = metadata[0].get("fileid") or metadata[0].get("id")
        elif isinstance(metadata, dict):
            file_id = metadata.get("fileid") or metadata.get("id")
        if not file_id:
            raise StoragePermanentError("pCloud upload response missing file id")
        return UploadResult(
            success=True,
            storage_id=str(file_id),
            locator_url=f"https://my.pcloud.com/#page=filemanager&folder={self._folder_id}",
        )

    def download(self, storage_id: str) -> DownloadResult:
        # pCloud hands out a short-lived host/path pair for the actual bytes.
        link_response = requests.get(
            f"{self._api_base}/getfilelink",
            params={"access_token": self._access_token, "fileid": storage_id},
            timeout=self._timeout,
        )
        _check_response(link_response, "pCloud file link")
        link = _json_payload(link_response, "pCloud file link")
        self._check_result(link, "pCloud file link")
        hosts = link.get("hosts") or []
        path = link.get("path")
        if not hosts or not path:
            raise StoragePermanentError("pCloud file link response missing hosts/path")

        response = requests.get(f"https://{hosts[0]}{path}", timeout=self._timeout)
        _check_response(response, "pCloud download")
        return DownloadResult(success=True, data=response.content, content_type=_content_type(response))

    def delete(self, storage_id: str) -> DeleteResult:
        response = requests.get(
            f"{self._api_base}/deletefile",
            params={"access_token": self._access_token, "fileid": storage_id},
            timeout=self._timeout,
        )
        _check_response(response, "pCloud delete")
        self._check_result(_json_payload(response, "pCloud delete"), "pCloud delete")
        return DeleteResult(success=True)


class BoxStorageAdapter(StorageAdapter):
    provider_id = "box"

    def __init__(self, access_token: str, folder_id: Optional[str] = None, timeout: float = 60.0) -> None:
        self._access_token = access_token
        self._folder_id = (folder_id or "0").strip() or "0"
        self._upload_url = "https://upload.box.com/api/2.0/files/content"
        self._api_base = "https://api.box.com/2.0"
        self._timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    def upload(self, object_key: str, data: bytes, content_type: str) -> UploadResult:
        filename = _safe_key(object_key)
        attributes = {
            "name": filename,
            "parent": {"id": self._folder_id},
        }
        files = {
            "attributes": (None, json.dumps(attributes), "application/json"),
            "file": (filename, data, content_type or DEFAULT_CONTENT_TYPE),
        }
        response = requests.post(
            self._upload_url, headers=self._headers(), files=files, timeout=self._timeout
        )
        _check_response(response, "Box upload")
        payload = _json_payload(response, "Box upload")
        entries = payload.get("entries") or []
        if not entries:
            raise StoragePermanentError("Box upload response missing entries")
        file_id = entries[0].get("id")
        if not file_id:
            raise StoragePermanentError("Box upload response missing file id")
        return UploadResult(
            success=True,
            storage_id=str(file_id),
            locator_url=f"https://app.box.com/file/{file_id}",
        )

    def download(self, storage_id: str) -> DownloadResult:
        url = f"{self._api_base}/files/{storage_id}/content"
        response = requests.get(url, headers=self._headers(), timeout=self._timeout)
        _check_response(response, "Box download")
        return DownloadResult(success=True, data=response.content, content_type=_content_type(response))

    def delete(self, storage_id: str) -> DeleteResult:
        url = f"{self._api_base}/files/{storage_id}"
        response = requests.delete(url, headers=self._headers(), timeout=self._timeout)
        _check_response(response, "Box delete")
        return DeleteResult(success=True)


class YandexDiskStorageAdapter(StorageAdapter):
    provider_id = "yandex"

    def __init__(self, access_token: str, path: Optional[str] = None, timeout: float = 60.0) -> None:
        self._access_token = access_token
        self._path = (path or "").strip().rstrip("/") or "ShelfVault"
        self._api_base = "https://cloud-api.yandex.net/v1/disk/resources"
        self._timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"OAuth {self._access_token}"}

    def _href(self, endpoint: str, params: Dict[str, str], what: str) -> str:
        response = requests.get(
            f"{self._api_base}{endpoint}",
            headers=self._headers(),
            params=params,
            timeout=self._timeout,
        )
        _check_response(response, what)
        href = _json_payload(response, what).get("href")
        if not href:
            raise StoragePermanentError(f"{what} response missing href")
        return str(href)

    def upload(self, object_key: str, data: bytes, content_type: str) -> UploadResult:
        path = f"{self._path}/{_safe_key(object_key)}"
        href = self._href(
            "/upload", {"path": path, "overwrite": "true"}, "Yandex Disk upload URL"
        )
        response = requests.put(
            href,
            headers={"Content-Type": content_type or DEFAULT_CONTENT_TYPE},
            data=data,
            timeout=self._timeout,
        )
        _check_response(response, "Yandex Disk upload")
        return UploadResult(
            success=True,
            storage_id=path,
            locator_url=f"https://disk.yandex.com/client/disk/{quote(self._path, safe='')}",
        )

    def download(self, storage_id: str) -> DownloadResult:
        href = self._href("/download", {"path": storage_id}, "Yandex Disk download URL")
        response = requests.get(href, timeout=self._timeout)
        _check_response(response, "Yandex Disk download")
        return DownloadResult(success=True, data=response.content, content_type=_content_type(response))

    def delete(self, storage_id: str) -> DeleteResult:
        response = requests.delete(
            self._api_base,
            headers=self._headers(),
            params={"path": storage_id, "permanently": "false"},
            timeout=self._timeout,
        )
        _check_response(response, "Yandex Disk delete")
        return DeleteResult(success=True)


class KoofrStorageAdapter(StorageAdapter):
    provider_id = "koofr"

    def __init__(
        self,
        access_token: str,
        mount_id: Optional[str] = None,
        path: Optional[str] = None,
        timeout: float = 60.0,
    ) -> None:
        self._access_token = access_token
        self._mount_id = (mount_id or "").strip() or "primary"
        self._path = (path or "").strip().rstrip("/") or "/ShelfVault"
        self._api_base = "https://app.koofr.net/api/v2/mounts"
        self._timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    def upload(self, object_key: str, data: bytes, content_type: str) -> UploadResult:
        path = f"{self._path}/{_safe_key(object_key)}"
        headers = self._headers()
        headers["Content-Type"] = content_type or DEFAULT_CONTENT_TYPE
        response = requests.post(
            f"{self._api_base}/{self._mount_id}/files/put",
            headers=headers,
            params={"path": path},
            data=data,
            timeout=self._timeout,
        )
        _check_response(response, "Koofr upload")
        return UploadResult(
            success=True,
            storage_id=f"{self._mount_id}:{path}",
            locator_url="https://app.koofr.net/app/",
        )

    def download(self, storage_id: str) -> DownloadResult:
        mount_id, path = _split_storage_id(storage_id, self._mount_id)
        response = requests.get(
            f"{self._api_base}/{mount_id}/files/get",
            headers=self._headers(),
            params={"path": path},
            timeout=self._timeout,
        )
        _check_response(response, "Koofr download")
        return DownloadResult(success=True, data=response.content, content_type=_content_type(response))

    def delete(self, storage_id: str) -> DeleteResult:
        mount_id, path = _split_storage_id(storage_id, self._mount_id)
        response = requests.delete(
            f"{self._api_base}/{mount_id}/files/remove",
            headers=self._headers(),
            params={"path": path},
            timeout=self._timeout,
        )
        _check_response(response, "Koofr delete")
        return DeleteResult(success=True)


class BackblazeB2StorageAdapter(StorageAdapter):
    provider_id = "b2"

    def __init__(
        self,
        key_id: str,
        application_key: str,
        bucket_id: str,
        bucket_name: Optional[str] = None,
        timeout: float = 60.0,
    ) -> None:
        self._key_id = key_id
        self._application_key = application_key
        self._bucket_id = bucket_id
        self._bucket_name = (bucket_name or "").strip() or None
        self._auth_url = "https://api.backblazeb2.com/b2api/v2/b2_authorize_account"
        self._auth: Optional[Dict] = None
        self._timeout = timeout

    def _authorize(self) -> Dict:
        if self._auth is not None:
            return self._auth
        response = requests.get(
            self._auth_url,
            auth=(self._key_id, self._application_key),
            timeout=self._timeout,
        )
        _check_response(response, "B2 authorization")
        auth = _json_payload(response, "B2 authorization")
        if not auth.get("authorizationToken") or not auth.get("apiUrl"):
            raise StorageAuthError("B2 authorization response missing token or apiUrl")
        self._auth = auth
        return auth

    def _api_post(self, auth: Dict, call: str, body: Dict) -> Dict:
        response = requests.post(
            f"{auth['apiUrl']}/b2api/v2/{call}",
            headers={"Authorization": auth["authorizationToken"]},
            json=body,
            timeout=self._timeout,
        )
        _check_response(response, f"B2 {call}")
        return _json_payload(response, f"B2 {call}")

    def upload(self, object_key: str, data: bytes, content_type: str) -> UploadResult:
        auth = self._authorize()
        upload_target = self._api_post(auth, "b2_get_upload_url", {"bucketId": self._bucket_id})
        upload_url = upload_target.get("uploadUrl")
        upload_token = upload_target.get("authorizationToken")
        if not upload_url or not upload_token:
            raise StoragePermanentError("B2 upload URL response missing uploadUrl/token")

        file_name = _safe_key(object_key)
        headers = {
            "Authorization": upload_token,
            "Content-Type": content_type or DEFAULT_CONTENT_TYPE,
            "Content-Length": str(len(data)),
            "X-Bz-File-Name": quote(file_name),
            "X-Bz-Content-Sha1": hashlib.sha1(data).hexdigest(),
        }
        response = requests.post(upload_url, headers=headers, data=data, timeout=self._timeout)
        _check_response(response, "B2 upload")
        payload = _json_payload(response, "B2 upload")
        file_id = payload.get("fileId")
        if not file_id:
            raise StoragePermanentError("B2 upload response missing fileId")

        locator = None
        if self._bucket_name and auth.get("downloadUrl"):
            locator = f"{auth['downloadUrl']}/file/{self._bucket_name}/{quote(file_name)}"
        return UploadResult(success=True, storage_id=str(file_id), locator_url=locator)

    def download(self, storage_id: str) -> DownloadResult:
        auth = self._authorize()
        download_base = auth.get("downloadUrl") or auth["apiUrl"]
        response = requests.get(
            f"{download_base}/b2api/v2/b2_download_file_by_id",
            headers={"Authorization": auth["authorizationToken"]},
            params={"fileId": storage_id},
            timeout=self._timeout,
        )
        _check_response(response, "B2 download")
        return DownloadResult(success=True, data=response.content, content_type=_content_type(response))

    def delete(self, storage_id: str) -> DeleteResult:
        auth = self._authorize()
        info = self._api_post(auth, "b2_get_file_info", {"fileId": storage_id})
        file_name = info.get("fileName")
        if not file_name:
            raise StoragePermanentError("B2 file info response missing fileName")
        self._api_post(
            auth,
            "b2_delete_file_version",
            {"fileId": storage_id, "fileName": file_name},
        )
        return DeleteResult(success=True)


class MegaStorageAdapter(StorageAdapter):
    provider_id = "mega"

    def __init__(
        self,
        email: str,
        password: str,
        folder_name: Optional[str] = None,
        timeout: float = 60.0,
    ) -> None:
        self._email = email
        self._password = password
        self._folder_name = folder_name or None
        self._timeout = timeout
        self._client = None

    def _ensure_client(self):
        if self._client is not None:
            return self._client
        try:
            from mega import Mega  # type: ignore[import]
        except ImportError as exc:
            raise StoragePermanentError(
                "Mega storage provider requires the optional mega.py package"
            ) from exc
        mega = Mega({"timeout": self._timeout})
        try:
            self._client = mega.login(self._email, self._password)
        except Exception as exc:  # noqa: BLE001
            raise StorageAuthError(f"Mega login failed: {exc}") from exc
        return self._client

    def upload(self, object_key: str, data: bytes, content_type: str) -> UploadResult:
        client = self._ensure_client()
        filename = _safe_key(object_key)
        with tempfile.NamedTemporaryFile(delete=False) as tmp:
            tmp.write(data)
            tmp_path = tmp.name
        try:
            dest = None
            if self._folder_name:
                folder = client.find(self._folder_name)
                if folder:
                    dest = folder[0]
            file_node = client.upload(tmp_path, dest=dest, dest_filename=filename)
        except Exception as exc:  # noqa: BLE001
            raise StorageTransientError(f"Mega upload failed: {exc}") from exc
        finally:
            try:
                os.remove(tmp_path)
            except OSError:
                pass

        handle = None
        if isinstance(file_node, dict):
            nodes = file_node.get("f")
            if isinstance(nodes, list) and nodes:
                handle = nodes[0].get("h")
            handle = handle or file_node.get("h")
        if not handle:
            raise StoragePermanentError("Mega upload response missing node handle")
        return UploadResult(
            success=True,
            storage_id=str(handle),
            locator_url=f"https://mega.nz/file/{handle}",
        )

    def download(self, storage_id: str) -> DownloadResult:
        client = self._ensure_client()
        try:
            node = client.get_files().get(storage_id)
        except Exception as exc:  # noqa: BLE001
            raise StorageTransientError(f"Mega listing failed: {exc}") from exc
        if node is None:
            raise StoragePermanentError(f"Mega node {storage_id} not found")

        with tempfile.TemporaryDirectory() as tmp_dir:
            try:
                client.download((storage_id, node), dest_path=tmp_dir, dest_filename="payload")
            except Exception as exc:  # noqa: BLE001
                raise StorageTransientError(f"Mega download failed: {exc}") from exc
            with open(os.path.join(tmp_dir, "payload"), "rb") as f:
                data = f.read()
        return DownloadResult(success=True, data=data, content_type=DEFAULT_CONTENT_TYPE)

    def delete(self, storage_id: str) -> DeleteResult:
        client = self._ensure_client()
        try:
            client.destroy(storage_id)
        except Exception as exc:  # noqa: BLE001
            raise StorageTransientError(f"Mega delete failed: {exc}") from exc
        return DeleteResult(success=True)


class GitHubStorageAdapter(StorageAdapter):
    """Private GitHub repositories as the always-available fallback.

    Repositories have a hard size ceiling, so writes rotate across
    ``<prefix>-1 .. <prefix>-N`` repositories. The accepting repository is
    encoded into the storage id as ``<repo>:<object key>``.
    """

    provider_id = "github"
    api_base = "https://api.github.com"
    # Statuses on a contents PUT that mean "repo missing or full".
    rotate_statuses = {403, 404, 422}

    def __init__(
        self,
        token: str,
        owner: str,
        repo: Optional[str] = None,
        timeout: float = 60.0,
        max_repos: int = 100,
        repo_size_limit: int = 4 * 1024 * 1024 * 1024,
    ) -> None:
        self._token = token
        self._owner = owner
        self._repo = (repo or "").strip() or "shelfvault-storage-1"
        self._timeout = timeout
        match = re.match(r"^(?P<prefix>.+)-\d+$", self._repo)
        prefix = match.group("prefix") if match else self._repo
        self._rotation = ContainerRotation(
            prefix, max_containers=max_repos, size_limit=repo_size_limit
        )

    def _headers(self, accept: str = "application/vnd.github+json") -> Dict[str, str]:
        return {
            "Authorization": f"token {self._token}",
            "Accept": accept,
            "User-Agent": USER_AGENT,
        }

    def _contents_url(self, repo: str, object_key: str) -> str:
        return f"{self.api_base}/repos/{self._owner}/{repo}/contents/books/{object_key}"

    # RotatingContainerBackend

    def write(self, container: str, object_key: str, data: bytes) -> bool:
        response = requests.put(
            self._contents_url(container, object_key),
            headers=self._headers(),
            json={
                "message": f"Upload book: {object_key}",
                "content": base64.b64encode(data).decode("ascii"),
            },
            timeout=self._timeout,
        )
        if response.status_code in self.rotate_statuses:
            return False
        _check_response(response, "GitHub upload")
        return True

    def container_size(self, container: str) -> Optional[int]:
        response = requests.get(
            f"{self.api_base}/repos/{self._owner}/{container}",
            headers=self._headers(),
            timeout=self._timeout,
        )
        if response.status_code == 404:
            return None
        _check_response(response, "GitHub repository lookup")
        # GitHub reports repository size in KiB.
        size_kib = _json_payload(response, "GitHub repository lookup").get("size") or 0
        return int(size_kib) * 1024

    def create_container(self, container: str) -> bool:
        response = requests.post(
            f"{self.api_base}/user/repos",
            headers=self._headers(),
            json={"name": container, "private": True},
            timeout=self._timeout,
        )
        return response.status_code < 400

    # StorageAdapter

    def upload(self, object_key: str, data: bytes, content_type: str) -> UploadResult:
        key = _safe_key(object_key)
        try:
            repo = self._rotation.write(self, self._repo, key, data)
        except CapacityExceededError as exc:
            raise StorageTransientError(f"GitHub upload failed: {exc}") from exc
        return UploadResult(
            success=True,
            storage_id=f"{repo}:{key}",
            locator_url=f"https://github.com/{self._owner}/{repo}/blob/main/books/{key}",
        )

    def download(self, storage_id: str) -> DownloadResult:
        repo, key = _split_storage_id(storage_id, self._repo)
        response = requests.get(
            self._contents_url(repo, key),
            headers=self._headers(accept="application/vnd.github.v3.raw"),
            timeout=self._timeout,
        )
        _check_response(response, "GitHub download")
        return DownloadResult(success=True, data=response.content, content_type=DEFAULT_CONTENT_TYPE)

    def delete(self, storage_id: str) -> DeleteResult:
        repo, key = _split_storage_id(storage_id, self._repo)
        url = self._contents_url(repo, key)

        # Deleting through the contents API needs the current blob sha.
        lookup = requests.get(url, headers=self._headers(), timeout=self._timeout)
        _check_response(lookup, "GitHub file lookup")
        sha = _json_payload(lookup, "GitHub file lookup").get("sha")
        if not sha:
            raise StoragePermanentError("GitHub file lookup response missing sha")

        response = requests.delete(
            url,
            headers=self._headers(),
            json={"message": f"Delete book: {key}", "sha": sha},
            timeout=self._timeout,
        )
        _check_response(response, "GitHub delete")
        return DeleteResult(success=True)


def _build_adapter_for_config(config: ProviderConfig, timeout: float) -> StorageAdapter:
    """Construct the built-in adapter for a ProviderConfig.

    Missing mandatory options raise ProviderConfigError so the gateway can
    count the candidate as a failed attempt.
    """

    ptype = config.provider_id

    if ptype == "gdrive":
        return GoogleDriveStorageAdapter(
            access_token=config.option("access_token"),
            folder_id=config.option("folder_id"),
            client_id=config.option("client_id"),
            client_secret=config.option("client_secret"),
            refresh_token=config.option("refresh_token"),
            timeout=timeout,
        )
    if ptype == "dropbox":
        return DropboxStorageAdapter(
            config.require("access_token"), config.option("path"), timeout=timeout
        )
    if ptype == "onedrive":
        return OneDriveStorageAdapter(
            config.require("access_token"), config.option("folder_id"), timeout=timeout
        )
    if ptype == "pcloud":
        return PCloudStorageAdapter(
            config.require("access_token"), config.option("folder_id"), timeout=timeout
        )
    if ptype == "box":
        return BoxStorageAdapter(
            config.require("access_token"), config.option("folder_id"), timeout=timeout
        )
    if ptype == "yandex":
        return YandexDiskStorageAdapter(
            config.require("access_token"), config.option("path"), timeout=timeout
        )
    if ptype == "koofr":
        return KoofrStorageAdapter(
            config.require("access_token"),
            config.option("mount_id"),
            config.option("path"),
            timeout=timeout,
        )
    if ptype == "b2":
        return BackblazeB2StorageAdapter(
            config.require("key_id"),
            config.require("application_key"),
            config.require("bucket_id"),
            config.option("bucket_name"),
            timeout=timeout,
        )
    if ptype == "mega":
        return MegaStorageAdapter(
            config.require("email"),
            config.require("password"),
            config.option("folder"),
            timeout=timeout,
        )
    if ptype == "github":
        return GitHubStorageAdapter(
            config.require("token"),
            config.require("owner"),
            config.option("repo"),
            timeout=timeout,
        )
    raise ProviderConfigError(f"unsupported storage type: {config.provider_type}")


for _ptype in (
    "gdrive",
    "dropbox",
    "onedrive",
    "pcloud",
    "box",
    "yandex",
    "koofr",
    "b2",
    "mega",
    "github",
):
    register_adapter(_ptype, _build_adapter_for_config)
