"""
Transfer interfaces — the LOS endpoint and secure document storage.

The upload executor only talks to these protocols.  Production
implementations go over HTTP with httpx and translate transport
conditions into the error taxonomy; tests plug in scripted fakes.
"""

from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import urlparse

import httpx

from paystub.core.config import settings
from paystub.pipeline.errors import (
    DocumentFormatError,
    RemoteAuthenticationError,
    RemoteSystemError,
    RemoteTimeoutError,
    StorageFetchError,
)


class TransferClient(Protocol):
    """One upload session against the loan-origination system."""

    async def open_session(self, session_id: str) -> None: ...

    async def authenticate(self, session_id: str) -> None: ...

    async def navigate(self, session_id: str, los_external_id: str) -> None: ...

    async def push(
        self,
        session_id: str,
        los_external_id: str,
        filename: str,
        data: bytes,
        sha256: str,
    ) -> str:
        """Upload the bytes; returns the LOS reference of the stored file."""
        ...

    async def verify(self, session_id: str, los_external_id: str, remote_ref: str, sha256: str) -> bool: ...

    async def close_session(self, session_id: str) -> None: ...


class DocumentSource(Protocol):
    """Read access to the encrypted document store."""

    async def fetch(self, storage_url: str, kms_key_id: str | None) -> bytes: ...


# ═══════════════════════════════════════════════════════════
#  httpx implementations
# ═══════════════════════════════════════════════════════════

class HttpTransferClient:
    """TransferClient over the LOS REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.LOS_API_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.LOS_API_KEY
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.LOS_TIMEOUT_SEC,
        )
        self._tokens: dict[str, str] = {}

    async def __aenter__(self) -> "HttpTransferClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def open_session(self, session_id: str) -> None:
        await self._request("POST", "/sessions", json={"session_id": session_id})

    async def authenticate(self, session_id: str) -> None:
        response = await self._request(
            "POST",
            f"/sessions/{session_id}/auth",
            headers={"X-API-Key": self.api_key},
        )
        token = response.json().get("token")
        if not token:
            raise RemoteAuthenticationError("LOS returned no session token")
        self._tokens[session_id] = token

    async def navigate(self, session_id: str, los_external_id: str) -> None:
        await self._request("GET", f"/loans/{los_external_id}", headers=self._auth(session_id))

    async def push(
        self,
        session_id: str,
        los_external_id: str,
        filename: str,
        data: bytes,
        sha256: str,
    ) -> str:
        response = await self._request(
            "POST",
            f"/loans/{los_external_id}/documents",
            headers=self._auth(session_id),
            files={"file": (filename, data)},
            data={"document_type": "PAY_STUB", "sha256": sha256},
        )
        remote_ref = response.json().get("document_id")
        if not remote_ref:
            raise RemoteSystemError("LOS accepted upload without a document id")
        return str(remote_ref)

    async def verify(self, session_id: str, los_external_id: str, remote_ref: str, sha256: str) -> bool:
        response = await self._request(
            "GET",
            f"/loans/{los_external_id}/documents/{remote_ref}",
            headers=self._auth(session_id),
        )
        return response.json().get("sha256") == sha256

    async def close_session(self, session_id: str) -> None:
        token = self._tokens.pop(session_id, None)
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        await self._request("DELETE", f"/sessions/{session_id}", headers=headers)

    def _auth(self, session_id: str) -> dict[str, str]:
        token = self._tokens.get(session_id)
        if token is None:
            raise RemoteAuthenticationError(f"Session {session_id} is not authenticated")
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteTimeoutError(f"LOS {method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise RemoteSystemError(f"LOS {method} {url} transport error: {exc}") from exc

        status = response.status_code
        if status < 400:
            return response
        detail = {"status_code": status, "body": response.text[:500]}
        if status in (401, 403):
            raise RemoteAuthenticationError(f"LOS rejected credentials ({status})", details=detail)
        if status in (415, 422):
            raise DocumentFormatError(f"LOS rejected the document ({status})", details=detail)
        if status == 408:
            raise RemoteTimeoutError(f"LOS request timeout ({status})", details=detail)
        raise RemoteSystemError(f"LOS {method} {url} failed ({status})", details=detail)


class HttpDocumentSource:
    """
    DocumentSource backed by the storage gateway.

    ``s3://<bucket>/<key>`` locators are read from
    ``{DOCUMENT_STORE_URL}/<bucket>/<key>``; the gateway decrypts with
    the key id passed in a header.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.DOCUMENT_STORE_URL).rstrip("/")
        self.token = token if token is not None else settings.DOCUMENT_STORE_TOKEN
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.DOCUMENT_FETCH_TIMEOUT_SEC)

    async def __aenter__(self) -> "HttpDocumentSource":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def resolve(self, storage_url: str) -> str:
        parsed = urlparse(storage_url)
        if parsed.scheme != "s3" or not parsed.netloc:
            raise DocumentFormatError(f"Unsupported storage locator: {storage_url}")
        return f"{self.base_url}/{parsed.netloc}{parsed.path}"

    async def fetch(self, storage_url: str, kms_key_id: str | None) -> bytes:
        url = self.resolve(storage_url)
        headers = {"Authorization": f"Bearer {self.token}"}
        if kms_key_id:
            headers["X-KMS-Key-Id"] = kms_key_id
        try:
            response = await self._client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise StorageFetchError(f"Document fetch failed: {exc}") from exc
        if response.status_code == 404:
            raise DocumentFormatError(f"Document not found in storage: {storage_url}")
        if response.status_code >= 400:
            raise StorageFetchError(
                f"Document fetch failed ({response.status_code})",
                details={"status_code": response.status_code},
            )
        return response.content
