from __future__ import annotations

import asyncio
import json
import logging
from http import HTTPStatus
from typing import Any, Optional

import aiohttp
import google.auth
import google.auth.transport.requests
from google.auth.credentials import Credentials
from starlette.concurrency import run_in_threadpool


logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

CRM_API = "https://cloudresourcemanager.googleapis.com/v3"
BILLING_API = "https://cloudbilling.googleapis.com/v1"
SERVICE_USAGE_API = "https://serviceusage.googleapis.com/v1"
ARTIFACT_REGISTRY_API = "https://artifactregistry.googleapis.com/v1"
FIREBASE_API = "https://firebase.googleapis.com/v1beta1"
FIREBASE_HOSTING_API = "https://firebasehosting.googleapis.com/v1beta1"
IAM_API = "https://iam.googleapis.com/v1"
CLOUD_RUN_API = "https://run.googleapis.com/v1"


class GcpServiceError(RuntimeError):
    pass


class GcpApiError(GcpServiceError):
    """A Google API call answered with a non-2xx status."""

    def __init__(self, message: str, *, status: int, reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason

    @property
    def already_exists(self) -> bool:
        return self.status == HTTPStatus.CONFLICT

    @property
    def not_found(self) -> bool:
        return self.status == HTTPStatus.NOT_FOUND

    @property
    def permission_denied(self) -> bool:
        return (
            self.status == HTTPStatus.FORBIDDEN
            or self.reason == "PERMISSION_DENIED"
            or "The caller does not have permission" in str(self)
        )


class GcpRestClient:
    """Async client for the Google Cloud REST (JSON) APIs.

    Requests are authorized with Application Default Credentials; the access
    token is refreshed in a worker thread because google-auth's transport is
    blocking.
    """

    def __init__(
        self,
        *,
        session: aiohttp.ClientSession,
        credentials: Optional[Credentials] = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._session = session
        self._credentials = credentials
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._refresh_lock = asyncio.Lock()

    async def _access_token(self) -> str:
        async with self._refresh_lock:
            if self._credentials is None:
                credentials, _ = await run_in_threadpool(google.auth.default, scopes=[CLOUD_PLATFORM_SCOPE])
                self._credentials = credentials
            if not self._credentials.valid:
                await run_in_threadpool(self._credentials.refresh, google.auth.transport.requests.Request())
            token = self._credentials.token
        if not token:
            raise GcpServiceError("No Google credentials available for API request authorization")
        return token

    @staticmethod
    def _error_from_payload(status: int, payload: Any, *, method: str, url: str) -> GcpApiError:
        message = f"HTTP {status}"
        reason = None
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            error = payload["error"]
            message = str(error.get("message") or message)
            reason = error.get("status")
        elif isinstance(payload, str) and payload:
            message = payload
        return GcpApiError(f"{method} {url} failed: {message}", status=status, reason=reason)

    async def request(
        self,
        method: str,
        url: str,
        *,
        body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        """Send an authorized request and return the decoded JSON body.

        Raises:
            GcpApiError: for any non-2xx answer, carrying the HTTP status.
            GcpServiceError: when the request could not be sent at all.
        """

        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "Accept": "application/json",
        }
        data: Optional[bytes] = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body).encode("utf-8")

        try:
            async with self._session.request(
                method.upper(),
                url,
                data=data,
                params=params,
                headers=headers,
                timeout=self._timeout,
            ) as resp:
                status = resp.status
                raw = await resp.read()
        except aiohttp.ClientError as exc:
            logger.exception("Google API request failed (method=%s url=%s)", method, url)
            raise GcpServiceError(f"Google API request failed: {method} {url}") from exc

        try:
            payload: Any = json.loads(raw.decode("utf-8")) if raw else {}
        except ValueError:
            payload = raw.decode("utf-8", errors="replace")

        if HTTPStatus.OK <= status < HTTPStatus.MULTIPLE_CHOICES:
            return payload if isinstance(payload, dict) else {}

        raise self._error_from_payload(status, payload, method=method.upper(), url=url)

    async def upload(self, url: str, data: bytes) -> None:
        """POST raw bytes, e.g. a hosting file to the upload URL handed out by populateFiles."""

        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "Content-Type": "application/octet-stream",
        }
        try:
            async with self._session.post(url, data=data, headers=headers, timeout=self._timeout) as resp:
                status = resp.status
                raw = await resp.read()
        except aiohttp.ClientError as exc:
            logger.exception("Google upload failed (url=%s)", url)
            raise GcpServiceError(f"Google upload failed: {url}") from exc

        if not HTTPStatus.OK <= status < HTTPStatus.MULTIPLE_CHOICES:
            raise self._error_from_payload(status, raw.decode("utf-8", errors="replace"), method="POST", url=url)

    def operations(self, api_base: str) -> "OperationsClient":
        return OperationsClient(self, api_base)


class OperationsClient:
    """Fetches long-running operations of one API by their resource name."""

    def __init__(self, client: GcpRestClient, api_base: str) -> None:
        self._client = client
        self._api_base = api_base.rstrip("/")

    async def get_operation(self, operation_name: str) -> dict[str, Any]:
        return await self._client.request("GET", f"{self._api_base}/{operation_name}")
