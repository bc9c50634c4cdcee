from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime
from http import HTTPStatus
from typing import Any, Optional

import aiohttp
import jwt

from app.services.config import GitHubConfig
from app.services.secret_service import SecretService


logger = logging.getLogger(__name__)


class GitHubServiceError(RuntimeError):
    pass


class GitHubApiError(GitHubServiceError):
    """A GitHub REST call answered with a non-2xx status."""

    def __init__(self, message: str, *, status: int) -> None:
        super().__init__(message)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == HTTPStatus.NOT_FOUND

    @property
    def conflict(self) -> bool:
        return self.status == HTTPStatus.CONFLICT

    @property
    def already_exists(self) -> bool:
        text = str(self).lower()
        return self.status == HTTPStatus.UNPROCESSABLE_ENTITY and ("already exists" in text or "already_exists" in text)


class GitHubClient:
    """Minimal GitHub REST client authenticated as a GitHub App installation.

    The app id, private key and installation id are read from Secret Manager
    the first time a token is needed. The installation token is cached and
    renewed a few minutes before it expires.
    """

    _TOKEN_RENEW_MARGIN_SECONDS = 300

    def __init__(self, *, session: aiohttp.ClientSession, config: GitHubConfig, secrets: SecretService) -> None:
        self._session = session
        self._config = config
        self._secrets = secrets
        self._timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def owner(self) -> str:
        return self._config.owner

    async def _app_jwt(self) -> str:
        app_id = await self._secrets.get_secret("GITHUB_APP_ID")
        private_key = await self._secrets.get_secret("GITHUB_PRIVATE_KEY")
        now = int(time.time())
        # iat is backdated to absorb clock drift; GitHub caps exp at 10 minutes.
        claims = {"iat": now - 60, "exp": now + 540, "iss": str(app_id)}
        return jwt.encode(claims, private_key, algorithm="RS256")

    async def _installation_token(self) -> str:
        async with self._token_lock:
            if self._token and time.time() < self._token_expires_at - self._TOKEN_RENEW_MARGIN_SECONDS:
                return self._token

            logger.info("github.auth.init.start")
            installation_id = await self._secrets.get_secret("GITHUB_INSTALLATION_ID")
            status, payload = await self._send(
                "POST",
                f"/app/installations/{installation_id}/access_tokens",
                authorization=f"Bearer {await self._app_jwt()}",
            )
            if status != HTTPStatus.CREATED or not isinstance(payload, dict) or not payload.get("token"):
                raise GitHubApiError(f"Failed to obtain GitHub installation token: HTTP {status}", status=status)

            self._token = str(payload["token"])
            expires_at = payload.get("expires_at")
            self._token_expires_at = (
                datetime.fromisoformat(expires_at.replace("Z", "+00:00")).timestamp()
                if expires_at
                else time.time() + 3600
            )
            logger.info("github.auth.init.success")
            return self._token

    async def _send(
        self,
        method: str,
        path: str,
        *,
        authorization: str,
        body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> tuple[int, Any]:
        if not path.startswith("/"):
            path = "/" + path
        url = f"{self._config.api_url}{path}"

        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": authorization,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        data: Optional[bytes] = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body).encode("utf-8")

        try:
            async with self._session.request(
                method.upper(), url, data=data, params=params, headers=headers, timeout=self._timeout
            ) as resp:
                status = resp.status
                raw = await resp.read()
        except aiohttp.ClientError as exc:
            logger.exception("GitHub request failed (method=%s path=%s)", method, path)
            raise GitHubServiceError("GitHub request failed") from exc

        try:
            payload: Any = json.loads(raw.decode("utf-8")) if raw else None
        except ValueError:
            payload = raw.decode("utf-8", errors="replace")
        return status, payload

    async def request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> Any:
        """Send an installation-authenticated request and return the decoded JSON body.

        Raises:
            GitHubApiError: for any non-2xx answer, carrying the HTTP status.
        """

        token = await self._installation_token()
        status, payload = await self._send(method, path, authorization=f"token {token}", body=body, params=params)

        if HTTPStatus.OK <= status < HTTPStatus.MULTIPLE_CHOICES:
            return payload

        message = f"HTTP {status}"
        if isinstance(payload, dict) and payload.get("message"):
            message = str(payload["message"])
            errors = payload.get("errors")
            if isinstance(errors, list):
                details = [
                    str(e.get("message") or e.get("code"))
                    for e in errors
                    if isinstance(e, dict) and (e.get("message") or e.get("code"))
                ]
                if details:
                    message = f"{message}: {'; '.join(details)}"
        raise GitHubApiError(f"{method.upper()} {path} failed: {message}", status=status)
