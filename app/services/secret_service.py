from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from google.cloud import secretmanager

from app.services.config import SecretsConfig


logger = logging.getLogger(__name__)


class SecretServiceError(RuntimeError):
    pass


class SecretService:
    """Reads control plane secrets from Secret Manager.

    Values are cached for the life of the process. One instance is built at
    startup and shared, so concurrent sagas populate the cache once.
    """

    def __init__(self, config: SecretsConfig, *, client: Optional[Any] = None) -> None:
        self._config = config
        self._client = client
        self._cache: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _secret_client(self) -> Any:
        if self._client is None:
            self._client = secretmanager.SecretManagerServiceAsyncClient()
        return self._client

    async def get_secret(self, secret_name: str) -> str:
        cached = self._cache.get(secret_name)
        if cached is not None:
            return cached

        async with self._lock:
            cached = self._cache.get(secret_name)
            if cached is not None:
                return cached

            name = f"projects/{self._config.project_id}/secrets/{secret_name}/versions/latest"
            try:
                version = await self._secret_client().access_secret_version(request={"name": name})
                payload = version.payload.data.decode("utf-8") if version.payload and version.payload.data else ""
            except Exception as exc:
                logger.exception("Failed to fetch secret: %s", secret_name)
                raise SecretServiceError(f"Could not access secret: {secret_name}") from exc

            if not payload:
                raise SecretServiceError(f"Secret {secret_name} has an empty payload.")

            self._cache[secret_name] = payload
            return payload
