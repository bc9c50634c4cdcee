from __future__ import annotations

import os
from dataclasses import dataclass
from typing import ClassVar

from app.services.config.gcp_config import _float_env, _int_env


@dataclass(frozen=True)
class GitHubConfig:
    """Runtime configuration for the GitHub organization that hosts tenant repos."""

    owner: str
    api_url: str = "https://api.github.com"
    base_template_repo: str = "template-base"
    template_prefix: str = "template-"
    deploy_workflow: str = "deploy.yml"
    _DEFAULT_TIMEOUT_SECONDS: ClassVar[float] = 30.0
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS
    readiness_max_attempts: int = 10
    readiness_delay_seconds: float = 5.0

    @staticmethod
    def from_env() -> "GitHubConfig":
        return GitHubConfig(
            owner=os.getenv("GITHUB_OWNER") or "bimagics",
            api_url=(os.getenv("GITHUB_API_URL") or "https://api.github.com").rstrip("/"),
            base_template_repo=os.getenv("GITHUB_BASE_TEMPLATE_REPO") or "template-base",
            deploy_workflow=os.getenv("GITHUB_DEPLOY_WORKFLOW") or "deploy.yml",
            timeout_seconds=_float_env("GITHUB_TIMEOUT_SECONDS", GitHubConfig._DEFAULT_TIMEOUT_SECONDS),
            readiness_max_attempts=_int_env("GITHUB_READINESS_MAX_ATTEMPTS", 10),
            readiness_delay_seconds=_float_env("GITHUB_READINESS_DELAY_SECONDS", 5.0),
        )
