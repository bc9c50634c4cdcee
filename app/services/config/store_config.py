from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from app.services.config.gcp_config import _float_env, _int_env


@dataclass(frozen=True)
class StoreConfig:
    """Firestore project and collection names used by the state store."""

    project_id: Optional[str] = None
    projects_collection: str = "projects"
    orgs_collection: str = "orgs"
    settings_collection: str = "settings"
    jobs_collection: str = "jobs"
    logs_subcollection: str = "logs"

    @staticmethod
    def from_env() -> "StoreConfig":
        return StoreConfig(project_id=os.getenv("FIREBASE_PROJECT_ID") or None)


@dataclass(frozen=True)
class SecretsConfig:
    """Project that owns the control plane secrets in Secret Manager."""

    project_id: str

    @staticmethod
    def from_env() -> "SecretsConfig":
        project_id = os.getenv("GCP_PROJECT_ID") or os.getenv("PROJECT_ID")
        if not project_id:
            raise ValueError("Missing required environment variable: GCP_PROJECT_ID (or PROJECT_ID)")
        return SecretsConfig(project_id=project_id)


@dataclass(frozen=True)
class WorkerConfig:
    """Background job worker wiring: poll cadence, parallelism and claim lease.

    The lease must outlive the longest saga; a claimed job whose lease has
    expired is treated as orphaned and claimed again.
    """

    poll_interval_seconds: float = 2.0
    concurrency: int = 4
    lease_seconds: float = 1800.0

    @staticmethod
    def from_env() -> "WorkerConfig":
        return WorkerConfig(
            poll_interval_seconds=_float_env("JOB_POLL_INTERVAL_SECONDS", 2.0),
            concurrency=_int_env("JOB_CONCURRENCY", 4),
            lease_seconds=_float_env("JOB_LEASE_SECONDS", 1800.0),
        )
