from __future__ import annotations

import os
from dataclasses import dataclass
from typing import ClassVar


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}; must be a number") from exc


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}; must be an integer") from exc


@dataclass(frozen=True)
class GcpConfig:
    """Runtime configuration for the Google Cloud side of provisioning.

    `control_plane_project_id` is the project hosting this service and the
    provisioner service account; `control_plane_project_number` owns the
    workload identity pool used by tenant CI runs.
    """

    billing_account_id: str
    control_plane_project_id: str
    control_plane_project_number: str
    root_folder_id: str = ""
    region: str = "europe-west1"
    github_owner: str = "bimagics"
    _DEFAULT_TIMEOUT_SECONDS: ClassVar[float] = 30.0
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS
    operation_max_retries: int = 20
    operation_poll_seconds: float = 5.0
    billing_link_delay_seconds: float = 30.0
    iam_propagation_delay_seconds: float = 15.0
    service_account_delay_seconds: float = 15.0
    hosting_release_max_attempts: int = 5
    hosting_release_retry_seconds: float = 10.0

    @property
    def provisioner_service_account(self) -> str:
        return f"wizbi-provisioner@{self.control_plane_project_id}.iam.gserviceaccount.com"

    @property
    def workload_identity_pool(self) -> str:
        return (
            f"projects/{self.control_plane_project_number}"
            "/locations/global/workloadIdentityPools/github-pool"
        )

    @staticmethod
    def from_env() -> "GcpConfig":
        billing_account_id = os.getenv("BILLING_ACCOUNT_ID")
        if not billing_account_id:
            raise ValueError("Missing required environment variable: BILLING_ACCOUNT_ID")

        control_plane_project_id = os.getenv("GCP_PROJECT_ID")
        if not control_plane_project_id:
            raise ValueError("Missing required environment variable: GCP_PROJECT_ID")

        control_plane_project_number = os.getenv("GCP_CONTROL_PLANE_PROJECT_NUMBER")
        if not control_plane_project_number:
            raise ValueError("Missing required environment variable: GCP_CONTROL_PLANE_PROJECT_NUMBER")

        return GcpConfig(
            billing_account_id=billing_account_id,
            control_plane_project_id=control_plane_project_id,
            control_plane_project_number=control_plane_project_number,
            root_folder_id=os.getenv("GCP_FOLDER_ID", ""),
            region=os.getenv("GCP_DEFAULT_REGION") or "europe-west1",
            github_owner=os.getenv("GITHUB_OWNER") or "bimagics",
            timeout_seconds=_float_env("GCP_TIMEOUT_SECONDS", GcpConfig._DEFAULT_TIMEOUT_SECONDS),
            operation_max_retries=_int_env("GCP_OPERATION_MAX_RETRIES", 20),
            operation_poll_seconds=_float_env("GCP_OPERATION_POLL_SECONDS", 5.0),
            billing_link_delay_seconds=_float_env("GCP_BILLING_LINK_DELAY_SECONDS", 30.0),
            iam_propagation_delay_seconds=_float_env("GCP_IAM_PROPAGATION_DELAY_SECONDS", 15.0),
            service_account_delay_seconds=_float_env("GCP_SERVICE_ACCOUNT_DELAY_SECONDS", 15.0),
            hosting_release_max_attempts=_int_env("GCP_HOSTING_RELEASE_MAX_ATTEMPTS", 5),
            hosting_release_retry_seconds=_float_env("GCP_HOSTING_RELEASE_RETRY_SECONDS", 10.0),
        )
