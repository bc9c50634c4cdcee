from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ProjectState(str, Enum):
    """Lifecycle of a project document, in saga order, then the side branches."""

    PENDING_GCP = "pending_gcp"
    PROVISIONING_GCP = "provisioning_gcp"
    PENDING_GITHUB = "pending_github"
    PROVISIONING_GITHUB = "provisioning_github"
    PENDING_SECRETS = "pending_secrets"
    INJECTING_SECRETS = "injecting_secrets"
    READY = "ready"

    PENDING_BILLING = "pending_billing"
    FAILED_GCP = "failed_gcp"
    FAILED_GITHUB = "failed_github"
    FAILED_SECRETS = "failed_secrets"

    DELETING = "deleting"
    DELETE_FAILED = "delete_failed"


# Where each stage lands when it raises.
FAILURE_STATES: dict[ProjectState, ProjectState] = {
    ProjectState.PENDING_GCP: ProjectState.FAILED_GCP,
    ProjectState.PROVISIONING_GCP: ProjectState.FAILED_GCP,
    ProjectState.PENDING_GITHUB: ProjectState.FAILED_GITHUB,
    ProjectState.PROVISIONING_GITHUB: ProjectState.FAILED_GITHUB,
    ProjectState.PENDING_SECRETS: ProjectState.FAILED_SECRETS,
    ProjectState.INJECTING_SECRETS: ProjectState.FAILED_SECRETS,
}


class CreateProjectRequest(BaseModel):
    org_id: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    short_name: str = Field(..., min_length=1)
    template: str = Field(..., min_length=1)


class ProjectCreatedResponse(BaseModel):
    ok: bool = True
    id: str


class AcceptedResponse(BaseModel):
    ok: bool = True
    message: str


class OkResponse(BaseModel):
    ok: bool = True


class LinkRequest(BaseModel):
    url: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    color: str = Field(..., min_length=1)
    icon: str = Field(..., min_length=1)


class ExternalLink(LinkRequest):
    id: str


class LinkCreatedResponse(BaseModel):
    ok: bool = True
    link: ExternalLink


class GlobalLinksResponse(BaseModel):
    links: list[dict[str, Any]]


class ProjectLogsResponse(BaseModel):
    ok: bool = True
    logs: list[dict[str, Any]]
