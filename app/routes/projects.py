from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Path
from starlette import status

from app.models.project import (
    AcceptedResponse,
    CreateProjectRequest,
    ExternalLink,
    GlobalLinksResponse,
    LinkCreatedResponse,
    LinkRequest,
    OkResponse,
    ProjectCreatedResponse,
    ProjectLogsResponse,
)
from app.services.dependencies import get_provisioning_service, get_store
from app.services.project_store import ProjectStore
from app.services.provisioning_service import ProvisioningService

router = APIRouter(prefix="/projects", tags=["projects"])
global_links_router = APIRouter(prefix="/global-links", tags=["links"])


@router.get("")
async def list_projects(store: ProjectStore = Depends(get_store)) -> list[dict[str, Any]]:
    return await store.list_projects()


@router.post("", response_model=ProjectCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_project(
    body: CreateProjectRequest,
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> ProjectCreatedResponse:
    project_id = await provisioning.create_project(body.org_id, body.display_name, body.short_name, body.template)
    return ProjectCreatedResponse(id=project_id)


@router.get("/{project_id}")
async def get_project(
    project_id: str = Path(..., description="Project id"),
    store: ProjectStore = Depends(get_store),
) -> dict[str, Any]:
    return await store.get_project(project_id)


@router.get("/{project_id}/logs", response_model=ProjectLogsResponse)
async def get_project_logs(
    project_id: str = Path(..., description="Project id"),
    store: ProjectStore = Depends(get_store),
) -> ProjectLogsResponse:
    return ProjectLogsResponse(logs=await store.list_events(project_id))


@router.post("/{project_id}/provision", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def provision_project(
    project_id: str = Path(..., description="Project id"),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> AcceptedResponse:
    await provisioning.request_provisioning(project_id)
    return AcceptedResponse(message=f"Provisioning started for {project_id}")


@router.delete("/{project_id}", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def delete_project(
    project_id: str = Path(..., description="Project id"),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> AcceptedResponse:
    await provisioning.request_deletion(project_id)
    return AcceptedResponse(message=f"Deletion started for {project_id}")


@router.post("/{project_id}/links", response_model=LinkCreatedResponse, status_code=status.HTTP_201_CREATED)
async def add_project_link(
    body: LinkRequest,
    project_id: str = Path(..., description="Project id"),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> LinkCreatedResponse:
    link = await provisioning.add_link(project_id, url=body.url, name=body.name, color=body.color, icon=body.icon)
    return LinkCreatedResponse(link=ExternalLink(**link))


@router.delete("/{project_id}/links/{link_id}", response_model=OkResponse)
async def remove_project_link(
    project_id: str = Path(..., description="Project id"),
    link_id: str = Path(..., description="Link id"),
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> OkResponse:
    await provisioning.remove_link(project_id, link_id)
    return OkResponse()


@global_links_router.get("", response_model=GlobalLinksResponse)
async def list_global_links(store: ProjectStore = Depends(get_store)) -> GlobalLinksResponse:
    return GlobalLinksResponse(links=await store.list_global_links())


@global_links_router.post("", response_model=LinkCreatedResponse, status_code=status.HTTP_201_CREATED)
async def add_global_link(
    body: LinkRequest,
    provisioning: ProvisioningService = Depends(get_provisioning_service),
) -> LinkCreatedResponse:
    link = await provisioning.add_global_link(url=body.url, name=body.name, color=body.color, icon=body.icon)
    return LinkCreatedResponse(link=ExternalLink(**link))


@global_links_router.delete("/{link_id}", response_model=OkResponse)
async def remove_global_link(
    link_id: str = Path(..., description="Link id"),
    store: ProjectStore = Depends(get_store),
) -> OkResponse:
    await store.remove_global_link(link_id)
    return OkResponse()
