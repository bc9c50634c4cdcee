from __future__ import annotations

from fastapi import APIRouter, Depends, Path
from starlette import status

from app.models.org import CreateOrgRequest, OrgCreatedResponse, OrgListResponse
from app.models.project import AcceptedResponse
from app.services.dependencies import get_organization_service, get_store
from app.services.organization_service import OrganizationService
from app.services.project_store import ProjectStore

router = APIRouter(prefix="/orgs", tags=["orgs"])


@router.get("", response_model=OrgListResponse)
async def list_orgs(store: ProjectStore = Depends(get_store)) -> OrgListResponse:
    return OrgListResponse(items=await store.list_orgs())


@router.post("", response_model=OrgCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_org(
    body: CreateOrgRequest,
    organizations: OrganizationService = Depends(get_organization_service),
) -> OrgCreatedResponse:
    org_id = await organizations.create_organization(body.name, body.phone)
    return OrgCreatedResponse(id=org_id)


@router.delete("/{org_id}", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def delete_org(
    org_id: str = Path(..., description="Organization id"),
    organizations: OrganizationService = Depends(get_organization_service),
) -> AcceptedResponse:
    await organizations.request_deletion(org_id)
    return AcceptedResponse(message=f"Deletion started for organization {org_id}")
