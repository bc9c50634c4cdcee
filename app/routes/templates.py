from __future__ import annotations

from fastapi import APIRouter, Depends, Path
from starlette import status

from app.models.project import OkResponse
from app.models.template import (
    CreateTemplateRequest,
    RepoResponse,
    TemplateCreatedResponse,
    TemplateListResponse,
    UpdateTemplateRequest,
)
from app.services.dependencies import get_github_setup_service
from app.services.setup.github_setup_service import GitHubSetupService

router = APIRouter(prefix="/github/templates", tags=["templates"])


@router.get("", response_model=TemplateListResponse)
async def list_templates(github: GitHubSetupService = Depends(get_github_setup_service)) -> TemplateListResponse:
    return TemplateListResponse(templates=await github.list_templates())


@router.post("", response_model=TemplateCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    body: CreateTemplateRequest,
    github: GitHubSetupService = Depends(get_github_setup_service),
) -> TemplateCreatedResponse:
    repo = await github.create_template(body.name, body.description)
    return TemplateCreatedResponse(repo=RepoResponse(name=repo.name, url=repo.url))


@router.put("/{repo_name}", response_model=OkResponse)
async def update_template(
    body: UpdateTemplateRequest,
    repo_name: str = Path(..., description="Template repository name"),
    github: GitHubSetupService = Depends(get_github_setup_service),
) -> OkResponse:
    await github.update_template_description(repo_name, body.description)
    return OkResponse()


@router.delete("/{repo_name}", response_model=OkResponse)
async def delete_template(
    repo_name: str = Path(..., description="Template repository name"),
    github: GitHubSetupService = Depends(get_github_setup_service),
) -> OkResponse:
    await github.delete_template(repo_name)
    return OkResponse()
