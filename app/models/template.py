from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class TemplateInfo(BaseModel):
    name: str = Field(..., description="Template repository name")
    description: Optional[str] = None
    url: str

    @staticmethod
    def from_github_repo(repo: dict[str, Any]) -> "TemplateInfo":
        return TemplateInfo(
            name=str(repo.get("name")),
            description=repo.get("description"),
            url=str(repo.get("html_url")),
        )


class TemplateListResponse(BaseModel):
    ok: bool = True
    templates: list[TemplateInfo]


class CreateTemplateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)


class UpdateTemplateRequest(BaseModel):
    description: str


class RepoResponse(BaseModel):
    name: str
    url: str


class TemplateCreatedResponse(BaseModel):
    ok: bool = True
    repo: RepoResponse
