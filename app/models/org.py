from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class CreateOrgRequest(BaseModel):
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None


class OrgCreatedResponse(BaseModel):
    ok: bool = True
    id: str


class OrgListResponse(BaseModel):
    ok: bool = True
    items: list[dict[str, Any]]
