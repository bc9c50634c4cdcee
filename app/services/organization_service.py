from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from app.services.project_store import DocumentConflictError, ProjectStore
from app.services.setup.gcp_setup_service import GcpSetupService
from app.services.setup.github_setup_service import GitHubSetupService


logger = logging.getLogger(__name__)

DELETE_ORGANIZATION_JOB = "delete_organization"


class OrganizationHasProjectsError(DocumentConflictError):
    pass


class OrganizationService:
    """Creates and tears down a tenant organization: GCP folder, GitHub team and document."""

    def __init__(self, *, store: ProjectStore, gcp: GcpSetupService, github: GitHubSetupService) -> None:
        self._store = store
        self._gcp = gcp
        self._github = github

    async def create_organization(self, name: str, phone: Optional[str] = None) -> str:
        logger.info("org.create.start name=%s", name)
        folder_id = await self._gcp.create_folder_for_org(name)
        team = await self._github.create_team(name)
        org_id = await self._store.add_org(
            {
                "name": name,
                "phone": phone,
                "gcpFolderId": folder_id,
                "githubTeamId": team.id,
                "githubTeamSlug": team.slug,
                "state": "ready",
                "createdAt": datetime.now(timezone.utc),
            }
        )
        logger.info("org.create.success id=%s folder=%s team=%s", org_id, folder_id, team.slug)
        return org_id

    async def request_deletion(self, org_id: str) -> None:
        await self._store.get_org(org_id)
        if await self._store.org_has_projects(org_id):
            raise OrganizationHasProjectsError(
                f"Organization '{org_id}' still has projects; delete them first."
            )
        await self._store.update_org(org_id, {"state": "deleting"})
        await self._store.enqueue_job(DELETE_ORGANIZATION_JOB, org_id)

    async def run_deletion(self, org_id: str) -> None:
        try:
            org = await self._store.get_org(org_id)
            if org.get("gcpFolderId"):
                await self._gcp.delete_folder(str(org["gcpFolderId"]))
            if org.get("githubTeamSlug"):
                await self._github.delete_team(str(org["githubTeamSlug"]))
            await self._store.delete_org(org_id)
            logger.info("org.delete.success id=%s", org_id)
        except Exception as exc:
            logger.exception("Deletion failed for organization %s", org_id)
            await self._store.update_org(org_id, {"state": "delete_failed", "error": str(exc)})
