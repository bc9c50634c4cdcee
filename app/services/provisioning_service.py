from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from app.models.project import FAILURE_STATES, ProjectState
from app.services.config import GcpConfig
from app.services.event_log import ProjectEventLog
from app.services.project_store import DocumentConflictError, DocumentNotFoundError, ProjectStore
from app.services.setup.gcp_setup_service import BillingRequiredError, GcpSetupService
from app.services.setup.github_setup_service import GitHubSetupService, RepoProject
from app.services.slugs import project_id_for


logger = logging.getLogger(__name__)

PROVISION_PROJECT_JOB = "provision_project"
DELETE_PROJECT_JOB = "delete_project"

BILLING_URL = "https://console.cloud.google.com/billing/linkedaccount?project={project_id}"

# States from which a provision request is refused.
_BUSY_STATE_PREFIXES = ("provisioning_", "injecting_", ProjectState.DELETING.value)


class ProvisioningConflictError(DocumentConflictError):
    pass


class OrganizationNotReadyError(RuntimeError):
    pass


def failure_state_for(current: str) -> ProjectState:
    """Map the state a saga was in when it raised to the matching `failed_*` state."""

    try:
        return FAILURE_STATES[ProjectState(current)]
    except (KeyError, ValueError):
        logger.warning("saga.failure_state.unknown state=%s fallback=%s", current, ProjectState.FAILED_GCP.value)
        return ProjectState.FAILED_GCP


def new_link(url: str, name: str, color: str, icon: str) -> dict[str, Any]:
    return {"id": uuid.uuid4().hex, "url": url, "name": name, "color": color, "icon": icon}


class ProvisioningService:
    """Drives a project through GCP, GitHub and secret injection, persisting each step.

    This is the only writer of project state. The provisioners it calls
    return results or raise; a raised error is classified here and stored on
    the project document with the matching terminal state.
    """

    def __init__(
        self,
        *,
        store: ProjectStore,
        events: ProjectEventLog,
        gcp: GcpSetupService,
        github: GitHubSetupService,
        gcp_config: GcpConfig,
    ) -> None:
        self._store = store
        self._events = events
        self._gcp = gcp
        self._github = github
        self._gcp_config = gcp_config

    async def create_project(self, org_id: str, display_name: str, short_name: str, template: str) -> str:
        org = await self._store.get_org(org_id)
        if org.get("state", "ready") != "ready":
            raise OrganizationNotReadyError(f"Organization '{org_id}' is in state '{org.get('state')}'")

        project_id = project_id_for(str(org.get("name") or ""), short_name)
        await self._store.create_project(
            project_id,
            {
                "displayName": display_name,
                "orgId": org_id,
                "shortName": short_name,
                "template": template,
                "state": ProjectState.PENDING_GCP.value,
                "error": None,
                "externalLinks": [],
                "createdAt": datetime.now(timezone.utc),
            },
        )
        await self._events.log(project_id, "project.create.init", orgId=org_id, template=template)
        try:
            await self._store.enqueue_job(PROVISION_PROJECT_JOB, project_id)
        except DocumentConflictError:
            # A job left over from an earlier project with this id will provision this one.
            logger.warning("project.create.job_already_open project=%s", project_id)
        await self._events.log(project_id, "project.create.success")
        return project_id

    async def request_provisioning(self, project_id: str) -> None:
        """Restart the saga from its first stage unless an attempt is queued or running.

        The state swap and the job write share one transaction, so of two
        concurrent requests only one gets a job.
        """

        try:
            previous = await self._store.transition_state(
                project_id,
                to_state=ProjectState.PENDING_GCP.value,
                reject_prefixes=_BUSY_STATE_PREFIXES,
                enqueue=PROVISION_PROJECT_JOB,
            )
        except DocumentConflictError as exc:
            raise ProvisioningConflictError(f"Provisioning already in progress for '{project_id}'") from exc

        await self._events.log(project_id, "project.provision.requested", previousState=previous)

    async def run_full_provisioning(self, project_id: str) -> None:
        project = await self._store.get_project(project_id)
        display_name = str(project.get("displayName") or project_id)

        try:
            org = await self._store.get_org(str(project.get("orgId")))
            folder_id = org.get("gcpFolderId")
            team_slug = org.get("githubTeamSlug")
            if not folder_id or not team_slug:
                raise OrganizationNotReadyError(
                    f"Organization '{org['id']}' is missing its GCP folder id or GitHub team slug."
                )

            await self._events.log(project_id, "stage.gcp.start")
            await self._set_state(project_id, ProjectState.PROVISIONING_GCP)
            result = await self._gcp.provision_infrastructure(project_id, display_name, str(folder_id))
            await self._store.update_project(
                project_id,
                {
                    "state": ProjectState.PENDING_GITHUB.value,
                    "gcpProjectId": result.project_id,
                    "gcpProjectNumber": result.project_number,
                    "gcpServiceAccount": result.service_account_email,
                    "gcpWifProvider": result.wif_provider_name,
                },
            )
            await self._events.log(project_id, "stage.gcp.success", gcpProjectNumber=result.project_number)

            await self._events.log(project_id, "stage.github.start")
            await self._set_state(project_id, ProjectState.PROVISIONING_GITHUB)
            repo = await self._github.create_repo_from_template(
                RepoProject(id=project_id, display_name=display_name, gcp_region=self._gcp_config.region),
                str(team_slug),
                str(project.get("template")),
            )
            await self._store.update_project(
                project_id, {"state": ProjectState.PENDING_SECRETS.value, "githubRepoUrl": repo.url}
            )
            await self._events.log(project_id, "stage.github.success", repoUrl=repo.url)

            await self._events.log(project_id, "stage.finalize.start")
            await self._set_state(project_id, ProjectState.INJECTING_SECRETS)
            await self._github.create_repo_secrets(
                repo.name,
                {
                    "GCP_PROJECT_ID": result.project_id,
                    "GCP_REGION": self._gcp_config.region,
                    "WIF_PROVIDER": result.wif_provider_name,
                    "DEPLOYER_SA": result.service_account_email,
                },
            )
            await self._github.trigger_deployment(repo.name)
            await self._store.update_project(project_id, {"state": ProjectState.READY.value, "error": None})
            await self._events.log(project_id, "stage.finalize.success")
        except BillingRequiredError as exc:
            message = (
                "Manual action required: Please link billing account. "
                f"URL: {BILLING_URL.format(project_id=exc.project_id)}"
            )
            logger.warning("saga.billing_required project=%s", project_id)
            await self._store.update_project(
                project_id, {"state": ProjectState.PENDING_BILLING.value, "error": message}
            )
            await self._events.log(
                project_id, "stage.gcp.billing_failed_manual_intervention", severity="WARN", error=message
            )
        except Exception as exc:
            logger.exception("Provisioning failed for project %s", project_id)
            try:
                current = str((await self._store.get_project(project_id)).get("state") or "")
            except DocumentNotFoundError:
                logger.warning("saga.failure_skipped project=%s reason=deleted", project_id)
                return
            if current == ProjectState.DELETING.value:
                # The deletion owns the document from here on.
                logger.warning("saga.failure_skipped project=%s reason=deleting", project_id)
                return
            failed = failure_state_for(current)
            await self._store.update_project(project_id, {"state": failed.value, "error": str(exc)})
            stage = failed.value.removeprefix("failed_")
            await self._events.log(project_id, f"stage.{stage}.failed", severity="ERROR", error=str(exc))

    async def request_deletion(self, project_id: str) -> None:
        await self._store.get_project(project_id)
        await self._store.enqueue_job(DELETE_PROJECT_JOB, project_id)

    async def run_deletion(self, project_id: str) -> None:
        """Tear down the GCP project, the repository, the event log and finally the document."""

        try:
            await self._set_state(project_id, ProjectState.DELETING)
        except DocumentNotFoundError:
            # The document goes last, so a missing one means an earlier attempt finished.
            logger.info("project.delete.already_gone project=%s", project_id)
            return

        try:
            await self._events.log(project_id, "project.delete.start")
            project = await self._store.get_project(project_id)

            await self._gcp.delete_project(str(project.get("gcpProjectId") or project_id))
            await self._github.delete_repo(project_id)
            deleted = await self._store.delete_events(project_id)
            await self._store.delete_project(project_id)
            logger.info("project.delete.success project=%s events=%d", project_id, deleted)
        except Exception as exc:
            logger.exception("Deletion failed for project %s", project_id)
            await self._store.update_project(
                project_id, {"state": ProjectState.DELETE_FAILED.value, "error": str(exc)}
            )
            await self._events.log(project_id, "project.delete.failed", severity="ERROR", error=str(exc))

    # -----------------
    # Links
    # -----------------

    async def add_link(self, project_id: str, *, url: str, name: str, color: str, icon: str) -> dict[str, Any]:
        link = new_link(url, name, color, icon)
        await self._store.add_link(project_id, link)
        return link

    async def remove_link(self, project_id: str, link_id: str) -> None:
        await self._store.remove_link(project_id, link_id)

    async def add_global_link(self, *, url: str, name: str, color: str, icon: str) -> dict[str, Any]:
        link = new_link(url, name, color, icon)
        await self._store.add_global_link(link)
        return link

    async def _set_state(self, project_id: str, state: ProjectState) -> None:
        await self._store.update_project(project_id, {"state": state.value})
