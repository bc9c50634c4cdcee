import pytest

from app.models.project import ProjectState
from app.services.gcp_client import GcpServiceError
from app.services.github_client import GitHubApiError
from app.services.project_store import DocumentConflictError, DocumentNotFoundError, JobStatus
from app.services.provisioning_service import (
    DELETE_PROJECT_JOB,
    PROVISION_PROJECT_JOB,
    ProvisioningConflictError,
    ProvisioningService,
    failure_state_for,
)
from app.services.setup.gcp_setup_service import BillingRequiredError
from app.services.setup.github_setup_service import RepoProject

PID = "wizbi-acme-web"


@pytest.fixture
def service(store, events, gcp_setup, github_setup, gcp_config):
    return ProvisioningService(store=store, events=events, gcp=gcp_setup, github=github_setup, gcp_config=gcp_config)


@pytest.fixture
async def project_id(service, acme_org):
    return await service.create_project(acme_org, "Acme Web", "Web", "template-shop")


class TestCreateProject:
    async def test_creates_pending_project_and_enqueues_provisioning(self, service, store, acme_org):
        project_id = await service.create_project(acme_org, "Acme Web", "Web", "template-shop")

        assert project_id == PID
        doc = store.projects[PID]
        assert doc["displayName"] == "Acme Web"
        assert doc["orgId"] == acme_org
        assert doc["shortName"] == "Web"
        assert doc["template"] == "template-shop"
        assert doc["state"] == "pending_gcp"
        assert doc["externalLinks"] == []
        assert doc["createdAt"] is not None
        assert [job["targetId"] for job in store.jobs_of(PROVISION_PROJECT_JOB)] == [PID]
        assert store.event_names(PID) == ["project.create.init", "project.create.success"]

    async def test_second_create_conflicts_and_keeps_the_original(self, service, store, project_id, acme_org):
        store.projects[PID]["state"] = "ready"

        with pytest.raises(DocumentConflictError):
            await service.create_project(acme_org, "Other name", "web", "template-blog")

        assert store.projects[PID]["displayName"] == "Acme Web"
        assert store.projects[PID]["state"] == "ready"
        assert len(store.jobs_of(PROVISION_PROJECT_JOB)) == 1

    async def test_unknown_organization_is_not_found(self, service):
        with pytest.raises(DocumentNotFoundError):
            await service.create_project("org-missing", "Acme Web", "Web", "template-shop")


class TestRunFullProvisioning:
    async def test_walks_every_stage_to_ready(self, service, store, project_id, gcp_setup, github_setup):
        store.projects[PID]["error"] = "previous failure"

        await service.run_full_provisioning(project_id)

        assert store.state_history[PID] == [
            "pending_gcp",
            "provisioning_gcp",
            "pending_github",
            "provisioning_github",
            "pending_secrets",
            "injecting_secrets",
            "ready",
        ]
        doc = store.projects[PID]
        assert doc["error"] is None
        assert doc["gcpProjectNumber"] == "9876"
        assert doc["gcpServiceAccount"] == f"github-deployer@{PID}.iam.gserviceaccount.com"
        assert doc["githubRepoUrl"] == f"https://github.com/bimagics/{PID}"

        gcp_setup.provision_infrastructure.assert_awaited_once_with(PID, "Acme Web", "777")
        github_setup.create_repo_from_template.assert_awaited_once_with(
            RepoProject(id=PID, display_name="Acme Web", gcp_region="europe-west1"), "acme-admins", "template-shop"
        )
        github_setup.create_repo_secrets.assert_awaited_once_with(
            PID,
            {
                "GCP_PROJECT_ID": PID,
                "GCP_REGION": "europe-west1",
                "WIF_PROVIDER": doc["gcpWifProvider"],
                "DEPLOYER_SA": f"github-deployer@{PID}.iam.gserviceaccount.com",
            },
        )
        github_setup.trigger_deployment.assert_awaited_once_with(PID)
        assert store.event_names(PID)[2:] == [
            "stage.gcp.start",
            "stage.gcp.success",
            "stage.github.start",
            "stage.github.success",
            "stage.finalize.start",
            "stage.finalize.success",
        ]

    async def test_billing_denial_parks_the_project(self, service, store, project_id, gcp_setup, github_setup):
        gcp_setup.provision_infrastructure.side_effect = BillingRequiredError("denied", project_id=PID)

        await service.run_full_provisioning(project_id)

        doc = store.projects[PID]
        assert doc["state"] == "pending_billing"
        assert doc["error"] == (
            "Manual action required: Please link billing account. "
            f"URL: https://console.cloud.google.com/billing/linkedaccount?project={PID}"
        )
        assert store.event_names(PID)[-1] == "stage.gcp.billing_failed_manual_intervention"
        github_setup.create_repo_from_template.assert_not_awaited()

    async def test_cloud_failure_is_failed_gcp(self, service, store, project_id, gcp_setup):
        gcp_setup.provision_infrastructure.side_effect = GcpServiceError("Operation operations/x timed out after 20 polls.")

        await service.run_full_provisioning(project_id)

        assert store.projects[PID]["state"] == "failed_gcp"
        assert store.projects[PID]["error"] == "Operation operations/x timed out after 20 polls."
        assert store.event_names(PID)[-1] == "stage.gcp.failed"

    async def test_repository_failure_is_failed_github(self, service, store, project_id, github_setup):
        github_setup.create_repo_from_template.side_effect = GitHubApiError("Bad credentials", status=401)

        await service.run_full_provisioning(project_id)

        assert store.projects[PID]["state"] == "failed_github"
        assert store.projects[PID]["error"] == "Bad credentials"
        assert store.projects[PID]["gcpProjectNumber"] == "9876"
        assert store.event_names(PID)[-1] == "stage.github.failed"

    async def test_secret_injection_failure_is_failed_secrets(self, service, store, project_id, github_setup):
        github_setup.create_repo_secrets.side_effect = GitHubApiError("Not Found", status=404)

        await service.run_full_provisioning(project_id)

        assert store.projects[PID]["state"] == "failed_secrets"
        assert store.event_names(PID)[-1] == "stage.secrets.failed"

    async def test_failure_during_deletion_keeps_the_deleting_state(self, service, store, project_id, github_setup):
        async def deletion_starts(*args):
            store.projects[PID]["state"] = "deleting"
            raise GitHubApiError("Not Found", status=404)

        github_setup.create_repo_from_template.side_effect = deletion_starts

        await service.run_full_provisioning(project_id)

        assert store.projects[PID]["state"] == "deleting"
        assert "stage.github.failed" not in store.event_names(PID)

    async def test_failure_after_the_document_is_gone_is_dropped(self, service, store, project_id, github_setup):
        async def document_deleted(*args):
            del store.projects[PID]
            raise GitHubApiError("Not Found", status=404)

        github_setup.create_repo_from_template.side_effect = document_deleted

        await service.run_full_provisioning(project_id)

        assert PID not in store.projects

    async def test_organization_without_folder_fails_fast(self, service, store, project_id, acme_org, gcp_setup):
        store.orgs[acme_org]["gcpFolderId"] = None

        await service.run_full_provisioning(project_id)

        assert store.projects[PID]["state"] == "failed_gcp"
        assert "GCP folder id" in store.projects[PID]["error"]
        gcp_setup.provision_infrastructure.assert_not_awaited()


class TestRequestProvisioning:
    @pytest.mark.parametrize("state", ["provisioning_gcp", "provisioning_github", "injecting_secrets", "deleting"])
    async def test_rejects_while_in_flight(self, service, store, project_id, state):
        store.projects[PID]["state"] = state

        with pytest.raises(ProvisioningConflictError):
            await service.request_provisioning(project_id)

        assert store.projects[PID]["state"] == state
        assert len(store.jobs_of(PROVISION_PROJECT_JOB)) == 1

    @pytest.mark.parametrize("state", ["pending_billing", "failed_gcp", "failed_github", "failed_secrets", "ready"])
    async def test_restarts_from_the_first_stage(self, service, store, project_id, state):
        store.finish_job(PROVISION_PROJECT_JOB, PID)
        store.projects[PID]["state"] = state

        await service.request_provisioning(project_id)

        assert store.projects[PID]["state"] == "pending_gcp"
        assert [job["status"] for job in store.jobs_of(PROVISION_PROJECT_JOB)] == [JobStatus.QUEUED]
        assert store.event_names(PID)[-1] == "project.provision.requested"

    async def test_second_request_in_a_row_conflicts(self, service, store, project_id):
        store.finish_job(PROVISION_PROJECT_JOB, PID)
        store.projects[PID]["state"] = "failed_github"

        await service.request_provisioning(project_id)
        with pytest.raises(ProvisioningConflictError):
            await service.request_provisioning(project_id)

        open_jobs = [job for job in store.jobs_of(PROVISION_PROJECT_JOB) if job["status"] == JobStatus.QUEUED]
        assert len(open_jobs) == 1

    async def test_conflicts_while_the_creation_job_is_still_queued(self, service, store, project_id):
        store.projects[PID]["state"] = "failed_gcp"

        with pytest.raises(ProvisioningConflictError):
            await service.request_provisioning(project_id)

        assert store.projects[PID]["state"] == "failed_gcp"
        assert len(store.jobs_of(PROVISION_PROJECT_JOB)) == 1

    async def test_conflicts_while_a_worker_holds_the_job(self, service, store, project_id):
        await store.claim_job(lease_seconds=60)
        store.projects[PID]["state"] = "pending_gcp"

        with pytest.raises(ProvisioningConflictError):
            await service.request_provisioning(project_id)

    async def test_unknown_project_is_not_found(self, service):
        with pytest.raises(DocumentNotFoundError):
            await service.request_provisioning("wizbi-nobody-nothing")


def test_failure_state_lookup():
    assert failure_state_for("provisioning_gcp") is ProjectState.FAILED_GCP
    assert failure_state_for("pending_github") is ProjectState.FAILED_GITHUB
    assert failure_state_for("injecting_secrets") is ProjectState.FAILED_SECRETS
    assert failure_state_for("ready") is ProjectState.FAILED_GCP
    assert failure_state_for("something_else") is ProjectState.FAILED_GCP


class TestDeletion:
    async def test_request_enqueues_a_deletion_job(self, service, store, project_id):
        await service.request_deletion(project_id)

        assert [job["targetId"] for job in store.jobs_of(DELETE_PROJECT_JOB)] == [PID]
        assert store.projects[PID]["state"] == "pending_gcp"

    async def test_request_for_unknown_project_is_not_found(self, service):
        with pytest.raises(DocumentNotFoundError):
            await service.request_deletion("wizbi-nobody-nothing")

    async def test_run_removes_everything(self, service, store, project_id, gcp_setup, github_setup):
        store.projects[PID]["gcpProjectId"] = PID

        await service.run_deletion(project_id)

        assert PID not in store.projects
        assert PID not in store.events
        gcp_setup.delete_project.assert_awaited_once_with(PID)
        github_setup.delete_repo.assert_awaited_once_with(PID)

    async def test_failure_marks_delete_failed(self, service, store, project_id, github_setup):
        github_setup.delete_repo.side_effect = GitHubApiError("Must have admin rights to Repository.", status=403)

        await service.run_deletion(project_id)

        assert store.projects[PID]["state"] == "delete_failed"
        assert "admin rights" in store.projects[PID]["error"]
        assert store.event_names(PID)[-1] == "project.delete.failed"

    async def test_rerun_after_the_document_is_gone_is_a_no_op(self, service, store, project_id, gcp_setup, github_setup):
        await service.run_deletion(project_id)
        gcp_setup.delete_project.reset_mock()
        github_setup.delete_repo.reset_mock()

        await service.run_deletion(project_id)

        assert PID not in store.projects
        gcp_setup.delete_project.assert_not_awaited()
        github_setup.delete_repo.assert_not_awaited()

    async def test_second_deletion_request_conflicts_while_queued(self, service, project_id):
        await service.request_deletion(project_id)

        with pytest.raises(DocumentConflictError):
            await service.request_deletion(project_id)


class TestLinks:
    async def test_add_and_remove_project_link(self, service, store, project_id):
        link = await service.add_link(project_id, url="https://grafana.example.com", name="Grafana", color="#f60", icon="chart")

        assert store.projects[PID]["externalLinks"] == [link]

        await service.remove_link(project_id, link["id"])

        assert store.projects[PID]["externalLinks"] == []

    async def test_removing_unknown_link_is_not_found(self, service, project_id):
        with pytest.raises(DocumentNotFoundError):
            await service.remove_link(project_id, "nope")

    async def test_global_links(self, service, store):
        link = await service.add_global_link(url="https://status.example.com", name="Status", color="green", icon="pulse")

        assert await store.list_global_links() == [link]
