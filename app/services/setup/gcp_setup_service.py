from __future__ import annotations

import asyncio
import gzip
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from app.services.config import GcpConfig
from app.services.gcp_client import (
    ARTIFACT_REGISTRY_API,
    BILLING_API,
    CLOUD_RUN_API,
    CRM_API,
    FIREBASE_API,
    FIREBASE_HOSTING_API,
    IAM_API,
    SERVICE_USAGE_API,
    GcpApiError,
    GcpRestClient,
    GcpServiceError,
)
from app.services.operation_poller import OperationFailedError, poll_operation


logger = logging.getLogger(__name__)


class BillingRequiredError(GcpServiceError):
    """Linking the billing account was denied; an operator has to link it by hand."""

    def __init__(self, message: str, *, project_id: str) -> None:
        super().__init__(message)
        self.project_id = project_id


@dataclass(frozen=True)
class ProvisionResult:
    project_id: str
    project_number: str
    service_account_email: str
    wif_provider_name: str


PLACEHOLDER_IMAGE = "gcr.io/cloudrun/hello"
ARTIFACT_REPOSITORY_ID = "wizbi"
INVOKER_ACCOUNT_ID = "firebase-hosting-invoker"
DEPLOYER_ACCOUNT_ID = "github-deployer"
GITHUB_OIDC_ISSUER = "https://token.actions.githubusercontent.com"
PLACEHOLDER_HTML = b"<!DOCTYPE html><html><body><h1>Coming Soon</h1></body></html>"

REQUIRED_APIS = (
    "run.googleapis.com",
    "iam.googleapis.com",
    "artifactregistry.googleapis.com",
    "cloudbuild.googleapis.com",
    "firebase.googleapis.com",
    "firestore.googleapis.com",
    "cloudresourcemanager.googleapis.com",
    "iamcredentials.googleapis.com",
    "serviceusage.googleapis.com",
    "firebasehosting.googleapis.com",
    "aiplatform.googleapis.com",
)

PROVISIONER_ROLES = (
    "roles/artifactregistry.admin",
    "roles/iam.serviceAccountAdmin",
    "roles/firebase.admin",
    "roles/run.admin",
    "roles/storage.admin",
)

DEPLOYER_ROLES = (
    "roles/run.admin",
    "roles/artifactregistry.writer",
    "roles/firebase.admin",
    "roles/iam.serviceAccountUser",
    "roles/serviceusage.serviceUsageAdmin",
    "roles/aiplatform.user",
)


def hosting_targets(project_id: str) -> tuple[tuple[str, str], ...]:
    """(hosting site id, Cloud Run service id) pairs: production first, then QA."""

    return (
        (project_id, f"{project_id}-service"),
        (f"{project_id}-qa", f"{project_id}-service-qa"),
    )


def merge_policy_members(policy: dict[str, Any], roles: Iterable[str], member: str) -> bool:
    """Ensure `member` is bound to every role in `roles`, in place.

    Returns True when the policy changed and has to be written back.
    """

    bindings = policy.setdefault("bindings", [])
    changed = False
    for role in roles:
        binding = next((b for b in bindings if b.get("role") == role), None)
        if binding is None:
            bindings.append({"role": role, "members": [member]})
            changed = True
            continue
        members = binding.setdefault("members", [])
        if member not in members:
            members.append(member)
            changed = True
    return changed


class GcpSetupService:
    """Provisioning helper for the Google Cloud side of a tenant project.

    Every create call absorbs a 409 from the remote API, so running the whole
    sequence again for the same project id converges instead of duplicating
    resources. Nothing here writes project state; failures propagate.
    """

    def __init__(
        self,
        *,
        client: GcpRestClient,
        config: GcpConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._config = config
        self._sleep = sleep

    async def provision_infrastructure(
        self,
        project_id: str,
        display_name: str,
        parent_folder_id: str,
    ) -> ProvisionResult:
        """Public entry point: create and wire every cloud resource of a project, in order."""

        logger.info(
            "gcp.provision.all.start project=%s parent=folders/%s region=%s",
            project_id,
            parent_folder_id,
            self._config.region,
        )

        await self._create_project_and_link_billing(project_id, display_name, parent_folder_id)
        await self._grant_provisioner_roles(project_id)
        project_number = await self._get_project_number(project_id)
        await self._enable_apis(project_id)
        await self._create_artifact_repository(project_id)
        await self._add_firebase(project_id)

        invoker_email = await self._create_service_account(
            project_id, INVOKER_ACCOUNT_ID, "Firebase Hosting to Cloud Run Invoker"
        )
        deployer_email = await self._create_service_account(
            project_id, DEPLOYER_ACCOUNT_ID, "GitHub Actions Deployer"
        )
        await self._sleep(self._config.service_account_delay_seconds)

        await self._deploy_placeholder_services(project_id, invoker_email=invoker_email, runtime_email=deployer_email)
        await self._create_hosting_sites(project_id)
        await self._release_hosting_sites(project_id)
        await self._grant_project_roles(project_id, DEPLOYER_ROLES, f"serviceAccount:{deployer_email}")
        wif_provider_name = await self._setup_workload_identity(project_id, deployer_email)

        logger.info("gcp.provision.all.success project=%s number=%s", project_id, project_number)
        return ProvisionResult(
            project_id=project_id,
            project_number=project_number,
            service_account_email=deployer_email,
            wif_provider_name=wif_provider_name,
        )

    # -----------------
    # Organization folders and teardown
    # -----------------

    async def create_folder_for_org(self, org_name: str) -> str:
        """Create a folder for an organization under the configured root folder; return its id."""

        if not self._config.root_folder_id:
            raise ValueError("Missing required environment variable: GCP_FOLDER_ID")

        logger.info("gcp.folder.create.start org=%s parent=folders/%s", org_name, self._config.root_folder_id)
        operation = await self._client.request(
            "POST",
            f"{CRM_API}/folders",
            body={"displayName": org_name, "parent": f"folders/{self._config.root_folder_id}"},
        )
        final = await self._wait(CRM_API, operation)
        folder_name = (final.get("response") or {}).get("name")
        if not folder_name:
            raise GcpServiceError("Folder creation operation did not complete successfully or has no response.")

        folder_id = folder_name.split("/")[-1]
        logger.info("gcp.folder.create.success folder=%s", folder_name)
        return folder_id

    async def delete_project(self, project_id: str) -> None:
        logger.info("gcp.project.delete.start project=%s", project_id)
        try:
            await self._client.request("DELETE", f"{CRM_API}/projects/{project_id}")
        except GcpApiError as exc:
            # A project we can no longer see has already been deleted or handed off.
            if exc.not_found or exc.status == 403:
                logger.info("gcp.project.delete.already_gone project=%s status=%s", project_id, exc.status)
                return
            raise GcpServiceError(f"Failed to delete GCP project '{project_id}': {exc}") from exc
        logger.info("gcp.project.delete.success project=%s", project_id)

    async def delete_folder(self, folder_id: str) -> None:
        logger.info("gcp.folder.delete.start folder=%s", folder_id)
        try:
            await self._client.request("DELETE", f"{CRM_API}/folders/{folder_id}")
        except GcpApiError as exc:
            if exc.not_found:
                logger.info("gcp.folder.delete.already_gone folder=%s", folder_id)
                return
            raise GcpServiceError(f"Failed to delete GCP folder '{folder_id}': {exc}") from exc
        logger.info("gcp.folder.delete.success folder=%s", folder_id)

    # -----------------
    # Private helpers
    # -----------------

    async def _wait(self, api_base: str, operation: dict[str, Any]) -> dict[str, Any]:
        if operation.get("done"):
            error = operation.get("error")
            if error:
                raise OperationFailedError(error.get("message") if isinstance(error, dict) else str(error))
            return operation
        name = operation.get("name")
        if not name:
            raise GcpServiceError(f"Expected a long-running operation from {api_base}, got none")
        return await poll_operation(
            self._client.operations(api_base),
            name,
            max_retries=self._config.operation_max_retries,
            delay_seconds=self._config.operation_poll_seconds,
        )

    async def _create_project_and_link_billing(self, project_id: str, display_name: str, folder_id: str) -> None:
        logger.info("gcp.project.create.attempt project=%s parent=folders/%s", project_id, folder_id)
        try:
            operation = await self._client.request(
                "POST",
                f"{CRM_API}/projects",
                body={"projectId": project_id, "displayName": display_name, "parent": f"folders/{folder_id}"},
            )
            await self._wait(CRM_API, operation)
            logger.info("gcp.project.create.operation_success project=%s", project_id)
        except GcpApiError as exc:
            if not exc.already_exists:
                raise
            logger.info("gcp.project.create.already_exists project=%s", project_id)

        await self._sleep(self._config.billing_link_delay_seconds)

        logger.info("gcp.billing.link.attempt project=%s", project_id)
        try:
            await self._client.request(
                "PUT",
                f"{BILLING_API}/projects/{project_id}/billingInfo",
                body={"billingAccountName": f"billingAccounts/{self._config.billing_account_id}"},
            )
        except GcpApiError as exc:
            if exc.permission_denied:
                logger.warning("gcp.billing.link.permission_denied project=%s", project_id)
                raise BillingRequiredError(str(exc), project_id=project_id) from exc
            raise
        logger.info("gcp.billing.link.success project=%s", project_id)

    async def _grant_project_roles(self, project_id: str, roles: Iterable[str], member: str) -> None:
        resource = f"{CRM_API}/projects/{project_id}"
        policy = await self._client.request("POST", f"{resource}:getIamPolicy", body={})
        if not merge_policy_members(policy, roles, member):
            logger.info("gcp.iam.grant.no_update_needed project=%s member=%s", project_id, member)
            return
        await self._client.request("POST", f"{resource}:setIamPolicy", body={"policy": policy})
        logger.info("gcp.iam.grant.set_policy.success project=%s member=%s", project_id, member)

    async def _grant_provisioner_roles(self, project_id: str) -> None:
        member = f"serviceAccount:{self._config.provisioner_service_account}"
        await self._grant_project_roles(project_id, PROVISIONER_ROLES, member)
        await self._sleep(self._config.iam_propagation_delay_seconds)

    async def _get_project_number(self, project_id: str) -> str:
        project = await self._client.request("GET", f"{CRM_API}/projects/{project_id}")
        # name is "projects/<number>"
        name = project.get("name") or ""
        number = name.split("/")[1] if name.count("/") == 1 else ""
        if not number:
            raise GcpServiceError(f"Could not retrieve project number for {project_id}")
        return number

    async def _enable_apis(self, project_id: str) -> None:
        logger.info("gcp.api.enable.attempt project=%s apis=%d", project_id, len(REQUIRED_APIS))
        operation = await self._client.request(
            "POST",
            f"{SERVICE_USAGE_API}/projects/{project_id}/services:batchEnable",
            body={"serviceIds": list(REQUIRED_APIS)},
        )
        await self._wait(SERVICE_USAGE_API, operation)
        logger.info("gcp.api.enable.operation_success project=%s", project_id)

    async def _create_artifact_repository(self, project_id: str) -> None:
        parent = f"projects/{project_id}/locations/{self._config.region}"
        try:
            operation = await self._client.request(
                "POST",
                f"{ARTIFACT_REGISTRY_API}/{parent}/repositories",
                params={"repositoryId": ARTIFACT_REPOSITORY_ID},
                body={"format": "DOCKER"},
            )
            await self._wait(ARTIFACT_REGISTRY_API, operation)
            logger.info("gcp.ar.repo.create.success repo=%s", ARTIFACT_REPOSITORY_ID)
        except GcpApiError as exc:
            if not exc.already_exists:
                raise
            logger.info("gcp.ar.repo.create.already_exists repo=%s", ARTIFACT_REPOSITORY_ID)

    async def _add_firebase(self, project_id: str) -> None:
        try:
            operation = await self._client.request("POST", f"{FIREBASE_API}/projects/{project_id}:addFirebase", body={})
            await self._wait(FIREBASE_API, operation)
            logger.info("gcp.firebase.add.success project=%s", project_id)
        except GcpApiError as exc:
            if not exc.already_exists:
                raise
            logger.info("gcp.firebase.add.already_exists project=%s", project_id)

    async def _create_service_account(self, project_id: str, account_id: str, display_name: str) -> str:
        email = f"{account_id}@{project_id}.iam.gserviceaccount.com"
        try:
            await self._client.request(
                "POST",
                f"{IAM_API}/projects/{project_id}/serviceAccounts",
                body={"accountId": account_id, "serviceAccount": {"displayName": display_name}},
            )
            logger.info("gcp.sa.create.success email=%s", email)
        except GcpApiError as exc:
            if not exc.already_exists:
                raise
            logger.info("gcp.sa.create.already_exists email=%s", email)
        return email

    async def _deploy_placeholder_services(self, project_id: str, *, invoker_email: str, runtime_email: str) -> None:
        parent = f"projects/{project_id}/locations/{self._config.region}"
        for _, service_name in hosting_targets(project_id):
            logger.info("gcp.cloudrun.deploy.placeholder.start service=%s", service_name)
            try:
                await self._client.request(
                    "POST",
                    f"{CLOUD_RUN_API}/{parent}/services",
                    body={
                        "apiVersion": "serving.knative.dev/v1",
                        "kind": "Service",
                        "metadata": {"name": service_name},
                        "spec": {
                            "template": {
                                "spec": {
                                    "serviceAccountName": runtime_email,
                                    "containers": [{"image": PLACEHOLDER_IMAGE}],
                                }
                            }
                        },
                    },
                )
                logger.info("gcp.cloudrun.deploy.placeholder.success service=%s", service_name)
            except GcpApiError as exc:
                if not exc.already_exists:
                    raise
                logger.info("gcp.cloudrun.deploy.placeholder.already_exists service=%s", service_name)

            await self._client.request(
                "POST",
                f"{CLOUD_RUN_API}/{parent}/services/{service_name}:setIamPolicy",
                body={
                    "policy": {
                        "bindings": [
                            {"role": "roles/run.invoker", "members": ["allUsers", f"serviceAccount:{invoker_email}"]}
                        ]
                    }
                },
            )
            logger.info("gcp.cloudrun.iam.grant_public_invoker.success service=%s", service_name)

    async def _create_hosting_sites(self, project_id: str) -> None:
        for site_id, _ in hosting_targets(project_id):
            try:
                await self._client.request(
                    "POST",
                    f"{FIREBASE_HOSTING_API}/projects/{project_id}/sites",
                    params={"siteId": site_id},
                    body={},
                )
                logger.info("gcp.firebase.hosting.create.success site=%s", site_id)
            except GcpApiError as exc:
                if not exc.already_exists:
                    raise
                logger.info("gcp.firebase.hosting.create.already_exists site=%s", site_id)

    async def _release_hosting_sites(self, project_id: str) -> None:
        """Publish a placeholder release on each site that routes every path to its Cloud Run service.

        A site that was just created can answer 404 until it has propagated,
        so each release is retried on 404 with a growing delay.
        """

        content = gzip.compress(PLACEHOLDER_HTML, mtime=0)
        digest = hashlib.sha256(content).hexdigest()
        max_attempts = self._config.hosting_release_max_attempts

        for site_id, service_id in hosting_targets(project_id):
            parent = f"projects/{project_id}/sites/{site_id}"
            logger.info("gcp.firebase.hosting.release.start site=%s service=%s", site_id, service_id)
            for attempt in range(1, max_attempts + 1):
                try:
                    await self._release_placeholder(parent, service_id, content, digest)
                except GcpApiError as exc:
                    logger.warning(
                        "gcp.firebase.hosting.release.error_attempt site=%s attempt=%d max=%d status=%s",
                        site_id,
                        attempt,
                        max_attempts,
                        exc.status,
                    )
                    if not exc.not_found or attempt >= max_attempts:
                        raise
                    await self._sleep(self._config.hosting_release_retry_seconds * attempt)
                    continue
                logger.info("gcp.firebase.hosting.release.success site=%s attempt=%d", site_id, attempt)
                break

    async def _release_placeholder(self, parent: str, service_id: str, content: bytes, digest: str) -> None:
        version = await self._client.request(
            "POST",
            f"{FIREBASE_HOSTING_API}/{parent}/versions",
            body={
                "config": {
                    "rewrites": [{"glob": "**", "run": {"serviceId": service_id, "region": self._config.region}}]
                }
            },
        )
        version_name = version.get("name")
        if not version_name:
            raise GcpServiceError(f"Hosting version creation for {parent} returned no version name")

        populated = await self._client.request(
            "POST",
            f"{FIREBASE_HOSTING_API}/{version_name}:populateFiles",
            body={"files": {"/index.html": digest}},
        )
        upload_url = populated.get("uploadUrl")
        if upload_url and digest in (populated.get("uploadRequiredHashes") or []):
            await self._client.upload(f"{upload_url}/{digest}", content)

        await self._client.request(
            "PATCH",
            f"{FIREBASE_HOSTING_API}/{version_name}",
            params={"updateMask": "status"},
            body={"status": "FINALIZED"},
        )
        await self._client.request(
            "POST",
            f"{FIREBASE_HOSTING_API}/{parent}/releases",
            params={"versionName": version_name},
            body={"message": "Initial Provisioning"},
        )

    async def _setup_workload_identity(self, project_id: str, deployer_email: str) -> str:
        owner = self._config.github_owner
        pool = self._config.workload_identity_pool
        provider_name = f"{pool}/providers/{project_id}"

        try:
            await self._client.request(
                "POST",
                f"{IAM_API}/{pool}/providers",
                params={"workloadIdentityPoolProviderId": project_id},
                body={
                    "displayName": f"GH-{project_id}"[:32],
                    "oidc": {"issuerUri": GITHUB_OIDC_ISSUER},
                    "attributeMapping": {
                        "google.subject": "assertion.sub",
                        "attribute.repository": "assertion.repository",
                    },
                    "attributeCondition": f"attribute.repository == '{owner}/{project_id}'",
                },
            )
            logger.info("gcp.wif.provider.create.success provider=%s", provider_name)
        except GcpApiError as exc:
            if not exc.already_exists:
                raise
            logger.info("gcp.wif.provider.already_exists provider=%s", provider_name)

        account = f"{IAM_API}/projects/{project_id}/serviceAccounts/{deployer_email}"
        member = f"principalSet://iam.googleapis.com/{pool}/attribute.repository/{owner}/{project_id}"
        policy = await self._client.request("POST", f"{account}:getIamPolicy", body={})
        if merge_policy_members(policy, ("roles/iam.workloadIdentityUser",), member):
            await self._client.request("POST", f"{account}:setIamPolicy", body={"policy": policy})
            logger.info("gcp.wif.binding.update.success email=%s", deployer_email)
        else:
            logger.info("gcp.wif.binding.already_exists email=%s", deployer_email)

        return provider_name
