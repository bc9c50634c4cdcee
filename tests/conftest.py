"""Shared fixtures: in-memory state store and scripted REST clients."""
from __future__ import annotations

import copy
import itertools
from dataclasses import dataclass
from typing import Any, Iterable, Optional
from unittest.mock import AsyncMock

import pytest

from app.services.config import GcpConfig, GitHubConfig
from app.services.event_log import ProjectEventLog
from app.services.project_store import (
    DocumentConflictError,
    DocumentNotFoundError,
    Job,
    JobStatus,
    job_id_for,
)
from app.services.setup.gcp_setup_service import GcpSetupService, ProvisionResult
from app.services.setup.github_setup_service import GitHubSetupService, RepoInfo, TeamInfo


class InMemoryProjectStore:
    """Dict backed stand-in for ProjectStore with the same method surface."""

    def __init__(self) -> None:
        self.projects: dict[str, dict[str, Any]] = {}
        self.orgs: dict[str, dict[str, Any]] = {}
        self.events: dict[str, list[dict[str, Any]]] = {}
        self.global_links: list[dict[str, Any]] = []
        self.jobs: dict[str, dict[str, Any]] = {}
        self.state_history: dict[str, list[str]] = {}
        self._ids = itertools.count(1)
        self.now = 1000.0

    # Projects

    async def get_project(self, project_id: str) -> dict[str, Any]:
        if project_id not in self.projects:
            raise DocumentNotFoundError(f"Project '{project_id}' not found")
        return {"id": project_id, **copy.deepcopy(self.projects[project_id])}

    async def create_project(self, project_id: str, data: dict[str, Any]) -> None:
        if project_id in self.projects:
            raise DocumentConflictError(f"Project '{project_id}' already exists")
        self.projects[project_id] = copy.deepcopy(data)
        self.state_history[project_id] = [data.get("state")]

    async def update_project(self, project_id: str, fields: dict[str, Any]) -> None:
        if project_id not in self.projects:
            raise DocumentNotFoundError(f"Project '{project_id}' not found")
        self.projects[project_id].update(copy.deepcopy(fields))
        if "state" in fields:
            self.state_history.setdefault(project_id, []).append(fields["state"])

    async def delete_project(self, project_id: str) -> None:
        self.projects.pop(project_id, None)

    async def list_projects(self, limit: int = 100) -> list[dict[str, Any]]:
        ordered = sorted(self.projects.items(), key=lambda item: item[1].get("createdAt"), reverse=True)
        return [{"id": pid, **data} for pid, data in ordered[:limit]]

    async def org_has_projects(self, org_id: str) -> bool:
        return any(data.get("orgId") == org_id for data in self.projects.values())

    async def transition_state(
        self,
        project_id: str,
        *,
        to_state: str,
        reject_prefixes: Iterable[str],
        extra: Optional[dict[str, Any]] = None,
        enqueue: Optional[str] = None,
    ) -> str:
        project = await self.get_project(project_id)
        current = str(project.get("state") or "")
        if current.startswith(tuple(reject_prefixes)):
            raise DocumentConflictError(f"Project '{project_id}' is in state '{current}'")
        if enqueue:
            self._ensure_no_open_job(enqueue, project_id)
        await self.update_project(project_id, {"state": to_state, **(extra or {})})
        if enqueue:
            await self.enqueue_job(enqueue, project_id)
        return current

    async def add_link(self, project_id: str, link: dict[str, Any]) -> None:
        await self.get_project(project_id)
        links = self.projects[project_id].setdefault("externalLinks", [])
        if link not in links:
            links.append(copy.deepcopy(link))

    async def remove_link(self, project_id: str, link_id: str) -> None:
        project = await self.get_project(project_id)
        links = project.get("externalLinks") or []
        if not any(link.get("id") == link_id for link in links):
            raise DocumentNotFoundError(f"Link '{link_id}' not found on project '{project_id}'")
        self.projects[project_id]["externalLinks"] = [link for link in links if link.get("id") != link_id]

    async def list_global_links(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self.global_links)

    async def add_global_link(self, link: dict[str, Any]) -> None:
        self.global_links.append(copy.deepcopy(link))

    async def remove_global_link(self, link_id: str) -> None:
        if not any(link.get("id") == link_id for link in self.global_links):
            raise DocumentNotFoundError(f"Global link '{link_id}' not found")
        self.global_links = [link for link in self.global_links if link.get("id") != link_id]

    # Event log

    async def append_event(self, project_id: str, entry: dict[str, Any]) -> None:
        self.events.setdefault(project_id, []).append(copy.deepcopy(entry))

    async def list_events(self, project_id: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self.events.get(project_id, []))

    async def delete_events(self, project_id: str) -> int:
        return len(self.events.pop(project_id, []))

    def event_names(self, project_id: str) -> list[str]:
        return [entry["evt"] for entry in self.events.get(project_id, [])]

    # Organizations

    async def get_org(self, org_id: str) -> dict[str, Any]:
        if org_id not in self.orgs:
            raise DocumentNotFoundError(f"Organization '{org_id}' not found")
        return {"id": org_id, **copy.deepcopy(self.orgs[org_id])}

    async def add_org(self, data: dict[str, Any]) -> str:
        org_id = f"org-{next(self._ids)}"
        self.orgs[org_id] = copy.deepcopy(data)
        return org_id

    async def update_org(self, org_id: str, fields: dict[str, Any]) -> None:
        if org_id not in self.orgs:
            raise DocumentNotFoundError(f"Organization '{org_id}' not found")
        self.orgs[org_id].update(copy.deepcopy(fields))

    async def delete_org(self, org_id: str) -> None:
        self.orgs.pop(org_id, None)

    async def list_orgs(self) -> list[dict[str, Any]]:
        ordered = sorted(self.orgs.items(), key=lambda item: item[1].get("name") or "")
        return [{"id": oid, **data} for oid, data in ordered]

    # Jobs

    def _ensure_no_open_job(self, kind: str, target_id: str) -> None:
        existing = self.jobs.get(job_id_for(kind, target_id))
        if existing and existing["status"] in (JobStatus.QUEUED, JobStatus.CLAIMED):
            raise DocumentConflictError(f"A '{kind}' job is already {existing['status']} for '{target_id}'")

    async def enqueue_job(self, kind: str, target_id: str) -> str:
        self._ensure_no_open_job(kind, target_id)
        job_id = job_id_for(kind, target_id)
        self.jobs[job_id] = {
            "kind": kind,
            "targetId": target_id,
            "status": JobStatus.QUEUED,
            "attempts": 0,
            "leaseExpiresAt": None,
            "error": None,
        }
        return job_id

    async def claim_job(self, lease_seconds: float) -> Optional[Job]:
        for wanted in (JobStatus.QUEUED, JobStatus.CLAIMED):
            for job_id, data in self.jobs.items():
                if data["status"] != wanted:
                    continue
                if wanted == JobStatus.CLAIMED and float(data["leaseExpiresAt"] or 0) >= self.now:
                    continue
                data["status"] = JobStatus.CLAIMED
                data["attempts"] += 1
                data["leaseExpiresAt"] = self.now + lease_seconds
                return Job(id=job_id, kind=data["kind"], target_id=data["targetId"], attempts=data["attempts"])
        return None

    async def complete_job(self, job_id: str) -> None:
        self.jobs[job_id].update({"status": JobStatus.DONE, "leaseExpiresAt": None})

    async def fail_job(self, job_id: str, error: str) -> None:
        self.jobs[job_id].update({"status": JobStatus.FAILED, "leaseExpiresAt": None, "error": error})

    def jobs_of(self, kind: str) -> list[dict[str, Any]]:
        return [data for data in self.jobs.values() if data["kind"] == kind]

    def finish_job(self, kind: str, target_id: str) -> None:
        self.jobs[job_id_for(kind, target_id)].update({"status": JobStatus.DONE, "leaseExpiresAt": None})


@dataclass
class Call:
    method: str
    url: str
    body: Optional[dict[str, Any]]
    params: Optional[dict[str, str]]


class ScriptedRestClient:
    """Answers `request()` from rules registered with `on()`.

    A rule matches on method and URL suffix; rules registered later win.
    Outcomes are consumed in order and the last one repeats; an exception
    outcome is raised.
    """

    def __init__(self, default: Any = None) -> None:
        self.calls: list[Call] = []
        self._rules: list[tuple[str, str, list[Any]]] = []
        self._default = {} if default is None else default
        self.operation_results: dict[str, list[dict[str, Any]]] = {}
        self.operation_polls: list[str] = []
        self.uploads: list[tuple[str, bytes]] = []

    def on(self, method: str, suffix: str, *outcomes: Any) -> "ScriptedRestClient":
        self._rules.insert(0, (method, suffix, list(outcomes)))
        return self

    async def request(
        self,
        method: str,
        url: str,
        *,
        body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> Any:
        self.calls.append(Call(method, url, copy.deepcopy(body), params))
        for rule_method, suffix, outcomes in self._rules:
            if rule_method == method and url.endswith(suffix):
                outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
                if isinstance(outcome, Exception):
                    raise outcome
                return copy.deepcopy(outcome)
        return copy.deepcopy(self._default)

    async def upload(self, url: str, data: bytes) -> None:
        self.uploads.append((url, data))

    def operations(self, api_base: str) -> "ScriptedRestClient":
        return self

    async def get_operation(self, operation_name: str) -> dict[str, Any]:
        self.operation_polls.append(operation_name)
        results = self.operation_results.get(operation_name) or [{"done": True}]
        return copy.deepcopy(results.pop(0) if len(results) > 1 else results[0])

    def matching(self, method: str, suffix: str) -> list[Call]:
        return [call for call in self.calls if call.method == method and call.url.endswith(suffix)]


@pytest.fixture
def store() -> InMemoryProjectStore:
    return InMemoryProjectStore()


@pytest.fixture
def gcp_config() -> GcpConfig:
    return GcpConfig(
        billing_account_id="0000-AAAA",
        control_plane_project_id="wizbi-cp",
        control_plane_project_number="424242",
        root_folder_id="555",
        operation_poll_seconds=0,
        billing_link_delay_seconds=0,
        iam_propagation_delay_seconds=0,
        service_account_delay_seconds=0,
        hosting_release_retry_seconds=0,
    )


@pytest.fixture
def github_config() -> GitHubConfig:
    return GitHubConfig(owner="bimagics", readiness_max_attempts=3, readiness_delay_seconds=0)


@pytest.fixture
def acme_org(store: InMemoryProjectStore) -> str:
    store.orgs["org-acme"] = {
        "name": "Acme",
        "phone": None,
        "gcpFolderId": "777",
        "githubTeamId": 12,
        "githubTeamSlug": "acme-admins",
        "state": "ready",
    }
    return "org-acme"


@pytest.fixture
def gcp_setup() -> AsyncMock:
    gcp = AsyncMock(spec=GcpSetupService)
    gcp.provision_infrastructure.return_value = ProvisionResult(
        project_id="wizbi-acme-web",
        project_number="9876",
        service_account_email="github-deployer@wizbi-acme-web.iam.gserviceaccount.com",
        wif_provider_name="projects/424242/locations/global/workloadIdentityPools/github-pool/providers/wizbi-acme-web",
    )
    gcp.create_folder_for_org.return_value = "31337"
    return gcp


@pytest.fixture
def github_setup() -> AsyncMock:
    github = AsyncMock(spec=GitHubSetupService)
    github.create_repo_from_template.return_value = RepoInfo(
        name="wizbi-acme-web", url="https://github.com/bimagics/wizbi-acme-web"
    )
    github.create_team.return_value = TeamInfo(id=99, slug="globex-admins")
    return github


@pytest.fixture
def events(store: InMemoryProjectStore) -> ProjectEventLog:
    return ProjectEventLog(store)
