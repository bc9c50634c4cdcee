from __future__ import annotations

from typing import Any, TypeVar

import aiohttp
from fastapi import FastAPI, Request

from app.services.config import GcpConfig, GitHubConfig, SecretsConfig, StoreConfig, WorkerConfig
from app.services.event_log import ProjectEventLog
from app.services.gcp_client import GcpRestClient
from app.services.github_client import GitHubClient
from app.services.job_worker import JobWorker
from app.services.organization_service import DELETE_ORGANIZATION_JOB, OrganizationService
from app.services.project_store import ProjectStore
from app.services.provisioning_service import DELETE_PROJECT_JOB, PROVISION_PROJECT_JOB, ProvisioningService
from app.services.secret_service import SecretService
from app.services.setup.gcp_setup_service import GcpSetupService
from app.services.setup.github_setup_service import GitHubSetupService


T = TypeVar("T")


def init_services(app: FastAPI) -> None:
    """Build every client and service once and attach them to `app.state`.

    Called from the app lifespan after the HTTP session exists. Tests set the
    same attributes directly with fakes.
    """

    session = get_http_session_from_app(app)
    gcp_config = GcpConfig.from_env()
    github_config = GitHubConfig.from_env()

    secrets = SecretService(SecretsConfig.from_env())
    store = ProjectStore(StoreConfig.from_env())
    gcp = GcpSetupService(
        client=GcpRestClient(session=session, timeout_seconds=gcp_config.timeout_seconds),
        config=gcp_config,
    )
    github = GitHubSetupService(
        client=GitHubClient(session=session, config=github_config, secrets=secrets),
        config=github_config,
    )

    provisioning = ProvisioningService(
        store=store,
        events=ProjectEventLog(store),
        gcp=gcp,
        github=github,
        gcp_config=gcp_config,
    )
    organizations = OrganizationService(store=store, gcp=gcp, github=github)

    app.state.store = store
    app.state.github_setup_service = github
    app.state.provisioning_service = provisioning
    app.state.organization_service = organizations
    app.state.job_worker = JobWorker(
        store,
        {
            PROVISION_PROJECT_JOB: provisioning.run_full_provisioning,
            DELETE_PROJECT_JOB: provisioning.run_deletion,
            DELETE_ORGANIZATION_JOB: organizations.run_deletion,
        },
        WorkerConfig.from_env(),
    )


def _state_attr(app: FastAPI, name: str, expected: type[T]) -> T:
    value: Any = getattr(app.state, name, None)
    if value is None:
        raise RuntimeError(f"{name} not initialized (app.state.{name})")
    if not isinstance(value, expected):
        raise RuntimeError(f"Unexpected {name} type")
    return value


def get_http_session_from_app(app: FastAPI) -> aiohttp.ClientSession:
    return _state_attr(app, "http_session", aiohttp.ClientSession)


def get_job_worker_from_app(app: FastAPI) -> JobWorker:
    return _state_attr(app, "job_worker", JobWorker)


def get_store(request: Request) -> ProjectStore:
    return _state_attr(request.app, "store", ProjectStore)


def get_provisioning_service(request: Request) -> ProvisioningService:
    return _state_attr(request.app, "provisioning_service", ProvisioningService)


def get_organization_service(request: Request) -> OrganizationService:
    return _state_attr(request.app, "organization_service", OrganizationService)


def get_github_setup_service(request: Request) -> GitHubSetupService:
    return _state_attr(request.app, "github_setup_service", GitHubSetupService)
