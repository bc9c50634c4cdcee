from contextlib import asynccontextmanager
import asyncio
import logging

import aiohttp
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette import status

from app.routes.orgs import router as orgs_router
from app.routes.projects import global_links_router, router as projects_router
from app.routes.templates import router as templates_router
from app.services.dependencies import get_job_worker_from_app, init_services
from app.services.gcp_client import GcpServiceError
from app.services.github_client import GitHubServiceError
from app.services.project_store import DocumentConflictError, DocumentNotFoundError
from app.services.provisioning_service import OrganizationNotReadyError
from app.services.secret_service import SecretServiceError


def _ensure_logging() -> None:
    formatter = logging.Formatter("%(levelname)s: %(message)s")
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    else:
        root.setLevel(logging.INFO)
        for handler in root.handlers:
            handler.setFormatter(formatter)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _ensure_logging()
    app.state.http_session = aiohttp.ClientSession()
    try:
        init_services(app)
        worker = get_job_worker_from_app(app)
        worker_task = asyncio.create_task(worker.run())
        try:
            yield
        finally:
            await worker.stop()
            await worker_task
    finally:
        await app.state.http_session.close()


app = FastAPI(lifespan=lifespan)

app.include_router(projects_router)
app.include_router(global_links_router)
app.include_router(orgs_router)
app.include_router(templates_router)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(DocumentNotFoundError)
async def not_found_handler(request: Request, exc: DocumentNotFoundError) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(DocumentConflictError)
async def conflict_handler(request: Request, exc: DocumentConflictError) -> JSONResponse:
    """Duplicate project ids, provisioning already in flight, organizations that still own projects."""
    return _error(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(OrganizationNotReadyError)
async def organization_not_ready_handler(request: Request, exc: OrganizationNotReadyError) -> JSONResponse:
    return _error(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(GcpServiceError)
@app.exception_handler(GitHubServiceError)
@app.exception_handler(SecretServiceError)
async def platform_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map failures of the remote platforms to 502 Bad Gateway with a JSON body: {"detail": "..."}."""
    return _error(status.HTTP_502_BAD_GATEWAY, exc)


@app.get("/health")
async def health():
    return {"status": "ok"}
