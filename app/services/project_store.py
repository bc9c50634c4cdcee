from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from app.services.config import StoreConfig


logger = logging.getLogger(__name__)

_DELETE_BATCH_SIZE = 500
_CLAIM_SCAN_LIMIT = 10


class StoreError(RuntimeError):
    pass


class DocumentNotFoundError(StoreError):
    pass


class DocumentConflictError(StoreError):
    pass


class JobStatus:
    QUEUED = "queued"
    CLAIMED = "claimed"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Job:
    id: str
    kind: str
    target_id: str
    attempts: int = 0


def job_id_for(kind: str, target_id: str) -> str:
    return f"{kind}:{target_id}"


def _new_job(kind: str, target_id: str) -> dict[str, Any]:
    return {
        "kind": kind,
        "targetId": target_id,
        "status": JobStatus.QUEUED,
        "attempts": 0,
        "createdAt": firestore.SERVER_TIMESTAMP,
        "leaseExpiresAt": None,
        "error": None,
    }


def _ensure_no_open_job(snapshot: Any, kind: str, target_id: str) -> None:
    if not snapshot.exists:
        return
    status = (snapshot.to_dict() or {}).get("status")
    if status in (JobStatus.QUEUED, JobStatus.CLAIMED):
        raise DocumentConflictError(f"A '{kind}' job is already {status} for '{target_id}'")


class ProjectStore:
    """Firestore backed state for projects, organizations, event logs and jobs.

    Documents keep the camelCase field names the dashboard reads. Only the
    saga services write project and organization state.
    """

    def __init__(self, config: StoreConfig, *, client: Optional[firestore.AsyncClient] = None) -> None:
        self._config = config
        self._client = client or firestore.AsyncClient(project=config.project_id)

    def _projects(self) -> firestore.AsyncCollectionReference:
        return self._client.collection(self._config.projects_collection)

    def _orgs(self) -> firestore.AsyncCollectionReference:
        return self._client.collection(self._config.orgs_collection)

    def _jobs(self) -> firestore.AsyncCollectionReference:
        return self._client.collection(self._config.jobs_collection)

    def _logs(self, project_id: str) -> firestore.AsyncCollectionReference:
        return self._projects().document(project_id).collection(self._config.logs_subcollection)

    def _global_links_ref(self) -> firestore.AsyncDocumentReference:
        return self._client.collection(self._config.settings_collection).document("globalLinks")

    @staticmethod
    def _with_id(snapshot: Any) -> dict[str, Any]:
        return {"id": snapshot.id, **(snapshot.to_dict() or {})}

    # -----------------
    # Projects
    # -----------------

    async def get_project(self, project_id: str) -> dict[str, Any]:
        snapshot = await self._projects().document(project_id).get()
        if not snapshot.exists:
            raise DocumentNotFoundError(f"Project '{project_id}' not found")
        return self._with_id(snapshot)

    async def create_project(self, project_id: str, data: dict[str, Any]) -> None:
        """Create the document only if the id is free; an existing document is left untouched."""

        try:
            await self._projects().document(project_id).create(data)
        except gcloud_exceptions.AlreadyExists as exc:
            raise DocumentConflictError(f"Project '{project_id}' already exists") from exc

    async def update_project(self, project_id: str, fields: dict[str, Any]) -> None:
        try:
            await self._projects().document(project_id).update(fields)
        except gcloud_exceptions.NotFound as exc:
            raise DocumentNotFoundError(f"Project '{project_id}' not found") from exc

    async def delete_project(self, project_id: str) -> None:
        await self._projects().document(project_id).delete()

    async def list_projects(self, limit: int = 100) -> list[dict[str, Any]]:
        query = self._projects().order_by("createdAt", direction=firestore.Query.DESCENDING).limit(limit)
        return [self._with_id(snapshot) async for snapshot in query.stream()]

    async def org_has_projects(self, org_id: str) -> bool:
        query = self._projects().where(filter=FieldFilter("orgId", "==", org_id)).limit(1)
        async for _ in query.stream():
            return True
        return False

    async def transition_state(
        self,
        project_id: str,
        *,
        to_state: str,
        reject_prefixes: Iterable[str],
        extra: Optional[dict[str, Any]] = None,
        enqueue: Optional[str] = None,
    ) -> str:
        """Atomically move a project to `to_state` unless its state starts with a rejected prefix.

        With `enqueue` set, a job of that kind is written for the project in
        the same transaction, and the transition is refused while such a job
        is still queued or claimed.

        Returns:
            The state the project held before the transition.

        Raises:
            DocumentNotFoundError: no such project.
            DocumentConflictError: the current state matches one of `reject_prefixes`,
                or a job of kind `enqueue` is already open for the project.
        """

        ref = self._projects().document(project_id)
        job_ref = self._jobs().document(job_id_for(enqueue, project_id)) if enqueue else None
        prefixes = tuple(reject_prefixes)

        @firestore.async_transactional
        async def _swap(transaction: firestore.AsyncTransaction) -> str:
            snapshot = await ref.get(transaction=transaction)
            job_snapshot = await job_ref.get(transaction=transaction) if job_ref is not None else None
            if not snapshot.exists:
                raise DocumentNotFoundError(f"Project '{project_id}' not found")
            current = str((snapshot.to_dict() or {}).get("state") or "")
            if current.startswith(prefixes):
                raise DocumentConflictError(f"Project '{project_id}' is in state '{current}'")
            if job_snapshot is not None:
                _ensure_no_open_job(job_snapshot, enqueue, project_id)
            transaction.update(ref, {"state": to_state, **(extra or {})})
            if job_ref is not None:
                transaction.set(job_ref, _new_job(enqueue, project_id))
            return current

        previous = await _swap(self._client.transaction())
        if enqueue:
            logger.info("job.enqueue kind=%s target=%s", enqueue, project_id)
        return previous

    # -----------------
    # External links
    # -----------------

    async def add_link(self, project_id: str, link: dict[str, Any]) -> None:
        await self.update_project(project_id, {"externalLinks": firestore.ArrayUnion([link])})

    async def remove_link(self, project_id: str, link_id: str) -> None:
        project = await self.get_project(project_id)
        matches = [link for link in project.get("externalLinks") or [] if link.get("id") == link_id]
        if not matches:
            raise DocumentNotFoundError(f"Link '{link_id}' not found on project '{project_id}'")
        await self.update_project(project_id, {"externalLinks": firestore.ArrayRemove(matches)})

    async def list_global_links(self) -> list[dict[str, Any]]:
        snapshot = await self._global_links_ref().get()
        if not snapshot.exists:
            return []
        return list((snapshot.to_dict() or {}).get("links") or [])

    async def add_global_link(self, link: dict[str, Any]) -> None:
        await self._global_links_ref().set({"links": firestore.ArrayUnion([link])}, merge=True)

    async def remove_global_link(self, link_id: str) -> None:
        links = await self.list_global_links()
        matches = [link for link in links if link.get("id") == link_id]
        if not matches:
            raise DocumentNotFoundError(f"Global link '{link_id}' not found")
        await self._global_links_ref().update({"links": firestore.ArrayRemove(matches)})

    # -----------------
    # Event log
    # -----------------

    async def append_event(self, project_id: str, entry: dict[str, Any]) -> None:
        await self._logs(project_id).add(entry)

    async def list_events(self, project_id: str) -> list[dict[str, Any]]:
        query = self._logs(project_id).order_by("ts")
        return [snapshot.to_dict() or {} async for snapshot in query.stream()]

    async def delete_events(self, project_id: str) -> int:
        deleted = 0
        while True:
            refs = [snapshot.reference async for snapshot in self._logs(project_id).limit(_DELETE_BATCH_SIZE).stream()]
            if not refs:
                return deleted
            batch = self._client.batch()
            for ref in refs:
                batch.delete(ref)
            await batch.commit()
            deleted += len(refs)

    # -----------------
    # Organizations
    # -----------------

    async def get_org(self, org_id: str) -> dict[str, Any]:
        snapshot = await self._orgs().document(org_id).get()
        if not snapshot.exists:
            raise DocumentNotFoundError(f"Organization '{org_id}' not found")
        return self._with_id(snapshot)

    async def add_org(self, data: dict[str, Any]) -> str:
        _, ref = await self._orgs().add(data)
        return ref.id

    async def update_org(self, org_id: str, fields: dict[str, Any]) -> None:
        try:
            await self._orgs().document(org_id).update(fields)
        except gcloud_exceptions.NotFound as exc:
            raise DocumentNotFoundError(f"Organization '{org_id}' not found") from exc

    async def delete_org(self, org_id: str) -> None:
        await self._orgs().document(org_id).delete()

    async def list_orgs(self) -> list[dict[str, Any]]:
        query = self._orgs().order_by("name")
        return [self._with_id(snapshot) async for snapshot in query.stream()]

    # -----------------
    # Jobs
    # -----------------

    async def enqueue_job(self, kind: str, target_id: str) -> str:
        """Queue a job; at most one job per kind and target is open at a time.

        Raises:
            DocumentConflictError: a job of this kind is still queued or claimed for `target_id`.
        """

        job_id = job_id_for(kind, target_id)
        ref = self._jobs().document(job_id)

        @firestore.async_transactional
        async def _enqueue(transaction: firestore.AsyncTransaction) -> None:
            snapshot = await ref.get(transaction=transaction)
            _ensure_no_open_job(snapshot, kind, target_id)
            transaction.set(ref, _new_job(kind, target_id))

        await _enqueue(self._client.transaction())
        logger.info("job.enqueue kind=%s target=%s id=%s", kind, target_id, job_id)
        return job_id

    async def claim_job(self, lease_seconds: float) -> Optional[Job]:
        """Claim one queued job, or a claimed job whose lease has expired.

        The claim is a transaction so two workers never hold the same job.
        """

        now = time.time()
        candidates = self._jobs().where(filter=FieldFilter("status", "==", JobStatus.QUEUED)).limit(_CLAIM_SCAN_LIMIT)
        orphans = (
            self._jobs()
            .where(filter=FieldFilter("status", "==", JobStatus.CLAIMED))
            .where(filter=FieldFilter("leaseExpiresAt", "<", now))
            .limit(_CLAIM_SCAN_LIMIT)
        )
        for query in (candidates, orphans):
            async for snapshot in query.stream():
                job = await self._try_claim(snapshot.reference, lease_seconds)
                if job is not None:
                    return job
        return None

    async def _try_claim(self, ref: firestore.AsyncDocumentReference, lease_seconds: float) -> Optional[Job]:
        @firestore.async_transactional
        async def _claim(transaction: firestore.AsyncTransaction) -> Optional[Job]:
            snapshot = await ref.get(transaction=transaction)
            data = snapshot.to_dict() or {}
            now = time.time()
            status = data.get("status")
            orphaned = status == JobStatus.CLAIMED and float(data.get("leaseExpiresAt") or 0) < now
            if status != JobStatus.QUEUED and not orphaned:
                return None
            attempts = int(data.get("attempts") or 0) + 1
            transaction.update(
                ref,
                {"status": JobStatus.CLAIMED, "attempts": attempts, "leaseExpiresAt": now + lease_seconds},
            )
            return Job(id=snapshot.id, kind=str(data.get("kind")), target_id=str(data.get("targetId")), attempts=attempts)

        return await _claim(self._client.transaction())

    async def complete_job(self, job_id: str) -> None:
        await self._jobs().document(job_id).update({"status": JobStatus.DONE, "leaseExpiresAt": None})

    async def fail_job(self, job_id: str, error: str) -> None:
        await self._jobs().document(job_id).update(
            {"status": JobStatus.FAILED, "leaseExpiresAt": None, "error": error}
        )
