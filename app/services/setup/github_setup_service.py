from __future__ import annotations

import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from nacl import encoding, public

from app.models.template import TemplateInfo
from app.services.config import GitHubConfig
from app.services.github_client import GitHubApiError, GitHubClient, GitHubServiceError
from app.services.slugs import slugify


logger = logging.getLogger(__name__)


class RepositoryNotReadyError(GitHubServiceError):
    pass


@dataclass(frozen=True)
class RepoProject:
    """The project fields substituted into template placeholders."""

    id: str
    display_name: str
    gcp_region: str


@dataclass(frozen=True)
class RepoInfo:
    name: str
    url: str


@dataclass(frozen=True)
class TeamInfo:
    id: int
    slug: str


CUSTOMIZED_FILES = ("README.md", "firebase.json")
CUSTOMIZED_BRANCHES = ("main", "dev")


def render_placeholders(content: str, replacements: dict[str, str]) -> str:
    for token, value in replacements.items():
        if value:
            content = content.replace("{{" + token + "}}", value)
    return content


def seal_secret(public_key_b64: str, value: str) -> str:
    """Encrypt `value` for the holder of `public_key_b64` (libsodium sealed box), base64 encoded."""

    key = public.PublicKey(public_key_b64.encode("utf-8"), encoding.Base64Encoder())
    sealed = public.SealedBox(key).encrypt(value.encode("utf-8"))
    return base64.b64encode(sealed).decode("utf-8")


class GitHubSetupService:
    """Provisioning helper for the GitHub side of a tenant project.

    Repositories are instantiated from template repos of the configured
    organization. Creation calls absorb "already exists" answers so that a
    restarted saga converges; deletions absorb 404s.
    """

    def __init__(
        self,
        *,
        client: GitHubClient,
        config: GitHubConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._config = config
        self._sleep = sleep

    @property
    def owner(self) -> str:
        return self._config.owner

    # -----------------
    # Tenant repositories
    # -----------------

    async def create_repo_from_template(self, project: RepoProject, team_slug: str, template_name: str) -> RepoInfo:
        repo = await self._generate_repo(template_name, project.id)
        await self._wait_until_ready(repo.name)

        logger.info("github.repo.permissions.grant.attempt repo=%s team=%s", repo.name, team_slug)
        await self._client.request(
            "PUT",
            f"/orgs/{self.owner}/teams/{team_slug}/repos/{self.owner}/{repo.name}",
            body={"permission": "admin"},
        )

        await self._create_dev_branch(repo.name)

        replacements = {
            "PROJECT_ID": project.id,
            "PROJECT_DISPLAY_NAME": project.display_name,
            "GCP_REGION": project.gcp_region,
            "GITHUB_REPO_URL": repo.url,
        }
        logger.info("github.repo.customize.start repo=%s", repo.name)
        for branch in CUSTOMIZED_BRANCHES:
            for path in CUSTOMIZED_FILES:
                await self._customize_file(
                    repo.name, path, branch, lambda content: render_placeholders(content, replacements)
                )
        logger.info("github.repo.customize.success repo=%s", repo.name)
        return repo

    async def create_repo_secrets(self, repo_name: str, secrets: dict[str, str]) -> None:
        key = await self._client.request("GET", f"/repos/{self.owner}/{repo_name}/actions/secrets/public-key")
        logger.info("github.secrets.create.start repo=%s names=%s", repo_name, sorted(secrets))
        for secret_name, value in secrets.items():
            await self._client.request(
                "PUT",
                f"/repos/{self.owner}/{repo_name}/actions/secrets/{secret_name}",
                body={"encrypted_value": seal_secret(key["key"], value), "key_id": key["key_id"]},
            )
        logger.info("github.secrets.create.success repo=%s count=%d", repo_name, len(secrets))

    async def trigger_deployment(self, repo_name: str) -> None:
        """Dispatch the deploy workflow on main and dev. Never raises."""

        workflow = self._config.deploy_workflow
        try:
            for branch in CUSTOMIZED_BRANCHES:
                await self._client.request(
                    "POST",
                    f"/repos/{self.owner}/{repo_name}/actions/workflows/{workflow}/dispatches",
                    body={"ref": branch},
                )
            logger.info("github.workflow.dispatch.success repo=%s", repo_name)
        except Exception as exc:
            logger.warning("github.workflow.dispatch.error repo=%s error=%s", repo_name, exc)

    async def delete_repo(self, repo_name: str) -> None:
        await self._delete(f"/repos/{self.owner}/{repo_name}", f"GitHub repo '{repo_name}'")

    # -----------------
    # Organization teams
    # -----------------

    async def create_team(self, org_name: str) -> TeamInfo:
        team_name = f"{org_name} Admins"
        logger.info("github.team.create.attempt team=%s", team_name)
        try:
            team = await self._client.request(
                "POST", f"/orgs/{self.owner}/teams", body={"name": team_name, "privacy": "closed"}
            )
        except GitHubApiError as exc:
            if not exc.already_exists:
                raise
            slug = slugify(team_name)
            logger.info("github.team.create.already_exists slug=%s", slug)
            team = await self._client.request("GET", f"/orgs/{self.owner}/teams/{slug}")
        logger.info("github.team.create.success id=%s slug=%s", team["id"], team["slug"])
        return TeamInfo(id=int(team["id"]), slug=str(team["slug"]))

    async def delete_team(self, slug: str) -> None:
        await self._delete(f"/orgs/{self.owner}/teams/{slug}", f"GitHub team '{slug}'")

    # -----------------
    # Templates
    # -----------------

    async def list_templates(self) -> list[TemplateInfo]:
        repos = await self._client.request(
            "GET", f"/orgs/{self.owner}/repos", params={"type": "private", "per_page": "100"}
        )
        return [
            TemplateInfo.from_github_repo(repo)
            for repo in repos or []
            if str(repo.get("name", "")).startswith(self._config.template_prefix)
        ]

    async def create_template(self, name: str, description: str) -> RepoInfo:
        base = self._config.base_template_repo
        repo_name = f"{self._config.template_prefix}{name}"
        try:
            repo = await self._generate_repo(base, repo_name, description=description)
        except GitHubApiError as exc:
            if exc.not_found:
                raise GitHubServiceError(
                    f"Base template repository '{base}' not found or the GitHub App cannot access it."
                ) from exc
            raise

        await self._wait_until_ready(repo.name)
        await self._client.request("PATCH", f"/repos/{self.owner}/{repo.name}", body={"is_template": True})
        logger.info("github.template.update_to_template.success repo=%s", repo.name)

        await self._customize_file(repo.name, "package.json", "main", lambda content: _rename_package(content, repo.name))
        await self._create_dev_branch(repo.name)
        return repo

    async def update_template_description(self, repo_name: str, description: str) -> None:
        await self._client.request("PATCH", f"/repos/{self.owner}/{repo_name}", body={"description": description})
        logger.info("github.template.description.update.success repo=%s", repo_name)

    async def delete_template(self, repo_name: str) -> None:
        await self._delete(f"/repos/{self.owner}/{repo_name}", f"GitHub template repo '{repo_name}'")

    # -----------------
    # Private helpers
    # -----------------

    async def _generate_repo(self, template_repo: str, name: str, *, description: Optional[str] = None) -> RepoInfo:
        body: dict[str, Any] = {"owner": self.owner, "name": name, "private": True}
        if description is not None:
            body["description"] = description

        logger.info("github.repo.create.attempt repo=%s template=%s", name, template_repo)
        try:
            repo = await self._client.request("POST", f"/repos/{self.owner}/{template_repo}/generate", body=body)
        except GitHubApiError as exc:
            if not exc.already_exists:
                raise
            logger.info("github.repo.create.already_exists repo=%s", name)
            repo = await self._client.request("GET", f"/repos/{self.owner}/{name}")
        logger.info("github.repo.create.success repo=%s url=%s", repo["name"], repo["html_url"])
        return RepoInfo(name=str(repo["name"]), url=str(repo["html_url"]))

    async def _main_sha(self, repo_name: str) -> str:
        ref = await self._client.request("GET", f"/repos/{self.owner}/{repo_name}/git/ref/heads/main")
        return str(ref["object"]["sha"])

    async def _wait_until_ready(self, repo_name: str) -> None:
        attempts = self._config.readiness_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                await self._main_sha(repo_name)
                logger.info("github.repo.poll.success_content_ready repo=%s attempt=%d", repo_name, attempt)
                return
            except GitHubApiError as exc:
                # 404: repository not visible yet, 409: repository still empty.
                if not (exc.not_found or exc.conflict):
                    raise
                logger.info("github.repo.poll.not_ready_retrying repo=%s attempt=%d status=%d", repo_name, attempt, exc.status)
            await self._sleep(self._config.readiness_delay_seconds)
        raise RepositoryNotReadyError(f"Repository {repo_name} was not ready after {attempts} attempts.")

    async def _create_dev_branch(self, repo_name: str) -> None:
        sha = await self._main_sha(repo_name)
        try:
            await self._client.request(
                "POST", f"/repos/{self.owner}/{repo_name}/git/refs", body={"ref": "refs/heads/dev", "sha": sha}
            )
            logger.info("github.branch.dev.create.success repo=%s", repo_name)
        except GitHubApiError as exc:
            if not exc.already_exists:
                raise
            logger.info("github.branch.dev.create.already_exists repo=%s", repo_name)

    async def _customize_file(
        self,
        repo_name: str,
        path: str,
        branch: str,
        transform: Callable[[str], str],
    ) -> None:
        contents_path = f"/repos/{self.owner}/{repo_name}/contents/{path}"
        try:
            file = await self._client.request("GET", contents_path, params={"ref": branch})
        except GitHubApiError as exc:
            if exc.not_found:
                logger.warning("github.file.customize.warn_not_found repo=%s path=%s branch=%s", repo_name, path, branch)
                return
            raise

        if not isinstance(file, dict) or "content" not in file or not file.get("sha"):
            raise GitHubServiceError(f"Could not read content or SHA of {path} on branch {branch}")

        original = base64.b64decode(file["content"]).decode("utf-8")
        content = transform(original)
        if content == original:
            logger.info("github.file.update.skipped_no_change repo=%s path=%s branch=%s", repo_name, path, branch)
            return

        await self._client.request(
            "PUT",
            contents_path,
            body={
                "message": f"feat(wizbi): auto-customize {path}",
                "content": base64.b64encode(content.encode("utf-8")).decode("utf-8"),
                "sha": file["sha"],
                "branch": branch,
            },
        )
        logger.info("github.file.update.success repo=%s path=%s branch=%s", repo_name, path, branch)

    async def _delete(self, path: str, label: str) -> None:
        try:
            await self._client.request("DELETE", path)
        except GitHubApiError as exc:
            if exc.not_found:
                logger.info("github.delete.already_gone target=%s", label)
                return
            raise GitHubServiceError(f"Failed to delete {label}: {exc}") from exc
        logger.info("github.delete.success target=%s", label)


def _rename_package(content: str, name: str) -> str:
    manifest = json.loads(content)
    manifest["name"] = name
    return json.dumps(manifest, indent=2)
