from __future__ import annotations

import base64
import logging
from typing import Any
from urllib.parse import quote

import httpx

from treepush.auth import TokenProvider, fetch_token
from treepush.config import DEFAULT_API_URL
from treepush.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    PayloadTooLargeError,
    TreePushError,
    ValidationError,
)
from treepush.governor import RateLimitGovernor
from treepush.models import BaseTree, RemoteTreeEntry


logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
USER_AGENT = "treepush"


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def error_for_response(response: httpx.Response, label: str) -> TreePushError:
    payload = _decode_body(response)
    if isinstance(payload, dict):
        api_message = str(payload.get("message") or payload.get("error") or "Unknown GitHub API error")
    else:
        api_message = str(payload or response.reason_phrase or "Unknown GitHub API error")
    status = response.status_code
    message = f"{label} failed: GitHub API Error ({status}): {api_message}"

    if status in (401, 403):
        error_cls: type[TreePushError] = AuthError
    elif status == 404:
        error_cls = NotFoundError
    elif status == 409:
        error_cls = ConflictError
    elif status == 413:
        return PayloadTooLargeError(None, api_message=api_message, payload=payload)
    elif status == 422:
        error_cls = ValidationError
    else:
        error_cls = TreePushError
    return error_cls(message, status=status, api_message=api_message, payload=payload)


def _ref_path(owner: str, repo: str, branch: str) -> str:
    return f"/repos/{owner}/{repo}/git/refs/heads/{quote(branch, safe='/')}"


class GitHubClient:
    """Thin async client for the Git data and repository endpoints treepush needs.

    Every call fetches a fresh bearer token from ``token_provider`` and goes
    through the shared ``RateLimitGovernor``.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        governor: RateLimitGovernor | None = None,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._governor = governor or RateLimitGovernor()
        self._http = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            transport=transport,
        )

    @property
    def governor(self) -> RateLimitGovernor:
        return self._governor

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        label: str | None = None,
    ) -> Any:
        label = label or f"{method} {path}"
        token = await fetch_token(self._token_provider)
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
            "User-Agent": USER_AGENT,
        }

        async def _send() -> httpx.Response:
            return await self._http.request(method, path, json=json, params=params, headers=headers)

        response = await self._governor.execute(_send, label=label)
        logger.debug("%s -> %s", label, response.status_code)
        if response.is_success:
            return _decode_body(response)
        raise error_for_response(response, label)

    # Repository lifecycle

    async def get_repo(self, owner: str, repo: str) -> dict[str, Any]:
        return await self.request("GET", f"/repos/{owner}/{repo}")

    async def get_authenticated_user(self) -> dict[str, Any]:
        return await self.request("GET", "/user")

    async def is_organization(self, owner: str) -> bool:
        data = await self.request("GET", f"/users/{owner}")
        return isinstance(data, dict) and data.get("type") == "Organization"

    async def create_repo(
        self,
        name: str,
        *,
        org: str | None = None,
        private: bool = True,
        auto_init: bool = True,
        description: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"name": name, "private": private, "auto_init": auto_init}
        if description:
            body["description"] = description
        path = f"/orgs/{org}/repos" if org else "/user/repos"
        logger.info("Creating repository %s (private=%s)", name, private)
        return await self.request("POST", path, json=body, label=f"create repository {name}")

    async def delete_repo(self, owner: str, repo: str) -> None:
        await self.request("DELETE", f"/repos/{owner}/{repo}", label=f"delete repository {owner}/{repo}")

    async def update_repo_visibility(self, owner: str, repo: str, *, private: bool) -> None:
        await self.request(
            "PATCH",
            f"/repos/{owner}/{repo}",
            json={"private": private},
            label=f"update visibility of {owner}/{repo}",
        )

    async def put_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: bytes,
        *,
        branch: str,
        message: str,
    ) -> dict[str, Any]:
        return await self.request(
            "PUT",
            f"/repos/{owner}/{repo}/contents/{quote(path)}",
            json={
                "message": message,
                "content": base64.b64encode(content).decode("ascii"),
                "branch": branch,
            },
            label=f"write {path}",
        )

    async def get_rate_limit(self) -> dict[str, Any]:
        return await self.request("GET", "/rate_limit")

    # Git data

    async def get_branch_head(self, owner: str, repo: str, branch: str) -> str:
        data = await self.request(
            "GET",
            f"/repos/{owner}/{repo}/git/ref/heads/{quote(branch, safe='/')}",
            label=f"read ref {branch}",
        )
        return str(data["object"]["sha"])

    async def get_commit(self, owner: str, repo: str, sha: str) -> dict[str, Any]:
        return await self.request("GET", f"/repos/{owner}/{repo}/git/commits/{sha}")

    async def get_tree(self, owner: str, repo: str, tree_sha: str, *, recursive: bool = False) -> dict[str, Any]:
        params = {"recursive": "1"} if recursive else None
        return await self.request(
            "GET",
            f"/repos/{owner}/{repo}/git/trees/{tree_sha}",
            params=params,
            label=f"read tree {tree_sha[:12]}",
        )

    async def fetch_base_tree(self, owner: str, repo: str, commit_sha: str, tree_sha: str) -> BaseTree:
        data = await self.get_tree(owner, repo, tree_sha, recursive=True)
        if not data.get("truncated"):
            entries = [_entry_from_item(item, prefix="") for item in data.get("tree") or []]
            return BaseTree(commit_sha=commit_sha, tree_sha=tree_sha, entries=entries)

        logger.warning(
            "Recursive listing of %s/%s was truncated; walking subtrees individually",
            owner,
            repo,
        )
        entries: list[RemoteTreeEntry] = []
        pending: list[tuple[str, str]] = [("", tree_sha)]
        while pending:
            prefix, sha = pending.pop()
            level = await self.get_tree(owner, repo, sha)
            for item in level.get("tree") or []:
                entry = _entry_from_item(item, prefix=prefix)
                entries.append(entry)
                if entry.type == "tree":
                    pending.append((f"{entry.path}/", entry.content_id))
        entries.sort(key=lambda entry: entry.path)
        return BaseTree(commit_sha=commit_sha, tree_sha=tree_sha, entries=entries)

    async def get_blob(self, owner: str, repo: str, sha: str) -> bytes:
        data = await self.request("GET", f"/repos/{owner}/{repo}/git/blobs/{sha}", label=f"read blob {sha[:12]}")
        content = str(data.get("content") or "")
        if data.get("encoding") == "base64":
            return base64.b64decode("".join(content.split()))
        return content.encode("utf-8")

    async def create_blob(self, owner: str, repo: str, data: bytes, *, path: str | None = None) -> str:
        try:
            result = await self.request(
                "POST",
                f"/repos/{owner}/{repo}/git/blobs",
                json={"content": base64.b64encode(data).decode("ascii"), "encoding": "base64"},
                label="create blob",
            )
        except PayloadTooLargeError as exc:
            raise PayloadTooLargeError(
                path,
                len(data),
                api_message=exc.api_message,
                payload=exc.payload,
            ) from exc
        return str(result["sha"])

    async def create_tree(
        self,
        owner: str,
        repo: str,
        entries: list[dict[str, Any]],
    ) -> str:
        result = await self.request(
            "POST",
            f"/repos/{owner}/{repo}/git/trees",
            json={"tree": entries},
            label="create tree",
        )
        return str(result["sha"])

    async def create_commit(
        self,
        owner: str,
        repo: str,
        *,
        message: str,
        tree: str,
        parents: list[str],
        author: dict[str, str] | None = None,
    ) -> str:
        body: dict[str, Any] = {"message": message, "tree": tree, "parents": parents}
        if author:
            body["author"] = author
        result = await self.request("POST", f"/repos/{owner}/{repo}/git/commits", json=body, label="create commit")
        return str(result["sha"])

    async def update_ref(self, owner: str, repo: str, branch: str, sha: str) -> None:
        try:
            await self.request(
                "PATCH",
                _ref_path(owner, repo, branch),
                json={"sha": sha, "force": False},
                label=f"update ref {branch}",
            )
        except ValidationError as exc:
            # GitHub answers a non-fast-forward update with 422.
            raise ConflictError(
                str(exc), status=exc.status, api_message=exc.api_message, payload=exc.payload
            ) from exc

    async def create_ref(self, owner: str, repo: str, branch: str, sha: str) -> None:
        try:
            await self.request(
                "POST",
                f"/repos/{owner}/{repo}/git/refs",
                json={"ref": f"refs/heads/{branch}", "sha": sha},
                label=f"create ref {branch}",
            )
        except ValidationError as exc:
            raise ConflictError(
                str(exc), status=exc.status, api_message=exc.api_message, payload=exc.payload
            ) from exc


def _entry_from_item(item: dict[str, Any], *, prefix: str) -> RemoteTreeEntry:
    return RemoteTreeEntry(
        path=f"{prefix}{item['path']}",
        content_id=str(item["sha"]),
        mode=str(item.get("mode") or ""),
        type=item.get("type", "blob"),
    )
