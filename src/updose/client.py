from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from ._version import __version__
from .config import DEFAULT_GITHUB_API_URL, DEFAULT_RAW_URL, DEFAULT_REGISTRY_URL, DEFAULT_TIMEOUT_S
from .errors import (
    AccessDeniedError,
    GitHubHTTPError,
    InvalidManifestError,
    InvalidPackageIdError,
    RateLimitError,
    RepoNotFoundError,
    UpdoseError,
)
from .manifest import MANIFEST_FILENAME, Manifest, parse_manifest

SKILLS_FILENAME = "skills.json"
USER_AGENT = f"updose-cli/{__version__}"
GITHUB_ACCEPT_HEADER = "application/vnd.github+json"
TELEMETRY_TIMEOUT_S = 10.0

_RATE_LIMIT_MESSAGE = "GitHub API rate limit exceeded. Set GITHUB_TOKEN to increase the limit."


@dataclass(frozen=True)
class PackageRef:
    repo: str  # owner/name
    dir: str | None = None

    @property
    def key(self) -> str:
        return f"{self.repo}/{self.dir}" if self.dir else self.repo

    @property
    def owner(self) -> str:
        return self.repo.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.repo.split("/", 1)[1]


def parse_package_id(value: str) -> PackageRef:
    """
    Parse "owner/repo" or "owner/repo/sub/dir" (trailing slashes are ignored).
    """
    raw = value.strip().rstrip("/")
    parts = raw.split("/")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        raise InvalidPackageIdError(f'Invalid repository format: "{value}". Expected "owner/repo" or "owner/repo/dir".')
    sub = "/".join(p for p in parts[2:] if p)
    return PackageRef(repo=f"{parts[0]}/{parts[1]}", dir=sub or None)


@dataclass(frozen=True)
class TreeEntry:
    path: str
    type: str  # "blob" | "tree"
    sha: str = ""
    size: int | None = None


class BundleSource(Protocol):
    async def fetch_manifest(self, package_id: str) -> Manifest:
        ...

    async def fetch_tree(self, package_id: str) -> list[TreeEntry]:
        ...

    async def fetch_file(self, package_id: str, path: str) -> str | None:
        ...

    async def fetch_skills_json(self, package_id: str) -> str | None:
        ...


def _raise_for_github_status(resp: httpx.Response, *, what: str) -> None:
    if resp.status_code == 429:
        raise RateLimitError(_RATE_LIMIT_MESSAGE)
    if resp.status_code == 403:
        if resp.headers.get("x-ratelimit-remaining") == "0":
            raise RateLimitError(_RATE_LIMIT_MESSAGE)
        raise AccessDeniedError(
            f"Access denied for {what}. It may be private or GITHUB_TOKEN lacks permissions."
        )
    if resp.status_code >= 400:
        raise GitHubHTTPError(resp.status_code, resp.reason_phrase, str(resp.request.url))


def _json_object(resp: httpx.Response, *, what: str) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as e:
        raise UpdoseError(f"Invalid response from GitHub for {what}: expected JSON") from e
    if not isinstance(data, dict):
        raise UpdoseError(f"Invalid response from GitHub for {what}: expected a JSON object")
    return data


class GitHubSource:
    """
    Reads bundles straight from GitHub: the git tree API for listings and
    raw.githubusercontent.com for file contents.

    Paths passed to and returned from this class are relative to the bundle
    root, i.e. with the package's sub-directory (if any) already stripped.
    """

    def __init__(
        self,
        *,
        token: str | None = None,
        api_url: str = DEFAULT_GITHUB_API_URL,
        raw_url: str = DEFAULT_RAW_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.raw_url = raw_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout_s, follow_redirects=True)
        # repo -> default branch, valid for the lifetime of this source (one command).
        self._branch_cache: dict[str, str] = {}
        self.warnings: list[str] = []

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "GitHubSource":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _headers(self, *, api: bool) -> dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        if api:
            headers["Accept"] = GITHUB_ACCEPT_HEADER
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _get(self, url: str, *, api: bool, params: dict[str, Any] | None = None) -> httpx.Response:
        try:
            return await self._http.get(url, headers=self._headers(api=api), params=params)
        except httpx.HTTPError as e:
            raise UpdoseError(f"Request failed: {e}") from e

    async def default_branch(self, repo: str) -> str:
        cached = self._branch_cache.get(repo)
        if cached:
            return cached

        ref = parse_package_id(repo)
        resp = await self._get(f"{self.api_url}/repos/{ref.owner}/{ref.name}", api=True)
        if resp.status_code == 404:
            raise RepoNotFoundError(f"Repository not found: {ref.repo}")
        _raise_for_github_status(resp, what=f"repository {ref.repo}")

        branch = _json_object(resp, what=f"repository {ref.repo}").get("default_branch")
        if not isinstance(branch, str) or not branch:
            raise UpdoseError(f"Could not determine the default branch of {ref.repo}")
        self._branch_cache[repo] = branch
        return branch

    async def fetch_file(self, package_id: str, path: str) -> str | None:
        ref = parse_package_id(package_id)
        branch = await self.default_branch(ref.repo)
        full_path = f"{ref.dir}/{path}" if ref.dir else path
        encoded = "/".join(quote(segment, safe="") for segment in full_path.split("/"))
        url = f"{self.raw_url}/{ref.owner}/{ref.name}/{quote(branch, safe='')}/{encoded}"

        resp = await self._get(url, api=False)
        if resp.status_code == 404:
            return None
        _raise_for_github_status(resp, what=f"repository {ref.repo}")
        return resp.text

    async def fetch_manifest(self, package_id: str) -> Manifest:
        content = await self.fetch_file(package_id, MANIFEST_FILENAME)
        if content is None:
            raise RepoNotFoundError(f"No {MANIFEST_FILENAME} found in {package_id}. Is this an updose boilerplate?")
        try:
            raw = json.loads(content)
        except json.JSONDecodeError as e:
            raise InvalidManifestError(f"Invalid JSON in {MANIFEST_FILENAME} from {package_id}") from e
        return parse_manifest(raw)

    async def fetch_tree(self, package_id: str) -> list[TreeEntry]:
        ref = parse_package_id(package_id)
        branch = await self.default_branch(ref.repo)
        url = f"{self.api_url}/repos/{ref.owner}/{ref.name}/git/trees/{quote(branch, safe='')}"

        resp = await self._get(url, api=True, params={"recursive": "1"})
        if resp.status_code == 404:
            raise RepoNotFoundError(f"Repository not found: {ref.repo}")
        _raise_for_github_status(resp, what=f"repository {ref.repo}")

        data = _json_object(resp, what=f"tree of {ref.repo}")
        if data.get("truncated"):
            self.warnings.append(f"Repository tree for {ref.repo} was truncated; some files may be missing.")

        prefix = f"{ref.dir}/" if ref.dir else ""
        entries: list[TreeEntry] = []
        for item in data.get("tree") or []:
            if not isinstance(item, dict) or item.get("type") != "blob":
                continue
            path = item.get("path")
            if not isinstance(path, str) or not path.startswith(prefix):
                continue
            rel = path[len(prefix) :]
            if not rel:
                continue
            size = item.get("size")
            entries.append(
                TreeEntry(
                    path=rel,
                    type="blob",
                    sha=str(item.get("sha", "")),
                    size=size if isinstance(size, int) else None,
                )
            )
        return entries

    async def fetch_skills_json(self, package_id: str) -> str | None:
        return await self.fetch_file(package_id, SKILLS_FILENAME)


class RegistryClient:
    def __init__(
        self,
        *,
        base_url: str = DEFAULT_REGISTRY_URL,
        timeout_s: float = TELEMETRY_TIMEOUT_S,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def record_download(self, package_id: str) -> None:
        """Fire-and-forget download counter; never raises."""
        ref = parse_package_id(package_id)
        try:
            await self._http.post(
                f"{self.base_url}/download",
                json={"repo": ref.repo, "dir": ref.dir},
                headers={"User-Agent": USER_AGENT},
            )
        except Exception:  # noqa: BLE001 - telemetry must never affect the command
            return
