"""GitHub REST API source host: tree listing, file reads and single-file commits."""

import base64
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Protocol
from urllib.parse import quote

import requests

from gitmind.errors import ConfigurationMissing, UpstreamHostError

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 100_000

BINARY_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".svgz",
    ".pdf", ".zip", ".gz", ".tgz", ".bz2", ".xz", ".7z", ".rar", ".jar",
    ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".mp3", ".mp4", ".mov", ".avi", ".wav", ".ogg", ".webm",
    ".exe", ".dll", ".so", ".dylib", ".bin", ".class", ".pyc", ".o", ".a",
    ".lockb", ".sqlite", ".db",
})

_REASON_BY_STATUS = {
    401: "permission",
    403: "permission",
    404: "not_found",
    409: "conflict",
    422: "validation",
}


@dataclass
class TreeEntry:
    path: str
    size: int
    sha: str


@dataclass
class SourceFile:
    path: str
    content: str
    sha: str
    size: int


@dataclass
class CommitResult:
    commit_id: str
    path: str
    message: str
    content_sha: str | None = None


class SourceHost(Protocol):
    def list_tree(self, ref: str, path_prefix: str | None = None) -> list[TreeEntry]:
        ...

    def read_file(self, path: str, ref: str | None = None) -> SourceFile:
        ...

    def write_file(
        self,
        path: str,
        content: str,
        message: str,
        expected_sha: str | None,
        branch: str,
    ) -> CommitResult:
        ...


def is_text_candidate(path: str, size: int) -> bool:
    """Whether a tree entry is small enough and not a known binary format."""
    return size <= MAX_FILE_SIZE and PurePosixPath(path).suffix.lower() not in BINARY_EXTENSIONS


class GitHubSourceHost:
    """Source host backed by one GitHub repository."""

    def __init__(
        self,
        token: str,
        owner: str,
        name: str,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
    ):
        self.token = token
        self.owner = owner
        self.name = name
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    @property
    def repo_url(self) -> str:
        return f"{self.api_url}/repos/{self.owner}/{self.name}"

    def list_tree(self, ref: str, path_prefix: str | None = None) -> list[TreeEntry]:
        """List text files of ``ref``, optionally restricted to a directory."""
        data = self._request("GET", f"/git/trees/{quote(ref, safe='')}", params={"recursive": "1"})
        if data.get("truncated"):
            logger.warning("Tree for %s/%s@%s was truncated by GitHub", self.owner, self.name, ref)

        prefix = (path_prefix or "").strip("/")
        entries = []
        for item in data.get("tree", []):
            if item.get("type") != "blob":
                continue
            path = item["path"]
            if prefix and not (path == prefix or path.startswith(prefix + "/")):
                continue
            size = item.get("size", 0)
            if not is_text_candidate(path, size):
                continue
            entries.append(TreeEntry(path=path, size=size, sha=item["sha"]))
        return entries

    def read_file(self, path: str, ref: str | None = None) -> SourceFile:
        params = {"ref": ref} if ref else None
        data = self._request("GET", f"/contents/{quote(path)}", params=params)
        if isinstance(data, list) or data.get("type") != "file":
            raise UpstreamHostError(f"Not a file: {path}", reason="validation", path=path)

        raw = data.get("content") or ""
        if data.get("encoding") == "base64":
            try:
                content = base64.b64decode(raw).decode("utf-8")
            except UnicodeDecodeError as e:
                raise UpstreamHostError(f"Binary file cannot be read: {path}", reason="validation", path=path) from e
        else:
            content = raw
        return SourceFile(path=path, content=content, sha=data["sha"], size=data.get("size", len(content)))

    def write_file(
        self,
        path: str,
        content: str,
        message: str,
        expected_sha: str | None,
        branch: str,
    ) -> CommitResult:
        """Commit one file. A stale ``expected_sha`` surfaces as a conflict."""
        body = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if expected_sha:
            body["sha"] = expected_sha

        data = self._request("PUT", f"/contents/{quote(path)}", json=body)
        return CommitResult(
            commit_id=data["commit"]["sha"],
            path=path,
            message=message,
            content_sha=(data.get("content") or {}).get("sha"),
        )

    def _request(self, method: str, endpoint: str, **kwargs) -> dict:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "GitMind-AI",
        }
        try:
            response = requests.request(
                method,
                f"{self.repo_url}{endpoint}",
                headers=headers,
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            raise UpstreamHostError(f"GitHub request failed: {e}") from e

        if response.status_code >= 400:
            reason = _REASON_BY_STATUS.get(response.status_code, "upstream")
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            logger.warning("GitHub %s %s failed with %s: %s", method, endpoint, response.status_code, detail)
            raise UpstreamHostError(
                f"GitHub API error {response.status_code}: {detail}",
                reason=reason,
                status=response.status_code,
            )
        return response.json()


def get_source_host(config, repository) -> GitHubSourceHost:
    """Build a source host for a repository. Raises ConfigurationMissing without a token."""
    if not config.github_token:
        raise ConfigurationMissing("GitHub not configured: GITHUB_TOKEN not set")
    return GitHubSourceHost(
        token=config.github_token,
        owner=repository.owner,
        name=repository.name,
        api_url=config.github_api_url,
    )
